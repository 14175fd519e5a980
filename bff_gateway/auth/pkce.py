import base64
import hashlib
import hmac
import re
import secrets

from ..models import PKCEContext


_PKCE_VERIFIER_RE = re.compile(r"^[A-Za-z0-9\-._~]{43,128}$")

S256 = "S256"


def _base64url_no_pad(b: bytes) -> str:
    return base64.urlsafe_b64encode(b).rstrip(b"=").decode("ascii")


def compute_challenge(code_verifier: str) -> str:
    return _base64url_no_pad(hashlib.sha256(code_verifier.encode("ascii")).digest())


class PKCEGenerator:
    """Produces RFC 7636 verifier/challenge pairs (S256 only)."""

    def __init__(self, verifier_bytes: int = 64):
        # token_urlsafe(n) yields ceil(4n/3) chars; keep within 43..128
        if not 32 <= verifier_bytes <= 96:
            raise ValueError(f"verifier_bytes must be between 32 and 96, got {verifier_bytes}")
        self.verifier_bytes = verifier_bytes

    def generate(self) -> PKCEContext:
        verifier = secrets.token_urlsafe(self.verifier_bytes)
        return PKCEContext(
            code_verifier=verifier,
            code_challenge=compute_challenge(verifier),
            code_challenge_method=S256,
        )


def verify_pkce(code_verifier: str, code_challenge: str, method: str = S256) -> bool:
    if not code_verifier or not code_challenge:
        return False
    if not _PKCE_VERIFIER_RE.match(code_verifier):
        return False

    m = (method or "plain").upper()
    if m == S256:
        computed = compute_challenge(code_verifier)
    elif m == "PLAIN":
        computed = code_verifier
    else:
        return False

    # constant-time compare
    return hmac.compare_digest(computed, code_challenge)
