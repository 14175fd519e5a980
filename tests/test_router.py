import pytest

from bff_gateway.config import RouteEntry
from bff_gateway.proxy.router import RequestRouter
from bff_gateway.utils.exceptions import RouteNotFound


def make_router(*prefixes):
    return RequestRouter(
        RouteEntry(service=f"svc{i}", base_url=f"http://svc{i}.internal", path_prefix=prefix)
        for i, prefix in enumerate(prefixes)
    )


class TestRequestRouter:

    def test_strips_prefix(self):
        resolved = make_router("/my-books").resolve("/my-books/reviews/1")
        assert resolved.route.service == "svc0"
        assert resolved.backend_path == "/reviews/1"

    def test_exact_prefix_becomes_root(self):
        assert make_router("/my-books").resolve("/my-books").backend_path == "/"

    def test_trailing_slash_is_kept(self):
        assert make_router("/my-books").resolve("/my-books/").backend_path == "/"

    def test_prefix_only_matches_at_segment_boundary(self):
        with pytest.raises(RouteNotFound):
            make_router("/my-books").resolve("/my-booksx/1")

    def test_longest_prefix_wins(self):
        router = make_router("/api", "/api/admin")
        resolved = router.resolve("/api/admin/users")
        assert resolved.route.path_prefix == "/api/admin"
        assert resolved.backend_path == "/users"

        resolved = router.resolve("/api/administrators")
        assert resolved.route.path_prefix == "/api"
        assert resolved.backend_path == "/administrators"

    def test_longest_prefix_independent_of_declaration_order(self):
        assert make_router("/api/admin", "/api").resolve("/api/admin/x").route.path_prefix == "/api/admin"

    def test_unknown_path(self):
        with pytest.raises(RouteNotFound):
            make_router("/my-books", "/my-musics").resolve("/my-movies/1")

    def test_root_prefix_catches_everything_else(self):
        router = make_router("/", "/my-books")
        assert router.resolve("/my-books/1").route.path_prefix == "/my-books"
        resolved = router.resolve("/anything/else")
        assert resolved.route.path_prefix == "/"
        assert resolved.backend_path == "/anything/else"

    def test_resolution_is_deterministic(self):
        router = make_router("/a", "/a/b", "/a/b/c")
        assert {router.resolve("/a/b/c/d").route.service for _ in range(20)} == {"svc2"}
