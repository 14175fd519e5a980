from typing import Optional

from redis.asyncio import Redis

from ..config import GatewaySettings


class RedisClientSingleton:
    """
    Process-wide Redis connection pool shared by the session store and the
    rate limiter. Creating the client does not connect; `ping` is called from
    the application lifespan so a missing Redis fails startup.
    """

    _instance: Optional[Redis] = None

    @classmethod
    def get_client(cls, settings: GatewaySettings) -> Redis:
        if cls._instance is None:
            cls._instance = Redis(
                host=settings.redis_host,
                port=settings.redis_port,
                password=settings.redis_password,
                decode_responses=True,
                max_connections=35,
            )
        return cls._instance

    @classmethod
    async def close(cls):
        if cls._instance:
            await cls._instance.aclose()
            cls._instance = None
