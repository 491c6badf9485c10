"""Mirror workspace events onto Redis Pub/Sub for other processes."""

from __future__ import annotations

from collections.abc import Callable
import logging

from redis.asyncio import Redis

from .redis_client import get_redis_client

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "channel:workspace:"


def channel_name(workspace_id: str) -> str:
    return f"{CHANNEL_PREFIX}{workspace_id}"


class RedisEventRelay:
    """Publishes already-encoded events to ``channel:workspace:{id}``.

    Relay failures are logged and dropped: local subscribers have already been
    served, and remote ones recover through the ``refresh`` path.
    """

    def __init__(self, client_factory: Callable[[], Redis] = get_redis_client):
        self._client_factory = client_factory

    async def forward(self, workspace_id: str, payload: str) -> bool:
        try:
            redis = self._client_factory()
            await redis.publish(channel_name(workspace_id), payload)
        except Exception as exc:
            logger.warning("Redis publish failed for workspace %s: %s", workspace_id, exc)
            return False
        return True
