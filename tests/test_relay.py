import pytest

from reviewflow import redis_client
from reviewflow.config import settings
from reviewflow.relay import CHANNEL_PREFIX, RedisEventRelay, channel_name


class StubRedis:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.published: list[tuple[str, str]] = []

    async def publish(self, channel: str, payload: str) -> int:
        if self.fail:
            raise ConnectionError("redis unavailable")
        self.published.append((channel, payload))
        return 1


def test_channel_name_is_scoped_to_workspace() -> None:
    assert channel_name("abc") == "channel:workspace:abc"
    assert channel_name("abc").startswith(CHANNEL_PREFIX)


@pytest.mark.asyncio
async def test_forward_publishes_payload() -> None:
    redis = StubRedis()
    relay = RedisEventRelay(client_factory=lambda: redis)

    assert await relay.forward("ws-1", '{"type": "refresh"}') is True
    assert redis.published == [("channel:workspace:ws-1", '{"type": "refresh"}')]


@pytest.mark.asyncio
async def test_forward_failure_is_swallowed() -> None:
    relay = RedisEventRelay(client_factory=lambda: StubRedis(fail=True))

    assert await relay.forward("ws-1", "{}") is False


def test_redis_client_uses_prefixed_setting(monkeypatch) -> None:
    monkeypatch.setenv("REDIS_URL", "redis://ignored.example:6379/0")
    monkeypatch.setattr(settings, "redis_url", "redis://cache.internal:6390/3")
    monkeypatch.setattr(redis_client, "_pool", None)

    client = redis_client.get_redis_client()

    kwargs = client.connection_pool.connection_kwargs
    assert kwargs["host"] == "cache.internal"
    assert kwargs["port"] == 6390
    assert kwargs["db"] == 3
