"""
Unit tests for RedisBackend against a mocked redis.asyncio client.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ratekeeper.core.errors import StoreUnavailable
from ratekeeper.core.storage import redis as redis_storage
from ratekeeper.core.storage.redis import RedisBackend
from ratekeeper.core.strategies.token_bucket import TOKEN_BUCKET_SCRIPT


async def _aiter(items):
    for item in items:
        yield item


@pytest.fixture
def scripts() -> dict:
    return {}


@pytest.fixture
def redis_client(scripts):
    client = MagicMock()

    def register_script(source):
        script = AsyncMock(return_value=[1, "4.0"])
        scripts[source] = script
        return script

    client.register_script = MagicMock(side_effect=register_script)
    client.get = AsyncMock(return_value="3")
    client.set = AsyncMock()
    client.delete = AsyncMock()
    client.hgetall = AsyncMock(return_value={"tokens": "4.0"})
    client.zrange = AsyncMock(return_value=[("a", 1.5)])
    client.zcard = AsyncMock(return_value=1)
    return client


@pytest.fixture
def backend(redis_client) -> RedisBackend:
    return RedisBackend(redis_client)


class TestCommands:

    @pytest.mark.asyncio
    async def test_set_uses_expiry(self, backend, redis_client):
        await backend.set("k", "v", ttl=30)

        redis_client.set.assert_awaited_once_with("k", "v", ex=30)

    @pytest.mark.asyncio
    async def test_incr_runs_through_script(self, backend, scripts):
        incr = next(iter(scripts.values()))
        incr.return_value = [3, 0]

        assert await backend.incr("counter", ttl=60) == 3
        incr.assert_awaited_once_with(keys=["counter"], args=[60])

    @pytest.mark.asyncio
    async def test_zrange_requests_scores(self, backend, redis_client):
        assert await backend.zrange("z", 0, 0) == [("a", 1.5)]

        redis_client.zrange.assert_awaited_once_with("z", 0, 0, withscores=True)

    @pytest.mark.asyncio
    async def test_delete_without_keys_skips_round_trip(self, backend, redis_client):
        await backend.delete()

        redis_client.delete.assert_not_called()

    @pytest.mark.asyncio
    async def test_keys_with_prefix_escapes_glob_characters(self, backend, redis_client):
        redis_client.scan_iter = MagicMock(return_value=_aiter(["a*b:1"]))

        assert await backend.keys_with_prefix("a*b:") == ["a*b:1"]
        redis_client.scan_iter.assert_called_once_with(match="a\\*b:*")

    @pytest.mark.asyncio
    async def test_hash_tag_braces_are_not_escaped(self, backend, redis_client):
        redis_client.scan_iter = MagicMock(return_value=_aiter([]))

        await backend.keys_with_prefix("ratekeeper:fw:{user:1}:")

        redis_client.scan_iter.assert_called_once_with(match="ratekeeper:fw:{user:1}:*")


class TestScripts:

    @pytest.mark.asyncio
    async def test_script_is_registered_once(self, backend, redis_client, scripts):
        await backend.eval_script(TOKEN_BUCKET_SCRIPT, keys=["k"], args=[1])
        reply = await backend.eval_script(TOKEN_BUCKET_SCRIPT, keys=["k"], args=[2])

        assert reply == [1, "4.0"]
        # One registration for INCR at construction, one for the bucket
        assert redis_client.register_script.call_count == 2
        assert scripts[TOKEN_BUCKET_SCRIPT.lua].await_count == 2


class TestErrors:

    @pytest.mark.asyncio
    async def test_connection_error_becomes_store_unavailable(self, backend, redis_client):
        redis_client.get.side_effect = RedisConnectionError("Connection refused")

        with pytest.raises(StoreUnavailable) as excinfo:
            await backend.get("k")

        assert isinstance(excinfo.value.__cause__, RedisConnectionError)

    @pytest.mark.asyncio
    async def test_script_timeout_becomes_store_unavailable(self, backend, scripts):
        await backend.eval_script(TOKEN_BUCKET_SCRIPT, keys=["k"], args=[])
        scripts[TOKEN_BUCKET_SCRIPT.lua].side_effect = RedisTimeoutError("Timeout reading from socket")

        with pytest.raises(StoreUnavailable):
            await backend.eval_script(TOKEN_BUCKET_SCRIPT, keys=["k"], args=[])


class TestMalformedCounters:

    @pytest.mark.asyncio
    async def test_discarded_counter_is_logged(self, backend, scripts, monkeypatch):
        log = MagicMock()
        monkeypatch.setattr(redis_storage, "logger", log)
        incr = next(iter(scripts.values()))
        incr.return_value = [1, 1]

        assert await backend.incr("counter", ttl=60) == 1
        log.warning.assert_called_once_with("malformed_state_reset", key="counter")

    @pytest.mark.asyncio
    async def test_type_of_decodes_bytes(self, backend, redis_client):
        redis_client.type = AsyncMock(return_value=b"zset")

        assert await backend.type_of("z") == "zset"
