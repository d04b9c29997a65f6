"""
Tests for the local storage adapter and the Redis change-feed transport
"""
import json
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from chatsync.common.exceptions.exceptions import (
    InfrastructureError,
    NotFoundError,
    TransportInterruptedError,
    ValidationFailedError,
)
from chatsync.config.redis_config import RedisConfig
from chatsync.infra.storage.local_adapter import LocalStorageAdapter
from chatsync.infra.transport.redis_change_feed import (
    ChangeFeedJSONEncoder,
    RedisChangeFeedTransport,
    RedisTransportChannel,
)


@pytest.fixture
def local_storage(storage_config):
    return LocalStorageAdapter(storage_config)


@pytest.fixture
def redis_config():
    return RedisConfig(channel_prefix="test", poll_timeout=0.01)


def pubsub_with(messages):
    pubsub = MagicMock()
    pubsub.get_message = AsyncMock(side_effect=messages)
    pubsub.subscribe = AsyncMock()
    pubsub.unsubscribe = AsyncMock()
    pubsub.aclose = AsyncMock()
    return pubsub


class TestLocalStorage:

    @pytest.mark.asyncio
    async def test_upload_and_delete(self, local_storage, storage_config):
        ref = await local_storage.upload("chat-files/c1/photo.png", b"png", "image/png")

        assert ref == "http://files.test/chat-files/c1/photo.png"
        assert await local_storage.exists("chat-files/c1/photo.png")

        await local_storage.delete(ref)
        assert not await local_storage.exists("chat-files/c1/photo.png")

    @pytest.mark.asyncio
    async def test_delete_missing(self, local_storage):
        with pytest.raises(NotFoundError):
            await local_storage.delete("http://files.test/avatars/none.png")

    @pytest.mark.asyncio
    async def test_delete_foreign_reference(self, local_storage):
        with pytest.raises(NotFoundError):
            await local_storage.delete("https://elsewhere.example/avatars/a.png")

    @pytest.mark.asyncio
    async def test_path_traversal_rejected(self, local_storage):
        with pytest.raises(ValidationFailedError):
            await local_storage.upload("../outside.txt", b"x")

    @pytest.mark.asyncio
    async def test_write_failure(self, local_storage, storage_config, tmp_path):
        # A regular file where a directory is needed
        (tmp_path / "storage" / "blocker").write_bytes(b"")
        with pytest.raises(InfrastructureError):
            await local_storage.upload("blocker/inner.txt", b"x")

    def test_buckets_created(self, local_storage, tmp_path):
        for bucket in ("avatars", "chat-files", "chat-wallpapers"):
            assert (tmp_path / "storage" / bucket).is_dir()


class TestJSONEncoder:

    def test_encodes_special_types(self):
        at = datetime(2025, 1, 1, tzinfo=timezone.utc)
        ident = uuid.UUID(int=5)
        raw = json.dumps({"id": ident, "at": at, "n": Decimal("1.5")}, cls=ChangeFeedJSONEncoder)
        assert json.loads(raw) == {"id": str(ident), "at": at.isoformat(), "n": "1.5"}


class TestRedisChannel:

    @pytest.mark.asyncio
    async def test_yields_decoded_messages(self):
        pubsub = pubsub_with([
            None,
            {"type": "message", "data": b'{"operation": "INSERT"}'},
            {"type": "message", "data": "not json"},
            RedisConnectionError("gone"),
        ])
        channel = RedisTransportChannel(pubsub, "test:x", 0.01)

        received = []
        with pytest.raises(TransportInterruptedError):
            async for payload in channel:
                received.append(payload)

        assert received == [{"operation": "INSERT"}, "not json"]

    @pytest.mark.asyncio
    async def test_close_unsubscribes_once(self):
        pubsub = pubsub_with([])
        channel = RedisTransportChannel(pubsub, "test:x", 0.01)

        await channel.close()
        await channel.close()

        pubsub.unsubscribe.assert_awaited_once_with("test:x")
        pubsub.aclose.assert_awaited_once()


class TestRedisTransport:

    @pytest.mark.asyncio
    async def test_publish_prefixes_channel(self, redis_config):
        client = MagicMock()
        client.publish = AsyncMock(return_value=1)
        transport = RedisChangeFeedTransport(client, redis_config)

        await transport.publish("messages:chat_id=eq.1", {"id": uuid.UUID(int=1)})

        name, body = client.publish.await_args.args
        assert name == "test:messages:chat_id=eq.1"
        assert json.loads(body) == {"id": str(uuid.UUID(int=1))}

    @pytest.mark.asyncio
    async def test_publish_failure(self, redis_config):
        client = MagicMock()
        client.publish = AsyncMock(side_effect=RedisConnectionError("down"))
        transport = RedisChangeFeedTransport(client, redis_config)

        with pytest.raises(TransportInterruptedError):
            await transport.publish("chats:member_id=eq.1", {})

    @pytest.mark.asyncio
    async def test_open_channel_subscribes(self, redis_config):
        pubsub = pubsub_with([])
        client = MagicMock()
        client.pubsub = MagicMock(return_value=pubsub)
        transport = RedisChangeFeedTransport(client, redis_config)

        channel = await transport.open_channel("chats:member_id=eq.1")

        assert channel.name == "test:chats:member_id=eq.1"
        pubsub.subscribe.assert_awaited_once_with("test:chats:member_id=eq.1")

    @pytest.mark.asyncio
    async def test_open_channel_failure(self, redis_config):
        pubsub = pubsub_with([])
        pubsub.subscribe = AsyncMock(side_effect=RedisConnectionError("refused"))
        client = MagicMock()
        client.pubsub = MagicMock(return_value=pubsub)
        transport = RedisChangeFeedTransport(client, redis_config)

        with pytest.raises(TransportInterruptedError):
            await transport.open_channel("chats:member_id=eq.1")
        pubsub.aclose.assert_awaited_once()

    def test_client_required(self, redis_config):
        with pytest.raises(ValueError):
            RedisChangeFeedTransport(None, redis_config)
