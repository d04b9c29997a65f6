# =============================================================================
# File: tests/conftest.py
# Description: Shared fixtures: fast realtime config, fakes, engine factory
# =============================================================================

import pytest
import pytest_asyncio

from chatsync.config.realtime_config import RealtimeConfig, reset_realtime_config
from chatsync.config.storage_config import StorageConfig, reset_storage_config
from chatsync.engine import ChatSyncEngine
from chatsync.realtime.change_feed import ChangeFeedSubscriber
from chatsync.realtime.publisher import ChangeFeedPublisher
from tests.fakes import FakeChangeFeedTransport, FakeChatStore, FakeObjectStorage, StaticAuth

WAIT = 2.0


@pytest.fixture(autouse=True)
def _reset_configs():
    reset_realtime_config()
    reset_storage_config()
    yield
    reset_realtime_config()
    reset_storage_config()


@pytest.fixture
def realtime_config() -> RealtimeConfig:
    return RealtimeConfig(
        reconnect_initial_delay=0.01,
        reconnect_backoff_factor=2.0,
        reconnect_max_delay=0.05,
        reconnect_jitter=0.0,
        subscription_queue_size=100,
        heartbeat_interval=3600.0,
        notification_window=50,
        dedup_lookup_attempts=3,
        dedup_lookup_delay=0.0,
    )


@pytest.fixture
def storage_config(tmp_path) -> StorageConfig:
    return StorageConfig(
        base_path=str(tmp_path / "storage"),
        public_url="http://files.test",
        max_avatar_bytes=1024,
        max_wallpaper_bytes=2048,
        max_file_bytes=4096,
    )


@pytest.fixture
def transport() -> FakeChangeFeedTransport:
    return FakeChangeFeedTransport()


@pytest.fixture
def publisher(transport) -> ChangeFeedPublisher:
    return ChangeFeedPublisher(transport)


@pytest.fixture
def store(publisher) -> FakeChatStore:
    return FakeChatStore(publisher)


@pytest.fixture
def storage() -> FakeObjectStorage:
    return FakeObjectStorage()


@pytest.fixture
def subscriber(transport, realtime_config) -> ChangeFeedSubscriber:
    feed = ChangeFeedSubscriber(transport, realtime_config)
    yield feed
    feed.close()


@pytest_asyncio.fixture
async def make_engine(store, storage, transport, realtime_config, storage_config):
    """
    Factory for engines sharing one store and transport, one per user.

    Usage:
        engine = await make_engine(alice.id)
    """
    engines = []

    async def _make(user_id, start: bool = True) -> ChatSyncEngine:
        engine = ChatSyncEngine(
            store, storage, StaticAuth(user_id), transport,
            realtime_config=realtime_config, storage_config=storage_config,
        )
        engines.append(engine)
        if start:
            await engine.start()
        return engine

    yield _make

    for engine in engines:
        await engine.stop()
