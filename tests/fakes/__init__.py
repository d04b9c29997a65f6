# =============================================================================
# File: tests/fakes/__init__.py
# Description: In-memory fakes for the chatsync ports
# =============================================================================

from tests.fakes.fake_change_feed_transport import FakeChangeFeedTransport, FakeTransportChannel
from tests.fakes.fake_chat_store import FakeChatStore
from tests.fakes.fake_object_storage import FakeObjectStorage, StaticAuth

__all__ = [
    "FakeChangeFeedTransport",
    "FakeTransportChannel",
    "FakeChatStore",
    "FakeObjectStorage",
    "StaticAuth",
]
