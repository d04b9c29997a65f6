# =============================================================================
# File: chatsync/realtime/publisher.py
# Description: Change-Feed Publisher - routes committed row changes to topics
# =============================================================================

"""
Change-Feed Publisher (server side)

Bridges committed store changes -> transport channels:

    store unit of work (commit)
            ↓
    ChangeFeedPublisher.publish_*()
            ↓  routing = the server-side topic filter
    chats:member_id=eq.<user>        (one copy per member)
    messages:chat_id=eq.<chat>
    notifications:user_id=eq.<user>

Membership rows are not a topic of their own: gaining a membership reaches
the user's directory topic as a chat INSERT, losing one as a chat DELETE.
Only the store calls this, and only after commit, so subscribers never see
a change that was rolled back.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any, Dict, Iterable, Optional

from chatsync.chat.models import Chat, Membership, Message, Notification
from chatsync.chat.ports.change_feed_transport_port import ChangeFeedTransportPort
from chatsync.common.exceptions.exceptions import TransportInterruptedError
from chatsync.infra.metrics.realtime_metrics import (
    changes_publish_errors_total,
    changes_published_total,
    publish_latency_seconds,
)
from chatsync.realtime.types import ChangeOperation, ChangeTable, Topic, encode_change

log = logging.getLogger("chatsync.realtime.publisher")


class ChangeFeedPublisher:
    """Publishes {operation, table, before?, after?} payloads to topic channels"""

    def __init__(self, transport: ChangeFeedTransportPort):
        self._transport = transport
        self._published = 0
        self._errors = 0

    async def _publish(self, topic: Topic, payload: Dict[str, Any]) -> None:
        start_time = time.time()
        table = payload["table"]
        try:
            await self._transport.publish(topic.channel, payload)
        except TransportInterruptedError as e:
            # Row is committed; subscribers converge on their next resync
            self._errors += 1
            changes_publish_errors_total.labels(table=table).inc()
            log.error(f"Failed to publish {payload['operation']} {table} to {topic}: {e}")
            return

        self._published += 1
        changes_published_total.labels(table=table, operation=payload["operation"]).inc()
        publish_latency_seconds.labels(table=table).observe(time.time() - start_time)
        log.debug(f"Published {payload['operation']} {table} to {topic}")

    # =========================================================================
    # Routing
    # =========================================================================

    async def publish_chat_change(
        self,
        op: ChangeOperation,
        member_ids: Iterable[uuid.UUID],
        before: Optional[Chat] = None,
        after: Optional[Chat] = None,
    ) -> None:
        payload = encode_change(op, ChangeTable.CHATS, before, after)
        for user_id in dict.fromkeys(member_ids):
            await self._publish(Topic.chats_for_member(user_id), payload)

    async def publish_membership_change(
        self,
        op: ChangeOperation,
        membership: Membership,
        chat: Chat,
    ) -> None:
        """Project a membership insert/delete onto the member's directory topic."""
        if op == ChangeOperation.INSERT:
            await self.publish_chat_change(ChangeOperation.INSERT, [membership.user_id], after=chat)
        elif op == ChangeOperation.DELETE:
            await self.publish_chat_change(ChangeOperation.DELETE, [membership.user_id], before=chat)

    async def publish_message_change(
        self,
        op: ChangeOperation,
        before: Optional[Message] = None,
        after: Optional[Message] = None,
    ) -> None:
        row = after if after is not None else before
        payload = encode_change(op, ChangeTable.MESSAGES, before, after)
        await self._publish(Topic.messages_in_chat(row.chat_id), payload)

    async def publish_notification_change(
        self,
        op: ChangeOperation,
        before: Optional[Notification] = None,
        after: Optional[Notification] = None,
    ) -> None:
        row = after if after is not None else before
        payload = encode_change(op, ChangeTable.NOTIFICATIONS, before, after)
        await self._publish(Topic.notifications_for_user(row.user_id), payload)

    def get_metrics(self) -> Dict[str, Any]:
        return {"published": self._published, "errors": self._errors}
