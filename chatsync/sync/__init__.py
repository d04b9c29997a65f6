# =============================================================================
# File: chatsync/sync/__init__.py
# Description: Client-side reconcilers over the change feed
# =============================================================================

"""
Sync - per-scope owned state

Modules:
- directory: ChatDirectoryReconciler (chat list)
- message_stream: MessageStreamHandler (one open chat)
- notifications: NotificationDispatcher and fan-out planner
- presence: PresenceTracker
"""
