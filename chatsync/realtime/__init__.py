# =============================================================================
# File: chatsync/realtime/__init__.py
# Description: Change feed (subscriber, publisher, wire types)
# =============================================================================

"""
Realtime - change feed

Modules:
- types: topics, ChangeEvent, ResyncRequired, wire codec
- change_feed: ChangeFeedSubscriber, Subscription
- publisher: ChangeFeedPublisher (server-side routing)
- reactive: ReactiveValue read-only handles
"""
