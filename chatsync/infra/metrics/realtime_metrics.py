# chatsync/infra/metrics/realtime_metrics.py
"""
Realtime Metrics - Prometheus export for the change feed

Labels are table names, never topic channels (one channel per user or chat
would explode cardinality).
"""

from prometheus_client import Counter, Gauge, Histogram


# ============================================================================
# Change-feed subscriber
# ============================================================================

change_events_received_total = Counter(
    'chatsync_change_events_received_total',
    'Validated change events delivered to subscriptions',
    ['table', 'operation']
)

change_events_malformed_total = Counter(
    'chatsync_change_events_malformed_total',
    'Change payloads rejected at the subscription boundary',
    ['table']
)

change_events_dropped_total = Counter(
    'chatsync_change_events_dropped_total',
    'Change events dropped because a subscription queue overflowed',
    ['table']
)

subscription_reconnects_total = Counter(
    'chatsync_subscription_reconnects_total',
    'Transport reconnect attempts',
    ['table']
)

subscription_resyncs_total = Counter(
    'chatsync_subscription_resyncs_total',
    'ResyncRequired markers emitted',
    ['table', 'reason']
)

subscriptions_active = Gauge(
    'chatsync_subscriptions_active',
    'Open change-feed subscriptions',
    ['table']
)


# ============================================================================
# Change-feed publisher
# ============================================================================

changes_published_total = Counter(
    'chatsync_changes_published_total',
    'Change payloads published to topic channels',
    ['table', 'operation']
)

changes_publish_errors_total = Counter(
    'chatsync_changes_publish_errors_total',
    'Change payloads the transport failed to publish',
    ['table']
)

publish_latency_seconds = Histogram(
    'chatsync_publish_latency_seconds',
    'Time to publish one change payload',
    ['table'],
    buckets=[0.0001, 0.0005, 0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0]
)


# ============================================================================
# Reconcilers
# ============================================================================

full_fetches_total = Counter(
    'chatsync_full_fetches_total',
    'Full fetches performed by reconcilers',
    ['scope']
)

stale_updates_ignored_total = Counter(
    'chatsync_stale_updates_ignored_total',
    'Deltas ignored because the held row was newer',
    ['scope']
)
