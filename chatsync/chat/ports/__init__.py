# =============================================================================
# File: chatsync/chat/ports/__init__.py
# Description: Ports directory for Chat domain
# =============================================================================
# EMPTY - use direct imports:
#   from chatsync.chat.ports.chat_store_port import ChatStorePort
#   from chatsync.chat.ports.change_feed_transport_port import ChangeFeedTransportPort
