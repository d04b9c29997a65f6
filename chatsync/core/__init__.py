# =============================================================================
# File: chatsync/core/__init__.py
# Description: Process wiring (startup / shutdown)
# =============================================================================
