"""
Notifications module: per-user outbox rows written alongside system changes.
"""
