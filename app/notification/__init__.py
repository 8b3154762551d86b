"""Notification delivery package.

Queues notifications, claims due items for delivery workers, hands them
to channel providers and records every state transition in the audit
trail.
"""
