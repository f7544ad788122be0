"""
Real-time synchronization of protocols to in-process observers.

Usage:
    from rec_review.sync import SyncHub

    hub = SyncHub.from_config(dal, config)
    unsubscribe = await hub.subscribe("P1", on_change, on_error)
    ...
    unsubscribe()
"""

from .notifications import NotificationKind, SyncNotification
from .hub import ProtocolView, Subscription, SyncHub

__all__ = [
    "NotificationKind",
    "SyncNotification",
    "ProtocolView",
    "Subscription",
    "SyncHub",
]
