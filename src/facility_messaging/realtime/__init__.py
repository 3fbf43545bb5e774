# src/facility_messaging/realtime/__init__.py
"""Change notifications and their in-process channel."""

from .events import ChangeEvent, ChangeKind
from .feed import ChangeFeed, Subscription

__all__ = ["ChangeEvent", "ChangeFeed", "ChangeKind", "Subscription"]
