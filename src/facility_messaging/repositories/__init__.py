# src/facility_messaging/repositories/__init__.py
"""Data access layer for the messaging store."""

from .messaging_repo import MessagingRepository

__all__ = ["MessagingRepository"]
