# src/facility_messaging/models/block.py
"""Models for user blocks and message reports."""

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from facility_messaging.db.session import Base
from facility_messaging.db.time import utcnow


class BlockEdge(Base):
    """Directed suppression of one user's content for another.

    Only the blocker's view is affected; nothing is deleted.
    """

    __tablename__ = "msg_thread_blocked"

    blocked_by: Mapped[str] = mapped_column(String(32), ForeignKey("users.id"), primary_key=True)
    blocked_user_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("users.id"), primary_key=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class MessageReport(Base):
    """Report filed against a message and its sender."""

    __tablename__ = "msg_thread_reports"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    message_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    reported_user_id: Mapped[str] = mapped_column(String(32), nullable=False)
    reporter_user_id: Mapped[str] = mapped_column(String(32), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    source: Mapped[str] = mapped_column(String(32), nullable=False, default="staff")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
