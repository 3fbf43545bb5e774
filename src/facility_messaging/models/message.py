# src/facility_messaging/models/message.py
"""Model for messages posted into a thread."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from facility_messaging.db.session import Base
from facility_messaging.db.time import new_id, utcnow
from facility_messaging.models.user import User


class Message(Base):
    """A message in a thread.

    The body is empty when the message only carries an attachment or a poll.
    """

    __tablename__ = "msg_thread_messages"
    __table_args__ = (
        Index("ix_msg_thread_messages_thread_created", "thread_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    thread_id: Mapped[str] = mapped_column(
        String(32),
        ForeignKey("msg_threads.id", ondelete="CASCADE"),
        nullable=False,
    )
    sender_id: Mapped[str] = mapped_column(String(32), ForeignKey("users.id"), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False, default="")
    # Ordered list of {name, size, type, url, path} objects.
    attachments: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    sender: Mapped[User] = relationship("User", lazy="joined")
