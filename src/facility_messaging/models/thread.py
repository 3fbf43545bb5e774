# src/facility_messaging/models/thread.py
"""Models describing conversation threads and their participants."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from facility_messaging.db.session import Base
from facility_messaging.db.time import new_id, utcnow
from facility_messaging.models.user import User


def direct_key(user_a: str, user_b: str) -> str:
    """Return the order-independent key of a direct conversation pair."""
    first, second = sorted((user_a, user_b))
    return f"{first}:{second}"


class Thread(Base):
    """A conversation channel among two or more participants."""

    __tablename__ = "msg_threads"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    title: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_group: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # Owning scope; every directory query is restricted by it.
    supervisor_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    facility_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(32), nullable=True)

    # Predefined group threads can be switched off without being deleted.
    is_predefined: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Set only for direct threads; the unique index forbids a second thread per pair.
    direct_key: Mapped[str | None] = mapped_column(String(80), unique=True, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    participants: Mapped[list[ThreadParticipant]] = relationship(
        "ThreadParticipant",
        back_populates="thread",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    @property
    def participant_ids(self) -> list[str]:
        """Return the user ids of all participants."""
        return [participant.user_id for participant in self.participants]


class ThreadParticipant(Base):
    """Membership of a user in a thread."""

    __tablename__ = "msg_thread_participants"

    thread_id: Mapped[str] = mapped_column(
        String(32),
        ForeignKey("msg_threads.id", ondelete="CASCADE"),
        primary_key=True,
    )
    user_id: Mapped[str] = mapped_column(
        String(32),
        ForeignKey("users.id"),
        primary_key=True,
    )
    status: Mapped[str | None] = mapped_column(String(32), nullable=True)

    thread: Mapped[Thread] = relationship("Thread", back_populates="participants")
    user: Mapped[User] = relationship("User", lazy="joined")
