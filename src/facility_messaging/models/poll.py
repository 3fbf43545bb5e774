# src/facility_messaging/models/poll.py
"""Models for polls attached to messages and the votes cast on them."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from facility_messaging.db.session import Base
from facility_messaging.db.time import new_id, utcnow


class Poll(Base):
    """Single- or multiple-choice question attached to exactly one message.

    Immutable after creation; only votes change.
    """

    __tablename__ = "msg_polls"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    message_id: Mapped[str] = mapped_column(
        String(32),
        ForeignKey("msg_thread_messages.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    question: Mapped[str] = mapped_column(Text, nullable=False)
    multiple_choice: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    options: Mapped[list[PollOption]] = relationship(
        "PollOption",
        back_populates="poll",
        cascade="all, delete-orphan",
        order_by="PollOption.position",
        lazy="selectin",
    )


class PollOption(Base):
    """One answer of a poll, ordered by position."""

    __tablename__ = "msg_poll_options"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    poll_id: Mapped[str] = mapped_column(
        String(32),
        ForeignKey("msg_polls.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    label: Mapped[str] = mapped_column(Text, nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    poll: Mapped[Poll] = relationship("Poll", back_populates="options")


class PollVote(Base):
    """A voter's choice of one option.

    Single-choice polls allow one row per (poll, voter); the repository checks
    that before inserting.
    """

    __tablename__ = "msg_poll_votes"
    __table_args__ = (
        UniqueConstraint("poll_id", "option_id", "voter_id", name="uq_msg_poll_votes_choice"),
        Index("ix_msg_poll_votes_poll_voter", "poll_id", "voter_id"),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    poll_id: Mapped[str] = mapped_column(
        String(32),
        ForeignKey("msg_polls.id", ondelete="CASCADE"),
        nullable=False,
    )
    option_id: Mapped[str] = mapped_column(
        String(32),
        ForeignKey("msg_poll_options.id", ondelete="CASCADE"),
        nullable=False,
    )
    voter_id: Mapped[str] = mapped_column(String(32), ForeignKey("users.id"), nullable=False)
