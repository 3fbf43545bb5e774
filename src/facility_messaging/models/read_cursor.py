"""Per-participant read cursor into a thread."""

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column

from facility_messaging.db.session import Base
from facility_messaging.db.time import utcnow


class ReadCursor(Base):
    """Newest message a participant has seen in a thread."""

    __tablename__ = "msg_thread_reads"

    thread_id: Mapped[str] = mapped_column(
        String(32),
        ForeignKey("msg_threads.id", ondelete="CASCADE"),
        primary_key=True,
    )
    user_id: Mapped[str] = mapped_column(String(32), ForeignKey("users.id"), primary_key=True)
    last_read_message_id: Mapped[str] = mapped_column(String(32), nullable=False)
    read_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
