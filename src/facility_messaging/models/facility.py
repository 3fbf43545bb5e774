"""SQLAlchemy models for facilities and child enrollment."""
from sqlalchemy import Boolean, ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from facility_messaging.db.session import Base
from facility_messaging.db.time import new_id


class Facility(Base):
    """A facility owned by one supervisor scope."""

    __tablename__ = "facilities"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(Text, nullable=False, default="")
    supervisor_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class CoordinatorFacility(Base):
    """Delegation of a facility to a staff member acting as coordinator."""

    __tablename__ = "coordinator_facilities"

    staff_user_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    facility_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("facilities.id", ondelete="CASCADE"), primary_key=True
    )


class ChildEnrollment(Base):
    """Relationship record between a child and a facility.

    A record counts as active while ``is_deleted`` is false.
    """

    __tablename__ = "child_enrollments"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    facility_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("facilities.id", ondelete="CASCADE"), nullable=False, index=True
    )
    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
