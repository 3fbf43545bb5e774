# src/facility_messaging/models/user.py
"""SQLAlchemy models for people and their access grants."""

from __future__ import annotations

from sqlalchemy import Boolean, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from facility_messaging.db.session import Base
from facility_messaging.db.time import new_id

ROLE_CHILD = "child"
ROLE_GUARDIAN = "guardian"
ROLE_STAFF = "staff"
ROLE_SUPERVISOR = "supervisor"

GUARDIAN_ROLES = frozenset({ROLE_GUARDIAN, "parent"})
STAFF_ROLES = frozenset({ROLE_STAFF, ROLE_SUPERVISOR, "teacher"})

ACCESS_SUPERVISOR = "supervisor"


class User(Base):
    """A person known to the facility: staff, guardian or child."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    # Identity-provider subject; null for children without a login.
    auth_id: Mapped[str | None] = mapped_column(String(64), unique=True, nullable=True)
    # Back-reference to the supervisor record for supervisor accounts.
    record_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    first_name: Mapped[str] = mapped_column(Text, nullable=False, default="")
    family_name: Mapped[str] = mapped_column(Text, nullable=False, default="")
    email: Mapped[str | None] = mapped_column(Text, nullable=True)
    role: Mapped[str] = mapped_column(String(16), nullable=False, default=ROLE_STAFF)

    # Responsible guardian for children.
    manager_id: Mapped[str | None] = mapped_column(
        String(32),
        ForeignKey("users.id"),
        nullable=True,
        index=True,
    )
    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    @property
    def display_name(self) -> str:
        """Return "first family", trimmed."""
        return f"{self.first_name} {self.family_name}".strip()


class UserAccess(Base):
    """Grant of a resource (for example a supervisor scope) to a user."""

    __tablename__ = "user_access"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # Either the user's row id or its identity-provider subject.
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    resource_type: Mapped[str] = mapped_column(String(32), nullable=False)
    resource_id: Mapped[str] = mapped_column(String(64), nullable=False)
