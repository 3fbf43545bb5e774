# src/facility_messaging/models/__init__.py
"""SQLAlchemy models for the messaging core."""

from .block import BlockEdge, MessageReport
from .facility import ChildEnrollment, CoordinatorFacility, Facility
from .message import Message
from .poll import Poll, PollOption, PollVote
from .read_cursor import ReadCursor
from .thread import Thread, ThreadParticipant
from .user import User, UserAccess

__all__ = [
    "BlockEdge", "MessageReport",
    "ChildEnrollment", "CoordinatorFacility", "Facility",
    "Message",
    "Poll", "PollOption", "PollVote",
    "ReadCursor",
    "Thread", "ThreadParticipant",
    "User", "UserAccess",
]
