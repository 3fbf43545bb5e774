# src/facility_messaging/schemas/__init__.py
"""
Pydantic view models handed to the UI layer.

These schemas describe the cached state of threads, messages and polls.
"""

from .message import AttachmentOut, MessageOut, PollOptionOut, PollOut
from .recipient import GuardianRecipient, Recipient
from .thread import LastMessageOut, ParticipantOut, ThreadSummary

__all__ = [
    "AttachmentOut", "MessageOut", "PollOptionOut", "PollOut",
    "GuardianRecipient", "Recipient",
    "LastMessageOut", "ParticipantOut", "ThreadSummary",
]
