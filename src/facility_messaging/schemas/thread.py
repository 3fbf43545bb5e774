"""Thread directory schemas."""

from datetime import datetime

from pydantic import BaseModel, Field


class ParticipantOut(BaseModel):
    """Thread participant with the embedded user fields the directory needs."""

    user_id: str
    status: str | None = None
    first_name: str = ""
    family_name: str = ""
    role: str | None = None

    @property
    def display_name(self) -> str:
        """Return "first family", trimmed."""
        return f"{self.first_name} {self.family_name}".strip()


class LastMessageOut(BaseModel):
    """Preview of the newest message of a thread."""

    id: str | None = None
    content: str
    created_at: datetime
    sender_id: str


class ThreadSummary(BaseModel):
    """A conversation as listed in the directory."""

    id: str
    title: str | None = None
    is_group: bool = False
    created_at: datetime
    # Sort key: newest message time, else thread creation time.
    updated_at: datetime
    participants: list[ParticipantOut] = Field(default_factory=list)
    last_message: LastMessageOut | None = None
    unread: bool = False

    def other_participant(self, actor_id: str) -> ParticipantOut | None:
        """Return the first participant that is not the actor."""
        for participant in self.participants:
            if participant.user_id != actor_id:
                return participant
        return None
