"""Message, attachment and poll view schemas held by the stream cache."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class AttachmentOut(BaseModel):
    """File or image attached to a message."""

    name: str
    size: int | None = None
    kind: Literal["image", "file"] = Field("file", alias="type")
    url: str = ""
    path: str | None = None

    model_config = ConfigDict(populate_by_name=True)

    def to_row(self) -> dict[str, object]:
        """Return the JSON object stored on the message row."""
        return self.model_dump(by_alias=True)


class PollOptionOut(BaseModel):
    """Poll option with its vote count as seen by the current voter."""

    id: str
    label: str
    position: int
    votes: int = 0
    selected: bool = False


class PollOut(BaseModel):
    """Poll attached to a message."""

    id: str
    question: str
    multiple_choice: bool = False
    options: list[PollOptionOut] = Field(default_factory=list)

    def option(self, option_id: str) -> PollOptionOut | None:
        """Return the option with the given id, if present."""
        for option in self.options:
            if option.id == option_id:
                return option
        return None

    @property
    def selected_option_ids(self) -> list[str]:
        """Return the ids of the options the current voter has selected."""
        return [option.id for option in self.options if option.selected]


class MessageOut(BaseModel):
    """Message as displayed in a thread view (newest first)."""

    id: str
    thread_id: str
    sender_id: str
    body: str = ""
    created_at: datetime
    sender_name: str | None = None
    attachments: list[AttachmentOut] = Field(default_factory=list)
    poll: PollOut | None = None
    read_by: list[str] = Field(default_factory=list)
    # True while the message only exists locally.
    pending: bool = False

    @property
    def is_bare(self) -> bool:
        """Return True for a message with no body, attachments or poll."""
        return not self.body and not self.attachments and self.poll is None
