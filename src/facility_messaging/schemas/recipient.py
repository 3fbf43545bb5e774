"""Recipient search schemas."""

from pydantic import BaseModel, Field


class Recipient(BaseModel):
    """Addressable user for a new conversation."""

    id: str
    display_name: str
    email: str | None = None


class GuardianRecipient(Recipient):
    """Guardian reached on behalf of one or more selected children."""

    child_names: list[str] = Field(default_factory=list)
