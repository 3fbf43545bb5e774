"""Change notifications pushed by the durable store."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ChangeKind(str, Enum):
    """Kinds of row changes a thread view reacts to."""

    MESSAGE_INSERT = "message_insert"
    POLL_INSERT = "poll_insert"
    VOTE_CHANGE = "vote_change"
    READ_CURSOR_CHANGE = "read_cursor_change"


@dataclass(frozen=True)
class ChangeEvent:
    """Tagged change notification.

    ``payload`` holds the changed row's columns plus ``thread_id`` so that
    subscribers can scope by thread without another lookup.
    """

    kind: ChangeKind
    payload: Mapping[str, Any] = field(default_factory=dict)
    table: str | None = None

    @property
    def thread_id(self) -> str | None:
        """Return the thread the changed row belongs to."""
        value = self.payload.get("thread_id")
        return str(value) if value is not None else None

    @property
    def actor_id(self) -> str | None:
        """Return the user that caused the change, when the row names one."""
        for key in ("sender_id", "voter_id", "user_id"):
            value = self.payload.get(key)
            if value is not None:
                return str(value)
        return None
