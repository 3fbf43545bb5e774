"""Typed failures raised by the messaging core.

Every operation exposed to the UI layer either returns a result or raises one
of the exceptions below.
"""

from __future__ import annotations

from typing import Any


class MessagingError(RuntimeError):
    """Base exception for messaging failures.

    ``operation`` carries the optimistic operation that was in flight when the
    failure happened, so callers can recover the original input.
    """

    def __init__(self, message: str, *, operation: Any | None = None) -> None:
        super().__init__(message)
        self.operation = operation


class AccessError(MessagingError):
    """Raised when the actor or its scope cannot be resolved."""


class BlockedRecipientError(AccessError):
    """Raised when sending into a direct thread with a blocked participant."""


class NotFoundError(MessagingError):
    """Raised when a thread, message or poll does not exist."""


class ConflictError(MessagingError):
    """Raised on uniqueness violations.

    Duplicate direct threads and second votes on single-choice polls both end
    up here.
    """


class TransportError(MessagingError):
    """Raised when the store or the object store cannot be reached."""


class PartialWriteError(MessagingError):
    """Raised when a multi-step poll creation failed after its first step.

    The message created by the first step stays behind in the store.
    """

    def __init__(
        self,
        message: str,
        *,
        message_id: str,
        operation: Any | None = None,
    ) -> None:
        super().__init__(message, operation=operation)
        self.message_id = message_id
