"""Optimistic sending of text, attachments and polls, plus optimistic voting.

Every send puts a placeholder with a temporary id at the head of the open
thread's cache before the store is touched. On success the placeholder is
re-keyed in place to the stored message; on failure it is removed and the
error carries the :class:`PendingOperation` so the caller can restore the
user's draft.
"""

from __future__ import annotations

import itertools
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from facility_messaging.core.errors import (
    ConflictError,
    MessagingError,
    NotFoundError,
    PartialWriteError,
    TransportError,
)
from facility_messaging.db.time import as_utc, utcnow
from facility_messaging.models import Message
from facility_messaging.repositories.messaging_repo import MessagingRepository
from facility_messaging.schemas.message import AttachmentOut, MessageOut, PollOut
from facility_messaging.services.message_stream import MessageStreamCache, to_message_out
from facility_messaging.services.polls import (
    PollService,
    apply_vote,
    normalize_options,
    normalize_question,
    placeholder_poll,
)
from facility_messaging.services.storage import ObjectStore, attachment_path, media_kind

logger = logging.getLogger(__name__)

TEMP_ID_PREFIX = "temp_"


def is_temp_id(value: str | None) -> bool:
    """Return True for identifiers minted locally for placeholders."""
    return bool(value) and str(value).startswith(TEMP_ID_PREFIX)


class OperationKind(str, Enum):
    TEXT = "text"
    ATTACHMENT = "attachment"
    POLL = "poll"


class OperationState(str, Enum):
    PENDING = "pending"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    PARTIAL = "partial"


@dataclass
class PendingOperation:
    """A send in flight.

    Transitions out of ``PENDING`` happen exactly once: to ``COMMITTED`` when
    every write succeeded, ``ROLLED_BACK`` when the first write failed, or
    ``PARTIAL`` when a poll lost a later step.
    """

    kind: OperationKind
    temp_id: str
    thread_id: str
    draft: dict[str, Any] = field(default_factory=dict)
    state: OperationState = OperationState.PENDING
    message_id: str | None = None
    error: Exception | None = None

    def _settle(self, state: OperationState) -> None:
        if self.state is not OperationState.PENDING:
            raise RuntimeError(
                f"Operation {self.temp_id} already {self.state.value}, cannot become {state.value}"
            )
        self.state = state

    def commit(self, message_id: str) -> None:
        self._settle(OperationState.COMMITTED)
        self.message_id = message_id

    def rollback(self, error: Exception) -> None:
        self._settle(OperationState.ROLLED_BACK)
        self.error = error

    def mark_partial(self, message_id: str, error: Exception) -> None:
        self._settle(OperationState.PARTIAL)
        self.message_id = message_id
        self.error = error

    @property
    def settled(self) -> bool:
        return self.state is not OperationState.PENDING


class SendPipeline:
    """Runs optimistic writes for one sender against the open thread's cache."""

    def __init__(
        self,
        repo: MessagingRepository,
        cache: MessageStreamCache,
        polls: PollService,
        *,
        sender_id: str,
        sender_name: str | None = None,
        object_store: ObjectStore | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repo = repo
        self.cache = cache
        self.polls = polls
        self.sender_id = sender_id
        self.sender_name = sender_name
        self.object_store = object_store
        self.clock = clock
        self._counter = itertools.count(1)

    def _next_temp_id(self) -> str:
        return f"{TEMP_ID_PREFIX}{next(self._counter)}"

    def _placeholder(self, temp_id: str, thread_id: str, **fields: Any) -> MessageOut:
        return MessageOut(
            id=temp_id,
            thread_id=thread_id,
            sender_id=self.sender_id,
            sender_name=self.sender_name,
            created_at=as_utc(self.clock()),
            pending=True,
            **fields,
        )

    def _show(self, placeholder: MessageOut) -> None:
        if self.cache.thread_id == placeholder.thread_id:
            self.cache.insert_placeholder(placeholder)

    def _settled(self, row: Message) -> MessageOut:
        # A refresh racing the write may already have delivered the row with receipts.
        return self.cache.get(row.id) or to_message_out(row)

    def _fail(self, operation: PendingOperation, exc: MessagingError) -> None:
        self.cache.remove(operation.temp_id)
        operation.rollback(exc)
        exc.operation = operation
        logger.warning(
            "%s send to %s rolled back: %s", operation.kind.value, operation.thread_id, exc
        )

    async def send_text(self, thread_id: str, text: str) -> PendingOperation:
        """Send a text message.

        Raises:
            ValueError: If ``text`` is blank.
            MessagingError: If the write failed; the placeholder is gone and
                ``error.operation.draft`` holds the text.
        """
        body = (text or "").strip()
        if not body:
            raise ValueError("Cannot send an empty message")

        operation = PendingOperation(
            kind=OperationKind.TEXT,
            temp_id=self._next_temp_id(),
            thread_id=thread_id,
            draft={"text": text},
        )
        self._show(self._placeholder(operation.temp_id, thread_id, body=body))

        try:
            row = await self.repo.insert_message(
                thread_id=thread_id, sender_id=self.sender_id, body=body
            )
        except MessagingError as exc:
            self._fail(operation, exc)
            raise

        self.cache.rekey(operation.temp_id, self._settled(row))
        operation.commit(row.id)
        return operation

    async def send_attachment(
        self,
        thread_id: str,
        data: bytes,
        *,
        filename: str,
        content_type: str,
        scope_id: str,
        caption: str = "",
    ) -> PendingOperation:
        """Upload a file and send it as a message.

        The object is stored under ``<scope>/<thread>/<millis>_<name>`` first;
        the message row references its public URL.
        """
        if self.object_store is None:
            raise TransportError("No object store configured for attachments")

        kind = media_kind(content_type)
        operation = PendingOperation(
            kind=OperationKind.ATTACHMENT,
            temp_id=self._next_temp_id(),
            thread_id=thread_id,
            draft={
                "filename": filename,
                "content_type": content_type,
                "data": data,
                "caption": caption,
            },
        )
        local = AttachmentOut(name=filename, size=len(data), kind=kind)
        self._show(
            self._placeholder(
                operation.temp_id, thread_id, body=caption.strip(), attachments=[local]
            )
        )

        try:
            stored = await self.object_store.upload(
                data,
                content_type,
                path=attachment_path(scope_id, thread_id, filename, self.clock()),
            )
            attachment = local.model_copy(update={"url": stored.url, "path": stored.path})
            row = await self.repo.insert_message(
                thread_id=thread_id,
                sender_id=self.sender_id,
                body=caption.strip(),
                attachments=[attachment.to_row()],
            )
        except MessagingError as exc:
            self._fail(operation, exc)
            raise

        self.cache.rekey(operation.temp_id, self._settled(row))
        operation.commit(row.id)
        logger.info("Attachment %s sent to %s", stored.path, thread_id)
        return operation

    async def send_poll(
        self,
        thread_id: str,
        question: str,
        labels: Iterable[str],
        *,
        multiple_choice: bool = False,
    ) -> PendingOperation:
        """Create a poll message in three writes: message, poll, options.

        The placeholder shows the poll from the start. Once the message row
        exists the placeholder takes its id, so refreshes that see the message
        before its poll keep showing the local poll.

        Raises:
            ValueError: On a blank question or fewer than two options.
            MessagingError: If the message write failed (rolled back).
            PartialWriteError: If a later write failed; the bare message stays.
        """
        text = normalize_question(question)
        options = normalize_options(labels)

        operation = PendingOperation(
            kind=OperationKind.POLL,
            temp_id=self._next_temp_id(),
            thread_id=thread_id,
            draft={"question": question, "options": list(options), "multiple_choice": multiple_choice},
        )
        placeholder = self._placeholder(
            operation.temp_id,
            thread_id,
            poll=placeholder_poll(operation.temp_id, text, options, multiple_choice),
        )
        self._show(placeholder)

        try:
            row = await self.repo.insert_message(thread_id=thread_id, sender_id=self.sender_id)
        except MessagingError as exc:
            self._fail(operation, exc)
            raise

        placeholder = placeholder.model_copy(
            update={"id": row.id, "created_at": as_utc(row.created_at)}
        )
        self.cache.rekey(operation.temp_id, placeholder, pending=True)

        try:
            poll = await self.polls.create(
                message_id=row.id,
                question=text,
                labels=options,
                multiple_choice=multiple_choice,
            )
        except MessagingError as exc:
            self.cache.rekey(row.id, to_message_out(row))
            operation.mark_partial(row.id, exc)
            logger.error("Poll for message %s was not completed: %s", row.id, exc)
            raise PartialWriteError(
                f"Poll could not be attached to message {row.id}",
                message_id=row.id,
                operation=operation,
            ) from exc

        self.cache.rekey(row.id, placeholder.model_copy(update={"poll": poll, "pending": False}))
        operation.commit(row.id)
        return operation

    async def vote(
        self,
        poll_id: str,
        option_id: str,
        *,
        currently_selected: bool | None = None,
        multiple_choice: bool | None = None,
    ) -> PollOut:
        """Toggle ``option_id`` optimistically, then write the change.

        ``currently_selected`` and ``multiple_choice`` default to what the
        cached poll shows.

        Raises:
            NotFoundError: If the poll or option is not in the open thread.
            ConflictError: If the poll is still being created.
            MessagingError: If the write failed; the local poll is restored.
        """
        if is_temp_id(poll_id):
            raise ConflictError("Poll is still being created")
        message = self.cache.find_poll(poll_id)
        if message is None or message.poll is None:
            raise NotFoundError(f"Poll {poll_id} is not in the open thread")
        before = message.poll
        option = before.option(option_id)
        if option is None:
            raise NotFoundError(f"Option {option_id} not found in poll {poll_id}")

        selected = option.selected if currently_selected is None else currently_selected
        multiple = before.multiple_choice if multiple_choice is None else multiple_choice
        after = apply_vote(before, option_id, selected, multiple)
        self.cache.replace_poll(poll_id, after)
        try:
            await self.polls.vote(
                poll_id=poll_id,
                option_id=option_id,
                voter_id=self.sender_id,
                currently_selected=selected,
                multiple_choice=multiple,
            )
        except MessagingError:
            self.cache.replace_poll(poll_id, before)
            logger.warning("Vote on %s reverted", poll_id)
            raise
        return after
