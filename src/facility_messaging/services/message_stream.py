"""Per-thread message stream: authoritative fetch plus the local cache.

The cache holds the messages of the open thread newest first. Every refresh,
whatever triggered it, goes through :func:`merge_messages`, which keeps local
placeholders that are still in flight and never drops a poll it already shows
because a newer payload for the same message arrived without one.
"""

from __future__ import annotations

import logging
from collections.abc import Collection, Sequence

from facility_messaging.core.errors import AccessError, MessagingError, NotFoundError
from facility_messaging.db.time import as_utc
from facility_messaging.models import Message
from facility_messaging.repositories.messaging_repo import MessagingRepository
from facility_messaging.schemas.message import AttachmentOut, MessageOut, PollOut
from facility_messaging.services.block_list import BlockList
from facility_messaging.services.polls import PollService
from facility_messaging.services.read_receipts import ReadReceiptTracker, derive_read_by

logger = logging.getLogger(__name__)


def merge_messages(
    cached: Sequence[MessageOut],
    fresh: Sequence[MessageOut],
    pending_ids: Collection[str] = (),
) -> list[MessageOut]:
    """Merge an authoritative batch into the cached list.

    Args:
        cached: Currently displayed messages, newest first.
        fresh: Authoritative batch, newest first.
        pending_ids: Ids of local messages whose write has not settled yet.

    Returns:
        Pending local messages missing from ``fresh`` (in their current
        order), followed by ``fresh``. A fresh message with no body, no
        attachments and no poll inherits the poll of its cached entry.
    """
    previous = {message.id: message for message in cached}
    fresh_ids = {message.id for message in fresh}

    merged = [
        message
        for message in cached
        if message.id in pending_ids and message.id not in fresh_ids
    ]
    for message in fresh:
        existing = previous.get(message.id)
        if message.is_bare and existing is not None and existing.poll is not None:
            message = message.model_copy(update={"poll": existing.poll})
        merged.append(message)
    return merged


def to_message_out(
    row: Message,
    poll: PollOut | None = None,
    read_by: Sequence[str] = (),
) -> MessageOut:
    """Convert a message row to its view."""
    sender = row.sender
    return MessageOut(
        id=row.id,
        thread_id=row.thread_id,
        sender_id=row.sender_id,
        body=row.body or "",
        created_at=as_utc(row.created_at),
        sender_name=sender.display_name if sender is not None else None,
        attachments=[AttachmentOut.model_validate(item) for item in row.attachments or []],
        poll=poll,
        read_by=list(read_by),
    )


class MessageStreamCache:
    """Ordered messages of the open thread plus the set of pending local ids."""

    def __init__(self, thread_id: str | None = None) -> None:
        self.thread_id = thread_id
        self._messages: list[MessageOut] = []
        self._pending: set[str] = set()

    @property
    def messages(self) -> list[MessageOut]:
        """Return a copy of the cached messages, newest first."""
        return list(self._messages)

    @property
    def pending_ids(self) -> frozenset[str]:
        """Return ids of local messages still waiting for their write."""
        return frozenset(self._pending)

    def reset(self, thread_id: str | None) -> None:
        """Drop everything and start caching ``thread_id``."""
        self.thread_id = thread_id
        self._messages = []
        self._pending = set()

    def merge(self, fresh: Sequence[MessageOut]) -> list[MessageOut]:
        """Merge an authoritative batch; see :func:`merge_messages`."""
        self._messages = merge_messages(self._messages, fresh, self._pending)
        return self.messages

    def get(self, message_id: str) -> MessageOut | None:
        """Return the cached message with ``message_id``."""
        for message in self._messages:
            if message.id == message_id:
                return message
        return None

    def _index(self, message_id: str) -> int | None:
        for index, message in enumerate(self._messages):
            if message.id == message_id:
                return index
        return None

    def insert_placeholder(self, message: MessageOut) -> None:
        """Put a local message at the head and mark it pending."""
        self._messages.insert(0, message)
        self._pending.add(message.id)

    def rekey(self, old_id: str, message: MessageOut, *, pending: bool = False) -> bool:
        """Replace the entry ``old_id`` in place with ``message``.

        Another entry already carrying ``message.id`` (delivered by a refresh
        that raced the write) is dropped so the message keeps the position it
        was submitted at.

        Returns:
            False if ``old_id`` is no longer cached.
        """
        index = self._index(old_id)
        if index is None:
            return False
        self._messages[index] = message
        self._messages = [
            entry
            for position, entry in enumerate(self._messages)
            if position == index or entry.id != message.id
        ]
        self._pending.discard(old_id)
        if pending:
            self._pending.add(message.id)
        else:
            self._pending.discard(message.id)
        return True

    def remove(self, message_id: str) -> MessageOut | None:
        """Remove and return the entry ``message_id``."""
        index = self._index(message_id)
        self._pending.discard(message_id)
        if index is None:
            return None
        return self._messages.pop(index)

    def purge_sender(self, user_id: str) -> int:
        """Remove every message sent by ``user_id``; returns how many."""
        before = len(self._messages)
        self._messages = [message for message in self._messages if message.sender_id != user_id]
        return before - len(self._messages)

    def find_poll(self, poll_id: str) -> MessageOut | None:
        """Return the message carrying poll ``poll_id``."""
        for message in self._messages:
            if message.poll is not None and message.poll.id == poll_id:
                return message
        return None

    def replace_poll(self, poll_id: str, poll: PollOut) -> bool:
        """Swap the poll ``poll_id`` for ``poll`` on the message carrying it."""
        for index, message in enumerate(self._messages):
            if message.poll is not None and message.poll.id == poll_id:
                self._messages[index] = message.model_copy(update={"poll": poll})
                return True
        return False

    def has_poll(self) -> bool:
        """Return True if any cached message carries a poll."""
        return any(message.poll is not None for message in self._messages)


class MessageStream:
    """Loads a thread's messages for one actor and keeps them cached."""

    def __init__(
        self,
        repo: MessagingRepository,
        block_list: BlockList,
        polls: PollService,
        receipts: ReadReceiptTracker,
        actor_id: str,
    ) -> None:
        self.repo = repo
        self.block_list = block_list
        self.polls = polls
        self.receipts = receipts
        self.actor_id = actor_id
        self.cache = MessageStreamCache()

    async def fetch(self, thread_id: str) -> list[MessageOut]:
        """Return the authoritative view of a thread, newest first.

        Messages from blocked senders are dropped (the actor's own are kept),
        polls and read-by lists are attached, and the actor's read cursor is
        moved to the newest message.

        Raises:
            NotFoundError: If the thread does not exist.
            AccessError: If the actor does not participate in it.
        """
        thread = await self.repo.get_thread(thread_id)
        if thread is None:
            raise NotFoundError(f"Thread {thread_id} not found")
        if self.actor_id not in thread.participant_ids:
            raise AccessError(f"User {self.actor_id} is not a participant of {thread_id}")

        rows = await self.repo.list_messages(thread_id)
        visible = [
            row
            for row in rows
            if row.sender_id == self.actor_id or not self.block_list.is_blocked(row.sender_id)
        ]
        visible_ids = [row.id for row in visible]

        polls = await self.polls.load_for_messages(visible_ids, self.actor_id)
        cursors = await self.receipts.cursors(thread_id)
        read_by = derive_read_by(visible_ids, cursors, self.actor_id)

        messages = [to_message_out(row, polls.get(row.id), read_by[row.id]) for row in visible]

        if rows:
            await self._mark_newest_read(thread_id, rows[0].id)
        return messages

    async def _mark_newest_read(self, thread_id: str, message_id: str) -> None:
        try:
            await self.receipts.mark_read(thread_id, self.actor_id, message_id)
        except MessagingError as exc:
            logger.warning("Could not mark thread %s read: %s", thread_id, exc)

    async def load(self, thread_id: str) -> list[MessageOut]:
        """Fetch ``thread_id`` and merge it into the cache.

        Switching threads resets the cache. A failed fetch leaves the cache
        untouched and propagates the error.
        """
        fresh = await self.fetch(thread_id)
        if self.cache.thread_id != thread_id:
            self.cache.reset(thread_id)
        return self.cache.merge(fresh)
