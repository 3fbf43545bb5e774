"""Read-receipt tracking.

Each participant has one cursor per thread pointing at the newest message they
have seen. Whether a participant read a given message is derived from the
positions of both messages in one fetched, newest-first batch: identifiers are
random, so there is no way to compare a cursor with a message that is not part
of the same batch.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence

from facility_messaging.models import ReadCursor
from facility_messaging.repositories.messaging_repo import MessagingRepository

logger = logging.getLogger(__name__)


class ReadReceiptTracker:
    """Reads and advances read cursors."""

    def __init__(self, repo: MessagingRepository) -> None:
        self.repo = repo

    async def mark_read(self, thread_id: str, user_id: str, message_id: str) -> bool:
        """Upsert the (thread, user) cursor; repeating the call is a no-op.

        Returns:
            True if the cursor moved.
        """
        moved = await self.repo.upsert_read_cursor(
            thread_id=thread_id, user_id=user_id, message_id=message_id
        )
        if moved:
            logger.debug("Cursor of %s in %s moved to %s", user_id, thread_id, message_id)
        return moved

    async def cursors(self, thread_id: str) -> list[ReadCursor]:
        """Return all cursors of a thread."""
        return await self.repo.list_read_cursors(thread_id)


def derive_read_by(
    message_ids: Sequence[str],
    cursors: Iterable[ReadCursor],
    self_id: str | None,
) -> dict[str, list[str]]:
    """Map each message id to the other participants that have read it.

    Args:
        message_ids: One fetch batch, newest first.
        cursors: Read cursors of the thread.
        self_id: The viewing user, who is never listed.

    A participant has read message M when their cursor message sits at the
    same index as M or at a smaller one (newer). Cursors pointing at a message
    outside the batch count as not read.
    """
    position = {message_id: index for index, message_id in enumerate(message_ids)}
    read_by: dict[str, list[str]] = {message_id: [] for message_id in message_ids}

    for cursor in sorted(cursors, key=lambda c: c.user_id):
        if cursor.user_id == self_id:
            continue
        cursor_index = position.get(cursor.last_read_message_id)
        if cursor_index is None:
            continue
        for message_id in message_ids[cursor_index:]:
            read_by[message_id].append(cursor.user_id)
    return read_by
