# src/facility_messaging/services/block_list.py
"""Block list for the current actor."""

from __future__ import annotations

import logging

from facility_messaging.core.errors import ConflictError
from facility_messaging.repositories.messaging_repo import MessagingRepository

logger = logging.getLogger(__name__)

REPORT_REASONS: tuple[str, ...] = (
    "Spam or advertising",
    "Harassment or bullying",
    "Hate speech",
    "Nudity or sexual content",
    "Violence or dangerous acts",
    "Other",
)


class BlockList:
    """Directed block edges owned by one actor.

    Blocking is a visibility filter for the actor only; the blocked user's
    threads and messages stay in the store untouched.
    """

    def __init__(self, repo: MessagingRepository, actor_id: str) -> None:
        self.repo = repo
        self.actor_id = actor_id
        self._blocked: set[str] = set()

    async def load(self) -> frozenset[str]:
        """Reload the actor's block edges from the store."""
        self._blocked = await self.repo.blocked_user_ids(self.actor_id)
        return self.blocked_ids

    @property
    def blocked_ids(self) -> frozenset[str]:
        """Return the ids blocked by the actor."""
        return frozenset(self._blocked)

    def is_blocked(self, user_id: str | None) -> bool:
        """Return True if the actor blocked ``user_id``."""
        return user_id is not None and user_id in self._blocked

    async def block(self, target_id: str) -> None:
        """Block ``target_id``; blocking twice is not an error."""
        if target_id == self.actor_id:
            raise ValueError("Users cannot block themselves")
        try:
            await self.repo.insert_block(blocked_by=self.actor_id, blocked_user_id=target_id)
        except ConflictError:
            logger.debug("User %s already blocked by %s", target_id, self.actor_id)
        self._blocked.add(target_id)
        logger.info("User %s blocked by %s", target_id, self.actor_id)

    async def unblock(self, target_id: str) -> None:
        """Remove the block edge to ``target_id`` if it exists."""
        await self.repo.delete_block(blocked_by=self.actor_id, blocked_user_id=target_id)
        self._blocked.discard(target_id)
        logger.info("User %s unblocked by %s", target_id, self.actor_id)

    async def report(self, *, message_id: str | None, sender_id: str, reason: str) -> None:
        """File a report against a message and its sender."""
        if reason not in REPORT_REASONS:
            raise ValueError(f"Unknown report reason: {reason!r}")
        await self.repo.insert_report(
            message_id=message_id,
            reported_user_id=sender_id,
            reporter_user_id=self.actor_id,
            reason=reason,
        )
