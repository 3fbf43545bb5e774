# src/facility_messaging/services/thread_directory.py
"""Thread directory: which conversations an actor sees, and in what order."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from enum import Enum

from facility_messaging.core.errors import AccessError, ConflictError, NotFoundError
from facility_messaging.db.time import as_utc
from facility_messaging.models import Message, ReadCursor, Thread
from facility_messaging.models.user import ACCESS_SUPERVISOR, GUARDIAN_ROLES, STAFF_ROLES
from facility_messaging.repositories.messaging_repo import MessagingRepository
from facility_messaging.schemas.thread import LastMessageOut, ParticipantOut, ThreadSummary

logger = logging.getLogger(__name__)

UNKNOWN_TITLE = "Unknown"


@dataclass(frozen=True)
class Actor:
    """The signed-in user and the scope their directory is restricted to."""

    id: str
    scope_id: str
    auth_id: str | None = None
    display_name: str = ""
    role: str | None = None


class ThreadFilter(str, Enum):
    """Client-side directory filters."""

    ALL = "all"
    UNREAD = "unread"
    GUARDIANS = "guardians"
    STAFF = "staff"


def sort_threads(threads: Iterable[ThreadSummary]) -> list[ThreadSummary]:
    """Sort by last activity, newest first."""
    return sorted(threads, key=lambda thread: thread.updated_at, reverse=True)


def thread_title(thread: ThreadSummary, actor_id: str | None) -> str:
    """Return the group title, else the other participants' names."""
    if thread.is_group and thread.title:
        return thread.title
    names = [
        participant.display_name
        for participant in thread.participants
        if participant.user_id != actor_id and participant.display_name
    ]
    return ", ".join(names) or UNKNOWN_TITLE


def filter_threads(
    threads: Sequence[ThreadSummary],
    *,
    actor_id: str | None,
    search: str = "",
    mode: ThreadFilter = ThreadFilter.ALL,
) -> list[ThreadSummary]:
    """Filter summaries by a search term (title or preview) and a mode."""
    term = search.strip().lower()
    result: list[ThreadSummary] = []
    for thread in threads:
        if term:
            title = thread_title(thread, actor_id).lower()
            preview = thread.last_message.content.lower() if thread.last_message else ""
            if term not in title and term not in preview:
                continue

        others = [p for p in thread.participants if p.user_id != actor_id]
        if mode is ThreadFilter.UNREAD and not thread.unread:
            continue
        if mode is ThreadFilter.GUARDIANS and not any(p.role in GUARDIAN_ROLES for p in others):
            continue
        if mode is ThreadFilter.STAFF and not any(p.role in STAFF_ROLES for p in others):
            continue
        result.append(thread)
    return result


def touch_thread(
    threads: Sequence[ThreadSummary], thread_id: str, preview: LastMessageOut
) -> list[ThreadSummary]:
    """Show ``preview`` as the newest message of ``thread_id`` and re-sort."""
    updated = [
        thread.model_copy(update={"last_message": preview, "updated_at": preview.created_at})
        if thread.id == thread_id
        else thread
        for thread in threads
    ]
    return sort_threads(updated)


def _summarize(
    thread: Thread,
    last: Message | None,
    cursor: ReadCursor | None,
    actor_id: str,
) -> ThreadSummary:
    participants = [
        ParticipantOut(
            user_id=participant.user_id,
            status=participant.status,
            first_name=participant.user.first_name if participant.user else "",
            family_name=participant.user.family_name if participant.user else "",
            role=participant.user.role if participant.user else None,
        )
        for participant in thread.participants
    ]
    last_message = None
    unread = False
    if last is not None:
        last_message = LastMessageOut(
            id=last.id,
            content=last.body or "",
            created_at=as_utc(last.created_at),
            sender_id=last.sender_id,
        )
        unread = last.sender_id != actor_id and (
            cursor is None or cursor.last_read_message_id != last.id
        )

    created_at = as_utc(thread.created_at)
    return ThreadSummary(
        id=thread.id,
        title=thread.title,
        is_group=thread.is_group,
        created_at=created_at,
        updated_at=last_message.created_at if last_message else created_at,
        participants=participants,
        last_message=last_message,
        unread=unread,
    )


class ThreadDirectory:
    """Resolves actors and lists, filters and creates their threads."""

    def __init__(self, repo: MessagingRepository) -> None:
        self.repo = repo

    async def resolve_actor(self, auth_id: str | None) -> Actor:
        """Map an identity-provider subject to the user row and its scope.

        The scope comes from a ``supervisor`` access grant on either the
        subject or the user row, falling back to the user's record id.

        Raises:
            AccessError: If nobody is signed in, the user row is missing, or
                no scope can be found.
        """
        if not auth_id:
            raise AccessError("Not authenticated")
        user = await self.repo.get_user_by_auth_id(auth_id)
        if user is None:
            raise AccessError("User profile not found")

        grants = await self.repo.list_access([auth_id, user.id], ACCESS_SUPERVISOR)
        scope_id = grants[0].resource_id if grants else user.record_id
        if not scope_id:
            raise AccessError("No supervisor access found")

        return Actor(
            id=user.id,
            scope_id=scope_id,
            auth_id=auth_id,
            display_name=user.display_name,
            role=user.role,
        )

    async def list_threads(self, actor_id: str, scope_id: str | None) -> list[ThreadSummary]:
        """Return the actor's visible threads, most recently active first.

        Threads outside the scope, threads without the actor, disabled
        predefined groups and direct threads with a blocked participant are
        left out. The newest message of every thread comes from one batch
        query.

        Raises:
            AccessError: If the actor or the scope cannot be resolved.
        """
        if not scope_id:
            raise AccessError("No supervisor access found")
        user = await self.repo.get_user(actor_id)
        if user is None or user.is_deleted:
            raise AccessError("User profile not found")

        threads = await self.repo.list_scope_threads(scope_id)
        candidates = [
            thread
            for thread in threads
            if not (thread.is_predefined and not thread.active)
            and actor_id in thread.participant_ids
        ]
        if not candidates:
            return []

        thread_ids = [thread.id for thread in candidates]
        last_by_thread: dict[str, Message] = {}
        for message in await self.repo.latest_messages(thread_ids):
            last_by_thread.setdefault(message.thread_id, message)

        cursors = {
            cursor.thread_id: cursor
            for cursor in await self.repo.cursors_for_user(actor_id, thread_ids)
        }
        blocked = await self.repo.blocked_user_ids(actor_id)

        summaries: list[ThreadSummary] = []
        for thread in candidates:
            if not thread.is_group:
                other = next((uid for uid in thread.participant_ids if uid != actor_id), None)
                if other is not None and other in blocked:
                    continue
            summaries.append(
                _summarize(thread, last_by_thread.get(thread.id), cursors.get(thread.id), actor_id)
            )
        return sort_threads(summaries)

    async def find_or_create_direct_thread(self, actor: Actor, target_id: str) -> str:
        """Return the direct thread between the actor and ``target_id``.

        Searches first; a thread created concurrently by someone else surfaces
        as ConflictError and is looked up again and reused.
        """
        if target_id == actor.id:
            raise ValueError("Cannot start a conversation with yourself")
        target = await self.repo.get_user(target_id)
        if target is None or target.is_deleted:
            raise NotFoundError(f"User {target_id} not found")

        existing = await self.repo.find_direct_thread(actor.id, target_id)
        if existing is not None:
            return existing.id

        try:
            thread = await self.repo.create_thread(
                scope_id=actor.scope_id,
                created_by=actor.id,
                participant_ids=[actor.id, target_id],
            )
        except ConflictError:
            existing = await self.repo.find_direct_thread(actor.id, target_id)
            if existing is None:
                raise
            logger.info("Reusing direct thread %s created concurrently", existing.id)
            return existing.id
        return thread.id

    async def create_group_thread(
        self,
        actor: Actor,
        *,
        title: str,
        participant_ids: Iterable[str],
        facility_id: str | None = None,
        predefined: bool = False,
    ) -> str:
        """Create a group thread with the actor and the given participants."""
        if not title.strip():
            raise ValueError("A group thread needs a title")
        members = [actor.id, *participant_ids]
        thread = await self.repo.create_thread(
            scope_id=actor.scope_id,
            created_by=actor.id,
            participant_ids=members,
            is_group=True,
            title=title.strip(),
            facility_id=facility_id,
            is_predefined=predefined,
        )
        return thread.id
