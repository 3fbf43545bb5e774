"""Data access for threads, messages, polls, cursors and blocks.

The repository is the durable store seen by the messaging core: row
create/read/update/delete with equality, membership and range filters,
one-hop embedding of participants and senders, and a change notification
published on the :class:`ChangeFeed` after every committed write.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from facility_messaging.core.errors import ConflictError, NotFoundError, TransportError
from facility_messaging.db.time import utcnow
from facility_messaging.models import (
    BlockEdge,
    ChildEnrollment,
    CoordinatorFacility,
    Facility,
    Message,
    MessageReport,
    Poll,
    PollOption,
    PollVote,
    ReadCursor,
    Thread,
    ThreadParticipant,
    User,
    UserAccess,
)
from facility_messaging.models.thread import direct_key
from facility_messaging.realtime.events import ChangeEvent, ChangeKind
from facility_messaging.realtime.feed import ChangeFeed

__all__ = ["MessagingRepository"]

logger = logging.getLogger(__name__)


def _escape_like(fragment: str) -> str:
    return fragment.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class MessagingRepository:
    """Thin wrapper around database access for messaging entities."""

    def __init__(
        self,
        session: Session,
        feed: ChangeFeed | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """Initialize the repository.

        Args:
            session: SQLAlchemy session bound to the shared store.
            feed: Channel receiving a change event after each committed write.
            clock: Source of creation timestamps for new rows.
        """
        self.session = session
        self.feed = feed or ChangeFeed()
        self.clock = clock

    @contextmanager
    def _translate_errors(self, action: str) -> Iterator[None]:
        """Map SQLAlchemy failures onto the messaging error taxonomy."""
        try:
            yield
        except IntegrityError as exc:
            self.session.rollback()
            raise ConflictError(f"{action} conflicts with existing data") from exc
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise TransportError(f"{action} failed: {exc}") from exc

    async def _publish(self, kind: ChangeKind, table: str, payload: dict[str, Any]) -> None:
        await self.feed.publish(ChangeEvent(kind=kind, payload=payload, table=table))

    # -- users and scope -------------------------------------------------

    async def get_user(self, user_id: str) -> User | None:
        """Return a user by row id."""
        with self._translate_errors("Loading user"):
            return self.session.get(User, user_id)

    async def get_user_by_auth_id(self, auth_id: str) -> User | None:
        """Return the non-deleted user linked to an identity-provider subject."""
        with self._translate_errors("Resolving user"):
            return self.session.scalars(
                select(User).where(User.auth_id == auth_id, User.is_deleted.is_(False))
            ).first()

    async def get_users(self, user_ids: Iterable[str]) -> list[User]:
        """Return the users with the given ids."""
        ids = list(set(user_ids))
        if not ids:
            return []
        with self._translate_errors("Loading users"):
            return list(self.session.scalars(select(User).where(User.id.in_(ids))))

    async def list_access(self, subject_ids: Iterable[str], resource_type: str) -> list[UserAccess]:
        """Return access grants of one resource type for any of the subjects."""
        ids = [subject for subject in subject_ids if subject]
        if not ids:
            return []
        with self._translate_errors("Loading access grants"):
            return list(
                self.session.scalars(
                    select(UserAccess)
                    .where(UserAccess.user_id.in_(ids), UserAccess.resource_type == resource_type)
                    .order_by(UserAccess.id)
                )
            )

    # -- facilities ------------------------------------------------------

    async def owned_facility_ids(self, supervisor_id: str) -> set[str]:
        """Return ids of non-deleted facilities owned by a supervisor scope."""
        with self._translate_errors("Loading facilities"):
            rows = self.session.scalars(
                select(Facility.id).where(
                    Facility.supervisor_id == supervisor_id,
                    Facility.is_deleted.is_(False),
                )
            )
            return set(rows)

    async def coordinated_facility_ids(self, staff_user_id: str) -> set[str]:
        """Return ids of facilities delegated to a staff member."""
        with self._translate_errors("Loading coordinated facilities"):
            rows = self.session.scalars(
                select(CoordinatorFacility.facility_id)
                .join(Facility, Facility.id == CoordinatorFacility.facility_id)
                .where(
                    CoordinatorFacility.staff_user_id == staff_user_id,
                    Facility.is_deleted.is_(False),
                )
            )
            return set(rows)

    async def search_users(self, fragment: str, limit: int) -> list[User]:
        """Return non-deleted users whose first or family name contains ``fragment``."""
        pattern = f"%{_escape_like(fragment)}%"
        with self._translate_errors("Searching users"):
            return list(
                self.session.scalars(
                    select(User)
                    .where(
                        or_(
                            User.first_name.ilike(pattern, escape="\\"),
                            User.family_name.ilike(pattern, escape="\\"),
                        ),
                        User.is_deleted.is_(False),
                    )
                    .order_by(User.family_name, User.first_name, User.id)
                    .limit(limit)
                )
            )

    async def enrolled_user_ids(
        self, user_ids: Iterable[str], facility_ids: Iterable[str]
    ) -> set[str]:
        """Return which users have an active enrollment in any of the facilities."""
        users = list(set(user_ids))
        facilities = list(set(facility_ids))
        if not users or not facilities:
            return set()
        with self._translate_errors("Loading enrollments"):
            rows = self.session.scalars(
                select(ChildEnrollment.user_id).where(
                    ChildEnrollment.user_id.in_(users),
                    ChildEnrollment.facility_id.in_(facilities),
                    ChildEnrollment.is_deleted.is_(False),
                )
            )
            return set(rows)

    async def children_of(self, guardian_ids: Iterable[str]) -> list[User]:
        """Return non-deleted children managed by any of the guardians."""
        ids = list(set(guardian_ids))
        if not ids:
            return []
        with self._translate_errors("Loading children"):
            return list(
                self.session.scalars(
                    select(User).where(User.manager_id.in_(ids), User.is_deleted.is_(False))
                )
            )

    # -- threads ---------------------------------------------------------

    async def list_scope_threads(self, scope_id: str) -> list[Thread]:
        """Return every thread of a scope with participants embedded, newest first."""
        with self._translate_errors("Loading threads"):
            return list(
                self.session.scalars(
                    select(Thread)
                    .where(Thread.supervisor_id == scope_id)
                    .order_by(Thread.created_at.desc(), Thread.id.desc())
                )
            )

    async def get_thread(self, thread_id: str) -> Thread | None:
        """Return a thread by id."""
        with self._translate_errors("Loading thread"):
            return self.session.get(Thread, thread_id)

    async def find_direct_thread(self, user_a: str, user_b: str) -> Thread | None:
        """Return the direct thread between two users, if one exists."""
        with self._translate_errors("Looking up direct thread"):
            return self.session.scalars(
                select(Thread).where(
                    Thread.direct_key == direct_key(user_a, user_b),
                    Thread.is_group.is_(False),
                )
            ).first()

    async def create_thread(
        self,
        *,
        scope_id: str,
        created_by: str,
        participant_ids: Sequence[str],
        is_group: bool = False,
        title: str | None = None,
        facility_id: str | None = None,
        is_predefined: bool = False,
    ) -> Thread:
        """Insert a thread together with its participants.

        Raises:
            ConflictError: If a direct thread for the same pair already exists.
        """
        members = list(dict.fromkeys(participant_ids))
        if not is_group and len(members) != 2:
            raise ValueError("A direct thread needs exactly two participants")

        thread = Thread(
            supervisor_id=scope_id,
            created_by=created_by,
            is_group=is_group,
            title=title,
            facility_id=facility_id,
            is_predefined=is_predefined,
            direct_key=None if is_group else direct_key(members[0], members[1]),
            created_at=self.clock(),
        )
        thread.participants = [ThreadParticipant(user_id=user_id) for user_id in members]
        with self._translate_errors("Creating thread"):
            self.session.add(thread)
            self.session.commit()
        logger.info("Created %s thread %s", "group" if is_group else "direct", thread.id)
        return thread

    async def set_thread_active(self, thread_id: str, active: bool) -> Thread:
        """Enable or disable a (predefined) group thread."""
        with self._translate_errors("Updating thread"):
            thread = self.session.get(Thread, thread_id)
            if thread is None:
                raise NotFoundError(f"Thread {thread_id} not found")
            thread.active = active
            self.session.commit()
            return thread

    async def latest_messages(self, thread_ids: Iterable[str]) -> list[Message]:
        """Return all messages of the given threads in one batch, newest first."""
        ids = list(set(thread_ids))
        if not ids:
            return []
        with self._translate_errors("Loading last messages"):
            return list(
                self.session.scalars(
                    select(Message)
                    .where(Message.thread_id.in_(ids))
                    .order_by(Message.created_at.desc(), Message.id.desc())
                )
            )

    # -- messages --------------------------------------------------------

    async def list_messages(self, thread_id: str) -> list[Message]:
        """Return a thread's messages with senders embedded, newest first."""
        with self._translate_errors("Loading messages"):
            return list(
                self.session.scalars(
                    select(Message)
                    .where(Message.thread_id == thread_id)
                    .order_by(Message.created_at.desc(), Message.id.desc())
                )
            )

    async def get_message(self, message_id: str) -> Message | None:
        """Return a message by id."""
        with self._translate_errors("Loading message"):
            return self.session.get(Message, message_id)

    async def insert_message(
        self,
        *,
        thread_id: str,
        sender_id: str,
        body: str = "",
        attachments: Sequence[dict[str, Any]] = (),
    ) -> Message:
        """Insert a message and notify subscribers."""
        message = Message(
            thread_id=thread_id,
            sender_id=sender_id,
            body=body,
            attachments=list(attachments),
            created_at=self.clock(),
        )
        with self._translate_errors("Sending message"):
            self.session.add(message)
            self.session.commit()

        await self._publish(
            ChangeKind.MESSAGE_INSERT,
            Message.__tablename__,
            {
                "id": message.id,
                "thread_id": thread_id,
                "sender_id": sender_id,
                "body": body,
                "attachments": list(attachments),
                "created_at": message.created_at,
            },
        )
        return message

    # -- polls -----------------------------------------------------------

    async def polls_for_messages(self, message_ids: Iterable[str]) -> list[Poll]:
        """Return polls (with options) attached to any of the messages."""
        ids = list(set(message_ids))
        if not ids:
            return []
        with self._translate_errors("Loading polls"):
            return list(self.session.scalars(select(Poll).where(Poll.message_id.in_(ids))))

    async def votes_for_polls(self, poll_ids: Iterable[str]) -> list[PollVote]:
        """Return every vote row of the given polls."""
        ids = list(set(poll_ids))
        if not ids:
            return []
        with self._translate_errors("Loading votes"):
            return list(
                self.session.scalars(
                    select(PollVote).where(PollVote.poll_id.in_(ids)).order_by(PollVote.id)
                )
            )

    async def get_poll(self, poll_id: str) -> Poll | None:
        """Return a poll by id."""
        with self._translate_errors("Loading poll"):
            return self.session.get(Poll, poll_id)

    def _poll_thread_id(self, poll: Poll) -> str | None:
        message = self.session.get(Message, poll.message_id)
        return message.thread_id if message is not None else None

    async def insert_poll(self, *, message_id: str, question: str, multiple_choice: bool) -> Poll:
        """Attach a poll to an existing message."""
        with self._translate_errors("Creating poll"):
            message = self.session.get(Message, message_id)
            if message is None:
                raise NotFoundError(f"Message {message_id} not found")
            poll = Poll(
                message_id=message_id,
                question=question,
                multiple_choice=multiple_choice,
                created_at=self.clock(),
            )
            self.session.add(poll)
            self.session.commit()
            thread_id = message.thread_id

        await self._publish(
            ChangeKind.POLL_INSERT,
            Poll.__tablename__,
            {"id": poll.id, "message_id": message_id, "thread_id": thread_id},
        )
        return poll

    async def insert_poll_options(self, *, poll_id: str, labels: Sequence[str]) -> list[PollOption]:
        """Insert the options of a poll, positioned in the given order."""
        with self._translate_errors("Creating poll options"):
            poll = self.session.get(Poll, poll_id)
            if poll is None:
                raise NotFoundError(f"Poll {poll_id} not found")
            options = [
                PollOption(poll_id=poll_id, label=label, position=position)
                for position, label in enumerate(labels)
            ]
            self.session.add_all(options)
            self.session.commit()
            self.session.refresh(poll)
            thread_id = self._poll_thread_id(poll)

        await self._publish(
            ChangeKind.POLL_INSERT,
            PollOption.__tablename__,
            {"poll_id": poll_id, "message_id": poll.message_id, "thread_id": thread_id},
        )
        return options

    async def delete_votes(
        self, *, poll_id: str, voter_id: str, option_id: str | None = None
    ) -> int:
        """Delete a voter's rows for a poll, or for one option only.

        Returns:
            Number of deleted rows.
        """
        stmt = delete(PollVote).where(PollVote.poll_id == poll_id, PollVote.voter_id == voter_id)
        if option_id is not None:
            stmt = stmt.where(PollVote.option_id == option_id)

        with self._translate_errors("Removing vote"):
            poll = self.session.get(Poll, poll_id)
            if poll is None:
                raise NotFoundError(f"Poll {poll_id} not found")
            removed = self.session.execute(stmt).rowcount or 0
            self.session.commit()
            thread_id = self._poll_thread_id(poll)

        if removed:
            await self._publish(
                ChangeKind.VOTE_CHANGE,
                PollVote.__tablename__,
                {
                    "poll_id": poll_id,
                    "option_id": option_id,
                    "voter_id": voter_id,
                    "thread_id": thread_id,
                    "deleted": removed,
                },
            )
        return removed

    async def insert_vote(self, *, poll_id: str, option_id: str, voter_id: str) -> PollVote:
        """Insert a vote.

        Raises:
            NotFoundError: If the poll or the option does not exist.
            ConflictError: If the voter already voted on a single-choice poll,
                or already chose this option.
        """
        with self._translate_errors("Casting vote"):
            poll = self.session.get(Poll, poll_id)
            if poll is None:
                raise NotFoundError(f"Poll {poll_id} not found")
            if all(option.id != option_id for option in poll.options):
                raise NotFoundError(f"Option {option_id} not found in poll {poll_id}")
            if not poll.multiple_choice:
                existing = self.session.scalar(
                    select(func.count())
                    .select_from(PollVote)
                    .where(PollVote.poll_id == poll_id, PollVote.voter_id == voter_id)
                )
                if existing:
                    raise ConflictError(f"Voter already voted on single-choice poll {poll_id}")

            vote = PollVote(poll_id=poll_id, option_id=option_id, voter_id=voter_id)
            self.session.add(vote)
            self.session.commit()
            thread_id = self._poll_thread_id(poll)

        await self._publish(
            ChangeKind.VOTE_CHANGE,
            PollVote.__tablename__,
            {
                "id": vote.id,
                "poll_id": poll_id,
                "option_id": option_id,
                "voter_id": voter_id,
                "thread_id": thread_id,
            },
        )
        return vote

    # -- read cursors ----------------------------------------------------

    async def list_read_cursors(self, thread_id: str) -> list[ReadCursor]:
        """Return every participant's cursor for a thread."""
        with self._translate_errors("Loading read receipts"):
            return list(
                self.session.scalars(
                    select(ReadCursor)
                    .where(ReadCursor.thread_id == thread_id)
                    .order_by(ReadCursor.user_id)
                )
            )

    async def cursors_for_user(self, user_id: str, thread_ids: Iterable[str]) -> list[ReadCursor]:
        """Return one user's cursors across several threads."""
        ids = list(set(thread_ids))
        if not ids:
            return []
        with self._translate_errors("Loading read receipts"):
            return list(
                self.session.scalars(
                    select(ReadCursor).where(
                        ReadCursor.user_id == user_id, ReadCursor.thread_id.in_(ids)
                    )
                )
            )

    async def upsert_read_cursor(self, *, thread_id: str, user_id: str, message_id: str) -> bool:
        """Point a user's cursor at ``message_id``.

        Returns:
            True if the cursor moved, False if it already pointed there.
        """
        with self._translate_errors("Marking thread read"):
            cursor = self.session.get(ReadCursor, (thread_id, user_id))
            if cursor is not None and cursor.last_read_message_id == message_id:
                return False
            if cursor is None:
                cursor = ReadCursor(thread_id=thread_id, user_id=user_id)
                self.session.add(cursor)
            cursor.last_read_message_id = message_id
            cursor.read_at = self.clock()
            self.session.commit()

        await self._publish(
            ChangeKind.READ_CURSOR_CHANGE,
            ReadCursor.__tablename__,
            {"thread_id": thread_id, "user_id": user_id, "last_read_message_id": message_id},
        )
        return True

    # -- blocks and reports ----------------------------------------------

    async def blocked_user_ids(self, blocked_by: str) -> set[str]:
        """Return the users blocked by ``blocked_by``."""
        with self._translate_errors("Loading blocked users"):
            rows = self.session.scalars(
                select(BlockEdge.blocked_user_id).where(BlockEdge.blocked_by == blocked_by)
            )
            return set(rows)

    async def insert_block(self, *, blocked_by: str, blocked_user_id: str) -> BlockEdge:
        """Insert a block edge.

        Raises:
            ConflictError: If the edge already exists.
        """
        edge = BlockEdge(
            blocked_by=blocked_by,
            blocked_user_id=blocked_user_id,
            created_at=self.clock(),
        )
        with self._translate_errors("Blocking user"):
            self.session.add(edge)
            self.session.commit()
        return edge

    async def delete_block(self, *, blocked_by: str, blocked_user_id: str) -> bool:
        """Remove a block edge; returns False if there was none."""
        with self._translate_errors("Unblocking user"):
            removed = self.session.execute(
                delete(BlockEdge).where(
                    BlockEdge.blocked_by == blocked_by,
                    BlockEdge.blocked_user_id == blocked_user_id,
                )
            ).rowcount
            self.session.commit()
        return bool(removed)

    async def insert_report(
        self,
        *,
        message_id: str | None,
        reported_user_id: str,
        reporter_user_id: str,
        reason: str,
        source: str = "staff",
    ) -> MessageReport:
        """Store a report about a message and its sender."""
        report = MessageReport(
            message_id=message_id,
            reported_user_id=reported_user_id,
            reporter_user_id=reporter_user_id,
            reason=reason,
            source=source,
            created_at=self.clock(),
        )
        with self._translate_errors("Reporting message"):
            self.session.add(report)
            self.session.commit()
        return report
