# src/facility_messaging/coordinator.py
"""Messaging coordinator: the one object a screen talks to.

The coordinator owns the caches of one signed-in actor. User actions, feed
events and the poll refresh timer all end in the same stream merge.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine, Iterable
from datetime import datetime
from typing import Any

from facility_messaging.core.errors import (
    AccessError,
    BlockedRecipientError,
    MessagingError,
    NotFoundError,
)
from facility_messaging.core.settings import Settings, settings as default_settings
from facility_messaging.db.time import as_utc
from facility_messaging.realtime.events import ChangeEvent, ChangeKind
from facility_messaging.realtime.feed import Subscription
from facility_messaging.repositories.messaging_repo import MessagingRepository
from facility_messaging.schemas.message import MessageOut, PollOut
from facility_messaging.schemas.recipient import GuardianRecipient, Recipient
from facility_messaging.schemas.thread import LastMessageOut, ThreadSummary
from facility_messaging.services.block_list import BlockList
from facility_messaging.services.identity import IdentityProvider
from facility_messaging.services.message_stream import MessageStream
from facility_messaging.services.polls import PollService
from facility_messaging.services.read_receipts import ReadReceiptTracker
from facility_messaging.services.recipients import RecipientResolver
from facility_messaging.services.send_pipeline import PendingOperation, SendPipeline
from facility_messaging.services.storage import ObjectStore
from facility_messaging.services.thread_directory import Actor, ThreadDirectory, touch_thread

logger = logging.getLogger(__name__)

# Events caused by the actor itself that never change what the actor sees.
_SELF_SILENT_KINDS = frozenset({ChangeKind.VOTE_CHANGE, ChangeKind.READ_CURSOR_CHANGE})


class MessagingCoordinator:
    """Facade over the messaging services for one actor."""

    def __init__(
        self,
        repo: MessagingRepository,
        identity: IdentityProvider,
        object_store: ObjectStore | None = None,
        *,
        config: Settings | None = None,
    ) -> None:
        self.repo = repo
        self.identity = identity
        self.object_store = object_store
        self.settings = config or default_settings

        self.directory = ThreadDirectory(repo)
        self.recipients = RecipientResolver(repo, self.settings)
        self.polls = PollService(repo)
        self.receipts = ReadReceiptTracker(repo)

        self.threads: list[ThreadSummary] = []
        self.open_thread_id: str | None = None

        self._actor: Actor | None = None
        self._block_list: BlockList | None = None
        self._stream: MessageStream | None = None
        self._pipeline: SendPipeline | None = None

        self._generation = 0
        self._refresh_seq = 0
        self._applied_seq = 0
        self._thread_subscription: Subscription | None = None
        self._directory_subscription: Subscription | None = None
        self._timer: asyncio.Task[None] | None = None
        self._timer_stop: asyncio.Event | None = None
        self._background: set[asyncio.Task[Any]] = set()

    # -- lifecycle -------------------------------------------------------

    async def start(self) -> Actor:
        """Resolve the actor and load its block list.

        Raises:
            AccessError: If no actor or scope can be resolved.
        """
        actor = await self.directory.resolve_actor(self.identity.current_auth_id())
        block_list = BlockList(self.repo, actor.id)
        await block_list.load()
        stream = MessageStream(self.repo, block_list, self.polls, self.receipts, actor.id)

        self._actor = actor
        self._block_list = block_list
        self._stream = stream
        self._pipeline = SendPipeline(
            self.repo,
            stream.cache,
            self.polls,
            sender_id=actor.id,
            sender_name=actor.display_name,
            object_store=self.object_store,
            clock=self.repo.clock,
        )
        if self._directory_subscription is None:
            self._directory_subscription = self.repo.feed.subscribe(
                self._on_directory_event, kinds=[ChangeKind.MESSAGE_INSERT]
            )
        logger.info("Messaging started for %s in scope %s", actor.id, actor.scope_id)
        return actor

    async def close(self) -> None:
        """Close the open thread and stop every background task."""
        await self.close_thread()
        if self._directory_subscription is not None:
            self._directory_subscription.unsubscribe()
            self._directory_subscription = None
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        self._background.clear()

    @property
    def actor(self) -> Actor:
        if self._actor is None:
            raise AccessError("Messaging has not been started")
        return self._actor

    async def _ensure_started(self) -> Actor:
        if self._actor is None:
            await self.start()
        return self.actor

    @property
    def block_list(self) -> BlockList:
        if self._block_list is None:
            raise AccessError("Messaging has not been started")
        return self._block_list

    @property
    def stream(self) -> MessageStream:
        if self._stream is None:
            raise AccessError("Messaging has not been started")
        return self._stream

    @property
    def pipeline(self) -> SendPipeline:
        if self._pipeline is None:
            raise AccessError("Messaging has not been started")
        return self._pipeline

    @property
    def messages(self) -> list[MessageOut]:
        """Return the cached messages of the open thread, newest first."""
        if self._stream is None or self.open_thread_id is None:
            return []
        return self._stream.cache.messages

    # -- directory -------------------------------------------------------

    async def list_threads(self) -> list[ThreadSummary]:
        """Reload the actor's thread directory."""
        actor = await self._ensure_started()
        self.threads = await self.directory.list_threads(actor.id, actor.scope_id)
        return list(self.threads)

    async def _on_directory_event(self, event: ChangeEvent) -> None:
        thread_id = event.thread_id
        if thread_id is None or all(thread.id != thread_id for thread in self.threads):
            return
        created_at = event.payload.get("created_at")
        if not isinstance(created_at, datetime):
            created_at = self.repo.clock()
        preview = LastMessageOut(
            id=event.payload.get("id"),
            content=event.payload.get("body") or "",
            created_at=as_utc(created_at),
            sender_id=str(event.payload.get("sender_id") or ""),
        )
        self.threads = touch_thread(self.threads, thread_id, preview)
        if preview.sender_id != self.actor.id and thread_id != self.open_thread_id:
            self.threads = [
                thread.model_copy(update={"unread": True}) if thread.id == thread_id else thread
                for thread in self.threads
            ]

    # -- open thread -----------------------------------------------------

    async def open_thread(self, thread_id: str) -> list[MessageOut]:
        """Show ``thread_id``: load it, subscribe to its changes and start the poll timer.

        Raises:
            NotFoundError: If the thread does not exist.
            AccessError: If the actor is not a participant.
        """
        await self._ensure_started()
        await self.close_thread()

        messages = await self.stream.load(thread_id)
        self._generation += 1
        self.open_thread_id = thread_id
        self._thread_subscription = self.repo.feed.subscribe(
            self.handle_event,
            predicate=lambda event: event.thread_id == thread_id,
        )
        self._start_timer(self._generation)
        self.threads = [
            thread.model_copy(update={"unread": False}) if thread.id == thread_id else thread
            for thread in self.threads
        ]
        logger.debug("Opened thread %s", thread_id)
        return messages

    async def close_thread(self) -> None:
        """Stop updates of the open thread; late results are discarded."""
        self._generation += 1
        if self._thread_subscription is not None:
            self._thread_subscription.unsubscribe()
            self._thread_subscription = None
        await self._stop_timer()
        if self.open_thread_id is not None:
            logger.debug("Closed thread %s", self.open_thread_id)
        self.open_thread_id = None
        if self._stream is not None:
            self._stream.cache.reset(None)

    async def load_messages(self, thread_id: str) -> list[MessageOut]:
        """Fetch ``thread_id``, newest first.

        Only the open thread is merged into the cache; any other thread is
        returned without touching it.

        Raises:
            NotFoundError: If the thread does not exist.
            AccessError: If the actor is not a participant.
        """
        await self._ensure_started()
        if thread_id == self.open_thread_id:
            return await self.refresh_messages()
        return await self.stream.fetch(thread_id)

    async def refresh_messages(self) -> list[MessageOut]:
        """Re-fetch the open thread and merge the result.

        A result that arrives after the view was closed or switched is
        dropped.
        """
        thread_id = self.open_thread_id
        if thread_id is None:
            return []
        generation = self._generation
        self._refresh_seq += 1
        seq = self._refresh_seq
        fresh = await self.stream.fetch(thread_id)
        if generation != self._generation or self.stream.cache.thread_id != thread_id:
            logger.debug("Discarding stale refresh of %s", thread_id)
            return self.messages
        # A refresh started while this one was fetching has already merged newer data.
        if seq < self._applied_seq:
            logger.debug("Discarding superseded refresh of %s", thread_id)
            return self.messages
        self._applied_seq = seq
        return self.stream.cache.merge(fresh)

    async def _reconcile(self, reason: str) -> None:
        try:
            await self.refresh_messages()
        except MessagingError as exc:
            logger.warning("Background refresh (%s) failed: %s", reason, exc)

    async def handle_event(self, event: ChangeEvent) -> None:
        """React to a change in the open thread.

        A message insert without body and attachments is the first step of a
        poll; the poll insert that follows triggers the refresh instead.
        """
        if self.open_thread_id is None or event.thread_id != self.open_thread_id:
            return
        if event.kind is ChangeKind.MESSAGE_INSERT and not (
            event.payload.get("body") or event.payload.get("attachments")
        ):
            return
        if event.kind in _SELF_SILENT_KINDS and event.actor_id == self.actor.id:
            return
        logger.debug("Refreshing %s after %s", self.open_thread_id, event.kind.value)
        await self._reconcile(event.kind.value)

    def _start_timer(self, generation: int) -> None:
        stop = asyncio.Event()
        self._timer_stop = stop
        self._timer = asyncio.create_task(self._poll_timer(generation, stop))

    async def _stop_timer(self) -> None:
        if self._timer_stop is not None:
            self._timer_stop.set()
        if self._timer is not None:
            timer = self._timer
            self._timer = None
            try:
                await timer
            except asyncio.CancelledError:
                pass
        self._timer_stop = None

    async def _poll_timer(self, generation: int, stop: asyncio.Event) -> None:
        """Refresh periodically while the open thread shows a poll."""
        interval = self.settings.poll_refresh_interval_seconds
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
                return
            except asyncio.TimeoutError:
                pass
            if generation != self._generation:
                return
            if self.stream.cache.has_poll():
                await self._reconcile("poll timer")

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task[None]:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _reconcile_later(self, generation: int) -> None:
        await asyncio.sleep(self.settings.poll_reconcile_delay_seconds)
        if generation == self._generation:
            await self._reconcile("poll reconcile")

    # -- sending ---------------------------------------------------------

    async def _writable_thread(self, thread_id: str | None) -> str:
        actor = await self._ensure_started()
        target = thread_id or self.open_thread_id
        if target is None:
            raise NotFoundError("No thread is open")
        thread = await self.repo.get_thread(target)
        if thread is None:
            raise NotFoundError(f"Thread {target} not found")
        participant_ids = thread.participant_ids
        if actor.id not in participant_ids:
            raise AccessError(f"User {actor.id} is not a participant of {target}")
        if not thread.is_group:
            other = next((uid for uid in participant_ids if uid != actor.id), None)
            if self.block_list.is_blocked(other):
                raise BlockedRecipientError(f"User {other} is blocked")
        return target

    async def send_text(self, text: str, *, thread_id: str | None = None) -> PendingOperation:
        """Send text to ``thread_id`` (default: the open thread)."""
        target = await self._writable_thread(thread_id)
        return await self.pipeline.send_text(target, text)

    async def send_attachment(
        self,
        data: bytes,
        *,
        filename: str,
        content_type: str,
        caption: str = "",
        thread_id: str | None = None,
    ) -> PendingOperation:
        """Upload ``data`` and send it to ``thread_id`` (default: the open thread)."""
        target = await self._writable_thread(thread_id)
        return await self.pipeline.send_attachment(
            target,
            data,
            filename=filename,
            content_type=content_type,
            scope_id=self.actor.scope_id,
            caption=caption,
        )

    async def send_poll(
        self,
        question: str,
        options: Iterable[str],
        *,
        multiple_choice: bool = False,
        thread_id: str | None = None,
    ) -> PendingOperation:
        """Create a poll and schedule a delayed reconciliation of the open thread."""
        target = await self._writable_thread(thread_id)
        operation = await self.pipeline.send_poll(
            target, question, options, multiple_choice=multiple_choice
        )
        if target == self.open_thread_id:
            self._spawn(self._reconcile_later(self._generation))
        return operation

    async def vote(
        self,
        poll_id: str,
        option_id: str,
        currently_selected: bool | None = None,
        multiple_choice: bool | None = None,
    ) -> PollOut:
        """Toggle a vote optimistically, then reconcile with the store."""
        await self._ensure_started()
        poll = await self.pipeline.vote(
            poll_id,
            option_id,
            currently_selected=currently_selected,
            multiple_choice=multiple_choice,
        )
        await self._reconcile("vote")
        message = self.stream.cache.find_poll(poll_id)
        return message.poll if message is not None and message.poll is not None else poll

    # -- blocking and reports --------------------------------------------

    async def block(self, target_id: str) -> None:
        """Block ``target_id`` and hide them from the caches right away."""
        actor = await self._ensure_started()
        await self.block_list.block(target_id)
        removed = self.stream.cache.purge_sender(target_id)
        self.threads = [
            thread
            for thread in self.threads
            if thread.is_group
            or (other := thread.other_participant(actor.id)) is None
            or other.user_id != target_id
        ]
        logger.debug("Hid %d cached messages of %s", removed, target_id)

    async def unblock(self, target_id: str) -> None:
        """Unblock ``target_id``; their messages return on the next fetch."""
        await self._ensure_started()
        await self.block_list.unblock(target_id)

    async def report_message(self, message_id: str, reason: str) -> None:
        """Report a message and its sender."""
        await self._ensure_started()
        cached = self.stream.cache.get(message_id) if self.open_thread_id else None
        if cached is not None:
            sender_id = cached.sender_id
        else:
            row = await self.repo.get_message(message_id)
            if row is None:
                raise NotFoundError(f"Message {message_id} not found")
            sender_id = row.sender_id
        await self.block_list.report(message_id=message_id, sender_id=sender_id, reason=reason)
        logger.info("Message %s reported by %s", message_id, self.actor.id)

    # -- recipients ------------------------------------------------------

    async def search_recipients(self, query: str) -> list[Recipient]:
        """Search guardians reachable from the actor's facilities."""
        actor = await self._ensure_started()
        return await self.recipients.search_recipients(query, actor)

    async def recipients_for_children(self, child_ids: Iterable[str]) -> list[GuardianRecipient]:
        """Return the guardians of the given children enrolled in the actor's facilities."""
        actor = await self._ensure_started()
        return await self.recipients.recipients_for_children(child_ids, actor)

    async def start_conversation(self, target_id: str, text: str | None = None) -> str:
        """Find or create the direct thread with ``target_id``, optionally sending ``text``.

        Returns:
            The direct thread id.
        """
        actor = await self._ensure_started()
        if self.block_list.is_blocked(target_id):
            raise BlockedRecipientError(f"User {target_id} is blocked")
        thread_id = await self.directory.find_or_create_direct_thread(actor, target_id)
        if text and text.strip():
            await self.send_text(text, thread_id=thread_id)
        await self.list_threads()
        return thread_id

    async def send_to_guardians(self, child_ids: Iterable[str], text: str) -> dict[str, str]:
        """Send ``text`` to the guardian of each child, one direct thread per guardian.

        Children outside the actor's facilities and guardians the actor blocked
        are skipped.

        Returns:
            Mapping of guardian id to the id of the message they received.
        """
        actor = await self._ensure_started()
        if not (text or "").strip():
            raise ValueError("Cannot send an empty message")

        sent: dict[str, str] = {}
        for guardian in await self.recipients.recipients_for_children(child_ids, actor):
            if self.block_list.is_blocked(guardian.id):
                logger.info("Skipping blocked guardian %s", guardian.id)
                continue
            thread_id = await self.directory.find_or_create_direct_thread(actor, guardian.id)
            operation = await self.send_text(text, thread_id=thread_id)
            if operation.message_id is not None:
                sent[guardian.id] = operation.message_id
        await self.list_threads()
        return sent
