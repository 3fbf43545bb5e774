from __future__ import annotations

import pytest

from facility_messaging.core.errors import (
    ConflictError,
    NotFoundError,
    PartialWriteError,
    TransportError,
)
from facility_messaging.repositories import MessagingRepository
from facility_messaging.services import MessageStream, OperationState, PendingOperation, SendPipeline
from facility_messaging.services.block_list import BlockList
from facility_messaging.services.polls import PollService
from facility_messaging.services.read_receipts import ReadReceiptTracker
from facility_messaging.services.send_pipeline import OperationKind, is_temp_id
from facility_messaging.services.storage import MemoryObjectStore
from tests.conftest import SCOPE_ID, World


async def _setup(
    repo: MessagingRepository, world: World, store: MemoryObjectStore | None = None
) -> tuple[str, MessageStream, SendPipeline]:
    thread = await repo.create_thread(
        scope_id=SCOPE_ID,
        created_by=world.supervisor.id,
        participant_ids=[world.supervisor.id, world.guardian.id],
    )
    block_list = BlockList(repo, world.supervisor.id)
    polls = PollService(repo)
    stream = MessageStream(repo, block_list, polls, ReadReceiptTracker(repo), world.supervisor.id)
    await stream.load(thread.id)
    pipeline = SendPipeline(
        repo,
        stream.cache,
        polls,
        sender_id=world.supervisor.id,
        sender_name=world.supervisor.display_name,
        object_store=store,
        clock=repo.clock,
    )
    return thread.id, stream, pipeline


def test_operation_settles_exactly_once():
    operation = PendingOperation(kind=OperationKind.TEXT, temp_id="temp_1", thread_id="t-1")

    operation.commit("m1")

    assert operation.state is OperationState.COMMITTED
    assert operation.settled
    with pytest.raises(RuntimeError):
        operation.rollback(TransportError("late"))


def test_temp_ids_are_recognised():
    assert is_temp_id("temp_4")
    assert not is_temp_id("3f2a")
    assert not is_temp_id(None)


@pytest.mark.asyncio
async def test_sent_messages_keep_submission_order(repo: MessagingRepository, world: World):
    thread_id, stream, pipeline = await _setup(repo, world)

    first = await pipeline.send_text(thread_id, "one")
    second = await pipeline.send_text(thread_id, "two")
    third = await pipeline.send_text(thread_id, "three")

    assert [m.body for m in stream.cache.messages] == ["three", "two", "one"]
    assert [m.id for m in stream.cache.messages] == [third.message_id, second.message_id, first.message_id]
    assert stream.cache.pending_ids == frozenset()
    assert all(op.state is OperationState.COMMITTED for op in (first, second, third))


@pytest.mark.asyncio
async def test_blank_text_is_rejected_without_placeholder(repo: MessagingRepository, world: World):
    thread_id, stream, pipeline = await _setup(repo, world)

    with pytest.raises(ValueError):
        await pipeline.send_text(thread_id, "   ")

    assert stream.cache.messages == []


@pytest.mark.asyncio
async def test_failed_text_send_rolls_back_and_returns_draft(repo: MessagingRepository, world: World, mocker):
    thread_id, stream, pipeline = await _setup(repo, world)
    mocker.patch.object(repo, "insert_message", side_effect=TransportError("offline"))

    with pytest.raises(TransportError) as excinfo:
        await pipeline.send_text(thread_id, "Hallo")

    operation = excinfo.value.operation
    assert operation.state is OperationState.ROLLED_BACK
    assert operation.draft == {"text": "Hallo"}
    assert stream.cache.messages == []
    assert stream.cache.pending_ids == frozenset()


@pytest.mark.asyncio
async def test_attachment_is_uploaded_then_referenced(repo: MessagingRepository, world: World):
    store = MemoryObjectStore()
    thread_id, stream, pipeline = await _setup(repo, world, store)

    operation = await pipeline.send_attachment(
        thread_id,
        b"\x89PNG",
        filename="menu plan.png",
        content_type="image/png",
        scope_id=SCOPE_ID,
    )

    [path] = store.objects
    assert path.startswith(f"supervisor/{SCOPE_ID}/{thread_id}/")
    assert path.endswith("_menu_plan.png")
    row = await repo.get_message(operation.message_id)
    assert row.body == ""
    assert row.attachments[0]["type"] == "image"
    assert row.attachments[0]["url"] == f"memory://messenger/{path}"
    cached = stream.cache.get(operation.message_id)
    assert cached.attachments[0].kind == "image"
    assert not cached.pending


@pytest.mark.asyncio
async def test_failed_upload_removes_placeholder(repo: MessagingRepository, world: World, mocker):
    store = MemoryObjectStore()
    thread_id, stream, pipeline = await _setup(repo, world, store)
    mocker.patch.object(store, "upload", side_effect=TransportError("storage down"))

    with pytest.raises(TransportError) as excinfo:
        await pipeline.send_attachment(
            thread_id, b"data", filename="a.pdf", content_type="application/pdf", scope_id=SCOPE_ID
        )

    assert excinfo.value.operation.draft["filename"] == "a.pdf"
    assert stream.cache.messages == []
    assert await repo.list_messages(thread_id) == []


@pytest.mark.asyncio
async def test_attachment_without_store_is_refused(repo: MessagingRepository, world: World):
    thread_id, _, pipeline = await _setup(repo, world)

    with pytest.raises(TransportError):
        await pipeline.send_attachment(
            thread_id, b"data", filename="a.pdf", content_type="application/pdf", scope_id=SCOPE_ID
        )


@pytest.mark.asyncio
async def test_poll_is_replaced_with_real_ids(repo: MessagingRepository, world: World):
    thread_id, stream, pipeline = await _setup(repo, world)

    operation = await pipeline.send_poll(thread_id, "Lunch?", ["Yes", "", "No"])

    assert operation.state is OperationState.COMMITTED
    [message] = stream.cache.messages
    assert message.id == operation.message_id
    assert not message.pending
    assert message.poll.question == "Lunch?"
    assert [option.label for option in message.poll.options] == ["Yes", "No"]
    assert not any(is_temp_id(option.id) for option in message.poll.options)


@pytest.mark.asyncio
async def test_poll_survives_refresh_between_steps(repo: MessagingRepository, world: World, mocker):
    thread_id, stream, pipeline = await _setup(repo, world)
    real_create = pipeline.polls.create
    seen_during_gap: list = []

    async def create_after_refresh(**kwargs):
        # The message exists but has no poll yet; a refresh must not blank it.
        stream.cache.merge(await stream.fetch(thread_id))
        seen_during_gap.append(stream.cache.get(kwargs["message_id"]))
        return await real_create(**kwargs)

    mocker.patch.object(pipeline.polls, "create", side_effect=create_after_refresh)

    operation = await pipeline.send_poll(thread_id, "Lunch?", ["Yes", "No"])

    [during] = seen_during_gap
    assert during.poll is not None
    assert during.poll.question == "Lunch?"
    assert len(stream.cache.messages) == 1
    assert stream.cache.messages[0].id == operation.message_id


@pytest.mark.asyncio
async def test_poll_failure_after_first_step_is_partial(repo: MessagingRepository, world: World, mocker):
    thread_id, stream, pipeline = await _setup(repo, world)
    mocker.patch.object(repo, "insert_poll_options", side_effect=TransportError("offline"))

    with pytest.raises(PartialWriteError) as excinfo:
        await pipeline.send_poll(thread_id, "Lunch?", ["Yes", "No"])

    error = excinfo.value
    assert error.operation.state is OperationState.PARTIAL
    assert await repo.get_message(error.message_id) is not None
    [message] = stream.cache.messages
    assert message.id == error.message_id
    assert not message.pending
    assert stream.cache.pending_ids == frozenset()


@pytest.mark.asyncio
async def test_poll_failure_on_first_step_rolls_back(repo: MessagingRepository, world: World, mocker):
    thread_id, stream, pipeline = await _setup(repo, world)
    mocker.patch.object(repo, "insert_message", side_effect=TransportError("offline"))

    with pytest.raises(TransportError) as excinfo:
        await pipeline.send_poll(thread_id, "Lunch?", ["Yes", "No"], multiple_choice=True)

    assert excinfo.value.operation.state is OperationState.ROLLED_BACK
    assert excinfo.value.operation.draft["options"] == ["Yes", "No"]
    assert stream.cache.messages == []


@pytest.mark.asyncio
async def test_vote_is_optimistic_and_reverted_on_failure(repo: MessagingRepository, world: World, mocker):
    thread_id, stream, pipeline = await _setup(repo, world)
    operation = await pipeline.send_poll(thread_id, "Lunch?", ["Yes", "No"])
    poll = stream.cache.get(operation.message_id).poll
    yes = poll.options[0]

    after = await pipeline.vote(poll.id, yes.id)
    assert after.option(yes.id).votes == 1
    assert stream.cache.find_poll(poll.id).poll.option(yes.id).selected

    mocker.patch.object(repo, "delete_votes", side_effect=TransportError("offline"))
    with pytest.raises(TransportError):
        await pipeline.vote(poll.id, yes.id)

    restored = stream.cache.find_poll(poll.id).poll.option(yes.id)
    assert restored.selected
    assert restored.votes == 1


@pytest.mark.asyncio
async def test_vote_on_unknown_or_pending_poll_is_refused(repo: MessagingRepository, world: World):
    _, _, pipeline = await _setup(repo, world)

    with pytest.raises(NotFoundError):
        await pipeline.vote("missing", "opt")
    with pytest.raises(ConflictError):
        await pipeline.vote("temp_1", "temp_1_opt_0")
