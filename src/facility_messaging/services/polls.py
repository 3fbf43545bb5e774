# src/facility_messaging/services/polls.py
"""Poll creation, assembly and voting."""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable

from facility_messaging.models import Poll, PollVote
from facility_messaging.repositories.messaging_repo import MessagingRepository
from facility_messaging.schemas.message import PollOptionOut, PollOut

logger = logging.getLogger(__name__)

MIN_POLL_OPTIONS = 2


def normalize_question(question: str) -> str:
    """Return the stripped question, rejecting blank input."""
    text = (question or "").strip()
    if not text:
        raise ValueError("A poll needs a question")
    return text


def normalize_options(labels: Iterable[str]) -> list[str]:
    """Strip labels, drop blank ones and require at least two."""
    cleaned = [label.strip() for label in labels if label and label.strip()]
    if len(cleaned) < MIN_POLL_OPTIONS:
        raise ValueError(f"A poll needs at least {MIN_POLL_OPTIONS} options")
    return cleaned


def build_poll(poll: Poll, votes: Iterable[PollVote], voter_id: str | None) -> PollOut:
    """Assemble a poll view with per-option counts and the voter's selection."""
    voters_by_option: dict[str, list[str]] = defaultdict(list)
    for vote in votes:
        voters_by_option[vote.option_id].append(vote.voter_id)

    options = [
        PollOptionOut(
            id=option.id,
            label=option.label,
            position=option.position,
            votes=len(voters_by_option[option.id]),
            selected=voter_id is not None and voter_id in voters_by_option[option.id],
        )
        for option in sorted(poll.options, key=lambda o: o.position)
    ]
    return PollOut(
        id=poll.id,
        question=poll.question,
        multiple_choice=poll.multiple_choice,
        options=options,
    )


def placeholder_poll(temp_id: str, question: str, labels: list[str], multiple_choice: bool) -> PollOut:
    """Return the local stand-in shown while a poll is being created."""
    return PollOut(
        id=temp_id,
        question=question,
        multiple_choice=multiple_choice,
        options=[
            PollOptionOut(id=f"{temp_id}_opt_{index}", label=label, position=index)
            for index, label in enumerate(labels)
        ],
    )


def apply_vote(
    poll: PollOut, option_id: str, currently_selected: bool, multiple_choice: bool
) -> PollOut:
    """Return ``poll`` as it looks right after the voter toggles ``option_id``.

    The toggled option flips its flag and count. On single-choice polls a new
    selection also clears the voter's previous choice.
    """
    options: list[PollOptionOut] = []
    for option in poll.options:
        if option.id == option_id:
            delta = -1 if currently_selected else 1
            options.append(
                option.model_copy(
                    update={"selected": not currently_selected, "votes": max(0, option.votes + delta)}
                )
            )
        elif not multiple_choice and not currently_selected and option.selected:
            options.append(
                option.model_copy(update={"selected": False, "votes": max(0, option.votes - 1)})
            )
        else:
            options.append(option)
    return poll.model_copy(update={"options": options})


class PollService:
    """Reads and writes polls through the repository."""

    def __init__(self, repo: MessagingRepository) -> None:
        self.repo = repo

    async def load_for_messages(
        self, message_ids: Iterable[str], voter_id: str | None
    ) -> dict[str, PollOut]:
        """Return assembled polls keyed by message id."""
        polls = await self.repo.polls_for_messages(message_ids)
        if not polls:
            return {}

        votes_by_poll: dict[str, list[PollVote]] = defaultdict(list)
        for vote in await self.repo.votes_for_polls(poll.id for poll in polls):
            votes_by_poll[vote.poll_id].append(vote)

        return {
            poll.message_id: build_poll(poll, votes_by_poll[poll.id], voter_id)
            for poll in polls
        }

    async def create(
        self,
        *,
        message_id: str,
        question: str,
        labels: list[str],
        multiple_choice: bool,
    ) -> PollOut:
        """Create a poll and its options for an existing message.

        The two writes are independent: a failure between them leaves a poll
        without options behind.
        """
        poll = await self.repo.insert_poll(
            message_id=message_id, question=question, multiple_choice=multiple_choice
        )
        options = await self.repo.insert_poll_options(poll_id=poll.id, labels=labels)
        return PollOut(
            id=poll.id,
            question=question,
            multiple_choice=multiple_choice,
            options=[
                PollOptionOut(id=option.id, label=option.label, position=option.position)
                for option in options
            ],
        )

    async def vote(
        self,
        *,
        poll_id: str,
        option_id: str,
        voter_id: str,
        currently_selected: bool,
        multiple_choice: bool,
    ) -> None:
        """Toggle the voter's choice of ``option_id`` in the store.

        A selected option is withdrawn. Otherwise single-choice polls first
        drop all of the voter's rows, then the new vote is inserted.
        """
        if currently_selected:
            await self.repo.delete_votes(poll_id=poll_id, voter_id=voter_id, option_id=option_id)
            return

        if not multiple_choice:
            await self.repo.delete_votes(poll_id=poll_id, voter_id=voter_id)
        await self.repo.insert_vote(poll_id=poll_id, option_id=option_id, voter_id=voter_id)
        logger.debug("Vote by %s on %s/%s stored", voter_id, poll_id, option_id)
