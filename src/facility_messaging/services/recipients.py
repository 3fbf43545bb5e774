"""Recipient search restricted to the facilities an actor can reach."""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable

from facility_messaging.core.settings import Settings, settings as default_settings
from facility_messaging.models import User
from facility_messaging.models.user import GUARDIAN_ROLES, ROLE_CHILD
from facility_messaging.repositories.messaging_repo import MessagingRepository
from facility_messaging.schemas.recipient import GuardianRecipient, Recipient
from facility_messaging.services.thread_directory import Actor

logger = logging.getLogger(__name__)


def _recipient(user: User) -> Recipient:
    return Recipient(id=user.id, display_name=user.display_name, email=user.email)


class RecipientResolver:
    """Finds guardians an actor may start a conversation with."""

    def __init__(self, repo: MessagingRepository, config: Settings | None = None) -> None:
        self.repo = repo
        self.settings = config or default_settings

    async def accessible_facility_ids(self, actor: Actor) -> set[str]:
        """Return facilities owned by the actor's scope or delegated to the actor."""
        owned = await self.repo.owned_facility_ids(actor.scope_id)
        coordinated = await self.repo.coordinated_facility_ids(actor.id)
        return owned | coordinated

    async def search_recipients(self, query: str, actor: Actor) -> list[Recipient]:
        """Search guardians by their own name or by the name of one of their children.

        A matching child counts only with an active enrollment in an
        accessible facility and is replaced by its guardian. A matching
        guardian counts only when one of their children has such an
        enrollment. Other users are never returned.
        """
        term = (query or "").strip()
        if len(term) < self.settings.recipient_search_min_chars:
            return []

        facility_ids = await self.accessible_facility_ids(actor)
        if not facility_ids:
            logger.debug("Actor %s has no accessible facilities", actor.id)
            return []

        matches = await self.repo.search_users(term, self.settings.recipient_search_limit)
        found: dict[str, Recipient] = {}

        children = [user for user in matches if user.role == ROLE_CHILD]
        if children:
            enrolled = await self.repo.enrolled_user_ids(
                (child.id for child in children), facility_ids
            )
            manager_ids = {
                child.manager_id for child in children if child.id in enrolled and child.manager_id
            }
            for guardian in await self.repo.get_users(manager_ids):
                if not guardian.is_deleted:
                    found.setdefault(guardian.id, _recipient(guardian))

        guardians = [user for user in matches if user.role in GUARDIAN_ROLES]
        if guardians:
            managed = await self.repo.children_of(guardian.id for guardian in guardians)
            enrolled = await self.repo.enrolled_user_ids(
                (child.id for child in managed), facility_ids
            )
            reachable = {child.manager_id for child in managed if child.id in enrolled}
            for guardian in guardians:
                if guardian.id in reachable:
                    found.setdefault(guardian.id, _recipient(guardian))

        return sorted(found.values(), key=lambda r: (r.display_name.lower(), r.id))

    async def recipients_for_children(
        self, child_ids: Iterable[str], actor: Actor
    ) -> list[GuardianRecipient]:
        """Return the guardians of the given children, with the children's names.

        Children without an active enrollment in one of the actor's
        accessible facilities are skipped.
        """
        facility_ids = await self.accessible_facility_ids(actor)
        requested = list(child_ids)
        enrolled = await self.repo.enrolled_user_ids(requested, facility_ids)
        skipped = set(requested) - enrolled
        if skipped:
            logger.info(
                "Skipping children outside the facilities of %s: %s", actor.id, sorted(skipped)
            )

        children = await self.repo.get_users(enrolled)
        names_by_guardian: dict[str, list[str]] = defaultdict(list)
        for child in children:
            if child.is_deleted or not child.manager_id:
                continue
            names_by_guardian[child.manager_id].append(child.display_name)

        guardians = await self.repo.get_users(names_by_guardian)
        result = [
            GuardianRecipient(
                id=guardian.id,
                display_name=guardian.display_name,
                email=guardian.email,
                child_names=sorted(names_by_guardian[guardian.id]),
            )
            for guardian in guardians
            if not guardian.is_deleted
        ]
        return sorted(result, key=lambda r: (r.display_name.lower(), r.id))
