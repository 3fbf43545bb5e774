from __future__ import annotations

import pytest

from facility_messaging.core.settings import Settings
from facility_messaging.repositories import MessagingRepository
from facility_messaging.services import Actor, RecipientResolver
from tests.conftest import OTHER_SCOPE_ID, World


@pytest.fixture()
def resolver(repo: MessagingRepository, test_settings: Settings) -> RecipientResolver:
    return RecipientResolver(repo, test_settings)


@pytest.mark.asyncio
async def test_child_match_is_replaced_by_guardian(resolver: RecipientResolver, supervisor_actor: Actor):
    results = await resolver.search_recipients("lina", supervisor_actor)

    assert [(r.id, r.display_name) for r in results] == [("user-y", "Yann Keller")]


@pytest.mark.asyncio
async def test_guardian_and_child_matches_are_deduplicated(resolver: RecipientResolver, supervisor_actor: Actor):
    results = await resolver.search_recipients("Keller", supervisor_actor)

    assert [r.id for r in results] == ["user-y"]
    assert results[0].email == "yann@example.org"


@pytest.mark.asyncio
async def test_child_outside_accessible_facilities_is_not_found(
    resolver: RecipientResolver, supervisor_actor: Actor
):
    assert await resolver.search_recipients("Mia", supervisor_actor) == []
    assert await resolver.search_recipients("Otto", supervisor_actor) == []


@pytest.mark.asyncio
async def test_staff_matches_are_not_recipients(resolver: RecipientResolver, supervisor_actor: Actor):
    assert await resolver.search_recipients("Zoe", supervisor_actor) == []


@pytest.mark.asyncio
async def test_short_queries_return_nothing(resolver: RecipientResolver, supervisor_actor: Actor, mocker):
    search = mocker.spy(resolver.repo, "search_users")

    assert await resolver.search_recipients(" l ", supervisor_actor) == []
    assert search.call_count == 0


@pytest.mark.asyncio
async def test_actor_without_facilities_gets_nothing(resolver: RecipientResolver, world: World):
    outsider = Actor(id=world.other_guardian.id, scope_id="sup-empty")

    assert await resolver.search_recipients("Keller", outsider) == []


@pytest.mark.asyncio
async def test_delegated_facilities_count_as_accessible(resolver: RecipientResolver, world: World):
    staff_elsewhere = Actor(id=world.staff.id, scope_id=OTHER_SCOPE_ID)

    facilities = await resolver.accessible_facility_ids(staff_elsewhere)
    results = await resolver.search_recipients("lina", staff_elsewhere)

    assert facilities == {"fac-1", "fac-2"}
    assert [r.id for r in results] == ["user-y"]


@pytest.mark.asyncio
async def test_deleted_facilities_are_not_accessible(resolver: RecipientResolver, supervisor_actor: Actor):
    assert await resolver.accessible_facility_ids(supervisor_actor) == {"fac-1"}


@pytest.mark.asyncio
async def test_recipients_for_children_groups_children_by_guardian(resolver: RecipientResolver, world: World):
    staff_elsewhere = Actor(id=world.staff.id, scope_id=OTHER_SCOPE_ID)

    results = await resolver.recipients_for_children([world.child.id, world.other_child.id], staff_elsewhere)

    assert [(r.id, r.child_names) for r in results] == [
        ("user-w", ["Mia Otto"]),
        ("user-y", ["Lina Keller"]),
    ]


@pytest.mark.asyncio
async def test_recipients_for_children_skips_children_outside_the_facilities(
    resolver: RecipientResolver, supervisor_actor: Actor, world: World
):
    results = await resolver.recipients_for_children(
        [world.child.id, world.other_child.id, "child-ghost"], supervisor_actor
    )

    assert [r.id for r in results] == ["user-y"]
    assert await resolver.recipients_for_children([world.child.id], Actor(id="user-x", scope_id="sup-empty")) == []


@pytest.mark.asyncio
async def test_search_scope_is_the_actor_scope(resolver: RecipientResolver, world: World):
    foreign_supervisor = Actor(id="user-nobody", scope_id=OTHER_SCOPE_ID)

    assert [r.id for r in await resolver.search_recipients("Otto", foreign_supervisor)] == ["user-w"]
    assert await resolver.search_recipients("Keller", foreign_supervisor) == []
