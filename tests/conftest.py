# tests/conftest.py
from __future__ import annotations

from collections.abc import AsyncIterator, Callable, Iterator
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from facility_messaging.coordinator import MessagingCoordinator
from facility_messaging.core.settings import Settings
from facility_messaging.db import create_tables, drop_tables
from facility_messaging.models import (
    ChildEnrollment,
    CoordinatorFacility,
    Facility,
    User,
    UserAccess,
)
from facility_messaging.models.user import ACCESS_SUPERVISOR
from facility_messaging.realtime import ChangeFeed
from facility_messaging.repositories import MessagingRepository
from facility_messaging.services.identity import StaticIdentityProvider
from facility_messaging.services.storage import MemoryObjectStore, ObjectStore
from facility_messaging.services.thread_directory import Actor

TEST_DB_URL = "sqlite://"
SCOPE_ID = "sup-1"
OTHER_SCOPE_ID = "sup-2"

_TEST_SETTINGS_INSTANCE = Settings().model_copy(
    update={
        "poll_refresh_interval_seconds": 0.05,
        "poll_reconcile_delay_seconds": 0.01,
    }
)


class TickingClock:
    """Clock that advances by ``step`` on every call."""

    def __init__(
        self,
        start: datetime = datetime(2024, 5, 6, 8, 0, tzinfo=UTC),
        step: timedelta = timedelta(seconds=1),
    ) -> None:
        self.current = start
        self.step = step

    def __call__(self) -> datetime:
        value = self.current
        self.current += self.step
        return value


@dataclass
class World:
    """Seeded people and facilities shared by most tests."""

    supervisor: User
    guardian: User
    staff: User
    child: User
    other_guardian: User
    other_child: User
    owned_facility: Facility
    foreign_facility: Facility


@pytest.fixture()
def engine() -> Iterator[Engine]:
    engine = create_engine(
        TEST_DB_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_tables(engine)
    try:
        yield engine
    finally:
        drop_tables(engine)
        engine.dispose()


@pytest.fixture()
def db_session(engine: Engine) -> Iterator[Session]:
    SessionLocal = sessionmaker(
        bind=engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def clock() -> TickingClock:
    return TickingClock()


@pytest.fixture()
def feed() -> ChangeFeed:
    return ChangeFeed()


@pytest.fixture()
def repo(db_session: Session, feed: ChangeFeed, clock: TickingClock) -> MessagingRepository:
    return MessagingRepository(db_session, feed, clock=clock)


@pytest.fixture(scope="session")
def test_settings() -> Settings:
    """Settings with short timer intervals."""
    return _TEST_SETTINGS_INSTANCE


@pytest.fixture()
def world(db_session: Session) -> World:
    """Seed a supervisor scope with one owned and one foreign facility."""
    owned = Facility(id="fac-1", name="Sunflower", supervisor_id=SCOPE_ID)
    foreign = Facility(id="fac-2", name="Elsewhere", supervisor_id=OTHER_SCOPE_ID)
    retired = Facility(id="fac-3", name="Closed", supervisor_id=SCOPE_ID, is_deleted=True)

    supervisor = User(
        id="user-x",
        auth_id="auth-x",
        record_id=SCOPE_ID,
        first_name="Xenia",
        family_name="Brandt",
        email="xenia@example.org",
        role="supervisor",
    )
    guardian = User(
        id="user-y",
        auth_id="auth-y",
        first_name="Yann",
        family_name="Keller",
        email="yann@example.org",
        role="guardian",
    )
    staff = User(
        id="user-z",
        auth_id="auth-z",
        first_name="Zoe",
        family_name="Adler",
        email="zoe@example.org",
        role="staff",
    )
    child = User(
        id="child-lina",
        first_name="Lina",
        family_name="Keller",
        role="child",
        manager_id="user-y",
    )
    other_guardian = User(
        id="user-w",
        auth_id="auth-w",
        first_name="Wanda",
        family_name="Otto",
        email="wanda@example.org",
        role="parent",
    )
    other_child = User(
        id="child-mia",
        first_name="Mia",
        family_name="Otto",
        role="child",
        manager_id="user-w",
    )

    db_session.add_all(
        [
            owned,
            foreign,
            retired,
            supervisor,
            guardian,
            staff,
            child,
            other_guardian,
            other_child,
            ChildEnrollment(user_id="child-lina", facility_id="fac-1"),
            ChildEnrollment(user_id="child-mia", facility_id="fac-2"),
            CoordinatorFacility(staff_user_id="user-z", facility_id="fac-1"),
            # Guardians and staff reach the scope through explicit grants.
            UserAccess(user_id="auth-y", resource_type=ACCESS_SUPERVISOR, resource_id=SCOPE_ID),
            UserAccess(user_id="user-z", resource_type=ACCESS_SUPERVISOR, resource_id=SCOPE_ID),
            UserAccess(user_id="auth-w", resource_type=ACCESS_SUPERVISOR, resource_id=SCOPE_ID),
        ]
    )
    db_session.commit()
    return World(
        supervisor=supervisor,
        guardian=guardian,
        staff=staff,
        child=child,
        other_guardian=other_guardian,
        other_child=other_child,
        owned_facility=owned,
        foreign_facility=foreign,
    )


@pytest.fixture()
def supervisor_actor(world: World) -> Actor:
    return Actor(
        id=world.supervisor.id,
        scope_id=SCOPE_ID,
        auth_id=world.supervisor.auth_id,
        display_name=world.supervisor.display_name,
        role=world.supervisor.role,
    )


@pytest.fixture()
def object_store() -> MemoryObjectStore:
    return MemoryObjectStore()


@pytest_asyncio.fixture()
async def make_coordinator(
    repo: MessagingRepository,
    world: World,
    test_settings: Settings,
    object_store: MemoryObjectStore,
) -> AsyncIterator[Callable[..., MessagingCoordinator]]:
    """Build coordinators for seeded users; all are closed after the test."""
    created: list[MessagingCoordinator] = []

    def _make(auth_id: str, store: ObjectStore | None = None) -> MessagingCoordinator:
        coordinator = MessagingCoordinator(
            repo,
            StaticIdentityProvider(auth_id),
            store or object_store,
            config=test_settings,
        )
        created.append(coordinator)
        return coordinator

    yield _make

    for coordinator in created:
        await coordinator.close()
