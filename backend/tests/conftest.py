import os

os.environ.setdefault("UNCONF_DATABASE_URL", "sqlite+pysqlite://")
os.environ.setdefault("UNCONF_JWT_SECRET_KEY", "test-secret")

from types import SimpleNamespace  # noqa: E402
from uuid import uuid4  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from unconf.api.deps import get_db, get_engine  # noqa: E402
from unconf.core.security import create_access_token  # noqa: E402
from unconf.db.bootstrap import ensure_runtime_schema  # noqa: E402
from unconf.db.session import build_engine  # noqa: E402
from unconf.main import app  # noqa: E402
from unconf.models.room import Room  # noqa: E402
from unconf.models.session import TalkSession  # noqa: E402
from unconf.models.timeslot import Timeslot  # noqa: E402
from unconf.models.user import User, UserRole  # noqa: E402
from unconf.services.schedule_engine import ScheduleEngine  # noqa: E402


@pytest.fixture()
def db_engine():
    # One shared in-memory connection so the app and the test see the same data.
    engine = build_engine("sqlite+pysqlite://", poolclass=StaticPool)
    ensure_runtime_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def schedule_engine():
    return ScheduleEngine()


@pytest.fixture()
def client(session_factory, schedule_engine):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_engine] = lambda: schedule_engine

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture()
def make_user(db):
    def _make(role: UserRole = UserRole.facilitator, *, is_active: bool = True) -> User:
        user = User(
            name=f"{role.value.title()} User",
            email=f"{role.value}-{uuid4().hex[:8]}@example.com",
            role=role,
            is_active=is_active,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture()
def facilitator(make_user):
    return make_user(UserRole.facilitator)


@pytest.fixture()
def viewer(make_user):
    return make_user(UserRole.viewer)


def auth_headers(user: User) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user.id)}"}


@pytest.fixture()
def headers_for():
    return auth_headers


@pytest.fixture()
def seed_catalog(db):
    """Rooms, timeslots and voted sessions; defaults to 3 rooms x 2 timeslots and votes [10, 7, 7, 1]."""

    def _seed(
        room_names=("Main Hall", "Side Room", "Library"),
        times=(("09:00", "10:00"), ("10:00", "11:00")),
        votes=(10, 7, 7, 1),
        blocked=None,
    ) -> SimpleNamespace:
        blocked = blocked or {}
        rooms = [Room(name=name, location="Ground floor", available_spots=30) for name in room_names]
        timeslots = [
            Timeslot(start_time=start, end_time=end, blocked_reason=blocked.get(index))
            for index, (start, end) in enumerate(times)
        ]
        sessions = [TalkSession(title=f"Session {index + 1}", body="", votes=value) for index, value in enumerate(votes)]
        db.add_all(rooms + timeslots + sessions)
        db.commit()
        return SimpleNamespace(
            rooms=[room.id for room in rooms],
            timeslots=[timeslot.id for timeslot in timeslots],
            sessions=[talk.id for talk in sessions],
        )

    return _seed
