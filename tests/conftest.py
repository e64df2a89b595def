"""
tests/conftest.py
Shared fixtures: in-memory SQLite through the app's own engine, an in-memory
Redis stand-in, seeded users for every role, and appointment/queue data.
"""

import fnmatch
import json
import os
from datetime import datetime, timedelta, timezone

os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import config.redis_client as redis_module
from config.database import AsyncSessionLocal, Base, engine
from config.redis_client import get_redis
from config.settings import settings
from main import app
from shared.models.models import (
    Appointment,
    AppointmentStatus,
    ConsultationSession,
    FamilyContact,
    Priority,
    QueueEntry,
    QueueStatus,
    RemedyTemplate,
    RemedyType,
    User,
    UserRole,
)
from shared.utils.security import create_access_token, generate_qr_token, hash_password

TEST_PASSWORD = "Password@123"


class FakeRedis:
    """The subset of redis.asyncio.Redis the application calls, kept in a dict."""

    def __init__(self):
        self.store: dict[str, str] = {}
        self.ttl: dict[str, int] = {}
        self.published: list[tuple[str, str]] = []

    async def get(self, name):
        return self.store.get(name)

    async def set(self, name, value, ex=None, nx=False):
        if nx and name in self.store:
            return None
        self.store[name] = str(value)
        if ex:
            self.ttl[name] = ex
        return True

    async def setex(self, name, time, value):
        self.store[name] = str(value)
        self.ttl[name] = time
        return True

    async def delete(self, *names):
        removed = 0
        for name in names:
            if self.store.pop(name, None) is not None:
                removed += 1
            self.ttl.pop(name, None)
        return removed

    async def exists(self, *names):
        return sum(1 for name in names if name in self.store)

    async def incr(self, name):
        value = int(self.store.get(name, 0)) + 1
        self.store[name] = str(value)
        return value

    async def expire(self, name, seconds):
        if name not in self.store:
            return False
        self.ttl[name] = seconds
        return True

    async def keys(self, pattern="*"):
        return [k for k in self.store if fnmatch.fnmatch(k, pattern)]

    async def ping(self):
        return True

    async def publish(self, channel, message):
        self.published.append((channel, message))
        return 0

    async def aclose(self):
        return None


def auth_headers(user: User) -> dict:
    token, _ = create_access_token(str(user.id), user.role.value, user.email)
    return {"Authorization": f"Bearer {token}"}


def published_events(redis: FakeRedis) -> list[str]:
    """Event names relayed over Redis pub/sub, in order."""
    return [json.loads(message)["event"] for _, message in redis.published]


# ── Infrastructure ─────────────────────────────────────────────────────────────

@pytest_asyncio.fixture(autouse=True)
async def setup_database():
    import shared.models.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture(autouse=True)
def fake_redis(monkeypatch):
    fake = FakeRedis()
    monkeypatch.setattr(redis_module, "redis_client", fake)
    monkeypatch.setattr(settings, "RATE_LIMIT_PER_MINUTE", 10_000)
    monkeypatch.setattr(settings, "RATE_LIMIT_UNAUTH_PER_MINUTE", 10_000)
    app.dependency_overrides[get_redis] = lambda: fake
    yield fake
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def db():
    async with AsyncSessionLocal() as session:
        yield session


@pytest_asyncio.fixture
async def client():
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def sync_session_factory(monkeypatch):
    """Synchronous SQLite session factory handed to the Celery tasks."""
    sync_engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(sync_engine)
    factory = sessionmaker(bind=sync_engine, expire_on_commit=False)
    monkeypatch.setattr("tasks.celery_app.get_sync_session", factory)
    yield factory
    sync_engine.dispose()


# ── Users ──────────────────────────────────────────────────────────────────────

async def _make_user(db, name, role, email=None, phone=None) -> User:
    user = User(
        name=name,
        email=email,
        phone=phone,
        password_hash=hash_password(TEST_PASSWORD),
        role=role,
    )
    db.add(user)
    await db.commit()
    return user


@pytest_asyncio.fixture
async def user(db) -> User:
    return await _make_user(db, "Ramesh Kumar", UserRole.USER, "ramesh@example.com", "+919812345670")


@pytest_asyncio.fixture
async def second_user(db) -> User:
    return await _make_user(db, "Sita Devi", UserRole.USER, "sita@example.com", "+919812345671")


@pytest_asyncio.fixture
async def family_user(db) -> User:
    return await _make_user(db, "Anil Kumar", UserRole.USER, "anil@example.com", "+919812345672")


@pytest_asyncio.fixture
async def coordinator_user(db) -> User:
    return await _make_user(db, "Reception Desk", UserRole.COORDINATOR, "desk@example.com", "+919812345673")


@pytest_asyncio.fixture
async def guruji_user(db) -> User:
    return await _make_user(db, "Guruji Maharaj", UserRole.GURUJI, "guruji@example.com", "+919812345674")


@pytest_asyncio.fixture
async def admin_user(db) -> User:
    return await _make_user(db, "Ashram Admin", UserRole.ADMIN, "admin@example.com", "+919812345675")


@pytest_asyncio.fixture
async def family_link(db, user, family_user) -> FamilyContact:
    """family_user looks after user with every permission granted."""
    link = FamilyContact(
        elderly_user_id=user.id,
        family_contact_id=family_user.id,
        relationship_label="son",
    )
    db.add(link)
    await db.commit()
    return link


# ── Appointments, queue, consultations ────────────────────────────────────────

async def make_appointment(
    db,
    devotee: User,
    guruji: User,
    start_time: datetime,
    status: AppointmentStatus = AppointmentStatus.BOOKED,
    priority: Priority = Priority.NORMAL,
) -> Appointment:
    appointment = Appointment(
        user_id=devotee.id,
        guruji_id=guruji.id,
        start_time=start_time,
        end_time=start_time + timedelta(minutes=5),
        status=status,
        priority=priority,
        qr_code=generate_qr_token(),
    )
    if status == AppointmentStatus.CHECKED_IN:
        appointment.checked_in_at = datetime.now(timezone.utc)
    db.add(appointment)
    await db.commit()
    return appointment


async def make_queue_entry(
    db,
    devotee: User,
    guruji: User,
    position: int = 1,
    priority: Priority = Priority.NORMAL,
) -> QueueEntry:
    appointment = await make_appointment(
        db, devotee, guruji, datetime.now(timezone.utc),
        status=AppointmentStatus.CHECKED_IN, priority=priority,
    )
    entry = QueueEntry(
        appointment_id=appointment.id,
        user_id=devotee.id,
        guruji_id=guruji.id,
        position=position,
        status=QueueStatus.WAITING,
        priority=priority,
        estimated_wait=position * settings.QUEUE_MINUTES_PER_DEVOTEE,
        checked_in_at=datetime.now(timezone.utc),
    )
    db.add(entry)
    await db.commit()
    return entry


@pytest_asyncio.fixture
async def today_appointment(db, user, guruji_user) -> Appointment:
    """Starts now, so it is inside the check-in window."""
    return await make_appointment(db, user, guruji_user, datetime.now(timezone.utc))


@pytest_asyncio.fixture
async def future_appointment(db, user, guruji_user) -> Appointment:
    return await make_appointment(db, user, guruji_user, datetime.now(timezone.utc) + timedelta(days=3))


@pytest_asyncio.fixture
async def queue_entry(db, second_user, guruji_user) -> QueueEntry:
    """second_user waiting first in guruji_user's queue."""
    return await make_queue_entry(db, second_user, guruji_user)


@pytest_asyncio.fixture
async def consultation(db, queue_entry, guruji_user) -> ConsultationSession:
    """A live consultation for queue_entry."""
    now = datetime.now(timezone.utc)
    queue_entry.status = QueueStatus.IN_PROGRESS
    queue_entry.started_at = now
    appointment = await db.get(Appointment, queue_entry.appointment_id)
    appointment.status = AppointmentStatus.IN_PROGRESS
    session = ConsultationSession(
        appointment_id=appointment.id,
        devotee_id=queue_entry.user_id,
        guruji_id=guruji_user.id,
        start_time=now - timedelta(minutes=10),
    )
    db.add(session)
    await db.commit()
    return session


@pytest_asyncio.fixture
async def remedy_template(db, guruji_user) -> RemedyTemplate:
    template = RemedyTemplate(
        name="Triphala Churna",
        type=RemedyType.AYURVEDIC,
        category="Digestion",
        instructions="Take with warm water before sleeping.",
        dosage="1 teaspoon",
        duration="30 days",
        created_by_id=guruji_user.id,
    )
    db.add(template)
    await db.commit()
    return template
