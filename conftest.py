"""Shared fixtures: in-memory store and recording channel fakes.

Environment is set before any project module is imported so the global
settings, engine and log directory never touch real resources.
"""

import itertools
import os
import tempfile
from datetime import datetime, timedelta, timezone

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["WORKER_ENABLED"] = "false"
os.environ.setdefault("REMINDER_LOG_DIR", tempfile.mkdtemp(prefix="reminder-logs-"))

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import crud
import database
from call_tracker import CallStatusTracker
from channels import CallStatusResult, ChannelError, PushChannel
from reminder_engine import ReminderEngine

CALLBACK_URL = "http://testserver/api/webhooks/twilio/call-status"

_counter = itertools.count(1)


class FakeVoiceChannel:
    """Records placed calls and replays scripted provider statuses."""

    def __init__(self):
        self.calls = []
        self.status_queries = []
        self.statuses = []
        self.placement_failures = 0

    async def place_call(self, to, from_, message, status_callback_url):
        if self.placement_failures:
            self.placement_failures -= 1
            raise ChannelError("Twilio rejected call")
        self.calls.append({
            "to": to,
            "from": from_,
            "message": message,
            "status_callback_url": status_callback_url,
        })
        return f"CA{len(self.calls):04d}"

    async def get_call_status(self, call_reference):
        self.status_queries.append(call_reference)
        if self.statuses:
            return self.statuses.pop(0)
        return CallStatusResult("in-progress", 0)

    def script(self, *statuses):
        """Queue (status, duration) pairs returned by successive polls."""
        self.statuses.extend(CallStatusResult(s, d) for s, d in statuses)


class FakeEmailChannel:
    def __init__(self):
        self.sent = []
        self.fail = False

    async def send_email(self, to, subject, text, html):
        if self.fail:
            raise ChannelError("SendGrid unavailable")
        self.sent.append({"to": to, "subject": subject, "text": text, "html": html})


class FakePushChannel(PushChannel):
    """Real WebSocket push that also records every emitted event."""

    def __init__(self):
        super().__init__()
        self.events = []

    async def emit_to_user(self, user_id, event_name, payload):
        self.events.append({"user_id": user_id, "event": event_name, "payload": payload})
        return await super().emit_to_user(user_id, event_name, payload)


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    database.init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_user(session_factory):
    def _make(**overrides):
        n = next(_counter)
        data = {
            "firstname": "Ada",
            "lastname": "Lovelace",
            "email": f"ada{n}@example.com",
            "phone_number": "+15550001111",
            "calling_number": "+15559998888",
        }
        data.update(overrides)
        session = session_factory()
        try:
            user = crud.create_user(session, data)
            if "latitude" in overrides:
                user = crud.update_user_location(session, user.id, overrides["latitude"], overrides["longitude"])
            return user
        finally:
            session.close()
    return _make


@pytest.fixture
def make_reminder(session_factory):
    def _make(user, **overrides):
        data = {"user_id": user.id, "description": "Pick up groceries"}
        data.update(overrides)
        session = session_factory()
        try:
            return crud.create_reminder(session, data)
        finally:
            session.close()
    return _make


@pytest.fixture
def fetch_reminder(session_factory):
    """Fresh read of a reminder, including soft-deleted ones."""
    def _fetch(reminder_id):
        session = session_factory()
        try:
            return crud.get_reminder(session, reminder_id, include_deleted=True)
        finally:
            session.close()
    return _fetch


@pytest.fixture
def past():
    return datetime.now(timezone.utc) - timedelta(minutes=1)


@pytest.fixture
def future():
    return datetime.now(timezone.utc) + timedelta(hours=1)


@pytest.fixture
def voice():
    return FakeVoiceChannel()


@pytest.fixture
def email():
    return FakeEmailChannel()


@pytest.fixture
def push():
    return FakePushChannel()


@pytest.fixture
def make_tracker(voice, session_factory):
    def _make(poll_delay=3600, retry_delay=3600, **kwargs):
        return CallStatusTracker(
            voice,
            session_factory,
            status_callback_url=CALLBACK_URL,
            poll_delay=poll_delay,
            retry_delay=retry_delay,
            **kwargs
        )
    return _make


@pytest.fixture
async def build_engine(session_factory, voice, email, push, make_tracker):
    """Engine factory; delayed polls and retries default to an hour away."""
    engines = []

    def _build(poll_delay=3600, retry_delay=3600, **kwargs):
        engine = ReminderEngine(
            session_factory,
            voice,
            email,
            push,
            tracker=make_tracker(poll_delay=poll_delay, retry_delay=retry_delay),
            **kwargs
        )
        engines.append(engine)
        return engine

    yield _build

    for engine in engines:
        await engine.aclose()


@pytest.fixture
async def reminder_engine(build_engine):
    return build_engine()
