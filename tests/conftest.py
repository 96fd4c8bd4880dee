"""Shared fixtures: a real SQLite ledger per test and an in-process Event Service."""

import os
from datetime import datetime, timedelta, timezone
from uuid import uuid4

# main.py reads DATABASE_URL at import time; tests swap the session factory instead
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")

import httpx
import pytest
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from services.event.app import commands
from services.event.app import main as event_main
from services.event.app.schema import create_schema

EVENT_SERVICE_URL = "http://event-service"


def build_event_payload(**overrides) -> dict:
    payload = {
        "title": "PyCon Study Night",
        "description": "An evening of lightning talks about async Python and databases.",
        "category": "conference",
        "status": "published",
        "starts_at": datetime.now(timezone.utc) + timedelta(days=30),
        "ends_at": None,
        "location": "Main Hall",
        "address": "1-2-3 Example Street, Tokyo",
        "capacity": 3,
        "price": 0,
        "image_url": None,
        "organizer_name": "Study Group",
        "organizer_email": "organizer@example.com",
        "tags": ["python", "async"],
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def event_payload():
    return build_event_payload


@pytest.fixture
async def engine(tmp_path):
    """File-backed SQLite so that concurrent sessions use separate connections."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}",
        connect_args={"timeout": 30},
    )
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def make_event(session_factory):
    """Create an event directly through the command layer."""

    async def _make(organizer_id: str = "organizer-1", **overrides) -> dict:
        async with session_factory() as session:
            return await commands.create_event(
                session, None, uuid4(), organizer_id, build_event_payload(**overrides)
            )

    return _make


@pytest.fixture
def ledger_counts(session_factory):
    """Return (registered_count, number of markers) for an event."""

    async def _counts(event_id) -> tuple[int, int]:
        async with session_factory() as session:
            count = await session.scalar(
                text("SELECT registered_count FROM events_read_model WHERE id = :id"),
                {"id": str(event_id)},
            )
            markers = await session.scalar(
                text("SELECT COUNT(*) FROM registrations WHERE event_id = :id"),
                {"id": str(event_id)},
            )
            return count, markers

    return _counts


@pytest.fixture
def event_app(session_factory, monkeypatch):
    monkeypatch.setattr(event_main, "async_session", session_factory)
    monkeypatch.setattr(event_main, "redis_pool", None)
    return event_main.app


@pytest.fixture
async def api(event_app):
    transport = httpx.ASGITransport(app=event_app)
    async with httpx.AsyncClient(transport=transport, base_url=EVENT_SERVICE_URL) as client:
        yield client
