"""
Event Service — FastAPI エントリーポイント

イベントカタログとイベント登録を提供する。
CQRS に従い Command (POST/PATCH/DELETE) と Query (GET) を分離する。

  ┌──────────────┐  POST /commands/events/{id}/register  ┌───────────────┐
  │ Registration │ ─────────────────────────────────────▶ │ Event Service │
  │ Client       │ ◀───── 200 / 404 / 409 / 503 ───────── │               │
  └──────────────┘                                       └───────┬───────┘
                                                                 │ 1 トランザクション
                                                         ┌───────▼───────┐
                                                         │ Capacity      │
                                                         │ Ledger (DB)   │
                                                         └───────────────┘

認証は外部の協力者に任せる。検証済みのユーザー ID が
X-User-Id ヘッダーで届く前提。
"""

import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from uuid import UUID, uuid4

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, HttpUrl, field_validator, model_validator
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import commands, event_store, queries
from .aggregate import EventAggregate
from .errors import (
    CapacityBelowRegistrations,
    CatalogConflict,
    CatalogError,
    EventNotFound,
    InvalidSchedule,
    NotEventOwner,
    RegistrationError,
)
from .events import EventCategory, EventStatus
from .schema import create_schema

DATABASE_URL = os.environ["DATABASE_URL"]
REDIS_URL = os.environ.get("REDIS_URL")
MAX_ATTEMPTS = int(os.environ.get("REGISTRATION_MAX_ATTEMPTS", commands.DEFAULT_MAX_ATTEMPTS))

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

engine = create_async_engine(DATABASE_URL, echo=False)
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
redis_pool: aioredis.Redis | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool
    await create_schema(engine)
    if REDIS_URL:
        redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    else:
        logger.info("REDIS_URL not set, catalog notifications disabled")
    yield
    if redis_pool is not None:
        await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Event Service", lifespan=lifespan)


# ── エラー変換 ───────────────────────────────────

CATALOG_STATUS = {
    EventNotFound: (404, "Event not found"),
    NotEventOwner: (403, "Only the organizer can modify this event"),
    CapacityBelowRegistrations: (409, "Capacity cannot be lower than current registrations"),
    CatalogConflict: (409, "Event was modified concurrently, reload and retry"),
    InvalidSchedule: (422, "ends_at must not be before starts_at"),
}

REGISTRATION_STATUS = {
    RegistrationError.NOT_FOUND: 404,
    RegistrationError.ALREADY_REGISTERED: 409,
    RegistrationError.EVENT_FULL: 409,
    RegistrationError.EVENT_NOT_PUBLISHED: 409,
    RegistrationError.CONTENTION: 503,
}


@app.exception_handler(CatalogError)
async def catalog_error_handler(request: Request, exc: CatalogError):
    status_code, detail = CATALOG_STATUS.get(type(exc), (400, "Invalid catalog operation"))
    return JSONResponse(status_code=status_code, content={"detail": detail})


async def current_user(x_user_id: str | None = Header(default=None)) -> str:
    """認証済みユーザー ID（検証は外部の認証サービスが行う）"""
    if not x_user_id:
        raise HTTPException(401, "Authentication required")
    return x_user_id


# ── Request Models ───────────────────────────────

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


def _clean_tags(tags: list[str] | None) -> list[str] | None:
    if tags is None:
        return None
    cleaned = [t.strip() for t in tags if t and t.strip()]
    if len(cleaned) > 5:
        raise ValueError("At most 5 tags are allowed")
    return cleaned


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


class CreateEventRequest(BaseModel):
    title: str = Field(min_length=5, max_length=100)
    description: str = Field(min_length=20, max_length=1000)
    category: EventCategory
    status: EventStatus = EventStatus.DRAFT
    starts_at: datetime
    ends_at: datetime | None = None
    location: str = Field(min_length=5)
    address: str = Field(min_length=10)
    capacity: int = Field(ge=1)
    price: float = Field(default=0, ge=0)
    image_url: HttpUrl | None = None
    organizer_name: str = Field(min_length=2)
    organizer_email: str = Field(pattern=EMAIL_PATTERN)
    tags: list[str] = Field(default_factory=list)

    @field_validator("tags")
    @classmethod
    def clean_tags(cls, tags: list[str]) -> list[str]:
        return _clean_tags(tags)

    @model_validator(mode="after")
    def check_schedule(self):
        if self.ends_at is not None and _as_utc(self.ends_at) < _as_utc(self.starts_at):
            raise ValueError("ends_at must not be before starts_at")
        return self


class UpdateEventRequest(BaseModel):
    """部分更新。送られたフィールドだけを変更する。"""
    title: str | None = Field(default=None, min_length=5, max_length=100)
    description: str | None = Field(default=None, min_length=20, max_length=1000)
    category: EventCategory | None = None
    status: EventStatus | None = None
    starts_at: datetime | None = None
    ends_at: datetime | None = None
    location: str | None = Field(default=None, min_length=5)
    address: str | None = Field(default=None, min_length=10)
    capacity: int | None = Field(default=None, ge=1)
    price: float | None = Field(default=None, ge=0)
    image_url: HttpUrl | None = None
    organizer_name: str | None = Field(default=None, min_length=2)
    organizer_email: str | None = Field(default=None, pattern=EMAIL_PATTERN)
    tags: list[str] | None = None

    @field_validator("tags")
    @classmethod
    def clean_tags(cls, tags: list[str] | None) -> list[str] | None:
        return _clean_tags(tags)


# ── Command Endpoints (Write 側) ─────────────────


@app.post("/commands/events", status_code=201)
async def cmd_create_event(req: CreateEventRequest, user_id: str = Depends(current_user)):
    """イベント作成コマンド（作成者が主催者になる）"""
    async with async_session() as session:
        return await commands.create_event(
            session, redis_pool, uuid4(), user_id, req.model_dump()
        )


@app.patch("/commands/events/{event_id}")
async def cmd_update_event(
    event_id: UUID,
    req: UpdateEventRequest,
    user_id: str = Depends(current_user),
):
    """イベント更新コマンド（主催者のみ）"""
    async with async_session() as session:
        return await commands.update_event(
            session, redis_pool, event_id, user_id, req.model_dump(exclude_unset=True)
        )


@app.delete("/commands/events/{event_id}")
async def cmd_delete_event(event_id: UUID, user_id: str = Depends(current_user)):
    """イベント削除コマンド（主催者のみ）"""
    async with async_session() as session:
        await commands.delete_event(session, redis_pool, event_id, user_id)
    return {"event_id": str(event_id), "deleted": True}


@app.post("/commands/events/{event_id}/register")
async def cmd_register(event_id: str, user_id: str = Depends(current_user)):
    """
    イベント登録コマンド

    イベント ID は不透明な文字列として扱う（存在しなければ形式を問わず NOT_FOUND）。
    ビジネスルール違反は 404 / 409 とエラーコード付きの本文で返す。
    CONTENTION は 503 + Retry-After（あとで再試行）。
    """
    async with async_session() as session:
        outcome = await commands.register_for_event(session, event_id, user_id, MAX_ATTEMPTS)

    body = outcome.model_dump(mode="json")
    if outcome.success:
        return body
    headers = {"Retry-After": "1"} if outcome.error.retry_later else None
    return JSONResponse(
        status_code=REGISTRATION_STATUS[outcome.error], content=body, headers=headers
    )


# ── Query Endpoints (Read 側) ────────────────────


@app.get("/queries/events")
async def query_list_events(
    status: EventStatus | None = None,
    category: EventCategory | None = None,
    q: str | None = None,
):
    async with async_session() as session:
        return await queries.list_events(
            session,
            status=status.value if status else None,
            category=category.value if category else None,
            search=q,
        )


@app.get("/queries/events/stats")
async def query_event_stats():
    async with async_session() as session:
        return await queries.get_event_stats(session)


@app.get("/queries/events/{event_id}")
async def query_get_event(event_id: UUID, x_user_id: str | None = Header(default=None)):
    """イベント詳細。X-User-Id があれば is_registered も返す。"""
    async with async_session() as session:
        event = await queries.get_event(session, event_id)
        if not event:
            raise HTTPException(404, "Event not found")
        if x_user_id:
            event["is_registered"] = await queries.is_registered(session, event_id, x_user_id)
        return event


@app.get("/queries/events/{event_id}/registrations")
async def query_registrations(event_id: UUID, user_id: str = Depends(current_user)):
    """登録者一覧（主催者のみ）"""
    async with async_session() as session:
        event = await queries.get_event(session, event_id)
        if not event:
            raise HTTPException(404, "Event not found")
        if event["organizer_id"] != user_id:
            raise HTTPException(403, "Only the organizer can list registrations")
        return await queries.list_registrations(session, event_id)


@app.get("/queries/events/{event_id}/replay")
async def query_replay(event_id: UUID):
    """イベントストアから集約を再構築して返す（リードモデルとの突き合わせ用）"""
    async with async_session() as session:
        events = await event_store.load_events(session, event_id)
    if not events:
        raise HTTPException(404, "Event not found")
    return EventAggregate.from_events(events).to_dict()


# ── Event Store (学習・デバッグ用) ───────────────


@app.get("/event-log")
async def get_all_events(event_type: str | None = None):
    async with async_session() as session:
        return await event_store.load_all_events(session, event_type)


@app.get("/event-log/{aggregate_id}")
async def get_aggregate_events(aggregate_id: UUID):
    async with async_session() as session:
        return await event_store.load_events(session, aggregate_id)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "event-service"}
