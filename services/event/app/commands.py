"""
Event Service — コマンドハンドラ (CQRS Write 側)

登録 (register_for_event) がこのサービスの中心。
1 回の試行 = 1 トランザクション:

  1. イベント行と (event_id, user_id) の登録マーカーを読む
  2. ビジネスルールを検査
       NOT_FOUND → ALREADY_REGISTERED → EVENT_FULL → EVENT_NOT_PUBLISHED
  3. version 条件付き UPDATE で registered_count を +1
     登録マーカーを INSERT、UserRegistered をイベントストアに追記
  4. コミット

読み取りから書き込みの間に別の登録がコミットされていたら
(UPDATE が 0 行 / 主キー違反 / DB のシリアライズ失敗)、
ロールバックして 1 からやり直す。上限回数を超えたら CONTENTION。

アプリケーション側のロックは使わない。サービスは複数インスタンスで
動く前提なので、整合性は DB のトランザクションだけで保証する。

カタログ操作 (作成・更新・削除) はコミット後に Redis Pub/Sub へ通知する。
登録は台帳の更新以外の副作用を持たない。
"""

import json
import logging
from datetime import datetime, timezone
from enum import Enum
from uuid import UUID

import redis.asyncio as aioredis
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from . import event_store, queries
from .errors import (
    REASONS,
    CapacityBelowRegistrations,
    CatalogConflict,
    EventNotFound,
    InvalidSchedule,
    LedgerConflict,
    NotEventOwner,
    RegistrationError,
)
from .events import EventCreated, EventDeleted, EventUpdated, UserRegistered

logger = logging.getLogger(__name__)

CATALOG_CHANNEL = "event_catalog"
DEFAULT_MAX_ATTEMPTS = 5

# PostgreSQL: serialization_failure / deadlock_detected
_CONFLICT_SQLSTATES = {"40001", "40P01"}

UPDATABLE_COLUMNS = {
    "title",
    "description",
    "category",
    "status",
    "starts_at",
    "ends_at",
    "location",
    "address",
    "capacity",
    "price",
    "image_url",
    "organizer_name",
    "organizer_email",
    "tags",
}
NULLABLE_COLUMNS = {"ends_at", "image_url"}


class RegistrationOutcome(BaseModel):
    """登録結果。ビジネスルール違反も例外ではなくこの値で返す。"""

    success: bool
    event: dict | None = None
    error: RegistrationError | None = None
    reason: str = ""

    @classmethod
    def registered(cls, event: dict) -> "RegistrationOutcome":
        return cls(success=True, event=event)

    @classmethod
    def failed(cls, error: RegistrationError) -> "RegistrationOutcome":
        return cls(success=False, error=error, reason=REASONS[error])


def to_utc_iso(value: datetime) -> str:
    """タイムゾーンなしの日時は UTC とみなす。"""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="seconds")


def _column_values(data: dict) -> dict:
    values = {}
    for key, value in data.items():
        if isinstance(value, datetime):
            value = to_utc_iso(value)
        elif isinstance(value, Enum):
            value = value.value
        elif key == "tags":
            value = json.dumps(list(value or []))
        elif key == "image_url" and value is not None:
            value = str(value)
        elif key == "price":
            value = float(value)
        values[key] = value
    return values


def _is_conflict(exc: DBAPIError) -> bool:
    if isinstance(exc, IntegrityError):
        return True
    orig = exc.orig
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if code in _CONFLICT_SQLSTATES:
        return True
    # SQLite: 書き込みロックの待ち時間切れ
    return "database is locked" in str(orig)


async def _publish(redis: aioredis.Redis | None, event_type: str, data: dict) -> None:
    if redis is None:
        return
    await redis.publish(
        CATALOG_CHANNEL,
        json.dumps({"event_type": event_type, "data": data}, default=str),
    )


# ── 登録 (Registration Service) ───────────────────


async def register_for_event(
    session: AsyncSession,
    event_id: UUID | str,
    user_id: str,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> RegistrationOutcome:
    """
    イベント登録コマンド

    競合時は同じセッションでロールバックして最初から再試行する。
    競合以外の DB エラーはそのまま呼び出し側に伝播する。
    """
    for attempt in range(1, max_attempts + 1):
        try:
            return await _register_once(session, event_id, user_id)
        except LedgerConflict:
            await session.rollback()
        except DBAPIError as exc:
            await session.rollback()
            if not _is_conflict(exc):
                raise
        logger.info(
            "Registration conflict: event=%s user=%s attempt=%d/%d",
            event_id, user_id, attempt, max_attempts,
        )

    logger.warning(
        "Registration contention exhausted: event=%s user=%s attempts=%d",
        event_id, user_id, max_attempts,
    )
    return RegistrationOutcome.failed(RegistrationError.CONTENTION)


async def _register_once(
    session: AsyncSession,
    event_id: UUID | str,
    user_id: str,
) -> RegistrationOutcome:
    # 1. 読み取り
    result = await session.execute(
        text("""
            SELECT capacity, registered_count, status, version
            FROM events_read_model WHERE id = :id
        """),
        {"id": str(event_id)},
    )
    row = result.fetchone()
    already_registered = await queries.is_registered(session, event_id, user_id)

    # 2. ビジネスルール
    if row is None:
        return await _reject(session, event_id, user_id, RegistrationError.NOT_FOUND)
    if already_registered:
        return await _reject(session, event_id, user_id, RegistrationError.ALREADY_REGISTERED)
    if row.registered_count >= row.capacity:
        return await _reject(session, event_id, user_id, RegistrationError.EVENT_FULL)
    if row.status != queries.PUBLISHED:
        return await _reject(session, event_id, user_id, RegistrationError.EVENT_NOT_PUBLISHED)

    # 3. 条件付き書き込み（読んだ version のままなら 1 行だけ更新される）
    now = datetime.now(timezone.utc).isoformat()
    updated = await session.execute(
        text("""
            UPDATE events_read_model
            SET registered_count = registered_count + 1,
                version = version + 1,
                updated_at = :now
            WHERE id = :id AND version = :version AND registered_count < capacity
        """),
        {"id": str(event_id), "version": row.version, "now": now},
    )
    if updated.rowcount != 1:
        raise LedgerConflict(f"event {event_id} changed since version {row.version}")

    await session.execute(
        text("""
            INSERT INTO registrations (event_id, user_id, registered_at)
            VALUES (:id, :uid, :now)
        """),
        {"id": str(event_id), "uid": user_id, "now": now},
    )

    event_data = UserRegistered(
        event_id=event_id,
        user_id=user_id,
        registered_count=row.registered_count + 1,
        timestamp=now,
    ).model_dump(mode="json")
    await event_store.append_event(
        session, event_id, "UserRegistered", event_data, row.version
    )

    event = await queries.get_event(session, event_id)

    # 4. コミット
    await session.commit()

    logger.info(
        "User registered: event=%s user=%s registered=%d/%d",
        event_id, user_id, event["registered_count"], event["capacity"],
    )
    return RegistrationOutcome.registered(event)


async def _reject(
    session: AsyncSession,
    event_id: UUID | str,
    user_id: str,
    error: RegistrationError,
) -> RegistrationOutcome:
    await session.rollback()
    logger.info("Registration rejected: event=%s user=%s error=%s", event_id, user_id, error.value)
    return RegistrationOutcome.failed(error)


# ── カタログ ─────────────────────────────────────


async def create_event(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    event_id: UUID,
    organizer_id: str,
    data: dict,
) -> dict:
    """
    イベント作成コマンド

    registered_count = 0、version = 1 で作成し、EventCreated を記録する。
    """
    now = datetime.now(timezone.utc).isoformat()
    values = {"ends_at": None, "image_url": None, "tags": [], "price": 0}
    values.update(data)
    values = _column_values(values)
    values.update(
        id=str(event_id),
        organizer_id=organizer_id,
        registered_count=0,
        created_at=now,
        updated_at=now,
    )

    event_data = EventCreated(
        event_id=event_id,
        organizer_id=organizer_id,
        title=values["title"],
        status=values["status"],
        capacity=values["capacity"],
        timestamp=now,
    ).model_dump(mode="json")
    version = await event_store.append_event(session, event_id, "EventCreated", event_data, 0)
    values["version"] = version

    await session.execute(
        text("""
            INSERT INTO events_read_model
                (id, title, description, category, status, starts_at, ends_at,
                 location, address, capacity, registered_count, price, image_url,
                 organizer_id, organizer_name, organizer_email, tags, version,
                 created_at, updated_at)
            VALUES
                (:id, :title, :description, :category, :status, :starts_at, :ends_at,
                 :location, :address, :capacity, :registered_count, :price, :image_url,
                 :organizer_id, :organizer_name, :organizer_email, :tags, :version,
                 :created_at, :updated_at)
        """),
        values,
    )
    event = await queries.get_event(session, event_id)
    await session.commit()

    await _publish(redis, "EventCreated", event_data)
    logger.info("Event created: event=%s organizer=%s capacity=%d", event_id, organizer_id, event["capacity"])
    return event


async def update_event(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    event_id: UUID,
    user_id: str,
    changes: dict,
) -> dict:
    """
    イベント更新コマンド（部分更新）

    主催者本人だけが更新できる。capacity は現在の登録数より
    小さくできない。version 条件付き UPDATE なので、同時に
    登録がコミットされた場合は CatalogConflict になる。
    """
    current = await queries.get_event(session, event_id)
    if current is None:
        await session.rollback()
        raise EventNotFound(str(event_id))
    if current["organizer_id"] != user_id:
        await session.rollback()
        raise NotEventOwner(str(event_id))

    values = _column_values({
        k: v
        for k, v in changes.items()
        if k in UPDATABLE_COLUMNS and (v is not None or k in NULLABLE_COLUMNS)
    })
    if not values:
        await session.rollback()
        return current

    if "capacity" in values and values["capacity"] < current["registered_count"]:
        await session.rollback()
        raise CapacityBelowRegistrations(
            f"capacity {values['capacity']} < registered {current['registered_count']}"
        )
    starts_at = values.get("starts_at", current["starts_at"])
    ends_at = values.get("ends_at", current["ends_at"])
    if ends_at is not None and ends_at < starts_at:
        await session.rollback()
        raise InvalidSchedule("ends_at must not be before starts_at")

    now = datetime.now(timezone.utc).isoformat()
    assignments = ", ".join(f"{column} = :{column}" for column in values)
    params = dict(values, id=str(event_id), expected=current["version"], now=now)
    try:
        updated = await session.execute(
            text(f"""
                UPDATE events_read_model
                SET {assignments}, version = version + 1, updated_at = :now
                WHERE id = :id AND version = :expected
            """),
            params,
        )
        if updated.rowcount != 1:
            raise LedgerConflict(str(event_id))

        event_data = EventUpdated(
            event_id=event_id, changes=values, timestamp=now
        ).model_dump(mode="json")
        await event_store.append_event(
            session, event_id, "EventUpdated", event_data, current["version"]
        )
    except (LedgerConflict, IntegrityError) as exc:
        await session.rollback()
        raise CatalogConflict(str(event_id)) from exc

    event = await queries.get_event(session, event_id)
    await session.commit()

    await _publish(redis, "EventUpdated", event_data)
    logger.info("Event updated: event=%s fields=%s", event_id, sorted(values))
    return event


async def delete_event(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    event_id: UUID,
    user_id: str,
) -> None:
    """イベント削除コマンド。主催者本人だけが削除できる。登録マーカーも消す。"""
    current = await queries.get_event(session, event_id)
    if current is None:
        await session.rollback()
        raise EventNotFound(str(event_id))
    if current["organizer_id"] != user_id:
        await session.rollback()
        raise NotEventOwner(str(event_id))

    now = datetime.now(timezone.utc).isoformat()
    try:
        deleted = await session.execute(
            text("DELETE FROM events_read_model WHERE id = :id AND version = :expected"),
            {"id": str(event_id), "expected": current["version"]},
        )
        if deleted.rowcount != 1:
            raise LedgerConflict(str(event_id))
        await session.execute(
            text("DELETE FROM registrations WHERE event_id = :id"),
            {"id": str(event_id)},
        )
        event_data = EventDeleted(event_id=event_id, timestamp=now).model_dump(mode="json")
        await event_store.append_event(
            session, event_id, "EventDeleted", event_data, current["version"]
        )
    except (LedgerConflict, IntegrityError) as exc:
        await session.rollback()
        raise CatalogConflict(str(event_id)) from exc

    await session.commit()

    await _publish(redis, "EventDeleted", event_data)
    logger.info("Event deleted: event=%s", event_id)
