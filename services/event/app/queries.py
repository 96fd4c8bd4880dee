"""
Event Service — クエリハンドラ (CQRS Read 側)

読み取りはすべて events_read_model / registrations から行う。
各イベントには表示用の派生値を付ける:
  available_spots      = capacity - registered_count
  accepts_registration = 公開中 かつ 空きあり
"""

import json
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .events import EventStatus

PUBLISHED = EventStatus.PUBLISHED.value


def event_row_to_dict(row) -> dict:
    available = row.capacity - row.registered_count
    return {
        "id": str(row.id),
        "title": row.title,
        "description": row.description,
        "category": row.category,
        "status": row.status,
        "starts_at": row.starts_at,
        "ends_at": row.ends_at,
        "location": row.location,
        "address": row.address,
        "capacity": row.capacity,
        "registered_count": row.registered_count,
        "available_spots": available,
        "accepts_registration": row.status == PUBLISHED and available > 0,
        "price": float(row.price),
        "image_url": row.image_url,
        "organizer_id": row.organizer_id,
        "organizer_name": row.organizer_name,
        "organizer_email": row.organizer_email,
        "tags": json.loads(row.tags) if isinstance(row.tags, str) else row.tags,
        "version": row.version,
        "created_at": row.created_at,
        "updated_at": row.updated_at,
    }


async def get_event(session: AsyncSession, event_id: UUID | str) -> dict | None:
    result = await session.execute(
        text("SELECT * FROM events_read_model WHERE id = :id"),
        {"id": str(event_id)},
    )
    row = result.fetchone()
    if not row:
        return None
    return event_row_to_dict(row)


def _escape_like(term: str) -> str:
    """検索語の % と _ をワイルドカードではなく文字として扱う"""
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


async def list_events(
    session: AsyncSession,
    status: str | None = None,
    category: str | None = None,
    search: str | None = None,
) -> list[dict]:
    """イベント一覧。status / category / 検索語（タイトル・説明）で絞り込む。"""
    clauses = []
    params: dict = {}
    if status:
        clauses.append("status = :status")
        params["status"] = status
    if category:
        clauses.append("category = :category")
        params["category"] = category
    if search:
        clauses.append(
            "(LOWER(title) LIKE :q ESCAPE '\\' OR LOWER(description) LIKE :q ESCAPE '\\')"
        )
        params["q"] = f"%{_escape_like(search.strip().lower())}%"

    sql = "SELECT * FROM events_read_model"
    if clauses:
        sql += " WHERE " + " AND ".join(clauses)
    sql += " ORDER BY starts_at ASC, title ASC"

    result = await session.execute(text(sql), params)
    return [event_row_to_dict(row) for row in result.fetchall()]


async def list_registrations(session: AsyncSession, event_id: UUID) -> list[dict]:
    result = await session.execute(
        text("""
            SELECT event_id, user_id, registered_at FROM registrations
            WHERE event_id = :id
            ORDER BY registered_at ASC, user_id ASC
        """),
        {"id": str(event_id)},
    )
    return [
        {
            "event_id": str(row.event_id),
            "user_id": row.user_id,
            "registered_at": row.registered_at,
        }
        for row in result.fetchall()
    ]


async def is_registered(session: AsyncSession, event_id: UUID | str, user_id: str) -> bool:
    result = await session.execute(
        text("SELECT 1 FROM registrations WHERE event_id = :id AND user_id = :uid"),
        {"id": str(event_id), "uid": user_id},
    )
    return result.first() is not None


async def get_event_stats(session: AsyncSession) -> dict:
    """
    カタログ全体の統計。

    upcoming = 公開中かつ開始日時が現在より後。
    starts_at は UTC の ISO 文字列なので文字列比較でよい。
    """
    now = datetime.now(timezone.utc).isoformat(timespec="seconds")
    result = await session.execute(
        text("""
            SELECT
                COUNT(*) AS total,
                COALESCE(SUM(CASE WHEN status = :published THEN 1 ELSE 0 END), 0) AS published,
                COALESCE(SUM(CASE WHEN status = :published AND starts_at > :now
                                  THEN 1 ELSE 0 END), 0) AS upcoming,
                COALESCE(SUM(capacity), 0) AS total_capacity,
                COALESCE(SUM(registered_count), 0) AS total_registered
            FROM events_read_model
        """),
        {"published": PUBLISHED, "now": now},
    )
    row = result.fetchone()
    return {
        "total": int(row.total),
        "published": int(row.published),
        "upcoming": int(row.upcoming),
        "total_capacity": int(row.total_capacity),
        "total_registered": int(row.total_registered),
    }
