"""
Event Service — イベントストア

イベントの状態変更はすべてドメインイベントとして追記する。
(aggregate_id, version) の主キーで楽観的ロックを実現する:
同じバージョンを 2 つのトランザクションが書こうとすると
片方が主キー違反で失敗する → 競合を検知できる。
"""

import json
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

AGGREGATE_TYPE = "Event"


async def append_event(
    session: AsyncSession,
    aggregate_id: UUID,
    event_type: str,
    event_data: dict,
    expected_version: int,
) -> int:
    """
    イベントをストアに追記し、新しいバージョン番号を返す。

    コミットは呼び出し側が行う。リードモデルの更新と同じ
    トランザクションに入れるため。
    """
    new_version = expected_version + 1
    await session.execute(
        text("""
            INSERT INTO event_store
                (aggregate_id, aggregate_type, event_type, event_data, version, created_at)
            VALUES
                (:agg_id, :agg_type, :evt_type, :evt_data, :version, :now)
        """),
        {
            "agg_id": str(aggregate_id),
            "agg_type": AGGREGATE_TYPE,
            "evt_type": event_type,
            "evt_data": json.dumps(event_data, default=str),
            "version": new_version,
            "now": datetime.now(timezone.utc).isoformat(),
        },
    )
    return new_version


def _to_record(row) -> dict:
    data = row.event_data
    return {
        "aggregate_id": str(row.aggregate_id),
        "aggregate_type": row.aggregate_type,
        "event_type": row.event_type,
        "event_data": json.loads(data) if isinstance(data, str) else data,
        "version": row.version,
        "created_at": row.created_at,
    }


async def load_events(session: AsyncSession, aggregate_id: UUID) -> list[dict]:
    """指定した集約の全イベントをバージョン順に読み出す（リプレイ用）。"""
    result = await session.execute(
        text("""
            SELECT * FROM event_store
            WHERE aggregate_id = :agg_id
            ORDER BY version ASC
        """),
        {"agg_id": str(aggregate_id)},
    )
    return [_to_record(row) for row in result.fetchall()]


async def load_all_events(session: AsyncSession, event_type: str | None = None) -> list[dict]:
    """すべてのイベントを時系列順に返す。event_type で絞り込める（学習用）。"""
    sql = "SELECT * FROM event_store"
    params: dict = {}
    if event_type:
        sql += " WHERE event_type = :evt_type"
        params["evt_type"] = event_type
    sql += " ORDER BY created_at ASC, version ASC"
    result = await session.execute(text(sql), params)
    return [_to_record(row) for row in result.fetchall()]
