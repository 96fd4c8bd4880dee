"""
Event Service — キャパシティ台帳のテーブル定義

  events_read_model : イベント 1 件 = 1 行。registered_count と version を持つ。
  registrations     : 登録マーカー。(event_id, user_id) が主キー。
  event_store       : ドメインイベントの追記専用ログ。(aggregate_id, version) が主キー。

PostgreSQL (asyncpg) と SQLite (aiosqlite) の両方で動く DDL だけを使う。
タイムスタンプは UTC の ISO-8601 文字列で保存する。
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS events_read_model (
        id VARCHAR(36) PRIMARY KEY,
        title VARCHAR(100) NOT NULL,
        description TEXT NOT NULL,
        category VARCHAR(32) NOT NULL,
        status VARCHAR(32) NOT NULL,
        starts_at VARCHAR(40) NOT NULL,
        ends_at VARCHAR(40),
        location VARCHAR(255) NOT NULL,
        address VARCHAR(255) NOT NULL,
        capacity INTEGER NOT NULL CHECK (capacity > 0),
        registered_count INTEGER NOT NULL DEFAULT 0
            CHECK (registered_count >= 0 AND registered_count <= capacity),
        price FLOAT NOT NULL DEFAULT 0,
        image_url TEXT,
        organizer_id VARCHAR(128) NOT NULL,
        organizer_name VARCHAR(255) NOT NULL,
        organizer_email VARCHAR(255) NOT NULL,
        tags TEXT NOT NULL DEFAULT '[]',
        version INTEGER NOT NULL,
        created_at VARCHAR(40) NOT NULL,
        updated_at VARCHAR(40) NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS registrations (
        event_id VARCHAR(36) NOT NULL,
        user_id VARCHAR(128) NOT NULL,
        registered_at VARCHAR(40) NOT NULL,
        PRIMARY KEY (event_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS event_store (
        aggregate_id VARCHAR(36) NOT NULL,
        aggregate_type VARCHAR(64) NOT NULL,
        event_type VARCHAR(64) NOT NULL,
        event_data TEXT NOT NULL,
        version INTEGER NOT NULL,
        created_at VARCHAR(40) NOT NULL,
        PRIMARY KEY (aggregate_id, version)
    )
    """,
]


async def create_schema(engine: AsyncEngine) -> None:
    """テーブルがなければ作成する（起動時とテストで使う）。"""
    async with engine.begin() as conn:
        for statement in SCHEMA_STATEMENTS:
            await conn.execute(text(statement))
