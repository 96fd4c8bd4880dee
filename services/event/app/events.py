"""
Event Service — ドメインイベント定義

カタログと登録で発生する事実。過去形で命名し、不変として扱う。
event_store には model_dump(mode="json") した辞書を保存する。
"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel


class EventCreated(BaseModel):
    """イベントが作成された"""
    event_id: UUID
    organizer_id: str
    title: str
    status: str
    capacity: int
    timestamp: datetime


class EventUpdated(BaseModel):
    """イベントの内容が変更された（変更フィールドのみ保持）"""
    event_id: UUID
    changes: dict
    timestamp: datetime


class UserRegistered(BaseModel):
    """ユーザーがイベントに登録された（registered_count が 1 増えた）"""
    event_id: UUID
    user_id: str
    registered_count: int
    timestamp: datetime


class EventDeleted(BaseModel):
    """イベントが削除された"""
    event_id: UUID
    timestamp: datetime


# ── 値の列挙 ─────────────────────────────────────


class EventCategory(str, Enum):
    CONFERENCE = "conference"
    WORKSHOP = "workshop"
    CONCERT = "concert"
    EXHIBITION = "exhibition"
    NETWORKING = "networking"
    SPORTS = "sports"
    CULTURAL = "cultural"
    OTHER = "other"


class EventStatus(str, Enum):
    """published のイベントだけが登録を受け付ける。"""
    DRAFT = "draft"
    PUBLISHED = "published"
    CANCELLED = "cancelled"
    FINISHED = "finished"
