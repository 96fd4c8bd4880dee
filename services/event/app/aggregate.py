"""
Event Service — イベント集約 (Event Aggregate)

イベントストアのドメインイベントをリプレイして、
イベントの状態と登録済みユーザーを再構築する。

リードモデルと突き合わせると、
  len(registered_users) == registered_count
が常に成り立っていることを確認できる。
"""

from uuid import UUID


class EventAggregate:
    """
    イベント集約。

    状態遷移:
        (なし) → 作成済み   (EventCreated)
        作成済み → 削除済み (EventDeleted)
    """

    def __init__(self) -> None:
        self.id: UUID | None = None
        self.organizer_id: str = ""
        self.title: str = ""
        self.status: str = "unknown"
        self.capacity: int = 0
        self.registered_users: list[str] = []
        self.deleted: bool = False
        self.version: int = 0

    @property
    def registered_count(self) -> int:
        return len(self.registered_users)

    @property
    def exists(self) -> bool:
        return self.id is not None and not self.deleted

    # ── イベント適用メソッド ──────────────────────────

    def apply_event_created(self, data: dict) -> None:
        self.id = UUID(data["event_id"])
        self.organizer_id = data["organizer_id"]
        self.title = data["title"]
        self.status = data["status"]
        self.capacity = data["capacity"]

    def apply_event_updated(self, data: dict) -> None:
        changes = data.get("changes", {})
        for field in ("title", "status", "capacity"):
            if field in changes:
                setattr(self, field, changes[field])

    def apply_user_registered(self, data: dict) -> None:
        self.registered_users.append(data["user_id"])

    def apply_event_deleted(self, _data: dict) -> None:
        self.deleted = True

    # ── イベントリプレイ ─────────────────────────────

    def apply_event(self, event_type: str, event_data: dict) -> None:
        handler = {
            "EventCreated": self.apply_event_created,
            "EventUpdated": self.apply_event_updated,
            "UserRegistered": self.apply_user_registered,
            "EventDeleted": self.apply_event_deleted,
        }.get(event_type)
        if handler:
            handler(event_data)

    @classmethod
    def from_events(cls, events: list[dict]) -> "EventAggregate":
        agg = cls()
        for e in events:
            agg.apply_event(e["event_type"], e["event_data"])
            agg.version = e["version"]
        return agg

    def to_dict(self) -> dict:
        return {
            "id": str(self.id) if self.id else None,
            "organizer_id": self.organizer_id,
            "title": self.title,
            "status": self.status,
            "capacity": self.capacity,
            "registered_count": self.registered_count,
            "registered_users": list(self.registered_users),
            "deleted": self.deleted,
            "version": self.version,
        }
