"""
Event Service — エラー分類

登録処理のビジネスルール違反は例外ではなく「値」として返す。
クライアントは error コードで分岐できる。

  NOT_FOUND / ALREADY_REGISTERED / EVENT_FULL / EVENT_NOT_PUBLISHED
      → ビジネスルール違反（再試行しても結果は変わらない）
  CONTENTION / TRANSPORT_FAILURE
      → 「あとで再試行」クラス
"""

from enum import Enum


class RegistrationError(str, Enum):
    NOT_FOUND = "not_found"
    ALREADY_REGISTERED = "already_registered"
    EVENT_FULL = "event_full"
    EVENT_NOT_PUBLISHED = "event_not_published"
    CONTENTION = "contention"
    TRANSPORT_FAILURE = "transport_failure"

    @property
    def retry_later(self) -> bool:
        return self in (RegistrationError.CONTENTION, RegistrationError.TRANSPORT_FAILURE)


REASONS = {
    RegistrationError.NOT_FOUND: "Event not found",
    RegistrationError.ALREADY_REGISTERED: "User is already registered for this event",
    RegistrationError.EVENT_FULL: "Event is full",
    RegistrationError.EVENT_NOT_PUBLISHED: "Event is not open for registration",
    RegistrationError.CONTENTION: "Too many concurrent registrations, retry later",
    RegistrationError.TRANSPORT_FAILURE: "Registration service unreachable",
}


class LedgerConflict(Exception):
    """読み取り後に別の書き込みがコミットされた（トランザクションをやり直す）。"""


# ── カタログ操作の例外 ──────────────────────────


class CatalogError(Exception):
    pass


class EventNotFound(CatalogError):
    pass


class NotEventOwner(CatalogError):
    pass


class CapacityBelowRegistrations(CatalogError):
    pass


class CatalogConflict(CatalogError):
    pass


class InvalidSchedule(CatalogError):
    pass
