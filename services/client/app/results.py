"""
Registration Client — 登録結果とエラーメッセージ

Event Service のエラーコードをクライアント側でも同じ名前で扱う。
サービスごとに独立してデプロイするため、型はサービス側と共有しない。
"""

from enum import Enum

from pydantic import BaseModel


class RegistrationError(str, Enum):
    NOT_FOUND = "not_found"
    ALREADY_REGISTERED = "already_registered"
    EVENT_FULL = "event_full"
    EVENT_NOT_PUBLISHED = "event_not_published"
    CONTENTION = "contention"
    TRANSPORT_FAILURE = "transport_failure"

    @property
    def retry_later(self) -> bool:
        """CONTENTION と TRANSPORT_FAILURE は「あとで再試行」として扱う"""
        return self in (RegistrationError.CONTENTION, RegistrationError.TRANSPORT_FAILURE)


# ユーザーに見せる文言
FAILURE_MESSAGES = {
    RegistrationError.NOT_FOUND: "This event no longer exists.",
    RegistrationError.ALREADY_REGISTERED: "You are already registered for this event.",
    RegistrationError.EVENT_FULL: "Sorry, the event filled up before your registration went through.",
    RegistrationError.EVENT_NOT_PUBLISHED: "This event is not open for registration.",
    RegistrationError.CONTENTION: "Many people are registering right now. Please try again in a moment.",
    RegistrationError.TRANSPORT_FAILURE: "We could not reach the server. Please try again in a moment.",
}


class RegistrationResult(BaseModel):
    success: bool
    event: dict | None = None
    error: RegistrationError | None = None
    reason: str = ""

    @classmethod
    def registered(cls, event: dict | None) -> "RegistrationResult":
        return cls(success=True, event=event)

    @classmethod
    def failed(cls, error: RegistrationError, reason: str = "") -> "RegistrationResult":
        return cls(success=False, error=error, reason=reason)

    @property
    def message(self) -> str:
        if self.success:
            return "You're registered!"
        return FAILURE_MESSAGES[self.error]
