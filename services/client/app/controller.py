"""
Registration Client — 楽観的 UI コントローラー

楽観的更新 (Optimistic Update) パターン:
  サーバーの確認を待たずに「空き枠 -1」を先に表示し、
  結果が返ってきたら確定 (Confirm) か取り消し (Roll back) する。
  Saga の補償トランザクションと同じ考え方を UI の状態に適用したもの。

  状態遷移 (1 回の登録試行):
  ┌──────┐ request_registration() ┌─────────────┐  成功  ┌───────────┐
  │ IDLE │ ──────────────────────▶ │ SPECULATING │ ─────▶ │ CONFIRMED │ (以後の試行は不可)
  └──────┘                         └──────┬──────┘        └───────────┘
      ▲                                   │ 失敗
      │                            ┌──────▼──────┐
      └──── 再試行を受け付ける ──── │ ROLLED_BACK │
                                   └─────────────┘

  - 投機的な値は request_registration() が戻る前に反映される
    （ネットワーク呼び出しはその後にタスクとして開始する）
  - 同時に進行できる試行は 1 つだけ。進行中の要求は無視する
  - 「登録済み」はサーバーが確認するまで表示しない
  - 失敗時は自動で再試行しない。理由を failure / failure_message で公開する
  - 返したタスクがキャンセルされた場合も TRANSPORT_FAILURE としてロールバックする
"""

import asyncio
import logging
from collections.abc import Callable
from enum import Enum
from uuid import UUID

from .gateway import RegistrationGateway
from .results import RegistrationError, RegistrationResult

logger = logging.getLogger(__name__)


class RegistrationState(str, Enum):
    IDLE = "idle"
    SPECULATING = "speculating"
    CONFIRMED = "confirmed"
    ROLLED_BACK = "rolled_back"


Listener = Callable[["OptimisticRegistrationController"], None]


class OptimisticRegistrationController:
    """1 ユーザー × 1 イベントの登録ボタンの状態を保持する"""

    def __init__(
        self,
        gateway: RegistrationGateway,
        event_id: UUID | str,
        available_spots: int,
        accepts_registration: bool = True,
        timeout: float | None = None,
    ):
        self.gateway = gateway
        self.event_id = event_id
        self.timeout = timeout
        self.authoritative_available = available_spots
        self.speculative_available = available_spots
        self.accepts_registration = accepts_registration
        self.registration_state = RegistrationState.IDLE
        self.failure: RegistrationError | None = None
        self.failure_message: str | None = None
        self._listeners: list[Listener] = []
        self._pending: asyncio.Task | None = None

    @classmethod
    def from_event(
        cls,
        gateway: RegistrationGateway,
        event: dict,
        timeout: float | None = None,
    ) -> "OptimisticRegistrationController":
        """Event Service の詳細レスポンスから作る。登録済みなら CONFIRMED で始める。"""
        controller = cls(
            gateway,
            event["id"],
            event["available_spots"],
            event.get("status") == "published",
            timeout=timeout,
        )
        if event.get("is_registered"):
            controller.registration_state = RegistrationState.CONFIRMED
        return controller

    # ── プレゼンテーション層向け ─────────────────────

    @property
    def in_flight(self) -> bool:
        return self.registration_state == RegistrationState.SPECULATING

    @property
    def is_registered(self) -> bool:
        return self.registration_state == RegistrationState.CONFIRMED

    @property
    def can_register(self) -> bool:
        return (
            self.accepts_registration
            and self.speculative_available > 0
            and self.registration_state in (RegistrationState.IDLE, RegistrationState.ROLLED_BACK)
        )

    @property
    def label(self) -> str:
        """登録ボタンの表示文言"""
        if self.is_registered:
            return "Registered!"
        if self.in_flight:
            return "Registering..."
        if self.speculative_available == 0:
            return "Sold out"
        if not self.accepts_registration:
            return "Not available"
        return f"Register ({self.speculative_available} spots left)"

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """状態が変わるたびに listener(controller) を呼ぶ。戻り値で購読解除。"""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def refresh(self, available_spots: int, accepts_registration: bool) -> None:
        """サーバーから読み直した値を反映する。試行中は投機的な値を壊さないよう無視する。"""
        if self.in_flight:
            return
        self.authoritative_available = available_spots
        self.speculative_available = available_spots
        self.accepts_registration = accepts_registration
        self._notify()

    # ── 登録 ─────────────────────────────────────────

    def request_registration(self) -> asyncio.Task | None:
        """
        登録を要求する。実行中のイベントループから呼ぶこと。

        受け付けた場合は投機的な値を反映してからサーバー呼び出しの
        タスクを返す。受け付けない場合は None（ボタンは無効表示）。
        """
        if not self.can_register:
            logger.debug(
                "Registration request ignored: event=%s state=%s available=%d",
                self.event_id, self.registration_state.value, self.speculative_available,
            )
            return None

        self.failure = None
        self.failure_message = None
        self.speculative_available = max(0, self.authoritative_available - 1)
        self.registration_state = RegistrationState.SPECULATING
        self._notify()

        self._pending = asyncio.create_task(self._settle())
        self._pending.add_done_callback(self._on_done)
        return self._pending

    def _on_done(self, task: asyncio.Task) -> None:
        # 開始前にキャンセルされたタスクは _settle の本体を通らない
        if task.cancelled() and self._pending is task:
            self._apply(RegistrationResult.failed(RegistrationError.TRANSPORT_FAILURE, "cancelled"))

    async def _settle(self) -> RegistrationResult:
        try:
            if self.timeout is None:
                result = await self.gateway.register(self.event_id)
            else:
                result = await asyncio.wait_for(
                    self.gateway.register(self.event_id), self.timeout
                )
        except asyncio.TimeoutError:
            result = RegistrationResult.failed(
                RegistrationError.TRANSPORT_FAILURE, f"no response within {self.timeout}s"
            )
        except asyncio.CancelledError:
            # 呼び出し側がタスクを取り消した場合も補償してから伝播させる
            self._apply(RegistrationResult.failed(RegistrationError.TRANSPORT_FAILURE, "cancelled"))
            raise
        except Exception:
            logger.exception("Registration call failed: event=%s", self.event_id)
            result = RegistrationResult.failed(RegistrationError.TRANSPORT_FAILURE)

        self._apply(result)
        return result

    def _apply(self, result: RegistrationResult) -> None:
        if result.success:
            self.authoritative_available -= 1
            self.speculative_available = self.authoritative_available
            self.registration_state = RegistrationState.CONFIRMED
        else:
            # 補償: 投機的な -1 を捨てて確定値に戻す
            self.speculative_available = self.authoritative_available
            self.registration_state = RegistrationState.ROLLED_BACK
            self.failure = result.error
            self.failure_message = result.message
            logger.warning(
                "Registration rolled back: event=%s error=%s reason=%s",
                self.event_id, result.error.value, result.reason,
            )

        self._pending = None
        self._notify()

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self)
