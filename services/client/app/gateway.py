"""
Registration Client — Event Service ゲートウェイ

Event Service の HTTP API を呼び出し、レスポンスを
RegistrationResult に変換する。

ビジネスルール違反はサービスが返すエラーコードをそのまま使う。
タイムアウト・接続失敗・想定外のステータスはすべて
TRANSPORT_FAILURE にまとめ、例外としては投げない。
"""

import logging
from uuid import UUID

import httpx

from .results import RegistrationError, RegistrationResult

logger = logging.getLogger(__name__)


class RegistrationGateway:
    """1 ユーザー分の Event Service クライアント"""

    def __init__(
        self,
        base_url: str,
        user_id: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url
        self.user_id = user_id
        self.timeout = timeout
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            headers={"X-User-Id": self.user_id},
            transport=self.transport,
        )

    async def register(self, event_id: UUID | str) -> RegistrationResult:
        """POST /commands/events/{id}/register"""
        async with self._client() as client:
            try:
                resp = await client.post(f"/commands/events/{event_id}/register")
            except httpx.HTTPError as e:
                logger.warning("Registration request failed: event=%s error=%r", event_id, e)
                return RegistrationResult.failed(RegistrationError.TRANSPORT_FAILURE, str(e))
        return _to_result(resp)

    async def fetch_event(self, event_id: UUID | str) -> dict:
        """GET /queries/events/{id}（is_registered 付き）"""
        async with self._client() as client:
            resp = await client.get(f"/queries/events/{event_id}")
            resp.raise_for_status()
            return resp.json()


def _to_result(resp: httpx.Response) -> RegistrationResult:
    try:
        body = resp.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}

    if resp.status_code == 200 and body.get("success"):
        return RegistrationResult.registered(body.get("event"))

    try:
        error = RegistrationError(body.get("error"))
    except ValueError:
        # 401 / 500 などエラーコードのない応答
        logger.warning("Unexpected registration response: status=%d", resp.status_code)
        return RegistrationResult.failed(
            RegistrationError.TRANSPORT_FAILURE, f"HTTP {resp.status_code}"
        )
    return RegistrationResult.failed(error, body.get("reason", ""))
