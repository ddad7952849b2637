"""
Order Service — 決済ゲートウェイクライアント

ゲートウェイは不透明な RPC として扱う:
  create_session → token + redirect_url (ホスト型決済ページ)
  query_status   → (transaction_status, fraud_status, status_code, gross_amount)

HttpGatewayClient: Snap 形式の HTTP API (Basic 認証: server_key + ":")
FakeGateway:       開発・テスト用。外部呼び出しなしで成功/失敗を切り替えられる
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from uuid import uuid4

import httpx

from .errors import GatewayError


@dataclass(frozen=True)
class LineItem:
    id: str
    price: int
    quantity: int
    name: str


@dataclass(frozen=True)
class Customer:
    first_name: str
    email: str


@dataclass(frozen=True)
class PaymentSession:
    token: str
    redirect_url: str


@dataclass(frozen=True)
class StatusReport:
    order_ref: str
    transaction_status: str
    fraud_status: str | None = None
    status_code: str | None = None
    gross_amount: str | None = None


class GatewayClient(ABC):
    """決済ゲートウェイのポート"""

    @abstractmethod
    async def create_session(
        self,
        order_ref: str,
        gross_amount: int,
        items: list[LineItem],
        customer: Customer,
    ) -> PaymentSession: ...

    @abstractmethod
    async def query_status(self, order_ref: str) -> StatusReport: ...


class HttpGatewayClient(GatewayClient):
    def __init__(
        self,
        server_key: str,
        snap_url: str,
        api_url: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.server_key = server_key
        self.snap_url = snap_url
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout,
            auth=(self.server_key, ""),
            headers={"Accept": "application/json"},
            transport=self._transport,
        )

    async def create_session(
        self,
        order_ref: str,
        gross_amount: int,
        items: list[LineItem],
        customer: Customer,
    ) -> PaymentSession:
        body = {
            "transaction_details": {"order_id": order_ref, "gross_amount": gross_amount},
            "item_details": [asdict(item) for item in items],
            "customer_details": asdict(customer),
        }
        try:
            async with self._client() as client:
                resp = await client.post(self.snap_url, json=body)
        except httpx.HTTPError as e:
            raise GatewayError("Payment gateway unreachable", order_ref=order_ref, error=type(e).__name__) from e

        if resp.is_error:
            raise GatewayError(
                f"Failed to create payment: {_error_messages(resp)}",
                order_ref=order_ref,
                http_status=resp.status_code,
            )

        data = _json_or_empty(resp)
        token = data.get("token")
        redirect_url = data.get("redirect_url")
        if not token or not redirect_url:
            raise GatewayError("Payment gateway returned no session", order_ref=order_ref)
        return PaymentSession(token=token, redirect_url=redirect_url)

    async def query_status(self, order_ref: str) -> StatusReport:
        try:
            async with self._client() as client:
                resp = await client.get(f"{self.api_url}/{order_ref}/status")
        except httpx.HTTPError as e:
            raise GatewayError("Payment gateway unreachable", order_ref=order_ref, error=type(e).__name__) from e

        data = _json_or_empty(resp)
        # 決済ページが未操作の場合、ゲートウェイは取引を知らない → まだ PENDING
        if resp.status_code == 404 or str(data.get("status_code")) == "404":
            return StatusReport(order_ref=order_ref, transaction_status="pending", status_code="404")
        if resp.is_error:
            raise GatewayError(
                f"Failed to query payment status: {_error_messages(resp)}",
                order_ref=order_ref,
                http_status=resp.status_code,
            )

        return StatusReport(
            order_ref=str(data.get("order_id") or order_ref),
            transaction_status=str(data.get("transaction_status") or "unknown"),
            fraud_status=data.get("fraud_status"),
            status_code=str(data["status_code"]) if data.get("status_code") is not None else None,
            gross_amount=str(data["gross_amount"]) if data.get("gross_amount") is not None else None,
        )


def _json_or_empty(resp: httpx.Response) -> dict:
    try:
        data = resp.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _error_messages(resp: httpx.Response) -> str:
    messages = _json_or_empty(resp).get("error_messages")
    if isinstance(messages, list) and messages:
        return ", ".join(str(m) for m in messages)
    return f"HTTP {resp.status_code}"


class FakeGateway(GatewayClient):
    """設定で挙動を変えられる偽ゲートウェイ"""

    def __init__(self) -> None:
        self.should_succeed: bool = True
        self.failure_reason: str = "Payment gateway rejected the session"
        self.delay: float = 0.0
        self.statuses: dict[str, StatusReport] = {}
        self.calls: list[dict] = []

    def configure(
        self,
        should_succeed: bool,
        failure_reason: str = "Payment gateway rejected the session",
        delay: float = 0.0,
    ) -> None:
        self.should_succeed = should_succeed
        self.failure_reason = failure_reason
        self.delay = delay

    def set_status(
        self,
        order_ref: str,
        transaction_status: str,
        fraud_status: str | None = None,
        gross_amount: str | None = None,
    ) -> None:
        """query_status が返す状態を登録する。"""
        self.statuses[order_ref] = StatusReport(
            order_ref=order_ref,
            transaction_status=transaction_status,
            fraud_status=fraud_status,
            status_code="200",
            gross_amount=gross_amount,
        )

    async def create_session(
        self,
        order_ref: str,
        gross_amount: int,
        items: list[LineItem],
        customer: Customer,
    ) -> PaymentSession:
        self.calls.append(
            {
                "method": "create_session",
                "order_ref": order_ref,
                "gross_amount": gross_amount,
                "items": [asdict(item) for item in items],
                "customer": asdict(customer),
            }
        )
        if self.delay:
            await asyncio.sleep(self.delay)
        if not self.should_succeed:
            raise GatewayError(self.failure_reason, order_ref=order_ref)

        token = f"fake_tok_{uuid4().hex[:12]}"
        return PaymentSession(token=token, redirect_url=f"https://fake-gateway.local/snap/v2/vtweb/{token}")

    async def query_status(self, order_ref: str) -> StatusReport:
        self.calls.append({"method": "query_status", "order_ref": order_ref})
        if self.delay:
            await asyncio.sleep(self.delay)
        if not self.should_succeed:
            raise GatewayError(self.failure_reason, order_ref=order_ref)
        return self.statuses.get(order_ref) or StatusReport(
            order_ref=order_ref, transaction_status="pending", status_code="404"
        )


def build_gateway(settings) -> GatewayClient:
    """設定に応じてゲートウェイ実装を選ぶ。"""
    if settings.gateway_backend == "fake":
        return FakeGateway()
    return HttpGatewayClient(
        server_key=settings.gateway_server_key,
        snap_url=settings.gateway_snap_url,
        api_url=settings.gateway_api_url,
        timeout=settings.gateway_timeout,
    )
