"""
Order Service — エラー分類

ストレージ・ゲートウェイのエラーはオーケストレーター/照合エンジンの境界で
この分類に変換される。HTTP 層は status_code を見てレスポンスを返すだけ。
"""


class OrderServiceError(Exception):
    """Base order service error."""

    status_code = 500

    def __init__(self, msg: str = "", **ctx):
        super().__init__(msg)
        self.msg = msg
        self.ctx = ctx

    def __str__(self):
        base = self.msg or self.__class__.__name__
        if self.ctx:
            details = ", ".join(f"{k}={v}" for k, v in self.ctx.items())
            return f"{base} [{details}]"
        return base


class ValidationError(OrderServiceError):
    """Bad request shape, empty cart, insufficient stock."""

    status_code = 400


class NotFoundError(OrderServiceError):
    """Unknown order, product or user."""

    status_code = 404


class UnknownOrder(NotFoundError):
    """No order matches the gateway order reference."""


class ConflictError(OrderServiceError):
    """Webhook signature mismatch. Never says which field failed."""

    status_code = 400


class GatewayError(OrderServiceError):
    """Payment gateway RPC failed or timed out."""

    status_code = 502


class StorageError(OrderServiceError):
    """Database failure translated at the service boundary."""

    status_code = 503


class OversellRace(OrderServiceError):
    """Stock went negative after a paid order was applied.

    Log-only: formatted into a data-integrity warning, never raised
    to the transport, so it carries no HTTP status of its own.
    """
