"""
Order Service — 状態定義とゲートウェイ状態の分類

ゲートウェイから届く transaction_status / fraud_status は閉じた列挙型に
変換する。知らないコードは UNKNOWN になり、PENDING として扱う
(黙って FAILED にはしない)。

    settlement              → PAID
    capture + accept        → PAID
    capture + その他 / pending → PENDING (遷移なし)
    deny / expire / cancel  → FAILED
    unknown                 → PENDING
"""

from enum import Enum


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


# PAID の注文は削除しない
DELETABLE_STATUSES = frozenset({OrderStatus.PENDING, OrderStatus.FAILED, OrderStatus.CANCELLED})

# 遅延決済 (late settlement) で PAID に上書きできる状態
LATE_SETTLEMENT_STATUSES = frozenset({OrderStatus.FAILED, OrderStatus.CANCELLED})


class GatewayStatus(str, Enum):
    CAPTURE = "capture"
    SETTLEMENT = "settlement"
    PENDING = "pending"
    DENY = "deny"
    EXPIRE = "expire"
    CANCEL = "cancel"
    UNKNOWN = "unknown"

    @classmethod
    def _missing_(cls, value):
        return cls.UNKNOWN

    @classmethod
    def parse(cls, value: str | None) -> "GatewayStatus":
        if value is None:
            return cls.UNKNOWN
        return cls(str(value).strip().lower())


class FraudStatus(str, Enum):
    ACCEPT = "accept"
    CHALLENGE = "challenge"
    DENY = "deny"
    UNKNOWN = "unknown"

    @classmethod
    def _missing_(cls, value):
        return cls.UNKNOWN

    @classmethod
    def parse(cls, value: str | None) -> "FraudStatus":
        if value is None:
            return cls.UNKNOWN
        return cls(str(value).strip().lower())


_FAILED_GATEWAY_STATUSES = frozenset({GatewayStatus.DENY, GatewayStatus.EXPIRE, GatewayStatus.CANCEL})


def classify(
    gateway_status: GatewayStatus | str | None,
    fraud_status: FraudStatus | str | None = None,
) -> OrderStatus:
    """ゲートウェイの状態を内部の状態 (PAID / PENDING / FAILED) に変換する。"""
    gw = gateway_status if isinstance(gateway_status, GatewayStatus) else GatewayStatus.parse(gateway_status)
    fraud = fraud_status if isinstance(fraud_status, FraudStatus) else FraudStatus.parse(fraud_status)

    if gw is GatewayStatus.SETTLEMENT:
        return OrderStatus.PAID
    if gw is GatewayStatus.CAPTURE:
        return OrderStatus.PAID if fraud is FraudStatus.ACCEPT else OrderStatus.PENDING
    if gw in _FAILED_GATEWAY_STATUSES:
        return OrderStatus.FAILED
    return OrderStatus.PENDING
