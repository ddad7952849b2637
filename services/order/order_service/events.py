"""
Order Service — イベント定義

注文に起きた事実(イベント)を定義する。
イベントは過去形で命名し、不変(immutable)として扱う。
台帳 (order_events) への追記と Redis への発行の両方に使う。
"""

from datetime import datetime

from pydantic import BaseModel


class OrderItemSnapshot(BaseModel):
    product_id: str
    product_name: str
    unit_price: int
    quantity: int
    subtotal: int


class OrderCreated(BaseModel):
    """カートから注文が作成された"""
    order_id: str
    order_number: str
    user_id: str
    external_session_id: str
    total_amount: int
    items: list[OrderItemSnapshot]
    timestamp: datetime


class PaymentSessionCreated(BaseModel):
    """ゲートウェイの決済セッションが記録された"""
    order_id: str
    external_session_id: str
    payment_url: str
    timestamp: datetime


class OrderPaid(BaseModel):
    """決済が確定した（在庫減算と同じトランザクション）"""
    order_id: str
    external_session_id: str
    previous_status: str
    gateway_status: str
    fraud_status: str | None = None
    late_settlement: bool = False
    timestamp: datetime


class OrderFailed(BaseModel):
    """決済が失敗した（セッション作成失敗・拒否・期限切れ・取消）"""
    order_id: str
    previous_status: str
    reason: str
    timestamp: datetime


class OrderCancelled(BaseModel):
    """管理者が PENDING の注文を取り消した"""
    order_id: str
    reason: str
    timestamp: datetime


class StockLine(BaseModel):
    product_id: str
    quantity: int
    remaining: int


class StockDecremented(BaseModel):
    """支払い済み注文の在庫が減算された（注文ごとに一度だけ）"""
    order_id: str
    lines: list[StockLine]
    timestamp: datetime


class OrderDeleted(BaseModel):
    """未決済の注文が削除された"""
    order_id: str
    order_number: str
    status: str
    timestamp: datetime
