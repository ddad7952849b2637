"""
Order Service — チェックアウト

カートを注文に変換し、ゲートウェイで決済セッションを作成する。

    1. カート・商品・ユーザーを読む (在庫は確認するだけで確保しない)
    2. 注文 + 明細 + 配送先 + OrderCreated を 1 トランザクションで保存
    3. ゲートウェイで決済セッションを作成 (タイムアウト付き)
       失敗 → 注文を FAILED にして GatewayError (注文は監査用に残す)
       成功 → token / redirect_url を保存してコミット
    4. 別トランザクションでカートを空にする
"""

import asyncio
import logging
import secrets
import time
from datetime import datetime, timezone
from uuid import uuid4

import redis.asyncio as aioredis
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from . import commands, event_store, queries
from .config import Settings
from .errors import GatewayError, NotFoundError, StorageError, ValidationError
from .events import OrderCreated, OrderFailed, OrderItemSnapshot, PaymentSessionCreated
from .gateway import Customer, GatewayClient, LineItem, PaymentSession
from .publisher import publish
from .status import OrderStatus

logger = logging.getLogger(__name__)


class ShippingInfo(BaseModel):
    recipient_name: str = Field(min_length=1, max_length=255)
    phone_number: str = Field(min_length=10, max_length=15)
    address: str = Field(min_length=1)
    city: str = Field(min_length=1, max_length=100)
    province: str = Field(min_length=1, max_length=100)
    postal_code: str = Field(min_length=5, max_length=6)
    notes: str | None = None


def generate_order_number(user_id: str) -> str:
    """ORD-<epoch ms>-<ユーザーID先頭8文字>-<乱数>"""
    millis = int(time.time() * 1000)
    return f"ORD-{millis}-{user_id[:8].upper()}-{secrets.token_hex(3).upper()}"


def generate_session_ref() -> str:
    return f"PAY-{uuid4().hex}"


class CheckoutOrchestrator:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        gateway: GatewayClient,
        redis: aioredis.Redis | None,
        settings: Settings,
    ) -> None:
        self._session_factory = session_factory
        self._gateway = gateway
        self._redis = redis
        self._settings = settings

    async def checkout(self, user_id: str, shipping: ShippingInfo) -> dict:
        try:
            created, user, items = await self._create_order(user_id, shipping)
        except SQLAlchemyError as e:
            raise StorageError("Failed to create order", user_id=user_id) from e

        # 以降で失敗・中断したら注文は FAILED にする (セッションなしの PENDING を残さない)
        order_id = created.order_id
        try:
            await publish(self._redis, created)
            payment = await asyncio.wait_for(
                self._gateway.create_session(
                    created.external_session_id,
                    created.total_amount,
                    [
                        LineItem(id=i.product_id, price=i.unit_price, quantity=i.quantity, name=i.product_name)
                        for i in items
                    ],
                    Customer(first_name=user["display_name"], email=user["email"]),
                ),
                timeout=self._settings.gateway_timeout,
            )
        except (GatewayError, asyncio.TimeoutError) as e:
            reason = str(e) if isinstance(e, GatewayError) else "Payment gateway timed out"
            logger.warning("Payment session for order %s failed: %s", order_id, reason)
            await asyncio.shield(self._mark_failed(order_id, reason))
            raise GatewayError(
                "Failed to create payment session",
                order_id=order_id,
                order_number=created.order_number,
            ) from e
        except BaseException as e:
            logger.warning("Payment session for order %s interrupted: %r", order_id, e)
            await asyncio.shield(self._mark_failed(order_id, "Payment session creation interrupted"))
            raise

        try:
            attached = await asyncio.shield(
                self._attach_session(order_id, created.external_session_id, payment)
            )
        except SQLAlchemyError as e:
            raise StorageError("Failed to record payment session", order_id=order_id) from e
        if attached:
            await publish(self._redis, attached)

        # 注文は確定済み。カートの削除に失敗しても注文は巻き戻さない
        try:
            async with self._session_factory() as db:
                await commands.clear_cart(db, user_id)
                await db.commit()
        except SQLAlchemyError:
            logger.exception("Failed to clear cart of user %s after order %s", user_id, order_id)

        try:
            async with self._session_factory() as db:
                order = await queries.get_order(db, order_id)
        except SQLAlchemyError as e:
            raise StorageError("Failed to load order", order_id=order_id) from e
        logger.info("Order %s created (%s)", created.order_number, order_id)
        return order

    async def _create_order(
        self, user_id: str, shipping: ShippingInfo
    ) -> tuple[OrderCreated, dict, list[OrderItemSnapshot]]:
        async with self._session_factory() as db:
            user = await queries.get_user(db, user_id)
            if not user:
                raise NotFoundError("User not found", user_id=user_id)

            lines = await queries.get_cart_lines(db, user_id)
            if not lines:
                raise ValidationError("Cart is empty")

            for line in lines:
                if line["stock"] < line["quantity"]:
                    raise ValidationError(
                        f"Insufficient stock for {line['product_name']}",
                        product_id=line["product_id"],
                        available=line["stock"],
                        requested=line["quantity"],
                    )

            items = [
                OrderItemSnapshot(
                    product_id=line["product_id"],
                    product_name=line["product_name"],
                    unit_price=line["unit_price"],
                    quantity=line["quantity"],
                    subtotal=line["unit_price"] * line["quantity"],
                )
                for line in lines
            ]
            now = datetime.now(timezone.utc)
            created = OrderCreated(
                order_id=str(uuid4()),
                order_number=generate_order_number(user_id),
                user_id=user_id,
                external_session_id=generate_session_ref(),
                total_amount=sum(item.subtotal for item in items),
                items=items,
                timestamp=now,
            )

            await commands.insert_order(
                db,
                order_id=created.order_id,
                order_number=created.order_number,
                user_id=user_id,
                external_session_id=created.external_session_id,
                total_amount=created.total_amount,
                items=[item.model_dump() for item in items],
                shipping=shipping.model_dump(),
                now=now,
            )
            await event_store.append_event(db, created.order_id, created, expected_version=0)
            await db.commit()
            return created, user, items

    async def _attach_session(
        self, order_id: str, order_ref: str, payment: PaymentSession
    ) -> PaymentSessionCreated | None:
        now = datetime.now(timezone.utc)
        async with self._session_factory() as db:
            if not await commands.attach_payment_session(db, order_id, payment.token, payment.redirect_url, now):
                await db.rollback()
                return None
            event = PaymentSessionCreated(
                order_id=order_id,
                external_session_id=order_ref,
                payment_url=payment.redirect_url,
                timestamp=now,
            )
            await event_store.append_event(db, order_id, event)
            await db.commit()
            return event

    async def _mark_failed(self, order_id: str, reason: str) -> None:
        now = datetime.now(timezone.utc)
        try:
            async with self._session_factory() as db:
                if not await commands.transition_status(
                    db, order_id, [OrderStatus.PENDING], OrderStatus.FAILED, now
                ):
                    await db.rollback()
                    return
                event = OrderFailed(
                    order_id=order_id,
                    previous_status=OrderStatus.PENDING.value,
                    reason=reason,
                    timestamp=now,
                )
                await event_store.append_event(db, order_id, event)
                await db.commit()
        except SQLAlchemyError as e:
            raise StorageError("Failed to record payment failure", order_id=order_id) from e
        await publish(self._redis, event)
