"""
Order Service — 決済照合エンジン (状態機械)

注文を PENDING から終端状態へ動かし、在庫を減算する唯一の場所。
webhook と check-status (ポーリング) の両方がここを通る。

    PENDING → PAID       (在庫減算 + StockDecremented)
    PENDING → FAILED
    PENDING → CANCELLED  (管理者の取消)
    FAILED / CANCELLED → PAID  (遅延決済、allow_late_settlement)

同じ注文への webhook とポーリングは順序なく並行に届く。
勝者は条件付き UPDATE で 1 つだけに決まり、PAID は二度と降格しない。
遷移 + 在庫減算 + 台帳追記は 1 トランザクションで、asyncio.shield の中で実行する。
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

import redis.asyncio as aioredis
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from . import commands, event_store, queries
from .errors import GatewayError, NotFoundError, StorageError, UnknownOrder, ValidationError
from .events import OrderCancelled, OrderDeleted, OrderFailed, OrderPaid, StockDecremented, StockLine
from .gateway import GatewayClient
from .publisher import publish
from .queries import OrderState
from .status import (
    LATE_SETTLEMENT_STATUSES,
    FraudStatus,
    GatewayStatus,
    OrderStatus,
    classify,
)

logger = logging.getLogger(__name__)

# 競合で負けた後に再判定する回数の上限 (状態は高々 2 回しか変わらない)
MAX_ATTEMPTS = 3


class Outcome(str, Enum):
    TRANSITIONED = "TRANSITIONED"
    UNCHANGED = "UNCHANGED"


@dataclass(frozen=True)
class ReconciliationResult:
    outcome: Outcome
    order_id: str
    previous_status: OrderStatus
    status: OrderStatus
    stock_applied: bool
    conflict: bool = False


def _unchanged(state: OrderState, conflict: bool = False) -> ReconciliationResult:
    return ReconciliationResult(
        outcome=Outcome.UNCHANGED,
        order_id=state.id,
        previous_status=state.status,
        status=state.status,
        stock_applied=state.stock_applied,
        conflict=conflict,
    )


class ReconciliationEngine:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        gateway: GatewayClient | None = None,
        redis: aioredis.Redis | None = None,
        allow_late_settlement: bool = True,
        gateway_timeout: float = 10.0,
    ) -> None:
        self._session_factory = session_factory
        self._gateway = gateway
        self._redis = redis
        self.allow_late_settlement = allow_late_settlement
        self._gateway_timeout = gateway_timeout

    # ── 照合 ───────────────────────────────────────

    async def reconcile(
        self,
        order_ref: str,
        gateway_status: GatewayStatus | str | None,
        fraud_status: FraudStatus | str | None = None,
    ) -> ReconciliationResult:
        """ゲートウェイの状態報告を注文に反映する。何度呼んでも結果は同じ。"""
        gw = gateway_status if isinstance(gateway_status, GatewayStatus) else GatewayStatus.parse(gateway_status)
        fraud = fraud_status if isinstance(fraud_status, FraudStatus) else FraudStatus.parse(fraud_status)

        state = await self._load_by_ref(order_ref)
        if state is None:
            raise UnknownOrder("Order not found", order_ref=order_ref)

        new_status = classify(gw, fraud)
        if new_status == state.status or new_status is OrderStatus.PENDING:
            return _unchanged(state)

        try:
            return await asyncio.shield(self._apply(state.id, new_status, gw, fraud))
        except SQLAlchemyError as e:
            raise StorageError("Failed to reconcile order", order_id=state.id) from e

    async def poll(self, order_id: str) -> ReconciliationResult:
        """ゲートウェイに状態を問い合わせて照合する (check-status)。"""
        state = await self._load(order_id)
        if state is None:
            raise NotFoundError("Order not found", order_id=order_id)
        if state.status is OrderStatus.PAID:
            return _unchanged(state)
        if self._gateway is None:
            raise GatewayError("No payment gateway configured", order_id=order_id)

        try:
            report = await asyncio.wait_for(
                self._gateway.query_status(state.external_session_id),
                timeout=self._gateway_timeout,
            )
        except asyncio.TimeoutError as e:
            raise GatewayError("Payment gateway timed out", order_id=order_id) from e

        logger.info(
            "Gateway status for order %s: %s (status_code=%s, gross_amount=%s)",
            order_id,
            report.transaction_status,
            report.status_code,
            report.gross_amount,
        )
        return await self.reconcile(state.external_session_id, report.transaction_status, report.fraud_status)

    def _decide(self, state: OrderState, new_status: OrderStatus) -> ReconciliationResult | None:
        """
        最新の行に対して遷移できるかを判定する。
        遷移できるなら None、できないなら UNCHANGED の結果を返す。
        """
        if state.status == new_status:
            return _unchanged(state)
        if state.status is OrderStatus.PENDING:
            return None
        if state.status is OrderStatus.PAID:
            logger.warning(
                "Conflict: order %s is PAID, ignoring %s report", state.id, new_status.value
            )
            return _unchanged(state, conflict=True)
        if state.status in LATE_SETTLEMENT_STATUSES and new_status is OrderStatus.PAID:
            if self.allow_late_settlement:
                return None
            logger.warning(
                "Conflict: order %s is %s, late settlement disabled", state.id, state.status.value
            )
            return _unchanged(state, conflict=True)
        return _unchanged(state)

    async def _apply(
        self,
        order_id: str,
        new_status: OrderStatus,
        gw: GatewayStatus,
        fraud: FraudStatus,
    ) -> ReconciliationResult:
        for _ in range(MAX_ATTEMPTS):
            async with self._session_factory() as db:
                state = await queries.get_order_state(db, order_id)
                if state is None:
                    # 照合の途中で削除された
                    raise UnknownOrder("Order not found", order_id=order_id)
                decided = self._decide(state, new_status)
                if decided is not None:
                    return decided

                now = datetime.now(timezone.utc)
                to_paid = new_status is OrderStatus.PAID
                flipped = await commands.transition_status(
                    db, order_id, [state.status], new_status, now, apply_stock=to_paid
                )
                if not flipped:
                    # 他のリクエストが先に遷移させた。最新の行で判定し直す
                    await db.rollback()
                    continue

                events: list[BaseModel] = []
                if to_paid:
                    late = state.status is not OrderStatus.PENDING
                    if late:
                        logger.info("Late settlement: order %s %s → PAID", order_id, state.status.value)
                    events.append(
                        OrderPaid(
                            order_id=order_id,
                            external_session_id=state.external_session_id,
                            previous_status=state.status.value,
                            gateway_status=gw.value,
                            fraud_status=fraud.value,
                            late_settlement=late,
                            timestamp=now,
                        )
                    )
                    items = await queries.get_order_items(db, order_id)
                    lines = await commands.decrement_stock(db, order_id, items, now)
                    events.append(
                        StockDecremented(
                            order_id=order_id,
                            lines=[StockLine(**line) for line in lines],
                            timestamp=now,
                        )
                    )
                else:
                    events.append(
                        OrderFailed(
                            order_id=order_id,
                            previous_status=state.status.value,
                            reason=f"Payment {gw.value}",
                            timestamp=now,
                        )
                    )

                version = await event_store.current_version(db, order_id)
                for event in events:
                    version = await event_store.append_event(db, order_id, event, version)
                await db.commit()

            for event in events:
                if not isinstance(event, StockDecremented):
                    await publish(self._redis, event)
            logger.info("Order %s: %s → %s", order_id, state.status.value, new_status.value)
            return ReconciliationResult(
                outcome=Outcome.TRANSITIONED,
                order_id=order_id,
                previous_status=state.status,
                status=new_status,
                stock_applied=state.stock_applied or to_paid,
            )

        # ここに来るのは競合が続いた場合だけ
        state = await self._load(order_id)
        if state is None:
            raise UnknownOrder("Order not found", order_id=order_id)
        return _unchanged(state, conflict=True)

    # ── 管理操作 ───────────────────────────────────

    async def cancel(self, order_id: str, reason: str = "Cancelled by admin") -> ReconciliationResult:
        """PENDING の注文を取り消す。"""
        try:
            return await asyncio.shield(self._cancel(order_id, reason))
        except SQLAlchemyError as e:
            raise StorageError("Failed to cancel order", order_id=order_id) from e

    async def _cancel(self, order_id: str, reason: str) -> ReconciliationResult:
        now = datetime.now(timezone.utc)
        async with self._session_factory() as db:
            state = await queries.get_order_state(db, order_id)
            if state is None:
                raise NotFoundError("Order not found", order_id=order_id)
            if state.status is not OrderStatus.PENDING or not await commands.transition_status(
                db, order_id, [OrderStatus.PENDING], OrderStatus.CANCELLED, now
            ):
                await db.rollback()
                current = await queries.get_order_state(db, order_id)
                raise ValidationError(
                    "Only pending orders can be cancelled",
                    order_id=order_id,
                    status=current.status.value if current else None,
                )

            event = OrderCancelled(order_id=order_id, reason=reason, timestamp=now)
            await event_store.append_event(db, order_id, event)
            await db.commit()

        await publish(self._redis, event)
        logger.info("Order %s cancelled", order_id)
        return ReconciliationResult(
            outcome=Outcome.TRANSITIONED,
            order_id=order_id,
            previous_status=OrderStatus.PENDING,
            status=OrderStatus.CANCELLED,
            stock_applied=state.stock_applied,
        )

    async def delete(self, order_id: str) -> None:
        """未決済 (PENDING / FAILED / CANCELLED) の注文を削除する。PAID は削除できない。"""
        try:
            await asyncio.shield(self._delete(order_id))
        except SQLAlchemyError as e:
            raise StorageError("Failed to delete order", order_id=order_id) from e

    async def _delete(self, order_id: str) -> None:
        now = datetime.now(timezone.utc)
        async with self._session_factory() as db:
            order = await queries.get_order(db, order_id)
            if order is None:
                raise NotFoundError("Order not found", order_id=order_id)
            if not await commands.delete_order(db, order_id):
                await db.rollback()
                raise ValidationError("Cannot delete a paid order", order_id=order_id)

            event = OrderDeleted(
                order_id=order_id,
                order_number=order["order_number"],
                status=order["status"],
                timestamp=now,
            )
            await event_store.append_event(db, order_id, event)
            await db.commit()

        await publish(self._redis, event)
        logger.info("Order %s deleted", order_id)

    # ── 読み取り ───────────────────────────────────

    async def _load(self, order_id: str) -> OrderState | None:
        try:
            async with self._session_factory() as db:
                return await queries.get_order_state(db, order_id)
        except SQLAlchemyError as e:
            raise StorageError("Failed to load order", order_id=order_id) from e

    async def _load_by_ref(self, order_ref: str) -> OrderState | None:
        try:
            async with self._session_factory() as db:
                return await queries.get_order_state_by_ref(db, order_ref)
        except SQLAlchemyError as e:
            raise StorageError("Failed to load order", order_ref=order_ref) from e
