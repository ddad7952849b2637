"""
Order Service — FastAPI エントリーポイント

チェックアウト、注文照会、決済ゲートウェイの webhook、管理操作を提供する。
状態を変える経路は CheckoutOrchestrator と ReconciliationEngine だけで、
ここはリクエストの検証と応答の組み立てのみを行う。

起動:
    uvicorn order_service.main:create_app --factory
"""

import logging
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from sqlalchemy.exc import SQLAlchemyError

from . import event_store, queries
from .aggregate import OrderAggregate
from .checkout import CheckoutOrchestrator, ShippingInfo
from .config import Settings
from .db import create_tables, make_engine, make_session_factory
from .errors import ConflictError, NotFoundError, OrderServiceError, StorageError, UnknownOrder
from .gateway import GatewayClient, build_gateway
from .reconciliation import ReconciliationEngine
from .signature import SignatureVerifier

logger = logging.getLogger(__name__)


# ── Request Models ───────────────────────────────

class PaymentNotification(BaseModel):
    """ゲートウェイからの通知。ゲートウェイ本来のフィールド名も受け付ける。"""

    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True)

    order_ref: str = Field(validation_alias=AliasChoices("orderRef", "order_id", "order_ref"))
    status_code: str = Field(validation_alias=AliasChoices("statusCode", "status_code"))
    gross_amount: str = Field(validation_alias=AliasChoices("grossAmount", "gross_amount"))
    gateway_status: str = Field(
        validation_alias=AliasChoices("gatewayStatus", "transaction_status", "gateway_status")
    )
    fraud_flag: str | None = Field(
        default=None, validation_alias=AliasChoices("fraudFlag", "fraud_status", "fraud_flag")
    )
    signature: str | None = Field(
        default=None, validation_alias=AliasChoices("signature", "signature_key")
    )


class CancelRequest(BaseModel):
    reason: str = "Cancelled by admin"


# ── 認証 (ヘッダーで受け取る) ─────────────────────

def current_user(x_user_id: str | None = Header(default=None)) -> str:
    if not x_user_id:
        raise HTTPException(401, "Missing X-User-Id header")
    return x_user_id


def require_admin(
    x_user_role: str | None = Header(default=None),
    user_id: str = Depends(current_user),
) -> str:
    if (x_user_role or "").lower() != "admin":
        raise HTTPException(403, "Admin role required")
    return user_id


def create_app(
    settings: Settings | None = None,
    gateway: GatewayClient | None = None,
    redis: aioredis.Redis | None = None,
) -> FastAPI:
    """
    アプリケーションを組み立てる。

    settings を省略すると環境変数から読む。gateway / redis を渡すと
    設定から作る代わりにそれを使う (テスト用)。
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cfg = settings or Settings.from_env()
        engine = make_engine(cfg.database_url, cfg.db_pool_timeout)
        await create_tables(engine)
        session_factory = make_session_factory(engine)

        redis_pool = redis
        owns_redis = False
        if redis_pool is None and cfg.redis_url:
            redis_pool = aioredis.from_url(cfg.redis_url, decode_responses=True)
            owns_redis = True

        gw = gateway or build_gateway(cfg)
        app.state.settings = cfg
        app.state.session_factory = session_factory
        app.state.verifier = SignatureVerifier(cfg.gateway_server_key, enabled=cfg.verify_signature)
        app.state.checkout = CheckoutOrchestrator(session_factory, gw, redis_pool, cfg)
        app.state.engine = ReconciliationEngine(
            session_factory,
            gateway=gw,
            redis=redis_pool,
            allow_late_settlement=cfg.allow_late_settlement,
            gateway_timeout=cfg.gateway_timeout,
        )
        logger.info("Order service started (gateway=%s, env=%s)", type(gw).__name__, cfg.environment)
        yield
        if owns_redis:
            await redis_pool.aclose()
        await engine.dispose()

    app = FastAPI(title="Order Service", lifespan=lifespan)

    # ── エラー変換 ───────────────────────────────

    @app.exception_handler(OrderServiceError)
    async def handle_service_error(request: Request, exc: OrderServiceError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        body = {"detail": exc.msg or type(exc).__name__}
        body.update(jsonable_encoder(exc.ctx))
        return JSONResponse(status_code=exc.status_code, content=body)

    @app.exception_handler(RequestValidationError)
    async def handle_bad_request(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})

    async def load_owned_order(order_id: str, user_id: str) -> dict:
        try:
            async with app.state.session_factory() as session:
                order = await queries.get_order(session, order_id)
        except SQLAlchemyError as e:
            raise StorageError("Failed to load order", order_id=order_id) from e
        # 他人の注文は存在しないものとして扱う
        if not order or order["user_id"] != user_id:
            raise NotFoundError("Order not found", order_id=order_id)
        return order

    # ── チェックアウト ───────────────────────────

    @app.post("/checkout", status_code=201)
    async def checkout(req: ShippingInfo, user_id: str = Depends(current_user)):
        """カートから注文を作成し、決済ページの URL を返す"""
        return await app.state.checkout.checkout(user_id, req)

    # ── 注文照会 ─────────────────────────────────

    @app.get("/orders")
    async def list_my_orders(user_id: str = Depends(current_user)):
        try:
            async with app.state.session_factory() as session:
                return await queries.list_orders(session, user_id)
        except SQLAlchemyError as e:
            raise StorageError("Failed to list orders") from e

    @app.get("/orders/{order_id}")
    async def get_my_order(order_id: str, user_id: str = Depends(current_user)):
        return await load_owned_order(order_id, user_id)

    @app.get("/orders/{order_id}/check-status")
    async def check_status(order_id: str, user_id: str = Depends(current_user)):
        """ゲートウェイに問い合わせて照合し、最新の注文を返す"""
        await load_owned_order(order_id, user_id)
        result = await app.state.engine.poll(order_id)
        order = await load_owned_order(order_id, user_id)
        order["reconciliation"] = {"outcome": result.outcome.value, "conflict": result.conflict}
        return order

    @app.get("/orders/{order_id}/events")
    async def get_order_events(order_id: str, user_id: str = Depends(current_user)):
        """台帳のイベントと、リプレイした集約を返す"""
        await load_owned_order(order_id, user_id)
        try:
            async with app.state.session_factory() as session:
                events = await event_store.load_events(session, order_id)
        except SQLAlchemyError as e:
            raise StorageError("Failed to load order events", order_id=order_id) from e
        return {
            "events": events,
            "aggregate": OrderAggregate.from_events(events).to_dict(),
        }

    # ── Webhook ──────────────────────────────────

    @app.post("/webhook/payment")
    async def payment_webhook(notification: PaymentNotification):
        """
        ゲートウェイからの決済通知。

        署名が一致しなければ注文を検索する前に 400 を返す。
        どのフィールドが不一致かは返さない。
        """
        if not app.state.verifier.verify(
            notification.order_ref,
            notification.status_code,
            notification.gross_amount,
            notification.signature,
        ):
            logger.warning("Rejected payment notification with invalid signature")
            raise ConflictError("Invalid signature")

        try:
            result = await app.state.engine.reconcile(
                notification.order_ref,
                notification.gateway_status,
                notification.fraud_flag,
            )
        except UnknownOrder:
            # ゲートウェイの再送を止めるため 200 で受理する
            logger.warning("Payment notification for unknown order %s", notification.order_ref)
        else:
            logger.info(
                "Payment notification for %s: %s (%s)",
                notification.order_ref,
                notification.gateway_status,
                result.outcome.value,
            )
        return {"message": "Notification processed"}

    # ── 管理操作 ─────────────────────────────────

    @app.get("/admin/orders")
    async def admin_list_orders(_admin: str = Depends(require_admin)):
        try:
            async with app.state.session_factory() as session:
                return await queries.list_orders(session)
        except SQLAlchemyError as e:
            raise StorageError("Failed to list orders") from e

    @app.post("/admin/orders/{order_id}/cancel")
    async def admin_cancel_order(
        order_id: str,
        req: CancelRequest | None = None,
        _admin: str = Depends(require_admin),
    ):
        result = await app.state.engine.cancel(order_id, (req or CancelRequest()).reason)
        return {"order_id": result.order_id, "status": result.status.value}

    @app.delete("/admin/orders/{order_id}")
    async def admin_delete_order(order_id: str, _admin: str = Depends(require_admin)):
        await app.state.engine.delete(order_id)
        return {"message": "Order deleted", "order_id": order_id}

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "order-service"}

    return app
