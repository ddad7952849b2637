"""
Order Service — クエリ (読み取り側)

注文の表示用データと、照合エンジンが使う最小限の状態 (OrderState) を返す。
stock_applied は内部状態なので公開用の表現には含めない。
"""

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .status import OrderStatus


@dataclass(frozen=True)
class OrderState:
    id: str
    user_id: str
    external_session_id: str
    status: OrderStatus
    stock_applied: bool


def format_rupiah(amount: int) -> str:
    """105000 → 'Rp 105.000'"""
    return "Rp " + f"{int(amount):,}".replace(",", ".")


def _iso(value) -> str | None:
    if value is None:
        return None
    return value.isoformat() if isinstance(value, datetime) else str(value)


def _to_state(row) -> OrderState:
    return OrderState(
        id=row.id,
        user_id=row.user_id,
        external_session_id=row.external_session_id,
        status=OrderStatus(row.status),
        stock_applied=bool(row.stock_applied),
    )


_STATE_COLUMNS = "id, user_id, external_session_id, status, stock_applied"


async def get_order_state(session: AsyncSession, order_id: str) -> OrderState | None:
    result = await session.execute(
        text(f"SELECT {_STATE_COLUMNS} FROM orders WHERE id = :id"),
        {"id": order_id},
    )
    row = result.fetchone()
    return _to_state(row) if row else None


async def get_order_state_by_ref(session: AsyncSession, order_ref: str) -> OrderState | None:
    result = await session.execute(
        text(f"SELECT {_STATE_COLUMNS} FROM orders WHERE external_session_id = :ref"),
        {"ref": order_ref},
    )
    row = result.fetchone()
    return _to_state(row) if row else None


async def get_order_items(session: AsyncSession, order_id: str) -> list[dict]:
    result = await session.execute(
        text("""
            SELECT product_id, product_name, unit_price, quantity, subtotal
            FROM order_items
            WHERE order_id = :order_id
            ORDER BY product_name, product_id
        """),
        {"order_id": order_id},
    )
    return [
        {
            "product_id": row.product_id,
            "product_name": row.product_name,
            "unit_price": row.unit_price,
            "unit_price_formatted": format_rupiah(row.unit_price),
            "quantity": row.quantity,
            "subtotal": row.subtotal,
            "subtotal_formatted": format_rupiah(row.subtotal),
        }
        for row in result.fetchall()
    ]


async def _get_shipping(session: AsyncSession, order_id: str) -> dict | None:
    result = await session.execute(
        text("""
            SELECT recipient_name, phone_number, address, city, province, postal_code, notes
            FROM shipping_details
            WHERE order_id = :order_id
        """),
        {"order_id": order_id},
    )
    row = result.fetchone()
    if not row:
        return None
    return {
        "recipient_name": row.recipient_name,
        "phone_number": row.phone_number,
        "address": row.address,
        "city": row.city,
        "province": row.province,
        "postal_code": row.postal_code,
        "notes": row.notes,
    }


def _order_summary(row) -> dict:
    return {
        "id": row.id,
        "order_number": row.order_number,
        "user_id": row.user_id,
        "status": row.status,
        "total_amount": row.total_amount,
        "total_amount_formatted": format_rupiah(row.total_amount),
        "external_session_id": row.external_session_id,
        "payment_token": row.payment_token,
        "payment_url": row.payment_url,
        "created_at": _iso(row.created_at),
        "updated_at": _iso(row.updated_at),
    }


_ORDER_COLUMNS = """
    id, order_number, user_id, status, total_amount, external_session_id,
    payment_token, payment_url, created_at, updated_at
"""


async def get_order(session: AsyncSession, order_id: str) -> dict | None:
    """注文を明細・配送先つきで取得する。"""
    result = await session.execute(
        text(f"SELECT {_ORDER_COLUMNS} FROM orders WHERE id = :id"),
        {"id": order_id},
    )
    row = result.fetchone()
    if not row:
        return None
    order = _order_summary(row)
    order["items"] = await get_order_items(session, order_id)
    order["shipping"] = await _get_shipping(session, order_id)
    return order


async def list_orders(session: AsyncSession, user_id: str | None = None) -> list[dict]:
    """注文一覧 (新しい順)。user_id を指定するとその利用者の注文だけ返す。"""
    if user_id is None:
        result = await session.execute(
            text(f"SELECT {_ORDER_COLUMNS} FROM orders ORDER BY created_at DESC"),
        )
    else:
        result = await session.execute(
            text(f"SELECT {_ORDER_COLUMNS} FROM orders WHERE user_id = :user_id ORDER BY created_at DESC"),
            {"user_id": user_id},
        )
    orders = [_order_summary(row) for row in result.fetchall()]
    for order in orders:
        order["items"] = await get_order_items(session, order["id"])
    return orders


# ── 外部コンテキスト (カート・ユーザー・商品) ─────


async def get_user(session: AsyncSession, user_id: str) -> dict | None:
    result = await session.execute(
        text("SELECT id, email, display_name FROM users WHERE id = :id"),
        {"id": user_id},
    )
    row = result.fetchone()
    if not row:
        return None
    return {"id": row.id, "email": row.email, "display_name": row.display_name}


async def get_cart_lines(session: AsyncSession, user_id: str) -> list[dict] | None:
    """
    利用者のカート明細を商品情報つきで返す。
    カート自体が無ければ None、空なら [] を返す。
    """
    result = await session.execute(
        text("SELECT id FROM carts WHERE user_id = :user_id"),
        {"user_id": user_id},
    )
    cart = result.fetchone()
    if not cart:
        return None

    result = await session.execute(
        text("""
            SELECT ci.product_id, ci.quantity, p.name, p.price, p.stock
            FROM cart_items ci
            JOIN products p ON p.id = ci.product_id
            WHERE ci.cart_id = :cart_id
            ORDER BY p.name, ci.product_id
        """),
        {"cart_id": cart.id},
    )
    return [
        {
            "product_id": row.product_id,
            "product_name": row.name,
            "unit_price": row.price,
            "stock": row.stock,
            "quantity": row.quantity,
        }
        for row in result.fetchall()
    ]
