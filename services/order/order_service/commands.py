"""
Order Service — コマンド (書き込み側)

注文の状態と在庫を変更する唯一の経路。
ここの関数はコミットしない。トランザクション境界は呼び出し側
(CheckoutOrchestrator / ReconciliationEngine) が持つ。

状態の書き込みはすべて「条件付き UPDATE」:
    UPDATE orders SET status = :to WHERE id = :id AND status IN (:from...)
影響行数が 1 なら自分が遷移させた、0 なら他の誰かが先に遷移させた。
"""

import logging
from datetime import datetime
from uuid import uuid4

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import OversellRace
from .status import DELETABLE_STATUSES, OrderStatus

logger = logging.getLogger(__name__)


async def insert_order(
    session: AsyncSession,
    *,
    order_id: str,
    order_number: str,
    user_id: str,
    external_session_id: str,
    total_amount: int,
    items: list[dict],
    shipping: dict,
    now: datetime,
) -> None:
    """注文・明細・配送先をまとめて INSERT する (同じトランザクション内で呼ぶこと)。"""
    await session.execute(
        text("""
            INSERT INTO orders
                (id, order_number, user_id, external_session_id, status,
                 total_amount, stock_applied, created_at, updated_at)
            VALUES
                (:id, :order_number, :user_id, :external_session_id, :status,
                 :total_amount, :stock_applied, :now, :now)
        """),
        {
            "id": order_id,
            "order_number": order_number,
            "user_id": user_id,
            "external_session_id": external_session_id,
            "status": OrderStatus.PENDING.value,
            "total_amount": total_amount,
            "stock_applied": False,
            "now": now,
        },
    )

    for item in items:
        await session.execute(
            text("""
                INSERT INTO order_items
                    (id, order_id, product_id, product_name, unit_price, quantity, subtotal)
                VALUES
                    (:id, :order_id, :product_id, :product_name, :unit_price, :quantity, :subtotal)
            """),
            {
                "id": str(uuid4()),
                "order_id": order_id,
                "product_id": item["product_id"],
                "product_name": item["product_name"],
                "unit_price": item["unit_price"],
                "quantity": item["quantity"],
                "subtotal": item["subtotal"],
            },
        )

    await session.execute(
        text("""
            INSERT INTO shipping_details
                (id, order_id, recipient_name, phone_number, address, city, province, postal_code, notes)
            VALUES
                (:id, :order_id, :recipient_name, :phone_number, :address, :city, :province, :postal_code, :notes)
        """),
        {
            "id": str(uuid4()),
            "order_id": order_id,
            "recipient_name": shipping["recipient_name"],
            "phone_number": shipping["phone_number"],
            "address": shipping["address"],
            "city": shipping["city"],
            "province": shipping["province"],
            "postal_code": shipping["postal_code"],
            "notes": shipping.get("notes"),
        },
    )


async def attach_payment_session(
    session: AsyncSession,
    order_id: str,
    token: str,
    redirect_url: str,
    now: datetime,
) -> bool:
    """決済セッションを記録する。一度だけ書ける (payment_url IS NULL が条件)。"""
    result = await session.execute(
        text("""
            UPDATE orders
            SET payment_token = :token, payment_url = :url, updated_at = :now
            WHERE id = :id AND payment_url IS NULL
        """),
        {"token": token, "url": redirect_url, "now": now, "id": order_id},
    )
    return result.rowcount == 1


async def transition_status(
    session: AsyncSession,
    order_id: str,
    from_statuses: list[OrderStatus],
    to_status: OrderStatus,
    now: datetime,
    apply_stock: bool = False,
) -> bool:
    """
    条件付きの状態遷移。遷移できたら True。

    apply_stock=True のときは stock_applied = false も条件に加え、
    同じ UPDATE で stock_applied = true にする。
    """
    params = {"id": order_id, "to_status": to_status.value, "now": now}
    placeholders = []
    for i, status in enumerate(from_statuses):
        params[f"from_{i}"] = status.value
        placeholders.append(f":from_{i}")
    in_clause = ", ".join(placeholders)

    if apply_stock:
        params["applied"] = True
        params["not_applied"] = False
        sql = f"""
            UPDATE orders
            SET status = :to_status, stock_applied = :applied, updated_at = :now
            WHERE id = :id AND status IN ({in_clause}) AND stock_applied = :not_applied
        """
    else:
        sql = f"""
            UPDATE orders
            SET status = :to_status, updated_at = :now
            WHERE id = :id AND status IN ({in_clause})
        """

    result = await session.execute(text(sql), params)
    return result.rowcount == 1


async def decrement_stock(
    session: AsyncSession,
    order_id: str,
    items: list[dict],
    now: datetime,
) -> list[dict]:
    """
    明細ごとに在庫を減算する (stock = stock - qty)。

    チェックアウト時に在庫を確保していないため、結果が負になることがある。
    その場合は OversellRace として警告を残し、処理は続ける。
    """
    lines = []
    for item in items:
        result = await session.execute(
            text("""
                UPDATE products
                SET stock = stock - :qty, updated_at = :now
                WHERE id = :id
            """),
            {"qty": item["quantity"], "now": now, "id": item["product_id"]},
        )
        if result.rowcount == 0:
            logger.warning(
                "Product %s of paid order %s no longer exists; stock not decremented",
                item["product_id"],
                order_id,
            )
            continue

        result = await session.execute(
            text("SELECT stock FROM products WHERE id = :id"),
            {"id": item["product_id"]},
        )
        remaining = result.scalar_one()
        if remaining < 0:
            logger.warning(
                "%s",
                OversellRace(
                    "Stock went negative after payment; manual reconciliation required",
                    order_id=order_id,
                    product_id=item["product_id"],
                    remaining=remaining,
                ),
            )
        lines.append({"product_id": item["product_id"], "quantity": item["quantity"], "remaining": remaining})
    return lines


async def clear_cart(session: AsyncSession, user_id: str) -> int:
    """利用者のカート明細を削除する。削除した件数を返す。"""
    result = await session.execute(
        text("""
            DELETE FROM cart_items
            WHERE cart_id IN (SELECT id FROM carts WHERE user_id = :user_id)
        """),
        {"user_id": user_id},
    )
    return result.rowcount


async def delete_order(session: AsyncSession, order_id: str) -> bool:
    """
    未決済の注文を削除する。PAID の注文は条件に一致しないので消えない。
    """
    params = {"id": order_id}
    placeholders = []
    for i, status in enumerate(sorted(DELETABLE_STATUSES, key=lambda s: s.value)):
        params[f"s_{i}"] = status.value
        placeholders.append(f":s_{i}")

    result = await session.execute(
        text(f"DELETE FROM orders WHERE id = :id AND status IN ({', '.join(placeholders)})"),
        params,
    )
    if result.rowcount != 1:
        return False

    # SQLite は外部キーの CASCADE を既定で実行しない
    await session.execute(text("DELETE FROM order_items WHERE order_id = :id"), {"id": order_id})
    await session.execute(text("DELETE FROM shipping_details WHERE order_id = :id"), {"id": order_id})
    return True
