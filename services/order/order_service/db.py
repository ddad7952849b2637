"""
Order Service — テーブル定義とエンジン

読み書きはすべて text() の SQL で行う。ここではテーブル定義 (DDL) と
非同期エンジン・セッションファクトリの生成だけを扱う。

products / users / carts / cart_items は外部コンテキストのテーブル。
このサービスは読み取りと (カートの) 削除、在庫の減算だけを行う。
"""

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

metadata = MetaData()

# ── 外部コンテキスト (カタログ・ユーザー・カート) ─────

products = Table(
    "products",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("price", Integer, nullable=False),
    Column("stock", Integer, nullable=False, default=0),
    Column("updated_at", DateTime(timezone=True)),
)

users = Table(
    "users",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("display_name", String(255), nullable=False),
)

carts = Table(
    "carts",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), ForeignKey("users.id"), nullable=False, unique=True),
)

cart_items = Table(
    "cart_items",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("cart_id", String(36), ForeignKey("carts.id", ondelete="CASCADE"), nullable=False),
    Column("product_id", String(36), ForeignKey("products.id"), nullable=False),
    Column("quantity", Integer, nullable=False),
    UniqueConstraint("cart_id", "product_id"),
)

# ── 注文 ─────────────────────────────────────────

orders = Table(
    "orders",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("order_number", String(64), nullable=False, unique=True),
    Column("user_id", String(36), nullable=False, index=True),
    Column("external_session_id", String(64), nullable=False, unique=True),
    Column("payment_token", String(255)),
    Column("payment_url", Text),
    Column("status", String(16), nullable=False, default="PENDING"),
    Column("total_amount", Integer, nullable=False),
    Column("stock_applied", Boolean, nullable=False, default=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

order_items = Table(
    "order_items",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("order_id", String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("product_id", String(36), nullable=False),
    Column("product_name", String(255), nullable=False),
    Column("unit_price", Integer, nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("subtotal", Integer, nullable=False),
)

shipping_details = Table(
    "shipping_details",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("order_id", String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, unique=True),
    Column("recipient_name", String(255), nullable=False),
    Column("phone_number", String(15), nullable=False),
    Column("address", Text, nullable=False),
    Column("city", String(100), nullable=False),
    Column("province", String(100), nullable=False),
    Column("postal_code", String(6), nullable=False),
    Column("notes", Text),
)

# ── 注文イベント台帳 (append-only) ───────────────

order_events = Table(
    "order_events",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("order_id", String(36), nullable=False, index=True),
    Column("event_type", String(64), nullable=False),
    Column("event_data", Text, nullable=False),
    Column("version", Integer, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("order_id", "version"),
)


def make_engine(database_url: str, pool_timeout: float = 5.0) -> AsyncEngine:
    if database_url.startswith("sqlite"):
        # SQLite: プール設定なし
        return create_async_engine(database_url, echo=False)
    return create_async_engine(
        database_url,
        echo=False,
        pool_pre_ping=True,
        pool_timeout=pool_timeout,
    )


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, expire_on_commit=False)


async def create_tables(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
