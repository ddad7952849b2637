import asyncio
import json

import pytest
import pytest_asyncio
from sqlalchemy import text

from order_service.checkout import CheckoutOrchestrator, ShippingInfo
from order_service.config import Settings
from order_service.db import create_tables, make_engine, make_session_factory
from order_service.gateway import FakeGateway
from order_service.reconciliation import ReconciliationEngine

SERVER_KEY = "SB-Mid-server-test-key"

USER_ID = "a1b2c3d4-e5f6-4a7b-8c9d-0123456789ab"
OTHER_USER_ID = "ffee0011-2233-4455-6677-8899aabbccdd"

NOTEBOOK = "prod-notebook"
BOTTLE = "prod-bottle"

# (id, name, price, stock)
PRODUCTS = [
    (NOTEBOOK, "Recycled Notebook", 25000, 10),
    (BOTTLE, "Steel Bottle", 55000, 5),
]

DEFAULT_CART = [(NOTEBOOK, 2), (BOTTLE, 1)]


class RecordingRedis:
    """redis.asyncio.Redis の publish だけを記録する"""

    def __init__(self):
        self.published = []

    async def publish(self, channel, message):
        self.published.append((channel, json.loads(message)))
        return 1

    def event_types(self):
        return [msg["event_type"] for _, msg in self.published]


async def seed_catalog(session_factory, cart=DEFAULT_CART, user_id=USER_ID, with_cart=True):
    """商品・ユーザー・カートを投入する"""
    async with session_factory() as session:
        for pid, name, price, stock in PRODUCTS:
            await session.execute(
                text("INSERT INTO products (id, name, price, stock) VALUES (:id, :name, :price, :stock)"),
                {"id": pid, "name": name, "price": price, "stock": stock},
            )
        for uid, email, display_name in [
            (USER_ID, "budi@example.com", "Budi"),
            (OTHER_USER_ID, "sari@example.com", "Sari"),
        ]:
            await session.execute(
                text("INSERT INTO users (id, email, display_name) VALUES (:id, :email, :name)"),
                {"id": uid, "email": email, "name": display_name},
            )
        if with_cart:
            await session.execute(
                text("INSERT INTO carts (id, user_id) VALUES (:id, :user_id)"),
                {"id": f"cart-{user_id}", "user_id": user_id},
            )
            for i, (pid, qty) in enumerate(cart):
                await session.execute(
                    text("""
                        INSERT INTO cart_items (id, cart_id, product_id, quantity)
                        VALUES (:id, :cart_id, :product_id, :quantity)
                    """),
                    {"id": f"ci-{i}", "cart_id": f"cart-{user_id}", "product_id": pid, "quantity": qty},
                )
        await session.commit()


async def stock_of(session_factory, product_id):
    async with session_factory() as session:
        result = await session.execute(text("SELECT stock FROM products WHERE id = :id"), {"id": product_id})
        return result.scalar_one_or_none()


def shipping(**overrides):
    data = {
        "recipient_name": "Budi Santoso",
        "phone_number": "081234567890",
        "address": "Jl. Merdeka No. 10",
        "city": "Bandung",
        "province": "Jawa Barat",
        "postal_code": "40111",
        "notes": "Leave at the front desk",
    }
    data.update(overrides)
    return data


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}"


@pytest.fixture
def settings(db_url):
    return Settings(database_url=db_url, redis_url="", gateway_backend="fake", gateway_server_key=SERVER_KEY)


@pytest_asyncio.fixture
async def db_engine(db_url):
    engine = make_engine(db_url)
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(db_engine):
    return make_session_factory(db_engine)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def redis():
    return RecordingRedis()


@pytest.fixture
def orchestrator(session_factory, gateway, redis, settings):
    return CheckoutOrchestrator(session_factory, gateway, redis, settings)


@pytest.fixture
def reconciler(session_factory, gateway, redis):
    return ReconciliationEngine(session_factory, gateway=gateway, redis=redis)


@pytest_asyncio.fixture
async def pending_order(session_factory, orchestrator):
    """チェックアウト済み (PENDING) の注文"""
    await seed_catalog(session_factory)
    return await orchestrator.checkout(USER_ID, ShippingInfo(**shipping()))


@pytest.fixture
def seeded_db(db_url):
    """TestClient 用。別のイベントループでテーブル作成と投入を済ませておく"""

    async def prepare():
        engine = make_engine(db_url)
        await create_tables(engine)
        await seed_catalog(make_session_factory(engine))
        await engine.dispose()

    asyncio.run(prepare())
    return db_url
