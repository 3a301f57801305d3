import pytest
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

from fulfillment.config import FulfillmentConfig
from fulfillment.dispatcher import DeliveryDispatcher
from fulfillment.schema import create_schema

BUYER_ID = "buyer-1"
OTHER_BUYER_ID = "buyer-2"
SELLER_ID = "seller-1"
ADMIN_IDS = ("admin-1", "admin-2")
PRODUCT_ID = "product-1"


class RecordingRedis:
    """redis.asyncio.Redis の publish だけを記録する"""

    def __init__(self):
        self.published = []

    async def publish(self, channel, message):
        self.published.append((channel, message))
        return 1


class RecordingSmsGateway:
    def __init__(self):
        self.sent = []

    async def send(self, phone, text):
        self.sent.append((phone, text))
        return True


@pytest.fixture
def database_url(tmp_path):
    # 接続ごとに別コネクションを使うため、メモリではなくファイル DB
    return f"sqlite+aiosqlite:///{tmp_path / 'fulfillment.db'}"


@pytest.fixture
async def engine(database_url):
    engine = create_async_engine(
        database_url, poolclass=NullPool, connect_args={"timeout": 30}
    )
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def insert_user(session, user_id, role, phone=None, sms_opt_in=True, name=None):
    await session.execute(
        text("""
            INSERT INTO users (id, name, role, phone, sms_opt_in)
            VALUES (:id, :name, :role, :phone, :sms_opt_in)
        """),
        {
            "id": user_id,
            "name": name or user_id,
            "role": role,
            "phone": phone,
            "sms_opt_in": sms_opt_in,
        },
    )


async def insert_product(
    session, product_id, seller_id, price, quantity, initial=None, status="approved"
):
    await session.execute(
        text("""
            INSERT INTO products
                (id, seller_id, name, unit, price, available_quantity,
                 initial_quantity, status, updated_at)
            VALUES
                (:id, :seller_id, 'Cassava', 'kg', :price, :qty, :initial, :status, NULL)
        """),
        {
            "id": product_id,
            "seller_id": seller_id,
            "price": price,
            "qty": quantity,
            "initial": initial if initial is not None else quantity,
            "status": status,
        },
    )


@pytest.fixture
async def seeded(session_factory):
    async with session_factory() as session:
        await insert_user(session, BUYER_ID, "acheteur", phone="07 12 34 56")
        await insert_user(session, OTHER_BUYER_ID, "cooperative", phone="01020304", sms_opt_in=False)
        await insert_user(session, SELLER_ID, "producteur", phone="+225 05 06 07 08")
        for admin_id in ADMIN_IDS:
            await insert_user(session, admin_id, "admin")
        await insert_product(session, PRODUCT_ID, SELLER_ID, price=500, quantity=10)
        await session.commit()
    return session_factory


@pytest.fixture
def config():
    return FulfillmentConfig(
        database_url="sqlite+aiosqlite://",
        webhook_worker_enabled=False,
    )


@pytest.fixture
def redis():
    return RecordingRedis()


@pytest.fixture
def sms_gateway():
    return RecordingSmsGateway()


@pytest.fixture
def dispatcher(seeded, config, sms_gateway, redis):
    return DeliveryDispatcher(seeded, config, sms_gateway, redis)


@pytest.fixture
def fetch_all(session_factory):
    async def fetch(sql, **params):
        async with session_factory() as session:
            result = await session.execute(text(sql), params)
            return result.fetchall()

    return fetch
