import asyncio

import pytest
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError

from conftest import (
    ADMIN_IDS,
    BUYER_ID,
    OTHER_BUYER_ID,
    PRODUCT_ID,
    SELLER_ID,
    insert_product,
)
from fulfillment import catalog, commands, envelopes, ledger, users, webhooks
from fulfillment.aggregate import CANCELLED, COMPLETED, PENDING
from fulfillment.errors import (
    Forbidden,
    IllegalTransition,
    InsufficientStock,
    ProductNotFound,
    TransactionNotFound,
)


async def _user(session_factory, user_id):
    async with session_factory() as session:
        return await users.get_user(session, user_id)


async def _available(session_factory, product_id=PRODUCT_ID):
    async with session_factory() as session:
        return await ledger.get_available_quantity(session, product_id)


async def _create(session_factory, dispatcher, buyer, quantity, product_id=PRODUCT_ID):
    async with session_factory() as session:
        return await commands.create_transaction(
            session, dispatcher, buyer, product_id, quantity
        )


async def _notification_count(fetch_all):
    rows = await fetch_all("SELECT COUNT(*) AS n FROM notifications")
    return rows[0].n


async def test_create_reserves_stock_and_notifies(seeded, dispatcher, fetch_all, sms_gateway, redis):
    buyer = await _user(seeded, BUYER_ID)

    agg = await _create(seeded, dispatcher, buyer, 4)
    await dispatcher.drain()

    assert agg.status == PENDING
    assert agg.seller_id == SELLER_ID
    assert agg.price_per_unit == 500
    assert agg.total_amount == 2000
    assert await _available(seeded) == 6

    rows = await fetch_all("SELECT user_id, kind FROM notifications ORDER BY user_id")
    assert [(r.user_id, r.kind) for r in rows] == [
        (BUYER_ID, "transaction_created"),
        (SELLER_ID, "transaction_created"),
    ]
    assert len(sms_gateway.sent) == 2
    channels = [channel for channel, _ in redis.published]
    assert "transaction_events" in channels
    assert f"user.{BUYER_ID}" in channels


async def test_create_insufficient_stock(seeded, dispatcher, fetch_all):
    buyer = await _user(seeded, BUYER_ID)

    with pytest.raises(InsufficientStock):
        await _create(seeded, dispatcher, buyer, 11)

    assert await _available(seeded) == 10
    assert await fetch_all("SELECT id FROM transactions") == []
    assert await _notification_count(fetch_all) == 0


async def test_create_unknown_product(seeded, dispatcher):
    buyer = await _user(seeded, BUYER_ID)
    with pytest.raises(ProductNotFound):
        await _create(seeded, dispatcher, buyer, 1, product_id="missing")


async def test_concurrent_orders_for_same_stock(seeded, dispatcher, fetch_all):
    async with seeded() as session:
        await insert_product(session, "product-race", SELLER_ID, price=100, quantity=10)
        await session.commit()
    buyer = await _user(seeded, BUYER_ID)
    other = await _user(seeded, OTHER_BUYER_ID)

    results = await asyncio.gather(
        _create(seeded, dispatcher, buyer, 6, "product-race"),
        _create(seeded, dispatcher, other, 6, "product-race"),
        return_exceptions=True,
    )

    succeeded = [r for r in results if not isinstance(r, Exception)]
    failed = [r for r in results if isinstance(r, Exception)]
    assert len(succeeded) == 1
    assert len(failed) == 1
    assert isinstance(failed[0], InsufficientStock)
    assert await _available(seeded, "product-race") == 4
    rows = await fetch_all(
        "SELECT id FROM transactions WHERE product_id = :id", id="product-race"
    )
    assert len(rows) == 1


async def test_cancel_restores_stock_for_next_buyer(seeded, dispatcher):
    buyer = await _user(seeded, BUYER_ID)
    other = await _user(seeded, OTHER_BUYER_ID)

    first = await _create(seeded, dispatcher, buyer, 10)
    with pytest.raises(InsufficientStock):
        await _create(seeded, dispatcher, other, 1)

    async with seeded() as session:
        cancelled = await commands.cancel_transaction(
            session, dispatcher, first.id, buyer, reason="changed my mind"
        )
    assert cancelled.status == CANCELLED
    assert cancelled.cancellation_reason == "changed my mind"
    assert await _available(seeded) == 10

    second = await _create(seeded, dispatcher, other, 10)
    assert second.status == PENDING
    assert await _available(seeded) == 0


async def test_complete_commits_reservation(seeded, dispatcher, fetch_all):
    buyer = await _user(seeded, BUYER_ID)
    seller = await _user(seeded, SELLER_ID)
    agg = await _create(seeded, dispatcher, buyer, 3)

    async with seeded() as session:
        completed = await commands.complete_transaction(session, dispatcher, agg.id, seller)

    assert completed.status == COMPLETED
    assert completed.completed_at is not None
    assert await _available(seeded) == 7
    rows = await fetch_all(
        "SELECT state FROM reservations WHERE transaction_id = :id", id=agg.id
    )
    assert rows[0].state == ledger.COMMITTED
    kinds = await fetch_all(
        "SELECT kind FROM notifications WHERE kind = :kind", kind="transaction_completed"
    )
    assert len(kinds) == 2


@pytest.mark.parametrize("first", ["complete", "cancel"])
async def test_terminal_transaction_rejects_transitions_without_side_effects(
    first, seeded, dispatcher, fetch_all, redis
):
    buyer = await _user(seeded, BUYER_ID)
    seller = await _user(seeded, SELLER_ID)
    agg = await _create(seeded, dispatcher, buyer, 2)

    async with seeded() as session:
        if first == "complete":
            await commands.complete_transaction(session, dispatcher, agg.id, seller)
        else:
            await commands.cancel_transaction(session, dispatcher, agg.id, seller)

    notifications_before = await _notification_count(fetch_all)
    published_before = len(redis.published)
    available_before = await _available(seeded)

    async with seeded() as session:
        with pytest.raises(IllegalTransition):
            await commands.complete_transaction(session, dispatcher, agg.id, seller)
    async with seeded() as session:
        with pytest.raises(IllegalTransition):
            await commands.cancel_transaction(session, dispatcher, agg.id, seller)

    assert await _notification_count(fetch_all) == notifications_before
    assert len(redis.published) == published_before
    assert await _available(seeded) == available_before


async def test_only_seller_or_admin_may_complete(seeded, dispatcher):
    buyer = await _user(seeded, BUYER_ID)
    admin = await _user(seeded, ADMIN_IDS[0])
    agg = await _create(seeded, dispatcher, buyer, 1)

    async with seeded() as session:
        with pytest.raises(Forbidden):
            await commands.complete_transaction(session, dispatcher, agg.id, buyer)

    async with seeded() as session:
        completed = await commands.complete_transaction(session, dispatcher, agg.id, admin)
    assert completed.status == COMPLETED


async def test_unrelated_user_may_not_cancel(seeded, dispatcher):
    buyer = await _user(seeded, BUYER_ID)
    other = await _user(seeded, OTHER_BUYER_ID)
    agg = await _create(seeded, dispatcher, buyer, 1)

    async with seeded() as session:
        with pytest.raises(Forbidden):
            await commands.cancel_transaction(session, dispatcher, agg.id, other)
    assert await _available(seeded) == 9


async def test_unknown_transaction(seeded, dispatcher):
    seller = await _user(seeded, SELLER_ID)
    async with seeded() as session:
        with pytest.raises(TransactionNotFound):
            await commands.complete_transaction(session, dispatcher, "missing", seller)


async def test_price_change_does_not_touch_existing_transactions(seeded, dispatcher):
    buyer = await _user(seeded, BUYER_ID)
    seller = await _user(seeded, SELLER_ID)
    agg = await _create(seeded, dispatcher, buyer, 2)

    async with seeded() as session:
        change = await catalog.change_price(session, PRODUCT_ID, 800)
    assert change.significant is True

    async with seeded() as session:
        completed = await commands.complete_transaction(session, dispatcher, agg.id, seller)
    assert completed.price_per_unit == 500
    assert completed.total_amount == 1000

    later = await _create(seeded, dispatcher, buyer, 1)
    assert later.price_per_unit == 800


async def test_large_transaction_notifies_every_admin(seeded, dispatcher, fetch_all):
    async with seeded() as session:
        await insert_product(session, "product-big", SELLER_ID, price=200_000, quantity=10)
        await session.commit()
    buyer = await _user(seeded, BUYER_ID)
    seller = await _user(seeded, SELLER_ID)
    agg = await _create(seeded, dispatcher, buyer, 10, "product-big")

    async with seeded() as session:
        await commands.complete_transaction(session, dispatcher, agg.id, seller)

    admin_rows = await fetch_all(
        "SELECT user_id FROM notifications WHERE kind = :kind ORDER BY user_id",
        kind=envelopes.KIND_LARGE_TRANSACTION,
    )
    assert [r.user_id for r in admin_rows] == list(ADMIN_IDS)
    alert_rows = await fetch_all(
        "SELECT user_id FROM notifications WHERE kind = :kind",
        kind=envelopes.KIND_STOCK_ALERT,
    )
    assert [r.user_id for r in alert_rows] == [SELLER_ID]


async def test_failed_insert_rolls_back_reservation(seeded, dispatcher, fetch_all, monkeypatch):
    async with seeded() as session:
        await session.execute(
            text("""
                INSERT INTO transactions
                    (id, buyer_id, seller_id, product_id, quantity, price_per_unit,
                     total_amount, status, created_at, updated_at)
                VALUES
                    ('fixed-id', :buyer, :seller, :product, 1, 500, 500, 'cancelled',
                     '2026-01-01T00:00:00.000000+00:00', '2026-01-01T00:00:00.000000+00:00')
            """),
            {"buyer": BUYER_ID, "seller": SELLER_ID, "product": PRODUCT_ID},
        )
        await session.commit()
    buyer = await _user(seeded, BUYER_ID)
    monkeypatch.setattr(commands, "uuid4", lambda: "fixed-id")

    with pytest.raises(IntegrityError):
        await _create(seeded, dispatcher, buyer, 4)

    assert await _available(seeded) == 10
    assert await fetch_all("SELECT id FROM reservations") == []
    assert await _notification_count(fetch_all) == 0


async def test_create_enqueues_webhooks_for_subscribed_endpoints(seeded, dispatcher, fetch_all):
    async with seeded() as session:
        created = await webhooks.register_endpoint(
            session, SELLER_ID, "https://seller.example/hook", ["transaction.created"]
        )
        await webhooks.register_endpoint(
            session, SELLER_ID, "https://seller.example/done", ["transaction.completed"]
        )
        await webhooks.register_endpoint(
            session, "stranger", "https://stranger.example/hook", ["transaction.created"]
        )
    buyer = await _user(seeded, BUYER_ID)

    await _create(seeded, dispatcher, buyer, 1)

    rows = await fetch_all("SELECT endpoint_id, event, status FROM webhook_deliveries")
    assert [(r.endpoint_id, r.event, r.status) for r in rows] == [
        (created["id"], "transaction.created", webhooks.SCHEDULED)
    ]
