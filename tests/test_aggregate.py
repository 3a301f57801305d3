from datetime import datetime, timezone

import pytest

from fulfillment.aggregate import CANCELLED, COMPLETED, PENDING, TransactionAggregate
from fulfillment.config import FulfillmentConfig
from fulfillment.errors import Forbidden, IllegalTransition
from fulfillment.users import UserSnapshot

NOW = datetime(2026, 3, 1, tzinfo=timezone.utc)
BUYER = UserSnapshot(id="b", name="Buyer", role="acheteur")
SELLER = UserSnapshot(id="s", name="Seller", role="producteur")
ADMIN = UserSnapshot(id="a", name="Admin", role="admin")
STRANGER = UserSnapshot(id="x", name="Stranger", role="acheteur")


def _agg(**overrides):
    fields = dict(
        id="tx-1",
        buyer_id="b",
        seller_id="s",
        product_id="p",
        quantity=3,
        price_per_unit=250,
    )
    fields.update(overrides)
    return TransactionAggregate(**fields)


def test_total_amount_is_derived():
    agg = _agg()
    assert agg.total_amount == 750
    assert agg.status == PENDING
    assert not agg.is_terminal


@pytest.mark.parametrize("quantity, price", [(0, 100), (-1, 100), (1, -1)])
def test_invalid_amounts_rejected(quantity, price):
    with pytest.raises(ValueError):
        _agg(quantity=quantity, price_per_unit=price)


def test_completed_is_terminal():
    agg = _agg()
    agg.apply_completed(NOW)

    assert agg.status == COMPLETED
    assert agg.is_terminal
    with pytest.raises(IllegalTransition):
        agg.ensure_can_transition(CANCELLED)
    with pytest.raises(IllegalTransition):
        agg.apply_completed(NOW)


def test_cancelled_records_reason():
    agg = _agg()
    agg.apply_cancelled(NOW, "no transport")

    assert agg.to_dict()["cancellation_reason"] == "no transport"
    assert agg.cancelled_at == "2026-03-01T00:00:00.000000+00:00"
    with pytest.raises(IllegalTransition):
        agg.ensure_can_transition(COMPLETED)


def test_unknown_target_is_illegal():
    with pytest.raises(IllegalTransition):
        _agg().ensure_can_transition("refunded")


def test_permissions():
    agg = _agg()

    agg.ensure_may_complete(SELLER)
    agg.ensure_may_complete(ADMIN)
    with pytest.raises(Forbidden):
        agg.ensure_may_complete(BUYER)

    for actor in (BUYER, SELLER, ADMIN):
        agg.ensure_may_cancel(actor)
    with pytest.raises(Forbidden):
        agg.ensure_may_cancel(STRANGER)

    assert agg.is_visible_to(BUYER)
    assert not agg.is_visible_to(STRANGER)


def test_config_from_env(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///x.db")
    monkeypatch.setenv("SMS_PROVIDER", "mtn")
    monkeypatch.setenv("LARGE_TRANSACTION_THRESHOLD", "5000")
    monkeypatch.setenv("WEBHOOK_WORKER_ENABLED", "false")
    monkeypatch.delenv("REDIS_URL", raising=False)

    config = FulfillmentConfig.from_env()

    assert config.database_url == "sqlite+aiosqlite:///x.db"
    assert config.sms_provider == "mtn"
    assert config.redis_url is None
    assert config.webhook_worker_enabled is False
    assert config.envelope_policy.large_transaction_threshold == 5000
    assert config.webhook_max_retries == 5
