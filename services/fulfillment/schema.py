"""
Fulfillment Service — テーブル定義

DDL 用の SQLAlchemy Core テーブル。クエリ自体は各モジュールで
text() の生 SQL として書く。

users / products は外部コラボレータ（認証・商品カタログ）の
リードモデルで、このサービスが参照する列だけを持つ。
"""

from sqlalchemy import (
    Boolean,
    Column,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
)
from sqlalchemy.ext.asyncio import AsyncEngine

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("role", String(32), nullable=False),
    Column("phone", String(32)),
    Column("sms_opt_in", Boolean, nullable=False, default=True),
)

products = Table(
    "products",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("seller_id", String(36), ForeignKey("users.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("unit", String(32), nullable=False),
    Column("price", Integer, nullable=False),
    Column("available_quantity", Integer, nullable=False),
    Column("initial_quantity", Integer, nullable=False),
    Column("status", String(16), nullable=False, default="pending"),
    Column("updated_at", Text),
)

transactions = Table(
    "transactions",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("buyer_id", String(36), ForeignKey("users.id"), nullable=False),
    Column("seller_id", String(36), ForeignKey("users.id"), nullable=False),
    Column("product_id", String(36), ForeignKey("products.id"), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("price_per_unit", Integer, nullable=False),
    Column("total_amount", Integer, nullable=False),
    Column("status", String(16), nullable=False),
    Column("payment_method", String(64)),
    Column("payment_reference", String(128)),
    Column("cancellation_reason", Text),
    Column("created_at", Text, nullable=False),
    Column("completed_at", Text),
    Column("cancelled_at", Text),
    Column("updated_at", Text, nullable=False),
    Index("ix_transactions_buyer_status", "buyer_id", "status"),
    Index("ix_transactions_seller_status", "seller_id", "status"),
)

reservations = Table(
    "reservations",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("transaction_id", String(36), nullable=False, unique=True),
    Column("product_id", String(36), ForeignKey("products.id"), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("state", String(16), nullable=False),
    Column("created_at", Text, nullable=False),
    Column("updated_at", Text, nullable=False),
)

notifications = Table(
    "notifications",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), nullable=False),
    Column("kind", String(32), nullable=False),
    Column("title", String(255), nullable=False),
    Column("body", Text, nullable=False),
    Column("data", Text),
    Column("is_read", Boolean, nullable=False, default=False),
    Column("created_at", Text, nullable=False),
    Index("ix_notifications_user_created", "user_id", "created_at"),
)

webhook_endpoints = Table(
    "webhook_endpoints",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("owner_id", String(36), nullable=False),
    Column("url", String(500), nullable=False),
    Column("description", String(255)),
    Column("events", Text, nullable=False),
    Column("secret", String(64), nullable=False),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("retry_count", Integer, nullable=False, default=0),
    Column("max_retries", Integer, nullable=False, default=5),
    Column("created_at", Text, nullable=False),
    Index("ix_webhook_endpoints_owner_active", "owner_id", "is_active"),
)

# Webhook 配信キュー: 1 行 = 1 エンドポイント × 1 イベントインスタンス
webhook_deliveries = Table(
    "webhook_deliveries",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("endpoint_id", String(36), ForeignKey("webhook_endpoints.id"), nullable=False),
    Column("event", String(64), nullable=False),
    Column("payload", Text, nullable=False),
    Column("attempt_count", Integer, nullable=False, default=0),
    Column("status", String(16), nullable=False),
    Column("next_retry_at", Text),
    Column("created_at", Text, nullable=False),
    Column("updated_at", Text, nullable=False),
    Index("ix_webhook_deliveries_due", "status", "next_retry_at"),
)

# 追記専用の監査ログ
webhook_delivery_logs = Table(
    "webhook_delivery_logs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("delivery_id", String(36), nullable=False),
    Column("endpoint_id", String(36), nullable=False),
    Column("event", String(64), nullable=False),
    Column("payload_hash", String(64), nullable=False),
    Column("response_code", Integer),
    Column("response_body", Text),
    Column("success", Boolean, nullable=False),
    Column("error_message", Text),
    Column("attempt_count", Integer, nullable=False),
    Column("next_retry_at", Text),
    Column("created_at", Text, nullable=False),
    Index("ix_webhook_delivery_logs_endpoint", "endpoint_id", "created_at"),
)


async def create_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
