"""
Fulfillment Service — Webhook (署名・バックオフ・配信キュー)

外部システムへの Webhook 配信まわりの部品。

    ペイロード   {event, timestamp, data} を sort_keys 付きで直列化（決定的）
    署名         直列化したバイト列そのものに HMAC-SHA256（hex）
    ヘッダ       X-Event / X-Signature / X-Timestamp (unix 秒)
    再送間隔     min(60 × 2^n, 3600) 秒 → 1分, 2分, 4分, ... 上限 1時間

配信キューは webhook_deliveries テーブル。1 行 = 1 エンドポイント × 1 イベント。
ペイロードはキュー投入時に 1 度だけ直列化して保存するので、
再送でも同じバイト列・同じ署名になる。
実際の送信ループは worker.py。
"""

import hashlib
import hmac
import json
import logging
import secrets
from datetime import datetime, timedelta
from uuid import uuid4

import httpx
from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession

from .clock import isoformat, utcnow
from .errors import DeliveryFailure, Forbidden, WebhookEndpointNotFound
from .users import UserSnapshot, is_admin

logger = logging.getLogger(__name__)

AVAILABLE_EVENTS = {
    "transaction.created": "New transaction",
    "transaction.completed": "Transaction completed",
    "transaction.cancelled": "Transaction cancelled",
}

DEFAULT_MAX_RETRIES = 5
BACKOFF_BASE_SECONDS = 60
BACKOFF_CAP_SECONDS = 3600

SCHEDULED = "scheduled"
IN_FLIGHT = "in_flight"
DELIVERED = "delivered"
EXHAUSTED = "exhausted"


# ── 署名 ─────────────────────────────────────────


def build_payload(event: str, data: dict, timestamp: datetime) -> dict:
    return {"event": event, "timestamp": isoformat(timestamp), "data": data}


def serialize_payload(payload: dict) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def _to_bytes(payload: str | bytes) -> bytes:
    return payload.encode("utf-8") if isinstance(payload, str) else payload


def sign(payload: str | bytes, secret: str) -> str:
    return hmac.new(_to_bytes(secret), _to_bytes(payload), hashlib.sha256).hexdigest()


def verify(payload: str | bytes, signature: str, secret: str) -> bool:
    """受信側の検証。比較は定数時間で行う。"""
    return hmac.compare_digest(sign(payload, secret), signature)


def payload_hash(payload: str | bytes) -> str:
    return hashlib.sha256(_to_bytes(payload)).hexdigest()


def generate_secret() -> str:
    return secrets.token_hex(32)


# ── バックオフ ───────────────────────────────────


def retry_delay(
    attempt: int,
    base: int = BACKOFF_BASE_SECONDS,
    cap: int = BACKOFF_CAP_SECONDS,
) -> int:
    return min(base * 2**attempt, cap)


def next_retry_delay(
    attempt: int,
    max_retries: int,
    base: int = BACKOFF_BASE_SECONDS,
    cap: int = BACKOFF_CAP_SECONDS,
) -> int | None:
    """
    attempt 回目（0 始まり）が失敗したあとの待ち時間。
    attempt >= max_retries なら再送しない（None）。
    """
    if attempt >= max_retries:
        return None
    return retry_delay(attempt, base, cap)


# ── 送信 ─────────────────────────────────────────


async def send_webhook(
    client: httpx.AsyncClient,
    url: str,
    event: str,
    payload: str,
    secret: str,
    *,
    timeout: float = 5.0,
    user_agent: str = "AgriConnect-Webhook/1.0",
    sent_at: datetime | None = None,
) -> httpx.Response:
    """
    署名付きで POST する。2xx 以外とトランスポートエラーは DeliveryFailure。
    """
    sent_at = sent_at or utcnow()
    headers = {
        "Content-Type": "application/json",
        "User-Agent": user_agent,
        "X-Event": event,
        "X-Signature": sign(payload, secret),
        "X-Timestamp": str(int(sent_at.timestamp())),
    }
    try:
        response = await client.post(
            url, content=_to_bytes(payload), headers=headers, timeout=timeout
        )
    except (httpx.HTTPError, httpx.InvalidURL) as e:
        raise DeliveryFailure(f"{type(e).__name__}: {e}") from e

    if not response.is_success:
        raise DeliveryFailure(
            f"Webhook failed with status {response.status_code}",
            response_code=response.status_code,
            response_body=response.text,
        )
    return response


# ── エンドポイント管理 ───────────────────────────


def _endpoint_dict(row, include_secret: bool = False) -> dict:
    endpoint = {
        "id": row.id,
        "owner_id": row.owner_id,
        "url": row.url,
        "description": row.description,
        "events": json.loads(row.events),
        "is_active": bool(row.is_active),
        "retry_count": row.retry_count,
        "max_retries": row.max_retries,
        "created_at": row.created_at,
    }
    if include_secret:
        endpoint["secret"] = row.secret
    return endpoint


async def register_endpoint(
    session: AsyncSession,
    owner_id: str,
    url: str,
    events: list[str],
    description: str | None = None,
    max_retries: int = DEFAULT_MAX_RETRIES,
) -> dict:
    """エンドポイント登録。シークレットはここで生成して一度だけ返す。"""
    unknown = sorted(set(events) - set(AVAILABLE_EVENTS))
    if unknown:
        raise ValueError(f"Unknown webhook events: {', '.join(unknown)}")
    if not events:
        raise ValueError("At least one event is required")

    endpoint_id = str(uuid4())
    await session.execute(
        text("""
            INSERT INTO webhook_endpoints
                (id, owner_id, url, description, events, secret,
                 is_active, retry_count, max_retries, created_at)
            VALUES
                (:id, :owner_id, :url, :description, :events, :secret,
                 :active, 0, :max_retries, :now)
        """),
        {
            "id": endpoint_id,
            "owner_id": owner_id,
            "url": url,
            "description": description,
            "events": json.dumps(sorted(set(events))),
            "secret": generate_secret(),
            "active": True,
            "max_retries": max_retries,
            "now": isoformat(utcnow()),
        },
    )
    await session.commit()
    return await get_endpoint(session, endpoint_id, include_secret=True)


async def get_endpoint(
    session: AsyncSession, endpoint_id: str, include_secret: bool = False
) -> dict | None:
    result = await session.execute(
        text("SELECT * FROM webhook_endpoints WHERE id = :id"),
        {"id": endpoint_id},
    )
    row = result.fetchone()
    return _endpoint_dict(row, include_secret) if row else None


async def list_endpoints(session: AsyncSession, owner_id: str) -> list[dict]:
    result = await session.execute(
        text("""
            SELECT * FROM webhook_endpoints
            WHERE owner_id = :owner_id
            ORDER BY created_at
        """),
        {"owner_id": owner_id},
    )
    return [_endpoint_dict(row) for row in result.fetchall()]


async def deactivate_endpoint(
    session: AsyncSession, endpoint_id: str, actor: UserSnapshot
) -> dict:
    endpoint = await get_endpoint(session, endpoint_id)
    if endpoint is None:
        raise WebhookEndpointNotFound(endpoint_id)
    if not (is_admin(actor) or actor.id == endpoint["owner_id"]):
        raise Forbidden(f"User {actor.id} may not manage endpoint {endpoint_id}")

    await session.execute(
        text("UPDATE webhook_endpoints SET is_active = :active WHERE id = :id"),
        {"active": False, "id": endpoint_id},
    )
    await session.commit()
    endpoint["is_active"] = False
    return endpoint


async def find_subscribed_endpoints(
    session: AsyncSession, event: str, owner_ids: list[str]
) -> list[dict]:
    """指定イベントを購読している有効なエンドポイント"""
    if not owner_ids:
        return []
    stmt = text("""
        SELECT * FROM webhook_endpoints
        WHERE is_active = :active AND owner_id IN :owner_ids
        ORDER BY created_at, id
    """).bindparams(bindparam("owner_ids", expanding=True))
    result = await session.execute(stmt, {"active": True, "owner_ids": owner_ids})
    # events は JSON 配列。LIKE だと部分一致で誤配信するので Python 側で判定する
    return [
        _endpoint_dict(row, include_secret=True)
        for row in result.fetchall()
        if event in json.loads(row.events)
    ]


# ── 配信キュー ───────────────────────────────────


async def enqueue_event(
    session: AsyncSession,
    event: str,
    data: dict,
    owner_ids: list[str],
    now: datetime | None = None,
) -> list[str]:
    """
    購読エンドポイントごとに配信行を 1 つ積む。commit は呼び出し元。
    戻り値は積んだ delivery id の一覧。
    """
    now = now or utcnow()
    endpoints = await find_subscribed_endpoints(session, event, owner_ids)
    if not endpoints:
        return []

    payload = serialize_payload(build_payload(event, data, now))
    delivery_ids = []
    for endpoint in endpoints:
        delivery_id = str(uuid4())
        await session.execute(
            text("""
                INSERT INTO webhook_deliveries
                    (id, endpoint_id, event, payload, attempt_count,
                     status, next_retry_at, created_at, updated_at)
                VALUES
                    (:id, :endpoint_id, :event, :payload, 0,
                     :status, :now, :now, :now)
            """),
            {
                "id": delivery_id,
                "endpoint_id": endpoint["id"],
                "event": event,
                "payload": payload,
                "status": SCHEDULED,
                "now": isoformat(now),
            },
        )
        delivery_ids.append(delivery_id)
    return delivery_ids


# ── 配信ログ（参照のみ） ─────────────────────────


async def list_delivery_logs(
    session: AsyncSession, endpoint_id: str, limit: int = 100
) -> list[dict]:
    result = await session.execute(
        text("""
            SELECT * FROM webhook_delivery_logs
            WHERE endpoint_id = :endpoint_id
            ORDER BY id DESC
            LIMIT :limit
        """),
        {"endpoint_id": endpoint_id, "limit": limit},
    )
    return [
        {
            "id": row.id,
            "delivery_id": row.delivery_id,
            "endpoint_id": row.endpoint_id,
            "event": row.event,
            "payload_hash": row.payload_hash,
            "response_code": row.response_code,
            "success": bool(row.success),
            "error_message": row.error_message,
            "attempt_count": row.attempt_count,
            "next_retry_at": row.next_retry_at,
            "created_at": row.created_at,
        }
        for row in result.fetchall()
    ]


async def get_stats(session: AsyncSession, now: datetime | None = None) -> dict:
    now = now or utcnow()
    since = isoformat(now - timedelta(days=1))
    result = await session.execute(
        text("""
            SELECT
                (SELECT COUNT(*) FROM webhook_endpoints) AS total_endpoints,
                (SELECT COUNT(*) FROM webhook_endpoints WHERE is_active = :active)
                    AS active_endpoints,
                (SELECT COUNT(*) FROM webhook_delivery_logs) AS total_deliveries,
                (SELECT COUNT(*) FROM webhook_delivery_logs WHERE success = :active)
                    AS successful_deliveries,
                (SELECT COUNT(*) FROM webhook_delivery_logs
                    WHERE success = :failed AND created_at >= :since) AS recent_failures
        """),
        {"active": True, "failed": False, "since": since},
    )
    row = result.fetchone()
    success_rate = (
        row.successful_deliveries / row.total_deliveries * 100
        if row.total_deliveries
        else None
    )
    return {
        "total_endpoints": row.total_endpoints,
        "active_endpoints": row.active_endpoints,
        "total_deliveries": row.total_deliveries,
        "success_rate": success_rate,
        "recent_failures": row.recent_failures,
    }
