"""
Fulfillment Service — Webhook 配信ワーカー

webhook_deliveries テーブルをポーリングし、next_retry_at が来た配信を送る。
FastAPI の lifespan でバックグラウンドタスクとして起動し、
shutdown_event がセットされるまで無限ループで待機する。

1 回の試行の流れ:

    scheduled ──claim──▶ in_flight ──POST──▶ 成功 → delivered
                                        └──▶ 失敗 → attempt < max_retries なら scheduled
                                                    (next_retry_at = now + min(60·2^n, 3600))
                                                    それ以外は exhausted

claim は「status = scheduled なら in_flight にする」条件付き UPDATE なので、
同じ配信行を 2 つのワーカーが同時に送ることはない。結果のログ追記と
次回スケジュールは同じトランザクションで行う。つまり n+1 回目の試行は
n 回目の結果がログに残るまで claim できない。

別々の配信行（別エンドポイント・別イベント）は Semaphore の範囲で並行に送る。
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta

import httpx
from sqlalchemy import text
from sqlalchemy.orm import sessionmaker

from . import webhooks
from .clock import isoformat, utcnow
from .config import FulfillmentConfig
from .errors import DeliveryFailure

logger = logging.getLogger(__name__)

MAX_RESPONSE_BODY = 2000


class WebhookDeliveryWorker:
    def __init__(
        self,
        session_factory: sessionmaker,
        client: httpx.AsyncClient,
        config: FulfillmentConfig,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session_factory = session_factory
        self.client = client
        self.config = config
        self.clock = clock

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """shutdown_event がセットされるまで配信キューを処理し続ける。"""
        recovered = await self.recover_stale()
        logger.info("Webhook delivery worker started (recovered=%s)", recovered)

        while not shutdown_event.is_set():
            try:
                processed = await self.run_once()
            except Exception:
                logger.exception("Webhook delivery poll failed")
                processed = 0
            if not processed:
                await asyncio.sleep(self.config.webhook_poll_interval)

        logger.info("Webhook delivery worker stopped")

    async def recover_stale(self) -> int:
        """前回のプロセスが送信途中で落ちた配信を scheduled に戻す（起動時のみ）"""
        async with self.session_factory() as session:
            result = await session.execute(
                text("""
                    UPDATE webhook_deliveries
                    SET status = :scheduled, updated_at = :now
                    WHERE status = :in_flight
                """),
                {
                    "scheduled": webhooks.SCHEDULED,
                    "in_flight": webhooks.IN_FLIGHT,
                    "now": isoformat(self.clock()),
                },
            )
            await session.commit()
            return result.rowcount

    async def run_once(self) -> int:
        """期限の来た配信を claim して送る。処理した件数を返す。"""
        claimed = await self._claim_due()
        if not claimed:
            return 0

        semaphore = asyncio.Semaphore(self.config.webhook_concurrency)

        async def guarded(delivery_id: str) -> None:
            async with semaphore:
                try:
                    await self.deliver(delivery_id)
                except Exception:
                    logger.exception("Failed to process webhook delivery %s", delivery_id)

        await asyncio.gather(*(guarded(delivery_id) for delivery_id in claimed))
        return len(claimed)

    async def _claim_due(self) -> list[str]:
        now = isoformat(self.clock())
        async with self.session_factory() as session:
            result = await session.execute(
                text("""
                    SELECT id FROM webhook_deliveries
                    WHERE status = :scheduled AND next_retry_at <= :now
                    ORDER BY next_retry_at, id
                    LIMIT :limit
                """),
                {
                    "scheduled": webhooks.SCHEDULED,
                    "now": now,
                    "limit": self.config.webhook_batch_size,
                },
            )
            due = [row.id for row in result.fetchall()]

            claimed = []
            for delivery_id in due:
                update = await session.execute(
                    text("""
                        UPDATE webhook_deliveries
                        SET status = :in_flight, updated_at = :now
                        WHERE id = :id AND status = :scheduled
                    """),
                    {
                        "in_flight": webhooks.IN_FLIGHT,
                        "scheduled": webhooks.SCHEDULED,
                        "now": now,
                        "id": delivery_id,
                    },
                )
                if update.rowcount == 1:
                    claimed.append(delivery_id)
            await session.commit()
        return claimed

    async def deliver(self, delivery_id: str) -> str | None:
        """
        claim 済みの配信を 1 回送る。結果の状態
        (delivered / scheduled / exhausted) を返す。
        """
        async with self.session_factory() as session:
            result = await session.execute(
                text("""
                    SELECT d.id, d.endpoint_id, d.event, d.payload, d.attempt_count,
                           e.url, e.secret, e.is_active, e.max_retries
                    FROM webhook_deliveries d
                    JOIN webhook_endpoints e ON e.id = d.endpoint_id
                    WHERE d.id = :id AND d.status = :in_flight
                """),
                {"id": delivery_id, "in_flight": webhooks.IN_FLIGHT},
            )
            delivery = result.fetchone()
        if delivery is None:
            return None

        attempt = delivery.attempt_count
        response_code = None
        response_body = None
        error_message = None

        if not delivery.is_active:
            success = False
            error_message = "Endpoint is inactive"
        else:
            try:
                response = await webhooks.send_webhook(
                    self.client,
                    delivery.url,
                    delivery.event,
                    delivery.payload,
                    delivery.secret,
                    timeout=self.config.webhook_timeout,
                    user_agent=self.config.webhook_user_agent,
                    sent_at=self.clock(),
                )
                success = True
                response_code = response.status_code
                response_body = response.text[:MAX_RESPONSE_BODY]
            except DeliveryFailure as e:
                success = False
                response_code = e.response_code
                response_body = (e.response_body or "")[:MAX_RESPONSE_BODY] or None
                error_message = str(e)
            except Exception as e:
                # claim 済みの行は必ず試行として記録し、in_flight のまま残さない
                logger.exception(
                    "Unexpected error sending webhook delivery %s", delivery.id
                )
                success = False
                error_message = f"{type(e).__name__}: {e}"

        now = self.clock()
        next_retry_at = None
        if success:
            status = webhooks.DELIVERED
        else:
            delay = None
            if delivery.is_active:
                delay = webhooks.next_retry_delay(
                    attempt,
                    delivery.max_retries,
                    self.config.webhook_backoff_base,
                    self.config.webhook_backoff_cap,
                )
            if delay is None:
                status = webhooks.EXHAUSTED
            else:
                status = webhooks.SCHEDULED
                next_retry_at = isoformat(now + timedelta(seconds=delay))

        await self._record_attempt(
            delivery,
            attempt + 1,
            success,
            status,
            next_retry_at,
            response_code,
            response_body,
            error_message,
            now,
        )

        if success:
            logger.info(
                "Webhook %s delivered to endpoint %s (attempt %s)",
                delivery.event, delivery.endpoint_id, attempt + 1,
            )
        elif status == webhooks.SCHEDULED:
            logger.warning(
                "Webhook %s to endpoint %s failed (attempt %s): %s; retry at %s",
                delivery.event, delivery.endpoint_id, attempt + 1, error_message, next_retry_at,
            )
        else:
            logger.error(
                "Webhook %s to endpoint %s exhausted after %s attempts: %s",
                delivery.event, delivery.endpoint_id, attempt + 1, error_message,
            )
        return status

    async def _record_attempt(
        self,
        delivery,
        attempt_count: int,
        success: bool,
        status: str,
        next_retry_at: str | None,
        response_code: int | None,
        response_body: str | None,
        error_message: str | None,
        now: datetime,
    ) -> None:
        """試行ログの追記と配信行の更新を 1 トランザクションで行う。"""
        async with self.session_factory() as session:
            await session.execute(
                text("""
                    INSERT INTO webhook_delivery_logs
                        (delivery_id, endpoint_id, event, payload_hash, response_code,
                         response_body, success, error_message, attempt_count,
                         next_retry_at, created_at)
                    VALUES
                        (:delivery_id, :endpoint_id, :event, :payload_hash, :response_code,
                         :response_body, :success, :error_message, :attempt_count,
                         :next_retry_at, :now)
                """),
                {
                    "delivery_id": delivery.id,
                    "endpoint_id": delivery.endpoint_id,
                    "event": delivery.event,
                    "payload_hash": webhooks.payload_hash(delivery.payload),
                    "response_code": response_code,
                    "response_body": response_body,
                    "success": success,
                    "error_message": error_message,
                    "attempt_count": attempt_count,
                    "next_retry_at": next_retry_at,
                    "now": isoformat(now),
                },
            )
            await session.execute(
                text("""
                    UPDATE webhook_deliveries
                    SET status = :status, attempt_count = :attempt_count,
                        next_retry_at = :next_retry_at, updated_at = :now
                    WHERE id = :id AND status = :in_flight
                """),
                {
                    "status": status,
                    "attempt_count": attempt_count,
                    "next_retry_at": next_retry_at,
                    "now": isoformat(now),
                    "id": delivery.id,
                    "in_flight": webhooks.IN_FLIGHT,
                },
            )
            # retry_count はエンドポイントの連続失敗回数
            await session.execute(
                text("""
                    UPDATE webhook_endpoints
                    SET retry_count = CASE WHEN :success THEN 0 ELSE retry_count + 1 END
                    WHERE id = :id
                """),
                {"success": success, "id": delivery.endpoint_id},
            )
            await session.commit()
