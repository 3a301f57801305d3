"""
Fulfillment Service — 配信ディスパッチャ (Delivery Dispatcher)

Envelope Builder が作ったエンベロープを実際に届ける。
取引の commit が済んだあとに呼ばれ、どのチャネルの失敗も
取引そのものを巻き戻さない（チャネルごとに隔離）。

    通知     同期で DB に書く。レスポンスを返す前に必ず試みる
    SMS      バックグラウンドタスクで送信。失敗はログだけ
    Webhook  配信キューに積むだけ。送信は worker.py
    Redis    user.{id} / transaction_events チャネルに発行（リアルタイム表示用）
"""

import asyncio
import json
import logging

import redis.asyncio as aioredis
from pydantic import BaseModel
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from . import webhooks
from .clock import utcnow
from .config import FulfillmentConfig
from .envelopes import EnvelopeSet, SmsEnvelope
from .notifications import write_notifications
from .sms import SmsGateway

logger = logging.getLogger(__name__)

TRANSACTION_CHANNEL = "transaction_events"


class DispatchReport(BaseModel):
    transaction_id: str
    notifications_written: int = 0
    notification_error: str | None = None
    sms_scheduled: int = 0
    webhook_deliveries: list[str] = []
    webhook_error: str | None = None


class DeliveryDispatcher:
    def __init__(
        self,
        session_factory: sessionmaker,
        config: FulfillmentConfig,
        sms_gateway: SmsGateway | None = None,
        redis: aioredis.Redis | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.config = config
        self.sms_gateway = sms_gateway
        self.redis = redis
        self._background: set[asyncio.Task] = set()

    async def dispatch(self, envelopes: EnvelopeSet) -> DispatchReport:
        report = DispatchReport(transaction_id=envelopes.transaction_id)
        now = utcnow()

        # 1. アプリ内通知（同期）
        written: list[dict] = []
        try:
            async with self.session_factory() as session:
                written = await write_notifications(session, envelopes.notifications, now)
                await session.commit()
            report.notifications_written = len(written)
        except SQLAlchemyError as e:
            logger.exception(
                "Failed to write notifications for transaction %s",
                envelopes.transaction_id,
            )
            report.notification_error = str(e)
            written = []

        # 2. Webhook 配信キューへ投入
        try:
            async with self.session_factory() as session:
                report.webhook_deliveries = await webhooks.enqueue_event(
                    session,
                    envelopes.webhook_event,
                    envelopes.webhook_data,
                    envelopes.webhook_owner_ids,
                    now,
                )
                await session.commit()
        except SQLAlchemyError as e:
            logger.exception(
                "Failed to enqueue %s webhooks for transaction %s",
                envelopes.webhook_event,
                envelopes.transaction_id,
            )
            report.webhook_error = str(e)

        # 3. SMS（リクエスト処理をブロックしない）
        if self.sms_gateway is not None:
            for sms in envelopes.sms:
                self._spawn(self._send_sms(sms))
            report.sms_scheduled = len(envelopes.sms)

        # 4. Redis Pub/Sub
        await self._publish(envelopes, written)

        logger.info(
            "Dispatched %s for transaction %s: notifications=%s sms=%s webhooks=%s",
            envelopes.transition,
            envelopes.transaction_id,
            report.notifications_written,
            report.sms_scheduled,
            len(report.webhook_deliveries),
        )
        return report

    async def _send_sms(self, sms: SmsEnvelope) -> None:
        try:
            await self.sms_gateway.send(sms.phone, sms.text)
        except Exception:
            logger.exception("Unexpected error sending SMS to user %s", sms.recipient_user_id)

    async def _publish(self, envelopes: EnvelopeSet, notifications: list[dict]) -> None:
        if self.redis is None:
            return
        try:
            await self.redis.publish(
                TRANSACTION_CHANNEL,
                json.dumps(
                    {"event_type": envelopes.webhook_event, "data": envelopes.webhook_data},
                    default=str,
                ),
            )
            for notification in notifications:
                await self.redis.publish(
                    f"user.{notification['user_id']}",
                    json.dumps(notification, default=str),
                )
        except RedisError:
            logger.warning(
                "Failed to publish %s for transaction %s",
                envelopes.webhook_event,
                envelopes.transaction_id,
                exc_info=True,
            )

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain(self) -> None:
        """未完了の SMS 送信を待つ（シャットダウン時・テスト用）"""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
