"""
Fulfillment Service — FastAPI エントリーポイント

取引の作成・完了・キャンセル（Command）と、取引・通知・Webhook の参照
（Query）を 1 つのアプリで提供する。

起動時 (lifespan) に:
    - DB エンジン / セッションファクトリ
    - Redis 接続（REDIS_URL がある場合のみ）
    - httpx クライアントと SMS ゲートウェイ
    - 配信ディスパッチャ
    - Webhook 配信ワーカー（バックグラウンドタスク）
を組み立てて app.state に置く。

┌────────────┐  commit  ┌────────────┐  enqueue  ┌───────────────────┐
│ commands   │ ───────▶ │ dispatcher │ ────────▶ │ webhook_deliveries │
│ (取引遷移) │          │ 通知 / SMS │           └─────────┬─────────┘
└────────────┘          └────────────┘                     │ poll
                                                 ┌─────────▼─────────┐
                                                 │ worker (再送付き) │ ──▶ 外部 URL
                                                 └───────────────────┘
"""

import asyncio
import logging
from contextlib import asynccontextmanager

import httpx
import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import AnyHttpUrl, BaseModel, Field, TypeAdapter, ValidationError, field_validator
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import commands, notifications, queries, users, webhooks
from .config import FulfillmentConfig
from .dispatcher import DeliveryDispatcher
from .errors import Forbidden, FulfillmentError, WebhookEndpointNotFound
from .schema import create_schema
from .sms import create_sms_gateway
from .users import UserSnapshot, is_admin
from .worker import WebhookDeliveryWorker

logger = logging.getLogger(__name__)


def create_app(config: FulfillmentConfig | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cfg = config or FulfillmentConfig.from_env()
        engine = create_async_engine(cfg.database_url, echo=False)
        async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        if cfg.create_schema:
            await create_schema(engine)

        redis_pool = (
            aioredis.from_url(cfg.redis_url, decode_responses=True) if cfg.redis_url else None
        )
        http_client = httpx.AsyncClient(timeout=cfg.sms_timeout)
        dispatcher = DeliveryDispatcher(
            async_session, cfg, create_sms_gateway(cfg, http_client), redis_pool
        )

        app.state.config = cfg
        app.state.async_session = async_session
        app.state.dispatcher = dispatcher

        shutdown_event = asyncio.Event()
        worker_task = None
        if cfg.webhook_worker_enabled:
            worker = WebhookDeliveryWorker(async_session, http_client, cfg)
            worker_task = asyncio.create_task(worker.run(shutdown_event))

        logger.info(
            "Fulfillment service started (sms=%s, redis=%s, webhook_worker=%s)",
            cfg.sms_provider or "disabled",
            "on" if redis_pool else "off",
            "on" if worker_task else "off",
        )
        yield

        shutdown_event.set()
        if worker_task is not None:
            worker_task.cancel()
            try:
                await worker_task
            except asyncio.CancelledError:
                pass
        await dispatcher.drain()
        await http_client.aclose()
        if redis_pool is not None:
            await redis_pool.aclose()
        await engine.dispose()

    app = FastAPI(title="Fulfillment Service", lifespan=lifespan)

    @app.exception_handler(FulfillmentError)
    async def handle_fulfillment_error(request: Request, exc: FulfillmentError):
        return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})

    @app.exception_handler(ValueError)
    async def handle_value_error(request: Request, exc: ValueError):
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    _register_routes(app)
    return app


# ── 認証（外部コラボレータ） ─────────────────────


async def current_user(
    request: Request, x_user_id: str | None = Header(default=None)
) -> UserSnapshot:
    """X-User-Id ヘッダをユーザーのリードモデルで解決する"""
    if not x_user_id:
        raise HTTPException(401, "Missing X-User-Id header")
    async with request.app.state.async_session() as session:
        user = await users.get_user(session, x_user_id)
    if user is None:
        raise HTTPException(401, "Unknown user")
    return user


# ── Request Models ───────────────────────────────


class CreateTransactionRequest(BaseModel):
    product_id: str
    quantity: int = Field(gt=0)
    payment_method: str | None = None


class CancelTransactionRequest(BaseModel):
    reason: str | None = None


_HTTP_URL = TypeAdapter(AnyHttpUrl)


class RegisterWebhookRequest(BaseModel):
    url: str = Field(pattern=r"^https?://")
    events: list[str] = Field(min_length=1)
    description: str | None = None

    @field_validator("url")
    @classmethod
    def url_must_parse(cls, v: str) -> str:
        """送信時に落ちる URL（壊れた IPv6 ホストなど）は登録時に弾く"""
        try:
            _HTTP_URL.validate_python(v)
            httpx.URL(v)
        except (ValidationError, httpx.InvalidURL) as e:
            raise ValueError(f"Invalid webhook URL: {v}") from e
        return v


def _register_routes(app: FastAPI) -> None:
    # ── Command Endpoints ────────────────────────

    @app.post("/transactions", status_code=201)
    async def cmd_create_transaction(
        req: CreateTransactionRequest,
        request: Request,
        user: UserSnapshot = Depends(current_user),
    ):
        """取引作成（在庫引き当て）"""
        async with request.app.state.async_session() as session:
            agg = await commands.create_transaction(
                session,
                request.app.state.dispatcher,
                user,
                req.product_id,
                req.quantity,
                req.payment_method,
            )
            return agg.to_dict()

    @app.post("/transactions/{transaction_id}/complete")
    async def cmd_complete_transaction(
        transaction_id: str,
        request: Request,
        user: UserSnapshot = Depends(current_user),
    ):
        """取引完了（売り手・管理者）"""
        async with request.app.state.async_session() as session:
            agg = await commands.complete_transaction(
                session, request.app.state.dispatcher, transaction_id, user
            )
            return agg.to_dict()

    @app.post("/transactions/{transaction_id}/cancel")
    async def cmd_cancel_transaction(
        transaction_id: str,
        request: Request,
        req: CancelTransactionRequest | None = None,
        user: UserSnapshot = Depends(current_user),
    ):
        """取引キャンセル（在庫解放）"""
        async with request.app.state.async_session() as session:
            agg = await commands.cancel_transaction(
                session,
                request.app.state.dispatcher,
                transaction_id,
                user,
                req.reason if req else None,
            )
            return agg.to_dict()

    # ── Query Endpoints ──────────────────────────

    @app.get("/transactions")
    async def query_list_transactions(
        request: Request,
        status: str | None = None,
        limit: int = 20,
        offset: int = 0,
        user: UserSnapshot = Depends(current_user),
    ):
        async with request.app.state.async_session() as session:
            return await queries.list_transactions(
                session, user, status, min(limit, 100), offset
            )

    @app.get("/transactions/{transaction_id}")
    async def query_get_transaction(
        transaction_id: str,
        request: Request,
        user: UserSnapshot = Depends(current_user),
    ):
        async with request.app.state.async_session() as session:
            agg = await commands.load_transaction(session, transaction_id)
        if not agg.is_visible_to(user):
            raise Forbidden(f"User {user.id} may not view transaction {transaction_id}")
        return agg.to_dict()

    @app.get("/notifications")
    async def query_list_notifications(
        request: Request,
        unread_only: bool = False,
        limit: int = 50,
        user: UserSnapshot = Depends(current_user),
    ):
        async with request.app.state.async_session() as session:
            return await notifications.list_notifications(
                session, user.id, unread_only, min(limit, 100)
            )

    @app.post("/notifications/{notification_id}/read")
    async def cmd_mark_notification_read(
        notification_id: str,
        request: Request,
        user: UserSnapshot = Depends(current_user),
    ):
        async with request.app.state.async_session() as session:
            if not await notifications.mark_read(session, notification_id, user.id):
                raise HTTPException(404, "Notification not found")
        return {"id": notification_id, "is_read": True}

    # ── Webhook 管理 ─────────────────────────────

    @app.get("/webhooks/events")
    async def query_webhook_events():
        """購読できるイベントの一覧"""
        return [
            {"event": event, "description": description}
            for event, description in webhooks.AVAILABLE_EVENTS.items()
        ]

    @app.get("/webhooks/stats")
    async def query_webhook_stats(
        request: Request, user: UserSnapshot = Depends(current_user)
    ):
        if not is_admin(user):
            raise Forbidden("Webhook statistics are restricted to admins")
        async with request.app.state.async_session() as session:
            return await webhooks.get_stats(session)

    @app.post("/webhooks", status_code=201)
    async def cmd_register_webhook(
        req: RegisterWebhookRequest,
        request: Request,
        user: UserSnapshot = Depends(current_user),
    ):
        """エンドポイント登録。secret はこのレスポンスでだけ返す。"""
        async with request.app.state.async_session() as session:
            return await webhooks.register_endpoint(
                session,
                user.id,
                req.url,
                req.events,
                req.description,
                request.app.state.config.webhook_max_retries,
            )

    @app.get("/webhooks")
    async def query_list_webhooks(
        request: Request, user: UserSnapshot = Depends(current_user)
    ):
        async with request.app.state.async_session() as session:
            return await webhooks.list_endpoints(session, user.id)

    @app.delete("/webhooks/{endpoint_id}")
    async def cmd_deactivate_webhook(
        endpoint_id: str,
        request: Request,
        user: UserSnapshot = Depends(current_user),
    ):
        async with request.app.state.async_session() as session:
            return await webhooks.deactivate_endpoint(session, endpoint_id, user)

    @app.get("/webhooks/{endpoint_id}/logs")
    async def query_webhook_logs(
        endpoint_id: str,
        request: Request,
        limit: int = 100,
        user: UserSnapshot = Depends(current_user),
    ):
        async with request.app.state.async_session() as session:
            endpoint = await webhooks.get_endpoint(session, endpoint_id)
            if endpoint is None:
                raise WebhookEndpointNotFound(endpoint_id)
            if not (is_admin(user) or endpoint["owner_id"] == user.id):
                raise Forbidden(f"User {user.id} may not view endpoint {endpoint_id}")
            return await webhooks.list_delivery_logs(session, endpoint_id, min(limit, 500))

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "fulfillment-service"}


app = create_app()
