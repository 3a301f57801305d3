"""
Fulfillment Service — コマンドハンドラ (取引ステートマシンの書き込み側)

    create   在庫引き当て + 取引 INSERT を 1 トランザクションで行う
    complete 状態を completed に（条件付き UPDATE）+ 引き当て確定
    cancel   状態を cancelled に（条件付き UPDATE）+ 引き当て解放

業務エラー（在庫不足・不正な遷移・権限なし）はロールバックしてそのまま
呼び出し元へ送出する。エンベロープは commit が成功した遷移からだけ作るので、
失敗した遷移が通知や Webhook を生むことはない。

状態の UPDATE は WHERE status = 'pending' 付き。complete と cancel が
同時に来ても勝つのは 1 つだけ。
"""

import logging
from uuid import uuid4

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from . import catalog, envelopes, ledger, users
from .aggregate import CANCELLED, COMPLETED, PENDING, TransactionAggregate
from .clock import isoformat, utcnow
from .dispatcher import DeliveryDispatcher, DispatchReport
from .errors import IllegalTransition, InsufficientStock, ProductNotFound, TransactionNotFound
from .events import TransactionSnapshot
from .users import UserSnapshot

logger = logging.getLogger(__name__)


async def create_transaction(
    session: AsyncSession,
    dispatcher: DeliveryDispatcher,
    buyer: UserSnapshot,
    product_id: str,
    quantity: int,
    payment_method: str | None = None,
) -> TransactionAggregate:
    """
    取引作成コマンド

    1. 商品を読み、単価をスナップショットする
    2. 在庫を引き当てる（条件付き UPDATE）
    3. pending の取引を INSERT
    4. commit — 2 と 3 はどちらも起きるか、どちらも起きないか
    5. created エンベロープを配信
    """
    product = await catalog.get_product(session, product_id)
    if product is None:
        raise ProductNotFound(product_id)

    now = utcnow()
    agg = TransactionAggregate(
        id=str(uuid4()),
        buyer_id=buyer.id,
        seller_id=product.seller_id,
        product_id=product.id,
        quantity=quantity,
        price_per_unit=product.price,
        status=PENDING,
        created_at=isoformat(now),
        payment_method=payment_method,
    )

    try:
        await ledger.reserve(session, product.id, quantity, agg.id)
        await session.execute(
            text("""
                INSERT INTO transactions
                    (id, buyer_id, seller_id, product_id, quantity, price_per_unit,
                     total_amount, status, payment_method, created_at, updated_at)
                VALUES
                    (:id, :buyer_id, :seller_id, :product_id, :quantity, :price_per_unit,
                     :total_amount, :status, :payment_method, :now, :now)
            """),
            {
                "id": agg.id,
                "buyer_id": agg.buyer_id,
                "seller_id": agg.seller_id,
                "product_id": agg.product_id,
                "quantity": agg.quantity,
                "price_per_unit": agg.price_per_unit,
                "total_amount": agg.total_amount,
                "status": agg.status,
                "payment_method": agg.payment_method,
                "now": agg.created_at,
            },
        )
        await session.commit()
    except InsufficientStock as e:
        await session.rollback()
        logger.info("Transaction rejected: %s", e)
        raise
    except Exception:
        # 引き当て済みの減算もここで一緒に巻き戻る
        await session.rollback()
        logger.exception("Failed to create transaction for product %s", product_id)
        raise

    logger.info(
        "Transaction %s created: %s x %s by %s",
        agg.id, agg.quantity, agg.product_id, agg.buyer_id,
    )
    await _emit(session, dispatcher, agg, envelopes.CREATED)
    return agg


async def complete_transaction(
    session: AsyncSession,
    dispatcher: DeliveryDispatcher,
    transaction_id: str,
    actor: UserSnapshot,
) -> TransactionAggregate:
    """取引完了コマンド（売り手または管理者）"""
    agg = await load_transaction(session, transaction_id)
    agg.ensure_may_complete(actor)
    agg.ensure_can_transition(COMPLETED)

    now = utcnow()
    try:
        await _transition(session, agg, COMPLETED, {"completed_at": isoformat(now)}, now)
        reservation = await ledger.get_reservation_for_transaction(session, agg.id)
        if reservation is None:
            logger.warning("Transaction %s has no reservation to commit", agg.id)
        else:
            await ledger.commit(session, reservation)
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    agg.apply_completed(now)
    logger.info("Transaction %s completed by %s", agg.id, actor.id)
    await _emit(session, dispatcher, agg, envelopes.COMPLETED)
    return agg


async def cancel_transaction(
    session: AsyncSession,
    dispatcher: DeliveryDispatcher,
    transaction_id: str,
    actor: UserSnapshot,
    reason: str | None = None,
) -> TransactionAggregate:
    """取引キャンセルコマンド（買い手・売り手・管理者）"""
    agg = await load_transaction(session, transaction_id)
    agg.ensure_may_cancel(actor)
    agg.ensure_can_transition(CANCELLED)

    now = utcnow()
    try:
        await _transition(
            session,
            agg,
            CANCELLED,
            {"cancelled_at": isoformat(now), "cancellation_reason": reason},
            now,
        )
        reservation = await ledger.get_reservation_for_transaction(session, agg.id)
        if reservation is None:
            logger.warning("Transaction %s has no reservation to release", agg.id)
        else:
            await ledger.release(session, reservation)
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    agg.apply_cancelled(now, reason)
    logger.info("Transaction %s cancelled by %s", agg.id, actor.id)
    await _emit(session, dispatcher, agg, envelopes.CANCELLED)
    return agg


async def load_transaction(session: AsyncSession, transaction_id: str) -> TransactionAggregate:
    result = await session.execute(
        text("SELECT * FROM transactions WHERE id = :id"),
        {"id": transaction_id},
    )
    row = result.fetchone()
    if not row:
        raise TransactionNotFound(transaction_id)
    return TransactionAggregate.from_row(row)


async def _transition(
    session: AsyncSession,
    agg: TransactionAggregate,
    target: str,
    columns: dict,
    now,
) -> None:
    assignments = ", ".join(f"{name} = :{name}" for name in columns)
    result = await session.execute(
        text(f"""
            UPDATE transactions
            SET status = :target, {assignments}, updated_at = :now
            WHERE id = :id AND status = :pending
        """),
        {
            **columns,
            "target": target,
            "now": isoformat(now),
            "id": agg.id,
            "pending": PENDING,
        },
    )
    if result.rowcount != 1:
        # 読み込み後に別のリクエストが先に遷移させた
        current = await session.execute(
            text("SELECT status FROM transactions WHERE id = :id"), {"id": agg.id}
        )
        row = current.fetchone()
        raise IllegalTransition(agg.id, row.status if row else "unknown", target)


async def _emit(
    session: AsyncSession,
    dispatcher: DeliveryDispatcher,
    agg: TransactionAggregate,
    transition: str,
) -> DispatchReport | None:
    """
    commit 済みの遷移からエンベロープを作って配信する。
    ここでの失敗は取引を巻き戻さない。
    """
    try:
        context = await _load_context(session, agg)
    except (SQLAlchemyError, ProductNotFound):
        logger.exception(
            "Failed to load %s context for transaction %s", transition, agg.id
        )
        return None
    envelope_set = envelopes.build_envelopes(
        context, transition, dispatcher.config.envelope_policy
    )
    return await dispatcher.dispatch(envelope_set)


async def _load_context(
    session: AsyncSession, agg: TransactionAggregate
) -> envelopes.TransitionContext:
    product = await catalog.get_product(session, agg.product_id)
    if product is None:
        raise ProductNotFound(agg.product_id)
    buyer = await _user_or_placeholder(session, agg.buyer_id)
    seller = await _user_or_placeholder(session, agg.seller_id)
    admins = await users.list_admins(session)
    return envelopes.TransitionContext(
        transaction=TransactionSnapshot(**agg.to_dict()),
        product=product,
        buyer=buyer,
        seller=seller,
        admins=admins,
    )


async def _user_or_placeholder(session: AsyncSession, user_id: str) -> UserSnapshot:
    user = await users.get_user(session, user_id)
    if user is None:
        logger.warning("User %s not found; notifying without contact details", user_id)
        return UserSnapshot(id=user_id, name=user_id, role="unknown")
    return user
