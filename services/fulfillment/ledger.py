"""
Fulfillment Service — 在庫台帳 (Inventory Ledger)

商品の available_quantity を変更できるのはこのモジュールだけ。

引き当て(reserve)は「在庫が足りていれば減らす」を 1 本の条件付き UPDATE で
行う。読んでから書く 2 段階にすると、最後の在庫を 2 人の購入者が同時に
取り合ったときに売り越しが起きる。

    UPDATE products
    SET available_quantity = available_quantity - :qty
    WHERE id = :id AND available_quantity >= :qty

影響行数 1 なら成功、0 なら在庫不足。

解放(release)と確定(commit)は reservations 行の held → released / committed
を条件付き UPDATE で遷移させるので、何度呼ばれても効果は 1 回だけ。

どの関数も session.commit() は呼ばない。取引の作成と同じ
トランザクション境界の中で使う前提。
"""

import logging
from uuid import uuid4

from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .clock import isoformat, utcnow
from .errors import InsufficientStock, ProductNotFound

logger = logging.getLogger(__name__)

HELD = "held"
COMMITTED = "committed"
RELEASED = "released"


class Reservation(BaseModel):
    id: str
    transaction_id: str
    product_id: str
    quantity: int
    state: str = HELD


async def reserve(
    session: AsyncSession,
    product_id: str,
    quantity: int,
    transaction_id: str,
) -> Reservation:
    """
    在庫引き当て

    条件付き UPDATE で在庫を減らし、held 状態の予約行を記録する。
    在庫不足なら InsufficientStock（呼び出し元でロールバックする）。
    """
    if quantity <= 0:
        raise ValueError("quantity must be positive")

    now = isoformat(utcnow())
    result = await session.execute(
        text("""
            UPDATE products
            SET available_quantity = available_quantity - :qty, updated_at = :now
            WHERE id = :id AND available_quantity >= :qty
        """),
        {"qty": quantity, "now": now, "id": product_id},
    )
    if result.rowcount != 1:
        available = await get_available_quantity(session, product_id)
        if available is None:
            raise ProductNotFound(product_id)
        raise InsufficientStock(product_id, quantity, available)

    reservation = Reservation(
        id=str(uuid4()),
        transaction_id=transaction_id,
        product_id=product_id,
        quantity=quantity,
    )
    await session.execute(
        text("""
            INSERT INTO reservations
                (id, transaction_id, product_id, quantity, state, created_at, updated_at)
            VALUES
                (:id, :transaction_id, :product_id, :quantity, :state, :now, :now)
        """),
        {**reservation.model_dump(), "now": now},
    )
    logger.debug("Reserved %s of product %s", quantity, product_id)
    return reservation


async def release(session: AsyncSession, reservation: Reservation) -> bool:
    """
    在庫解放（キャンセル時）

    held の予約だけを released にして在庫を戻す。
    既に解放/確定済みなら何もせず False を返す（タイムアウト後の再試行を許容）。
    """
    now = isoformat(utcnow())
    result = await session.execute(
        text("""
            UPDATE reservations
            SET state = :released, updated_at = :now
            WHERE id = :id AND state = :held
        """),
        {"released": RELEASED, "held": HELD, "now": now, "id": reservation.id},
    )
    if result.rowcount != 1:
        return False

    # 売り切れ状態だった商品は在庫が戻れば販売中に戻す
    await session.execute(
        text("""
            UPDATE products
            SET available_quantity = available_quantity + :qty,
                status = CASE WHEN status = 'sold' THEN 'approved' ELSE status END,
                updated_at = :now
            WHERE id = :id
        """),
        {"qty": reservation.quantity, "now": now, "id": reservation.product_id},
    )
    reservation.state = RELEASED
    return True


async def commit(session: AsyncSession, reservation: Reservation) -> bool:
    """
    引き当ての確定（取引完了時）

    在庫数は reserve の時点で減っているので変更しない。
    残数が 0 になった承認済み商品は sold にする。
    """
    now = isoformat(utcnow())
    result = await session.execute(
        text("""
            UPDATE reservations
            SET state = :committed, updated_at = :now
            WHERE id = :id AND state = :held
        """),
        {"committed": COMMITTED, "held": HELD, "now": now, "id": reservation.id},
    )
    if result.rowcount != 1:
        return False

    await session.execute(
        text("""
            UPDATE products
            SET status = 'sold', updated_at = :now
            WHERE id = :id AND available_quantity = 0 AND status = 'approved'
        """),
        {"now": now, "id": reservation.product_id},
    )
    reservation.state = COMMITTED
    return True


async def restock(session: AsyncSession, product_id: str, quantity: int) -> None:
    """商品カタログからの入荷。初期数量も同じだけ増やす。"""
    if quantity <= 0:
        raise ValueError("quantity must be positive")
    result = await session.execute(
        text("""
            UPDATE products
            SET available_quantity = available_quantity + :qty,
                initial_quantity = initial_quantity + :qty,
                status = CASE WHEN status = 'sold' THEN 'approved' ELSE status END,
                updated_at = :now
            WHERE id = :id
        """),
        {"qty": quantity, "now": isoformat(utcnow()), "id": product_id},
    )
    if result.rowcount != 1:
        raise ProductNotFound(product_id)


async def get_reservation_for_transaction(
    session: AsyncSession, transaction_id: str
) -> Reservation | None:
    result = await session.execute(
        text("""
            SELECT id, transaction_id, product_id, quantity, state
            FROM reservations
            WHERE transaction_id = :tid
        """),
        {"tid": transaction_id},
    )
    row = result.fetchone()
    if not row:
        return None
    return Reservation(
        id=row.id,
        transaction_id=row.transaction_id,
        product_id=row.product_id,
        quantity=row.quantity,
        state=row.state,
    )


async def get_available_quantity(session: AsyncSession, product_id: str) -> int | None:
    result = await session.execute(
        text("SELECT available_quantity FROM products WHERE id = :id"),
        {"id": product_id},
    )
    row = result.fetchone()
    return row.available_quantity if row else None
