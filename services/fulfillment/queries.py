"""
Fulfillment Service — クエリハンドラ (読み取り側)

役割ごとに見える取引が違う:
    producteur  自分が売り手の取引
    acheteur / cooperative  自分が買い手の取引
    admin       すべて
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .aggregate import TransactionAggregate
from .users import UserSnapshot, is_admin


async def list_transactions(
    session: AsyncSession,
    user: UserSnapshot,
    status: str | None = None,
    limit: int = 20,
    offset: int = 0,
) -> list[dict]:
    conditions = []
    params: dict = {"limit": limit, "offset": offset}
    if not is_admin(user):
        if user.role == "producteur":
            conditions.append("seller_id = :user_id")
        else:
            conditions.append("buyer_id = :user_id")
        params["user_id"] = user.id
    if status:
        conditions.append("status = :status")
        params["status"] = status

    where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
    result = await session.execute(
        text(f"""
            SELECT * FROM transactions
            {where}
            ORDER BY created_at DESC
            LIMIT :limit OFFSET :offset
        """),
        params,
    )
    return [TransactionAggregate.from_row(row).to_dict() for row in result.fetchall()]
