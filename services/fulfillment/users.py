"""
Fulfillment Service — ユーザー参照 (認証サービスのリードモデル)

認証・プロフィール管理は範囲外。通知の宛先と権限判定に必要な
列（役割・電話番号・SMS 受信設定）だけを読む。
"""

from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

ROLE_ADMIN = "admin"


class UserSnapshot(BaseModel):
    id: str
    name: str
    role: str
    phone: str | None = None
    sms_opt_in: bool = True


def is_admin(user: UserSnapshot) -> bool:
    return user.role == ROLE_ADMIN


def _to_user(row) -> UserSnapshot:
    return UserSnapshot(
        id=row.id,
        name=row.name,
        role=row.role,
        phone=row.phone,
        sms_opt_in=bool(row.sms_opt_in),
    )


async def get_user(session: AsyncSession, user_id: str) -> UserSnapshot | None:
    result = await session.execute(
        text("SELECT id, name, role, phone, sms_opt_in FROM users WHERE id = :id"),
        {"id": user_id},
    )
    row = result.fetchone()
    return _to_user(row) if row else None


async def list_admins(session: AsyncSession) -> list[UserSnapshot]:
    result = await session.execute(
        text("""
            SELECT id, name, role, phone, sms_opt_in
            FROM users
            WHERE role = :role
            ORDER BY id
        """),
        {"role": ROLE_ADMIN},
    )
    return [_to_user(row) for row in result.fetchall()]
