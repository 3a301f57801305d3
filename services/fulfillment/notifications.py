"""
Fulfillment Service — アプリ内通知
"""

import json
from datetime import datetime
from uuid import uuid4

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .clock import isoformat
from .envelopes import NotificationEnvelope


async def write_notifications(
    session: AsyncSession,
    envelopes: list[NotificationEnvelope],
    now: datetime,
) -> list[dict]:
    """エンベロープ 1 件につき通知 1 行。commit は呼び出し元。"""
    rows = []
    for envelope in envelopes:
        row = {
            "id": str(uuid4()),
            "user_id": envelope.recipient_user_id,
            "kind": envelope.kind,
            "title": envelope.title,
            "body": envelope.body,
            "data": json.dumps(envelope.context_data, sort_keys=True, default=str),
            "is_read": False,
            "created_at": isoformat(now),
        }
        await session.execute(
            text("""
                INSERT INTO notifications
                    (id, user_id, kind, title, body, data, is_read, created_at)
                VALUES
                    (:id, :user_id, :kind, :title, :body, :data, :is_read, :created_at)
            """),
            row,
        )
        rows.append(row)
    return rows


def _to_dict(row) -> dict:
    return {
        "id": row.id,
        "user_id": row.user_id,
        "kind": row.kind,
        "title": row.title,
        "body": row.body,
        "data": json.loads(row.data) if row.data else {},
        "is_read": bool(row.is_read),
        "created_at": row.created_at,
    }


async def list_notifications(
    session: AsyncSession,
    user_id: str,
    unread_only: bool = False,
    limit: int = 50,
) -> list[dict]:
    sql = "SELECT * FROM notifications WHERE user_id = :user_id"
    if unread_only:
        sql += " AND is_read = :unread"
    sql += " ORDER BY created_at DESC, id LIMIT :limit"
    result = await session.execute(
        text(sql), {"user_id": user_id, "unread": False, "limit": limit}
    )
    return [_to_dict(row) for row in result.fetchall()]


async def mark_read(session: AsyncSession, notification_id: str, user_id: str) -> bool:
    result = await session.execute(
        text("""
            UPDATE notifications SET is_read = :read
            WHERE id = :id AND user_id = :user_id
        """),
        {"read": True, "id": notification_id, "user_id": user_id},
    )
    await session.commit()
    return result.rowcount == 1
