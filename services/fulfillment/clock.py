"""
時刻ユーティリティ

DB には UTC の ISO-8601 文字列（マイクロ秒まで固定長）で保存する。
固定長なので文字列比較 = 時刻比較になり、next_retry_at の
ポーリングを PostgreSQL / SQLite で同じ SQL のまま書ける。
"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")
