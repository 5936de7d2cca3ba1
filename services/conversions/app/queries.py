"""
Conversions Service — クエリハンドラ

送信済みイベント (sent_conversion_events) を返す。
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession


def _row_to_event(row) -> dict:
    return {
        "channel": row.channel,
        "dedup_key": row.dedup_key,
        "event_name": row.event_name,
        "value": float(row.value) if row.value is not None else None,
        "sent_at": row.sent_at,
    }


async def list_sent_events(session: AsyncSession, limit: int = 100) -> list[dict]:
    """送信済みイベント一覧(新しい順)"""
    result = await session.execute(
        text("""
            SELECT * FROM sent_conversion_events
            ORDER BY sent_at DESC
            LIMIT :limit
        """),
        {"limit": limit},
    )
    return [_row_to_event(row) for row in result.fetchall()]


async def get_sent_events(session: AsyncSession, order_id: str) -> list[dict]:
    """特定注文の送信済みイベント"""
    result = await session.execute(
        text("""
            SELECT * FROM sent_conversion_events
            WHERE dedup_key = :key
            ORDER BY sent_at ASC
        """),
        {"key": order_id},
    )
    return [_row_to_event(row) for row in result.fetchall()]
