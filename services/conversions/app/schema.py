"""
Conversions Service — テーブル定義

sent_conversion_events はサーバー側 Ledger であり、
同時に「送信済みイベント」のログとしてクエリ API からも参照される。
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

DDL = [
    """
    CREATE TABLE IF NOT EXISTS sent_conversion_events (
        channel    VARCHAR(16)    NOT NULL,
        dedup_key  VARCHAR(64)    NOT NULL,
        event_name VARCHAR(32)    NOT NULL,
        value      NUMERIC(12, 2),
        sent_at    VARCHAR(40)    NOT NULL,
        PRIMARY KEY (channel, dedup_key, event_name)
    )
    """,
]


async def create_tables(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        for statement in DDL:
            await conn.execute(text(statement))
