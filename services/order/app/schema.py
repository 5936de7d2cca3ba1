"""
Order Service — テーブル定義

起動時に CREATE TABLE IF NOT EXISTS を流す。
PostgreSQL と SQLite の両方で通る型だけを使い、時刻は ISO-8601 文字列で持つ。
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

DDL = [
    """
    CREATE TABLE IF NOT EXISTS event_store (
        aggregate_id   VARCHAR(64)  NOT NULL,
        aggregate_type VARCHAR(32)  NOT NULL,
        event_type     VARCHAR(64)  NOT NULL,
        event_data     TEXT         NOT NULL,
        version        INTEGER      NOT NULL,
        created_at     VARCHAR(40)  NOT NULL,
        PRIMARY KEY (aggregate_id, version)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS orders_read_model (
        id            VARCHAR(64)    PRIMARY KEY,
        order_type    VARCHAR(16)    NOT NULL,
        customer_name VARCHAR(200)   NOT NULL,
        phone         VARCHAR(32)    NOT NULL,
        address       TEXT           NOT NULL DEFAULT '',
        city          VARCHAR(100)   NOT NULL DEFAULT '',
        delivery_zone VARCHAR(32)    NOT NULL DEFAULT '',
        product_name  VARCHAR(200)   NOT NULL,
        color         VARCHAR(64)    NOT NULL DEFAULT '',
        quantity      INTEGER        NOT NULL,
        total_price   NUMERIC(12, 2) NOT NULL,
        status        VARCHAR(16)    NOT NULL,
        created_at    VARCHAR(40)    NOT NULL,
        updated_at    VARCHAR(40)    NOT NULL
    )
    """,
]


async def create_tables(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        for statement in DDL:
            await conn.execute(text(statement))
