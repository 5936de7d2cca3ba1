"""
Conversions Service — FastAPI エントリーポイント

注文の状態遷移を Meta Conversions API に中継する。
Redis Pub/Sub で order_events チャネルを購読し、
バックグラウンドで Server Conversion Relay を実行する。
外部の管理ツールからは Webhook でも同じ遷移を受け付ける。

┌───────────────┐  order_events  ┌─────────────────────┐   HTTPS   ┌─────────────────┐
│ Order Service │ ──── Redis ──▶ │ Conversions Service │ ────────▶ │ Conversions API │
└───────────────┘    Pub/Sub     │ (Relay + Ledger)    │           │ (Meta)          │
                                 └──────────┬──────────┘           └─────────────────┘
                                            │
                                 ┌──────────▼──────────┐
                                 │ sent_conversion_    │
                                 │ events (Ledger)     │
                                 └─────────────────────┘
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import queries
from .capi import ConversionsApiClient
from .relay import ConversionRelay, StatusTransition
from .schema import create_tables
from .subscriber import run_subscriber

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite+aiosqlite:///./conversions.db")
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
META_PIXEL_ID = os.environ.get("META_PIXEL_ID", "")
META_ACCESS_TOKEN = os.environ.get("META_ACCESS_TOKEN", "")
META_API_VERSION = os.environ.get("META_API_VERSION", "v20.0")
META_TEST_EVENT_CODE = os.environ.get("META_TEST_EVENT_CODE", "")
CONVERSION_CURRENCY = os.environ.get("CONVERSION_CURRENCY", "NPR")
CONVERSION_COUNTRY = os.environ.get("CONVERSION_COUNTRY", "np")
SUBSCRIBE_ORDER_EVENTS = os.environ.get("SUBSCRIBE_ORDER_EVENTS", "true").lower() in ("1", "true", "yes")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger(__name__)

engine = create_async_engine(DATABASE_URL, echo=False)
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

capi_client = ConversionsApiClient(
    META_PIXEL_ID,
    META_ACCESS_TOKEN,
    api_version=META_API_VERSION,
    test_event_code=META_TEST_EVENT_CODE,
)
relay = ConversionRelay(capi_client, currency=CONVERSION_CURRENCY, country=CONVERSION_COUNTRY)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """起動時にテーブルを作り、Redis サブスクライバをバックグラウンドタスクとして開始する。"""
    await create_tables(engine)
    if not capi_client.configured:
        logger.warning("META_PIXEL_ID / META_ACCESS_TOKEN not set; CAPI events will be dropped")

    subscriber_task = None
    shutdown_event = asyncio.Event()
    if SUBSCRIBE_ORDER_EVENTS:
        subscriber_task = asyncio.create_task(
            run_subscriber(REDIS_URL, async_session, relay, shutdown_event)
        )
    yield
    shutdown_event.set()
    if subscriber_task is not None:
        subscriber_task.cancel()
        try:
            await subscriber_task
        except asyncio.CancelledError:
            pass
    await engine.dispose()


app = FastAPI(title="Conversions Service", lifespan=lifespan)


# ── Webhook ──────────────────────────────────────


@app.post("/webhooks/order-status")
async def order_status_webhook(transition: StatusTransition):
    """
    注文の状態変更 Webhook。

    同じ遷移のリトライは Ledger で弾かれるので、何度呼んでも安全。
    CAPI への送信失敗も 200 で返す(呼び出し側の処理を止めない)。
    """
    async with async_session() as session:
        outcome = await relay.handle_transition(session, transition)
    return {"order_id": transition.order_id, "outcome": outcome.value}


# ── Query Endpoints ──────────────────────────────


@app.get("/queries/conversions")
async def query_sent_events(limit: int = 100):
    """送信済みイベント一覧"""
    async with async_session() as session:
        return await queries.list_sent_events(session, limit)


@app.get("/queries/conversions/{order_id}")
async def query_order_events(order_id: str):
    """指定注文の送信済みイベント"""
    async with async_session() as session:
        return await queries.get_sent_events(session, order_id)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "conversions-service"}
