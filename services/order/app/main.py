"""
Order Service — FastAPI エントリーポイント

CQRS パターンに従い、Command (POST) と Query (GET) のエンドポイントを分離。
Event Sourcing により、すべての状態変更をイベントとして記録する。

┌──────────┐  POST /commands/orders   ┌───────────────┐  order_events  ┌─────────────────────┐
│ Checkout │ ───────────────────────▶ │ Order Service │ ──── Redis ──▶ │ Conversions Service │
│ (Browser)│ ◀─── confirmation_url ── │ (ID 発行)     │    Pub/Sub     │ (CAPI Relay)        │
└──────────┘                          └───────────────┘                └─────────────────────┘
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import Literal

import redis.asyncio as aioredis
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import commands, event_store, queries
from .aggregate import InvalidTransition
from .schema import create_tables

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite+aiosqlite:///./order.db")
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
CONFIRMATION_PATH = os.environ.get("CONFIRMATION_PATH", "/order-success")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger(__name__)

engine = create_async_engine(DATABASE_URL, echo=False)
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
redis_pool: aioredis.Redis | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool
    await create_tables(engine)
    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    yield
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Order Service", lifespan=lifespan)


# ── Request / Response Models ────────────────────

class CreateOrderRequest(BaseModel):
    order_type: Literal["buy", "inquiry"] = "buy"
    customer_name: str = Field(min_length=1)
    phone: str = Field(min_length=1)
    address: str = ""
    city: str = ""
    delivery_zone: str = ""
    product_name: str = Field(min_length=1)
    color: str = ""
    quantity: int = Field(default=1, ge=1)
    total_price: float = Field(default=0, ge=0)
    client_ip: str = ""
    user_agent: str = ""
    fbp: str = ""
    fbc: str = ""


class UpdateStatusRequest(BaseModel):
    reason: str = ""


def _status_response(agg) -> dict:
    return {"order_id": agg.id, "status": agg.status, "version": agg.version}


# ── Command Endpoints (Write 側) ─────────────────

@app.post("/commands/orders", status_code=201)
async def cmd_create_order(req: CreateOrderRequest):
    """注文作成コマンド — 発行した order_id と完了ページ URL を返す"""
    async with async_session() as session:
        agg = await commands.create_order(session, redis_pool, **req.model_dump())
        return {
            **_status_response(agg),
            "confirmation_url": commands.build_confirmation_url(agg, CONFIRMATION_PATH),
        }


@app.post("/commands/orders/{order_id}/confirm")
async def cmd_confirm_order(order_id: str):
    """注文確定コマンド（管理画面から呼ばれる）"""
    async with async_session() as session:
        try:
            agg = await commands.confirm_order(session, redis_pool, order_id)
        except commands.OrderNotFound:
            raise HTTPException(404, "Order not found")
        except (InvalidTransition, event_store.ConcurrencyConflict) as e:
            raise HTTPException(409, str(e))
        return _status_response(agg)


@app.post("/commands/orders/{order_id}/cancel")
async def cmd_cancel_order(order_id: str, req: UpdateStatusRequest):
    """注文キャンセルコマンド（補償トランザクション）"""
    async with async_session() as session:
        try:
            agg = await commands.cancel_order(session, redis_pool, order_id, req.reason)
        except commands.OrderNotFound:
            raise HTTPException(404, "Order not found")
        except (InvalidTransition, event_store.ConcurrencyConflict) as e:
            raise HTTPException(409, str(e))
        return _status_response(agg)


# ── Query Endpoints (Read 側) ────────────────────

@app.get("/queries/orders")
async def query_list_orders(status: str | None = None):
    """注文をリードモデルから取得"""
    async with async_session() as session:
        return await queries.list_orders(session, status)


@app.get("/queries/orders/{order_id}")
async def query_get_order(order_id: str):
    """指定注文をリードモデルから取得"""
    async with async_session() as session:
        order = await queries.get_order(session, order_id)
        if not order:
            raise HTTPException(404, "Order not found")
        return order


# ── Event Store (デバッグ用) ─────────────────────

@app.get("/events")
async def get_all_events():
    """イベントストアの全イベントを返す"""
    async with async_session() as session:
        return await event_store.load_all_events(session)


@app.get("/events/{order_id}")
async def get_aggregate_events(order_id: str):
    """指定注文のイベントを返す"""
    async with async_session() as session:
        return await event_store.load_events(session, order_id)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "order-service"}
