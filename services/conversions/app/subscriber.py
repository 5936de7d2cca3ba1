"""
Conversions Service — Redis Pub/Sub サブスクライバー

order_events チャネルを購読し、注文の状態遷移を
Server Conversion Relay に渡す。

注意: Redis Pub/Sub は fire-and-forget 方式。
サービスがダウンしている間のイベントは失われる。
その場合は POST /webhooks/order-status で同じ遷移を再送できる
(Ledger があるので二重送信にはならない)。
"""

import asyncio
import json
import logging

import redis.asyncio as aioredis
from sqlalchemy.orm import sessionmaker

from .relay import ConversionRelay, StatusTransition

logger = logging.getLogger(__name__)

ORDER_EVENTS_CHANNEL = "order_events"
STATUS_EVENTS = {"OrderConfirmed", "OrderCancelled"}


async def handle_message(
    raw: str,
    relay: ConversionRelay,
    async_session_factory: sessionmaker,
) -> str | None:
    """
    1 メッセージを処理して RelayOutcome の値を返す。
    状態遷移以外のイベントは None。
    """
    event = json.loads(raw)
    event_type = event.get("event_type")
    if event_type not in STATUS_EVENTS:
        return None

    transition = StatusTransition.from_order_message(event)
    async with async_session_factory() as session:
        outcome = await relay.handle_transition(session, transition)
    logger.info("Relayed %s for %s: %s", event_type, transition.order_id, outcome.value)
    return outcome.value


async def run_subscriber(
    redis_url: str,
    async_session_factory: sessionmaker,
    relay: ConversionRelay,
    shutdown_event: asyncio.Event,
) -> None:
    """
    order_events チャネルを購読し、状態遷移を CAPI に中継する。
    shutdown_event がセットされるまで無限ループで待機する。
    """
    redis_conn = aioredis.from_url(redis_url, decode_responses=True)
    pubsub = redis_conn.pubsub()
    await pubsub.subscribe(ORDER_EVENTS_CHANNEL)
    logger.info("Subscribed to %s channel", ORDER_EVENTS_CHANNEL)

    try:
        while not shutdown_event.is_set():
            message = await pubsub.get_message(
                ignore_subscribe_messages=True, timeout=1.0
            )
            if message and message["type"] == "message":
                try:
                    await handle_message(message["data"], relay, async_session_factory)
                except Exception:
                    logger.exception("Failed to process order event")
            else:
                await asyncio.sleep(0.1)
    finally:
        await pubsub.unsubscribe(ORDER_EVENTS_CHANNEL)
        await pubsub.aclose()
        await redis_conn.aclose()
