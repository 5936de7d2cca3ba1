"""
Order Service — コマンドハンドラ (CQRS の Write 側)

CQRS パターンでは、書き込み(Command)と読み取り(Query)を分離する。
コマンドは状態を変更する操作で、イベントを生成してストアに保存する。
同時にリードモデル(Read Model)も更新する。

注文 ID (OrderIdentifier) はここ、注文作成コマンドの中で 1 度だけ発行される。
以降は Pixel の eventID と CAPI の event_id の両方にそのまま使われる。
"""

import json
import logging
from datetime import datetime, timezone
from urllib.parse import urlencode

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from services.shared.identity import ORDER_ID_PARAM, issue_order_id

from . import event_store
from .aggregate import CANCELLED, CONFIRMED, OrderAggregate
from .events import OrderCancelled, OrderConfirmed, OrderCreated

logger = logging.getLogger(__name__)

ORDER_EVENTS_CHANNEL = "order_events"


class OrderNotFound(Exception):
    """指定 ID の注文が存在しない"""


async def _publish(
    redis: aioredis.Redis,
    event_type: str,
    data: dict,
    order: OrderAggregate,
) -> None:
    """
    Redis Pub/Sub でイベントを発行する。

    発行に失敗しても注文の状態変更はコミット済みのまま。
    コンバージョン計測の失敗で注文処理を止めない。
    """
    try:
        await redis.publish(ORDER_EVENTS_CHANNEL, json.dumps({
            "event_type": event_type,
            "data": data,
            "order": order.to_snapshot(),
        }, default=str))
    except RedisError:
        logger.exception("Failed to publish %s for order %s", event_type, order.id)


async def _load(session: AsyncSession, order_id: str) -> OrderAggregate:
    events = await event_store.load_events(session, order_id)
    if not events:
        raise OrderNotFound(order_id)
    return OrderAggregate.from_events(events)


async def create_order(
    session: AsyncSession,
    redis: aioredis.Redis,
    *,
    order_type: str,
    customer_name: str,
    phone: str,
    product_name: str,
    quantity: int,
    total_price: float,
    address: str = "",
    city: str = "",
    delivery_zone: str = "",
    color: str = "",
    client_ip: str = "",
    user_agent: str = "",
    fbp: str = "",
    fbc: str = "",
) -> OrderAggregate:
    """
    注文作成コマンド

    1. OrderIdentifier を発行
    2. OrderCreated イベントを生成してイベントストアに保存
    3. リードモデルを更新
    4. Redis Pub/Sub でイベントを発行（他サービスへ通知）
    """
    order_id = issue_order_id()
    now = datetime.now(timezone.utc)
    event = OrderCreated(
        order_id=order_id,
        order_type=order_type,
        customer_name=customer_name,
        phone=phone,
        address=address,
        city=city,
        delivery_zone=delivery_zone,
        product_name=product_name,
        color=color,
        quantity=quantity,
        total_price=total_price,
        client_ip=client_ip,
        user_agent=user_agent,
        fbp=fbp,
        fbc=fbc,
        timestamp=now,
    )
    event_data = event.model_dump(mode="json")

    # 1. イベントストアに追記
    version = await event_store.append_event(
        session, order_id, "Order", "OrderCreated", event_data, 0
    )

    # 2. リードモデルを更新 (CQRS: Write 側がリードモデルも更新)
    await session.execute(
        text("""
            INSERT INTO orders_read_model
                (id, order_type, customer_name, phone, address, city, delivery_zone,
                 product_name, color, quantity, total_price, status, created_at, updated_at)
            VALUES
                (:id, :order_type, :customer_name, :phone, :address, :city, :delivery_zone,
                 :product_name, :color, :quantity, :total_price, 'INTAKE', :now, :now)
        """),
        {
            "id": order_id,
            "order_type": order_type,
            "customer_name": customer_name,
            "phone": phone,
            "address": address,
            "city": city,
            "delivery_zone": delivery_zone,
            "product_name": product_name,
            "color": color,
            "quantity": quantity,
            "total_price": total_price,
            "now": now.isoformat(),
        },
    )

    await session.commit()

    agg = OrderAggregate()
    agg.apply_order_created(event_data)
    agg.version = version
    logger.info("Order created: %s (%s, total=%s)", order_id, order_type, total_price)

    # 3. Redis Pub/Sub でイベントを発行
    await _publish(redis, "OrderCreated", event_data, agg)
    return agg


async def _update_status(session: AsyncSession, order_id: str, status: str, now: datetime) -> None:
    await session.execute(
        text("""
            UPDATE orders_read_model
            SET status = :status, updated_at = :now
            WHERE id = :id
        """),
        {"id": order_id, "status": status, "now": now.isoformat()},
    )


async def confirm_order(
    session: AsyncSession,
    redis: aioredis.Redis,
    order_id: str,
) -> OrderAggregate:
    """
    注文確定コマンド（管理画面から呼ばれる）

    INTAKE → CONFIRMED。既に CONFIRMED なら何もせず現在の状態を返す。
    Conversions Service はこのイベントで Purchase を CAPI に送る。
    """
    agg = await _load(session, order_id)
    if not agg.can_transition_to(CONFIRMED):
        logger.info("Order %s already %s, confirm ignored", order_id, agg.status)
        return agg

    now = datetime.now(timezone.utc)
    event_data = OrderConfirmed(order_id=order_id, timestamp=now).model_dump(mode="json")

    version = await event_store.append_event(
        session, order_id, "Order", "OrderConfirmed", event_data, agg.version
    )
    await _update_status(session, order_id, CONFIRMED, now)
    await session.commit()

    agg.apply_order_confirmed(event_data)
    agg.version = version
    await _publish(redis, "OrderConfirmed", event_data, agg)
    return agg


async def cancel_order(
    session: AsyncSession,
    redis: aioredis.Redis,
    order_id: str,
    reason: str,
) -> OrderAggregate:
    """
    注文キャンセルコマンド（補償トランザクション）

    ブラウザの Pixel は注文直後に Purchase を送っている。
    キャンセル時は Conversions Service が同じ order_id で Refund を送り、
    広告側の ROAS を補正する。
    """
    agg = await _load(session, order_id)
    if not agg.can_transition_to(CANCELLED):
        logger.info("Order %s already cancelled, cancel ignored", order_id)
        return agg

    now = datetime.now(timezone.utc)
    event_data = OrderCancelled(order_id=order_id, reason=reason, timestamp=now).model_dump(mode="json")

    version = await event_store.append_event(
        session, order_id, "Order", "OrderCancelled", event_data, agg.version
    )
    await _update_status(session, order_id, CANCELLED, now)
    await session.commit()

    agg.apply_order_cancelled(event_data)
    agg.version = version
    await _publish(redis, "OrderCancelled", event_data, agg)
    return agg


def build_confirmation_url(agg: OrderAggregate, path: str = "/order-success") -> str:
    """
    注文完了ページへのリダイレクト URL

    order_id はクエリパラメータで渡す(主経路)。
    リダイレクトで消えた場合に備えて、クライアントは同じ値を
    sessionStorage の pending_order_id にも保存する(副経路)。
    """
    total = agg.total_price
    if float(total).is_integer():
        total = int(total)
    params = {
        ORDER_ID_PARAM: agg.id,
        "type": agg.order_type,
        "total": total,
        "product": agg.product_name,
    }
    if agg.color:
        params["color"] = agg.color
    return f"{path}?{urlencode(params)}"
