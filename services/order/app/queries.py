"""
Order Service — クエリハンドラ (CQRS の Read 側)

CQRS パターンでは、読み取りはリードモデル(Read Model)から行う。
リードモデルはイベントから投影(Projection)された非正規化データで、
クエリに最適化されている。
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession


def _row_to_order(row) -> dict:
    return {
        "id": row.id,
        "order_type": row.order_type,
        "customer_name": row.customer_name,
        "phone": row.phone,
        "address": row.address,
        "city": row.city,
        "delivery_zone": row.delivery_zone,
        "product_name": row.product_name,
        "color": row.color,
        "quantity": row.quantity,
        "total_price": float(row.total_price),
        "status": row.status,
        "created_at": row.created_at,
        "updated_at": row.updated_at,
    }


async def get_order(session: AsyncSession, order_id: str) -> dict | None:
    """リードモデルから注文を取得する。"""
    result = await session.execute(
        text("SELECT * FROM orders_read_model WHERE id = :id"),
        {"id": order_id},
    )
    row = result.fetchone()
    if not row:
        return None
    return _row_to_order(row)


async def list_orders(session: AsyncSession, status: str | None = None) -> list[dict]:
    """注文一覧をリードモデルから取得する（新しい順）。"""
    if status:
        result = await session.execute(
            text("SELECT * FROM orders_read_model WHERE status = :status ORDER BY created_at DESC"),
            {"status": status},
        )
    else:
        result = await session.execute(
            text("SELECT * FROM orders_read_model ORDER BY created_at DESC"),
        )
    return [_row_to_order(row) for row in result.fetchall()]
