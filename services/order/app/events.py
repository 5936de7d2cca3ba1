"""
Order Service — イベント定義

Event Sourcing では、ドメインで発生した事実(イベント)を定義する。
イベントは過去形で命名し、不変(immutable)として扱う。
"""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict


class _Event(BaseModel):
    model_config = ConfigDict(frozen=True)


class OrderCreated(_Event):
    """注文(または問い合わせ)が作成された"""
    order_id: str
    order_type: Literal["buy", "inquiry"]
    customer_name: str
    phone: str
    address: str = ""
    city: str = ""
    delivery_zone: str = ""
    product_name: str
    color: str = ""
    quantity: int
    total_price: float
    # Advanced Matching 用 (CAPI の Match Quality を上げる)
    client_ip: str = ""
    user_agent: str = ""
    fbp: str = ""
    fbc: str = ""
    timestamp: datetime


class OrderConfirmed(_Event):
    """注文が確定された(電話確認が取れた)"""
    order_id: str
    timestamp: datetime


class OrderCancelled(_Event):
    """注文がキャンセルされた(補償)"""
    order_id: str
    reason: str
    timestamp: datetime
