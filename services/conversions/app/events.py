"""
Conversions Service — コンバージョンイベント定義

Purchase / Lead / Refund の閉じたユニオン (discriminated union)。
kind で種類を判別し、必須項目は型で強制する:

    Purchase  value は必須かつ正の数
    Lead      value を持たない
    Refund    元の注文金額 (0 以上)

同じ注文に対する重複送信の抑止はイベント型ではなく Ledger が担う。
"""

import math
from datetime import datetime, timezone
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

from services.shared.identity import validate_order_id


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _ConversionBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    dedup_key: str
    currency: str = "NPR"
    content_name: str = ""
    content_ids: list[str] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=_utcnow)

    @field_validator("dedup_key")
    @classmethod
    def _check_dedup_key(cls, v: str) -> str:
        return validate_order_id(v)

    def _custom_data(self) -> dict:
        data = {
            "currency": self.currency,
            "content_name": self.content_name,
            "content_type": "product",
            "order_id": self.dedup_key,
        }
        if self.content_ids:
            data["content_ids"] = list(self.content_ids)
        return data

    def pixel_call(self) -> tuple[str, dict, dict]:
        """
        ブラウザの fbq('track', kind, params, {eventID}) の引数を返す。
        eventID は注文 ID そのまま (プレフィックス禁止)。
        """
        return self.kind, self._custom_data(), {"eventID": self.dedup_key}

    def capi_event(self, user_data: dict, action_source: str = "website") -> dict:
        """Conversions API の data[] 要素を組み立てる。"""
        return {
            "event_name": self.kind,
            "event_time": int(self.timestamp.timestamp()),
            "event_id": self.dedup_key,
            "action_source": action_source,
            "user_data": user_data,
            "custom_data": self._custom_data(),
        }


class Purchase(_ConversionBase):
    """購入 — 注文直後に Pixel、確定時に CAPI から送られる"""
    kind: Literal["Purchase"] = "Purchase"
    value: float = Field(gt=0, allow_inf_nan=False)

    def _custom_data(self) -> dict:
        return {**super()._custom_data(), "value": self.value}


class Lead(_ConversionBase):
    """問い合わせ — 金額を持たない"""
    kind: Literal["Lead"] = "Lead"


class Refund(_ConversionBase):
    """キャンセルに対する補償イベント — CAPI からのみ送られる"""
    kind: Literal["Refund"] = "Refund"
    value: float = Field(ge=0, allow_inf_nan=False)
    reason: str = "order_cancelled"

    def _custom_data(self) -> dict:
        return {**super()._custom_data(), "value": self.value, "refund_reason": self.reason}

    def pixel_call(self) -> tuple[str, dict, dict]:
        raise TypeError("Refund is only sent server-to-server")


ConversionEvent = Annotated[Union[Purchase, Lead, Refund], Field(discriminator="kind")]
conversion_event_adapter = TypeAdapter(ConversionEvent)


def parse_total(raw: object) -> float | None:
    """
    注文金額を解釈する。有限の正の数でなければ None。

    "1800", "1,800", 1800.0 を受け付ける。
    """
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, str):
        raw = raw.replace(",", "").strip()
        if not raw:
            return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(value) or value <= 0:
        return None
    return value


def content_descriptor(product_name: str, color: str = "") -> str:
    """content_name は「商品名 - カラー」"""
    return f"{product_name} - {color}" if color else product_name
