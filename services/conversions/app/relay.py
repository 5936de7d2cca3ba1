"""
Conversions Service — サーバー側コンバージョン中継 (Server Conversion Relay)

注文の状態遷移を受けて、CAPI にコンバージョンを送る:

    CONFIRMED → Purchase  (action_source = website)
    CANCELLED → Refund    (action_source = system_generated)
    それ以外  → 何もしない

event_id はブラウザ Pixel の eventID と同じ注文 ID をそのまま使う。
広告プラットフォームは event_id が一致する 2 つのイベントを 1 件として数える。
ブラウザ側とはキーを共有する以外の連携はしない。

Webhook のリトライや Pub/Sub の再配信で同じ遷移が何度届いても、
(注文 ID, イベント名) の Ledger で 1 回だけ送る。
"""

import logging
from enum import Enum

from pydantic import BaseModel, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from services.shared.identity import validate_order_id

from .capi import ConversionsApiClient, build_user_data
from .events import Purchase, Refund, content_descriptor, parse_total
from .ledger import SqlDedupLedger

logger = logging.getLogger(__name__)

CAPI_CHANNEL = "capi"


class RelayOutcome(str, Enum):
    SENT = "sent"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    INVALID_VALUE = "invalid_value"
    FAILED = "failed"


class StatusTransition(BaseModel):
    """状態遷移 1 件分と、コンバージョン送信に必要な注文情報"""
    order_id: str
    status: str
    total_price: float | str | None = None
    product_name: str = ""
    color: str = ""
    phone: str = ""
    city: str = ""
    client_ip: str = ""
    user_agent: str = ""
    fbp: str = ""
    fbc: str = ""
    reason: str = ""

    @field_validator("order_id")
    @classmethod
    def _check_order_id(cls, v: str) -> str:
        return validate_order_id(v)

    @classmethod
    def from_order_message(cls, message: dict) -> "StatusTransition":
        """order_events の {"event_type", "data", "order"} から組み立てる"""
        order = message.get("order") or {}
        data = message.get("data") or {}
        return cls(
            **{k: v for k, v in order.items() if k in cls.model_fields and v is not None},
            reason=data.get("reason", ""),
        )


class ConversionRelay:
    """状態遷移 → CAPI イベント"""

    def __init__(
        self,
        capi: ConversionsApiClient,
        currency: str = "NPR",
        country: str = "np",
    ):
        self.capi = capi
        self.currency = currency
        self.country = country

    def build_event(self, transition: StatusTransition) -> tuple[Purchase | Refund, str] | None:
        """
        遷移に対応するイベントと action_source を返す。

        対象外の遷移、または金額が不正な Purchase は None。
        """
        status = transition.status.strip().upper()
        common = {
            "dedup_key": transition.order_id,
            "currency": self.currency,
            "content_name": content_descriptor(transition.product_name, transition.color),
            "content_ids": [transition.product_name] if transition.product_name else [],
        }
        if status == "CONFIRMED":
            value = parse_total(transition.total_price)
            if value is None:
                return None
            return Purchase(value=value, **common), "website"
        if status == "CANCELLED":
            value = parse_total(transition.total_price) or 0.0
            return Refund(value=value, reason=transition.reason or "order_cancelled", **common), "system_generated"
        return None

    async def handle_transition(
        self,
        session: AsyncSession,
        transition: StatusTransition,
    ) -> RelayOutcome:
        """
        遷移を処理する。送信失敗も含めて例外は投げない。

        1. 対象の遷移か判定
        2. Ledger で送信済みか確認
        3. CAPI に送信
        4. 成功したら Ledger に記録
        """
        status = transition.status.strip().upper()
        if status not in ("CONFIRMED", "CANCELLED"):
            logger.debug("Transition %s for %s ignored", status, transition.order_id)
            return RelayOutcome.IGNORED

        event_name = "Purchase" if status == "CONFIRMED" else "Refund"
        ledger = SqlDedupLedger(session, CAPI_CHANNEL)
        if await ledger.has_fired(transition.order_id, event_name):
            logger.info("%s for %s already sent, skipping", event_name, transition.order_id)
            return RelayOutcome.DUPLICATE

        built = self.build_event(transition)
        if built is None:
            logger.warning(
                "%s for %s suppressed: invalid total %r",
                event_name, transition.order_id, transition.total_price,
            )
            return RelayOutcome.INVALID_VALUE
        event, action_source = built

        user_data = build_user_data(
            phone=transition.phone,
            city=transition.city,
            country=self.country,
            client_ip=transition.client_ip,
            user_agent=transition.user_agent,
            fbp=transition.fbp,
            fbc=transition.fbc,
        )
        sent = await self.capi.send([event.capi_event(user_data, action_source)])
        if not sent:
            logger.error("%s for %s not delivered; not retried", event_name, transition.order_id)
            return RelayOutcome.FAILED

        if not await ledger.mark_fired(transition.order_id, event_name, event.value):
            # 同時に届いた同じ遷移が先に記録した。プラットフォーム側で 1 件にまとまる。
            logger.warning("%s for %s was sent concurrently", event_name, transition.order_id)
        logger.info("%s sent to CAPI with event_id %s", event_name, transition.order_id)
        return RelayOutcome.SENT
