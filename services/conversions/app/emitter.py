"""
Conversions Service — クライアント側コンバージョン送信 (Client Conversion Emitter)

注文完了ページ (/order-success) でブラウザの Pixel に Purchase / Lead を
1 注文につき 1 回だけ送るための状態機械。ページ表示 1 回につき
1 インスタンスを作り、描画ごとの effect 実行で run_effect() を呼ぶ。

状態遷移:

    AWAITING_HYDRATION ──mark_hydrated()──▶ AWAITING_STABLE_ID
    AWAITING_STABLE_ID ──ID をロック──────▶ READY_TO_FIRE
    READY_TO_FIRE ──Ledger 未記録──▶ FIRED     (終端)
                  └─Ledger 記録済み等──▶ SKIPPED (終端)

送信は「ハイドレーション完了」と「ID ロック」の両方が揃うまで行わない。
片方だけで送ると、仮の ID で 1 回、正しい ID でもう 1 回と二重送信になる。

ID の取得元:
    主  URL クエリ ?order_id=...
    副  sessionStorage["pending_order_id"] (注文送信時に保存)
どちらにも無ければ送信しない(空のキーでは絶対に送らない)。

リダイレクトでクエリが丸ごと消えた場合に備え、注文送信時には
type / total / product / color も pending_order_details に保存しておく。
クエリに無い項目はそこから補う。
"""

import json
import logging
from collections.abc import Mapping, MutableMapping
from enum import Enum
from typing import Protocol

from services.shared.identity import (
    ORDER_ID_PARAM,
    PENDING_ORDER_DETAILS_KEY,
    PENDING_ORDER_KEY,
    InvalidOrderIdentifier,
    OrderIdentifier,
    validate_order_id,
)

from .events import Lead, Purchase, content_descriptor, parse_total
from .ledger import DedupLedger

logger = logging.getLogger(__name__)

DEFAULT_PRODUCT = "Seetara Chain Bag"


class EmitterState(str, Enum):
    AWAITING_HYDRATION = "AwaitingHydration"
    AWAITING_STABLE_ID = "AwaitingStableId"
    READY_TO_FIRE = "ReadyToFire"
    FIRED = "Fired"
    SKIPPED = "Skipped"


class SkipReason(str, Enum):
    ALREADY_FIRED = "already_fired"
    INVALID_VALUE = "invalid_value"
    CHANNEL_UNAVAILABLE = "channel_unavailable"


class ChannelUnavailable(Exception):
    """Pixel スクリプトが読み込まれていない / ブロックされている"""


class PixelChannel(Protocol):
    def track(self, event_kind: str, params: dict, options: dict) -> None: ...


def remember_pending_order(
    storage: MutableMapping[str, str],
    order_id: OrderIdentifier,
    order_type: str = "buy",
    total: float | str | None = None,
    product: str = "",
    color: str = "",
) -> None:
    """注文送信時に副経路 (pending_order_id) へ ID と注文内容を保存する。"""
    storage[PENDING_ORDER_KEY] = order_id
    storage[PENDING_ORDER_DETAILS_KEY] = json.dumps({
        ORDER_ID_PARAM: order_id,
        "type": order_type,
        "total": "" if total is None else str(total),
        "product": product,
        "color": color,
    })


class ConversionEmitter:
    """1 回のページ表示に対応する送信状態機械"""

    def __init__(
        self,
        ledger: DedupLedger,
        pixel: PixelChannel | None,
        session_storage: Mapping[str, str],
        currency: str = "NPR",
    ) -> None:
        self.ledger = ledger
        self.pixel = pixel
        self.session_storage = session_storage
        self.currency = currency
        self.state = EmitterState.AWAITING_HYDRATION
        self.locked_order_id: OrderIdentifier | None = None
        self.skip_reason: SkipReason | None = None
        self._hydrated = False

    def mark_hydrated(self) -> None:
        """クライアント側の最初の描画が終わった"""
        self._hydrated = True
        if self.state is EmitterState.AWAITING_HYDRATION:
            self.state = EmitterState.AWAITING_STABLE_ID

    def run_effect(self, query: Mapping[str, str]) -> EmitterState:
        """
        effect 1 回分の処理。何度呼ばれても送信は最大 1 回。

        ロック後にクエリが変わっても(空になっても)ロック済みの ID は変えない。
        """
        if self.state in (EmitterState.FIRED, EmitterState.SKIPPED):
            return self.state
        if not self._hydrated:
            return self.state

        if self.locked_order_id is None:
            order_id = self._resolve_order_id(query)
            if order_id is None:
                self.state = EmitterState.AWAITING_STABLE_ID
                return self.state
            self.locked_order_id = order_id
            self.state = EmitterState.READY_TO_FIRE

        self._fire(query)
        return self.state

    # ── 内部処理 ─────────────────────────────────────

    def _resolve_order_id(self, query: Mapping[str, str]) -> OrderIdentifier | None:
        for source, raw in (
            ("query", query.get(ORDER_ID_PARAM)),
            ("session", self.session_storage.get(PENDING_ORDER_KEY)),
        ):
            if not raw:
                continue
            try:
                return validate_order_id(raw)
            except InvalidOrderIdentifier:
                logger.warning("Ignoring malformed order id from %s: %r", source, raw)
        return None

    def _skip(self, reason: SkipReason) -> None:
        self.state = EmitterState.SKIPPED
        self.skip_reason = reason

    def _pending_details(self) -> dict:
        """ロック済み ID と同じ注文の保存内容。無い・壊れている・別注文なら空。"""
        raw = self.session_storage.get(PENDING_ORDER_DETAILS_KEY)
        if not raw:
            return {}
        try:
            details = json.loads(raw)
        except ValueError:
            logger.warning("Ignoring unreadable %s: %r", PENDING_ORDER_DETAILS_KEY, raw)
            return {}
        if not isinstance(details, dict) or details.get(ORDER_ID_PARAM) != self.locked_order_id:
            return {}
        return details

    def _build_event(self, query: Mapping[str, str]) -> Purchase | Lead | None:
        query = {**self._pending_details(), **{k: v for k, v in query.items() if v}}
        product = query.get("product") or DEFAULT_PRODUCT
        common = {
            "dedup_key": self.locked_order_id,
            "currency": self.currency,
            "content_name": content_descriptor(product, query.get("color", "")),
            "content_ids": [product],
        }
        if (query.get("type") or "buy") != "buy":
            return Lead(**common)

        value = parse_total(query.get("total"))
        if value is None:
            # 0 円の Purchase は広告最適化のシグナルを汚すので送らない
            logger.warning(
                "Purchase suppressed for %s: invalid total %r",
                self.locked_order_id, query.get("total"),
            )
            return None
        return Purchase(value=value, **common)

    def _fire(self, query: Mapping[str, str]) -> None:
        key = self.locked_order_id
        if self.ledger.has_fired(key):
            logger.info("Pixel event skipped, already fired for %s", key)
            self._skip(SkipReason.ALREADY_FIRED)
            return

        event = self._build_event(query)
        if event is None:
            self._skip(SkipReason.INVALID_VALUE)
            return

        if self.pixel is None:
            logger.info("Pixel not loaded, %s for %s not sent", event.kind, key)
            self._skip(SkipReason.CHANNEL_UNAVAILABLE)
            return
        try:
            self.pixel.track(*event.pixel_call())
        except ChannelUnavailable:
            logger.info("Pixel unavailable, %s for %s not sent", event.kind, key)
            self._skip(SkipReason.CHANNEL_UNAVAILABLE)
            return
        except Exception:
            logger.exception("Pixel call failed, %s for %s not sent", event.kind, key)
            self._skip(SkipReason.CHANNEL_UNAVAILABLE)
            return

        # 送信済み。以降 Ledger の書き込みに失敗しても FIRED のまま。
        self.state = EmitterState.FIRED
        logger.info("Pixel %s fired with eventID %s", event.kind, key)
        try:
            self.ledger.mark_fired(key)
        except Exception:
            logger.exception("Ledger write failed for %s; a reload may resend", key)
