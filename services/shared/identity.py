"""
Shared — 注文識別子 (OrderIdentifier) の契約

ブラウザの Pixel とサーバーの Conversions API は、同じ注文を
同じ文字列キー(dedup key / event ID)で送ることで 1 件のコンバージョンとして
扱われる。両者の間にそれ以外の連携は無い。

そのため識別子のフォーマットと発行処理はこのモジュールだけで定義し、
Order Service と Conversions Service の両方から import する。

    発行:   issue_order_id()      → "WEB1700000000123A1F09C"
    伝搬:   /order-success?order_id=<id>  (主)
            sessionStorage["pending_order_id"]  (副、type / total 等は
            sessionStorage["pending_order_details"] に JSON で保存)
    利用:   fbq(..., {eventID: <id>})  /  CAPI event_id: <id>
"""

import re
import secrets
import time
from typing import NewType

OrderIdentifier = NewType("OrderIdentifier", str)

ORDER_ID_PREFIX = "WEB"
ORDER_ID_PARAM = "order_id"
PENDING_ORDER_KEY = "pending_order_id"
PENDING_ORDER_DETAILS_KEY = "pending_order_details"
PIXEL_FIRED_KEY_FORMAT = "pixel_fired_{}"

_ORDER_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


class InvalidOrderIdentifier(ValueError):
    """識別子が空、またはフォーマット外"""


def validate_order_id(value: object) -> OrderIdentifier:
    """
    値をそのまま OrderIdentifier として受け入れる。

    前後の空白除去やプレフィックス付与などの変換は一切しない。
    変換すると Pixel 側と CAPI 側でキーが一致しなくなるため。
    """
    if not isinstance(value, str) or not _ORDER_ID_PATTERN.match(value):
        raise InvalidOrderIdentifier(f"invalid order identifier: {value!r}")
    return OrderIdentifier(value)


def issue_order_id(now: float | None = None) -> OrderIdentifier:
    """
    注文作成時に 1 度だけ呼ばれる識別子の発行。

    ミリ秒タイムスタンプだけでは同時刻の注文が衝突するので、
    secrets による 24bit のランダム部を後ろに付ける。
    """
    ts = time.time() if now is None else now
    millis = round(ts * 1000)
    return OrderIdentifier(f"{ORDER_ID_PREFIX}{millis:013d}{secrets.token_hex(3).upper()}")


def pixel_ledger_key(order_id: OrderIdentifier) -> str:
    """ブラウザ側 Ledger のキー (pixel_fired_<id>)"""
    return PIXEL_FIRED_KEY_FORMAT.format(order_id)
