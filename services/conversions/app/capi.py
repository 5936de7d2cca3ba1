"""
Conversions Service — Meta Conversions API クライアント

サーバー間 (server-to-server) でコンバージョンを送る。
送信は fire-and-forget: 失敗はログに残して False を返すだけで、
例外も同期リトライもしない。

Advanced Matching:
    電話番号・市区町村・国は SHA-256 でハッシュ化して送る。
    IP / User-Agent / fbp / fbc はそのまま送る。
    これらが揃うほど Event Match Quality が上がる。
"""

import hashlib
import logging
import re

import httpx

logger = logging.getLogger(__name__)

GRAPH_URL = "https://graph.facebook.com"
COUNTRY_CALLING_CODE = "977"


def hash_value(value: str) -> str:
    """小文字化・前後空白除去のあと SHA-256 (hex)。空なら空文字。"""
    normalized = str(value or "").strip().lower()
    if not normalized:
        return ""
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def normalize_phone(phone: str) -> str:
    """
    電話番号を国番号付きの数字列にする。

    "098-0123-4567" → "9779801234567"
    先頭の 0 を 1 つ落とし、10 桁で 977 が無ければ 977 を付ける。
    """
    digits = re.sub(r"\D", "", str(phone or ""))
    if digits.startswith("0"):
        digits = digits[1:]
    if len(digits) == 10 and not digits.startswith(COUNTRY_CALLING_CODE):
        digits = COUNTRY_CALLING_CODE + digits
    return digits


def build_user_data(
    phone: str = "",
    city: str = "",
    country: str = "np",
    client_ip: str = "",
    user_agent: str = "",
    fbp: str = "",
    fbc: str = "",
) -> dict:
    """CAPI の user_data を組み立てる。空の項目は含めない。"""
    user_data: dict = {}
    hashed = {
        "ph": hash_value(normalize_phone(phone)),
        "ct": hash_value(city),
        "country": hash_value(country),
    }
    for key, value in hashed.items():
        if value:
            user_data[key] = [value]
    raw = {
        "client_ip_address": client_ip,
        "client_user_agent": user_agent,
        "fbp": fbp,
        "fbc": fbc,
    }
    user_data.update({k: v for k, v in raw.items() if v})
    return user_data


class ConversionsApiClient:
    """Pixel ID ごとの /events エンドポイントへ POST する"""

    def __init__(
        self,
        pixel_id: str,
        access_token: str,
        api_version: str = "v20.0",
        test_event_code: str = "",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.pixel_id = pixel_id
        self.access_token = access_token
        self.api_version = api_version
        self.test_event_code = test_event_code
        self.timeout = timeout
        self.transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.pixel_id and self.access_token)

    @property
    def events_url(self) -> str:
        return f"{GRAPH_URL}/{self.api_version}/{self.pixel_id}/events"

    async def send(self, events: list[dict]) -> bool:
        """
        イベントを送る。成功 (2xx) なら True。

        未設定・HTTP エラー・ネットワークエラーはすべて False。
        """
        if not self.configured:
            logger.warning("Conversions API not configured; %d event(s) dropped", len(events))
            return False

        payload: dict = {"data": events}
        if self.test_event_code:
            payload["test_event_code"] = self.test_event_code

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                resp = await client.post(
                    self.events_url,
                    params={"access_token": self.access_token},
                    json=payload,
                )
                resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "Conversions API rejected %s: %s %s",
                [ev.get("event_id") for ev in events], e.response.status_code, e.response.text,
            )
            return False
        except httpx.HTTPError as e:
            logger.error(
                "Conversions API request failed for %s: %s",
                [ev.get("event_id") for ev in events], e,
            )
            return False

        logger.info("Conversions API accepted %s", resp.text)
        return True
