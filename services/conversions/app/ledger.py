"""
Conversions Service — Dedup Ledger

「このチャネルでこの dedup key のイベントを既に送ったか?」に答え、
送信済みを記録する。

チャネルごとに独立した名前空間を持つ:

    pixel  ブラウザの sessionStorage (pixel_fired_<id> = "true")
    capi   サーバーの sent_conversion_events テーブル

2 つの Ledger は互いを参照しない。チャネル間の重複は広告プラットフォームが
同じ event_id を 1 件にまとめることで解消される。
Ledger はベストエフォートの重複ガードであり、ロックではない。
"""

import logging
from collections.abc import MutableMapping
from datetime import datetime, timezone
from typing import Protocol

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from services.shared.identity import PIXEL_FIRED_KEY_FORMAT

logger = logging.getLogger(__name__)

FIRED = "true"


class DedupLedger(Protocol):
    """
    ブラウザ (pixel) チャネルの同期 Ledger。ConversionEmitter が使う。

    サーバー側の SqlDedupLedger は async で event_name も取るので、この型ではない。
    """

    def has_fired(self, key: str) -> bool: ...

    def mark_fired(self, key: str) -> None: ...


class KeyValueLedger:
    """
    キーバリューストア上の Ledger (ブラウザの sessionStorage 相当)。

    mark_fired は単純な key-set なので何度呼んでも安全。
    """

    def __init__(
        self,
        storage: MutableMapping[str, str],
        key_format: str = PIXEL_FIRED_KEY_FORMAT,
    ) -> None:
        self.storage = storage
        self.key_format = key_format

    def has_fired(self, key: str) -> bool:
        return self.storage.get(self.key_format.format(key)) == FIRED

    def mark_fired(self, key: str) -> None:
        self.storage[self.key_format.format(key)] = FIRED


class SqlDedupLedger:
    """
    DB 上の Ledger。冪等性キーは (channel, dedup_key, event_name)。

    同じ注文でも Purchase と Refund は別のキーになる。
    """

    def __init__(self, session: AsyncSession, channel: str = "capi") -> None:
        self.session = session
        self.channel = channel

    async def has_fired(self, key: str, event_name: str) -> bool:
        result = await self.session.execute(
            text("""
                SELECT 1 FROM sent_conversion_events
                WHERE channel = :channel AND dedup_key = :key AND event_name = :event_name
            """),
            {"channel": self.channel, "key": key, "event_name": event_name},
        )
        return result.first() is not None

    async def mark_fired(self, key: str, event_name: str, value: float | None = None) -> bool:
        """
        送信済みを記録してコミットする。
        新規に記録した場合 True、既に記録があった場合 False。
        """
        result = await self.session.execute(
            text("""
                INSERT INTO sent_conversion_events
                    (channel, dedup_key, event_name, value, sent_at)
                VALUES
                    (:channel, :key, :event_name, :value, :now)
                ON CONFLICT (channel, dedup_key, event_name) DO NOTHING
            """),
            {
                "channel": self.channel,
                "key": key,
                "event_name": event_name,
                "value": value,
                "now": datetime.now(timezone.utc).isoformat(),
            },
        )
        await self.session.commit()
        inserted = result.rowcount == 1
        if not inserted:
            logger.info("Ledger entry already present: %s/%s/%s", self.channel, key, event_name)
        return inserted
