import os
import tempfile

# サービスの main モジュールは import 時に環境変数を読むので、先に設定しておく
_TMP_DIR = tempfile.mkdtemp(prefix="seetara-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_TMP_DIR}/api.db")
os.environ["SUBSCRIBE_ORDER_EVENTS"] = "false"
os.environ["META_PIXEL_ID"] = ""
os.environ["META_ACCESS_TOKEN"] = ""

import json  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from redis.exceptions import ConnectionError as RedisConnectionError  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from services.conversions.app import schema as conversions_schema  # noqa: E402
from services.conversions.app.capi import ConversionsApiClient  # noqa: E402
from services.order.app import schema as order_schema  # noqa: E402


class FakeRedis:
    """publish() を記録するだけの Redis"""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.published: list[tuple[str, dict]] = []
        self.closed = False

    async def publish(self, channel: str, message: str) -> int:
        if self.fail:
            raise RedisConnectionError("redis is down")
        self.published.append((channel, json.loads(message)))
        return 1

    async def aclose(self) -> None:
        self.closed = True


class RecordingPixel:
    """fbq('track', ...) の呼び出しを記録する"""

    def __init__(self):
        self.calls: list[tuple[str, dict, dict]] = []

    def track(self, event_kind: str, params: dict, options: dict) -> None:
        self.calls.append((event_kind, params, options))


class FakeCapi:
    """Conversions API のモック。受け取った data[] を記録する"""

    def __init__(self, status_code: int = 200):
        self.status_code = status_code
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json={"events_received": 1})

    @property
    def events(self) -> list[dict]:
        return [e for r in self.requests for e in json.loads(r.content)["data"]]

    def client(self, **kwargs) -> ConversionsApiClient:
        return ConversionsApiClient(
            "PIXEL123",
            "TOKEN",
            transport=httpx.MockTransport(self.handler),
            **kwargs,
        )


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def failing_redis():
    return FakeRedis(fail=True)


@pytest.fixture
def pixel():
    return RecordingPixel()


@pytest.fixture
def fake_capi():
    return FakeCapi()


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/test.db")
    await order_schema.create_tables(engine)
    await conversions_schema.create_tables(engine)
    yield sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as s:
        yield s
