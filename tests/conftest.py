import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("BOT_TOKEN", "")
os.environ.setdefault("LOG_FILE", "logs/test-gateway.log")

from datetime import UTC, datetime, timedelta

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from app.database.crud.device import ensure_device_tables
from app.utils.outcome import Outcome


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeWallClock:
    def __init__(self, start: datetime = datetime(2026, 10, 1, 12, 0, tzinfo=UTC)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now += delta


class RecordingNotifier:
    def __init__(self):
        self.calls = []

    async def notify_new_device(self, subscriber_ref, device):
        self.calls.append((subscriber_ref, device))
        return Outcome.ok(True)

    async def close(self) -> None:
        return None


class FakeControlPlane:
    """aiohttp app standing in for the panel's /sub endpoints."""

    def __init__(self):
        self.requests = []
        self.status = 200
        self.body = b"vless://uuid@nl.example.com:443?security=reality#nl-ams-1%20(VLESS)\n"
        self.headers = {
            "Content-Type": "text/plain; charset=utf-8",
            "subscription-userinfo": "upload=0; download=1024; total=10737418240; expire=1799999999",
            "profile-update-interval": "6",
            "Server": "panel",
            "Access-Control-Allow-Origin": "*",
        }

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/sub/{token}", self._handle_plain)
        app.router.add_get("/sub/{token}/info", self._handle_info)
        return app

    async def _handle_plain(self, request: web.Request) -> web.Response:
        self.requests.append(request)
        return web.Response(status=self.status, body=self.body, headers=self.headers)

    async def _handle_info(self, request: web.Request) -> web.Response:
        self.requests.append(request)
        return web.json_response({"username": "tg_978855516", "status": "active"})


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def wall_clock() -> FakeWallClock:
    return FakeWallClock()


@pytest.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'devices.db'}",
        connect_args={"timeout": 30},
    )
    factory = async_sessionmaker(engine, expire_on_commit=False)
    async with factory() as db:
        await ensure_device_tables(db)
    yield factory
    await engine.dispose()


@pytest.fixture
async def control_plane():
    plane = FakeControlPlane()
    server = TestServer(plane.build_app())
    await server.start_server()
    plane.base_url = str(server.make_url("")).rstrip("/")
    yield plane
    await server.close()
