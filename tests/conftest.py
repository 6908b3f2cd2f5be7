import json
import os
import tempfile

# must be set before pivogram.config is imported anywhere
_TMP = tempfile.mkdtemp(prefix="pivogram-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_TMP}/app.db")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret")
os.environ.setdefault("ADMIN_USERNAMES", "admin")

import pytest

from pivogram.config import Settings
from pivogram.db import init_db, make_engine, make_sessionmaker
from pivogram.service import ChatService
from pivogram.sessions import Identity


class FakeWebSocket:
    """Records every frame the hub sends."""

    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.closed = False

    async def send_text(self, text: str) -> None:
        if self.closed:
            raise RuntimeError("socket closed")
        self.sent.append(json.loads(text))

    def events(self, name: str) -> list:
        return [frame["data"] for frame in self.sent if frame["event"] == name]

    def names(self) -> list[str]:
        return [frame["event"] for frame in self.sent]

    def reset(self) -> None:
        self.sent.clear()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path}/chat.db",
        presence_grace_seconds=0.05,
        call_record_ttl_seconds=60.0,
        max_history=500,
    )


@pytest.fixture
async def engine(settings):
    eng = make_engine(settings.database_url)
    await init_db(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return make_sessionmaker(engine)


@pytest.fixture
async def service(settings, session_factory):
    svc = ChatService(settings, session_factory)
    await svc.start()
    yield svc
    await svc.stop()


@pytest.fixture
def join_user(service):
    """Connects a user and sends `user-join`; returns (conn_id, socket)."""
    async def _join(username: str, role: str = "user", invite: str | None = None):
        ws = FakeWebSocket()
        conn_id = await service.connect(ws, Identity(username=username, role=role), invite=invite)
        await service.handle(conn_id, "user-join", {"username": username})
        return conn_id, ws
    return _join
