"""
Quoteboard Test Configuration

Every test gets its own SQLite file, upload directory and config singleton.
"""
from datetime import timedelta

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """Point config at per-test paths and reset module singletons."""
    import quoteboard.config as config_mod
    import quoteboard.db.connection as conn_mod
    from quoteboard.ratelimit import limiter

    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    monkeypatch.setenv("UPLOAD_DIR", str(tmp_path / "uploads"))
    monkeypatch.setenv("CONFIG_PATH", str(tmp_path / "absent.yml"))
    monkeypatch.setenv("CONFIG__AUTH__BCRYPT_ROUNDS", "4")
    monkeypatch.setenv("CONFIG__REMINDERS__ENABLED", "false")
    for name in ("SMTP_HOST", "ADMIN_PASSWORD", "JWT_SECRET", "FRONTEND_URL"):
        monkeypatch.delenv(name, raising=False)

    conn_mod._engine = None
    conn_mod._session_factory = None
    config_mod._config = None
    limiter.reset()
    yield tmp_path
    conn_mod._engine = None
    conn_mod._session_factory = None
    config_mod._config = None


@pytest_asyncio.fixture
async def fresh_db(isolated_env):
    """Create a fresh SQLite database for each test."""
    from quoteboard.db.connection import close_db, init_db

    await init_db()
    yield isolated_env / "test.db"
    await close_db()


@pytest_asyncio.fixture
async def store(fresh_db):
    from quoteboard.pipeline import PipelineStore

    return PipelineStore()


@pytest.fixture
def now():
    from quoteboard.db.models import utcnow

    return utcnow().replace(microsecond=0)


@pytest.fixture
def minute():
    return timedelta(minutes=1)


# =============================================================================
# HTTP
# =============================================================================

@pytest.fixture
def client(isolated_env):
    """Test client with the lifespan running (tables created, engine wired)."""
    from quoteboard.main import create_app

    with TestClient(create_app()) as c:
        yield c


@pytest.fixture
def auth_headers(client):
    resp = client.post(
        "/api/auth/register", json={"username": "tester", "password": "Secret123"}
    )
    assert resp.status_code == 201, resp.text
    return {"Authorization": f"Bearer {resp.json()['token']}"}
