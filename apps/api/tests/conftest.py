from collections.abc import Iterator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine

from lumen_api.config import get_settings
from lumen_api.db import get_engine, init_db
from lumen_api.main import app
from lumen_api.services.rag.store import SqlSourceStore


@pytest.fixture(autouse=True)
def reset_api_caches() -> Iterator[None]:
    get_settings.cache_clear()
    get_engine.cache_clear()
    yield
    get_settings.cache_clear()
    get_engine.cache_clear()


@pytest.fixture
def engine(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Iterator[Engine]:
    sqlite_db_path = tmp_path / "api-tests.db"
    monkeypatch.setenv("LUMEN_DATABASE_URL", f"sqlite+pysqlite:///{sqlite_db_path}")
    monkeypatch.setenv("LUMEN_DB_ECHO", "false")
    monkeypatch.setenv("RAG_EMBED_PROVIDER", "hash")

    engine = get_engine()
    init_db(engine)

    yield engine

    engine.dispose()


@pytest.fixture
def store(engine: Engine) -> SqlSourceStore:
    return SqlSourceStore(engine)


@pytest.fixture
def client(engine: Engine) -> Iterator[TestClient]:
    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
