from collections.abc import Iterator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from rura.config import get_settings
from rura.db import Base, get_engine
from rura.main import app


@pytest.fixture(autouse=True)
def reset_rura_caches() -> Iterator[None]:
    get_settings.cache_clear()
    get_engine.cache_clear()
    yield
    get_settings.cache_clear()
    get_engine.cache_clear()


@pytest.fixture
def client(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Iterator[TestClient]:
    sqlite_db_path = tmp_path / "api-tests.db"
    monkeypatch.setenv("API_DATABASE_URL", f"sqlite+pysqlite:///{sqlite_db_path}")
    monkeypatch.setenv("API_DB_ECHO", "false")
    monkeypatch.setenv("VECTOR_STORE_BACKEND", "sqlite")
    monkeypatch.setenv("VECTOR_STORE_PATH", str(tmp_path / "vectors.db"))

    engine = get_engine()
    Base.metadata.create_all(bind=engine)

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    engine.dispose()
