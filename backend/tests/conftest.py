from __future__ import annotations

from pathlib import Path
from typing import Iterator

import pytest
from fastapi.testclient import TestClient

from beacon.config import settings
from beacon.db import Store
from beacon.main import create_app


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path: Path) -> Iterator[None]:
    original = {
        "auth_enabled": settings.auth_enabled,
        "database_url": settings.database_url,
        "embedding_dim": settings.embedding_dim,
        "gate_recompute_timeout_seconds": settings.gate_recompute_timeout_seconds,
    }
    settings.auth_enabled = False
    settings.database_url = f"sqlite:///{tmp_path}/beacon.db"
    yield
    for key, value in original.items():
        setattr(settings, key, value)


@pytest.fixture()
def store() -> Store:
    scoped = Store(settings.database_url)
    scoped.init_schema()
    return scoped


@pytest.fixture()
def client() -> Iterator[TestClient]:
    with TestClient(create_app()) as scoped_client:
        yield scoped_client
