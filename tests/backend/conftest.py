from __future__ import annotations

from datetime import datetime

import pytest
from fastapi.testclient import TestClient

from backend.app.main import create_app
from backend.app.models import UserRecord
from backend.app.services.episodes import EpisodeManager
from backend.app.services.metrics import MetricsEngine
from backend.app.store import InMemoryStore

# 2025-06-15 10:00 UTC is 15:30 business time, inside the 2025-06-15 business day.
BASE = datetime(2025, 6, 15, 10, 0)


@pytest.fixture()
def client(monkeypatch: pytest.MonkeyPatch) -> TestClient:
    monkeypatch.setenv("PERSISTENCE_ENABLED", "false")
    monkeypatch.setenv("AUTH_ENABLED", "false")
    monkeypatch.setenv("WHATSAPP_WEBHOOK_SECRET", "")
    app = create_app()
    return TestClient(app)


@pytest.fixture()
def store() -> InMemoryStore:
    store = InMemoryStore()
    store.add_user(UserRecord(id="3", first_name="Asha", last_name="Rao", email="asha@example.com"))
    store.add_user(UserRecord(id="6", first_name="Vikram", last_name="Shetty"))
    store.add_user(UserRecord(id="8", email="support8@example.com"))
    return store


@pytest.fixture()
def episodes(store: InMemoryStore) -> EpisodeManager:
    return EpisodeManager(store)


@pytest.fixture()
def engine(store: InMemoryStore) -> MetricsEngine:
    return MetricsEngine(store)
