from __future__ import annotations

import itertools
from typing import Callable, Optional

import pytest
from fastapi.testclient import TestClient

from backend.app.main import create_app
from backend.app.models import EventLogRecord
from backend.app.store import LeadStore


@pytest.fixture()
def client(monkeypatch: pytest.MonkeyPatch) -> TestClient:
    monkeypatch.setenv("PERSISTENCE_ENABLED", "false")
    monkeypatch.setenv("AUTH_ENABLED", "false")
    monkeypatch.setenv("WHATSAPP_WEBHOOK_SECRET", "")
    monkeypatch.setenv("MESSAGING_PROVIDER", "stub")
    app = create_app()
    return TestClient(app)


@pytest.fixture()
def store(client: TestClient) -> LeadStore:
    return client.app.state.store


@pytest.fixture()
def ingest_lead(client: TestClient) -> Callable[..., str]:
    keys = itertools.count(1)

    def _ingest(
        workspace_id: str = "ws_1",
        *,
        phone: Optional[str] = "+40700000001",
        first_name: str = "Ana",
        **fields,
    ) -> str:
        payload = {"workspaceId": workspace_id, "firstName": first_name, **fields}
        if phone is not None:
            payload["phone"] = phone
        response = client.post(
            "/leads",
            json=payload,
            headers={"Idempotency-Key": f"fixture-key-{next(keys)}"},
        )
        assert response.status_code == 201, response.text
        return response.json()["leadId"]

    return _ingest


@pytest.fixture()
def events(store: LeadStore) -> Callable[..., list[EventLogRecord]]:
    def _events(lead_id: str, event_type: Optional[str] = None) -> list[EventLogRecord]:
        with store.transaction() as conn:
            return store.list_events(conn, lead_id, event_type=event_type)

    return _events
