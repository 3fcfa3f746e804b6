from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from conftest import FakeChannel, FakeGenerator, FixedOracle
from wellness_agent.app import app, build_services, get_services
from wellness_agent.errors import AuthenticationError


@pytest.fixture
def make_client(settings):
    """Factory: TestClient wired to services built with fakes."""

    def _make(generator: FakeGenerator):
        services = build_services(settings, generator=generator, channel=FakeChannel(), oracle=FixedOracle(False))
        app.dependency_overrides[get_services] = lambda: services
        return TestClient(app), services

    yield _make
    app.dependency_overrides.clear()


def test_chat_returns_reply_and_state(make_client):
    reply = "Untuk diabetes yang kambuh saya rekomendasikan mGANIK METAFIBER Kak"
    client, _ = make_client(FakeGenerator([reply]))

    response = client.post("/api/chat", json={"customer_id": "6281234567890", "message": "Diabetes saya kambuh"})

    assert response.status_code == 200
    body = response.json()
    assert body == {"reply": reply, "state": "health_inquiry", "escalated": False}


def test_blank_message_is_rejected(make_client):
    client, _ = make_client(FakeGenerator())
    response = client.post("/api/chat", json={"customer_id": "cust-1", "message": "   "})
    assert response.status_code == 422


def test_auth_failure_is_hidden_from_customer(make_client):
    client, _ = make_client(FakeGenerator(error=AuthenticationError("API key not valid")))
    response = client.post("/api/chat", json={"customer_id": "cust-1", "message": "halo"})
    assert response.status_code == 503
    assert "API key" not in response.text


def test_escalation_listing_and_resolution(make_client):
    client, services = make_client(FakeGenerator(["Metafiber tersedia rasa jeruk yuzu Kak"]))

    chat = client.post("/api/chat", json={"customer_id": "cust-1", "message": "superfood rasa apa aja?"})
    assert chat.json()["escalated"] is True

    pending = client.get("/api/escalations", params={"status": "pending"}).json()
    assert len(pending) == 1
    escalation_id = pending[0]["record"]["id"]

    resolved = client.post(f"/api/escalations/{escalation_id}/resolve", json={"notes": "sudah dibalas"})
    assert resolved.json() == {"id": escalation_id, "status": "resolved"}
    assert services.queue.status_counts()["resolved"] == 1

    assert client.post("/api/escalations/unknown/resolve", json={}).status_code == 404
    assert client.get("/api/escalations", params={"status": "lost"}).status_code == 400


def test_drain_outside_hours_is_skipped(make_client):
    client, _ = make_client(FakeGenerator())
    response = client.post("/api/escalations/drain")
    assert response.json() == {"delivered": 0, "failed": 0, "skipped_closed": True}


def test_reset_conversation(make_client):
    client, _ = make_client(FakeGenerator(["Halo Kak, ada yang bisa dibantu?"]))
    client.post("/api/chat", json={"customer_id": "cust-1", "message": "halo"})

    assert client.delete("/api/conversations/cust-1").json() == {"customer_id": "cust-1", "reset": True}
    assert client.delete("/api/conversations/cust-1").json()["reset"] is False


def test_health_reports_hours_and_queue(make_client):
    client, _ = make_client(FakeGenerator())
    body = client.get("/api/health").json()
    assert body["status"] == "ok"
    assert body["business_hours"]["is_open"] is False
    assert body["business_hours"]["next_open_time"] == "besok pukul 09:00 WIB"
    assert body["escalations"] == {"pending": 0, "sent": 0, "resolved": 0}
