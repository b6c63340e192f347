import asyncio
import logging
import uuid

import pytest
from fastapi.testclient import TestClient

from app.main import app
from app.routers.otp import cancel_on_disconnect, get_otp_service, get_request_context
from app.services.context import RequestContext
from app.services.errors import CodeGenerationError, OperationCancelled, OtpError
from app.services.otp import OtpService
from conftest import ScriptedGenerator


class BrokenGenerator:
    def generate(self, ctx=None):
        raise CodeGenerationError("no entropy")


@pytest.fixture
def service(memory_store, clock):
    return OtpService(memory_store, ScriptedGenerator("654321", "111111"), clock=clock)


@pytest.fixture
def client(service):
    app.dependency_overrides[get_otp_service] = lambda: service
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_health(client):
    response = client.get("/api/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_request_and_validate_flow(client):
    response = client.post("/api/v1/otp/request", json={"user_id": "alice"})
    assert response.status_code == 200
    assert response.json() == {"user_id": "alice", "otp": "654321"}

    response = client.post(
        "/api/v1/otp/validate", json={"user_id": "alice", "otp": "654321"}
    )
    assert response.status_code == 200
    assert response.json() == {
        "user_id": "alice",
        "message": "OTP Validated successfully",
    }

    response = client.post(
        "/api/v1/otp/validate", json={"user_id": "alice", "otp": "654321"}
    )
    assert response.status_code == 400
    assert response.json()["error"] == "otp_used"


def test_unknown_code_maps_to_404(client):
    response = client.post(
        "/api/v1/otp/validate", json={"user_id": "alice", "otp": "000000"}
    )

    assert response.status_code == 404
    assert response.json() == {
        "error": "otp_not_found",
        "error_description": "OTP Not Found",
    }


def test_rate_limit_maps_to_400(client):
    client.post("/api/v1/otp/request", json={"user_id": "alice"})

    response = client.post("/api/v1/otp/request", json={"user_id": "alice"})

    assert response.status_code == 400
    assert response.json()["error"] == "otp_rate_limit_exceeded"


def test_expired_maps_to_400(client, clock):
    client.post("/api/v1/otp/request", json={"user_id": "alice"})
    clock.advance(minutes=3)

    response = client.post(
        "/api/v1/otp/validate", json={"user_id": "alice", "otp": "654321"}
    )

    assert response.status_code == 400
    assert response.json()["error"] == "otp_expired"


@pytest.mark.parametrize(
    "path,body",
    [
        ("/api/v1/otp/request", {}),
        ("/api/v1/otp/request", {"user_id": ""}),
        ("/api/v1/otp/validate", {"user_id": "alice"}),
        ("/api/v1/otp/validate", {"user_id": "alice", "otp": "12345"}),
        ("/api/v1/otp/validate", {"user_id": "alice", "otp": "12a456"}),
        ("/api/v1/otp/validate", {"user_id": "alice", "otp": "١٢٣٤٥٦"}),
    ],
)
def test_malformed_body_is_invalid_request(client, path, body):
    response = client.post(path, json=body)

    assert response.status_code == 400
    assert response.json()["error"] == "invalid_request"


def test_internal_failure_does_not_leak_details(memory_store, clock):
    service = OtpService(memory_store, BrokenGenerator(), clock=clock)
    app.dependency_overrides[get_otp_service] = lambda: service
    try:
        client = TestClient(app, raise_server_exceptions=False)
        response = client.post("/api/v1/otp/request", json={"user_id": "alice"})
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 500
    assert response.json() == {
        "error": "INTERNAL_SERVER_ERROR",
        "error_description": "Something went wrong! Please try again later",
    }
    assert "entropy" not in response.text


def test_metrics_are_exposed(client):
    client.get("/api/health")

    response = client.get("/metrics")

    assert response.status_code == 200
    assert "http_requests_total" in response.text
    assert 'handler="/api/health"' in response.text


def test_request_id_is_generated(client):
    response = client.get("/api/health")

    assert len(response.headers["X-Request-ID"]) == 32


def test_incoming_request_id_is_echoed(client):
    request_id = uuid.uuid4().hex

    response = client.get("/api/health", headers={"X-Request-ID": request_id})

    assert response.headers["X-Request-ID"] == request_id


def test_each_request_is_access_logged(client, caplog):
    caplog.set_level(logging.INFO, logger="app.access")

    client.post("/api/v1/otp/request", json={"user_id": "alice"})

    messages = [record.getMessage() for record in caplog.records if record.name == "app.access"]
    assert any(message.startswith("POST /api/v1/otp/request 200 ") for message in messages)


def test_cancelled_request_context_aborts_store_calls(memory_store, clock):
    service = OtpService(memory_store, ScriptedGenerator("654321"), clock=clock)
    ctx = RequestContext()
    ctx.cancel()
    app.dependency_overrides[get_otp_service] = lambda: service
    app.dependency_overrides[get_request_context] = lambda: ctx
    try:
        client = TestClient(app, raise_server_exceptions=False)
        response = client.post("/api/v1/otp/request", json={"user_id": "alice"})
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 500
    with pytest.raises(OtpError):
        memory_store.get_last_by_user("alice")


class FakeRequest:
    method = "POST"

    class url:
        path = "/api/v1/otp/validate"

    def __init__(self, disconnect_after):
        self.polls = 0
        self.disconnect_after = disconnect_after

    async def is_disconnected(self):
        self.polls += 1
        return self.polls >= self.disconnect_after


def test_client_disconnect_cancels_context():
    ctx = RequestContext()
    request = FakeRequest(disconnect_after=3)

    asyncio.run(asyncio.wait_for(cancel_on_disconnect(request, ctx), timeout=5))

    assert ctx.cancelled
    assert request.polls == 3
    with pytest.raises(OperationCancelled):
        ctx.check()


def test_connected_client_keeps_context_alive():
    ctx = RequestContext()
    request = FakeRequest(disconnect_after=10**6)

    async def watch_briefly():
        watcher = asyncio.create_task(cancel_on_disconnect(request, ctx))
        await asyncio.sleep(0.2)
        watcher.cancel()

    asyncio.run(watch_briefly())

    assert not ctx.cancelled
    assert request.polls >= 2
