"""
API tests for the FastAPI application

Module-level services in bioauth.main are swapped for instances wired to a
fake provider and a controllable clock.
"""
import time

import pytest
from fastapi.testclient import TestClient

from bioauth import main
from bioauth.errors import ProviderRejected, ProviderUnavailable
from bioauth.services.operation_registry import InMemoryOperationRegistry
from bioauth.services.proof_validator import ProofValidator
from bioauth.services.session_orchestrator import SessionOrchestrator
from bioauth.services.token_issuer import TokenIssuer

from conftest import TEST_SECRET, FakeGateway, good_proof


@pytest.fixture
def gateway(clock):
    return FakeGateway(clock)


@pytest.fixture
def token_issuer(clock):
    return TokenIssuer(secret=TEST_SECRET, clock=clock)


@pytest.fixture
def registry(clock):
    return InMemoryOperationRegistry(clock=clock)


@pytest.fixture
def client(monkeypatch, clock, directory, gateway, registry, token_issuer):
    orchestrator = SessionOrchestrator(
        gateway=gateway,
        registry=registry,
        validator=ProofValidator(),
        token_issuer=token_issuer,
        directory=directory,
        operation_ttl=300,
        clock=clock,
    )
    monkeypatch.setattr(main, "identity_directory", directory)
    monkeypatch.setattr(main, "operation_registry", registry)
    monkeypatch.setattr(main, "token_issuer", token_issuer)
    monkeypatch.setattr(main, "session_orchestrator", orchestrator)
    monkeypatch.setattr(main, "provider_gateway", gateway)
    main.limiter.reset()
    return TestClient(main.app)


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


def initiate(client, identity_ref="user-1", purpose="authentication"):
    response = client.post("/auth/biometric/initiate", json={"identityRef": identity_ref, "purpose": purpose})
    assert response.status_code == 200
    return response.json()["operationId"]


# ==========================================
#  SERVICE
# ==========================================


def test_root(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.json()["status"] == "running"


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["services"]["pending_operations"] == 0


# ==========================================
#  INITIATE
# ==========================================


def test_initiate(client):
    response = client.post("/auth/biometric/initiate", json={"identityRef": "alice@example.com"})

    assert response.status_code == 200
    body = response.json()
    assert body["operationId"] == "op-1"
    assert body["purpose"] == "authentication"
    assert body["providerHandoffUrl"] == "https://capture.test/?id=op-1"
    assert body["qrPayload"] == "op-1"
    assert body["expiresAt"].startswith("2023-11-14T")
    assert body["pollIntervalSeconds"] == main.settings.poll_interval_seconds
    assert body["maxWaitSeconds"] == main.settings.max_poll_wait_seconds


def test_initiate_unknown_identity(client):
    response = client.post("/auth/biometric/initiate", json={"identityRef": "ghost@example.com"})

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "IDENTITY_NOT_FOUND"


def test_initiate_not_enrolled(client):
    response = client.post("/auth/biometric/initiate", json={"identityRef": "user-2"})

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "NOT_ENROLLED"


def test_initiate_inactive(client, directory):
    directory.deactivate("user-1")

    response = client.post("/auth/biometric/initiate", json={"identityRef": "user-1"})

    assert response.status_code == 403
    assert response.json()["error"]["code"] == "IDENTITY_INACTIVE"


def test_initiate_enrollment(client):
    assert initiate(client, "user-2", "enrollment") == "op-1"


def test_initiate_invalid_purpose(client):
    response = client.post("/auth/biometric/initiate", json={"identityRef": "user-1", "purpose": "payment"})

    assert response.status_code == 422
    error = response.json()["error"]
    assert error["code"] == "VALIDATION_ERROR"
    assert error["category"] == "validation"
    assert error["recoverable"] is False
    assert "purpose" in error["message"]


def test_initiate_missing_identity_ref(client):
    response = client.post("/auth/biometric/initiate", json={"purpose": "authentication"})

    assert response.status_code == 422
    error = response.json()["error"]
    assert error["code"] == "VALIDATION_ERROR"
    assert "identityRef" in error["message"]
    assert "detail" not in response.json()


def test_initiate_malformed_json(client):
    response = client.post(
        "/auth/biometric/initiate",
        content=b"{not json",
        headers={"Content-Type": "application/json"},
    )

    assert response.status_code == 422
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


def test_initiate_rate_limited(client, monkeypatch):
    monkeypatch.setattr(main.settings, "auth_rate_limit", "2/minute")

    operation_id = initiate(client)
    assert client.get(f"/auth/biometric/poll/{operation_id}").status_code == 200

    response = client.post("/auth/biometric/initiate", json={"identityRef": "user-1"})

    assert response.status_code == 429
    error = response.json()["error"]
    assert error["code"] == "AUTH_RATE_LIMIT_EXCEEDED"
    assert error["category"] == "rate_limit"
    assert error["recoverable"] is True
    assert client.get("/health").status_code == 200


def test_initiate_provider_rejected(client, gateway):
    def reject(*args, **kwargs):
        raise ProviderRejected("Identity provider rejected the request")
    gateway.create_operation = reject

    response = client.post("/auth/biometric/initiate", json={"identityRef": "user-1"})

    assert response.status_code == 409
    assert response.json()["error"]["code"] == "PROVIDER_REJECTED"


def test_initiate_provider_unavailable(client, gateway):
    def unavailable(*args, **kwargs):
        raise ProviderUnavailable("Identity provider is unavailable")
    gateway.create_operation = unavailable

    response = client.post("/auth/biometric/initiate", json={"identityRef": "user-1"})

    assert response.status_code == 503
    error = response.json()["error"]
    assert error["code"] == "PROVIDER_UNAVAILABLE"
    assert error["recoverable"] is True


# ==========================================
#  POLL
# ==========================================


def test_poll_pending(client):
    operation_id = initiate(client)

    response = client.get(f"/auth/biometric/poll/{operation_id}")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "pending"
    assert "accessToken" not in body
    assert "reasons" not in body


def test_poll_completed_then_consumed(client, gateway, token_issuer):
    operation_id = initiate(client)
    gateway.succeed(operation_id)

    completed = client.get(f"/auth/biometric/poll/{operation_id}").json()
    again = client.get(f"/auth/biometric/poll/{operation_id}").json()

    assert completed["status"] == "completed"
    assert completed["code"] == "AUTHENTICATED"
    assert completed["tokenType"] == "Bearer"
    assert completed["expiresIn"] == 3600
    assert completed["user"]["id"] == "user-1"
    assert token_issuer.verify(completed["accessToken"]).subject_id == "user-1"
    assert again["status"] == "consumed"
    assert "accessToken" not in again


def test_poll_rejected(client, gateway):
    operation_id = initiate(client)
    gateway.succeed(operation_id, proof=good_proof(is_live=False))

    body = client.get(f"/auth/biometric/poll/{operation_id}").json()

    assert body["status"] == "rejected"
    assert body["reasons"] == ["Liveness check failed"]
    assert "accessToken" not in body


def test_poll_manual_review(client, gateway):
    operation_id = initiate(client)
    gateway.succeed(operation_id, proof=good_proof(confidence_score=0.5))

    body = client.get(f"/auth/biometric/poll/{operation_id}").json()

    assert body["status"] == "manual_review"
    assert body["reasons"] == ["Low confidence score: 0.50"]


def test_poll_expired(client, clock):
    operation_id = initiate(client)
    clock.advance(301)

    body = client.get(f"/auth/biometric/poll/{operation_id}").json()

    assert body["status"] == "expired"


def test_poll_provider_unavailable(client, gateway):
    operation_id = initiate(client)
    gateway.statuses[operation_id] = ProviderUnavailable("Identity provider timed out")

    response = client.get(f"/auth/biometric/poll/{operation_id}")

    assert response.status_code == 503
    assert response.json()["error"]["code"] == "PROVIDER_UNAVAILABLE"


# ==========================================
#  SESSION
# ==========================================


def login(client, gateway):
    operation_id = initiate(client)
    gateway.succeed(operation_id)
    return client.get(f"/auth/biometric/poll/{operation_id}").json()


def test_me(client, gateway):
    session = login(client, gateway)

    response = client.get("/auth/me", headers=bearer(session["accessToken"]))

    assert response.status_code == 200
    user = response.json()["user"]
    assert user["email"] == "alice@example.com"
    assert user["biometricEnrolled"] is True
    assert user["lastLoginAt"] is not None


def test_me_without_token(client):
    response = client.get("/auth/me")

    assert response.status_code == 401
    assert response.json()["error"]["code"] == "MISSING_AUTH_TOKEN"


def test_me_with_refresh_token(client, gateway):
    session = login(client, gateway)

    response = client.get("/auth/me", headers=bearer(session["refreshToken"]))

    assert response.status_code == 401
    assert response.json()["error"]["code"] == "INVALID_TOKEN"


def test_me_with_expired_token(client, gateway, clock):
    session = login(client, gateway)
    clock.advance(3601)

    response = client.get("/auth/me", headers=bearer(session["accessToken"]))

    assert response.status_code == 401
    assert response.json()["error"]["code"] == "TOKEN_EXPIRED"


def test_access_log(client, gateway):
    session = login(client, gateway)

    response = client.get("/auth/me/access-log", headers=bearer(session["accessToken"]))

    assert response.status_code == 200
    events = [entry["event"] for entry in response.json()["entries"]]
    assert events == ["biometric_authentication_completed", "biometric_authentication_initiated"]


def test_refresh(client, gateway, clock):
    session = login(client, gateway)
    clock.advance(60)

    response = client.post("/auth/refresh", json={"refreshToken": session["refreshToken"]})

    assert response.status_code == 200
    body = response.json()
    assert body["accessToken"] != session["accessToken"]
    assert client.get("/auth/me", headers=bearer(body["accessToken"])).status_code == 200


def test_refresh_with_garbage(client):
    response = client.post("/auth/refresh", json={"refreshToken": "garbage"})

    assert response.status_code == 401


# ==========================================
#  ENROLLMENT MANAGEMENT
# ==========================================


def test_enrollment_status(client, gateway):
    session = login(client, gateway)

    response = client.get("/auth/biometric/enrollment/status", headers=bearer(session["accessToken"]))

    assert response.status_code == 200
    assert response.json()["enrollment"] == {"identityId": "user-1", "enrolled": True, "isActive": True}


def test_enrollment_status_without_token(client):
    response = client.get("/auth/biometric/enrollment/status")

    assert response.status_code == 401
    assert response.json()["error"]["code"] == "MISSING_AUTH_TOKEN"


def test_re_enroll(client, gateway):
    session = login(client, gateway)
    headers = bearer(session["accessToken"])

    response = client.post("/auth/biometric/re-enroll", headers=headers)

    assert response.status_code == 200
    body = response.json()
    assert body["message"] == "Biometric re-enrollment initiated"
    assert body["purpose"] == "enrollment"
    assert body["operationId"] == "op-2"
    assert client.get("/auth/me", headers=headers).json()["user"]["biometricEnrolled"] is False

    refused = client.post("/auth/biometric/initiate", json={"identityRef": "user-1"})
    assert refused.status_code == 400
    assert refused.json()["error"]["code"] == "NOT_ENROLLED"

    gateway.succeed("op-2")
    assert client.get("/auth/biometric/poll/op-2").json()["status"] == "completed"
    assert client.get("/auth/me", headers=headers).json()["user"]["biometricEnrolled"] is True


def test_re_enroll_provider_unavailable_keeps_enrollment(client, gateway):
    session = login(client, gateway)

    def unavailable(*args, **kwargs):
        raise ProviderUnavailable("Identity provider is unavailable")
    gateway.create_operation = unavailable

    response = client.post("/auth/biometric/re-enroll", headers=bearer(session["accessToken"]))

    assert response.status_code == 503
    status = client.get("/auth/biometric/enrollment/status", headers=bearer(session["accessToken"]))
    assert status.json()["enrollment"]["enrolled"] is True


def test_delete_biometric_data(client, gateway):
    session = login(client, gateway)
    headers = bearer(session["accessToken"])

    response = client.delete("/auth/biometric/data", headers=headers)

    assert response.status_code == 200
    assert response.json()["message"] == "Biometric data deleted successfully"
    assert response.json()["enrollment"]["enrolled"] is False

    again = client.delete("/auth/biometric/data", headers=headers)
    assert again.status_code == 400
    assert again.json()["error"]["code"] == "NO_ENROLLMENT"

    events = [entry["event"] for entry in client.get("/auth/me/access-log", headers=headers).json()["entries"]]
    assert events[0] == "biometric_data_deleted"


# ==========================================
#  TOKEN VALIDATION
# ==========================================


def test_validate_token(client, gateway):
    session = login(client, gateway)

    response = client.post("/api/token/validate", json={"token": session["accessToken"]})

    assert response.status_code == 200
    assert response.json()["valid"] is True
    assert response.json()["subject_id"] == "user-1"


def test_validate_invalid_token(client):
    response = client.post("/api/token/validate", json={"token": "garbage"})

    assert response.status_code == 401
    assert response.json()["valid"] is False


def test_validate_missing_token(client):
    response = client.post("/api/token/validate", json={})

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "MISSING_TOKEN"


# ==========================================
#  LIFECYCLE
# ==========================================


def test_sweep_task_evicts_expired_operations(client, monkeypatch, clock, registry):
    monkeypatch.setattr(main.settings, "sweep_interval_seconds", 0.01)
    monkeypatch.setattr(main, "_sweep_task", None)

    with TestClient(main.app) as running:
        initiate(running)
        initiate(running)
        assert len(registry) == 2

        clock.advance(301)
        for _ in range(500):
            if len(registry) == 0:
                break
            time.sleep(0.01)

        assert len(registry) == 0
        assert main._sweep_task_running is True

    assert main._sweep_task_running is False
    assert main._sweep_task.cancelled()


def test_run_serves_app_with_configured_address(monkeypatch):
    calls = []
    monkeypatch.setattr(main.uvicorn, "run", lambda app, **kwargs: calls.append((app, kwargs)))
    monkeypatch.setattr(main.settings, "port", 9100)

    main.run()

    assert calls == [(main.app, {"host": main.settings.host, "port": 9100, "log_level": main.settings.log_level.lower()})]
