"""Error envelope format and exception handler behaviour.

Every failure renders as::

    {
        "success": false,
        "message": "<human_readable>",
        "data": null,
        "error": {"code": "<stable_code>", "message": "...", "details": ...},
        "request_id": "<uuid>"
    }
"""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from pinguard.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from pinguard.api.routes import _http_error
from pinguard.api.schemas import Envelope, ErrorBody
from pinguard.service.errors import (
    IncorrectPinError,
    LockedError,
    NotConfiguredError,
    ServiceError,
)
from pinguard.storage.errors import ConstraintViolation


class TestErrorBody:
    def test_required_fields(self):
        error = ErrorBody(code="incorrect_pin", message="incorrect PIN")
        assert error.code == "incorrect_pin"
        assert error.details is None

    def test_unknown_code_rejected(self):
        with pytest.raises(PydanticValidationError):
            ErrorBody(code="made_up_code", message="nope")

    def test_envelope_has_request_id(self):
        first = Envelope(success=True)
        second = Envelope(success=True)
        assert first.request_id and second.request_id
        assert first.request_id != second.request_id


class TestStatusMapping:
    @pytest.mark.parametrize(
        "status,code",
        [(400, "validation_error"), (401, "unauthorized"), (404, "not_found"), (429, "rate_limited")],
    )
    def test_known_statuses(self, status, code):
        assert _STATUS_TO_CODE[status] == code
        assert _error_code_for_status(status) == code

    def test_unknown_status_is_server_error(self):
        assert _error_code_for_status(418) == "server_error"

    def test_error_response_shape(self):
        response = _error_response(423, "locked", {"attemptsLeft": 0}, code="pin_locked")
        assert response.status_code == 423
        body = response.body.decode()
        assert '"success":false' in body
        assert '"code":"pin_locked"' in body
        assert '"attemptsLeft":0' in body


class PinBody(BaseModel):
    pin: str


def _app() -> FastAPI:
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/incorrect")
    async def incorrect():
        raise IncorrectPinError("incorrect PIN; 3 attempts left", detail={"attemptsLeft": 3})

    @app.get("/locked")
    async def locked():
        raise LockedError("locked", detail={"lockedUntil": "2026-03-01T12:15:00+00:00", "attemptsLeft": 0})

    @app.get("/not-configured")
    async def not_configured():
        raise NotConfiguredError("PIN not configured")

    @app.get("/conflict")
    async def conflict():
        raise ConstraintViolation("email already exists", {"field": "email"})

    @app.get("/http")
    async def http():
        raise _http_error("rate_limited", "rate limit exceeded", 429, headers={"Retry-After": "7"})

    @app.get("/boom")
    async def boom():
        raise RuntimeError("secret internals")

    @app.post("/body")
    async def body(payload: PinBody):
        return {"ok": payload.pin}

    return app


@pytest.fixture
def client():
    return TestClient(_app(), raise_server_exceptions=False)


def test_service_error_envelope(client):
    resp = client.get("/incorrect")
    assert resp.status_code == 401
    body = resp.json()
    assert body["success"] is False
    assert body["data"] is None
    assert body["error"]["code"] == "incorrect_pin"
    assert body["error"]["details"] == {"attemptsLeft": 3}
    assert body["message"] == body["error"]["message"]
    assert body["request_id"]


def test_locked_is_423(client):
    resp = client.get("/locked")
    assert resp.status_code == 423
    assert resp.json()["error"]["code"] == "pin_locked"
    assert resp.json()["error"]["details"]["attemptsLeft"] == 0


def test_not_configured_is_404(client):
    resp = client.get("/not-configured")
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "pin_not_configured"


def test_constraint_violation_is_409(client):
    resp = client.get("/conflict")
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "conflict"


def test_http_exception_keeps_headers(client):
    resp = client.get("/http")
    assert resp.status_code == 429
    assert resp.headers["Retry-After"] == "7"
    assert resp.json()["error"]["code"] == "rate_limited"


def test_unhandled_exception_hides_details(client):
    resp = client.get("/boom")
    assert resp.status_code == 500
    body = resp.json()
    assert body["error"]["code"] == "server_error"
    assert "secret internals" not in resp.text


def test_body_validation_is_400_not_422(client):
    resp = client.post("/body", json={})
    assert resp.status_code == 400
    body = resp.json()
    assert body["error"]["code"] == "validation_error"
    assert body["error"]["details"]["errors"][0]["loc"] == ["body", "pin"]


def test_service_error_defaults():
    error = ServiceError("bad input")
    assert error.status_code == 400
    assert error.error_code == "validation_error"
    assert error.detail == {}
