import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy.exc import IntegrityError

from utils.exception_handler import setup_exception_handlers
from utils.exceptions import (
    ConcurrentModificationException,
    InvalidTransitionException,
    NotFoundException,
    ValidationException,
)


@pytest.fixture
def client():
    app = FastAPI()
    setup_exception_handlers(app)

    @app.get("/missing")
    async def missing():
        raise NotFoundException("Treatment TRT202601000001 not found", resource_id="TRT202601000001")

    @app.get("/invalid")
    async def invalid():
        raise ValidationException("Invalid treatment type 'whitening'", field="type")

    @app.get("/stale")
    async def stale():
        raise ConcurrentModificationException("TRT202601000001", 3)

    @app.get("/terminal")
    async def terminal():
        raise InvalidTransitionException("completed", "in_progress", resource_id="TRT202601000001")

    @app.get("/integrity")
    async def integrity():
        raise IntegrityError("INSERT INTO treatments", {}, Exception("duplicate key"))

    @app.get("/boom")
    async def boom():
        raise RuntimeError("boom")

    return TestClient(app, raise_server_exceptions=False)


def test_not_found_carries_identifier(client):
    response = client.get("/missing")
    assert response.status_code == 404
    body = response.json()
    assert body["kind"] == "not_found"
    assert body["id"] == "TRT202601000001"
    assert body["type"] == "NotFoundException"


def test_validation_names_field(client):
    response = client.get("/invalid")
    assert response.status_code == 422
    body = response.json()
    assert body["kind"] == "validation"
    assert body["field"] == "type"
    assert "retryable" not in body


def test_concurrent_modification_is_retryable_conflict(client):
    response = client.get("/stale")
    assert response.status_code == 409
    body = response.json()
    assert body["kind"] == "conflict"
    assert body["field"] == "metadata.version"
    assert body["retryable"] is True


def test_invalid_transition(client):
    response = client.get("/terminal")
    assert response.status_code == 409
    body = response.json()
    assert body["kind"] == "invalid_transition"
    assert body["field"] == "status"
    assert "completed" in body["message"]


def test_integrity_error_maps_to_conflict(client):
    response = client.get("/integrity")
    assert response.status_code == 409
    assert response.json()["type"] == "DatabaseError"


def test_unexpected_error_is_internal(client):
    response = client.get("/boom")
    assert response.status_code == 500
    assert response.json()["message"] == "Internal server error"
