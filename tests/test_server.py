"""Tests for the relay HTTP API."""

import warnings
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from crdtrelay.clock import Timestamp, to_string
from crdtrelay.config import Config
from crdtrelay.exceptions import StorageError
from crdtrelay.server import create_app
from crdtrelay.sync import MessageLog

BASE = 1714564800000


def wire(offset_ms: int, replica: str, value="v") -> dict:
    return {
        "timestamp": to_string(Timestamp(BASE + offset_ms, 0, replica)),
        "dataset": "todos",
        "row": "r1",
        "column": "title",
        "value": value,
    }


@pytest.fixture
def log():
    """Create an in-memory message log."""
    log = MessageLog(":memory:")
    log.connect()
    yield log
    log.close()


@pytest.fixture
def config():
    return Config()


@pytest.fixture
def app(config, log):
    """Create test app."""
    return create_app(config, log=log)


@pytest.fixture
def client(app):
    """Create test client."""
    return TestClient(app)


class TestPing:
    """Tests for the liveness endpoint."""

    def test_ping(self, client):
        """Test /ping answers ok."""
        response = client.get("/ping")

        assert response.status_code == 200
        assert response.text == "ok"


class TestSyncEndpoint:
    """Tests for POST /sync."""

    def test_push_messages(self, client, log):
        """Test messages are stored and the index returned."""
        response = client.post(
            "/sync",
            json={"group_id": "g1", "client_id": "A", "messages": [wire(0, "A")]},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"]["messages"] == []
        assert body["data"]["merkle"]["count"] == 1
        assert log.count_messages("g1") == 1

    def test_fresh_client_catch_up(self, client):
        """Test an empty merkle object returns the whole group."""
        client.post(
            "/sync",
            json={"group_id": "g1", "client_id": "A", "messages": [wire(0, "A"), wire(1, "A")]},
        )

        response = client.post(
            "/sync", json={"group_id": "g1", "client_id": "B", "messages": [], "merkle": {}}
        )

        assert response.status_code == 200
        assert response.json()["data"]["messages"] == [wire(0, "A"), wire(1, "A")]

    def test_value_types_preserved(self, client):
        """Test null, numbers and strings come back unchanged."""
        batch = [wire(0, "A", None), wire(1, "A", 3.14), wire(2, "A", 7), wire(3, "A", "x")]
        client.post("/sync", json={"group_id": "g1", "client_id": "A", "messages": batch})

        response = client.post(
            "/sync", json={"group_id": "g1", "client_id": "B", "merkle": {}}
        )

        values = [m["value"] for m in response.json()["data"]["messages"]]
        assert values == [None, 3.14, 7, "x"]

    def test_bad_timestamp(self, client, log):
        """Test a malformed timestamp is a 400 and stores nothing."""
        bad = dict(wire(1, "A"), timestamp="2024-99-99")

        response = client.post(
            "/sync",
            json={"group_id": "g1", "client_id": "A", "messages": [wire(0, "A"), bad]},
        )

        assert response.status_code == 400
        assert response.json()["reason"] == "INVALID_TIMESTAMP"
        assert log.count_messages() == 0

    def test_bad_value(self, client, log):
        """Test an unserializable value is a 400."""
        response = client.post(
            "/sync",
            json={"group_id": "g1", "client_id": "A", "messages": [wire(0, "A", [1, 2])]},
        )

        assert response.status_code == 400
        assert response.json()["reason"] == "INVALID_VALUE"
        assert log.count_messages() == 0

    def test_bad_merkle(self, client):
        """Test a malformed index is a 400."""
        response = client.post(
            "/sync",
            json={"group_id": "g1", "client_id": "A", "merkle": {"hash": "abc"}},
        )

        assert response.status_code == 400
        body = response.json()
        assert body["status"] == "error"
        assert body["reason"] == "INVALID_INDEX"
        assert "hash" in body["detail"]

    def test_missing_group_id(self, client):
        """Test request validation errors are a 422."""
        response = client.post("/sync", json={"client_id": "A", "messages": []})

        assert response.status_code == 422

    def test_storage_failure(self, app, client):
        """Test storage failures are a 500."""
        with patch.object(
            app.state.log, "transaction", side_effect=StorageError("database is locked")
        ):
            response = client.post(
                "/sync", json={"group_id": "g1", "client_id": "A", "messages": [wire(0, "A")]}
            )

        assert response.status_code == 500
        assert response.json()["reason"] == "STORAGE_ERROR"


class TestMiddleware:
    """Tests for request limits and CORS."""

    def test_payload_too_large(self, log):
        """Test oversized bodies are rejected before parsing."""
        config = Config()
        config.server.max_body_bytes = 100
        client = TestClient(create_app(config, log=log))

        with warnings.catch_warnings():
            warnings.filterwarnings("error", message=".*HTTP_413.*")
            response = client.post(
                "/sync",
                json={"group_id": "g1", "client_id": "A", "messages": [wire(i, "A") for i in range(5)]},
            )

        assert response.status_code == 413
        assert response.json()["reason"] == "PAYLOAD_TOO_LARGE"
        assert log.count_messages() == 0

    def test_cors_headers(self, client):
        """Test cross-origin requests are allowed."""
        response = client.get("/ping", headers={"Origin": "http://example.com"})

        assert response.headers["access-control-allow-origin"] == "*"


class TestLifespan:
    """Tests for app-owned storage."""

    def test_owned_log_uses_config(self, tmp_path):
        """Test the app opens the configured database when none is given."""
        config = Config()
        config.storage.db_path = str(tmp_path / "relay.db")

        with TestClient(create_app(config)) as client:
            response = client.post(
                "/sync", json={"group_id": "g1", "client_id": "A", "messages": [wire(0, "A")]}
            )
            assert response.status_code == 200

        assert (tmp_path / "relay.db").exists()
