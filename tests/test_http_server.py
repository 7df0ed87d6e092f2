from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from manga_worker.http_server import HealthServer, start_health_server
from manga_worker.models import FileStatusSnapshot, FileStatus, QueueState


def pool_stats(**overrides):
    stats = {"running": True, "draining": False, "workers": 2, "in_flight": 1}
    stats.update(overrides)
    return stats


@pytest.fixture
def service():
    service = MagicMock()
    service.pool.get_stats.return_value = pool_stats()
    service.get_stats.return_value = {"running": True, "pool": pool_stats()}
    return service


@pytest.fixture
def client(service):
    return TestClient(HealthServer(service).app)


def test_healthz_reports_running_pool(client):
    response = client.get("/healthz")

    assert response.status_code == 200
    assert response.json() == {"ok": True, "status": "healthy", "workers": 2, "in_flight": 1}


def test_healthz_is_unavailable_while_draining(client, service):
    service.pool.get_stats.return_value = pool_stats(draining=True)

    assert client.get("/healthz").status_code == 503


def test_healthz_without_pool(service):
    service.pool = None

    assert TestClient(HealthServer(service).app).get("/healthz").status_code == 503


def test_enqueue(client, service):
    service.pool.enqueue.side_effect = [True, False]

    first = client.post("/files/abc/enqueue")
    second = client.post("/files/abc/enqueue")

    assert first.json() == {"file_id": "abc", "queued": True}
    assert second.json() == {"file_id": "abc", "queued": False}
    service.pool.enqueue.assert_called_with("abc")


def test_status(client, service):
    service.pool.get_status.return_value = FileStatusSnapshot(
        file_id="abc", status=FileStatus.ERROR, attempts=3,
        error_message="bucket unreachable", queue_state=QueueState.FAILED,
    )

    response = client.get("/files/abc/status")

    assert response.status_code == 200
    assert response.json() == {
        "file_id": "abc",
        "status": "error",
        "attempts": 3,
        "error_message": "bucket unreachable",
        "queue_state": "failed",
    }


def test_status_unknown_file(client, service):
    service.pool.get_status.return_value = None

    assert client.get("/files/nope/status").status_code == 404


def test_stats(client):
    response = client.get("/stats")

    assert response.status_code == 200
    assert response.json()["pool"]["workers"] == 2


def test_server_not_started_when_disabled(service):
    service.config.ENABLE_HTTP_SERVER = False

    assert start_health_server(service) is None
