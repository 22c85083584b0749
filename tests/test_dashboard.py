"""Tests for the dashboard API."""

import pytest
from datetime import datetime, timezone

# Only run tests if fastapi is installed
pytest.importorskip("fastapi")


from fastapi.testclient import TestClient

from hrsync.config import Config, ServiceConfig
from hrsync.dashboard import create_app
from hrsync.sync import (
    ConflictStore,
    InMemoryRemoteSystem,
    OperationLog,
    SyncOrchestrator,
    SyncState,
)

T1 = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)
T2 = datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def config():
    """Create a test configuration."""
    return Config(service=ServiceConfig(name="test-hrsync"))


@pytest.fixture
def op_log():
    log = OperationLog(":memory:")
    log.connect()
    yield log
    log.close()


@pytest.fixture
def conflicts():
    store = ConflictStore(":memory:")
    store.connect()
    yield store
    store.close()


@pytest.fixture
def remote():
    return InMemoryRemoteSystem()


@pytest.fixture
def orchestrator(op_log, conflicts, remote):
    return SyncOrchestrator(op_log, conflicts, remote)


@pytest.fixture
def app(config, op_log, conflicts, orchestrator):
    """Create the FastAPI app."""
    return create_app(config, op_log, conflicts, orchestrator)


@pytest.fixture
def client(app):
    """Create a test client."""
    return TestClient(app)


def queue_conflicting_update(client, remote, entity_id="emp-2"):
    """Queue a department change the remote also changed later."""
    remote.put(
        "employee",
        {"id": entity_id, "department": "Ops"},
        updated_at=T2,
        changed_fields={"department"},
    )
    client.post("/sync/operations", json={
        "operation": "update",
        "entityType": "employee",
        "entityId": entity_id,
        "payload": {"department": "Sales"},
        "timestamp": T1.isoformat(),
    })
    client.post("/sync/start", params={"wait": "true"})
    return client.get("/sync/conflicts").json()[0]


class TestStats:
    """Tests for the stats and trigger endpoints."""

    def test_stats(self, client):
        """Test the stats shape."""
        response = client.get("/sync/stats")

        assert response.status_code == 200
        data = response.json()
        assert data["inProgress"] is False
        assert data["pending"] == 0
        assert data["conflicts"] == 0
        assert data["lastSync"] is None
        assert data["successRate"] == 1.0
        assert data["averageSyncTime"] == 0.0
        assert data["nextSyncTime"] is None

    def test_start_and_wait(self, client):
        """Test a waited sync returns the cycle result and fresh stats."""
        client.post("/sync/operations", json={
            "operation": "create",
            "entityType": "employee",
            "entityId": "emp-1",
            "payload": {"name": "Ann"},
        })

        response = client.post("/sync/start", params={"wait": "true"})

        assert response.status_code == 200
        data = response.json()
        assert data["started"] is True
        assert data["result"]["status"] == "success"
        assert data["result"]["completed"] == 1
        assert data["pending"] == 0
        assert data["lastSync"] is not None

    def test_start_in_background(self, client):
        """Test triggering a background cycle."""
        response = client.post("/sync/start")

        assert response.status_code == 200
        assert response.json()["started"] is True

    def test_start_while_running(self, client, orchestrator):
        """Test a trigger during a running cycle is a no-op returning stats."""
        orchestrator._state = SyncState.RUNNING

        response = client.post("/sync/start")
        waited = client.post("/sync/start", params={"wait": "true"})

        assert response.status_code == 200
        assert response.json()["started"] is False
        assert response.json()["inProgress"] is True
        assert waited.json()["started"] is False

    def test_toggle_auto_sync(self, client, orchestrator):
        """Test enabling and disabling auto-sync."""
        response = client.put("/sync/config", json={"autoSync": True})

        assert response.status_code == 200
        assert response.json()["autoSync"] is True
        assert orchestrator.auto_sync_enabled

        client.put("/sync/config", json={"autoSync": False})
        assert client.get("/sync/config").json()["autoSync"] is False


class TestOperations:
    """Tests for the operations endpoints."""

    def test_queue_operation(self, client):
        """Test queueing a mutation."""
        response = client.post("/sync/operations", json={
            "operation": "update",
            "entityType": "employee",
            "entityId": "emp-1",
            "payload": {"salary": 90000},
        })

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "pending"
        assert data["entityType"] == "employee"
        assert data["payload"] == {"salary": 90000}

    def test_queue_invalid_operation(self, client):
        """Test an unknown operation kind is rejected."""
        response = client.post("/sync/operations", json={
            "operation": "upsert",
            "entityType": "employee",
            "entityId": "emp-1",
        })

        assert response.status_code == 422

    def test_list_operations_in_order(self, client):
        """Test operations are listed in append order."""
        for entity_id in ["emp-1", "emp-2", "emp-3"]:
            client.post("/sync/operations", json={
                "operation": "create",
                "entityType": "employee",
                "entityId": entity_id,
            })

        response = client.get("/sync/operations")

        assert response.status_code == 200
        assert [op["entityId"] for op in response.json()] == ["emp-1", "emp-2", "emp-3"]

    def test_list_unknown_status(self, client):
        """Test filtering by an unknown status."""
        response = client.get("/sync/operations", params={"status": "lost"})

        assert response.status_code == 400

    def test_list_by_entity_type(self, client):
        """Test filtering operations by entity type."""
        client.post("/sync/operations", json={
            "operation": "create", "entityType": "employee", "entityId": "emp-1",
        })
        client.post("/sync/operations", json={
            "operation": "create", "entityType": "leave", "entityId": "lv-1",
        })

        response = client.get("/sync/operations", params={"entityType": "leave"})

        assert response.status_code == 200
        assert [op["entityId"] for op in response.json()] == ["lv-1"]

    def test_clear_completed(self, client):
        """Test clearing completed operations keeps the rest."""
        client.post("/sync/operations", json={
            "operation": "create", "entityType": "employee", "entityId": "emp-1",
        })
        client.post("/sync/start", params={"wait": "true"})
        client.post("/sync/operations", json={
            "operation": "create", "entityType": "employee", "entityId": "emp-2",
        })

        response = client.delete("/sync/operations/completed")

        assert response.status_code == 200
        assert response.json() == {"deleted": 1}
        assert [op["entityId"] for op in client.get("/sync/operations").json()] == ["emp-2"]

    def test_retry_failed_operation(self, client, op_log):
        """Test explicit retry of a failed operation."""
        op = op_log.append("create", "employee", "emp-1", {})
        op_log.drain(1)
        op_log.mark_failed(op.id, "HTTP 400")

        failed = client.get("/sync/operations", params={"status": "failed"}).json()
        response = client.post(f"/sync/operations/{op.id}/retry")

        assert [o["id"] for o in failed] == [op.id]
        assert response.status_code == 200
        assert response.json()["status"] == "pending"

    def test_retry_unknown_operation(self, client):
        response = client.post("/sync/operations/nope/retry")

        assert response.status_code == 404


class TestConflicts:
    """Tests for the conflict endpoints."""

    def test_list_conflicts(self, client, remote):
        """Test an open conflict is listed."""
        conflict = queue_conflicting_update(client, remote)

        assert conflict["entityType"] == "employee"
        assert conflict["entityId"] == "emp-2"
        assert conflict["conflictType"] == "concurrent-update"
        assert client.get("/sync/stats").json()["conflicts"] == 1

    def test_resolve_conflict(self, client, remote):
        """Test resolving removes the conflict from the open set."""
        conflict = queue_conflicting_update(client, remote)

        response = client.post(
            f"/sync/conflicts/{conflict['id']}/resolve",
            json={"resolution": "local_wins"},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["appliedStrategy"] == "local_wins"
        assert data["deleted"] is False
        assert client.get("/sync/conflicts").json() == []
        assert remote.get_record("employee", "emp-2")["department"] == "Sales"

    def test_resolve_auto_reports_applied_strategy(self, client, remote):
        """Test auto reports the concrete strategy it applied."""
        conflict = queue_conflicting_update(client, remote)

        response = client.post(
            f"/sync/conflicts/{conflict['id']}/resolve",
            json={"resolution": "auto"},
        )

        assert response.status_code == 200
        assert response.json()["resolution"] == "auto"
        assert response.json()["appliedStrategy"] == "merge"

    def test_resolve_unknown_conflict(self, client):
        response = client.post(
            "/sync/conflicts/nope/resolve", json={"resolution": "merge"}
        )

        assert response.status_code == 404
        assert response.json()["detail"]["error"] == "ConflictNotFoundError"

    def test_resolve_invalid_strategy_value(self, client, remote):
        """Test an unknown strategy value fails validation."""
        conflict = queue_conflicting_update(client, remote)

        response = client.post(
            f"/sync/conflicts/{conflict['id']}/resolve",
            json={"resolution": "coin_flip"},
        )

        assert response.status_code == 422

    def test_delete_update_policy(self, client, remote):
        """Test merge and auto are refused for a delete-update conflict."""
        remote.put("employee", {"id": "emp-3", "title": "Lead"}, updated_at=T2)
        client.post("/sync/operations", json={
            "operation": "delete",
            "entityType": "employee",
            "entityId": "emp-3",
            "timestamp": T1.isoformat(),
        })
        client.post("/sync/start", params={"wait": "true"})
        [conflict] = client.get("/sync/conflicts").json()
        url = f"/sync/conflicts/{conflict['id']}/resolve"

        merge = client.post(url, json={"resolution": "merge"})
        auto = client.post(url, json={"resolution": "auto"})
        local = client.post(url, json={"resolution": "local_wins"})

        assert merge.status_code == 409
        assert merge.json()["detail"]["error"] == "ConflictPolicyError"
        assert auto.status_code == 409
        assert local.status_code == 200
        assert local.json()["deleted"] is True
        assert remote.get_record("employee", "emp-3") is None


class TestHealth:
    """Tests for the health endpoint."""

    def test_health(self, client):
        response = client.get("/api/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["service"] == "test-hrsync"
        assert data["sync_state"] == "idle"
        assert data["pending"] == 0
        assert datetime.fromisoformat(data["timestamp"]).tzinfo is not None
