"""Tests for the remote system clients."""

import json
import pytest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import httpx

from hrsync.config import RemoteConfig
from hrsync.sync import HttpRemoteSystem, InMemoryRemoteSystem, RemoteError


def make_http_remote(handler, **config_kwargs) -> HttpRemoteSystem:
    """HttpRemoteSystem whose client is served by a mock transport."""
    config = RemoteConfig(base_url="http://hr.local/api", max_retries=3, **config_kwargs)
    remote = HttpRemoteSystem(config)
    remote._client = httpx.AsyncClient(
        base_url=remote.base_url,
        transport=httpx.MockTransport(handler),
    )
    return remote


def envelope(data, status_code=200):
    return httpx.Response(status_code, json={"status": "success", "data": data})


class TestHttpRemoteSystem:
    """Tests for HttpRemoteSystem."""

    def test_init(self):
        """Test client initialization."""
        remote = HttpRemoteSystem(RemoteConfig(base_url="http://hr.local/api/"))

        assert remote.base_url == "http://hr.local/api"
        assert remote.max_retries == 3
        assert remote._client is None

    @pytest.mark.asyncio
    async def test_fetch_unwraps_envelope(self):
        """Test fetch returns the entity from the data envelope."""
        requests = []

        def handler(request):
            requests.append(request)
            return envelope({
                "id": "emp-1",
                "department": "Ops",
                "updatedAt": "2024-01-01T11:00:00Z",
            })

        remote = make_http_remote(handler)
        entity = await remote.fetch("employee", "emp-1")
        await remote.close()

        assert requests[0].method == "GET"
        assert requests[0].url.path == "/api/employees/emp-1"
        assert entity.entity_id == "emp-1"
        assert entity.data["department"] == "Ops"
        assert entity.updated_at == datetime(2024, 1, 1, 11, 0, tzinfo=timezone.utc)
        assert entity.exists

    @pytest.mark.asyncio
    async def test_fetch_missing(self):
        """Test a 404 on fetch means the record does not exist."""
        remote = make_http_remote(lambda request: httpx.Response(404, json={"status": "error"}))

        assert await remote.fetch("employee", "emp-404") is None

    @pytest.mark.asyncio
    async def test_fetch_deleted_flag(self):
        """Test a soft-deleted record is reported as deleted."""
        remote = make_http_remote(lambda request: envelope({
            "id": "emp-1",
            "deletedAt": "2024-01-02T00:00:00Z",
        }))

        entity = await remote.fetch("employee", "emp-1")

        assert entity.deleted

    @pytest.mark.asyncio
    async def test_update_sends_body(self):
        """Test update PUTs the fields to the entity path."""
        requests = []

        def handler(request):
            requests.append(request)
            return envelope({"id": "emp-1", "salary": 95000})

        remote = make_http_remote(handler)
        await remote.update("employee", "emp-1", {"salary": 95000})

        assert requests[0].method == "PUT"
        assert requests[0].url.path == "/api/employees/emp-1"
        assert json.loads(requests[0].content) == {"salary": 95000}

    @pytest.mark.asyncio
    async def test_create_uses_entity_path(self):
        """Test create POSTs to the collection for the entity type."""
        requests = []

        def handler(request):
            requests.append(request)
            return envelope({"id": "lv-1", "type": "annual"}, status_code=201)

        remote = make_http_remote(handler)
        entity = await remote.create("leave", {"id": "lv-1", "type": "annual"})

        assert requests[0].method == "POST"
        assert requests[0].url.path == "/api/leave"
        assert entity.entity_id == "lv-1"

    @pytest.mark.asyncio
    async def test_find_by_key(self):
        """Test natural-key lookup filters the collection."""
        def handler(request):
            assert request.url.params["email"] == "ann@example.com"
            return envelope([
                {"id": "emp-3", "email": "bob@example.com"},
                {"id": "emp-7", "email": "ann@example.com"},
            ])

        remote = make_http_remote(handler)
        match = await remote.find_by_key("employee", "email", "ann@example.com")

        assert match.entity_id == "emp-7"

    @pytest.mark.asyncio
    async def test_unreadable_timestamp(self):
        """Test a record with an invalid updatedAt is a remote error."""
        remote = make_http_remote(
            lambda request: envelope({"id": "emp-bad", "updatedAt": "yesterday"})
        )

        with pytest.raises(RemoteError, match="unreadable record"):
            await remote.update("employee", "emp-bad", {"salary": 2})

    @pytest.mark.asyncio
    async def test_non_json_body(self):
        """Test a 200 that is not JSON is a remote error."""
        remote = make_http_remote(
            lambda request: httpx.Response(200, text="<html>maintenance</html>")
        )

        with pytest.raises(RemoteError, match="GET /employees/emp-1"):
            await remote.fetch("employee", "emp-1")

    @pytest.mark.asyncio
    async def test_list_instead_of_record(self):
        remote = make_http_remote(lambda request: envelope([{"id": "emp-1"}]))

        with pytest.raises(RemoteError):
            await remote.create("employee", {"id": "emp-1"})

    @pytest.mark.asyncio
    async def test_find_by_key_unreadable_collection(self):
        remote = make_http_remote(lambda request: envelope("not a list of records"))

        with pytest.raises(RemoteError, match="unreadable collection"):
            await remote.find_by_key("employee", "email", "ann@example.com")

    @pytest.mark.asyncio
    async def test_delete_missing_is_ok(self):
        """Test deleting an already deleted record succeeds."""
        remote = make_http_remote(lambda request: httpx.Response(404, json={}))

        await remote.delete("employee", "emp-1")

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self):
        """Test a 4xx fails immediately with the status code."""
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(400, json={"status": "error", "message": "bad"})

        remote = make_http_remote(handler)

        with pytest.raises(RemoteError) as exc_info:
            await remote.update("employee", "emp-1", {"salary": -1})

        assert exc_info.value.status_code == 400
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_server_error_retried(self):
        """Test 5xx responses are retried with backoff."""
        responses = [
            httpx.Response(503),
            envelope({"id": "emp-1", "salary": 1}),
        ]

        remote = make_http_remote(lambda request: responses.pop(0))

        with patch("hrsync.sync.remote.asyncio.sleep", new=AsyncMock()) as sleep:
            entity = await remote.fetch("employee", "emp-1")

        assert entity.data["salary"] == 1
        sleep.assert_awaited_once_with(1.0)

    @pytest.mark.asyncio
    async def test_retries_exhausted(self):
        """Test connection failures surface as RemoteError after max retries."""
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ConnectError("refused", request=request)

        remote = make_http_remote(handler)

        with patch("hrsync.sync.remote.asyncio.sleep", new=AsyncMock()):
            with pytest.raises(RemoteError, match="max retries"):
                await remote.fetch("employee", "emp-1")

        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_no_remote_url(self):
        """Test requests fail without a configured remote."""
        remote = HttpRemoteSystem(RemoteConfig(base_url=""))

        with pytest.raises(RemoteError, match="No remote URL"):
            await remote.fetch("employee", "emp-1")

    @pytest.mark.asyncio
    async def test_bearer_token(self):
        """Test the API token is sent as a bearer token."""
        remote = HttpRemoteSystem(RemoteConfig(base_url="http://hr.local", api_token="s3cret"))

        client = await remote._get_client()

        assert client.headers["Authorization"] == "Bearer s3cret"
        await remote.close()
        assert remote._client is None


class TestInMemoryRemoteSystem:
    """Tests for InMemoryRemoteSystem."""

    @pytest.mark.asyncio
    async def test_put_and_fetch(self):
        """Test seeded records are fetched with their change report."""
        remote = InMemoryRemoteSystem()
        remote.put("employee", {"id": "emp-1", "salary": 1}, changed_fields={"salary"})

        entity = await remote.fetch("employee", "emp-1")

        assert entity.data == {"id": "emp-1", "salary": 1}
        assert entity.changed_fields == frozenset({"salary"})
        assert await remote.fetch("employee", "emp-2") is None

    @pytest.mark.asyncio
    async def test_create_assigns_id(self):
        """Test create without an id assigns one."""
        remote = InMemoryRemoteSystem()

        entity = await remote.create("asset", {"tag": "LAP-1"})

        assert entity.entity_id
        assert remote.get_record("asset", entity.entity_id)["tag"] == "LAP-1"

    @pytest.mark.asyncio
    async def test_update_merges_fields(self):
        """Test update keeps untouched fields."""
        remote = InMemoryRemoteSystem()
        remote.put("employee", {"id": "emp-1", "name": "Ann", "salary": 1})

        await remote.update("employee", "emp-1", {"salary": 2})

        assert remote.get_record("employee", "emp-1") == {"id": "emp-1", "name": "Ann", "salary": 2}

    @pytest.mark.asyncio
    async def test_update_missing_raises(self):
        """Test updating a missing record fails like a 404."""
        remote = InMemoryRemoteSystem()

        with pytest.raises(RemoteError) as exc_info:
            await remote.update("employee", "emp-1", {"salary": 2})

        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_delete_leaves_tombstone(self):
        """Test deleted records are fetched as deleted."""
        remote = InMemoryRemoteSystem()
        remote.put("employee", {"id": "emp-1", "email": "ann@example.com"})

        await remote.delete("employee", "emp-1")

        entity = await remote.fetch("employee", "emp-1")
        assert entity.deleted
        assert remote.get_record("employee", "emp-1") is None
        assert await remote.find_by_key("employee", "email", "ann@example.com") is None
