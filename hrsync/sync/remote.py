"""Clients for the remote HR system of record.

The remote speaks the HR API's JSON envelope ({"status": ..., "data": ...})
with one REST collection per entity type.
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

import httpx

from ..config import RemoteConfig
from .errors import RemoteError
from .models import RemoteEntity, utcnow

logger = logging.getLogger(__name__)


class RemoteSystem(ABC):
    """Abstract access to the remote system of record."""

    @abstractmethod
    async def fetch(self, entity_type: str, entity_id: str) -> RemoteEntity | None:
        """Get the current remote state of an entity, or None if it does not exist."""
        pass

    @abstractmethod
    async def find_by_key(
        self, entity_type: str, key: str, value: Any
    ) -> RemoteEntity | None:
        """Find a record by natural key (e.g. employee email)."""
        pass

    @abstractmethod
    async def create(self, entity_type: str, data: dict[str, Any]) -> RemoteEntity:
        pass

    @abstractmethod
    async def update(
        self, entity_type: str, entity_id: str, data: dict[str, Any]
    ) -> RemoteEntity:
        pass

    @abstractmethod
    async def delete(self, entity_type: str, entity_id: str) -> None:
        pass

    async def close(self) -> None:
        """Release any held connections."""


class HttpRemoteSystem(RemoteSystem):
    """Remote system reached over HTTP with retry and exponential backoff.

    Connection errors, timeouts and 5xx responses are retried; other
    error statuses fail immediately.
    """

    def __init__(self, config: RemoteConfig):
        """Initialize the client.

        Args:
            config: Remote configuration (base URL, timeout, retries, paths).
        """
        self.config = config
        self.base_url = config.base_url.rstrip("/")
        self.max_retries = max(1, config.max_retries)
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            headers = {"Accept": "application/json"}
            if self.config.api_token:
                headers["Authorization"] = f"Bearer {self.config.api_token}"
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.config.timeout_seconds,
                headers=headers,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _request_with_retry(
        self,
        method: str,
        path: str,
        json_data: Any = None,
        params: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """Make HTTP request with exponential backoff retry.

        Returns:
            The response for any status below 500.

        Raises:
            RemoteError: If no base URL is configured or retries are exhausted.
        """
        if not self.base_url:
            raise RemoteError("No remote URL configured")

        client = await self._get_client()
        backoff = 1.0
        last_error = ""

        for attempt in range(self.max_retries):
            try:
                response = await client.request(
                    method, path, json=json_data, params=params
                )
                if response.status_code < 500:
                    return response

                last_error = f"HTTP {response.status_code}"
                logger.warning(
                    f"Server error {response.status_code} on {method} {path}, "
                    f"attempt {attempt + 1}/{self.max_retries}"
                )
            except httpx.ConnectError:
                last_error = "Connection failed"
                logger.warning(
                    f"Connection failed, attempt {attempt + 1}/{self.max_retries}"
                )
            except httpx.TimeoutException:
                last_error = "Request timeout"
                logger.warning(
                    f"Request timeout, attempt {attempt + 1}/{self.max_retries}"
                )
            except httpx.HTTPError as e:
                raise RemoteError(f"Request error: {e}")

            if attempt < self.max_retries - 1:
                await asyncio.sleep(backoff)
                backoff *= 2

        raise RemoteError(
            f"{last_error}; max retries ({self.max_retries}) exceeded"
        )

    @staticmethod
    def _unwrap(response: httpx.Response) -> Any:
        body = response.json()
        if isinstance(body, dict) and "data" in body:
            return body["data"]
        return body

    @classmethod
    def _to_entity(cls, entity_type: str, response: httpx.Response, action: str) -> RemoteEntity:
        try:
            return RemoteEntity.from_dict(entity_type, cls._unwrap(response))
        except (ValueError, TypeError, AttributeError) as e:
            raise RemoteError(f"{action} returned an unreadable record: {e}")

    @staticmethod
    def _raise_for_status(response: httpx.Response, action: str) -> None:
        if response.status_code >= 400:
            raise RemoteError(
                f"{action} failed: HTTP {response.status_code}: {response.text}",
                status_code=response.status_code,
            )

    async def fetch(self, entity_type: str, entity_id: str) -> RemoteEntity | None:
        path = f"{self.config.path_for(entity_type)}/{entity_id}"
        response = await self._request_with_retry("GET", path)
        if response.status_code == 404:
            return None
        self._raise_for_status(response, f"GET {path}")
        return self._to_entity(entity_type, response, f"GET {path}")

    async def find_by_key(
        self, entity_type: str, key: str, value: Any
    ) -> RemoteEntity | None:
        path = self.config.path_for(entity_type)
        response = await self._request_with_retry("GET", path, params={key: value})
        self._raise_for_status(response, f"GET {path}")

        try:
            records = self._unwrap(response) or []
            for record in records:
                if record.get(key) == value:
                    return RemoteEntity.from_dict(entity_type, record)
        except (ValueError, TypeError, AttributeError) as e:
            raise RemoteError(f"GET {path} returned an unreadable collection: {e}")
        return None

    async def create(self, entity_type: str, data: dict[str, Any]) -> RemoteEntity:
        path = self.config.path_for(entity_type)
        response = await self._request_with_retry("POST", path, json_data=data)
        self._raise_for_status(response, f"POST {path}")
        return self._to_entity(entity_type, response, f"POST {path}")

    async def update(
        self, entity_type: str, entity_id: str, data: dict[str, Any]
    ) -> RemoteEntity:
        path = f"{self.config.path_for(entity_type)}/{entity_id}"
        response = await self._request_with_retry("PUT", path, json_data=data)
        self._raise_for_status(response, f"PUT {path}")
        return self._to_entity(entity_type, response, f"PUT {path}")

    async def delete(self, entity_type: str, entity_id: str) -> None:
        path = f"{self.config.path_for(entity_type)}/{entity_id}"
        response = await self._request_with_retry("DELETE", path)
        # Already gone counts as deleted
        if response.status_code == 404:
            return
        self._raise_for_status(response, f"DELETE {path}")


class InMemoryRemoteSystem(RemoteSystem):
    """Dict-backed remote system for development and tests."""

    def __init__(self):
        self._records: dict[tuple[str, str], dict[str, Any]] = {}
        self._updated_at: dict[tuple[str, str], datetime] = {}
        self._changed: dict[tuple[str, str], frozenset[str] | None] = {}
        self._deleted: set[tuple[str, str]] = set()

    def put(
        self,
        entity_type: str,
        data: dict[str, Any],
        updated_at: datetime | None = None,
        changed_fields: set[str] | None = None,
    ) -> None:
        """Seed or overwrite a remote record as if changed by another client."""
        key = (entity_type, str(data["id"]))
        self._records[key] = dict(data)
        self._updated_at[key] = updated_at or utcnow()
        self._changed[key] = frozenset(changed_fields) if changed_fields is not None else None
        self._deleted.discard(key)

    def mark_deleted(self, entity_type: str, entity_id: str, at: datetime | None = None) -> None:
        """Delete a record remotely, keeping a tombstone."""
        key = (entity_type, str(entity_id))
        self._deleted.add(key)
        self._updated_at[key] = at or utcnow()

    def get_record(self, entity_type: str, entity_id: str) -> dict[str, Any] | None:
        key = (entity_type, str(entity_id))
        if key in self._deleted:
            return None
        record = self._records.get(key)
        return dict(record) if record is not None else None

    def _entity(self, key: tuple[str, str]) -> RemoteEntity:
        return RemoteEntity(
            entity_type=key[0],
            entity_id=key[1],
            data=dict(self._records.get(key, {})),
            updated_at=self._updated_at.get(key),
            deleted=key in self._deleted,
            changed_fields=self._changed.get(key),
        )

    async def fetch(self, entity_type: str, entity_id: str) -> RemoteEntity | None:
        key = (entity_type, str(entity_id))
        if key not in self._records and key not in self._deleted:
            return None
        return self._entity(key)

    async def find_by_key(
        self, entity_type: str, key: str, value: Any
    ) -> RemoteEntity | None:
        for record_key, record in self._records.items():
            if record_key[0] != entity_type or record_key in self._deleted:
                continue
            if record.get(key) == value:
                return self._entity(record_key)
        return None

    async def create(self, entity_type: str, data: dict[str, Any]) -> RemoteEntity:
        record = dict(data)
        record.setdefault("id", str(uuid.uuid4()))
        self.put(entity_type, record)
        return self._entity((entity_type, str(record["id"])))

    async def update(
        self, entity_type: str, entity_id: str, data: dict[str, Any]
    ) -> RemoteEntity:
        key = (entity_type, str(entity_id))
        if key not in self._records or key in self._deleted:
            raise RemoteError(f"{entity_type}/{entity_id} not found", status_code=404)
        record = {**self._records[key], **data, "id": key[1]}
        self.put(entity_type, record, changed_fields=set(data))
        return self._entity(key)

    async def delete(self, entity_type: str, entity_id: str) -> None:
        key = (entity_type, str(entity_id))
        if key in self._records:
            self.mark_deleted(entity_type, entity_id)
