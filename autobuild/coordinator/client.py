"""Clients for the file coordinator lock service.

Workers talk to the coordinator through the ``LockClient`` interface so the
same state machine runs against the HTTP service (one coordinator shared by
every process on the host, including agents that take leases themselves) or
against an in-process coordinator in tests and single-process runs.

``ControlClient`` wraps the session control routes served by the same app and
is what the CLI uses to steer a running orchestrator.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import Any

import httpx
import structlog

from autobuild.coordinator.file_coordinator import FileCoordinator, LockResult
from autobuild.exceptions import AutoBuildError, CoordinatorUnavailableError, ReviewError, SessionStateError
from autobuild.utils.retry import async_retry

log = structlog.get_logger(__name__)


class LockClient(ABC):
    """Worker-side view of the lock service."""

    @abstractmethod
    async def acquire(self, worker_id: int, paths: Sequence[str]) -> LockResult:
        """Request leases on every path, all or nothing.

        Raises:
            CoordinatorUnavailableError: If the service cannot be reached.
        """
        pass

    @abstractmethod
    async def release(self, worker_id: int) -> int:
        """Release every lease the worker holds."""
        pass

    @abstractmethod
    async def renew(self, worker_id: int) -> int:
        """Extend every live lease the worker holds."""
        pass

    @abstractmethod
    async def check(self, path: str) -> dict[str, Any] | None:
        """Return the live lease overlapping ``path`` (camelCase dict), if any."""
        pass

    @abstractmethod
    async def held(self, worker_id: int) -> list[str]:
        """Paths currently leased to the worker."""
        pass

    async def close(self) -> None:
        """Release client resources."""
        return None


class InProcessLockClient(LockClient):
    """LockClient that calls a FileCoordinator directly."""

    def __init__(self, coordinator: FileCoordinator) -> None:
        self.coordinator = coordinator

    async def acquire(self, worker_id: int, paths: Sequence[str]) -> LockResult:
        return self.coordinator.acquire(worker_id, paths)

    async def release(self, worker_id: int) -> int:
        return self.coordinator.release(worker_id)

    async def renew(self, worker_id: int) -> int:
        return self.coordinator.renew(worker_id)

    async def check(self, path: str) -> dict[str, Any] | None:
        lease = self.coordinator.check(path)
        return lease.to_dict(self.coordinator.now()) if lease else None

    async def held(self, worker_id: int) -> list[str]:
        return [lease.path for lease in self.coordinator.locks_for(worker_id)]


class _HttpBase:
    """Shared httpx plumbing with retry on transport errors."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        max_attempts: int = 3,
        retry_delay: float = 0.5,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: Service root, e.g. ``http://127.0.0.1:7433``.
            timeout: Per-request timeout in seconds.
            max_attempts: Calls made before a transport error is final.
            retry_delay: Delay after the first failed attempt.
            transport: Optional httpx transport (tests use ``ASGITransport``).
        """
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=transport)
        self._send = async_retry(
            max_attempts=max_attempts,
            backoff_factor=2.0,
            base_delay=retry_delay,
            exceptions=(httpx.TransportError,),
        )(self._send_once)

    async def _send_once(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        return await self._client.request(method, path, **kwargs)

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._send(method, path, **kwargs)
        except httpx.TransportError as e:
            raise CoordinatorUnavailableError(f"Lock service unreachable: {e}", url=self.base_url) from e
        if response.status_code >= 500:
            raise CoordinatorUnavailableError(
                f"Lock service error {response.status_code}: {response.text}", url=self.base_url
            )
        return response

    async def close(self) -> None:
        await self._client.aclose()


class HttpLockClient(_HttpBase, LockClient):
    """LockClient backed by the coordinator's HTTP API."""

    async def acquire(self, worker_id: int, paths: Sequence[str]) -> LockResult:
        response = await self._request("POST", "/locks/acquire", json={"workerId": worker_id, "paths": list(paths)})
        response.raise_for_status()
        data = response.json()
        return LockResult(
            granted=bool(data["granted"]),
            holder=data.get("holder"),
            conflicts=list(data.get("conflicts", [])),
            lock_ids=list(data.get("lockIds", [])),
        )

    async def release(self, worker_id: int) -> int:
        response = await self._request("POST", "/locks/release", json={"workerId": worker_id})
        response.raise_for_status()
        return int(response.json()["released"])

    async def renew(self, worker_id: int) -> int:
        response = await self._request("POST", "/locks/renew", json={"workerId": worker_id})
        response.raise_for_status()
        return int(response.json()["renewed"])

    async def check(self, path: str) -> dict[str, Any] | None:
        response = await self._request("GET", "/locks/check", params={"path": path})
        response.raise_for_status()
        return response.json()["lock"]

    async def held(self, worker_id: int) -> list[str]:
        response = await self._request("GET", "/locks", params={"workerId": worker_id})
        response.raise_for_status()
        return [lock["path"] for lock in response.json()["locks"]]

    async def health(self) -> bool:
        """Return True when the service answers its health check."""
        try:
            response = await self._request("GET", "/health")
        except CoordinatorUnavailableError:
            return False
        return response.status_code == 200


class ControlClient(_HttpBase):
    """Client for the session control routes of a running orchestrator."""

    async def _call(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        response = await self._request(method, path, **kwargs)
        if response.status_code == 404:
            raise ReviewError(str(response.json().get("detail", response.text)))
        if response.status_code == 409:
            raise SessionStateError(str(response.json().get("detail", response.text)))
        if response.status_code == 422:
            raise AutoBuildError(str(response.json().get("detail", response.text)))
        response.raise_for_status()
        return response.json()

    async def status(self) -> dict[str, Any]:
        return await self._call("GET", "/session")

    async def activity(self, limit: int = 20) -> list[dict[str, Any]]:
        data = await self._call("GET", "/session/log", params={"limit": limit})
        return list(data["entries"])

    async def pause(self) -> dict[str, Any]:
        return await self._call("POST", "/session/pause")

    async def resume(self) -> dict[str, Any]:
        return await self._call("POST", "/session/resume")

    async def stop(self) -> dict[str, Any]:
        return await self._call("POST", "/session/stop")

    async def approve(self, issue_id: str) -> dict[str, Any]:
        return await self._call("POST", f"/review/{issue_id}/approve")

    async def reject(self, issue_id: str, requeue: bool = True) -> dict[str, Any]:
        return await self._call("POST", f"/review/{issue_id}/reject", json={"requeue": requeue})

    async def commit(self, issue_id: str) -> dict[str, Any]:
        return await self._call("POST", f"/commit/{issue_id}")
