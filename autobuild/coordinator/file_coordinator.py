"""
Lease-based file locking shared by every worker in a session.

The FileCoordinator grants time-bounded leases on file paths. A request for a
set of paths is all-or-nothing: either every path is granted to the caller or
none is, so two workers can never end up holding half of each other's files.

Path Overlap:
    Paths are normalized (``./src//a.py`` becomes ``src/a.py``) and two paths
    overlap when they are equal or one is a directory ancestor of the other.
    A lease on ``src/`` therefore conflicts with a request for ``src/a.py``.

Expiry:
    Every lease expires ``lease_timeout`` seconds after it was acquired or
    last renewed. Expired leases are ignored by ``acquire`` and purged by
    ``cleanup_expired``, so a crashed worker cannot hold files forever.

Concurrency Model:
    The lease table is guarded by a ``threading.Lock``. The HTTP handlers and
    the orchestrator's event loop may reach the coordinator from different
    threads, and every public method is a short critical section with no
    awaits inside.

Example:
    >>> coordinator = FileCoordinator(lease_timeout=300)
    >>> result = coordinator.acquire(0, ["src/app.py"])
    >>> result.granted
    True
    >>> coordinator.acquire(1, ["src"]).conflicts
    ['src']
"""

from __future__ import annotations

import posixpath
import threading
import time
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import structlog

log = structlog.get_logger(__name__)

DEFAULT_LEASE_TIMEOUT = 300.0


def normalize_path(path: str) -> str:
    """Normalize a path for lease comparison.

    Args:
        path: Relative path as reported by a worker or agent.

    Returns:
        POSIX-style normalized path without leading ``./`` or trailing slash.

    Raises:
        ValueError: If the path is empty.
    """
    cleaned = path.strip().replace("\\", "/")
    if not cleaned:
        raise ValueError("Lock path must not be empty")
    normalized = posixpath.normpath(cleaned)
    return normalized.rstrip("/") or "/"


def paths_overlap(first: str, second: str) -> bool:
    """Return True when two normalized paths are equal or nested."""
    if first == second or first == "." or second == ".":
        return True
    if first == "/" or second == "/":
        return first.startswith("/") and second.startswith("/")
    return second.startswith(first + "/") or first.startswith(second + "/")


@dataclass
class FileLease:
    """A time-bounded claim by one worker on one path."""

    lock_id: str
    path: str
    worker_id: int
    acquired_at: datetime
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def to_dict(self, now: float) -> dict[str, Any]:
        return {
            "lockId": self.lock_id,
            "path": self.path,
            "workerId": self.worker_id,
            "acquiredAt": self.acquired_at.isoformat(),
            "expiresIn": max(0.0, round(self.expires_at - now, 3)),
        }


@dataclass
class LockResult:
    """Outcome of an acquire request.

    Attributes:
        granted: True when every requested path is now leased to the caller.
        holder: Worker holding the first conflicting lease, if refused.
        conflicts: Requested paths that overlap another worker's lease.
        lock_ids: Ids of the leases held for the request, if granted.
    """

    granted: bool
    holder: int | None = None
    conflicts: list[str] = field(default_factory=list)
    lock_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "granted": self.granted,
            "holder": self.holder,
            "conflicts": list(self.conflicts),
            "lockIds": list(self.lock_ids),
        }


class FileCoordinator:
    """All-or-nothing path leases with expiry.

    Attributes:
        lease_timeout: Seconds a lease stays valid after acquire or renew.
    """

    def __init__(
        self,
        lease_timeout: float = DEFAULT_LEASE_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize an empty lease table.

        Args:
            lease_timeout: Seconds a lease stays valid after acquire or renew.
            clock: Monotonic time source, replaceable in tests.
        """
        if lease_timeout <= 0:
            raise ValueError("lease_timeout must be positive")
        self.lease_timeout = lease_timeout
        self._clock = clock
        self._leases: dict[str, FileLease] = {}
        self._lock = threading.Lock()

    def acquire(self, worker_id: int, paths: Iterable[str]) -> LockResult:
        """Lease every path to ``worker_id`` or none of them.

        Paths the worker already holds are refreshed rather than duplicated.
        An empty request is trivially granted.

        Args:
            worker_id: Requesting worker slot.
            paths: Relative paths to lease.

        Returns:
            LockResult describing the grant or the conflicts.
        """
        requested = list(dict.fromkeys(normalize_path(p) for p in paths))

        with self._lock:
            now = self._clock()
            conflicts: list[str] = []
            holder: int | None = None
            for path in requested:
                for lease in self._leases.values():
                    if lease.worker_id == worker_id or lease.is_expired(now):
                        continue
                    if paths_overlap(path, lease.path):
                        conflicts.append(path)
                        if holder is None:
                            holder = lease.worker_id
                        break

            if conflicts:
                log.debug("lock_refused", worker=worker_id, conflicts=conflicts, holder=holder)
                return LockResult(granted=False, holder=holder, conflicts=conflicts)

            lock_ids: list[str] = []
            expires_at = now + self.lease_timeout
            for path in requested:
                existing = self._leases.get(path)
                if existing is not None and existing.worker_id == worker_id:
                    existing.expires_at = expires_at
                    lock_ids.append(existing.lock_id)
                    continue
                lease = FileLease(
                    lock_id=str(uuid.uuid4()),
                    path=path,
                    worker_id=worker_id,
                    acquired_at=datetime.now(UTC),
                    expires_at=expires_at,
                )
                self._leases[path] = lease
                lock_ids.append(lease.lock_id)

        if requested:
            log.info("lock_granted", worker=worker_id, paths=requested)
        return LockResult(granted=True, lock_ids=lock_ids)

    def release(self, worker_id: int) -> int:
        """Free every lease held by ``worker_id``. Safe to call repeatedly."""
        with self._lock:
            doomed = [path for path, lease in self._leases.items() if lease.worker_id == worker_id]
            for path in doomed:
                del self._leases[path]

        if doomed:
            log.info("locks_released", worker=worker_id, count=len(doomed))
        return len(doomed)

    def renew(self, worker_id: int) -> int:
        """Extend every live lease held by ``worker_id``.

        Returns:
            Number of leases renewed. Already expired leases are not revived.
        """
        with self._lock:
            now = self._clock()
            renewed = 0
            for lease in self._leases.values():
                if lease.worker_id == worker_id and not lease.is_expired(now):
                    lease.expires_at = now + self.lease_timeout
                    renewed += 1
        return renewed

    def check(self, path: str) -> FileLease | None:
        """Return a live lease overlapping ``path``, if any."""
        target = normalize_path(path)
        with self._lock:
            now = self._clock()
            for lease in self._leases.values():
                if not lease.is_expired(now) and paths_overlap(target, lease.path):
                    return lease
        return None

    def locks_for(self, worker_id: int) -> list[FileLease]:
        with self._lock:
            now = self._clock()
            return [
                lease for lease in self._leases.values() if lease.worker_id == worker_id and not lease.is_expired(now)
            ]

    def all_locks(self) -> list[FileLease]:
        with self._lock:
            now = self._clock()
            return [lease for lease in self._leases.values() if not lease.is_expired(now)]

    def cleanup_expired(self) -> int:
        """Purge expired leases.

        Returns:
            Number of leases removed.
        """
        with self._lock:
            now = self._clock()
            expired = [path for path, lease in self._leases.items() if lease.is_expired(now)]
            for path in expired:
                del self._leases[path]

        if expired:
            log.info("expired_locks_cleaned", count=len(expired), paths=expired)
        return len(expired)

    def now(self) -> float:
        """Current reading of the coordinator clock."""
        return self._clock()
