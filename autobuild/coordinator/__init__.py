"""File coordinator: advisory path leases shared by workers and agents.

Key Components:
    - FileCoordinator: In-memory lease table with all-or-nothing acquisition
    - LockClient: Worker-side interface (in-process or HTTP)
    - CoordinatorServer: FastAPI app under uvicorn on a local port
    - ControlClient: HTTP client for the session control routes
"""

from autobuild.coordinator.client import ControlClient, HttpLockClient, InProcessLockClient, LockClient
from autobuild.coordinator.file_coordinator import FileCoordinator, FileLease, LockResult
from autobuild.coordinator.server import CoordinatorServer, create_app

__all__ = [
    "ControlClient",
    "CoordinatorServer",
    "FileCoordinator",
    "FileLease",
    "HttpLockClient",
    "InProcessLockClient",
    "LockClient",
    "LockResult",
    "create_app",
]
