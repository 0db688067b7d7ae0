"""Stdio MCP server that lets a coding agent lease files before editing them.

``ClaudeCodeRunner`` registers this module with the agent CLI through
``--mcp-config``. The CLI spawns it per invocation and talks JSON-RPC 2.0
over stdin/stdout, one message per line. Every lease is taken on the lock
service under the spawning worker's id, so the agent's leases are renewed by
the worker heartbeat and released together with the worker's own when the
issue finishes.

Tools:
    acquire_file_lock   Wait until the file can be leased, then lease it.
    check_file_status   Report the lease covering a file, if any.
    get_my_locks        List the files this worker holds.

Environment:
    AUTOBUILD_COORDINATOR_URL  Lock service root (required)
    AUTOBUILD_WORKER_ID        Worker slot to hold leases under (required)
    AUTOBUILD_LOCK_RETRY       Seconds between attempts on a held file (10)
    AUTOBUILD_LOCK_WAIT        Seconds before giving up on a held file (600)
"""

from __future__ import annotations

import asyncio
import json
import os
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, TextIO

import structlog

from autobuild.coordinator.client import HttpLockClient, LockClient
from autobuild.exceptions import CoordinatorUnavailableError
from autobuild.providers.external_agent import relative_path
from autobuild.utils.logging_config import configure_logging

log = structlog.get_logger(__name__)

SERVER_NAME = "autobuild-locks"
PROTOCOL_VERSION = "2024-11-05"
EOF_GRACE = 1.0

METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INVALID_REQUEST = -32600

_PATH_SCHEMA = {
    "type": "object",
    "properties": {"file_path": {"type": "string", "description": "Path of the file, absolute or project-relative"}},
    "required": ["file_path"],
}

TOOLS: list[dict[str, Any]] = [
    {
        "name": "acquire_file_lock",
        "description": (
            "Lease a file before editing it. You MUST call this before using Edit, Write or MultiEdit on any "
            "file: other agents are editing the same project concurrently. Waits while another agent holds "
            "the file. Leases are released automatically when your issue is finished."
        ),
        "inputSchema": _PATH_SCHEMA,
    },
    {
        "name": "check_file_status",
        "description": "Report whether a file is leased and by which worker.",
        "inputSchema": _PATH_SCHEMA,
    },
    {
        "name": "get_my_locks",
        "description": "List the files you currently hold leases on.",
        "inputSchema": {"type": "object", "properties": {}},
    },
]


class LeaseToolServer:
    """JSON-RPC handler exposing the lock service as agent tools."""

    def __init__(
        self,
        locks: LockClient,
        worker_id: int,
        root: Path,
        retry_interval: float = 10.0,
        max_wait: float = 600.0,
    ) -> None:
        self.locks = locks
        self.worker_id = worker_id
        self.root = root
        self.retry_interval = retry_interval
        self.max_wait = max_wait
        self._tools: dict[str, Callable[[dict[str, Any]], Awaitable[tuple[dict[str, Any], bool]]]] = {
            "acquire_file_lock": self._acquire,
            "check_file_status": self._check,
            "get_my_locks": self._held,
        }

    async def handle(self, message: dict[str, Any]) -> dict[str, Any] | None:
        """Answer one JSON-RPC message. Notifications get no reply."""
        msg_id = message.get("id")
        method = message.get("method", "")
        if message.get("jsonrpc") != "2.0" or not isinstance(method, str):
            return _error(msg_id, INVALID_REQUEST, "Invalid JSON-RPC request") if msg_id is not None else None
        if msg_id is None:
            return None

        params = message.get("params") or {}
        if method == "initialize":
            return _reply(
                msg_id,
                {
                    "protocolVersion": PROTOCOL_VERSION,
                    "serverInfo": {"name": SERVER_NAME, "version": "1.0.0"},
                    "capabilities": {"tools": {}},
                },
            )
        if method == "ping":
            return _reply(msg_id, {})
        if method == "tools/list":
            return _reply(msg_id, {"tools": TOOLS})
        if method == "tools/call":
            return await self._call_tool(msg_id, params)
        return _error(msg_id, METHOD_NOT_FOUND, f"Method not found: {method}")

    async def serve(self, reader: asyncio.StreamReader, writer: TextIO) -> None:
        """Read requests until EOF, answering each as soon as it completes.

        A long ``acquire_file_lock`` wait does not hold up other requests.
        """
        pending: set[asyncio.Task[None]] = set()

        async def answer(message: dict[str, Any]) -> None:
            response = await self.handle(message)
            if response is not None:
                writer.write(json.dumps(response) + "\n")
                writer.flush()

        try:
            while line := await reader.readline():
                if not line.strip():
                    continue
                try:
                    message = json.loads(line)
                except json.JSONDecodeError:
                    log.warning("lease_tool_bad_message", line=line[:200].decode("utf-8", errors="replace"))
                    continue
                if not isinstance(message, dict):
                    continue
                task = asyncio.create_task(answer(message))
                pending.add(task)
                task.add_done_callback(pending.discard)
            # The agent has exited; nobody is left to wait for a held file.
            if pending:
                await asyncio.wait(set(pending), timeout=EOF_GRACE)
        finally:
            for task in pending:
                task.cancel()

    async def _call_tool(self, msg_id: Any, params: dict[str, Any]) -> dict[str, Any]:
        name = params.get("name")
        tool = self._tools.get(name) if isinstance(name, str) else None
        if tool is None:
            return _error(msg_id, INVALID_PARAMS, f"Unknown tool: {name}")
        arguments = params.get("arguments") or {}
        if name != "get_my_locks" and not isinstance(arguments.get("file_path"), str):
            return _error(msg_id, INVALID_PARAMS, "file_path is required")
        try:
            payload, is_error = await tool(arguments)
        except CoordinatorUnavailableError as e:
            log.warning("lease_tool_service_unavailable", error=e.message)
            payload, is_error = {"error": f"Lock service unavailable: {e.message}"}, True
        except ValueError as e:
            payload, is_error = {"error": str(e)}, True
        return _reply(msg_id, {"content": [{"type": "text", "text": json.dumps(payload)}], "isError": is_error})

    async def _acquire(self, arguments: dict[str, Any]) -> tuple[dict[str, Any], bool]:
        path = relative_path(arguments["file_path"], self.root)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.max_wait
        while True:
            result = await self.locks.acquire(self.worker_id, [path])
            if result.granted:
                log.info("agent_lease_granted", worker=self.worker_id, path=path)
                return {"granted": True, "path": path}, False
            remaining = deadline - loop.time()
            if remaining <= 0:
                log.warning("agent_lease_gave_up", worker=self.worker_id, path=path, holder=result.holder)
                return {
                    "granted": False,
                    "path": path,
                    "holder": result.holder,
                    "error": f"{path} is still leased by worker {result.holder}; do not edit it",
                }, True
            log.info("agent_lease_wait", worker=self.worker_id, path=path, holder=result.holder)
            await asyncio.sleep(min(self.retry_interval, remaining))

    async def _check(self, arguments: dict[str, Any]) -> tuple[dict[str, Any], bool]:
        path = relative_path(arguments["file_path"], self.root)
        lease = await self.locks.check(path)
        if lease is None:
            return {"path": path, "locked": False}, False
        return {"path": path, "locked": True, "holder": lease["workerId"], "mine": lease["workerId"] == self.worker_id}, False

    async def _held(self, arguments: dict[str, Any]) -> tuple[dict[str, Any], bool]:
        return {"paths": await self.locks.held(self.worker_id)}, False


def _reply(msg_id: Any, result: dict[str, Any]) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": msg_id, "result": result}


def _error(msg_id: Any, code: int, message: str) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": msg_id, "error": {"code": code, "message": message}}


async def _serve_stdio(server: LeaseToolServer) -> None:
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
    try:
        await server.serve(reader, sys.stdout)
    finally:
        await server.locks.close()


def main() -> None:
    configure_logging(os.environ.get("AUTOBUILD_LOG_LEVEL", "INFO"), stream=sys.stderr)
    url = os.environ.get("AUTOBUILD_COORDINATOR_URL")
    worker = os.environ.get("AUTOBUILD_WORKER_ID")
    if not url or worker is None or not worker.isdigit():
        log.error("lease_tool_misconfigured", url=url, worker=worker)
        sys.exit(1)

    server = LeaseToolServer(
        HttpLockClient(url),
        int(worker),
        Path.cwd(),
        retry_interval=float(os.environ.get("AUTOBUILD_LOCK_RETRY", "10")),
        max_wait=float(os.environ.get("AUTOBUILD_LOCK_WAIT", "600")),
    )
    log.info("lease_tool_started", worker=server.worker_id, url=url)
    asyncio.run(_serve_stdio(server))


if __name__ == "__main__":
    main()
