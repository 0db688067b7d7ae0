"""Agent runner that drives the Claude Code CLI.

The CLI runs in the shared working tree in non-interactive mode with
``--output-format stream-json``. Each stdout line is one JSON message; tool
calls that edit files are turned into ``AgentEvent`` records (which is how
the worker learns ``files_modified``), and the final ``result`` message
carries the agent's summary.

When a lock service is configured, the agent also gets the lease tool
(``autobuild.coordinator.lease_tool``) as an MCP server and is told to lease
each file before editing it. Leases are taken under the worker's id.

Stream lines can be far larger than asyncio's default 64 KiB line limit (a
``tool_result`` may carry a whole file), so stdout is read with
``read_lines``, which reassembles lines of any length.
"""

import asyncio
import json
import os
import sys
from collections.abc import AsyncIterator, Sequence
from pathlib import Path
from typing import Any

import structlog

from autobuild.exceptions import AgentCrashError
from autobuild.models.domain import AgentEvent, AgentRequest, AgentResult
from autobuild.providers.base import AgentEventCallback, AgentRunner

log = structlog.get_logger(__name__)

FILE_TOOLS = frozenset({"Edit", "Write", "MultiEdit", "NotebookEdit"})

STREAM_LIMIT = 1024 * 1024

LEASE_SERVER = "autobuild-locks"
LEASE_TOOLS = tuple(
    f"mcp__{LEASE_SERVER}__{name}" for name in ("acquire_file_lock", "check_file_status", "get_my_locks")
)

LEASE_INSTRUCTIONS = """Other agents are editing this project at the same time.
Before you Edit or Write any file, call the acquire_file_lock tool with its path
and wait for it to return. If it reports an error, do not edit that file."""

IMPLEMENT_PROMPT = """You are working on a beads issue in this project.

Issue ID: {issue_id}
Type: {issue_type}
Title: {title}
Description: {description}

Please:
1. Understand what needs to be done
2. Implement the changes
3. Keep code mergeable at all times
4. Do NOT commit - I will handle that

When done, your last message should confirm what was completed."""

FIX_PROMPT = """Verification failed for beads issue {issue_id} ({title}).

Fix the failures below without reverting the intended change.
Do NOT commit - I will handle that.

{feedback}"""


def build_prompt(request: AgentRequest, leases: bool = False) -> str:
    """Render the prompt for an implement or fix pass.

    ``leases`` appends the instructions for the lease tool.
    """
    issue = request.issue
    if request.mode == "fix":
        prompt = FIX_PROMPT.format(
            issue_id=issue.id,
            title=issue.title,
            feedback=request.feedback.strip() or "(no failure output captured)",
        )
    else:
        prompt = IMPLEMENT_PROMPT.format(
            issue_id=issue.id,
            issue_type=issue.issue_type,
            title=issue.title,
            description=issue.description.strip() or "No description provided",
        )
    if leases:
        prompt += f"\n\n{LEASE_INSTRUCTIONS}"
    if request.progress:
        prompt += f"\n\nProgress so far:\n\n{request.progress}"
    return prompt


async def read_lines(stream: asyncio.StreamReader) -> AsyncIterator[bytes]:
    """Yield newline-terminated lines of any length from ``stream``.

    The last line is yielded even without a trailing newline.
    """
    buffer = bytearray()
    while True:
        try:
            buffer += await stream.readuntil(b"\n")
        except asyncio.LimitOverrunError as e:
            buffer += await stream.readexactly(e.consumed)
            continue
        except asyncio.IncompleteReadError as e:
            buffer += e.partial
            if buffer:
                yield bytes(buffer)
            return
        yield bytes(buffer)
        buffer.clear()


def relative_path(path: str, root: Path) -> str:
    """Express ``path`` relative to ``root`` when it lies inside it."""
    candidate = Path(path)
    if not candidate.is_absolute():
        return path
    try:
        return candidate.relative_to(root.resolve()).as_posix()
    except ValueError:
        try:
            return candidate.relative_to(root).as_posix()
        except ValueError:
            return path


def parse_stream_line(line: str) -> tuple[list[AgentEvent], dict[str, Any] | None]:
    """Parse one stream-json line.

    Returns:
        Tuple of (events, result). ``result`` is the payload of the final
        ``result`` message, None for every other line. Non-JSON lines yield
        a single ``output`` event.
    """
    line = line.strip()
    if not line:
        return [], None
    try:
        message = json.loads(line)
    except json.JSONDecodeError:
        return [AgentEvent(kind="output", message=line)], None
    if not isinstance(message, dict):
        return [], None

    kind = message.get("type")
    if kind == "result":
        return [], message

    events: list[AgentEvent] = []
    if kind == "assistant":
        for block in message.get("message", {}).get("content", []):
            if block.get("type") == "text" and block.get("text", "").strip():
                events.append(AgentEvent(kind="text", message=block["text"].strip()))
            elif block.get("type") == "tool_use":
                tool = block.get("name", "")
                tool_input = block.get("input") or {}
                path = tool_input.get("file_path") or tool_input.get("notebook_path")
                if tool in FILE_TOOLS and path:
                    events.append(AgentEvent(kind="file_modified", message=f"{tool} {path}", tool=tool, path=path))
                else:
                    events.append(AgentEvent(kind="tool", message=tool, tool=tool))
    return events, None


class ClaudeCodeRunner(AgentRunner):
    """AgentRunner backed by the ``claude`` CLI."""

    def __init__(
        self,
        command: str = "claude",
        allowed_tools: Sequence[str] = ("Edit", "Write", "Bash", "Read", "Glob", "Grep"),
        permission_mode: str = "default",
        model: str | None = None,
        timeout: float = 3600.0,
        coordinator_url: str | None = None,
        lock_retry_interval: float = 10.0,
        lock_wait: float = 600.0,
    ) -> None:
        """Initialize the runner.

        Args:
            command: Agent executable.
            allowed_tools: Tools passed to ``--allowedTools``.
            permission_mode: Passed to ``--permission-mode``.
            model: Optional ``--model`` override.
            timeout: Seconds before an invocation is killed.
            coordinator_url: Lock service URL. Enables the lease tool.
            lock_retry_interval: Lease tool pause between attempts on a held file.
            lock_wait: Lease tool wait before giving up on a held file.
        """
        self.command = command
        self.allowed_tools = list(allowed_tools)
        self.permission_mode = permission_mode
        self.model = model
        self.timeout = timeout
        self.coordinator_url = coordinator_url
        self.lock_retry_interval = lock_retry_interval
        self.lock_wait = lock_wait

    def build_command(self, request: AgentRequest | None = None) -> list[str]:
        tools = list(self.allowed_tools)
        mcp_config: str | None = None
        if self.coordinator_url and request is not None:
            tools.extend(LEASE_TOOLS)
            mcp_config = json.dumps(self.lease_server_config(request))

        cmd = [
            self.command,
            "--print",
            "--output-format",
            "stream-json",
            "--verbose",
            "--allowedTools",
            ",".join(tools),
            "--permission-mode",
            self.permission_mode,
        ]
        if mcp_config:
            cmd.extend(["--mcp-config", mcp_config])
        if self.model:
            cmd.extend(["--model", self.model])
        return cmd

    def lease_server_config(self, request: AgentRequest) -> dict[str, Any]:
        """MCP server entry that runs the lease tool for this worker."""
        return {
            "mcpServers": {
                LEASE_SERVER: {
                    "command": sys.executable,
                    "args": ["-m", "autobuild.coordinator.lease_tool"],
                    "env": {
                        "AUTOBUILD_COORDINATOR_URL": self.coordinator_url or "",
                        "AUTOBUILD_WORKER_ID": str(request.worker_id),
                        "AUTOBUILD_LOCK_RETRY": f"{self.lock_retry_interval:g}",
                        "AUTOBUILD_LOCK_WAIT": f"{self.lock_wait:g}",
                    },
                }
            }
        }

    def build_env(self, request: AgentRequest) -> dict[str, str]:
        env = dict(os.environ)
        env["AUTOBUILD_WORKER_ID"] = str(request.worker_id)
        env["AUTOBUILD_ISSUE_ID"] = request.issue.id
        if self.coordinator_url:
            env["AUTOBUILD_COORDINATOR_URL"] = self.coordinator_url
        return env

    async def run(self, request: AgentRequest, on_event: AgentEventCallback | None = None) -> AgentResult:
        """Run one agent pass.

        The process is killed whenever the pass ends early: on timeout, on
        cancellation of the caller, or on any error while reading its output.
        """
        prompt = build_prompt(request, leases=bool(self.coordinator_url))
        log.info("agent_started", issue=request.issue.id, mode=request.mode, worker=request.worker_id)

        try:
            process = await asyncio.create_subprocess_exec(
                *self.build_command(request),
                cwd=Path(request.working_dir),
                env=self.build_env(request),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            raise AgentCrashError(f"Failed to run {self.command}: {e}", issue_id=request.issue.id) from e

        try:
            files, result, stderr = await asyncio.wait_for(
                self._communicate(process, prompt, Path(request.working_dir), on_event), timeout=self.timeout
            )
        except TimeoutError:
            log.warning("agent_timed_out", issue=request.issue.id, timeout=self.timeout)
            return AgentResult(success=False, error=f"Agent timed out after {self.timeout:g}s")
        finally:
            await self._kill(process)

        code = process.returncode
        if code is not None and code < 0:
            raise AgentCrashError(f"{self.command} was killed by signal {-code}", issue_id=request.issue.id)

        output = str(result.get("result", "")) if result else ""
        is_error = bool(result.get("is_error")) if result else False
        success = code == 0 and not is_error
        log.info("agent_finished", issue=request.issue.id, success=success, files=len(files))
        return AgentResult(
            success=success,
            output=output,
            files_modified=files,
            error=None if success else (stderr.strip() or output or "Unknown error"),
        )

    async def _communicate(
        self,
        process: asyncio.subprocess.Process,
        prompt: str,
        root: Path,
        on_event: AgentEventCallback | None,
    ) -> tuple[list[str], dict[str, Any] | None, str]:
        if process.stdin is None or process.stdout is None or process.stderr is None:
            raise AgentCrashError(f"{self.command} started without pipes")
        process.stdin.write(prompt.encode("utf-8"))
        await process.stdin.drain()
        process.stdin.close()

        stderr_task = asyncio.create_task(process.stderr.read())
        files: list[str] = []
        result: dict[str, Any] | None = None
        try:
            async for raw in read_lines(process.stdout):
                events, final = parse_stream_line(raw.decode("utf-8", errors="replace"))
                if final is not None:
                    result = final
                for event in events:
                    if event.path:
                        event.path = relative_path(event.path, root)
                        if event.path not in files:
                            files.append(event.path)
                    if on_event is not None:
                        await on_event(event)
            stderr = (await stderr_task).decode("utf-8", errors="replace")
        finally:
            if not stderr_task.done():
                stderr_task.cancel()
        await process.wait()
        return files, result, stderr

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            process.kill()
            await process.wait()
