"""Async subprocess utilities.

Provides non-blocking subprocess execution for the tracker, gate and commit
adapters, so a long gate or git call never stalls the event loop that the
other workers share.

This module offers two main functions:
    - run_command: Execute commands with list arguments (safer, no shell)
    - run_shell_command: Execute shell command strings (gate commands)

Both kill the child process when the awaiting task is cancelled or times
out, which is what lets ``Orchestrator.stop()`` terminate in-flight work.

Example:
    >>> from autobuild.utils.async_subprocess import run_command
    >>> stdout, stderr, code = await run_command("git", "status", cwd="/repo")
    >>> if code == 0:
    ...     print(stdout)
"""

import asyncio
import subprocess
from collections.abc import Mapping
from pathlib import Path


async def _communicate(process: asyncio.subprocess.Process, timeout: float | None) -> tuple[bytes, bytes]:
    """Wait for the process, killing it on timeout or cancellation."""
    try:
        return await asyncio.wait_for(process.communicate(), timeout=timeout)
    except (TimeoutError, asyncio.CancelledError):
        if process.returncode is None:
            process.kill()
            await process.wait()
        raise


async def run_command(
    *args: str,
    cwd: Path | str | None = None,
    check: bool = True,
    timeout: float | None = None,
    env: Mapping[str, str] | None = None,
) -> tuple[str, str, int]:
    """Run a command asynchronously without shell interpolation.

    Args:
        *args: Command and arguments as separate strings. The first argument
            is the executable, subsequent arguments are passed to it.
        cwd: Working directory for command execution.
        check: If True (default), raise CalledProcessError when the command
            returns a non-zero exit code.
        timeout: Maximum seconds to wait for completion. The process is
            killed and TimeoutError raised when exceeded.
        env: Full environment for the child; None inherits the parent's.

    Returns:
        Tuple of (stdout, stderr, return_code), decoded as UTF-8 with
        replacement for invalid bytes.

    Raises:
        subprocess.CalledProcessError: If check=True and command returns
            non-zero.
        TimeoutError: If timeout is exceeded.
        FileNotFoundError: If the executable is not found.
    """
    process = await asyncio.create_subprocess_exec(
        *args,
        cwd=cwd,
        env=dict(env) if env is not None else None,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )

    stdout_bytes, stderr_bytes = await _communicate(process, timeout)

    stdout = (stdout_bytes or b"").decode("utf-8", errors="replace")
    stderr = (stderr_bytes or b"").decode("utf-8", errors="replace")

    if check and process.returncode != 0:
        raise subprocess.CalledProcessError(process.returncode or 1, args, stdout, stderr)

    return stdout, stderr, process.returncode or 0


async def run_shell_command(
    command: str,
    *,
    cwd: Path | str | None = None,
    check: bool = True,
    timeout: float | None = None,
    env: Mapping[str, str] | None = None,
) -> tuple[str, str, int]:
    """Run a shell command asynchronously.

    Similar to run_command but uses shell semantics, so gate commands such as
    ``npm run lint -- --max-warnings=0`` can be configured as plain strings.

    Args:
        command: Complete shell command string to execute.
        cwd: Working directory for command execution.
        check: If True (default), raise CalledProcessError on non-zero exit.
        timeout: Maximum seconds to wait. Process is killed if exceeded.
        env: Full environment for the child; None inherits the parent's.

    Returns:
        Tuple of (stdout, stderr, return_code).

    Raises:
        subprocess.CalledProcessError: If check=True and the command fails.
        TimeoutError: If timeout is exceeded.

    Warning:
        Never interpolate issue text into the command string.
    """
    process = await asyncio.create_subprocess_shell(
        command,
        cwd=cwd,
        env=dict(env) if env is not None else None,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )

    stdout_bytes, stderr_bytes = await _communicate(process, timeout)

    stdout = (stdout_bytes or b"").decode("utf-8", errors="replace")
    stderr = (stderr_bytes or b"").decode("utf-8", errors="replace")

    if check and process.returncode != 0:
        raise subprocess.CalledProcessError(process.returncode or 1, command, stdout, stderr)

    return stdout, stderr, process.returncode or 0
