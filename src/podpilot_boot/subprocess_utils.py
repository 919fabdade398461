"""Subprocess lifecycle utilities.

- spawn_process: start a long-running child as a ManagedProcess
- run_command: run a short-lived command to completion (tailscale CLI)
- poll_until: fixed-interval readiness polling with an attempt or time budget
- wait_for_port: poll until a TCP port accepts connections
"""

from __future__ import annotations

import asyncio
import os
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

from podpilot_boot import constants
from podpilot_boot._logging import get_logger
from podpilot_boot.exceptions import BootTimeoutError, ProcessError
from podpilot_boot.platform_utils import ManagedProcess

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping, Sequence
    from pathlib import Path

logger = get_logger(__name__)

# stderr excerpt carried on ProcessError messages
_STDERR_PREVIEW_CHARS = 500


@dataclass(frozen=True)
class CommandResult:
    """Completed short-lived command."""

    command: str
    exit_code: int
    stdout: str
    stderr: str


async def spawn_process(
    command: Sequence[str],
    *,
    service: str,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
    pipe_output: bool = True,
) -> ManagedProcess:
    """Spawn a long-running child process.

    Args:
        command: Argument vector (first element is the executable)
        service: Service tag for logging and teardown
        cwd: Working directory
        env: Variables added on top of the supervisor's own environment
        pipe_output: Pipe stdout/stderr for log forwarding; otherwise inherit

    Raises:
        ProcessError: The executable could not be started
    """
    command_str = " ".join(command)
    if not command:
        raise ProcessError("Empty command", command_str)

    child_env = {**os.environ, **env} if env else None
    stream = asyncio.subprocess.PIPE if pipe_output else None

    logger.debug("Spawning background process", extra={"command": command_str, "cwd": str(cwd) if cwd else None})
    try:
        proc = await asyncio.create_subprocess_exec(
            *command,
            cwd=cwd,
            env=child_env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=stream,
            stderr=stream,
        )
    except OSError as e:
        raise ProcessError(
            f"Failed to spawn process: {e}",
            command_str,
            context={"service": service, "error_type": type(e).__name__},
        ) from e

    managed = ManagedProcess(proc, service, tail_bytes=constants.DIAGNOSTIC_OUTPUT_TAIL_BYTES)
    logger.debug("Background process spawned", extra={"command": command_str, "service": service, "pid": managed.pid})
    return managed


async def run_command(
    command: Sequence[str],
    *,
    timeout: float = constants.TAILSCALE_COMMAND_TIMEOUT_SECONDS,
    check: bool = True,
) -> CommandResult:
    """Run a command to completion and capture its output.

    Args:
        command: Argument vector
        timeout: Seconds before the command is killed
        check: Raise ProcessError on non-zero exit

    Raises:
        ProcessError: Spawn failure, timeout, or non-zero exit when ``check``
    """
    command_str = " ".join(command)
    try:
        proc = await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise ProcessError(f"Failed to spawn process: {e}", command_str) from e

    try:
        stdout_b, stderr_b = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except TimeoutError:
        proc.kill()
        await proc.wait()
        raise ProcessError(
            f"Command timed out after {timeout}s",
            command_str,
            exit_code=proc.returncode,
            context={"timeout_seconds": timeout},
        ) from None

    result = CommandResult(
        command=command_str,
        exit_code=proc.returncode if proc.returncode is not None else -1,
        stdout=stdout_b.decode(errors="replace"),
        stderr=stderr_b.decode(errors="replace"),
    )

    if check and result.exit_code != 0:
        stderr = result.stderr.strip()
        preview = stderr[:_STDERR_PREVIEW_CHARS]
        if len(stderr) > _STDERR_PREVIEW_CHARS:
            preview += f"... ({len(stderr) - _STDERR_PREVIEW_CHARS} more chars)"
        logger.debug(
            "Process exited with non-zero code",
            extra={"command": command[0], "exit_code": result.exit_code, "stderr_length": len(stderr)},
        )
        raise ProcessError(
            f"Process exited with code {result.exit_code}: {preview}",
            command_str,
            exit_code=result.exit_code,
            stderr=stderr,
        )

    return result


async def poll_until(
    condition: Callable[[], Awaitable[bool]],
    *,
    description: str,
    interval: float,
    timeout: float | None = None,
    max_attempts: int | None = None,
    abort_check: Callable[[], None] | None = None,
) -> int:
    """Re-issue ``condition`` at a fixed interval until it returns True.

    Exceptions raised by ``condition`` count as "not ready yet". At least one
    of ``timeout`` and ``max_attempts`` bounds the loop.

    Args:
        abort_check: Invoked before every attempt. Should raise to abort the
            wait early (e.g. when the process being waited on has died).

    Returns:
        Number of attempts made

    Raises:
        BootTimeoutError: Budget exhausted
    """
    if timeout is None and max_attempts is None:
        raise ValueError("poll_until needs a timeout or max_attempts")

    budget = timeout if timeout is not None else interval * max_attempts  # type: ignore[operator]
    start = time.monotonic()
    attempt = 0
    last_error: str | None = None

    logger.debug("Waiting for condition", extra={"description": description, "timeout_seconds": budget})

    while True:
        if abort_check is not None:
            abort_check()
        attempt += 1
        try:
            if await condition():
                logger.debug(
                    "Condition met",
                    extra={
                        "description": description,
                        "attempts": attempt,
                        "elapsed_seconds": time.monotonic() - start,
                    },
                )
                return attempt
        except Exception as e:  # noqa: BLE001
            last_error = str(e) or type(e).__name__

        elapsed = time.monotonic() - start
        out_of_attempts = max_attempts is not None and attempt >= max_attempts
        out_of_time = timeout is not None and elapsed + interval > timeout
        if out_of_attempts or out_of_time:
            raise BootTimeoutError(
                f"Timeout waiting for: {description}",
                timeout_seconds=budget,
                elapsed_seconds=elapsed,
                context={"attempts": attempt, "last_error": last_error},
            )

        await asyncio.sleep(interval)


async def check_port(host: str, port: int, *, timeout: float = 1.0) -> bool:
    """Return True if a TCP connection to host:port succeeds."""
    try:
        _reader, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout)
    except (OSError, TimeoutError):
        return False
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass  # Peer reset after accept -- the port still accepted
    return True


async def wait_for_port(
    port: int,
    host: str = constants.APP_READY_HOST,
    *,
    timeout: float = constants.APP_READY_TIMEOUT_SECONDS,
    interval: float = constants.APP_READY_POLL_INTERVAL_SECONDS,
    abort_check: Callable[[], None] | None = None,
) -> int:
    """Poll until ``port`` on ``host`` accepts TCP connections.

    Raises:
        BootTimeoutError: Port never accepted a connection within ``timeout``
    """
    return await poll_until(
        lambda: check_port(host, port, timeout=min(interval, 1.0)),
        description=f"Port {port} on {host} to be listening",
        interval=interval,
        timeout=timeout,
        abort_check=abort_check,
    )


def log_task_exception(task: asyncio.Task[None]) -> None:
    """Log exceptions from background tasks.

    Callback for asyncio.Task.add_done_callback() so failures in fire-and-forget
    tasks (log forwarding) are never silent.
    """
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(
            "Background task failed",
            extra={"task_name": task.get_name()},
            exc_info=exc,
        )
