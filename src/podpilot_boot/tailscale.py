"""Tailscale overlay network bootstrap.

Starts tailscaled in userspace-networking mode (SOCKS5/HTTP proxy on
localhost:1055, in-memory state), waits until its control surface answers,
optionally joins the tailnet with retry and exponential backoff, and
resolves the node's assigned IPv4 address.

Readiness is re-checked with ``tailscale status`` rather than assumed after
a fixed sleep: the daemon accepts CLI connections some time after spawn,
and that delay varies with host load.
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt, wait_exponential

from podpilot_boot import constants
from podpilot_boot._logging import get_logger
from podpilot_boot.exceptions import BootTimeoutError, ProcessError, TailscaleError
from podpilot_boot.subprocess_utils import poll_until, run_command, spawn_process

if TYPE_CHECKING:
    from collections.abc import Callable

    from podpilot_boot.log_forward import LogForwarder
    from podpilot_boot.platform_utils import ManagedProcess
    from podpilot_boot.settings import BootSettings

logger = get_logger(__name__)

SERVICE = "tailscaled"


@dataclass
class NetworkState:
    """Result of network bootstrap."""

    process: ManagedProcess
    ip: str | None
    joined: bool


def tailscaled_command() -> list[str]:
    return [
        constants.TAILSCALED_BIN,
        "--tun=userspace-networking",
        f"--socks5-server={constants.PROXY_LISTEN}",
        f"--outbound-http-proxy-listen={constants.PROXY_LISTEN}",
        "--state=mem:",
    ]


def tailscale_up_command(authkey: str, hostname: str, tags: str) -> list[str]:
    return [
        constants.TAILSCALE_BIN,
        "up",
        f"--authkey={authkey}",
        f"--hostname={hostname}",
        f"--advertise-tags={tags}",
        "--accept-dns=false",
        "--ssh",
    ]


async def start_tailscaled(forwarder: LogForwarder) -> ManagedProcess:
    """Spawn tailscaled and start forwarding its output.

    Raises:
        TailscaleError: tailscaled could not be spawned
    """
    logger.debug("Starting Tailscale daemon in userspace mode")
    try:
        proc = await spawn_process(tailscaled_command(), service=SERVICE)
    except ProcessError as e:
        raise TailscaleError("Failed to start Tailscale daemon", context={**e.context, "error": e.message}) from e

    forwarder.attach(proc)
    logger.debug("Tailscale daemon started", extra={"pid": proc.pid})
    return proc


def _backend_state(stdout: str) -> str | None:
    try:
        status = json.loads(stdout)
    except json.JSONDecodeError:
        return None
    if isinstance(status, dict):
        state = status.get("BackendState")
        return state if isinstance(state, str) else None
    return None


async def wait_for_tailscaled(
    proc: ManagedProcess,
    *,
    interval: float = constants.TAILSCALE_READY_POLL_INTERVAL_SECONDS,
    max_attempts: int = constants.TAILSCALE_READY_MAX_ATTEMPTS,
) -> str | None:
    """Poll ``tailscale status --json`` until the daemon answers.

    The daemon counts as ready once the CLI reaches it, whatever the backend
    state (``NeedsLogin`` is expected before a join).

    Returns:
        The reported backend state, if any

    Raises:
        TailscaleError: daemon exited, or never answered within the attempt
            budget; context carries elapsed time, last error and output tail
    """
    logger.debug("Waiting for Tailscale daemon to be ready")
    last_error: str | None = None
    backend_state: str | None = None

    def daemon_alive() -> None:
        if proc.returncode is not None:
            raise TailscaleError(
                "Tailscale daemon exited before becoming ready",
                context={
                    "returncode": proc.returncode,
                    "last_error": last_error,
                    "daemon_output_tail": proc.tail.text(),
                },
            )

    async def daemon_answers() -> bool:
        nonlocal last_error, backend_state
        result = await run_command([constants.TAILSCALE_BIN, "status", "--json"], timeout=5.0, check=False)
        backend_state = _backend_state(result.stdout)
        if result.exit_code == 0 or backend_state is not None:
            return True
        last_error = result.stderr.strip() or result.stdout.strip() or f"exit code {result.exit_code}"
        return False

    start = time.monotonic()
    try:
        await poll_until(
            daemon_answers,
            description="tailscaled control surface",
            interval=interval,
            max_attempts=max_attempts,
            abort_check=daemon_alive,
        )
    except BootTimeoutError as e:
        raise TailscaleError(
            "Tailscale daemon did not become ready in time",
            context={
                "elapsed_seconds": round(time.monotonic() - start, 3),
                "attempts": max_attempts,
                "last_error": last_error or e.context.get("last_error"),
                "daemon_output_tail": proc.tail.text(),
            },
        ) from e

    logger.debug("Tailscale daemon is ready", extra={"backend_state": backend_state})
    return backend_state


async def _backoff_sleep(seconds: float) -> None:
    await asyncio.sleep(seconds)


def _log_join_failure(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        f"Tailscale connection attempt {retry_state.attempt_number} failed",
        extra={
            "attempt": retry_state.attempt_number,
            "max_attempts": constants.TAILSCALE_JOIN_MAX_ATTEMPTS,
            "error": getattr(exc, "stderr", "") or str(exc),
            "exit_code": getattr(exc, "exit_code", None),
        },
    )


def _log_join_backoff(retry_state: RetryCallState) -> None:
    delay = retry_state.next_action.sleep if retry_state.next_action else None
    logger.debug(f"Retrying in {delay}s...", extra={"attempt": retry_state.attempt_number, "backoff_seconds": delay})


async def join_tailnet(authkey: str, hostname: str, tags: str) -> int:
    """Run ``tailscale up`` with bounded retries and exponential backoff.

    Returns:
        The attempt number that succeeded

    Raises:
        TailscaleError: every attempt failed
    """
    logger.info("Connecting to Tailscale network", extra={"hostname": hostname, "tags": tags})
    command = tailscale_up_command(authkey, hostname, tags)

    try:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(constants.TAILSCALE_JOIN_MAX_ATTEMPTS),
            wait=wait_exponential(multiplier=constants.TAILSCALE_JOIN_INITIAL_BACKOFF_SECONDS, exp_base=2),
            retry=retry_if_exception_type(ProcessError),
            after=_log_join_failure,
            before_sleep=_log_join_backoff,
            sleep=_backoff_sleep,
            reraise=True,
        ):
            with attempt:
                number = attempt.retry_state.attempt_number
                logger.info(
                    f"Tailscale connection attempt {number}/{constants.TAILSCALE_JOIN_MAX_ATTEMPTS}",
                    extra={"attempt": number},
                )
                await run_command(command)
    except ProcessError as e:
        message = f"Failed to connect to Tailscale after {constants.TAILSCALE_JOIN_MAX_ATTEMPTS} attempts"
        raise TailscaleError(
            message,
            context={
                "attempts": constants.TAILSCALE_JOIN_MAX_ATTEMPTS,
                "last_error": e.stderr or e.message,
                "exit_code": e.exit_code,
            },
        ) from e

    logger.info("Successfully connected to Tailscale network", extra={"hostname": hostname, "attempt": number})
    return number


async def resolve_tailscale_ip() -> str:
    """Return the node's Tailscale IPv4 address.

    Raises:
        TailscaleError: the query failed or reported no address
    """
    try:
        result = await run_command([constants.TAILSCALE_BIN, "ip", "-4"])
    except ProcessError as e:
        raise TailscaleError("Failed to query Tailscale IP", context={"error": e.message}) from e

    for line in result.stdout.splitlines():
        if line.strip():
            return line.strip()
    raise TailscaleError("Tailscale reported no IPv4 address after joining", context={"stdout": result.stdout})


async def initialize_network(
    settings: BootSettings,
    forwarder: LogForwarder,
    register: Callable[[ManagedProcess], None],
) -> NetworkState:
    """Start tailscaled, wait for it, join if an auth key is set, resolve the IP.

    The daemon is handed to ``register`` as soon as it is spawned so that a
    later failure in this phase still tears it down.
    """
    proc = await start_tailscaled(forwarder)
    register(proc)

    await wait_for_tailscaled(proc)

    if settings.tailscale_authkey is None:
        logger.info("No TAILSCALE_AUTHKEY provided, skipping network connection")
        return NetworkState(process=proc, ip=None, joined=False)

    await join_tailnet(
        settings.tailscale_authkey.get_secret_value(),
        settings.tailscale_hostname,
        settings.tailscale_tags,
    )
    ip = await resolve_tailscale_ip()
    logger.info("Tailscale address assigned", extra={"tailscale_ip": ip})
    return NetworkState(process=proc, ip=ip, joined=True)
