"""Process termination for ordered teardown.

Cleanup never raises: failures are logged and reported through the
returned TerminationResult so teardown always reaches every process.
"""

import time
from dataclasses import dataclass

from podpilot_boot import constants
from podpilot_boot._logging import get_logger
from podpilot_boot.platform_utils import ManagedProcess

logger = get_logger(__name__)


@dataclass(frozen=True)
class TerminationResult:
    """How one managed process went down."""

    service: str
    pid: int
    graceful: bool
    duration_ms: int
    returncode: int | None
    error: str | None = None


async def terminate_process(
    proc: ManagedProcess,
    term_timeout: float = constants.TERM_GRACE_PERIOD_SECONDS,
) -> TerminationResult:
    """Stop a managed process: SIGTERM, bounded wait, then SIGKILL.

    After SIGKILL the process is always waited on (no timeout), so no
    zombie survives teardown.

    Args:
        proc: Process to stop
        term_timeout: Seconds to wait after SIGTERM before SIGKILL
    """
    start = time.monotonic()

    def _elapsed_ms() -> int:
        return round((time.monotonic() - start) * 1000)

    try:
        if proc.returncode is not None:
            logger.debug(
                f"{proc.service} already terminated",
                extra={"service": proc.service, "pid": proc.pid, "returncode": proc.returncode},
            )
            return TerminationResult(proc.service, proc.pid, True, _elapsed_ms(), proc.returncode)

        logger.debug("terminating process", extra={"service": proc.service, "pid": proc.pid})
        await proc.terminate()

        try:
            await proc.wait_with_timeout(timeout=term_timeout)
        except TimeoutError:
            logger.warning(
                "process did not exit gracefully, forcing termination",
                extra={
                    "service": proc.service,
                    "pid": proc.pid,
                    "signal": "SIGKILL",
                    "duration_ms": _elapsed_ms(),
                },
            )
            await proc.kill()
            await proc.wait()
            return TerminationResult(proc.service, proc.pid, False, _elapsed_ms(), proc.returncode)

        duration_ms = _elapsed_ms()
        logger.info(
            "process terminated",
            extra={"service": proc.service, "pid": proc.pid, "graceful": True, "duration_ms": duration_ms},
        )
        return TerminationResult(proc.service, proc.pid, True, duration_ms, proc.returncode)

    except ProcessLookupError:
        # Exited between the returncode check and the signal
        await proc.wait()
        return TerminationResult(proc.service, proc.pid, True, _elapsed_ms(), proc.returncode)

    except Exception as e:
        logger.error(
            f"{proc.service} termination error",
            extra={"service": proc.service, "pid": proc.pid, "error": str(e), "error_type": type(e).__name__},
            exc_info=True,
        )
        return TerminationResult(proc.service, proc.pid, False, _elapsed_ms(), proc.returncode, error=str(e))


async def terminate_in_order(
    processes: list[ManagedProcess],
    term_timeout: float = constants.TERM_GRACE_PERIOD_SECONDS,
) -> list[TerminationResult]:
    """Terminate processes one at a time, in the given order."""
    results: list[TerminationResult] = []
    for proc in processes:
        results.append(await terminate_process(proc, term_timeout=term_timeout))
    return results
