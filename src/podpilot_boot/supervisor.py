"""Boot sequencing and supervision.

Phases run strictly in order, each gated on the previous one:

    configuration -> tailscale -> sshd (best effort) -> application -> agent

Between phases the supervisor checks for a pending shutdown request and
stops advancing if one arrived. A request never interrupts a phase that
is already running.

Steady state races the agent's own exit against a shutdown request:

    agent exits first      -> teardown, exit with the agent's code
    SIGTERM/SIGINT first   -> teardown, exit 0

Teardown terminates agent, application, sshd, tailscaled in that order
and runs at most once no matter how many signals arrive.
"""

from __future__ import annotations

import asyncio
import signal
import time
from typing import TYPE_CHECKING

from podpilot_boot import constants
from podpilot_boot._logging import configure_logging, get_logger
from podpilot_boot.agent import ensure_agent_binary, start_agent
from podpilot_boot.apps import get_launch_spec, launch_app
from podpilot_boot.exceptions import BootError, ConfigError
from podpilot_boot.log_forward import LogForwarder
from podpilot_boot.models import ProcessRole
from podpilot_boot.resource_cleanup import TerminationResult, terminate_in_order
from podpilot_boot.settings import load_settings
from podpilot_boot.ssh import start_sshd
from podpilot_boot.tailscale import initialize_network

if TYPE_CHECKING:
    from collections.abc import Callable

    from podpilot_boot.platform_utils import ManagedProcess
    from podpilot_boot.settings import BootSettings

logger = get_logger(__name__)

TEARDOWN_ORDER: tuple[ProcessRole, ...] = (
    ProcessRole.AGENT,
    ProcessRole.APPLICATION,
    ProcessRole.REMOTE_ACCESS,
    ProcessRole.NETWORK,
)

_HANDLED_SIGNALS = (signal.SIGTERM, signal.SIGINT)


class ShutdownState:
    """Transition-once shutdown flag with an event for every waiter.

    Signal handlers run on the event loop thread (loop.add_signal_handler),
    so the check-and-set in request() cannot interleave.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def requested(self) -> bool:
        return self._event.is_set()

    def request(self, reason: str) -> bool:
        """Mark shutdown as requested. Returns True only for the first caller."""
        if self._event.is_set():
            return False
        self.reason = reason
        self._event.set()
        return True

    async def wait(self) -> None:
        await self._event.wait()


def exit_code_from_returncode(returncode: int) -> int:
    """Map an asyncio returncode (negative = killed by signal) to a shell exit code."""
    if returncode < 0:
        return 128 + -returncode
    return returncode


class Supervisor:
    """Owns every managed process from spawn until teardown."""

    def __init__(
        self,
        settings: BootSettings,
        *,
        forwarder: LogForwarder | None = None,
        term_timeout: float = constants.TERM_GRACE_PERIOD_SECONDS,
        handle_signals: bool = True,
    ) -> None:
        self.settings = settings
        self.forwarder = forwarder or LogForwarder()
        self.term_timeout = term_timeout
        self.handle_signals = handle_signals
        self.shutdown_state = ShutdownState()
        self.processes: dict[ProcessRole, ManagedProcess] = {}
        self.timings_ms: dict[str, int] = {}
        self.tailscale_ip: str | None = None
        self._teardown_task: asyncio.Task[list[TerminationResult]] | None = None
        self._installed_signals: list[signal.Signals] = []

    # ------------------------------------------------------------------
    # Process registry
    # ------------------------------------------------------------------

    def register(self, role: ProcessRole, proc: ManagedProcess) -> None:
        if role in self.processes:
            raise RuntimeError(f"A {role.value} process is already registered")
        self.processes[role] = proc
        logger.debug("Process registered", extra={"role": role.value, "service": proc.service, "pid": proc.pid})

    def registrar(self, role: ProcessRole) -> Callable[[ManagedProcess], None]:
        return lambda proc: self.register(role, proc)

    # ------------------------------------------------------------------
    # Signals
    # ------------------------------------------------------------------

    def request_shutdown(self, reason: str) -> None:
        if self.shutdown_state.request(reason):
            logger.info("initiating shutdown", extra={"signal": reason})
        else:
            logger.debug("Shutdown already in progress", extra={"signal": reason})

    def install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in _HANDLED_SIGNALS:
            loop.add_signal_handler(sig, self.request_shutdown, sig.name)
            self._installed_signals.append(sig)

    def remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in self._installed_signals:
            loop.remove_signal_handler(sig)
        self._installed_signals.clear()

    # ------------------------------------------------------------------
    # Boot
    # ------------------------------------------------------------------

    def _shutdown_pending(self) -> bool:
        if self.shutdown_state.requested:
            logger.info("Shutdown initiated, exiting early", extra={"signal": self.shutdown_state.reason})
            return True
        return False

    async def boot(self) -> bool:
        """Run every boot phase. Returns False if a shutdown request cut it short.

        Raises:
            BootError: a phase failed
        """
        boot_start = time.monotonic()
        settings = self.settings

        phase_start = time.monotonic()
        network = await initialize_network(settings, self.forwarder, self.registrar(ProcessRole.NETWORK))
        self.tailscale_ip = network.ip
        self.timings_ms["tailscale"] = _ms_since(phase_start)
        if self._shutdown_pending():
            return False

        logger.debug("Starting SSH daemon")
        phase_start = time.monotonic()
        sshd = await start_sshd(
            self.forwarder,
            self.registrar(ProcessRole.REMOTE_ACCESS),
            authorized_keys_env=settings.ssh_authorized_keys,
        )
        if sshd is not None:
            self.timings_ms["ssh"] = _ms_since(phase_start)
        if self._shutdown_pending():
            return False

        phase_start = time.monotonic()
        await launch_app(settings.app_type, self.forwarder, self.registrar(ProcessRole.APPLICATION))
        self.timings_ms["app"] = _ms_since(phase_start)
        if self._shutdown_pending():
            return False

        phase_start = time.monotonic()
        agent_bin = await ensure_agent_binary(settings.agent_source, settings.agent_bin, settings.agent_download_url)
        await start_agent(
            agent_bin,
            self.tailscale_ip,
            forwarder=self.forwarder if settings.forward_agent_logs else None,
            register=self.registrar(ProcessRole.AGENT),
        )
        self.timings_ms["agent"] = _ms_since(phase_start)

        logger.info(
            "Boot sequence complete",
            extra={
                "total_duration_ms": _ms_since(boot_start),
                "phases": dict(self.timings_ms),
                "processes": {
                    role.value: {"service": proc.service, "pid": proc.pid} for role, proc in self.processes.items()
                },
                "app_type": settings.app_type.value,
                "tailscale_ip": self.tailscale_ip,
            },
        )
        return True

    # ------------------------------------------------------------------
    # Steady state
    # ------------------------------------------------------------------

    async def wait_for_exit(self) -> int:
        """Block until the agent exits or shutdown is requested, then tear down."""
        agent = self.processes[ProcessRole.AGENT]
        agent_exit = asyncio.create_task(agent.wait(), name="agent-exit")
        shutdown_request = asyncio.create_task(self.shutdown_state.wait(), name="shutdown-request")

        done, pending = await asyncio.wait({agent_exit, shutdown_request}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()

        if shutdown_request in done:
            await self.teardown()
            return constants.EXIT_SUCCESS

        returncode = agent_exit.result()
        logger.error("Agent process exited unexpectedly", extra={"exit_code": returncode, "pid": agent.pid})
        # Later signals must not start a second teardown
        self.shutdown_state.request("agent-exit")
        await self.teardown()
        return exit_code_from_returncode(returncode)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def teardown(self) -> list[TerminationResult]:
        """Terminate all registered processes once; concurrent callers share the result."""
        if self._teardown_task is None:
            self._teardown_task = asyncio.create_task(self._teardown(), name="teardown")
        return await asyncio.shield(self._teardown_task)

    async def _teardown(self) -> list[TerminationResult]:
        start = time.monotonic()
        ordered = [self.processes[role] for role in TEARDOWN_ORDER if role in self.processes]
        results = await terminate_in_order(ordered, term_timeout=self.term_timeout)
        await self.forwarder.drain()

        logger.info(
            "shutdown complete",
            extra={
                "total_duration_ms": _ms_since(start),
                "breakdown": {r.service: r.duration_ms for r in results},
                "signal": self.shutdown_state.reason,
                "graceful": all(r.graceful for r in results),
            },
        )
        return results

    # ------------------------------------------------------------------
    # Entry
    # ------------------------------------------------------------------

    async def run(self) -> int:
        """Boot, supervise, tear down. Returns the process exit code."""
        if self.handle_signals:
            self.install_signal_handlers()
        try:
            try:
                completed = await self.boot()
            except BootError as e:
                logger.error(
                    f"Boot failed: {e.message}",
                    extra={"error_type": type(e).__name__, **e.context},
                )
                self.shutdown_state.request("boot-failure")
                await self.teardown()
                return constants.EXIT_BOOT_FAILURE
            except Exception as e:
                logger.error(
                    "Unhandled error in boot sequence",
                    extra={"error": str(e), "error_type": type(e).__name__},
                    exc_info=True,
                )
                self.shutdown_state.request("boot-failure")
                await self.teardown()
                return constants.EXIT_BOOT_FAILURE

            if not completed:
                await self.teardown()
                return constants.EXIT_SUCCESS

            return await self.wait_for_exit()
        finally:
            if self.handle_signals:
                self.remove_signal_handlers()


def _ms_since(start: float) -> int:
    return round((time.monotonic() - start) * 1000)


async def boot(**overrides: object) -> int:
    """Load configuration and run the supervisor. Returns the exit code."""
    logger.info("PodPilot Agent boot script starting")
    try:
        settings = load_settings(**overrides)
    except ConfigError as e:
        logger.error("Configuration validation failed", extra={"error": e.message, **e.context})
        return constants.EXIT_BOOT_FAILURE

    configure_logging(level=settings.log_level)
    logger.info(
        "Configuration loaded successfully",
        extra={
            "app_type": settings.app_type.value,
            "app_name": get_launch_spec(settings.app_type).name,
            "tailscale_hostname": settings.tailscale_hostname,
            "has_authkey": settings.has_authkey,
            "agent_source": settings.agent_source.value,
        },
    )
    return await Supervisor(settings).run()
