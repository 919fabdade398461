"""GPU application launching.

LAUNCH_SPECS is the single source of truth for how each application is
started. It is checked against AppType at import time, so adding an
application id without a launch spec fails immediately (and in the test
suite) instead of at boot on a rented GPU.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

from podpilot_boot import constants
from podpilot_boot._logging import get_logger
from podpilot_boot.exceptions import AppError, BootTimeoutError, ProcessError
from podpilot_boot.models import AppType, LaunchSpec
from podpilot_boot.subprocess_utils import spawn_process, wait_for_port

if TYPE_CHECKING:
    from collections.abc import Callable

    from podpilot_boot.log_forward import LogForwarder
    from podpilot_boot.platform_utils import ManagedProcess

logger = get_logger(__name__)

LAUNCH_SPECS: dict[AppType, LaunchSpec] = {
    AppType.A1111: LaunchSpec(
        name="A1111",
        cwd=Path("/app/stable-diffusion-webui"),
        command=(
            "python3",
            "launch.py",
            "--listen",
            "--xformers",
            "--enable-insecure-extension-access",
            "--skip-prepare-environment",
            "--skip-install",
        ),
        port=constants.APP_PORT,
    ),
    AppType.COMFYUI: LaunchSpec(
        name="ComfyUI",
        cwd=Path("/workspace/ComfyUI"),
        command=("python3", "main.py", "--listen", "0.0.0.0", "--port", str(constants.APP_PORT)),
        port=constants.APP_PORT,
    ),
    AppType.FOOOCUS: LaunchSpec(
        name="Fooocus",
        cwd=Path("/workspace/Fooocus"),
        command=("python3", "entry_with_update.py", "--listen", "0.0.0.0", "--port", str(constants.APP_PORT)),
        port=constants.APP_PORT,
    ),
    AppType.KOHYA: LaunchSpec(
        name="Kohya",
        cwd=Path("/workspace/kohya_ss"),
        command=("python3", "kohya_gui.py", "--listen", "0.0.0.0", "--server_port", str(constants.APP_PORT)),
        port=constants.APP_PORT,
    ),
}


def _check_launch_specs() -> None:
    missing = [app.value for app in AppType if app not in LAUNCH_SPECS]
    if missing:
        raise RuntimeError(f"No launch spec for application(s): {', '.join(missing)}")


_check_launch_specs()


def get_launch_spec(app_type: AppType) -> LaunchSpec:
    """Return the launch spec for ``app_type`` (total over AppType)."""
    return LAUNCH_SPECS[app_type]


async def launch_app(
    app_type: AppType,
    forwarder: LogForwarder,
    register: Callable[[ManagedProcess], None],
    *,
    ready_timeout: float = constants.APP_READY_TIMEOUT_SECONDS,
    poll_interval: float = constants.APP_READY_POLL_INTERVAL_SECONDS,
    spec: LaunchSpec | None = None,
) -> ManagedProcess:
    """Spawn the application and wait for its port to accept connections.

    Args:
        app_type: Application to launch
        forwarder: Log forwarder receiving the app's piped output
        register: Hands the spawned process to the supervisor for teardown
        ready_timeout: Seconds to wait for the port
        poll_interval: Seconds between port probes
        spec: Override the launch spec (tests)

    Raises:
        AppError: spawn failure, early exit, or readiness timeout
    """
    spec = spec or get_launch_spec(app_type)
    logger.debug(
        f"Launching {spec.name}",
        extra={"app_type": app_type.value, "cwd": str(spec.cwd), "port": spec.port},
    )

    try:
        proc = await spawn_process(spec.command, service=spec.service, cwd=spec.cwd)
    except ProcessError as e:
        raise AppError(
            f"Failed to spawn {spec.name}",
            app_type=app_type.value,
            port=spec.port,
            context={"phase": "spawn", "command": e.command, "error": e.message},
        ) from e

    register(proc)
    forwarder.attach(proc)
    logger.debug(f"{spec.name} process started", extra={"app_type": app_type.value, "pid": proc.pid})

    def still_running() -> None:
        if proc.returncode is not None:
            raise AppError(
                f"{spec.name} exited with code {proc.returncode} before listening on port {spec.port}",
                app_type=app_type.value,
                port=spec.port,
                context={"phase": "readiness", "returncode": proc.returncode, "output_tail": proc.tail.text()},
            )

    logger.debug(f"Waiting for {spec.name} to be ready on port {spec.port}", extra={"app_type": app_type.value})
    try:
        await wait_for_port(
            spec.port,
            timeout=ready_timeout,
            interval=poll_interval,
            abort_check=still_running,
        )
    except BootTimeoutError as e:
        raise AppError(
            f"{spec.name} did not become ready on port {spec.port}",
            app_type=app_type.value,
            port=spec.port,
            context={"phase": "readiness", **e.context},
        ) from e

    logger.info(
        f"{spec.name} is ready and listening on port {spec.port}",
        extra={"app_type": app_type.value, "pid": proc.pid},
    )
    return proc
