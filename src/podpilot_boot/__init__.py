"""podpilot-boot: boot orchestrator for PodPilot GPU instances.

Runs as the container's entry process. It brings up private networking
(Tailscale in userspace mode), optional SSH, one GPU application
(A1111, ComfyUI, Fooocus or Kohya) and the PodPilot agent, then supervises
them until the agent exits or the container is told to stop.

Programmatic use:
    ```python
    import asyncio
    from podpilot_boot import Supervisor, load_settings

    settings = load_settings(app_type="comfyui")
    exit_code = asyncio.run(Supervisor(settings).run())
    ```

Every record the orchestrator and its children produce is written to
stdout as one JSON object per line.
"""

from podpilot_boot.exceptions import (
    AgentError,
    AppError,
    AssetDownloadError,
    BootError,
    BootTimeoutError,
    ConfigError,
    ProcessError,
    TailscaleError,
)
from podpilot_boot.models import AgentSource, AppType, LaunchSpec, ProcessRole, Severity, Stream
from podpilot_boot.settings import BootSettings, load_settings
from podpilot_boot.supervisor import Supervisor

__all__ = [
    "AgentError",
    "AgentSource",
    "AppError",
    "AppType",
    "AssetDownloadError",
    "BootError",
    "BootSettings",
    "BootTimeoutError",
    "ConfigError",
    "LaunchSpec",
    "ProcessError",
    "ProcessRole",
    "Severity",
    "Stream",
    "Supervisor",
    "TailscaleError",
    "load_settings",
]

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("podpilot-boot")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"
