"""PodPilot agent acquisition and startup.

The agent reaches the control plane only through the Tailscale proxy, so
the proxy variables are part of its spawn environment and are in place
before it makes its first request.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import aiofiles.os

from podpilot_boot import constants
from podpilot_boot._logging import get_logger
from podpilot_boot.asset_downloader import download_file
from podpilot_boot.exceptions import AgentError, AssetDownloadError, ProcessError
from podpilot_boot.models import AgentSource
from podpilot_boot.subprocess_utils import spawn_process

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

    from podpilot_boot.log_forward import LogForwarder
    from podpilot_boot.platform_utils import ManagedProcess

logger = get_logger(__name__)

SERVICE = "agent"


async def ensure_agent_binary(source: AgentSource, bin_path: Path, download_url: str | None = None) -> Path:
    """Make sure the agent executable exists at ``bin_path``.

    - embedded: must have been baked into the image
    - local: must be bind-mounted (development)
    - download: fetched from ``download_url`` unless already present

    Raises:
        AgentError: binary missing, or download failed
    """
    match source:
        case AgentSource.EMBEDDED | AgentSource.LOCAL:
            if not await aiofiles.os.path.isfile(bin_path):
                hint = "baked into the image" if source is AgentSource.EMBEDDED else "mounted into the container"
                raise AgentError(
                    f"Agent binary not found at {bin_path} (AGENT_SOURCE={source.value}, expected it to be {hint})",
                    context={"agent_source": source.value, "agent_bin": str(bin_path)},
                )
            logger.debug(
                "Using existing agent binary",
                extra={"agent_source": source.value, "agent_bin": str(bin_path)},
            )
        case AgentSource.DOWNLOAD:
            if not download_url:
                raise AgentError(
                    "AGENT_DOWNLOAD_URL is required when AGENT_SOURCE is 'download'",
                    context={"agent_source": source.value},
                )
            try:
                await download_file(download_url, bin_path)
            except AssetDownloadError as e:
                raise AgentError(
                    f"Failed to download agent binary: {e.message}",
                    context={"agent_source": source.value, "agent_bin": str(bin_path), **e.context},
                ) from e
    return bin_path


def agent_environment(tailscale_ip: str | None) -> dict[str, str]:
    """Variables added to the agent's inherited environment."""
    env = dict(constants.AGENT_PROXY_ENV)
    if tailscale_ip:
        env["TAILSCALE_IP"] = tailscale_ip
    return env


async def start_agent(
    bin_path: Path,
    tailscale_ip: str | None,
    *,
    forwarder: LogForwarder | None,
    register: Callable[[ManagedProcess], None],
) -> ManagedProcess:
    """Spawn the agent with the proxy environment.

    Args:
        bin_path: Agent executable
        tailscale_ip: Node address exported as TAILSCALE_IP (omitted when not joined)
        forwarder: Classify the agent's output; None inherits stdout/stderr
        register: Hands the spawned process to the supervisor for teardown

    Raises:
        AgentError: the agent could not be spawned
    """
    env = agent_environment(tailscale_ip)
    logger.debug(
        "Starting PodPilot agent with proxy configuration",
        extra={
            "agent_bin": str(bin_path),
            "tailscale_ip": tailscale_ip,
            "proxy": constants.AGENT_PROXY_ENV["ALL_PROXY"],
        },
    )

    try:
        proc = await spawn_process([str(bin_path)], service=SERVICE, env=env, pipe_output=forwarder is not None)
    except ProcessError as e:
        raise AgentError(
            "Failed to start PodPilot agent",
            context={"agent_bin": str(bin_path), "error": e.message},
        ) from e

    register(proc)
    if forwarder is not None:
        forwarder.attach(proc)

    logger.info("PodPilot agent started", extra={"pid": proc.pid, "tailscale_ip": tailscale_ip})
    return proc
