"""Command-line entry point: the container's PID 1.

Usage:
    APP_TYPE=comfyui TAILSCALE_AUTHKEY=tskey-... podpilot-boot
    podpilot-boot --log-level debug

All configuration comes from the environment; the only options are for
operating the boot script itself.
"""

from __future__ import annotations

import asyncio
import sys
from typing import NoReturn

import click

from podpilot_boot import __version__
from podpilot_boot._logging import LEVELS, configure_logging, shutdown_logging
from podpilot_boot.supervisor import boot


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.option(
    "--log-level",
    type=click.Choice(list(LEVELS), case_sensitive=False),
    default=None,
    help="Override LOG_LEVEL for the boot script's own records",
)
@click.version_option(__version__, "-V", "--version", prog_name="podpilot-boot")
def main(log_level: str | None) -> NoReturn:
    """Boot a GPU instance and supervise its processes.

    \b
    Phases, in order:
      1. Validate configuration (APP_TYPE, TAILSCALE_*, AGENT_*)
      2. Start tailscaled and join the tailnet
      3. Start sshd (best effort)
      4. Launch the GPU application and wait for its port
      5. Start the PodPilot agent

    SIGTERM or SIGINT tears everything down in reverse order.
    """
    configure_logging(level=log_level or "info")
    overrides = {"log_level": log_level.lower()} if log_level else {}

    try:
        exit_code = asyncio.run(boot(**overrides))
    finally:
        shutdown_logging()

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
