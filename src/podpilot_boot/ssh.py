"""Remote access over the tailnet: authorized_keys provisioning and sshd.

This whole phase is best effort. Any failure is logged as a warning and
boot continues without SSH.

SSH_AUTHORIZED_KEYS holds one entry per line. An entry of the form
``github.com/<username>`` is replaced by the public keys GitHub publishes
for that user.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import TYPE_CHECKING

import aiofiles
import aiofiles.os
import aiohttp

from podpilot_boot import constants
from podpilot_boot._logging import get_logger
from podpilot_boot.exceptions import ProcessError
from podpilot_boot.subprocess_utils import spawn_process

if TYPE_CHECKING:
    from collections.abc import Callable

    from podpilot_boot.log_forward import LogForwarder
    from podpilot_boot.platform_utils import ManagedProcess

logger = get_logger(__name__)

SERVICE = "sshd"

GITHUB_USER_ENTRY = re.compile(r"^github\.com/([a-zA-Z0-9-]+)$")

_chmod = aiofiles.os.wrap(os.chmod)


async def fetch_github_keys(
    session: aiohttp.ClientSession,
    username: str,
    url_template: str = constants.GITHUB_KEYS_URL,
) -> list[str]:
    """Fetch a GitHub user's public SSH keys; returns [] on any failure."""
    url = url_template.format(username=username)
    logger.debug(f"Fetching SSH keys from GitHub for {username}")
    try:
        timeout = aiohttp.ClientTimeout(total=constants.GITHUB_KEYS_TIMEOUT_SECONDS)
        async with session.get(url, timeout=timeout) as response:
            if response.status != 200:
                logger.warning(
                    f"Failed to fetch GitHub keys for {username}",
                    extra={"username": username, "status": response.status},
                )
                return []
            text = await response.text()
    except (aiohttp.ClientError, TimeoutError) as e:
        logger.warning(
            f"Error fetching GitHub keys for {username}",
            extra={"username": username, "error": str(e) or type(e).__name__},
        )
        return []

    keys = [line.strip() for line in text.splitlines() if line.strip()]
    logger.info(f"Fetched {len(keys)} SSH keys from GitHub", extra={"username": username})
    return keys


async def resolve_authorized_keys(entries: str, url_template: str = constants.GITHUB_KEYS_URL) -> list[str]:
    """Expand SSH_AUTHORIZED_KEYS into a deduplicated, ordered key list."""
    keys: list[str] = []
    lines = [line.strip() for line in entries.splitlines() if line.strip()]

    github_users = [m.group(1) for line in lines if (m := GITHUB_USER_ENTRY.match(line))]
    session = aiohttp.ClientSession() if github_users else None
    try:
        for line in lines:
            match = GITHUB_USER_ENTRY.match(line)
            if match and session is not None:
                keys.extend(await fetch_github_keys(session, match.group(1), url_template))
            else:
                keys.append(line)
    finally:
        if session is not None:
            await session.close()

    return list(dict.fromkeys(keys))


async def setup_authorized_keys(
    entries: str | None,
    ssh_dir: Path = constants.SSH_DIR,
    *,
    url_template: str = constants.GITHUB_KEYS_URL,
) -> Path | None:
    """Write ``authorized_keys`` unless one is already mounted.

    Returns:
        Path of the authorized_keys file in use, or None when no keys exist
    """
    authorized_keys = ssh_dir / "authorized_keys"

    if not await aiofiles.os.path.isdir(ssh_dir):
        await aiofiles.os.makedirs(ssh_dir, exist_ok=True)
        await _chmod(ssh_dir, constants.SSH_DIR_MODE)
        logger.debug(f"Created {ssh_dir} directory")

    if await aiofiles.os.path.exists(authorized_keys):
        logger.info("Using existing authorized_keys file")
        return authorized_keys

    if not entries:
        logger.warning("No SSH keys configured (SSH_AUTHORIZED_KEYS not set and no mounted file)")
        return None

    logger.info("Processing SSH_AUTHORIZED_KEYS")
    keys = await resolve_authorized_keys(entries, url_template)
    if not keys:
        logger.warning("No valid SSH keys found after processing")
        return None

    logger.info(f"Writing {len(keys)} unique SSH keys to authorized_keys")
    async with aiofiles.open(authorized_keys, "w") as f:
        await f.write("\n".join(keys) + "\n")
    await _chmod(authorized_keys, constants.AUTHORIZED_KEYS_MODE)
    logger.debug("authorized_keys written successfully")
    return authorized_keys


async def start_sshd(
    forwarder: LogForwarder,
    register: Callable[[ManagedProcess], None],
    *,
    authorized_keys_env: str | None = None,
    ssh_dir: Path = constants.SSH_DIR,
    command: list[str] | None = None,
) -> ManagedProcess | None:
    """Provision keys and start sshd in the foreground (``-D -e``).

    Returns:
        The sshd process, or None when it could not be started
    """
    try:
        await setup_authorized_keys(authorized_keys_env, ssh_dir)
    except OSError as e:
        logger.warning("Error setting up authorized_keys", extra={"error": str(e), "error_type": type(e).__name__})

    try:
        proc = await spawn_process(command or [constants.SSHD_BIN, "-D", "-e"], service=SERVICE)
    except ProcessError as e:
        logger.warning("Failed to start SSH daemon (SSH will be unavailable)", extra={**e.context, "error": e.message})
        return None

    register(proc)
    forwarder.attach(proc)
    logger.debug("SSH daemon started", extra={"pid": proc.pid})
    return proc
