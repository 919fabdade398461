"""Shared pytest fixtures for podpilot-boot tests."""

import asyncio
import contextlib
import logging
import socket
import sys
from collections.abc import AsyncGenerator, Awaitable, Callable, Generator
from pathlib import Path

import pytest

from podpilot_boot._logging import LIBRARY_LOGGER_NAME, configure_logging, shutdown_logging
from podpilot_boot.platform_utils import ManagedProcess
from podpilot_boot.settings import BootSettings
from podpilot_boot.subprocess_utils import spawn_process

# Everything BootSettings reads. Cleared for every test so the developer's
# shell (or CI) cannot leak configuration into assertions.
BOOT_ENV_VARS = (
    "APP_TYPE",
    "TAILSCALE_AUTHKEY",
    "TAILSCALE_HOSTNAME",
    "TAILSCALE_TAGS",
    "AGENT_SOURCE",
    "AGENT_BIN",
    "AGENT_DOWNLOAD_URL",
    "FORWARD_AGENT_LOGS",
    "SSH_AUTHORIZED_KEYS",
    "LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def clean_boot_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in BOOT_ENV_VARS:
        monkeypatch.delenv(name, raising=False)


# ============================================================================
# Settings
# ============================================================================


@pytest.fixture
def make_settings(tmp_path: Path) -> Callable[..., BootSettings]:
    """Factory for BootSettings with a test-local agent path.

    Usage:
        def test_something(make_settings):
            settings = make_settings(app_type="kohya", tailscale_authkey="tskey-x")
    """

    def _make(**overrides: object) -> BootSettings:
        values: dict[str, object] = {"app_type": "comfyui", "agent_bin": tmp_path / "podpilot-agent"}
        values.update(overrides)
        return BootSettings(**values)  # type: ignore[arg-type]

    return _make


# ============================================================================
# Child processes
# ============================================================================


@pytest.fixture
async def python_child() -> AsyncGenerator[Callable[..., Awaitable[ManagedProcess]], None]:
    """Spawn ``python -c <code>`` as a ManagedProcess; killed and reaped on teardown.

    Usage:
        async def test_something(python_child):
            proc = await python_child("print('hi')", service="comfyui")
    """
    spawned: list[ManagedProcess] = []

    async def _spawn(code: str, *, service: str = "test", pipe_output: bool = True) -> ManagedProcess:
        proc = await spawn_process([sys.executable, "-c", code], service=service, pipe_output=pipe_output)
        spawned.append(proc)
        return proc

    yield _spawn

    for proc in spawned:
        if proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                proc.async_proc.kill()
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(proc.async_proc.wait(), timeout=5)


@pytest.fixture
def registered() -> list[ManagedProcess]:
    """Collects processes handed to a ``register`` callback."""
    return []


@pytest.fixture
async def reap_registered(registered: list[ManagedProcess]) -> AsyncGenerator[list[ManagedProcess], None]:
    """Like ``registered`` but kills whatever is still running at teardown."""
    yield registered
    for proc in registered:
        if proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                proc.async_proc.kill()
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(proc.async_proc.wait(), timeout=5)


@pytest.fixture
def free_port() -> int:
    """A localhost TCP port with nothing listening on it."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture
def debug_logging() -> Generator[None, None, None]:
    """Run the test with the package's JSON logging enabled at DEBUG."""
    configure_logging(level="debug")
    try:
        yield
    finally:
        shutdown_logging()
        logging.getLogger(LIBRARY_LOGGER_NAME).setLevel(logging.NOTSET)
