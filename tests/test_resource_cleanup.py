"""Tests for SIGTERM -> SIGKILL process termination with real children."""

import asyncio
import signal

import pytest

from podpilot_boot.resource_cleanup import terminate_in_order, terminate_process

SLEEPER = "import time; time.sleep(60)"

# Ignores SIGTERM, announces readiness once the handler is installed
STUBBORN = (
    "import signal, sys, time\n"
    "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
    "print('ready', flush=True)\n"
    "time.sleep(60)\n"
)


class TestTerminateProcess:
    """Graceful, forced and already-exited paths."""

    async def test_graceful(self, python_child) -> None:
        proc = await python_child(SLEEPER, service="comfyui", pipe_output=False)

        result = await terminate_process(proc, term_timeout=5)

        assert result.graceful is True
        assert result.service == "comfyui"
        assert result.pid == proc.pid
        assert result.returncode == -signal.SIGTERM
        assert result.error is None

    async def test_forced_kill_is_reaped(self, python_child) -> None:
        proc = await python_child(STUBBORN, service="agent")
        assert proc.stdout is not None
        assert (await asyncio.wait_for(proc.stdout.readline(), timeout=10)).strip() == b"ready"

        result = await terminate_process(proc, term_timeout=0.3)

        assert result.graceful is False
        assert result.returncode == -signal.SIGKILL
        assert proc.returncode == -signal.SIGKILL  # reaped, no zombie
        assert result.duration_ms >= 250

    async def test_already_exited(self, python_child) -> None:
        proc = await python_child("raise SystemExit(7)", pipe_output=False)
        await proc.wait()

        result = await terminate_process(proc)

        assert result.graceful is True
        assert result.returncode == 7


class TestTerminateInOrder:
    async def test_order_preserved(self, python_child) -> None:
        services = ["agent", "comfyui", "sshd", "tailscaled"]
        procs = [await python_child(SLEEPER, service=s, pipe_output=False) for s in services]

        results = await terminate_in_order(procs, term_timeout=5)

        assert [r.service for r in results] == services
        assert all(p.returncode is not None for p in procs)


@pytest.mark.usefixtures("debug_logging")
class TestTerminateWithLoggingEnabled:
    """Every log call on the termination paths must build a valid record."""

    async def test_forced_kill_logs_and_reaps(self, python_child, caplog: pytest.LogCaptureFixture) -> None:
        proc = await python_child(STUBBORN, service="agent")
        assert proc.stdout is not None
        assert (await asyncio.wait_for(proc.stdout.readline(), timeout=10)).strip() == b"ready"

        result = await terminate_process(proc, term_timeout=0.3)

        assert result.returncode == -signal.SIGKILL
        assert result.error is None
        forced = next(r for r in caplog.records if r.getMessage().startswith("process did not exit gracefully"))
        assert forced.service == "agent"  # type: ignore[attr-defined]

    async def test_in_order_reaches_every_process(self, python_child) -> None:
        services = ["comfyui", "sshd", "tailscaled"]
        procs = [await python_child(SLEEPER, service=s, pipe_output=False) for s in services]

        results = await terminate_in_order(procs, term_timeout=5)

        assert [r.service for r in results] == services
        assert all(r.graceful and r.error is None for r in results)
        assert all(p.returncode == -signal.SIGTERM for p in procs)

    async def test_already_exited_logs(self, python_child) -> None:
        proc = await python_child("pass", pipe_output=False)
        await proc.wait()

        result = await terminate_process(proc)

        assert result.returncode == 0
        assert result.error is None
