"""Tests for the boot sequence, steady state and teardown.

Phase functions are replaced with fakes that register stand-in processes;
the agent is a real Python child so exit codes and signals are real.
"""

import asyncio
import itertools
import os
import signal
from dataclasses import dataclass
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from podpilot_boot import agent as agent_module
from podpilot_boot import supervisor as supervisor_module
from podpilot_boot.exceptions import AppError, TailscaleError
from podpilot_boot.models import ProcessRole
from podpilot_boot.supervisor import ShutdownState, Supervisor, exit_code_from_returncode
from podpilot_boot.tailscale import NetworkState

SLEEPER = "import time; time.sleep(60)"

# Ignores SIGTERM, announces readiness once the handler is installed
STUBBORN = (
    "import signal, sys, time\n"
    "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
    "print('ready', flush=True)\n"
    "time.sleep(60)\n"
)

_pids = itertools.count(10_000)


class _FakeProc:
    """Already-exited stand-in; teardown treats it as gracefully stopped."""

    def __init__(self, service: str) -> None:
        self.service = service
        self.pid = next(_pids)
        self.returncode = 0


@dataclass
class _Phases:
    network: AsyncMock
    sshd: AsyncMock
    app: AsyncMock
    agent_binary: AsyncMock
    agent: AsyncMock


@pytest.fixture
def phases(monkeypatch: pytest.MonkeyPatch) -> _Phases:
    async def network(settings, forwarder, register):
        proc = _FakeProc("tailscaled")
        register(proc)
        return NetworkState(process=proc, ip="100.64.0.1", joined=True)  # type: ignore[arg-type]

    async def sshd(forwarder, register, *, authorized_keys_env=None):
        proc = _FakeProc("sshd")
        register(proc)
        return proc

    async def app(app_type, forwarder, register):
        proc = _FakeProc(app_type.value)
        register(proc)
        return proc

    mocks = _Phases(
        network=AsyncMock(side_effect=network),
        sshd=AsyncMock(side_effect=sshd),
        app=AsyncMock(side_effect=app),
        agent_binary=AsyncMock(side_effect=lambda source, bin_path, url=None: bin_path),
        agent=AsyncMock(),
    )
    monkeypatch.setattr(supervisor_module, "initialize_network", mocks.network)
    monkeypatch.setattr(supervisor_module, "start_sshd", mocks.sshd)
    monkeypatch.setattr(supervisor_module, "launch_app", mocks.app)
    monkeypatch.setattr(supervisor_module, "ensure_agent_binary", mocks.agent_binary)
    monkeypatch.setattr(supervisor_module, "start_agent", mocks.agent)
    return mocks


def _agent_running(python_child, code: str):
    async def start(bin_path: Path, tailscale_ip: str | None, *, forwarder, register):
        proc = await python_child(code, service="agent", pipe_output=False)
        register(proc)
        return proc

    return start


# ============================================================================
# Shutdown guard
# ============================================================================


class TestShutdownState:
    async def test_transitions_once(self) -> None:
        state = ShutdownState()
        assert not state.requested

        assert state.request("SIGTERM") is True
        assert state.request("SIGINT") is False
        assert state.requested
        assert state.reason == "SIGTERM"
        await asyncio.wait_for(state.wait(), timeout=1)

    async def test_concurrent_requests_tear_down_once(
        self, make_settings, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        calls: list[list[str]] = []

        async def recording_terminate(processes, term_timeout):
            calls.append([p.service for p in processes])
            await asyncio.sleep(0.05)
            return []

        monkeypatch.setattr(supervisor_module, "terminate_in_order", recording_terminate)
        sup = Supervisor(make_settings(), handle_signals=False)
        for role, service in [
            (ProcessRole.NETWORK, "tailscaled"),
            (ProcessRole.REMOTE_ACCESS, "sshd"),
            (ProcessRole.APPLICATION, "comfyui"),
            (ProcessRole.AGENT, "agent"),
        ]:
            sup.register(role, _FakeProc(service))  # type: ignore[arg-type]

        for _ in range(10):
            sup.request_shutdown("SIGTERM")
        await asyncio.gather(*(sup.teardown() for _ in range(10)))

        assert calls == [["agent", "comfyui", "sshd", "tailscaled"]]

    async def test_duplicate_role_rejected(self, make_settings) -> None:
        sup = Supervisor(make_settings(), handle_signals=False)
        sup.register(ProcessRole.AGENT, _FakeProc("agent"))  # type: ignore[arg-type]
        with pytest.raises(RuntimeError):
            sup.register(ProcessRole.AGENT, _FakeProc("agent"))  # type: ignore[arg-type]


class TestExitCodes:
    @pytest.mark.parametrize(("returncode", "expected"), [(0, 0), (3, 3), (-9, 137), (-15, 143)])
    def test_mapping(self, returncode: int, expected: int) -> None:
        assert exit_code_from_returncode(returncode) == expected


# ============================================================================
# Boot sequence
# ============================================================================


class TestBootSequence:
    """Phases run in order and a failure stops the sequence."""

    async def test_agent_exit_code_propagates(self, make_settings, phases: _Phases, python_child) -> None:
        phases.agent.side_effect = _agent_running(python_child, "import sys; sys.exit(3)")
        sup = Supervisor(make_settings(), handle_signals=False)

        exit_code = await asyncio.wait_for(sup.run(), timeout=10)

        assert exit_code == 3
        results = await sup.teardown()
        assert [r.service for r in results] == ["agent", "comfyui", "sshd", "tailscaled"]
        assert set(sup.timings_ms) == {"tailscale", "ssh", "app", "agent"}
        assert sup.shutdown_state.reason == "agent-exit"

    async def test_agent_receives_tailscale_ip(self, make_settings, phases: _Phases, python_child) -> None:
        phases.agent.side_effect = _agent_running(python_child, "pass")
        sup = Supervisor(make_settings(forward_agent_logs=True), handle_signals=False)

        await asyncio.wait_for(sup.run(), timeout=10)

        args, kwargs = phases.agent.await_args
        assert args[1] == "100.64.0.1"
        assert kwargs["forwarder"] is sup.forwarder

    async def test_agent_output_inherited_by_default(self, make_settings, phases: _Phases, python_child) -> None:
        phases.agent.side_effect = _agent_running(python_child, "pass")
        sup = Supervisor(make_settings(), handle_signals=False)

        await asyncio.wait_for(sup.run(), timeout=10)

        assert phases.agent.await_args.kwargs["forwarder"] is None

    async def test_app_readiness_failure_never_starts_agent(self, make_settings, phases: _Phases) -> None:
        async def app_times_out(app_type, forwarder, register):
            register(_FakeProc(app_type.value))
            raise AppError(
                "ComfyUI did not become ready on port 7860",
                app_type=app_type.value,
                port=7860,
                context={"phase": "readiness"},
            )

        phases.app.side_effect = app_times_out
        sup = Supervisor(make_settings(), handle_signals=False)

        exit_code = await sup.run()

        assert exit_code == 1
        phases.agent_binary.assert_not_awaited()
        phases.agent.assert_not_awaited()
        results = await sup.teardown()
        assert [r.service for r in results] == ["comfyui", "sshd", "tailscaled"]

    async def test_network_failure_is_fatal(self, make_settings, phases: _Phases) -> None:
        phases.network.side_effect = TailscaleError("Failed to connect to Tailscale after 5 attempts")
        sup = Supervisor(make_settings(), handle_signals=False)

        assert await sup.run() == 1
        phases.sshd.assert_not_awaited()
        phases.app.assert_not_awaited()

    async def test_sshd_unavailable_is_not_fatal(self, make_settings, phases: _Phases, python_child) -> None:
        phases.sshd.side_effect = None
        phases.sshd.return_value = None
        phases.agent.side_effect = _agent_running(python_child, "pass")
        sup = Supervisor(make_settings(), handle_signals=False)

        assert await asyncio.wait_for(sup.run(), timeout=10) == 0
        assert ProcessRole.REMOTE_ACCESS not in sup.processes
        assert "ssh" not in sup.timings_ms
        phases.app.assert_awaited_once()

    async def test_unexpected_error_tears_down(self, make_settings, phases: _Phases) -> None:
        async def app_crashes(app_type, forwarder, register):
            register(_FakeProc(app_type.value))
            raise RuntimeError("unexpected")

        phases.app.side_effect = app_crashes
        sup = Supervisor(make_settings(), handle_signals=False)

        assert await sup.run() == 1
        assert sup.shutdown_state.reason == "boot-failure"
        results = await sup.teardown()
        assert [r.service for r in results] == ["comfyui", "sshd", "tailscaled"]
        phases.agent.assert_not_awaited()

    async def test_unusable_agent_directory_is_boot_failure(
        self, make_settings, phases: _Phases, tmp_path: Path, free_port: int, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(supervisor_module, "ensure_agent_binary", agent_module.ensure_agent_binary)
        not_a_dir = tmp_path / "not-a-dir"
        not_a_dir.write_bytes(b"")
        settings = make_settings(
            agent_source="download",
            agent_download_url=f"http://127.0.0.1:{free_port}/podpilot-agent",
            agent_bin=not_a_dir / "podpilot-agent",
        )
        sup = Supervisor(settings, handle_signals=False)

        assert await sup.run() == 1
        phases.agent.assert_not_awaited()
        results = await sup.teardown()
        assert [r.service for r in results] == ["comfyui", "sshd", "tailscaled"]

    async def test_shutdown_during_boot_stops_advancing(self, make_settings, phases: _Phases) -> None:
        sup = Supervisor(make_settings(), handle_signals=False)

        async def app_then_signal(app_type, forwarder, register):
            register(_FakeProc(app_type.value))
            sup.request_shutdown("SIGTERM")  # arrives while the phase is running

        phases.app.side_effect = app_then_signal

        assert await sup.run() == 0
        phases.agent_binary.assert_not_awaited()
        results = await sup.teardown()
        assert [r.service for r in results] == ["comfyui", "sshd", "tailscaled"]


# ============================================================================
# Steady state
# ============================================================================


class TestSteadyState:
    async def test_sigterm_tears_down_and_exits_zero(self, make_settings, phases: _Phases, python_child) -> None:
        phases.agent.side_effect = _agent_running(python_child, SLEEPER)
        sup = Supervisor(make_settings(), handle_signals=True)

        loop = asyncio.get_running_loop()
        loop.call_later(0.3, os.kill, os.getpid(), signal.SIGTERM)
        exit_code = await asyncio.wait_for(sup.run(), timeout=15)

        assert exit_code == 0
        assert sup.shutdown_state.reason == "SIGTERM"
        agent = sup.processes[ProcessRole.AGENT]
        assert agent.returncode == -signal.SIGTERM
        results = await sup.teardown()
        assert results[0].service == "agent"
        assert results[0].graceful is True


# ============================================================================
# Entry
# ============================================================================


class TestBootEntry:
    async def test_missing_app_type_spawns_nothing(self, phases: _Phases, caplog: pytest.LogCaptureFixture) -> None:
        caplog.set_level("INFO", logger="podpilot_boot")

        assert await supervisor_module.boot() == 1

        phases.network.assert_not_awaited()
        failure = next(r for r in caplog.records if r.getMessage() == "Configuration validation failed")
        assert failure.field == "APP_TYPE"  # type: ignore[attr-defined]


# ============================================================================
# Teardown with real processes
# ============================================================================


@pytest.mark.usefixtures("debug_logging")
class TestRealTeardown:
    async def test_reverse_order_with_stubborn_child(self, make_settings, python_child) -> None:
        sup = Supervisor(make_settings(), term_timeout=0.3, handle_signals=False)
        network = await python_child(SLEEPER, service="tailscaled", pipe_output=False)
        remote = await python_child(SLEEPER, service="sshd", pipe_output=False)
        app = await python_child(STUBBORN, service="comfyui")
        agent = await python_child(SLEEPER, service="agent", pipe_output=False)
        assert app.stdout is not None
        assert (await asyncio.wait_for(app.stdout.readline(), timeout=10)).strip() == b"ready"
        sup.register(ProcessRole.NETWORK, network)
        sup.register(ProcessRole.REMOTE_ACCESS, remote)
        sup.register(ProcessRole.APPLICATION, app)
        sup.register(ProcessRole.AGENT, agent)

        sup.request_shutdown("SIGTERM")
        results = await asyncio.wait_for(sup.teardown(), timeout=15)

        assert [r.service for r in results] == ["agent", "comfyui", "sshd", "tailscaled"]
        assert app.returncode == -signal.SIGKILL
        assert [r.graceful for r in results] == [True, False, True, True]
        assert all(p.returncode is not None for p in (network, remote, app, agent))
