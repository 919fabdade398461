"""Managed process handle.

Provides the single owning structure per supervised child: a PID-reuse
safe wrapper around asyncio.subprocess.Process (via psutil) that also keeps
a bounded tail of recent output for failure diagnostics.

Ownership model:
- The component that spawns a child creates its ManagedProcess.
- Log forwarding tasks only read ``stdout``/``stderr`` and append to ``tail``.
- Once spawn succeeds the Supervisor registers it and is the only caller of
  ``terminate()``/``kill()``.
"""

import asyncio
import contextlib
from collections import deque

import psutil


class OutputTail:
    """Bounded buffer holding the most recent bytes of a child's output."""

    def __init__(self, max_bytes: int) -> None:
        self.max_bytes = max_bytes
        self._lines: deque[str] = deque()
        self._size = 0

    def append(self, line: str) -> None:
        encoded = len(line.encode()) + 1
        self._lines.append(line)
        self._size += encoded
        while self._size > self.max_bytes and len(self._lines) > 1:
            dropped = self._lines.popleft()
            self._size -= len(dropped.encode()) + 1

    def text(self) -> str:
        """Return the retained output, trimmed to at most ``max_bytes`` bytes."""
        joined = "\n".join(self._lines)
        raw = joined.encode()
        if len(raw) <= self.max_bytes:
            return joined
        return raw[-self.max_bytes :].decode(errors="ignore")

    def __len__(self) -> int:
        return self._size


class ManagedProcess:
    """PID-reuse safe handle for one supervised child process.

    Wraps asyncio.subprocess.Process with psutil.Process so signals are never
    delivered to a recycled PID.
    """

    def __init__(self, async_proc: asyncio.subprocess.Process, service: str, *, tail_bytes: int = 4096) -> None:
        """Wrap an already-spawned asyncio process.

        Args:
            async_proc: asyncio subprocess.Process instance
            service: Service tag (``tailscaled``, ``sshd``, ``comfyui``, ``agent``, ...)
            tail_bytes: Size of the diagnostic output tail
        """
        self.async_proc = async_proc
        self.service = service
        self.tail = OutputTail(tail_bytes)
        self.psutil_proc: psutil.Process | None = None

        if async_proc.pid:
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                # Process already died or inaccessible
                self.psutil_proc = psutil.Process(async_proc.pid)

    def __repr__(self) -> str:
        return f"ManagedProcess(service={self.service!r}, pid={self.pid}, returncode={self.returncode})"

    async def is_running(self) -> bool:
        """Check if process is still running (PID-reuse safe)."""
        if self.async_proc.returncode is not None:
            return False
        if not self.psutil_proc:
            return True

        try:
            return await asyncio.to_thread(self.psutil_proc.is_running)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return False

    @property
    def pid(self) -> int:
        """Process ID."""
        return self.async_proc.pid

    @property
    def returncode(self) -> int | None:
        """Process return code (None if still running)."""
        return self.async_proc.returncode

    @property
    def stdout(self) -> asyncio.StreamReader | None:
        return self.async_proc.stdout

    @property
    def stderr(self) -> asyncio.StreamReader | None:
        return self.async_proc.stderr

    async def wait(self) -> int:
        """Wait for process to exit and reap it.

        Piped output must be drained by log forwarding tasks, otherwise a
        chatty child can block on a full pipe and never exit.
        """
        return await self.async_proc.wait()

    async def wait_with_timeout(self, timeout: float) -> int:
        """Wait for exit, raising TimeoutError after ``timeout`` seconds."""
        return await asyncio.wait_for(self.wait(), timeout=timeout)

    async def terminate(self) -> None:
        """Send SIGTERM without blocking the event loop."""
        if self.psutil_proc and await self.is_running():
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                await asyncio.to_thread(self.psutil_proc.terminate)
        elif self.returncode is None:
            self.async_proc.terminate()

    async def kill(self) -> None:
        """Send SIGKILL without blocking the event loop."""
        if self.psutil_proc and await self.is_running():
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                await asyncio.to_thread(self.psutil_proc.kill)
        elif self.returncode is None:
            self.async_proc.kill()
