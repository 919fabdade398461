"""Exception hierarchy for podpilot-boot.

All exceptions inherit from BootError, which carries a structured
``context`` dict that is logged as ``extra`` when the boot aborts.

Hierarchy:
    BootError (base)
    ├── ConfigError           ← invalid/missing environment variable (pre-spawn)
    ├── ProcessError          ← spawn failure or non-zero exit of a command
    ├── BootTimeoutError      ← polling budget exhausted
    ├── TailscaleError        ← daemon spawn, readiness, join or address failure
    ├── AppError              ← application spawn failure or readiness timeout
    ├── AgentError            ← agent acquisition or spawn failure
    └── AssetDownloadError    ← download failed after all retry attempts
"""

from __future__ import annotations

from typing import Any


class BootError(Exception):
    """Base exception for all boot errors with structured context.

    Attributes:
        message: Human-readable error message
        context: Dictionary of structured error context for logging
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


class ConfigError(BootError):
    """Configuration validation failed.

    Attributes:
        field: Name of the offending environment variable (e.g. ``APP_TYPE``)
    """

    def __init__(self, message: str, field: str, context: dict[str, Any] | None = None):
        ctx = context or {}
        ctx["field"] = field
        super().__init__(message, ctx)
        self.field = field


class ProcessError(BootError):
    """A child command could not be spawned or exited unsuccessfully.

    Attributes:
        command: The command line, joined with spaces
        exit_code: Exit code, or None when the process never started
        stderr: Captured standard error (possibly truncated)
    """

    def __init__(
        self,
        message: str,
        command: str,
        exit_code: int | None = None,
        stderr: str = "",
        context: dict[str, Any] | None = None,
    ):
        ctx = context or {}
        ctx.update({"command": command, "exit_code": exit_code})
        super().__init__(message, ctx)
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr


class BootTimeoutError(BootError):
    """A readiness poll exhausted its time or attempt budget.

    Attributes:
        timeout_seconds: The budget that was exhausted
        elapsed_seconds: Time actually spent polling
    """

    def __init__(
        self,
        message: str,
        timeout_seconds: float,
        elapsed_seconds: float,
        context: dict[str, Any] | None = None,
    ):
        ctx = context or {}
        ctx.update({"timeout_seconds": timeout_seconds, "elapsed_seconds": round(elapsed_seconds, 3)})
        super().__init__(message, ctx)
        self.timeout_seconds = timeout_seconds
        self.elapsed_seconds = elapsed_seconds


class TailscaleError(BootError):
    """Overlay network bootstrap failed.

    Raised when tailscaled cannot be spawned, never answers status queries,
    cannot join the tailnet after all retries, or has no address after a
    successful join.
    """


class AppError(BootError):
    """The GPU application failed to spawn or never became ready.

    Attributes:
        app_type: Application identifier (e.g. ``comfyui``)
        port: Readiness port of the application
    """

    def __init__(self, message: str, app_type: str, port: int, context: dict[str, Any] | None = None):
        ctx = context or {}
        ctx.update({"app_type": app_type, "port": port})
        super().__init__(message, ctx)
        self.app_type = app_type
        self.port = port


class AgentError(BootError):
    """Agent binary could not be acquired or the agent could not be spawned."""


class AssetDownloadError(BootError):
    """Download failed after all retry attempts were exhausted.

    Attributes:
        url: Source URL
        status_code: HTTP status of the last attempt, if one was received
    """

    def __init__(
        self,
        message: str,
        url: str,
        status_code: int | None = None,
        context: dict[str, Any] | None = None,
    ):
        ctx = context or {}
        ctx.update({"url": url, "status_code": status_code})
        super().__init__(message, ctx)
        self.url = url
        self.status_code = status_code
