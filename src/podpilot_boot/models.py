"""Data models for podpilot-boot."""

from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field


class AppType(str, Enum):
    """Supported GPU applications (value of APP_TYPE)."""

    A1111 = "a1111"
    COMFYUI = "comfyui"
    FOOOCUS = "fooocus"
    KOHYA = "kohya"


class AgentSource(str, Enum):
    """How the agent binary gets onto the instance."""

    EMBEDDED = "embedded"
    """Baked into the image at build time."""

    DOWNLOAD = "download"
    """Fetched from AGENT_DOWNLOAD_URL at boot."""

    LOCAL = "local"
    """Bind-mounted from a development checkout."""


class ProcessRole(str, Enum):
    """Role of a managed process; teardown runs in reverse startup order."""

    NETWORK = "network"
    REMOTE_ACCESS = "remote_access"
    APPLICATION = "application"
    AGENT = "agent"


class Stream(str, Enum):
    """Child output stream."""

    STDOUT = "stdout"
    STDERR = "stderr"


class Severity(str, Enum):
    """Severity assigned to a line of child output."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class LaunchSpec(BaseModel):
    """How to start one GPU application and how to tell it is ready."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1, description="Display name, also the log service tag")
    cwd: Path = Field(description="Working directory")
    command: tuple[str, ...] = Field(min_length=1, description="Argument vector")
    port: int = Field(ge=1, le=65535, description="TCP port that signals readiness")

    @property
    def service(self) -> str:
        """Service tag used for log records."""
        return self.name.lower()


class DownloadResult(BaseModel):
    """Outcome of an agent binary download."""

    path: Path
    downloaded: bool = Field(description="False when an existing file satisfied the request")
    attempts: int = Field(default=0, ge=0)
    size_bytes: int | None = None
