"""Boot configuration from environment variables.

Variable names are a contract with the container images and the control
plane (APP_TYPE, TAILSCALE_AUTHKEY, AGENT_SOURCE, ...), so no prefix is used.
"""

from pathlib import Path
from typing import Literal, Self

from pydantic import Field, SecretStr, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from podpilot_boot import constants
from podpilot_boot.exceptions import ConfigError
from podpilot_boot.models import AgentSource, AppType


class BootSettings(BaseSettings):
    """Validated, immutable boot configuration.

    Example: APP_TYPE=comfyui TAILSCALE_AUTHKEY=tskey-... podpilot-boot
    """

    model_config = SettingsConfigDict(
        frozen=True,
        extra="ignore",
        case_sensitive=False,
        env_ignore_empty=True,  # `FOO=` in a compose file means "not configured"
    )

    app_type: AppType

    # Tailscale
    tailscale_authkey: SecretStr | None = None
    tailscale_hostname: str = Field(default=constants.DEFAULT_TAILSCALE_HOSTNAME, min_length=1)
    tailscale_tags: str = Field(default=constants.DEFAULT_TAILSCALE_TAGS, min_length=1)

    # Agent
    agent_source: AgentSource = AgentSource.EMBEDDED
    agent_bin: Path = constants.DEFAULT_AGENT_BIN
    agent_download_url: str | None = None
    forward_agent_logs: bool = False
    """Classify agent output like every other child instead of inheriting stdout/stderr."""

    # Remote access: one public key or ``github.com/<user>`` per line
    ssh_authorized_keys: str | None = None

    log_level: Literal["debug", "info", "warn", "error"] = "info"

    @field_validator("log_level", "app_type", "agent_source", mode="before")
    @classmethod
    def _lowercase(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @model_validator(mode="after")
    def _download_url_required(self) -> Self:
        if self.agent_source is AgentSource.DOWNLOAD and not self.agent_download_url:
            raise ValueError("AGENT_DOWNLOAD_URL is required when AGENT_SOURCE is 'download'")
        return self

    @property
    def has_authkey(self) -> bool:
        return self.tailscale_authkey is not None


def _field_of(error: dict) -> str:
    loc = error.get("loc") or ()
    if loc:
        return str(loc[0]).upper()
    # Model-level validator: the only cross-field rule is the download URL
    return "AGENT_DOWNLOAD_URL"


def load_settings(**overrides: object) -> BootSettings:
    """Load settings from the environment, translating validation failures.

    Raises:
        ConfigError: naming the first offending environment variable
    """
    try:
        return BootSettings(**overrides)  # type: ignore[arg-type]
    except ValidationError as e:
        first = e.errors()[0]
        field = _field_of(first)
        if first.get("type") == "missing":
            message = f"Missing required environment variable: {field}"
        elif field == "AGENT_DOWNLOAD_URL":
            message = "AGENT_DOWNLOAD_URL is required when AGENT_SOURCE is 'download'"
        elif field == "APP_TYPE":
            valid = ", ".join(a.value for a in AppType)
            message = f"Invalid APP_TYPE: {first.get('input')!r}. Must be one of: {valid}"
        elif field == "AGENT_SOURCE":
            valid = ", ".join(s.value for s in AgentSource)
            message = f"Invalid AGENT_SOURCE: {first.get('input')!r}. Must be one of: {valid}"
        else:
            message = f"Invalid {field}: {first.get('msg')}"
        raise ConfigError(message, field=field, context={"error_count": e.error_count()}) from e
