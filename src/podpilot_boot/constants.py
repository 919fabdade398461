"""Constants for podpilot-boot timeouts, paths and network endpoints."""

from pathlib import Path
from typing import Final

# ============================================================================
# Tailscale
# ============================================================================

TAILSCALED_BIN: Final[str] = "tailscaled"
TAILSCALE_BIN: Final[str] = "tailscale"

PROXY_LISTEN: Final[str] = "localhost:1055"
"""SOCKS5 and outbound HTTP proxy exposed by userspace-networking tailscaled."""

TAILSCALE_READY_POLL_INTERVAL_SECONDS: Final[float] = 0.2
TAILSCALE_READY_MAX_ATTEMPTS: Final[int] = 50
"""50 x 0.2s = 10s for tailscaled to answer `tailscale status`."""

TAILSCALE_JOIN_MAX_ATTEMPTS: Final[int] = 5
TAILSCALE_JOIN_INITIAL_BACKOFF_SECONDS: Final[float] = 1.0
"""Backoff doubles after each failed join: 1s, 2s, 4s, 8s, 16s."""

TAILSCALE_COMMAND_TIMEOUT_SECONDS: Final[float] = 30.0
"""Upper bound for a single `tailscale` CLI invocation."""

DIAGNOSTIC_OUTPUT_TAIL_BYTES: Final[int] = 4096
"""Daemon output kept for readiness-failure diagnostics."""

DEFAULT_TAILSCALE_HOSTNAME: Final[str] = "podpilot-agent"
DEFAULT_TAILSCALE_TAGS: Final[str] = "tag:podpilot-agent"

# ============================================================================
# Application
# ============================================================================

APP_READY_TIMEOUT_SECONDS: Final[float] = 120.0
"""Image-generation apps load large checkpoints before listening."""

APP_READY_POLL_INTERVAL_SECONDS: Final[float] = 1.0
APP_READY_HOST: Final[str] = "127.0.0.1"
APP_PORT: Final[int] = 7860

# ============================================================================
# Agent
# ============================================================================

DEFAULT_AGENT_BIN: Final[Path] = Path("/app/podpilot-agent")

AGENT_PROXY_ENV: Final[dict[str, str]] = {
    "ALL_PROXY": f"socks5://{PROXY_LISTEN}/",
    "HTTP_PROXY": f"http://{PROXY_LISTEN}/",
    "http_proxy": f"http://{PROXY_LISTEN}/",
}

DOWNLOAD_MAX_ATTEMPTS: Final[int] = 3
DOWNLOAD_INITIAL_BACKOFF_SECONDS: Final[float] = 1.0
DOWNLOAD_ATTEMPT_TIMEOUT_SECONDS: Final[float] = 60.0
DOWNLOAD_CHUNK_SIZE: Final[int] = 1024 * 1024
EXECUTABLE_MODE: Final[int] = 0o755

# ============================================================================
# Remote access (sshd)
# ============================================================================

SSHD_BIN: Final[str] = "/usr/sbin/sshd"
SSH_DIR: Final[Path] = Path("/root/.ssh")
SSH_DIR_MODE: Final[int] = 0o700
AUTHORIZED_KEYS_MODE: Final[int] = 0o600
GITHUB_KEYS_URL: Final[str] = "https://github.com/{username}.keys"
GITHUB_KEYS_TIMEOUT_SECONDS: Final[float] = 10.0

# ============================================================================
# Shutdown
# ============================================================================

TERM_GRACE_PERIOD_SECONDS: Final[float] = 5.0
"""SIGTERM -> SIGKILL grace period per managed process."""

# ============================================================================
# Exit codes
# ============================================================================

EXIT_SUCCESS: Final[int] = 0
EXIT_BOOT_FAILURE: Final[int] = 1
