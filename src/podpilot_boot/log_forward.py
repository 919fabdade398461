"""Forward child process output into structured log records.

Every supervised child gets two reader tasks (stdout, stderr). Each reader
decodes bytes incrementally, rebuilds lines across chunk boundaries and
hands complete lines to a LogClassifier, which decides the severity.

Per-line pipeline (classify_line):
    1. strip a leading daemon timestamp (``2025/01/31 12:00:00 ``)
    2. strip ANSI escape sequences and carriage returns
    3. drop progress-bar lines entirely
    4. traceback start -> error, opens traceback state for the service
    5. inside a traceback -> error until a blank line (blank is dropped)
    6. service-specific debug/info pattern tables
    7. stderr: failure keywords -> error, otherwise warn
    8. everything else -> info
    9. sanitize (escape newlines, drop control characters except tab)

classify_line() is pure: the only state it consumes or produces is the
``in_traceback`` flag, which LogClassifier threads per service.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
import re
import unicodedata
from dataclasses import dataclass
from typing import TYPE_CHECKING

from podpilot_boot._logging import get_logger, get_service_logger
from podpilot_boot.models import Severity, Stream
from podpilot_boot.subprocess_utils import log_task_exception

if TYPE_CHECKING:
    from podpilot_boot.platform_utils import ManagedProcess

logger = get_logger(__name__)

_READ_CHUNK_BYTES = 64 * 1024

# A child that never writes a newline still gets its output emitted
MAX_LINE_CHARS = 64 * 1024

SEVERITY_LEVELS: dict[Severity, int] = {
    Severity.DEBUG: logging.DEBUG,
    Severity.INFO: logging.INFO,
    Severity.WARN: logging.WARNING,
    Severity.ERROR: logging.ERROR,
}

# ============================================================================
# Patterns
# ============================================================================

DAEMON_TIMESTAMP = re.compile(r"^\d{4}/\d{2}/\d{2} \d{2}:\d{2}:\d{2} ")

ANSI_ESCAPE = re.compile(
    r"""
    \x1b\[[0-?]*[ -/]*[@-~]            # CSI: colors, cursor movement, erase line
    | \x1b\][^\x07\x1b]*(?:\x07|\x1b\\)  # OSC: window titles, hyperlinks
    | \x1b[@-Z\\-_]                    # two-byte escapes
    """,
    re.VERBOSE,
)

PROGRESS_BAR_PATTERNS: tuple[re.Pattern[str], ...] = (
    # tqdm: " 45%|████▌     | 9/20 [00:01<00:01,  8.12it/s]"
    re.compile(r"\d{1,3}%\|[^|]*\|"),
    # tqdm rate/ETA block without the bar: "9/20 [00:01<00:01, 8.12it/s]"
    re.compile(r"\[\d{1,2}:\d{2}(?::\d{2})?<[\d:?]+,\s*[\d.?]+\s*(?:it/s|s/it|[kMG]?B/s)\]"),
    # bracketed: "[=====>      ] 45%" / "[#####     ] 12.5%"
    re.compile(r"^\s*\[[=#>\-. ]{3,}\]\s*\d{1,3}(?:\.\d+)?%"),
    # block meter: "45% ████████"
    re.compile(r"^\s*\d{1,3}(?:\.\d+)?%\s*[█▏▎▍▌▋▊▉░▒▓#]{3,}"),
)

TRACEBACK_START_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"^Traceback \(most recent call last\):"),
    re.compile(r"^Exception in thread\b"),
    re.compile(r"^thread '[^']*' panicked at"),
    re.compile(r"^panic: "),
)

_FAILURE_KEYWORDS = ("error", "fatal", "panic", "exception")

# Python apps log INFO through stderr by default
_PYTHON_INFO = re.compile(r"^\s*INFO\b")
_PYTHON_DEBUG = re.compile(r"^\s*DEBUG\b")
_GRADIO_URL = re.compile(r"^Running on (?:local|public) URL:")


@dataclass(frozen=True)
class ServicePatterns:
    """Severity overrides for one service, checked debug first."""

    debug: tuple[re.Pattern[str], ...] = ()
    info: tuple[re.Pattern[str], ...] = ()


def _compile(*patterns: str) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(p) for p in patterns)


SERVICE_PATTERNS: dict[str, ServicePatterns] = {
    "tailscaled": ServicePatterns(
        debug=_compile(
            r"logtail",
            r"LogID:",
            r"logpolicy:",
            r"dns:",
            r"wgengine",
            r"blockEngineUpdates",
            r"control:",
            r"taildrop:",
            r"network-lock",
            r"peerapi:",
            r"tsdial:",
            r"monitor:",
            r"pm: migrating",
            r"got LocalBackend",
            r"magicsock: disco key",
            r"Creating/Bringing WireGuard device",
            r"Engine created",
            r"endpoints changed:",
            r"\[RATELIMIT\]",
        ),
        info=_compile(r"^Program starting:", r"^active login:", r"^health\(", r"^Switching ipn state"),
    ),
    "sshd": ServicePatterns(
        debug=_compile(r"^Connection (?:closed|reset) by", r"^pam_unix\(", r"^Received disconnect from"),
        info=_compile(r"^Server listening on", r"^Accepted \w+ for", r"^Disconnected from"),
    ),
    "a1111": ServicePatterns(
        debug=(
            *_compile(r"Calculating sha256", r"^[a-f0-9]{64}$", r"fatal: not a git repository"),
            _PYTHON_DEBUG,
        ),
        info=(
            _GRADIO_URL,
            *_compile(
                r"^Model loaded in",
                r"^Startup time:",
                r"^Loading weights \[",
                r"^Applying attention optimization",
            ),
            _PYTHON_INFO,
        ),
    ),
    "comfyui": ServicePatterns(
        debug=(
            *_compile(
                r"^Prestartup times for custom nodes:",
                r"^Import times for custom nodes:",
                r"^\s+\d+\.\d+ seconds(?: \(IMPORT FAILED\))?:",
                r"^Total VRAM \d+",
                r"^pytorch version:",
                r"^Set vram state to:",
                r"^Device: ",
                r"^Using \w+ attention",
            ),
            _PYTHON_DEBUG,
        ),
        info=(
            *_compile(r"^To see the GUI go to:", r"^Starting server", r"^got prompt", r"^Prompt executed in"),
            _PYTHON_INFO,
        ),
    ),
    "fooocus": ServicePatterns(
        debug=(
            *_compile(
                r"^\[Fooocus Model Management\]",
                r"^Total VRAM \d+",
                r"^Set vram state to:",
                r"^Device: ",
                r"^VAE dtype:",
            ),
            _PYTHON_DEBUG,
        ),
        info=(_GRADIO_URL, *_compile(r"^App started successful", r"^\[Fooocus\]"), _PYTHON_INFO),
    ),
    "kohya": ServicePatterns(
        debug=(_PYTHON_DEBUG,),
        info=(_GRADIO_URL, _PYTHON_INFO),
    ),
}


# ============================================================================
# Pure line classification
# ============================================================================


@dataclass(frozen=True)
class LineClassification:
    """Result of classifying one line.

    ``severity`` is None when the line must not be emitted (progress bars,
    blank lines, the blank line that closes a traceback).
    """

    severity: Severity | None
    text: str
    in_traceback: bool


def clean_line(raw: str) -> str:
    """Strip the daemon timestamp prefix, ANSI escapes and carriage returns."""
    line = DAEMON_TIMESTAMP.sub("", raw, count=1)
    line = ANSI_ESCAPE.sub("", line)
    return line.replace("\r", "")


def is_progress_bar(line: str) -> bool:
    return any(p.search(line) for p in PROGRESS_BAR_PATTERNS)


def is_traceback_start(line: str) -> bool:
    return any(p.match(line) for p in TRACEBACK_START_PATTERNS)


def sanitize(text: str) -> str:
    """Escape embedded newlines and drop control characters (tab is kept)."""
    text = text.replace("\n", "\\n").replace("\r", "\\r")
    return "".join(ch for ch in text if ch == "\t" or unicodedata.category(ch) != "Cc")


def _service_severity(service: str, line: str) -> Severity | None:
    patterns = SERVICE_PATTERNS.get(service)
    if patterns is None:
        return None
    if any(p.search(line) for p in patterns.debug):
        return Severity.DEBUG
    if any(p.search(line) for p in patterns.info):
        return Severity.INFO
    return None


def classify_line(service: str, stream: Stream, raw: str, in_traceback: bool) -> LineClassification:
    """Assign a severity to one raw line of child output.

    Args:
        service: Service tag of the child (``tailscaled``, ``comfyui``, ...)
        stream: Stream the line was read from
        raw: Line without its trailing newline
        in_traceback: Whether a traceback is currently open for ``service``

    Returns:
        Severity (None = drop), sanitized text, and the next traceback state
    """
    line = clean_line(raw)

    if is_progress_bar(line):
        return LineClassification(None, "", in_traceback)

    if not line.strip():
        # Blank line closes an open traceback; blank lines are never emitted
        return LineClassification(None, "", False)

    text = sanitize(line)

    if is_traceback_start(line):
        return LineClassification(Severity.ERROR, text, True)

    if in_traceback:
        return LineClassification(Severity.ERROR, text, True)

    severity = _service_severity(service, line)
    if severity is None and stream is Stream.STDERR:
        lowered = line.lower()
        severity = Severity.ERROR if any(k in lowered for k in _FAILURE_KEYWORDS) else Severity.WARN
    if severity is None:
        severity = Severity.INFO

    return LineClassification(severity, text, False)


class LogClassifier:
    """Owns the per-service traceback state threaded through classify_line()."""

    def __init__(self) -> None:
        self._in_traceback: dict[str, bool] = {}

    def in_traceback(self, service: str) -> bool:
        return self._in_traceback.get(service, False)

    def classify(self, service: str, stream: Stream, raw: str) -> LineClassification:
        result = classify_line(service, stream, raw, self.in_traceback(service))
        self._in_traceback[service] = result.in_traceback
        return result


# ============================================================================
# Stream reassembly
# ============================================================================


class LineBuffer:
    """Incremental UTF-8 decoder that yields complete lines.

    Keeps the trailing partial line between feeds; flush() returns it at EOF.
    """

    def __init__(self, max_line_chars: int = MAX_LINE_CHARS) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""
        self.max_line_chars = max_line_chars

    @property
    def pending(self) -> str:
        return self._pending

    def feed(self, chunk: bytes) -> list[str]:
        self._pending += self._decoder.decode(chunk)
        *lines, self._pending = self._pending.split("\n")
        if len(self._pending) > self.max_line_chars:
            lines.append(self._pending)
            self._pending = ""
        return lines

    def flush(self) -> str | None:
        rest = self._pending + self._decoder.decode(b"", final=True)
        self._pending = ""
        return rest if rest else None


# ============================================================================
# Forwarding
# ============================================================================


class LogForwarder:
    """Multiplexes the output of every supervised child into log records."""

    def __init__(self, classifier: LogClassifier | None = None) -> None:
        self.classifier = classifier or LogClassifier()
        self._tasks: set[asyncio.Task[None]] = set()

    def emit(self, proc: ManagedProcess, stream: Stream, raw: str) -> None:
        """Classify one line from ``proc`` and log it if it survives."""
        if raw.strip():
            proc.tail.append(raw.rstrip("\r"))
        result = self.classifier.classify(proc.service, stream, raw)
        if result.severity is None:
            return
        get_service_logger(proc.service).log(
            SEVERITY_LEVELS[result.severity],
            result.text,
            extra={"service": proc.service, "stream": stream.value, "pid": proc.pid},
        )

    async def _forward_stream(self, proc: ManagedProcess, reader: asyncio.StreamReader, stream: Stream) -> None:
        buffer = LineBuffer()
        try:
            while chunk := await reader.read(_READ_CHUNK_BYTES):
                for line in buffer.feed(chunk):
                    self.emit(proc, stream, line)
        except (ConnectionError, ValueError) as e:
            get_service_logger(proc.service).error(
                "Error forwarding process logs",
                extra={"service": proc.service, "stream": stream.value, "pid": proc.pid, "error": str(e)},
            )
        finally:
            rest = buffer.flush()
            if rest is not None:
                self.emit(proc, stream, rest)

    async def _forward_process(self, proc: ManagedProcess) -> None:
        # Both pipes drained concurrently so neither can fill and stall the child
        async with asyncio.TaskGroup() as tg:
            if proc.stdout is not None:
                tg.create_task(self._forward_stream(proc, proc.stdout, Stream.STDOUT))
            if proc.stderr is not None:
                tg.create_task(self._forward_stream(proc, proc.stderr, Stream.STDERR))

    def attach(self, proc: ManagedProcess) -> asyncio.Task[None]:
        """Start forwarding ``proc``'s piped output in the background."""
        task = asyncio.create_task(self._forward_process(proc), name=f"log-forward-{proc.service}")
        task.add_done_callback(log_task_exception)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self, timeout: float = 1.0) -> None:
        """Give readers a moment to flush after their processes exited."""
        if not self._tasks:
            return
        _done, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in pending:
            task.cancel()
