"""Download the agent binary with retries.

Each attempt streams the response into a temporary sibling of the
destination, which is renamed into place only after the body was fully
written. A failed attempt never leaves a truncated binary at the
destination path, so a later boot cannot mistake it for a complete one.
"""

from __future__ import annotations

import asyncio
import os
from pathlib import Path

import aiofiles
import aiofiles.os
import aiohttp
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt, wait_exponential

from podpilot_boot import constants
from podpilot_boot._logging import get_logger
from podpilot_boot.exceptions import AssetDownloadError
from podpilot_boot.models import DownloadResult

logger = get_logger(__name__)

_chmod = aiofiles.os.wrap(os.chmod)


class _AttemptFailed(Exception):
    """One download attempt failed; retried until the attempt budget is spent."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


async def _retry_sleep(seconds: float) -> None:
    await asyncio.sleep(seconds)


def _log_attempt_failure(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "Download attempt failed",
        extra={
            "attempt": retry_state.attempt_number,
            "error": str(exc),
            "status_code": getattr(exc, "status_code", None),
        },
    )


async def _download_once(
    session: aiohttp.ClientSession,
    url: str,
    tmp_path: Path,
    timeout: float,
) -> int:
    try:
        async with session.get(url, timeout=aiohttp.ClientTimeout(total=timeout)) as response:
            if not 200 <= response.status < 300:
                raise _AttemptFailed(f"HTTP {response.status}: {response.reason}", status_code=response.status)

            size = 0
            async with aiofiles.open(tmp_path, "wb") as f:
                async for chunk in response.content.iter_chunked(constants.DOWNLOAD_CHUNK_SIZE):
                    await f.write(chunk)
                    size += len(chunk)
            return size
    except (aiohttp.ClientError, TimeoutError, OSError) as e:
        raise _AttemptFailed(f"Download failed: {str(e) or type(e).__name__}") from e


async def download_file(
    url: str,
    destination: Path,
    *,
    max_attempts: int = constants.DOWNLOAD_MAX_ATTEMPTS,
    attempt_timeout: float = constants.DOWNLOAD_ATTEMPT_TIMEOUT_SECONDS,
    initial_backoff: float = constants.DOWNLOAD_INITIAL_BACKOFF_SECONDS,
    mode: int = constants.EXECUTABLE_MODE,
) -> DownloadResult:
    """Fetch ``url`` into ``destination`` and make it executable.

    An existing ``destination`` satisfies the request without any network
    traffic.

    Args:
        url: Source URL
        destination: Target file path (parent directories are created)
        max_attempts: Total attempts, including the first
        attempt_timeout: Seconds allowed for a single attempt
        initial_backoff: Delay after the first failure; doubles each retry
        mode: Permission bits applied after the download

    Raises:
        AssetDownloadError: the target directory is unusable, all attempts
            failed, or chmod failed
    """
    if await aiofiles.os.path.exists(destination):
        logger.info("File already present, skipping download", extra={"destination": str(destination)})
        return DownloadResult(path=destination, downloaded=False)

    logger.info("Downloading file", extra={"url": url, "destination": str(destination), "timeout": attempt_timeout})
    try:
        await aiofiles.os.makedirs(destination.parent, exist_ok=True)
    except OSError as e:
        raise AssetDownloadError(
            f"Cannot create directory for {destination}: {e}",
            url=url,
            context={"destination": str(destination), "error_type": type(e).__name__},
        ) from e
    tmp_path = destination.with_name(f".{destination.name}.{os.getpid()}.part")

    attempts = 0
    try:
        async with aiohttp.ClientSession() as session:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(max_attempts),
                wait=wait_exponential(multiplier=initial_backoff, exp_base=2),
                retry=retry_if_exception_type(_AttemptFailed),
                after=_log_attempt_failure,
                sleep=_retry_sleep,
                reraise=True,
            ):
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    size = await _download_once(session, url, tmp_path, attempt_timeout)
    except _AttemptFailed as e:
        await _remove_quietly(tmp_path)
        logger.error(
            "Download failed after all retries",
            extra={"url": url, "attempts": attempts, "last_error": str(e)},
        )
        raise AssetDownloadError(
            f"Download of {url} failed after {attempts} attempts: {e}",
            url=url,
            status_code=e.status_code,
            context={"attempts": attempts, "destination": str(destination)},
        ) from e

    try:
        await _chmod(tmp_path, mode)
        await aiofiles.os.replace(tmp_path, destination)
    except OSError as e:
        await _remove_quietly(tmp_path)
        raise AssetDownloadError(
            f"Failed to install downloaded file: {e}",
            url=url,
            context={"destination": str(destination), "error_type": type(e).__name__},
        ) from e

    logger.info(
        "Download completed successfully",
        extra={"destination": str(destination), "attempt": attempts, "size_bytes": size},
    )
    return DownloadResult(path=destination, downloaded=True, attempts=attempts, size_bytes=size)


async def _remove_quietly(path: Path) -> None:
    try:
        await aiofiles.os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("Failed to remove partial download", extra={"path": str(path), "error": str(e)})
