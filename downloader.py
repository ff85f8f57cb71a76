"""Archive download and extraction for workshop-sync."""

import re
import shutil
import stat
import tarfile
import time
import zipfile
import zlib
from collections.abc import Callable
from pathlib import Path, PurePosixPath

import httpx
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from errors import DownloadFailed, ExtractError
from logging_setup import get_logger


CHUNK_SIZE = 1 << 16

# Transport errors, non-2xx statuses and cut-off streams are all httpx.HTTPError
RETRYABLE_ERRORS = (httpx.HTTPError,)


def safe_dirname(name: str, fallback: str = "mod") -> str:
    """Return a filesystem-safe single path component derived from ``name``."""
    safe = name.replace("/", "_").replace("\\", "_")
    safe = re.sub(r"[^\w.-]", "_", safe)
    safe = safe.strip("._") or fallback
    return safe[:255]


def _log_retry(retry_state: RetryCallState) -> None:
    url = retry_state.args[1] if len(retry_state.args) > 1 else "?"
    error = retry_state.outcome.exception() if retry_state.outcome else None
    get_logger().warning(
        "Download attempt %d of %s failed: %s; retrying",
        retry_state.attempt_number,
        url,
        error,
    )


def _download_once(
    client: httpx.Client,
    url: str,
    destination: Path,
    deadline: float,
    on_progress: Callable[[int, int], None] | None = None,
) -> int:
    """Stream one attempt to ``destination``, truncating any earlier partial file."""
    started = time.monotonic()
    with client.stream("GET", url) as response:
        response.raise_for_status()
        expected = int(response.headers.get("Content-Length") or 0)
        with open(destination, "wb") as f:
            for chunk in response.iter_bytes(CHUNK_SIZE):
                f.write(chunk)
                if on_progress:
                    on_progress(response.num_bytes_downloaded, expected)
                if deadline and time.monotonic() - started > deadline:
                    raise httpx.ReadTimeout(
                        f"Download exceeded {deadline:.0f}s deadline", request=response.request
                    )
        received = response.num_bytes_downloaded
        if expected and received < expected:
            raise httpx.ReadError(
                f"Stream ended after {received} of {expected} bytes", request=response.request
            )
    return received


def fetch_archive(
    url: str,
    destination: Path,
    attempts: int = 5,
    delay: float = 0.0,
    timeout: float = 120.0,
    client: httpx.Client | None = None,
    on_progress: Callable[[int, int], None] | None = None,
) -> int:
    """Download ``url`` into ``destination`` with bounded retries.

    Makes at most ``attempts`` tries with ``delay`` seconds between them.
    Each attempt must finish within ``timeout`` seconds. ``on_progress``
    receives (bytes received, Content-Length or 0) after every chunk.

    Returns:
        Number of bytes received

    Raises:
        DownloadFailed: when the last attempt fails
    """
    if not url:
        raise DownloadFailed(url, ValueError("catalog record has no download URL"))

    owns_client = client is None
    if client is None:
        client = httpx.Client(timeout=timeout, follow_redirects=True)

    retrying = Retrying(
        stop=stop_after_attempt(attempts),
        wait=wait_fixed(delay),
        retry=retry_if_exception_type(RETRYABLE_ERRORS),
        before_sleep=_log_retry,
        reraise=True,
    )
    try:
        received = retrying(_download_once, client, url, destination, timeout, on_progress)
    except (httpx.HTTPError, OSError) as e:
        destination.unlink(missing_ok=True)
        raise DownloadFailed(url, e) from e
    finally:
        if owns_client:
            client.close()

    get_logger().debug("Downloaded %s (%d bytes)", url, received)
    return received


def _validate_member_path(member_name: str) -> Path:
    """Reject absolute paths and traversal in archive member names."""
    normalized = member_name.replace("\\", "/")
    relative = PurePosixPath(normalized)
    if relative.is_absolute():
        raise ExtractError(f"Unsafe absolute path in archive: {member_name}")
    parts = [part for part in relative.parts if part not in ("", ".")]
    if not parts:
        raise ExtractError(f"Empty path in archive: {member_name}")
    if ".." in parts:
        raise ExtractError(f"Unsafe path in archive: {member_name}")
    return Path(*parts)


def _extract_zip(archive: Path, destination: Path) -> list[Path]:
    extracted: list[Path] = []
    with zipfile.ZipFile(archive) as zf:
        members = []
        for member in zf.infolist():
            member_path = _validate_member_path(member.filename)
            mode = (member.external_attr >> 16) & 0xFFFF
            if stat.S_ISLNK(mode):
                raise ExtractError(f"Link in archive: {member.filename}")
            members.append((member, member_path))

        for member, member_path in members:
            target = destination / member_path
            if member.is_dir():
                target.mkdir(parents=True, exist_ok=True)
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            with zf.open(member) as source, open(target, "wb") as out:
                shutil.copyfileobj(source, out)
            extracted.append(target)
    return extracted


def _extract_tar(archive: Path, destination: Path) -> list[Path]:
    extracted: list[Path] = []
    with tarfile.open(archive) as tf:
        members = []
        for member in tf.getmembers():
            member_path = _validate_member_path(member.name)
            if not (member.isfile() or member.isdir()):
                raise ExtractError(f"Link or special file in archive: {member.name}")
            members.append((member, member_path))

        for member, member_path in members:
            target = destination / member_path
            if member.isdir():
                target.mkdir(parents=True, exist_ok=True)
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            source = tf.extractfile(member)
            if source is None:
                raise ExtractError(f"Unreadable member in archive: {member.name}")
            with source, open(target, "wb") as out:
                shutil.copyfileobj(source, out)
            extracted.append(target)
    return extracted


def extract_archive(archive: Path, destination: Path) -> list[Path]:
    """Extract a ZIP or tar archive into ``destination``.

    Returns the extracted file paths.

    Raises:
        ExtractError: for corrupt, unsupported or unsafe archives
    """
    if not archive.is_file():
        raise ExtractError(f"Archive not found: {archive}")
    destination.mkdir(parents=True, exist_ok=True)

    try:
        if zipfile.is_zipfile(archive):
            extracted = _extract_zip(archive, destination)
        elif tarfile.is_tarfile(archive):
            extracted = _extract_tar(archive, destination)
        else:
            raise ExtractError(f"Unsupported archive format: {archive.name}")
    except (zipfile.BadZipFile, tarfile.TarError, zlib.error, EOFError) as e:
        raise ExtractError(f"Corrupt archive {archive.name}: {e}") from e
    except OSError as e:
        raise ExtractError(f"Failed to extract {archive.name}: {e}") from e

    get_logger().debug("Extracted %d files from %s", len(extracted), archive.name)
    return extracted
