# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2026 Andrew Wyatt (Fewtarius)

"""
IndexKeeper Archive Fetcher

Downloads the dataset archive to a local file and extracts it.

Fetch flow:
  1. Check the destination filesystem has enough free space
  2. Download the archive to a single file (resumable between attempts)
  3. Extract it into the destination directory
  4. Remove the archive file

On any failure everything the call created is removed again, so a
half-populated destination is never left behind for the caller to mistake
as a valid dataset.
"""

import asyncio
import logging
import shutil
import tarfile
from pathlib import Path, PurePosixPath
from typing import Optional, Set
from urllib.parse import urlparse

import aiohttp

from . import __version__
from .cancellation import CancellationToken, new_token
from .checksum import parse_checksum_text
from .config import ArchiveConfig
from .errors import DownloadError, ExtractionError, InsufficientSpaceError
from .retry import RetryExhaustedError, RetryPolicy

logger = logging.getLogger(__name__)

PROGRESS_LOG_BYTES = 1024 ** 3  # log download progress every GB

# Failures worth another download attempt
RETRYABLE_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, ConnectionError)


class _IncompleteDownload(Exception):
    """Server closed the stream before Content-Length bytes arrived."""


def _existing_ancestor(path: Path) -> Path:
    for candidate in (path, *path.parents):
        if candidate.exists():
            return candidate
    return path


def _is_empty_dir(path: Path) -> bool:
    if not path.is_dir() or path.is_symlink():
        return False
    try:
        return next(path.iterdir(), None) is None
    except OSError:
        return False


class ArchiveFetcher:
    """
    Fetches and extracts the remote dataset archive.

    Usage:
        fetcher = ArchiveFetcher.from_config(config.archive)
        token = await fetcher.fetch_version_token()
        await fetcher.fetch(Path("/data/temp_download"), is_temporary=True)
    """

    def __init__(
        self,
        url: str,
        checksum_url: Optional[str] = None,
        user_agent: str = "indexkeeper",
        min_free_bytes: int = 0,
        download_policy: Optional[RetryPolicy] = None,
        checksum_policy: Optional[RetryPolicy] = None,
        download_timeout: float = 300,
        checksum_timeout: float = 30,
        chunk_size: int = 1024 * 1024,
    ):
        """
        Initialize the fetcher.

        Args:
            url: Archive URL.
            checksum_url: URL of the plaintext checksum. Defaults to url + ".md5".
            user_agent: User-Agent sent with every request.
            min_free_bytes: Free space required at the destination before fetching.
            download_policy: Retry policy for the archive download.
            checksum_policy: Retry policy for the checksum download.
            download_timeout: Per-attempt connect and read timeout (seconds).
                              This bounds stalls, not the whole transfer.
            checksum_timeout: Total timeout per checksum attempt (seconds).
            chunk_size: Bytes per streamed chunk.
        """
        self.url = url
        self.checksum_url = checksum_url or f"{url}.md5"
        self.user_agent = user_agent
        self.min_free_bytes = min_free_bytes
        self.download_policy = download_policy or RetryPolicy(max_attempts=3, delay_seconds=10, backoff=2)
        self.checksum_policy = checksum_policy or RetryPolicy(max_attempts=3, delay_seconds=2)
        self.download_timeout = download_timeout
        self.checksum_timeout = checksum_timeout
        self.chunk_size = chunk_size

    @classmethod
    def from_config(cls, config: ArchiveConfig) -> "ArchiveFetcher":
        return cls(
            url=config.url,
            checksum_url=config.checksum_url,
            user_agent=f"{config.user_agent}/{__version__}",
            min_free_bytes=config.min_free_bytes,
            download_policy=config.download_policy(),
            checksum_policy=config.checksum_policy(),
            download_timeout=config.download_timeout,
            checksum_timeout=config.checksum_timeout,
            chunk_size=config.chunk_size,
        )

    @property
    def archive_name(self) -> str:
        """File name the archive is downloaded to."""
        name = PurePosixPath(urlparse(self.url).path).name
        return name or "dataset-archive"

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    def check_disk_space(self, destination: Path) -> int:
        """
        Verify the destination filesystem has enough free space.

        Returns:
            Free bytes available.

        Raises:
            InsufficientSpaceError: If below ``min_free_bytes``.
        """
        volume_path = _existing_ancestor(Path(destination))
        try:
            available = shutil.disk_usage(volume_path).free
        except OSError as e:
            logger.error("Could not determine free space at %s: %s", volume_path, e)
            available = 0

        logger.info("Available disk space: %.1fGB", available / 1024 ** 3)
        if available < self.min_free_bytes:
            raise InsufficientSpaceError(volume_path, available, self.min_free_bytes)
        return available

    async def fetch(
        self,
        destination: Path,
        is_temporary: bool,
        cancellation_token: Optional[CancellationToken] = None,
    ) -> Path:
        """
        Download and extract the archive into ``destination``.

        Args:
            destination: Directory to download and extract into.
            is_temporary: If True the whole destination is owned by this call
                          and is removed on failure. Otherwise only entries the
                          call created, and directories that were empty
                          before it, are removed.
            cancellation_token: Checked between archive members during extraction.
                                A private token is used when omitted; either way
                                it is cancelled if the calling task is.

        Returns:
            The destination path holding the extracted tree.

        Raises:
            InsufficientSpaceError: Not enough free space; no network I/O was done.
            DownloadError: All download attempts failed.
            ExtractionError: The archive could not be extracted.
        """
        destination = Path(destination)
        self.check_disk_space(destination)
        token = cancellation_token or new_token("fetch")

        created_dir = not destination.exists()
        # Empty directories hold nothing to preserve, a failed fetch clears them
        preexisting: Set[str] = set() if created_dir else {
            p.name for p in destination.iterdir() if not _is_empty_dir(p)
        }

        logger.info("Downloading search index to %s", destination)
        try:
            destination.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise DownloadError(f"Failed to create target directory {destination}: {e}") from e

        archive_path = destination / self.archive_name
        extraction: Optional[asyncio.Future] = None
        try:
            await self._download(archive_path)
            logger.info("Download completed, extracting %s...", archive_path.name)
            extraction = asyncio.ensure_future(
                asyncio.to_thread(self._extract, archive_path, destination, token)
            )
            await asyncio.shield(extraction)
        except asyncio.CancelledError:
            token.cancel()
            if extraction is not None:
                # The worker thread stops at its next member; cleaning up
                # before then would race with it
                logger.debug("Waiting for extraction to stop")
                await asyncio.gather(extraction, return_exceptions=True)
            self._cleanup(destination, is_temporary, created_dir, preexisting)
            raise
        except Exception:
            await asyncio.to_thread(self._cleanup, destination, is_temporary, created_dir, preexisting)
            raise
        finally:
            archive_path.unlink(missing_ok=True)

        logger.info("Successfully downloaded and extracted index into %s", destination)
        return destination

    async def fetch_version_token(self) -> Optional[str]:
        """
        Download the remote checksum.

        Non-fatal: returns None when every attempt fails or the body is not a
        valid digest, so callers can fall back to serving what they have.
        """
        logger.info("Downloading checksum from %s", self.checksum_url)

        async def attempt() -> str:
            timeout = aiohttp.ClientTimeout(total=self.checksum_timeout)
            async with aiohttp.ClientSession(timeout=timeout, headers=self._headers()) as session:
                async with session.get(self.checksum_url) as resp:
                    resp.raise_for_status()
                    text = await resp.text()
            token = parse_checksum_text(text)
            if token is None:
                raise ValueError(f"Invalid checksum format received: {text[:64]!r}")
            return token

        try:
            token = await self.checksum_policy.run(
                attempt,
                "Checksum download",
                retry_on=(*RETRYABLE_ERRORS, ValueError),
            )
        except RetryExhaustedError:
            logger.warning("Could not download checksum, will proceed without version checking")
            return None

        logger.info("Checksum downloaded: %s", token)
        return token

    # =========================================================================
    # DOWNLOAD
    # =========================================================================

    def _headers(self):
        return {"User-Agent": self.user_agent}

    async def _download(self, archive_path: Path) -> None:
        try:
            await self.download_policy.run(
                lambda: self._download_attempt(archive_path),
                f"Download of {self.archive_name}",
                retry_on=(*RETRYABLE_ERRORS, _IncompleteDownload),
            )
        except RetryExhaustedError as e:
            raise DownloadError(str(e)) from e.last_error

    async def _download_attempt(self, archive_path: Path) -> None:
        """Single download attempt, resuming a partial file if one exists."""
        existing_size = archive_path.stat().st_size if archive_path.exists() else 0

        headers = self._headers()
        if existing_size > 0:
            headers["Range"] = f"bytes={existing_size}-"

        timeout = aiohttp.ClientTimeout(
            total=None,
            sock_connect=self.download_timeout,
            sock_read=self.download_timeout,
        )
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(self.url, headers=headers) as resp:
                if resp.status == 416 and existing_size > 0:
                    # Range not satisfiable - file already fully downloaded
                    logger.info("Download already complete: %s", archive_path)
                    return

                resp.raise_for_status()

                total_size = int(resp.headers.get("Content-Length", 0))
                if resp.status == 206:
                    total_size += existing_size
                    mode = "ab"
                    logger.info("Resuming download from byte %d", existing_size)
                else:
                    mode = "wb"
                    existing_size = 0

                downloaded = existing_size
                next_report = downloaded + PROGRESS_LOG_BYTES
                with open(archive_path, mode) as f:
                    async for chunk in resp.content.iter_chunked(self.chunk_size):
                        f.write(chunk)
                        downloaded += len(chunk)
                        if downloaded >= next_report:
                            next_report += PROGRESS_LOG_BYTES
                            if total_size > 0:
                                logger.info(
                                    "Downloaded %.1fGB of %.1fGB (%.0f%%)",
                                    downloaded / 1024 ** 3, total_size / 1024 ** 3,
                                    downloaded / total_size * 100,
                                )
                            else:
                                logger.info("Downloaded %.1fGB", downloaded / 1024 ** 3)

        if total_size > 0 and downloaded < total_size:
            raise _IncompleteDownload(f"received {downloaded} of {total_size} bytes")

        logger.info("Downloaded %s (%.1f MB)", archive_path.name, downloaded / (1024 * 1024))

    # =========================================================================
    # EXTRACTION & CLEANUP
    # =========================================================================

    def _extract(
        self,
        archive_path: Path,
        destination: Path,
        cancellation_token: CancellationToken,
    ) -> None:
        """Extract the archive member by member (runs in a worker thread)."""
        try:
            # Stream members instead of getmembers() so a bz2 archive is only
            # decompressed once
            with tarfile.open(archive_path, "r:*") as tar:
                for member in tar:
                    cancellation_token.check_cancelled()
                    # Security: prevent path traversal attacks
                    member_path = PurePosixPath(member.name)
                    if member_path.is_absolute() or ".." in member_path.parts:
                        raise ExtractionError(f"Unsafe path in archive: {member.name}")
                    tar.extract(member, destination, filter="data")
        except (tarfile.TarError, OSError, EOFError) as e:
            raise ExtractionError(f"Failed to extract {archive_path.name}: {e}") from e

    @staticmethod
    def _cleanup(destination: Path, is_temporary: bool, created_dir: bool, preexisting: Set[str]) -> None:
        """Remove whatever a failed fetch left in the destination."""
        if not destination.exists():
            return
        if is_temporary or created_dir:
            logger.info("Removing partial download directory %s", destination)
            shutil.rmtree(destination, ignore_errors=True)
            return

        for entry in destination.iterdir():
            if entry.name in preexisting:
                continue
            logger.info("Removing partial download artifact %s", entry)
            if entry.is_dir() and not entry.is_symlink():
                shutil.rmtree(entry, ignore_errors=True)
            else:
                entry.unlink(missing_ok=True)
