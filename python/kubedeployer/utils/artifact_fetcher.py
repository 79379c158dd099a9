"""
kubedeployer/utils/artifact_fetcher.py

Downloads the template-generation tool's release archive, verifies its
checksum and unpacks it. Transport failures are retried with a linear
backoff; a checksum mismatch is final, since retrying a bad build or a wrong
URL cannot fix it.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import tarfile
from typing import Callable, List, Optional

import aiofiles
import aiohttp

from kubedeployer.errors import IntegrityError, TransientNetworkError
from kubedeployer.utils.async_retry import async_retry

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 1 << 16


def file_digest(path: str, algorithm: str = "md5") -> str:
    """Return the hex digest of the file at `path`."""
    digest = hashlib.new(algorithm)
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _stripped_members(archive: tarfile.TarFile, dest: str) -> List[tarfile.TarInfo]:
    """Rewrite member names without their first path component.

    Raises:
        IntegrityError: If a member would land outside `dest`.
    """
    dest_root = os.path.realpath(dest)
    members: List[tarfile.TarInfo] = []
    for member in archive.getmembers():
        parts = member.name.split("/", 1)
        if len(parts) < 2 or not parts[1].strip("/"):
            continue
        member.name = parts[1]
        target = os.path.realpath(os.path.join(dest_root, member.name))
        if os.path.commonpath([dest_root, target]) != dest_root:
            raise IntegrityError(f"Archive member escapes {dest}: {member.name}")
        if member.issym() or member.islnk():
            raise IntegrityError(f"Archive contains a link: {member.name}")
        members.append(member)
    return members


def extract_strip_one(archive_path: str, dest: str) -> None:
    """Extract a gzip tarball into `dest`, like `tar -xzf --strip 1`."""
    os.makedirs(dest, exist_ok=True)
    with tarfile.open(archive_path, "r:gz") as archive:
        members = _stripped_members(archive, dest)
        if hasattr(tarfile, "data_filter"):
            archive.extractall(dest, members=members, filter="data")
        else:
            archive.extractall(dest, members=members)


class ArtifactFetcher:
    """Fetches and unpacks a tool release archive.

    Args:
        archive_path: Fixed download destination; overwritten on every attempt.
        extract_dir: Directory the archive is unpacked into.
        binary_name: Executable expected at the archive root after stripping.
        retry_delay: Base delay of the linear backoff, in seconds.
        checksum_algorithm: hashlib name used for `expected_checksum`.
        request_timeout: Per-attempt timeout for the HTTP transfer.
        session_factory: Creates the aiohttp session used for a download.
    """

    def __init__(
        self,
        archive_path: str,
        extract_dir: Optional[str] = None,
        *,
        binary_name: str = "acs-engine",
        retry_delay: float = 1.0,
        checksum_algorithm: str = "md5",
        request_timeout: float = 300.0,
        session_factory: Callable[[], aiohttp.ClientSession] = aiohttp.ClientSession,
    ) -> None:
        self.archive_path = archive_path
        self.extract_dir = extract_dir or os.getcwd()
        self.binary_name = binary_name
        self.retry_delay = retry_delay
        self.checksum_algorithm = checksum_algorithm
        self.request_timeout = request_timeout
        self._session_factory = session_factory

    async def fetch(
        self, url: str, expected_checksum: str = "", max_attempts: int = 3
    ) -> str:
        """Download, verify and extract the archive at `url`.

        Args:
            url: Archive URL.
            expected_checksum: Hex digest to verify; empty skips verification.
            max_attempts: Total download attempts for transient failures.

        Returns:
            str: Path of the extracted executable.

        Raises:
            TransientNetworkError: If every download attempt failed.
            IntegrityError: On checksum mismatch or an unsafe archive.
        """

        @async_retry(
            retries=max_attempts,
            delay=self.retry_delay,
            linear_backoff=True,
            retry_on=(TransientNetworkError,),
            noisy=True,
        )
        async def _download_with_retry() -> None:
            logger.info("Downloading %s from %s.", self.archive_path, url)
            await self._download(url)

        os.makedirs(os.path.dirname(os.path.abspath(self.archive_path)), exist_ok=True)
        await _download_with_retry()

        if expected_checksum:
            actual = await asyncio.to_thread(
                file_digest, self.archive_path, self.checksum_algorithm
            )
            if actual.lower() != expected_checksum.strip().lower():
                raise IntegrityError(
                    f"Wrong {self.checksum_algorithm} sum for {url}: "
                    f"expected {expected_checksum}, got {actual}."
                )

        logger.info(
            "Extracting tar file %s into directory %s", self.archive_path, self.extract_dir
        )
        try:
            await asyncio.to_thread(
                extract_strip_one, self.archive_path, self.extract_dir
            )
        except tarfile.TarError as exc:
            raise IntegrityError(f"Cannot extract {self.archive_path}: {exc}") from exc

        tool_path = os.path.join(self.extract_dir, self.binary_name)
        if not os.path.isfile(tool_path):
            raise IntegrityError(
                f"Archive from {url} does not contain {self.binary_name}."
            )
        return tool_path

    async def _download(self, url: str) -> None:
        """One download attempt into `archive_path`, truncating prior content.

        Raises:
            TransientNetworkError: On any transport failure or non-200 status.
        """
        timeout = aiohttp.ClientTimeout(total=self.request_timeout)
        try:
            async with self._session_factory() as session:
                async with session.get(url, timeout=timeout) as resp:
                    if resp.status != 200:
                        raise TransientNetworkError(
                            f"url={url} failed get {self.archive_path}: HTTP {resp.status}",
                            status=resp.status,
                        )
                    async with aiofiles.open(self.archive_path, "wb") as f:
                        async for chunk in resp.content.iter_chunked(_CHUNK_SIZE):
                            await f.write(chunk)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransientNetworkError(
                f"url={url} failed get {self.archive_path}: {exc}"
            ) from exc


__all__ = ["ArtifactFetcher", "extract_strip_one", "file_digest"]
