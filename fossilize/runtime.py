"""Node.js runtime binary cache.

Maps ``(resolved version, platform)`` to one cached, already-unsigned runtime
binary named ``node-v<version>-<platform>[.exe]``. There is no index file:
the presence of a readable, non-empty file is the whole cache state, and
entries are never evicted.
"""

import asyncio
import logging
import os
import pathlib
import shutil
import stat
import tempfile

import httpx

from fossilize.archive import extract_tar_xz_entry, extract_zip_entry
from fossilize.target import (
    ZIP,
    archive_format,
    cache_file_name,
    executable_suffix,
    runtime_archive_name,
    runtime_entry_name,
)
from fossilize.unsign import unsign_file
from fossilize.versions import VersionResolver


NODE_DIST_URL: str = "https://nodejs.org/dist"


class DownloadError(RuntimeError):
    """Raised when a runtime archive cannot be downloaded."""


def make_executable(path: pathlib.Path) -> None:
    """Add execute permission for owner, group and others.

    :param path: File to update.
    """

    mode: int = path.stat().st_mode
    path.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)


class RuntimeBinaryCache:
    """Obtain Node.js runtime binaries, downloading them on cache misses.

    Population writes to a staging file and moves it into place with an
    atomic rename, so concurrent writers of the same key (in this process or
    another) never expose a partially written binary; the last writer wins.

    :param resolver: Version resolver shared by the run.
    :param client: HTTP client for archive downloads.
    :param dist_url: Base URL of the Node.js distribution server.
    :param logger: Logger for progress output.
    """

    def __init__(
        self,
        *,
        resolver: VersionResolver,
        client: httpx.AsyncClient,
        dist_url: str = NODE_DIST_URL,
        logger: logging.Logger | None = None,
    ) -> None:
        if logger is None:
            logger = logging.getLogger("fossilize")
        self.resolver: VersionResolver = resolver
        self.client: httpx.AsyncClient = client
        self.dist_url: str = dist_url.rstrip("/")
        self.logger: logging.Logger = logger
        self._scratch: tempfile.TemporaryDirectory[str] | None = None

    def close(self) -> None:
        """Remove the scratch directory used when caching is disabled."""

        if self._scratch is None:
            return
        try:
            self._scratch.cleanup()
        except OSError as e:
            self.logger.warning(f"fossilize: failed to remove {self._scratch.name}: {e}")
        self._scratch = None

    async def obtain(
        self,
        version_alias: str,
        platform: str,
        cache_dir: pathlib.Path | None,
        target_path: pathlib.Path | None,
    ) -> pathlib.Path:
        """Return a usable runtime binary for ``platform``.

        With ``target_path`` a working copy named
        ``<target_path>-<platform>[.exe]`` is produced and returned; without
        it the cached binary itself is returned (for running it directly).

        :param version_alias: Version alias to resolve.
        :param platform: Platform identifier.
        :param cache_dir: Cache directory, or ``None`` to stage in a run-scoped scratch directory.
        :param target_path: Optional working copy base path.
        :returns: Path to the binary.
        :raises ResolutionError: If the version cannot be resolved.
        :raises DownloadError: If the archive cannot be fetched.
        :raises EntryNotFoundError: If the archive lacks the runtime executable.
        :raises UnsignError: If the signature cannot be stripped.
        """

        version: str = await self.resolver.resolve(version_alias)
        cache_root: pathlib.Path = cache_dir if cache_dir is not None else self._scratch_root()

        cached: pathlib.Path | None = self._lookup(cache_root, version, platform)
        if cached is None:
            self.logger.info(f"fossilize: [{platform}] runtime cache miss for Node.js v{version}")
            await self._populate(cache_root, version, platform)
            cached = self._lookup(cache_root, version, platform)
            if cached is None:
                raise DownloadError(f"Runtime binary for v{version} {platform} missing after download")
        else:
            self.logger.info(f"fossilize: [{platform}] runtime cache hit for Node.js v{version}")

        if target_path is None:
            return cached

        target_file: pathlib.Path = target_path.with_name(
            f"{target_path.name}-{platform}{executable_suffix(platform)}"
        )
        target_file.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(shutil.copyfile, cached, target_file)
        return target_file

    def _scratch_root(self) -> pathlib.Path:
        if self._scratch is None:
            self._scratch = tempfile.TemporaryDirectory(prefix="fossilize_node_")
        return pathlib.Path(self._scratch.name)

    def _lookup(self, cache_root: pathlib.Path, version: str, platform: str) -> pathlib.Path | None:
        """Return the cached binary if it is present and readable.

        Missing, unreadable and empty files are all treated as a miss.
        """

        path: pathlib.Path = cache_root / cache_file_name(version, platform)
        try:
            if path.is_file() is False or path.stat().st_size == 0:
                return None
        except OSError:
            return None
        if os.access(path, os.R_OK) is False:
            return None
        return path

    async def _populate(self, cache_root: pathlib.Path, version: str, platform: str) -> None:
        # Note for the future: Windows archives are ~50% smaller as 7z, but
        # decoding 7z needs a native dependency.
        archive_name: str = runtime_archive_name(version, platform)
        url: str = f"{self.dist_url}/v{version}/{archive_name}"

        cache_root.mkdir(parents=True, exist_ok=True)
        staging: pathlib.Path = pathlib.Path(tempfile.mkdtemp(prefix=f"{archive_name}.", dir=cache_root))
        try:
            archive_path: pathlib.Path = staging / archive_name
            await self._download(url, archive_path, platform)

            binary: pathlib.Path = staging / cache_file_name(version, platform)
            await asyncio.to_thread(
                _extract_runtime,
                archive_path=archive_path,
                entry_name=runtime_entry_name(version, platform),
                binary=binary,
                platform=platform,
            )
            os.replace(binary, cache_root / cache_file_name(version, platform))
        finally:
            try:
                await asyncio.to_thread(shutil.rmtree, staging)
            except OSError as e:
                self.logger.error(f"fossilize: failed to remove {staging}: {e}")

    async def _download(self, url: str, dest: pathlib.Path, platform: str) -> None:
        self.logger.info(f"fossilize: [{platform}] downloading {url}")
        received: int = 0
        try:
            async with self.client.stream("GET", url) as response:
                if response.is_success is False:
                    raise DownloadError(f"Failed to fetch {url}: {response.status_code} {response.reason_phrase}")
                with open(dest, "wb") as f:
                    async for chunk in response.aiter_bytes():
                        await asyncio.to_thread(f.write, chunk)
                        received += len(chunk)
        except httpx.HTTPError as e:
            raise DownloadError(f"Failed to fetch {url}: {e}") from e

        if received == 0:
            raise DownloadError(f"Response body is empty for {url}")
        if self.logger.isEnabledFor(logging.DEBUG) is True:
            self.logger.debug(f"fossilize: [{platform}] downloaded {received / (1024 * 1024):.1f} MiB")


def _extract_runtime(
    *,
    archive_path: pathlib.Path,
    entry_name: str,
    binary: pathlib.Path,
    platform: str,
) -> None:
    """Extract, unsign and mark the runtime executable from a release archive.

    :param archive_path: Downloaded release archive.
    :param entry_name: Archive entry of the runtime executable.
    :param binary: Output path for the prepared binary.
    :param platform: Platform identifier.
    """

    data: bytes
    if archive_format(platform) == ZIP:
        data = extract_zip_entry(archive_path, entry_name)
    else:
        with open(archive_path, "rb") as f:
            data = extract_tar_xz_entry(f, entry_name)

    with open(binary, "wb") as f:
        f.write(data)
    unsign_file(binary, platform)
    make_executable(binary)
