# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Archive Fetcher

Single responsibility: Bring package archives into the local cache and unpack
them into a staging area, verifying the manifest checksums.
"""

import asyncio
import hashlib
import logging
import os
import shutil
import tarfile
import tempfile
from pathlib import Path, PurePosixPath
from typing import Dict, Iterable, Optional
from urllib.parse import unquote, urlparse

import httpx

from pkgmgr.core.config import Config
from pkgmgr.core.errors import CorruptArchiveError, FetchError
from pkgmgr.models.package_models import Package

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


def sha256_file(path: Path) -> str:
    """SHA256 hex digest of a file."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


class ArchiveFetcher:
    """Downloads, caches and unpacks package archives"""

    def __init__(
        self,
        archive_dir: Path,
        staging_dir: Path,
        timeout: float = 30.0,
        workers: int = 4
    ):
        """
        Initialize archive fetcher.

        Args:
            archive_dir: Cache directory for downloaded archives
            staging_dir: Directory archives are unpacked into
            timeout: HTTP timeout in seconds
            workers: Maximum concurrent downloads during prefetch
        """
        self.archive_dir = Path(archive_dir)
        self.staging_dir = Path(staging_dir)
        self.timeout = timeout
        self.workers = workers

    @classmethod
    def from_config(cls, config: Config) -> "ArchiveFetcher":
        return cls(
            archive_dir=config.archive_dir,
            staging_dir=config.staging_dir,
            timeout=config.http_timeout,
            workers=config.fetch_workers,
        )

    def archive_path(self, package: Package) -> Path:
        """Cache location of a package's archive."""
        reference = package.archive or ""
        basename = PurePosixPath(urlparse(reference).path).name or "archive.tar.gz"
        return self.archive_dir / package.name / package.version / basename

    def staged_path(self, package: Package) -> Path:
        return self.staging_dir / f"{package.name}-{package.version}"

    def is_cached(self, package: Package) -> bool:
        return self.archive_path(package).is_file()

    # =========================================================================
    # FETCH
    # =========================================================================

    def fetch(self, package: Package) -> Path:
        """
        Make the package archive available locally.

        Args:
            package: Package to fetch

        Returns:
            Path of the cached archive

        Raises:
            FetchError: If the archive cannot be retrieved
        """
        target = self.archive_path(package)
        if target.is_file():
            logger.debug(f"Archive for {package.key} already cached")
            return target

        if not package.archive:
            raise FetchError(f"No archive reference for {package.key}", package=package.key)

        logger.info(f"Fetching {package.key} from {package.archive}")
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", dir=target.parent)
        try:
            with os.fdopen(fd, "wb") as out:
                if _is_http(package.archive):
                    with httpx.Client(timeout=self.timeout, follow_redirects=True) as client:
                        with client.stream("GET", package.archive) as response:
                            response.raise_for_status()
                            for chunk in response.iter_bytes(CHUNK_SIZE):
                                out.write(chunk)
                else:
                    with open(_local_path(package.archive), "rb") as src:
                        shutil.copyfileobj(src, out, CHUNK_SIZE)
            os.replace(tmp_name, target)
        except (httpx.HTTPError, OSError) as e:
            Path(tmp_name).unlink(missing_ok=True)
            raise FetchError(
                f"Failed to fetch {package.key}: {e}",
                package=package.key,
                details={"archive": package.archive}
            )

        return target

    async def prefetch(self, packages: Iterable[Package]) -> Dict[str, Path]:
        """
        Fetch several archives concurrently before a transaction starts.

        Args:
            packages: Packages to fetch

        Returns:
            Cached archive path per package key

        Raises:
            FetchError: First failure, in the order packages were given
        """
        pending = [p for p in packages if not self.is_cached(p)]
        if not pending:
            return {}

        semaphore = asyncio.Semaphore(self.workers)
        logger.info(f"Prefetching {len(pending)} archive(s) with {self.workers} worker(s)")

        async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
            async def fetch_one(package: Package) -> Path:
                async with semaphore:
                    if package.archive and _is_http(package.archive):
                        return await self._download_async(client, package)
                    return await asyncio.to_thread(self.fetch, package)

            results = await asyncio.gather(*(fetch_one(p) for p in pending), return_exceptions=True)

        paths = {}
        for package, result in zip(pending, results):
            if isinstance(result, BaseException):
                raise result
            paths[package.key] = result
        return paths

    async def _download_async(self, client: httpx.AsyncClient, package: Package) -> Path:
        target = self.archive_path(package)
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", dir=target.parent)
        try:
            with os.fdopen(fd, "wb") as out:
                async with client.stream("GET", package.archive) as response:
                    response.raise_for_status()
                    async for chunk in response.aiter_bytes(CHUNK_SIZE):
                        out.write(chunk)
            os.replace(tmp_name, target)
        except (httpx.HTTPError, OSError) as e:
            Path(tmp_name).unlink(missing_ok=True)
            raise FetchError(
                f"Failed to fetch {package.key}: {e}",
                package=package.key,
                details={"archive": package.archive}
            )
        return target

    # =========================================================================
    # UNPACK
    # =========================================================================

    def unpack(self, package: Package, archive: Path) -> Path:
        """
        Extract an archive into the staging area and verify the manifest.

        Args:
            package: Package whose manifest is checked
            archive: Cached archive path

        Returns:
            Staging directory holding the package files

        Raises:
            CorruptArchiveError: Unreadable archive, unsafe member or checksum mismatch
        """
        staged = self.staged_path(package)
        self.staging_dir.mkdir(parents=True, exist_ok=True)
        work = Path(tempfile.mkdtemp(prefix=f".{staged.name}.", dir=self.staging_dir))

        try:
            self._extract(package, archive, work)
            self._verify(package, work)
        except BaseException:
            shutil.rmtree(work, ignore_errors=True)
            raise

        if staged.exists():
            shutil.rmtree(staged)
        os.replace(work, staged)
        logger.debug(f"Unpacked {package.key} into {staged}")
        return staged

    def discard(self, package: Package):
        """Remove a package's staging directory (no-op if absent)."""
        staged = self.staged_path(package)
        if staged.exists():
            shutil.rmtree(staged)

    def evict(self, package: Package):
        """Drop a cached archive so the next fetch downloads it again."""
        self.archive_path(package).unlink(missing_ok=True)

    def _extract(self, package: Package, archive: Path, work: Path):
        try:
            with tarfile.open(archive, "r:*") as tar:
                for member in tar.getmembers():
                    relative = _safe_member_path(member.name)
                    if relative is None:
                        continue
                    if member.isdir():
                        (work / relative).mkdir(parents=True, exist_ok=True)
                        continue
                    if not member.isfile():
                        raise CorruptArchiveError(
                            f"Unsupported archive member {member.name!r} in {package.key}",
                            package=package.key
                        )
                    dest = work / relative
                    dest.parent.mkdir(parents=True, exist_ok=True)
                    src = tar.extractfile(member)
                    with src, open(dest, "wb") as out:
                        shutil.copyfileobj(src, out, CHUNK_SIZE)
        except (tarfile.TarError, EOFError, OSError) as e:
            self.evict(package)
            raise CorruptArchiveError(
                f"Cannot read archive of {package.key}: {e}",
                package=package.key,
                details={"archive": str(archive)}
            )
        except ValueError as e:
            self.evict(package)
            raise CorruptArchiveError(str(e), package=package.key, details={"archive": str(archive)})

    def _verify(self, package: Package, work: Path):
        for entry in package.files:
            path = work / entry.path
            if not path.is_file():
                self.evict(package)
                raise CorruptArchiveError(
                    f"{package.key} archive is missing {entry.path}",
                    package=package.key
                )
            actual = sha256_file(path)
            if actual != entry.checksum:
                self.evict(package)
                raise CorruptArchiveError(
                    f"Checksum mismatch for {entry.path} in {package.key}",
                    package=package.key,
                    details={"path": entry.path, "expected": entry.checksum, "actual": actual}
                )

    def clean(self) -> int:
        """Delete all cached archives and staged packages; returns entries removed."""
        removed = 0
        for directory in (self.archive_dir, self.staging_dir):
            if not directory.exists():
                continue
            for child in directory.iterdir():
                if child.is_dir():
                    shutil.rmtree(child)
                else:
                    child.unlink()
                removed += 1
        return removed


def _is_http(reference: str) -> bool:
    return urlparse(reference).scheme in ("http", "https")


def _local_path(reference: str) -> Path:
    parsed = urlparse(reference)
    if parsed.scheme == "file":
        return Path(unquote(parsed.path))
    return Path(reference)


def _safe_member_path(name: str) -> Optional[str]:
    """
    Normalize an archive member name.

    Returns None for the archive root. Raises ValueError for absolute paths or
    paths escaping the archive.
    """
    path = PurePosixPath(name)
    if path.is_absolute():
        raise ValueError(f"Absolute path in archive: {name!r}")
    parts = [part for part in path.parts if part not in ("", ".")]
    if ".." in parts:
        raise ValueError(f"Path escapes archive: {name!r}")
    if not parts:
        return None
    return "/".join(parts)
