# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Package Index

Single responsibility: Hold the available packages of all repositories
(PackageIndex, immutable) and keep the on-disk snapshot fresh
(PackageIndexManager).
"""

import json
import logging
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
from datetime import datetime, UTC
from urllib.parse import urlparse

import httpx
from pydantic import ValidationError

from pkgmgr.core.errors import ConfigurationError, FetchError, InvalidVersionError
from pkgmgr.models.package_models import Package, RepositoryConfig

from .state import atomic_write_text
from .versions import parse_version

logger = logging.getLogger(__name__)


class PackageIndex:
    """
    Immutable view of available packages.

    Candidates for a name are ordered highest version first; equal versions
    keep the order of the repositories passed in, which is the tie-break.
    """

    def __init__(self, repositories: Sequence[Tuple[str, Iterable[Package]]]):
        """
        Args:
            repositories: (repository name, packages) pairs in precedence order
        """
        rank: Dict[str, int] = {}
        by_name: Dict[str, List[Package]] = {}
        seen = set()

        for repo_name, packages in repositories:
            rank.setdefault(repo_name, len(rank))
            for package in packages:
                if package.repository != repo_name:
                    package = package.model_copy(update={"repository": repo_name})
                identity = (repo_name, package.name, package.version)
                if identity in seen:
                    continue
                try:
                    parse_version(package.version)
                except InvalidVersionError as e:
                    logger.warning(f"Skipping {package.key} from {repo_name}: {e.message}")
                    continue
                seen.add(identity)
                by_name.setdefault(package.name, []).append(package)

        ordered = {}
        for name, packages in by_name.items():
            packages.sort(key=lambda p: rank[p.repository])
            # Stable: equal versions keep repository order
            packages.sort(key=lambda p: parse_version(p.version), reverse=True)
            ordered[name] = tuple(packages)

        self._by_name = MappingProxyType(ordered)
        self._repositories = tuple(rank)

    @classmethod
    def from_snapshot(
        cls,
        snapshot: Dict[str, Any],
        repositories: Optional[Dict[str, RepositoryConfig]] = None,
        tie_break: str = "declaration"
    ) -> "PackageIndex":
        """
        Build an index from a package-index.json snapshot.

        Args:
            snapshot: {"repositories": {name: {"packages": [...]}}}
            repositories: Repository configs; disabled ones are skipped and
                the remaining are ordered by the tie-break policy
            tie_break: "declaration" (repositories.conf order) or "priority"
                (lower priority value first, then declaration order)
        """
        data = snapshot.get("repositories", {}) or {}
        names = list(data)

        if repositories is not None:
            configured = [r for r in repositories.values() if r.name in data and r.enabled]
            if tie_break == "priority":
                configured.sort(key=lambda r: (r.priority, r.position))
            else:
                configured.sort(key=lambda r: r.position)
            names = [r.name for r in configured]

        return cls([(name, parse_packages(data[name].get("packages", []), name)) for name in names])

    @property
    def repositories(self) -> Tuple[str, ...]:
        return self._repositories

    def candidates(self, name: str) -> Tuple[Package, ...]:
        """All versions of a package, best first."""
        return self._by_name.get(name, ())

    def get(self, name: str, version: str) -> Optional[Package]:
        for package in self.candidates(name):
            if package.version == version:
                return package
        return None

    def latest(self, name: str) -> Optional[Package]:
        candidates = self.candidates(name)
        return candidates[0] if candidates else None

    def names(self) -> List[str]:
        return sorted(self._by_name)

    def search(self, query: str) -> List[Package]:
        """Latest version of every package whose name or description contains query."""
        needle = query.lower()
        results = []
        for name in self.names():
            latest = self._by_name[name][0]
            if needle in name.lower() or needle in latest.description.lower():
                results.append(latest)
        return results

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def __len__(self) -> int:
        return sum(len(packages) for packages in self._by_name.values())


def parse_packages(raw_packages: Iterable[Dict[str, Any]], repository: str) -> List[Package]:
    """Validate raw package dicts, skipping malformed entries."""
    packages = []
    for raw in raw_packages:
        try:
            packages.append(Package.model_validate({**raw, "repository": repository}))
        except ValidationError as e:
            logger.warning(f"Skipping malformed package in {repository}: {e.error_count()} error(s)")
    return packages


class PackageIndexManager:
    """Manages the package index snapshot fetched from all repositories"""

    def __init__(self, index_file: Path, timeout: float = 30.0):
        """
        Initialize package index manager.

        Args:
            index_file: Path to package-index.json
            timeout: HTTP timeout for repository fetches
        """
        self.index_file = Path(index_file)
        self.timeout = timeout
        self.snapshot = self._load_snapshot()

    def _load_snapshot(self) -> Dict[str, Any]:
        """
        Load package index from disk.

        Returns:
            Package index dictionary
        """
        if not self.index_file.exists():
            return {"last_updated": None, "repositories": {}}

        try:
            return json.loads(self.index_file.read_text())
        except json.JSONDecodeError as e:
            logger.error(f"Failed to load package index: {e}")
            return {"last_updated": None, "repositories": {}}

    def _save_snapshot(self):
        """Save package index to disk"""
        atomic_write_text(self.index_file, json.dumps(self.snapshot, indent=2))

    def build_index(
        self,
        repositories: Optional[Dict[str, RepositoryConfig]] = None,
        tie_break: str = "declaration"
    ) -> PackageIndex:
        """Immutable index over the current snapshot."""
        return PackageIndex.from_snapshot(self.snapshot, repositories, tie_break)

    async def refresh(
        self,
        repositories: Dict[str, RepositoryConfig],
        repository_name: Optional[str] = None
    ) -> Dict[str, int]:
        """
        Refresh package index from repositories.

        Args:
            repositories: Dictionary of repository configurations
            repository_name: Optional specific repository to refresh

        Returns:
            Package count per refreshed repository
        """
        logger.info("Refreshing package index...")

        if repository_name:
            if repository_name not in repositories:
                raise ConfigurationError(f"Repository not found: {repository_name}")
            to_refresh = [repositories[repository_name]]
        else:
            to_refresh = [r for r in repositories.values() if r.enabled]

        new_repositories = dict(self.snapshot.get("repositories", {}))
        counts = {}

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            for repo in to_refresh:
                try:
                    logger.info(f"Fetching packages from {repo.name}...")
                    raw_packages = await self._fetch_repository(client, repo)
                except FetchError as e:
                    logger.error(f"Failed to fetch from {repo.name}: {e.message}")
                    # Continue with other repositories - partial failure is acceptable
                    continue

                packages = parse_packages(raw_packages, repo.name)
                new_repositories[repo.name] = {
                    "url": repo.url,
                    "packages": [
                        _with_absolute_archive(p.model_dump(mode="json", exclude={"repository"}), repo.url)
                        for p in packages
                    ],
                    "last_updated": datetime.now(UTC).isoformat()
                }
                counts[repo.name] = len(packages)
                logger.info(f"Fetched {len(packages)} packages from {repo.name}")

        if not counts and to_refresh:
            logger.warning("No repositories available - keeping existing index")
            raise FetchError("All repositories failed - package index not updated")

        # Keep declaration order, drop repositories no longer configured
        ordered = {name: new_repositories[name] for name in repositories if name in new_repositories}
        self.snapshot = {
            "last_updated": datetime.now(UTC).isoformat(),
            "repositories": ordered,
        }
        self._save_snapshot()
        return counts

    async def _fetch_repository(self, client: httpx.AsyncClient, repo: RepositoryConfig) -> List[Dict[str, Any]]:
        """Fetch <url>/index.json from an http(s) or local repository."""
        parsed = urlparse(repo.url)
        try:
            if parsed.scheme in ("http", "https"):
                response = await client.get(f"{repo.url.rstrip('/')}/index.json")
                response.raise_for_status()
                data = response.json()
            else:
                base = Path(parsed.path if parsed.scheme == "file" else repo.url)
                data = json.loads((base / "index.json").read_text())
        except (httpx.HTTPError, OSError, ValueError) as e:
            raise FetchError(f"Cannot read index of {repo.name}: {e}", details={"repository": repo.name})

        if isinstance(data, dict):
            data = data.get("packages", [])
        if not isinstance(data, list):
            raise FetchError(f"Index of {repo.name} is not a package list", details={"repository": repo.name})
        return data


def _with_absolute_archive(package: Dict[str, Any], base_url: str) -> Dict[str, Any]:
    """Resolve a relative archive reference against the repository URL."""
    archive = package.get("archive")
    if not archive or "://" in archive or archive.startswith("/"):
        return package
    parsed = urlparse(base_url)
    if parsed.scheme in ("http", "https", "file"):
        package["archive"] = f"{base_url.rstrip('/')}/{archive}"
    else:
        package["archive"] = str(Path(base_url) / archive)
    return package
