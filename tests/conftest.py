# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Test Fixtures and Utilities

Provides pytest fixtures for throwaway configurations, repositories with
real tar archives, and a small harness that drives resolve -> plan ->
execute against a temporary install root.
"""

import hashlib
import io
import json
import re
import tarfile
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Union

import pytest

from pkgmgr.core.config import Config
from pkgmgr.models.package_models import (
    DependencyConstraint,
    ExecutionResult,
    FileEntry,
    InstalledRecord,
    Package,
    Request,
    ResolutionGraph,
    Step,
)
from pkgmgr.services.transaction.executor import TransactionExecutor
from pkgmgr.services.transaction.fetcher import ArchiveFetcher
from pkgmgr.services.transaction.index import PackageIndex
from pkgmgr.services.transaction.journal import JournalStore
from pkgmgr.services.transaction.planner import TransactionPlanner
from pkgmgr.services.transaction.resolver import DependencyResolver
from pkgmgr.services.transaction.state import InstalledState, StateStore


DepSpec = Union[str, DependencyConstraint]


def constraint(spec: DepSpec, optional: bool = False) -> DependencyConstraint:
    """Build a constraint from "name", "name>=1.0" or "name==1.0"."""
    if isinstance(spec, DependencyConstraint):
        return spec
    match = re.match(r"^([A-Za-z0-9._+-]+)(.*)$", spec.strip())
    version = match.group(2).strip() or "*"
    return DependencyConstraint(name=match.group(1), version=version, optional=optional)


def sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def build_archive(path: Path, files: Dict[str, bytes]):
    """Write a tar.gz archive holding the given files."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with tarfile.open(path, "w:gz") as tar:
        for name, data in sorted(files.items()):
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(data))


def make_record(
    name: str,
    version: str,
    dependencies: Sequence[DepSpec] = (),
    explicit: bool = True,
    files: Optional[Dict[str, bytes]] = None
) -> InstalledRecord:
    """Installed record with optional file manifest (content is not written)."""
    return InstalledRecord(
        name=name,
        version=version,
        explicit=explicit,
        dependencies=[constraint(d) for d in dependencies],
        files=[FileEntry(path=p, checksum=sha256(data)) for p, data in sorted((files or {}).items())],
        repository="main",
    )


class RepoBuilder:
    """Builds a repository directory: archives/ plus index.json"""

    def __init__(self, root: Path, name: str = "main"):
        self.root = root
        self.name = name
        self.packages: List[Package] = []
        self.contents: Dict[str, Dict[str, bytes]] = {}

    def add(
        self,
        name: str,
        version: str,
        dependencies: Sequence[DepSpec] = (),
        conflicts: Sequence[DepSpec] = (),
        files: Optional[Dict[str, bytes]] = None,
        optional: Iterable[str] = (),
        description: str = ""
    ) -> Package:
        """
        Add a package with a real archive.

        Args:
            dependencies: Required dependency specs
            optional: Optional dependency specs
            files: path -> content; defaults to one file under share/<name>/
        """
        if files is None:
            files = {f"share/{name}/{name}.txt": f"{name} {version}\n".encode()}

        archive = self.root / "archives" / f"{name}-{version}.tar.gz"
        build_archive(archive, files)

        package = Package(
            name=name,
            version=version,
            description=description or f"{name} package",
            dependencies=[constraint(d) for d in dependencies] + [constraint(d, optional=True) for d in optional],
            conflicts=[constraint(c) for c in conflicts],
            files=[FileEntry(path=p, checksum=sha256(data)) for p, data in sorted(files.items())],
            size=sum(len(data) for data in files.values()),
            archive=str(archive),
            repository=self.name,
        )
        self.packages.append(package)
        self.contents[package.key] = dict(files)
        return package

    def corrupt(self, package: Package):
        """Rewrite a package's archive so its content no longer matches the manifest."""
        files = {path: data + b"tampered" for path, data in self.contents[package.key].items()}
        build_archive(Path(package.archive), files)

    def index(self) -> PackageIndex:
        return PackageIndex([(self.name, self.packages)])

    def write_index(self) -> Path:
        """Write index.json with archive references relative to the repository."""
        entries = []
        for package in self.packages:
            data = package.model_dump(mode="json", exclude={"repository"})
            data["archive"] = str(Path(package.archive).relative_to(self.root))
            entries.append(data)
        self.root.mkdir(parents=True, exist_ok=True)
        path = self.root / "index.json"
        path.write_text(json.dumps({"packages": entries}, indent=2))
        return path


class Engine:
    """Resolve -> plan -> execute harness sharing one installed state"""

    def __init__(self, config: Config):
        self.config = config
        self.state_store = StateStore(config.installed_file)
        self.journal_store = JournalStore(config.journal_file)
        self.fetcher = ArchiveFetcher.from_config(config)
        self.planner = TransactionPlanner()
        self.state = self.state_store.load()

    @property
    def root(self) -> Path:
        return self.config.install_root_path

    def reload(self) -> InstalledState:
        self.state = self.state_store.load()
        return self.state

    def executor(self) -> TransactionExecutor:
        return TransactionExecutor(
            install_root=self.root,
            state=self.state,
            state_store=self.state_store,
            journal_store=self.journal_store,
            fetcher=self.fetcher,
            backup_dir=self.config.backup_dir,
        )

    def resolve(self, index: PackageIndex, *requests: Request) -> ResolutionGraph:
        return DependencyResolver(index, self.config).resolve(self.state, list(requests))

    def plan(self, index: PackageIndex, *requests: Request) -> List[Step]:
        return self.planner.plan(self.resolve(index, *requests))

    def run(self, index: PackageIndex, *requests: Request) -> ExecutionResult:
        return self.executor().execute(self.plan(index, *requests))


@pytest.fixture
def config(tmp_path):
    """Configuration rooted entirely under tmp_path."""
    return Config(
        install_root=str(tmp_path / "root"),
        state_dir=str(tmp_path / "state"),
        cache_dir=str(tmp_path / "cache"),
        repositories_conf=str(tmp_path / "etc" / "repositories.conf"),
        fetch_workers=2,
        log_format="text",
    )


@pytest.fixture
def repo(tmp_path):
    """Empty repository named "main"."""
    return RepoBuilder(tmp_path / "repo", "main")


@pytest.fixture
def engine(config):
    return Engine(config)
