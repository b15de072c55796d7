# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Package Manager Service - Modular Composition

Composes the transaction modules into the operations a front end calls:
install, remove, update, sync, search, list, info, repo and clean.
"""

import asyncio
import logging
import re
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

from pkgmgr.core.config import Config
from pkgmgr.core.errors import (
    ConfigurationError,
    InconsistentStateError,
    PackageManagerError,
    StaleStateError,
)
from pkgmgr.core.logging import log_event
from pkgmgr.models.package_models import (
    ExecutionResult,
    InstalledRecord,
    Package,
    PackageChange,
    RepositoryConfig,
    Request,
    ResolutionGraph,
    StepKind,
    TransactionJournal,
    TransactionReport,
    TransactionStatus,
)

from .executor import CancelCheck, TransactionExecutor
from .fetcher import ArchiveFetcher
from .index import PackageIndex, PackageIndexManager
from .journal import JournalStore, TransactionHistory
from .lock import StateLock
from .planner import TransactionPlanner
from .repositories import RepositoryConfigLoader
from .resolver import DependencyResolver
from .state import InstalledState, StateStore
from .versions import parse_predicate

logger = logging.getLogger(__name__)

_REQUEST_RE = re.compile(r"^(?P<name>[A-Za-z0-9][A-Za-z0-9._+-]*)\s*(?:@(?P<exact>\S+)|(?P<range>[<>=!^~].*))?$")


def parse_request(spec: str) -> Request:
    """
    Parse an install request string.

    Accepts "name", "name@1.0" (exact) and "name<op>version" forms such as
    "name>=1.2" or "name^2.0".

    Raises:
        PackageManagerError: If the string is not a package request
        InvalidVersionError: If the version predicate is malformed
    """
    match = _REQUEST_RE.match(spec.strip())
    if not match:
        raise PackageManagerError(f"Invalid package request: {spec!r}", details={"request": spec})

    constraint = None
    if match.group("exact"):
        constraint = f"=={match.group('exact')}"
    elif match.group("range"):
        constraint = match.group("range").strip()

    if constraint:
        parse_predicate(constraint)
    return Request.install(match.group("name"), constraint)


class ResultReporter(Protocol):
    """Receives the structured outcome of every transaction."""

    def report(self, operation: str, report: TransactionReport) -> None:
        ...


class LoggingReporter:
    """Default reporter: one structured log event per transaction"""

    def report(self, operation: str, report: TransactionReport) -> None:
        log_event(
            logger,
            "transaction_report",
            level="INFO" if report.success else "ERROR",
            operation=operation,
            success=report.success,
            transaction_id=report.transaction_id,
            changes=[change.model_dump(mode="json") for change in report.changes],
            proposed_orphans=report.proposed_orphans,
            error=report.error,
        )


class PackageManagerService:
    """
    Unified package manager service (modular composition).

    Composes:
    - RepositoryConfigLoader: Load repositories.conf
    - PackageIndexManager: Sync and snapshot repository metadata
    - DependencyResolver: Compute the target state
    - TransactionPlanner: Order it into steps
    - TransactionExecutor: Apply steps under the journal
    - TransactionHistory: Archive finished transactions
    """

    def __init__(self, config: Config, reporter: Optional[ResultReporter] = None):
        """
        Initialize package manager service.

        Args:
            config: Package manager configuration
            reporter: Receives transaction reports (defaults to LoggingReporter)
        """
        self.config = config
        self.reporter = reporter or LoggingReporter()

        self.config_loader = RepositoryConfigLoader(Path(config.repositories_conf))
        self.repositories = self.config_loader.load()

        self.index_manager = PackageIndexManager(config.index_file, timeout=config.http_timeout)
        self.state_store = StateStore(config.installed_file)
        self.journal_store = JournalStore(config.journal_file)
        self.history = TransactionHistory(config.history_file)
        self.fetcher = ArchiveFetcher.from_config(config)
        self.planner = TransactionPlanner()
        self.lock = StateLock(config.lock_file)

        logger.info(f"PackageManagerService initialized with {len(self.repositories)} repositories")

    @property
    def index(self) -> PackageIndex:
        return self.index_manager.build_index(self.repositories, self.config.tie_break)

    # =========================================================================
    # TRANSACTIONS
    # =========================================================================

    async def install(self, specs: Sequence[str], cancel: Optional[CancelCheck] = None) -> TransactionReport:
        """
        Install packages (and their dependencies).

        Args:
            specs: Request strings ("name", "name>=1.2", "name@1.0")
            cancel: Polled between resolution and execution steps

        Returns:
            Transaction report
        """
        return await self._transact("install", lambda: [parse_request(s) for s in specs], cancel)

    async def remove(
        self,
        names: Sequence[str],
        cascade: bool = False,
        cancel: Optional[CancelCheck] = None
    ) -> TransactionReport:
        """
        Remove installed packages.

        Args:
            names: Package names
            cascade: Also remove packages that depend on them
            cancel: Polled between steps

        Returns:
            Transaction report
        """
        return await self._transact("remove", lambda: [Request.remove(n, cascade=cascade) for n in names], cancel)

    async def update(
        self,
        names: Optional[Sequence[str]] = None,
        cancel: Optional[CancelCheck] = None
    ) -> TransactionReport:
        """
        Update named packages, or everything when names is empty.

        Returns:
            Transaction report (proposed_orphans is filled for a full update)
        """
        def requests() -> List[Request]:
            if names:
                return [Request.update(n) for n in names]
            return [Request.update_all()]

        return await self._transact("update", requests, cancel)

    async def _transact(
        self,
        operation: str,
        make_requests: Callable[[], List[Request]],
        cancel: Optional[CancelCheck]
    ) -> TransactionReport:
        try:
            requests = make_requests()
            with self.lock:
                state = self.state_store.load()
                await asyncio.to_thread(self._recover_locked, state)

                graph = DependencyResolver(self.index, self.config).resolve(state, requests, should_cancel=cancel)
                steps = self.planner.plan(graph)

                await self.fetcher.prefetch(s.package for s in steps if s.kind == StepKind.FETCH)

                on_disk = self.state_store.current_generation()
                if on_disk != state.generation:
                    raise StaleStateError(state.generation, on_disk)

                if not steps:
                    report = self._build_report(graph, None)
                else:
                    result = await asyncio.to_thread(self._executor(state).execute, steps, cancel=cancel)
                    self._archive(self.journal_store.load())
                    if result.success:
                        for step in steps:
                            if step.kind == StepKind.UNPACK:
                                self.fetcher.discard(step.package)
                    report = self._build_report(graph, result)
        except PackageManagerError as e:
            logger.error(f"{operation} failed: {e.message}")
            report = TransactionReport(success=False, error=e.to_dict())

        self.reporter.report(operation, report)
        return report

    def recover(self) -> Optional[ExecutionResult]:
        """
        Finish a transaction interrupted by a crash.

        Returns:
            Result of the resumed or rolled back transaction, None if there was none

        Raises:
            InconsistentStateError: A previous rollback failed
            JournalCorruptionError: The journal cannot be read
        """
        with self.lock:
            return self._recover_locked(self.state_store.load())

    def _recover_locked(self, state: InstalledState) -> Optional[ExecutionResult]:
        journal = self.journal_store.load()
        if journal is None:
            return None

        logger.warning(f"Found unfinished transaction {journal.id} ({journal.status.value})")
        result = self._executor(state).recover(journal)
        self._archive(journal)

        if journal.status == TransactionStatus.ROLLBACK_FAILED:
            raise InconsistentStateError(
                f"Transaction {journal.id} failed to roll back; manual repair required",
                details={"transaction_id": journal.id, "rollback_errors": journal.rollback_errors}
            )
        return result

    def _archive(self, journal: Optional[TransactionJournal]):
        """Move a finished journal into history; a failed rollback stays in place."""
        if journal is None or journal.status in (TransactionStatus.ACTIVE, TransactionStatus.ROLLBACK_FAILED):
            return
        self.history.log(journal)
        self.journal_store.clear()

    def _executor(self, state: InstalledState) -> TransactionExecutor:
        return TransactionExecutor(
            install_root=self.config.install_root_path,
            state=state,
            state_store=self.state_store,
            journal_store=self.journal_store,
            fetcher=self.fetcher,
            backup_dir=self.config.backup_dir,
        )

    def _build_report(self, graph: ResolutionGraph, result: Optional[ExecutionResult]) -> TransactionReport:
        applied = result is None or result.success
        changes = [
            PackageChange(
                name=node.name,
                action=node.action,
                from_version=node.previous_version,
                to_version=None if node.removed else node.version,
                applied=applied,
            )
            for node in graph.changes()
        ]
        return TransactionReport(
            success=applied,
            transaction_id=result.transaction_id if result else None,
            changes=changes,
            proposed_orphans=graph.proposed_orphans,
            skipped_optional=graph.skipped_optional,
            error=result.error if result else None,
            rolled_back=result.rolled_back if result else False,
            rollback_errors=result.rollback_errors if result else [],
            cancelled=result.cancelled if result else False,
        )

    # =========================================================================
    # QUERIES AND MAINTENANCE
    # =========================================================================

    async def sync(self, repository: Optional[str] = None) -> Dict[str, int]:
        """
        Refresh the package index from the configured repositories.

        Args:
            repository: Only refresh this repository

        Returns:
            Package count per refreshed repository
        """
        counts = await self.index_manager.refresh(self.repositories, repository)
        log_event(logger, "index_synced", repositories=counts)
        return counts

    def search(self, query: str) -> List[Package]:
        """Latest version of packages matching query in name or description."""
        return self.index.search(query)

    def list_installed(self) -> List[InstalledRecord]:
        return self.state_store.load().records()

    def info(self, name: str) -> Optional[Dict[str, Any]]:
        """
        Available versions and installed record of a package.

        Returns:
            Info dictionary or None if the package is unknown
        """
        available = self.index.candidates(name)
        installed = self.state_store.load().get(name)
        if not available and installed is None:
            return None
        return {
            "name": name,
            "available": [p.model_dump(mode="json") for p in available],
            "installed": installed.model_dump(mode="json") if installed else None,
        }

    def list_repositories(self) -> List[RepositoryConfig]:
        return sorted(self.repositories.values(), key=lambda r: r.position)

    def set_repository_enabled(self, name: str, enabled: bool) -> RepositoryConfig:
        """
        Enable or disable a repository and persist repositories.conf.

        Raises:
            ConfigurationError: If the repository is not configured
        """
        if name not in self.repositories:
            raise ConfigurationError(
                f"Repository not found: {name}",
                config_file=str(self.config.repositories_conf)
            )
        updated = self.repositories[name].model_copy(update={"enabled": enabled})
        self.repositories[name] = updated
        self.config_loader.save(self.repositories)
        logger.info(f"Repository {name} {'enabled' if enabled else 'disabled'}")
        return updated

    def clean(self) -> int:
        """Purge the archive cache and staging area; returns entries removed."""
        with self.lock:
            removed = self.fetcher.clean()
        logger.info(f"Cleaned {removed} cached entries")
        return removed

    def transactions(self, limit: int = 50) -> List[Dict[str, Any]]:
        """Recent finished transactions, most recent first."""
        return self.history.list_transactions(limit)
