# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Transaction Executor

Single responsibility: Apply a step list under a write-ahead journal, and
undo the committed prefix when a step fails or the transaction is cancelled.

Every step is marked in_progress on disk before it mutates anything and
committed on disk after it finishes. A journal found with an in_progress
step after a crash is therefore rolled back; one with only committed and
pending steps is resumed.
"""

import logging
import os
import shutil
import tempfile
from datetime import datetime, UTC
from pathlib import Path
from typing import Callable, Dict, List, Optional

from pkgmgr.core.errors import (
    InconsistentStateError,
    PackageManagerError,
    StepExecutionError,
    TransactionCancelledError,
    error_to_dict,
)
from pkgmgr.core.logging import log_event
from pkgmgr.models.package_models import (
    ExecutionResult,
    InstalledRecord,
    JournalEntry,
    Step,
    StepKind,
    StepStatus,
    TransactionJournal,
    TransactionStatus,
)

from .fetcher import ArchiveFetcher, sha256_file
from .journal import JournalStore, new_journal
from .state import InstalledState, StateStore

logger = logging.getLogger(__name__)

CancelCheck = Callable[[], bool]


class TransactionExecutor:
    """Executes transaction plans against the install root"""

    def __init__(
        self,
        install_root: Path,
        state: InstalledState,
        state_store: StateStore,
        journal_store: JournalStore,
        fetcher: ArchiveFetcher,
        backup_dir: Path
    ):
        """
        Initialize transaction executor.

        Args:
            install_root: Directory package files are linked into
            state: Installed state, mutated by record steps
            state_store: Persists the installed state
            journal_store: Persists the write-ahead journal
            fetcher: Archive fetcher/unpacker
            backup_dir: Where overwritten and removed files are kept until commit
        """
        self.install_root = Path(install_root)
        self.state = state
        self.state_store = state_store
        self.journal_store = journal_store
        self.fetcher = fetcher
        self.backup_dir = Path(backup_dir)

    # =========================================================================
    # EXECUTION
    # =========================================================================

    def execute(
        self,
        steps: List[Step],
        journal: Optional[TransactionJournal] = None,
        cancel: Optional[CancelCheck] = None
    ) -> ExecutionResult:
        """
        Execute steps in order.

        Args:
            steps: Planned steps (ignored when resuming a journal)
            journal: Existing journal to resume; a new one is created if None
            cancel: Polled before each step; a true result stops the transaction

        Returns:
            Execution result (rolled_back is set when a failure was undone)
        """
        if journal is None:
            journal = new_journal(steps, state_generation=self.state.generation)
            self.journal_store.save(journal)
            logger.info(f"Started transaction {journal.id} with {len(journal.entries)} step(s)")
        else:
            logger.info(f"Resuming transaction {journal.id}")

        result = ExecutionResult(transaction_id=journal.id)

        for entry in journal.entries:
            if entry.status == StepStatus.COMMITTED and self._is_applied(journal, entry.step):
                result.committed.append(entry.step)
                continue

            if cancel is not None and cancel():
                return self._cancel(journal, result)

            try:
                self._run(journal, entry)
            except (PackageManagerError, OSError) as e:
                return self._fail(journal, entry, e, result)

            result.committed.append(entry.step)

        journal.status = TransactionStatus.COMMITTED
        journal.finished_at = datetime.now(UTC)
        self.journal_store.save(journal)
        self._drop_backups(journal)

        log_event(
            logger, "transaction_finished",
            transaction_id=journal.id, status=journal.status.value, steps=len(journal.entries)
        )
        return result

    def recover(self, journal: TransactionJournal, cancel: Optional[CancelCheck] = None) -> ExecutionResult:
        """
        Bring an interrupted transaction to a terminal state.

        A step left in_progress (or failed) may have been partially applied,
        so the transaction is rolled back. Otherwise the remaining pending
        steps are executed.

        Raises:
            InconsistentStateError: If a previous rollback already failed
        """
        if journal.status == TransactionStatus.ROLLBACK_FAILED:
            raise InconsistentStateError(
                f"Transaction {journal.id} failed to roll back; manual repair required",
                details={"transaction_id": journal.id, "rollback_errors": journal.rollback_errors}
            )

        if journal.status != TransactionStatus.ACTIVE:
            return ExecutionResult(
                transaction_id=journal.id,
                committed=[e.step for e in journal.entries if e.status == StepStatus.COMMITTED],
                rolled_back=journal.status == TransactionStatus.ROLLED_BACK,
                error=journal.error,
            )

        interrupted = next(
            (e for e in journal.entries if e.status in (StepStatus.IN_PROGRESS, StepStatus.FAILED)),
            None
        )
        if interrupted is None:
            return self.execute(journal.steps, journal=journal, cancel=cancel)

        logger.warning(f"Transaction {journal.id} interrupted at {interrupted.step.key}; rolling back")
        error = StepExecutionError(
            f"Interrupted during {interrupted.step.key}",
            step=interrupted.step.key
        )
        return self._fail(journal, interrupted, error, ExecutionResult(transaction_id=journal.id))

    def _run(self, journal: TransactionJournal, entry: JournalEntry):
        step = entry.step
        first_attempt = entry.started_at is None
        entry.status = StepStatus.IN_PROGRESS
        entry.started_at = datetime.now(UTC)
        entry.error = None
        if step.kind == StepKind.LINK_FILES and first_attempt:
            entry.preexisting = [
                f.path for f in step.package.files
                if (self.install_root / f.path).exists()
            ]
        self.journal_store.save(journal)
        log_event(logger, "step_started", transaction_id=journal.id, step=step.key, index=step.index)

        self._apply(journal, entry)

        entry.status = StepStatus.COMMITTED
        entry.finished_at = datetime.now(UTC)
        self.journal_store.save(journal)
        log_event(logger, "step_committed", transaction_id=journal.id, step=step.key, index=step.index)

    def _fail(
        self,
        journal: TransactionJournal,
        entry: JournalEntry,
        error: Exception,
        result: ExecutionResult
    ) -> ExecutionResult:
        if not isinstance(error, PackageManagerError):
            error = StepExecutionError(str(error), step=entry.step.key)

        entry.status = StepStatus.FAILED
        entry.finished_at = datetime.now(UTC)
        entry.error = error_to_dict(error)
        journal.error = entry.error
        self.journal_store.save(journal)
        log_event(
            logger, "step_failed", level="ERROR",
            transaction_id=journal.id, step=entry.step.key, error=error.message
        )

        result.failed = entry.step
        result.error = entry.error
        self._rollback(journal, result, failed=entry)
        return result

    def _cancel(self, journal: TransactionJournal, result: ExecutionResult) -> ExecutionResult:
        error = TransactionCancelledError(f"Transaction {journal.id} cancelled")
        logger.warning(error.message)
        journal.error = error.to_dict()
        result.error = journal.error
        result.cancelled = True
        self._rollback(journal, result, failed=None)
        return result

    # =========================================================================
    # STEPS
    # =========================================================================

    def _apply(self, journal: TransactionJournal, entry: JournalEntry):
        step = entry.step
        if step.kind == StepKind.FETCH:
            self.fetcher.fetch(step.package)
        elif step.kind == StepKind.UNPACK:
            archive = self.fetcher.fetch(step.package)
            self.fetcher.unpack(step.package, archive)
        elif step.kind == StepKind.LINK_FILES:
            self._link_files(journal, step)
        elif step.kind == StepKind.REMOVE_FILES:
            self._remove_files(journal, step)
        elif step.kind == StepKind.RECORD_INSTALL:
            self._record_install(journal, step)
        elif step.kind == StepKind.RECORD_REMOVAL:
            self.state.remove(step.name)
            self.state_store.save(self.state)
        else:
            raise StepExecutionError(f"Unknown step kind: {step.kind}", step=step.key)

    def _claims(self, journal: TransactionJournal, exclude: str) -> Dict[str, str]:
        """
        Owner of every install-root path once this transaction completes.

        Installed records count unless the journal removes or replaces their
        package; replaced packages count with the files of their new version.
        Paths owned by `exclude` are left out.
        """
        incoming = {
            e.step.name: e.step.package for e in journal.entries
            if e.step.kind == StepKind.LINK_FILES
        }
        removing = {e.step.name for e in journal.entries if e.step.kind == StepKind.RECORD_REMOVAL}

        owners: Dict[str, str] = {}
        for record in self.state.records():
            if record.name == exclude or record.name in removing or record.name in incoming:
                continue
            for f in record.files:
                owners.setdefault(f.path, record.key)
        for name, package in incoming.items():
            if name == exclude:
                continue
            for f in package.files:
                owners.setdefault(f.path, package.key)
        return owners

    def _link_files(self, journal: TransactionJournal, step: Step):
        claims = self._claims(journal, exclude=step.name)
        for entry in step.package.files:
            owner = claims.get(entry.path)
            if owner is not None:
                raise StepExecutionError(
                    f"{entry.path} of {step.package.key} is owned by {owner}",
                    step=step.key,
                    details={"path": entry.path, "owner": owner}
                )

        staged = self.fetcher.staged_path(step.package)
        for entry in step.package.files:
            source = staged / entry.path
            target = self.install_root / entry.path
            if not source.is_file():
                raise StepExecutionError(f"Staged file missing: {source}", step=step.key)

            if target.exists() or target.is_symlink():
                self._backup(journal, step, entry.path)

            target.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", dir=target.parent)
            try:
                with os.fdopen(fd, "wb") as out, open(source, "rb") as src:
                    shutil.copyfileobj(src, out)
                    out.flush()
                    os.fsync(out.fileno())
                os.chmod(tmp_name, entry.mode)
                os.replace(tmp_name, target)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise

            if sha256_file(target) != entry.checksum:
                raise StepExecutionError(
                    f"Checksum mismatch after linking {entry.path}",
                    step=step.key,
                    details={"path": entry.path}
                )

    def _remove_files(self, journal: TransactionJournal, step: Step):
        claims = self._claims(journal, exclude=step.name)
        for path in step.paths:
            target = self.install_root / path
            if not (target.exists() or target.is_symlink()):
                continue
            if path in claims:
                logger.debug(f"Keeping {path}: owned by {claims[path]}")
                continue
            if not self._backup(journal, step, path):
                target.unlink()
            self._prune_dirs(target.parent)

    def _record_install(self, journal: TransactionJournal, step: Step):
        package = step.package
        for entry in package.files:
            target = self.install_root / entry.path
            if not target.is_file() or sha256_file(target) != entry.checksum:
                raise StepExecutionError(
                    f"{package.key} file {entry.path} is missing or modified",
                    step=step.key,
                    details={"path": entry.path}
                )

        self.state.put(InstalledRecord(
            name=package.name,
            version=package.version,
            files=list(package.files),
            explicit=step.explicit,
            dependencies=list(package.dependencies),
            conflicts=list(package.conflicts),
            repository=package.repository,
            transaction_id=journal.id,
        ))
        self.state_store.save(self.state)

    def _is_applied(self, journal: TransactionJournal, step: Step) -> bool:
        """Whether a step's effect is already present (re-running it would be a no-op)."""
        record = self.state.get(step.name)
        at_target = record is not None and record.version == step.version

        if step.kind == StepKind.FETCH:
            return self.fetcher.is_cached(step.package) or at_target
        if step.kind == StepKind.UNPACK:
            return self.fetcher.staged_path(step.package).is_dir() or at_target
        if step.kind == StepKind.LINK_FILES:
            return all(
                (self.install_root / f.path).is_file()
                and sha256_file(self.install_root / f.path) == f.checksum
                for f in step.package.files
            )
        if step.kind == StepKind.REMOVE_FILES:
            claims = self._claims(journal, exclude=step.name)
            return not any(
                (self.install_root / p).exists() for p in step.paths if p not in claims
            )
        if step.kind == StepKind.RECORD_INSTALL:
            return (
                at_target
                and record.explicit == step.explicit
                and sorted(record.files, key=lambda f: f.path) == sorted(step.package.files, key=lambda f: f.path)
            )
        if step.kind == StepKind.RECORD_REMOVAL:
            return record is None
        return False

    # =========================================================================
    # ROLLBACK
    # =========================================================================

    def _rollback(self, journal: TransactionJournal, result: ExecutionResult, failed: Optional[JournalEntry]):
        """Compensate the failed step, then committed steps in reverse order."""
        targets = [failed] if failed is not None else []
        targets += [e for e in reversed(journal.entries) if e.status == StepStatus.COMMITTED]

        for entry in targets:
            try:
                self._compensate(journal, entry)
                log_event(logger, "rollback_step", transaction_id=journal.id, step=entry.step.key)
            except (PackageManagerError, OSError) as e:
                failure = {"step": entry.step.key, **error_to_dict(e)}
                journal.rollback_errors.append(failure)
                log_event(
                    logger, "rollback_step", level="ERROR",
                    transaction_id=journal.id, step=entry.step.key, error=str(e)
                )

        result.rolled_back = bool(targets) and not journal.rollback_errors
        result.rollback_errors = list(journal.rollback_errors)

        if journal.rollback_errors:
            journal.status = TransactionStatus.ROLLBACK_FAILED
        else:
            journal.status = TransactionStatus.ROLLED_BACK
            self._drop_backups(journal)
        journal.finished_at = datetime.now(UTC)
        self.journal_store.save(journal)

        log_event(
            logger, "transaction_finished",
            level="ERROR" if journal.rollback_errors else "WARNING",
            transaction_id=journal.id, status=journal.status.value, steps=len(journal.entries)
        )

    def _compensate(self, journal: TransactionJournal, entry: JournalEntry):
        step = entry.step
        if step.kind == StepKind.FETCH:
            return
        if step.kind == StepKind.UNPACK:
            self.fetcher.discard(step.package)
        elif step.kind == StepKind.LINK_FILES:
            preexisting = set(entry.preexisting)
            for f in step.package.files:
                target = self.install_root / f.path
                if self._restore(journal, step, f.path):
                    continue
                if f.path not in preexisting and (target.exists() or target.is_symlink()):
                    target.unlink()
                    self._prune_dirs(target.parent)
        elif step.kind == StepKind.REMOVE_FILES:
            for path in step.paths:
                self._restore(journal, step, path)
        elif step.kind == StepKind.RECORD_INSTALL:
            if step.previous is not None:
                self.state.put(step.previous)
            else:
                self.state.remove(step.name)
            self.state_store.save(self.state)
        elif step.kind == StepKind.RECORD_REMOVAL:
            if step.previous is not None:
                self.state.put(step.previous)
                self.state_store.save(self.state)

    # =========================================================================
    # BACKUPS
    # =========================================================================

    def _backup_path(self, journal: TransactionJournal, step: Step, path: str) -> Path:
        return self.backup_dir / journal.id / str(step.index) / path

    def _backup(self, journal: TransactionJournal, step: Step, path: str) -> bool:
        """
        Move an install-root file into the transaction backup area.

        Returns False when a backup from an earlier attempt of the same step
        already exists; that copy holds the original content and is kept.
        """
        backup = self._backup_path(journal, step, path)
        if backup.exists() or backup.is_symlink():
            return False
        backup.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(self.install_root / path), str(backup))
        return True

    def _restore(self, journal: TransactionJournal, step: Step, path: str) -> bool:
        backup = self._backup_path(journal, step, path)
        if not (backup.exists() or backup.is_symlink()):
            return False
        target = self.install_root / path
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(backup), str(target))
        return True

    def _drop_backups(self, journal: TransactionJournal):
        shutil.rmtree(self.backup_dir / journal.id, ignore_errors=True)

    def _prune_dirs(self, directory: Path):
        """Remove empty directories up to (not including) the install root."""
        root = self.install_root.resolve()
        current = directory
        while current.resolve() != root and root in current.resolve().parents:
            try:
                current.rmdir()
            except OSError:
                return
            current = current.parent
