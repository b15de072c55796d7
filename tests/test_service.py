# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Integration Tests for PackageManagerService

Drives the full pipeline (sync, resolve, plan, prefetch, execute, report)
against a local repository directory.
"""

import threading
from pathlib import Path

import pytest

from pkgmgr.core.errors import ConfigurationError, InconsistentStateError, PackageManagerError
from pkgmgr.models.package_models import NodeAction, Request, TransactionStatus
from pkgmgr.services.transaction import PackageManagerService, parse_request
from pkgmgr.services.transaction.executor import TransactionExecutor
from pkgmgr.services.transaction.journal import new_journal
from pkgmgr.services.transaction.lock import StateLock
from pkgmgr.services.transaction.repositories import RepositoryConfigLoader

from conftest import Engine


class RecordingReporter:
    """Collects (operation, report) pairs"""

    def __init__(self):
        self.reports = []

    def report(self, operation, report):
        self.reports.append((operation, report))


def write_repositories_conf(config, *repos):
    conf = Path(config.repositories_conf)
    conf.parent.mkdir(parents=True, exist_ok=True)
    sections = [f"[{r.name}]\nurl = {r.root}\nenabled = true\n" for r in repos]
    conf.write_text("\n".join(sections))


async def make_service(config, repo, reporter=None):
    repo.write_index()
    write_repositories_conf(config, repo)
    service = PackageManagerService(config, reporter=reporter)
    await service.sync()
    return service


def changes(report):
    return [(c.name, c.action, c.from_version, c.to_version) for c in report.changes]


class TestParseRequest:
    """Test suite for request string parsing"""

    def test_plain_name(self):
        assert parse_request("curl") == Request.install("curl")

    def test_exact_version(self):
        assert parse_request("curl@7.0") == Request.install("curl", "==7.0")

    def test_range(self):
        assert parse_request("curl>=7.1") == Request.install("curl", ">=7.1")

    def test_invalid(self):
        with pytest.raises(PackageManagerError):
            parse_request("@7.0")


class TestInstall:
    """Test suite for install through the service"""

    @pytest.mark.asyncio
    async def test_install_reports_changes(self, config, repo):
        """Test a successful install reports each package and logs history"""
        repo.add("A", "1.0")
        repo.add("B", "2.0", dependencies=["A>=1.0"])
        reporter = RecordingReporter()
        service = await make_service(config, repo, reporter)

        report = await service.install(["B"])

        assert report.success
        assert changes(report) == [
            ("A", NodeAction.INSTALL, None, "1.0"),
            ("B", NodeAction.INSTALL, None, "2.0"),
        ]
        assert all(c.applied for c in report.changes)
        assert reporter.reports == [("install", report)]

        assert [(r.name, r.explicit) for r in service.list_installed()] == [("A", False), ("B", True)]
        assert (config.install_root_path / "share/B/B.txt").read_bytes() == b"B 2.0\n"

        assert service.journal_store.load() is None
        history = service.transactions()
        assert len(history) == 1
        assert history[0]["id"] == report.transaction_id
        assert history[0]["status"] == TransactionStatus.COMMITTED.value
        assert not any(config.staging_dir.iterdir())

    @pytest.mark.asyncio
    async def test_exact_version_request(self, config, repo):
        """Test name@version pins an older release"""
        repo.add("A", "1.0")
        repo.add("A", "2.0")
        service = await make_service(config, repo)

        report = await service.install(["A@1.0"])

        assert report.success
        assert service.list_installed()[0].version == "1.0"

    @pytest.mark.asyncio
    async def test_already_installed_is_noop(self, config, repo):
        """Test reinstalling the same package runs no transaction"""
        repo.add("A", "1.0")
        service = await make_service(config, repo)
        await service.install(["A"])

        report = await service.install(["A"])

        assert report.success
        assert report.changes == []
        assert report.transaction_id is None
        assert len(service.transactions()) == 1

    @pytest.mark.asyncio
    async def test_install_upgrades_installed_package(self, config, repo):
        """Test naming an installed package moves it to the newest release"""
        repo.add("A", "1.0")
        service = await make_service(config, repo)
        await service.install(["A"])
        repo.add("A", "2.0")
        repo.write_index()
        await service.sync()

        report = await service.install(["A"])

        assert changes(report) == [("A", NodeAction.UPGRADE, "1.0", "2.0")]
        assert service.list_installed()[0].version == "2.0"

    @pytest.mark.asyncio
    async def test_shared_path_rejected(self, config, repo):
        """Test a package shipping another package's file is refused before execution"""
        repo.add("R", "1.0", files={"bin/tool": b"from R"})
        repo.add("N", "1.0", files={"bin/tool": b"from N"})
        service = await make_service(config, repo)
        await service.install(["R"])

        report = await service.install(["N"])

        assert not report.success
        assert report.error["error"] == "ConflictError"
        assert (config.install_root_path / "bin/tool").read_bytes() == b"from R"
        assert [r.name for r in service.list_installed()] == ["R"]
        assert len(service.transactions()) == 1

    @pytest.mark.asyncio
    async def test_execution_leaves_event_loop_free(self, config, repo, monkeypatch):
        """Test steps are applied in a worker thread"""
        repo.add("A", "1.0")
        service = await make_service(config, repo)
        threads = []
        original = TransactionExecutor.execute

        def recording(self, *args, **kwargs):
            threads.append(threading.get_ident())
            return original(self, *args, **kwargs)

        monkeypatch.setattr(TransactionExecutor, "execute", recording)
        report = await service.install(["A"])

        assert report.success
        assert len(threads) == 1
        assert threads[0] != threading.get_ident()

    @pytest.mark.asyncio
    async def test_unknown_package_reported(self, config, repo):
        """Test resolution failures become report errors"""
        repo.add("A", "1.0")
        reporter = RecordingReporter()
        service = await make_service(config, repo, reporter)

        report = await service.install(["nope"])

        assert not report.success
        assert report.error["error"] == "UnsatisfiableError"
        assert "nope" in report.error["message"]
        assert reporter.reports[-1][1].success is False
        assert service.list_installed() == []

    @pytest.mark.asyncio
    async def test_missing_archive_fails_before_execution(self, config, repo):
        """Test a prefetch failure leaves no journal and no installed packages"""
        package = repo.add("A", "1.0")
        service = await make_service(config, repo)
        Path(package.archive).unlink()

        report = await service.install(["A"])

        assert report.error["error"] == "FetchError"
        assert service.journal_store.load() is None
        assert service.list_installed() == []

    @pytest.mark.asyncio
    async def test_corrupt_archive_rolls_back(self, config, repo):
        """Test a checksum mismatch rolls the transaction back"""
        repo.add("A", "1.0")
        b = repo.add("B", "1.0", dependencies=["A"])
        repo.corrupt(b)
        service = await make_service(config, repo)

        report = await service.install(["B"])

        assert not report.success
        assert report.rolled_back
        assert report.error["error"] == "CorruptArchiveError"
        assert not any(c.applied for c in report.changes)
        assert service.list_installed() == []
        assert service.transactions()[0]["status"] == TransactionStatus.ROLLED_BACK.value

    @pytest.mark.asyncio
    async def test_cancelled_during_resolution(self, config, repo):
        """Test a cancel check that fires immediately aborts the transaction"""
        repo.add("A", "1.0")
        service = await make_service(config, repo)

        report = await service.install(["A"], cancel=lambda: True)

        assert report.error["error"] == "TransactionCancelledError"
        assert service.list_installed() == []


class TestRemoveAndUpdate:
    """Test suite for remove and update through the service"""

    @pytest.mark.asyncio
    async def test_remove_with_dependents_refused(self, config, repo):
        """Test removing a dependency without cascade is refused"""
        repo.add("A", "1.0")
        repo.add("B", "1.0", dependencies=["A"])
        service = await make_service(config, repo)
        await service.install(["B"])

        report = await service.remove(["A"])

        assert report.error["error"] == "DependentsExistError"
        assert [r.name for r in service.list_installed()] == ["A", "B"]

    @pytest.mark.asyncio
    async def test_cascade_remove(self, config, repo):
        """Test cascade removes the dependents too"""
        repo.add("A", "1.0")
        repo.add("B", "1.0", dependencies=["A"])
        service = await make_service(config, repo)
        await service.install(["B"])

        report = await service.remove(["A"], cascade=True)

        assert report.success
        assert changes(report) == [
            ("A", NodeAction.REMOVE, "1.0", None),
            ("B", NodeAction.REMOVE, "1.0", None),
        ]
        assert service.list_installed() == []
        assert not (config.install_root_path / "share/A/A.txt").exists()

    @pytest.mark.asyncio
    async def test_remove_not_installed(self, config, repo):
        repo.add("A", "1.0")
        service = await make_service(config, repo)

        report = await service.remove(["A"])

        assert report.error["error"] == "PackageNotInstalledError"

    @pytest.mark.asyncio
    async def test_update_all_proposes_orphans(self, config, repo):
        """Test a full update upgrades and lists dependencies nobody needs"""
        repo.add("oldlib", "1.0")
        repo.add("app", "1.0", dependencies=["oldlib"])
        service = await make_service(config, repo)
        await service.install(["app"])

        repo.add("app", "2.0")
        repo.write_index()
        await service.sync()

        report = await service.update()

        assert report.success
        assert changes(report) == [("app", NodeAction.UPGRADE, "1.0", "2.0")]
        assert report.proposed_orphans == ["oldlib"]
        assert {r.name: r.version for r in service.list_installed()} == {"app": "2.0", "oldlib": "1.0"}
        assert (config.install_root_path / "share/app/app.txt").read_bytes() == b"app 2.0\n"


class TestRecovery:
    """Test suite for journal recovery and locking"""

    @pytest.mark.asyncio
    async def test_unfinished_journal_resumed_before_next_transaction(self, config, repo):
        """Test a pending journal left by a crash is completed first"""
        repo.add("A", "1.0")
        repo.add("C", "1.0")
        service = await make_service(config, repo)

        engine = Engine(config)
        pending = new_journal(engine.plan(service.index, Request.install("A")))
        engine.journal_store.save(pending)

        report = await service.install(["C"])

        assert report.success
        assert [r.name for r in service.list_installed()] == ["A", "C"]
        history = service.transactions()
        assert [h["id"] for h in history] == [report.transaction_id, pending.id]

    @pytest.mark.asyncio
    async def test_failed_rollback_blocks_transactions(self, config, repo):
        """Test a rollback_failed journal refuses new transactions"""
        repo.add("A", "1.0")
        service = await make_service(config, repo)

        journal = new_journal([])
        journal.status = TransactionStatus.ROLLBACK_FAILED
        journal.rollback_errors = [{"step": "unpack:A@1.0", "error": "OSError", "message": "io", "details": {}}]
        service.journal_store.save(journal)

        report = await service.install(["A"])

        assert report.error["error"] == "InconsistentStateError"
        assert service.list_installed() == []
        assert service.journal_store.load().id == journal.id
        with pytest.raises(InconsistentStateError):
            service.recover()

    def test_recover_without_journal(self, config):
        service = PackageManagerService(config)
        assert service.recover() is None

    @pytest.mark.asyncio
    async def test_locked_state_reported(self, config, repo):
        """Test a second writer gets StateLockedError"""
        repo.add("A", "1.0")
        service = await make_service(config, repo)

        with StateLock(config.lock_file):
            report = await service.install(["A"])

        assert report.error["error"] == "StateLockedError"
        assert service.list_installed() == []


class TestQueries:
    """Test suite for search, info, repositories and clean"""

    @pytest.mark.asyncio
    async def test_search_and_info(self, config, repo):
        repo.add("curl", "7.0", description="URL transfer tool")
        repo.add("curl", "8.0", description="URL transfer tool")
        repo.add("wget", "1.0", description="Network downloader")
        service = await make_service(config, repo)
        await service.install(["curl@7.0"])

        assert [p.key for p in service.search("transfer")] == ["curl@8.0"]
        assert [p.name for p in service.search("W")] == ["wget"]

        info = service.info("curl")
        assert [p["version"] for p in info["available"]] == ["8.0", "7.0"]
        assert info["installed"]["version"] == "7.0"
        assert service.info("missing") is None

    @pytest.mark.asyncio
    async def test_sync_counts(self, config, repo):
        repo.add("A", "1.0")
        repo.add("A", "2.0")
        service = await make_service(config, repo)

        assert await service.sync() == {"main": 2}
        with pytest.raises(ConfigurationError):
            await service.sync("unknown")

    def test_repository_enable_persisted(self, config, repo):
        """Test disabling a repository is written back to repositories.conf"""
        write_repositories_conf(config, repo)
        service = PackageManagerService(config)

        updated = service.set_repository_enabled("main", False)

        assert updated.enabled is False
        reloaded = RepositoryConfigLoader(Path(config.repositories_conf)).load()
        assert reloaded["main"].enabled is False
        assert [r.name for r in service.list_repositories()] == ["main"]

        with pytest.raises(ConfigurationError):
            service.set_repository_enabled("unknown", True)

    @pytest.mark.asyncio
    async def test_disabled_repository_hidden_from_index(self, config, repo):
        repo.add("A", "1.0")
        service = await make_service(config, repo)

        service.set_repository_enabled("main", False)

        assert service.search("A") == []

    @pytest.mark.asyncio
    async def test_clean_purges_cache(self, config, repo):
        repo.add("A", "1.0")
        repo.add("B", "1.0")
        service = await make_service(config, repo)
        await service.install(["A", "B"])

        assert service.clean() == 2
        assert list(config.archive_dir.iterdir()) == []
        assert service.clean() == 0
