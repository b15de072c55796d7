# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""Data models for pkgmgr."""

from .package_models import (
    DependencyConstraint,
    ExecutionResult,
    FileEntry,
    InstalledRecord,
    JournalEntry,
    NodeAction,
    Package,
    PackageChange,
    RepositoryConfig,
    Request,
    RequestKind,
    ResolutionGraph,
    ResolvedNode,
    Step,
    StepKind,
    StepStatus,
    TransactionJournal,
    TransactionReport,
    TransactionStatus,
)

__all__ = [
    "DependencyConstraint",
    "ExecutionResult",
    "FileEntry",
    "InstalledRecord",
    "JournalEntry",
    "NodeAction",
    "Package",
    "PackageChange",
    "RepositoryConfig",
    "Request",
    "RequestKind",
    "ResolutionGraph",
    "ResolvedNode",
    "Step",
    "StepKind",
    "StepStatus",
    "TransactionJournal",
    "TransactionReport",
    "TransactionStatus",
]
