# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Transaction Module - Resolve, Plan, Execute

Modular package transaction engine following Unix philosophy:
- Each module does one thing well
- Modules compose to form complete system
- Text-based configuration and state throughout
"""

from .repositories import RepositoryConfigLoader
from .index import PackageIndex, PackageIndexManager
from .state import InstalledState, StateStore
from .lock import StateLock
from .journal import JournalStore, TransactionHistory
from .resolver import DependencyResolver
from .planner import TransactionPlanner
from .fetcher import ArchiveFetcher
from .executor import TransactionExecutor
from .service import LoggingReporter, PackageManagerService, ResultReporter, parse_request

__all__ = [
    "RepositoryConfigLoader",
    "PackageIndex",
    "PackageIndexManager",
    "InstalledState",
    "StateStore",
    "StateLock",
    "JournalStore",
    "TransactionHistory",
    "DependencyResolver",
    "TransactionPlanner",
    "ArchiveFetcher",
    "TransactionExecutor",
    "LoggingReporter",
    "PackageManagerService",
    "ResultReporter",
    "parse_request",
]
