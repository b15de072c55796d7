# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Package Data Models

Defines data structures for the package manager: packages and their
dependencies, installed records, resolution graphs, plan steps, the
write-ahead journal and the result report.
"""

from typing import List, Dict, Optional, Any
from datetime import datetime, UTC
from pydantic import BaseModel, ConfigDict, Field, field_validator
from enum import Enum


class NodeAction(str, Enum):
    """Action the resolver assigned to a package"""
    INSTALL = "install"
    KEEP = "keep"
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    REMOVE = "remove"


class StepKind(str, Enum):
    """Kind of atomic plan step"""
    FETCH = "fetch"
    UNPACK = "unpack"
    LINK_FILES = "link_files"
    RECORD_INSTALL = "record_install"
    REMOVE_FILES = "remove_files"
    RECORD_REMOVAL = "record_removal"


class StepStatus(str, Enum):
    """Journal status of a single step"""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMMITTED = "committed"
    FAILED = "failed"


class TransactionStatus(str, Enum):
    """Journal status of a whole transaction"""
    ACTIVE = "active"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    ROLLBACK_FAILED = "rollback_failed"


class RequestKind(str, Enum):
    """Type of requested operation"""
    INSTALL = "install"
    REMOVE = "remove"
    UPDATE_ONE = "update_one"
    UPDATE_ALL = "update_all"


# =============================================================================
# REPOSITORY METADATA
# =============================================================================

class FileEntry(BaseModel):
    """One file of a package manifest"""
    model_config = ConfigDict(frozen=True)

    path: str
    checksum: str  # SHA256 hex digest
    mode: int = 0o644

    @field_validator("path")
    @classmethod
    def _relative_path(cls, value: str) -> str:
        value = value.replace("\\", "/").lstrip("/")
        if not value or any(part in ("", "..") for part in value.split("/")):
            raise ValueError(f"Invalid manifest path: {value!r}")
        return value

    @field_validator("checksum")
    @classmethod
    def _lower_checksum(cls, value: str) -> str:
        return value.lower()


class DependencyConstraint(BaseModel):
    """
    Version constraint on another package.

    `version` is a predicate string: "" or "*" matches anything, "1.2" or
    "==1.2" is exact, and comparators (">=1.0,<2"), caret ("^1.2"), tilde
    ("~1.2") and hyphen ("1.0 - 2.0") forms are ranges.
    """
    model_config = ConfigDict(frozen=True)

    name: str
    version: str = "*"
    optional: bool = False

    def __str__(self) -> str:
        if self.version in ("", "*"):
            return self.name
        if self.version[0] in "<>=!^~":
            return f"{self.name}{self.version}"
        return f"{self.name}=={self.version}"


class Package(BaseModel):
    """Immutable package metadata from a repository"""
    model_config = ConfigDict(frozen=True)

    name: str
    version: str
    description: str = ""
    dependencies: List[DependencyConstraint] = Field(default_factory=list)
    conflicts: List[DependencyConstraint] = Field(default_factory=list)
    files: List[FileEntry] = Field(default_factory=list)
    size: int = 0
    archive: Optional[str] = None  # Archive reference (URL or path)
    repository: str = ""

    @property
    def key(self) -> str:
        return f"{self.name}@{self.version}"


# =============================================================================
# INSTALLED STATE
# =============================================================================

class InstalledRecord(BaseModel):
    """Record of an installed package"""
    name: str
    version: str
    files: List[FileEntry] = Field(default_factory=list)
    installed_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    explicit: bool = False
    dependencies: List[DependencyConstraint] = Field(default_factory=list)
    conflicts: List[DependencyConstraint] = Field(default_factory=list)
    repository: str = ""
    transaction_id: Optional[str] = None

    @property
    def key(self) -> str:
        return f"{self.name}@{self.version}"

    def as_package(self) -> Package:
        """Package view of an installed record (used when the index lacks it)."""
        return Package(
            name=self.name,
            version=self.version,
            dependencies=list(self.dependencies),
            conflicts=list(self.conflicts),
            files=list(self.files),
            repository=self.repository or "@installed",
        )


# =============================================================================
# REQUESTS AND RESOLUTION
# =============================================================================

class Request(BaseModel):
    """A requested package change"""
    model_config = ConfigDict(frozen=True)

    kind: RequestKind
    name: Optional[str] = None
    constraint: Optional[str] = None
    cascade: bool = False

    @classmethod
    def install(cls, name: str, constraint: Optional[str] = None) -> "Request":
        return cls(kind=RequestKind.INSTALL, name=name, constraint=constraint)

    @classmethod
    def remove(cls, name: str, cascade: bool = False) -> "Request":
        return cls(kind=RequestKind.REMOVE, name=name, cascade=cascade)

    @classmethod
    def update(cls, name: str) -> "Request":
        return cls(kind=RequestKind.UPDATE_ONE, name=name)

    @classmethod
    def update_all(cls) -> "Request":
        return cls(kind=RequestKind.UPDATE_ALL)


class ResolvedNode(BaseModel):
    """Node in the resolution graph"""
    name: str
    version: str
    action: NodeAction
    explicit: bool = False
    previous_version: Optional[str] = None
    package: Optional[Package] = None  # Target package (absent for removals)
    record: Optional[InstalledRecord] = None  # Installed record before the transaction

    @property
    def key(self) -> str:
        return f"{self.name}@{self.version}"

    @property
    def removed(self) -> bool:
        return self.action == NodeAction.REMOVE


class ResolutionGraph(BaseModel):
    """
    Resolved target state.

    Nodes live in a flat arena sorted by name; edges[i] holds the indexes of
    the nodes that node i depends on.
    """
    nodes: List[ResolvedNode] = Field(default_factory=list)
    edges: List[List[int]] = Field(default_factory=list)
    proposed_orphans: List[str] = Field(default_factory=list)
    skipped_optional: List[str] = Field(default_factory=list)

    def index_of(self, name: str) -> Optional[int]:
        for i, node in enumerate(self.nodes):
            if node.name == name:
                return i
        return None

    def node(self, name: str) -> Optional[ResolvedNode]:
        i = self.index_of(name)
        return self.nodes[i] if i is not None else None

    def changes(self) -> List[ResolvedNode]:
        """Nodes whose action is not KEEP."""
        return [n for n in self.nodes if n.action != NodeAction.KEEP]


# =============================================================================
# PLAN AND JOURNAL
# =============================================================================

class Step(BaseModel):
    """One atomic step of a transaction plan"""
    index: int
    kind: StepKind
    name: str
    version: str
    package: Optional[Package] = None
    previous: Optional[InstalledRecord] = None
    explicit: bool = False
    paths: List[str] = Field(default_factory=list)  # remove_files targets

    @property
    def key(self) -> str:
        return f"{self.kind.value}:{self.name}@{self.version}"


class JournalEntry(BaseModel):
    """Write-ahead journal entry for one step"""
    step: Step
    status: StepStatus = StepStatus.PENDING
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error: Optional[Dict[str, Any]] = None
    preexisting: List[str] = Field(default_factory=list)  # link_files targets present before the step


class TransactionJournal(BaseModel):
    """Persistent write-ahead journal of a transaction"""
    id: str
    status: TransactionStatus = TransactionStatus.ACTIVE
    entries: List[JournalEntry] = Field(default_factory=list)
    state_generation: int = 0
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    finished_at: Optional[datetime] = None
    error: Optional[Dict[str, Any]] = None
    rollback_errors: List[Dict[str, Any]] = Field(default_factory=list)

    @property
    def steps(self) -> List[Step]:
        return [entry.step for entry in self.entries]

    def summary(self) -> Dict[str, Any]:
        """Compact form for the history log."""
        return {
            "id": self.id,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "steps": [
                {"step": entry.step.key, "status": entry.status.value}
                for entry in self.entries
            ],
            "error": self.error,
            "rollback_errors": self.rollback_errors,
        }


# =============================================================================
# RESULTS
# =============================================================================

class ExecutionResult(BaseModel):
    """Outcome of TransactionExecutor.execute"""
    transaction_id: str
    committed: List[Step] = Field(default_factory=list)
    failed: Optional[Step] = None
    error: Optional[Dict[str, Any]] = None
    rolled_back: bool = False
    rollback_errors: List[Dict[str, Any]] = Field(default_factory=list)
    cancelled: bool = False

    @property
    def success(self) -> bool:
        return self.error is None


class PackageChange(BaseModel):
    """Per-package line of a transaction report"""
    name: str
    action: NodeAction
    from_version: Optional[str] = None
    to_version: Optional[str] = None
    applied: bool = False


class TransactionReport(BaseModel):
    """Structured result handed to a reporter"""
    success: bool
    transaction_id: Optional[str] = None
    changes: List[PackageChange] = Field(default_factory=list)
    proposed_orphans: List[str] = Field(default_factory=list)
    skipped_optional: List[str] = Field(default_factory=list)
    error: Optional[Dict[str, Any]] = None
    rolled_back: bool = False
    rollback_errors: List[Dict[str, Any]] = Field(default_factory=list)
    cancelled: bool = False


class RepositoryConfig(BaseModel):
    """Repository configuration from repositories.conf"""
    name: str
    display_name: str
    url: str
    enabled: bool = True
    priority: int = 50  # Lower number = higher priority
    position: int = 0  # Declaration order in repositories.conf
