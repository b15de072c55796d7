# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Custom exceptions for pkgmgr.

All exceptions inherit from PackageManagerError so callers can catch the
whole family at an operation boundary and hand `to_dict()` to a reporter.
"""

from typing import Any, List, Optional


class PackageManagerError(Exception):
    """Base exception for all package manager errors."""

    def __init__(self, message: str, details: Optional[dict] = None):
        """
        Initialize package manager error.

        Args:
            message: Human-readable error message
            details: Structured context (names, versions, step identity)
        """
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict:
        """Convert error to dictionary for the result report."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details
        }


class ConfigurationError(PackageManagerError):
    """Configuration error."""

    def __init__(self, message: str, config_file: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message, details=details)
        self.config_file = config_file


class InvalidVersionError(PackageManagerError, ValueError):
    """A version or version predicate could not be parsed."""

    def __init__(self, value: str, reason: str = ""):
        message = f"Invalid version expression: {value!r}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message, details={"value": value})
        self.value = value


# =============================================================================
# RESOLUTION ERRORS - raised before any mutation, state untouched
# =============================================================================

class UnsatisfiableError(PackageManagerError):
    """
    No consistent resolution graph exists.

    `chain` is the constraint chain that led to the failure, ordered from the
    request down to the constraint that could not be met.
    """

    def __init__(self, message: str, chain: Optional[List[str]] = None, details: Optional[dict] = None):
        details = dict(details or {})
        details.setdefault("chain", list(chain or []))
        super().__init__(message, details=details)
        self.chain = list(chain or [])


class ConflictError(UnsatisfiableError):
    """Two resolved packages declare a conflict or ship the same file."""


class DependentsExistError(UnsatisfiableError):
    """A package cannot be removed because other packages require it."""

    def __init__(self, name: str, dependents: List[str]):
        chain = [f"{dependent} requires {name}" for dependent in dependents]
        super().__init__(
            f"Cannot remove {name}: required by {', '.join(dependents)}",
            chain=chain,
            details={"package": name, "dependents": list(dependents)}
        )
        self.name = name
        self.dependents = list(dependents)


class CyclicDependencyError(PackageManagerError):
    """The dependency relation among resolved packages contains a cycle."""

    def __init__(self, cycle: List[str]):
        super().__init__(
            f"Dependency cycle detected: {' -> '.join(cycle)}",
            details={"cycle": list(cycle)}
        )
        self.cycle = list(cycle)


class PackageNotInstalledError(PackageManagerError):
    """An operation targets a package that is not installed."""

    def __init__(self, name: str):
        super().__init__(f"Package not installed: {name}", details={"package": name})
        self.name = name


# =============================================================================
# STEP ERRORS - raised by collaborators or the executor while applying a plan
# =============================================================================

class FetchError(PackageManagerError):
    """An archive could not be retrieved."""

    def __init__(self, message: str, package: Optional[str] = None, details: Optional[dict] = None):
        details = dict(details or {})
        if package:
            details.setdefault("package", package)
        super().__init__(message, details=details)
        self.package = package


class CorruptArchiveError(FetchError):
    """An archive was retrieved but its contents do not match the manifest."""


class StepExecutionError(PackageManagerError):
    """A filesystem or state operation of a plan step failed."""

    def __init__(self, message: str, step: Optional[str] = None, details: Optional[dict] = None):
        details = dict(details or {})
        if step:
            details.setdefault("step", step)
        super().__init__(message, details=details)
        self.step = step


class TransactionCancelledError(PackageManagerError):
    """The transaction was cancelled between steps."""


# =============================================================================
# STATE ERRORS
# =============================================================================

class JournalCorruptionError(PackageManagerError):
    """Persisted journal is unreadable or inconsistent. Requires manual intervention."""


class InconsistentStateError(JournalCorruptionError):
    """A previous rollback failed; no new transaction may start."""


class StateLockedError(PackageManagerError):
    """Another process holds the state lock."""


class StaleStateError(PackageManagerError):
    """Installed state changed between resolution and execution."""

    def __init__(self, expected: int, actual: int):
        super().__init__(
            f"Installed state changed during transaction (generation {expected} -> {actual})",
            details={"expected_generation": expected, "actual_generation": actual}
        )


def error_to_dict(error: Any) -> dict:
    """Serialize any exception in the report shape."""
    if isinstance(error, PackageManagerError):
        return error.to_dict()
    return {
        "error": error.__class__.__name__,
        "message": str(error),
        "details": {}
    }
