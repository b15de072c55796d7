# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Transaction Journal

Single responsibility: Persist the write-ahead journal of the active
transaction (journal.json) and the append-only history of finished ones
(transactions.jsonl).
"""

import fcntl
import json
import logging
import os
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from pydantic import ValidationError

from pkgmgr.core.errors import JournalCorruptionError
from pkgmgr.models.package_models import JournalEntry, Step, TransactionJournal

from .state import atomic_write_text

logger = logging.getLogger(__name__)


def new_journal(steps: Sequence[Step], state_generation: int = 0) -> TransactionJournal:
    """Create a journal with every step pending."""
    return TransactionJournal(
        id=f"txn-{uuid.uuid4().hex[:12]}",
        entries=[JournalEntry(step=step) for step in steps],
        state_generation=state_generation,
    )


class JournalStore:
    """Durable storage for the active transaction journal"""

    def __init__(self, journal_file: Path):
        """
        Initialize journal store.

        Args:
            journal_file: Path to journal.json
        """
        self.journal_file = Path(journal_file)

    def exists(self) -> bool:
        return self.journal_file.exists()

    def load(self) -> Optional[TransactionJournal]:
        """
        Load the active journal.

        Returns:
            Journal or None if there is none

        Raises:
            JournalCorruptionError: If the file is unreadable or inconsistent
        """
        if not self.journal_file.exists():
            return None

        try:
            journal = TransactionJournal.model_validate_json(self.journal_file.read_text())
        except (OSError, ValidationError, ValueError) as e:
            raise JournalCorruptionError(
                f"Transaction journal unreadable: {e}",
                details={"file": str(self.journal_file)}
            )

        indexes = [entry.step.index for entry in journal.entries]
        if indexes != list(range(len(indexes))):
            raise JournalCorruptionError(
                "Transaction journal steps are out of order",
                details={"file": str(self.journal_file), "transaction_id": journal.id}
            )
        return journal

    def save(self, journal: TransactionJournal):
        """Atomically overwrite the journal (fsync'd before returning)."""
        atomic_write_text(self.journal_file, journal.model_dump_json(indent=2))

    def clear(self):
        self.journal_file.unlink(missing_ok=True)


class TransactionHistory:
    """Manages transaction history in an append-only JSONL file"""

    def __init__(self, log_file: Path):
        """
        Initialize transaction history.

        Args:
            log_file: Path to transactions.jsonl
        """
        self.log_file = Path(log_file)

    def log(self, journal: TransactionJournal):
        """
        Append a finished transaction to the JSONL log.

        Args:
            journal: Journal in a terminal state
        """
        self.log_file.parent.mkdir(parents=True, exist_ok=True)
        log_line = json.dumps(journal.summary())
        with open(self.log_file, "a") as f:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX)
            try:
                f.write(log_line + "\n")
                f.flush()
                os.fsync(f.fileno())
            finally:
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)

    def list_transactions(self, limit: int = 50) -> List[Dict[str, Any]]:
        """
        List recent transactions from log.

        Args:
            limit: Maximum number of transactions to return

        Returns:
            List of transaction records (most recent first)
        """
        transactions = self._read_all()
        return list(reversed(transactions[-limit:])) if limit > 0 else list(reversed(transactions))

    def get_transaction(self, transaction_id: str) -> Optional[Dict[str, Any]]:
        """
        Get a specific transaction by ID.

        Args:
            transaction_id: Transaction ID

        Returns:
            Transaction record or None if not found
        """
        for txn in self._read_all():
            if txn.get("id") == transaction_id:
                return txn
        return None

    def _read_all(self) -> List[Dict[str, Any]]:
        if not self.log_file.exists():
            return []

        transactions = []
        with open(self.log_file, "r") as f:
            for line in f:
                if not line.strip():
                    continue
                try:
                    transactions.append(json.loads(line))
                except json.JSONDecodeError as e:
                    logger.error(f"Failed to parse transaction log line: {e}")
        return transactions
