# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Installed State

Single responsibility: Hold installed package records and persist them
atomically (installed.json).
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from pydantic import ValidationError

from pkgmgr.core.errors import JournalCorruptionError
from pkgmgr.models.package_models import InstalledRecord

logger = logging.getLogger(__name__)

STATE_FORMAT_VERSION = "1.0"


def atomic_write_text(path: Path, text: str):
    """
    Replace a file's content atomically.

    Writes to a temp file in the same directory, fsyncs it and renames it
    over the target so readers never observe a partial write.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "w") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    _fsync_directory(path.parent)


def _fsync_directory(directory: Path):
    if not hasattr(os, "O_DIRECTORY"):
        return
    fd = os.open(directory, os.O_RDONLY | os.O_DIRECTORY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


class InstalledState:
    """In-memory set of installed package records keyed by name"""

    def __init__(self, records: Optional[Dict[str, InstalledRecord]] = None, generation: int = 0):
        self._records: Dict[str, InstalledRecord] = dict(records or {})
        self.generation = generation

    def get(self, name: str) -> Optional[InstalledRecord]:
        return self._records.get(name)

    def put(self, record: InstalledRecord):
        self._records[record.name] = record

    def remove(self, name: str) -> Optional[InstalledRecord]:
        return self._records.pop(name, None)

    def names(self) -> List[str]:
        return sorted(self._records)

    def records(self) -> List[InstalledRecord]:
        return [self._records[name] for name in self.names()]

    def snapshot(self) -> Dict[str, InstalledRecord]:
        return dict(self._records)

    def __contains__(self, name: object) -> bool:
        return name in self._records

    def __iter__(self) -> Iterator[str]:
        return iter(self.names())

    def __len__(self) -> int:
        return len(self._records)


class StateStore:
    """Loads and saves InstalledState to installed.json"""

    def __init__(self, installed_file: Path):
        """
        Initialize state store.

        Args:
            installed_file: Path to installed.json
        """
        self.installed_file = Path(installed_file)

    def _read(self) -> Dict:
        if not self.installed_file.exists():
            return {"version": STATE_FORMAT_VERSION, "generation": 0, "packages": {}}
        try:
            data = json.loads(self.installed_file.read_text())
        except (OSError, json.JSONDecodeError) as e:
            raise JournalCorruptionError(
                f"Installed state unreadable: {e}",
                details={"file": str(self.installed_file)}
            )
        if not isinstance(data, dict):
            raise JournalCorruptionError(
                "Installed state is not an object",
                details={"file": str(self.installed_file)}
            )
        return data

    def load(self) -> InstalledState:
        """
        Load installed packages from disk.

        Raises:
            JournalCorruptionError: If installed.json cannot be parsed
        """
        data = self._read()
        records = {}
        for name, raw in (data.get("packages") or {}).items():
            try:
                records[name] = InstalledRecord.model_validate(raw)
            except ValidationError as e:
                raise JournalCorruptionError(
                    f"Invalid installed record for {name}: {e.error_count()} error(s)",
                    details={"file": str(self.installed_file), "package": name}
                )
        return InstalledState(records, generation=int(data.get("generation", 0)))

    def current_generation(self) -> int:
        """Generation counter currently on disk."""
        return int(self._read().get("generation", 0))

    def save(self, state: InstalledState):
        """Persist state atomically and bump its generation."""
        state.generation += 1
        data = {
            "version": STATE_FORMAT_VERSION,
            "generation": state.generation,
            "packages": {
                record.name: record.model_dump(mode="json")
                for record in state.records()
            }
        }
        atomic_write_text(self.installed_file, json.dumps(data, indent=2))
        logger.debug(f"Saved {len(state)} installed records (generation {state.generation})")
