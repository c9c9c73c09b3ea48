"""Pluggable persistence for local deployment records.

Records are append-only per branch, newest last. The remote repository stays
the source of truth for history; the store only remembers what this service
itself committed (notably the file-set hash, which the remote does not keep).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import json
from pathlib import Path
from typing import Dict, List, Optional, Protocol

from deployease.contracts.models import DeploymentRecord
from deployease.contracts.types import Branch


class DeploymentStore(Protocol):
    """Abstract storage for deployment records keyed by branch."""

    def append(self, record: DeploymentRecord) -> None:
        """Append a record to its branch history."""

    def list(self, branch: Branch, limit: int = 50) -> List[DeploymentRecord]:
        """Return up to `limit` records for branch, newest first."""

    def find_by_commit(self, branch: Branch, commit_id: str) -> Optional[DeploymentRecord]:
        """Return the record for commit_id on branch, or None."""

    def truncate_after(
        self, branch: Branch, commit_id: str, committed_at: Optional[datetime] = None
    ) -> int:
        """Drop records newer than commit_id on branch; return how many were dropped."""


def _truncate(
    records: List[DeploymentRecord], commit_id: str, committed_at: Optional[datetime]
) -> tuple[List[DeploymentRecord], int]:
    for index, record in enumerate(records):
        if record.commit_id == commit_id:
            return records[: index + 1], len(records) - index - 1
    # Target was not committed by this service: fall back to commit time.
    if committed_at is None:
        return [], len(records)
    kept = [r for r in records if r.timestamp <= committed_at]
    return kept, len(records) - len(kept)


@dataclass
class InMemoryDeploymentStore:
    """In-memory DeploymentStore for dev/test; not durable across restarts."""

    _db: Dict[Branch, List[DeploymentRecord]]

    def __init__(self) -> None:
        self._db = {}

    def append(self, record: DeploymentRecord) -> None:
        self._db.setdefault(record.environment, []).append(record)

    def list(self, branch: Branch, limit: int = 50) -> List[DeploymentRecord]:
        return list(reversed(self._db.get(branch, [])))[:limit]

    def find_by_commit(self, branch: Branch, commit_id: str) -> Optional[DeploymentRecord]:
        for record in self._db.get(branch, []):
            if record.commit_id == commit_id:
                return record
        return None

    def truncate_after(
        self, branch: Branch, commit_id: str, committed_at: Optional[datetime] = None
    ) -> int:
        kept, dropped = _truncate(self._db.get(branch, []), commit_id, committed_at)
        self._db[branch] = kept
        return dropped


@dataclass
class JsonFileDeploymentStore:
    """Persist records as one JSON file per branch under a local directory."""

    root: Path

    def __post_init__(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    def _path_for(self, branch: Branch) -> Path:
        return self.root / f"{branch.value}.json"

    def _load(self, branch: Branch) -> List[DeploymentRecord]:
        path = self._path_for(branch)
        if not path.exists():
            return []
        with path.open("r", encoding="utf-8") as f:
            try:
                raw = json.load(f)
            except json.JSONDecodeError:
                return []
        return [DeploymentRecord.model_validate(item) for item in raw]

    def _save(self, branch: Branch, records: List[DeploymentRecord]) -> None:
        path = self._path_for(branch)
        tmp = path.with_suffix(".json.tmp")
        with tmp.open("w", encoding="utf-8") as f:
            json.dump([r.to_wire() for r in records], f, ensure_ascii=False, indent=2)
        tmp.replace(path)

    def append(self, record: DeploymentRecord) -> None:
        records = self._load(record.environment)
        records.append(record)
        self._save(record.environment, records)

    def list(self, branch: Branch, limit: int = 50) -> List[DeploymentRecord]:
        return list(reversed(self._load(branch)))[:limit]

    def find_by_commit(self, branch: Branch, commit_id: str) -> Optional[DeploymentRecord]:
        for record in self._load(branch):
            if record.commit_id == commit_id:
                return record
        return None

    def truncate_after(
        self, branch: Branch, commit_id: str, committed_at: Optional[datetime] = None
    ) -> int:
        kept, dropped = _truncate(self._load(branch), commit_id, committed_at)
        self._save(branch, kept)
        return dropped
