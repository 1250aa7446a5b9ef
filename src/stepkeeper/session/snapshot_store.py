"""
Durable storage for the single active session snapshot.

The store holds at most one record under a well-known key. Saving replaces
whatever was there; loading hands back a fresh copy the caller owns.

Adapters:
- InMemorySnapshotStore: keeps the encoded record in memory (tests, simulation)
- JsonFileSnapshotStore: writes {data_dir}/state/training_session.json
"""

import asyncio
import json
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from stepkeeper.config import CONFIG
from stepkeeper.errors import CorruptSnapshotError, PersistenceError
from stepkeeper.logger import get_logger
from stepkeeper.session.models import TrainingSessionSnapshot

logger = get_logger(__name__)

SNAPSHOT_KEY = "training_session"


def decode_snapshot(raw: str) -> TrainingSessionSnapshot:
    """Decode a stored record, raising CorruptSnapshotError if it is unusable."""
    try:
        return TrainingSessionSnapshot.from_json(raw)
    except (ValidationError, ValueError) as e:
        raise CorruptSnapshotError(f"Stored snapshot is unreadable: {e}") from e


class SnapshotStore(ABC):
    """
    Abstract single-record snapshot store.

    All methods raise PersistenceError on failure; a stored record that can
    not be decoded raises CorruptSnapshotError from ``load``.
    """

    @abstractmethod
    async def save(self, snapshot: TrainingSessionSnapshot) -> None:
        pass

    @abstractmethod
    async def load(self) -> Optional[TrainingSessionSnapshot]:
        pass

    @abstractmethod
    async def clear(self) -> None:
        pass


class InMemorySnapshotStore(SnapshotStore):
    """Keeps the serialized record in memory so every load is an independent copy."""

    def __init__(self):
        self._record: Optional[str] = None

    @property
    def has_snapshot(self) -> bool:
        return self._record is not None

    def put_raw(self, raw: Optional[str]) -> None:
        """Replace the stored record verbatim (used to simulate corruption)."""
        self._record = raw

    async def save(self, snapshot: TrainingSessionSnapshot) -> None:
        self._record = snapshot.to_json()
        logger.debug(
            f"Saved snapshot for {snapshot.program_id} at step {snapshot.current_step_index}"
        )

    async def load(self) -> Optional[TrainingSessionSnapshot]:
        if self._record is None:
            return None
        return decode_snapshot(self._record)

    async def clear(self) -> None:
        self._record = None
        logger.debug("Cleared in-memory snapshot")


class JsonFileSnapshotStore(SnapshotStore):
    """Persists the snapshot as human-readable JSON in a single file."""

    def __init__(self, base_dir: Optional[str] = None, key: str = SNAPSHOT_KEY):
        self.base_dir = Path(base_dir or str(CONFIG.state_dir))
        self.key = key

    @property
    def path(self) -> Path:
        return self.base_dir / f"{self.key}.json"

    async def save(self, snapshot: TrainingSessionSnapshot) -> None:
        data = json.dumps(snapshot.to_dict(), indent=2, ensure_ascii=False)
        try:
            await asyncio.to_thread(self._write, data)
        except OSError as e:
            raise PersistenceError(f"Failed to save snapshot to {self.path}: {e}") from e
        logger.debug(f"Saved snapshot to {self.path}")

    async def load(self) -> Optional[TrainingSessionSnapshot]:
        try:
            raw = await asyncio.to_thread(self._read)
        except OSError as e:
            raise PersistenceError(f"Failed to read snapshot at {self.path}: {e}") from e
        except UnicodeDecodeError as e:
            raise CorruptSnapshotError(f"Snapshot at {self.path} is not UTF-8: {e}") from e
        if raw is None:
            return None
        return decode_snapshot(raw)

    async def clear(self) -> None:
        try:
            await asyncio.to_thread(self.path.unlink, missing_ok=True)
        except OSError as e:
            raise PersistenceError(f"Failed to clear snapshot at {self.path}: {e}") from e
        logger.debug(f"Cleared snapshot at {self.path}")

    def _write(self, data: str) -> None:
        self.base_dir.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".json.tmp")
        tmp.write_text(data, encoding="utf-8")
        os.replace(tmp, self.path)

    def _read(self) -> Optional[str]:
        if not self.path.exists():
            return None
        return self.path.read_text(encoding="utf-8")
