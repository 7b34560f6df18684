"""Persistent record of previously established pairs."""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from idesync.config import PAIRS_FILE

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class PairRecord(BaseModel):
    """A pairing that reached the connected state at least once."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    local_path: str
    remote_path: Optional[str] = None
    port: int
    last_connected_at: str
    last_switch_at: Optional[str] = None
    updated_at: str = Field(default_factory=_now)


class PairsData(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    pairs: list[PairRecord] = []
    updated_at: str = Field(default_factory=_now)


class PairStore:
    """Loads and saves PairRecords; seeds session port allocation."""

    def __init__(self, path: Optional[Path] = None) -> None:
        self._store_path = Path(path) if path is not None else PAIRS_FILE
        self._data = PairsData()
        self._load()

    @property
    def path(self) -> Path:
        return self._store_path

    def _load(self) -> None:
        if not self._store_path.exists():
            return

        try:
            self._data = PairsData.model_validate(json.loads(self._store_path.read_text(encoding="utf-8")))
            logger.info(f"Loaded {len(self._data.pairs)} pair(s) from {self._store_path}")
        except (OSError, ValueError, ValidationError) as e:
            logger.error(f"Failed to load pairs from {self._store_path}: {e}")
            self._data = PairsData()

    def _save(self) -> None:
        try:
            self._store_path.parent.mkdir(parents=True, exist_ok=True)
            self._data.updated_at = _now()
            self._store_path.write_text(
                json.dumps(self._data.model_dump(by_alias=True), indent=2),
                encoding="utf-8",
            )
            logger.debug(f"Saved pairs to {self._store_path}")
        except OSError as e:
            logger.error(f"Failed to save pairs to {self._store_path}: {e}")

    def records(self) -> list[PairRecord]:
        return list(self._data.pairs)

    def get(self, local_path: str) -> Optional[PairRecord]:
        return next((p for p in self._data.pairs if p.local_path == local_path), None)

    def ports(self) -> list[int]:
        return [p.port for p in self._data.pairs]

    def record_connection(self, local_path: str, remote_path: Optional[str], port: int) -> PairRecord:
        """Create or refresh the record for ``local_path`` after a successful connect."""
        now = _now()
        record = self.get(local_path)
        if record is None:
            record = PairRecord(local_path=local_path, port=port, last_connected_at=now)
            self._data.pairs.append(record)
        record.port = port
        record.last_connected_at = now
        if remote_path:
            record.remote_path = remote_path
        record.updated_at = now
        self._save()
        return record

    def record_remote_path(self, local_path: str, remote_path: str) -> None:
        """Attach the peer's announced workspace to an existing record."""
        record = self.get(local_path)
        if record is None or record.remote_path == remote_path:
            return
        record.remote_path = remote_path
        record.updated_at = _now()
        self._save()

    def record_switch(self, local_path: str, port: Optional[int] = None) -> None:
        """Stamp ``lastSwitchAt`` on the record for ``local_path``."""
        now = _now()
        record = self.get(local_path)
        if record is None:
            if port is None:
                logger.warning(f"No pair recorded for {local_path}, switch not persisted")
                return
            record = PairRecord(local_path=local_path, port=port, last_connected_at=now)
            self._data.pairs.append(record)
        record.last_switch_at = now
        record.updated_at = now
        self._save()
