"""Lock-guarded JSON-file persistence shared by every engine store.

Each store keeps a list of pydantic records in one file. All read-modify-write
cycles happen under the store's lock, and writes go through a temporary file so
a crash never leaves a half-written document behind.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Generic, TypeVar

from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

RecordT = TypeVar("RecordT", bound=BaseModel)


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def utc_iso_now() -> str:
    return utc_now().isoformat()


def parse_iso(value: str) -> datetime:
    """Parse an ISO timestamp written by a store; naive values are read as UTC."""

    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed


class JsonListStore(Generic[RecordT]):
    """A list of ``record_type`` items persisted in a single JSON file."""

    record_type: type[RecordT]

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.RLock()

    def _load_unlocked(self) -> list[RecordT]:
        if not self.path.exists():
            return []
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning(
                "State file is not valid JSON; treating as empty", extra={"path": str(self.path)}
            )
            return []
        if not isinstance(raw, list):
            return []

        records: list[RecordT] = []
        for item in raw:
            try:
                records.append(self.record_type.model_validate(item))
            except ValidationError:
                logger.warning(
                    "Skipping unreadable record", extra={"path": str(self.path), "item": item}
                )
        return records

    def _save_unlocked(self, records: list[RecordT]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = [r.model_dump(mode="json", by_alias=True) for r in records]
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text(json.dumps(payload, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
        os.replace(tmp, self.path)

    @contextmanager
    def transaction(self) -> Iterator[list[RecordT]]:
        """Yield the mutable record list and persist it when the block exits cleanly."""

        with self._lock:
            records = self._load_unlocked()
            yield records
            self._save_unlocked(records)

    def list(self) -> list[RecordT]:
        with self._lock:
            return self._load_unlocked()

    def find(self, predicate: Callable[[RecordT], bool]) -> RecordT | None:
        with self._lock:
            for record in self._load_unlocked():
                if predicate(record):
                    return record
            return None

    def remove_where(self, predicate: Callable[[RecordT], bool]) -> int:
        with self.transaction() as records:
            keep = [r for r in records if not predicate(r)]
            removed = len(records) - len(keep)
            records[:] = keep
        return removed
