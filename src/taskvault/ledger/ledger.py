from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, Optional, Tuple

import pydantic
from pydantic import BaseModel, Field

from ..utils import now_ts_ns, read_jsonl, stable_hash, to_jsonable, write_jsonl_line

EventType = Literal[
    "TASK_MIGRATED",
    "TASK_MIGRATION_NOOP",
    "TASK_MIGRATION_REJECTED",
    "SNAPSHOT_STALE",
    "ARCHIVE_SEALED",
]

MIGRATED: EventType = "TASK_MIGRATED"
MIGRATION_NOOP: EventType = "TASK_MIGRATION_NOOP"
MIGRATION_REJECTED: EventType = "TASK_MIGRATION_REJECTED"
SNAPSHOT_STALE: EventType = "SNAPSHOT_STALE"
ARCHIVE_SEALED: EventType = "ARCHIVE_SEALED"


class JournalEntry(BaseModel):
    """One journal line. ``hash`` covers every other field, ``prev_hash`` links the chain."""

    seq: int
    ts: int
    type: EventType
    domain: str = ""
    task_id: str = ""
    payload: Dict[str, Any] = Field(default_factory=dict)
    prev_hash: str = ""
    hash: str = ""

    def chained_fields(self) -> Dict[str, Any]:
        return self.model_dump(exclude={"hash"})

    def expected_hash(self) -> str:
        return stable_hash(self.chained_fields())


class Ledger:
    """Append-only record of migration attempts, one canonical JSON line per entry."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._last_hash = ""
        self._next_seq = 0
        lines = read_jsonl(path)
        if lines:
            last = JournalEntry.model_validate(lines[-1])
            self._last_hash = last.hash
            self._next_seq = last.seq + 1

    def append(
        self,
        event_type: EventType,
        domain: str = "",
        task_id: str = "",
        payload: Optional[Mapping[str, Any]] = None,
    ) -> JournalEntry:
        entry = JournalEntry(
            seq=self._next_seq,
            ts=now_ts_ns(),
            type=event_type,
            domain=domain,
            task_id=task_id,
            payload=to_jsonable(dict(payload or {})),
            prev_hash=self._last_hash,
        )
        entry.hash = entry.expected_hash()
        write_jsonl_line(self.path, entry.model_dump())
        self._last_hash = entry.hash
        self._next_seq += 1
        return entry

    def entries(
        self, event_type: Optional[EventType] = None, task_id: Optional[str] = None
    ) -> List[JournalEntry]:
        entries = [JournalEntry.model_validate(line) for line in read_jsonl(self.path)]
        return [
            entry
            for entry in entries
            if (event_type is None or entry.type == event_type)
            and (task_id is None or entry.task_id == task_id)
        ]

    @staticmethod
    def verify_chain(path: Path) -> Tuple[bool, str]:
        lines = read_jsonl(path)
        prev_hash = ""
        for idx, line in enumerate(lines):
            try:
                entry = JournalEntry.model_validate(line)
            except pydantic.ValidationError:
                return False, f"malformed entry at {idx}"
            if entry.seq != idx:
                return False, f"sequence gap at {idx}"
            if entry.prev_hash != prev_hash:
                return False, f"prev_hash mismatch at {idx}"
            if entry.expected_hash() != entry.hash:
                return False, f"hash mismatch at {idx}"
            prev_hash = entry.hash
        return True, f"ok ({len(lines)} entries)"
