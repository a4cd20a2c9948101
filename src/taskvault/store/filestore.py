from __future__ import annotations

import fcntl
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, Mapping, Sequence

from ..errors import PersistenceError, StaleSnapshotError
from ..utils import ensure_dir, hash_bytes
from .base import Snapshot, apply_writes, snapshot_version

logger = logging.getLogger(__name__)

LOCK_NAME = "store.lock"


class FileStore:
    def __init__(self, root: Path, state_dir: str = ".taskvault") -> None:
        self.root = Path(root)
        self.lock_path = self.root / state_dir / LOCK_NAME

    @contextmanager
    def locked(self, exclusive: bool) -> Iterator[None]:
        ensure_dir(self.lock_path.parent)
        with self.lock_path.open("a+", encoding="utf-8") as handle:
            mode = fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH
            fcntl.flock(handle.fileno(), mode)
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    def read(self, prefixes: Sequence[str]) -> Snapshot:
        with self.locked(exclusive=False):
            files = self._scan(prefixes)
        digests = {key: hash_bytes(data) for key, data in files.items()}
        return Snapshot(
            version=snapshot_version(digests),
            prefixes=list(prefixes),
            files=files,
            digests=digests,
        )

    def commit(self, snapshot: Snapshot, writes: Mapping[str, bytes], message: str) -> str:
        with self.locked(exclusive=True):
            current = {key: hash_bytes(data) for key, data in self._scan(snapshot.prefixes).items()}
            for key in writes:
                path = self.root / key
                if key not in current and path.is_file():
                    current[key] = hash_bytes(path.read_bytes())
            expected = dict(snapshot.digests)
            if current != expected:
                changed = sorted(
                    key
                    for key in set(current) | set(expected)
                    if current.get(key) != expected.get(key)
                )
                logger.info("snapshot %s is stale: %s", snapshot.version[:12], ", ".join(changed))
                raise StaleSnapshotError(f"files changed since read: {', '.join(changed)}")
            apply_writes(self.root, writes)
        logger.debug("committed %s", message)
        merged = dict(expected)
        merged.update({key: hash_bytes(data) for key, data in writes.items()})
        return snapshot_version(merged)

    def _scan(self, prefixes: Sequence[str]) -> Dict[str, bytes]:
        files: Dict[str, bytes] = {}
        for prefix in prefixes:
            base = self.root / prefix
            if not base.is_dir():
                continue
            for path in sorted(base.rglob("*")):
                if not path.is_file() or path.name.startswith("."):
                    continue
                key = path.relative_to(self.root).as_posix()
                try:
                    files[key] = path.read_bytes()
                except OSError as exc:
                    raise PersistenceError(f"cannot read {key}: {exc}") from exc
        return files
