from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Protocol, Sequence

from ..errors import PersistenceError
from ..utils import ensure_dir, stable_hash

logger = logging.getLogger(__name__)


@dataclass
class Snapshot:
    version: str
    prefixes: List[str]
    files: Dict[str, bytes] = field(default_factory=dict)
    digests: Dict[str, str] = field(default_factory=dict)

    def text(self, key: str) -> str:
        return self.files.get(key, b"").decode("utf-8")

    def has(self, key: str) -> bool:
        return key in self.files

    def keys_under(self, prefix: str) -> List[str]:
        marker = prefix.rstrip("/") + "/"
        return sorted(key for key in self.files if key.startswith(marker))


class VersionedStore(Protocol):
    def read(self, prefixes: Sequence[str]) -> Snapshot: ...

    def commit(self, snapshot: Snapshot, writes: Mapping[str, bytes], message: str) -> str: ...


def snapshot_version(digests: Mapping[str, str]) -> str:
    return stable_hash(dict(sorted(digests.items())))


def apply_writes(root: Path, writes: Mapping[str, bytes]) -> Dict[Path, Optional[bytes]]:
    """Install every write or none of them.

    Each payload is staged into a temp file beside its target before any
    target is touched. Installation is a sequence of ``os.replace`` calls; if
    one fails, or the process is interrupted, targets already replaced get
    their previous bytes back. Returns the previous contents (``None`` for
    files that did not exist) so callers can undo a later step.
    """
    staged: List[tuple[Path, Path]] = []
    originals: Dict[Path, Optional[bytes]] = {}
    installed: List[Path] = []
    try:
        for key in sorted(writes):
            target = root / key
            ensure_dir(target.parent)
            handle_fd, temp_name = tempfile.mkstemp(
                prefix=f".{target.name}.", suffix=".tmp", dir=str(target.parent)
            )
            staged.append((target, Path(temp_name)))
            with os.fdopen(handle_fd, "wb") as handle:
                handle.write(writes[key])
                handle.flush()
                os.fsync(handle.fileno())
        for target, temp_path in staged:
            originals[target] = target.read_bytes() if target.exists() else None
            os.replace(temp_path, target)
            installed.append(target)
    except BaseException as exc:
        for target in reversed(installed):
            restore_file(target, originals[target])
        for _, temp_path in staged:
            temp_path.unlink(missing_ok=True)
        if isinstance(exc, OSError):
            raise PersistenceError(f"write failed, nothing was changed: {exc}") from exc
        raise
    logger.debug("installed %d file(s) under %s", len(installed), root)
    return originals


def restore_file(target: Path, original: Optional[bytes]) -> None:
    if original is None:
        target.unlink(missing_ok=True)
    else:
        target.write_bytes(original)


def restore_all(originals: Mapping[Path, Optional[bytes]]) -> None:
    for target, original in originals.items():
        restore_file(target, original)
