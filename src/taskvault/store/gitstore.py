from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Dict, Mapping, Sequence

from ..errors import PersistenceError, StaleSnapshotError
from ..utils import hash_bytes
from .base import Snapshot, apply_writes, restore_all
from .filestore import FileStore

logger = logging.getLogger(__name__)


def _run_git(
    repo_root: Path, *args: str, timeout_s: float = 30.0
) -> subprocess.CompletedProcess[bytes]:
    try:
        return subprocess.run(
            ["git", *args],
            cwd=str(repo_root),
            capture_output=True,
            check=False,
            timeout=timeout_s,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        raise PersistenceError(f"git {' '.join(args[:2])} failed to run: {exc}") from exc


def _detail(proc: subprocess.CompletedProcess[bytes]) -> str:
    text = proc.stderr.decode("utf-8", "replace").strip() or proc.stdout.decode("utf-8", "replace")
    return " ".join(text.split()) or f"exit={proc.returncode}"


class GitStore(FileStore):
    """Snapshots are commits; a commit is accepted only on top of its snapshot."""

    def __init__(
        self,
        root: Path,
        state_dir: str = ".taskvault",
        *,
        push: bool = False,
        remote: str = "origin",
        timeout_s: float = 30.0,
    ) -> None:
        super().__init__(root, state_dir)
        self.push = push
        self.remote = remote
        self.timeout_s = timeout_s

    def git(self, *args: str) -> str:
        proc = _run_git(self.root, *args, timeout_s=self.timeout_s)
        if proc.returncode != 0:
            raise PersistenceError(f"git {args[0]} failed: {_detail(proc)}")
        return proc.stdout.decode("utf-8").strip()

    def head(self) -> str:
        return self.git("rev-parse", "HEAD")

    def branch(self) -> str:
        return self.git("rev-parse", "--abbrev-ref", "HEAD")

    def read(self, prefixes: Sequence[str]) -> Snapshot:
        if self.push:
            self._fast_forward()
        rev = self.head()
        listing = self.git("ls-tree", "-r", "--name-only", rev, "--", *prefixes)
        files: Dict[str, bytes] = {}
        for key in listing.splitlines():
            if not key or Path(key).name.startswith("."):
                continue
            proc = _run_git(self.root, "show", f"{rev}:{key}", timeout_s=self.timeout_s)
            if proc.returncode != 0:
                raise PersistenceError(f"cannot read {key} at {rev[:12]}: {_detail(proc)}")
            files[key] = proc.stdout
        digests = {key: hash_bytes(data) for key, data in files.items()}
        return Snapshot(version=rev, prefixes=list(prefixes), files=files, digests=digests)

    def commit(self, snapshot: Snapshot, writes: Mapping[str, bytes], message: str) -> str:
        paths = sorted(writes)
        with self.locked(exclusive=True):
            if self.head() != snapshot.version:
                raise StaleSnapshotError(f"HEAD moved past {snapshot.version[:12]}")
            dirty = self.git("status", "--porcelain", "--", *paths)
            if dirty:
                raise PersistenceError(f"uncommitted local edits in: {dirty}")
            originals = apply_writes(self.root, writes)
            try:
                self.git("add", "--", *paths)
                self.git("commit", "--quiet", "-m", message, "--", *paths)
            except PersistenceError:
                restore_all(originals)
                _run_git(self.root, "reset", "--quiet", "--", *paths, timeout_s=self.timeout_s)
                raise
            rev = self.head()
            if self.push:
                self._push_or_rewind(snapshot.version)
        logger.info("committed %s as %s", message, rev[:12])
        return rev

    def _push_or_rewind(self, base_rev: str) -> None:
        branch = self.branch()
        proc = _run_git(self.root, "push", "--quiet", self.remote, f"HEAD:{branch}", timeout_s=self.timeout_s)
        if proc.returncode == 0:
            return
        logger.warning("push rejected, rewinding to %s: %s", base_rev[:12], _detail(proc))
        self.git("reset", "--quiet", "--keep", base_rev)
        self._fast_forward()
        raise StaleSnapshotError(f"remote rejected push to {branch}")

    def _fast_forward(self) -> None:
        branch = self.branch()
        self.git("pull", "--quiet", "--ff-only", self.remote, branch)

