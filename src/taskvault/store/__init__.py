from ..config import Settings
from .base import Snapshot, VersionedStore, apply_writes
from .filestore import FileStore
from .gitstore import GitStore

__all__ = [
    "FileStore",
    "GitStore",
    "Snapshot",
    "VersionedStore",
    "apply_writes",
    "open_store",
]


def open_store(settings: Settings) -> VersionedStore:
    if settings.backend == "git":
        return GitStore(
            settings.root,
            settings.layout.state_dir,
            push=settings.push,
            remote=settings.remote,
            timeout_s=settings.git_timeout_s,
        )
    return FileStore(settings.root, settings.layout.state_dir)
