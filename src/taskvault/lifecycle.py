from __future__ import annotations

from enum import Enum


class TaskStatus(str, Enum):
    ACTIVE = "Active"
    ARCHIVED = "Archived"


class IllegalTransition(ValueError):
    pass


def archive_transition(status: TaskStatus) -> TaskStatus:
    """The only legal move: a record leaves the backlog exactly once."""
    if status is TaskStatus.ACTIVE:
        return TaskStatus.ARCHIVED
    raise IllegalTransition(f"{status.value} records cannot be archived")


def status_of(in_backlog: bool, in_archive: bool) -> TaskStatus | None:
    if in_backlog and in_archive:
        raise IllegalTransition("record is held by both tables")
    if in_backlog:
        return TaskStatus.ACTIVE
    if in_archive:
        return TaskStatus.ARCHIVED
    return None
