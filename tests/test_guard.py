from __future__ import annotations

import pytest

from conftest import DOMAIN, Workspace
from taskvault.engine import MigrationEngine
from taskvault.errors import ImmutabilityViolation, ValidationError
from taskvault.guard import ConsistencyGuard
from taskvault.lifecycle import IllegalTransition, TaskStatus, archive_transition, status_of
from taskvault.utils import read_json

ARCHIVE_HEAD = """# Completed: {domain}

## 2026-02-01

| ID | Feature | Merge Ref | Merge Date | Vibe |
| --- | --- | --- | --- | --- |
| {task_id} | /features/fraud-scoring | #400 | 2026-02-01 | calm |
"""


def _migrate(workspace: Workspace, task_id: str, ref: int, merge_date: str) -> None:
    MigrationEngine(workspace.settings, workspace.store()).migrate(task_id, DOMAIN, ref, merge_date)


def _codes(violations) -> list[str]:
    return [violation.code for violation in violations]


def test_lifecycle_has_a_single_transition() -> None:
    assert archive_transition(TaskStatus.ACTIVE) is TaskStatus.ARCHIVED
    with pytest.raises(IllegalTransition):
        archive_transition(TaskStatus.ARCHIVED)
    assert status_of(False, False) is None
    with pytest.raises(IllegalTransition):
        status_of(True, True)


def test_clean_workspace_passes(workspace: Workspace) -> None:
    _migrate(workspace, "F-26-02-15-00", 451, "2026-02-14")
    assert ConsistencyGuard(workspace.settings, workspace.store()).check(DOMAIN) == []


def test_retroactive_edit_is_detected(workspace: Workspace) -> None:
    _migrate(workspace, "F-26-02-15-00", 451, "2026-02-14")
    archive = workspace.read(workspace.completed())
    workspace.write(workspace.completed(), archive.replace("#451", "#452"))

    violations = ConsistencyGuard(workspace.settings, workspace.store()).check(DOMAIN)
    assert _codes(violations) == ["sealed_section_modified"]
    with pytest.raises(ImmutabilityViolation):
        _migrate(workspace, "F-26-02-15-01", 455, "2026-02-15")


def test_older_sections_must_match_exactly(workspace: Workspace) -> None:
    _migrate(workspace, "F-26-02-15-00", 451, "2026-02-14")
    _migrate(workspace, "F-26-02-15-01", 455, "2026-02-15")
    archive = workspace.read(workspace.completed())
    workspace.write(workspace.completed(), archive.replace("| focused |", "| chill |"))
    violations = ConsistencyGuard(workspace.settings, workspace.store()).check(DOMAIN)
    assert _codes(violations) == ["sealed_section_modified"]
    assert violations[0].field == "2026-02-14"


def test_deleted_section_is_detected(workspace: Workspace) -> None:
    _migrate(workspace, "F-26-02-15-00", 451, "2026-02-14")
    workspace.write(workspace.completed(), "# Completed: payment-fraud-detection\n")
    violations = ConsistencyGuard(workspace.settings, workspace.store()).check(DOMAIN)
    assert _codes(violations) == ["sealed_section_missing"]


def test_appending_to_last_section_is_accepted(workspace: Workspace) -> None:
    _migrate(workspace, "F-26-02-15-00", 451, "2026-02-14")
    archive = workspace.read(workspace.completed())
    workspace.write(
        workspace.completed(),
        archive + "| F-26-02-10-00 | /features/velocity | #430 | 2026-02-14 |  |\n",
    )
    assert ConsistencyGuard(workspace.settings, workspace.store()).check(DOMAIN) == []


def test_task_in_both_tables_is_flagged(workspace: Workspace) -> None:
    workspace.write(
        workspace.completed(),
        ARCHIVE_HEAD.format(domain=DOMAIN, task_id="F-26-02-15-01"),
    )
    violations = ConsistencyGuard(workspace.settings, workspace.store()).check(DOMAIN)
    assert _codes(violations) == ["active_and_archived", "unsealed_archive"]
    with pytest.raises(ValidationError):
        _migrate(workspace, "F-26-02-15-01", 455, "2026-02-15")


def test_duplicate_archived_id_across_domains(workspace: Workspace) -> None:
    workspace.write(
        "tasks/card-issuing/completed.md",
        ARCHIVE_HEAD.format(domain="card-issuing", task_id="F-26-02-15-00"),
    )
    workspace.write("tasks/card-issuing/backlog.md", "# Backlog: card-issuing\n")
    assert ConsistencyGuard(workspace.settings, workspace.store()).check(DOMAIN) == []
    with pytest.raises(ValidationError) as excinfo:
        _migrate(workspace, "F-26-02-15-00", 451, "2026-02-14")
    assert _codes(excinfo.value.violations) == ["duplicate_archived_id"]
    assert "F-26-02-15-00" in workspace.read(workspace.backlog())


def test_seal_records_baseline_once(workspace: Workspace) -> None:
    workspace.write(
        workspace.completed(),
        ARCHIVE_HEAD.format(domain=DOMAIN, task_id="F-26-01-20-00"),
    )
    guard = ConsistencyGuard(workspace.settings, workspace.store())
    seal = guard.seal(DOMAIN)
    assert seal is not None
    assert [section["key"] for section in seal["sections"]] == ["2026-02-01"]
    assert read_json(workspace.root / workspace.seal()) == seal
    assert guard.seal(DOMAIN) is None

    archive = workspace.read(workspace.completed())
    workspace.write(workspace.completed(), archive.replace("#400", "#401"))
    assert _codes(guard.check(DOMAIN)) == ["sealed_section_modified"]


def test_deleted_seal_does_not_launder_an_edit(workspace: Workspace) -> None:
    _migrate(workspace, "F-26-02-15-00", 451, "2026-02-14")
    tampered = workspace.read(workspace.completed()).replace("#451", "#999")
    workspace.write(workspace.completed(), tampered)
    (workspace.root / workspace.seal()).unlink()

    violations = ConsistencyGuard(workspace.settings, workspace.store()).check(DOMAIN)
    assert _codes(violations) == ["unsealed_archive"]
    with pytest.raises(ImmutabilityViolation):
        _migrate(workspace, "F-26-02-15-01", 455, "2026-02-15")
    assert workspace.read(workspace.completed()) == tampered
    assert "F-26-02-15-01" in workspace.read(workspace.backlog())
    assert not workspace.exists(workspace.seal())


def test_adopted_archive_accepts_migrations(workspace: Workspace) -> None:
    workspace.write(
        workspace.completed(),
        ARCHIVE_HEAD.format(domain=DOMAIN, task_id="F-26-01-20-00"),
    )
    guard = ConsistencyGuard(workspace.settings, workspace.store())
    assert guard.seal(DOMAIN) is not None
    _migrate(workspace, "F-26-02-15-00", 451, "2026-02-14")
    assert guard.check(DOMAIN) == []
    assert [section["key"] for section in read_json(workspace.root / workspace.seal())["sections"]] == [
        "2026-02-01",
        "2026-02-14",
    ]
