from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, cast

from .codec import encode
from .config import Settings
from .errors import ConflictError, NotFoundError, StaleSnapshotError, TaskVaultError, ValidationError
from .events import MergeEvent, normalize_merge_date
from .features import FeatureCatalog
from .guard import check_state, dump_seal, raise_for, seal_archive
from .ledger.ledger import (
    MIGRATED,
    MIGRATION_NOOP,
    MIGRATION_REJECTED,
    SNAPSHOT_STALE,
    EventType,
    Ledger,
)
from .lifecycle import IllegalTransition, archive_transition, status_of
from .schemas import ArchiveRecord, MigrationResult, TaskRecord, Violation
from .store import Snapshot, VersionedStore
from .validator import Validator
from .workspace import domains_in, load_archives, load_domain, read_prefixes

logger = logging.getLogger(__name__)

VIBE_TAG_CONFLICT = "vibe_tag_conflict"


@dataclass
class MigrationPlan:
    result: MigrationResult
    writes: Dict[str, bytes] = field(default_factory=dict)


class MigrationEngine:
    def __init__(
        self,
        settings: Settings,
        store: VersionedStore,
        catalog: Optional[FeatureCatalog] = None,
        ledger: Optional[Ledger] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.catalog = catalog or FeatureCatalog(settings)
        self.validator = Validator(settings, self.catalog)
        self.ledger = ledger

    def migrate(self, task_id: str, domain: str, merge_ref: int, merge_date: str) -> MigrationResult:
        if merge_ref <= 0:
            raise ValidationError(
                [
                    Violation(
                        code="invalid_merge_ref",
                        subject=task_id,
                        field="merge_ref",
                        message=f"change-request number must be positive, got {merge_ref}",
                    )
                ]
            )
        merge_day = normalize_merge_date(merge_date)
        budget = max(1, self.settings.retry_budget)
        for attempt in range(1, budget + 1):
            snapshot = self.store.read(read_prefixes(self.settings))
            try:
                plan = self.plan(snapshot, task_id, domain, merge_ref, merge_day)
            except TaskVaultError as exc:
                self._journal(MIGRATION_REJECTED, task_id, domain, error=str(exc), detail=exc.details())
                raise
            plan.result.attempts = attempt
            if plan.result.noop:
                logger.info("%s already archived in %s under #%s", task_id, domain, merge_ref)
                self._journal(MIGRATION_NOOP, task_id, domain, merge_ref=merge_ref)
                return plan.result
            message = f"taskvault: archive {task_id} ({domain}) resolved by #{merge_ref}"
            try:
                self.store.commit(snapshot, plan.writes, message)
            except StaleSnapshotError as exc:
                logger.info("attempt %d/%d for %s lost a race: %s", attempt, budget, task_id, exc)
                self._journal(SNAPSHOT_STALE, task_id, domain, attempt=attempt, reason=str(exc))
                continue
            logger.info("archived %s in %s under #%s", task_id, domain, merge_ref)
            self._journal(
                MIGRATED,
                task_id,
                domain,
                **plan.result.model_dump(exclude={"record", "task_id", "domain"}),
            )
            return plan.result
        raise ConflictError(budget)

    def migrate_event(self, event: MergeEvent, domain: Optional[str] = None) -> MigrationResult:
        task_id = event.task_id()
        if domain is None:
            domain = self.locate(task_id)
        return self.migrate(task_id, domain, event.number, event.merge_date())

    def locate(self, task_id: str) -> str:
        snapshot = self.store.read(read_prefixes(self.settings))
        archived_in: List[str] = []
        for name in domains_in(snapshot, self.settings):
            state = load_domain(snapshot, self.settings, name)
            if state.backlog.find(task_id) is not None:
                return name
            if state.archive.find(task_id) is not None:
                archived_in.append(name)
        if archived_in:
            return archived_in[0]
        raise NotFoundError(f"{task_id} is not listed in any domain")

    def plan(
        self, snapshot: Snapshot, task_id: str, domain: str, merge_ref: int, merge_date: str
    ) -> MigrationPlan:
        state = load_domain(snapshot, self.settings, domain)
        if state.seal is None and not state.archive.sections:
            # an empty archive is its own baseline
            state.seal = seal_archive(domain, state.archive)
        found = state.backlog.find(task_id)
        archived = state.archive.find(task_id)
        try:
            status = status_of(found is not None, archived is not None)
        except IllegalTransition as exc:
            raise ValidationError(
                [
                    Violation(
                        code="active_and_archived",
                        subject=task_id,
                        message=f"listed in both the backlog and the archive of {domain}",
                    )
                ]
            ) from exc
        if found is None:
            if archived is not None:
                record = cast(ArchiveRecord, archived[1].record)
                if record.same_merge(merge_ref):
                    return MigrationPlan(
                        result=MigrationResult(
                            status="noop",
                            task_id=task_id,
                            domain=domain,
                            merge_ref=record.merge_ref,
                            merge_date=record.merge_date,
                            vibe_tag=record.vibe_tag,
                            record=record,
                        )
                    )
                raise NotFoundError(
                    f"{task_id} is already archived in {domain} under #{record.merge_ref}, not #{merge_ref}"
                )
            raise NotFoundError(f"{task_id} is not in the {domain} backlog")
        task = cast(TaskRecord, found[1].record)
        violations = self.validator.validate(task)
        if violations:
            raise ValidationError(violations, f"{task_id} failed validation")

        archive_transition(status)
        state.backlog.remove(task_id)
        vibe_tag, flags = self.resolve_vibe(task)
        record = ArchiveRecord(
            id=task.id,
            feature_path=task.feature_path,
            merge_ref=str(merge_ref),
            merge_date=merge_date,
            vibe_tag=vibe_tag,
        )
        violations = self.validator.validate_archived(record)
        if violations:
            raise ValidationError(violations, f"{task_id} cannot be archived as written")
        state.archive.append(merge_date, record)

        others = load_archives(snapshot, self.settings, exclude=domain)
        raise_for(check_state(state, others))
        writes = {
            self.settings.backlog_key(domain): encode(state.backlog).encode("utf-8"),
            self.settings.completed_key(domain): encode(state.archive).encode("utf-8"),
            self.settings.snapshot_key(domain): dump_seal(seal_archive(domain, state.archive)),
        }
        result = MigrationResult(
            status="migrated",
            task_id=task_id,
            domain=domain,
            merge_ref=str(merge_ref),
            merge_date=merge_date,
            vibe_tag=vibe_tag,
            flags=flags,
            record=record,
        )
        return MigrationPlan(result=result, writes=writes)

    def resolve_vibe(self, task: TaskRecord) -> tuple[str, List[str]]:
        declared = self.catalog.default_vibe(task.feature_path)
        own = task.vibe_tag.strip()
        if not own:
            return declared, []
        if declared and declared != own:
            logger.warning(
                "%s keeps its own vibe tag %r over %r declared by %s",
                task.id,
                own,
                declared,
                task.feature_path,
            )
            return own, [VIBE_TAG_CONFLICT]
        return own, []

    def _journal(self, event_type: EventType, task_id: str, domain: str, **payload: object) -> None:
        if self.ledger is None:
            return
        self.ledger.append(event_type, domain=domain, task_id=task_id, payload=payload)
