from __future__ import annotations

import re
from datetime import date
from typing import Dict, List, Optional, cast

from .codec import TableDocument
from .config import Settings
from .features import FeatureCatalog
from .schemas import PRIORITIES, ArchiveRecord, TaskRecord, Violation
from .utils import parse_fraction, parse_iso_date

TASK_ID_RE = re.compile(r"^F-(?P<yy>\d{2})-(?P<mm>\d{2})-(?P<dd>\d{2})-(?P<seq>\d{2})$")
MERGE_REF_RE = re.compile(r"^[1-9]\d*$")
PRIORITY_RANK = {name: rank for rank, name in enumerate(PRIORITIES)}


class Validator:
    def __init__(self, settings: Settings, catalog: Optional[FeatureCatalog] = None) -> None:
        self.settings = settings
        self.catalog = catalog

    def validate(self, record: TaskRecord, check_exists: Optional[bool] = None) -> List[Violation]:
        violations: List[Violation] = []
        violations.extend(self._check_id(record.id))
        if record.priority not in PRIORITY_RANK:
            violations.append(
                Violation(
                    code="invalid_priority",
                    subject=record.id,
                    field="priority",
                    message=f"{record.priority!r} is not one of {', '.join(PRIORITIES)}",
                )
            )
        violations.extend(self._check_feature(record.id, record.feature_path, check_exists))
        effort = record.effort_days
        if effort is None:
            violations.append(
                Violation(
                    code="invalid_effort",
                    subject=record.id,
                    field="effort",
                    message=f"{record.effort!r} is not a number of days",
                )
            )
        elif effort <= 0:
            violations.append(
                Violation(
                    code="non_positive_effort",
                    subject=record.id,
                    field="effort",
                    message=f"effort must be greater than 0, got {record.effort}",
                )
            )
        violations.extend(self._check_vibe(record.id, record.vibe_tag))
        return violations

    def validate_archived(self, record: ArchiveRecord) -> List[Violation]:
        violations: List[Violation] = []
        violations.extend(self._check_id(record.id))
        violations.extend(self._check_feature(record.id, record.feature_path, False))
        if not MERGE_REF_RE.match(record.merge_ref):
            violations.append(
                Violation(
                    code="invalid_merge_ref",
                    subject=record.id,
                    field="merge_ref",
                    message=f"{record.merge_ref!r} is not a change-request number",
                )
            )
        if parse_iso_date(record.merge_date) is None or len(record.merge_date) != 10:
            violations.append(
                Violation(
                    code="invalid_merge_date",
                    subject=record.id,
                    field="merge_date",
                    message=f"{record.merge_date!r} is not a YYYY-MM-DD date",
                )
            )
        violations.extend(self._check_vibe(record.id, record.vibe_tag))
        return violations

    def validate_backlog(self, document: TableDocument, strict: bool = False) -> List[Violation]:
        violations: List[Violation] = []
        seen: Dict[str, int] = {}
        for section in document.sections:
            rows = section.rows()
            if strict and not rows:
                violations.append(
                    Violation(
                        code="empty_section",
                        subject=section.key,
                        message="section holds no tasks",
                        line=section.line or None,
                    )
                )
            previous_rank = -1
            for row in rows:
                record = cast(TaskRecord, row.record)
                for violation in self.validate(record, check_exists=strict or None):
                    violations.append(violation.model_copy(update={"line": row.span.start_line}))
                if record.id in seen:
                    violations.append(
                        Violation(
                            code="duplicate_id",
                            subject=record.id,
                            message=f"already listed on line {seen[record.id]}",
                            line=row.span.start_line,
                        )
                    )
                else:
                    seen[record.id] = row.span.start_line
                rank = PRIORITY_RANK.get(record.priority)
                if strict and rank is not None:
                    if rank < previous_rank:
                        violations.append(
                            Violation(
                                code="priority_order",
                                subject=record.id,
                                field="priority",
                                message=f"{record.priority} listed after a lower priority in {section.key}",
                                line=row.span.start_line,
                            )
                        )
                    previous_rank = max(previous_rank, rank)
        return violations

    def validate_archive(self, document: TableDocument) -> List[Violation]:
        violations: List[Violation] = []
        for section in document.sections:
            for row in section.rows():
                record = cast(ArchiveRecord, row.record)
                for violation in self.validate_archived(record):
                    violations.append(violation.model_copy(update={"line": row.span.start_line}))
        return violations

    def _check_id(self, task_id: str) -> List[Violation]:
        match = TASK_ID_RE.match(task_id)
        if match is None:
            return [
                Violation(
                    code="invalid_id",
                    subject=task_id or "<empty>",
                    field="id",
                    message="id must look like F-YY-MM-DD-XX",
                )
            ]
        try:
            date(2000 + int(match.group("yy")), int(match.group("mm")), int(match.group("dd")))
        except ValueError:
            return [
                Violation(
                    code="invalid_id",
                    subject=task_id,
                    field="id",
                    message="id does not encode a calendar date",
                )
            ]
        return []

    def _check_feature(
        self, task_id: str, feature_path: str, check_exists: Optional[bool]
    ) -> List[Violation]:
        prefix = self.settings.feature_prefix
        if not feature_path.startswith(prefix) or len(feature_path) <= len(prefix):
            return [
                Violation(
                    code="invalid_feature_path",
                    subject=task_id,
                    field="feature_path",
                    message=f"{feature_path!r} must start with {prefix}",
                )
            ]
        if check_exists is None:
            check_exists = self.settings.require_feature_exists
        if check_exists and self.catalog is not None and not self.catalog.exists(feature_path):
            return [
                Violation(
                    code="missing_feature",
                    subject=task_id,
                    field="feature_path",
                    message=f"{feature_path} does not exist",
                )
            ]
        return []

    def _check_vibe(self, task_id: str, vibe_tag: str) -> List[Violation]:
        limit = self.settings.vibe_tag_max_len
        if vibe_tag and len(vibe_tag) > limit:
            return [
                Violation(
                    code="vibe_tag_too_long",
                    subject=task_id,
                    field="vibe_tag",
                    message=f"vibe tag has {len(vibe_tag)} characters, limit is {limit}",
                )
            ]
        return []
