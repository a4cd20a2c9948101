"""Merge-event parsing.

A merge event names the task it completes with a single phrase in its
free-text body: ``Resolves #F-YY-MM-DD-XX``. Nothing else in the body is
interpreted.
"""

from __future__ import annotations

import re
from datetime import date, datetime
from typing import Any, Mapping

from pydantic import BaseModel

from .errors import NotFoundError, ValidationError
from .schemas import Violation

RESOLVES_RE = re.compile(r"\bresolves\s+#(?P<task_id>F-\d{2}-\d{2}-\d{2}-\d{2})\b", re.IGNORECASE)


class TaskIdNotFound(NotFoundError):
    pass


class MergeEvent(BaseModel):
    number: int
    body: str = ""
    merged_at: str

    def merge_date(self) -> str:
        return normalize_merge_date(self.merged_at)

    def task_id(self) -> str:
        return extract_task_id(self.body)


def extract_task_id(body: str) -> str:
    match = RESOLVES_RE.search(body or "")
    if match is None:
        raise TaskIdNotFound("merge event body has no 'Resolves #<TASK_ID>' reference")
    return match.group("task_id")


def normalize_merge_date(value: str | date | datetime) -> str:
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    text = str(value).strip()
    try:
        if len(text) == 10:
            return date.fromisoformat(text).isoformat()
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date().isoformat()
    except ValueError as exc:
        raise ValidationError(
            [
                Violation(
                    code="invalid_merge_date",
                    subject=text or "<empty>",
                    field="merge_date",
                    message="merge date must be an ISO date or timestamp",
                )
            ]
        ) from exc


def parse_event(payload: Mapping[str, Any]) -> MergeEvent:
    data: Mapping[str, Any] = payload
    pull_request = payload.get("pull_request")
    if isinstance(pull_request, Mapping):
        data = pull_request
        if pull_request.get("merged") is False or not pull_request.get("merged_at"):
            raise TaskIdNotFound("pull request was closed without merging")
    number = data.get("number")
    if not isinstance(number, int) or isinstance(number, bool) or number <= 0:
        raise ValidationError(
            [
                Violation(
                    code="invalid_merge_ref",
                    subject=str(number),
                    field="merge_ref",
                    message="merge event carries no change-request number",
                )
            ]
        )
    return MergeEvent(
        number=number,
        body=str(data.get("body") or ""),
        merged_at=str(data.get("merged_at") or ""),
    )
