from __future__ import annotations

from fractions import Fraction
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, model_validator

from .utils import CANONICALIZATION, HASH_ALGORITHM, parse_fraction, stable_hash

PRIORITIES = ("High", "Med", "Low")


class HashableModel(BaseModel):
    schema_version: str = "v1"
    canonicalization: str = CANONICALIZATION
    hash_algorithm: str = HASH_ALGORITHM
    hash_inputs: List[str] = Field(default_factory=list)

    def hash_payload(self) -> Dict[str, Any]:
        data = self.model_dump()
        keys = self.hash_inputs or [key for key in data.keys() if key != "hash_inputs"]
        return {key: data[key] for key in keys if key in data}

    def stable_hash(self) -> str:
        return stable_hash(self.hash_payload())


class TaskRecord(BaseModel):
    id: str
    priority: str
    description: str
    feature_path: str
    effort: str
    vibe_tag: str = ""

    @property
    def effort_days(self) -> Optional[Fraction]:
        return parse_fraction(self.effort)


class ArchiveRecord(BaseModel):
    id: str
    feature_path: str
    merge_ref: str
    merge_date: str
    vibe_tag: str = ""

    def same_merge(self, merge_ref: int | str) -> bool:
        return self.merge_ref.lstrip("#").strip() == str(merge_ref).lstrip("#").strip()


class Violation(BaseModel):
    code: str
    subject: str
    message: str
    field: str = ""
    line: Optional[int] = None

    def atom(self) -> str:
        location = f" (line {self.line})" if self.line is not None else ""
        target = f"{self.subject}.{self.field}" if self.field else self.subject
        return f"{self.code}:{target}{location}: {self.message}"


class MigrationResult(BaseModel):
    status: Literal["migrated", "noop"]
    task_id: str
    domain: str
    merge_ref: str
    merge_date: str
    vibe_tag: str = ""
    attempts: int = 1
    flags: List[str] = Field(default_factory=list)
    record: Optional[ArchiveRecord] = None

    @property
    def noop(self) -> bool:
        return self.status == "noop"


class DomainStats(BaseModel):
    domain: str
    total_tasks: int = 0
    completed_count: int = 0
    percent_complete: int = 0
    remaining_effort_days: str = "0"
    vibe_tag_histogram: Dict[str, int] = Field(default_factory=dict)


class SprintReport(HashableModel):
    window: Optional[str] = None
    domains: List[DomainStats] = Field(default_factory=list)
    aggregate: DomainStats = Field(default_factory=lambda: DomainStats(domain="TOTAL"))

    @model_validator(mode="after")
    def _set_hash_inputs(self) -> "SprintReport":
        if not self.hash_inputs:
            self.hash_inputs = [
                "schema_version",
                "canonicalization",
                "hash_algorithm",
                "window",
                "domains",
                "aggregate",
            ]
        return self
