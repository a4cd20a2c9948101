from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date
from fractions import Fraction
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, cast

from .config import Settings
from .errors import ValidationError
from .schemas import ArchiveRecord, DomainStats, SprintReport, TaskRecord, Violation
from .store import VersionedStore
from .utils import canonical_dumps, format_fraction, parse_iso_date, round_half_up
from .workspace import DomainState, load_domain, read_prefixes

DOMAIN_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
TOTAL_ROW = "TOTAL"


@dataclass(frozen=True)
class DateWindow:
    start: Optional[date] = None
    end: Optional[date] = None

    @classmethod
    def parse(cls, text: str) -> "DateWindow":
        raw = text.strip()
        if ".." in raw:
            left, right = raw.split("..", 1)
        else:
            left, right = raw, raw
        start = parse_iso_date(left) if left.strip() else None
        end = parse_iso_date(right) if right.strip() else None
        bad_side = (left.strip() and start is None) or (right.strip() and end is None)
        if bad_side or (start is None and end is None) or (start and end and start > end):
            raise ValidationError(
                [
                    Violation(
                        code="invalid_window",
                        subject=raw or "<empty>",
                        message="window must look like YYYY-MM-DD..YYYY-MM-DD (either side optional)",
                    )
                ]
            )
        return cls(start=start, end=end)

    def contains(self, day: Optional[date]) -> bool:
        if day is None:
            return False
        if self.start is not None and day < self.start:
            return False
        if self.end is not None and day > self.end:
            return False
        return True

    def label(self) -> str:
        start = self.start.isoformat() if self.start else ""
        end = self.end.isoformat() if self.end else ""
        return f"{start}..{end}"


def _active_records(state: DomainState, window: Optional[DateWindow]) -> List[TaskRecord]:
    records: List[TaskRecord] = []
    for section in state.backlog.sections:
        if window is not None and not window.contains(parse_iso_date(section.key)):
            continue
        records.extend(cast(TaskRecord, record) for record in section.records())
    return records


def _archived_records(state: DomainState, window: Optional[DateWindow]) -> List[ArchiveRecord]:
    records: List[ArchiveRecord] = []
    for item, _ in state.archive.records():
        record = cast(ArchiveRecord, item)
        if window is not None and not window.contains(parse_iso_date(record.merge_date)):
            continue
        records.append(record)
    return records


def _histogram(tags: Iterable[str]) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for tag in tags:
        cleaned = tag.strip()
        if cleaned:
            counts[cleaned] = counts.get(cleaned, 0) + 1
    return dict(sorted(counts.items()))


def _percent(completed: int, total: int) -> int:
    if total == 0:
        return 0
    return round_half_up(Fraction(100 * completed, total))


def domain_stats(state: DomainState, window: Optional[DateWindow] = None) -> Tuple[DomainStats, Fraction]:
    active = _active_records(state, window)
    archived = _archived_records(state, window)
    total = len(active) + len(archived)
    remaining = sum((record.effort_days or Fraction(0) for record in active), Fraction(0))
    tags = [record.vibe_tag for record in active] + [record.vibe_tag for record in archived]
    stats = DomainStats(
        domain=state.domain,
        total_tasks=total,
        completed_count=len(archived),
        percent_complete=_percent(len(archived), total),
        remaining_effort_days=format_fraction(remaining),
        vibe_tag_histogram=_histogram(tags),
    )
    return stats, remaining


def aggregate(states: Sequence[DomainState], window: Optional[DateWindow] = None) -> SprintReport:
    rows: List[DomainStats] = []
    total_tasks = 0
    completed = 0
    remaining = Fraction(0)
    histogram: Dict[str, int] = {}
    for state in sorted(states, key=lambda item: item.domain):
        stats, effort = domain_stats(state, window)
        rows.append(stats)
        total_tasks += stats.total_tasks
        completed += stats.completed_count
        remaining += effort
        for tag, count in stats.vibe_tag_histogram.items():
            histogram[tag] = histogram.get(tag, 0) + count
    summary = DomainStats(
        domain=TOTAL_ROW,
        total_tasks=total_tasks,
        completed_count=completed,
        percent_complete=_percent(completed, total_tasks),
        remaining_effort_days=format_fraction(remaining),
        vibe_tag_histogram=dict(sorted(histogram.items())),
    )
    return SprintReport(
        window=window.label() if window is not None else None,
        domains=rows,
        aggregate=summary,
    )


def parse_domains(value: str) -> List[str]:
    names = sorted({name.strip() for name in value.split(",") if name.strip()})
    bad = [name for name in names if not DOMAIN_NAME_RE.match(name)]
    if bad or not names:
        raise ValidationError(
            [
                Violation(code="invalid_domain", subject=name or "<empty>", message="not a domain name")
                for name in (bad or [""])
            ]
        )
    return names


class SprintAggregator:
    def __init__(self, settings: Settings, store: VersionedStore) -> None:
        self.settings = settings
        self.store = store

    def report(self, domains: Sequence[str], window: Optional[DateWindow] = None) -> SprintReport:
        snapshot = self.store.read(read_prefixes(self.settings))
        states = [load_domain(snapshot, self.settings, domain) for domain in domains]
        return aggregate(states, window)


def _format_histogram(histogram: Dict[str, int]) -> str:
    if not histogram:
        return "-"
    return ", ".join(f"{tag}={count}" for tag, count in histogram.items())


def render_markdown(report: SprintReport) -> str:
    lines = ["# Sprint Report", ""]
    if report.window:
        lines.extend([f"Window: {report.window}", ""])
    lines.append("| Domain | Total | Completed | % Complete | Remaining Effort (days) | Vibe Tags |")
    lines.append("| --- | --- | --- | --- | --- | --- |")
    for stats in [*report.domains, report.aggregate]:
        cells = [
            stats.domain,
            str(stats.total_tasks),
            str(stats.completed_count),
            str(stats.percent_complete),
            stats.remaining_effort_days,
            _format_histogram(stats.vibe_tag_histogram).replace("|", "\\|"),
        ]
        lines.append("| " + " | ".join(cells) + " |")
    lines.extend(["", f"Digest: {report.stable_hash()}", ""])
    return "\n".join(lines)


def render_json(report: SprintReport) -> bytes:
    payload = report.model_dump(exclude={"hash_inputs"})
    payload["digest"] = report.stable_hash()
    return canonical_dumps(payload) + b"\n"
