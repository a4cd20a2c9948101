from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Callable, List, Mapping, Optional, Sequence, Tuple, Union, cast

from .errors import ParseError
from .schemas import ArchiveRecord, TaskRecord

Record = Union[TaskRecord, ArchiveRecord]

HEADING_RE = re.compile(r"^## +(?P<key>.*?)\s*$")
SEPARATOR_CELL_RE = re.compile(r"^:?-+:?$")
PIPE_SPLIT_RE = re.compile(r"(?<!\\)\|")


@dataclass(frozen=True)
class TableSchema:
    name: str
    title: str
    columns: Tuple[str, ...]
    to_record: Callable[[List[str]], Record]
    to_cells: Callable[[Record], List[str]]


def _active_record(cells: List[str]) -> TaskRecord:
    priority, task_id, description, feature_path, effort, vibe_tag = cells
    return TaskRecord(
        id=task_id,
        priority=priority,
        description=description,
        feature_path=feature_path,
        effort=effort,
        vibe_tag=vibe_tag,
    )


def _active_cells(record: Record) -> List[str]:
    record = cast(TaskRecord, record)
    return [
        record.priority,
        record.id,
        record.description,
        record.feature_path,
        record.effort,
        record.vibe_tag,
    ]


def _archive_record(cells: List[str]) -> ArchiveRecord:
    task_id, feature_path, merge_ref, merge_date, vibe_tag = cells
    return ArchiveRecord(
        id=task_id,
        feature_path=feature_path,
        merge_ref=merge_ref.lstrip("#").strip(),
        merge_date=merge_date,
        vibe_tag=vibe_tag,
    )


def _archive_cells(record: Record) -> List[str]:
    record = cast(ArchiveRecord, record)
    return [
        record.id,
        record.feature_path,
        f"#{record.merge_ref}",
        record.merge_date,
        record.vibe_tag,
    ]


ACTIVE_TABLE = TableSchema(
    name="active",
    title="Backlog",
    columns=("Priority", "ID", "Description", "Feature", "Effort", "Vibe"),
    to_record=_active_record,
    to_cells=_active_cells,
)
COMPLETED_TABLE = TableSchema(
    name="completed",
    title="Completed",
    columns=("ID", "Feature", "Merge Ref", "Merge Date", "Vibe"),
    to_record=_archive_record,
    to_cells=_archive_cells,
)


@dataclass(frozen=True)
class SourceSpan:
    start_line: int
    end_line: int


@dataclass
class Row:
    record: Record
    raw: str
    span: SourceSpan


@dataclass
class Section:
    key: str
    heading: str
    line: int
    body: List[Union[str, Row]] = field(default_factory=list)

    def rows(self) -> List[Row]:
        return [item for item in self.body if isinstance(item, Row)]

    def records(self) -> List[Record]:
        return [row.record for row in self.rows()]

    def raw(self) -> str:
        return self.heading + "".join(_raw(item) for item in self.body)

    def digest_source(self) -> bytes:
        return _sealable(self.raw()).encode("utf-8")


@dataclass
class TableDocument:
    table: TableSchema
    preamble: List[str] = field(default_factory=list)
    sections: List[Section] = field(default_factory=list)
    newline: str = "\n"

    def find(self, task_id: str) -> Optional[Tuple[Section, Row]]:
        for section in self.sections:
            for row in section.rows():
                if row.record.id == task_id:
                    return section, row
        return None

    def records(self) -> List[Tuple[Record, SourceSpan]]:
        return [(row.record, row.span) for section in self.sections for row in section.rows()]

    def grouped(self) -> List[Tuple[str, List[Record]]]:
        return [(section.key, section.records()) for section in self.sections]

    def remove(self, task_id: str) -> Row:
        found = self.find(task_id)
        if found is None:
            raise KeyError(task_id)
        section, row = found
        section.body = [item for item in section.body if item is not row]
        if not section.rows():
            was_last = section is self.sections[-1]
            self.sections = [item for item in self.sections if item is not section]
            if was_last:
                _trim_trailing_blank(self._tail())
        return row

    def append(self, key: str, record: Record) -> Row:
        line = self.render_row(record)
        row = Row(record=record, raw=line, span=SourceSpan(0, 0))
        # only the last section may grow; an older section with the same key stays sealed
        section = self.sections[-1] if self.sections and self.sections[-1].key == key else None
        if section is None:
            section = self._new_section(key)
        rows = section.rows()
        if rows:
            last = rows[-1]
            if not last.raw.endswith("\n"):
                last.raw += self.newline
            position = next(i for i, item in enumerate(section.body) if item is last)
            section.body.insert(position + 1, row)
            return row
        separator = _separator_index(section.body)
        if separator is not None:
            marker = _raw(section.body[separator])
            if not marker.endswith("\n"):
                section.body[separator] = marker + self.newline
            section.body.insert(separator + 1, row)
            return row
        tail = section.body
        _terminate(tail, self.newline)
        if tail and _raw(tail[-1]).strip():
            tail.append(self.newline)
        tail.append(self.render_cells(list(self.table.columns)))
        tail.append(self.render_cells(["---"] * len(self.table.columns)))
        tail.append(row)
        return row

    def render_row(self, record: Record) -> str:
        return self.render_cells(self.table.to_cells(record))

    def render_cells(self, cells: Sequence[str]) -> str:
        escaped = [_escape(cell) for cell in cells]
        return "| " + " | ".join(escaped) + " |" + self.newline

    def _new_section(self, key: str) -> Section:
        tail = self._tail()
        _terminate(tail, self.newline)
        if tail and _raw(tail[-1]).strip():
            tail.append(self.newline)
        section = Section(key=key, heading=f"## {key}{self.newline}", line=0, body=[self.newline])
        self.sections.append(section)
        return section

    def _tail(self) -> List[Union[str, Row]]:
        if self.sections:
            return self.sections[-1].body
        return self.preamble  # type: ignore[return-value]


def _raw(item: Union[str, Row]) -> str:
    return item.raw if isinstance(item, Row) else item


def _sealable(text: str) -> str:
    lines = text.split("\n")
    while lines and not lines[-1].strip():
        lines.pop()
    return "\n".join(lines)


def _terminate(items: List[Union[str, Row]], newline: str) -> None:
    if not items:
        return
    last = items[-1]
    if isinstance(last, Row):
        if not last.raw.endswith("\n"):
            last.raw += newline
    elif not last.endswith("\n"):
        items[-1] = last + newline


def _separator_index(body: List[Union[str, Row]]) -> Optional[int]:
    """Index of the separator line of a table that has no rows yet."""
    for index, item in enumerate(body):
        if isinstance(item, str) and _is_separator_line(item.rstrip("\r\n")):
            return index
    return None


def _trim_trailing_blank(items: List[Union[str, Row]]) -> None:
    while items and isinstance(items[-1], str) and not items[-1].strip():
        items.pop()


def _escape(cell: str) -> str:
    return cell.replace("\r", " ").replace("\n", " ").replace("|", "\\|")


def split_lines(text: str) -> List[str]:
    parts = text.split("\n")
    lines = [part + "\n" for part in parts[:-1]]
    if parts[-1]:
        lines.append(parts[-1])
    return lines


def split_cells(line: str) -> List[str]:
    content = line.strip()
    if content.startswith("|"):
        content = content[1:]
    if content.endswith("|") and not content.endswith("\\|"):
        content = content[:-1]
    return [cell.strip().replace("\\|", "|") for cell in PIPE_SPLIT_RE.split(content)]


def _is_table_line(line: str) -> bool:
    return line.lstrip().startswith("|")


def _has_cells(line: str) -> bool:
    return PIPE_SPLIT_RE.search(line) is not None


def _is_separator(cells: List[str]) -> bool:
    return all(SEPARATOR_CELL_RE.match(cell) for cell in cells)


def _is_separator_line(line: str) -> bool:
    return _has_cells(line) and _is_separator(split_cells(line))


def _opens_table(lines: List[str], index: int) -> bool:
    """A row without a leading pipe only opens a table when a separator follows it."""
    content = lines[index].rstrip("\r\n")
    if _is_table_line(content):
        return True
    following = lines[index + 1].rstrip("\r\n") if index + 1 < len(lines) else ""
    return _has_cells(content) and _is_separator_line(following)


def parse_document(text: str, table: TableSchema, source: str = "") -> TableDocument:
    lines = split_lines(text)
    newline = "\r\n" if any(line.endswith("\r\n") for line in lines) else "\n"
    document = TableDocument(table=table, newline=newline)
    expected = len(table.columns)
    section: Optional[Section] = None
    state = "text"
    for index, line in enumerate(lines):
        number = index + 1
        content = line.rstrip("\r\n")
        heading = HEADING_RE.match(content)
        if heading:
            if state == "separator":
                raise ParseError(number - 1, "table header is not followed by a separator", source)
            section = Section(key=heading.group("key"), heading=line, line=number)
            document.sections.append(section)
            state = "text"
            continue
        if section is None:
            if _opens_table(lines, index):
                raise ParseError(
                    number,
                    "table outside a dated section; add a `## <YYYY-MM-DD>` heading above it",
                    source,
                )
            document.preamble.append(line)
            continue
        if state in ("separator", "rows"):
            in_table = _is_table_line(content) or _has_cells(content)
        else:
            in_table = _opens_table(lines, index)
        if not in_table:
            if state == "separator":
                raise ParseError(number - 1, "table header is not followed by a separator", source)
            if state == "rows":
                state = "closed"
            section.body.append(line)
            continue
        cells = split_cells(content)
        if state == "closed":
            raise ParseError(number, "a section may hold only one table", source)
        if len(cells) != expected:
            raise ParseError(
                number, f"expected {expected} columns, found {len(cells)}", source
            )
        if state == "text":
            state = "separator"
            section.body.append(line)
        elif state == "separator":
            if not _is_separator(cells):
                raise ParseError(number, "table header is not followed by a separator", source)
            state = "rows"
            section.body.append(line)
        else:
            record = table.to_record(cells)
            section.body.append(Row(record=record, raw=line, span=SourceSpan(number, number)))
    if state == "separator":
        raise ParseError(len(lines), "table header is not followed by a separator", source)
    return document


def decode(text: str, table: TableSchema, source: str = "") -> List[Tuple[Record, SourceSpan]]:
    return parse_document(text, table, source).records()


def encode(document: TableDocument) -> str:
    parts: List[str] = list(document.preamble)
    for section in document.sections:
        parts.append(section.raw())
    return "".join(parts)


def new_document(table: TableSchema, domain: str) -> TableDocument:
    return TableDocument(table=table, preamble=[f"# {table.title}: {domain}\n"])


def render_table(
    groups: Mapping[str, Sequence[Record]] | Sequence[Tuple[str, Sequence[Record]]],
    table: TableSchema,
    domain: str,
) -> str:
    document = new_document(table, domain)
    items = groups.items() if isinstance(groups, Mapping) else groups
    for key, records in items:
        for record in records:
            document.append(key, record)
    return encode(document)
