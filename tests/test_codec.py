from __future__ import annotations

from datetime import date

import pytest
from hypothesis import given
from hypothesis import settings as hypo_settings
from hypothesis import strategies as st

from conftest import BACKLOG
from taskvault.codec import (
    ACTIVE_TABLE,
    COMPLETED_TABLE,
    decode,
    encode,
    new_document,
    parse_document,
    render_table,
    split_cells,
)
from taskvault.errors import ParseError
from taskvault.schemas import ArchiveRecord, TaskRecord

CELL_ALPHABET = st.characters(
    categories=("Lu", "Ll", "Nd"), include_characters=" -_./#:"
)
cell = st.text(alphabet=CELL_ALPHABET, max_size=16).map(str.strip)

task_records = st.builds(
    TaskRecord,
    id=cell,
    priority=st.sampled_from(["High", "Med", "Low"]),
    description=cell,
    feature_path=cell.map(lambda name: f"/features/{name}"),
    effort=st.sampled_from(["1", "0.5", "2.25", "3"]),
    vibe_tag=cell,
)
section_dates = st.dates(min_value=date(2020, 1, 1), max_value=date(2030, 12, 31)).map(
    lambda day: day.isoformat()
)
groups = st.lists(
    st.tuples(section_dates, st.lists(task_records, min_size=1, max_size=4)),
    max_size=4,
    unique_by=lambda item: item[0],
)


@hypo_settings(derandomize=True, max_examples=75)
@given(groups=groups)
def test_render_then_parse_keeps_records_and_grouping(groups) -> None:
    text = render_table(groups, ACTIVE_TABLE, "payments")
    document = parse_document(text, ACTIVE_TABLE)
    assert document.grouped() == [(key, list(records)) for key, records in groups]
    assert [record for record, _ in decode(text, ACTIVE_TABLE)] == [
        record for _, records in groups for record in records
    ]
    assert encode(document) == text


def test_parse_then_encode_is_byte_identical() -> None:
    text = BACKLOG.replace("\n## 2026-02-15", "\nSome intro prose.\n\n## 2026-02-15") + (
        "\n## undated\n\nnotes without a table\n"
    )
    assert encode(parse_document(text, ACTIVE_TABLE)) == text


def test_crlf_documents_keep_their_line_endings() -> None:
    text = BACKLOG.replace("\n", "\r\n")
    document = parse_document(text, ACTIVE_TABLE)
    assert document.newline == "\r\n"
    document.remove("F-26-02-15-00")
    rendered = encode(document)
    assert "F-26-02-15-00" not in rendered
    assert "\n" not in rendered.replace("\r\n", "")


def test_records_carry_source_lines() -> None:
    records = decode(BACKLOG, ACTIVE_TABLE, source="backlog.md")
    assert [(record.id, span.start_line) for record, span in records] == [
        ("F-26-02-15-00", 7),
        ("F-26-02-15-01", 8),
    ]
    assert records[1][0].vibe_tag == ""


def test_wrong_column_count_reports_line() -> None:
    broken = BACKLOG.replace("| 1.5 |  |", "| 1.5 |")
    with pytest.raises(ParseError) as excinfo:
        parse_document(broken, ACTIVE_TABLE, source="backlog.md")
    assert excinfo.value.line == 8
    assert "expected 6 columns" in str(excinfo.value)
    assert str(excinfo.value).startswith("backlog.md:8")


def test_header_without_separator_is_rejected() -> None:
    broken = BACKLOG.replace("| --- | --- | --- | --- | --- | --- |\n", "")
    with pytest.raises(ParseError):
        parse_document(broken, ACTIVE_TABLE)


def test_table_outside_section_is_rejected() -> None:
    with pytest.raises(ParseError):
        parse_document("| a | b |\n", COMPLETED_TABLE)
    header_only = "# Completed\n\n| ID | Feature | Merge Ref | Merge Date | Vibe |\n| --- | --- | --- | --- | --- |\n"
    with pytest.raises(ParseError) as excinfo:
        parse_document(header_only, COMPLETED_TABLE, source="completed.md")
    assert excinfo.value.line == 3
    assert "## <YYYY-MM-DD>" in str(excinfo.value)


def test_escaped_pipes_survive() -> None:
    assert split_cells("| a \\| b | c |") == ["a | b", "c"]
    record = TaskRecord(
        id="F-26-02-15-02",
        priority="Low",
        description="split a|b",
        feature_path="/features/x",
        effort="1",
    )
    text = render_table([("2026-02-15", [record])], ACTIVE_TABLE, "x")
    assert "split a\\|b" in text
    assert decode(text, ACTIVE_TABLE)[0][0] == record


def test_archive_rows_render_merge_ref_with_hash() -> None:
    record = ArchiveRecord(
        id="F-26-02-15-00",
        feature_path="/features/fraud-scoring",
        merge_ref="451",
        merge_date="2026-02-14",
        vibe_tag="focused",
    )
    text = render_table([("2026-02-14", [record])], COMPLETED_TABLE, "payment-fraud-detection")
    assert text == (
        "# Completed: payment-fraud-detection\n"
        "\n"
        "## 2026-02-14\n"
        "\n"
        "| ID | Feature | Merge Ref | Merge Date | Vibe |\n"
        "| --- | --- | --- | --- | --- |\n"
        "| F-26-02-15-00 | /features/fraud-scoring | #451 | 2026-02-14 | focused |\n"
    )
    assert decode(text, COMPLETED_TABLE)[0][0].merge_ref == "451"


def test_append_grows_only_the_last_section() -> None:
    first = ArchiveRecord(id="F-26-02-01-00", feature_path="/features/a", merge_ref="1", merge_date="2026-02-01")
    second = ArchiveRecord(id="F-26-02-02-00", feature_path="/features/a", merge_ref="2", merge_date="2026-02-02")
    late = ArchiveRecord(id="F-26-01-30-00", feature_path="/features/a", merge_ref="3", merge_date="2026-02-01")
    document = new_document(COMPLETED_TABLE, "a")
    document.append("2026-02-01", first)
    document.append("2026-02-02", second)
    document.append("2026-02-01", late)
    assert [section.key for section in document.sections] == ["2026-02-01", "2026-02-02", "2026-02-01"]
    reparsed = parse_document(encode(document), COMPLETED_TABLE)
    assert [record.id for record, _ in reparsed.records()] == [
        "F-26-02-01-00",
        "F-26-02-02-00",
        "F-26-01-30-00",
    ]


def test_removing_last_row_drops_its_section() -> None:
    document = parse_document(BACKLOG, ACTIVE_TABLE)
    document.remove("F-26-02-15-00")
    document.remove("F-26-02-15-01")
    assert document.sections == []
    assert encode(document) == "# Backlog: payment-fraud-detection\n"


word = st.text(alphabet=CELL_ALPHABET, min_size=1, max_size=12).map(str.strip).filter(bool)
padding = st.sampled_from(["", " ", "  "])
alignment = st.sampled_from(["---", "-", ":--", "--:", ":-:", ":---:"])


@st.composite
def hand_written_backlog(draw):
    """Active-table text laid out the way people type it by hand."""
    leading = draw(st.booleans())
    trailing = draw(st.booleans())

    def line(cells) -> str:
        parts = [f"{draw(padding)}{cell}{draw(padding)}" for cell in cells]
        text = "|".join(parts)
        if leading:
            text = "|" + text
        if trailing:
            text = text + "|"
        return text

    rows = []
    ids = []
    for number in range(draw(st.integers(min_value=0, max_value=4))):
        task_id = f"F-26-02-15-{number:02d}"
        # without a closing pipe an empty last cell cannot be told apart from a missing one
        vibe = draw(word) if not trailing else draw(st.one_of(st.just(""), word))
        rows.append(
            line(
                [
                    draw(st.sampled_from(["High", "Med", "Low"])),
                    task_id,
                    draw(cell),
                    "/features/" + draw(word),
                    draw(st.sampled_from(["1", "0.5", "2.25", "3"])),
                    vibe,
                ]
            )
        )
        ids.append(task_id)
    header = line(list(ACTIVE_TABLE.columns))
    separator = line([draw(alignment) for _ in ACTIVE_TABLE.columns])
    body = [header, separator, *rows]
    if draw(st.booleans()):
        body.append("")
        body.append("Notes after the table.")
    text = "# Backlog: payments\n\n## 2026-02-15\n\n" + "\n".join(body)
    if draw(st.booleans()):
        text += "\n"
    return text, ids


@hypo_settings(derandomize=True, max_examples=100)
@given(case=hand_written_backlog())
def test_hand_written_tables_survive_parse_and_encode(case) -> None:
    text, ids = case
    document = parse_document(text, ACTIVE_TABLE)
    assert encode(document) == text
    assert [record.id for record, _ in document.records()] == ids


def test_rows_without_outer_pipes() -> None:
    text = (
        "# Backlog: payments\n\n## 2026-02-15\n\n"
        "Priority|ID|Description|Feature|Effort|Vibe\n"
        ":--|---|---|---|--:|:-:\n"
        "High|F-26-02-15-00|Score|/features/fraud-scoring|3|focused"
    )
    document = parse_document(text, ACTIVE_TABLE)
    assert encode(document) == text
    [(record, span)] = document.records()
    assert (record.id, record.effort, record.vibe_tag, span.start_line) == ("F-26-02-15-00", "3", "focused", 7)


def test_prose_with_a_pipe_is_not_a_table() -> None:
    text = "# Backlog: payments\n\n## 2026-02-15\n\nEither this | or that.\n"
    document = parse_document(text, ACTIVE_TABLE)
    assert document.records() == []
    assert encode(document) == text


HEADER_ONLY_ARCHIVE = (
    "# Completed: payments\n"
    "\n"
    "## 2026-02-14\n"
    "\n"
    "| ID | Feature | Merge Ref | Merge Date | Vibe |\n"
    "| --- | --- | --- | --- | --- |\n"
)


@pytest.mark.parametrize("trailing_newline", [True, False])
def test_append_into_header_only_section(trailing_newline: bool) -> None:
    text = HEADER_ONLY_ARCHIVE if trailing_newline else HEADER_ONLY_ARCHIVE.rstrip("\n")
    document = parse_document(text, COMPLETED_TABLE)
    assert encode(document) == text
    assert document.records() == []

    record = ArchiveRecord(
        id="F-26-02-15-00", feature_path="/features/fraud-scoring", merge_ref="451", merge_date="2026-02-14"
    )
    document.append("2026-02-14", record)
    rendered = encode(document)
    assert rendered == HEADER_ONLY_ARCHIVE + "| F-26-02-15-00 | /features/fraud-scoring | #451 | 2026-02-14 |  |\n"
    assert [item.id for item, _ in decode(rendered, COMPLETED_TABLE)] == ["F-26-02-15-00"]


def test_header_only_section_keeps_notes_below_the_table() -> None:
    text = HEADER_ONLY_ARCHIVE + "\nNothing merged yet.\n"
    document = parse_document(text, COMPLETED_TABLE)
    record = ArchiveRecord(id="F-26-02-15-00", feature_path="/features/a", merge_ref="451", merge_date="2026-02-14")
    document.append("2026-02-14", record)
    rendered = encode(document)
    assert rendered == HEADER_ONLY_ARCHIVE + (
        "| F-26-02-15-00 | /features/a | #451 | 2026-02-14 |  |\n\nNothing merged yet.\n"
    )
    assert len(decode(rendered, COMPLETED_TABLE)) == 1
