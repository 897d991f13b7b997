from io import BytesIO

from docx import Document
import pytest

from meeting_rag.errors import EmptyContent, InvalidInput, UnsupportedFormat
from meeting_rag.services.rag import extractor
from meeting_rag.services.rag.extractor import (
    extract_text,
    format_from_filename,
    normalize_format,
    register_extractor,
    supported_formats,
)


def _docx_bytes(*paragraphs: str, table: list[list[str]] | None = None) -> bytes:
    document = Document()
    for paragraph in paragraphs:
        document.add_paragraph(paragraph)
    if table:
        docx_table = document.add_table(rows=len(table), cols=len(table[0]))
        for row_index, row in enumerate(table):
            for col_index, value in enumerate(row):
                docx_table.cell(row_index, col_index).text = value

    buffer = BytesIO()
    document.save(buffer)
    return buffer.getvalue()


def test_extract_docx_returns_paragraph_text() -> None:
    data = _docx_bytes("Budget review", "", "Hiring plan for Q3")

    text = extract_text(data, "docx")

    assert text.split("\n") == ["Budget review", "Hiring plan for Q3"]


def test_extract_docx_includes_table_cells() -> None:
    data = _docx_bytes("Action items", table=[["Owner", "Task"], ["Dana", "Ship release"]])

    text = extract_text(data, ".DOCX")

    assert "Action items" in text
    assert "Dana" in text
    assert "Ship release" in text


def test_extract_docx_keeps_tables_in_document_order() -> None:
    document = Document()
    document.add_paragraph("before")
    table = document.add_table(rows=1, cols=2)
    table.cell(0, 0).text = "cell"
    table.cell(0, 1).text = "other"
    document.add_paragraph("after")
    buffer = BytesIO()
    document.save(buffer)

    text = extract_text(buffer.getvalue(), "docx")

    assert text.split("\n") == ["before", "cell", "other", "after"]


def test_extract_docx_reads_merged_cell_once() -> None:
    document = Document()
    table = document.add_table(rows=2, cols=3)
    merged = table.cell(0, 0).merge(table.cell(0, 2))
    merged.text = "merged"
    table.cell(1, 0).text = "a"
    table.cell(1, 1).text = "b"
    table.cell(1, 2).text = "c"
    buffer = BytesIO()
    document.save(buffer)

    text = extract_text(buffer.getvalue(), "docx")

    assert text.split("\n") == ["merged", "a", "b", "c"]


def test_extract_plain_text_formats() -> None:
    assert extract_text("minutes of the meeting".encode("utf-8"), "txt") == "minutes of the meeting"
    assert extract_text(b"# Notes\n- item", "md") == "# Notes\n- item"


def test_extract_unknown_format_raises_unsupported_format() -> None:
    with pytest.raises(UnsupportedFormat, match="pdf") as exc_info:
        extract_text(b"%PDF-1.7", "pdf")

    assert isinstance(exc_info.value, ValueError)
    assert "docx" in exc_info.value.message


def test_extract_empty_docx_raises_empty_content() -> None:
    with pytest.raises(EmptyContent, match="no readable text"):
        extract_text(_docx_bytes("   ", ""), "docx")


def test_extract_whitespace_text_raises_empty_content() -> None:
    with pytest.raises(EmptyContent):
        extract_text(b" \n\t ", "txt")


def test_extract_corrupt_docx_raises_invalid_input() -> None:
    with pytest.raises(InvalidInput, match="Could not read DOCX"):
        extract_text(b"definitely not a zip archive", "docx")


def test_extract_invalid_utf8_text_raises_invalid_input() -> None:
    with pytest.raises(InvalidInput, match="UTF-8"):
        extract_text(b"\xff\xfe\xfa", "txt")


def test_format_helpers_normalize_tags() -> None:
    assert normalize_format(" .Docx ") == "docx"
    assert normalize_format(None) == ""
    assert format_from_filename("Board Meeting.DOCX") == "docx"
    assert format_from_filename("notes") == ""
    assert format_from_filename(None) == ""


def test_register_extractor_adds_format_without_touching_pipeline(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(extractor, "_EXTRACTORS", dict(extractor._EXTRACTORS))

    register_extractor(".CSV", lambda data: data.decode("utf-8").replace(",", " "))

    assert "csv" in supported_formats()
    assert extract_text(b"owner,task", "csv") == "owner task"
