from __future__ import annotations

from io import BytesIO
from pathlib import PurePath
from typing import Callable, Iterator
from zipfile import BadZipFile

from docx import Document
from docx.opc.exceptions import PackageNotFoundError
from docx.table import Table

from meeting_rag.errors import EmptyContent, InvalidInput, UnsupportedFormat

Extractor = Callable[[bytes], str]


def _block_lines(container) -> Iterator[str]:
    """Yield paragraph text in document order, descending into tables."""
    for block in container.iter_inner_content():
        if isinstance(block, Table):
            yield from _table_lines(block)
        else:
            yield block.text


def _table_lines(table: Table) -> Iterator[str]:
    # a merged cell is returned once per grid position it spans
    seen = set()
    for row in table.rows:
        for cell in row.cells:
            if cell._tc in seen:
                continue
            seen.add(cell._tc)
            yield from _block_lines(cell)


def _extract_docx(data: bytes) -> str:
    try:
        document = Document(BytesIO(data))
    except (BadZipFile, PackageNotFoundError, KeyError, ValueError) as exc:
        raise InvalidInput(f"Could not read DOCX document: {exc}") from exc

    return "\n".join(line for line in _block_lines(document) if line.strip())


def _extract_plain_text(data: bytes) -> str:
    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise InvalidInput(f"Text document is not valid UTF-8: {exc}") from exc


_EXTRACTORS: dict[str, Extractor] = {
    "docx": _extract_docx,
    "txt": _extract_plain_text,
    "md": _extract_plain_text,
}


def normalize_format(fmt: str | None) -> str:
    return (fmt or "").strip().lower().lstrip(".")


def format_from_filename(filename: str | None) -> str:
    if not filename:
        return ""
    return normalize_format(PurePath(filename).suffix)


def supported_formats() -> list[str]:
    return sorted(_EXTRACTORS)


def register_extractor(fmt: str, extractor: Extractor) -> None:
    _EXTRACTORS[normalize_format(fmt)] = extractor


def extract_text(data: bytes, fmt: str) -> str:
    normalized = normalize_format(fmt)
    extractor = _EXTRACTORS.get(normalized)
    if extractor is None:
        raise UnsupportedFormat(normalized, supported=supported_formats())

    text = extractor(data)
    if not text.strip():
        raise EmptyContent()
    return text
