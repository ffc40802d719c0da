# schema_engine/services/csv_ingest.py
from __future__ import annotations

import csv
import io
from typing import Dict, List, Optional

from schema_engine.errors import EmptyBatchError
from schema_engine.services.normalize import RawRow

COLUMNS = ["domain", "path", "page_type", "category"]

# Paste order differs from the CSV default: the path comes first
PASTE_COLUMNS = ["path", "domain", "page_type", "category"]

# Map acceptable aliases (left) to canonical column names (right)
HEADER_ALIASES = {
    "url": "path",
    "url_or_path": "path",
    "page type": "page_type",
    "pagetype": "page_type",
    "page-type": "page_type",
    "type": "page_type",
}

FORMAT_CSV = "csv"
FORMAT_PASTE = "paste"


def _canonical(h: Optional[str]) -> str:
    key = (h or "").strip().lower()
    return HEADER_ALIASES.get(key, key)


def _is_header(cells: List[str]) -> bool:
    """A header row names at least one known column and nothing else."""
    named = [_canonical(c) for c in cells if (c or "").strip()]
    return bool(named) and all(n in COLUMNS for n in named)


def _dialect(text: str):
    try:
        return csv.Sniffer().sniff(text[:4096], delimiters=",;\t|")
    except csv.Error:
        return csv.excel


def _row(row_number: int, names: List[Optional[str]], cells: List[str]) -> RawRow:
    values: Dict[str, str] = {}
    for idx, name in enumerate(names):
        if name and idx < len(cells):
            values[name] = (cells[idx] or "").strip()
    return RawRow(row_number=row_number, **values)


def parse_csv(text: str) -> List[RawRow]:
    """
    Parse delimited text into RawRows.

    The first line is treated as a header when its cells are column names
    (domain, path, page_type, category; aliases allowed, any order, any
    subset). Without a header the columns are domain, path, page_type,
    category. Blank lines are dropped; row numbers count the remaining data
    lines from 1.
    """
    if not text or not text.strip():
        raise EmptyBatchError("The uploaded CSV appears to be empty.")

    text = text.lstrip("\ufeff")
    reader = csv.reader(io.StringIO(text), _dialect(text))
    lines = [r for r in reader if any((c or "").strip() for c in r)]
    if not lines:
        raise EmptyBatchError("The uploaded CSV appears to be empty.")

    names: List[Optional[str]] = list(COLUMNS)
    if _is_header(lines[0]):
        names = [(_canonical(c) if _canonical(c) in COLUMNS else None) for c in lines[0]]
        lines = lines[1:]

    return [_row(i, names, cells) for i, cells in enumerate(lines, start=1)]


def parse_paste(text: str) -> List[RawRow]:
    """Tab-delimited rows copied from a spreadsheet: path, domain, page_type, category (1-4 columns)."""
    if not text or not text.strip():
        raise EmptyBatchError("Nothing to paste.")
    lines = [ln for ln in text.replace("\r", "").split("\n") if ln.strip()]
    rows: List[RawRow] = []
    for i, line in enumerate(lines, start=1):
        cells = line.split("\t")[: len(PASTE_COLUMNS)]
        rows.append(_row(i, list(PASTE_COLUMNS), cells))
    return rows


def read_rows(text: str, fmt: str = FORMAT_CSV) -> List[RawRow]:
    if fmt == FORMAT_PASTE:
        return parse_paste(text)
    return parse_csv(text)
