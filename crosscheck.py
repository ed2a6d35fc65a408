import io
import logging
import math
import re
import warnings
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

import pandas as pd

logger = logging.getLogger(__name__)

LINE_CONTENT = "Line Content"
NO_HEADERS_FOUND = "No Headers Found"
STRUCTURED_EXTENSIONS = (".xlsx", ".xls", ".csv")

Record = Union[Dict[str, Any], str]

_LINE_BREAK = re.compile(r"\r?\n")


class TableKind(str, Enum):
    STRUCTURED = "structured"
    PLAIN_TEXT = "plain_text"


class EmptyInput(str, Enum):
    """Which side made a cross-check short-circuit"""
    FILE_A = "file_a"
    FILE_B = "file_b"


class CrossCheckError(Exception):
    """Base class for failures surfaced by the cross-check engine"""


class UnreadableFile(CrossCheckError):
    def __init__(self, filename: str, reason: str):
        self.filename = filename
        super().__init__(f"Could not read '{filename}': {reason}")


class UnknownComparisonKey(CrossCheckError):
    def __init__(self, key: Optional[str]):
        self.key = key
        if key is None:
            message = "File A has no column headers to compare on."
        else:
            message = f"Selected column '{key}' not found in File A headers. Please select a valid column."
        super().__init__(message)


@dataclass
class Table:
    """Uniform in-memory view of one uploaded file"""
    kind: TableKind
    columns: List[str] = field(default_factory=list)
    rows: List[Record] = field(default_factory=list)
    default_key: Optional[str] = None

    @property
    def is_structured(self) -> bool:
        return self.kind is TableKind.STRUCTURED

    def __len__(self) -> int:
        return len(self.rows)


@dataclass
class PartitionResult:
    """File A's records split by presence in File B"""
    matched: List[Record]
    missing: List[Record]
    effective_key: Optional[str]
    total_a_rows: int
    message: str
    empty_input: Optional[EmptyInput] = None

    @property
    def matched_count(self) -> int:
        return len(self.matched)

    @property
    def missing_count(self) -> int:
        return len(self.missing)


def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        # containers are never "missing"
        return False


def format_date(value: Any) -> str:
    """Format a date-like cell as YYYY-MM-DD, or '' when it is not a valid date"""
    if _is_missing(value):
        return ""
    try:
        return value.strftime("%Y-%m-%d")
    except (AttributeError, ValueError):
        return ""


def key_text(value: Any) -> Optional[str]:
    """
    Canonical text of a cell for comparison purposes.
    Returns None for absent, null and empty values, which never match.
    """
    if _is_missing(value):
        return None
    if isinstance(value, str):
        return value if value != "" else None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (datetime, date)):
        return format_date(value) or None
    if isinstance(value, float) and math.isfinite(value) and value.is_integer():
        return str(int(value))
    return str(value)


def _decode(raw: bytes) -> str:
    try:
        return raw.decode("utf-8-sig")
    except UnicodeDecodeError:
        logger.debug("UTF-8 decoding failed, using latin-1")
        return raw.decode("latin-1")


def _read_csv_grid(raw: bytes) -> pd.DataFrame:
    text = _decode(raw)
    with warnings.catch_warnings():
        # rows wider than the header row lose their trailing cells
        warnings.simplefilter("ignore", pd.errors.ParserWarning)
        try:
            return pd.read_csv(
                io.StringIO(text),
                header=None,
                dtype=str,
                keep_default_na=False,
                engine="python",
                on_bad_lines=lambda fields: fields,
            )
        except pd.errors.EmptyDataError:
            return pd.DataFrame()


def _read_excel_grid(raw: bytes) -> pd.DataFrame:
    return pd.read_excel(io.BytesIO(raw), sheet_name=0, header=None, dtype=object)


def _read_grid(raw: bytes, filename: str, ext: str) -> List[List[Any]]:
    """Parse a structured file into rows of raw cells"""
    try:
        if ext == ".csv":
            grid = _read_csv_grid(raw)
        else:
            grid = _read_excel_grid(raw)
    except Exception as e:
        raise UnreadableFile(filename, str(e) or type(e).__name__) from e

    return grid.astype(object).values.tolist()


def _header_text(cell: Any) -> str:
    return (key_text(cell) or "").strip()


def _normalize_cell(cell: Any) -> Any:
    if cell is pd.NaT or isinstance(cell, (datetime, date)):
        return format_date(cell)
    return cell


def _table_from_grid(grid: List[List[Any]]) -> Table:
    # The header is the first row with any content
    start = 0
    while start < len(grid) and all(key_text(cell) is None for cell in grid[start]):
        start += 1
    grid = grid[start:]

    if not grid:
        return Table(kind=TableKind.STRUCTURED, columns=[], rows=[], default_key=None)

    # Headers keep their original grid position
    positions = [(index, _header_text(cell)) for index, cell in enumerate(grid[0])]
    positions = [(index, header) for index, header in positions if header != ""]

    columns = list(dict.fromkeys(header for _, header in positions))

    rows = []
    for raw_row in grid[1:]:
        record = {}
        for index, header in positions:
            cell = raw_row[index] if index < len(raw_row) else None
            if cell is not pd.NaT and _is_missing(cell):
                continue
            # Later duplicate headers overwrite earlier ones
            record[header] = _normalize_cell(cell)
        rows.append(record)

    return Table(
        kind=TableKind.STRUCTURED,
        columns=columns,
        rows=rows,
        default_key=columns[0] if columns else None,
    )


def _table_from_text(raw: bytes) -> Table:
    lines = [line for line in _LINE_BREAK.split(_decode(raw)) if line.strip() != ""]
    return Table(kind=TableKind.PLAIN_TEXT, columns=[], rows=lines, default_key=LINE_CONTENT)


def ingest(raw: bytes, filename: str) -> Table:
    """Read an uploaded file into a Table; the extension decides the format"""
    ext = Path(filename).suffix.lower()

    if ext in STRUCTURED_EXTENSIONS:
        table = _table_from_grid(_read_grid(raw, filename, ext))
    else:
        table = _table_from_text(raw)

    logger.info("Ingested %s as %s: %d columns, %d rows", filename, table.kind.value, len(table.columns), len(table))
    return table


def candidate_keys(table_a: Table, table_b: Table) -> List[str]:
    """Comparison keys a caller may choose from for this pair of files"""
    if not (table_a.is_structured and table_b.is_structured):
        return [LINE_CONTENT]

    headers = [h for h in dict.fromkeys(table_a.columns + table_b.columns) if h and h.strip() != ""]
    return headers or [NO_HEADERS_FOUND]


def resolve_key(table_a: Table, table_b: Table, requested_key: Optional[str] = None) -> Optional[str]:
    """Pick the column both files are compared on"""
    if not (table_a.is_structured and table_b.is_structured):
        return LINE_CONTENT

    key = requested_key if requested_key and requested_key.strip() else table_a.default_key
    if key is None and not table_a.columns and not table_a.rows:
        # Nothing at all in File A; the empty-file short-circuit handles it
        return None
    if key not in table_a.columns:
        raise UnknownComparisonKey(key)
    return key


def _record_value(record: Record, kind: TableKind, key: Optional[str]) -> Any:
    if kind is TableKind.PLAIN_TEXT:
        return record
    return record.get(key) if key is not None else None


def build_lookup(table: Table, key: Optional[str]) -> set:
    """Set of comparable values in a table at the given key"""
    values = (key_text(_record_value(record, table.kind, key)) for record in table.rows)
    return {value for value in values if value is not None}


def reconcile(table_a: Table, table_b: Table, requested_key: Optional[str] = None) -> PartitionResult:
    """Partition File A's records into those found in File B and those missing from it"""
    key = resolve_key(table_a, table_b, requested_key)
    logger.info("Comparison will be based on: '%s'", key)

    if len(table_a) == 0:
        logger.info("File A is empty")
        return PartitionResult(
            matched=[],
            missing=[],
            effective_key=key,
            total_a_rows=0,
            message="File A is empty. Nothing to cross-check.",
            empty_input=EmptyInput.FILE_A,
        )

    if len(table_b) == 0:
        # Every A row is technically missing, but the result stays empty
        logger.info("File B is empty")
        return PartitionResult(
            matched=[],
            missing=[],
            effective_key=key,
            total_a_rows=len(table_a),
            message="File B is empty. No contents to compare against.",
            empty_input=EmptyInput.FILE_B,
        )

    lookup = build_lookup(table_b, key)
    logger.info("Lookup set built with %d unique values from %d File B rows", len(lookup), len(table_b))

    matched, missing = [], []
    for record in table_a.rows:
        value = key_text(_record_value(record, table_a.kind, key))
        if value is not None and value in lookup:
            matched.append(record)
        else:
            missing.append(record)

    logger.info("Comparison complete. Found: %d, Missing: %d", len(matched), len(missing))
    return PartitionResult(
        matched=matched,
        missing=missing,
        effective_key=key,
        total_a_rows=len(table_a),
        message="Cross-check completed successfully! CSV files generated.",
    )


def _output_columns(records: Iterable[Dict[str, Any]], columns: Optional[List[str]]) -> List[str]:
    ordered = dict.fromkeys(columns or [])
    for record in records:
        ordered.update(dict.fromkeys(record))
    return list(ordered)


def serialize(records: List[Record], kind: TableKind, columns: Optional[List[str]] = None) -> bytes:
    """Write records as UTF-8 CSV bytes"""
    if kind is TableKind.PLAIN_TEXT:
        df = pd.DataFrame({LINE_CONTENT: [str(line) for line in records]}, columns=[LINE_CONTENT])
    else:
        header = _output_columns(records, columns)
        cells = [[key_text(record.get(col)) or "" for col in header] for record in records]
        df = pd.DataFrame(cells, columns=header, dtype=object)

    return df.to_csv(index=False, lineterminator="\n").encode("utf-8")
