"""Read bulk listing datasets (CSV or XLSX) by position.

Positions are zero-based indexes of data rows below the header. Blank rows
keep their position but never produce a record, so an offset stored in a
checkpoint always points at the same row of an unchanged file.
"""

import csv
import io
import json
import logging
import zipfile
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

import openpyxl
from openpyxl.utils.exceptions import InvalidFileException

from listing_import.core.config import ConfigError
from listing_import.core.errors import SourceUnavailable
from listing_import.models import SourceRecord

logger = logging.getLogger(__name__)

CSV_SUFFIXES = {".csv", ".txt"}
EXCEL_SUFFIXES = {".xlsx", ".xlsm"}

DEFAULT_COLUMN_MAP: Dict[str, Tuple[str, ...]] = {
    "name": ("name", "business_name", "title"),
    "address": ("address", "full_address", "street"),
    "city": ("city",),
    "state": ("state", "us_state", "state_code"),
    "zip": ("zip", "postal_code", "zip_code", "zipcode"),
    "phone": ("phone", "phone_number"),
    "website": ("website", "site", "url"),
    "latitude": ("latitude", "lat"),
    "longitude": ("longitude", "lng", "lon"),
    "rating": ("rating",),
    "review_count": ("reviews", "review_count", "reviews_count"),
    "services": ("services", "subtypes", "category"),
    "hours": ("hours", "working_hours"),
}


def load_column_map(path: Optional[str]) -> Dict[str, Tuple[str, ...]]:
    """Merge a JSON ``{field: header | [headers]}`` file over the default map."""
    column_map = dict(DEFAULT_COLUMN_MAP)
    if not path:
        return column_map

    try:
        with open(path, "r", encoding="utf-8") as fh:
            overrides = json.load(fh)
    except (OSError, ValueError) as exc:
        raise ConfigError(f"Unable to read column map {path}: {exc}") from exc

    if not isinstance(overrides, dict):
        raise ConfigError(f"Column map {path} must be a JSON object")
    for field_name, headers in overrides.items():
        if field_name not in DEFAULT_COLUMN_MAP:
            raise ConfigError(f"Column map {path} names unknown field {field_name!r}")
        column_map[field_name] = (headers,) if isinstance(headers, str) else tuple(headers)
    return column_map


def resolve_columns(headers: Sequence[Any], column_map: Mapping[str, Sequence[str]]) -> Dict[str, int]:
    index = {}
    for position, header in enumerate(headers):
        key = str(header).strip().lower() if header is not None else ""
        if key and key not in index:
            index[key] = position

    columns = {}
    for field_name, candidates in column_map.items():
        for candidate in candidates:
            found = index.get(candidate.strip().lower())
            if found is not None:
                columns[field_name] = found
                break
    return columns


def _cell_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    text = str(value).strip()
    return text or None


def _is_blank(row: Sequence[Any]) -> bool:
    return all(_cell_text(value) is None for value in row)


def _runs(positions: Sequence[int]) -> Iterator[Tuple[int, int]]:
    """Group sorted positions into inclusive ``(first, last)`` runs of consecutive rows."""
    first = last = None
    for position in positions:
        if last is not None and position == last + 1:
            last = position
            continue
        if first is not None:
            yield first, last
        first = last = position
    if first is not None:
        yield first, last


class SourceHandle:
    """Random-access view over one source file."""

    def __init__(self, path: Path, headers: List[str], columns: Dict[str, int]) -> None:
        self.path = path
        self.headers = headers
        self.columns = columns
        self._count: Optional[int] = None

    def __enter__(self) -> "SourceHandle":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.close()
        return False

    def close(self) -> None:
        pass

    def count(self) -> int:
        if self._count is None:
            self._count = self._count_rows()
        return self._count

    def slice(self, offset: int, limit: int) -> List[SourceRecord]:
        end = min(offset + limit, self.count())
        return self.fetch(range(offset, end))

    def fetch(self, positions: Sequence[int]) -> List[SourceRecord]:
        """Return records at ``positions`` in ascending order, skipping blank rows."""
        wanted = sorted(p for p in set(positions) if 0 <= p < self.count())
        records = []
        for position, row in self._read(wanted):
            if not _is_blank(row):
                records.append(self._build_record(position, row))
        return records

    def iter_field(self, field_name: str) -> Iterator[Tuple[int, Optional[str]]]:
        """Yield ``(position, value)`` for one mapped field across non-blank rows."""
        column = self.columns.get(field_name)
        for position, row in self._scan():
            if position >= self.count():
                break
            if _is_blank(row):
                continue
            value = row[column] if column is not None and column < len(row) else None
            yield position, _cell_text(value)

    def _build_record(self, position: int, row: Sequence[Any]) -> SourceRecord:
        values = {}
        for field_name, column in self.columns.items():
            values[field_name] = _cell_text(row[column]) if column < len(row) else None
        raw = {}
        for i, header in enumerate(self.headers):
            text = _cell_text(row[i]) if header and i < len(row) else None
            if text is not None:
                raw[header] = text
        return SourceRecord(position=position, raw=raw, **values)

    def _read(self, positions: Sequence[int]) -> Iterator[Tuple[int, Sequence[Any]]]:
        raise NotImplementedError

    def _scan(self) -> Iterator[Tuple[int, Sequence[Any]]]:
        raise NotImplementedError

    def _count_rows(self) -> int:
        raise NotImplementedError


class CsvSourceHandle(SourceHandle):
    """CSV source served from an index of record byte offsets.

    The index is built in one pass; a fetch seeks straight to its records, so
    resuming at a late offset never re-parses the rows before it.
    """

    def __init__(self, path: Path, headers: List[str], columns: Dict[str, int]) -> None:
        super().__init__(path, headers, columns)
        self._offsets: Optional[List[int]] = None

    def _count_rows(self) -> int:
        # offsets[i] is where data row i starts; the final entry is the end of the file.
        offsets: List[int] = []
        last = 0
        with open(self.path, "rb") as fh:
            record, start, quotes, header_done = b"", 0, 0, False
            while True:
                line = fh.readline()
                if not line:
                    break
                if not record:
                    start = fh.tell() - len(line)
                record += line
                quotes += line.count(b'"')
                if quotes % 2:
                    continue
                if header_done:
                    offsets.append(start)
                    if not _is_blank(_parse_csv_record(record)):
                        last = len(offsets)
                header_done = True
                record, quotes = b"", 0
            if record and header_done:
                offsets.append(start)
                if not _is_blank(_parse_csv_record(record)):
                    last = len(offsets)
            offsets.append(fh.tell())
        self._offsets = offsets
        logger.debug("Indexed %d rows of %s", len(offsets) - 1, self.path)
        return last

    def _read(self, positions: Sequence[int]) -> Iterator[Tuple[int, Sequence[Any]]]:
        self.count()
        offsets = self._offsets
        with open(self.path, "rb") as fh:
            for first, last in _runs(positions):
                fh.seek(offsets[first])
                chunk = fh.read(offsets[last + 1] - offsets[first]).decode("utf-8")
                yield from zip(range(first, last + 1), csv.reader(io.StringIO(chunk, newline="")))

    def _scan(self) -> Iterator[Tuple[int, Sequence[Any]]]:
        with open(self.path, "r", encoding="utf-8-sig", newline="") as fh:
            reader = csv.reader(fh)
            next(reader, None)
            yield from enumerate(reader)


def _parse_csv_record(data: bytes) -> List[str]:
    return next(csv.reader(io.StringIO(data.decode("utf-8-sig"), newline="")), [])


class ExcelSourceHandle(SourceHandle):
    """XLSX source; the sheet is read once and rows are then served by position."""

    def __init__(self, path: Path, workbook, worksheet, headers: List[str], columns: Dict[str, int]) -> None:
        super().__init__(path, headers, columns)
        self._workbook = workbook
        self._worksheet = worksheet
        self._rows: Optional[List[Sequence[Any]]] = None

    def close(self) -> None:
        self._workbook.close()

    def _count_rows(self) -> int:
        # Row 1 holds the headers; data position 0 is sheet row 2.
        self._rows = list(self._worksheet.iter_rows(min_row=2, values_only=True))
        last = 0
        for position, row in enumerate(self._rows):
            if not _is_blank(row):
                last = position + 1
        return last

    def _read(self, positions: Sequence[int]) -> Iterator[Tuple[int, Sequence[Any]]]:
        self.count()
        for position in positions:
            yield position, self._rows[position]

    def _scan(self) -> Iterator[Tuple[int, Sequence[Any]]]:
        self.count()
        yield from enumerate(self._rows)


def open_source(
    path: str,
    column_map: Optional[Mapping[str, Sequence[str]]] = None,
    sheet_name: Optional[str] = None,
) -> SourceHandle:
    """Open a CSV or XLSX dataset; raise SourceUnavailable when it cannot be read."""
    source = Path(path)
    if not source.is_file():
        raise SourceUnavailable(f"Source file not found: {source}")

    column_map = column_map or DEFAULT_COLUMN_MAP
    suffix = source.suffix.lower()

    if suffix in CSV_SUFFIXES:
        try:
            with open(source, "r", encoding="utf-8-sig", newline="") as fh:
                headers = [h.strip() for h in next(csv.reader(fh), [])]
        except (OSError, UnicodeDecodeError, csv.Error) as exc:
            raise SourceUnavailable(f"Unable to read {source}: {exc}") from exc
        handle: SourceHandle = CsvSourceHandle(source, headers, resolve_columns(headers, column_map))
    elif suffix in EXCEL_SUFFIXES:
        try:
            workbook = openpyxl.load_workbook(source, read_only=True, data_only=True)
        except (OSError, InvalidFileException, zipfile.BadZipFile, KeyError) as exc:
            raise SourceUnavailable(f"Unable to open workbook {source}: {exc}") from exc
        if sheet_name and sheet_name not in workbook.sheetnames:
            workbook.close()
            raise SourceUnavailable(f"Worksheet {sheet_name!r} not found in {source}")
        worksheet = workbook[sheet_name] if sheet_name else workbook.worksheets[0]
        first = next(worksheet.iter_rows(min_row=1, max_row=1, values_only=True), ())
        headers = [str(h).strip() if h is not None else "" for h in first]
        handle = ExcelSourceHandle(source, workbook, worksheet, headers, resolve_columns(headers, column_map))
    else:
        raise SourceUnavailable(f"Unsupported source format {suffix!r} for {source}")

    if "name" not in handle.columns or "state" not in handle.columns:
        handle.close()
        raise SourceUnavailable(
            f"{source} has no usable name/state columns (headers: {', '.join(handle.headers[:20])})"
        )

    logger.info("Opened source %s with %d mapped columns", source, len(handle.columns))
    return handle
