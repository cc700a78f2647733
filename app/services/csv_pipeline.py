"""
CSV ingestion and export for email repositories.

Column detection: the first ``sample_rows`` non-empty records are buffered.
The first record is a header when none of its cells contains ``@``; a row
holding even a malformed address is data and gets validated like any other.
Among the sampled data records, the lowest column index whose cells look
like an address in a strict majority of rows is the address column. When no
column reaches a majority, a header cell named ``email`` (or a known alias)
is used. Nothing else is guessed: same input, same column.
"""

import csv
import io
import itertools
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from functools import lru_cache
from typing import Any, BinaryIO, Iterable, Iterator, Mapping

import openpyxl

from app.core.config import get_settings
from app.core.exceptions import RowLimitExceededError, ValidationError
from app.core.logging import get_logger
from app.services.dedupe import dedupe
from app.services.validation import (
    REASON_EMPTY,
    default_mx_checker,
    extract_domain,
    is_plausible_email,
    validate,
)

log = get_logger(__name__)

EMAIL_HEADERS = ("email", "e-mail", "email_address", "email address", "mail")
NAME_HEADERS = ("name", "full name", "full_name", "contact name")
TAGS_HEADERS = ("tags", "tag", "labels")

BASE_COLUMNS = ["email", "name", "tags"]
METADATA_COLUMNS = ["status", "source", "added_at", "csv_filename", "merged_from"]
STATS_COLUMNS = ["quality_score", "generation", "parent"]

MAX_NAME_LENGTH = 100
MAX_TAGS = 10
MAX_TAG_LENGTH = 50

ByteSource = bytes | BinaryIO | Iterable[bytes]
Record = tuple[int, list[str]]


@dataclass
class ParseOptions:
    max_rows: int = 10_000
    validate_emails: bool = True
    remove_duplicates: bool = True
    max_bytes: int | None = None
    sample_rows: int = 20

    @classmethod
    def from_settings(cls, **overrides: Any) -> "ParseOptions":
        s = get_settings()
        values = {
            "max_rows": s.csv_max_rows,
            "max_bytes": s.csv_max_bytes,
            "sample_rows": s.csv_sample_rows,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


@dataclass
class ImportedRow:
    row: int
    email: str
    name: str | None = None
    tags: list[str] = field(default_factory=list)
    quality_score: float = 0.0


@dataclass
class RowError:
    row: int
    value: str
    reason: str


@dataclass
class CsvLayout:
    address_column: int
    has_header: bool
    headers: list[str] = field(default_factory=list)
    name_column: int | None = None
    tags_column: int | None = None


@dataclass
class ImportBatch:
    raw_rows: int = 0
    valid_rows: int = 0
    invalid_rows: int = 0
    duplicate_rows: int = 0
    rows: list[ImportedRow] = field(default_factory=list)
    errors: list[RowError] = field(default_factory=list)
    address_column: int = 0
    has_header: bool = False
    headers: list[str] = field(default_factory=list)
    truncated: bool = False

    @property
    def addresses(self) -> list[str]:
        return [r.email for r in self.rows]

    def top_domains(self, limit: int = 10) -> list[tuple[str, int]]:
        return Counter(extract_domain(r.email) for r in self.rows).most_common(limit)

    def summary(self) -> dict[str, Any]:
        return {
            "raw_rows": self.raw_rows,
            "valid_rows": self.valid_rows,
            "invalid_rows": self.invalid_rows,
            "duplicates_removed": self.duplicate_rows,
            "address_column": self.address_column,
            "has_header": self.has_header,
        }


@dataclass
class PreviewResult:
    headers: list[str]
    address_column: int
    has_header: bool
    sample_rows: list[dict[str, Any]]
    valid_count: int
    invalid_count: int
    estimated_unique: int
    truncated: bool


class _LimitedReader(io.RawIOBase):
    """Raw byte reader over a file object or chunk iterator with a hard size cap."""

    def __init__(self, source: ByteSource, max_bytes: int | None = None):
        if isinstance(source, (bytes, bytearray)):
            source = io.BytesIO(source)
        self._read = getattr(source, "read", None)
        self._chunks = None if self._read else iter(source)
        self._pending = b""
        self.max_bytes = max_bytes
        self.consumed = 0

    def readable(self) -> bool:
        return True

    def _next(self, size: int) -> bytes:
        if self._read is not None:
            data = self._read(size) or b""
        else:
            while not self._pending:
                try:
                    self._pending = next(self._chunks)
                except StopIteration:
                    return b""
            data, self._pending = self._pending[:size], self._pending[size:]
        if isinstance(data, str):
            data = data.encode("utf-8")
        return data

    def readinto(self, buffer) -> int:
        data = self._next(len(buffer))
        n = len(data)
        self.consumed += n
        if self.max_bytes is not None and self.consumed > self.max_bytes:
            raise ValidationError(
                f"File exceeds maximum size of {self.max_bytes} bytes",
                code="FILE_TOO_LARGE",
                details={"max_bytes": self.max_bytes},
            )
        buffer[:n] = data
        return n


def iter_csv_records(source: ByteSource, max_bytes: int | None = None) -> Iterator[Record]:
    """Yield (row number, cells) lazily; blank records are skipped but keep their number."""
    raw = _LimitedReader(source, max_bytes)
    text = io.TextIOWrapper(io.BufferedReader(raw), encoding="utf-8-sig", newline="")
    try:
        for number, cells in enumerate(csv.reader(text), start=1):
            if any(c.strip() for c in cells):
                yield number, cells
    except UnicodeDecodeError as e:
        raise ValidationError("File is not UTF-8 encoded CSV", code="INVALID_ENCODING") from e
    except csv.Error as e:
        raise ValidationError(f"Malformed CSV: {e}", code="MALFORMED_CSV") from e


def iter_xlsx_records(content: bytes) -> Iterator[Record]:
    """Yield (row number, cells) from the active sheet of an XLSX workbook."""
    try:
        wb = openpyxl.load_workbook(io.BytesIO(content), read_only=True, data_only=True)
    except Exception as e:  # openpyxl raises several unrelated types for bad archives
        raise ValidationError("File is not a readable XLSX workbook", code="MALFORMED_XLSX") from e
    ws = wb.active
    if ws is None:
        return
    try:
        for number, row in enumerate(ws.iter_rows(values_only=True), start=1):
            cells = ["" if v is None else str(v) for v in row]
            if any(c.strip() for c in cells):
                yield number, cells
    finally:
        wb.close()


def _header_index(lowered: list[str], names: Iterable[str]) -> int | None:
    for name in names:
        if name in lowered:
            return lowered.index(name)
    return None


def detect_layout(sample: list[list[str]]) -> CsvLayout:
    if not sample:
        raise ValidationError("CSV file is empty", code="EMPTY_FILE")
    first = sample[0]
    has_header = not any("@" in c for c in first)
    headers = [c.strip() for c in first] if has_header else []
    data = sample[1:] if has_header else sample
    width = max((len(r) for r in data), default=0)

    column = None
    for idx in range(width):
        hits = sum(1 for r in data if idx < len(r) and is_plausible_email(r[idx]))
        if hits * 2 > len(data):
            column = idx
            break
    lowered = [h.lower() for h in headers]
    if column is None and has_header:
        column = _header_index(lowered, EMAIL_HEADERS)
    if column is None:
        raise ValidationError("Could not find an email column", code="NO_EMAIL_COLUMN")

    layout = CsvLayout(address_column=column, has_header=has_header, headers=headers)
    if has_header:
        layout.name_column = _header_index(lowered, NAME_HEADERS)
        layout.tags_column = _header_index(lowered, TAGS_HEADERS)
    elif column == 0:
        # headerless files follow the email,name,tags order
        layout.name_column = 1 if width > 1 else None
        layout.tags_column = 2 if width > 2 else None
    return layout


def sanitize_name(name: str | None) -> str | None:
    if not name:
        return None
    cleaned = name.replace("<", "").replace(">", "").strip()[:MAX_NAME_LENGTH]
    return cleaned or None


def parse_tags(tags: str | None) -> list[str]:
    if not tags:
        return []
    delimiter = ";" if ";" in tags else ","
    out = [t.strip().lower() for t in tags.split(delimiter)]
    return [t for t in out if 0 < len(t) < MAX_TAG_LENGTH][:MAX_TAGS]


def _cell(cells: list[str], idx: int | None) -> str:
    if idx is None or idx >= len(cells):
        return ""
    return cells[idx]


def _parse_records(records: Iterator[Record], options: ParseOptions, truncate: bool = False) -> ImportBatch:
    records = iter(records)
    sample = list(itertools.islice(records, options.sample_rows + 1))
    layout = detect_layout([cells for _, cells in sample])
    batch = ImportBatch(
        address_column=layout.address_column,
        has_header=layout.has_header,
        headers=layout.headers,
    )
    data = itertools.chain(sample[1:] if layout.has_header else sample, records)
    mx_checker = default_mx_checker() if options.validate_emails else None
    if mx_checker is not None:
        # one lookup per domain per upload
        mx_checker = lru_cache(maxsize=None)(mx_checker)

    for number, cells in data:
        if batch.raw_rows >= options.max_rows:
            if truncate:
                batch.truncated = True
                break
            raise RowLimitExceededError(options.max_rows)
        batch.raw_rows += 1
        value = _cell(cells, layout.address_column)
        result = validate(value, mx_checker)
        if options.validate_emails:
            accepted = result.is_valid
        else:
            accepted = bool(result.normalized)
        if not accepted:
            batch.invalid_rows += 1
            batch.errors.append(RowError(row=number, value=value.strip(), reason=result.reason or REASON_EMPTY))
            continue
        batch.valid_rows += 1
        batch.rows.append(ImportedRow(
            row=number,
            email=result.normalized,
            name=sanitize_name(_cell(cells, layout.name_column)),
            tags=parse_tags(_cell(cells, layout.tags_column)),
            quality_score=result.quality_score,
        ))

    if options.remove_duplicates:
        deduped = dedupe(batch.addresses)
        first: dict[str, ImportedRow] = {}
        for r in batch.rows:
            first.setdefault(r.email, r)
        batch.rows = [first[e] for e in deduped.unique]
        batch.duplicate_rows = len(deduped.duplicates_within_batch)
    return batch


def parse(stream: ByteSource, options: ParseOptions | None = None) -> ImportBatch:
    """Parse an uploaded CSV into an ImportBatch. Row-level problems are collected, structural ones raise."""
    options = options or ParseOptions.from_settings()
    batch = _parse_records(iter_csv_records(stream, options.max_bytes), options)
    log.info("csv_parsed", **batch.summary())
    return batch


def parse_xlsx(content: bytes, options: ParseOptions | None = None) -> ImportBatch:
    options = options or ParseOptions.from_settings()
    if options.max_bytes is not None and len(content) > options.max_bytes:
        raise ValidationError(
            f"File exceeds maximum size of {options.max_bytes} bytes",
            code="FILE_TOO_LARGE",
            details={"max_bytes": options.max_bytes},
        )
    batch = _parse_records(iter_xlsx_records(content), options)
    log.info("xlsx_parsed", **batch.summary())
    return batch


def preview(stream: ByteSource, max_rows: int | None = None) -> PreviewResult:
    """Run the parse logic over the first rows only; nothing is persisted."""
    s = get_settings()
    max_rows = max_rows or s.csv_preview_rows
    options = ParseOptions(
        max_rows=max_rows,
        validate_emails=True,
        remove_duplicates=False,
        max_bytes=s.csv_max_bytes,
        sample_rows=s.csv_sample_rows,
    )
    batch = _parse_records(iter_csv_records(stream, options.max_bytes), options, truncate=True)
    sample_rows = [
        {"row": r.row, "email": r.email, "name": r.name, "tags": r.tags, "valid": True, "reason": None}
        for r in batch.rows
    ] + [
        {"row": e.row, "email": e.value, "name": None, "tags": [], "valid": False, "reason": e.reason}
        for e in batch.errors
    ]
    sample_rows.sort(key=lambda r: r["row"])
    return PreviewResult(
        headers=batch.headers,
        address_column=batch.address_column,
        has_header=batch.has_header,
        sample_rows=sample_rows,
        valid_count=batch.valid_rows,
        invalid_count=batch.invalid_rows,
        estimated_unique=len(set(batch.addresses)),
        truncated=batch.truncated,
    )


def export_columns(include_metadata: bool = False, include_stats: bool = False) -> list[str]:
    columns = list(BASE_COLUMNS)
    if include_metadata:
        columns += METADATA_COLUMNS
    if include_stats:
        columns += STATS_COLUMNS
    return columns


def _export_row(entry: Any, include_metadata: bool, include_stats: bool, lineage: Mapping[str, Any]) -> list[str]:
    row = [entry.email, entry.name or "", ";".join(entry.tags or [])]
    if include_metadata:
        added_at = entry.added_at.isoformat() if entry.added_at else ""
        row += [entry.status, entry.source, added_at, entry.csv_filename or "", entry.merged_from or ""]
    if include_stats:
        node = lineage.get(entry.email)
        generation = "" if node is None else str(node.generation)
        parent = "" if node is None else (node.parent or "")
        row += [f"{entry.quality_score:.4f}", generation, parent]
    return row


def generate_chunks(
    entries: Iterable[Any],
    include_metadata: bool = False,
    include_stats: bool = False,
    lineage: Mapping[str, Any] | None = None,
    chunk_rows: int = 500,
) -> Iterator[bytes]:
    """
    Yield UTF-8 CSV chunks, one row per membership entry, ordered by
    (added_at, email). ``lineage`` maps an address to an object with
    ``generation`` and ``parent`` (used by the stats columns).
    """
    lineage = lineage or {}
    ordered = sorted(entries, key=lambda e: (e.added_at or datetime.min, e.email))
    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow(export_columns(include_metadata, include_stats))
    for i, entry in enumerate(ordered, start=1):
        writer.writerow(_export_row(entry, include_metadata, include_stats, lineage))
        if i % chunk_rows == 0:
            yield buf.getvalue().encode("utf-8")
            buf.seek(0)
            buf.truncate()
    if buf.tell():
        yield buf.getvalue().encode("utf-8")


def generate(
    entries: Iterable[Any],
    include_metadata: bool = False,
    include_stats: bool = False,
    lineage: Mapping[str, Any] | None = None,
) -> bytes:
    return b"".join(generate_chunks(entries, include_metadata, include_stats, lineage))


def export_filename(slug: str, now: datetime | None = None) -> str:
    now = now or datetime.utcnow()
    return f"{slug}-{now:%Y%m%d%H%M%S}.csv"
