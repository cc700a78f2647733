"""CSV parsing, preview and export (no DB)."""

import csv
import io
from datetime import datetime, timedelta
from types import SimpleNamespace

import openpyxl
import pytest

from app.core.exceptions import RowLimitExceededError, ValidationError
from app.services import csv_pipeline
from app.services.csv_pipeline import ParseOptions, detect_layout, parse, parse_tags, preview


def _options(**kw):
    base = {"max_rows": 100, "max_bytes": 1024 * 1024, "sample_rows": 20}
    base.update(kw)
    return ParseOptions(**base)


def test_header_row_and_named_columns():
    data = b"Name,Email,Tags\nAda,ada@example.com,math;early\nBob,BOB@Example.com,\n"
    batch = parse(data, _options())
    assert batch.has_header
    assert batch.address_column == 1
    assert batch.addresses == ["ada@example.com", "bob@example.com"]
    assert batch.rows[0].name == "Ada"
    assert batch.rows[0].tags == ["math", "early"]
    assert batch.raw_rows == 2
    assert batch.valid_rows == 2


def test_headerless_file_uses_majority_column():
    data = b"x@example.com,X\ny@example.com,Y\n"
    batch = parse(data, _options())
    assert not batch.has_header
    assert batch.address_column == 0
    assert [r.name for r in batch.rows] == ["X", "Y"]


def test_malformed_address_in_first_row_is_data():
    batch = parse(b"foo@@bar\nada@example.com\nbob@example.com\n", _options())
    assert not batch.has_header
    assert batch.headers == []
    assert batch.raw_rows == 3
    assert batch.invalid_rows == 1
    assert [(e.row, e.value, e.reason) for e in batch.errors] == [(1, "foo@@bar", "format")]
    assert batch.addresses == ["ada@example.com", "bob@example.com"]


def test_mx_lookup_once_per_domain(monkeypatch):
    calls = []

    def checker(domain):
        calls.append(domain)
        return True

    monkeypatch.setattr(csv_pipeline, "default_mx_checker", lambda: checker)
    rows = "\n".join(f"user{i}@example.com" for i in range(50))
    batch = parse(("email\n" + rows).encode(), _options())
    assert batch.valid_rows == 50
    assert calls == ["example.com"]


def test_mx_skipped_without_validation(monkeypatch):
    monkeypatch.setattr(csv_pipeline, "default_mx_checker", lambda: pytest.fail("MX checked"))
    batch = parse(b"email\nada@example.com\n", _options(validate_emails=False))
    assert batch.addresses == ["ada@example.com"]


def test_invalid_rows_are_reported_with_row_numbers():
    data = b"email\ngood.user@example.com\nfoo@@bar\nuser@mailinator.com\n"
    batch = parse(data, _options())
    assert batch.valid_rows == 1
    assert batch.invalid_rows == 2
    assert [(e.row, e.reason) for e in batch.errors] == [(3, "format"), (4, "disposable")]


def test_duplicates_within_file_are_removed():
    data = b"email\na@example.com\nA@example.com\nb@example.com\n"
    batch = parse(data, _options())
    assert batch.addresses == ["a@example.com", "b@example.com"]
    assert batch.duplicate_rows == 1


def test_duplicates_kept_when_disabled():
    data = b"email\na@example.com\na@example.com\n"
    batch = parse(data, _options(remove_duplicates=False))
    assert batch.addresses == ["a@example.com", "a@example.com"]


def test_bom_and_blank_lines():
    data = b"\xef\xbb\xbfemail\n\nada@example.com\n\n"
    batch = parse(data, _options())
    assert batch.addresses == ["ada@example.com"]


def test_row_limit():
    rows = "\n".join(f"user{i}@example.com" for i in range(6))
    with pytest.raises(RowLimitExceededError):
        parse(("email\n" + rows).encode(), _options(max_rows=5))


def test_file_too_large():
    data = b"email\n" + b"a@example.com\n" * 100
    with pytest.raises(ValidationError) as exc:
        parse(data, _options(max_bytes=64))
    assert exc.value.code == "FILE_TOO_LARGE"


def test_not_utf8():
    with pytest.raises(ValidationError) as exc:
        parse(b"email\n\xff\xfe\xfa@example.com\n", _options())
    assert exc.value.code == "INVALID_ENCODING"


def test_empty_file():
    with pytest.raises(ValidationError) as exc:
        parse(b"", _options())
    assert exc.value.code == "EMPTY_FILE"


def test_no_email_column():
    with pytest.raises(ValidationError) as exc:
        parse(b"name,city\nAda,London\nBob,Paris\n", _options())
    assert exc.value.code == "NO_EMAIL_COLUMN"


def test_header_fallback_when_no_majority():
    layout = detect_layout([["email", "name"], ["nope", "A"], ["x@example.com", "B"], ["", "C"]])
    assert layout.address_column == 0
    assert layout.name_column == 1


def test_chunked_source():
    chunks = [b"email\nada@exa", b"mple.com\nbob@example.com\n"]
    batch = parse(iter(chunks), _options())
    assert batch.addresses == ["ada@example.com", "bob@example.com"]


def test_parse_tags_limits():
    assert parse_tags("A, b ,,c") == ["a", "b", "c"]
    assert len(parse_tags(";".join(f"t{i}" for i in range(20)))) == 10


def test_xlsx():
    wb = openpyxl.Workbook()
    ws = wb.active
    ws.append(["email", "name"])
    ws.append(["ada@example.com", "Ada"])
    ws.append(["bad-address", "Nope"])
    buf = io.BytesIO()
    wb.save(buf)
    batch = csv_pipeline.parse_xlsx(buf.getvalue(), _options())
    assert batch.addresses == ["ada@example.com"]
    assert batch.invalid_rows == 1


def test_malformed_xlsx():
    with pytest.raises(ValidationError) as exc:
        csv_pipeline.parse_xlsx(b"not a zip", _options())
    assert exc.value.code == "MALFORMED_XLSX"


def test_preview_truncates_without_error():
    rows = "\n".join(f"user{i}@example.com" for i in range(30))
    result = preview(("email\n" + rows).encode(), max_rows=5)
    assert result.truncated
    assert len(result.sample_rows) == 5
    assert result.valid_count == 5
    assert result.headers == ["email"]


def _entry(email, added_at, **kw):
    defaults = {
        "name": None, "tags": [], "status": "pending", "source": "csv",
        "csv_filename": "in.csv", "merged_from": None, "quality_score": 0.94,
    }
    defaults.update(kw)
    return SimpleNamespace(email=email, added_at=added_at, **defaults)


def test_generate_orders_by_added_at_then_email():
    t0 = datetime(2024, 1, 1)
    entries = [
        _entry("b@example.com", t0 + timedelta(seconds=1)),
        _entry("c@example.com", t0),
        _entry("a@example.com", t0 + timedelta(seconds=1), name="A", tags=["x", "y"]),
    ]
    out = csv_pipeline.generate(entries).decode()
    rows = list(csv.reader(io.StringIO(out)))
    assert rows[0] == ["email", "name", "tags"]
    assert [r[0] for r in rows[1:]] == ["c@example.com", "a@example.com", "b@example.com"]
    assert rows[2] == ["a@example.com", "A", "x;y"]


def test_generate_with_metadata_and_stats():
    t0 = datetime(2024, 1, 1)
    lineage = {"a@example.com": SimpleNamespace(generation=2, parent="p@example.com")}
    out = csv_pipeline.generate([_entry("a@example.com", t0)], include_metadata=True, include_stats=True, lineage=lineage)
    rows = list(csv.reader(io.StringIO(out.decode())))
    assert rows[0] == csv_pipeline.export_columns(True, True)
    assert rows[1][-3:] == ["0.9400", "2", "p@example.com"]
    assert rows[1][3:5] == ["pending", "csv"]


def test_exported_file_parses_back():
    t0 = datetime(2024, 1, 1)
    entries = [_entry(f"user{i}@example.com", t0 + timedelta(minutes=i), name=f"U{i}") for i in range(3)]
    batch = parse(csv_pipeline.generate(entries), _options())
    assert batch.addresses == [e.email for e in entries]
    assert [r.name for r in batch.rows] == ["U0", "U1", "U2"]


def test_generate_chunks_split():
    t0 = datetime(2024, 1, 1)
    entries = [_entry(f"user{i}@example.com", t0) for i in range(5)]
    chunks = list(csv_pipeline.generate_chunks(entries, chunk_rows=2))
    assert len(chunks) == 3
    assert b"".join(chunks).count(b"\n") == 6


def test_export_filename():
    assert csv_pipeline.export_filename("my-list", datetime(2024, 3, 5, 7, 8, 9)) == "my-list-20240305070809.csv"
