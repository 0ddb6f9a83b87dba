from __future__ import annotations

from pathlib import Path

import pytest

from codex_sessions.ingest.line_reader import LineRecord, SegmentedLineReader


def _write(tmp_path: Path, data: bytes) -> Path:
    path = tmp_path / "log.jsonl"
    path.write_bytes(data)
    return path


def test_yields_lines_with_end_offsets(tmp_path: Path) -> None:
    path = _write(tmp_path, b"alpha\nbeta\n\ngamma\n")

    with SegmentedLineReader(path, chunk_size=3) as reader:
        records = list(reader)

    assert records == [
        LineRecord("alpha", 6),
        LineRecord("beta", 11),
        LineRecord("", 12),
        LineRecord("gamma", 18),
    ]


def test_partial_trailing_line_is_not_emitted(tmp_path: Path) -> None:
    path = _write(tmp_path, b"done\nhalf-writ")

    with SegmentedLineReader(path) as reader:
        records = list(reader)

    assert [record.text for record in records] == ["done"]
    assert records[-1].end_offset == 5


def test_resumes_from_end_offset(tmp_path: Path) -> None:
    path = _write(tmp_path, b"first\nsecond\nthird\n")
    with SegmentedLineReader(path) as reader:
        first = reader.next_line()
    assert first is not None

    with SegmentedLineReader(path, start_offset=first.end_offset) as reader:
        assert reader.starts_at_line_boundary is True
        assert [record.text for record in reader] == ["second", "third"]


def test_oversized_line_is_reported_once_and_offsets_stay_exact(tmp_path: Path) -> None:
    big = b"x" * 5000
    path = _write(tmp_path, b"short\n" + big + b"\nafter\n")

    with SegmentedLineReader(path, max_line_bytes=1024, chunk_size=256) as reader:
        records = list(reader)

    assert records[0] == LineRecord("short", 6)
    assert records[1].was_truncated is True
    assert records[1].text == ""
    assert records[1].end_offset == 6 + len(big) + 1
    assert records[2] == LineRecord("after", 6 + len(big) + 1 + 6)


def test_oversized_line_found_in_single_chunk(tmp_path: Path) -> None:
    path = _write(tmp_path, b"y" * 300 + b"\nnext\n")

    with SegmentedLineReader(path, max_line_bytes=100, chunk_size=4096) as reader:
        records = list(reader)

    assert records[0].was_truncated is True
    assert records[0].end_offset == 301
    assert records[1] == LineRecord("next", 306)


def test_oversized_line_never_buffers_past_the_limit(tmp_path: Path) -> None:
    path = _write(tmp_path, b"z" * 100_000 + b"\nok\n")

    reader = SegmentedLineReader(path, max_line_bytes=1000, chunk_size=512)
    with reader:
        first = reader.next_line()
        assert len(reader._buffer) <= 1000 + 512
        second = reader.next_line()

    assert first is not None and first.was_truncated
    assert second == LineRecord("ok", 100_004)


def test_invalid_utf8_is_replaced(tmp_path: Path) -> None:
    path = _write(tmp_path, b"caf\xff\n")

    with SegmentedLineReader(path) as reader:
        record = reader.next_line()

    assert record is not None
    assert record.text == "caf�"


def test_mid_line_start_is_detected_and_skipped(tmp_path: Path) -> None:
    path = _write(tmp_path, b"first line\nsecond\n")

    with SegmentedLineReader(path, start_offset=3) as reader:
        assert reader.starts_at_line_boundary is False
        assert reader.skip_to_next_line() is True
        assert [record.text for record in reader] == ["second"]


def test_skip_to_next_line_without_complete_line(tmp_path: Path) -> None:
    path = _write(tmp_path, b"partial without newline")

    with SegmentedLineReader(path, start_offset=4) as reader:
        assert reader.skip_to_next_line() is False


def test_read_limit_caps_bytes_read(tmp_path: Path) -> None:
    path = _write(tmp_path, b"".join(b"line-%04d\n" % index for index in range(1000)))

    with SegmentedLineReader(path, read_limit=100, chunk_size=64) as reader:
        records = list(reader)

    assert reader.bytes_read == 100
    assert len(records) == 10
    assert records[-1].end_offset == 100


def test_missing_file_raises_os_error(tmp_path: Path) -> None:
    with pytest.raises(OSError):
        SegmentedLineReader(tmp_path / "missing.jsonl")
