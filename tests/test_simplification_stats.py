"""Tests for records files and their summaries."""
import pytest

from simplification_stats import (
    SimplificationRecord,
    read_records,
    summarize_records,
    write_records,
)


def _records():
    return [
        SimplificationRecord(0.1, 4, 1),
        SimplificationRecord(0.3, 8, 1),
        SimplificationRecord(0.05, 5, 3),
    ]


def test_line_format():
    assert SimplificationRecord(0.25, 6, 2).to_line() == "0.25 6 2"
    assert SimplificationRecord.from_line("0.25 6 2\n") == SimplificationRecord(0.25, 6, 2)


def test_malformed_line_rejected():
    with pytest.raises(ValueError):
        SimplificationRecord.from_line("0.25 6")


def test_write_replaces_previous_file(tmp_path):
    path = tmp_path / "out" / "records.txt"
    write_records(path, _records())
    written = write_records(path, _records()[:1])
    assert written == path
    assert path.read_text(encoding="utf-8").splitlines() == ["0.1 4 1"]


def test_read_skips_blank_lines(tmp_path):
    path = tmp_path / "records.txt"
    path.write_text("0.1 4 1\n\n0.05 5 3\n", encoding="utf-8")
    assert [r.algorithm for r in read_records(path)] == [1, 3]


def test_summary():
    summary = summarize_records(_records())
    assert summary["overall"]["count"] == 3
    assert summary["overall"]["total_primitive_count"] == 17
    dp = summary["by_algorithm"]["1"]
    assert dp["count"] == 2
    assert dp["mean_error_ratio"] == pytest.approx(0.2)
    assert dp["mean_primitive_count"] == pytest.approx(6.0)
    assert set(summary["by_algorithm"]) == {"1", "3"}


def test_empty_summary():
    summary = summarize_records([])
    assert summary["overall"]["count"] == 0
    assert summary["overall"]["mean_error_ratio"] == 0.0
    assert summary["by_algorithm"] == {}
