import gzip
import random
from pathlib import Path

import pytest

from crossref_datafile.sampler import (
    SamplingError,
    calculate_samples_per_file,
    count_lines_in_file,
    main,
    run_sampler,
    sample_lines_from_file,
)


def write_gz(path: Path, lines, trailing_newline=True) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    text = "\n".join(lines)
    if trailing_newline and lines:
        text += "\n"
    with gzip.open(path, "wb") as handle:
        handle.write(text.encode("utf-8"))
    return path


def make_lines(tag, n):
    return [f'{{"id": "{tag}-{i}"}}' for i in range(n)]


def test_count_lines_with_and_without_trailing_newline(tmp_path):
    a = write_gz(tmp_path / "a.jsonl.gz", make_lines("a", 5))
    b = write_gz(tmp_path / "b.jsonl.gz", make_lines("b", 5), trailing_newline=False)
    assert count_lines_in_file(a) == 5
    assert count_lines_in_file(b) == 5


def test_count_lines_empty_file(tmp_path):
    path = write_gz(tmp_path / "e.jsonl.gz", [])
    assert count_lines_in_file(path) == 0


def test_count_lines_missing_file_raises(tmp_path):
    with pytest.raises(SamplingError):
        count_lines_in_file(tmp_path / "missing.jsonl.gz")


def test_count_lines_corrupt_file_raises(tmp_path):
    path = tmp_path / "bad.jsonl.gz"
    path.write_bytes(b"not gzip data")
    with pytest.raises(SamplingError):
        count_lines_in_file(path)


def test_sample_zero_returns_empty(tmp_path):
    path = write_gz(tmp_path / "a.jsonl.gz", make_lines("a", 3))
    assert sample_lines_from_file(path, 0) == []


def test_sample_more_than_available_returns_all_in_order(tmp_path):
    lines = make_lines("a", 4)
    path = write_gz(tmp_path / "a.jsonl.gz", lines)
    assert sample_lines_from_file(path, 10) == lines


def test_sample_strips_carriage_returns(tmp_path):
    path = tmp_path / "crlf.jsonl.gz"
    with gzip.open(path, "wb") as handle:
        handle.write(b"x\r\ny\r\n")
    assert sample_lines_from_file(path, 2) == ["x", "y"]


def test_sample_subset_is_unique_and_from_input(tmp_path):
    lines = make_lines("a", 100)
    path = write_gz(tmp_path / "a.jsonl.gz", lines)
    sample = sample_lines_from_file(path, 10, random.Random(1))
    assert len(sample) == 10
    assert len(set(sample)) == 10
    assert set(sample) <= set(lines)


def test_sample_is_reproducible_with_seed(tmp_path):
    path = write_gz(tmp_path / "a.jsonl.gz", make_lines("a", 50))
    first = sample_lines_from_file(path, 7, random.Random(42))
    second = sample_lines_from_file(path, 7, random.Random(42))
    assert first == second


def test_calculate_zero_total_lines():
    assert calculate_samples_per_file([(Path("a"), 0)], 0, 5) == []


def test_calculate_zero_samples():
    assert calculate_samples_per_file([(Path("a"), 10)], 10, 0) == []


def test_calculate_more_than_total_takes_everything():
    counts = [(Path("a"), 3), (Path("b"), 4)]
    assert calculate_samples_per_file(counts, 7, 100) == counts


def test_calculate_distributes_remainder_in_order():
    counts = [(Path("a"), 1), (Path("b"), 1), (Path("c"), 1)]
    result = calculate_samples_per_file(counts, 3, 2)
    assert result == [(Path("a"), 1), (Path("b"), 1), (Path("c"), 0)]


@pytest.mark.parametrize("needed", [1, 7, 33, 50, 99])
def test_calculate_sums_to_request_and_respects_counts(needed):
    counts = [(Path("a"), 10), (Path("b"), 37), (Path("c"), 3), (Path("d"), 50)]
    result = calculate_samples_per_file(counts, 100, needed)
    assert sum(n for _, n in result) == needed
    assert [p for p, _ in result] == [p for p, _ in counts]
    for (_, n), (_, count) in zip(result, counts):
        assert 0 <= n <= count


def test_run_sampler_writes_requested_lines(tmp_path):
    all_lines = make_lines("a", 30) + make_lines("b", 20)
    write_gz(tmp_path / "in" / "a.jsonl.gz", all_lines[:30])
    write_gz(tmp_path / "in" / "sub" / "b.jsonl.gz", all_lines[30:])
    out = tmp_path / "out" / "sample.jsonl"
    result = run_sampler(tmp_path / "in", out, 10, threads=2, rng=random.Random(3))
    written = out.read_text().splitlines()
    assert written == result
    assert len(written) == 10
    assert len(set(written)) == 10
    assert set(written) <= set(all_lines)


def test_run_sampler_more_than_total_without_shuffle(tmp_path):
    lines_a = make_lines("a", 3)
    lines_b = make_lines("b", 2)
    write_gz(tmp_path / "in" / "a.jsonl.gz", lines_a)
    write_gz(tmp_path / "in" / "b.jsonl.gz", lines_b)
    out = tmp_path / "sample.jsonl"
    result = run_sampler(tmp_path / "in", out, 100, threads=1, shuffle=False)
    assert result == lines_a + lines_b
    assert out.read_text().splitlines() == lines_a + lines_b


def test_run_sampler_zero_creates_empty_file(tmp_path):
    out = tmp_path / "sample.jsonl"
    assert run_sampler(tmp_path, out, 0) == []
    assert out.read_text() == ""


def test_run_sampler_no_input_files_writes_nothing(tmp_path):
    out = tmp_path / "out" / "sample.jsonl"
    assert run_sampler(tmp_path / "empty", out, 5) == []
    assert not out.exists()


def test_run_sampler_only_empty_files_creates_empty_output(tmp_path):
    write_gz(tmp_path / "in" / "a.jsonl.gz", [])
    out = tmp_path / "sample.jsonl"
    assert run_sampler(tmp_path / "in", out, 5, threads=1) == []
    assert out.read_text() == ""


def test_run_sampler_negative_count_raises(tmp_path):
    with pytest.raises(ValueError):
        run_sampler(tmp_path, tmp_path / "o.jsonl", -1)


def test_run_sampler_count_error_raises(tmp_path):
    (tmp_path / "in").mkdir()
    (tmp_path / "in" / "bad.jsonl.gz").write_bytes(b"garbage")
    with pytest.raises(SamplingError):
        run_sampler(tmp_path / "in", tmp_path / "o.jsonl", 3, threads=1)


def test_main_success(tmp_path):
    write_gz(tmp_path / "in" / "a.jsonl.gz", make_lines("a", 20))
    out = tmp_path / "sample.jsonl"
    code = main(["-i", str(tmp_path / "in"), "-o", str(out), "-n", "4", "-t", "1"])
    assert code == 0
    assert len(out.read_text().splitlines()) == 4


def test_main_failure_returns_one(tmp_path):
    (tmp_path / "in").mkdir()
    (tmp_path / "in" / "bad.jsonl.gz").write_bytes(b"garbage")
    code = main(["-i", str(tmp_path / "in"), "-o", str(tmp_path / "o.jsonl"), "-n", "2"])
    assert code == 1