import csv
import gzip
import json
import logging

import pytest

from crossref_datafile.indexer import (
    AggregateStats,
    FileStats,
    IndexingError,
    concatenate_partial_files,
    count_lines,
    extract_index_fields,
    main,
    process_file_for_index,
    run_indexer,
    write_partial_index_csv,
)


def write_gz(path, lines):
    path.parent.mkdir(parents=True, exist_ok=True)
    with gzip.open(path, "wt", encoding="utf-8") as handle:
        for line in lines:
            handle.write(line + "\n")
    return path


def read_rows(path):
    with open(path, newline="", encoding="utf-8") as handle:
        return list(csv.reader(handle))


SAMPLE_LINES = [
    json.dumps({"member": 78, "prefix": "10.1016", "DOI": "10.1016/a"}),
    json.dumps({"member": 78, "prefix": "10.1016", "DOI": "10.1016/a"}),
    "{not json",
    json.dumps({"DOI": "10.5555/b"}),
    json.dumps({"member": "311"}),
    "",
    json.dumps({"member": 311, "DOI": "10.5555/c"}),
]


def test_extract_index_fields_with_explicit_prefix():
    record = {"member": 78, "prefix": "10.1016", "DOI": "10.1016/x"}
    assert extract_index_fields(record) == ("78", "10.1016", "10.1016/x")


def test_extract_index_fields_derives_prefix_from_doi():
    record = {"member": "311", "DOI": "10.5555/abc/def"}
    assert extract_index_fields(record) == ("311", "10.5555", "10.5555/abc/def")


def test_extract_index_fields_unknown_prefix():
    assert extract_index_fields({"member": "1", "DOI": "noslash"}) == ("1", "_unknown_", "noslash")


@pytest.mark.parametrize(
    "record",
    [{"DOI": "10.1/x"}, {"member": True, "DOI": "10.1/x"}, {"member": "5"}, {"member": [1], "DOI": "10.1/x"}],
)
def test_extract_index_fields_missing(record):
    assert extract_index_fields(record) is None


def test_file_stats_merge_sums_fields():
    a = FileStats(1, 2, 3, 4, 5)
    b = FileStats(10, 20, 30, 40, 50)
    merged = a.merge(b)
    assert merged == FileStats(11, 22, 33, 44, 55)
    assert a == FileStats(1, 2, 3, 4, 5)


def test_aggregate_stats_add_and_final():
    stats = AggregateStats()
    stats.add(FileStats(lines_read=4, json_parse_errors=1))
    stats.add(FileStats(lines_read=6, doi_missing=2))
    assert stats.total_lines_read == 4 + 6
    assert stats.total_doi_missing == 2
    stats.update_from_final(FileStats(lines_read=99), (7, 8, 9))
    assert (stats.total_lines_read, stats.final_unique_members, stats.final_unique_prefixes,
            stats.final_unique_dois) == (99, 7, 8, 9)


def test_log_final_stats_reports_counts(caplog):
    caplog.set_level(logging.INFO, logger="crossref_datafile")
    stats = AggregateStats()
    stats.update_from_final(FileStats(), (5, 6, 7))
    stats.log_final_stats(True)
    assert "Unique (Member, File) Pairs Found: 5" in caplog.text
    caplog.clear()
    stats.log_final_stats(False)
    assert "Final unique counts not available due to processing errors." in caplog.text


def test_process_file_for_index(tmp_path):
    src = write_gz(tmp_path / "in" / "sample.jsonl.gz", SAMPLE_LINES)
    out = tmp_path / "out"
    out.mkdir()
    agg = AggregateStats()
    result = process_file_for_index(src, out, agg)

    assert result == FileStats(
        lines_read=len(SAMPLE_LINES), json_parse_errors=1, member_id_missing=1,
        prefix_missing=1, doi_missing=1,
    )
    assert agg.total_lines_read == len(SAMPLE_LINES)
    assert agg.total_json_parse_errors == result.json_parse_errors

    path = str(src)
    members = read_rows(out / "sample.jsonl.member.part")
    assert sorted(map(tuple, members)) == sorted([("78", path), ("311", path)])
    prefixes = read_rows(out / "sample.jsonl.prefix.part")
    assert sorted(map(tuple, prefixes)) == sorted([("78", "10.1016", path), ("311", "10.5555", path)])
    dois = read_rows(out / "sample.jsonl.doi.part")
    assert sorted(map(tuple, dois)) == sorted(
        [("10.1016/a", "78", "10.1016", path), ("10.5555/c", "311", "10.5555", path)]
    )


def test_process_file_missing_raises(tmp_path):
    with pytest.raises(IndexingError):
        process_file_for_index(tmp_path / "absent.jsonl.gz", tmp_path, AggregateStats())


def test_process_file_without_valid_records_writes_no_parts(tmp_path):
    src = write_gz(tmp_path / "bad.jsonl.gz", ["[1, 2]", '{"prefix": 5}'])
    result = process_file_for_index(src, tmp_path, AggregateStats())
    assert result.json_parse_errors == 2
    assert list(tmp_path.glob("*.part")) == []


def test_write_partial_csv_round_trip(tmp_path):
    rows = [("a,b", 'q"uote', "plain"), ("x", "y", "z")]
    target = tmp_path / "rows.part"
    write_partial_index_csv(rows, target)
    assert [tuple(r) for r in read_rows(target)] == rows


def test_count_lines(tmp_path):
    lines = ["one", "two", "three"]
    target = tmp_path / "f.txt"
    target.write_text("\n".join(lines))
    assert count_lines(target) == len(lines)


def test_concatenate_partial_files(tmp_path):
    write_partial_index_csv([("1", "a"), ("2", "b")], tmp_path / "x.member.part")
    write_partial_index_csv([("3", "c")], tmp_path / "y.member.part")
    final = tmp_path / "member_index.csv"
    headers = ["member_id", "input_file"]
    total = concatenate_partial_files(tmp_path, ".member.part", final, headers)
    rows = read_rows(final)
    assert rows[0] == headers
    assert sorted(rows[1:]) == [["1", "a"], ["2", "b"], ["3", "c"]]
    assert total == len(rows) - 1
    assert list(tmp_path.glob("*.member.part")) == []


def test_concatenate_without_parts_writes_header(tmp_path):
    final = tmp_path / "doi_index.csv"
    headers = ["doi", "member_id", "prefix", "input_file"]
    assert concatenate_partial_files(tmp_path, ".doi.part", final, headers) == 0
    assert read_rows(final) == [headers]


def test_run_indexer_end_to_end(tmp_path):
    src = tmp_path / "in"
    first = write_gz(src / "a.jsonl.gz", SAMPLE_LINES)
    second = write_gz(src / "nested" / "b.jsonl.gz", [json.dumps({"member": 78, "DOI": "10.1016/z"})])
    out = tmp_path / "out"
    stats = run_indexer(src, out, threads=2, stats_interval=60)

    members = read_rows(out / "member_index.csv")
    assert members[0] == ["member_id", "input_file"]
    assert sorted(map(tuple, members[1:])) == sorted(
        [("78", str(first)), ("311", str(first)), ("78", str(second))]
    )
    dois = read_rows(out / "doi_index.csv")
    assert ["10.1016/z", "78", "10.1016", str(second)] in dois
    assert stats.final_unique_members == len(members) - 1
    assert stats.final_unique_dois == len(dois) - 1
    assert stats.total_lines_read == len(SAMPLE_LINES) + 1
    assert list(out.glob("*.part")) == []


def test_run_indexer_no_files(tmp_path):
    (tmp_path / "in").mkdir()
    stats = run_indexer(tmp_path / "in", tmp_path / "out", threads=1)
    assert stats.total_lines_read == 0
    assert list((tmp_path / "out").iterdir()) == []


def test_main_runs(tmp_path):
    write_gz(tmp_path / "in" / "c.jsonl.gz", [json.dumps({"member": "9", "DOI": "10.9/q"})])
    out = tmp_path / "out"
    code = main(["-i", str(tmp_path / "in"), "-o", str(out), "-t", "1", "-l", "bogus"])
    assert code == 0
    assert read_rows(out / "prefix_index.csv")[0] == ["member_id", "prefix", "input_file"]


def test_main_rejects_negative_threads(tmp_path):
    with pytest.raises(SystemExit):
        main(["-i", str(tmp_path), "-o", str(tmp_path), "-t", "-1"])