import json
import logging

import pytest

from crossref_datafile.organizer_filters import (
    MemberFilter,
    OrganizerStats,
    all_byte_patterns,
    build_filter_config,
    contains_any_pattern,
    extract_doi_prefix,
    load_filter_config,
)


def _messages(caplog):
    return [record.getMessage() for record in caplog.records]


def test_build_filter_config_prefixes_and_none():
    config = build_filter_config({"123": ["10.1000", "10.2000"], "456": None})
    assert set(config) == {"123", "456"}
    assert config["123"].prefixes == frozenset({"10.1000", "10.2000"})
    assert config["456"].prefixes is None


def test_build_filter_config_byte_patterns():
    config = build_filter_config({"123": None})
    patterns = config["123"].byte_patterns
    assert b'"member": "123"' in patterns
    assert b'"member": 123' in patterns


@pytest.mark.parametrize("raw", [["123"], {"123": "10.1000"}, {"123": [1, 2]}, "text"])
def test_build_filter_config_rejects_bad_shapes(raw):
    with pytest.raises(ValueError):
        build_filter_config(raw)


def test_patterns_match_serialized_records():
    config = build_filter_config({"123": None})
    patterns = all_byte_patterns(config)
    numeric = json.dumps({"member": 123, "DOI": "10.1/x"}).encode()
    string = json.dumps({"DOI": "10.1/x", "member": "123"}).encode()
    other = json.dumps({"member": 999}).encode()
    assert contains_any_pattern(numeric, patterns)
    assert contains_any_pattern(string, patterns)
    assert not contains_any_pattern(other, patterns)


def test_contains_any_pattern_empty_pattern_list():
    assert contains_any_pattern(b"anything", []) is False


def test_all_byte_patterns_none_and_flatten():
    assert all_byte_patterns(None) is None
    config = build_filter_config({"1": None, "2": ["10.5"]})
    patterns = all_byte_patterns(config)
    expected = [p for m in config.values() for p in m.byte_patterns]
    assert patterns == expected
    assert all_byte_patterns({}) == []


def test_load_filter_config_round_trip(tmp_path):
    path = tmp_path / "filters.json"
    path.write_text(json.dumps({"78": ["10.1016"], "311": None}), encoding="utf-8")
    config = load_filter_config(path)
    assert config == build_filter_config({"78": ["10.1016"], "311": None})
    assert isinstance(config["78"], MemberFilter)


def test_load_filter_config_invalid_json(tmp_path):
    path = tmp_path / "filters.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(ValueError, match="Failed to parse filter file"):
        load_filter_config(path)


def test_load_filter_config_missing_file(tmp_path):
    with pytest.raises(OSError):
        load_filter_config(tmp_path / "absent.json")


def test_extract_doi_prefix_prefers_prefix_field():
    assert extract_doi_prefix({"prefix": "10.9999", "DOI": "10.1000/abc"}) == "10.9999"


def test_extract_doi_prefix_from_doi():
    assert extract_doi_prefix({"DOI": "10.1000/abc/def"}) == "10.1000"


@pytest.mark.parametrize("record", [{}, {"DOI": "noslash"}, {"prefix": None, "DOI": None}])
def test_extract_doi_prefix_missing(record):
    assert extract_doi_prefix(record) is None


@pytest.mark.parametrize("record", [{"prefix": 10}, {"DOI": ["10.1/x"]}])
def test_extract_doi_prefix_rejects_non_strings(record):
    with pytest.raises(ValueError):
        extract_doi_prefix(record)


def test_organizer_stats_start_at_zero():
    stats = OrganizerStats()
    assert stats.pass1_lines_read == 0
    assert stats.pass2_lines_written == 0
    assert stats.pass1_unique_members_found == set()
    assert stats.pass2_unique_prefixes_total == set()


def test_log_current_stats_pass1_only(caplog):
    stats = OrganizerStats()
    with stats.lock:
        stats.pass1_lines_read = 7
        stats.pass1_unique_members_found.update({"1", "2"})
    with caplog.at_level(logging.INFO, logger="crossref_datafile"):
        stats.log_current_stats("Pass 1")
    messages = _messages(caplog)
    assert "--- Periodic Stats (Pass 1) ---" in messages
    assert " Pass 1:" in messages
    assert " Pass 2:" not in messages
    assert "    Lines Read: 7" in messages
    assert "    Unique Members Written (so far): 2" in messages


def test_log_current_stats_final_has_both(caplog):
    stats = OrganizerStats()
    with stats.lock:
        stats.pass2_unique_prefixes_total.add(("1", "10.1"))
    with caplog.at_level(logging.INFO, logger="crossref_datafile"):
        stats.log_current_stats("Final")
    messages = _messages(caplog)
    assert " Pass 1:" in messages
    assert " Pass 2:" in messages
    assert "    Unique Member/Prefix Pairs Written: 1" in messages


def test_log_current_stats_periodic_has_neither_pass(caplog):
    stats = OrganizerStats()
    with caplog.at_level(logging.INFO, logger="crossref_datafile"):
        stats.log_current_stats("Periodic")
    messages = _messages(caplog)
    assert " Pass 1:" not in messages
    assert " Pass 2:" not in messages
    assert "--- Periodic Stats (Periodic) ---" in messages