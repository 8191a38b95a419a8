"""Member/prefix filters, byte pre-filtering and shared statistics for the organizer."""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Mapping

logger = logging.getLogger("crossref_datafile.organizer")


@dataclass(frozen=True)
class MemberFilter:
    """Allowed prefixes for one member (None means all) and the byte patterns naming it."""

    prefixes: frozenset[str] | None
    byte_patterns: tuple[bytes, ...]


FilterConfig = dict[str, MemberFilter]


def _member_patterns(member: str) -> tuple[bytes, ...]:
    quoted = f'"member": "{member}"'.encode("utf-8")
    bare = f'"member": {member}'.encode("utf-8")
    return (quoted, bare)


def build_filter_config(raw: Any) -> FilterConfig:
    """Turn a decoded filter document into a mapping of member id to MemberFilter."""
    if not isinstance(raw, Mapping):
        raise ValueError("filter configuration must be a JSON object keyed by member id")
    config: FilterConfig = {}
    for member, prefixes in raw.items():
        if not isinstance(member, str):
            raise ValueError(f"member id {member!r} must be a string")
        if prefixes is None:
            allowed = None
        elif isinstance(prefixes, list) and all(isinstance(p, str) for p in prefixes):
            allowed = frozenset(prefixes)
        else:
            raise ValueError(
                f"prefixes for member {member!r} must be a list of strings or null"
            )
        config[member] = MemberFilter(allowed, _member_patterns(member))
    return config


def load_filter_config(path) -> FilterConfig:
    """Read a JSON filter file and build its filter configuration."""
    path = Path(path)
    logger.info("Loading filter configuration from: %s", path)
    content = path.read_text(encoding="utf-8")
    try:
        raw = json.loads(content)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Failed to parse filter file as JSON: {path}: {exc}") from exc
    try:
        config = build_filter_config(raw)
    except ValueError as exc:
        raise ValueError(f"Failed to parse filter file as JSON: {path}: {exc}") from exc
    logger.info(
        "Successfully loaded filters and generated byte patterns for %d members.", len(config)
    )
    return config


def all_byte_patterns(filter_config: FilterConfig | None) -> list[bytes] | None:
    """Collect the byte patterns of every member, or None when there is no filter."""
    if filter_config is None:
        return None
    return [pattern for member in filter_config.values() for pattern in member.byte_patterns]


def contains_any_pattern(data: bytes, patterns: Iterable[bytes]) -> bool:
    """Return True if any pattern occurs in ``data``."""
    return any(pattern in data for pattern in patterns)


def extract_doi_prefix(record: Mapping[str, Any]) -> str | None:
    """Return the record's prefix, else the part of its DOI before '/', else None."""
    prefix = record.get("prefix")
    doi = record.get("DOI")
    for key, value in (("prefix", prefix), ("DOI", doi)):
        if value is not None and not isinstance(value, str):
            raise ValueError(f"field {key!r} must be a string")
    if prefix is not None:
        return prefix
    if doi is not None and "/" in doi:
        return doi.split("/", 1)[0]
    return None


class OrganizerStats:
    """Counters shared by the workers of both organizer passes; guard updates with ``lock``."""

    def __init__(self) -> None:
        self.lock = threading.Lock()

        self.pass1_lines_read = 0
        self.pass1_lines_written = 0
        self.pass1_json_parse_errors = 0
        self.pass1_member_id_missing = 0
        self.pass1_lines_skipped_by_filter = 0
        self.pass1_lines_pre_filtered = 0
        self.pass1_intermediate_files_opened = 0
        self.pass1_unique_members_found: set[str] = set()

        self.pass2_members_processed = 0
        self.pass2_lines_read = 0
        self.pass2_lines_written = 0
        self.pass2_json_parse_errors = 0
        self.pass2_prefix_missing = 0
        self.pass2_lines_skipped_by_filter = 0
        self.pass2_final_files_opened = 0
        self.pass2_unique_prefixes_total: set[tuple[str, str]] = set()

    def log_current_stats(self, stage: str) -> None:
        """Log the counters for Pass 1, Pass 2 or both ("Final")."""
        with self.lock:
            p1 = (
                self.pass1_lines_read,
                self.pass1_lines_pre_filtered,
                self.pass1_lines_written,
                self.pass1_lines_skipped_by_filter,
                self.pass1_json_parse_errors,
                self.pass1_member_id_missing,
                len(self.pass1_unique_members_found),
                self.pass1_intermediate_files_opened,
            )
            p2 = (
                self.pass2_members_processed,
                self.pass2_lines_read,
                self.pass2_lines_written,
                self.pass2_lines_skipped_by_filter,
                self.pass2_json_parse_errors,
                self.pass2_prefix_missing,
                len(self.pass2_unique_prefixes_total),
                self.pass2_final_files_opened,
            )

        logger.info("--- Periodic Stats (%s) ---", stage)
        if stage in ("Pass 1", "Final"):
            logger.info(" Pass 1:")
            for label, value in zip(
                (
                    "Lines Read",
                    "Lines Pre-Filtered (Bytes)",
                    "Lines Written (Intermediate)",
                    "Lines Skipped by Member Filter",
                    "JSON Parse Errors",
                    "Member ID Missing (Post-Parse)",
                    "Unique Members Written (so far)",
                    "Intermediate Files Opened (cumulative)",
                ),
                p1,
            ):
                logger.info("    %s: %d", label, value)
        if stage in ("Pass 2", "Final"):
            logger.info(" Pass 2:")
            for label, value in zip(
                (
                    "Members Processed",
                    "Lines Read (Intermediate)",
                    "Lines Written (Final)",
                    "Lines Skipped by Prefix Filter",
                    "JSON Parse Errors",
                    "Prefix Missing",
                    "Unique Member/Prefix Pairs Written",
                    "Final Output Files Opened (cumulative)",
                ),
                p2,
            ):
                logger.info("    %s: %d", label, value)
        logger.info("------------------------------")