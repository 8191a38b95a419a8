"""Build CSV indexes of members, prefixes and DOIs from JSONL.gz data files."""

from __future__ import annotations

import argparse
import csv
import gzip
import io
import json
import logging
import shutil
import threading
import time
import zlib
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence

from tqdm import tqdm

from .common import (
    extract_member_id,
    find_jsonl_gz_files,
    format_elapsed,
    log_memory_usage,
    resolve_thread_count,
    setup_logging,
    StatsTicker,
)

logger = logging.getLogger("crossref_datafile.indexer")

VERSION = "1.1.0"
UNKNOWN_PREFIX = "_unknown_"
_STATS_CHUNK = 50_000

MEMBER_HEADERS = ("member_id", "input_file")
PREFIX_HEADERS = ("member_id", "prefix", "input_file")
DOI_HEADERS = ("doi", "member_id", "prefix", "input_file")

_INDEXES = (
    ("Member", ".member.part", "member_index.csv", MEMBER_HEADERS),
    ("Prefix", ".prefix.part", "prefix_index.csv", PREFIX_HEADERS),
    ("DOI", ".doi.part", "doi_index.csv", DOI_HEADERS),
)


class IndexingError(Exception):
    """Raised when input files cannot be indexed or the indexes cannot be assembled."""


@dataclass
class FileStats:
    """Line and record counters for one file or a set of files."""

    lines_read: int = 0
    json_parse_errors: int = 0
    member_id_missing: int = 0
    prefix_missing: int = 0
    doi_missing: int = 0

    def merge(self, other: "FileStats") -> "FileStats":
        """Return a new FileStats holding the sum of both."""
        return FileStats(
            **{f.name: getattr(self, f.name) + getattr(other, f.name) for f in fields(self)}
        )


class AggregateStats:
    """Thread-safe totals shared by all workers of an indexing run."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.total_lines_read = 0
        self.total_json_parse_errors = 0
        self.total_member_id_missing = 0
        self.total_prefix_missing = 0
        self.total_doi_missing = 0
        self.final_unique_members = 0
        self.final_unique_prefixes = 0
        self.final_unique_dois = 0

    def add(self, stats: FileStats) -> None:
        """Add a batch of per-file counters to the totals."""
        with self._lock:
            self.total_lines_read += stats.lines_read
            self.total_json_parse_errors += stats.json_parse_errors
            self.total_member_id_missing += stats.member_id_missing
            self.total_prefix_missing += stats.prefix_missing
            self.total_doi_missing += stats.doi_missing

    def _snapshot(self) -> FileStats:
        with self._lock:
            return FileStats(
                lines_read=self.total_lines_read,
                json_parse_errors=self.total_json_parse_errors,
                member_id_missing=self.total_member_id_missing,
                prefix_missing=self.total_prefix_missing,
                doi_missing=self.total_doi_missing,
            )

    def update_from_final(self, final_stats: FileStats, counts: Sequence[int]) -> None:
        """Replace the totals with final values and record the index sizes."""
        members, prefixes, dois = counts
        with self._lock:
            self.total_lines_read = final_stats.lines_read
            self.total_json_parse_errors = final_stats.json_parse_errors
            self.total_member_id_missing = final_stats.member_id_missing
            self.total_prefix_missing = final_stats.prefix_missing
            self.total_doi_missing = final_stats.doi_missing
            self.final_unique_members = members
            self.final_unique_prefixes = prefixes
            self.final_unique_dois = dois

    def log_current_stats(self, stage: str) -> None:
        snap = self._snapshot()
        logger.info("--- Periodic Stats (%s) ---", stage)
        logger.info(" Files Processed (Estimate): %d / ?", snap.lines_read // _STATS_CHUNK)
        logger.info(" Lines Read (so far): %d", snap.lines_read)
        logger.info(" JSON Parse Errors: %d", snap.json_parse_errors)
        logger.info(" Records Missing Member ID: %d", snap.member_id_missing)
        logger.info(" Records Missing Prefix: %d", snap.prefix_missing)
        logger.info(" Records Missing DOI: %d", snap.doi_missing)
        logger.info("------------------------------")

    def log_final_stats(self, processing_complete: bool) -> None:
        snap = self._snapshot()
        logger.info("--- Final Stats Summary ---")
        logger.info(" Total Lines Read: %d", snap.lines_read)
        logger.info(" Total JSON Parse Errors: %d", snap.json_parse_errors)
        logger.info(" Total Records Missing Member ID: %d", snap.member_id_missing)
        logger.info(" Total Records Missing Prefix: %d", snap.prefix_missing)
        logger.info(" Total Records Missing DOI: %d", snap.doi_missing)
        if processing_complete:
            with self._lock:
                members = self.final_unique_members
                prefixes = self.final_unique_prefixes
                dois = self.final_unique_dois
            logger.info(" Unique (Member, File) Pairs Found: %d", members)
            logger.info(" Unique (Member, Prefix, File) Pairs Found: %d", prefixes)
            logger.info(" Unique (DOI, Member, Prefix, File) Records Found: %d", dois)
        else:
            logger.info(" Final unique counts not available due to processing errors.")
        logger.info("---------------------------")


def _parse_record(line: str) -> dict[str, Any]:
    """Decode one JSON line, checking the fields the index relies on."""
    record = json.loads(line)
    if not isinstance(record, dict):
        raise ValueError("expected a JSON object")
    for key in ("prefix", "DOI"):
        value = record.get(key)
        if value is not None and not isinstance(value, str):
            raise ValueError(f"field {key!r} must be a string")
    return record


def extract_index_fields(record: Mapping[str, Any]) -> tuple[str, str, str] | None:
    """Return ``(member_id, prefix, doi)`` for a record, or None if member or DOI is missing."""
    member_id = extract_member_id(record.get("member"))
    if member_id is None:
        return None
    doi = record.get("DOI")
    if doi is None:
        return None
    prefix = record.get("prefix")
    if prefix is None:
        prefix = doi.split("/", 1)[0] if "/" in doi else UNKNOWN_PREFIX
    return member_id, prefix, doi


def _count_missing(record: Mapping[str, Any], stats: FileStats) -> None:
    if extract_member_id(record.get("member")) is None:
        stats.member_id_missing += 1
    doi = record.get("DOI")
    prefix = record.get("prefix")
    if doi is None:
        stats.doi_missing += 1
        if prefix is None:
            stats.prefix_missing += 1
    elif prefix is None and "/" not in doi:
        stats.prefix_missing += 1


def _csv_line(values: Sequence[str]) -> bytes:
    buffer = io.StringIO()
    csv.writer(buffer, lineterminator="\n").writerow(values)
    return buffer.getvalue().encode("utf-8")


def write_partial_index_csv(rows: Iterable[Sequence[str]], output_path) -> None:
    """Write rows as headerless CSV to ``output_path``."""
    with open(output_path, "w", newline="", encoding="utf-8") as handle:
        csv.writer(handle, lineterminator="\n").writerows(rows)


def process_file_for_index(filepath, output_dir, global_stats: AggregateStats, progress=None) -> FileStats:
    """Index one JSONL.gz file into ``.member.part``, ``.prefix.part`` and ``.doi.part`` files."""
    filepath = Path(filepath)
    output_dir = Path(output_dir)
    file_path_str = str(filepath)
    file_stem = filepath.stem

    if progress is not None:
        progress.set_postfix_str(f"Processing: {file_path_str}", refresh=False)
    logger.debug("Starting processing for %s", filepath)

    members: set[tuple[str, str]] = set()
    prefixes: set[tuple[str, str, str]] = set()
    dois: set[tuple[str, str, str, str]] = set()
    totals = FileStats()
    pending = FileStats()

    try:
        handle = gzip.open(filepath, "rb")
    except OSError as exc:
        raise IndexingError(f"Failed to open {filepath}: {exc}") from exc

    line_num = 0
    with handle:
        try:
            for line_num, raw in enumerate(handle, start=1):
                pending.lines_read += 1
                try:
                    line = raw.removesuffix(b"\n").removesuffix(b"\r").decode("utf-8")
                except UnicodeDecodeError as exc:
                    logger.warning("Error reading line %d from %s: %s", line_num, filepath, exc)
                    line = ""
                if line.strip():
                    try:
                        record = _parse_record(line)
                    except ValueError as exc:
                        pending.json_parse_errors += 1
                        errors = totals.json_parse_errors + pending.json_parse_errors
                        if errors < 5 or errors % 10_000 == 0:
                            logger.warning(
                                "JSON parse error in %s line ~%d: %s (Line starts: %s...)",
                                filepath, line_num, exc, line[:100],
                            )
                    else:
                        fields_ = extract_index_fields(record)
                        if fields_ is None:
                            _count_missing(record, pending)
                        else:
                            member_id, prefix, doi = fields_
                            members.add((member_id, file_path_str))
                            prefixes.add((member_id, prefix, file_path_str))
                            dois.add((doi, member_id, prefix, file_path_str))
                if pending.lines_read >= _STATS_CHUNK:
                    global_stats.add(pending)
                    totals = totals.merge(pending)
                    pending = FileStats()
                    if progress is not None:
                        progress.set_postfix_str(
                            f"Processing: {file_path_str} (line ~{totals.lines_read})", refresh=False
                        )
        except (OSError, EOFError, zlib.error) as exc:
            logger.warning("Error reading line %d from %s: %s", line_num + 1, filepath, exc)

    logger.debug("Finished reading %s, writing partial index files...", filepath)
    write_start = time.monotonic()
    outputs = (
        ("member", members, output_dir / f"{file_stem}.member.part"),
        ("prefix", prefixes, output_dir / f"{file_stem}.prefix.part"),
        ("DOI", dois, output_dir / f"{file_stem}.doi.part"),
    )
    for label, rows, path in outputs:
        if not rows:
            continue
        try:
            write_partial_index_csv(rows, path)
        except OSError as exc:
            raise IndexingError(
                f"Failed to write partial {label} index for {filepath}: {exc}"
            ) from exc
        logger.debug("Wrote %d %s entries to %s", len(rows), label, path)
    logger.debug(
        "Partial file writing for %s took %s",
        filepath, format_elapsed(time.monotonic() - write_start),
    )

    global_stats.add(pending)
    totals = totals.merge(pending)
    if progress is not None:
        progress.update(1)
    return totals


def count_lines(path) -> int:
    """Count the lines of a file."""
    with open(path, "rb") as handle:
        return sum(1 for _ in handle)


def concatenate_partial_files(output_dir, part_extension: str, final_output_path, headers: Sequence[str]) -> int:
    """Join all ``*part_extension`` files under a CSV header, delete them, and return the row count."""
    output_dir = Path(output_dir)
    final_output_path = Path(final_output_path)
    logger.info("Concatenating *%s files into %s", part_extension, final_output_path)
    start = time.monotonic()
    pattern = output_dir / f"*{part_extension}"
    part_files = sorted(p for p in output_dir.glob(f"*{part_extension}") if p.is_file())

    try:
        final = final_output_path.open("wb")
    except OSError as exc:
        raise IndexingError(f"Failed to create final output file: {final_output_path}: {exc}") from exc

    if not part_files:
        logger.warning("No partial files found matching pattern: %s", pattern)
        with final:
            final.write(_csv_line(headers))
        return 0

    logger.info("Found %d partial files to concatenate.", len(part_files))
    total_records = 0
    errors: list[str] = []
    to_delete: list[Path] = []

    with final:
        final.write(_csv_line(headers))
        for part in tqdm(part_files, desc=f"Concatenating {part_extension}", unit="file"):
            logger.debug("Appending %s...", part)
            try:
                with part.open("rb") as source:
                    shutil.copyfileobj(source, final)
            except OSError as exc:
                errors.append(f"Failed to copy data from {part}: {exc}")
                continue
            try:
                total_records += count_lines(part)
            except OSError as exc:
                errors.append(f"Failed to count lines in {part}: {exc}")
            to_delete.append(part)

    logger.info("Deleting %d partial files...", len(to_delete))
    for part in tqdm(to_delete, desc="Deleting parts", unit="file"):
        try:
            part.unlink()
        except OSError as exc:
            errors.append(f"Failed to delete partial file {part}: {exc}")
        else:
            logger.debug("Deleted %s", part)

    if errors:
        logger.error("Errors occurred during concatenation/deletion for %s:", part_extension)
        for message in errors:
            logger.error("  - %s", message)

    logger.info(
        "Finished concatenating %s files for %s in %s. Total records: %d",
        part_extension, final_output_path, format_elapsed(time.monotonic() - start), total_records,
    )
    return total_records


def _process_all(files: list[Path], output_dir: Path, stats: AggregateStats, workers: int) -> FileStats:
    aggregate = FileStats()
    errors: list[str] = []
    with tqdm(total=len(files), unit="file", desc="Indexing") as progress:
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [
                pool.submit(process_file_for_index, path, output_dir, stats, progress)
                for path in files
            ]
        for future in futures:
            try:
                aggregate = aggregate.merge(future.result())
            except IndexingError as exc:
                errors.append(str(exc))
        progress.write(
            f"Parallel processing map phase completed. {len(files) - len(errors)} Ok, {len(errors)} Err."
        )
    if errors:
        logger.error("--- Processing Pass Failed ---")
        logger.error("Errors occurred during file processing:")
        for message in errors:
            logger.error("  - %s", message)
        stats.log_final_stats(False)
        raise IndexingError("Indexing failed due to processing errors.")
    return aggregate


def _concatenate_all(output_dir: Path, stats: AggregateStats) -> None:
    counts: list[int] = []
    errors: list[str] = []
    start = time.monotonic()
    for label, extension, filename, headers in _INDEXES:
        try:
            counts.append(concatenate_partial_files(output_dir, extension, output_dir / filename, headers))
        except IndexingError as exc:
            counts.append(0)
            errors.append(f"{label} concatenation failed: {exc}")
    if errors:
        logger.error("--- Concatenation Pass Failed ---")
        for message in errors:
            logger.error("  - %s", message)
        stats.log_final_stats(False)
        raise IndexingError("Concatenation failed. Partial results may exist.")
    logger.info("Finished concatenating files in %s", format_elapsed(time.monotonic() - start))
    stats.update_from_final(stats._snapshot(), counts)
    stats.log_final_stats(True)


def run_indexer(input_dir, output_dir, threads: int = 0, stats_interval: float = 60) -> AggregateStats:
    """Index every JSONL.gz file under ``input_dir`` into three CSV files in ``output_dir``."""
    start = time.monotonic()
    log_memory_usage("initial")
    input_dir = Path(input_dir)
    output_dir = Path(output_dir)
    try:
        output_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise IndexingError(f"Failed to create output directory: {output_dir}: {exc}") from exc

    workers = resolve_thread_count(threads)
    logger.info("Input directory: %s", input_dir)
    logger.info("Output directory: %s", output_dir)
    logger.info("Statistics logging interval: %s seconds.", stats_interval)

    stats = AggregateStats()
    files = find_jsonl_gz_files(input_dir)
    if not files:
        logger.warning("No .jsonl.gz files found. Exiting.")
        return stats
    logger.info("Found %d input files to process.", len(files))

    def report() -> None:
        log_memory_usage("periodic check")
        stats.log_current_stats("Periodic")

    with StatsTicker(stats_interval, report):
        logger.info("--- Starting Processing Pass (Reading, Parsing, Writing Partial Indices) ---")
        processing_start = time.monotonic()
        aggregate = _process_all(files, output_dir, stats, workers)
        logger.info("--- Processing Pass Summary ---")
        logger.info("Duration: %s", format_elapsed(time.monotonic() - processing_start))
        logger.info("Input files processed: %d", len(files))
        logger.info(
            "(Aggregated local stats: %d lines, %d parse errors)",
            aggregate.lines_read, aggregate.json_parse_errors,
        )
        logger.info("--- Starting Concatenation Pass ---")
        _concatenate_all(output_dir, stats)

    logger.info("-------------------- FINAL SUMMARY --------------------")
    logger.info("Total execution time: %s", format_elapsed(time.monotonic() - start))
    stats.log_final_stats(True)
    log_memory_usage("final")
    logger.info("Indexing process finished successfully.")
    logger.info("-------------------------------------------------------")
    return stats


def _non_negative_int(text: str) -> int:
    value = int(text)
    if value < 0:
        raise argparse.ArgumentTypeError("must be zero or a positive integer")
    return value


def main(argv=None) -> int:
    """Command-line entry point; returns the process exit code."""
    parser = argparse.ArgumentParser(
        prog="crossref-indexer",
        description="Scans Crossref JSONL.gz files and creates CSV indexes for members, prefixes, and DOIs.",
    )
    parser.add_argument("-i", "--input-dir", required=True, help="Directory containing input JSONL.gz files")
    parser.add_argument("-o", "--output-dir", required=True, help="Directory where output CSV index files will be saved")
    parser.add_argument("-l", "--log-level", default="INFO", help="Logging level (TRACE, DEBUG, INFO, WARN, ERROR)")
    parser.add_argument("-t", "--threads", type=_non_negative_int, default=0, help="Number of threads to use (0 for auto)")
    parser.add_argument("-s", "--stats-interval", type=_non_negative_int, default=60, help="Interval in seconds to log statistics")
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    args = parser.parse_args(argv)

    setup_logging(args.log_level)
    logger.info("Starting Crossref Indexer v%s", VERSION)
    try:
        run_indexer(args.input_dir, args.output_dir, args.threads, args.stats_interval)
    except IndexingError as exc:
        logger.error("Indexing process finished with errors: %s", exc)
        return 1
    return 0