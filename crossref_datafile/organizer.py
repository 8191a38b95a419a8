"""Reorganize JSONL.gz data files into ``<member>/<prefix>/data.jsonl.gz`` trees."""

from __future__ import annotations

import argparse
import gzip
import json
import logging
import shutil
import time
import zlib
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Sequence

from tqdm import tqdm

from .common import (
    StatsTicker,
    extract_member_id,
    find_jsonl_gz_files,
    format_elapsed,
    log_memory_usage,
    resolve_thread_count,
    setup_logging,
)
from .organizer_filters import (
    FilterConfig,
    OrganizerStats,
    all_byte_patterns,
    contains_any_pattern,
    load_filter_config,
)
from .organizer_writers import IntermediateWriterManager, process_member_directory

logger = logging.getLogger("crossref_datafile.organizer")

VERSION = "1.1.1"
TEMP_DIR_NAME = "_cr_temp"


class OrganizeError(Exception):
    """Raised when input files cannot be reorganized."""


def distribute_file(
    filepath,
    manager: IntermediateWriterManager,
    stats: OrganizerStats,
    filter_config: FilterConfig | None = None,
    patterns: Sequence[bytes] | None = None,
) -> None:
    """Copy every line of one JSONL.gz file into its member's intermediate part file."""
    filepath = Path(filepath)
    lines_read = written = parse_errors = missing = skipped = pre_filtered = 0
    members: set[str] = set()

    try:
        handle = gzip.open(filepath, "rb")
    except OSError as exc:
        raise OrganizeError(f"Failed to open {filepath}: {exc}") from exc

    with handle:
        try:
            for raw in handle:
                lines_read += 1
                if patterns is not None and not contains_any_pattern(raw, patterns):
                    pre_filtered += 1
                    continue
                try:
                    text = raw.decode("utf-8")
                except UnicodeDecodeError as exc:
                    parse_errors += 1
                    if parse_errors % 10_000 == 1:
                        logger.warning(
                            "UTF-8 decode error in %s: %s (bytes: %r)", filepath, exc, raw[:50]
                        )
                    continue
                line = text.removesuffix("\n").removesuffix("\r")
                if not line.strip():
                    continue
                try:
                    record = json.loads(line)
                    if not isinstance(record, dict):
                        raise ValueError("expected a JSON object")
                except ValueError as exc:
                    parse_errors += 1
                    if parse_errors % 10_000 == 1:
                        logger.warning(
                            "JSON parse error in %s: %s (line starts: %s...)",
                            filepath, exc, line[:50],
                        )
                    continue
                member_id = extract_member_id(record.get("member"))
                if member_id is None:
                    missing += 1
                    continue
                if filter_config is not None and member_id not in filter_config:
                    skipped += 1
                    continue
                members.add(member_id)
                try:
                    manager.write_line(member_id, line)
                except OSError as exc:
                    logger.error(
                        "Failed to write line for member %s from %s: %s", member_id, filepath, exc
                    )
                else:
                    written += 1
        except (OSError, EOFError, zlib.error) as exc:
            logger.warning("Error reading line/bytes from %s: %s", filepath, exc)
            parse_errors += 1

    with stats.lock:
        stats.pass1_lines_read += lines_read
        stats.pass1_lines_written += written
        stats.pass1_json_parse_errors += parse_errors
        stats.pass1_member_id_missing += missing
        stats.pass1_lines_skipped_by_filter += skipped
        stats.pass1_lines_pre_filtered += pre_filtered
        stats.pass1_unique_members_found.update(members)


def _remove_tree(path: Path) -> None:
    try:
        shutil.rmtree(path)
    except OSError as exc:
        logger.error("Failed to cleanup temporary directory %s: %s", path, exc)


def _run_pass1(
    files: list[Path],
    temp_dir: Path,
    max_open: int,
    stats: OrganizerStats,
    filter_config: FilterConfig | None,
    workers: int,
) -> list[str]:
    patterns = all_byte_patterns(filter_config)
    errors: list[str] = []
    try:
        manager = IntermediateWriterManager(temp_dir, max_open)
    except OSError as exc:
        raise OrganizeError(str(exc)) from exc
    try:
        with manager:
            with ThreadPoolExecutor(max_workers=workers) as pool:
                futures = [
                    pool.submit(distribute_file, path, manager, stats, filter_config, patterns)
                    for path in files
                ]
                for future in tqdm(futures, desc="Pass 1", unit="file"):
                    try:
                        future.result()
                    except OrganizeError as exc:
                        errors.append(str(exc))
            manager.flush_all()
    except OSError as exc:
        raise OrganizeError(str(exc)) from exc
    with stats.lock:
        stats.pass1_intermediate_files_opened = manager.files_opened
    return errors


def _run_pass2(
    member_dirs: list[Path],
    output_dir: Path,
    max_final: int,
    stats: OrganizerStats,
    filter_config: FilterConfig | None,
    workers: int,
) -> list[str]:
    errors: list[str] = []
    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures = [
            (
                member_dir,
                pool.submit(
                    process_member_directory,
                    member_dir, output_dir, max_final, stats, filter_config,
                ),
            )
            for member_dir in member_dirs
        ]
        for member_dir, future in tqdm(futures, desc="Pass 2", unit="member"):
            try:
                future.result()
            except (OSError, ValueError) as exc:
                logger.error("Error processing member directory %s: %s", member_dir, exc)
                errors.append(f"Failed {member_dir}: {exc}")
    return errors


def run_organizer(
    input_dir,
    output_dir,
    temp_dir=None,
    max_intermediate_files: int = 256,
    max_final_files_per_member: int = 128,
    threads: int = 0,
    filter_file=None,
    stats_interval: float = 60,
) -> OrganizerStats:
    """Split all JSONL.gz files under ``input_dir`` by member and DOI prefix into ``output_dir``."""
    start = time.monotonic()
    log_memory_usage("initial")
    input_dir = Path(input_dir)
    output_dir = Path(output_dir)
    if temp_dir is None:
        temp_path = output_dir / TEMP_DIR_NAME
        logger.info("Temporary directory not specified, using: %s", temp_path)
    else:
        temp_path = Path(temp_dir)

    workers = resolve_thread_count(threads)

    filter_config: FilterConfig | None = None
    if filter_file is not None:
        try:
            filter_config = load_filter_config(filter_file)
        except OSError as exc:
            raise OrganizeError(f"Failed to read filter file: {filter_file}: {exc}") from exc
        except ValueError as exc:
            raise OrganizeError(str(exc)) from exc
    else:
        logger.info("No filter file specified. Processing all members and prefixes.")

    stats = OrganizerStats()
    logger.info("Searching for input files in: %s", input_dir)
    files = find_jsonl_gz_files(input_dir)
    if not files:
        logger.warning("No .jsonl.gz files found in the specified directory. Exiting.")
        return stats
    logger.info("Found %d input files.", len(files))
    logger.info("Output directory: %s", output_dir)
    logger.info("Temporary directory: %s", temp_path)
    logger.info("Filter file: %s", filter_file if filter_file is not None else "None")
    logger.info("Max intermediate files (Pass 1): %d", max_intermediate_files)
    logger.info("Max final files per member (Pass 2): %d", max_final_files_per_member)
    logger.info("Statistics logging interval: %s seconds.", stats_interval)

    def report() -> None:
        log_memory_usage("periodic check")
        stats.log_current_stats("Periodic")

    pass2_errors: list[str] = []
    with StatsTicker(stats_interval, report):
        logger.info("--- Starting Pass 1: Distributing records to temporary member files ---")
        pass1_start = time.monotonic()
        pass1_errors = _run_pass1(
            files, temp_path, max_intermediate_files, stats, filter_config, workers
        )
        stats.log_current_stats("Pass 1")
        logger.info("--- Pass 1 Summary ---")
        logger.info("Duration: %s", format_elapsed(time.monotonic() - pass1_start))
        logger.info("Input files processed: %d (%d errors)", len(files), len(pass1_errors))
        if pass1_errors:
            logger.warning("%d input files encountered errors during Pass 1.", len(pass1_errors))
            for message in pass1_errors:
                logger.error("  - %s", message)

        logger.info("--- Starting Pass 2: Consolidating temporary files and splitting by prefix ---")
        pass2_start = time.monotonic()
        try:
            member_dirs = sorted(p for p in temp_path.iterdir() if p.is_dir())
        except OSError as exc:
            logger.error("Failed to read temporary directory %s: %s", temp_path, exc)
            _remove_tree(temp_path)
            raise OrganizeError(f"Failed to read temporary directory {temp_path}: {exc}") from exc

        if not member_dirs:
            logger.info(
                "No intermediate member directories found in %s. Nothing to process in Pass 2.",
                temp_path,
            )
            if temp_path.exists():
                _remove_tree(temp_path)
        else:
            logger.info("Found %d member directories to process in Pass 2.", len(member_dirs))
            pass2_errors = _run_pass2(
                member_dirs, output_dir, max_final_files_per_member, stats, filter_config, workers
            )
            stats.log_current_stats("Pass 2")
            logger.info("--- Pass 2 Summary ---")
            logger.info("Duration: %s", format_elapsed(time.monotonic() - pass2_start))
            logger.info(
                "Member directories processed: %d (%d errors)", len(member_dirs), len(pass2_errors)
            )
            if pass2_errors:
                logger.warning(
                    "%d member directories encountered errors during Pass 2.", len(pass2_errors)
                )
                for message in pass2_errors:
                    logger.error("  - %s", message)
                logger.warning(
                    "Note: Intermediate directories for failed members might not have been "
                    "cleaned up in %s",
                    temp_path,
                )

        logger.info("Attempting final cleanup of temporary directory: %s", temp_path)
        try:
            shutil.rmtree(temp_path)
        except OSError as exc:
            if temp_path.exists():
                logger.warning(
                    "Failed to remove temporary directory (it might contain failed member data): "
                    "%s - %s",
                    temp_path, exc,
                )
            else:
                logger.info(
                    "Temporary directory already removed (likely by last successful member "
                    "process or was empty)."
                )
        else:
            logger.info("Temporary directory successfully removed.")

    logger.info("-------------------- FINAL SUMMARY --------------------")
    logger.info("Total execution time: %s", format_elapsed(time.monotonic() - start))
    logger.info("Input files found: %d", len(files))
    if filter_file is not None:
        logger.info("Filter file used: %s", filter_file)
    logger.info("Pass 1 file processing errors: %d", len(pass1_errors))
    logger.info("Pass 2 member processing errors: %d", len(pass2_errors))
    stats.log_current_stats("Final")
    log_memory_usage("final")
    logger.info("Reorganization process finished.")
    logger.info("-------------------------------------------------------")

    if pass1_errors or pass2_errors:
        logger.error("Processing finished with errors.")
        raise OrganizeError("Processing finished with errors.")
    logger.info("Processing finished successfully.")
    return stats


def _non_negative_int(text: str) -> int:
    value = int(text)
    if value < 0:
        raise argparse.ArgumentTypeError("must be zero or a positive integer")
    return value


def main(argv=None) -> int:
    """Command-line entry point; returns the process exit code."""
    parser = argparse.ArgumentParser(
        prog="crossref-organizer",
        description="Reorganizes Crossref JSONL.gz files by member ID and DOI prefix, "
        "with optional filtering.",
    )
    parser.add_argument("-i", "--input", required=True, help="Directory containing input JSONL.gz files")
    parser.add_argument("-o", "--output-dir", required=True, help="Base directory for organized output structure")
    parser.add_argument(
        "--temp-dir",
        default=None,
        help="Temporary directory for intermediate files (defaults to <output_dir>/_cr_temp)",
    )
    parser.add_argument(
        "--max-intermediate-files", type=_non_negative_int, default=256,
        help="Max open intermediate member files (Pass 1)",
    )
    parser.add_argument(
        "--max-final-files-per-member", type=_non_negative_int, default=128,
        help="Max open final prefix files per member (Pass 2)",
    )
    parser.add_argument("-l", "--log-level", default="INFO", help="Logging level (DEBUG, INFO, WARN, ERROR)")
    parser.add_argument("-t", "--threads", type=_non_negative_int, default=0, help="Number of threads to use (0 for auto)")
    parser.add_argument(
        "--filter-file", default=None,
        help="Path to a JSON file specifying filters (members and optional prefixes)",
    )
    parser.add_argument(
        "-s", "--stats-interval", type=_non_negative_int, default=60,
        help="Interval in seconds to log statistics",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    args = parser.parse_args(argv)

    setup_logging(args.log_level)
    logger.info("Starting Crossref Reorganizer v%s", VERSION)
    try:
        run_organizer(
            args.input,
            args.output_dir,
            temp_dir=args.temp_dir,
            max_intermediate_files=args.max_intermediate_files,
            max_final_files_per_member=args.max_final_files_per_member,
            threads=args.threads,
            filter_file=args.filter_file,
            stats_interval=args.stats_interval,
        )
    except OrganizeError as exc:
        logger.error("%s", exc)
        return 1
    return 0