"""Randomly sample lines from the JSONL.gz data files found in a directory."""

from __future__ import annotations

import argparse
import gzip
import logging
import math
import random
import time
import zlib
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Iterator, Sequence, TypeVar

from tqdm import tqdm

from .common import (
    find_jsonl_gz_files,
    format_elapsed,
    log_memory_usage,
    resolve_thread_count,
    setup_logging,
)

logger = logging.getLogger("crossref_datafile.sampler")

VERSION = "1.0.0"

_READ_ERRORS = (OSError, EOFError, zlib.error, UnicodeDecodeError)

T = TypeVar("T")
R = TypeVar("R")


class SamplingError(Exception):
    """Raised when input files cannot be counted, sampled or the output written."""


def _iter_lines(handle) -> Iterator[str]:
    """Yield decoded lines without their line terminator."""
    for raw in handle:
        yield raw.removesuffix(b"\n").removesuffix(b"\r").decode("utf-8")


def count_lines_in_file(filepath) -> int:
    """Count the lines of a gzip-compressed text file."""
    filepath = Path(filepath)
    try:
        handle = gzip.open(filepath, "rb")
    except OSError as exc:
        raise SamplingError(f"Failed to open {filepath} for counting: {exc}") from exc
    try:
        with handle:
            return sum(1 for _ in _iter_lines(handle))
    except _READ_ERRORS as exc:
        raise SamplingError(f"Failed reading line during count in {filepath}: {exc}") from exc


def sample_lines_from_file(filepath, num_samples: int, rng: random.Random | None = None) -> list[str]:
    """Reservoir-sample up to ``num_samples`` lines from a gzip-compressed file."""
    if num_samples <= 0:
        return []
    filepath = Path(filepath)
    rng = rng if rng is not None else random.Random()
    reservoir: list[str] = []
    lines_seen = 0
    try:
        handle = gzip.open(filepath, "rb")
    except OSError as exc:
        raise SamplingError(f"Failed to open {filepath} for sampling: {exc}") from exc
    try:
        with handle:
            for line in _iter_lines(handle):
                lines_seen += 1
                if len(reservoir) < num_samples:
                    reservoir.append(line)
                else:
                    j = rng.randrange(lines_seen)
                    if j < len(reservoir):
                        reservoir[j] = line
    except _READ_ERRORS as exc:
        raise SamplingError(f"Failed reading line during sampling in {filepath}: {exc}") from exc

    if lines_seen < num_samples:
        logger.warning(
            "File %s had fewer lines (%d) than requested samples (%d), taking all lines.",
            filepath, lines_seen, num_samples,
        )
    return reservoir


def calculate_samples_per_file(
    file_counts: Sequence[tuple[Path, int]],
    total_lines: int,
    total_samples_needed: int,
) -> list[tuple[Path, int]]:
    """Share a sample size across files in proportion to their line counts."""
    if total_lines == 0:
        logger.info("Total line count is 0. No samples can be taken.")
        return []
    if total_samples_needed == 0:
        logger.info("Requested sample count is 0.")
        return []
    if total_samples_needed > total_lines:
        logger.warning(
            "Requested sample count (%d) exceeds total lines found (%d). Sampling all lines.",
            total_samples_needed, total_lines,
        )
        return [(path, count) for path, count in file_counts]

    targets = [
        (path, count, count / total_lines * total_samples_needed)
        for path, count in file_counts
    ]
    allocation = [[path, min(math.floor(target), count)] for path, count, target in targets]
    remaining = max(total_samples_needed - sum(n for _, n in allocation), 0)

    if remaining > 0:
        by_fraction = sorted(targets, key=lambda t: t[2] - math.floor(t[2]), reverse=True)
        for path, count, _ in by_fraction:
            if remaining == 0:
                break
            entry = next((e for e in allocation if e[0] == path), None)
            if entry is not None and entry[1] < count:
                entry[1] += 1
                remaining -= 1

    allocated = sum(n for _, n in allocation)
    if allocated != total_samples_needed:
        logger.warning(
            "Final allocated sample count (%d) differs slightly from requested (%d) "
            "due to file sizes and rounding. Adjusting...",
            allocated, total_samples_needed,
        )
    logger.info("Calculated sample distribution across %d files.", len(allocation))
    return [(path, n) for path, n in allocation]


def _run_parallel(
    func: Callable[[T], R], items: Sequence[T], workers: int, desc: str
) -> list[R | SamplingError]:
    """Apply ``func`` to every item on a thread pool, keeping order and capturing errors."""

    def guarded(item: T) -> R | SamplingError:
        try:
            return func(item)
        except SamplingError as exc:
            return exc

    with ThreadPoolExecutor(max_workers=workers) as pool:
        return list(tqdm(pool.map(guarded, items), total=len(items), desc=desc, unit="file"))


def _create_empty(path: Path) -> None:
    try:
        path.open("w").close()
    except OSError as exc:
        raise SamplingError(f"Failed to create output file: {path}: {exc}") from exc
    logger.info("Created empty output file: %s", path)


def run_sampler(
    input_dir,
    output_file,
    sample_count: int,
    threads: int = 0,
    shuffle: bool = True,
    rng: random.Random | None = None,
) -> list[str]:
    """Sample ``sample_count`` lines from all JSONL.gz files and write them to ``output_file``."""
    if sample_count < 0:
        raise ValueError("sample count cannot be negative")
    start = time.monotonic()
    rng = rng if rng is not None else random.Random()
    log_memory_usage("initial")
    input_dir = Path(input_dir)
    output_path = Path(output_file)

    if sample_count == 0:
        logger.info("Sample count is 0. Exiting.")
        _create_empty(output_path)
        return []

    try:
        output_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise SamplingError(f"Failed to create output directory: {output_path.parent}: {exc}") from exc

    workers = resolve_thread_count(threads)
    logger.info("Input directory: %s", input_dir)
    logger.info("Output file: %s", output_path)
    logger.info("Lines to sample: %d", sample_count)
    logger.info("Shuffle output: %s", shuffle)

    files = find_jsonl_gz_files(input_dir)
    if not files:
        logger.warning("No .jsonl.gz files found. Exiting.")
        return []
    logger.info("Found %d input files.", len(files))

    logger.info("--- Starting Phase 1: Counting total lines ---")
    count_start = time.monotonic()
    count_results = _run_parallel(count_lines_in_file, files, workers, "Counting")
    file_counts: list[tuple[Path, int]] = []
    count_errors: list[SamplingError] = []
    for path, result in zip(files, count_results):
        if isinstance(result, SamplingError):
            logger.error("Error counting lines: %s", result)
            count_errors.append(result)
        elif result > 0:
            file_counts.append((path, result))
        else:
            logger.debug("File %s has 0 lines, skipping.", path)
    if count_errors:
        logger.error("Errors occurred during line counting phase. Cannot proceed.")
        raise SamplingError("Line counting failed for one or more files.")

    total_lines = sum(count for _, count in file_counts)
    if total_lines == 0:
        logger.info("No lines found in any input files. Exiting.")
        _create_empty(output_path)
        return []
    logger.info(
        "Count phase completed in %s. Total lines found: %d",
        format_elapsed(time.monotonic() - count_start), total_lines,
    )
    log_memory_usage("after counting")

    plan = [
        (path, n)
        for path, n in calculate_samples_per_file(file_counts, total_lines, sample_count)
        if n > 0
    ]
    if not plan:
        logger.warning(
            "Calculated 0 samples to take from any file, though %d were requested.", sample_count
        )
        _create_empty(output_path)
        return []

    logger.info("--- Starting Phase 2: Sampling lines ---")
    sample_start = time.monotonic()
    jobs = [(path, n, random.Random(rng.getrandbits(64))) for path, n in plan]
    sample_results = _run_parallel(
        lambda job: sample_lines_from_file(*job), jobs, workers, "Sampling"
    )
    sampled: list[str] = []
    sample_errors = 0
    for result in sample_results:
        if isinstance(result, SamplingError):
            logger.error("Error sampling lines: %s", result)
            sample_errors += 1
        else:
            sampled.extend(result)
    if sample_errors:
        logger.error("Errors occurred during sampling phase. Output might be incomplete.")
        raise SamplingError("Sampling failed for one or more files.")
    logger.info(
        "Sampling phase completed in %s. Collected %d lines (requested %d).",
        format_elapsed(time.monotonic() - sample_start), len(sampled), sample_count,
    )
    log_memory_usage("after sampling")

    if shuffle:
        logger.info("Shuffling %d sampled lines...", len(sampled))
        shuffle_start = time.monotonic()
        rng.shuffle(sampled)
        logger.info("Shuffling took %s", format_elapsed(time.monotonic() - shuffle_start))
    else:
        logger.info("Skipping final shuffle.")

    logger.info("Writing %d sampled lines to %s", len(sampled), output_path)
    write_start = time.monotonic()
    try:
        with output_path.open("w", encoding="utf-8", newline="") as out:
            for line in tqdm(sampled, desc="Writing", unit="line"):
                out.write(line)
                out.write("\n")
    except OSError as exc:
        raise SamplingError(f"Failed to write output file: {output_path}: {exc}") from exc
    logger.info("Finished writing output file in %s", format_elapsed(time.monotonic() - write_start))
    log_memory_usage("final")

    logger.info("-------------------- FINAL SUMMARY --------------------")
    logger.info("Total execution time: %s", format_elapsed(time.monotonic() - start))
    logger.info("Input files processed: %d", len(files))
    logger.info("Total lines found: %d", total_lines)
    logger.info("Lines sampled: %d", len(sampled))
    logger.info("Output file: %s", output_path)
    logger.info("-------------------------------------------------------")
    return sampled


def _non_negative_int(text: str) -> int:
    value = int(text)
    if value < 0:
        raise argparse.ArgumentTypeError("must be zero or a positive integer")
    return value


def main(argv=None) -> int:
    """Command-line entry point; returns the process exit code."""
    parser = argparse.ArgumentParser(
        prog="crossref-sampler",
        description="Randomly samples lines from Crossref Data File JSONL.gz files in a directory.",
    )
    parser.add_argument("-i", "--input-dir", required=True, help="Directory containing input JSONL.gz files")
    parser.add_argument("-o", "--output-file", required=True, help="Path to the output file where sampled lines will be written")
    parser.add_argument("-n", "--sample-count", type=_non_negative_int, required=True, help="Number of lines to sample")
    parser.add_argument("-l", "--log-level", default="INFO", help="Logging level (TRACE, DEBUG, INFO, WARN, ERROR)")
    parser.add_argument("-t", "--threads", type=_non_negative_int, default=0, help="Number of threads to use (0 for auto)")
    parser.add_argument(
        "--no-shuffle",
        action="store_true",
        help="Don't shuffle the final sample (faster, but output order depends on processing order)",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    args = parser.parse_args(argv)

    setup_logging(args.log_level)
    logger.info("Starting JSONL Sampler v%s", VERSION)
    try:
        run_sampler(
            args.input_dir,
            args.output_file,
            args.sample_count,
            threads=args.threads,
            shuffle=not args.no_shuffle,
        )
    except SamplingError as exc:
        logger.error("%s", exc)
        return 1
    return 0