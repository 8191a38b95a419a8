"""Writers for the organizer: per-member intermediate files and per-prefix final files."""

from __future__ import annotations

import gzip
import json
import logging
import shutil
import threading
import time
import uuid
from collections import OrderedDict
from pathlib import Path
from typing import BinaryIO

from .common import format_elapsed
from .organizer_filters import FilterConfig, OrganizerStats, extract_doi_prefix

logger = logging.getLogger("crossref_datafile.organizer")

UNKNOWN_PREFIX = "_unknown_"
FINAL_FILE_NAME = "data.jsonl.gz"


class IntermediateWriterManager:
    """Append lines to per-member part files, keeping at most ``max_open`` files open.

    The least recently used writer is closed when a new member needs a file and the
    limit has been reached; a member seen again afterwards gets a fresh part file.
    """

    def __init__(self, base_temp_dir, max_open: int) -> None:
        self.base_temp_dir = Path(base_temp_dir)
        if self.base_temp_dir.exists():
            logger.info("Cleaning existing temporary directory: %s", self.base_temp_dir)
            try:
                shutil.rmtree(self.base_temp_dir)
            except OSError as exc:
                raise OSError(
                    f"Failed to remove existing temp directory: {self.base_temp_dir}: {exc}"
                ) from exc
        try:
            self.base_temp_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise OSError(
                f"Failed to create base temp directory: {self.base_temp_dir}: {exc}"
            ) from exc
        self.max_open = max(1, max_open)
        self._writers: OrderedDict[str, BinaryIO] = OrderedDict()
        self._created_dirs: set[Path] = set()
        self._lock = threading.Lock()
        self._files_opened = 0
        self._closed = False

    @property
    def files_opened(self) -> int:
        """Number of intermediate files opened so far."""
        with self._lock:
            return self._files_opened

    @property
    def open_count(self) -> int:
        """Number of intermediate files currently open."""
        with self._lock:
            return len(self._writers)

    def _evict_oldest(self) -> None:
        evict_id, writer = self._writers.popitem(last=False)
        logger.debug("Evicting intermediate writer for member %s", evict_id)
        try:
            writer.close()
        except OSError as exc:
            logger.warning(
                "Error flushing evicted intermediate writer for member %s: %s", evict_id, exc
            )

    def _open_writer(self, member_id: str) -> BinaryIO:
        member_dir = self.base_temp_dir / member_id
        if member_dir not in self._created_dirs:
            try:
                member_dir.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                logger.error("Failed to create intermediate directory %s: %s", member_dir, exc)
                raise
            logger.debug("Created intermediate directory: %s", member_dir)
            self._created_dirs.add(member_dir)
        file_path = member_dir / f"part_{uuid.uuid4()}.jsonl"
        try:
            writer = file_path.open("ab")
        except OSError as exc:
            raise OSError(f"Failed to open/create intermediate file: {file_path}: {exc}") from exc
        logger.debug("Opened intermediate file: %s", file_path)
        self._files_opened += 1
        return writer

    def write_line(self, member_id: str, line: str | bytes) -> None:
        """Append ``line`` and a newline to the part file of ``member_id``."""
        data = line.encode("utf-8") if isinstance(line, str) else bytes(line)
        with self._lock:
            if self._closed:
                raise ValueError("write to a closed IntermediateWriterManager")
            writer = self._writers.get(member_id)
            if writer is None:
                while len(self._writers) >= self.max_open:
                    self._evict_oldest()
                writer = self._open_writer(member_id)
                self._writers[member_id] = writer
            else:
                self._writers.move_to_end(member_id)
            writer.write(data)
            writer.write(b"\n")

    def flush_all(self) -> None:
        """Flush every open writer; raise OSError listing any that failed."""
        logger.info("Flushing all intermediate writers...")
        errors: list[str] = []
        with self._lock:
            for member_id, writer in self._writers.items():
                try:
                    writer.flush()
                except OSError as exc:
                    message = f"Failed to flush intermediate writer for member {member_id}: {exc}"
                    logger.error("%s", message)
                    errors.append(message)
        if errors:
            raise OSError(
                "Errors occurred during intermediate flush:\n - " + "\n - ".join(errors)
            )

    def close(self) -> None:
        """Flush and close every open writer. Calling it again does nothing."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            writers = list(self._writers.items())
            self._writers.clear()
        errors: list[str] = []
        for member_id, writer in writers:
            try:
                writer.close()
            except OSError as exc:
                message = f"Failed to flush intermediate writer for member {member_id}: {exc}"
                logger.error("%s", message)
                errors.append(message)
        if errors:
            raise OSError(
                "Errors occurred during intermediate flush:\n - " + "\n - ".join(errors)
            )

    def __enter__(self) -> "IntermediateWriterManager":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def _close_final_writer(writer: gzip.GzipFile) -> None:
    raw = writer.fileobj
    try:
        writer.close()
    finally:
        if raw is not None:
            raw.close()


def _open_final_writer(member_id: str, final_member_dir: Path, prefix: str) -> gzip.GzipFile:
    prefix_dir = final_member_dir / prefix
    try:
        prefix_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise OSError(
            f"[Member {member_id}] Failed to create final prefix directory: {prefix_dir}: {exc}"
        ) from exc
    final_path = prefix_dir / FINAL_FILE_NAME
    existed = final_path.exists()
    try:
        raw = final_path.open("ab")
    except OSError as exc:
        raise OSError(
            f"[Member {member_id}] Failed to open/create final file: {final_path}: {exc}"
        ) from exc
    logger.debug(
        "[Member %s] Opened final file%s %s", member_id, " (existing)" if existed else "", final_path
    )
    return gzip.GzipFile(fileobj=raw, mode="ab")


def _parse_prefix(line: str) -> str | None:
    record = json.loads(line)
    if not isinstance(record, dict):
        raise ValueError("expected a JSON object")
    return extract_doi_prefix(record)


def process_member_directory(
    member_dir_path,
    final_output_base_dir,
    max_final_files_per_member: int,
    stats: OrganizerStats,
    filter_config: FilterConfig | None = None,
) -> None:
    """Split one member's part files into ``<output>/<member>/<prefix>/data.jsonl.gz``.

    The intermediate directory is removed once its lines have been written.
    """
    member_dir_path = Path(member_dir_path)
    final_output_base_dir = Path(final_output_base_dir)
    member_id = member_dir_path.name
    if not member_id:
        raise ValueError(f"Could not extract member ID from path: {member_dir_path}")
    start = time.monotonic()
    max_open = max(1, max_final_files_per_member)
    logger.debug("[Member %s] Starting Pass 2 processing", member_id)

    member_filter = filter_config.get(member_id) if filter_config is not None else None
    allowed_prefixes = member_filter.prefixes if member_filter is not None else None

    final_member_dir = final_output_base_dir / member_id
    try:
        final_member_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise OSError(
            f"[Member {member_id}] Failed to create final output directory: {final_member_dir}: {exc}"
        ) from exc

    part_files = sorted(p for p in member_dir_path.glob("part_*.jsonl") if p.is_file())
    if not part_files:
        logger.warning(
            "[Member %s] No intermediate part files found in %s. Skipping.",
            member_id, member_dir_path,
        )
        try:
            member_dir_path.rmdir()
        except OSError as exc:
            logger.warning(
                "[Member %s] Failed to remove empty temp directory %s: %s",
                member_id, member_dir_path, exc,
            )
        with stats.lock:
            stats.pass2_members_processed += 1
        return

    writers: OrderedDict[str, gzip.GzipFile] = OrderedDict()
    lines_read = lines_written = parse_errors = prefix_missing = skipped = files_opened = 0
    unique_prefixes: set[str] = set()
    finish_errors: list[str] = []
    prefixes_written = 0

    try:
        for part_path in part_files:
            logger.debug("[Member %s] Processing part file: %s", member_id, part_path)
            try:
                handle = part_path.open("rb")
            except OSError as exc:
                raise OSError(
                    f"[Member {member_id}] Failed to open part file: {part_path}: {exc}"
                ) from exc
            with handle:
                for raw in handle:
                    lines_read += 1
                    try:
                        line = raw.removesuffix(b"\n").removesuffix(b"\r").decode("utf-8")
                    except UnicodeDecodeError as exc:
                        logger.warning(
                            "[Member %s] Error reading line from %s: %s", member_id, part_path, exc
                        )
                        continue
                    if not line.strip():
                        continue
                    try:
                        prefix = _parse_prefix(line)
                    except ValueError as exc:
                        logger.warning(
                            "[Member %s] Failed to parse JSON in line from %s: %s (Line: %s)",
                            member_id, part_path, exc, line[:100],
                        )
                        parse_errors += 1
                        continue
                    if prefix is None:
                        prefix_missing += 1
                        prefix = UNKNOWN_PREFIX
                    if allowed_prefixes is not None and prefix not in allowed_prefixes:
                        skipped += 1
                        continue

                    writer = writers.get(prefix)
                    if writer is None:
                        while len(writers) >= max_open:
                            evict_prefix, evicted = writers.popitem(last=False)
                            logger.debug(
                                "[Member %s] Evicting final writer for prefix %s",
                                member_id, evict_prefix,
                            )
                            try:
                                _close_final_writer(evicted)
                            except OSError as exc:
                                logger.warning(
                                    "[Member %s] Error finishing evicted GZ stream for prefix %s: %s",
                                    member_id, evict_prefix, exc,
                                )
                        writer = _open_final_writer(member_id, final_member_dir, prefix)
                        writers[prefix] = writer
                        files_opened += 1
                    else:
                        writers.move_to_end(prefix)

                    writer.write(line.encode("utf-8"))
                    writer.write(b"\n")
                    lines_written += 1
                    unique_prefixes.add(prefix)
    finally:
        prefixes_written = len(writers)
        logger.debug(
            "[Member %s] Finishing and closing %d final writers...", member_id, len(writers)
        )
        for prefix, writer in writers.items():
            try:
                _close_final_writer(writer)
            except OSError as exc:
                message = f"[Member {member_id}] Failed to finish GZ stream for prefix {prefix}: {exc}"
                logger.error("%s", message)
                finish_errors.append(message)
            else:
                logger.debug(
                    "[Member %s] Successfully finished GZ stream for prefix %s.", member_id, prefix
                )
        writers.clear()

    with stats.lock:
        stats.pass2_members_processed += 1
        stats.pass2_lines_read += lines_read
        stats.pass2_lines_written += lines_written
        stats.pass2_json_parse_errors += parse_errors
        stats.pass2_prefix_missing += prefix_missing
        stats.pass2_lines_skipped_by_filter += skipped
        stats.pass2_final_files_opened += files_opened
        stats.pass2_unique_prefixes_total.update((member_id, p) for p in unique_prefixes)

    logger.debug("[Member %s] Removing intermediate directory: %s", member_id, member_dir_path)
    try:
        shutil.rmtree(member_dir_path)
    except OSError as exc:
        logger.error(
            "[Member %s] CRITICAL: Failed to remove intermediate directory %s: %s. "
            "Manual cleanup required.",
            member_id, member_dir_path, exc,
        )

    logger.info(
        "[Member %s] Finished Pass 2 processing in %s. Lines Read: %d, Lines Written: %d, "
        "Lines Skipped: %d, Prefixes Written: %d, Files Opened: %d, Errors: %d parse, "
        "%d missing prefix.",
        member_id, format_elapsed(time.monotonic() - start), lines_read, lines_written,
        skipped, prefixes_written, files_opened, parse_errors, prefix_missing,
    )

    if finish_errors:
        raise OSError(
            f"[Member {member_id}] Errors occurred during final writer finish:\n - "
            + "\n - ".join(finish_errors)
        )