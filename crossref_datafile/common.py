"""Shared helpers: file discovery, logging setup, timing, memory and periodic stats."""

from __future__ import annotations

import csv
import io
import logging
import os
import subprocess
import sys
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

logger = logging.getLogger("crossref_datafile")

TRACE = 5
logging.addLevelName(TRACE, "TRACE")

_LOG_LEVELS = {
    "TRACE": TRACE,
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}

_NANOS_PER_SECOND = 1_000_000_000
_NANOS_PER_MILLI = 1_000_000


def format_elapsed(seconds: float) -> str:
    """Render a duration as ``Xh Ym Zs``, ``Ym Zs`` or ``Z.mmms``."""
    if seconds < 0:
        raise ValueError("elapsed time cannot be negative")
    nanos = round(seconds * _NANOS_PER_SECOND)
    total_secs, rem = divmod(nanos, _NANOS_PER_SECOND)
    millis = rem // _NANOS_PER_MILLI
    hours = total_secs // 3600
    minutes = (total_secs % 3600) // 60
    secs = total_secs % 60
    if hours > 0:
        return f"{hours}h {minutes}m {secs}s"
    if minutes > 0:
        return f"{minutes}m {secs}s"
    return f"{secs}.{millis:03d}s"


def find_jsonl_gz_files(directory: str | os.PathLike) -> list[Path]:
    """Return every ``*.jsonl.gz`` file below ``directory``, in sorted order."""
    pattern = Path(directory) / "**" / "*.jsonl.gz"
    logger.info("Searching for files matching pattern: %s", pattern)
    paths = sorted(p for p in Path(directory).glob("**/*.jsonl.gz") if p.is_file())
    if not paths:
        logger.warning("No files found matching the pattern: %s", pattern)
    return paths


def parse_log_level(name: str) -> int:
    """Map a level name to a logging level; unknown names fall back to INFO."""
    level = _LOG_LEVELS.get(name.upper())
    if level is None:
        print(f"Invalid log level '{name}', defaulting to INFO.", file=sys.stderr)
        return logging.INFO
    return level


def setup_logging(level_name: str) -> int:
    """Configure timestamped logging on the root logger and return the level used."""
    level = parse_log_level(level_name)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-5s [%(name)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )
    return level


def extract_member_id(value: object) -> str | None:
    """Return a member id from a JSON string or number, else None."""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return str(value)
    return None


def resolve_thread_count(threads: int) -> int:
    """Turn a requested thread count (0 meaning auto) into a concrete count."""
    if threads < 0:
        raise ValueError("thread count cannot be negative")
    if threads == 0:
        cores = os.cpu_count() or 1
        logger.info("Auto-detected %d CPU cores. Using %d threads.", cores, cores)
        return cores
    logger.info("Using specified %d threads.", threads)
    return threads


class StatsTicker:
    """Background thread that calls ``callback`` roughly every ``interval`` seconds."""

    _POLL = 0.5

    def __init__(self, interval: float, callback: Callable[[], None]) -> None:
        self.interval = interval
        self.callback = callback
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        logger.info("Stats logging thread started.")
        last = time.monotonic()
        while True:
            if self._stop.wait(self._POLL):
                logger.info("Stats thread received stop signal.")
                break
            if time.monotonic() - last >= self.interval:
                try:
                    self.callback()
                except Exception:  # a failing report must not kill the ticker
                    logger.exception("Periodic stats callback failed")
                last = time.monotonic()
        logger.info("Stats logging thread finished.")

    def start(self) -> "StatsTicker":
        if self.is_running:
            return self
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="stats-ticker", daemon=True)
        self._thread.start()
        return self

    def stop(self) -> None:
        logger.info("Signaling stats thread to stop...")
        self._stop.set()
        if self._thread is not None:
            logger.info("Waiting for stats thread to finish...")
            self._thread.join()
            self._thread = None
            logger.info("Stats thread joined successfully.")

    def __enter__(self) -> "StatsTicker":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()


@dataclass(frozen=True)
class MemoryStats:
    """Process memory figures in megabytes, with share of system memory if known."""

    rss_mb: float
    vm_size_mb: float
    percent: float | None = None


def _os_name() -> str:
    if sys.platform.startswith("linux"):
        return "linux"
    if sys.platform == "darwin":
        return "macos"
    if sys.platform.startswith("win"):
        return "windows"
    return sys.platform


def _second_field_float(line: str) -> float | None:
    parts = line.split()
    if len(parts) < 2:
        return None
    try:
        return float(parts[1])
    except ValueError:
        return None


def _run(args: list[str]) -> str | None:
    try:
        result = subprocess.run(args, capture_output=True, check=False)
    except OSError:
        return None
    return result.stdout.decode("utf-8", errors="replace")


def _parse_float(text: str | None) -> float | None:
    if text is None:
        return None
    try:
        return float(text.strip())
    except ValueError:
        return None


def _linux_memory() -> MemoryStats | None:
    try:
        content = Path(f"/proc/{os.getpid()}/status").read_text()
    except OSError:
        return None
    rss_kb = vm_kb = None
    for line in content.splitlines():
        if line.startswith("VmRSS:"):
            rss_kb = _second_field_float(line)
        elif line.startswith("VmSize:"):
            vm_kb = _second_field_float(line)
        if rss_kb is not None and vm_kb is not None:
            break
    if rss_kb is None or vm_kb is None:
        return None
    percent = None
    try:
        meminfo = Path("/proc/meminfo").read_text()
    except OSError:
        meminfo = ""
    total_line = next((l for l in meminfo.splitlines() if l.startswith("MemTotal:")), None)
    total_kb = _second_field_float(total_line) if total_line else None
    if total_kb is not None and total_kb > 0:
        percent = rss_kb / total_kb * 100.0
    return MemoryStats(rss_kb / 1024.0, vm_kb / 1024.0, percent)


def _macos_memory() -> MemoryStats | None:
    pid = str(os.getpid())
    rss_kb = _parse_float(_run(["ps", "-o", "rss=", "-p", pid]))
    if rss_kb is None:
        return None
    vsz_kb = _parse_float(_run(["ps", "-o", "vsz=", "-p", pid]))
    if vsz_kb is None:
        return None
    percent = None
    total_bytes = _parse_float(_run(["sysctl", "-n", "hw.memsize"]))
    if total_bytes is not None and total_bytes / 1024.0 > 0:
        percent = rss_kb / (total_bytes / 1024.0) * 100.0
    return MemoryStats(rss_kb / 1024.0, vsz_kb / 1024.0, percent)


def _windows_memory() -> MemoryStats | None:
    output = _run(["tasklist", "/fi", f"PID eq {os.getpid()}", "/fo", "csv", "/nh"])
    if not output:
        return None
    rows = [row for row in csv.reader(io.StringIO(output.strip())) if row]
    if not rows or len(rows[0]) < 2:
        return None
    mem_usage = rows[0][-1].strip().strip('"')
    if mem_usage.endswith(" K"):
        mem_usage = mem_usage[:-2]
    rss_kb = _parse_float(mem_usage.replace(",", "").replace("\xa0", "").replace(".", ""))
    if rss_kb is None:
        return None
    percent = None
    mem_out = _run(["wmic", "ComputerSystem", "get", "TotalPhysicalMemory", "/value"])
    if mem_out:
        line = next(
            (l for l in mem_out.splitlines() if l.startswith("TotalPhysicalMemory=")), None
        )
        total_bytes = _parse_float(line.split("=", 1)[1]) if line else None
        if total_bytes is not None and total_bytes / 1024.0 > 0:
            percent = rss_kb / (total_bytes / 1024.0) * 100.0
    return MemoryStats(rss_kb / 1024.0, 0.0, percent)


def get_memory_usage() -> MemoryStats | None:
    """Measure this process's memory use, or return None where unsupported."""
    name = _os_name()
    if name == "linux":
        return _linux_memory()
    if name == "macos":
        return _macos_memory()
    if name == "windows":
        return _windows_memory()
    return None


def describe_memory_usage(note: str, stats: MemoryStats | None) -> str:
    """Build the log message for a memory measurement."""
    if stats is None:
        return f"Memory usage tracking not available or failed on this platform ({_os_name()})"
    percent_str = "N/A" if stats.percent is None else f"{stats.percent:.1f}%"
    vm_str = f"{stats.vm_size_mb:.1f} MB virtual" if stats.vm_size_mb > 0 else ""
    comma = ", " if vm_str else ""
    return (
        f"Memory usage ({note}): {stats.rss_mb:.1f} MB physical (RSS)"
        f"{comma}{vm_str} {percent_str} of system memory"
    )


def log_memory_usage(note: str) -> None:
    """Log the current memory use under ``note``."""
    logger.info("%s", describe_memory_usage(note, get_memory_usage()))