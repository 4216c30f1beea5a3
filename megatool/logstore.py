"""Log store: per-(server, pid) rotating log files under the log root.

Layout::

    <log_root>/<server>/server_<pid>.log          active file
    <log_root>/<server>/server_<pid>.log.<N>      rotated segment (N grows)
    <log_root>/<server>/server_<pid>.log.<N>.gz   compressed segment

Only the supervisor writes; viewers and ``cleanup`` read or delete.
"""

from __future__ import annotations

import asyncio
import gzip
import logging
import os
import re
import shutil
import threading
import time
from collections import deque
from collections.abc import AsyncIterator, Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path

from . import process

log = logging.getLogger(__name__)

MAX_LOG_SIZE = 10 * 1024 * 1024  # bytes
MAX_BACKUPS = 5
MAX_AGE_DAYS = 30
COMPRESS = True

DIR_MODE = 0o755

_ACTIVE_RE = re.compile(r"^server_(\d+)\.log$")
_ANY_SEGMENT_RE = re.compile(r"^server_(\d+)\.log(?:\.\d+)?(?:\.gz)?$")


def log_file_name(pid: int) -> str:
    return f"server_{pid}.log"


# ---------------------------------------------------------------------------
# Rotating writer
# ---------------------------------------------------------------------------


def _compress_segment(path: Path) -> None:
    """Gzip a rotated segment in place (``.N`` → ``.N.gz``), keeping its mtime."""
    target = path.with_name(path.name + ".gz")
    tmp = path.with_name(path.name + ".gz.tmp")
    try:
        stat = path.stat()
        with open(path, "rb") as src, gzip.open(tmp, "wb") as dst:
            shutil.copyfileobj(src, dst)
        os.utime(tmp, (stat.st_atime, stat.st_mtime))
        os.replace(tmp, target)
        path.unlink()
    except FileNotFoundError:
        # Pruned before we got to it
        tmp.unlink(missing_ok=True)
    except OSError as exc:
        log.warning("Failed to compress log segment %s: %s", path, exc)
        tmp.unlink(missing_ok=True)


class RotatingWriter:
    """Append-only, size-rotated log file.

    Each ``write`` is flushed immediately and never split across segments,
    so a caller that writes whole lines gets line-atomic output.
    """

    def __init__(
        self,
        path: Path,
        max_size: int = MAX_LOG_SIZE,
        max_backups: int = MAX_BACKUPS,
        max_age_days: int = MAX_AGE_DAYS,
        compress: bool = COMPRESS,
    ) -> None:
        self.path = path
        self.max_size = max_size
        self.max_backups = max_backups
        self.max_age_days = max_age_days
        self.compress = compress

        path.parent.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)
        self._fh = open(path, "ab")
        self._size = self._fh.tell()
        self._lock = threading.Lock()
        self._compressor = (
            ThreadPoolExecutor(max_workers=1, thread_name_prefix="log-compress")
            if compress
            else None
        )

    def __enter__(self) -> RotatingWriter:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._fh is None

    def write(self, data: bytes) -> int:
        with self._lock:
            if self._fh is None:
                raise ValueError(f"write to closed log writer: {self.path}")
            if self._size > 0 and self._size + len(data) > self.max_size:
                self._rotate()
            self._fh.write(data)
            self._fh.flush()
            self._size += len(data)
        return len(data)

    def write_line(self, line: str) -> int:
        return self.write(line.rstrip("\n").encode("utf-8") + b"\n")

    def close(self) -> None:
        with self._lock:
            if self._fh is not None:
                self._fh.close()
                self._fh = None
        if self._compressor is not None:
            # Wait for pending compression so nothing is left half-written
            self._compressor.shutdown(wait=True)

    def segments(self) -> dict[int, list[Path]]:
        """Rotated segments grouped by their sequence number."""
        prefix = self.path.name + "."
        grouped: dict[int, list[Path]] = {}
        for entry in self.path.parent.iterdir():
            name = entry.name
            if not name.startswith(prefix) or name.endswith(".tmp"):
                continue
            suffix = name[len(prefix):].removesuffix(".gz")
            if suffix.isdigit():
                grouped.setdefault(int(suffix), []).append(entry)
        return grouped

    def _rotate(self) -> None:
        assert self._fh is not None
        self._fh.close()

        next_index = max(self.segments(), default=0) + 1
        rotated = self.path.with_name(f"{self.path.name}.{next_index}")
        os.replace(self.path, rotated)

        self._fh = open(self.path, "ab")
        self._size = 0

        if self._compressor is not None:
            self._compressor.submit(_compress_segment, rotated)
        self._remove_old_segments()

    def _remove_old_segments(self) -> None:
        grouped = self.segments()
        keep = set(sorted(grouped)[-self.max_backups:]) if self.max_backups > 0 else set()
        cutoff = time.time() - self.max_age_days * 86400

        for index, paths in grouped.items():
            expired = False
            if self.max_age_days > 0:
                try:
                    expired = all(p.stat().st_mtime < cutoff for p in paths)
                except FileNotFoundError:
                    continue
            if index in keep and not expired:
                continue
            for p in paths:
                try:
                    p.unlink(missing_ok=True)
                except OSError as exc:
                    log.warning("Failed to remove old log segment %s: %s", p, exc)


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LogFile:
    path: Path
    server: str
    pid: int


@dataclass
class ServerScan:
    """What ``plan_prune`` found in one server directory."""

    server: str
    path: Path
    active_files: list[Path] = field(default_factory=list)
    inactive_files: list[Path] = field(default_factory=list)
    newest_mtime: float | None = None
    action: str = "keep"  # keep | remove-files | remove-dir


@dataclass
class PruneReport:
    threshold_days: int
    scans: list[ServerScan] = field(default_factory=list)
    dirs_to_remove: list[Path] = field(default_factory=list)
    files_to_remove: list[Path] = field(default_factory=list)
    bytes_to_free: int = 0
    failed: list[Path] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.dirs_to_remove and not self.files_to_remove


def _dir_size(path: Path) -> int:
    total = 0
    for dirpath, _dirnames, filenames in os.walk(path):
        for name in filenames:
            try:
                total += os.stat(os.path.join(dirpath, name)).st_size
            except OSError:
                continue
    return total


class LogStore:
    def __init__(
        self,
        root: Path,
        is_alive: Callable[[int], bool] = process.alive,
        max_size: int = MAX_LOG_SIZE,
        max_backups: int = MAX_BACKUPS,
        max_age_days: int = MAX_AGE_DAYS,
        compress: bool = COMPRESS,
    ) -> None:
        self.root = root
        self._is_alive = is_alive
        self.max_size = max_size
        self.max_backups = max_backups
        self.max_age_days = max_age_days
        self.compress = compress

    def server_dir(self, server: str) -> Path:
        return self.root / server

    def log_path(self, server: str, pid: int) -> Path:
        return self.server_dir(server) / log_file_name(pid)

    def open(self, server: str, pid: int) -> RotatingWriter:
        """Open the active log file for appending, creating directories on demand."""
        self.root.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)
        return RotatingWriter(
            self.log_path(server, pid),
            max_size=self.max_size,
            max_backups=self.max_backups,
            max_age_days=self.max_age_days,
            compress=self.compress,
        )

    # -- enumeration ------------------------------------------------------

    def enumerate(self, server: str | None = None, active_only: bool = False) -> list[LogFile]:
        """List active log files, optionally for one server / live pids only.

        Unreadable directories are logged and skipped; this never raises.
        """
        if server is not None:
            server_dirs = [self.server_dir(server)]
        else:
            try:
                server_dirs = sorted(p for p in self.root.iterdir() if p.is_dir())
            except FileNotFoundError:
                return []
            except OSError as exc:
                log.warning("Failed to read log directory %s: %s", self.root, exc)
                return []

        files: list[LogFile] = []
        for server_dir in server_dirs:
            try:
                entries = sorted(server_dir.iterdir())
            except FileNotFoundError:
                continue
            except OSError as exc:
                log.warning("Failed to read server log directory %s: %s", server_dir, exc)
                continue

            for entry in entries:
                match = _ACTIVE_RE.match(entry.name)
                if not match or not entry.is_file():
                    continue
                pid = int(match.group(1))
                if active_only and not self._is_alive(pid):
                    continue
                files.append(LogFile(path=entry, server=server_dir.name, pid=pid))

        files.sort(key=lambda f: f.path)
        return files

    # -- reading ----------------------------------------------------------

    @staticmethod
    def tail_last(path: Path, n: int) -> list[str]:
        """Return the last ``n`` lines of a file (without line terminators)."""
        if n <= 0:
            return []
        lines: deque[str] = deque(maxlen=n)
        with open(path, encoding="utf-8", errors="replace") as fh:
            for line in fh:
                lines.append(line.rstrip("\r\n"))
        return list(lines)

    async def follow(
        self,
        files: list[LogFile],
        poll_interval: float = 0.25,
        from_end: bool = True,
    ) -> AsyncIterator[tuple[LogFile, str]]:
        """Yield ``(file, line)`` as lines are appended to any of ``files``.

        One reader task per file; lines from different files are merged in
        arrival order with no global ordering.  Ends only when every reader
        has failed, or when the consumer stops iterating.
        """
        queue: asyncio.Queue[tuple[LogFile, str] | None] = asyncio.Queue()
        tasks = [
            asyncio.create_task(
                _follow_file(f, queue, poll_interval, from_end),
                name=f"follow-{f.server}-{f.pid}",
            )
            for f in files
        ]
        remaining = len(tasks)
        try:
            while remaining:
                item = await queue.get()
                if item is None:
                    remaining -= 1
                    continue
                yield item
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    # -- pruning ----------------------------------------------------------

    def plan_prune(self, threshold_days: int) -> PruneReport:
        """Classify every server directory and decide what cleanup would remove.

        * no log files at all: remove the directory
        * no live pid and newest file older than the threshold: remove the directory
        * otherwise: keep the directory, remove files of dead pids
        """
        report = PruneReport(threshold_days=threshold_days)
        threshold = time.time() - threshold_days * 86400

        try:
            server_dirs = sorted(p for p in self.root.iterdir() if p.is_dir())
        except FileNotFoundError:
            return report
        except OSError as exc:
            log.warning("Failed to read log directory %s: %s", self.root, exc)
            return report

        for server_dir in server_dirs:
            scan = ServerScan(server=server_dir.name, path=server_dir)
            try:
                entries = sorted(server_dir.iterdir())
            except OSError as exc:
                log.warning("Failed to read server log directory %s: %s", server_dir, exc)
                continue

            for entry in entries:
                match = _ANY_SEGMENT_RE.match(entry.name)
                if not match:
                    continue
                try:
                    mtime = entry.stat().st_mtime
                except OSError as exc:
                    log.warning("Failed to stat %s: %s", entry, exc)
                    continue
                if scan.newest_mtime is None or mtime > scan.newest_mtime:
                    scan.newest_mtime = mtime
                if self._is_alive(int(match.group(1))):
                    scan.active_files.append(entry)
                else:
                    scan.inactive_files.append(entry)

            if not scan.active_files and (scan.newest_mtime is None or scan.newest_mtime < threshold):
                scan.action = "remove-dir"
                report.dirs_to_remove.append(server_dir)
            elif scan.inactive_files:
                scan.action = "remove-files"
                report.files_to_remove.extend(scan.inactive_files)
            report.scans.append(scan)

        for path in report.files_to_remove:
            try:
                report.bytes_to_free += path.stat().st_size
            except OSError:
                continue
        for path in report.dirs_to_remove:
            report.bytes_to_free += _dir_size(path)
        return report

    def apply_prune(self, report: PruneReport) -> PruneReport:
        """Delete what ``plan_prune`` selected; failures are logged and recorded."""
        for path in report.files_to_remove:
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                log.warning("Failed to remove file %s: %s", path, exc)
                report.failed.append(path)
        for path in report.dirs_to_remove:
            try:
                shutil.rmtree(path)
            except FileNotFoundError:
                continue
            except OSError as exc:
                log.warning("Failed to remove directory %s: %s", path, exc)
                report.failed.append(path)
        return report

    def prune(self, threshold_days: int, dry_run: bool = False) -> PruneReport:
        report = self.plan_prune(threshold_days)
        if not dry_run:
            self.apply_prune(report)
        return report


async def _follow_file(
    logfile: LogFile,
    queue: asyncio.Queue[tuple[LogFile, str] | None],
    poll_interval: float,
    from_end: bool,
) -> None:
    """Tail one file, surviving rotation (new inode) and truncation."""
    fh = None
    inode: int | None = None
    pending = b""
    try:
        while True:
            if fh is None:
                try:
                    fh = open(logfile.path, "rb")
                except FileNotFoundError:
                    await asyncio.sleep(poll_interval)
                    continue
                inode = os.fstat(fh.fileno()).st_ino
                if from_end:
                    fh.seek(0, os.SEEK_END)
                # Files reopened after rotation are read from the start
                from_end = False

            chunk = fh.readline()
            if chunk:
                pending += chunk
                if pending.endswith(b"\n"):
                    line = pending.decode("utf-8", errors="replace").rstrip("\r\n")
                    pending = b""
                    await queue.put((logfile, line))
                continue

            await asyncio.sleep(poll_interval)
            try:
                stat = os.stat(logfile.path)
            except FileNotFoundError:
                continue
            if stat.st_ino != inode:
                # Lines appended to the old file right before the rename
                for chunk in fh:
                    pending += chunk
                    if pending.endswith(b"\n"):
                        line = pending.decode("utf-8", errors="replace").rstrip("\r\n")
                        pending = b""
                        await queue.put((logfile, line))
                fh.close()
                fh = None
                pending = b""
            elif stat.st_size < fh.tell():
                fh.seek(0)
                pending = b""
    except OSError as exc:
        log.warning("Failed to tail log file %s: %s", logfile.path, exc)
    finally:
        if fh is not None:
            fh.close()
        queue.put_nowait(None)
