"""Registry: the persisted list of running server instances.

Stored as ``{"servers": [{name, pid, start_time, client?}, ...]}``.  Every
command re-reads the file; concurrent invocations race with
last-writer-wins semantics, which is harmless because stale entries are
dropped on every read-modify-write.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from . import process
from .errors import ConfigError, StorageError
from .timestamps import format_timestamp, now, parse_timestamp

log = logging.getLogger(__name__)


@dataclass
class ServerRecord:
    name: str
    pid: int
    start_time: datetime
    client: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": self.name,
            "pid": self.pid,
            "start_time": format_timestamp(self.start_time),
        }
        if self.client:
            data["client"] = self.client
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ServerRecord:
        start = parse_timestamp(str(data["start_time"]))
        if start is None:
            raise ValueError(f"invalid start_time: {data['start_time']!r}")
        pid = int(data["pid"])
        if pid <= 0:
            raise ValueError(f"invalid pid: {pid}")
        return cls(
            name=str(data["name"]),
            pid=pid,
            start_time=start,
            client=data.get("client") or None,
        )


class Registry:
    """Read/modify/write access to ``running-servers.json``."""

    def __init__(
        self,
        path: Path,
        is_alive: Callable[[int], bool] = process.alive,
    ) -> None:
        self.path = path
        self._is_alive = is_alive

    def read(self) -> list[ServerRecord]:
        """Load all records. A missing file is an empty registry."""
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        except OSError as exc:
            raise StorageError(
                f"Failed to read server records from {self.path}: {exc}", path=self.path
            ) from exc

        try:
            data = json.loads(raw)
            return [ServerRecord.from_dict(item) for item in data.get("servers") or []]
        except (json.JSONDecodeError, AttributeError, KeyError, TypeError, ValueError) as exc:
            raise ConfigError(
                f"Failed to read server records from {self.path}: {exc}", path=self.path
            ) from exc

    def write(self, records: Iterable[ServerRecord]) -> None:
        payload = {"servers": [r.to_dict() for r in records]}
        try:
            self.path.parent.mkdir(mode=0o755, parents=True, exist_ok=True)
            self.path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
        except OSError as exc:
            raise StorageError(
                f"Failed to write server records to {self.path}: {exc}", path=self.path
            ) from exc

    def cleanup_stale(self, records: Iterable[ServerRecord]) -> list[ServerRecord]:
        """Return only the records whose process is still alive."""
        return [r for r in records if self._is_alive(r.pid)]

    def read_active(self, persist: bool = True) -> list[ServerRecord]:
        """Read, drop stale records, and write back if anything was dropped."""
        records = self.read()
        active = self.cleanup_stale(records)
        if persist and len(active) != len(records):
            try:
                self.write(active)
            except StorageError as exc:
                log.warning("Failed to update server records: %s", exc)
        return active

    def add(
        self,
        name: str,
        pid: int,
        client: str | None = None,
        start_time: datetime | None = None,
    ) -> ServerRecord:
        records = [r for r in self.cleanup_stale(self.read()) if r.pid != pid]
        record = ServerRecord(
            name=name,
            pid=pid,
            start_time=start_time or now(),
            client=client or None,
        )
        records.append(record)
        self.write(records)
        return record

    def remove_by_pid(self, pid: int) -> bool:
        records = self.read()
        remaining = [r for r in records if r.pid != pid]
        if len(remaining) == len(records):
            return False
        self.write(remaining)
        return True


# ---------------------------------------------------------------------------
# Presentation helpers
# ---------------------------------------------------------------------------


def format_uptime(start_time: datetime, current: datetime | None = None) -> str:
    """Render elapsed time as ``Nd Nh Nm`` / ``Nh Nm`` / ``Nm Ns`` / ``Ns``."""
    elapsed = ((current or now()) - start_time).total_seconds()
    total = max(0, int(round(elapsed)))

    days, rem = divmod(total, 86400)
    hours, rem = divmod(rem, 3600)
    minutes, seconds = divmod(rem, 60)

    if days > 0:
        return f"{days}d {hours}h {minutes}m"
    if hours > 0:
        return f"{hours}h {minutes}m"
    if minutes > 0:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


def same_name(records: Iterable[ServerRecord], name: str) -> list[ServerRecord]:
    """Records with this name, oldest first."""
    return sorted((r for r in records if r.name == name), key=lambda r: (r.start_time, r.pid))


def instance_number(record: ServerRecord, records: Iterable[ServerRecord]) -> int:
    """1-based position of ``record`` among same-named records by start time."""
    for index, other in enumerate(same_name(records, record.name), start=1):
        if other.pid == record.pid:
            return index
    return 0
