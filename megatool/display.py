"""Rendering for ``ls`` and ``ps``."""

from __future__ import annotations

import csv
import json
import sys
from collections import Counter
from datetime import datetime
from typing import Any, TextIO

from .errors import UserError
from .registry import ServerRecord, format_uptime, instance_number

FORMATS = ("table", "json", "csv")
DEFAULT_FIELDS = "name,pid,uptime,client"

_HEADERS = {"name": "NAME", "pid": "PID", "uptime": "UPTIME", "client": "CLIENT"}
_COLUMN_PADDING = 2


def print_server_names(servers: list[str], indent: str = "", out: TextIO | None = None) -> None:
    out = out or sys.stdout
    if not servers:
        print(indent + "No MCP servers available", file=out)
        return
    for server in servers:
        print(indent + server, file=out)


def parse_fields(fields: str) -> list[str]:
    return [f.strip().lower() for f in fields.split(",") if f.strip()]


class RecordView:
    """Field values for a set of records, with instance numbering precomputed."""

    def __init__(self, records: list[ServerRecord], current: datetime | None = None) -> None:
        self.records = records
        self.current = current
        self.counts = Counter(r.name for r in records)

    def cell(self, record: ServerRecord, field: str) -> str:
        if field == "name":
            total = self.counts[record.name]
            if total > 1:
                return f"{record.name} (instance {instance_number(record, self.records)} of {total})"
            return record.name
        if field == "pid":
            return str(record.pid)
        if field == "uptime":
            return format_uptime(record.start_time, self.current)
        if field == "client":
            return record.client or "N/A"
        return "N/A"

    def item(self, record: ServerRecord, fields: list[str]) -> dict[str, Any]:
        item: dict[str, Any] = {}
        for field in fields:
            if field == "name":
                item["name"] = record.name
                total = self.counts[record.name]
                if total > 1:
                    item["instance_number"] = instance_number(record, self.records)
                    item["total_instances"] = total
            elif field == "pid":
                item["pid"] = record.pid
            elif field == "uptime":
                item["uptime"] = format_uptime(record.start_time, self.current)
            elif field == "client":
                item["client"] = record.client
        return item


def render_table(rows: list[list[str]], out: TextIO) -> None:
    if not rows:
        return
    widths = [max(len(row[i]) for row in rows) for i in range(len(rows[0]))]
    for row in rows:
        cells = [cell.ljust(widths[i] + _COLUMN_PADDING) for i, cell in enumerate(row[:-1])]
        print("".join(cells) + row[-1], file=out)


def display_records(
    records: list[ServerRecord],
    fmt: str = "table",
    fields: str = DEFAULT_FIELDS,
    show_header: bool = True,
    out: TextIO | None = None,
    current: datetime | None = None,
) -> None:
    out = out or sys.stdout
    if fmt not in FORMATS:
        raise UserError(f"unknown format: {fmt}")
    if not records:
        print("No running MCP servers found", file=out)
        return

    field_list = parse_fields(fields) or parse_fields(DEFAULT_FIELDS)
    view = RecordView(records, current)

    if fmt == "json":
        print(json.dumps([view.item(r, field_list) for r in records], indent=2), file=out)
        return

    rows = [[view.cell(r, f) for f in field_list] for r in records]
    if show_header:
        rows.insert(0, [_HEADERS.get(f, f.upper()) for f in field_list])

    if fmt == "csv":
        writer = csv.writer(out, lineterminator="\n")
        writer.writerows(rows)
    else:
        render_table(rows, out)
