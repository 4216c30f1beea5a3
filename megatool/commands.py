"""Operator commands.  Each handler takes a Context and parsed args and returns an exit code."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from . import __version__, process
from .config import Config
from .display import FORMATS, display_records, print_server_names
from .errors import NotFoundError, ProcessError, StorageError, UnsupportedClientError, UserError
from .installer import SUPPORTED_CLIENTS, client_config_path, install, parse_client
from .locator import available_servers
from .logstore import LogStore, PruneReport
from .output import format_bytes, print_error, print_info
from .registry import Registry, ServerRecord, format_uptime, instance_number, same_name
from .supervisor import ServerSupervisor
from .viewer import follow_logs, show_logs

log = logging.getLogger(__name__)


@dataclass
class Context:
    config: Config
    registry: Registry
    store: LogStore
    terminate: Callable[[int], None] = process.terminate
    confirm: Callable[[str], bool] | None = None
    supervisor: ServerSupervisor | None = field(default=None, repr=False)

    @classmethod
    def from_config(cls, config: Config) -> Context:
        return cls(
            config=config,
            registry=Registry(config.registry_path),
            store=LogStore(config.log_root),
        )

    def get_supervisor(self) -> ServerSupervisor:
        if self.supervisor is None:
            self.supervisor = ServerSupervisor(self.config, self.registry, self.store)
        return self.supervisor


def confirm_action(prompt: str) -> bool:
    try:
        answer = input(f"{prompt} [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


# ---------------------------------------------------------------------------
# run / ls / version
# ---------------------------------------------------------------------------


def print_run_usage(ctx: Context) -> None:
    print("Usage: megatool run <server> [flags] [-- server args...]")
    print()
    print("Available servers:")
    print_server_names(available_servers(ctx.config.bin_dir), indent="  ")
    print()
    print("Flags:")
    print("  --configure       Configure the server")
    print("  --client <c>      MCP client that launched the server (e.g. cline)")
    print("  --sse             Serve over SSE instead of stdio")
    print("  --port <p>        SSE port (default: 8080)")
    print("  --base-url <u>    SSE base URL (default: http://localhost:<port>)")
    print("  --help            Show help for a server (after the server name)")


def cmd_run(ctx: Context, args: argparse.Namespace) -> int:
    if args.help:
        print_run_usage(ctx)
        return 0
    if not args.server:
        print("Available servers:")
        print_server_names(available_servers(ctx.config.bin_dir), indent="  ")
        raise UserError("no server specified")

    argv = list(args.child_args)
    if args.configure:
        argv.insert(0, "--configure")

    try:
        return ctx.get_supervisor().run(args.server, argv, client=args.client)
    except NotFoundError as exc:
        print_error(f"Server '{args.server}' not found: {exc}")
        print_info("Run 'megatool run --help' to see available servers", file=sys.stderr)
        return 1


def cmd_ls(ctx: Context, args: argparse.Namespace) -> int:
    print_server_names(available_servers(ctx.config.bin_dir))
    return 0


def cmd_version(ctx: Context, args: argparse.Namespace) -> int:
    print(f"megatool {__version__}")
    return 0


# ---------------------------------------------------------------------------
# ps / stop
# ---------------------------------------------------------------------------


def cmd_ps(ctx: Context, args: argparse.Namespace) -> int:
    if args.format not in FORMATS:
        raise UserError(f"unknown format: {args.format} (expected one of {', '.join(FORMATS)})")

    records = ctx.registry.read_active()
    if args.client:
        records = [r for r in records if r.client == args.client]
    display_records(records, args.format, args.fields, show_header=not args.no_header)
    return 0


def _describe(record: ServerRecord, records: list[ServerRecord], current: datetime | None = None) -> str:
    total = len(same_name(records, record.name))
    uptime = format_uptime(record.start_time, current)
    if total > 1:
        number = instance_number(record, records)
        return f"{record.name} (instance {number} of {total}, PID: {record.pid}, Uptime: {uptime})"
    return f"{record.name} (PID: {record.pid}, Uptime: {uptime})"


def cmd_stop(ctx: Context, args: argparse.Namespace) -> int:
    server: str | None = args.server
    pid: int | None = args.pid

    records = ctx.registry.read_active()

    if not server and not pid:
        print("Running servers:")
        if not records:
            print("  No running MCP servers found")
        for record in records:
            print(f"  {_describe(record, records)}")
        raise UserError("no server specified")

    candidates = [r for r in records if not args.client or r.client == args.client]
    matching = [
        r for r in candidates
        if (not server or r.name == server) and (not pid or r.pid == pid)
    ]

    if not matching:
        if server and pid:
            print_error(f"Server '{server}' with PID {pid} not found or not running")
        elif server:
            print_error(f"Server '{server}' not found or not running")
        else:
            print_error(f"Process with PID {pid} not found or not an MCP server")
        if records:
            print_info("Run 'megatool ps' to see running servers")
        return 1

    if len(matching) > 1 and not args.all and not pid:
        print_error(f"Server '{server}' has {len(matching)} running instances")
        print_info(f"Multiple instances of server '{server}' are running:")
        for record in same_name(matching, server or ""):
            print_info(f"  {_describe(record, records)}")
        print_info("Use --pid to specify which instance to stop, or --all to stop all instances")
        return 1

    stopped = 0
    gone: set[int] = set()
    for record in matching:
        try:
            ctx.terminate(record.pid)
        except ProcessError as exc:
            if exc.kind == ProcessError.NOT_FOUND:
                gone.add(record.pid)
                print_info(f"Server '{record.name}' (PID: {record.pid}) was no longer running")
            else:
                print_error(f"Failed to stop server '{record.name}' (PID: {record.pid}): {exc}")
            continue
        gone.add(record.pid)
        stopped += 1
        print_info(f"Server '{record.name}' (PID: {record.pid}) stopped successfully")

    try:
        ctx.registry.write([r for r in records if r.pid not in gone])
    except StorageError as exc:
        print_error(f"Failed to update server records: {exc}")

    if 0 < stopped < len(matching):
        print_info(f"Stopped {stopped} of {len(matching)} instances")
    elif stopped > 1:
        print_info(f"All {stopped} instances stopped successfully")
    return 0 if stopped or len(gone) == len(matching) else 1


# ---------------------------------------------------------------------------
# logs
# ---------------------------------------------------------------------------


def cmd_logs(ctx: Context, args: argparse.Namespace) -> int:
    if args.lines <= 0:
        raise UserError("--lines must be a positive number")

    files = ctx.store.enumerate(args.server, active_only=not args.all)
    if not files:
        if args.server:
            hint = "" if args.all else " (use --all to include stopped servers)"
            print_error(f"No logs found for server '{args.server}'{hint}")
            return 1
        print_info("No logs found")
        return 0

    if args.follow:
        try:
            asyncio.run(follow_logs(ctx.store, files))
        except KeyboardInterrupt:
            pass
        return 0

    show_logs(ctx.store, files, args.lines)
    return 0


# ---------------------------------------------------------------------------
# cleanup
# ---------------------------------------------------------------------------


def _cleanup_records(ctx: Context, verbose: bool, dry_run: bool) -> None:
    records = ctx.registry.read()
    active = ctx.registry.cleanup_stale(records)
    removed = len(records) - len(active)

    if removed:
        print_info(f"Found {removed} stale server records")
    elif verbose:
        print_info("No stale server records found")

    if removed and dry_run:
        print_info(f"Would remove {removed} stale server records (dry run)")
    elif removed:
        ctx.registry.write(active)
        print_info(f"Removed {removed} stale server records")


def _print_scan_details(report: PruneReport) -> None:
    if not report.scans:
        print_info("No server log directories found")
    for scan in report.scans:
        print_info(f"Checking server directory: {scan.server}")
        for path in scan.active_files:
            print_info(f"  Found active log file: {path.name}")
        for path in scan.inactive_files:
            print_info(f"  Found inactive log file: {path.name}")
        if scan.newest_mtime is not None:
            newest = datetime.fromtimestamp(scan.newest_mtime).strftime("%Y-%m-%d %H:%M:%S")
            print_info(f"  Newest log is from {newest}")
        if scan.action == "remove-dir":
            print_info(f"  Will remove directory {scan.path}")
        elif scan.action == "remove-files":
            print_info(f"  Keeping directory, will remove {len(scan.inactive_files)} inactive log files")
        else:
            print_info("  Keeping directory")


def cmd_cleanup(ctx: Context, args: argparse.Namespace) -> int:
    if args.days < 0:
        raise UserError("--days must not be negative")

    _cleanup_records(ctx, args.verbose, args.dry_run)

    report = ctx.store.plan_prune(args.days)
    if args.verbose:
        _print_scan_details(report)

    if report.empty:
        print_info("No logs to clean up")
        return 0

    print_info("Cleanup summary:")
    if report.dirs_to_remove:
        print_info(f"  Directories to remove: {len(report.dirs_to_remove)}")
    if report.files_to_remove:
        print_info(f"  Log files to remove: {len(report.files_to_remove)}")
    print_info(f"  Total space to be freed: {format_bytes(report.bytes_to_free)}")

    if args.dry_run:
        print_info("Dry run completed. No files were actually removed.")
        return 0

    if not args.force:
        confirm = ctx.confirm
        if confirm is None and sys.stdin.isatty():
            confirm = confirm_action
        if confirm is not None and not confirm("Do you want to proceed with cleanup?"):
            print_info("Cleanup cancelled")
            return 0

    ctx.store.apply_prune(report)
    if args.verbose:
        for path in report.files_to_remove + report.dirs_to_remove:
            if path not in report.failed:
                print_info(f"Removed: {path}")

    if report.failed:
        print_error(f"Failed to remove {len(report.failed)} of {len(report.files_to_remove) + len(report.dirs_to_remove)} paths")
        return 1

    print_info("Cleanup completed successfully")
    print_info(
        f"Removed {len(report.dirs_to_remove)} directories and {len(report.files_to_remove)} log files"
    )
    print_info(f"Freed up {format_bytes(report.bytes_to_free)} of disk space")
    return 0


# ---------------------------------------------------------------------------
# install
# ---------------------------------------------------------------------------


def cmd_install(ctx: Context, args: argparse.Namespace) -> int:
    try:
        client = parse_client(args.client)
        path = client_config_path(client)
    except UnsupportedClientError as exc:
        print_error(str(exc))
        print_info(f"Supported client types: {', '.join(SUPPORTED_CLIENTS)}")
        return 1

    servers = available_servers(ctx.config.bin_dir)
    if args.server not in servers:
        print_error(f"Server '{args.server}' not found")
        print_info("Run 'megatool ls' to see available servers")
        return 1

    written = install(client, args.server, path)
    print_info(f"Server '{args.server}' installed successfully into {client.value} config at {written}")
    return 0


HANDLERS: dict[str, Callable[[Context, argparse.Namespace], int]] = {
    "run": cmd_run,
    "ls": cmd_ls,
    "ps": cmd_ps,
    "stop": cmd_stop,
    "logs": cmd_logs,
    "cleanup": cmd_cleanup,
    "install": cmd_install,
    "version": cmd_version,
}

