"""Tests for the operator commands, driven through Context with fakes."""

import argparse
import io
import json
import os
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from conftest import FakeLiveness

from megatool import commands
from megatool.commands import (
    Context,
    cmd_cleanup,
    cmd_install,
    cmd_logs,
    cmd_ls,
    cmd_ps,
    cmd_run,
    cmd_stop,
    cmd_version,
)
from megatool.config import Config
from megatool.errors import ProcessError, StorageError, UserError
from megatool.logstore import LogStore
from megatool.registry import Registry, ServerRecord


class FakeTerminator:
    def __init__(self, missing: tuple[int, ...] = (), denied: tuple[int, ...] = ()) -> None:
        self.calls: list[int] = []
        self.missing = missing
        self.denied = denied

    def __call__(self, pid: int) -> None:
        self.calls.append(pid)
        if pid in self.missing:
            raise ProcessError(pid, ProcessError.NOT_FOUND, f"process {pid} not found")
        if pid in self.denied:
            raise ProcessError(pid, ProcessError.PERMISSION_DENIED, f"permission denied for {pid}")


def _ctx(config: Config, *live: int, terminate=None, confirm=None) -> Context:
    alive = FakeLiveness(*live)
    return Context(
        config=config,
        registry=Registry(config.registry_path, is_alive=alive),
        store=LogStore(config.log_root, is_alive=alive, compress=False),
        terminate=terminate or FakeTerminator(),
        confirm=confirm,
    )


def _seed(ctx: Context, *records: tuple) -> None:
    started = datetime.now(timezone.utc) - timedelta(minutes=5)
    ctx.registry.write(
        [
            ServerRecord(name=name, pid=pid, start_time=started + timedelta(seconds=offset), client=client)
            for name, pid, offset, client in records
        ]
    )


def _log(config: Config, server: str, pid: int, lines: list[str], age_days: float = 0) -> Path:
    path = config.log_root / server / f"server_{pid}.log"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("".join(line + "\n" for line in lines))
    if age_days:
        stamp = time.time() - age_days * 86400
        os.utime(path, (stamp, stamp))
    return path


def _stop_args(server=None, pid=None, all=False, client=None) -> argparse.Namespace:
    return argparse.Namespace(server=server, pid=pid, all=all, client=client)


# --- stop ---


def test_stop_single_instance(config: Config, capsys):
    term = FakeTerminator()
    ctx = _ctx(config, 100, terminate=term)
    _seed(ctx, ("calculator", 100, 0, None))

    assert cmd_stop(ctx, _stop_args("calculator")) == 0

    assert term.calls == [100]
    assert "Server 'calculator' (PID: 100) stopped successfully" in capsys.readouterr().out
    assert ctx.registry.read() == []


def test_stop_multiple_instances_needs_disambiguation(config: Config, capsys):
    term = FakeTerminator()
    ctx = _ctx(config, 201, 202, terminate=term)
    _seed(ctx, ("github", 201, 0, None), ("github", 202, 10, None))

    assert cmd_stop(ctx, _stop_args("github")) == 1

    captured = capsys.readouterr()
    assert "Error: Server 'github' has 2 running instances" in captured.err
    out = captured.out
    assert "Multiple instances of server 'github' are running:" in out
    assert "github (instance 1 of 2, PID: 201" in out
    assert "github (instance 2 of 2, PID: 202" in out
    assert term.calls == []
    assert len(ctx.registry.read()) == 2


def test_stop_by_pid(config: Config):
    term = FakeTerminator()
    ctx = _ctx(config, 201, 202, terminate=term)
    _seed(ctx, ("github", 201, 0, None), ("github", 202, 10, None))

    assert cmd_stop(ctx, _stop_args("github", pid=202)) == 0

    assert term.calls == [202]
    assert [r.pid for r in ctx.registry.read()] == [201]


def test_stop_all(config: Config, capsys):
    term = FakeTerminator()
    ctx = _ctx(config, 201, 202, 300, terminate=term)
    _seed(ctx, ("github", 201, 0, None), ("github", 202, 10, None), ("calculator", 300, 0, None))

    assert cmd_stop(ctx, _stop_args("github", all=True)) == 0

    assert sorted(term.calls) == [201, 202]
    assert "All 2 instances stopped successfully" in capsys.readouterr().out
    assert [r.pid for r in ctx.registry.read()] == [300]


def test_stop_pid_only(config: Config):
    term = FakeTerminator()
    ctx = _ctx(config, 5, terminate=term)
    _seed(ctx, ("example", 5, 0, None))
    assert cmd_stop(ctx, _stop_args(pid=5)) == 0
    assert term.calls == [5]


def test_stop_name_and_pid_must_both_match(config: Config, capsys):
    ctx = _ctx(config, 5)
    _seed(ctx, ("example", 5, 0, None))
    assert cmd_stop(ctx, _stop_args("github", pid=5)) == 1
    assert "Error: Server 'github' with PID 5 not found or not running" in capsys.readouterr().err


def test_stop_unknown_server(config: Config, capsys):
    ctx = _ctx(config, 5)
    _seed(ctx, ("example", 5, 0, None))
    assert cmd_stop(ctx, _stop_args("nope")) == 1
    captured = capsys.readouterr()
    assert "Error: Server 'nope' not found or not running" in captured.err
    assert "Run 'megatool ps' to see running servers" in captured.out


def test_stop_ignores_stale_records(config: Config, capsys):
    term = FakeTerminator()
    ctx = _ctx(config, terminate=term)
    _seed(ctx, ("calculator", 100, 0, None))
    assert cmd_stop(ctx, _stop_args("calculator")) == 1
    assert term.calls == []


def test_stop_filters_by_client(config: Config):
    term = FakeTerminator()
    ctx = _ctx(config, 1, 2, terminate=term)
    _seed(ctx, ("github", 1, 0, "cline"), ("github", 2, 10, "claude-desktop"))
    assert cmd_stop(ctx, _stop_args("github", client="cline")) == 0
    assert term.calls == [1]


def test_stop_process_already_gone(config: Config, capsys):
    ctx = _ctx(config, 100, terminate=FakeTerminator(missing=(100,)))
    _seed(ctx, ("calculator", 100, 0, None))
    assert cmd_stop(ctx, _stop_args("calculator")) == 0
    assert "was no longer running" in capsys.readouterr().out
    assert ctx.registry.read() == []


def test_stop_permission_denied(config: Config, capsys):
    ctx = _ctx(config, 100, terminate=FakeTerminator(denied=(100,)))
    _seed(ctx, ("calculator", 100, 0, None))
    assert cmd_stop(ctx, _stop_args("calculator")) == 1
    assert "Failed to stop server 'calculator' (PID: 100)" in capsys.readouterr().err
    assert [r.pid for r in ctx.registry.read()] == [100]


def test_stop_without_target_lists_servers(config: Config, capsys):
    ctx = _ctx(config, 7)
    _seed(ctx, ("example", 7, 0, None))
    with pytest.raises(UserError, match="no server specified"):
        cmd_stop(ctx, _stop_args())
    out = capsys.readouterr().out
    assert "Running servers:" in out
    assert "example (PID: 7, Uptime: 5m" in out


# --- ps ---


def _ps_args(format="table", fields="name,pid,uptime,client", no_header=False, client=None):
    return argparse.Namespace(format=format, fields=fields, no_header=no_header, client=client)


def test_ps_drops_stale_records(config: Config, capsys):
    ctx = _ctx(config, 2)
    _seed(ctx, ("dead", 1, 0, None), ("calculator", 2, 0, "cline"))

    assert cmd_ps(ctx, _ps_args(format="json")) == 0

    [item] = json.loads(capsys.readouterr().out)
    assert (item["name"], item["pid"], item["client"]) == ("calculator", 2, "cline")
    assert item["uptime"].startswith("5m")
    assert [r.pid for r in ctx.registry.read()] == [2]


def test_ps_client_filter(config: Config, capsys):
    ctx = _ctx(config, 1, 2)
    _seed(ctx, ("a", 1, 0, "cline"), ("b", 2, 0, None))
    cmd_ps(ctx, _ps_args(fields="name", no_header=True, client="cline"))
    assert capsys.readouterr().out == "a\n"


def test_ps_empty(config: Config, capsys):
    cmd_ps(_ctx(config), _ps_args())
    assert capsys.readouterr().out == "No running MCP servers found\n"


def test_ps_unknown_format(config: Config):
    with pytest.raises(UserError):
        cmd_ps(_ctx(config), _ps_args(format="xml"))


def test_ps_reports_unreadable_registry(config: Config):
    config.registry_path.mkdir(parents=True)
    with pytest.raises(StorageError, match="Failed to read server records"):
        cmd_ps(_ctx(config), _ps_args())


# --- logs ---


def _logs_args(server=None, follow=False, lines=20, all=False):
    return argparse.Namespace(server=server, follow=follow, lines=lines, all=all)


def _json_line(second: int, message: str) -> str:
    return json.dumps({"timestamp": f"2024-01-02T03:04:{second:02d}.000Z", "level": "info", "message": message})


def _local(second: int) -> str:
    stamp = datetime(2024, 1, 2, 3, 4, second, tzinfo=timezone.utc).astimezone()
    return stamp.isoformat(sep=" ", timespec="milliseconds")[:23]


def test_logs_last_lines(config: Config, capsys):
    _log(config, "a", 12, [_json_line(i, f"m{i}") for i in range(5)])
    ctx = _ctx(config, 12)

    assert cmd_logs(ctx, _logs_args("a", lines=2)) == 0

    assert capsys.readouterr().out.splitlines() == [
        f"{_local(3)} INFO [a:12] m3",
        f"{_local(4)} INFO [a:12] m4",
    ]


def test_logs_active_only_by_default(config: Config, capsys):
    _log(config, "a", 12, [_json_line(0, "live")])
    _log(config, "a", 13, [_json_line(1, "dead")])
    ctx = _ctx(config, 12)

    cmd_logs(ctx, _logs_args())
    out = capsys.readouterr().out
    assert "live" in out and "dead" not in out

    cmd_logs(ctx, _logs_args(all=True))
    out = capsys.readouterr().out
    assert "live" in out and "dead" in out


def test_logs_none_found(config: Config, capsys):
    ctx = _ctx(config)
    assert cmd_logs(ctx, _logs_args()) == 0
    assert capsys.readouterr().out == "No logs found\n"


def test_logs_named_server_missing(config: Config, capsys):
    ctx = _ctx(config)
    assert cmd_logs(ctx, _logs_args("ghost")) == 1
    assert "No logs found for server 'ghost'" in capsys.readouterr().err


def test_logs_rejects_non_positive_lines(config: Config):
    with pytest.raises(UserError):
        cmd_logs(_ctx(config), _logs_args(lines=0))


# --- cleanup ---


def _cleanup_args(days=30, dry_run=False, force=True, verbose=False):
    return argparse.Namespace(days=days, dry_run=dry_run, force=force, verbose=verbose)


def test_cleanup_with_active_process(config: Config, capsys):
    live = _log(config, "serverX", 100, ["a"])
    dead = _log(config, "serverX", 200, ["b"], age_days=2)
    ctx = _ctx(config, 100)

    assert cmd_cleanup(ctx, _cleanup_args()) == 0

    assert live.exists() and not dead.exists()
    out = capsys.readouterr().out
    assert "  Log files to remove: 1" in out
    assert "Cleanup completed successfully" in out
    assert "Removed 0 directories and 1 log files" in out
    assert "Freed up 2 B of disk space" in out


def test_cleanup_removes_inactive_old_server(config: Config):
    _log(config, "serverY", 300, ["x"], age_days=40)
    ctx = _ctx(config)
    assert cmd_cleanup(ctx, _cleanup_args()) == 0
    assert not (config.log_root / "serverY").exists()


def test_cleanup_dry_run(config: Config, capsys):
    path = _log(config, "serverY", 300, ["x"], age_days=40)
    ctx = _ctx(config)
    assert cmd_cleanup(ctx, _cleanup_args(dry_run=True)) == 0
    out = capsys.readouterr().out
    assert "  Directories to remove: 1" in out
    assert "Dry run completed. No files were actually removed." in out
    assert path.exists()


def test_cleanup_cancelled(config: Config, capsys):
    path = _log(config, "serverY", 300, ["x"], age_days=40)
    prompts = []

    def decline(prompt: str) -> bool:
        prompts.append(prompt)
        return False

    ctx = _ctx(config, confirm=decline)
    assert cmd_cleanup(ctx, _cleanup_args(force=False)) == 0
    assert prompts == ["Do you want to proceed with cleanup?"]
    assert "Cleanup cancelled" in capsys.readouterr().out
    assert path.exists()


def test_cleanup_without_tty_does_not_prompt(config: Config, monkeypatch):
    path = _log(config, "serverY", 300, ["x"], age_days=40)
    monkeypatch.setattr("sys.stdin", io.StringIO(""))
    assert cmd_cleanup(_ctx(config), _cleanup_args(force=False)) == 0
    assert not path.exists()


def test_cleanup_stale_records(config: Config, capsys):
    ctx = _ctx(config, 2)
    _seed(ctx, ("dead", 1, 0, None), ("live", 2, 0, None))

    cmd_cleanup(ctx, _cleanup_args(dry_run=True))
    assert "Would remove 1 stale server records (dry run)" in capsys.readouterr().out
    assert len(ctx.registry.read()) == 2

    cmd_cleanup(ctx, _cleanup_args())
    out = capsys.readouterr().out
    assert "Found 1 stale server records" in out
    assert "Removed 1 stale server records" in out
    assert "No logs to clean up" in out
    assert [r.pid for r in ctx.registry.read()] == [2]


def test_cleanup_verbose_details(config: Config, capsys):
    _log(config, "serverX", 100, ["a"])
    ctx = _ctx(config, 100)
    cmd_cleanup(ctx, _cleanup_args(verbose=True))
    out = capsys.readouterr().out
    assert "No stale server records found" in out
    assert "Checking server directory: serverX" in out
    assert "  Found active log file: server_100.log" in out
    assert "  Keeping directory" in out


def test_cleanup_reports_registry_write_failure(config: Config, monkeypatch):
    ctx = _ctx(config, 2)
    _seed(ctx, ("dead", 1, 0, None), ("live", 2, 0, None))

    def read_only(self, *args, **kwargs):
        raise PermissionError(13, "Permission denied", str(self))

    monkeypatch.setattr(Path, "write_text", read_only)
    with pytest.raises(StorageError, match="Failed to write server records"):
        cmd_cleanup(ctx, _cleanup_args())


def test_cleanup_rejects_negative_days(config: Config):
    with pytest.raises(UserError):
        cmd_cleanup(_ctx(config), _cleanup_args(days=-1))


# --- install ---


def _bin(config: Config, *servers: str) -> None:
    config.bin_dir.mkdir(parents=True, exist_ok=True)
    for server in servers:
        path = config.bin_dir / f"megatool-{server}"
        path.write_text("")
        path.chmod(0o755)


def test_install(config: Config, tmp_path: Path, monkeypatch, capsys):
    target = tmp_path / "client" / "cline_mcp_settings.json"
    monkeypatch.setattr(commands, "client_config_path", lambda client: target)
    _bin(config, "github")

    assert cmd_install(_ctx(config), argparse.Namespace(server="github", client="cline")) == 0

    assert json.loads(target.read_text())["mcpServers"]["github"]["command"] == "megatool"
    assert f"Server 'github' installed successfully into cline config at {target}" in capsys.readouterr().out


def test_install_unknown_server(config: Config, tmp_path: Path, monkeypatch, capsys):
    target = tmp_path / "config.json"
    monkeypatch.setattr(commands, "client_config_path", lambda client: target)
    _bin(config, "github")

    assert cmd_install(_ctx(config), argparse.Namespace(server="nope", client="cline")) == 1

    assert "Error: Server 'nope' not found" in capsys.readouterr().err
    assert not target.exists()


def test_install_reports_write_failure(config: Config, tmp_path: Path, monkeypatch):
    (tmp_path / "client").write_text("")
    target = tmp_path / "client" / "cline_mcp_settings.json"
    monkeypatch.setattr(commands, "client_config_path", lambda client: target)
    _bin(config, "github")

    with pytest.raises(StorageError, match="cline_mcp_settings.json"):
        cmd_install(_ctx(config), argparse.Namespace(server="github", client="cline"))


def test_install_unsupported_client(config: Config, capsys):
    assert cmd_install(_ctx(config), argparse.Namespace(server="github", client="vscode")) == 1
    captured = capsys.readouterr()
    assert "Error: Unsupported client type: vscode" in captured.err
    assert "Supported client types: cline, claude-desktop" in captured.out


# --- run / ls / version ---


def _run_args(server=None, help=False, configure=False, client=None, child_args=()):
    return argparse.Namespace(server=server, help=help, configure=configure, client=client, child_args=list(child_args))


def test_run_help(config: Config, capsys):
    _bin(config, "calculator")
    assert cmd_run(_ctx(config), _run_args(help=True)) == 0
    out = capsys.readouterr().out
    assert "Usage: megatool run <server>" in out
    assert "  calculator" in out


def test_run_without_server(config: Config, capsys):
    with pytest.raises(UserError, match="no server specified"):
        cmd_run(_ctx(config), _run_args())
    out = capsys.readouterr().out
    assert "Available servers:" in out
    assert "  No MCP servers available" in out


def test_run_unknown_server(config: Config, tmp_path: Path, monkeypatch, capsys):
    monkeypatch.setenv("PATH", str(tmp_path / "empty"))
    assert cmd_run(_ctx(config), _run_args(server="ghost")) == 1
    assert "Error: Server 'ghost' not found" in capsys.readouterr().err


def test_run_configure_prepends_flag(config: Config):
    calls = []

    class Recorder:
        def run(self, server, argv, client=None):
            calls.append((server, argv, client))
            return 0

    ctx = _ctx(config)
    ctx.supervisor = Recorder()
    assert cmd_run(ctx, _run_args(server="github", configure=True, client="cline", child_args=["x"])) == 0
    assert calls == [("github", ["--configure", "x"], "cline")]


def test_ls_and_version(config: Config, capsys):
    _bin(config, "github", "calculator")
    cmd_ls(_ctx(config), argparse.Namespace())
    cmd_version(_ctx(config), argparse.Namespace())
    assert capsys.readouterr().out == "calculator\ngithub\nmegatool 0.4.0\n"
