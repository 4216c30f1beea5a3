"""Server supervisor: spawns one tool server and routes its streams.

stdin is inherited by the child.  stdout and stderr are read through pipes
and fanned out to the parent's own streams and to the server's log file.
The parent never signals the child; it waits, drains both pipes, and
propagates the exit code.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
import sys
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import IO, Any, BinaryIO

from .config import Config
from .errors import ConfigError, MegatoolError, StorageError, UserError
from .locator import binary_name, locate
from .logstore import LogStore, RotatingWriter
from .output import print_error, print_info
from .registry import Registry
from .timestamps import format_timestamp, now

log = logging.getLogger(__name__)

DEFAULT_SSE_PORT = 8080
READ_CHUNK_SIZE = 4096

HELP_FLAGS = ("--help", "-h")


# ---------------------------------------------------------------------------
# Transport flags
# ---------------------------------------------------------------------------


@dataclass
class LaunchOptions:
    """Result of stripping the supervisor's own flags from ``run`` arguments."""

    child_args: list[str] = field(default_factory=list)
    sse: bool = False
    port: int = DEFAULT_SSE_PORT
    base_url: str | None = None

    @property
    def help_requested(self) -> bool:
        return any(arg in HELP_FLAGS for arg in self.child_args)

    @property
    def resolved_base_url(self) -> str:
        return self.base_url or f"http://localhost:{self.port}"

    def child_env(self) -> dict[str, str]:
        """Extra environment for the child; empty unless ``--sse`` was given."""
        if not self.sse:
            return {}
        env = {
            "MCP_SERVER_MODE": "sse",
            "MCP_SERVER_PORT": str(self.port),
            "MCP_SERVER_BASE_URL": self.resolved_base_url,
        }
        if self.help_requested:
            env["MCP_HELP_MODE"] = "true"
        return env


def _parse_port(value: str) -> int:
    try:
        port = int(value)
    except ValueError:
        raise UserError(f"invalid port: {value!r}") from None
    if not 0 < port < 65536:
        raise UserError(f"port out of range: {port}")
    return port


def parse_transport_flags(argv: list[str]) -> LaunchOptions:
    """Strip ``--sse``, ``--port <p>`` and ``--base-url <u>`` from ``argv``.

    Everything after a bare ``--`` goes to the child untouched.
    """
    opts = LaunchOptions()
    i = 0
    while i < len(argv):
        arg = argv[i]
        if arg == "--":
            opts.child_args.extend(argv[i + 1:])
            break
        if arg == "--sse":
            opts.sse = True
        elif arg in ("--port", "--base-url"):
            if i + 1 >= len(argv):
                raise UserError(f"flag {arg} requires a value")
            i += 1
            if arg == "--port":
                opts.port = _parse_port(argv[i])
            else:
                opts.base_url = argv[i]
        elif arg.startswith("--port="):
            opts.port = _parse_port(arg.split("=", 1)[1])
        elif arg.startswith("--base-url="):
            opts.base_url = arg.split("=", 1)[1]
        else:
            opts.child_args.append(arg)
        i += 1
    return opts


def exit_status(returncode: int) -> int:
    """Map asyncio's ``-N`` (killed by signal N) to the shell's ``128 + N``."""
    return 128 - returncode if returncode < 0 else returncode


# ---------------------------------------------------------------------------
# Log sink
# ---------------------------------------------------------------------------


class ChildLogSink:
    """Turns raw child output into one JSON log line per output line.

    stderr lines that are already JSON log entries (objects with a
    ``level``) are kept as they are, with ``server``/``pid`` filled in.
    Everything else is wrapped as an info entry tagged with its stream.
    """

    def __init__(self, writer: RotatingWriter, server: str, pid: int) -> None:
        self.writer = writer
        self.server = server
        self.pid = pid
        self._partial: dict[str, bytes] = {"stdout": b"", "stderr": b""}
        self._broken = False

    def event(self, level: str, message: str, **fields: Any) -> None:
        entry = {
            "timestamp": format_timestamp(now()),
            "level": level,
            "message": message,
            **fields,
            "server": self.server,
            "pid": self.pid,
        }
        self._write(json.dumps(entry, ensure_ascii=False))

    def feed(self, stream: str, chunk: bytes) -> None:
        data = self._partial[stream] + chunk
        *lines, self._partial[stream] = data.split(b"\n")
        for line in lines:
            self._emit(stream, line)

    def flush(self) -> None:
        for stream, rest in self._partial.items():
            if rest:
                self._emit(stream, rest)
            self._partial[stream] = b""

    def close(self) -> None:
        self.flush()
        self.writer.close()

    def wrap(self, stream: str, text: str) -> str:
        if stream == "stderr" and text.startswith("{"):
            try:
                obj = json.loads(text)
            except ValueError:
                obj = None
            if isinstance(obj, dict) and "level" in obj:
                if "server" in obj and "pid" in obj:
                    return text
                obj.setdefault("server", self.server)
                obj.setdefault("pid", self.pid)
                return json.dumps(obj, ensure_ascii=False)

        return json.dumps(
            {
                "timestamp": format_timestamp(now()),
                "level": "info",
                "message": text,
                "server": self.server,
                "pid": self.pid,
                "stream": stream,
            },
            ensure_ascii=False,
        )

    def _emit(self, stream: str, raw: bytes) -> None:
        text = raw.decode("utf-8", errors="replace").rstrip("\r")
        if text.strip():
            self._write(self.wrap(stream, text))

    def _write(self, line: str) -> None:
        if self._broken:
            return
        try:
            self.writer.write_line(line)
        except (OSError, ValueError) as exc:
            # Keep passing output through; only the file copy is lost
            log.warning("Log writer for %s (PID %d) failed: %s", self.server, self.pid, exc)
            self._broken = True


# ---------------------------------------------------------------------------
# Supervisor
# ---------------------------------------------------------------------------


class ServerSupervisor:
    """Launches ``megatool-<server>`` and blocks until it exits."""

    def __init__(
        self,
        config: Config,
        registry: Registry | None = None,
        store: LogStore | None = None,
        info_stream: IO[str] | None = None,
    ) -> None:
        self.config = config
        self.registry = registry or Registry(config.registry_path)
        self.store = store or LogStore(config.log_root)
        self._info_stream = info_stream

    def _info(self, message: str) -> None:
        print_info(message, file=self._info_stream or sys.stderr)

    def run(
        self,
        server: str,
        argv: list[str],
        client: str | None = None,
        stdin: int | IO[Any] | None = None,
        stdout: BinaryIO | None = None,
        stderr: BinaryIO | None = None,
    ) -> int:
        return asyncio.run(self.launch(server, argv, client, stdin, stdout, stderr))

    async def launch(
        self,
        server: str,
        argv: list[str],
        client: str | None = None,
        stdin: int | IO[Any] | None = None,
        stdout: BinaryIO | None = None,
        stderr: BinaryIO | None = None,
    ) -> int:
        opts = parse_transport_flags(argv)
        binary = locate(binary_name(server), self.config.bin_dir)

        env = None
        extra_env = opts.child_env()
        if extra_env:
            env = {**os.environ, **extra_env}
            self._info(f"Starting {server} in SSE mode on {opts.resolved_base_url}")

        try:
            process = await asyncio.create_subprocess_exec(
                str(binary),
                *opts.child_args,
                stdin=stdin,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except OSError as exc:
            raise MegatoolError(f"Failed to start {binary.name}: {exc}") from exc

        sink = None if opts.help_requested else self._open_sink(server, process.pid, argv)

        try:
            self.registry.add(server, process.pid, client=client)
        except (ConfigError, StorageError) as exc:
            print_error(f"Failed to record server process: {exc}")

        restore = _ignore_sigint()
        try:
            readers = [
                asyncio.create_task(
                    _pump(process.stdout, stdout or sys.stdout.buffer, sink, "stdout"),  # type: ignore[arg-type]
                    name=f"{server}-stdout",
                ),
                asyncio.create_task(
                    _pump(process.stderr, stderr or sys.stderr.buffer, sink, "stderr"),  # type: ignore[arg-type]
                    name=f"{server}-stderr",
                ),
            ]
            await asyncio.gather(*readers)
            code = exit_status(await process.wait())
        finally:
            restore()

        if sink is not None:
            sink.flush()
            sink.event("info", "MCP server exited", exit_code=code)
            sink.close()
        log.info("%s (PID %d) exited with code %d", server, process.pid, code)
        return code

    def _open_sink(self, server: str, pid: int, argv: list[str]) -> ChildLogSink | None:
        try:
            writer = self.store.open(server, pid)
        except OSError as exc:
            print_error(f"Failed to set up logging: {exc}")
            return None
        sink = ChildLogSink(writer, server, pid)
        sink.event("info", "Starting MCP server", args=list(argv))
        self._info(f"Logs for {server} (PID {pid}) will be written to: {writer.path}")
        return sink


async def _pump(
    reader: asyncio.StreamReader,
    dest: BinaryIO | None,
    sink: ChildLogSink | None,
    stream: str,
) -> None:
    """Copy one child pipe to a parent stream and the log sink until EOF."""
    while True:
        chunk = await reader.read(READ_CHUNK_SIZE)
        if not chunk:
            break
        if dest is not None:
            try:
                dest.write(chunk)
                dest.flush()
            except (OSError, ValueError) as exc:
                # Keep draining so the child never blocks on a full pipe
                log.warning("Parent %s closed: %s", stream, exc)
                dest = None
        if sink is not None:
            sink.feed(stream, chunk)


def _ignore_sigint() -> Callable[[], None]:
    """Leave Ctrl+C to the child; the parent keeps waiting to reap it."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, lambda: None)
    except (NotImplementedError, RuntimeError, ValueError):
        # No loop signal handlers on Windows or outside the main thread
        return lambda: None
    return lambda: loop.remove_signal_handler(signal.SIGINT)
