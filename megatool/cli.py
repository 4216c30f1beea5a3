"""megatool: front-end for the megatool MCP servers.

Usage:
    megatool run <server> [--configure] [--client C] [--sse [--port P] [--base-url U]] [-- args...]
    megatool ls
    megatool ps [--format table|json|csv] [--fields F] [--no-header] [--client C]
    megatool stop <server> | --pid P [--all] [--client C]
    megatool logs [server] [-f] [-n N] [-a]
    megatool cleanup [-d N] [--dry-run] [-f] [-v]
    megatool install -c <client> <server>
    megatool version
"""

from __future__ import annotations

import argparse
import logging
import sys

from . import __version__
from .commands import HANDLERS, Context
from .config import Config
from .display import DEFAULT_FIELDS, FORMATS
from .errors import MegatoolError, UserError
from .installer import SUPPORTED_CLIENTS
from .output import print_error

log = logging.getLogger(__name__)

COMMAND_ALIASES = {"log": "logs"}


class ArgumentParser(argparse.ArgumentParser):
    """Reports usage errors as UserError so they exit 1 like every other failure."""

    def error(self, message: str) -> None:  # type: ignore[override]
        raise UserError(message)


def build_parser() -> ArgumentParser:
    parser = ArgumentParser(
        prog="megatool",
        description="Run and manage MCP servers.",
    )
    parser.add_argument("--version", action="version", version=f"megatool {__version__}")
    sub = parser.add_subparsers(dest="command", metavar="command")

    # run is parsed by parse_run_args; this entry only documents it
    run = sub.add_parser("run", help="Run an MCP server", add_help=False)
    run.add_argument("tokens", nargs=argparse.REMAINDER)

    sub.add_parser("ls", help="List available MCP servers")

    ps = sub.add_parser("ps", help="List running MCP servers")
    ps.add_argument("-f", "--format", default="table", choices=FORMATS, help="Output format (default: table)")
    ps.add_argument("--fields", default=DEFAULT_FIELDS, help=f"Comma-separated fields (default: {DEFAULT_FIELDS})")
    ps.add_argument("--no-header", action="store_true", help="Don't print the header row")
    ps.add_argument("--client", help="Only show servers launched by this client")

    stop = sub.add_parser("stop", help="Stop a running MCP server")
    stop.add_argument("server", nargs="?")
    stop.add_argument("--pid", type=int, help="Stop a specific instance by PID")
    stop.add_argument("--all", action="store_true", help="Stop all instances of the server")
    stop.add_argument("--client", help="Only consider servers launched by this client")

    logs = sub.add_parser("logs", aliases=["log"], help="View MCP server logs")
    logs.add_argument("server", nargs="?")
    logs.add_argument("-f", "--follow", action="store_true", help="Follow log output")
    logs.add_argument("-n", "--lines", type=int, default=20, help="Number of lines to show (default: 20)")
    logs.add_argument("-a", "--all", action="store_true", help="Include servers that are no longer running")

    cleanup = sub.add_parser("cleanup", help="Clean up logs from servers that are no longer running")
    cleanup.add_argument("-d", "--days", type=int, default=30, help="Remove logs older than this many days (default: 30)")
    cleanup.add_argument("--dry-run", action="store_true", help="Show what would be deleted without deleting")
    cleanup.add_argument("-f", "--force", action="store_true", help="Skip the confirmation prompt")
    cleanup.add_argument("-v", "--verbose", action="store_true", help="Show details for every server directory")

    install = sub.add_parser("install", help="Install an MCP server into a client's configuration")
    install.add_argument("server")
    install.add_argument(
        "-c", "--client", required=True,
        help=f"Target MCP client ({', '.join(SUPPORTED_CLIENTS)})",
    )

    sub.add_parser("version", help="Print the megatool version")
    return parser


def parse_run_args(tokens: list[str]) -> argparse.Namespace:
    """Split ``run`` arguments into front-end flags, server name, and child args.

    Only flags before the server name belong to the front-end.  Transport
    flags given there are passed on so the supervisor can strip them.
    """
    args = argparse.Namespace(
        command="run", server=None, client=None, configure=False, help=False, child_args=[]
    )
    leading: list[str] = []
    i = 0
    while i < len(tokens):
        tok = tokens[i]
        if tok in ("-h", "--help"):
            args.help = True
        elif tok == "--configure":
            args.configure = True
        elif tok == "--client":
            if i + 1 >= len(tokens):
                raise UserError("flag --client requires a value")
            i += 1
            args.client = tokens[i]
        elif tok.startswith("--client="):
            args.client = tok.split("=", 1)[1]
        elif tok == "--sse":
            leading.append(tok)
        elif tok in ("--port", "--base-url"):
            leading.extend(tokens[i:i + 2])
            i += 1
        elif tok.startswith(("--port=", "--base-url=")):
            leading.append(tok)
        elif tok == "--":
            if i + 1 < len(tokens):
                args.server = tokens[i + 1]
                args.child_args = leading + tokens[i + 2:]
            break
        elif tok.startswith("-"):
            raise UserError(f"unknown flag for run: {tok}")
        else:
            args.server = tok
            args.child_args = leading + tokens[i + 1:]
            break
        i += 1
    return args


def parse_args(parser: ArgumentParser, argv: list[str]) -> argparse.Namespace:
    if argv and argv[0] == "run":
        return parse_run_args(argv[1:])

    if argv and not argv[0].startswith("-"):
        name = argv[0]
        if COMMAND_ALIASES.get(name, name) not in HANDLERS:
            raise UserError(f"Unknown command: {name}. Run 'megatool --help' to see available commands")

    args = parser.parse_args(argv)
    if args.command is not None:
        args.command = COMMAND_ALIASES.get(args.command, args.command)
    return args


def main(argv: list[str] | None = None) -> int:
    config = Config.from_env()
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.WARNING),
        format="%(asctime)s [megatool] %(levelname)s %(message)s",
    )

    parser = build_parser()
    argv = sys.argv[1:] if argv is None else argv
    try:
        args = parse_args(parser, argv)
        if args.command is None:
            parser.print_help()
            return 1
        return HANDLERS[args.command](Context.from_config(config), args)
    except (MegatoolError, OSError) as exc:
        print_error(str(exc))
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
