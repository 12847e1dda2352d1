"""Command line entry point for the relay maintenance commands."""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Any, Callable
from urllib.parse import urlsplit

from . import tools
from .common import get_env
from .database import DatabaseService, connect
from .logsetup import log_setup

VERSION = "dev"
PROGRAM = "boost-relay"

logger = logging.getLogger("boostrelay.cli")


class _CommaList(argparse.Action):
    """Collect values given as repeated flags and/or comma separated lists."""

    def __call__(self, parser, namespace, values, option_string=None):
        current = list(getattr(namespace, self.dest) or [])
        current.extend(part for part in values.split(",") if part)
        setattr(namespace, self.dest, current)


class _LazyDatabase:
    """Connects to the database only when it is first used."""

    def __init__(self, dsn: str) -> None:
        self._dsn = dsn
        self._service: DatabaseService | None = None

    def _connect(self) -> DatabaseService:
        if self._service is None:
            parts = urlsplit(self._dsn)
            host = parts.netloc.rpartition("@")[2]
            logger.info("Connecting to Postgres database at %s%s ...", host, parts.path)
            self._service = connect(self._dsn)
        return self._service

    def __getattr__(self, name: str) -> Any:
        return getattr(self._connect(), name)

    def close(self) -> None:
        if self._service is not None:
            self._service.close()


def _with_db(dsn: str, action: Callable[[Any], Any]) -> int:
    db = _LazyDatabase(dsn)
    try:
        action(db)
    finally:
        db.close()
    return 0


def _root(args: argparse.Namespace) -> int:
    print(f"{PROGRAM} {VERSION}")
    args.help_parser.print_help()
    return 0


def _version(args: argparse.Namespace) -> int:
    print(f"{PROGRAM} {VERSION}")
    return 0


def _tool(args: argparse.Namespace) -> int:
    print("Error: please use a valid subcommand")
    args.help_parser.print_help()
    return 0


def _export_payloads(args: argparse.Namespace) -> int:
    return _with_db(
        args.db,
        lambda db: tools.export_delivered_payloads(
            db, args.out_files, args.id_from, args.id_to, args.date_start, args.date_end
        ),
    )


def _export_bids(args: argparse.Namespace) -> int:
    return _with_db(
        args.db, lambda db: tools.export_bids(db, args.slot_from, args.slot_to, args.out_files)
    )


def _archive(args: argparse.Namespace) -> int:
    return _with_db(
        args.db,
        lambda db: tools.archive_execution_payloads(
            db, args.out_files, args.id_from, args.id_to, args.date_start, args.date_end, args.delete
        ),
    )


def _migrate(args: argparse.Namespace) -> int:
    tools.migrate(args.db)
    return 0


def _add_db(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--db", default=get_env("POSTGRES_DSN", ""), help="PostgreSQL DSN")


def _add_out(parser: argparse.ArgumentParser, required: bool) -> None:
    parser.add_argument(
        "--out", dest="out_files", action=_CommaList, default=[], required=required,
        help="output filename (repeatable, comma separated)",
    )


def _add_id_range(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--id-from", type=int, default=0, help="start id (inclusive)")
    parser.add_argument("--id-to", type=int, default=0, help="end id (inclusive)")
    parser.add_argument("--date-start", default="", help="start date (inclusive)")
    parser.add_argument("--date-end", default="", help="end date (exclusive)")


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser with the version and tool commands."""
    parser = argparse.ArgumentParser(prog=PROGRAM, description=f"{PROGRAM} {VERSION}")
    parser.set_defaults(handler=_root, help_parser=parser, tool_command=False)
    commands = parser.add_subparsers(dest="command")

    version = commands.add_parser("version", help="Print the version number of the relay application")
    version.set_defaults(handler=_version)

    tool = commands.add_parser("tool", help="tools for managing the database")
    tool.set_defaults(handler=_tool, help_parser=tool)
    tool_commands = tool.add_subparsers(dest="tool_name")

    payloads = tool_commands.add_parser(
        "data-api-export-payloads",
        help="export delivered payloads to the proposer from the DB to a CSV or JSON file",
    )
    _add_db(payloads)
    _add_id_range(payloads)
    _add_out(payloads, required=True)
    payloads.set_defaults(handler=_export_payloads, tool_command=True)

    bids = tool_commands.add_parser("data-api-export-bids", help="export builder bids for a slot range")
    _add_db(bids)
    bids.add_argument("--slot-from", type=int, default=0, help="start slot (inclusive)")
    bids.add_argument("--slot-to", type=int, default=0, help="end slot (inclusive)")
    _add_out(bids, required=False)
    bids.set_defaults(handler=_export_bids, tool_command=True)

    archive = tool_commands.add_parser(
        "archive-execution-payloads",
        help="export execution payloads from the DB to a CSV or JSON file and archive by deleting them",
    )
    _add_db(archive)
    _add_id_range(archive)
    archive.add_argument(
        "--delete", action="store_true", help="whether to also delete the archived payloads in the DB"
    )
    _add_out(archive, required=True)
    archive.set_defaults(handler=_archive, tool_command=True)

    migrate = tool_commands.add_parser("migrate", help="migrate the database to the latest schema")
    _add_db(migrate)
    migrate.set_defaults(handler=_migrate, tool_command=True)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Run the command line; return the exit status."""
    args = build_parser().parse_args(argv)
    if args.tool_command:
        log_setup(False, "info")
    try:
        return args.handler(args)
    except Exception as err:  # any failure ends the command like a fatal log
        logger.error("%s", err)
        return 1


if __name__ == "__main__":
    sys.exit(main())