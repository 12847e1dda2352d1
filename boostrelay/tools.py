"""Database maintenance tools: exporting, archiving and migrating."""

from __future__ import annotations

import csv
import json
import logging
from collections.abc import Iterable, Sequence
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.engine import make_url

from .migrations import apply_migrations
from .tables import TableNames, table_names
from .typesconv import (
    builder_submission_entry_to_bid_trace_v2_with_timestamp_json,
    delivered_payload_entry_to_bid_trace_v2_json,
)

logger = logging.getLogger("boostrelay.tools")

EXECUTION_PAYLOAD_CSV_HEADER = [
    "id",
    "inserted_at",
    "slot",
    "proposer_pubkey",
    "block_hash",
    "version",
    "payload",
]


class ToolError(Exception):
    """Raised when a tool cannot do its job with the given arguments or data."""


def write_entries(
    out_file: str,
    header: Sequence[str],
    rows: Iterable[Sequence[str]],
    items: Iterable[Any],
) -> None:
    """Write rows as CSV when the name ends in .csv, otherwise items as one JSON list."""
    is_csv = str(out_file).endswith(".csv")
    with open(out_file, "w", newline="", encoding="utf-8") as handle:
        if is_csv:
            writer = csv.writer(handle, lineterminator="\n")
            writer.writerow(header)
            writer.writerows(rows)
        else:
            json.dump(list(items), handle)
            handle.write("\n")


def _resolve_id_range(
    db: Any,
    table: str,
    id_first: int,
    id_last: int,
    date_start: str | None,
    date_end: str | None,
) -> tuple[int, int]:
    if date_start:
        try:
            id_first = db.find_first_id_on_or_after(table, date_start)
        except (LookupError, ValueError) as err:
            raise ToolError(f"failed to find start id for date {date_start}: {err}") from err
    if date_end:
        try:
            id_last = db.find_last_id_before(table, date_end)
        except (LookupError, ValueError) as err:
            raise ToolError(f"failed to find end id for date {date_end}: {err}") from err
    logger.info("exporting ids %d to %d", id_first, id_last)
    return id_first, id_last


def _check_range_args(out_files: Sequence[str] | None, id_last: int, date_end: str | None) -> list[str]:
    files = list(out_files or [])
    if not files:
        raise ToolError("no output files specified")
    if id_last == 0 and not date_end:
        raise ToolError("must specify --id-to or --date-end")
    return files


def export_delivered_payloads(
    db: Any,
    out_files: Sequence[str] | None,
    id_first: int = 0,
    id_last: int = 0,
    date_start: str | None = None,
    date_end: str | None = None,
) -> int:
    """Export delivered payloads in an id or date range; return how many were exported."""
    files = _check_range_args(out_files, id_last, date_end)
    logger.info("exporting data-api payloads to %s", ", ".join(files))

    id_first, id_last = _resolve_id_range(
        db, db.tables.delivered_payload, id_first, id_last, date_start, date_end
    )
    payloads = db.get_delivered_payloads(id_first, id_last)
    logger.info("got %d payloads", len(payloads))
    entries = [delivered_payload_entry_to_bid_trace_v2_json(payload) for payload in payloads]
    if not entries:
        return 0

    header = entries[0].csv_header()
    for out_file in files:
        write_entries(
            out_file,
            header,
            (entry.to_csv_record() for entry in entries),
            (entry.to_dict() for entry in entries),
        )
        logger.info("Wrote %d entries to %s", len(entries), out_file)
    return len(entries)


def export_bids(
    db: Any,
    slot_from: int,
    slot_to: int,
    out_files: Sequence[str] | None = None,
) -> int:
    """Export successful builder submissions for a slot range; return how many were exported."""
    files = list(out_files or [])
    if not files:
        base = f"builder-submissions_slot-{slot_from}-to-{slot_to}"
        files = [base + ".csv", base + ".json"]
    logger.info("exporting data-api bids to %s", ", ".join(files))

    if slot_from == 0 or slot_to == 0:
        raise ToolError("must specify --slot-from and --slot-to")

    logger.info(
        "exporting slots %d to %d (%d slots in total)...", slot_from, slot_to, slot_to - slot_from + 1
    )
    bids = db.get_builder_submissions_by_slots(slot_from, slot_to)
    logger.info("got %d bids", len(bids))
    entries = [builder_submission_entry_to_bid_trace_v2_with_timestamp_json(bid) for bid in bids]
    del bids
    if not entries:
        return 0

    header = entries[0].csv_header()
    for out_file in files:
        write_entries(
            out_file,
            header,
            (entry.to_csv_record() for entry in entries),
            (entry.to_dict() for entry in entries),
        )
        logger.info("Wrote %d entries to %s", len(entries), out_file)
    return len(entries)


def archive_execution_payloads(
    db: Any,
    out_files: Sequence[str] | None,
    id_first: int = 0,
    id_last: int = 0,
    date_start: str | None = None,
    date_end: str | None = None,
    delete: bool = False,
) -> int:
    """Export execution payloads and optionally delete them; return how many were archived."""
    files = _check_range_args(out_files, id_last, date_end)
    logger.info("exporting execution payloads to %s", ", ".join(files))

    id_first, id_last = _resolve_id_range(
        db, db.tables.execution_payload, id_first, id_last, date_start, date_end
    )
    payloads = db.get_execution_payloads(id_first, id_last)
    logger.info("got %d payloads", len(payloads))
    if not payloads:
        return 0

    for out_file in files:
        write_entries(
            out_file,
            EXECUTION_PAYLOAD_CSV_HEADER,
            (payload.to_csv_record() for payload in payloads),
            (payload.to_dict() for payload in payloads),
        )
        logger.info("Wrote %d entries to %s", len(payloads), out_file)

    if delete:
        logger.info("deleting archived payloads from DB")
        db.delete_execution_payloads(id_first, id_last)

    logger.info("all done")
    return len(payloads)


def migrate(dsn: str, tables: TableNames | None = None) -> Any:
    """Bring the database schema up to date; return what the migration run reports."""
    if dsn.startswith("postgres://"):
        dsn = "postgresql://" + dsn[len("postgres://"):]
    url = make_url(dsn)
    engine = create_engine(url)
    try:
        logger.info("Migrating database ...")
        applied = apply_migrations(engine, tables or table_names())
    finally:
        engine.dispose()
    logger.info("Migrations applied successfully")
    return applied