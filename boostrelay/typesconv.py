"""Conversions between database rows and API types."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

from .db_types import BuilderBlockSubmissionEntry, DeliveredPayloadEntry, ExecutionPayloadEntry
from .payloads import BELLATRIX, CAPELLA, BuilderSubmitBlockRequest
from .types import BidTraceV2JSON, BidTraceV2WithTimestampJSON

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)


def _utc(moment: datetime | None) -> datetime:
    if moment is None:
        return _ZERO_TIME
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def payload_to_exec_payload_entry(payload: BuilderSubmitBlockRequest) -> ExecutionPayloadEntry:
    """Build the execution payload row for a builder submission."""
    version = ""
    body = ""
    if payload.bellatrix is not None:
        body = json.dumps(payload.bellatrix.get("execution_payload"), separators=(",", ":"))
        version = BELLATRIX
    if payload.capella is not None:
        body = json.dumps(payload.capella.get("execution_payload"), separators=(",", ":"))
        version = CAPELLA
    return ExecutionPayloadEntry(
        slot=payload.slot(),
        proposer_pubkey=payload.proposer_pubkey(),
        block_hash=payload.block_hash(),
        version=version,
        payload=body,
    )


def delivered_payload_entry_to_bid_trace_v2_json(entry: DeliveredPayloadEntry) -> BidTraceV2JSON:
    """Convert a delivered payload row into its export form."""
    return BidTraceV2JSON(
        slot=entry.slot,
        parent_hash=entry.parent_hash,
        block_hash=entry.block_hash,
        builder_pubkey=entry.builder_pubkey,
        proposer_pubkey=entry.proposer_pubkey,
        proposer_fee_recipient=entry.proposer_fee_recipient,
        gas_limit=entry.gas_limit,
        gas_used=entry.gas_used,
        value=entry.value,
        num_tx=entry.num_tx,
        block_number=entry.block_number,
    )


def builder_submission_entry_to_bid_trace_v2_with_timestamp_json(
    entry: BuilderBlockSubmissionEntry,
) -> BidTraceV2WithTimestampJSON:
    """Convert a submission row, stamped with when it was received (or inserted)."""
    moment = entry.received_at if entry.received_at is not None else entry.inserted_at
    delta = _utc(moment) - _EPOCH
    return BidTraceV2WithTimestampJSON(
        timestamp=delta // timedelta(seconds=1),
        timestamp_ms=delta // timedelta(milliseconds=1),
        slot=entry.slot,
        parent_hash=entry.parent_hash,
        block_hash=entry.block_hash,
        builder_pubkey=entry.builder_pubkey,
        proposer_pubkey=entry.proposer_pubkey,
        proposer_fee_recipient=entry.proposer_fee_recipient,
        gas_limit=entry.gas_limit,
        gas_used=entry.gas_used,
        value=entry.value,
        num_tx=entry.num_tx,
        block_number=entry.block_number,
    )