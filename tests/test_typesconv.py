import json
from datetime import datetime, timezone

from boostrelay.db_types import BuilderBlockSubmissionEntry, DeliveredPayloadEntry
from boostrelay.payloads import BuilderSubmitBlockRequest
from boostrelay.types import BidTraceV2JSON
from boostrelay.typesconv import (
    builder_submission_entry_to_bid_trace_v2_with_timestamp_json,
    delivered_payload_entry_to_bid_trace_v2_json,
    payload_to_exec_payload_entry,
)

PARENT_HASH = "0x" + "11" * 32
BLOCK_HASH = "0x" + "22" * 32
FEE_RECIPIENT = "0x" + "33" * 20
BUILDER_PUBKEY = "0x" + "66" * 48
PROPOSER_PUBKEY = "0x" + "77" * 48
SIGNATURE = "0x" + "88" * 96


def make_payload(withdrawals=True):
    payload = {
        "parent_hash": PARENT_HASH,
        "fee_recipient": FEE_RECIPIENT,
        "state_root": "0x" + "99" * 32,
        "receipts_root": "0x" + "aa" * 32,
        "logs_bloom": "0x" + "00" * 256,
        "prev_randao": "0x" + "44" * 32,
        "block_number": "7",
        "gas_limit": "30000000",
        "gas_used": "21000",
        "timestamp": "1680000000",
        "extra_data": "0x",
        "base_fee_per_gas": "7",
        "block_hash": BLOCK_HASH,
        "transactions": ["0x01"],
    }
    if withdrawals:
        payload["withdrawals"] = []
    return payload


def make_request(withdrawals=True):
    return {
        "message": {
            "slot": "5",
            "parent_hash": PARENT_HASH,
            "block_hash": BLOCK_HASH,
            "builder_pubkey": BUILDER_PUBKEY,
            "proposer_pubkey": PROPOSER_PUBKEY,
            "proposer_fee_recipient": FEE_RECIPIENT,
            "gas_limit": "30000000",
            "gas_used": "21000",
            "value": "1000",
        },
        "execution_payload": make_payload(withdrawals),
        "signature": SIGNATURE,
    }


def test_capella_payload_entry():
    request = BuilderSubmitBlockRequest.from_json(make_request())
    entry = payload_to_exec_payload_entry(request)
    assert entry.version == "capella"
    assert entry.slot == 5
    assert entry.proposer_pubkey == PROPOSER_PUBKEY
    assert entry.block_hash == BLOCK_HASH
    assert json.loads(entry.payload) == make_payload()


def test_bellatrix_payload_entry():
    request = BuilderSubmitBlockRequest.from_json(make_request(withdrawals=False))
    entry = payload_to_exec_payload_entry(request)
    assert entry.version == "bellatrix"
    assert json.loads(entry.payload) == make_payload(withdrawals=False)


def test_empty_request_payload_entry():
    entry = payload_to_exec_payload_entry(BuilderSubmitBlockRequest())
    assert entry.version == ""
    assert entry.payload == ""
    assert entry.slot == 0


def test_delivered_payload_conversion():
    entry = DeliveredPayloadEntry(
        slot=5,
        parent_hash=PARENT_HASH,
        block_hash=BLOCK_HASH,
        builder_pubkey=BUILDER_PUBKEY,
        proposer_pubkey=PROPOSER_PUBKEY,
        proposer_fee_recipient=FEE_RECIPIENT,
        gas_limit=30000000,
        gas_used=21000,
        value="1000",
        num_tx=1,
        block_number=7,
        epoch=0,
    )
    result = delivered_payload_entry_to_bid_trace_v2_json(entry)
    assert result == BidTraceV2JSON(
        slot=5,
        parent_hash=PARENT_HASH,
        block_hash=BLOCK_HASH,
        builder_pubkey=BUILDER_PUBKEY,
        proposer_pubkey=PROPOSER_PUBKEY,
        proposer_fee_recipient=FEE_RECIPIENT,
        gas_limit=30000000,
        gas_used=21000,
        value="1000",
        num_tx=1,
        block_number=7,
    )


def test_submission_uses_received_at():
    inserted = datetime(2023, 3, 2, tzinfo=timezone.utc)
    received = datetime(2023, 3, 1, 12, 0, 0, 500000, tzinfo=timezone.utc)
    entry = BuilderBlockSubmissionEntry(
        inserted_at=inserted, received_at=received, slot=5, block_hash=BLOCK_HASH, value="1000"
    )
    result = builder_submission_entry_to_bid_trace_v2_with_timestamp_json(entry)
    assert result.timestamp == int(received.timestamp())
    assert result.timestamp_ms // 1000 == result.timestamp
    assert result.timestamp_ms % 1000 == 500
    assert result.slot == 5
    assert result.block_hash == BLOCK_HASH
    assert result.value == "1000"


def test_submission_falls_back_to_inserted_at():
    inserted = datetime(2023, 3, 2, tzinfo=timezone.utc)
    entry = BuilderBlockSubmissionEntry(inserted_at=inserted)
    result = builder_submission_entry_to_bid_trace_v2_with_timestamp_json(entry)
    assert result.timestamp == int(inserted.timestamp())
    assert result.timestamp_ms == result.timestamp * 1000


def test_naive_times_are_utc():
    naive = BuilderBlockSubmissionEntry(inserted_at=datetime(2023, 3, 2, 8, 30))
    aware = BuilderBlockSubmissionEntry(inserted_at=datetime(2023, 3, 2, 8, 30, tzinfo=timezone.utc))
    first = builder_submission_entry_to_bid_trace_v2_with_timestamp_json(naive)
    second = builder_submission_entry_to_bid_trace_v2_with_timestamp_json(aware)
    assert first == second
    assert first.to_csv_record()[-2] == str(first.timestamp)