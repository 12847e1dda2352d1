import csv
import json
from datetime import datetime

import pytest
from sqlalchemy.exc import ArgumentError

from boostrelay.db_types import (
    BuilderBlockSubmissionEntry,
    DeliveredPayloadEntry,
    ExecutionPayloadEntry,
)
from boostrelay.tables import table_names
from boostrelay.tools import (
    EXECUTION_PAYLOAD_CSV_HEADER,
    ToolError,
    archive_execution_payloads,
    export_bids,
    export_delivered_payloads,
    migrate,
    write_entries,
)
from boostrelay.types import BidTraceV2JSON
from boostrelay.typesconv import (
    builder_submission_entry_to_bid_trace_v2_with_timestamp_json,
    delivered_payload_entry_to_bid_trace_v2_json,
)

HASH_A = "0x" + "aa" * 32
HASH_B = "0x" + "bb" * 32
PUBKEY = "0x" + "cd" * 48
FEE_RECIPIENT = "0x" + "ef" * 20


class FakeDB:
    def __init__(self, delivered=(), submissions=(), payloads=(), first_id=None, last_id=None):
        self.tables = table_names("test")
        self.delivered = list(delivered)
        self.submissions = list(submissions)
        self.payloads = list(payloads)
        self.first_id = first_id
        self.last_id = last_id
        self.calls = []

    def find_first_id_on_or_after(self, table, day):
        self.calls.append(("first", table, day))
        if self.first_id is None:
            raise LookupError("no rows in result set")
        return self.first_id

    def find_last_id_before(self, table, day):
        self.calls.append(("last", table, day))
        if self.last_id is None:
            raise LookupError("no rows in result set")
        return self.last_id

    def get_delivered_payloads(self, id_first, id_last):
        self.calls.append(("delivered", id_first, id_last))
        return self.delivered

    def get_builder_submissions_by_slots(self, slot_from, slot_to):
        self.calls.append(("bids", slot_from, slot_to))
        return self.submissions

    def get_execution_payloads(self, id_first, id_last):
        self.calls.append(("payloads", id_first, id_last))
        return self.payloads

    def delete_execution_payloads(self, id_first, id_last):
        self.calls.append(("delete", id_first, id_last))


def delivered_entry(slot=5):
    return DeliveredPayloadEntry(
        id=1,
        inserted_at=datetime(2023, 3, 1, 12, 0, 0),
        slot=slot,
        epoch=slot // 32,
        builder_pubkey=PUBKEY,
        proposer_pubkey=PUBKEY,
        proposer_fee_recipient=FEE_RECIPIENT,
        parent_hash=HASH_A,
        block_hash=HASH_B,
        block_number=100,
        num_tx=3,
        value="12345",
        gas_used=21000,
        gas_limit=30000000,
    )


def submission_entry(slot=7):
    return BuilderBlockSubmissionEntry(
        id=2,
        inserted_at=datetime(2023, 3, 1, 12, 0, 0),
        received_at=datetime(2023, 3, 1, 12, 0, 1),
        slot=slot,
        epoch=slot // 32,
        builder_pubkey=PUBKEY,
        proposer_pubkey=PUBKEY,
        proposer_fee_recipient=FEE_RECIPIENT,
        parent_hash=HASH_A,
        block_hash=HASH_B,
        block_number=101,
        num_tx=4,
        value="999",
        gas_used=21000,
        gas_limit=30000000,
    )


def payload_entry(entry_id=3):
    return ExecutionPayloadEntry(
        id=entry_id,
        inserted_at=datetime(2023, 3, 1, 12, 0, 0),
        slot=9,
        proposer_pubkey=PUBKEY,
        block_hash=HASH_B,
        version="capella",
        payload='{"block_hash":"x"}',
    )


def read_csv(path):
    with open(path, newline="", encoding="utf-8") as handle:
        return list(csv.reader(handle))


def test_write_entries_csv_round_trip(tmp_path):
    out = tmp_path / "out.csv"
    write_entries(str(out), ["a", "b"], [["1", "x,y"], ["2", "z"]], [])
    assert read_csv(out) == [["a", "b"], ["1", "x,y"], ["2", "z"]]


def test_write_entries_json_for_other_suffix(tmp_path):
    out = tmp_path / "out.txt"
    items = [{"a": "1"}, {"a": "2"}]
    write_entries(str(out), ["a"], [["1"]], items)
    text = out.read_text()
    assert text.endswith("\n")
    assert json.loads(text) == items


def test_export_delivered_requires_out_files():
    with pytest.raises(ToolError):
        export_delivered_payloads(FakeDB(), [], 0, 5)


def test_export_delivered_requires_end():
    db = FakeDB(delivered=[delivered_entry()])
    with pytest.raises(ToolError):
        export_delivered_payloads(db, ["x.json"], 1, 0)
    assert db.calls == []


def test_export_delivered_writes_csv_and_json(tmp_path):
    entry = delivered_entry()
    db = FakeDB(delivered=[entry])
    csv_out = tmp_path / "payloads.csv"
    json_out = tmp_path / "payloads.json"
    count = export_delivered_payloads(db, [str(csv_out), str(json_out)], 1, 10)
    assert count == 1
    assert db.calls == [("delivered", 1, 10)]
    converted = delivered_payload_entry_to_bid_trace_v2_json(entry)
    rows = read_csv(csv_out)
    assert rows[0] == BidTraceV2JSON().csv_header()
    assert rows[1] == converted.to_csv_record()
    assert json.loads(json_out.read_text()) == [converted.to_dict()]


def test_export_delivered_resolves_dates(tmp_path):
    db = FakeDB(delivered=[delivered_entry()], first_id=4, last_id=8)
    export_delivered_payloads(
        db, [str(tmp_path / "a.json")], date_start="2023-01-01", date_end="2023-02-01"
    )
    table = db.tables.delivered_payload
    assert db.calls == [
        ("first", table, "2023-01-01"),
        ("last", table, "2023-02-01"),
        ("delivered", 4, 8),
    ]


def test_export_delivered_missing_date_row_is_error(tmp_path):
    db = FakeDB(delivered=[delivered_entry()])
    with pytest.raises(ToolError):
        export_delivered_payloads(db, [str(tmp_path / "a.json")], date_end="2023-02-01")


def test_export_delivered_nothing_found_writes_nothing(tmp_path):
    out = tmp_path / "empty.csv"
    assert export_delivered_payloads(FakeDB(), [str(out)], 1, 2) == 0
    assert not out.exists()


def test_export_bids_requires_slots(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    db = FakeDB()
    with pytest.raises(ToolError):
        export_bids(db, 0, 10)
    assert db.calls == []


def test_export_bids_default_file_names(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    entry = submission_entry()
    db = FakeDB(submissions=[entry])
    assert export_bids(db, 1, 2) == 1
    csv_out = tmp_path / "builder-submissions_slot-1-to-2.csv"
    json_out = tmp_path / "builder-submissions_slot-1-to-2.json"
    converted = builder_submission_entry_to_bid_trace_v2_with_timestamp_json(entry)
    rows = read_csv(csv_out)
    assert rows[0] == converted.csv_header()
    assert rows[0][-2:] == ["timestamp", "timestamp_ms"]
    assert rows[1] == converted.to_csv_record()
    assert json.loads(json_out.read_text()) == [converted.to_dict()]
    assert db.calls == [("bids", 1, 2)]


def test_archive_without_delete(tmp_path):
    db = FakeDB(payloads=[payload_entry(3), payload_entry(4)])
    out = tmp_path / "archive.csv"
    assert archive_execution_payloads(db, [str(out)], 3, 4) == 2
    rows = read_csv(out)
    assert rows[0] == EXECUTION_PAYLOAD_CSV_HEADER
    assert rows[0] == ["id", "inserted_at", "slot", "proposer_pubkey", "block_hash", "version", "payload"]
    assert len(rows) == 3
    assert all(call[0] != "delete" for call in db.calls)


def test_archive_with_delete_and_json(tmp_path):
    db = FakeDB(payloads=[payload_entry(3)], first_id=3, last_id=3)
    out = tmp_path / "archive.json"
    archive_execution_payloads(
        db, [str(out)], date_start="2023-01-01", date_end="2023-01-02", delete=True
    )
    loaded = json.loads(out.read_text())
    assert len(loaded) == 1
    assert HASH_B in out.read_text()
    assert db.calls[-1] == ("delete", 3, 3)
    assert db.calls[0] == ("first", db.tables.execution_payload, "2023-01-01")


def test_archive_nothing_found_does_not_delete(tmp_path):
    db = FakeDB()
    assert archive_execution_payloads(db, [str(tmp_path / "a.csv")], 1, 2, delete=True) == 0
    assert ("delete", 1, 2) not in db.calls


def test_migrate_rejects_bad_dsn():
    with pytest.raises(ArgumentError):
        migrate("not a database url", table_names("test"))