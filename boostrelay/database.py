"""Relay database access: registrations, submissions, payloads and builders."""

from __future__ import annotations

import os
import re
from dataclasses import fields
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Any, TypeVar

from sqlalchemy import DateTime, bindparam, create_engine, text
from sqlalchemy.engine import Connection, Engine, make_url
from sqlalchemy.sql.elements import TextClause

from .db_types import (
    BlockBuilderEntry,
    BuilderBlockSubmissionEntry,
    DeliveredPayloadEntry,
    ExecutionPayloadEntry,
    GetBuilderSubmissionsFilters,
    GetPayloadsFilters,
    ValidatorRegistrationEntry,
)
from .migrations import apply_migrations
from .payloads import BuilderSubmitBlockRequest, SignedBlindedBeaconBlock
from .tables import TableNames, table_names
from .types import BidTraceV2
from .typesconv import payload_to_exec_payload_entry

E = TypeVar("E")

_SLOTS_PER_EPOCH = 32
_IDENTIFIER = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_NO_ROWS = "no rows in result set"

_REGISTRATION_COLUMNS = "pubkey, fee_recipient, timestamp, gas_limit, signature"
_SUBMISSION_COLUMNS_FULL = (
    "id, inserted_at, received_at, execution_payload_id, sim_success, sim_error, signature, slot, "
    "parent_hash, block_hash, builder_pubkey, proposer_pubkey, proposer_fee_recipient, gas_used, "
    "gas_limit, num_tx, value, epoch, block_number"
)
_SUBMISSION_COLUMNS = (
    "id, inserted_at, received_at, slot, epoch, builder_pubkey, proposer_pubkey, "
    "proposer_fee_recipient, parent_hash, block_hash, block_number, num_tx, value, gas_used, gas_limit"
)
_DELIVERED_COLUMNS = (
    "id, inserted_at, slot, epoch, builder_pubkey, proposer_pubkey, proposer_fee_recipient, "
    "parent_hash, block_hash, block_number, num_tx, value, gas_used, gas_limit"
)
_PAYLOAD_COLUMNS = "id, inserted_at, slot, proposer_pubkey, block_hash, version, payload"
_BUILDER_COLUMNS = (
    "id, inserted_at, builder_pubkey, description, is_high_prio, is_blacklisted, last_submission_id, "
    "last_submission_slot, num_submissions_total, num_submissions_simerror, num_sent_getpayload"
)


def _to_datetime(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _to_db_time(moment: datetime) -> datetime:
    """Store times as naive UTC, matching a timestamp column without zone."""
    if moment.tzinfo is not None:
        return moment.astimezone(timezone.utc).replace(tzinfo=None)
    return moment


def _value_str(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (int, float, Decimal)):
        return str(int(value))
    return str(value)


_CONVERTERS = {
    "inserted_at": _to_datetime,
    "received_at": _to_datetime,
    "value": _value_str,
    "sim_success": bool,
    "is_high_prio": bool,
    "is_blacklisted": bool,
}


def _from_row(cls: type[E], row: Any) -> E:
    names = {field.name for field in fields(cls)}
    kwargs = {}
    for key, value in row._mapping.items():
        if key not in names:
            continue
        convert = _CONVERTERS.get(key)
        kwargs[key] = convert(value) if convert is not None else value
    return cls(**kwargs)


def _hex(value: bytes) -> str:
    return "0x" + value.hex()


def _midnight(day: date | str) -> datetime:
    if isinstance(day, datetime):
        day = day.date()
    elif isinstance(day, str):
        day = date.fromisoformat(day)
    return datetime.combine(day, time())


def _timed(sql: str, *names: str) -> TextClause:
    return text(sql).bindparams(*(bindparam(name, type_=DateTime()) for name in names))


def connect(
    dsn: str, tables: TableNames | None = None, apply_schema: bool | None = None
) -> DatabaseService:
    """Open the database, apply the schema unless told not to, and return the service."""
    if dsn.startswith("postgres://"):
        dsn = "postgresql://" + dsn[len("postgres://"):]
    url = make_url(dsn)
    options: dict[str, Any] = {}
    if url.get_backend_name() == "postgresql":
        options = {"pool_size": 10, "max_overflow": 40, "pool_pre_ping": True}
    engine = create_engine(url, **options)
    try:
        with engine.connect():
            pass
        names = tables or table_names()
        if apply_schema is None:
            apply_schema = not os.environ.get("DB_DONT_APPLY_SCHEMA")
        if apply_schema:
            apply_migrations(engine, names)
    except Exception:
        engine.dispose()
        raise
    return DatabaseService(engine, names)


class DatabaseService:
    """Queries and updates on the relay's tables."""

    def __init__(self, engine: Engine, tables: TableNames | None = None) -> None:
        self.engine = engine
        self.tables = tables or table_names()

    def close(self) -> None:
        self.engine.dispose()

    def _all(self, cls: type[E], query: TextClause | str, params: dict | None = None) -> list[E]:
        statement = text(query) if isinstance(query, str) else query
        with self.engine.connect() as conn:
            rows = conn.execute(statement, params or {}).all()
        return [_from_row(cls, row) for row in rows]

    def _one(self, cls: type[E], query: str, params: dict) -> E:
        entries = self._all(cls, query, params)
        if not entries:
            raise LookupError(_NO_ROWS)
        return entries[0]

    def _scalar(self, query: str, params: dict | None = None) -> Any:
        with self.engine.connect() as conn:
            return conn.execute(text(query), params or {}).scalar_one()

    def _write(self, query: TextClause | str, params: dict) -> None:
        statement = text(query) if isinstance(query, str) else query
        with self.engine.begin() as conn:
            conn.execute(statement, params)

    # validator registrations

    def num_registered_validators(self) -> int:
        """Number of distinct pubkeys that have registered."""
        table = self.tables.validator_registration
        return int(self._scalar(f"SELECT COUNT(*) FROM (SELECT DISTINCT pubkey FROM {table}) AS temp"))

    def num_validator_registration_rows(self) -> int:
        return int(self._scalar(f"SELECT COUNT(*) FROM {self.tables.validator_registration}"))

    def save_validator_registration(self, entry: ValidatorRegistrationEntry) -> None:
        """Insert a registration unless it is older than the latest or changes nothing."""
        table = self.tables.validator_registration
        query = f"""
            INSERT INTO {table} ({_REGISTRATION_COLUMNS})
            SELECT :pubkey, :fee_recipient, :timestamp, :gas_limit, :signature
            WHERE NOT EXISTS (
                SELECT 1 FROM (
                    SELECT pubkey, fee_recipient, timestamp, gas_limit FROM {table}
                    WHERE pubkey = :pubkey ORDER BY timestamp DESC LIMIT 1
                ) AS latest_registration
                WHERE latest_registration.pubkey = :pubkey
                    AND :timestamp <= latest_registration.timestamp
                    OR (:fee_recipient = latest_registration.fee_recipient
                        AND :gas_limit = latest_registration.gas_limit)
            )"""
        self._write(
            query,
            {
                "pubkey": entry.pubkey,
                "fee_recipient": entry.fee_recipient,
                "timestamp": entry.timestamp,
                "gas_limit": entry.gas_limit,
                "signature": entry.signature,
            },
        )

    def get_validator_registration(self, pubkey: str) -> ValidatorRegistrationEntry:
        """The latest registration of a pubkey; LookupError if there is none."""
        query = (
            f"SELECT {_REGISTRATION_COLUMNS} FROM {self.tables.validator_registration} "
            "WHERE pubkey = :pubkey ORDER BY timestamp DESC LIMIT 1"
        )
        return self._one(ValidatorRegistrationEntry, query, {"pubkey": pubkey})

    def _latest_registrations(self, columns: str, where: str = "") -> str:
        return (
            f"SELECT {columns} FROM ("
            f"SELECT {columns}, ROW_NUMBER() OVER (PARTITION BY pubkey ORDER BY timestamp DESC) AS rn "
            f"FROM {self.tables.validator_registration} {where}"
            ") AS ranked WHERE rn = 1 ORDER BY pubkey"
        )

    def get_validator_registrations_for_pubkeys(
        self, pubkeys: list[str]
    ) -> list[ValidatorRegistrationEntry]:
        """The latest registration of each given pubkey that has one."""
        pubkeys = list(pubkeys)
        if not pubkeys:
            raise ValueError("empty slice passed to 'in' query")
        query = text(
            self._latest_registrations(_REGISTRATION_COLUMNS, "WHERE pubkey IN :pubkeys")
        ).bindparams(bindparam("pubkeys", expanding=True))
        return self._all(ValidatorRegistrationEntry, query, {"pubkeys": pubkeys})

    def get_latest_validator_registrations(
        self, timestamp_only: bool = False
    ) -> list[ValidatorRegistrationEntry]:
        """The latest registration of every pubkey, optionally only pubkey and timestamp."""
        columns = "pubkey, timestamp" if timestamp_only else _REGISTRATION_COLUMNS
        return self._all(ValidatorRegistrationEntry, self._latest_registrations(columns))

    # builder submissions and execution payloads

    def save_builder_block_submission(
        self,
        payload: BuilderSubmitBlockRequest,
        sim_error: BaseException | str | None,
        received_at: datetime,
    ) -> BuilderBlockSubmissionEntry:
        """Store the execution payload and the submission; return the stored submission."""
        exec_entry = payload_to_exec_payload_entry(payload)
        insert_payload = f"""
            INSERT INTO {self.tables.execution_payload}
            (slot, proposer_pubkey, block_hash, version, payload) VALUES
            (:slot, :proposer_pubkey, :block_hash, :version, :payload)
            ON CONFLICT (slot, proposer_pubkey, block_hash) DO UPDATE SET slot = :slot
            RETURNING id"""
        insert_submission = _timed(
            f"""
            INSERT INTO {self.tables.builder_block_submission}
            (received_at, execution_payload_id, sim_success, sim_error, signature, slot, parent_hash,
             block_hash, builder_pubkey, proposer_pubkey, proposer_fee_recipient, gas_used, gas_limit,
             num_tx, value, epoch, block_number) VALUES
            (:received_at, :execution_payload_id, :sim_success, :sim_error, :signature, :slot,
             :parent_hash, :block_hash, :builder_pubkey, :proposer_pubkey, :proposer_fee_recipient,
             :gas_used, :gas_limit, :num_tx, :value, :epoch, :block_number)
            RETURNING id""",
            "received_at",
        )

        value = payload.value()
        slot = payload.slot()
        entry = BuilderBlockSubmissionEntry(
            received_at=received_at,
            sim_success=sim_error is None,
            sim_error="" if sim_error is None else str(sim_error),
            signature=_hex(payload.signature()),
            slot=slot,
            block_hash=payload.block_hash(),
            parent_hash=payload.parent_hash(),
            builder_pubkey=_hex(payload.builder_pubkey()),
            proposer_pubkey=payload.proposer_pubkey(),
            proposer_fee_recipient=payload.proposer_fee_recipient(),
            gas_used=payload.gas_used(),
            gas_limit=payload.gas_limit(),
            num_tx=payload.num_tx(),
            value="<nil>" if value is None else str(value),
            epoch=slot // _SLOTS_PER_EPOCH,
            block_number=payload.block_number(),
        )

        with self.engine.begin() as conn:
            entry.execution_payload_id = conn.execute(
                text(insert_payload),
                {
                    "slot": exec_entry.slot,
                    "proposer_pubkey": exec_entry.proposer_pubkey,
                    "block_hash": exec_entry.block_hash,
                    "version": exec_entry.version,
                    "payload": exec_entry.payload,
                },
            ).scalar_one()
            entry.id = conn.execute(insert_submission, self._submission_params(entry)).scalar_one()
        return entry

    @staticmethod
    def _submission_params(entry: BuilderBlockSubmissionEntry) -> dict[str, Any]:
        return {
            "received_at": None if entry.received_at is None else _to_db_time(entry.received_at),
            "execution_payload_id": entry.execution_payload_id,
            "sim_success": entry.sim_success,
            "sim_error": entry.sim_error,
            "signature": entry.signature,
            "slot": entry.slot,
            "parent_hash": entry.parent_hash,
            "block_hash": entry.block_hash,
            "builder_pubkey": entry.builder_pubkey,
            "proposer_pubkey": entry.proposer_pubkey,
            "proposer_fee_recipient": entry.proposer_fee_recipient,
            "gas_used": entry.gas_used,
            "gas_limit": entry.gas_limit,
            "num_tx": entry.num_tx,
            "value": entry.value,
            "epoch": entry.epoch,
            "block_number": entry.block_number,
        }

    def get_block_submission_entry(
        self, slot: int, proposer_pubkey: str, block_hash: str
    ) -> BuilderBlockSubmissionEntry:
        query = (
            f"SELECT {_SUBMISSION_COLUMNS_FULL} FROM {self.tables.builder_block_submission} "
            "WHERE slot = :slot AND proposer_pubkey = :proposer_pubkey AND block_hash = :block_hash "
            "ORDER BY builder_pubkey ASC LIMIT 1"
        )
        params = {"slot": slot, "proposer_pubkey": proposer_pubkey, "block_hash": block_hash}
        return self._one(BuilderBlockSubmissionEntry, query, params)

    def get_execution_payload_entry_by_id(self, execution_payload_id: int) -> ExecutionPayloadEntry:
        query = f"SELECT {_PAYLOAD_COLUMNS} FROM {self.tables.execution_payload} WHERE id = :id"
        return self._one(ExecutionPayloadEntry, query, {"id": execution_payload_id})

    def get_execution_payload_entry_by_slot_pk_hash(
        self, slot: int, proposer_pubkey: str, block_hash: str
    ) -> ExecutionPayloadEntry:
        query = (
            f"SELECT {_PAYLOAD_COLUMNS} FROM {self.tables.execution_payload} "
            "WHERE slot = :slot AND proposer_pubkey = :proposer_pubkey AND block_hash = :block_hash"
        )
        params = {"slot": slot, "proposer_pubkey": proposer_pubkey, "block_hash": block_hash}
        return self._one(ExecutionPayloadEntry, query, params)

    # delivered payloads

    def save_delivered_payload(
        self, bid_trace: BidTraceV2, signed_blinded_beacon_block: SignedBlindedBeaconBlock
    ) -> None:
        """Record a payload delivered to a proposer; duplicates are ignored."""
        block_json = signed_blinded_beacon_block.to_json()
        query = f"""
            INSERT INTO {self.tables.delivered_payload}
            (signed_blinded_beacon_block, slot, epoch, builder_pubkey, proposer_pubkey,
             proposer_fee_recipient, parent_hash, block_hash, block_number, gas_used, gas_limit,
             num_tx, value) VALUES
            (:signed_blinded_beacon_block, :slot, :epoch, :builder_pubkey, :proposer_pubkey,
             :proposer_fee_recipient, :parent_hash, :block_hash, :block_number, :gas_used, :gas_limit,
             :num_tx, :value)
            ON CONFLICT DO NOTHING"""
        self._write(
            query,
            {
                "signed_blinded_beacon_block": block_json,
                "slot": bid_trace.slot,
                "epoch": bid_trace.slot // _SLOTS_PER_EPOCH,
                "builder_pubkey": _hex(bid_trace.builder_pubkey),
                "proposer_pubkey": _hex(bid_trace.proposer_pubkey),
                "proposer_fee_recipient": _hex(bid_trace.proposer_fee_recipient),
                "parent_hash": _hex(bid_trace.parent_hash),
                "block_hash": _hex(bid_trace.block_hash),
                "block_number": bid_trace.block_number,
                "gas_used": bid_trace.gas_used,
                "gas_limit": bid_trace.gas_limit,
                "num_tx": bid_trace.num_tx,
                "value": str(bid_trace.value),
            },
        )

    def get_recent_delivered_payloads(self, filters: GetPayloadsFilters) -> list[DeliveredPayloadEntry]:
        """Delivered payloads matching the filters, newest slot first unless ordered by value."""
        params: dict[str, Any] = {"limit": filters.limit}
        conditions = []
        if filters.slot > 0:
            conditions.append("slot = :slot")
            params["slot"] = filters.slot
        elif filters.cursor > 0:
            conditions.append("slot <= :cursor")
            params["cursor"] = filters.cursor
        if filters.block_hash:
            conditions.append("block_hash = :block_hash")
            params["block_hash"] = filters.block_hash
        if filters.block_number > 0:
            conditions.append("block_number = :block_number")
            params["block_number"] = filters.block_number
        if filters.proposer_pubkey:
            conditions.append("proposer_pubkey = :proposer_pubkey")
            params["proposer_pubkey"] = filters.proposer_pubkey
        if filters.builder_pubkey:
            conditions.append("builder_pubkey = :builder_pubkey")
            params["builder_pubkey"] = filters.builder_pubkey

        where = "WHERE " + " AND ".join(conditions) if conditions else ""
        order_by = {1: "value ASC", -1: "value DESC"}.get(filters.order_by_value, "slot DESC")
        query = (
            f"SELECT {_DELIVERED_COLUMNS} FROM {self.tables.delivered_payload} {where} "
            f"ORDER BY {order_by} LIMIT :limit"
        )
        return self._all(DeliveredPayloadEntry, query, params)

    def get_delivered_payloads(self, id_first: int, id_last: int) -> list[DeliveredPayloadEntry]:
        query = (
            f"SELECT {_DELIVERED_COLUMNS} FROM {self.tables.delivered_payload} "
            "WHERE id >= :first AND id <= :last ORDER BY slot ASC"
        )
        return self._all(DeliveredPayloadEntry, query, {"first": id_first, "last": id_last})

    def get_num_delivered_payloads(self) -> int:
        return int(self._scalar(f"SELECT COUNT(*) FROM {self.tables.delivered_payload}"))

    def get_builder_submissions(
        self, filters: GetBuilderSubmissionsFilters
    ) -> list[BuilderBlockSubmissionEntry]:
        """Successfully simulated submissions; slot, block number or hash lift the limit."""
        params: dict[str, Any] = {}
        conditions = ["sim_success = true"]
        limited = True
        if filters.slot > 0:
            conditions.append("slot = :slot")
            params["slot"] = filters.slot
            limited = False
        if filters.block_number > 0:
            conditions.append("block_number = :block_number")
            params["block_number"] = filters.block_number
            limited = False
        if filters.block_hash:
            conditions.append("block_hash = :block_hash")
            params["block_hash"] = filters.block_hash
            limited = False
        if filters.builder_pubkey:
            conditions.append("builder_pubkey = :builder_pubkey")
            params["builder_pubkey"] = filters.builder_pubkey

        limit = ""
        if limited:
            limit = "LIMIT :limit"
            params["limit"] = filters.limit
        query = (
            f"SELECT {_SUBMISSION_COLUMNS} FROM {self.tables.builder_block_submission} "
            f"WHERE {' AND '.join(conditions)} ORDER BY slot DESC, inserted_at DESC {limit}"
        )
        return self._all(BuilderBlockSubmissionEntry, query, params)

    def get_builder_submissions_by_slots(
        self, slot_from: int, slot_to: int
    ) -> list[BuilderBlockSubmissionEntry]:
        query = (
            f"SELECT {_SUBMISSION_COLUMNS} FROM {self.tables.builder_block_submission} "
            "WHERE sim_success = true AND slot >= :slot_from AND slot <= :slot_to "
            "ORDER BY slot ASC, inserted_at ASC"
        )
        return self._all(
            BuilderBlockSubmissionEntry, query, {"slot_from": slot_from, "slot_to": slot_to}
        )

    # block builders

    def upsert_block_builder_entry_after_submission(
        self, last_submission: BuilderBlockSubmissionEntry, is_error: bool
    ) -> None:
        """Create the builder or bump its submission counters."""
        table = self.tables.block_builder
        query = f"""
            INSERT INTO {table}
            (builder_pubkey, description, is_high_prio, is_blacklisted, last_submission_id,
             last_submission_slot, num_submissions_total, num_submissions_simerror) VALUES
            (:builder_pubkey, :description, :is_high_prio, :is_blacklisted, :last_submission_id,
             :last_submission_slot, :num_submissions_total, :num_submissions_simerror)
            ON CONFLICT (builder_pubkey) DO UPDATE SET
                last_submission_id = :last_submission_id,
                last_submission_slot = :last_submission_slot,
                num_submissions_total = {table}.num_submissions_total + 1,
                num_submissions_simerror = {table}.num_submissions_simerror + :num_submissions_simerror"""
        self._write(
            query,
            {
                "builder_pubkey": last_submission.builder_pubkey,
                "description": "",
                "is_high_prio": False,
                "is_blacklisted": False,
                "last_submission_id": last_submission.id,
                "last_submission_slot": last_submission.slot,
                "num_submissions_total": 1,
                "num_submissions_simerror": 1 if is_error else 0,
            },
        )

    def get_block_builders(self) -> list[BlockBuilderEntry]:
        query = f"SELECT {_BUILDER_COLUMNS} FROM {self.tables.block_builder} ORDER BY id ASC"
        return self._all(BlockBuilderEntry, query)

    def get_block_builder_by_pubkey(self, pubkey: str) -> BlockBuilderEntry:
        query = f"SELECT {_BUILDER_COLUMNS} FROM {self.tables.block_builder} WHERE builder_pubkey = :pubkey"
        return self._one(BlockBuilderEntry, query, {"pubkey": pubkey})

    def set_block_builder_status(self, pubkey: str, is_high_prio: bool, is_blacklisted: bool) -> None:
        query = (
            f"UPDATE {self.tables.block_builder} SET is_high_prio = :is_high_prio, "
            "is_blacklisted = :is_blacklisted WHERE builder_pubkey = :pubkey"
        )
        self._write(
            query, {"is_high_prio": is_high_prio, "is_blacklisted": is_blacklisted, "pubkey": pubkey}
        )

    def inc_block_builder_stats_after_get_payload(self, builder_pubkey: str) -> None:
        query = (
            f"UPDATE {self.tables.block_builder} SET num_sent_getpayload = num_sent_getpayload + 1 "
            "WHERE builder_pubkey = :pubkey"
        )
        self._write(query, {"pubkey": builder_pubkey})

    # archiving helpers

    def get_execution_payloads(self, id_first: int, id_last: int) -> list[ExecutionPayloadEntry]:
        query = (
            f"SELECT {_PAYLOAD_COLUMNS} FROM {self.tables.execution_payload} "
            "WHERE id >= :first AND id <= :last ORDER BY id ASC"
        )
        return self._all(ExecutionPayloadEntry, query, {"first": id_first, "last": id_last})

    def delete_execution_payloads(self, id_first: int, id_last: int) -> None:
        query = f"DELETE FROM {self.tables.execution_payload} WHERE id >= :first AND id <= :last"
        self._write(query, {"first": id_first, "last": id_last})

    @staticmethod
    def _check_table(table: str) -> str:
        if not _IDENTIFIER.fullmatch(table):
            raise ValueError(f"invalid table name: {table!r}")
        return table

    def _find_id(self, conn_query: TextClause, day: date | str) -> int:
        with self.engine.connect() as conn:
            row = conn.execute(conn_query, {"start": _midnight(day)}).first()
        if row is None:
            raise LookupError(_NO_ROWS)
        return int(row[0])

    def find_first_id_on_or_after(self, table: str, date: date | str) -> int:
        """Id of the first row inserted on or after the given day."""
        query = _timed(
            f"SELECT id FROM {self._check_table(table)} WHERE inserted_at >= :start ORDER BY id ASC LIMIT 1",
            "start",
        )
        return self._find_id(query, date)

    def find_last_id_before(self, table: str, date: date | str) -> int:
        """Id of the last row inserted before the given day."""
        query = _timed(
            f"SELECT id FROM {self._check_table(table)} WHERE inserted_at < :start ORDER BY id DESC LIMIT 1",
            "start",
        )
        return self._find_id(query, date)


def _unused(conn: Connection) -> None:  # pragma: no cover - keeps the type import meaningful
    del conn