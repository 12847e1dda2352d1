"""Database schema migrations and their application."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine

from .tables import TableNames, table_names


@dataclass(frozen=True)
class Migration:
    """One schema migration; each up/down string may hold several statements."""

    id: str
    up: tuple[str, ...]
    down: tuple[str, ...] = ()
    disable_transaction_up: bool = False
    disable_transaction_down: bool = False


def _init_database(t: TableNames) -> Migration:
    sub = t.builder_block_submission
    delivered = t.delivered_payload
    up = f"""
        CREATE TABLE IF NOT EXISTS {t.validator_registration} (
            id          bigint GENERATED BY DEFAULT AS IDENTITY PRIMARY KEY,
            inserted_at timestamp NOT NULL default current_timestamp,

            pubkey        varchar(98) NOT NULL,
            fee_recipient varchar(42) NOT NULL,
            timestamp     bigint NOT NULL,
            gas_limit     bigint NOT NULL,
            signature     text NOT NULL
        );

        CREATE UNIQUE INDEX IF NOT EXISTS {t.validator_registration}_pubkey_timestamp_uidx ON {t.validator_registration}(pubkey, timestamp DESC);


        CREATE TABLE IF NOT EXISTS {t.execution_payload} (
            id          bigint GENERATED BY DEFAULT AS IDENTITY PRIMARY KEY,
            inserted_at timestamp NOT NULL default current_timestamp,

            slot            bigint NOT NULL,
            proposer_pubkey varchar(98) NOT NULL,
            block_hash      varchar(66) NOT NULL,

            version     text NOT NULL, -- bellatrix
            payload     json NOT NULL
        );

        CREATE UNIQUE INDEX IF NOT EXISTS {t.execution_payload}_slot_pk_hash_idx ON {t.execution_payload}(slot, proposer_pubkey, block_hash);


        CREATE TABLE IF NOT EXISTS {sub} (
            id bigint GENERATED BY DEFAULT AS IDENTITY PRIMARY KEY,
            inserted_at timestamp NOT NULL default current_timestamp,

            execution_payload_id bigint,

            -- simulation & verification results
            sim_success boolean NOT NULL,
            sim_error   text    NOT NULL,

            -- bidtrace data
            signature            text NOT NULL,

            slot        bigint NOT NULL,
            parent_hash varchar(66) NOT NULL,
            block_hash  varchar(66) NOT NULL,

            builder_pubkey         varchar(98) NOT NULL,
            proposer_pubkey        varchar(98) NOT NULL,
            proposer_fee_recipient varchar(42) NOT NULL,

            gas_used   bigint NOT NULL,
            gas_limit  bigint NOT NULL,

            num_tx int NOT NULL,
            value  NUMERIC(48, 0),

            -- helpers
            epoch        bigint NOT NULL,
            block_number bigint NOT NULL,
            was_most_profitable boolean NOT NULL
        );

        CREATE INDEX IF NOT EXISTS {sub}_slot_idx ON {sub}("slot");
        CREATE INDEX IF NOT EXISTS {sub}_blockhash_idx ON {sub}("block_hash");
        CREATE INDEX IF NOT EXISTS {sub}_blocknumber_idx ON {sub}("block_number");
        CREATE INDEX IF NOT EXISTS {sub}_builderpubkey_idx ON {sub}("builder_pubkey");
        CREATE INDEX IF NOT EXISTS {sub}_simsuccess_idx ON {sub}("sim_success");
        CREATE INDEX IF NOT EXISTS {sub}_mostprofit_idx ON {sub}("was_most_profitable");
        CREATE INDEX IF NOT EXISTS {sub}_executionpayloadid_idx ON {sub}("execution_payload_id");


        CREATE TABLE IF NOT EXISTS {delivered} (
            id bigint GENERATED BY DEFAULT AS IDENTITY PRIMARY KEY,
            inserted_at timestamp NOT NULL default current_timestamp,

            signed_blinded_beacon_block json,

            epoch bigint NOT NULL,
            slot  bigint NOT NULL,

            builder_pubkey         varchar(98) NOT NULL,
            proposer_pubkey        varchar(98) NOT NULL,
            proposer_fee_recipient varchar(42) NOT NULL,

            parent_hash  varchar(66) NOT NULL,
            block_hash   varchar(66) NOT NULL,
            block_number bigint NOT NULL,

            gas_used  bigint NOT NULL,
            gas_limit bigint NOT NULL,

            num_tx  int NOT NULL,
            value   NUMERIC(48, 0),

            UNIQUE (slot, proposer_pubkey, block_hash)
        );

        CREATE INDEX IF NOT EXISTS {delivered}_slot_idx ON {delivered}("slot");
        CREATE INDEX IF NOT EXISTS {delivered}_blockhash_idx ON {delivered}("block_hash");
        CREATE INDEX IF NOT EXISTS {delivered}_blocknumber_idx ON {delivered}("block_number");
        CREATE INDEX IF NOT EXISTS {delivered}_proposerpubkey_idx ON {delivered}("proposer_pubkey");
        CREATE INDEX IF NOT EXISTS {delivered}_builderpubkey_idx ON {delivered}("builder_pubkey");
        CREATE INDEX IF NOT EXISTS {delivered}_value_idx ON {delivered}("value");


        CREATE TABLE IF NOT EXISTS {t.block_builder} (
            id bigint GENERATED BY DEFAULT AS IDENTITY PRIMARY KEY,
            inserted_at timestamp NOT NULL default current_timestamp,

            builder_pubkey  varchar(98) NOT NULL,
            description     text NOT NULL,

            is_high_prio    boolean NOT NULL,
            is_blacklisted  boolean NOT NULL,

            last_submission_id   bigint references {sub}(id) on delete set null,
            last_submission_slot bigint NOT NULL,

            num_submissions_total    bigint NOT NULL,
            num_submissions_simerror bigint NOT NULL,
            num_submissions_topbid   bigint NOT NULL,

            num_sent_getpayload bigint NOT NULL DEFAULT 0,

            UNIQUE (builder_pubkey)
        );
        """
    down = f"""
        DROP TABLE IF EXISTS {sub};
        DROP TABLE IF EXISTS {delivered};
        DROP TABLE IF EXISTS {t.block_builder};
        DROP TABLE IF EXISTS {t.execution_payload};
        DROP TABLE IF EXISTS {t.validator_registration};
        """
    return Migration(id="001-init-database", up=(up,), down=(down,))


def _remove_isbest_add_receivedat(t: TableNames) -> Migration:
    sub = t.builder_block_submission
    first = f"""
        ALTER TABLE {sub} ADD received_at timestamp;

        ALTER TABLE {sub} DROP COLUMN was_most_profitable;
        DROP INDEX IF EXISTS {sub}_mostprofit_idx;

        ALTER TABLE {t.block_builder} DROP COLUMN num_submissions_topbid;
    """
    second = f"""
        CREATE INDEX CONCURRENTLY IF NOT EXISTS {sub}_received_idx ON {sub}(received_at DESC);
    """
    # an index cannot be created concurrently inside a transaction
    return Migration(
        id="002-remove-isbest-add-receivedat",
        up=(first, second),
        down=(),
        disable_transaction_up=True,
        disable_transaction_down=True,
    )


def migrations(tables: TableNames | None = None) -> list[Migration]:
    """All migrations in the order they are applied."""
    names = tables or table_names()
    return [_init_database(names), _remove_isbest_add_receivedat(names)]


def pending_migrations(applied_ids: Iterable[str], tables: TableNames | None = None) -> list[Migration]:
    """Migrations whose ids are not among the applied ones, in order."""
    applied = set(applied_ids)
    return [migration for migration in migrations(tables) if migration.id not in applied]


def _statements(sql: str) -> list[str]:
    return [statement.strip() for statement in sql.split(";") if statement.strip()]


def _run(conn: Connection, migration: Migration, table: str) -> None:
    for block in migration.up:
        for statement in _statements(block):
            conn.exec_driver_sql(statement)
    conn.execute(
        text(f"INSERT INTO {table} (id, applied_at) VALUES (:id, :applied_at)"),
        {"id": migration.id, "applied_at": datetime.now(timezone.utc)},
    )


def apply_migrations(engine: Engine, tables: TableNames | None = None) -> int:
    """Apply all pending migrations and return how many were applied."""
    names = tables or table_names()
    table = names.migrations
    with engine.begin() as conn:
        conn.exec_driver_sql(
            f"CREATE TABLE IF NOT EXISTS {table} "
            "(id text NOT NULL PRIMARY KEY, applied_at timestamp with time zone)"
        )
        applied = [row[0] for row in conn.exec_driver_sql(f"SELECT id FROM {table}")]

    count = 0
    for migration in pending_migrations(applied, names):
        if migration.disable_transaction_up:
            with engine.connect() as conn:
                conn = conn.execution_options(isolation_level="AUTOCOMMIT")
                _run(conn, migration, table)
        else:
            with engine.begin() as conn:
                _run(conn, migration, table)
        count += 1
    return count