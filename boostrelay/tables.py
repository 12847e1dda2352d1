"""Database table names derived from a configurable prefix."""

from __future__ import annotations

from dataclasses import dataclass

from .common import get_env


@dataclass(frozen=True)
class TableNames:
    """Names of all relay tables for one prefix."""

    migrations: str
    validator_registration: str
    execution_payload: str
    builder_block_submission: str
    delivered_payload: str
    block_builder: str


def table_names(prefix: str | None = None) -> TableNames:
    """Build table names; the prefix defaults to DB_TABLE_PREFIX or 'dev'."""
    base = get_env("DB_TABLE_PREFIX", "dev") if prefix is None else prefix
    return TableNames(
        migrations=f"{base}_migrations",
        validator_registration=f"{base}_validator_registration",
        execution_payload=f"{base}_execution_payload",
        builder_block_submission=f"{base}_builder_block_submission",
        delivered_payload=f"{base}_payload_delivered",
        block_builder=f"{base}_blockbuilder",
    )