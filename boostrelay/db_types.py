"""Row types and query filters for the relay database."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from .common import InvalidPubkeyError, InvalidSignatureError

_HEX = re.compile(r"[0-9a-fA-F]*")

EXECUTION_PAYLOAD_ENTRY_CSV_HEADER = [
    "id",
    "inserted_at",
    "slot",
    "proposer_pubkey",
    "block_hash",
    "version",
    "payload",
]


def _decode_fixed_hex(value: str, length: int, error: Exception) -> bytes:
    if not value.startswith(("0x", "0X")):
        raise error
    digits = value[2:]
    if len(digits) != 2 * length or not _HEX.fullmatch(digits):
        raise error
    return bytes.fromhex(digits)


def _encode_hex(value: bytes) -> str:
    return "0x" + value.hex()


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _fraction(moment: datetime) -> str:
    digits = f"{moment.microsecond:06d}".rstrip("0")
    return f".{digits}" if digits else ""


def _time_string(moment: datetime | None) -> str:
    """Render a time as '2006-01-02 15:04:05.999999 +0000 UTC'."""
    if moment is None:
        return "0001-01-01 00:00:00 +0000 UTC"
    moment = _as_utc(moment)
    return (
        f"{moment.year:04d}-{moment.month:02d}-{moment.day:02d} "
        f"{moment.hour:02d}:{moment.minute:02d}:{moment.second:02d}{_fraction(moment)} +0000 UTC"
    )


def _rfc3339(moment: datetime | None) -> str:
    if moment is None:
        return "0001-01-01T00:00:00Z"
    moment = _as_utc(moment)
    return (
        f"{moment.year:04d}-{moment.month:02d}-{moment.day:02d}T"
        f"{moment.hour:02d}:{moment.minute:02d}:{moment.second:02d}{_fraction(moment)}Z"
    )


@dataclass
class GetPayloadsFilters:
    """Filters for querying delivered payloads; zero values mean 'not set'."""

    slot: int = 0
    cursor: int = 0
    limit: int = 0
    block_hash: str = ""
    block_number: int = 0
    proposer_pubkey: str = ""
    builder_pubkey: str = ""
    order_by_value: int = 0


@dataclass
class GetBuilderSubmissionsFilters:
    """Filters for querying builder submissions; zero values mean 'not set'."""

    slot: int = 0
    limit: int = 0
    block_hash: str = ""
    block_number: int = 0
    builder_pubkey: str = ""


@dataclass(frozen=True)
class SignedValidatorRegistration:
    """A validator's signed fee-recipient and gas-limit registration."""

    pubkey: bytes
    fee_recipient: bytes
    timestamp: int
    gas_limit: int
    signature: bytes

    def __post_init__(self) -> None:
        if len(self.pubkey) != 48:
            raise InvalidPubkeyError()
        if len(self.fee_recipient) != 20:
            raise ValueError("invalid fee recipient")
        if len(self.signature) != 96:
            raise InvalidSignatureError()


@dataclass(kw_only=True)
class ValidatorRegistrationEntry:
    """A stored validator registration."""

    pubkey: str
    fee_recipient: str = ""
    timestamp: int = 0
    gas_limit: int = 0
    signature: str = ""
    id: int = 0
    inserted_at: datetime | None = None

    def to_signed_validator_registration(self) -> SignedValidatorRegistration:
        """Decode the hex columns into a signed registration."""
        return SignedValidatorRegistration(
            pubkey=_decode_fixed_hex(self.pubkey, 48, InvalidPubkeyError()),
            fee_recipient=_decode_fixed_hex(self.fee_recipient, 20, ValueError("invalid fee recipient")),
            timestamp=self.timestamp,
            gas_limit=self.gas_limit,
            signature=_decode_fixed_hex(self.signature, 96, InvalidSignatureError()),
        )


def signed_validator_registration_to_entry(
    registration: SignedValidatorRegistration,
) -> ValidatorRegistrationEntry:
    """Encode a signed registration as a database entry."""
    return ValidatorRegistrationEntry(
        pubkey=_encode_hex(registration.pubkey),
        fee_recipient=_encode_hex(registration.fee_recipient),
        timestamp=registration.timestamp,
        gas_limit=registration.gas_limit,
        signature=_encode_hex(registration.signature),
    )


@dataclass(kw_only=True)
class ExecutionPayloadEntry:
    """A stored execution payload as JSON text."""

    id: int = 0
    inserted_at: datetime | None = None
    slot: int = 0
    proposer_pubkey: str = ""
    block_hash: str = ""
    version: str = ""
    payload: str = ""

    def to_csv_record(self) -> list[str]:
        """Return the row in the order of EXECUTION_PAYLOAD_ENTRY_CSV_HEADER."""
        return [
            str(self.id),
            _time_string(self.inserted_at),
            str(self.slot),
            self.proposer_pubkey,
            self.block_hash,
            self.version,
            self.payload,
        ]

    def to_dict(self) -> dict[str, Any]:
        """Return the entry as a JSON-ready mapping."""
        return {
            "ID": self.id,
            "InsertedAt": _rfc3339(self.inserted_at),
            "Slot": self.slot,
            "ProposerPubkey": self.proposer_pubkey,
            "BlockHash": self.block_hash,
            "Version": self.version,
            "Payload": self.payload,
        }


@dataclass(kw_only=True)
class BuilderBlockSubmissionEntry:
    """A stored block submission from a builder with its simulation result."""

    id: int = 0
    inserted_at: datetime | None = None
    received_at: datetime | None = None
    execution_payload_id: int | None = None
    sim_success: bool = False
    sim_error: str = ""
    signature: str = ""
    slot: int = 0
    parent_hash: str = ""
    block_hash: str = ""
    builder_pubkey: str = ""
    proposer_pubkey: str = ""
    proposer_fee_recipient: str = ""
    gas_used: int = 0
    gas_limit: int = 0
    num_tx: int = 0
    value: str = ""
    epoch: int = 0
    block_number: int = 0


@dataclass(kw_only=True)
class DeliveredPayloadEntry:
    """A stored payload that was delivered to a proposer."""

    id: int = 0
    inserted_at: datetime | None = None
    signed_blinded_beacon_block: str | None = None
    slot: int = 0
    epoch: int = 0
    builder_pubkey: str = ""
    proposer_pubkey: str = ""
    proposer_fee_recipient: str = ""
    parent_hash: str = ""
    block_hash: str = ""
    block_number: int = 0
    gas_used: int = 0
    gas_limit: int = 0
    num_tx: int = 0
    value: str = ""


@dataclass(kw_only=True)
class BlockBuilderEntry:
    """A known block builder with its submission statistics."""

    id: int = 0
    inserted_at: datetime | None = None
    builder_pubkey: str = ""
    description: str = ""
    is_high_prio: bool = False
    is_blacklisted: bool = False
    last_submission_id: int | None = None
    last_submission_slot: int = 0
    num_submissions_total: int = 0
    num_submissions_simerror: int = 0
    num_sent_getpayload: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Return the entry as a JSON-ready mapping."""
        return {
            "id": self.id,
            "inserted_at": _rfc3339(self.inserted_at),
            "builder_pubkey": self.builder_pubkey,
            "description": self.description,
            "is_high_prio": self.is_high_prio,
            "is_blacklisted": self.is_blacklisted,
            "last_submission_id": {
                "Int64": self.last_submission_id or 0,
                "Valid": self.last_submission_id is not None,
            },
            "last_submission_slot": self.last_submission_slot,
            "num_submissions_total": self.num_submissions_total,
            "num_submissions_simerror": self.num_submissions_simerror,
            "num_sent_getpayload": self.num_sent_getpayload,
        }