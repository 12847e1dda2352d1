"""Fork-versioned containers for beacon blocks, execution payloads and bids."""

from __future__ import annotations

import dataclasses
import json
import re
from dataclasses import dataclass
from typing import Any

from .types import BidTrace, EmptyPayloadError

BELLATRIX = "bellatrix"
CAPELLA = "capella"

_HEX = re.compile(r"[0-9a-fA-F]*")
_DECIMAL = re.compile(r"[0-9]+")
_UINT64_MODULUS = 2**64

_LENGTHS: dict[str, int | None] = {"hash": 32, "address": 20, "bloom": 256, "bytes": None}

_PAYLOAD_FIELDS = (
    ("parent_hash", "hash"),
    ("fee_recipient", "address"),
    ("state_root", "hash"),
    ("receipts_root", "hash"),
    ("logs_bloom", "bloom"),
    ("prev_randao", "hash"),
    ("block_number", "uint"),
    ("gas_limit", "uint"),
    ("gas_used", "uint"),
    ("timestamp", "uint"),
    ("extra_data", "bytes"),
    ("base_fee_per_gas", "uint"),
    ("block_hash", "hash"),
    ("transactions", "transactions"),
)


def _load(data: Any) -> Any:
    if isinstance(data, (bytes, bytearray)):
        data = data.decode()
    if isinstance(data, str):
        return json.loads(data)
    return data


def _dump(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"))


def _hex_bytes(value: Any, name: str, length: int | None = None) -> bytes:
    if not isinstance(value, str):
        raise ValueError(f"{name}: expected a hex string")
    digits = value[2:] if value.startswith(("0x", "0X")) else value
    if len(digits) % 2 or not _HEX.fullmatch(digits):
        raise ValueError(f"{name}: invalid hex string")
    raw = bytes.fromhex(digits)
    if length is not None and len(raw) != length:
        raise ValueError(f"{name}: expected {length} bytes")
    return raw


def _hex_str(value: Any, name: str) -> str:
    return "0x" + _hex_bytes(value, name).hex()


def _uint(value: Any, name: str) -> int:
    if not isinstance(value, str) or not _DECIMAL.fullmatch(value):
        raise ValueError(f"{name}: expected a decimal string")
    return int(value)


def _check_withdrawals(value: Any) -> None:
    if not isinstance(value, list):
        raise ValueError("withdrawals: expected a list")
    for withdrawal in value:
        if not isinstance(withdrawal, dict):
            raise ValueError("withdrawals: expected objects")
        for key in ("index", "validator_index", "amount"):
            if withdrawal.get(key) is None:
                raise ValueError(f"withdrawal {key} missing")
            _uint(withdrawal[key], key)
        if withdrawal.get("address") is None:
            raise ValueError("withdrawal address missing")
        _hex_bytes(withdrawal["address"], "address", 20)


def _check_field(data: dict, key: str, kind: str) -> None:
    value = data[key]
    if kind == "uint":
        _uint(value, key)
    elif kind == "transactions":
        if not isinstance(value, list):
            raise ValueError(f"{key}: expected a list")
        for transaction in value:
            _hex_bytes(transaction, key)
    elif kind == "withdrawals":
        _check_withdrawals(value)
    else:
        _hex_bytes(value, key, _LENGTHS[kind])


def _validate_payload(data: Any, *, capella: bool) -> None:
    """Capella payloads need every field; bellatrix ones check only what is present."""
    if not isinstance(data, dict):
        raise ValueError("execution payload must be a JSON object")
    fields = _PAYLOAD_FIELDS + ((("withdrawals", "withdrawals"),) if capella else ())
    for key, kind in fields:
        if data.get(key) is None:
            if capella:
                raise ValueError(f"{key} missing")
            continue
        _check_field(data, key, kind)


@dataclass
class _Versioned:
    bellatrix: dict | None = None
    capella: dict | None = None

    @property
    def version(self) -> str | None:
        """The fork of the held data, or None when empty."""
        if self.capella is not None:
            return CAPELLA
        if self.bellatrix is not None:
            return BELLATRIX
        return None

    def _data(self) -> dict | None:
        return self.capella if self.capella is not None else self.bellatrix

    def to_json(self) -> str:
        """Serialize the held data; capella takes precedence."""
        data = self._data()
        if data is None:
            raise EmptyPayloadError()
        return _dump(data)


@dataclass
class SignedBlindedBeaconBlock(_Versioned):
    """A signed blinded beacon block of either fork."""

    def to_json(self) -> str:
        return super().to_json()

    def _body_header(self) -> dict | None:
        data = self._data()
        return None if data is None else data["message"]["body"]["execution_payload_header"]

    def slot(self) -> int:
        data = self._data()
        return 0 if data is None else _uint(data["message"]["slot"], "slot")

    def block_hash(self) -> str:
        header = self._body_header()
        return "" if header is None else _hex_str(header["block_hash"], "block_hash")

    def block_number(self) -> int:
        header = self._body_header()
        return 0 if header is None else _uint(header["block_number"], "block_number")

    def proposer_index(self) -> int:
        data = self._data()
        return 0 if data is None else _uint(data["message"]["proposer_index"], "proposer_index")

    def signature(self) -> bytes | None:
        data = self._data()
        return None if data is None else _hex_bytes(data["signature"], "signature", 96)

    def message(self) -> dict | None:
        data = self._data()
        return None if data is None else data["message"]


@dataclass
class SignedBeaconBlock(_Versioned):
    """A signed full beacon block of either fork."""

    def to_json(self) -> str:
        return super().to_json()

    def slot(self) -> int:
        data = self._data()
        return 0 if data is None else _uint(data["message"]["slot"], "slot")

    def block_hash(self) -> str:
        data = self._data()
        if data is None:
            return ""
        payload = data["message"]["body"]["execution_payload"]
        return _hex_str(payload["block_hash"], "block_hash")


@dataclass
class ExecutionPayload(_Versioned):
    """An execution payload; capella when it carries withdrawals."""

    @classmethod
    def from_json(cls, data: Any) -> ExecutionPayload:
        """Parse a payload from JSON text, bytes or a decoded object."""
        data = _load(data)
        try:
            _validate_payload(data, capella=True)
        except ValueError:
            _validate_payload(data, capella=False)
            return cls(bellatrix=data)
        return cls(capella=data)

    def to_json(self) -> str:
        return super().to_json()

    def block_hash(self) -> str:
        data = self._data()
        return "" if data is None else _hex_str(data["block_hash"], "block_hash")

    def parent_hash(self) -> str:
        data = self._data()
        return "" if data is None else _hex_str(data["parent_hash"], "parent_hash")

    def block_number(self) -> int:
        data = self._data()
        return 0 if data is None else _uint(data["block_number"], "block_number")

    def timestamp(self) -> int:
        data = self._data()
        return 0 if data is None else _uint(data["timestamp"], "timestamp")

    def num_tx(self) -> int:
        data = self._data()
        return 0 if data is None else len(data.get("transactions") or [])


def _parse_versioned_payload(data: Any) -> tuple[dict | None, dict | None]:
    """Split a {"version", "data"} payload response into (bellatrix, capella)."""
    data = _load(data)
    if not isinstance(data, dict):
        raise ValueError("versioned payload must be a JSON object")
    if data.get("version") == CAPELLA and isinstance(data.get("data"), dict):
        try:
            _validate_payload(data["data"], capella=True)
        except ValueError:
            pass
        else:
            return None, data
    inner = data.get("data")
    if inner is not None:
        _validate_payload(inner, capella=False)
    return data, None


def _response_num_tx(data: dict | None) -> int:
    if data is None:
        return 0
    return len((data.get("data") or {}).get("transactions") or [])


@dataclass
class VersionedExecutionPayload(_Versioned):
    """A {"version", "data"} execution payload response."""

    @classmethod
    def from_json(cls, data: Any) -> VersionedExecutionPayload:
        bellatrix, capella = _parse_versioned_payload(data)
        return cls(bellatrix=bellatrix, capella=capella)

    def to_json(self) -> str:
        return super().to_json()

    def num_tx(self) -> int:
        return _response_num_tx(self._data())


@dataclass
class GetPayloadResponse(_Versioned):
    """The response to a getPayload call."""

    @classmethod
    def from_json(cls, data: Any) -> GetPayloadResponse:
        bellatrix, capella = _parse_versioned_payload(data)
        return cls(bellatrix=bellatrix, capella=capella)

    def to_json(self) -> str:
        """Serialize the held response; bellatrix takes precedence here."""
        if self.bellatrix is not None:
            return _dump(self.bellatrix)
        if self.capella is not None:
            return _dump(self.capella)
        raise EmptyPayloadError()


def _validate_request(data: dict, *, capella: bool) -> None:
    for key in ("message", "execution_payload", "signature"):
        if data.get(key) is None:
            if capella:
                raise ValueError(f"{key} missing")
            continue
        if key == "message":
            BidTrace.from_dict(data[key])
        elif key == "execution_payload":
            _validate_payload(data[key], capella=capella)
        else:
            _hex_bytes(data[key], "signature", 96)


@dataclass
class BuilderSubmitBlockRequest(_Versioned):
    """A block submitted by a builder: bid trace, execution payload and signature."""

    @classmethod
    def from_json(cls, data: Any) -> BuilderSubmitBlockRequest:
        data = _load(data)
        if not isinstance(data, dict):
            raise ValueError("submit block request must be a JSON object")
        try:
            _validate_request(data, capella=True)
        except ValueError:
            _validate_request(data, capella=False)
            return cls(bellatrix=data)
        return cls(capella=data)

    def to_json(self) -> str:
        return super().to_json()

    def _message(self) -> dict | None:
        data = self._data()
        return None if data is None else data["message"]

    def _payload(self) -> dict | None:
        data = self._data()
        return None if data is None else data["execution_payload"]

    def has_execution_payload(self) -> bool:
        data = self._data()
        return data is not None and data.get("execution_payload") is not None

    def slot(self) -> int:
        message = self._message()
        return 0 if message is None else _uint(message["slot"], "slot")

    def block_hash(self) -> str:
        message = self._message()
        return "" if message is None else _hex_str(message["block_hash"], "block_hash")

    def execution_payload_block_hash(self) -> str:
        payload = self._payload()
        return "" if payload is None else _hex_str(payload["block_hash"], "block_hash")

    def builder_pubkey(self) -> bytes:
        message = self._message()
        if message is None:
            return bytes(48)
        return _hex_bytes(message["builder_pubkey"], "builder_pubkey", 48)

    def proposer_fee_recipient(self) -> str:
        message = self._message()
        if message is None:
            return ""
        return _hex_str(message["proposer_fee_recipient"], "proposer_fee_recipient")

    def timestamp(self) -> int:
        payload = self._payload()
        return 0 if payload is None else _uint(payload["timestamp"], "timestamp")

    def proposer_pubkey(self) -> str:
        message = self._message()
        return "" if message is None else _hex_str(message["proposer_pubkey"], "proposer_pubkey")

    def parent_hash(self) -> str:
        message = self._message()
        return "" if message is None else _hex_str(message["parent_hash"], "parent_hash")

    def execution_payload_parent_hash(self) -> str:
        payload = self._payload()
        return "" if payload is None else _hex_str(payload["parent_hash"], "parent_hash")

    def value(self) -> int | None:
        message = self._message()
        return None if message is None else _uint(message["value"], "value")

    def num_tx(self) -> int:
        payload = self._payload()
        return 0 if payload is None else len(payload.get("transactions") or [])

    def block_number(self) -> int:
        payload = self._payload()
        return 0 if payload is None else _uint(payload["block_number"], "block_number")

    def gas_used(self) -> int:
        payload = self._payload()
        return 0 if payload is None else _uint(payload["gas_used"], "gas_used")

    def gas_limit(self) -> int:
        payload = self._payload()
        return 0 if payload is None else _uint(payload["gas_limit"], "gas_limit")

    def signature(self) -> bytes:
        data = self._data()
        return bytes(96) if data is None else _hex_bytes(data["signature"], "signature", 96)

    def random(self) -> str:
        payload = self._payload()
        return "" if payload is None else _hex_str(payload["prev_randao"], "prev_randao")

    def message(self) -> BidTrace | None:
        """The bid trace; a bellatrix value keeps only its low 64 bits."""
        if self.capella is not None:
            return BidTrace.from_dict(self.capella["message"])
        if self.bellatrix is not None:
            trace = BidTrace.from_dict(self.bellatrix["message"])
            return dataclasses.replace(trace, value=trace.value % _UINT64_MODULUS)
        return None

    def withdrawals(self) -> list[dict] | None:
        if self.capella is not None:
            return self.capella["execution_payload"]["withdrawals"]
        return None

    def execution_payload(self) -> ExecutionPayload:
        """The execution payload in its own versioned container."""
        return ExecutionPayload(
            bellatrix=None if self.bellatrix is None else self.bellatrix.get("execution_payload"),
            capella=None if self.capella is None else self.capella.get("execution_payload"),
        )


@dataclass
class GetHeaderResponse(_Versioned):
    """The response to a getHeader call: a signed builder bid."""

    @classmethod
    def from_json(cls, data: Any) -> GetHeaderResponse:
        data = _load(data)
        if not isinstance(data, dict):
            raise ValueError("header response must be a JSON object")
        if data.get("version") == CAPELLA and isinstance(data.get("data"), dict):
            return cls(capella=data)
        inner = data.get("data")
        if inner is not None and not isinstance(inner, dict):
            raise ValueError("data must be a JSON object")
        return cls(bellatrix=data)

    def to_json(self) -> str:
        return super().to_json()

    def _bid_message(self) -> dict | None:
        data = self._data()
        if data is None:
            return None
        return (data.get("data") or {}).get("message")

    def value(self) -> int | None:
        message = self._bid_message()
        return None if message is None else _uint(message["value"], "value")

    def block_hash(self) -> bytes:
        message = self._bid_message()
        if message is None:
            return bytes(32)
        return _hex_bytes(message["header"]["block_hash"], "block_hash", 32)

    def empty(self) -> bool:
        data = self._data()
        if data is None:
            return True
        signed = data.get("data")
        return signed is None or signed.get("message") is None