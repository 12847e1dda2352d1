"""Network details, builder entries and bid traces."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import SplitResult, urlsplit

from .common import DOMAIN_TYPE_APP_BUILDER, DOMAIN_TYPE_BEACON_PROPOSER, compute_domain

ETH_NETWORK_ROPSTEN = "ropsten"
ETH_NETWORK_SEPOLIA = "sepolia"
ETH_NETWORK_GOERLI = "goerli"
ETH_NETWORK_MAINNET = "mainnet"
ETH_NETWORK_ZHEJIANG = "zhejiang"

GENESIS_FORK_VERSION_ROPSTEN = "0x80000069"
GENESIS_FORK_VERSION_SEPOLIA = "0x90000069"
GENESIS_FORK_VERSION_GOERLI = "0x00001020"
GENESIS_FORK_VERSION_MAINNET = "0x00000000"

GENESIS_VALIDATORS_ROOT_ROPSTEN = "0x44f1e56283ca88b35c789f7f449e52339bc1fefe3a45913a43a6d16edcd33cf1"
GENESIS_VALIDATORS_ROOT_SEPOLIA = "0xd8ea171f3c94aea21ebc42a1ed61052acf3f9209c00e4efbaaddac09ed9b8078"
GENESIS_VALIDATORS_ROOT_GOERLI = "0x043db0d9a83813551ee2f33450d23797757d430911a9320530ad8a0eabc43efb"
GENESIS_VALIDATORS_ROOT_MAINNET = "0x4b363db94e286120d76eb905340fdd4e54bfe9f06bf33ff6cf5ad27f511bfe95"

BELLATRIX_FORK_VERSION_ROPSTEN = "0x80000071"
BELLATRIX_FORK_VERSION_SEPOLIA = "0x90000071"
BELLATRIX_FORK_VERSION_GOERLI = "0x02001020"
BELLATRIX_FORK_VERSION_MAINNET = "0x02000000"

CAPELLA_FORK_VERSION_ROPSTEN = "0x03001020"
CAPELLA_FORK_VERSION_SEPOLIA = "0x90000072"
CAPELLA_FORK_VERSION_GOERLI = "0x03001020"
CAPELLA_FORK_VERSION_MAINNET = "0x03000000"

GENESIS_FORK_VERSION_ZHEJIANG = "0x00000069"
GENESIS_VALIDATORS_ROOT_ZHEJIANG = "0x53a92d8f2bb1d85f62d16a156e6ebcd1bcaba652d0900b2c2f387826f3481f6f"
BELLATRIX_FORK_VERSION_ZHEJIANG = "0x00000071"
CAPELLA_FORK_VERSION_ZHEJIANG = "0x00000072"

ZERO_ROOT_HEX = "0x" + "00" * 32

# name -> (genesis fork version, genesis validators root, bellatrix fork, capella fork)
_NETWORKS: dict[str, tuple[str, str, str, str]] = {
    ETH_NETWORK_ROPSTEN: (
        GENESIS_FORK_VERSION_ROPSTEN,
        GENESIS_VALIDATORS_ROOT_ROPSTEN,
        BELLATRIX_FORK_VERSION_ROPSTEN,
        CAPELLA_FORK_VERSION_ROPSTEN,
    ),
    ETH_NETWORK_SEPOLIA: (
        GENESIS_FORK_VERSION_SEPOLIA,
        GENESIS_VALIDATORS_ROOT_SEPOLIA,
        BELLATRIX_FORK_VERSION_SEPOLIA,
        CAPELLA_FORK_VERSION_SEPOLIA,
    ),
    ETH_NETWORK_GOERLI: (
        GENESIS_FORK_VERSION_GOERLI,
        GENESIS_VALIDATORS_ROOT_GOERLI,
        BELLATRIX_FORK_VERSION_GOERLI,
        CAPELLA_FORK_VERSION_GOERLI,
    ),
    ETH_NETWORK_MAINNET: (
        GENESIS_FORK_VERSION_MAINNET,
        GENESIS_VALIDATORS_ROOT_MAINNET,
        BELLATRIX_FORK_VERSION_MAINNET,
        CAPELLA_FORK_VERSION_MAINNET,
    ),
    ETH_NETWORK_ZHEJIANG: (
        GENESIS_FORK_VERSION_ZHEJIANG,
        GENESIS_VALIDATORS_ROOT_ZHEJIANG,
        BELLATRIX_FORK_VERSION_ZHEJIANG,
        CAPELLA_FORK_VERSION_ZHEJIANG,
    ),
}

_HEX = re.compile(r"[0-9a-fA-F]*")
_UINT64_MAX = 2**64 - 1
_UINT256_MAX = 2**256 - 1


class UnknownNetworkError(ValueError):
    """Raised for a network name that is not known."""

    def __init__(self, network_name: str) -> None:
        super().__init__(f"unknown network: {network_name}")
        self.network_name = network_name


class EmptyPayloadError(ValueError):
    """Raised when a versioned container holds no payload."""

    def __init__(self, message: str = "empty payload") -> None:
        super().__init__(message)


@dataclass(frozen=True)
class BuilderEntry:
    """A builder that is allowed to send blocks; address is scheme://host:port."""

    address: str
    pubkey: bytes
    url: SplitResult


def _decode_optional_prefixed_hex(value: str) -> bytes:
    if not value:
        return b""
    if not value.startswith(("0x", "0X")):
        raise ValueError(f"hex string without 0x prefix: {value!r}")
    digits = value[2:]
    if len(digits) % 2:
        raise ValueError(f"hex string of odd length: {value!r}")
    if not _HEX.fullmatch(digits):
        raise ValueError(f"invalid hex string: {value!r}")
    return bytes.fromhex(digits)


def new_builder_entry(builder_url: str) -> BuilderEntry:
    """Parse IP:PORT, PUBKEY@IP:PORT, https://IP and the like into a builder entry."""
    if not builder_url.startswith("http"):
        builder_url = "http://" + builder_url
    parsed = urlsplit(builder_url)
    pubkey = _decode_optional_prefixed_hex(parsed.username or "")
    host = parsed.netloc.rpartition("@")[2]
    return BuilderEntry(address=f"{parsed.scheme}://{host}", pubkey=pubkey, url=parsed)


@dataclass(frozen=True)
class EthNetworkDetails:
    """Fork versions and signing domains of one network."""

    name: str
    genesis_fork_version_hex: str
    genesis_validators_root_hex: str
    bellatrix_fork_version_hex: str
    capella_fork_version_hex: str
    domain_builder: bytes
    domain_beacon_proposer_bellatrix: bytes
    domain_beacon_proposer_capella: bytes


def new_eth_network_details(network_name: str) -> EthNetworkDetails:
    """Return the details of a known network; raise UnknownNetworkError otherwise."""
    try:
        genesis_fork, genesis_root, bellatrix_fork, capella_fork = _NETWORKS[network_name]
    except KeyError:
        raise UnknownNetworkError(network_name) from None

    return EthNetworkDetails(
        name=network_name,
        genesis_fork_version_hex=genesis_fork,
        genesis_validators_root_hex=genesis_root,
        bellatrix_fork_version_hex=bellatrix_fork,
        capella_fork_version_hex=capella_fork,
        domain_builder=compute_domain(DOMAIN_TYPE_APP_BUILDER, genesis_fork, ZERO_ROOT_HEX),
        domain_beacon_proposer_bellatrix=compute_domain(
            DOMAIN_TYPE_BEACON_PROPOSER, bellatrix_fork, genesis_root
        ),
        domain_beacon_proposer_capella=compute_domain(
            DOMAIN_TYPE_BEACON_PROPOSER, capella_fork, genesis_root
        ),
    )


def _hex(value: bytes) -> str:
    return "0x" + value.hex()


def _parse_fixed_hex(data: dict, key: str, length: int) -> bytes:
    value = data[key]
    if not isinstance(value, str):
        raise ValueError(f"{key}: expected a hex string")
    digits = value[2:] if value.startswith(("0x", "0X")) else value
    if not _HEX.fullmatch(digits) or len(digits) != 2 * length:
        raise ValueError(f"{key}: expected {length} hex-encoded bytes")
    return bytes.fromhex(digits)


def _parse_uint_string(data: dict, key: str, maximum: int) -> int:
    value = data[key]
    if not isinstance(value, str) or not value.isdigit():
        raise ValueError(f"{key}: expected a decimal string")
    number = int(value)
    if number > maximum:
        raise ValueError(f"{key}: value out of range")
    return number


def _parse_optional_uint_string(data: dict, key: str) -> int:
    if data.get(key) is None:
        return 0
    return _parse_uint_string(data, key, _UINT64_MAX)


_BID_TRACE_KEYS = (
    "slot",
    "parent_hash",
    "block_hash",
    "builder_pubkey",
    "proposer_pubkey",
    "proposer_fee_recipient",
    "gas_limit",
    "gas_used",
    "value",
)


def _bid_trace_fields(data: dict) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise ValueError("bid trace must be a JSON object")
    for key in _BID_TRACE_KEYS:
        if data.get(key) is None:
            raise ValueError(f"{key} missing")
    return {
        "slot": _parse_uint_string(data, "slot", _UINT64_MAX),
        "parent_hash": _parse_fixed_hex(data, "parent_hash", 32),
        "block_hash": _parse_fixed_hex(data, "block_hash", 32),
        "builder_pubkey": _parse_fixed_hex(data, "builder_pubkey", 48),
        "proposer_pubkey": _parse_fixed_hex(data, "proposer_pubkey", 48),
        "proposer_fee_recipient": _parse_fixed_hex(data, "proposer_fee_recipient", 20),
        "gas_limit": _parse_uint_string(data, "gas_limit", _UINT64_MAX),
        "gas_used": _parse_uint_string(data, "gas_used", _UINT64_MAX),
        "value": _parse_uint_string(data, "value", _UINT256_MAX),
    }


@dataclass(frozen=True)
class BidTrace:
    """A builder's bid for a slot."""

    slot: int
    parent_hash: bytes
    block_hash: bytes
    builder_pubkey: bytes
    proposer_pubkey: bytes
    proposer_fee_recipient: bytes
    gas_limit: int
    gas_used: int
    value: int

    def __post_init__(self) -> None:
        for name, length in (
            ("parent_hash", 32),
            ("block_hash", 32),
            ("builder_pubkey", 48),
            ("proposer_pubkey", 48),
            ("proposer_fee_recipient", 20),
        ):
            if len(getattr(self, name)) != length:
                raise ValueError(f"{name} must be {length} bytes")
        if not 0 <= self.value <= _UINT256_MAX:
            raise ValueError("value out of range")

    @classmethod
    def from_dict(cls, data: dict) -> BidTrace:
        """Build from the JSON form; raise ValueError on missing or bad fields."""
        return cls(**_bid_trace_fields(data))

    def to_dict(self) -> dict[str, str]:
        """Return the JSON form with integers as decimal strings."""
        return {
            "slot": str(self.slot),
            "parent_hash": _hex(self.parent_hash),
            "block_hash": _hex(self.block_hash),
            "builder_pubkey": _hex(self.builder_pubkey),
            "proposer_pubkey": _hex(self.proposer_pubkey),
            "proposer_fee_recipient": _hex(self.proposer_fee_recipient),
            "gas_limit": str(self.gas_limit),
            "gas_used": str(self.gas_used),
            "value": str(self.value),
        }


@dataclass(frozen=True)
class BidTraceV2(BidTrace):
    """A bid trace with the block number and transaction count."""

    block_number: int = 0
    num_tx: int = 0

    @classmethod
    def from_dict(cls, data: dict) -> BidTraceV2:
        fields = _bid_trace_fields(data)
        return cls(
            **fields,
            block_number=_parse_optional_uint_string(data, "block_number"),
            num_tx=_parse_optional_uint_string(data, "num_tx"),
        )

    def to_dict(self) -> dict[str, str]:
        result = super().to_dict()
        result["num_tx"] = str(self.num_tx)
        result["block_number"] = str(self.block_number)
        return result


_CSV_HEADER = [
    "slot",
    "parent_hash",
    "block_hash",
    "builder_pubkey",
    "proposer_pubkey",
    "proposer_fee_recipient",
    "gas_limit",
    "gas_used",
    "value",
    "num_tx",
    "block_number",
]


@dataclass(kw_only=True)
class BidTraceV2JSON:
    """A bid trace in its flat, string-keyed export form."""

    slot: int = 0
    parent_hash: str = ""
    block_hash: str = ""
    builder_pubkey: str = ""
    proposer_pubkey: str = ""
    proposer_fee_recipient: str = ""
    gas_limit: int = 0
    gas_used: int = 0
    value: str = ""
    num_tx: int = 0
    block_number: int = 0

    def csv_header(self) -> list[str]:
        return list(_CSV_HEADER)

    def to_csv_record(self) -> list[str]:
        return [
            str(self.slot),
            self.parent_hash,
            self.block_hash,
            self.builder_pubkey,
            self.proposer_pubkey,
            self.proposer_fee_recipient,
            str(self.gas_limit),
            str(self.gas_used),
            self.value,
            str(self.num_tx),
            str(self.block_number),
        ]

    def to_dict(self) -> dict[str, str]:
        return dict(zip(_CSV_HEADER, self.to_csv_record()))


@dataclass(kw_only=True)
class BidTraceV2WithTimestampJSON(BidTraceV2JSON):
    """An exported bid trace with the time it was received."""

    timestamp: int = 0
    timestamp_ms: int = 0

    def csv_header(self) -> list[str]:
        return [*_CSV_HEADER, "timestamp", "timestamp_ms"]

    def to_csv_record(self) -> list[str]:
        return [*super().to_csv_record(), str(self.timestamp), str(self.timestamp_ms)]

    def to_dict(self) -> dict[str, str]:
        result = super().to_dict()
        if self.timestamp:
            result["timestamp"] = str(self.timestamp)
        if self.timestamp_ms:
            result["timestamp_ms"] = str(self.timestamp_ms)
        return result