"""Shared constants, errors and small helpers used across the relay."""

from __future__ import annotations

import hashlib
import json
import os
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

import requests

SLOTS_PER_EPOCH = 32
DURATION_PER_SLOT = timedelta(seconds=12)
DURATION_PER_EPOCH = DURATION_PER_SLOT * SLOTS_PER_EPOCH

DOMAIN_TYPE_BEACON_PROPOSER = bytes.fromhex("00000000")
DOMAIN_TYPE_APP_BUILDER = bytes.fromhex("00000001")

_HEX_DIGITS = re.compile(r"[0-9a-fA-F]*")
_HEX_PAIRS = re.compile(r"(?:[0-9a-fA-F]{2})*")


class ServerAlreadyRunningError(RuntimeError):
    """Raised when a server is started twice."""

    def __init__(self, message: str = "server already running") -> None:
        super().__init__(message)


class InvalidSlotError(ValueError):
    """Raised for an invalid slot."""

    def __init__(self, message: str = "invalid slot") -> None:
        super().__init__(message)


class InvalidHashError(ValueError):
    """Raised for an invalid hash."""

    def __init__(self, message: str = "invalid hash") -> None:
        super().__init__(message)


class InvalidPubkeyError(ValueError):
    """Raised for an invalid public key."""

    def __init__(self, message: str = "invalid pubkey") -> None:
        super().__init__(message)


class InvalidSignatureError(ValueError):
    """Raised for an invalid signature."""

    def __init__(self, message: str = "invalid signature") -> None:
        super().__init__(message)


class InvalidForkVersionError(ValueError):
    """Raised when a fork version is not a 0x-prefixed 4-byte hex string."""

    def __init__(self, message: str = "invalid fork version") -> None:
        super().__init__(message)


class HTTPErrorResponse(Exception):
    """Raised when a remote server answers with a status above 299."""

    def __init__(self, status_code: int, body: str, response: requests.Response | None = None) -> None:
        super().__init__(f"got an HTTP error response: {status_code} / {body}")
        self.status_code = status_code
        self.body = body
        self.response = response


@dataclass(frozen=True)
class HTTPServerTimeouts:
    """Timeouts for the HTTP server; a zero duration means none."""

    read: timedelta = timedelta(0)
    read_header: timedelta = timedelta(0)
    write: timedelta = timedelta(0)
    idle: timedelta = timedelta(0)


def make_request(
    session: requests.Session, method: str, url: str, payload: Any = None
) -> requests.Response:
    """Send a JSON request and raise HTTPErrorResponse for error statuses."""
    body = None if payload is None else json.dumps(payload)
    response = session.request(
        method, url, data=body, headers={"Content-Type": "application/json"}
    )
    if response.status_code > 299:
        text = response.text
        response.close()
        raise HTTPErrorResponse(response.status_code, text, response)
    return response


def _decode_prefixed_hex(value: str) -> bytes | None:
    if not value.startswith(("0x", "0X")):
        return None
    digits = value[2:]
    if len(digits) % 2 or not _HEX_DIGITS.fullmatch(digits):
        return None
    return bytes.fromhex(digits)


def _hex_to_hash(value: str) -> bytes:
    digits = value[2:] if value[:2] in ("0x", "0X") else value
    if len(digits) % 2:
        digits = "0" + digits
    raw = bytes.fromhex(_HEX_PAIRS.match(digits).group(0))
    return raw[-32:].rjust(32, b"\x00")


def compute_domain(
    domain_type: bytes, fork_version_hex: str, genesis_validators_root_hex: str
) -> bytes:
    """Compute the 32-byte signing domain for a domain type and fork."""
    if len(domain_type) != 4:
        raise ValueError("domain type must be 4 bytes")
    genesis_validators_root = _hex_to_hash(genesis_validators_root_hex)
    fork_version = _decode_prefixed_hex(fork_version_hex)
    if fork_version is None or len(fork_version) != 4:
        raise InvalidForkVersionError()
    fork_data_root = hashlib.sha256(
        fork_version.ljust(32, b"\x00") + genesis_validators_root
    ).digest()
    return bytes(domain_type) + fork_data_root[:28]


def get_env(key: str, default: str) -> str:
    """Return the environment variable, or the default when it is unset."""
    return os.environ.get(key, default)


def get_slice_env(key: str, default: Sequence[str]) -> list[str]:
    """Return a comma-separated environment variable as a list."""
    value = os.environ.get(key)
    if value is None:
        return list(default)
    return value.split(",")


def get_ip_x_forwarded_for(headers: Mapping[str, str], remote_addr: str) -> str:
    """Return the first X-Forwarded-For address, or the remote address."""
    forwarded = next(
        (value for name, value in headers.items() if name.lower() == "x-forwarded-for"),
        "",
    )
    if forwarded:
        return forwarded.split(",")[0]
    return remote_addr


def get_mev_boost_version_from_user_agent(ua: str) -> str:
    """Extract the mev-boost version from a user agent, or '-' if absent."""
    first = ua.split(" ")[0]
    if first.startswith("mev-boost"):
        parts = first.split("/")
        if len(parts) == 2:
            return parts[1]
    return "-"