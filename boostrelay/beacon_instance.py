"""Client for a single beacon node over its HTTP API."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
from typing import Any, TypeVar

import requests

from .beacon_http import BeaconHTTPError, fetch_beacon

T = TypeVar("T")


def _uint(value: Any) -> int:
    if value is None:
        return 0
    number = int(str(value))
    if number < 0:
        raise ValueError(f"negative value: {value}")
    return number


def _data(document: dict) -> dict:
    return document.get("data") or {}


@dataclass(frozen=True)
class HeadEventData:
    """A head event from the beacon node's event stream."""

    slot: int
    block: str
    state: str

    @classmethod
    def from_dict(cls, data: dict) -> HeadEventData:
        return cls(_uint(data.get("slot")), data.get("block", ""), data.get("state", ""))


@dataclass(frozen=True)
class ValidatorResponseEntry:
    """A validator as listed by the beacon state."""

    index: int
    balance: str
    status: str
    pubkey: str

    @classmethod
    def from_dict(cls, data: dict) -> ValidatorResponseEntry:
        validator = data.get("validator") or {}
        return cls(
            _uint(data.get("index")),
            data.get("balance", ""),
            data.get("status", ""),
            validator.get("pubkey", ""),
        )


@dataclass(frozen=True)
class SyncStatus:
    """Sync status of a beacon node."""

    head_slot: int
    is_syncing: bool

    @classmethod
    def from_dict(cls, data: dict) -> SyncStatus:
        return cls(_uint(data.get("head_slot")), bool(data.get("is_syncing", False)))


@dataclass(frozen=True)
class ProposerDuty:
    """A proposer assignment for one slot."""

    pubkey: str
    slot: int

    @classmethod
    def from_dict(cls, data: dict) -> ProposerDuty:
        return cls(data.get("pubkey", ""), _uint(data.get("slot")))


@dataclass(frozen=True)
class HeaderMessage:
    """A block header; from_dict takes the response's data object."""

    root: str
    slot: int
    proposer_index: int
    parent_root: str

    @classmethod
    def from_dict(cls, data: dict) -> HeaderMessage:
        message = (data.get("header") or {}).get("message") or {}
        return cls(
            data.get("root", ""),
            _uint(message.get("slot")),
            _uint(message.get("proposer_index")),
            message.get("parent_root", ""),
        )


@dataclass(frozen=True)
class BlockResponse:
    """A block's slot and raw execution payload; from_dict takes the data object."""

    slot: int
    execution_payload: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> BlockResponse:
        message = data.get("message") or {}
        body = message.get("body") or {}
        return cls(_uint(message.get("slot")), dict(body.get("execution_payload") or {}))


@dataclass(frozen=True)
class GenesisInfo:
    """Genesis details of the chain."""

    genesis_time: int
    genesis_validators_root: str
    genesis_fork_version: str

    @classmethod
    def from_dict(cls, data: dict) -> GenesisInfo:
        return cls(
            _uint(data.get("genesis_time")),
            data.get("genesis_validators_root", ""),
            data.get("genesis_fork_version", ""),
        )


@dataclass(frozen=True)
class SpecResponse:
    """Selected values of the chain config spec."""

    seconds_per_slot: int
    deposit_contract_address: str
    deposit_network_id: str
    domain_aggregate_and_proof: str
    inactivity_penalty_quotient: str
    inactivity_penalty_quotient_altair: str

    @classmethod
    def from_dict(cls, data: dict) -> SpecResponse:
        return cls(
            _uint(data.get("SECONDS_PER_SLOT")),
            data.get("DEPOSIT_CONTRACT_ADDRESS", ""),
            data.get("DEPOSIT_NETWORK_ID", ""),
            data.get("DOMAIN_AGGREGATE_AND_PROOF", ""),
            data.get("INACTIVITY_PENALTY_QUOTIENT", ""),
            data.get("INACTIVITY_PENALTY_QUOTIENT_ALTAIR", ""),
        )


@dataclass(frozen=True)
class ForkScheduleEntry:
    """One entry of the fork schedule."""

    previous_version: str
    current_version: str
    epoch: int

    @classmethod
    def from_dict(cls, data: dict) -> ForkScheduleEntry:
        return cls(data.get("previous_version", ""), data.get("current_version", ""), _uint(data.get("epoch")))


def _iter_sse_data(lines: Iterable[bytes | str]) -> Iterator[str]:
    buffer: list[str] = []
    for line in lines:
        if isinstance(line, bytes):
            line = line.decode("utf-8", "replace")
        if not line:
            if buffer:
                yield "\n".join(buffer)
                buffer = []
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "data":
            buffer.append(value)
    if buffer:
        yield "\n".join(buffer)


class ProdBeaconInstance:
    """A beacon node reached over HTTP."""

    def __init__(self, beacon_uri: str, logger: logging.Logger | None = None) -> None:
        self.uri = beacon_uri
        self._log = logger or logging.getLogger(__name__)
        self._session = requests.Session()

    def _get(self, path: str, parse: Callable[[dict], T]) -> T:
        uri = f"{self.uri}{path}"
        response = fetch_beacon("GET", uri, session=self._session)
        document = response.json()
        try:
            return parse(document)
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise BeaconHTTPError(
                f"could not unmarshal response for {uri}: {exc}", response.status_code
            ) from exc

    def subscribe_to_head_events(self, queue: Any) -> None:
        """Stream head events into the queue forever, reconnecting on failure."""
        events_url = f"{self.uri}/eth/v1/events?topics=head"
        self._log.info("subscribing to head events", extra={"url": events_url})
        while True:
            try:
                with self._session.get(
                    events_url, stream=True, headers={"Accept": "text/event-stream"}
                ) as response:
                    response.raise_for_status()
                    for payload in _iter_sse_data(response.iter_lines()):
                        try:
                            event = HeadEventData.from_dict(json.loads(payload))
                        except (AttributeError, TypeError, ValueError):
                            self._log.exception("could not unmarshal head event", extra={"url": events_url})
                            continue
                        queue.put(event)
            except requests.RequestException:
                self._log.exception("failed to subscribe to head events", extra={"url": events_url})
                time.sleep(1)
            self._log.warning("beaconclient SubscribeRaw ended, reconnecting")

    def fetch_validators(self, head_slot: int) -> dict[str, ValidatorResponseEntry]:
        """Return active and pending validators keyed by lower-case pubkey."""
        entries = self._get(
            f"/eth/v1/beacon/states/{head_slot}/validators?status=active,pending",
            lambda doc: [ValidatorResponseEntry.from_dict(item) for item in doc.get("data") or []],
        )
        return {entry.pubkey.lower(): entry for entry in entries}

    def sync_status(self) -> SyncStatus:
        return self._get("/eth/v1/node/syncing", lambda doc: SyncStatus.from_dict(_data(doc)))

    def current_slot(self) -> int:
        return self.sync_status().head_slot

    def get_proposer_duties(self, epoch: int) -> list[ProposerDuty]:
        return self._get(
            f"/eth/v1/validator/duties/proposer/{epoch}",
            lambda doc: [ProposerDuty.from_dict(item) for item in doc.get("data") or []],
        )

    def get_header(self) -> HeaderMessage:
        return self._get("/eth/v1/beacon/headers/head", lambda doc: HeaderMessage.from_dict(_data(doc)))

    def get_header_for_slot(self, slot: int) -> HeaderMessage:
        return self._get(f"/eth/v1/beacon/headers/{slot}", lambda doc: HeaderMessage.from_dict(_data(doc)))

    def get_block(self, block_id: str) -> BlockResponse:
        """Return a block; block_id may be 'head' or a slot number."""
        return self._get(f"/eth/v2/beacon/blocks/{block_id}", lambda doc: BlockResponse.from_dict(_data(doc)))

    def get_block_for_slot(self, slot: int) -> BlockResponse:
        return self.get_block(str(slot))

    def publish_block(self, block: Any) -> int:
        """Publish a signed beacon block and return the HTTP status code."""
        return fetch_beacon("POST", f"{self.uri}/eth/v1/beacon/blocks", block, self._session).status_code

    def get_genesis(self) -> GenesisInfo:
        return self._get("/eth/v1/beacon/genesis", lambda doc: GenesisInfo.from_dict(_data(doc)))

    def get_spec(self) -> SpecResponse:
        return self._get(
            "/eth/v1/config/spec",
            lambda doc: SpecResponse.from_dict(doc["data"] if isinstance(doc.get("data"), dict) else doc),
        )

    def get_fork_schedule(self) -> list[ForkScheduleEntry]:
        return self._get(
            "/eth/v1/config/fork_schedule",
            lambda doc: [ForkScheduleEntry.from_dict(item) for item in doc.get("data") or []],
        )

    def get_randao(self, slot: int) -> str:
        return self._get(f"/eth/v1/beacon/states/{slot}/randao", lambda doc: _data(doc).get("randao", ""))

    def get_withdrawals(self, slot: int) -> list[dict]:
        return self._get(
            f"/eth/v1/beacon/states/{slot}/withdrawals",
            lambda doc: list(_data(doc).get("withdrawals") or []),
        )