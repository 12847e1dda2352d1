"""Fan-out client that manages several beacon node instances."""

from __future__ import annotations

import logging
import os
import threading
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Protocol, TypeVar

from .beacon_instance import (
    BlockResponse,
    ForkScheduleEntry,
    GenesisInfo,
    ProposerDuty,
    SpecResponse,
    SyncStatus,
    ValidatorResponseEntry,
)

T = TypeVar("T")

_BEFORE_CAPELLA = "Withdrawals not enabled before capella"


class BeaconNodeSyncingError(RuntimeError):
    """Raised when no beacon node reports itself as synced."""

    def __init__(self, message: str = "beacon node is syncing or unavailable") -> None:
        super().__init__(message)


class BeaconNodesUnavailableError(RuntimeError):
    """Raised when every beacon node answered with an error."""

    def __init__(self, message: str = "all beacon nodes responded with error") -> None:
        super().__init__(message)


class WithdrawalsBeforeCapellaError(RuntimeError):
    """Raised when withdrawals are requested for a slot before capella."""

    def __init__(self, message: str = "withdrawals are not supported before capella") -> None:
        super().__init__(message)


class BeaconInstance(Protocol):
    """What a single beacon node client provides."""

    uri: str

    def sync_status(self) -> SyncStatus: ...

    def current_slot(self) -> int: ...

    def subscribe_to_head_events(self, queue: Any) -> None: ...

    def fetch_validators(self, head_slot: int) -> dict[str, ValidatorResponseEntry]: ...

    def get_proposer_duties(self, epoch: int) -> list[ProposerDuty]: ...

    def publish_block(self, block: Any) -> int: ...

    def get_genesis(self) -> GenesisInfo: ...

    def get_spec(self) -> SpecResponse: ...

    def get_fork_schedule(self) -> list[ForkScheduleEntry]: ...

    def get_block(self, block_id: str) -> BlockResponse: ...

    def get_randao(self, slot: int) -> str: ...

    def get_withdrawals(self, slot: int) -> list[dict]: ...


class MultiBeaconClient:
    """Queries several beacon nodes, preferring the one that last answered."""

    def __init__(self, instances: Iterable[BeaconInstance], logger: logging.Logger | None = None) -> None:
        self._instances: list[BeaconInstance] = list(instances)
        self._log = logger or logging.getLogger(__name__)
        self._best_index = 0
        self._lock = threading.Lock()
        self.allow_syncing_beacon_node = bool(os.environ.get("ALLOW_SYNCING_BEACON_NODE"))
        if self.allow_syncing_beacon_node:
            self._log.warning("env: ALLOW_SYNCING_BEACON_NODE: allow syncing beacon node")

    @property
    def instances(self) -> list[BeaconInstance]:
        return list(self._instances)

    def _instances_by_last_response(self) -> list[BeaconInstance]:
        """Instances with the last successful one moved to the front."""
        with self._lock:
            index = self._best_index
        ordered = list(self._instances)
        if index:
            ordered[0], ordered[index] = ordered[index], ordered[0]
        return ordered

    def _remember(self, position: int) -> None:
        with self._lock:
            self._best_index = position

    def _first_success(
        self,
        call: Callable[[BeaconInstance], T],
        what: str,
        *,
        remember: bool = False,
        unavailable: bool = False,
        **fields: Any,
    ) -> T:
        last_error: Exception | None = None
        for position, instance in enumerate(self._instances_by_last_response()):
            try:
                result = call(instance)
            except Exception as exc:  # any node failure moves on to the next node
                self._log.warning(
                    "failed to %s", what, exc_info=exc, extra={"uri": instance.uri, **fields}
                )
                last_error = exc
                continue
            if remember:
                self._remember(position)
            return result

        self._log.error("failed to %s on any CL node", what, exc_info=last_error, extra=fields)
        if unavailable or last_error is None:
            raise BeaconNodesUnavailableError() from last_error
        raise last_error

    def best_sync_status(self) -> SyncStatus:
        """Ask all nodes in parallel and return the first synced status."""
        best: SyncStatus | None = None
        found_synced = False

        with ThreadPoolExecutor(max_workers=max(1, len(self._instances))) as pool:
            futures = {pool.submit(instance.sync_status): instance for instance in self._instances}
            for future in as_completed(futures):
                instance = futures[future]
                try:
                    status = future.result()
                except Exception as exc:
                    self._log.error(
                        "failed to get sync status", exc_info=exc, extra={"uri": instance.uri}
                    )
                    continue
                if found_synced:
                    continue
                if best is None:
                    best = status
                if not status.is_syncing:
                    best = status
                    found_synced = True

        if not found_synced and not self.allow_syncing_beacon_node:
            raise BeaconNodeSyncingError()
        if best is None:
            raise BeaconNodesUnavailableError()
        return best

    def subscribe_to_head_events(self, queue: Any) -> list[threading.Thread]:
        """Subscribe every node to head events; each event may arrive once per node."""
        threads = [
            threading.Thread(target=instance.subscribe_to_head_events, args=(queue,), daemon=True)
            for instance in self._instances
        ]
        for thread in threads:
            thread.start()
        return threads

    def fetch_validators(self, head_slot: int) -> dict[str, ValidatorResponseEntry]:
        """Return active and pending validators from the first node that answers."""
        return self._first_success(
            lambda instance: instance.fetch_validators(head_slot),
            "fetch validators",
            remember=True,
            unavailable=True,
        )

    def get_proposer_duties(self, epoch: int) -> list[ProposerDuty]:
        return self._first_success(
            lambda instance: instance.get_proposer_duties(epoch),
            "get proposer duties",
            remember=True,
            unavailable=True,
            epoch=epoch,
        )

    def publish_block(self, block: Any) -> int:
        """Publish a block on the first node that accepts it; return its status code."""
        fields = {"slot": block.slot(), "blockHash": block.block_hash()}
        code = self._first_success(
            lambda instance: instance.publish_block(block), "publish block", **fields
        )
        self._log.info("published block", extra={"statusCode": code, **fields})
        return code

    def get_genesis(self) -> GenesisInfo:
        return self._first_success(lambda instance: instance.get_genesis(), "get genesis info")

    def get_spec(self) -> SpecResponse:
        return self._first_success(lambda instance: instance.get_spec(), "get spec")

    def get_fork_schedule(self) -> list[ForkScheduleEntry]:
        return self._first_success(lambda instance: instance.get_fork_schedule(), "get fork schedule")

    def get_block(self, block_id: str) -> BlockResponse:
        return self._first_success(
            lambda instance: instance.get_block(block_id), "get block", blockID=block_id
        )

    def get_randao(self, slot: int) -> str:
        return self._first_success(lambda instance: instance.get_randao(slot), "get randao", slot=slot)

    def get_withdrawals(self, slot: int) -> list[dict]:
        """Return withdrawals for a slot; raise WithdrawalsBeforeCapellaError before capella."""
        last_error: Exception | None = None
        for instance in self._instances_by_last_response():
            try:
                return instance.get_withdrawals(slot)
            except Exception as exc:
                last_error = exc
                if _BEFORE_CAPELLA in str(exc):
                    break
                self._log.warning(
                    "failed to get withdrawals", exc_info=exc, extra={"uri": instance.uri, "slot": slot}
                )

        if last_error is not None and _BEFORE_CAPELLA in str(last_error):
            self._log.debug(
                "failed to get withdrawals as capella has not been reached",
                exc_info=last_error,
                extra={"slot": slot},
            )
            raise WithdrawalsBeforeCapellaError() from last_error

        self._log.warning(
            "failed to get withdrawals from any CL node", exc_info=last_error, extra={"slot": slot}
        )
        if last_error is None:
            raise BeaconNodesUnavailableError()
        raise last_error