"""
InstantConf — Correlation Store

Single owner of every TransactionRecord in a run. Two execution contexts
write into it: the foreground submission/poll path and the push-channel
writer task. ``record`` is the only mutation surface; ``snapshot`` hands
out deep copies so readers never see a half-written record.
"""

from __future__ import annotations

import asyncio
import threading
from datetime import datetime

import structlog

from instantconf.engine.types import (
    FinalObservation,
    InclusionObservation,
    Observation,
    ObservationKind,
    PreconfirmationObservation,
    StoreStats,
    SubmissionObservation,
    TransactionRecord,
)
from instantconf.primitives.common import normalize_hash

logger = structlog.get_logger("instantconf.engine.store")

_KIND_TYPES: dict[ObservationKind, type[Observation]] = {
    ObservationKind.SUBMISSION: SubmissionObservation,
    ObservationKind.INCLUSION: InclusionObservation,
    ObservationKind.PRECONFIRMATION: PreconfirmationObservation,
    ObservationKind.FINAL: FinalObservation,
}


def _wake(loop: asyncio.AbstractEventLoop, signal: asyncio.Event) -> None:
    """Set an asyncio.Event from whichever thread recorded the observation."""
    try:
        running = asyncio.get_running_loop()
    except RuntimeError:
        running = None
    if running is loop:
        signal.set()
    elif not loop.is_closed():
        loop.call_soon_threadsafe(signal.set)


class CorrelationStore:
    """
    Map of transaction hash → TransactionRecord.

    Writes for the same (hash, kind) are last-write-wins by observation
    timestamp; an older write never replaces a newer one, and replaying an
    identical write leaves the record unchanged. The submission slot is
    write-once.

    Records that were never submitted by this run (foreign hashes announced
    on a public push channel) are evicted oldest-first once ``max_records``
    is exceeded.
    """

    def __init__(self, max_records: int = 10_000) -> None:
        self._max_records = max_records
        self._records: dict[str, TransactionRecord] = {}
        # Waiters remember their loop: record() may run on another thread
        self._signals: dict[
            tuple[str, ObservationKind], tuple[asyncio.AbstractEventLoop, asyncio.Event]
        ] = {}
        self._lock = threading.Lock()
        self._writes = 0
        self._stale_writes = 0
        self._evicted = 0
        self._closed = False
        self._logger = logger.bind(component="correlation_store")

    # ─── Mutation ─────────────────────────────────────────────────

    def record(
        self,
        tx_hash: str,
        kind: ObservationKind,
        payload: Observation,
        timestamp: datetime | None = None,
    ) -> bool:
        """
        Merge one observation into the record for ``tx_hash``.

        Creates the record on first write. Returns True when the stored
        observation changed, False for stale, duplicate or write-once
        rejections.
        """
        key = normalize_hash(tx_hash)
        if normalize_hash(payload.hash) != key:
            raise ValueError(
                f"observation for {payload.hash} recorded under {key}"
            )
        expected = _KIND_TYPES[kind]
        if not isinstance(payload, expected):
            raise TypeError(
                f"{kind.value} expects {expected.__name__}, got {type(payload).__name__}"
            )
        if timestamp is not None and payload.observed_at != timestamp:
            payload = payload.model_copy(update={"observed_at": timestamp})

        with self._lock:
            if self._closed:
                self._logger.debug("record_after_close", tx_hash=key, kind=kind.value)
                return False
            self._writes += 1
            current = self._records.get(key)
            if current is None:
                current = TransactionRecord(hash=key)
                self._records[key] = current
                self._evict_locked()

            existing = current.get(kind)
            if existing is not None:
                if kind == ObservationKind.SUBMISSION or existing == payload:
                    return False
                if payload.observed_at < existing.observed_at:
                    self._stale_writes += 1
                    self._logger.debug(
                        "stale_observation_ignored",
                        tx_hash=key,
                        kind=kind.value,
                        existing_at=existing.observed_at.isoformat(),
                        incoming_at=payload.observed_at.isoformat(),
                    )
                    return False

            setattr(current, kind.value, payload.model_copy(deep=True))
            waiter = self._signals.get((key, kind))

        if waiter is not None:
            _wake(*waiter)
        return True

    def _evict_locked(self) -> None:
        overflow = len(self._records) - self._max_records
        if overflow <= 0:
            return
        for key in [k for k, r in self._records.items() if not r.submitted][:overflow]:
            del self._records[key]
            for kind in ObservationKind:
                self._signals.pop((key, kind), None)
            self._evicted += 1

    # ─── Reads ────────────────────────────────────────────────────

    def snapshot(self, tx_hash: str) -> TransactionRecord | None:
        """Deep copy of the record for ``tx_hash``, or None if never observed."""
        key = normalize_hash(tx_hash)
        with self._lock:
            current = self._records.get(key)
            return current.model_copy(deep=True) if current is not None else None

    def __contains__(self, tx_hash: str) -> bool:
        key = normalize_hash(tx_hash)
        with self._lock:
            return key in self._records

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    async def wait_for(
        self,
        tx_hash: str,
        kind: ObservationKind,
        timeout: float,
    ) -> Observation | None:
        """
        Wait up to ``timeout`` seconds for ``kind`` to be observed for
        ``tx_hash``. Returns the observation, or None when the budget runs
        out.
        """
        key = normalize_hash(tx_hash)
        with self._lock:
            current = self._records.get(key)
            if current is not None and current.get(kind) is not None:
                return current.get(kind).model_copy(deep=True)
            _, signal = self._signals.setdefault(
                (key, kind), (asyncio.get_running_loop(), asyncio.Event())
            )

        try:
            await asyncio.wait_for(signal.wait(), timeout=timeout)
        except TimeoutError:
            return None

        snap = self.snapshot(key)
        return snap.get(kind) if snap is not None else None

    def stats(self) -> StoreStats:
        with self._lock:
            submitted = sum(1 for r in self._records.values() if r.submitted)
            return StoreStats(
                records=len(self._records),
                submitted=submitted,
                foreign=len(self._records) - submitted,
                writes=self._writes,
                stale_writes=self._stale_writes,
                evicted=self._evicted,
            )

    def close(self) -> None:
        """End of run: further writes are dropped."""
        with self._lock:
            self._closed = True
        self._logger.debug("store_closed", records=len(self._records))
