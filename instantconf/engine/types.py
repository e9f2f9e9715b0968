"""
InstantConf — Engine Type Definitions

Observations of a single transaction, the record that correlates them,
and the verdicts produced once the record is checked.

A transaction is observed up to four times, on independent clocks:
  submission       the signed payload leaving this process
  inclusion        push event announcing block inclusion
  preconfirmation  receipt issued ahead of finality (sync return or push event)
  final            canonical receipt (sync return in latest mode, or polled)
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any

from pydantic import Field, field_validator

from instantconf.config import SubmissionMode
from instantconf.primitives.common import (
    ICBaseModel,
    is_placeholder_hash,
    normalize_hash,
    parse_quantity,
    utc_now,
)

# ─── Enums ────────────────────────────────────────────────────────


class ObservationKind(enum.StrEnum):
    SUBMISSION = "submission"
    INCLUSION = "inclusion"
    PRECONFIRMATION = "preconfirmation"
    FINAL = "final"


class ObservationSource(enum.StrEnum):
    """Which delivery path produced an observation."""

    LOCAL = "local"  # signed and submitted by this process
    RPC = "rpc"  # synchronous submission return
    EVENT = "event"  # push channel
    POLL = "poll"  # final-receipt poll


class VerdictOutcome(enum.StrEnum):
    PASS = "pass"
    WARN = "warn"
    FAIL = "fail"
    SKIPPED = "skipped"


class FindingKind(enum.StrEnum):
    METHOD_UNSUPPORTED = "method_unsupported"
    SUBMISSION_REJECTED = "submission_rejected"
    TIMEOUT = "timeout"
    MISMATCH = "mismatch"
    PLACEHOLDER = "placeholder"  # pending receipt carried a real block hash
    ORDERING = "ordering"  # inclusion observed after preconfirmation
    COVERAGE = "coverage"  # push channel unavailable or closed early
    CHECK_ERROR = "check_error"  # the check itself raised


class Severity(enum.StrEnum):
    WARN = "warn"
    FAIL = "fail"
    SKIP = "skip"


# ─── Receipts ────────────────────────────────────────────────────


class Receipt(ICBaseModel):
    """
    Receipt as returned by the submission extension, the push channel and
    ``eth_getTransactionReceipt``. Quantities are decoded to ints.
    """

    transaction_hash: str = Field(alias="transactionHash")
    block_hash: str = Field(alias="blockHash")
    block_number: int | None = Field(default=None, alias="blockNumber")
    transaction_index: int | None = Field(default=None, alias="transactionIndex")
    from_address: str | None = Field(default=None, alias="from")
    to_address: str | None = Field(default=None, alias="to")
    status: int
    gas_used: int = Field(default=0, alias="gasUsed")
    cumulative_gas_used: int = Field(default=0, alias="cumulativeGasUsed")
    logs: list[dict[str, Any]] = Field(default_factory=list)
    logs_bloom: str | None = Field(default=None, alias="logsBloom")
    contract_address: str | None = Field(default=None, alias="contractAddress")

    @field_validator("transaction_hash", "block_hash", mode="before")
    @classmethod
    def _hash(cls, v: Any) -> str:
        return normalize_hash(v)

    @field_validator(
        "block_number",
        "transaction_index",
        "gas_used",
        "cumulative_gas_used",
        mode="before",
    )
    @classmethod
    def _quantity(cls, v: Any) -> int | None:
        return parse_quantity(v)

    @field_validator("status", mode="before")
    @classmethod
    def _status(cls, v: Any) -> int:
        status = parse_quantity(v)
        if status not in (0, 1):
            raise ValueError(f"receipt status must be 0x0 or 0x1, got {v!r}")
        return status

    @property
    def is_placeholder(self) -> bool:
        return is_placeholder_hash(self.block_hash)

    @property
    def succeeded(self) -> bool:
        return self.status == 1


# ─── Observations ────────────────────────────────────────────────


class Observation(ICBaseModel):
    hash: str
    observed_at: datetime = Field(default_factory=utc_now)
    source: ObservationSource

    @field_validator("hash", mode="before")
    @classmethod
    def _hash(cls, v: Any) -> str:
        return normalize_hash(v)


class SubmissionObservation(Observation):
    mode: SubmissionMode
    raw_payload: str  # 0x-hex signed transaction
    source: ObservationSource = ObservationSource.LOCAL


class InclusionObservation(Observation):
    # Server-side announce time, kept verbatim for diagnostics
    announced_at: str | None = None
    source: ObservationSource = ObservationSource.EVENT


class PreconfirmationObservation(Observation):
    receipt: Receipt
    latency_ms: float | None = None

    @classmethod
    def from_receipt(
        cls,
        receipt: Receipt,
        source: ObservationSource,
        latency_ms: float | None = None,
    ) -> PreconfirmationObservation:
        return cls(
            hash=receipt.transaction_hash,
            receipt=receipt,
            source=source,
            latency_ms=latency_ms,
        )


class FinalObservation(Observation):
    block_hash: str
    block_number: int | None = None
    status: int
    gas_used: int = 0
    latency_ms: float | None = None

    @classmethod
    def from_receipt(
        cls,
        receipt: Receipt,
        source: ObservationSource,
        latency_ms: float | None = None,
    ) -> FinalObservation:
        return cls(
            hash=receipt.transaction_hash,
            block_hash=receipt.block_hash,
            block_number=receipt.block_number,
            status=receipt.status,
            gas_used=receipt.gas_used,
            source=source,
            latency_ms=latency_ms,
        )


# Result of the synchronous submission call
SubmissionResult = PreconfirmationObservation | FinalObservation


class TransactionRecord(ICBaseModel):
    """
    Everything observed about one transaction hash.

    Owned by the CorrelationStore; callers only ever see snapshots.
    """

    hash: str
    submission: SubmissionObservation | None = None
    inclusion: InclusionObservation | None = None
    preconfirmation: PreconfirmationObservation | None = None
    final: FinalObservation | None = None

    @property
    def mode(self) -> SubmissionMode | None:
        return self.submission.mode if self.submission else None

    @property
    def submitted(self) -> bool:
        return self.submission is not None

    def get(self, kind: ObservationKind) -> Observation | None:
        return getattr(self, kind.value)


# ─── Verdicts ────────────────────────────────────────────────────


class Finding(ICBaseModel):
    """One reason contributing to a verdict."""

    kind: FindingKind
    severity: Severity
    message: str
    details: dict[str, Any] = Field(default_factory=dict)


class Verdict(ICBaseModel):
    hash: str
    outcome: VerdictOutcome
    reasons: list[Finding] = Field(default_factory=list)
    record: TransactionRecord
    decided_at: datetime = Field(default_factory=utc_now)

    @classmethod
    def from_findings(
        cls,
        record: TransactionRecord,
        findings: list[Finding],
    ) -> Verdict:
        severities = {f.severity for f in findings}
        if Severity.FAIL in severities:
            outcome = VerdictOutcome.FAIL
        elif Severity.SKIP in severities:
            outcome = VerdictOutcome.SKIPPED
        elif Severity.WARN in severities:
            outcome = VerdictOutcome.WARN
        else:
            outcome = VerdictOutcome.PASS
        return cls(hash=record.hash, outcome=outcome, reasons=findings, record=record)

    def has(self, kind: FindingKind) -> bool:
        return any(f.kind == kind for f in self.reasons)


# ─── Run Report ──────────────────────────────────────────────────


class StoreStats(ICBaseModel):
    records: int = 0
    submitted: int = 0
    foreign: int = 0  # hashes seen on the push channel but never submitted here
    writes: int = 0
    stale_writes: int = 0
    evicted: int = 0


class SubscriberStats(ICBaseModel):
    state: str = "disconnected"
    frames: int = 0
    inclusion_events: int = 0
    preconfirmation_events: int = 0
    malformed_frames: int = 0
    ignored_frames: int = 0
    closed_early: bool = False


class RunReport(ICBaseModel):
    run_id: str
    mode: SubmissionMode
    rpc_url: str
    sender: str | None = None
    balance_wei: int | None = None
    started_at: datetime
    finished_at: datetime | None = None
    verdicts: list[Verdict] = Field(default_factory=list)
    subscription_enabled: bool = False
    subscription_error: str | None = None
    subscriber: SubscriberStats | None = None
    store: StoreStats = Field(default_factory=StoreStats)
    deadline_expired: bool = False

    def count(self, outcome: VerdictOutcome) -> int:
        return sum(1 for v in self.verdicts if v.outcome == outcome)

    @property
    def failed(self) -> bool:
        return self.count(VerdictOutcome.FAIL) > 0
