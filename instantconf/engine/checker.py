"""
InstantConf — Invariant Checker

Runs once per transaction after submission. Waits (within budget) for the
observations the active mode calls for, polls for the canonical receipt,
then evaluates the cross-observation rules:

  1. pending mode without a preconfirmation          → timeout (fail)
  2. pending-mode preconfirmation with a real hash   → warning
  3. canonical receipt never available               → timeout (fail)
  4. preconfirmed status ≠ final status              → mismatch (fail)
     real preconfirmed block hash ≠ final block hash → mismatch (fail)
  5. inclusion observed after preconfirmation        → warning

Every verdict carries a snapshot of the record it was decided on.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import structlog

from instantconf.config import SubmissionMode
from instantconf.engine.types import (
    FinalObservation,
    Finding,
    FindingKind,
    ObservationKind,
    PreconfirmationObservation,
    Severity,
    TransactionRecord,
    Verdict,
)
from instantconf.errors import (
    MethodUnsupported,
    MismatchError,
    ObservationTimeout,
    RpcError,
    SubmissionRejected,
    TransportUnavailable,
)
from instantconf.primitives.common import normalize_hash

if TYPE_CHECKING:
    from instantconf.clients.rpc import RpcClient
    from instantconf.config import BudgetConfig
    from instantconf.engine.store import CorrelationStore

logger = structlog.get_logger("instantconf.engine.checker")


def timeout_finding(leg: ObservationKind, budget_s: float) -> Finding:
    err = ObservationTimeout(leg.value, budget_s)
    return Finding(
        kind=FindingKind.TIMEOUT,
        severity=Severity.FAIL,
        message=str(err),
        details={"leg": leg.value, "budget_s": budget_s},
    )


def mismatch_finding(
    field: str,
    preconfirmation: PreconfirmationObservation,
    final: FinalObservation,
    preconfirmed_value: Any,
    final_value: Any,
) -> Finding:
    err = MismatchError(field, preconfirmed_value, final_value)
    return Finding(
        kind=FindingKind.MISMATCH,
        severity=Severity.FAIL,
        message=str(err),
        details={
            "field": field,
            "preconfirmation": preconfirmation.model_dump(mode="json"),
            "final": final.model_dump(mode="json"),
        },
    )


class InvariantChecker:
    """
    Evaluates one transaction's observations against the consistency rules.

    ``events_live`` reports whether the push channel is currently
    delivering; when it is, the preconfirmation and inclusion events are
    expected legs even in latest mode.
    """

    def __init__(
        self,
        store: CorrelationStore,
        rpc: RpcClient,
        budgets: BudgetConfig,
        events_live: Callable[[], bool] = lambda: False,
    ) -> None:
        self._store = store
        self._rpc = rpc
        self._budgets = budgets
        self._events_live = events_live

    # ─── Main algorithm ───────────────────────────────────────────

    async def check(self, tx_hash: str, mode: SubmissionMode) -> Verdict:
        tx_hash = normalize_hash(tx_hash)
        log = logger.bind(component="invariant_checker", tx_hash=tx_hash, mode=mode.value)
        findings: list[Finding] = []
        expect_events = self._events_live()

        # Steps 1 & 5 need the event legs; wait for both concurrently
        preconf_wait = mode == SubmissionMode.PENDING or expect_events
        preconfirmation, inclusion = await asyncio.gather(
            self._observe(
                tx_hash,
                ObservationKind.PRECONFIRMATION,
                self._budgets.preconfirmation_s if preconf_wait else None,
            ),
            self._observe(
                tx_hash,
                ObservationKind.INCLUSION,
                self._budgets.inclusion_s if expect_events else None,
            ),
        )

        # 1. Missing preconfirmation
        if preconfirmation is None and preconf_wait:
            if mode == SubmissionMode.PENDING or self._events_live():
                findings.append(
                    timeout_finding(ObservationKind.PRECONFIRMATION, self._budgets.preconfirmation_s)
                )
            else:
                findings.append(
                    Finding(
                        kind=FindingKind.COVERAGE,
                        severity=Severity.WARN,
                        message="push channel closed before the preconfirmation event arrived",
                    )
                )
        if inclusion is None and expect_events:
            findings.append(
                Finding(
                    kind=FindingKind.COVERAGE,
                    severity=Severity.WARN,
                    message=(
                        f"no inclusion event within {self._budgets.inclusion_s:g}s"
                        if self._events_live()
                        else "push channel closed before the inclusion event arrived"
                    ),
                )
            )

        # 2. Placeholder block hash on a pending-mode preconfirmation
        if (
            preconfirmation is not None
            and mode == SubmissionMode.PENDING
            and not preconfirmation.receipt.is_placeholder
        ):
            findings.append(
                Finding(
                    kind=FindingKind.PLACEHOLDER,
                    severity=Severity.WARN,
                    message="preconfirmation carried a real block hash; treated as a finalized receipt",
                    details={"block_hash": preconfirmation.receipt.block_hash},
                )
            )

        # 3. Canonical receipt
        final = await self._await_final(tx_hash)
        if final is None:
            if preconfirmation is not None and not preconfirmation.receipt.is_placeholder:
                final = FinalObservation.from_receipt(
                    preconfirmation.receipt,
                    preconfirmation.source,
                    latency_ms=preconfirmation.latency_ms,
                )
                log.info("final_taken_from_preconfirmation", block_hash=final.block_hash)
            else:
                findings.append(timeout_finding(ObservationKind.FINAL, self._budgets.final_s))

        # 4. Status (and real block hash) agreement
        if preconfirmation is not None and final is not None:
            receipt = preconfirmation.receipt
            if receipt.status != final.status:
                findings.append(
                    mismatch_finding("status", preconfirmation, final, receipt.status, final.status)
                )
            if not receipt.is_placeholder and receipt.block_hash != final.block_hash:
                findings.append(
                    mismatch_finding(
                        "blockHash", preconfirmation, final, receipt.block_hash, final.block_hash
                    )
                )

        # 5. Inclusion expected no later than preconfirmation
        if (
            inclusion is not None
            and preconfirmation is not None
            and inclusion.observed_at > preconfirmation.observed_at
        ):
            lag_ms = (inclusion.observed_at - preconfirmation.observed_at).total_seconds() * 1000
            findings.append(
                Finding(
                    kind=FindingKind.ORDERING,
                    severity=Severity.WARN,
                    message=f"inclusion observed {lag_ms:.0f}ms after preconfirmation",
                    details={
                        "inclusion_at": inclusion.observed_at.isoformat(),
                        "preconfirmation_at": preconfirmation.observed_at.isoformat(),
                    },
                )
            )

        verdict = Verdict.from_findings(self._record(tx_hash), findings)
        log.info(
            "verdict",
            outcome=verdict.outcome.value,
            reasons=[f.kind.value for f in findings],
        )
        return verdict

    # ─── Terminal verdicts outside the main algorithm ─────────────

    def skipped(self, tx_hash: str, error: MethodUnsupported) -> Verdict:
        finding = Finding(
            kind=FindingKind.METHOD_UNSUPPORTED,
            severity=Severity.SKIP,
            message=f"extension unsupported: {error}",
            details={"method": error.method},
        )
        return Verdict.from_findings(self._record(tx_hash), [finding])

    def rejected(self, tx_hash: str, error: SubmissionRejected) -> Verdict:
        finding = Finding(
            kind=FindingKind.SUBMISSION_REJECTED,
            severity=Severity.FAIL,
            message=error.message,
            details={"code": error.code, "reason": error.reason, "data": error.data},
        )
        return Verdict.from_findings(self._record(tx_hash), [finding])

    def crashed(self, tx_hash: str, error: BaseException) -> Verdict:
        """Verdict for a transaction whose check raised instead of deciding."""
        finding = Finding(
            kind=FindingKind.CHECK_ERROR,
            severity=Severity.FAIL,
            message=f"verification aborted: {type(error).__name__}: {error}",
            details={"error_type": type(error).__name__},
        )
        logger.error("verdict_check_error", tx_hash=tx_hash, error=str(error))
        return Verdict.from_findings(self._record(tx_hash), [finding])

    def expired(self, tx_hash: str, mode: SubmissionMode, budget_s: float) -> Verdict:
        """
        Verdict for a transaction whose overall budget ran out: one timeout
        finding per expected leg still missing.
        """
        record = self._record(tx_hash)
        findings: list[Finding] = []
        if mode == SubmissionMode.PENDING and record.preconfirmation is None:
            findings.append(timeout_finding(ObservationKind.PRECONFIRMATION, budget_s))
        if record.final is None:
            findings.append(timeout_finding(ObservationKind.FINAL, budget_s))
        if not findings:
            findings.append(
                Finding(
                    kind=FindingKind.TIMEOUT,
                    severity=Severity.FAIL,
                    message=f"verification did not complete within {budget_s:g}s",
                    details={"budget_s": budget_s},
                )
            )
        verdict = Verdict.from_findings(record, findings)
        logger.warning(
            "verdict_expired",
            tx_hash=record.hash,
            legs=[f.details.get("leg") for f in findings],
        )
        return verdict

    # ─── Waiting ──────────────────────────────────────────────────

    def _record(self, tx_hash: str) -> TransactionRecord:
        return self._store.snapshot(tx_hash) or TransactionRecord(hash=normalize_hash(tx_hash))

    async def _observe(
        self,
        tx_hash: str,
        kind: ObservationKind,
        budget_s: float | None,
    ) -> Any:
        """Current observation of ``kind``; waits up to ``budget_s`` when given."""
        if budget_s is not None:
            return await self._store.wait_for(tx_hash, kind, budget_s)
        record = self._store.snapshot(tx_hash)
        return record.get(kind) if record is not None else None

    async def _await_final(self, tx_hash: str) -> FinalObservation | None:
        """
        Poll for the canonical receipt with a fixed delay until the final
        budget runs out. A receipt recorded by another path (latest-mode
        submission) short-circuits the poll.
        """
        record = self._store.snapshot(tx_hash)
        if record is not None and record.final is not None:
            return record.final

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._budgets.final_s
        if self._budgets.final_initial_delay_s:
            await asyncio.sleep(min(self._budgets.final_initial_delay_s, self._budgets.final_s))

        attempts = 0
        while True:
            attempts += 1
            try:
                final = await self._rpc.fetch_final_receipt(tx_hash)
            except (RpcError, TransportUnavailable) as exc:
                logger.warning("final_poll_error", tx_hash=tx_hash, attempt=attempts, error=str(exc))
                final = None
            if final is not None:
                self._store.record(tx_hash, ObservationKind.FINAL, final)
                logger.info(
                    "final_observed",
                    tx_hash=tx_hash,
                    attempts=attempts,
                    block_number=final.block_number,
                    status=final.status,
                )
                return final
            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.warning("final_poll_exhausted", tx_hash=tx_hash, attempts=attempts)
                return None
            await asyncio.sleep(min(self._budgets.final_poll_interval_s, remaining))
