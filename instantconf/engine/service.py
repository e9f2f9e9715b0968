"""
InstantConf — Verification Engine

Drives one verification run:

  foreground   sign → record submission → submit → record sync result →
               schedule the invariant check
  background   push-channel subscriber feeding the same CorrelationStore

The run carries one top-level deadline. When it expires the channel is
closed, outstanding checks are cancelled and every transaction still
missing an expected leg gets a timeout verdict rather than being dropped.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import structlog

from instantconf.clients.rpc import RpcClient
from instantconf.clients.signer import SignedPayload, TransferSigner
from instantconf.clients.subscriber import EventSubscriber
from instantconf.config import InstantConfConfig, SubmissionMode
from instantconf.engine.checker import InvariantChecker
from instantconf.engine.store import CorrelationStore
from instantconf.engine.types import (
    FinalObservation,
    ObservationKind,
    RunReport,
    SubmissionObservation,
    Verdict,
    VerdictOutcome,
)
from instantconf.errors import (
    InsufficientFunds,
    InstantConfError,
    MethodUnsupported,
    SubmissionRejected,
    SubscriptionFailed,
    TransportUnavailable,
)
from instantconf.primitives.common import new_id, utc_now

logger = structlog.get_logger("instantconf.engine.service")

SubscriberFactory = Callable[[CorrelationStore], EventSubscriber]


class VerificationEngine:
    """
    One run, one store. Collaborators are injected so tests can supply an
    httpx mock transport and an in-process push channel.
    """

    def __init__(
        self,
        config: InstantConfConfig,
        rpc: RpcClient | None = None,
        signer_factory: Callable[[RpcClient], TransferSigner] | None = None,
        subscriber_factory: SubscriberFactory | None = None,
    ) -> None:
        self._config = config
        self._rpc = rpc or RpcClient(config.rpc)
        self._signer_factory = signer_factory or (
            lambda rpc: TransferSigner(config.signer, rpc)
        )
        self._subscriber_factory = subscriber_factory or (
            lambda store: EventSubscriber(config.subscription, config.ws_url, store)
        )
        self.run_id = new_id()
        self._logger = logger.bind(component="verification_engine", run_id=self.run_id)

    async def run(self) -> RunReport:
        config = self._config
        report = RunReport(
            run_id=self.run_id,
            mode=config.mode,
            rpc_url=config.rpc.url,
            started_at=utc_now(),
            subscription_enabled=config.subscription.enabled,
        )
        store = CorrelationStore(max_records=config.subscription.max_records)
        subscriber: EventSubscriber | None = None

        # Failing to reach the RPC endpoint at all is run-fatal
        try:
            await self._rpc.connect()
        except InstantConfError:
            await self._rpc.close()
            raise
        try:
            signer = self._signer_factory(self._rpc)
            report.sender = signer.address
            report.balance_wei = await self._rpc.fetch_balance(signer.address)
            self._logger.info(
                "account_ready",
                sender=signer.address,
                balance_wei=report.balance_wei,
            )
            if report.balance_wei == 0:
                raise InsufficientFunds(f"test account {signer.address} has no balance")

            if config.subscription.enabled:
                subscriber = self._subscriber_factory(store)
                try:
                    await subscriber.start()
                except SubscriptionFailed as exc:
                    report.subscription_error = str(exc)
                    self._logger.warning("subscription_failed_degrading_to_rpc", error=str(exc))

            checker = InvariantChecker(
                store,
                self._rpc,
                config.budgets,
                events_live=(lambda: subscriber.is_live) if subscriber else (lambda: False),
            )
            report.verdicts, report.deadline_expired = await self._drive(signer, store, checker)

            if (
                subscriber is not None
                and subscriber.is_live
                and config.budgets.linger_s
                and not report.deadline_expired
            ):
                await asyncio.sleep(config.budgets.linger_s)
        finally:
            if subscriber is not None:
                await subscriber.close()
                report.subscriber = subscriber.stats()
            store.close()
            report.store = store.stats()
            report.finished_at = utc_now()
            await self._rpc.close()

        self._logger.info(
            "run_complete",
            verdicts=len(report.verdicts),
            failed=report.failed,
            deadline_expired=report.deadline_expired,
        )
        return report

    # ─── Foreground ───────────────────────────────────────────────

    async def _drive(
        self,
        signer: TransferSigner,
        store: CorrelationStore,
        checker: InvariantChecker,
    ) -> tuple[list[Verdict], bool]:
        config = self._config
        mode = config.mode
        order: list[str] = []
        verdicts: dict[str, Verdict] = {}
        checks: dict[str, asyncio.Task[Verdict]] = {}
        expired = False

        try:
            async with asyncio.timeout(config.budgets.run_deadline_s):
                for index in range(config.count):
                    signed = await signer.sign_next()
                    order.append(signed.hash)
                    early = await self._submit(signed, mode, store, checker)
                    if early is not None:
                        verdicts[signed.hash] = early
                        if early.outcome == VerdictOutcome.SKIPPED:
                            self._logger.warning(
                                "remaining_submissions_skipped",
                                submitted=index + 1,
                                requested=config.count,
                            )
                            break
                        continue
                    checks[signed.hash] = asyncio.create_task(
                        self._verify(signed.hash, mode, checker),
                        name=f"check-{signed.hash[:10]}",
                    )
                if checks:
                    # One transaction's failed check must not cost the others their verdicts
                    await asyncio.gather(*checks.values(), return_exceptions=True)
        except TimeoutError:
            expired = True
            self._logger.warning("run_deadline_expired", budget_s=config.budgets.run_deadline_s)
        finally:
            for task in checks.values():
                if not task.done():
                    task.cancel()
            await asyncio.gather(*checks.values(), return_exceptions=True)

        for tx_hash in order:
            if tx_hash in verdicts:
                continue
            task = checks.get(tx_hash)
            if task is None or task.cancelled():
                verdicts[tx_hash] = checker.expired(tx_hash, mode, config.budgets.run_deadline_s)
            elif task.exception() is not None:
                verdicts[tx_hash] = checker.crashed(tx_hash, task.exception())
            else:
                verdicts[tx_hash] = task.result()

        return [verdicts[h] for h in order], expired

    async def _submit(
        self,
        signed: SignedPayload,
        mode: SubmissionMode,
        store: CorrelationStore,
        checker: InvariantChecker,
    ) -> Verdict | None:
        """
        Submit one transaction. Returns a terminal verdict when the
        submission itself settles the outcome (skipped or rejected).
        """
        store.record(
            signed.hash,
            ObservationKind.SUBMISSION,
            SubmissionObservation(hash=signed.hash, mode=mode, raw_payload=signed.raw),
        )
        self._logger.info("submission_sent", tx_hash=signed.hash, nonce=signed.nonce, mode=mode.value)

        try:
            result = await self._rpc.submit(signed.raw, mode)
        except MethodUnsupported as exc:
            return checker.skipped(signed.hash, exc)
        except TransportUnavailable as exc:
            # Reachable at connect time, so this one transaction fails, not the run
            return checker.rejected(
                signed.hash, SubmissionRejected(None, f"transport error during submission: {exc}")
            )
        except SubmissionRejected as exc:
            self._logger.error(
                "submission_rejected",
                tx_hash=signed.hash,
                reason=exc.reason,
                error=exc.message,
            )
            return checker.rejected(signed.hash, exc)

        if result.hash != signed.hash:
            self._logger.warning(
                "submission_hash_mismatch",
                local=signed.hash,
                returned=result.hash,
            )
            result = result.model_copy(update={"hash": signed.hash})

        if isinstance(result, FinalObservation):
            store.record(signed.hash, ObservationKind.FINAL, result)
        else:
            store.record(signed.hash, ObservationKind.PRECONFIRMATION, result)
        return None

    async def _verify(
        self,
        tx_hash: str,
        mode: SubmissionMode,
        checker: InvariantChecker,
    ) -> Verdict:
        budget = self._config.budgets.transaction_s
        try:
            async with asyncio.timeout(budget):
                return await checker.check(tx_hash, mode)
        except TimeoutError:
            return checker.expired(tx_hash, mode, budget)
