"""
End-to-end tests for the VerificationEngine against a mocked node.
"""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest
from eth_utils import keccak, to_hex
from websockets.asyncio.server import serve

from instantconf.clients.rpc import RpcClient
from instantconf.clients.subscriber import EventSubscriber
from instantconf.config import InstantConfConfig, SubmissionMode
from instantconf.engine.checker import InvariantChecker
from instantconf.engine.reporter import render_json, render_text
from instantconf.engine.service import VerificationEngine
from instantconf.engine.types import FindingKind, VerdictOutcome
from instantconf.errors import InsufficientFunds, TransportUnavailable
from instantconf.primitives.common import ZERO_HASH

BLOCK = "0x" + "b1" * 32


def _config(**overrides) -> InstantConfConfig:
    values = {
        "mode": SubmissionMode.PENDING,
        "count": 1,
        "rpc": {"url": "http://node.test"},
        "budgets": {
            "preconfirmation_s": 0.1,
            "inclusion_s": 0.1,
            "final_s": 0.3,
            "final_poll_interval_s": 0.01,
            "transaction_s": 2.0,
            "run_deadline_s": 5.0,
            "linger_s": 0.0,
        },
    }
    values.update(overrides)
    return InstantConfConfig(**values)


class FakeNode:
    """
    Minimal JSON-RPC node: funds the dev account, answers the submission
    extension according to ``submit`` and serves ``final`` receipts.
    """

    def __init__(self, submit="preconfirm", final_status: str = "0x1", final_after: int = 1, balance: str = "0xde0b6b3a7640000"):
        self.submit = submit
        self.final_status = final_status
        self.final_after = final_after
        self.balance = balance
        self.methods: list[str] = []
        self.submitted: list[str] = []
        self._polls: dict[str, int] = {}

    def _receipt(self, tx_hash: str, block_hash: str, status: str) -> dict:
        return {
            "transactionHash": tx_hash,
            "blockHash": block_hash,
            "blockNumber": "0x2a",
            "status": status,
            "gasUsed": "0x5208",
        }

    def _result(self, method: str, params: list):
        if method == "eth_chainId":
            return "0x539"
        if method == "eth_getBalance":
            return self.balance
        if method == "eth_gasPrice":
            return "0x3b9aca00"
        if method == "eth_estimateGas":
            return "0x5208"
        if method == "eth_getTransactionCount":
            return "0x0"
        if method == "eth_sendRawTransactionSync":
            tx_hash = to_hex(keccak(hexstr=params[0]))
            self.submitted.append(tx_hash)
            if self.submit == "unsupported":
                return {"error": {"code": -32601, "message": "the method eth_sendRawTransactionSync does not exist"}}
            if self.submit == "reject":
                return {"error": {"code": -32000, "message": "nonce too low"}}
            if params[1] == "latest":
                return self._receipt(tx_hash, BLOCK, self.final_status)
            return self._receipt(tx_hash, ZERO_HASH, "0x1")
        if method == "eth_getTransactionReceipt":
            tx_hash = params[0]
            self._polls[tx_hash] = self._polls.get(tx_hash, 0) + 1
            if self.final_after is None or self._polls[tx_hash] <= self.final_after:
                return None
            return self._receipt(tx_hash, BLOCK, self.final_status)
        return {"error": {"code": -32601, "message": "method not found"}}

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.methods.append(body["method"])
        result = self._result(body["method"], body["params"])
        if isinstance(result, dict) and "error" in result:
            payload = {"jsonrpc": "2.0", "id": body["id"], "error": result["error"]}
        else:
            payload = {"jsonrpc": "2.0", "id": body["id"], "result": result}
        return httpx.Response(200, json=payload)


class LiveNode(FakeNode):
    """
    FakeNode that also serves the push channel: acknowledges both
    subscriptions (``0xsub1`` inclusion, ``0xsub2`` preconfirmation) and
    announces each submission on the channels in ``push`` before the
    synchronous return goes out.
    """

    def __init__(self, push: tuple[str, ...] = ("inclusion", "preconfirmation"), **kwargs):
        super().__init__(**kwargs)
        self.push = push
        self.sockets: list = []

    async def serve_ws(self, ws) -> None:
        self.sockets.append(ws)
        for _ in range(2):
            request = json.loads(await ws.recv())
            await ws.send(json.dumps({"jsonrpc": "2.0", "id": request["id"], "result": f"0xsub{request['id']}"}))
        await ws.wait_closed()

    async def _announce(self, subscription: str, result) -> None:
        frame = {"jsonrpc": "2.0", "method": "eth_subscription", "params": {"subscription": subscription, "result": result}}
        for ws in self.sockets:
            await ws.send(json.dumps(frame))

    async def ahandler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        if body["method"] == "eth_sendRawTransactionSync":
            tx_hash = to_hex(keccak(hexstr=body["params"][0]))
            if "inclusion" in self.push:
                await self._announce("0xsub1", {"transactionHash": tx_hash, "timestamp": 1700000000})
            if "preconfirmation" in self.push:
                await self._announce("0xsub2", self._receipt(tx_hash, ZERO_HASH, "0x1"))
            # Let the events land before the synchronous return
            await asyncio.sleep(0.05)
        return self.handler(request)


def _engine(config: InstantConfConfig, node: FakeNode, handler=None, **kwargs) -> VerificationEngine:
    rpc = RpcClient(config.rpc, transport=httpx.MockTransport(handler or node.handler))
    return VerificationEngine(config, rpc=rpc, **kwargs)


class TestVerificationEngine:
    @pytest.mark.asyncio
    async def test_pending_preconfirmation_confirmed(self):
        node = FakeNode()
        report = await _engine(_config(), node).run()

        assert [v.outcome for v in report.verdicts] == [VerdictOutcome.PASS]
        verdict = report.verdicts[0]
        assert verdict.hash == node.submitted[0]
        assert verdict.record.submission.mode == SubmissionMode.PENDING
        assert verdict.record.preconfirmation.receipt.is_placeholder
        assert verdict.record.final.block_hash == BLOCK
        assert not report.failed
        assert report.finished_at is not None
        assert report.store.submitted == 1

    @pytest.mark.asyncio
    async def test_final_status_disagrees(self):
        node = FakeNode(final_status="0x0")
        report = await _engine(_config(), node).run()

        verdict = report.verdicts[0]
        assert verdict.outcome == VerdictOutcome.FAIL
        assert verdict.has(FindingKind.MISMATCH)
        assert report.failed

    @pytest.mark.asyncio
    async def test_latest_mode_multiple_transactions(self):
        node = FakeNode()
        report = await _engine(_config(mode=SubmissionMode.LATEST, count=3), node).run()

        assert len(report.verdicts) == 3
        assert all(v.outcome == VerdictOutcome.PASS for v in report.verdicts)
        # Verdicts in submission order, one per nonce
        assert [v.hash for v in report.verdicts] == node.submitted
        assert "eth_getTransactionReceipt" not in node.methods

    @pytest.mark.asyncio
    async def test_unsupported_extension_skips(self):
        node = FakeNode(submit="unsupported")
        report = await _engine(_config(count=3), node).run()

        assert [v.outcome for v in report.verdicts] == [VerdictOutcome.SKIPPED]
        assert report.verdicts[0].has(FindingKind.METHOD_UNSUPPORTED)
        assert len(node.submitted) == 1
        assert not report.failed

    @pytest.mark.asyncio
    async def test_rejected_submission_fails_that_transaction(self):
        node = FakeNode(submit="reject")
        report = await _engine(_config(count=2), node).run()

        assert [v.outcome for v in report.verdicts] == [VerdictOutcome.FAIL, VerdictOutcome.FAIL]
        assert all(v.has(FindingKind.SUBMISSION_REJECTED) for v in report.verdicts)

    @pytest.mark.asyncio
    async def test_run_deadline_expires_with_timeout_verdicts(self):
        node = FakeNode(final_after=None)
        config = _config(
            count=2,
            budgets={
                "final_s": 30.0,
                "final_poll_interval_s": 0.05,
                "transaction_s": 60.0,
                "run_deadline_s": 0.3,
                "linger_s": 0.0,
            },
        )
        report = await _engine(config, node).run()

        assert report.deadline_expired
        assert len(report.verdicts) == 2
        for verdict in report.verdicts:
            assert verdict.outcome == VerdictOutcome.FAIL
            assert [f.details.get("leg") for f in verdict.reasons] == ["final"]

    @pytest.mark.asyncio
    async def test_zero_balance_is_fatal(self):
        node = FakeNode(balance="0x0")
        with pytest.raises(InsufficientFunds):
            await _engine(_config(), node).run()
        assert "eth_sendRawTransactionSync" not in node.methods

    @pytest.mark.asyncio
    async def test_unreachable_endpoint_is_fatal(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        config = _config()
        engine = VerificationEngine(config, rpc=RpcClient(config.rpc, transport=httpx.MockTransport(handler)))
        with pytest.raises(TransportUnavailable):
            await engine.run()

    @pytest.mark.asyncio
    async def test_subscription_failure_degrades_to_rpc_only(self):
        async def refuse(url):
            raise OSError("connection refused")

        config = _config(subscription={"enabled": True, "url": "ws://node.test"})
        node = FakeNode()
        engine = _engine(
            config,
            node,
            subscriber_factory=lambda store: EventSubscriber(
                config.subscription, config.ws_url, store, connect=refuse
            ),
        )
        report = await engine.run()

        assert report.subscription_error
        assert report.subscriber.state == "closed"
        assert [v.outcome for v in report.verdicts] == [VerdictOutcome.PASS]

    @pytest.mark.asyncio
    async def test_report_renders(self):
        report = await _engine(_config(), FakeNode()).run()

        text = render_text(report)
        assert report.verdicts[0].hash in text
        assert "pass=1" in text
        assert any(line.strip().startswith("submitted") and "mode=pending" in line for line in text.splitlines())

        decoded = json.loads(render_json(report))
        assert decoded["verdicts"][0]["outcome"] == "pass"
        assert decoded["mode"] == "pending"


class TestCheckIsolation:
    @pytest.mark.asyncio
    async def test_receipt_for_wrong_hash_times_out_that_transaction(self):
        other = "0x" + "ee" * 32

        class WrongReceiptNode(FakeNode):
            def _result(self, method, params):
                if method == "eth_getTransactionReceipt" and params[0] in self.submitted[1:]:
                    return self._receipt(other, BLOCK, "0x1")
                return super()._result(method, params)

        node = WrongReceiptNode()
        report = await _engine(_config(count=2), node).run()

        assert [v.hash for v in report.verdicts] == node.submitted
        first, second = report.verdicts
        assert first.outcome == VerdictOutcome.PASS
        assert second.outcome == VerdictOutcome.FAIL
        assert [f.details.get("leg") for f in second.reasons] == ["final"]
        assert second.record.final is None

    @pytest.mark.asyncio
    async def test_raising_check_fails_only_that_transaction(self, monkeypatch):
        node = FakeNode()
        check = InvariantChecker.check

        async def flaky(self, tx_hash, mode):
            if tx_hash in node.submitted[1:]:
                raise RuntimeError("decoder blew up")
            return await check(self, tx_hash, mode)

        monkeypatch.setattr(InvariantChecker, "check", flaky)
        report = await _engine(_config(count=2), node).run()

        assert [v.outcome for v in report.verdicts] == [VerdictOutcome.PASS, VerdictOutcome.FAIL]
        crashed = report.verdicts[1]
        assert crashed.has(FindingKind.CHECK_ERROR)
        assert crashed.reasons[0].details == {"error_type": "RuntimeError"}
        assert "decoder blew up" in crashed.reasons[0].message
        assert not report.deadline_expired


class TestLiveSubscription:
    @staticmethod
    def _live_config(port: int, **overrides) -> InstantConfConfig:
        return _config(
            subscription={"enabled": True, "url": f"ws://127.0.0.1:{port}"},
            budgets={
                "preconfirmation_s": 0.1,
                "inclusion_s": 0.5,
                "final_s": 0.3,
                "final_poll_interval_s": 0.01,
                "transaction_s": 2.0,
                "run_deadline_s": 5.0,
                "linger_s": 0.05,
            },
            **overrides,
        )

    @pytest.mark.asyncio
    async def test_latest_mode_missing_preconfirmation_event_fails(self):
        node = LiveNode(push=("inclusion",))
        async with serve(node.serve_ws, "127.0.0.1", 0) as server:
            config = self._live_config(server.sockets[0].getsockname()[1], mode=SubmissionMode.LATEST)
            engine = _engine(
                config,
                node,
                handler=node.ahandler,
                subscriber_factory=lambda store: EventSubscriber(config.subscription, config.ws_url, store),
            )
            report = await engine.run()

        verdict = report.verdicts[0]
        assert verdict.outcome == VerdictOutcome.FAIL
        assert [f.kind for f in verdict.reasons] == [FindingKind.TIMEOUT]
        assert verdict.reasons[0].details["leg"] == "preconfirmation"
        assert verdict.record.inclusion.announced_at == "1700000000"
        assert verdict.record.final.block_hash == BLOCK

        assert report.subscription_error is None
        assert report.subscriber.inclusion_events == 1
        assert report.subscriber.preconfirmation_events == 0
        assert report.subscriber.state == "closed"
        assert report.subscriber.closed_early is False

    @pytest.mark.asyncio
    async def test_events_before_sync_return_pass(self):
        node = LiveNode()
        async with serve(node.serve_ws, "127.0.0.1", 0) as server:
            config = self._live_config(server.sockets[0].getsockname()[1])
            engine = _engine(
                config,
                node,
                handler=node.ahandler,
                subscriber_factory=lambda store: EventSubscriber(config.subscription, config.ws_url, store),
            )
            report = await engine.run()

        verdict = report.verdicts[0]
        assert verdict.outcome == VerdictOutcome.PASS
        assert verdict.reasons == []
        assert verdict.record.inclusion is not None
        assert verdict.record.preconfirmation.receipt.is_placeholder
        assert verdict.record.final.block_hash == BLOCK

        assert report.subscriber.inclusion_events == 1
        assert report.subscriber.preconfirmation_events == 1
        assert report.subscriber.state == "closed"
        assert report.subscriber.closed_early is False
        assert report.store.foreign == 0
