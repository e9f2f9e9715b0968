"""
InstantConf — JSON-RPC Client

Request/response transport to the node: the synchronous submission
extension, the canonical receipt poll, and the handful of standard calls
needed to build and fund a probe transaction.

Lifecycle: construct → connect() → use → close(). Also usable as an async
context manager.
"""

from __future__ import annotations

import itertools
import time
from typing import TYPE_CHECKING, Any

import httpx
import orjson
import structlog
from pydantic import ValidationError

from instantconf.config import SubmissionMode
from instantconf.engine.types import (
    FinalObservation,
    ObservationSource,
    PreconfirmationObservation,
    Receipt,
    SubmissionResult,
)
from instantconf.errors import (
    MethodUnsupported,
    RpcError,
    SubmissionRejected,
    TransportUnavailable,
    is_method_not_found,
)
from instantconf.primitives.common import normalize_hash, parse_quantity

if TYPE_CHECKING:
    from instantconf.config import RpcConfig

logger = structlog.get_logger("instantconf.clients.rpc")


class RpcClient:
    """
    Async JSON-RPC client over httpx.

    Stateless apart from the HTTP connection pool. A connection-level
    failure raises TransportUnavailable; a JSON-RPC error object raises
    RpcError (or the submission-specific errors from ``submit``).
    """

    def __init__(
        self,
        config: RpcConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._ids = itertools.count(1)
        self._logger = logger.bind(component="rpc_client")

    # ─── Lifecycle ────────────────────────────────────────────────

    async def connect(self) -> None:
        """Open the HTTP client and verify the endpoint answers."""
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(self._config.request_timeout_s),
            transport=self._transport,
            headers={"Content-Type": "application/json"},
        )
        chain_id = await self.chain_id()
        self._logger.info("rpc_connected", url=self._config.url, chain_id=chain_id)

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None
            self._logger.info("rpc_disconnected")

    async def __aenter__(self) -> RpcClient:
        await self.connect()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("RPC client not connected. Call connect() first.")
        return self._client

    # ─── Transport ────────────────────────────────────────────────

    async def call(
        self,
        method: str,
        params: list[Any],
        timeout: float | None = None,
    ) -> Any:
        """Issue one JSON-RPC request and return its ``result``."""
        request_id = next(self._ids)
        body = orjson.dumps(
            {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params}
        )
        start = time.monotonic()
        try:
            response = await self.client.post(
                self._config.url,
                content=body,
                timeout=timeout if timeout is not None else httpx.USE_CLIENT_DEFAULT,
            )
        except httpx.TransportError as exc:
            self._logger.error("rpc_transport_error", method=method, error=str(exc))
            raise TransportUnavailable(f"{self._config.url}: {exc}") from exc

        elapsed_ms = (time.monotonic() - start) * 1000
        try:
            message = orjson.loads(response.content)
        except orjson.JSONDecodeError as exc:
            raise RpcError(
                response.status_code,
                f"non-JSON response (HTTP {response.status_code})",
            ) from exc

        if not isinstance(message, dict):
            raise RpcError(None, f"unexpected response shape: {type(message).__name__}")

        error = message.get("error")
        if error is not None:
            if not isinstance(error, dict):
                error = {"message": str(error)}
            self._logger.debug(
                "rpc_error_response",
                method=method,
                code=error.get("code"),
                message=error.get("message"),
                elapsed_ms=round(elapsed_ms, 1),
            )
            raise RpcError(error.get("code"), str(error.get("message", "")), error.get("data"))

        if response.status_code >= 400:
            raise RpcError(response.status_code, f"HTTP {response.status_code}")

        self._logger.debug("rpc_call", method=method, elapsed_ms=round(elapsed_ms, 1))
        return message.get("result")

    # ─── Submission ───────────────────────────────────────────────

    async def submit(self, raw_payload: str, mode: SubmissionMode) -> SubmissionResult:
        """
        Send a signed transaction through the synchronous submission call.

        ``latest`` blocks until the canonical receipt exists and returns a
        FinalObservation; ``pending`` returns a PreconfirmationObservation,
        normally carrying the zero placeholder block hash.

        Raises MethodUnsupported when the server lacks the extension and
        SubmissionRejected when the node refuses the transaction.
        """
        if not raw_payload or raw_payload in ("0x", "0X"):
            raise ValueError("raw payload must be a non-empty signed transaction")
        mode = SubmissionMode(mode)
        method = self._config.submit_method

        start = time.monotonic()
        try:
            result = await self.call(method, [raw_payload, mode.value])
        except RpcError as exc:
            if is_method_not_found(exc.code, exc.message):
                self._logger.warning("submission_method_unsupported", method=method)
                raise MethodUnsupported(method, exc.message) from exc
            self._logger.warning(
                "submission_rejected",
                code=exc.code,
                message=exc.message,
            )
            raise SubmissionRejected(exc.code, exc.message, exc.data) from exc
        latency_ms = (time.monotonic() - start) * 1000

        if not isinstance(result, dict):
            raise SubmissionRejected(None, f"{method} returned no receipt: {result!r}")
        try:
            receipt = Receipt.model_validate(result)
        except ValidationError as exc:
            raise SubmissionRejected(None, f"malformed receipt from {method}: {exc}") from exc

        self._logger.info(
            "submission_returned",
            tx_hash=receipt.transaction_hash,
            mode=mode.value,
            block_hash=receipt.block_hash,
            status=receipt.status,
            latency_ms=round(latency_ms, 1),
        )
        # A placeholder block hash means preconfirmed, whatever mode was asked for
        if mode == SubmissionMode.PENDING or receipt.is_placeholder:
            return PreconfirmationObservation.from_receipt(
                receipt, ObservationSource.RPC, latency_ms=latency_ms
            )
        return FinalObservation.from_receipt(receipt, ObservationSource.RPC, latency_ms=latency_ms)

    # ─── Receipts ─────────────────────────────────────────────────

    async def fetch_final_receipt(self, tx_hash: str) -> FinalObservation | None:
        """
        Poll for the canonical receipt. Idempotent.

        None means *not yet available*, never proof of non-inclusion. A
        receipt still carrying the placeholder block hash is not final and
        is reported as not yet available.
        """
        tx_hash = normalize_hash(tx_hash)
        result = await self.call("eth_getTransactionReceipt", [tx_hash])
        if result is None:
            return None
        try:
            receipt = Receipt.model_validate(result)
        except ValidationError as exc:
            raise RpcError(None, f"malformed receipt for {tx_hash}: {exc}") from exc
        if receipt.transaction_hash != tx_hash:
            raise RpcError(
                None,
                f"receipt for {receipt.transaction_hash} returned when polling {tx_hash}",
            )
        if receipt.is_placeholder:
            return None
        return FinalObservation.from_receipt(receipt, ObservationSource.POLL)

    # ─── Account / chain helpers ──────────────────────────────────

    async def fetch_balance(self, address: str) -> int:
        """Balance in wei at the latest block."""
        return parse_quantity(await self.call("eth_getBalance", [address, "latest"])) or 0

    async def chain_id(self) -> int:
        return parse_quantity(await self.call("eth_chainId", [])) or 0

    async def nonce(self, address: str) -> int:
        return parse_quantity(await self.call("eth_getTransactionCount", [address, "pending"])) or 0

    async def gas_price(self) -> int:
        return parse_quantity(await self.call("eth_gasPrice", [])) or 0

    async def estimate_gas(self, tx: dict[str, Any]) -> int:
        return parse_quantity(await self.call("eth_estimateGas", [tx])) or 0
