"""
InstantConf — Push-Channel Event Subscriber

Owns the single persistent WebSocket to the node, subscribes to the
inclusion and preconfirmation channels, and turns incoming frames into
observations for the CorrelationStore.

State machine:
  DISCONNECTED → CONNECTING → SUBSCRIBED → RECEIVING → CLOSED

Both acknowledgements are required to reach SUBSCRIBED; anything else ends
in CLOSED with SubscriptionFailed. CLOSED is terminal: a disconnect mid-run
is reported as reduced coverage and never reconnected.

Parsing runs on the receive task; parsed observations are handed through
an asyncio.Queue to one writer task that owns the calls into the store.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import orjson
import structlog
import websockets
from pydantic import ValidationError
from websockets.asyncio.client import connect as ws_connect

from instantconf.engine.types import (
    InclusionObservation,
    Observation,
    ObservationKind,
    ObservationSource,
    PreconfirmationObservation,
    Receipt,
    SubscriberStats,
)
from instantconf.errors import MalformedFrame, SubscriptionFailed

if TYPE_CHECKING:
    from instantconf.config import SubscriptionConfig
    from instantconf.engine.store import CorrelationStore

logger = structlog.get_logger("instantconf.clients.subscriber")

_SUBSCRIPTION_METHOD = "eth_subscription"


class SubscriberState(enum.StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"
    RECEIVING = "receiving"
    CLOSED = "closed"


def _json(data: dict[str, Any]) -> str:
    return orjson.dumps(data).decode()


class EventSubscriber:
    """
    Background owner of the push channel.

    ``start()`` connects and subscribes (raising SubscriptionFailed on any
    failure); ``close()`` tears everything down. Observations go to the
    store passed at construction, never to shared module state.
    """

    def __init__(
        self,
        config: SubscriptionConfig,
        url: str,
        store: CorrelationStore,
        connect: Callable[..., Any] = ws_connect,
    ) -> None:
        self._config = config
        self._url = url
        self._store = store
        self._connect = connect
        self._state = SubscriberState.DISCONNECTED
        self._ws: Any = None
        self._queue: asyncio.Queue[tuple[ObservationKind, Observation]] = asyncio.Queue(
            maxsize=config.queue_size
        )
        self._tasks: list[asyncio.Task[None]] = []
        # subscription id (from the ack) → channel name
        self._subscriptions: dict[str, str] = {}
        self._stats = SubscriberStats()
        self._logger = logger.bind(component="event_subscriber", url=url)

    # ─── State ────────────────────────────────────────────────────

    @property
    def state(self) -> SubscriberState:
        return self._state

    @property
    def is_live(self) -> bool:
        return self._state in (SubscriberState.SUBSCRIBED, SubscriberState.RECEIVING)

    def _transition(self, state: SubscriberState) -> None:
        if self._state == SubscriberState.CLOSED:
            return
        self._logger.debug("subscriber_state", previous=self._state.value, state=state.value)
        self._state = state

    def stats(self) -> SubscriberStats:
        return self._stats.model_copy(update={"state": self._state.value})

    # ─── Lifecycle ────────────────────────────────────────────────

    async def start(self) -> None:
        """Connect, subscribe to both channels and start receiving."""
        if self._state != SubscriberState.DISCONNECTED:
            raise RuntimeError(f"subscriber already started (state={self._state.value})")
        self._transition(SubscriberState.CONNECTING)
        try:
            self._ws = await asyncio.wait_for(
                self._connect(self._url),
                timeout=self._config.ack_timeout_s,
            )
            await self._subscribe()
        except SubscriptionFailed:
            await self._fail()
            raise
        except (OSError, TimeoutError, websockets.exceptions.WebSocketException) as exc:
            await self._fail()
            raise SubscriptionFailed(f"{self._url}: {exc!r}") from exc

        self._transition(SubscriberState.SUBSCRIBED)
        self._logger.info("subscribed", channels=sorted(self._subscriptions.values()))
        self._tasks.append(asyncio.create_task(self._writer()))
        self._tasks.append(asyncio.create_task(self._receiver()))

    async def close(self) -> None:
        """Close the channel, flush queued observations into the store."""
        if self._state == SubscriberState.CLOSED and not self._tasks and self._ws is None:
            return
        self._state = SubscriberState.CLOSED
        if self._ws is not None:
            with contextlib.suppress(websockets.exceptions.WebSocketException, OSError):
                await self._ws.close()
            self._ws = None
        # Let the writer drain whatever the receiver already parsed
        if self._tasks:
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._queue.join(), timeout=1.0)
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()
        self._logger.info(
            "subscriber_closed",
            frames=self._stats.frames,
            malformed=self._stats.malformed_frames,
        )

    async def _fail(self) -> None:
        self._state = SubscriberState.CLOSED
        if self._ws is not None:
            with contextlib.suppress(websockets.exceptions.WebSocketException, OSError):
                await self._ws.close()
            self._ws = None

    # ─── Subscription handshake ───────────────────────────────────

    async def _subscribe(self) -> None:
        pending = {
            1: self._config.inclusion_channel,
            2: self._config.preconfirmation_channel,
        }
        for request_id, channel in pending.items():
            await self._ws.send(
                _json(
                    {
                        "jsonrpc": "2.0",
                        "id": request_id,
                        "method": "eth_subscribe",
                        "params": [channel],
                    }
                )
            )

        async def _await_acks() -> None:
            while pending:
                raw = await self._ws.recv()
                message = self._decode(raw)
                if message is None:
                    continue
                request_id = message.get("id")
                if request_id in pending and ("result" in message or "error" in message):
                    channel = pending.pop(request_id)
                    if message.get("error") is not None:
                        raise SubscriptionFailed(
                            f"subscription to {channel} refused: {message['error']}"
                        )
                    self._subscriptions[str(message["result"])] = channel
                    self._logger.debug("subscription_acknowledged", channel=channel)
                else:
                    # Notifications can arrive before the second ack
                    await self._dispatch(message)

        try:
            await asyncio.wait_for(_await_acks(), timeout=self._config.ack_timeout_s)
        except TimeoutError as exc:
            raise SubscriptionFailed(
                f"no acknowledgement for {sorted(pending.values())} "
                f"within {self._config.ack_timeout_s:g}s"
            ) from exc

    # ─── Receive path ─────────────────────────────────────────────

    async def _receiver(self) -> None:
        self._transition(SubscriberState.RECEIVING)
        try:
            async for raw in self._ws:
                message = self._decode(raw)
                if message is not None:
                    await self._dispatch(message)
        except asyncio.CancelledError:
            raise
        except websockets.exceptions.ConnectionClosed as exc:
            self._logger.warning("subscriber_disconnected", reason=str(exc))
        if self._state != SubscriberState.CLOSED:
            self._stats.closed_early = True
            self._logger.warning("subscriber_closed_early")
            self._state = SubscriberState.CLOSED

    async def _writer(self) -> None:
        while True:
            kind, observation = await self._queue.get()
            try:
                self._store.record(observation.hash, kind, observation)
            except (ValueError, TypeError) as exc:
                self._logger.error("event_record_failed", error=str(exc))
            finally:
                self._queue.task_done()

    def _decode(self, raw: str | bytes) -> dict[str, Any] | None:
        self._stats.frames += 1
        try:
            message = orjson.loads(raw)
        except orjson.JSONDecodeError:
            self._malformed("invalid JSON")
            return None
        if not isinstance(message, dict):
            self._malformed("frame is not an object")
            return None
        return message

    async def _dispatch(self, message: dict[str, Any]) -> None:
        try:
            parsed = self.parse_notification(message)
        except MalformedFrame as exc:
            self._malformed(str(exc))
            return
        if parsed is None:
            self._stats.ignored_frames += 1
            return
        kind, observation = parsed
        if kind == ObservationKind.INCLUSION:
            self._stats.inclusion_events += 1
        else:
            self._stats.preconfirmation_events += 1
        self._logger.debug("event_received", kind=kind.value, tx_hash=observation.hash)
        await self._queue.put((kind, observation))

    def _malformed(self, reason: str) -> None:
        self._stats.malformed_frames += 1
        self._logger.debug("frame_malformed", reason=reason)

    # ─── Frame classification ─────────────────────────────────────

    def parse_notification(
        self, message: dict[str, Any]
    ) -> tuple[ObservationKind, Observation] | None:
        """
        Classify a decoded frame by its announced channel.

        Returns None for frames that are not notifications (late acks,
        unrelated methods). Raises MalformedFrame for notifications whose
        payload cannot be parsed.
        """
        method = message.get("method")
        params = message.get("params")
        if method == _SUBSCRIPTION_METHOD:
            if not isinstance(params, dict):
                raise MalformedFrame("eth_subscription frame without params")
            channel = self._subscriptions.get(str(params.get("subscription")))
            if channel is None:
                return None
            payload = params.get("result")
        elif method in (self._config.inclusion_channel, self._config.preconfirmation_channel):
            channel = method
            payload = params
        else:
            return None

        if channel == self._config.inclusion_channel:
            return ObservationKind.INCLUSION, self._parse_inclusion(payload)
        return ObservationKind.PRECONFIRMATION, self._parse_preconfirmation(payload)

    @staticmethod
    def _parse_inclusion(payload: Any) -> InclusionObservation:
        announced_at = None
        if isinstance(payload, str):
            tx_hash = payload
        elif isinstance(payload, dict):
            tx_hash = payload.get("transactionHash") or payload.get("hash")
            if payload.get("timestamp") is not None:
                announced_at = str(payload["timestamp"])
        else:
            raise MalformedFrame("inclusion payload is neither a hash nor an object")
        if not tx_hash:
            raise MalformedFrame("inclusion payload without transactionHash")
        try:
            return InclusionObservation(hash=tx_hash, announced_at=announced_at)
        except ValidationError as exc:
            raise MalformedFrame(f"bad inclusion payload: {exc.errors()[0]['msg']}") from exc

    @staticmethod
    def _parse_preconfirmation(payload: Any) -> PreconfirmationObservation:
        if isinstance(payload, dict) and isinstance(payload.get("receipt"), dict):
            payload = payload["receipt"]
        if not isinstance(payload, dict):
            raise MalformedFrame("preconfirmation payload is not a receipt object")
        try:
            receipt = Receipt.model_validate(payload)
        except ValidationError as exc:
            raise MalformedFrame(f"bad preconfirmed receipt: {exc.errors()[0]['msg']}") from exc
        return PreconfirmationObservation.from_receipt(receipt, ObservationSource.EVENT)
