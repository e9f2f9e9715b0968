"""
InstantConf — Error Taxonomy

Transaction-scoped errors are collected per hash and surfaced in the run
report. Only the run-level errors at the bottom of this module abort a run.
"""

from __future__ import annotations

from typing import Any


class InstantConfError(Exception):
    """Base class for every error raised by InstantConf."""


# ─── Transaction-scoped ──────────────────────────────────────────


class MethodUnsupported(InstantConfError):
    """The server does not implement the extension (JSON-RPC -32601)."""

    def __init__(self, method: str, message: str = "method not found") -> None:
        super().__init__(f"{method}: {message}")
        self.method = method
        self.message = message


class SubmissionRejected(InstantConfError):
    """The node refused the transaction (balance, nonce, gas, ...)."""

    def __init__(self, code: int | None, message: str, data: Any = None) -> None:
        super().__init__(f"submission rejected ({code}): {message}")
        self.code = code
        self.message = message
        self.data = data
        self.reason = classify_rejection(message)


class SubscriptionFailed(InstantConfError):
    """The push channel could not be established."""


class ObservationTimeout(InstantConfError):
    """An expected observation did not arrive within its budget."""

    def __init__(self, leg: str, budget_s: float) -> None:
        super().__init__(f"{leg} not observed within {budget_s:g}s")
        self.leg = leg
        self.budget_s = budget_s


class MismatchError(InstantConfError):
    """Two observations of the same transaction disagree."""

    def __init__(self, field: str, preconfirmed: Any, final: Any) -> None:
        super().__init__(
            f"{field} mismatch: preconfirmed={preconfirmed!r} final={final!r}"
        )
        self.field = field
        self.preconfirmed = preconfirmed
        self.final = final


class MalformedFrame(InstantConfError):
    """A push-channel message could not be parsed. Counted and dropped."""


class RpcError(InstantConfError):
    """A JSON-RPC error response from a non-submission call."""

    def __init__(self, code: int | None, message: str, data: Any = None) -> None:
        super().__init__(f"rpc error ({code}): {message}")
        self.code = code
        self.message = message
        self.data = data


# ─── Run-level ───────────────────────────────────────────────────


class TransportUnavailable(InstantConfError):
    """The RPC endpoint cannot be reached at all."""


class InsufficientFunds(InstantConfError):
    """The test account has no balance to pay for probe transactions."""


class ConfigurationError(InstantConfError):
    """Invalid or missing configuration."""


METHOD_NOT_FOUND = -32601


def is_method_not_found(code: int | None, message: str) -> bool:
    return code == METHOD_NOT_FOUND or "method not found" in (message or "").lower()


def classify_rejection(message: str) -> str:
    text = (message or "").lower()
    if "nonce" in text:
        return "nonce"
    if "insufficient" in text or "balance" in text or "funds" in text:
        return "balance"
    if "gas" in text:
        return "gas"
    return "other"
