"""
InstantConf — Configuration System

All configuration is Pydantic-validated. Sources, lowest precedence first:
1. INSTANTCONF_-prefixed environment variables (nested with __)
2. an optional YAML file
3. the conventional ETH_RPC_URL / WS_RPC_URL / PRIVATE_KEY variables

CLI flags are applied on top by ``instantconf.main``.
"""

from __future__ import annotations

import enum
import os
import re
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from instantconf.errors import ConfigurationError

# Anvil / Hardhat account #0. Public, funded only on local dev chains.
DEV_PRIVATE_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
BURN_ADDRESS = "0x000000000000000000000000000000000000dEaD"


class SubmissionMode(enum.StrEnum):
    """Which status the synchronous submission call blocks for."""

    LATEST = "latest"  # standard finality, returns the canonical receipt
    PENDING = "pending"  # preconfirmation, returns ahead of inclusion


# ─── Sub-configs ──────────────────────────────────────────────────


class RpcConfig(BaseModel):
    url: str = ""
    # The synchronous submission can block until finality
    request_timeout_s: float = 30.0
    submit_method: str = "eth_sendRawTransactionSync"

    @field_validator("request_timeout_s")
    @classmethod
    def _positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be positive")
        return v


class SubscriptionConfig(BaseModel):
    enabled: bool = False
    url: str = ""  # Derived from rpc.url when empty
    inclusion_channel: str = "tez_newIncludedTransactions"
    preconfirmation_channel: str = "tez_newPreconfirmedReceipts"
    ack_timeout_s: float = 5.0
    queue_size: int = 1000
    # Public chains announce foreign transactions too; cap what we keep
    max_records: int = 10_000


class BudgetConfig(BaseModel):
    preconfirmation_s: float = 5.0
    inclusion_s: float = 5.0
    final_s: float = 30.0
    final_poll_interval_s: float = 1.0
    final_initial_delay_s: float = 0.0
    transaction_s: float = 60.0
    run_deadline_s: float = 180.0
    linger_s: float = 2.0

    @model_validator(mode="after")
    def _check_budgets(self) -> BudgetConfig:
        for name in (
            "preconfirmation_s",
            "inclusion_s",
            "final_s",
            "final_poll_interval_s",
            "transaction_s",
            "run_deadline_s",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.final_initial_delay_s < 0 or self.linger_s < 0:
            raise ValueError("delays must not be negative")
        return self


class SignerConfig(BaseModel):
    private_key: str = DEV_PRIVATE_KEY
    recipient: str = BURN_ADDRESS
    value_ether: str = "0.0001"
    gas_limit: int | None = None  # Estimated with eth_estimateGas when unset

    @field_validator("private_key")
    @classmethod
    def _strip_key(cls, v: str) -> str:
        # Secret managers like to append \r\n
        return v.strip()

    @field_validator("value_ether")
    @classmethod
    def _decimal_value(cls, v: str) -> str:
        try:
            amount = Decimal(v)
        except InvalidOperation as exc:
            raise ValueError(f"not a decimal amount: {v!r}") from exc
        if amount < 0:
            raise ValueError("value must not be negative")
        return v


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = "console"  # "console" | "json"


# ─── Root Configuration ──────────────────────────────────────────


class InstantConfConfig(BaseSettings):
    """
    Root configuration. Loads from YAML, overridable by env vars.
    """

    model_config = SettingsConfigDict(
        env_prefix="INSTANTCONF_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    mode: SubmissionMode = SubmissionMode.LATEST
    count: int = 1

    rpc: RpcConfig = Field(default_factory=RpcConfig)
    subscription: SubscriptionConfig = Field(default_factory=SubscriptionConfig)
    budgets: BudgetConfig = Field(default_factory=BudgetConfig)
    signer: SignerConfig = Field(default_factory=SignerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("count")
    @classmethod
    def _count_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("count must be at least 1")
        return v

    @property
    def ws_url(self) -> str:
        """Push-channel endpoint, falling back to the RPC URL with a ws scheme."""
        if self.subscription.url:
            return self.subscription.url
        return re.sub(r"^http", "ws", self.rpc.url)


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge override into base."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_config(
    config_path: str | Path | None = None,
    overrides: dict[str, Any] | None = None,
) -> InstantConfConfig:
    """
    Load configuration from YAML file, then apply environment variable overrides
    and finally any explicit overrides (CLI flags).
    """
    raw: dict[str, Any] = {}

    if config_path:
        path = Path(config_path)
        if not path.exists():
            raise ConfigurationError(f"Config file not found: {path}")
        with open(path) as f:
            raw = yaml.safe_load(f) or {}

    if rpc_url := os.environ.get("ETH_RPC_URL"):
        raw.setdefault("rpc", {})["url"] = rpc_url
    if ws_url := os.environ.get("WS_RPC_URL"):
        raw.setdefault("subscription", {})["url"] = ws_url
    if private_key := os.environ.get("PRIVATE_KEY"):
        raw.setdefault("signer", {})["private_key"] = private_key

    if overrides:
        raw = _deep_merge(raw, overrides)

    try:
        config = InstantConfConfig(**raw)
    except ValidationError as exc:
        raise ConfigurationError(str(exc)) from exc

    if not config.rpc.url:
        raise ConfigurationError("RPC endpoint not set (ETH_RPC_URL or rpc.url)")
    if config.subscription.enabled and not config.ws_url:
        raise ConfigurationError("Push-channel endpoint not set (WS_RPC_URL or subscription.url)")
    return config
