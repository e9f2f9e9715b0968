"""
Tests for configuration loading and precedence.
"""

from __future__ import annotations

import pytest

from instantconf.config import (
    DEV_PRIVATE_KEY,
    BudgetConfig,
    InstantConfConfig,
    SubmissionMode,
    load_config,
)
from instantconf.errors import ConfigurationError


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("ETH_RPC_URL", "WS_RPC_URL", "PRIVATE_KEY", "INSTANTCONF_COUNT", "INSTANTCONF_MODE"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def yaml_file(tmp_path):
    path = tmp_path / "instantconf.yaml"
    path.write_text(
        "mode: pending\n"
        "count: 2\n"
        "rpc:\n"
        "  url: http://yaml.test:8545\n"
        "budgets:\n"
        "  final_s: 12\n"
    )
    return path


class TestLoadConfig:
    def test_defaults(self, monkeypatch):
        monkeypatch.setenv("ETH_RPC_URL", "http://127.0.0.1:8545")
        config = load_config()
        assert config.mode == SubmissionMode.LATEST
        assert config.count == 1
        assert config.signer.private_key == DEV_PRIVATE_KEY
        assert config.subscription.enabled is False
        assert config.budgets.final_s == 30.0

    def test_yaml_file(self, yaml_file):
        config = load_config(yaml_file)
        assert config.mode == SubmissionMode.PENDING
        assert config.count == 2
        assert config.rpc.url == "http://yaml.test:8545"
        assert config.budgets.final_s == 12.0
        # Untouched siblings keep their defaults
        assert config.budgets.inclusion_s == 5.0

    def test_prefixed_env_below_yaml(self, monkeypatch, yaml_file):
        monkeypatch.setenv("INSTANTCONF_COUNT", "4")
        monkeypatch.setenv("ETH_RPC_URL", "http://env.test")
        assert load_config().count == 4
        assert load_config(yaml_file).count == 2

    def test_conventional_env_above_yaml(self, monkeypatch, yaml_file):
        monkeypatch.setenv("ETH_RPC_URL", "http://env.test:8545")
        monkeypatch.setenv("PRIVATE_KEY", "  0x" + "11" * 32 + "\r\n")
        config = load_config(yaml_file)
        assert config.rpc.url == "http://env.test:8545"
        assert config.signer.private_key == "0x" + "11" * 32

    def test_overrides_win(self, monkeypatch, yaml_file):
        monkeypatch.setenv("ETH_RPC_URL", "http://env.test:8545")
        config = load_config(
            yaml_file,
            overrides={"mode": "latest", "count": 7, "subscription": {"enabled": True}},
        )
        assert config.mode == SubmissionMode.LATEST
        assert config.count == 7
        assert config.subscription.enabled is True
        assert config.rpc.url == "http://env.test:8545"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_config(tmp_path / "nope.yaml")

    def test_missing_rpc_url(self):
        with pytest.raises(ConfigurationError):
            load_config()

    @pytest.mark.parametrize(
        "overrides",
        [
            {"mode": "finalized"},
            {"count": 0},
            {"budgets": {"final_s": 0}},
            {"budgets": {"linger_s": -1}},
            {"signer": {"value_ether": "lots"}},
        ],
    )
    def test_invalid_values(self, monkeypatch, overrides):
        monkeypatch.setenv("ETH_RPC_URL", "http://127.0.0.1:8545")
        with pytest.raises(ConfigurationError):
            load_config(overrides=overrides)


class TestWsUrl:
    def test_derived_from_rpc_url(self):
        assert InstantConfConfig(rpc={"url": "http://node:8545"}).ws_url == "ws://node:8545"
        assert InstantConfConfig(rpc={"url": "https://node"}).ws_url == "wss://node"

    def test_explicit_url_wins(self, monkeypatch):
        monkeypatch.setenv("ETH_RPC_URL", "http://node:8545")
        monkeypatch.setenv("WS_RPC_URL", "ws://push:8546")
        config = load_config(overrides={"subscription": {"enabled": True}})
        assert config.ws_url == "ws://push:8546"


def test_budget_defaults_are_valid():
    budgets = BudgetConfig()
    assert budgets.run_deadline_s > budgets.transaction_s > budgets.final_s
