"""
Tests for environment settings, startup validation and the strategy file.
"""

import dataclasses
import os

import pytest

from rangepilot.config.config import Settings, env_bool, parse_base_currencies
from rangepilot.config.config_validator import (
    ConfigValidator,
    ValidationIssue,
    ValidationSeverity,
    validate_and_log,
    validate_config,
)
from rangepilot.config.strategy_file import load_strategy_file
from rangepilot.core.errors import ConfigurationError
from rangepilot.strategy.stages import DEFAULT_BASE_CURRENCIES

KEY = "0x" + "11" * 32


@pytest.fixture
def clean_env(monkeypatch):
    for key in list(os.environ):
        if key.startswith("LP_"):
            monkeypatch.delenv(key)
    return monkeypatch


def good_settings(clean_env) -> Settings:
    clean_env.setenv("LP_RPC_URLS", "main|https://a.example,https://b.example")
    clean_env.setenv("LP_PRIVATE_KEY", KEY)
    clean_env.setenv("LP_COLLABORATORS", "deploy.services:build")
    clean_env.setenv("LP_METRICS_TOKEN", "secret")
    return Settings.load()


class TestSettings:
    def test_defaults(self, clean_env):
        cfg = Settings.load()
        assert cfg.rpc_urls == ["https://bsc-dataseed.bnbchain.org"]
        assert cfg.chain_id == 56
        assert cfg.monitor_poll_ms == 3000
        assert (cfg.retry_initial_ms, cfg.retry_max_attempts, cfg.retry_multiplier, cfg.retry_max_delay_ms) == (
            1000, 5, 2.0, 30000,
        )
        assert cfg.base_currencies == DEFAULT_BASE_CURRENCIES
        assert cfg.exit_sell_ratio == 0.9995
        assert cfg.backup_keep == 10
        assert cfg.private_key is None

    def test_endpoints_named_and_ordered(self, clean_env):
        cfg = good_settings(clean_env)
        endpoints = cfg.endpoints()
        assert [(e.name, e.url, e.priority) for e in endpoints] == [
            ("main", "https://a.example", 1),
            ("rpc2", "https://b.example", 2),
        ]
        assert all(e.max_retries == 3 and e.timeout_sec == 5.0 for e in endpoints)

    @pytest.mark.parametrize(
        "key,value",
        [
            ("LP_RPC_URLS", "ftp://node"),
            ("LP_RPC_TIMEOUT_SEC", "0"),
            ("LP_RPC_MAX_RETRIES", "0"),
            ("LP_MONITOR_POLL_MS", "0"),
            ("LP_RETRY_MAX_DELAY_MS", "10"),
            ("LP_RETRY_MULTIPLIER", "0.5"),
            ("LP_EXIT_SELL_RATIO", "1.5"),
            ("LP_BACKUP_KEEP", "0"),
            ("LP_BASE_CURRENCIES", "USDT"),
        ],
    )
    def test_invalid_values_rejected(self, clean_env, key, value):
        clean_env.setenv(key, value)
        with pytest.raises(ValueError):
            Settings.load()

    def test_dump_masks_secrets(self, clean_env):
        data = good_settings(clean_env).dump()
        assert data["private_key"] == "***"
        assert data["metrics_token"] == "***"
        assert data["base_currencies"] == ["USDT", "USDC", "WBNB"]

    def test_resolve_signer(self, clean_env):
        cfg = good_settings(clean_env)
        assert cfg.resolve_account().startswith("0x")
        with pytest.raises(RuntimeError):
            dataclasses.replace(cfg, private_key=None).resolve_signer()

    def test_base_currency_parsing(self):
        parsed = parse_base_currencies("usdt:0xabc, busd:0xdef")
        assert [(c.symbol, c.address) for c in parsed] == [("USDT", "0xabc"), ("BUSD", "0xdef")]
        assert parse_base_currencies("") == DEFAULT_BASE_CURRENCIES

    def test_env_bool(self, clean_env):
        clean_env.setenv("LP_FLAG", "Yes")
        assert env_bool("LP_FLAG", False)
        clean_env.setenv("LP_FLAG", "off")
        assert not env_bool("LP_FLAG", True)
        assert env_bool("LP_UNSET_FLAG", True)


class TestValidator:
    def test_good_config_passes_clean(self, clean_env):
        result = validate_config(good_settings(clean_env))
        assert result.valid
        assert result.issues == []

    def test_missing_key_and_collaborators_are_errors(self, clean_env):
        cfg = dataclasses.replace(good_settings(clean_env), private_key=None, collaborators=None)
        result = validate_config(cfg)
        assert not result.valid
        assert {i.field for i in result.get_errors()} == {"private_key", "collaborators"}

    def test_malformed_key(self, clean_env):
        cfg = dataclasses.replace(good_settings(clean_env), private_key="0x1234")
        assert not validate_config(cfg).valid

    def test_out_of_range_numeric(self, clean_env):
        cfg = dataclasses.replace(good_settings(clean_env), monitor_poll_ms=10)
        errors = validate_config(cfg).get_errors()
        assert [e.field for e in errors] == ["monitor_poll_ms"]

    def test_risky_but_legal_settings_warn(self, clean_env):
        cfg = dataclasses.replace(
            good_settings(clean_env),
            rpc_urls=["http://node", "http://node"],
            metrics_token=None,
            retry_max_attempts=2,
        )
        result = validate_config(cfg)
        assert result.valid
        fields = [w.field for w in result.get_warnings()]
        assert fields.count("rpc_urls") == 3  # duplicate plus two plain-http
        assert "metrics_token" in fields
        assert "retry_max_attempts" in fields

    def test_custom_validator(self, clean_env):
        validator = ConfigValidator()
        validator.register_validator(
            lambda cfg: [ValidationIssue("chain_id", "testnet", ValidationSeverity.ERROR)] if cfg.chain_id != 56 else []
        )
        cfg = dataclasses.replace(good_settings(clean_env), chain_id=97)
        assert not validator.validate(cfg).valid

    def test_validate_and_log(self, clean_env, caplog):
        cfg = dataclasses.replace(good_settings(clean_env), private_key=None)
        with caplog.at_level("INFO", logger="rangepilot"):
            assert validate_and_log(cfg) is False
        assert "CONFIG ERROR: No signing key configured" in caplog.text
        assert "validation failed with 1 error(s)" in caplog.text


class TestStrategyFile:
    def test_missing_file(self, tmp_path):
        assert load_strategy_file(tmp_path / "nope.yaml") == []

    def test_strategies_key(self, tmp_path):
        path = tmp_path / "strategies.yaml"
        path.write_text(
            "strategies:\n"
            "  - name: cake-bnb\n"
            "    pool_address: '0xabc'\n"
            "    amount: 100\n"
            "    range_percent: {lower_percent: -1, upper_percent: 1}\n"
        )
        items = load_strategy_file(path)
        assert items == [{
            "name": "cake-bnb",
            "pool_address": "0xabc",
            "amount": 100,
            "range_percent": {"lower_percent": -1, "upper_percent": 1},
        }]

    def test_bare_list_and_empty(self, tmp_path):
        path = tmp_path / "s.yaml"
        path.write_text("- {pool_address: '0xabc', amount: 1}\n")
        assert len(load_strategy_file(path)) == 1
        path.write_text("")
        assert load_strategy_file(path) == []

    @pytest.mark.parametrize("text", ["strategies: [1, 2]\n", "just a string\n", "a: [unclosed\n"])
    def test_malformed(self, tmp_path, text):
        path = tmp_path / "s.yaml"
        path.write_text(text)
        with pytest.raises(ConfigurationError):
            load_strategy_file(path)
