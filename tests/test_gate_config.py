from __future__ import annotations

import json
import os
from dataclasses import replace
from pathlib import Path

import pytest

from vaultgate.env import load_dotenv_if_present, reset_dotenv_state
from vaultgate.runtime.gate_config import (
    BASE_CHAIN_ID,
    DEFAULT_BASE_RPCS,
    default_gate_config,
    load_gate_config,
    parse_rpc_urls,
    validate_gate_config,
)


def test_rpc_urls_operator_first_then_defaults_deduped() -> None:
    urls = parse_rpc_urls("rpc.one.example, https://rpc.two.example  https://mainnet.base.org")
    assert urls[0] == "https://rpc.one.example"
    assert urls[1] == "https://rpc.two.example"
    assert urls[2] == "https://mainnet.base.org"
    assert urls.count("https://mainnet.base.org") == 1
    assert set(DEFAULT_BASE_RPCS).issubset(set(urls))


def test_rpc_urls_empty_falls_back_to_base_defaults() -> None:
    assert parse_rpc_urls("") == list(DEFAULT_BASE_RPCS)
    assert parse_rpc_urls(None) == list(DEFAULT_BASE_RPCS)


def test_defaults_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("VAULTGATE_CONFIG_PATH", raising=False)
    monkeypatch.setenv("VAULTGATE_RPC_URLS", "https://rpc.example")
    monkeypatch.setenv("VAULTGATE_RPC_TIMEOUT_S", "4")
    monkeypatch.setenv("VAULTGATE_ADMIN_TOKEN", "secret")
    monkeypatch.delenv("VAULTGATE_CHAIN_ID", raising=False)

    cfg = load_gate_config()
    assert cfg.supported_chain_id == BASE_CHAIN_ID
    assert cfg.rpc_urls[0] == "https://rpc.example"
    assert cfg.rpc_timeout_s == 4.0
    assert cfg.admin_token == "secret"
    assert cfg.nonce_ttl_s == 600
    assert cfg.message_max_age_s == 900


def test_config_file_overrides_defaults(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    p = tmp_path / "gate.json"
    p.write_text(
        json.dumps(
            {
                "mode": "testnet",
                "db_path": str(tmp_path / "x.db"),
                "rpc_urls": ["rpc.custom.example"],
                "command_prefix": "Vault",
                "watch_interval_s": 30,
            }
        ),
        encoding="utf-8",
    )
    monkeypatch.setenv("VAULTGATE_CONFIG_PATH", str(p))

    cfg = load_gate_config()
    assert cfg.mode == "testnet"
    assert cfg.db_path.endswith("x.db")
    assert cfg.rpc_urls[0] == "https://rpc.custom.example"
    assert cfg.command_prefix == "vault"
    assert cfg.watch_interval_s == 30


@pytest.mark.parametrize(
    "overrides",
    [
        {"mode": "staging"},
        {"db_path": " "},
        {"supported_chain_id": 0},
        {"rpc_urls": ()},
        {"rpc_timeout_s": 30.0},
        {"nonce_ttl_s": 0},
        {"message_max_age_s": 60},
        {"watch_interval_s": 0},
        {"command_prefix": "/gate"},
        {"api_port": 70000},
    ],
)
def test_validate_rejects_bad_values(overrides) -> None:
    cfg = replace(default_gate_config(), **overrides)
    with pytest.raises(ValueError):
        validate_gate_config(cfg)


def test_dotenv_loaded_once_and_env_wins(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    env_file = tmp_path / ".env"
    env_file.write_text("VAULTGATE_TEST_A=from_file\nVAULTGATE_TEST_B=from_file\n", encoding="utf-8")
    monkeypatch.setenv("VAULTGATE_TEST_B", "from_env")
    monkeypatch.delenv("VAULTGATE_TEST_A", raising=False)

    reset_dotenv_state()
    try:
        assert load_dotenv_if_present(str(env_file)) is True
        assert load_dotenv_if_present(str(env_file)) is False
    finally:
        reset_dotenv_state()

    assert os.environ["VAULTGATE_TEST_A"] == "from_file"
    assert os.environ["VAULTGATE_TEST_B"] == "from_env"
    monkeypatch.delenv("VAULTGATE_TEST_A", raising=False)
