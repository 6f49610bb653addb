"""Tests for configuration loading: YAML, legacy variables, prefixed overrides."""

from __future__ import annotations

import pytest

from attestgate.config import REWARD_REQUIRED, AttestGateConfig, load_config
from attestgate.errors import ConfigurationError
from attestgate.primitives.common import Mode
from tests.fakes import HUB, SIGNER_KEY


def test_defaults_without_sources():
    config = load_config()
    assert config.mode is Mode.REAL
    assert config.attestation.required_confirmations == 12
    assert config.attestation.strict_integrity_check is False
    assert config.attestation.proof_call_order == ["verifyJsonApi", "verifyWeb2Json"]
    assert config.reward.signer_mode == "private_key"


def test_legacy_variables(env):
    config = load_config()
    assert config.ledger.rpc_url == "http://127.0.0.1:8545"
    assert config.ledger.chain_id == 114
    assert config.attestation.attestation_contract_address == HUB
    assert config.reward.signer_key == SIGNER_KEY
    assert config.reward.reward_confirmations == 12
    config.require(*REWARD_REQUIRED)


def test_precedence_yaml_then_legacy_then_prefixed(tmp_path, monkeypatch):
    path = tmp_path / "attestgate.yaml"
    path.write_text(
        "ledger:\n"
        "  rpc_url: http://yaml.invalid\n"
        "  chain_id: 1\n"
        "attestation:\n"
        "  required_confirmations: 3\n"
        "logging:\n"
        "  format: json\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("FLARE_RPC_URL", "http://legacy.invalid")
    monkeypatch.setenv("FLARE_CHAIN_ID", "16")
    monkeypatch.setenv("ATTESTGATE_LEDGER__CHAIN_ID", "114")

    config = load_config(path)

    assert config.ledger.rpc_url == "http://legacy.invalid"
    assert config.ledger.chain_id == 114
    assert config.attestation.required_confirmations == 3
    assert config.logging.format == "json"


class TestPrefixedVariables:
    def test_nested_values_typed_by_the_model(self, monkeypatch):
        monkeypatch.setenv("ATTESTGATE_ATTESTATION__REQUIRED_CONFIRMATIONS", "20")
        monkeypatch.setenv("ATTESTGATE_ATTESTATION__STRICT_INTEGRITY_CHECK", "true")
        monkeypatch.setenv("ATTESTGATE_LEDGER__RETRY__MAX_ATTEMPTS", "7")

        config = load_config()

        assert config.attestation.required_confirmations == 20
        assert config.attestation.strict_integrity_check is True
        assert config.ledger.retry.max_attempts == 7
        assert config.ledger.retry.interval_s == 1.0

    def test_list_override(self, monkeypatch):
        monkeypatch.setenv("ATTESTGATE_ATTESTATION__PROOF_CALL_ORDER", '["verifyWeb2Json"]')
        assert load_config().attestation.proof_call_order == ["verifyWeb2Json"]

    def test_prefixed_variable_outranks_yaml(self, tmp_path, monkeypatch):
        path = tmp_path / "attestgate.yaml"
        path.write_text("reward:\n  contract_address: '0xyaml'\n  from_block: 5\n", encoding="utf-8")
        monkeypatch.setenv("ATTESTGATE_REWARD__CONTRACT_ADDRESS", HUB)

        config = load_config(path)

        assert config.reward.contract_address == HUB
        assert config.reward.from_block == 5

    def test_empty_value_ignored(self, monkeypatch):
        monkeypatch.setenv("FLARE_CHAIN_ID", "114")
        monkeypatch.setenv("ATTESTGATE_LEDGER__CHAIN_ID", "")
        assert load_config().ledger.chain_id == 114

    def test_malformed_list_wrapped(self, monkeypatch):
        monkeypatch.setenv("ATTESTGATE_ATTESTATION__PROOF_CALL_ORDER", "[verifyWeb2Json")
        with pytest.raises(ConfigurationError, match="Invalid configuration"):
            load_config()

    def test_invalid_value_wrapped(self, monkeypatch):
        monkeypatch.setenv("ATTESTGATE_ATTESTATION__REQUIRED_CONFIRMATIONS", "many")
        with pytest.raises(ConfigurationError, match="Invalid configuration"):
            load_config()


@pytest.mark.parametrize(
    ("environ", "expected"),
    [
        ({"ATTESTATION_MODE": "simulation"}, Mode.SIMULATION),
        ({"ATTESTATION_MODE": "simulation", "USE_SIMULATION": "false"}, Mode.REAL),
        ({"USE_SIMULATION": "1"}, Mode.SIMULATION),
        ({"ATTESTGATE_MODE": "real", "USE_SIMULATION": "1"}, Mode.REAL),
    ],
)
def test_mode_sources(environ, expected, monkeypatch):
    for name, value in environ.items():
        monkeypatch.setenv(name, value)
    assert load_config().mode is expected


def test_signer_key_whitespace_stripped(monkeypatch):
    monkeypatch.setenv("FLARE_SIGNER_KEY", f"{SIGNER_KEY}\r\n")
    assert load_config().reward.signer_key == SIGNER_KEY


def test_invalid_legacy_integer(monkeypatch):
    monkeypatch.setenv("FLARE_CHAIN_ID", "coston2")
    with pytest.raises(ConfigurationError, match="FLARE_CHAIN_ID"):
        load_config()


def test_missing_file():
    with pytest.raises(ConfigurationError, match="not found"):
        load_config("/nonexistent/attestgate.yaml")


def test_require_names_every_missing_field():
    config = AttestGateConfig.model_validate({"ledger": {"rpc_url": "http://x"}})
    with pytest.raises(ConfigurationError) as exc_info:
        config.require(*REWARD_REQUIRED)
    message = str(exc_info.value)
    assert "ledger.chain_id" in message
    assert "attestation.attestation_contract_address" in message
    assert "reward.contract_address" in message
    assert "ledger.rpc_url" not in message
