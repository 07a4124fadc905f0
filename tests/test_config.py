"""Tests for environment configuration."""

import pytest

from purser.config import load_client_settings, load_facilitator_settings, network_caip2
from purser.constants import SOLANA_CAIP2
from purser.errors import ConfigError
from purser.keystore import KDF_PARAMS_FAST

BASE_ENV = {
    "SOLANA_RPC_URL": "https://api.devnet.solana.com",
    "FACILITATOR_KEYPAIR_PATH": "/tmp/facilitator.json",
    "FACILITATOR_PASSPHRASE": "a long enough passphrase",
}


class TestFacilitatorSettings:
    def test_defaults(self):
        settings = load_facilitator_settings(BASE_ENV)
        assert settings.network == "devnet"
        assert settings.port == 4020
        assert settings.caip2 == SOLANA_CAIP2["devnet"]
        gov = settings.governance
        assert gov.max_settlement_amount is None
        assert gov.allowed_tokens == []
        assert gov.rate_limit_per_minute == 60
        assert gov.simulate_before_submit is True
        assert gov.delegation_check_enabled is False

    def test_governance_from_env(self):
        env = {
            **BASE_ENV,
            "MAX_SETTLEMENT_AMOUNT": "5000000",
            "ALLOWED_TOKENS": "mintA, mintB",
            "ALLOWED_RECIPIENTS": "payee",
            "RATE_LIMIT_PER_MINUTE": "5",
            "DELEGATION_CHECK_ENABLED": "true",
            "SIMULATE_BEFORE_SUBMIT": "false",
            "PURSER_KDF_MODE": "fast",
        }
        settings = load_facilitator_settings(env)
        gov = settings.governance
        assert gov.max_settlement_amount == 5_000_000
        assert gov.allowed_tokens == ["mintA", "mintB"]
        assert gov.allowed_recipients == ["payee"]
        assert gov.rate_limit_per_minute == 5
        assert gov.delegation_check_enabled is True
        assert gov.simulate_before_submit is False
        assert settings.kdf_params == KDF_PARAMS_FAST

    def test_screening_and_circuit_breaker_flags(self):
        gov = load_facilitator_settings(BASE_ENV).governance
        assert gov.sanctions_screening_enabled is False
        assert gov.sanctions_fail_closed is True
        assert gov.circuit_breaker_enabled is False
        assert gov.circuit_breaker.max_same_recipient_per_minute == 5

        env = {
            **BASE_ENV,
            "OFAC_ENABLED": "true",
            "OFAC_FAIL_CLOSED": "false",
            "OFAC_BLOCKLIST_PATH": "/etc/purser/sdn.json",
            "CIRCUIT_BREAKER_ENABLED": "1",
        }
        gov = load_facilitator_settings(env).governance
        assert gov.sanctions_screening_enabled is True
        assert gov.sanctions_fail_closed is False
        assert gov.sanctions_blocklist_path == "/etc/purser/sdn.json"
        assert gov.circuit_breaker_enabled is True

    def test_all_problems_reported_together(self):
        env = {
            "SOLANA_RPC_URL": "ftp://nope",
            "FACILITATOR_PASSPHRASE": "short",
            "SOLANA_NETWORK": "moonnet",
            "PORT": "abc",
        }
        with pytest.raises(ConfigError) as exc:
            load_facilitator_settings(env)
        problems = " | ".join(exc.value.problems)
        assert "SOLANA_RPC_URL must be a valid http(s) URL" in problems
        assert "FACILITATOR_KEYPAIR_PATH is required" in problems
        assert "FACILITATOR_PASSPHRASE must be at least 12 characters" in problems
        assert "SOLANA_NETWORK must be one of" in problems
        assert "PORT must be an integer" in problems

    def test_repr_hides_passphrase(self):
        settings = load_facilitator_settings(BASE_ENV)
        assert BASE_ENV["FACILITATOR_PASSPHRASE"] not in repr(settings)


class TestClientSettings:
    def test_load(self):
        settings = load_client_settings({
            "SOLANA_RPC_URL": "https://api.mainnet-beta.solana.com",
            "AGENT_KEYPAIR_PATH": "~/.purser/agent.json",
            "SOLANA_NETWORK": "mainnet-beta",
            "X402_FACILITATOR_URL": "https://facilitator.example",
        })
        assert settings.caip2 == SOLANA_CAIP2["mainnet-beta"]
        assert settings.facilitator_url == "https://facilitator.example"
        assert settings.facilitator_fallback_url is None

    def test_missing_required(self):
        with pytest.raises(ConfigError, match="AGENT_KEYPAIR_PATH is required"):
            load_client_settings({"SOLANA_RPC_URL": "https://rpc.example"})


def test_network_caip2_unknown():
    with pytest.raises(ConfigError):
        network_caip2("localnet")
