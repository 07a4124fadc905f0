"""
Environment-driven configuration for the facilitator service and the agent client.

Every problem found while loading is collected and raised together as one
``ConfigError`` so an operator can fix a deployment in a single pass.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional
from urllib.parse import urlparse

from .constants import SOLANA_CAIP2
from .governance import CircuitBreakerLimits
from .keystore import MIN_PASSPHRASE_LENGTH, KdfParams, kdf_params_for_mode
from .errors import ConfigError

NETWORKS = tuple(SOLANA_CAIP2)
KDF_MODES = ("fast", "production")
LOG_LEVELS = ("debug", "info", "warn", "warning", "error")
DEFAULT_PORT = 4020


def network_caip2(network: str) -> str:
    try:
        return SOLANA_CAIP2[network]
    except KeyError:
        raise ConfigError([f"Unknown Solana network: {network}"]) from None


@dataclass
class GovernanceSettings:
    max_settlement_amount: Optional[int] = None
    allowed_tokens: list[str] = field(default_factory=list)
    allowed_recipients: list[str] = field(default_factory=list)
    rate_limit_per_minute: int = 60
    delegation_check_enabled: bool = False
    blockhash_validation_enabled: bool = False
    blockhash_max_age_seconds: int = 60
    simulate_before_submit: bool = True
    gas_alert_threshold_sol: float = 0.1
    sanctions_screening_enabled: bool = False
    sanctions_fail_closed: bool = True
    sanctions_blocklist_path: Optional[str] = None
    circuit_breaker_enabled: bool = False
    circuit_breaker: CircuitBreakerLimits = field(default_factory=CircuitBreakerLimits)


@dataclass
class FacilitatorSettings:
    solana_rpc_url: str
    keypair_path: str
    passphrase: str = field(repr=False)
    network: str = "devnet"
    kdf_mode: str = "production"
    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    log_level: str = "info"
    governance: GovernanceSettings = field(default_factory=GovernanceSettings)

    @property
    def caip2(self) -> str:
        return network_caip2(self.network)

    @property
    def kdf_params(self) -> KdfParams:
        return kdf_params_for_mode(self.kdf_mode)


@dataclass
class ClientSettings:
    solana_rpc_url: str
    agent_keypair_path: str
    network: str = "devnet"
    facilitator_url: Optional[str] = None
    facilitator_fallback_url: Optional[str] = None
    kdf_mode: str = "production"
    log_level: str = "info"

    @property
    def caip2(self) -> str:
        return network_caip2(self.network)

    @property
    def kdf_params(self) -> KdfParams:
        return kdf_params_for_mode(self.kdf_mode)


class _EnvReader:
    """Reads typed values from an environment mapping, collecting problems."""

    def __init__(self, env: Mapping[str, str]):
        self.env = env
        self.problems: list[str] = []

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        value = self.env.get(name)
        if value is None or value.strip() == "":
            return default
        return value.strip()

    def required(self, name: str) -> str:
        value = self.get(name)
        if value is None:
            self.problems.append(f"{name} is required")
            return ""
        return value

    def url(self, name: str, required: bool = True) -> Optional[str]:
        value = self.required(name) if required else self.get(name)
        if value:
            parsed = urlparse(value)
            if parsed.scheme not in ("http", "https") or not parsed.netloc:
                self.problems.append(f"{name} must be a valid http(s) URL")
        return value

    def choice(self, name: str, choices: tuple[str, ...], default: str) -> str:
        value = self.get(name, default).lower()
        if value not in choices:
            self.problems.append(f"{name} must be one of {', '.join(choices)}, got {value!r}")
            return default
        return value

    def integer(self, name: str, default: Optional[int], minimum: int = 1) -> Optional[int]:
        raw = self.get(name)
        if raw is None:
            return default
        try:
            value = int(raw)
        except ValueError:
            self.problems.append(f"{name} must be an integer, got {raw!r}")
            return default
        if value < minimum:
            self.problems.append(f"{name} must be >= {minimum}, got {value}")
            return default
        return value

    def positive_float(self, name: str, default: float) -> float:
        raw = self.get(name)
        if raw is None:
            return default
        try:
            value = float(raw)
        except ValueError:
            self.problems.append(f"{name} must be a number, got {raw!r}")
            return default
        if value <= 0:
            self.problems.append(f"{name} must be positive, got {value}")
            return default
        return value

    def flag(self, name: str, default: bool) -> bool:
        raw = self.get(name)
        if raw is None:
            return default
        return raw.lower() in ("1", "true", "yes", "on")

    def csv(self, name: str) -> list[str]:
        raw = self.get(name)
        if raw is None:
            return []
        return [item.strip() for item in raw.split(",") if item.strip()]


def _load_governance(reader: _EnvReader) -> GovernanceSettings:
    return GovernanceSettings(
        max_settlement_amount=reader.integer("MAX_SETTLEMENT_AMOUNT", None),
        allowed_tokens=reader.csv("ALLOWED_TOKENS"),
        allowed_recipients=reader.csv("ALLOWED_RECIPIENTS"),
        rate_limit_per_minute=reader.integer("RATE_LIMIT_PER_MINUTE", 60),
        delegation_check_enabled=reader.flag("DELEGATION_CHECK_ENABLED", False),
        blockhash_validation_enabled=reader.flag("BLOCKHASH_VALIDATION_ENABLED", False),
        blockhash_max_age_seconds=reader.integer("BLOCKHASH_MAX_AGE_SECONDS", 60),
        simulate_before_submit=reader.flag("SIMULATE_BEFORE_SUBMIT", True),
        gas_alert_threshold_sol=reader.positive_float("GAS_ALERT_THRESHOLD_SOL", 0.1),
        sanctions_screening_enabled=reader.flag("OFAC_ENABLED", False),
        sanctions_fail_closed=reader.flag("OFAC_FAIL_CLOSED", True),
        sanctions_blocklist_path=reader.get("OFAC_BLOCKLIST_PATH"),
        circuit_breaker_enabled=reader.flag("CIRCUIT_BREAKER_ENABLED", False),
    )


def load_facilitator_settings(env: Optional[Mapping[str, str]] = None) -> FacilitatorSettings:
    reader = _EnvReader(os.environ if env is None else env)

    rpc_url = reader.url("SOLANA_RPC_URL")
    keypair_path = reader.required("FACILITATOR_KEYPAIR_PATH")
    passphrase = reader.env.get("FACILITATOR_PASSPHRASE") or ""
    if len(passphrase) < MIN_PASSPHRASE_LENGTH:
        reader.problems.append(
            f"FACILITATOR_PASSPHRASE must be at least {MIN_PASSPHRASE_LENGTH} characters"
        )

    settings = FacilitatorSettings(
        solana_rpc_url=rpc_url or "",
        keypair_path=keypair_path,
        passphrase=passphrase,
        network=reader.choice("SOLANA_NETWORK", NETWORKS, "devnet"),
        kdf_mode=reader.choice("PURSER_KDF_MODE", KDF_MODES, "production"),
        host=reader.get("HOST", "0.0.0.0"),
        port=reader.integer("PORT", DEFAULT_PORT),
        log_level=reader.choice("LOG_LEVEL", LOG_LEVELS, "info"),
        governance=_load_governance(reader),
    )
    if settings.port is not None and settings.port > 65535:
        reader.problems.append(f"PORT must be <= 65535, got {settings.port}")

    if reader.problems:
        raise ConfigError(reader.problems)
    return settings


def load_client_settings(env: Optional[Mapping[str, str]] = None) -> ClientSettings:
    reader = _EnvReader(os.environ if env is None else env)

    settings = ClientSettings(
        solana_rpc_url=reader.url("SOLANA_RPC_URL") or "",
        agent_keypair_path=reader.required("AGENT_KEYPAIR_PATH"),
        network=reader.choice("SOLANA_NETWORK", NETWORKS, "devnet"),
        facilitator_url=reader.url("X402_FACILITATOR_URL", required=False),
        facilitator_fallback_url=reader.url("X402_FACILITATOR_FALLBACK_URL", required=False),
        kdf_mode=reader.choice("PURSER_KDF_MODE", KDF_MODES, "production"),
        log_level=reader.choice("LOG_LEVEL", LOG_LEVELS, "info"),
    )

    if reader.problems:
        raise ConfigError(reader.problems)
    return settings
