"""
AttestGate — Configuration System

All configuration is Pydantic-validated and loaded from:
1. A YAML file (defaults, optional)
2. The legacy script variables
3. ATTESTGATE_* environment variables, read by pydantic-settings

The legacy variable names of the original scripts (FLARE_RPC_URL,
FLARE_CHAIN_ID, FDC_ATTESTATION_CONTRACT, ...) are accepted as aliases so an
existing .env keeps working.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    SettingsError,
)

from attestgate.errors import ConfigurationError
from attestgate.primitives.common import Mode, resolve_mode

# Coston2 FdcVerification
DEFAULT_VERIFICATION_ADDRESS = "0x906507E0B64bcD494Db73bd0459d1C667e14B933"
DEFAULT_CONFIRMATIONS = 12

# ─── Sub-configs ──────────────────────────────────────────────────


class RetryConfig(BaseModel):
    max_attempts: int = 3
    interval_s: float = 1.0
    backoff: float = 2.0
    max_interval_s: float = 30.0


class LedgerConfig(BaseModel):
    rpc_url: str = ""
    chain_id: int | None = None
    request_timeout_s: float = 20.0
    retry: RetryConfig = Field(default_factory=RetryConfig)


class AttestationConfig(BaseModel):
    attestation_contract_address: str = ""
    verification_contract_address: str = DEFAULT_VERIFICATION_ADDRESS
    required_confirmations: int = DEFAULT_CONFIRMATIONS
    expected_payload_digest: str | None = None
    # When True, "nothing to compare the digest against" is indeterminate
    # instead of a vacuous pass.
    strict_integrity_check: bool = False
    proof_call_order: list[str] = Field(
        default_factory=lambda: ["verifyJsonApi", "verifyWeb2Json"],
    )

    @model_validator(mode="after")
    def _blank_digest_is_none(self) -> AttestationConfig:
        if self.expected_payload_digest is not None and not self.expected_payload_digest.strip():
            object.__setattr__(self, "expected_payload_digest", None)
        return self


class ProofStoreConfig(BaseModel):
    proof_path: str = "out/da_proof.json"
    submission_path: str = "out/request_submission.json"
    attested_data_path: str = "api_response.json"
    report_dir: str = "out/reports"


class DataAvailabilityConfig(BaseModel):
    base_url: str = "https://ctn2-data-availability.flare.network"
    endpoint_round: str = "/api/v1/fdc/proof-by-request-round"
    endpoint_latest: str = "/api/v0/fdc/get-proof-round-bytes"
    endpoint_latest_round: str = "/api/v0/fsp/latest-voting-round"
    request_timeout_s: float = 15.0
    retry: RetryConfig = Field(
        default_factory=lambda: RetryConfig(max_attempts=40, interval_s=15.0, backoff=1.0),
    )


class RewardConfig(BaseModel):
    contract_address: str = ""
    signer_mode: str = "private_key"   # "private_key" | "external"
    signer_key: str = ""
    signer_address: str | None = None
    reward_confirmations: int = DEFAULT_CONFIRMATIONS
    confirmation_timeout_s: float = 300.0
    poll_interval_s: float = 3.0
    from_block: int = 0

    @model_validator(mode="after")
    def _strip_signer_key(self) -> RewardConfig:
        # Secret managers can inject trailing \r\n into env vars
        if self.signer_key:
            object.__setattr__(self, "signer_key", self.signer_key.strip())
        return self


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = "console"  # "console" | "json"


# ─── Root Configuration ──────────────────────────────────────────


class AttestGateConfig(BaseSettings):
    """
    Root configuration. Loads from YAML, overridable by env vars.

    Keyword arguments carry the YAML file and the legacy variables;
    ATTESTGATE_* variables outrank both.
    """

    model_config = SettingsConfigDict(
        env_prefix="ATTESTGATE_",
        env_nested_delimiter="__",
        env_ignore_empty=True,
        extra="ignore",
    )

    mode: Mode = Mode.REAL

    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    attestation: AttestationConfig = Field(default_factory=AttestationConfig)
    proof_store: ProofStoreConfig = Field(default_factory=ProofStoreConfig)
    data_availability: DataAvailabilityConfig = Field(default_factory=DataAvailabilityConfig)
    reward: RewardConfig = Field(default_factory=RewardConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return env_settings, init_settings, dotenv_settings, file_secret_settings

    def require(self, *fields: str) -> None:
        """
        Raise ConfigurationError naming every missing dotted field.

        Example: config.require("ledger.rpc_url", "ledger.chain_id")
        """
        missing: list[str] = []
        for dotted in fields:
            node: Any = self
            for part in dotted.split("."):
                node = getattr(node, part, None)
            if node is None or (isinstance(node, str) and not node.strip()):
                missing.append(dotted)
        if missing:
            raise ConfigurationError(f"Missing required configuration: {', '.join(missing)}")


VERIFY_REQUIRED = (
    "ledger.rpc_url",
    "ledger.chain_id",
    "attestation.attestation_contract_address",
    "attestation.verification_contract_address",
)

REWARD_REQUIRED = (*VERIFY_REQUIRED, "reward.contract_address")


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge override into base."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


# (env var, section, key, converter)
LEGACY_ENV: tuple[tuple[str, str, str, Any], ...] = (
    ("FLARE_RPC_URL", "ledger", "rpc_url", str),
    ("FLARE_CHAIN_ID", "ledger", "chain_id", int),
    ("FDC_ATTESTATION_CONTRACT", "attestation", "attestation_contract_address", str),
    ("FDC_VERIFICATION_CONTRACT", "attestation", "verification_contract_address", str),
    ("CONFIRMATIONS", "attestation", "required_confirmations", int),
    ("EXPECTED_MIC", "attestation", "expected_payload_digest", str),
    ("DA_PROOF_PATH", "proof_store", "proof_path", str),
    ("REQUEST_SUBMISSION_PATH", "proof_store", "submission_path", str),
    ("API_RESPONSE_PATH", "proof_store", "attested_data_path", str),
    ("DA_BASE", "data_availability", "base_url", str),
    ("REWARD_CONTRACT_ADDRESS", "reward", "contract_address", str),
    ("SIGNER_MODE", "reward", "signer_mode", str),
    ("FLARE_SIGNER_KEY", "reward", "signer_key", str),
    ("SIGNER_ADDRESS", "reward", "signer_address", str),
)


LEGACY_MODE_ENV = ("ATTESTATION_MODE", "USE_SIMULATION")


def _legacy_overrides() -> dict[str, Any]:
    raw: dict[str, Any] = {}
    for env_name, section, key, convert in LEGACY_ENV:
        value = os.environ.get(env_name)
        if not value:
            continue
        try:
            raw.setdefault(section, {})[key] = convert(value.strip())
        except ValueError as exc:
            raise ConfigurationError(f"{env_name} is not a valid {convert.__name__}: {value!r}") from exc
    if os.environ.get("CONFIRMATIONS"):
        raw.setdefault("reward", {})["reward_confirmations"] = raw["attestation"]["required_confirmations"]
    attestation_mode, use_simulation = (os.environ.get(name) for name in LEGACY_MODE_ENV)
    if attestation_mode or use_simulation:
        raw["mode"] = resolve_mode(attestation_mode, use_simulation)
    return raw


def load_config(config_path: str | Path | None = None) -> AttestGateConfig:
    """
    Load configuration from YAML file, then apply environment variable overrides.

    Precedence (lowest first): YAML file, legacy script variables,
    ATTESTGATE_* variables. The mode comes from ATTESTGATE_MODE, or failing
    that from the legacy ATTESTATION_MODE / USE_SIMULATION pair.
    """
    raw: dict[str, Any] = {}

    if config_path:
        path = Path(config_path)
        if not path.exists():
            raise ConfigurationError(f"Config file not found: {path}")
        with open(path) as f:
            raw = yaml.safe_load(f) or {}

    raw = _deep_merge(raw, _legacy_overrides())

    try:
        return AttestGateConfig(**raw)
    except (ValidationError, SettingsError) as exc:
        raise ConfigurationError(f"Invalid configuration: {exc}") from exc
