from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from dotenv import load_dotenv

from .errors import ConfigurationError, InvalidEnvironment, InvalidOperator, MissingSetting
from .ids import EntityId, parse_entity_or_address
from .project_constants import (
    DEFAULT_ARTIFACTS_DIR,
    DEFAULT_STATE_FILE,
    LOCAL_NODE_ACCOUNT,
    LOCAL_NODE_ENDPOINT,
    MIRROR_URLS,
)

_ALIASES = {
    "TEST": "testnet",
    "TESTNET": "testnet",
    "MAIN": "mainnet",
    "MAINNET": "mainnet",
    "PREVIEW": "previewnet",
    "PREVIEWNET": "previewnet",
    "LOCAL": "local",
}

# Component name -> env var holding an existing id to reuse
REUSE_VARIABLES = {
    "lazyToken": "LAZY_TOKEN_ID",
    "lazySCT": "LAZY_SCT_CONTRACT_ID",
    "lazyGasStation": "LAZY_GAS_STATION_CONTRACT_ID",
    "lazyDelegateRegistry": "LAZY_DELEGATE_REGISTRY_CONTRACT_ID",
    "prng": "PRNG_CONTRACT_ID",
    "lazyLottoStorage": "LAZY_LOTTO_STORAGE",
    "lazyLotto": "LAZY_LOTTO_CONTRACT_ID",
    "poolManager": "LAZY_LOTTO_POOL_MANAGER_ID",
    "tradeLotto": "LAZY_TRADE_LOTTO_CONTRACT_ID",
}


@dataclass(frozen=True)
class EnvironmentProfile:
    name: str
    network_kind: str
    mirror_url: str
    node_endpoints: Tuple[Tuple[str, str], ...] = ()

    @property
    def is_mainnet(self) -> bool:
        return self.network_kind == "mainnet"


def resolve_environment(name: str, mirror_url_override: Optional[str] = None) -> EnvironmentProfile:
    key = (name or "").strip().upper()
    kind = _ALIASES.get(key)
    if kind is None:
        raise InvalidEnvironment(f"Unknown environment: {name!r}")

    nodes: Tuple[Tuple[str, str], ...] = ()
    if kind == "local":
        nodes = ((LOCAL_NODE_ENDPOINT, LOCAL_NODE_ACCOUNT),)

    canonical = {"testnet": "TEST", "mainnet": "MAIN", "previewnet": "PREVIEW", "local": "LOCAL"}[kind]
    return EnvironmentProfile(
        name=canonical,
        network_kind=kind,
        mirror_url=(mirror_url_override or MIRROR_URLS[kind]).rstrip("/"),
        node_endpoints=nodes,
    )


def parse_account_id(text: Optional[str]) -> EntityId:
    if not text:
        raise MissingSetting("ACCOUNT_ID is not set")
    try:
        return EntityId.parse(text)
    except ValueError as e:
        raise InvalidOperator(str(e))


def _entity_setting(name: str, value: str) -> str:
    try:
        parsed = parse_entity_or_address(value)
    except ValueError as e:
        raise ConfigurationError(f"{name}: {e}")
    if not isinstance(parsed, EntityId):
        raise ConfigurationError(
            f"{name}={value} is an alias address", hint="Use the shard.realm.num id, or the long-zero address."
        )
    return str(parsed)


def _flag(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "y", "on")


def _int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise MissingSetting(f"{name} must be an integer, got {raw!r}")


@dataclass(frozen=True)
class Settings:
    environment: EnvironmentProfile
    account_id: Optional[str]
    private_key: Optional[str] = field(default=None, repr=False)
    signing_key: Optional[str] = field(default=None, repr=False)
    contracts: Dict[str, str] = field(default_factory=dict)
    verify_only: bool = False
    lazy_decimals: int = 8
    lazy_max_supply: int = 1_000_000_000
    lazy_burn_percent: int = 0
    lazy_creation_fee_hbar: int = 20
    trade_lotto_burn_percent: int = 25
    initial_lotto_jackpot: int = 2_000
    lotto_loss_increment: int = 50
    lsh_tokens: Dict[str, str] = field(default_factory=dict)
    gas_station_funding_hbar: Optional[int] = None
    artifacts_dir: str = DEFAULT_ARTIFACTS_DIR
    state_file: str = DEFAULT_STATE_FILE

    @staticmethod
    def from_env(
        environment_override: Optional[str] = None,
        mirror_url_override: Optional[str] = None,
    ) -> "Settings":
        load_dotenv()

        env_name = environment_override or os.getenv("ENVIRONMENT", "").strip()
        if not env_name:
            raise MissingSetting("ENVIRONMENT is not set")
        profile = resolve_environment(
            env_name, mirror_url_override or os.getenv("MIRROR_URL", "").strip() or None
        )

        contracts = {}
        for component, var in REUSE_VARIABLES.items():
            value = os.getenv(var, "").strip()
            if value:
                contracts[component] = _entity_setting(var, value)

        lsh_tokens = {}
        for var in ("LSH_GEN1_TOKEN_ID", "LSH_GEN2_TOKEN_ID", "LSH_GEN1_MUTANT_TOKEN_ID"):
            value = os.getenv(var, "").strip()
            if value:
                lsh_tokens[var] = _entity_setting(var, value)

        return Settings(
            environment=profile,
            account_id=os.getenv("ACCOUNT_ID", "").strip() or None,
            private_key=os.getenv("PRIVATE_KEY", "").strip() or None,
            signing_key=os.getenv("SIGNING_KEY", "").strip() or None,
            contracts=contracts,
            verify_only=_flag(os.getenv("VERIFY_ONLY")),
            lazy_decimals=_int("LAZY_DECIMALS", 8),
            lazy_max_supply=_int("LAZY_MAX_SUPPLY", 1_000_000_000),
            lazy_burn_percent=_int("LAZY_BURN_PERCENT", 0),
            lazy_creation_fee_hbar=_int("LAZY_CREATION_FEE_HBAR", 20),
            trade_lotto_burn_percent=_int("LAZY_BURN_PERCENT", 25),
            initial_lotto_jackpot=_int("INITIAL_LOTTO_JACKPOT", 2_000),
            lotto_loss_increment=_int("LOTTO_LOSS_INCREMENT", 50),
            lsh_tokens=lsh_tokens,
            gas_station_funding_hbar=_int("GAS_STATION_FUNDING_HBAR", 0) or None,
            artifacts_dir=os.getenv("ARTIFACTS_DIR", "").strip() or DEFAULT_ARTIFACTS_DIR,
            state_file=os.getenv("DEPLOYMENT_STATE_FILE", "").strip() or DEFAULT_STATE_FILE,
        )

    def operator_account(self) -> EntityId:
        return parse_account_id(self.account_id)

    def require_contract(self, component: str) -> str:
        value = self.contracts.get(component)
        if not value:
            raise MissingSetting(f"{REUSE_VARIABLES[component]} is not set")
        return value
