"""Configuration helpers for validator deployment."""

from __future__ import annotations

import argparse
import os
from collections.abc import Mapping
from decimal import Decimal, InvalidOperation
from enum import Enum
from pathlib import Path
from types import MappingProxyType

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import ConfigurationError

LOCAL_CHAIN_ID = "kiichain-local"
LOCAL_RPC_URL = "http://localhost:26657"


class Environment(str, Enum):
    """Networks a validator can be deployed to."""

    LOCAL = "local"
    TESTNET = "testnet"
    MAINNET = "mainnet"

    @property
    def is_shared(self) -> bool:
        return self is not Environment.LOCAL

    @classmethod
    def parse(cls, value: str | None) -> Environment:
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            raise ConfigurationError(
                f"Invalid environment {value!r}. Please specify local, testnet, or mainnet."
            ) from None


def load_env_file(env_file: Path | None = None) -> None:
    """Load environment variables from .env file if it exists."""
    env_file = env_file or Path(".env")
    if env_file.exists():
        with env_file.open() as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith("#") and "=" in line:
                    key, value = line.split("=", 1)
                    key = key.strip()
                    # Remove quotes if present
                    value = value.strip().strip('"').strip("'")
                    # Only set if not already in environment
                    if key not in os.environ:
                        os.environ[key] = value


def split_list(value: str | None) -> tuple[str, ...]:
    """Split a comma separated environment value, dropping blanks."""
    if not value:
        return ()
    return tuple(item.strip() for item in value.split(",") if item.strip())


class NetworkParameters(BaseModel):
    """Static parameters of one network."""

    model_config = ConfigDict(frozen=True)

    environment: Environment
    chain_id: str = ""
    rpc_url: str = ""
    genesis_url: str | None = None
    seeds: tuple[str, ...] = ()
    persistent_peers: tuple[str, ...] = ()
    rpc_endpoints: tuple[str, ...] = Field(
        default=(),
        description="Candidate RPC endpoints used for state sync checkpoint discovery, in priority order",
    )
    block_explorer: str | None = None


class DaemonSettings(BaseModel):
    """Typed settings for driving the node daemon."""

    model_config = ConfigDict(frozen=True)

    binary: str = "kiichaind"
    denom: str = "ukii"
    keyring_backend: str = "test"
    gas_price: str = "0.025ukii"
    gas_adjustment: str = "1.5"
    self_delegation: str = Field(
        default="10000000000ukii",
        description="Amount self-delegated by the create-validator transaction",
    )
    local_funding_amount: str = Field(
        default="100000000000",
        description="Balance injected into the local genesis for the operator account",
    )
    # Supervision
    readiness_marker: str = "executed block"
    startup_timeout: float = Field(
        default=300.0,
        description="Seconds to wait for the readiness marker (default: 300 = 5 minutes)",
    )
    ready_check_interval: float = 1.0
    output_buffer_size: int = 1024 * 1024
    stop_grace_period: float = 10.0
    # State sync
    checkpoint_attempts: int = 3
    checkpoint_retry_delay: float = 2.0
    http_timeout: float = Field(
        default=15.0,
        description="HTTP timeout for genesis and checkpoint requests in seconds (default: 15.0)",
    )
    pruning_keep_recent: str = "100"
    pruning_interval: str = "10"
    # Deployment
    settle_delay: float = Field(
        default=5.0,
        description="Seconds to wait after the liveness check before submitting registration",
    )


DEFAULT_DAEMON_SETTINGS = DaemonSettings()


class ValidatorConfig(BaseModel):
    """Immutable configuration of a single validator deployment."""

    model_config = ConfigDict(frozen=True)

    moniker: str = Field(min_length=1)
    key_name: str = Field(default="validator", min_length=1)
    identity: str = ""
    website: str = ""
    security_contact: str = ""
    details: str = ""
    commission_rate: str
    commission_max_rate: str
    commission_max_change_rate: str
    min_self_delegation: str
    environment: Environment
    chain_id: str = Field(min_length=1)
    rpc_url: str = Field(min_length=1)
    home_dir: Path
    mnemonic: str | None = None
    network: NetworkParameters
    daemon: DaemonSettings = DEFAULT_DAEMON_SETTINGS

    @property
    def config_dir(self) -> Path:
        return self.home_dir / "config"

    @property
    def genesis_path(self) -> Path:
        return self.config_dir / "genesis.json"

    @property
    def config_toml_path(self) -> Path:
        return self.config_dir / "config.toml"

    @property
    def app_toml_path(self) -> Path:
        return self.config_dir / "app.toml"

    @property
    def priv_validator_key_path(self) -> Path:
        return self.config_dir / "priv_validator_key.json"

    @property
    def descriptor_path(self) -> Path:
        return self.home_dir / "validator.json"

    def home_args(self) -> list[str]:
        return ["--home", str(self.home_dir)]

    def keyring_args(self) -> list[str]:
        return ["--keyring-backend", self.daemon.keyring_backend, "--home", str(self.home_dir)]

    def validate_commission(self) -> None:
        """Check ``0 <= rate <= max_rate <= 1`` and ``0 <= max_change_rate <= max_rate``."""
        rate = _decimal("commission_rate", self.commission_rate)
        max_rate = _decimal("commission_max_rate", self.commission_max_rate)
        max_change = _decimal("commission_max_change_rate", self.commission_max_change_rate)
        _decimal("min_self_delegation", self.min_self_delegation)

        if not Decimal(0) <= rate <= max_rate <= Decimal(1):
            raise ConfigurationError(
                f"Commission rate {rate} must satisfy 0 <= rate <= max rate ({max_rate}) <= 1"
            )
        if not Decimal(0) <= max_change <= max_rate:
            raise ConfigurationError(
                f"Commission max change rate {max_change} must be between 0 and max rate ({max_rate})"
            )


def _decimal(name: str, value: str) -> Decimal:
    try:
        result = Decimal(value)
    except InvalidOperation:
        raise ConfigurationError(f"{name} must be a decimal string, got {value!r}") from None
    if not result.is_finite():
        raise ConfigurationError(f"{name} must be finite, got {value!r}")
    return result


def load_networks(environ: Mapping[str, str] | None = None) -> Mapping[Environment, NetworkParameters]:
    """Build the immutable network table from environment variables.

    A local network without its own ``LOCAL_SEEDS``/``LOCAL_PERSISTENT_PEERS``
    inherits the testnet peer lists so basic peer discovery stays configured.
    """
    env = os.environ if environ is None else environ

    def shared(prefix: str, environment: Environment) -> NetworkParameters:
        return NetworkParameters(
            environment=environment,
            chain_id=env.get(f"{prefix}_CHAIN_ID", ""),
            rpc_url=env.get(f"{prefix}_RPC_URL", ""),
            genesis_url=env.get(f"{prefix}_GENESIS_URL") or None,
            seeds=split_list(env.get(f"{prefix}_SEEDS")),
            persistent_peers=split_list(env.get(f"{prefix}_PERSISTENT_PEERS")),
            rpc_endpoints=split_list(env.get(f"{prefix}_RPC_ENDPOINTS")),
            block_explorer=env.get(f"{prefix}_BLOCK_EXPLORER") or None,
        )

    testnet = shared("TESTNET", Environment.TESTNET)
    mainnet = shared("MAINNET", Environment.MAINNET)
    local = NetworkParameters(
        environment=Environment.LOCAL,
        chain_id=env.get("LOCAL_CHAIN_ID") or LOCAL_CHAIN_ID,
        rpc_url=env.get("LOCAL_RPC_URL") or LOCAL_RPC_URL,
        seeds=split_list(env.get("LOCAL_SEEDS")) or testnet.seeds,
        persistent_peers=split_list(env.get("LOCAL_PERSISTENT_PEERS")) or testnet.persistent_peers,
    )
    return MappingProxyType(
        {
            Environment.LOCAL: local,
            Environment.TESTNET: testnet,
            Environment.MAINNET: mainnet,
        }
    )


# Operator input keys -> environment variables
OPERATOR_ENV_VARS: Mapping[str, str] = MappingProxyType(
    {
        "moniker": "VALIDATOR_MONIKER",
        "key_name": "VALIDATOR_KEY_NAME",
        "identity": "VALIDATOR_IDENTITY",
        "website": "VALIDATOR_WEBSITE",
        "security_contact": "VALIDATOR_SECURITY_CONTACT",
        "details": "VALIDATOR_DETAILS",
        "commission_rate": "VALIDATOR_COMMISSION_RATE",
        "commission_max_rate": "VALIDATOR_COMMISSION_MAX_RATE",
        "commission_max_change_rate": "VALIDATOR_COMMISSION_MAX_CHANGE_RATE",
        "min_self_delegation": "VALIDATOR_MIN_SELF_DELEGATION",
        "home_dir": "VALIDATOR_HOME_DIR",
        "mnemonic": "VALIDATOR_MNEMONIC",
    }
)

REQUIRED_OPERATOR_FIELDS = (
    "moniker",
    "home_dir",
    "commission_rate",
    "commission_max_rate",
    "commission_max_change_rate",
    "min_self_delegation",
)


def operator_inputs_from_env(environ: Mapping[str, str] | None = None) -> dict[str, str]:
    """Collect operator supplied validator fields from the environment."""
    env = os.environ if environ is None else environ
    return {field: env[var] for field, var in OPERATOR_ENV_VARS.items() if env.get(var)}


def resolve(
    environment: Environment | str,
    operator_inputs: Mapping[str, str | None],
    networks: Mapping[Environment, NetworkParameters],
    daemon: DaemonSettings = DEFAULT_DAEMON_SETTINGS,
) -> ValidatorConfig:
    """Merge network parameters with operator inputs into a ``ValidatorConfig``.

    Keys outside ``OPERATOR_ENV_VARS`` are ignored.

    Raises:
        ConfigurationError: if the environment is unknown or any required
            field is missing or empty. All missing fields are reported at once.
    """
    if not isinstance(environment, Environment):
        environment = Environment.parse(environment)
    network = networks.get(environment)
    if network is None:
        raise ConfigurationError(f"No network parameters configured for {environment.value}")

    inputs = {
        key: value.strip()
        for key, value in operator_inputs.items()
        if key in OPERATOR_ENV_VARS and value and value.strip()
    }
    missing = [OPERATOR_ENV_VARS.get(f, f) for f in REQUIRED_OPERATOR_FIELDS if f not in inputs]
    if environment.is_shared:
        prefix = environment.value.upper()
        if not network.chain_id:
            missing.append(f"{prefix}_CHAIN_ID")
        if not network.rpc_url:
            missing.append(f"{prefix}_RPC_URL")
    if missing:
        raise ConfigurationError(
            f"Missing required configuration for {environment.value}: {', '.join(missing)}"
        )

    try:
        return ValidatorConfig(
            **inputs,
            environment=environment,
            chain_id=network.chain_id,
            rpc_url=network.rpc_url,
            network=network,
            daemon=daemon,
        )
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid validator configuration: {exc}") from exc


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments for the deployer.

    Returns:
        Parsed arguments namespace
    """
    # Load .env file if it exists
    load_env_file()

    default_environment = os.environ.get("NODE_ENVIRONMENT", Environment.LOCAL.value)

    parser = argparse.ArgumentParser(description="KiiChain validator deployer")
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging (includes node output).",
    )
    parser.add_argument(
        "--trace",
        action="store_true",
        help="Enable trace logging.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    deploy = subparsers.add_parser("deploy", help="Initialize, configure and register a validator.")
    deploy.add_argument(
        "environment",
        choices=[e.value for e in Environment],
        help="Target network.",
    )
    deploy.add_argument(
        "--yes",
        action="store_true",
        help="Confirm mainnet deployment without prompting.",
    )

    for name, help_text in (
        ("run", "Initialize the node, configure state sync and run it until interrupted."),
        ("start", "Like run, but creates keys first when the node has none."),
        ("sync-status", "Report whether the node has caught up with the network."),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument(
            "--environment",
            choices=[e.value for e in Environment],
            default=default_environment,
            help=f"Target network (default: NODE_ENVIRONMENT or local, currently {default_environment}).",
        )

    return parser.parse_args(argv)
