"""Shared pytest fixtures and configuration."""

from __future__ import annotations

import os
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from unittest.mock import MagicMock

import pytest

# Mock bittensor before any imports that use it
# This keeps the test run independent of the chain SDK and its websocket stack
if "bittensor" not in sys.modules:
    mock_bt = MagicMock()
    mock_bt.logging = MagicMock()
    sys.modules["bittensor"] = mock_bt

from kii_validator.config import (  # noqa: E402
    DEFAULT_DAEMON_SETTINGS,
    Environment,
    NetworkParameters,
    ValidatorConfig,
)
from kii_validator.daemon import DaemonCLI  # noqa: E402

CONFIG_TOML = """\
# This is a TOML config file.
proxy_app = "tcp://127.0.0.1:26658"
moniker = "node"

[rpc]
laddr = "tcp://127.0.0.1:26657"

[p2p]
laddr = "tcp://0.0.0.0:26656"
# Comma separated list of seed nodes to connect to
seeds = ""
persistent_peers = ""

[statesync]
# State sync rapidly bootstraps a new node
enable = false
rpc_servers = ""
trust_height = 0
trust_hash = ""
trust_period = "168h0m0s"

[instrumentation]
prometheus = false
prometheus_listen_addr = ":26660"
"""

APP_TOML = """\
minimum-gas-prices = ""
pruning = "default"
pruning-keep-recent = "0"
pruning-interval = "0"

[api]
# Enable defines if the API server should be enabled.
enable = false
swagger = false

[grpc]
enable = true
"""

ENDPOINTS = ("http://rpc1:26657", "http://rpc2:26657", "http://rpc3:26657")
SEEDS = ("seed1@1.2.3.4:26656", "seed2@5.6.7.8:26656")
PEERS = ("peer1@9.9.9.9:26656",)


@dataclass
class _Response:
    prefix: tuple[str, ...]
    stdout: str
    stderr: str
    returncode: int


@dataclass
class Call:
    args: list[str]
    input: str | None


class FakeRunner:
    """Stands in for ``subprocess.run``; responses are matched by argument prefix."""

    def __init__(self) -> None:
        self.calls: list[Call] = []
        self._responses: list[_Response] = []

    def on(self, *prefix: str, stdout: str = "", stderr: str = "", returncode: int = 0) -> FakeRunner:
        self._responses.append(_Response(tuple(prefix), stdout, stderr, returncode))
        return self

    def __call__(self, command, *, input=None, capture_output=True, text=True, check=False):
        args = list(command[1:])
        self.calls.append(Call(args, input))
        response = _Response((), "", "", 0)
        # Later registrations override earlier ones
        for candidate in reversed(self._responses):
            if tuple(args[: len(candidate.prefix)]) == candidate.prefix:
                response = candidate
                break
        if check and response.returncode:
            raise subprocess.CalledProcessError(
                response.returncode, command, output=response.stdout, stderr=response.stderr
            )
        return subprocess.CompletedProcess(command, response.returncode, response.stdout, response.stderr)

    def matching(self, *prefix: str) -> list[Call]:
        return [c for c in self.calls if tuple(c.args[: len(prefix)]) == prefix]


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def daemon(runner: FakeRunner) -> DaemonCLI:
    return DaemonCLI("kiichaind", runner=runner)


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for key in list(os.environ):
        if key.startswith(("VALIDATOR_", "TESTNET_", "MAINNET_", "LOCAL_")) or key == "NODE_ENVIRONMENT":
            monkeypatch.delenv(key, raising=False)
    yield


@pytest.fixture
def make_config(tmp_path: Path):
    def _make(environment: Environment = Environment.TESTNET, **overrides) -> ValidatorConfig:
        network = overrides.pop(
            "network",
            NetworkParameters(
                environment=environment,
                chain_id="kiichain-test" if environment.is_shared else "kiichain-local",
                rpc_url="http://localhost:26657",
                genesis_url="https://example.com/genesis.json" if environment.is_shared else None,
                seeds=SEEDS,
                persistent_peers=PEERS,
                rpc_endpoints=ENDPOINTS if environment.is_shared else (),
                block_explorer="https://explorer.example.com",
            ),
        )
        daemon_settings = DEFAULT_DAEMON_SETTINGS.model_copy(update=overrides.pop("daemon", {}))
        values = {
            "moniker": "TestValidator",
            "key_name": "validator",
            "identity": "1234567890",
            "website": "https://testvalidator.com",
            "security_contact": "security@testvalidator.com",
            "details": "A test validator",
            "commission_rate": "0.10",
            "commission_max_rate": "0.20",
            "commission_max_change_rate": "0.01",
            "min_self_delegation": "1",
            "environment": environment,
            "chain_id": network.chain_id,
            "rpc_url": network.rpc_url,
            "home_dir": tmp_path / "home",
            "network": network,
            "daemon": daemon_settings,
        }
        values.update(overrides)
        return ValidatorConfig(**values)

    return _make


@pytest.fixture
def config_toml() -> str:
    return CONFIG_TOML


@pytest.fixture
def app_toml() -> str:
    return APP_TOML


@pytest.fixture
def node_home(make_config):
    """Testnet config whose home directory holds stock config.toml and app.toml files."""
    config = make_config(Environment.TESTNET)
    config.config_dir.mkdir(parents=True)
    config.config_toml_path.write_text(CONFIG_TOML)
    config.app_toml_path.write_text(APP_TOML)
    return config
