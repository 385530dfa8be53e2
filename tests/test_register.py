"""Tests for validator registration."""

from __future__ import annotations

import json

import pytest

from kii_validator.errors import (
    AccountNotFoundError,
    ConfigurationError,
    InsufficientFundsError,
    NodeUnreachableError,
    PubKeyUnavailableError,
    RegistrationFailedError,
)
from kii_validator.register import ValidatorRegistrar, staking_balance

PUBKEY = '{"@type":"/cosmos.crypto.ed25519.PubKey","key":"oWg2ISpLF405Jcm2vXV+2v4fnjodh6aafuIdeoW+rUw="}'


@pytest.fixture
def funded(runner):
    runner.on("keys", "show", stdout="kii1operator\n")
    runner.on("query", "bank", "balances", stdout='{"balances":[{"denom":"ukii","amount":"5"}]}')
    runner.on("tendermint", "show-validator", stdout=PUBKEY + "\n")
    return runner


@pytest.fixture
def registered_config(make_config):
    config = make_config()
    config.home_dir.mkdir(parents=True)
    return config


class TestDescriptor:
    def test_writes_validator_json(self, registered_config, daemon, funded):
        descriptor = ValidatorRegistrar(daemon).build_registration_descriptor(registered_config)

        on_disk = json.loads(registered_config.descriptor_path.read_text())
        assert on_disk == descriptor
        assert on_disk == {
            "pubkey": {
                "@type": "/cosmos.crypto.ed25519.PubKey",
                "key": "oWg2ISpLF405Jcm2vXV+2v4fnjodh6aafuIdeoW+rUw=",
            },
            "amount": "10000000000ukii",
            "moniker": "TestValidator",
            "identity": "1234567890",
            "website": "https://testvalidator.com",
            "security": "security@testvalidator.com",
            "details": "A test validator",
            "commission-rate": "0.10",
            "commission-max-rate": "0.20",
            "commission-max-change-rate": "0.01",
            "min-self-delegation": "1",
        }

    def test_pubkey_unavailable(self, registered_config, daemon, runner):
        runner.on("tendermint", "show-validator", stderr="Error: open priv_validator_key.json", returncode=1)

        with pytest.raises(PubKeyUnavailableError):
            ValidatorRegistrar(daemon).build_registration_descriptor(registered_config)
        assert not registered_config.descriptor_path.exists()

    def test_pubkey_without_key_field(self, registered_config, daemon, runner):
        runner.on("tendermint", "show-validator", stdout='{"@type":"/cosmos.crypto.ed25519.PubKey"}')

        with pytest.raises(PubKeyUnavailableError):
            ValidatorRegistrar(daemon).consensus_pubkey(registered_config)


class TestRegister:
    def _prepare(self, config, daemon):
        registrar = ValidatorRegistrar(daemon)
        registrar.build_registration_descriptor(config)
        return registrar

    def test_submits_create_validator(self, registered_config, daemon, funded):
        funded.on("tx", "staking", stdout='{"height":"0","txhash":"0A1B2C","code":0,"raw_log":""}')
        registrar = self._prepare(registered_config, daemon)

        assert registrar.register(registered_config) == "0A1B2C"

        (call,) = funded.matching("tx", "staking", "create-validator")
        assert call.args == [
            "tx",
            "staking",
            "create-validator",
            str(registered_config.descriptor_path),
            "--from",
            "validator",
            "--chain-id",
            "kiichain-test",
            "--keyring-backend",
            "test",
            "--home",
            str(registered_config.home_dir),
            "--node",
            "http://localhost:26657",
            "--gas",
            "auto",
            "--gas-adjustment",
            "1.5",
            "--gas-prices",
            "0.025ukii",
            "--output",
            "json",
            "--yes",
        ]

    def test_zero_balance_never_submits(self, registered_config, daemon, funded):
        funded.on("query", "bank", "balances", stdout='{"balances":[{"denom":"ukii","amount":"0"}]}')
        registrar = self._prepare(registered_config, daemon)

        with pytest.raises(InsufficientFundsError):
            registrar.register(registered_config)
        assert funded.matching("tx") == []

    def test_other_denom_only_is_unfunded(self, registered_config, daemon, funded):
        funded.on("query", "bank", "balances", stdout='{"balances":[{"denom":"uatom","amount":"900"}]}')
        registrar = self._prepare(registered_config, daemon)

        with pytest.raises(InsufficientFundsError):
            registrar.register(registered_config)
        assert funded.matching("tx") == []

    def test_missing_account(self, registered_config, daemon, funded):
        funded.on("keys", "show", returncode=1)
        registrar = self._prepare(registered_config, daemon)

        with pytest.raises(AccountNotFoundError):
            registrar.register(registered_config)
        assert funded.matching("query") == []
        assert funded.matching("tx") == []

    def test_balance_query_failure(self, registered_config, daemon, funded):
        funded.on("query", "bank", "balances", stderr="connection refused", returncode=1)
        registrar = self._prepare(registered_config, daemon)

        with pytest.raises(NodeUnreachableError):
            registrar.register(registered_config)

    def test_missing_descriptor(self, registered_config, daemon, funded):
        with pytest.raises(RegistrationFailedError, match="validator.json"):
            ValidatorRegistrar(daemon).register(registered_config)
        assert funded.matching("tx") == []

    def test_rejected_transaction_is_not_retried(self, registered_config, daemon, funded):
        funded.on("tx", "staking", stdout='{"code":5,"raw_log":"insufficient funds","txhash":"FF"}')
        registrar = self._prepare(registered_config, daemon)

        with pytest.raises(RegistrationFailedError, match="code 5"):
            registrar.register(registered_config)
        assert len(funded.matching("tx")) == 1

    def test_daemon_error(self, registered_config, daemon, funded):
        funded.on("tx", "staking", stderr="Error: validator already exist", returncode=1)
        registrar = self._prepare(registered_config, daemon)

        with pytest.raises(RegistrationFailedError, match="already exist"):
            registrar.register(registered_config)
        assert len(funded.matching("tx")) == 1

    def test_invalid_commission_checked_first(self, make_config, daemon, funded):
        config = make_config(commission_rate="0.5", commission_max_rate="0.2")

        with pytest.raises(ConfigurationError):
            ValidatorRegistrar(daemon).register(config)
        assert funded.calls == []


@pytest.mark.parametrize(
    "balances, expected",
    [
        ({"balances": []}, 0),
        ({"balances": [{"denom": "ukii", "amount": "12"}, {"denom": "ukii", "amount": "3"}]}, 15),
        ([{"denom": "ukii", "amount": "7"}], 7),
        ({"balances": [{"denom": "ukii", "amount": "garbage"}]}, 0),
        ({}, 0),
    ],
)
def test_staking_balance(balances, expected):
    assert staking_balance(balances, "ukii") == expected
