"""Tests for node initialization, genesis installation and local funding."""

from __future__ import annotations

import json
from decimal import Decimal

import httpx
import pytest

from kii_validator.config import Environment
from kii_validator.errors import (
    AccountNotFoundError,
    GenesisDownloadError,
    GenesisFetchError,
    GenesisFundingError,
    NodeInitError,
)
from kii_validator.genesis import BASE_ACCOUNT_TYPE, GenesisInitializer, stringify_numbers

ADDRESS = "kii1qqqsyqcyq5rqwzqfpg9scrgwpugpzysn7hzdtn"

REMOTE_GENESIS = (
    '{"chain_id": "kiichain-test", "initial_height": 1, '
    '"app_state": {"bank": {"supply": [{"denom": "ukii", "amount": 12345678901234567890}]}, '
    '"mint": {"inflation": 0.130000000000000000, "paused": false}}}'
)


def _unreachable(request):
    raise AssertionError(f"unexpected request to {request.url}")


def _local_genesis(**bank):
    return {
        "chain_id": "kiichain-local",
        "app_state": {
            "auth": {"accounts": []},
            "bank": {"balances": bank.get("balances", []), "supply": bank.get("supply", [])},
        },
    }


class TestStringifyNumbers:
    def test_nested_numbers_become_strings(self):
        assert stringify_numbers({"a": {"b": [1, 2, {"c": 3}]}}) == {"a": {"b": ["1", "2", {"c": "3"}]}}

    def test_booleans_and_null_untouched(self):
        assert stringify_numbers({"flag": True, "off": False, "none": None, "name": "x"}) == {
            "flag": True,
            "off": False,
            "none": None,
            "name": "x",
        }

    def test_decimal_keeps_its_digits(self):
        assert stringify_numbers([Decimal("0.130000000000000000"), 1.5]) == ["0.130000000000000000", "1.5"]


class TestInitialize:
    def test_local_runs_init_and_keeps_generated_genesis(self, make_config, daemon, runner):
        config = make_config(Environment.LOCAL, moniker="My Node; rm -rf /")
        initializer = GenesisInitializer(daemon, transport=httpx.MockTransport(_unreachable))

        initializer.initialize(config)

        assert config.home_dir.is_dir()
        assert [call.args for call in runner.calls] == [
            [
                "init",
                "My Node; rm -rf /",
                "--chain-id",
                "kiichain-local",
                "--home",
                str(config.home_dir),
                "-o",
            ]
        ]

    def test_rerun_over_existing_home(self, make_config, daemon, runner):
        config = make_config(Environment.LOCAL)
        config.config_dir.mkdir(parents=True)
        (config.config_dir / "genesis.json").write_text("{}")
        initializer = GenesisInitializer(daemon, transport=httpx.MockTransport(_unreachable))

        initializer.initialize(config)
        initializer.initialize(config)

        assert len(runner.matching("init")) == 2
        assert all(call.args[-1] == "-o" for call in runner.calls)

    def test_init_failure(self, make_config, daemon, runner):
        runner.on("init", stderr="Error: permission denied", returncode=1)
        initializer = GenesisInitializer(daemon)

        with pytest.raises(NodeInitError, match="permission denied"):
            initializer.initialize(make_config(Environment.LOCAL))

    def test_shared_installs_remote_genesis_with_string_numbers(self, make_config, daemon):
        config = make_config(Environment.TESTNET)
        requested = []

        def handler(request):
            requested.append(str(request.url))
            return httpx.Response(200, text=REMOTE_GENESIS)

        config.config_dir.mkdir(parents=True)
        GenesisInitializer(daemon, transport=httpx.MockTransport(handler)).initialize(config)

        assert requested == ["https://example.com/genesis.json"]
        genesis = json.loads(config.genesis_path.read_text())
        assert genesis["initial_height"] == "1"
        assert genesis["app_state"]["bank"]["supply"][0]["amount"] == "12345678901234567890"
        assert genesis["app_state"]["mint"]["inflation"] == "0.130000000000000000"
        assert genesis["app_state"]["mint"]["paused"] is False


class TestFetchGenesis:
    def test_missing_url(self, make_config, daemon):
        config = make_config(Environment.TESTNET)
        config = config.model_copy(update={"network": config.network.model_copy(update={"genesis_url": None})})

        with pytest.raises(GenesisFetchError):
            GenesisInitializer(daemon).fetch_genesis(config)

    def test_http_error_status(self, make_config, daemon):
        transport = httpx.MockTransport(lambda request: httpx.Response(404, text="not found"))

        with pytest.raises(GenesisDownloadError, match="404"):
            GenesisInitializer(daemon, transport=transport).fetch_genesis(make_config())

    def test_network_error(self, make_config, daemon):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(GenesisDownloadError):
            GenesisInitializer(daemon, transport=httpx.MockTransport(handler)).fetch_genesis(make_config())

    def test_invalid_json(self, make_config, daemon):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, text="<html></html>"))

        with pytest.raises(GenesisDownloadError):
            GenesisInitializer(daemon, transport=transport).fetch_genesis(make_config())

    def test_download_failure_leaves_existing_genesis(self, make_config, daemon):
        config = make_config(Environment.TESTNET)
        config.config_dir.mkdir(parents=True)
        config.genesis_path.write_text('{"previous": true}')
        transport = httpx.MockTransport(lambda request: httpx.Response(500))

        with pytest.raises(GenesisDownloadError):
            GenesisInitializer(daemon, transport=transport).initialize(config)

        assert config.genesis_path.read_text() == '{"previous": true}'


class TestFundLocalAccount:
    """The operator account gets a staking balance in the local genesis."""

    @pytest.fixture
    def local_config(self, make_config, runner):
        config = make_config(Environment.LOCAL)
        config.config_dir.mkdir(parents=True)
        runner.on("keys", "show", stdout=f"{ADDRESS}\n")
        return config

    def test_adds_account_balance_and_supply(self, local_config, daemon):
        local_config.genesis_path.write_text(
            json.dumps(_local_genesis(supply=[{"denom": "ukii", "amount": "1000"}]))
        )

        assert GenesisInitializer(daemon).fund_local_account(local_config) is True

        genesis = json.loads(local_config.genesis_path.read_text())
        app_state = genesis["app_state"]
        assert app_state["auth"]["accounts"] == [
            {
                "@type": BASE_ACCOUNT_TYPE,
                "address": ADDRESS,
                "pub_key": None,
                "account_number": "0",
                "sequence": "0",
            }
        ]
        assert app_state["bank"]["balances"] == [
            {"address": ADDRESS, "coins": [{"denom": "ukii", "amount": "100000000000"}]}
        ]
        assert app_state["bank"]["supply"] == [{"denom": "ukii", "amount": "100000001000"}]

    def test_second_run_is_a_no_op(self, local_config, daemon):
        local_config.genesis_path.write_text(json.dumps(_local_genesis()))
        initializer = GenesisInitializer(daemon)

        assert initializer.fund_local_account(local_config) is True
        funded = local_config.genesis_path.read_text()
        assert initializer.fund_local_account(local_config) is False
        assert local_config.genesis_path.read_text() == funded

        genesis = json.loads(funded)
        assert genesis["app_state"]["bank"]["supply"] == []
        assert len(genesis["app_state"]["auth"]["accounts"]) == 1

    def test_existing_balance_in_other_denom_gets_coin(self, local_config, daemon):
        local_config.genesis_path.write_text(
            json.dumps(
                _local_genesis(balances=[{"address": ADDRESS, "coins": [{"denom": "uatom", "amount": "5"}]}])
            )
        )

        GenesisInitializer(daemon).fund_local_account(local_config)

        balances = json.loads(local_config.genesis_path.read_text())["app_state"]["bank"]["balances"]
        assert balances == [
            {
                "address": ADDRESS,
                "coins": [{"denom": "uatom", "amount": "5"}, {"denom": "ukii", "amount": "100000000000"}],
            }
        ]

    def test_shared_network_is_skipped(self, make_config, daemon, runner):
        assert GenesisInitializer(daemon).fund_local_account(make_config(Environment.TESTNET)) is False
        assert runner.calls == []

    def test_unreadable_genesis(self, local_config, daemon):
        local_config.genesis_path.write_text("not json")

        with pytest.raises(GenesisFundingError):
            GenesisInitializer(daemon).fund_local_account(local_config)

    def test_missing_key(self, make_config, daemon, runner):
        runner.on("keys", "show", stderr="Error: validator.info: key not found", returncode=1)

        with pytest.raises(AccountNotFoundError):
            GenesisInitializer(daemon).fund_local_account(make_config(Environment.LOCAL))
