"""Node initialization and genesis installation."""

from __future__ import annotations

import json
import subprocess
from decimal import Decimal
from typing import Any

import bittensor as bt
import httpx

from .config import ValidatorConfig
from .daemon import DaemonCLI
from .errors import (
    GenesisDownloadError,
    GenesisFetchError,
    GenesisFundingError,
    NodeInitError,
)
from .keys import KeyProvisioner
from .logging import ANSI_DIM, ANSI_GREEN, ANSI_RESET, EMOJI_BLOCK, EMOJI_COIN, EMOJI_SUCCESS, tag
from .node_config import atomic_write_text

BASE_ACCOUNT_TYPE = "/cosmos.auth.v1beta1.BaseAccount"


def stringify_numbers(value: Any) -> Any:
    """Return a copy of ``value`` with every numeric leaf converted to a string.

    Booleans are left untouched. Applies at every depth of nested dicts and lists.
    """
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, (int, float, Decimal)):
        return str(value)
    if isinstance(value, dict):
        return {key: stringify_numbers(item) for key, item in value.items()}
    if isinstance(value, list):
        return [stringify_numbers(item) for item in value]
    return value


def dump_genesis(document: Any) -> str:
    return json.dumps(document, indent=2) + "\n"


class GenesisInitializer:
    """Initializes the node home directory and installs the network genesis."""

    def __init__(
        self,
        daemon: DaemonCLI,
        keys: KeyProvisioner | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self.daemon = daemon
        self.keys = keys or KeyProvisioner(daemon)
        self._transport = transport

    def initialize(self, config: ValidatorConfig) -> None:
        """Run ``init -o`` (overwriting prior state) and install the genesis."""
        environment = config.environment.value
        bt.logging.info(f"{tag('GENESIS')} {EMOJI_BLOCK} Initializing node for {environment}...")
        try:
            config.home_dir.mkdir(parents=True, exist_ok=True)
            self.daemon.run(
                [
                    "init",
                    config.moniker,
                    "--chain-id",
                    config.chain_id,
                    *config.home_args(),
                    "-o",
                ]
            )
        except (OSError, subprocess.CalledProcessError) as exc:
            detail = getattr(exc, "stderr", None) or exc
            bt.logging.error(f"{tag('GENESIS')} Error initializing node: {detail}")
            raise NodeInitError(f"Node initialization failed: {detail}") from exc

        if not config.environment.is_shared:
            bt.logging.info(f"{tag('GENESIS')} Using locally generated genesis file")
        else:
            self.install_genesis(config)

        bt.logging.info(
            f"{tag('GENESIS', ANSI_GREEN)} {EMOJI_SUCCESS} Node initialized successfully for {environment}"
        )

    def fetch_genesis(self, config: ValidatorConfig) -> Any:
        url = config.network.genesis_url
        if not url:
            raise GenesisFetchError(f"Genesis URL for {config.environment.value} is not set.")

        bt.logging.info(
            f"{tag('GENESIS')} Downloading {config.environment.value} genesis file "
            f"{ANSI_DIM}({url}){ANSI_RESET}"
        )
        try:
            with httpx.Client(
                timeout=config.daemon.http_timeout,
                transport=self._transport,
                follow_redirects=True,
            ) as client:
                response = client.get(url)
                response.raise_for_status()
                # Decimal keeps fractional amounts exact until they are stringified
                return json.loads(response.text, parse_float=Decimal)
        except httpx.HTTPStatusError as exc:
            bt.logging.error(
                f"{tag('GENESIS')} Genesis download failed: HTTP {exc.response.status_code}"
            )
            raise GenesisDownloadError(
                f"Genesis download from {url} failed with HTTP {exc.response.status_code}"
            ) from exc
        except httpx.RequestError as exc:
            bt.logging.error(f"{tag('GENESIS')} Genesis download failed: Network error - {exc}")
            raise GenesisDownloadError(f"Genesis download from {url} failed: {exc}") from exc
        except ValueError as exc:
            raise GenesisDownloadError(f"Genesis from {url} is not valid JSON: {exc}") from exc

    def install_genesis(self, config: ValidatorConfig) -> None:
        document = stringify_numbers(self.fetch_genesis(config))
        try:
            atomic_write_text(config.genesis_path, dump_genesis(document))
        except OSError as exc:
            raise GenesisDownloadError(f"Cannot write {config.genesis_path}: {exc}") from exc
        bt.logging.info(f"{tag('GENESIS')} Genesis written to {config.genesis_path}")

    def fund_local_account(self, config: ValidatorConfig) -> bool:
        """Inject an auth account and staking balance for the operator into the local genesis.

        Only applies to the local network. Nothing is written when the account
        already holds the staking denomination.

        Returns:
            True if the genesis file was modified
        """
        if config.environment.is_shared:
            return False

        denom = config.daemon.denom
        address = self.keys.address(config)
        bt.logging.info(f"{tag('FUNDING')} {EMOJI_COIN} Funding local account {address}")

        try:
            genesis = json.loads(config.genesis_path.read_text())
            app_state = genesis["app_state"]
            accounts = app_state["auth"].setdefault("accounts", [])
            bank = app_state["bank"]
            balances = bank.setdefault("balances", [])
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as exc:
            bt.logging.error(f"{tag('FUNDING')} Cannot read local genesis: {exc}")
            raise GenesisFundingError(f"Cannot read genesis at {config.genesis_path}: {exc}") from exc

        balance = next((b for b in balances if b.get("address") == address), None)
        if balance is not None and any(c.get("denom") == denom for c in balance.get("coins", [])):
            bt.logging.info(f"{tag('FUNDING')} Account already has funds. Skipping funding process.")
            return False

        if not any(acc.get("address") == address for acc in accounts):
            accounts.append(
                {
                    "@type": BASE_ACCOUNT_TYPE,
                    "address": address,
                    "pub_key": None,
                    "account_number": "0",
                    "sequence": "0",
                }
            )
            bt.logging.debug(f"{tag('FUNDING')} Added account to auth.accounts")

        amount = config.daemon.local_funding_amount
        coin = {"denom": denom, "amount": amount}
        if balance is not None:
            balance.setdefault("coins", []).append(coin)
            balance["coins"].sort(key=lambda c: c.get("denom", ""))
        else:
            balances.append({"address": address, "coins": [coin]})

        # A non-empty supply must equal the sum of balances or genesis validation fails
        supply = bank.get("supply") or []
        if supply:
            entry = next((c for c in supply if c.get("denom") == denom), None)
            if entry is None:
                supply.append(dict(coin))
                supply.sort(key=lambda c: c.get("denom", ""))
            else:
                entry["amount"] = str(int(entry["amount"]) + int(amount))

        try:
            atomic_write_text(config.genesis_path, dump_genesis(genesis))
        except OSError as exc:
            raise GenesisFundingError(f"Cannot write {config.genesis_path}: {exc}") from exc

        bt.logging.info(
            f"{tag('FUNDING', ANSI_GREEN)} {EMOJI_SUCCESS} Genesis updated with {amount}{denom} for {address}"
        )
        return True
