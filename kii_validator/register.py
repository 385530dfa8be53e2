"""Validator registration: descriptor building and create-validator submission."""

from __future__ import annotations

import json
import subprocess
from typing import Any

import bittensor as bt

from .config import ValidatorConfig
from .daemon import DaemonCLI, parse_json_output
from .errors import (
    InsufficientFundsError,
    NodeUnreachableError,
    PubKeyUnavailableError,
    RegistrationFailedError,
)
from .keys import KeyProvisioner
from .logging import ANSI_GREEN, EMOJI_COIN, EMOJI_ROCKET, EMOJI_SUCCESS, tag
from .node_config import atomic_write_text

ED25519_PUBKEY_TYPE = "/cosmos.crypto.ed25519.PubKey"


def staking_balance(balances: Any, denom: str) -> int:
    """Return the integer amount of ``denom`` in a bank balances query response."""
    if isinstance(balances, dict):
        balances = balances.get("balances", [])
    total = 0
    for coin in balances or []:
        if isinstance(coin, dict) and coin.get("denom") == denom:
            try:
                total += int(coin.get("amount", "0"))
            except (TypeError, ValueError):
                continue
    return total


class ValidatorRegistrar:
    """Builds the validator descriptor and submits the registration transaction."""

    def __init__(self, daemon: DaemonCLI, keys: KeyProvisioner | None = None):
        self.daemon = daemon
        self.keys = keys or KeyProvisioner(daemon)

    def consensus_pubkey(self, config: ValidatorConfig) -> dict[str, str]:
        """Read the node's consensus public key via ``tendermint show-validator``."""
        try:
            output = self.daemon.run_json(["tendermint", "show-validator", *config.home_args()])
        except (subprocess.CalledProcessError, ValueError) as exc:
            bt.logging.error(f"{tag('REGISTER')} Error getting pubkey: {exc}")
            raise PubKeyUnavailableError(
                f"Node at {config.home_dir} has no validator key yet"
            ) from exc
        key = output.get("key") if isinstance(output, dict) else None
        if not key:
            raise PubKeyUnavailableError(f"show-validator returned no key for {config.home_dir}")
        return {"@type": output.get("@type") or ED25519_PUBKEY_TYPE, "key": key}

    def build_registration_descriptor(self, config: ValidatorConfig) -> dict[str, Any]:
        """Write ``validator.json`` to the home directory and return its contents."""
        descriptor = {
            "pubkey": self.consensus_pubkey(config),
            "amount": config.daemon.self_delegation,
            "moniker": config.moniker,
            "identity": config.identity,
            "website": config.website,
            "security": config.security_contact,
            "details": config.details,
            "commission-rate": config.commission_rate,
            "commission-max-rate": config.commission_max_rate,
            "commission-max-change-rate": config.commission_max_change_rate,
            "min-self-delegation": config.min_self_delegation,
        }
        try:
            atomic_write_text(config.descriptor_path, json.dumps(descriptor, indent=2) + "\n")
        except OSError as exc:
            raise RegistrationFailedError(f"Cannot write {config.descriptor_path}: {exc}") from exc
        bt.logging.info(f"{tag('REGISTER')} validator.json file created at {config.descriptor_path}")
        return descriptor

    def balance(self, config: ValidatorConfig, address: str) -> int:
        try:
            output = self.daemon.run_json(
                ["query", "bank", "balances", address, "--node", config.rpc_url, "--output", "json"]
            )
        except (subprocess.CalledProcessError, ValueError) as exc:
            bt.logging.error(f"{tag('REGISTER')} Balance query failed: {exc}")
            raise NodeUnreachableError(
                f"Could not query balance of {address} from {config.rpc_url}"
            ) from exc
        return staking_balance(output, config.daemon.denom)

    def register(self, config: ValidatorConfig) -> str | None:
        """Submit the create-validator transaction.

        Account existence and funding are checked right before submission.
        A failed submission is never retried.

        Returns:
            Transaction hash reported by the daemon, if any
        """
        bt.logging.info(f"{tag('REGISTER')} {EMOJI_ROCKET} Creating validator...")
        config.validate_commission()

        address = self.keys.address(config)
        denom = config.daemon.denom
        amount = self.balance(config, address)
        bt.logging.info(f"{tag('REGISTER')} {EMOJI_COIN} Account {address} balance: {amount}{denom}")
        if amount <= 0:
            raise InsufficientFundsError(
                f"Account has no {denom} tokens. Please ensure the account is funded."
            )

        if not config.descriptor_path.exists():
            raise RegistrationFailedError(
                f"{config.descriptor_path} is missing; build the registration descriptor first"
            )

        settings = config.daemon
        command = [
            "tx",
            "staking",
            "create-validator",
            str(config.descriptor_path),
            "--from",
            config.key_name,
            "--chain-id",
            config.chain_id,
            *config.keyring_args(),
            "--node",
            config.rpc_url,
            "--gas",
            "auto",
            "--gas-adjustment",
            settings.gas_adjustment,
            "--gas-prices",
            settings.gas_price,
            "--output",
            "json",
            "--yes",
        ]
        try:
            result = self.daemon.run(command)
        except subprocess.CalledProcessError as exc:
            bt.logging.error(f"{tag('REGISTER')} Error creating validator: {exc.stderr or exc}")
            raise RegistrationFailedError(
                f"create-validator failed: {(exc.stderr or '').strip() or exc}"
            ) from exc

        try:
            response = parse_json_output(result.stdout, result.stderr)
        except ValueError:
            response = {}
        code = response.get("code", 0) if isinstance(response, dict) else 0
        if code:
            raw_log = response.get("raw_log", "")
            bt.logging.error(f"{tag('REGISTER')} Transaction rejected (code {code}): {raw_log}")
            raise RegistrationFailedError(f"create-validator rejected with code {code}: {raw_log}")

        txhash = response.get("txhash") if isinstance(response, dict) else None
        bt.logging.info(
            f"{tag('REGISTER', ANSI_GREEN)} {EMOJI_SUCCESS} Validator created successfully"
            + (f" (txhash={txhash})" if txhash else "")
        )
        return txhash
