"""Keystore provisioning for the operator key."""

from __future__ import annotations

import subprocess
import sys
from collections.abc import Callable

import bittensor as bt

from .config import ValidatorConfig
from .daemon import DaemonCLI, parse_json_output
from .errors import AccountNotFoundError, KeyExportError, KeyProvisioningError
from .logging import ANSI_BOLD, ANSI_GREEN, ANSI_RESET, ANSI_YELLOW, EMOJI_KEY, EMOJI_WARNING, tag


def print_mnemonic(key_name: str, mnemonic: str) -> None:
    """Show a freshly generated mnemonic to the operator on the terminal only."""
    banner = "=" * 72
    print(banner, file=sys.stderr)
    print(
        f"{ANSI_BOLD}{ANSI_YELLOW}New key '{key_name}' created. Write down this mnemonic; "
        f"it is the only copy and will not be stored anywhere:{ANSI_RESET}",
        file=sys.stderr,
    )
    print(f"\n  {mnemonic}\n", file=sys.stderr)
    print(banner, file=sys.stderr)


class KeyProvisioner:
    """Ensures the operator key exists in the daemon keystore."""

    def __init__(
        self,
        daemon: DaemonCLI,
        reveal_mnemonic: Callable[[str, str], None] = print_mnemonic,
    ):
        self.daemon = daemon
        self._reveal_mnemonic = reveal_mnemonic

    def key_exists(self, config: ValidatorConfig) -> bool:
        result = self.daemon.run(
            ["keys", "show", config.key_name, *config.keyring_args()],
            check=False,
        )
        return result.returncode == 0

    def ensure_key(self, config: ValidatorConfig) -> None:
        """Recover the key from the configured mnemonic or generate a new one.

        Recovery is idempotent: when the key already exists nothing is written.
        A generated mnemonic is handed to ``reveal_mnemonic`` and then dropped.
        """
        bt.logging.info(f"{tag('KEYS')} {EMOJI_KEY} Ensuring key '{config.key_name}' exists")
        try:
            if self.key_exists(config):
                bt.logging.info(
                    f"{tag('KEYS')} Key '{config.key_name}' already present in keystore; skipping creation"
                )
                if config.mnemonic:
                    # The stored key is not compared against the supplied mnemonic
                    bt.logging.warning(
                        f"{tag('KEYS', ANSI_YELLOW)} {EMOJI_WARNING} A mnemonic was supplied but key "
                        f"'{config.key_name}' already exists, so it was not recovered. The existing key "
                        "will be used; delete it from the keystore to recover from the mnemonic."
                    )
                return

            if config.mnemonic:
                # Mnemonic goes over stdin so it never shows up in the process table
                self.daemon.run(
                    ["keys", "add", config.key_name, "--recover", *config.keyring_args()],
                    input=f"{config.mnemonic}\n",
                )
                bt.logging.info(f"{tag('KEYS')} Recovered key '{config.key_name}' from mnemonic")
                return

            result = self.daemon.run(
                ["keys", "add", config.key_name, "--output", "json", *config.keyring_args()],
            )
        except subprocess.CalledProcessError as exc:
            bt.logging.error(f"{tag('KEYS')} Keystore command failed: {exc.stderr or exc}")
            raise KeyProvisioningError(
                f"Could not provision key '{config.key_name}': {(exc.stderr or '').strip() or exc}"
            ) from exc

        try:
            mnemonic = parse_json_output(result.stdout, result.stderr).get("mnemonic")
        except (ValueError, AttributeError) as exc:
            raise KeyProvisioningError(
                f"Key '{config.key_name}' was created but its mnemonic could not be read"
            ) from exc
        if not mnemonic:
            raise KeyProvisioningError(
                f"Key '{config.key_name}' was created but the daemon returned no mnemonic"
            )
        self._reveal_mnemonic(config.key_name, mnemonic)
        bt.logging.info(
            f"{tag('KEYS', ANSI_GREEN)} Generated new key '{config.key_name}'"
        )

    def address(self, config: ValidatorConfig) -> str:
        """Return the bech32 account address of the operator key."""
        try:
            result = self.daemon.run(["keys", "show", config.key_name, "-a", *config.keyring_args()])
        except subprocess.CalledProcessError as exc:
            bt.logging.error(f"{tag('KEYS')} Account lookup failed: {exc.stderr or exc}")
            raise AccountNotFoundError(
                f"Account {config.key_name} not found. Please make sure it's created."
            ) from exc
        address = result.stdout.strip()
        if not address:
            raise AccountNotFoundError(f"Account {config.key_name} has no address in the keystore")
        return address

    def export_signing_key(self, config: ValidatorConfig) -> bytes:
        """Export the raw private key bytes of the operator key."""
        try:
            result = self.daemon.run(
                [
                    "keys",
                    "export",
                    config.key_name,
                    "--unarmored-hex",
                    "--unsafe",
                    *config.keyring_args(),
                ],
                # Answers the unsafe-export confirmation prompt
                input="y\n",
            )
        except subprocess.CalledProcessError as exc:
            bt.logging.error(f"{tag('KEYS')} Key export failed: {exc.stderr or exc}")
            raise KeyExportError(f"Key '{config.key_name}' could not be exported") from exc

        lines = [line.strip() for line in result.stdout.splitlines() if line.strip()]
        try:
            return bytes.fromhex(lines[-1])
        except (IndexError, ValueError) as exc:
            raise KeyExportError(
                f"Export of key '{config.key_name}' did not return a hex encoded key"
            ) from exc
