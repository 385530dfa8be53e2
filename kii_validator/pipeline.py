"""End-to-end validator deployment."""

from __future__ import annotations

import subprocess
import time
from collections.abc import Callable

import bittensor as bt

from .config import Environment, ValidatorConfig
from .daemon import DaemonCLI
from .errors import DeploymentAbortedError, NodeUnreachableError, ValidatorDeployError
from .genesis import GenesisInitializer
from .keys import KeyProvisioner
from .logging import (
    ANSI_BOLD,
    ANSI_GREEN,
    ANSI_RED,
    ANSI_RESET,
    ANSI_YELLOW,
    EMOJI_ERROR,
    EMOJI_ROCKET,
    EMOJI_SUCCESS,
    tag,
)
from .register import ValidatorRegistrar
from .state_sync import StateSyncConfigurer

Confirm = Callable[[ValidatorConfig], bool]


def prompt_confirmation(config: ValidatorConfig) -> bool:
    """Ask the operator to type the chain id before touching mainnet."""
    print(
        f"{ANSI_BOLD}{ANSI_YELLOW}You are about to deploy validator '{config.moniker}' "
        f"to MAINNET ({config.chain_id}).{ANSI_RESET}"
    )
    try:
        answer = input(f"Type the chain id ({config.chain_id}) to continue: ")
    except EOFError:
        return False
    return answer.strip() == config.chain_id


class DeploymentPipeline:
    """Runs the deployment steps in a fixed order, stopping at the first failure.

    Side effects of completed steps are not rolled back; each step tolerates
    state left behind by an earlier run.
    """

    def __init__(
        self,
        daemon: DaemonCLI,
        keys: KeyProvisioner | None = None,
        genesis: GenesisInitializer | None = None,
        state_sync: StateSyncConfigurer | None = None,
        registrar: ValidatorRegistrar | None = None,
        confirm: Confirm = prompt_confirmation,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.daemon = daemon
        self.keys = keys or KeyProvisioner(daemon)
        self.genesis = genesis or GenesisInitializer(daemon, self.keys)
        self.state_sync = state_sync or StateSyncConfigurer()
        self.registrar = registrar or ValidatorRegistrar(daemon, self.keys)
        self._confirm = confirm
        self._sleep = sleep

    def steps(self, config: ValidatorConfig) -> list[tuple[str, Callable[[ValidatorConfig], object]]]:
        steps: list[tuple[str, Callable[[ValidatorConfig], object]]] = [
            ("initialize node", self.genesis.initialize),
            ("ensure key", self.keys.ensure_key),
        ]
        if not config.environment.is_shared:
            steps.append(("fund local account", self.genesis.fund_local_account))
        else:
            steps.append(("configure state sync", self.state_sync.configure))
        steps += [
            ("build registration descriptor", self.registrar.build_registration_descriptor),
            ("check node liveness", self.check_liveness),
            ("settle", self.settle),
            ("register validator", self.registrar.register),
        ]
        return steps

    def run(self, config: ValidatorConfig) -> None:
        environment = config.environment.value
        if config.environment is Environment.MAINNET and not self._confirm(config):
            bt.logging.warning(f"{tag('DEPLOY', ANSI_YELLOW)} Mainnet deployment cancelled.")
            raise DeploymentAbortedError("Mainnet deployment was not confirmed")

        bt.logging.info(
            f"{tag('DEPLOY')} {EMOJI_ROCKET} Deploying validator "
            f"{ANSI_BOLD}{config.moniker}{ANSI_RESET} to {environment} ({config.chain_id})"
        )
        for name, step in self.steps(config):
            bt.logging.debug(f"{tag('DEPLOY')} Step: {name}")
            try:
                step(config)
            except ValidatorDeployError as exc:
                bt.logging.error(
                    f"{tag('DEPLOY', ANSI_RED)} {EMOJI_ERROR} Step '{name}' failed: {exc}"
                )
                raise

        bt.logging.info(
            f"{tag('DEPLOY', ANSI_GREEN)} {EMOJI_SUCCESS} Validator successfully deployed to {environment}!"
        )

    def check_liveness(self, config: ValidatorConfig) -> None:
        try:
            self.daemon.status(config.rpc_url)
        except (subprocess.CalledProcessError, ValueError) as exc:
            raise NodeUnreachableError(
                "Node is not running or not accessible. Please start the node before creating a validator."
            ) from exc
        bt.logging.info(f"{tag('DEPLOY')} Node at {config.rpc_url} is reachable")

    def settle(self, config: ValidatorConfig) -> None:
        # Give the node a moment to be fully operational before submitting
        self._sleep(config.daemon.settle_delay)
