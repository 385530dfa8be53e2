"""Deployer command line entrypoint."""

from __future__ import annotations

import argparse
import asyncio
import os
import sys

import bittensor as bt

from .config import (
    Environment,
    ValidatorConfig,
    load_networks,
    operator_inputs_from_env,
    parse_args,
    resolve,
)
from .daemon import DaemonCLI
from .errors import ValidatorDeployError
from .genesis import GenesisInitializer
from .keys import KeyProvisioner
from .logging import ANSI_CYAN, ANSI_DIM, ANSI_RED, ANSI_RESET, EMOJI_ERROR, EMOJI_INFO, style, tag
from .pipeline import DeploymentPipeline, prompt_confirmation
from .state_sync import StateSyncConfigurer
from .supervisor import NodeSupervisor, check_node_sync


def _configure_logging(args: argparse.Namespace) -> None:
    if args.trace:
        bt.logging.set_trace(True)
    elif args.debug:
        bt.logging.set_debug(True)


def cmd_deploy(args: argparse.Namespace, config: ValidatorConfig, daemon: DaemonCLI) -> int:
    confirm = (lambda _config: True) if args.yes else prompt_confirmation
    DeploymentPipeline(daemon, confirm=confirm).run(config)

    explorer = config.network.block_explorer
    if config.environment.is_shared:
        bt.logging.info(
            f"{EMOJI_INFO} Please manually swap KII tokens to sKII and delegate to your validator."
        )
        if explorer:
            bt.logging.info(
                f"Use the Kii Block Explorer Dashboard at {style(explorer, ANSI_CYAN, bold=True)} "
                "to delegate and manage your validator."
            )
    return 0


async def supervise(config: ValidatorConfig, daemon: DaemonCLI, state_sync: StateSyncConfigurer) -> int:
    """Run the node until it exits or the operator interrupts."""
    supervisor = NodeSupervisor(config, daemon=daemon, state_sync=state_sync)
    try:
        await supervisor.start()
        bt.logging.info(
            f"Node is running in {config.environment.value} environment. "
            f"{ANSI_DIM}Use Ctrl+C to stop the node.{ANSI_RESET}"
        )
        return await supervisor.wait()
    finally:
        await supervisor.stop()


def _prepare_node(config: ValidatorConfig, daemon: DaemonCLI, state_sync: StateSyncConfigurer) -> None:
    GenesisInitializer(daemon).initialize(config)
    if config.environment.is_shared:
        state_sync.configure(config)


def cmd_run(args: argparse.Namespace, config: ValidatorConfig, daemon: DaemonCLI) -> int:
    state_sync = StateSyncConfigurer()
    _prepare_node(config, daemon, state_sync)
    return _run_supervised(config, daemon, state_sync)


def cmd_start(args: argparse.Namespace, config: ValidatorConfig, daemon: DaemonCLI) -> int:
    state_sync = StateSyncConfigurer()
    if not config.priv_validator_key_path.exists():
        bt.logging.info("Keys not found. Generating new keys...")
        KeyProvisioner(daemon).ensure_key(config)
    else:
        bt.logging.info("Keys found. Proceeding with initialization...")
    _prepare_node(config, daemon, state_sync)
    if not config.environment.is_shared:
        state_sync.configure(config)
    return _run_supervised(config, daemon, state_sync)


def _run_supervised(config: ValidatorConfig, daemon: DaemonCLI, state_sync: StateSyncConfigurer) -> int:
    try:
        return asyncio.run(supervise(config, daemon, state_sync))
    except KeyboardInterrupt:
        bt.logging.info("Interrupted; node stopped.")
        return 0


def cmd_sync_status(args: argparse.Namespace, config: ValidatorConfig, daemon: DaemonCLI) -> int:
    synced = check_node_sync(daemon, config)
    print("synced" if synced else "catching up")
    return 0 if synced else 2


COMMANDS = {
    "deploy": cmd_deploy,
    "run": cmd_run,
    "start": cmd_start,
    "sync-status": cmd_sync_status,
}


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    _configure_logging(args)

    try:
        environment = Environment.parse(args.environment)
        config = resolve(environment, operator_inputs_from_env(os.environ), load_networks(os.environ))
        daemon = DaemonCLI(config.daemon.binary)
        return COMMANDS[args.command](args, config, daemon)
    except ValidatorDeployError as exc:
        bt.logging.error(f"{tag('DEPLOY', ANSI_RED)} {EMOJI_ERROR} {exc}")
        return 1


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
