"""State sync checkpoint discovery and node configuration."""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Any

import bittensor as bt
import httpx
from pydantic import BaseModel, ConfigDict, Field

from .config import ValidatorConfig
from .errors import CheckpointDiscoveryFailure
from .logging import (
    ANSI_DIM,
    ANSI_GREEN,
    ANSI_RESET,
    ANSI_YELLOW,
    EMOJI_NETWORK,
    EMOJI_SUCCESS,
    EMOJI_WARNING,
    tag,
)
from .node_config import ROOT, join_list, rewrite_config

# gRPC status code returned by gateways that do not serve the block endpoint
NOT_IMPLEMENTED_CODE = 12


class CheckpointInfo(BaseModel):
    """Trusted block used to bootstrap state sync."""

    model_config = ConfigDict(frozen=True)

    height: int = Field(ge=0)
    hash: str = Field(min_length=1)

    @classmethod
    def from_block_response(cls, payload: Any) -> CheckpointInfo | None:
        """Extract the checkpoint from a ``/block`` response, or None if malformed.

        Accepts both the JSON-RPC envelope (``{"result": {...}}``) and a bare result.
        """
        if not isinstance(payload, dict):
            return None
        result = payload.get("result", payload)
        if not isinstance(result, dict):
            return None
        block = result.get("block")
        block_id = result.get("block_id")
        if not isinstance(block, dict) or not isinstance(block_id, dict):
            return None
        header = block.get("header")
        if not isinstance(header, dict):
            return None

        height = _parse_height(header.get("height"))
        block_hash = block_id.get("hash")
        if height is None or not isinstance(block_hash, str) or not block_hash:
            return None
        return cls(height=height, hash=block_hash)


def _parse_height(raw: Any) -> int | None:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw if raw >= 0 else None
    # isdigit() alone accepts non-ASCII digits such as "²" that int() rejects
    if isinstance(raw, str) and raw.isascii() and raw.isdigit():
        return int(raw)
    return None


def _is_not_implemented(payload: Any) -> bool:
    return isinstance(payload, dict) and payload.get("code") == NOT_IMPLEMENTED_CODE


class StateSyncConfigurer:
    """Configures fast bootstrap from a trusted checkpoint, or disables it."""

    def __init__(
        self,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Args:
            transport: httpx transport override (used by tests)
            sleep: Delay function between retry attempts
        """
        self._transport = transport
        self._sleep = sleep

    def fetch_checkpoint(
        self,
        client: httpx.Client,
        endpoint: str,
        attempts: int = 3,
        retry_delay: float = 2.0,
    ) -> CheckpointInfo | None:
        """Fetch the latest block of ``endpoint`` with bounded retry.

        An endpoint that answers "not implemented" is abandoned after that
        single attempt. Returns None when all attempts fail.
        """
        url = f"{endpoint.rstrip('/')}/block"
        for attempt in range(1, attempts + 1):
            if attempt > 1:
                self._sleep(retry_delay)
            try:
                response = client.get(url)
                payload = response.json()
            except (httpx.HTTPError, ValueError) as exc:
                bt.logging.warning(
                    f"{tag('STATE SYNC', ANSI_YELLOW)} Attempt {attempt} failed to fetch block info "
                    f"from {endpoint}: {exc}"
                )
                continue

            if _is_not_implemented(payload):
                bt.logging.warning(
                    f"{tag('STATE SYNC', ANSI_YELLOW)} Endpoint {endpoint} does not implement the block method."
                )
                return None

            checkpoint = CheckpointInfo.from_block_response(payload)
            if checkpoint is not None:
                return checkpoint
            bt.logging.warning(
                f"{tag('STATE SYNC', ANSI_YELLOW)} Attempt {attempt}: {endpoint} returned no valid block "
                f"{ANSI_DIM}(HTTP {response.status_code}){ANSI_RESET}"
            )
        return None

    def discover_checkpoint(self, config: ValidatorConfig) -> CheckpointInfo:
        """Return the checkpoint from the first endpoint that yields one.

        Raises:
            CheckpointDiscoveryFailure: if no endpoint yields a valid checkpoint
        """
        endpoints = config.network.rpc_endpoints
        settings = config.daemon
        with httpx.Client(timeout=settings.http_timeout, transport=self._transport) as client:
            for endpoint in endpoints:
                checkpoint = self.fetch_checkpoint(
                    client,
                    endpoint,
                    attempts=settings.checkpoint_attempts,
                    retry_delay=settings.checkpoint_retry_delay,
                )
                if checkpoint is not None:
                    bt.logging.info(
                        f"{tag('STATE SYNC')} Successfully fetched block info from {endpoint}"
                    )
                    return checkpoint
        raise CheckpointDiscoveryFailure(
            f"No valid checkpoint from {len(endpoints)} candidate endpoint(s)"
        )

    def configure(self, config: ValidatorConfig) -> CheckpointInfo | None:
        """Enable state sync from a discovered checkpoint, falling back to disabling it.

        Returns:
            The checkpoint used, or None when state sync was disabled
        """
        if not config.environment.is_shared:
            bt.logging.info(f"{tag('STATE SYNC')} State sync disabled for local environment")
            self.disable(config)
            return None

        bt.logging.info(
            f"{tag('STATE SYNC')} {EMOJI_NETWORK} Implementing state sync and updating node configuration..."
        )
        try:
            checkpoint = self.discover_checkpoint(config)
        except CheckpointDiscoveryFailure as exc:
            bt.logging.warning(
                f"{tag('STATE SYNC', ANSI_YELLOW)} {EMOJI_WARNING} {exc}. "
                "Proceeding with default configuration without state sync."
            )
            self.disable(config)
            return None

        self.enable(config, checkpoint)
        return checkpoint

    def enable(self, config: ValidatorConfig, checkpoint: CheckpointInfo) -> None:
        settings = config.daemon
        network = config.network
        rpc_servers = join_list(network.rpc_endpoints)

        rewrite_config(
            config.config_toml_path,
            {
                ("statesync", "enable"): True,
                ("statesync", "trust_height"): checkpoint.height,
                ("statesync", "trust_hash"): checkpoint.hash,
                ("statesync", "rpc_servers"): rpc_servers,
                ("p2p", "seeds"): join_list(network.seeds),
                ("p2p", "persistent_peers"): join_list(network.persistent_peers),
                ("instrumentation", "prometheus"): True,
            },
        )
        rewrite_config(
            config.app_toml_path,
            {
                (ROOT, "minimum-gas-prices"): settings.gas_price,
                (ROOT, "pruning"): "custom",
                (ROOT, "pruning-keep-recent"): settings.pruning_keep_recent,
                (ROOT, "pruning-interval"): settings.pruning_interval,
                ("api", "enable"): True,
            },
        )

        bt.logging.info(
            f"{tag('STATE SYNC', ANSI_GREEN)} {EMOJI_SUCCESS} State sync enabled\n"
            f"  Trust height: {checkpoint.height}\n"
            f"  Trust hash: {checkpoint.hash}\n"
            f"  RPC servers: {ANSI_DIM}{rpc_servers}{ANSI_RESET}"
        )

    def disable(self, config: ValidatorConfig) -> None:
        """Turn state sync off and clear its trust fields; keep peer discovery configured."""
        network = config.network
        rewrite_config(
            config.config_toml_path,
            {
                ("statesync", "enable"): False,
                ("statesync", "trust_height"): 0,
                ("statesync", "trust_hash"): "",
                ("statesync", "rpc_servers"): "",
                ("p2p", "seeds"): join_list(network.seeds),
                ("p2p", "persistent_peers"): join_list(network.persistent_peers),
            },
        )
        bt.logging.info(f"{tag('STATE SYNC')} Updated configuration to proceed without state sync.")

    def reconfigure(self, config: ValidatorConfig) -> CheckpointInfo | None:
        """Reset state sync and run discovery again (used after runtime sync errors)."""
        self.disable(config)
        return self.configure(config)
