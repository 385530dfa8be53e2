"""Thin wrapper around the node daemon command line.

Every invocation uses an argument list, never a shell string, so operator
supplied values such as the moniker or key name are passed through verbatim.
"""

from __future__ import annotations

import json
import subprocess
from collections.abc import Callable, Sequence
from typing import Any

import bittensor as bt

from .errors import DaemonNotFoundError

Runner = Callable[..., subprocess.CompletedProcess]


class DaemonCLI:
    """Runs daemon subcommands and decodes their output."""

    def __init__(self, binary: str = "kiichaind", runner: Runner = subprocess.run):
        """
        Args:
            binary: Daemon executable name or path
            runner: ``subprocess.run`` compatible callable (injectable for tests)
        """
        self.binary = binary
        self._runner = runner

    def run(
        self,
        args: Sequence[str],
        *,
        input: str | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess:
        """
        Run a daemon subcommand and return the result.

        Args:
            args: Arguments after the binary name (e.g. ``["status"]``)
            input: Text written to the daemon's stdin
            check: Whether to raise on non-zero exit code

        Returns:
            CompletedProcess result

        Raises:
            subprocess.CalledProcessError: If check=True and the command fails
            DaemonNotFoundError: If the daemon binary is not installed
        """
        command = [self.binary, *args]
        bt.logging.trace(f"Running {self.binary} {' '.join(args[:3])}")
        try:
            return self._runner(
                command,
                input=input,
                capture_output=True,
                text=True,
                check=check,
            )
        except FileNotFoundError:
            raise DaemonNotFoundError(
                f"{self.binary} is not installed or not on PATH"
            ) from None

    def run_json(self, args: Sequence[str], *, input: str | None = None) -> Any:
        """Run a subcommand that prints JSON and decode it.

        Some daemon versions print JSON on stderr, so stdout is tried first.

        Raises:
            subprocess.CalledProcessError: If the command fails
            ValueError: If neither stream holds a JSON document
        """
        result = self.run(args, input=input)
        return parse_json_output(result.stdout, result.stderr)

    def status(self, node: str) -> dict[str, Any]:
        """Query the node status endpoint."""
        return self.run_json(["status", "--node", node])


def parse_json_output(*streams: str | None) -> Any:
    """Decode the first stream that contains a JSON document."""
    for text in streams:
        if not text:
            continue
        text = text.strip()
        start = min((i for i in (text.find("{"), text.find("[")) if i >= 0), default=-1)
        if start < 0:
            continue
        try:
            return json.loads(text[start:])
        except json.JSONDecodeError:
            continue
    raise ValueError("Daemon output did not contain a JSON document")


def sync_info(status: dict[str, Any]) -> dict[str, Any]:
    """Return the sync section of a status document (key casing varies by version)."""
    info = status.get("SyncInfo") or status.get("sync_info")
    if not isinstance(info, dict):
        raise ValueError("Status response has no sync info")
    return info
