"""Error taxonomy for validator deployment."""

from __future__ import annotations


class ValidatorDeployError(Exception):
    """Base class for every failure raised by the deployer."""


class ConfigurationError(ValidatorDeployError):
    """Raised when operator or network input is missing or invalid."""


class DaemonNotFoundError(ValidatorDeployError):
    """Raised when the node daemon binary is not on PATH."""


class KeyProvisioningError(ValidatorDeployError):
    """Raised when the keystore cannot be read or written."""


class KeyExportError(ValidatorDeployError):
    """Raised when the signing key cannot be exported."""


class NodeInitError(ValidatorDeployError):
    """Raised when the daemon fails to initialize the home directory."""


class GenesisFetchError(ValidatorDeployError):
    """Raised when no genesis URL is configured for a shared network."""


class GenesisDownloadError(ValidatorDeployError):
    """Raised when the genesis document cannot be downloaded or parsed."""


class GenesisFundingError(ValidatorDeployError):
    """Raised when the local genesis cannot be updated with a funded account."""


class ConfigRewriteError(ValidatorDeployError):
    """Raised when a node configuration file cannot be read or written."""


class CheckpointDiscoveryFailure(ValidatorDeployError):
    """No candidate endpoint yielded a trusted checkpoint.

    Recoverable: state sync is disabled instead of failing the deployment.
    """


class PubKeyUnavailableError(ValidatorDeployError):
    """Raised when the node has not produced a consensus public key yet."""


class AccountNotFoundError(ValidatorDeployError):
    """Raised when the operator key is missing from the keystore."""


class InsufficientFundsError(ValidatorDeployError):
    """Raised when the operator account holds no staking tokens."""


class RegistrationFailedError(ValidatorDeployError):
    """Raised when the create-validator transaction is rejected or fails."""


class NodeUnreachableError(ValidatorDeployError):
    """Raised when the node status endpoint cannot be reached."""


class DeploymentAbortedError(ValidatorDeployError):
    """Raised when the operator declines a mainnet deployment."""


class ProcessTimeoutError(ValidatorDeployError):
    """Raised when the node does not become ready within the startup window."""


class ProcessExitError(ValidatorDeployError):
    """Raised when the node process cannot launch or exits unexpectedly."""

    def __init__(self, message: str, returncode: int | None = None) -> None:
        super().__init__(message)
        self.returncode = returncode
