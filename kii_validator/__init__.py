"""Deployment and supervision tooling for KiiChain validators."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("kii-validator")
except PackageNotFoundError:  # pragma: no cover
    __version__ = "0.1.0"

__all__ = ["__version__"]
