"""Braid: multi-source issue reconciliation between a local tracker, a markdown mirror, and GitHub."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("braid")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"

from braid.core import BraidDB, Issue

__all__ = ["BraidDB", "Issue", "__version__"]
