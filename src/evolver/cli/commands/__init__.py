"""CLI command implementations."""

from .history import history, revert
from .run import run

__all__ = ["history", "revert", "run"]
