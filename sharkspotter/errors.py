"""Error taxonomy shared by every sharkspotter component."""
from __future__ import annotations

EXIT_OK = 0
EXIT_SHARD_FAILED = 1
EXIT_CONFIG = 2
EXIT_VALIDATION = 3
EXIT_OUTPUT = 4
EXIT_CANCELLED = 130


class SpotterError(Exception):
    exit_code = EXIT_SHARD_FAILED


class ConfigError(SpotterError):
    """Invalid domain, empty shark set or contradictory options."""

    exit_code = EXIT_CONFIG


class ConnectivityError(SpotterError):
    """RPC or direct database connection/timeout failure after all retries."""

    exit_code = EXIT_SHARD_FAILED


class ValidationError(SpotterError):
    """A target shark is unknown or in a state that is unsafe to scan."""

    exit_code = EXIT_VALIDATION


class DataError(SpotterError):
    """A record cannot be decoded or lacks required fields."""


class OutputError(SpotterError):
    """An output sink cannot be opened or written."""

    exit_code = EXIT_OUTPUT


__all__ = [
    "EXIT_OK",
    "EXIT_SHARD_FAILED",
    "EXIT_CONFIG",
    "EXIT_VALIDATION",
    "EXIT_OUTPUT",
    "EXIT_CANCELLED",
    "SpotterError",
    "ConfigError",
    "ConnectivityError",
    "ValidationError",
    "DataError",
    "OutputError",
]
