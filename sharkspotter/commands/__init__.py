"""Command registration for the sharkspotter CLI."""
from __future__ import annotations

from typing import Iterable

from . import duplicates, export, scan

COMMAND_MODULES: Iterable = (scan, duplicates, export)

__all__ = ["COMMAND_MODULES"]
