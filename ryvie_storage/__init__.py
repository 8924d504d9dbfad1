"""Disk inventory and redundancy planning for ryvie-storage."""

from __future__ import annotations

from importlib import resources
from importlib.metadata import PackageNotFoundError, version as pkg_version

__all__ = ["inventory", "planner", "stages", "state", "topology"]


def _discover_version() -> str:
    try:
        return pkg_version("ryvie-storage")
    except PackageNotFoundError:
        try:
            return resources.files(__package__).joinpath("VERSION").read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return "unknown"


__version__ = _discover_version()
