"""Adapters for the external tools bampctl drives."""
from __future__ import annotations

from .homebrew import HomebrewError, HomebrewProvider
from .httpd import HttpdProvider
from .mkcert import MkcertError, MkcertProvider
from .mysql import DatabaseInfo, MySQLClient, MySQLError
from .process import CommandResult, CommandRunner

__all__ = [
    "CommandResult",
    "CommandRunner",
    "DatabaseInfo",
    "HomebrewError",
    "HomebrewProvider",
    "HttpdProvider",
    "MkcertError",
    "MkcertProvider",
    "MySQLClient",
    "MySQLError",
]
