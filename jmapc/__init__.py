"""
jmapc - Harmonize a local groupware store with a JMAP server.

Contacts, calendar events and tasks are kept in agreement between a local
SQLite cache and the remote, one leased run per account.
"""

from .config import HarmonizationConfig, load_config
from .harmonize import LocalChanges, Orchestrator
from .storage import SQLiteStorage

try:
    from importlib.metadata import version

    __version__ = version("jmapc")
except Exception:
    __version__ = "0.0.0"

__all__ = ["HarmonizationConfig", "LocalChanges", "Orchestrator", "SQLiteStorage", "load_config"]
