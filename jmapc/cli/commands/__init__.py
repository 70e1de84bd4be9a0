"""CLI command modules for jmapc.

Each handler takes (args, storage, config) and returns the process exit code.
"""

from jmapc.cli.commands.account import cmd_connect, cmd_disconnect, cmd_show, cmd_test
from jmapc.cli.commands.chronicle import cmd_chronicle
from jmapc.cli.commands.conflicts import cmd_conflicts
from jmapc.cli.commands.harmonize import cmd_harmonize

__all__ = [
    "cmd_chronicle",
    "cmd_conflicts",
    "cmd_connect",
    "cmd_disconnect",
    "cmd_harmonize",
    "cmd_show",
    "cmd_test",
]
