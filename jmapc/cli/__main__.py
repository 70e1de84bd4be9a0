"""
jmapc CLI - Harmonize a local groupware store with a JMAP server.

Usage:
    jmapc connect URL (--token T | --username U [--password P]) [--check]
    jmapc disconnect ACCOUNT
    jmapc show [ACCOUNT] [--json]
    jmapc test ACCOUNT
    jmapc harmonize ACCOUNT [--collection ID] [--json]
    jmapc harmonize --all [--user USER]
    jmapc chronicle since COLLECTION [--token T] [--limit N]
    jmapc chronicle trim [--days N]
    jmapc conflicts [--account ID] [--limit N] [--clear]
"""

import argparse
import logging
import sys
from pathlib import Path

from jmapc.cli.commands import (
    cmd_chronicle,
    cmd_conflicts,
    cmd_connect,
    cmd_disconnect,
    cmd_harmonize,
    cmd_show,
    cmd_test,
)
from jmapc.config import load_config
from jmapc.protocols import JmapcError
from jmapc.storage import SQLiteStorage
from jmapc.types import SyncMode

logger = logging.getLogger(__name__)

COMMANDS = {
    "connect": cmd_connect,
    "disconnect": cmd_disconnect,
    "show": cmd_show,
    "test": cmd_test,
    "harmonize": cmd_harmonize,
    "chronicle": cmd_chronicle,
    "conflicts": cmd_conflicts,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="jmapc",
        description="Harmonize a local groupware store with a JMAP server",
    )
    parser.add_argument("--db", help="Database file (default: ~/.jmapc/jmapc.db)")
    parser.add_argument("--config", help="Config file (default: ~/.jmapc/config.json)")
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("--verbose", "-v", action="store_true", help="Log progress")
    verbosity.add_argument("--debug", action="store_true", help="Log everything")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # connect
    p_connect = subparsers.add_parser("connect", help="Connect a JMAP account")
    p_connect.add_argument("url", help="Server URL (session at /.well-known/jmap)")
    p_connect.add_argument("--user", help="Owning local user id (default: $USER)")
    p_connect.add_argument("--label", help="Display name for the account")
    p_connect.add_argument("--token", help="Bearer token (or JMAPC_TOKEN)")
    p_connect.add_argument("--username", help="Basic auth user name")
    p_connect.add_argument("--password", help="Basic auth password (or JMAPC_PASSWORD)")
    modes = [m.value for m in SyncMode]
    p_connect.add_argument("--contacts", choices=modes, default=SyncMode.CACHED.value)
    p_connect.add_argument("--events", choices=modes, default=SyncMode.CACHED.value)
    p_connect.add_argument("--tasks", choices=modes, default=SyncMode.CACHED.value)
    p_connect.add_argument("--policy", default="local-wins",
                           help="Conflict policy: local-wins, remote-wins, newest-wins (or L/R/N)")
    p_connect.add_argument("--check", action="store_true",
                           help="Verify the server accepts the credentials first")
    p_connect.add_argument("--json", "-j", action="store_true", help="Output as JSON")

    # disconnect
    p_disconnect = subparsers.add_parser("disconnect", help="Remove an account and its local data")
    p_disconnect.add_argument("account", type=int, help="Account id")

    # show
    p_show = subparsers.add_parser("show", help="Show accounts and their collections")
    p_show.add_argument("account", type=int, nargs="?", help="Account id")
    p_show.add_argument("--user", help="Only accounts of this user")
    p_show.add_argument("--json", "-j", action="store_true", help="Output as JSON")

    # test
    p_test = subparsers.add_parser("test", help="Check server connectivity of an account")
    p_test.add_argument("account", type=int, help="Account id")

    # harmonize
    p_harmonize = subparsers.add_parser("harmonize", help="Run a harmonization cycle")
    p_harmonize.add_argument("account", type=int, nargs="?", help="Account id")
    p_harmonize.add_argument("--collection", "-c", type=int, help="Only this collection")
    p_harmonize.add_argument("--all", action="store_true", help="All accounts")
    p_harmonize.add_argument("--user", help="With --all: only accounts of this user")
    p_harmonize.add_argument("--json", "-j", action="store_true", help="Output as JSON")

    # chronicle
    p_chronicle = subparsers.add_parser("chronicle", help="Chronicle operations")
    chronicle_sub = p_chronicle.add_subparsers(dest="chronicle_action", required=True)

    chronicle_since = chronicle_sub.add_parser("since", help="Changes of a collection after a token")
    chronicle_since.add_argument("collection", type=int, help="Collection id")
    chronicle_since.add_argument("--token", "-t", help="Token from a previous call")
    chronicle_since.add_argument("--limit", "-l", type=int, help="Maximum records")
    chronicle_since.add_argument("--json", "-j", action="store_true", help="Output as JSON")

    chronicle_trim = chronicle_sub.add_parser("trim", help="Drop records past retention")
    chronicle_trim.add_argument("--days", type=int, help="Retention in days (default: from config)")

    # conflicts
    p_conflicts = subparsers.add_parser("conflicts", help="Conflict resolution history")
    p_conflicts.add_argument("--account", type=int, help="Only this account")
    p_conflicts.add_argument("--limit", "-l", type=int, default=50)
    p_conflicts.add_argument("--clear", action="store_true", help="Clear the history")
    p_conflicts.add_argument("--json", "-j", action="store_true", help="Output as JSON")

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    level = logging.DEBUG if args.debug else logging.INFO if args.verbose else logging.WARNING
    logging.basicConfig(level=level)

    try:
        config = load_config(Path(args.config) if args.config else None, db_path=args.db)
        storage = SQLiteStorage(config.resolved_db_path())
    except (ValueError, JmapcError) as e:
        logger.error(f"Failed to initialize jmapc: {e}")
        sys.exit(1)

    try:
        code = COMMANDS[args.command](args, storage, config)
    except (ValueError, TypeError) as e:
        logger.error(f"Input validation error: {e}")
        sys.exit(1)
    except JmapcError as e:
        logger.error(f"Command failed: {e}")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Command failed: {e}", exc_info=args.debug)
        sys.exit(1)
    finally:
        storage.close()
    sys.exit(code)


if __name__ == "__main__":
    main()
