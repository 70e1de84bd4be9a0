"""Account commands for jmapc CLI: connect, disconnect, show, test."""

import logging
import os
from typing import Any, Dict

from jmapc.protocols import AuthenticationRejected, TransportError
from jmapc.remote import JmapTransport, validate_backend_url
from jmapc.types import ConflictPolicy, EntityType, ServiceAccount, SyncMode

from .helpers import mask_secret, print_json, validate_input

logger = logging.getLogger(__name__)

# Option name per entity type for --contacts/--events/--tasks
MODE_OPTIONS = {
    EntityType.CONTACT: "contacts",
    EntityType.EVENT: "events",
    EntityType.TASK: "tasks",
}


def _account_dict(account: ServiceAccount, storage) -> Dict[str, Any]:
    connection = dict(account.connection or {})
    if connection.get("token"):
        connection["token"] = mask_secret(connection["token"])
    if connection.get("password"):
        connection["password"] = "********"
    lease = storage.lease.status(account.id)
    return {
        "id": account.id,
        "uuid": account.uuid,
        "user_id": account.user_id,
        "label": account.label,
        "connection": connection,
        "enabled": account.enabled,
        "connected": account.connected,
        "modes": {t.value: account.mode_for(t).value for t in EntityType},
        "policies": {t.value: account.policy_for(t).value for t in EntityType},
        "lease": {
            "locked": lease.locked,
            "holder": lease.holder,
            "age_seconds": round(lease.age, 1) if lease.age is not None else None,
        }
        if lease
        else None,
        "state": account.harmonization_state.value,
        "last_outcome": account.last_outcome.value if account.last_outcome else None,
        "last_error": account.last_error,
        "last_start": account.harmonization_start,
        "last_end": account.harmonization_end,
        "collections": [
            {
                "id": c.id,
                "type": c.entity_type.value,
                "label": c.label,
                "remote_id": c.remote_id,
                "entities": storage.count_entities(c.id),
                "harmonized_at": c.harmonized_at,
            }
            for c in storage.get_collections(account.id)
        ],
    }


def cmd_connect(args, storage, config) -> int:
    """Create a service account for a JMAP server."""
    url = validate_backend_url(validate_input(args.url, "url", 2000))
    if url is None:
        print("✗ Server URL must be https (http is only allowed for localhost)")
        return 1

    connection: Dict[str, Any] = {"base_url": url}
    token = args.token or os.environ.get("JMAPC_TOKEN")
    if token:
        connection["auth"] = "bearer"
        connection["token"] = token
    elif args.username:
        connection["auth"] = "basic"
        connection["username"] = validate_input(args.username, "username", 200)
        connection["password"] = args.password or os.environ.get("JMAPC_PASSWORD") or ""
    else:
        print("✗ Provide --token (or JMAPC_TOKEN) or --username")
        return 1

    policy = ConflictPolicy.parse(args.policy)
    account = ServiceAccount(
        id=None,
        user_id=validate_input(args.user or os.environ.get("USER") or "default", "user", 200),
        label=validate_input(args.label, "label", 200) if args.label else None,
        connection=connection,
        modes={t: SyncMode(getattr(args, option)) for t, option in MODE_OPTIONS.items()},
        policies={t: policy for t in EntityType},
    )

    if args.check:
        transport = JmapTransport.from_account(account, config.transport_timeout)
        try:
            capabilities = transport.ping()
        except AuthenticationRejected:
            print("✗ Server rejected the credentials")
            return 1
        except TransportError as e:
            print(f"✗ Cannot reach server: {e}")
            return 1
        finally:
            transport.close()
        logger.debug(f"Server capabilities: {capabilities}")

    account = storage.create_account(account)
    if args.json:
        print_json(_account_dict(account, storage))
    else:
        print(f"✓ Connected account {account.id} ({url})")
    return 0


def cmd_disconnect(args, storage, config) -> int:
    """Delete an account with all of its local data."""
    if not storage.delete_account(args.account):
        print(f"✗ Account {args.account} not found")
        return 1
    print(f"✓ Disconnected account {args.account}")
    return 0


def cmd_show(args, storage, config) -> int:
    """Show one account, or all accounts."""
    if args.account is not None:
        account = storage.get_account(args.account)
        if account is None:
            print(f"✗ Account {args.account} not found")
            return 1
        accounts = [account]
    else:
        accounts = storage.list_accounts(args.user)

    data = [_account_dict(a, storage) for a in accounts]
    if args.json:
        print_json({"accounts": data, "count": len(data)})
        return 0

    if not data:
        print("No accounts connected")
        print("  Run `jmapc connect URL --token TOKEN` to add one")
        return 0
    for item in data:
        state = "enabled" if item["enabled"] else "disabled"
        if not item["connected"]:
            state += ", disconnected"
        print(f"Account {item['id']}: {item['label'] or item['connection'].get('base_url')} ({state})")
        print(f"  User: {item['user_id']}")
        modes = ", ".join(f"{k}={v}" for k, v in item["modes"].items())
        print(f"  Modes: {modes}")
        if item["last_outcome"]:
            print(f"  Last run: {item['last_outcome']}" + (f" ({item['last_error']})" if item["last_error"] else ""))
        if item["lease"] and item["lease"]["locked"]:
            print(f"  Leased by {item['lease']['holder']} ({item['lease']['age_seconds']}s since heartbeat)")
        for c in item["collections"]:
            print(f"  - [{c['id']}] {c['type']} {c['label'] or c['remote_id']}: {c['entities']} entities")
        print()
    return 0


def cmd_test(args, storage, config) -> int:
    """Check that an account's server is reachable and accepts its credentials."""
    account = storage.get_account(args.account)
    if account is None:
        print(f"✗ Account {args.account} not found")
        return 1
    try:
        transport = JmapTransport.from_account(account, config.transport_timeout)
    except ValueError as e:
        print(f"✗ {e}")
        return 1
    try:
        capabilities = transport.ping()
    except AuthenticationRejected:
        print("✗ Server rejected the credentials")
        return 1
    except TransportError as e:
        print(f"✗ Cannot reach server: {e}")
        return 1
    finally:
        transport.close()

    if not account.connected:
        storage.set_account_connected(account.id, True)
    print(f"✓ Server reachable ({len(capabilities)} capabilities)")
    for capability in capabilities:
        print(f"  {capability}")
    return 0
