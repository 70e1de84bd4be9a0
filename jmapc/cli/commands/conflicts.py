"""Conflict history command for jmapc CLI."""

from .helpers import print_json


def cmd_conflicts(args, storage, config) -> int:
    """Show or clear the history of conflicts resolved by policy."""
    if args.clear:
        cleared = storage.clear_conflicts()
        if args.json:
            print_json({"cleared": cleared})
        else:
            print(f"✓ Cleared {cleared} conflict records")
        return 0

    conflicts = storage.get_conflicts(args.account, limit=args.limit)
    if args.json:
        print_json(
            {
                "conflicts": [
                    {
                        "id": c.id,
                        "collection_id": c.collection_id,
                        "entity_id": c.entity_id,
                        "remote_id": c.remote_id,
                        "classification": c.classification.value,
                        "policy": c.policy.value,
                        "winner": c.winner,
                        "resolved_at": c.resolved_at.isoformat() if c.resolved_at else None,
                    }
                    for c in conflicts
                ],
                "count": len(conflicts),
            }
        )
        return 0

    if not conflicts:
        print("No conflicts in history")
        return 0
    print(f"Conflict History ({len(conflicts)} conflicts)")
    for c in conflicts:
        icon = "↑" if c.winner == "local" else "↓"
        when = c.resolved_at.strftime("%Y-%m-%d %H:%M") if c.resolved_at else "unknown"
        print(f"{icon} collection {c.collection_id} entity {c.entity_id or c.remote_id}: "
              f"{c.classification.value}, {c.winner} wins ({c.policy.value})")
        print(f"  Resolved: {when}")
    return 0
