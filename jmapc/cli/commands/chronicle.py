"""Chronicle commands for jmapc CLI."""

from .helpers import print_json


def cmd_chronicle(args, storage, config) -> int:
    """Inspect or trim the chronicle."""
    if args.chronicle_action == "since":
        if storage.get_collection(args.collection) is None:
            print(f"✗ Collection {args.collection} not found")
            return 1
        delta = storage.chronicle.since(args.collection, args.token, args.limit)
        if args.json:
            print_json(
                {
                    "collection_id": args.collection,
                    "token": delta.token,
                    "truncated": delta.truncated,
                    "additions": [e.entity_uuid for e in delta.additions],
                    "modifications": [e.entity_uuid for e in delta.modifications],
                    "deletions": [e.entity_uuid for e in delta.deletions],
                }
            )
            return 0
        print(f"Collection {args.collection}: {delta.count} changes")
        for label, entries in (
            ("+", delta.additions),
            ("~", delta.modifications),
            ("-", delta.deletions),
        ):
            for entry in entries:
                print(f"  {label} {entry.entity_uuid}")
        print(f"Token: {delta.token}" + (" (more available)" if delta.truncated else ""))
        return 0

    elif args.chronicle_action == "trim":
        days = args.days if args.days is not None else config.chronicle_retention_days
        count = storage.chronicle.trim(days)
        print(f"✓ Trimmed {count} chronicle records older than {days} days")
        return 0

    return 1
