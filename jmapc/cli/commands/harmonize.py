"""Harmonize command for jmapc CLI."""

import logging

from jmapc.harmonize import Orchestrator
from jmapc.protocols import AccountNotFound, AlreadyRunning

from .helpers import EXIT_CODES, exit_code, print_json, print_report

logger = logging.getLogger(__name__)


def cmd_harmonize(args, storage, config) -> int:
    """Run one harmonization cycle for an account, or for all accounts."""
    orchestrator = Orchestrator(storage, config=config)

    if args.all:
        reports = orchestrator.run_all(args.user)
        if args.json:
            print_json({"reports": [r.to_dict() for r in reports], "count": len(reports)})
        else:
            if not reports:
                print("No accounts to harmonize")
            for report in reports:
                print_report(report)
        # Worst outcome wins: aborted (1) over partial (2) over success (0)
        codes = {EXIT_CODES[r.outcome] for r in reports}
        return 1 if 1 in codes else (2 if 2 in codes else 0)

    if args.account is None:
        print("✗ Give an ACCOUNT or --all")
        return 1

    try:
        report = orchestrator.run(args.account, collection_id=args.collection)
    except AccountNotFound as e:
        print(f"✗ {e}")
        return 1
    except AlreadyRunning as e:
        print(f"✗ {e}")
        return 1

    if args.json:
        print_json(report.to_dict())
    else:
        print_report(report)
    return exit_code(report)
