"""Shared helper functions for CLI commands."""

import json
import re
from typing import Any

from jmapc.types import RunOutcome, RunReport

# Process exit codes per run outcome
EXIT_CODES = {
    RunOutcome.SUCCESS: 0,
    RunOutcome.SKIPPED: 0,
    RunOutcome.PARTIAL: 2,
    RunOutcome.ABORTED: 1,
}


def validate_input(value: str, field_name: str, max_length: int = 1000) -> str:
    """Validate and sanitize CLI inputs."""
    if not isinstance(value, str):
        raise ValueError(f"{field_name} must be a string")

    if len(value) > max_length:
        raise ValueError(f"{field_name} too long (max {max_length} characters)")

    # Remove null bytes and control characters except newlines
    sanitized = re.sub(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]", "", value)

    return sanitized


def print_json(data: Any) -> None:
    """Print data as formatted JSON."""
    print(json.dumps(data, indent=2, default=str))


def mask_secret(secret: str, prefix: int = 4, suffix: int = 4) -> str:
    """Mask a secret for safe display (never returns the full secret)."""
    if not secret:
        return ""
    if len(secret) <= prefix + suffix:
        return "*" * len(secret)
    return f"{secret[:prefix]}...{secret[-suffix:]}"


def print_report(report: RunReport) -> None:
    """Human-readable summary of one run."""
    icons = {
        RunOutcome.SUCCESS: "✓",
        RunOutcome.SKIPPED: "-",
        RunOutcome.PARTIAL: "⚠",
        RunOutcome.ABORTED: "✗",
    }
    print(f"{icons[report.outcome]} Account {report.account_id}: {report.outcome.value}")
    if report.error:
        print(f"  Reason: {report.error}")
    stats = report.statistics
    if report.collections:
        print(
            f"  Local:  +{stats.local_created} ~{stats.local_updated} -{stats.local_deleted}"
        )
        print(
            f"  Remote: +{stats.remote_created} ~{stats.remote_updated} -{stats.remote_deleted}"
        )
        if stats.conflicts:
            print(f"  Conflicts resolved: {stats.conflicts}")
        if report.entities_skipped:
            print(f"  Entities skipped: {report.entities_skipped}")
        if report.collections_failed:
            print(f"  Collections failed: {report.collections_failed}")
    for collection in report.collections:
        if collection.error:
            print(f"    collection {collection.collection_id}: {collection.error}")


def exit_code(report: RunReport) -> int:
    return EXIT_CODES[report.outcome]
