"""Lease lock for jmapc storage.

Per-account mutual exclusion for harmonization runs, stored on the
service account row so it is visible to every worker process and
survives restarts.

States: Unlocked -> Locked(holder, heartbeat) -> Unlocked.
A lease is stale once ``now - heartbeat > lease_timeout``; a stale lease
may be taken over by another holder.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from jmapc.protocols import AccountNotFound, LockHeld, LockLost

logger = logging.getLogger(__name__)


@dataclass
class LeaseStatus:
    """Snapshot of an account lease."""

    account_id: int
    locked: bool
    holder: Optional[str]
    heartbeat: Optional[float]
    age: Optional[float]


class LeaseLock:
    """Lease operations over the host storage's service_accounts table.

    Args:
        host: The SQLiteStorage instance providing connections and the clock.
    """

    def __init__(self, host):
        self._host = host

    def acquire(self, account_id: int, holder_id: str, lease_timeout: float) -> None:
        """Take the lease, or take over a stale one.

        Raises:
            LockHeld: another holder has a live lease.
            AccountNotFound: no such account.
        """
        if lease_timeout <= 0:
            raise ValueError("lease_timeout must be positive")
        now = self._host.clock()
        # The read and the write share one write-locked transaction
        with self._host._connect(immediate=True) as conn:
            row = conn.execute(
                "SELECT locked, lease_holder, lease_heartbeat FROM service_accounts WHERE id = ?",
                (account_id,),
            ).fetchone()
            if row is None:
                raise AccountNotFound(account_id)

            if row["locked"]:
                heartbeat = row["lease_heartbeat"] or 0.0
                age = now - heartbeat
                if age <= lease_timeout:
                    raise LockHeld(account_id, row["lease_holder"])
                logger.warning(
                    f"Taking over stale lease on account {account_id} from "
                    f"{row['lease_holder']} (last heartbeat {age:.0f}s ago, "
                    f"timeout {lease_timeout:.0f}s)"
                )

            conn.execute(
                """UPDATE service_accounts
                   SET locked = 1, lease_holder = ?, lease_heartbeat = ?
                   WHERE id = ?""",
                (holder_id, now, account_id),
            )
        logger.debug(f"Lease on account {account_id} acquired by {holder_id}")

    def heartbeat(self, account_id: int, holder_id: str) -> None:
        """Refresh the lease timestamp.

        Raises:
            LockLost: the lease is no longer held by ``holder_id``.
        """
        now = self._host.clock()
        with self._host._connect() as conn:
            cursor = conn.execute(
                """UPDATE service_accounts SET lease_heartbeat = ?
                   WHERE id = ? AND locked = 1 AND lease_holder = ?""",
                (now, account_id, holder_id),
            )
            if cursor.rowcount == 0:
                raise LockLost(account_id, holder_id)

    def release(self, account_id: int, holder_id: str) -> bool:
        """Clear the lease if ``holder_id`` holds it. Releasing a foreign lease is a no-op."""
        with self._host._connect() as conn:
            cursor = conn.execute(
                """UPDATE service_accounts
                   SET locked = 0, lease_holder = NULL, lease_heartbeat = NULL
                   WHERE id = ? AND lease_holder = ?""",
                (account_id, holder_id),
            )
            released = cursor.rowcount > 0
        if released:
            logger.debug(f"Lease on account {account_id} released by {holder_id}")
        return released

    def status(self, account_id: int) -> Optional[LeaseStatus]:
        with self._host._connect() as conn:
            row = conn.execute(
                "SELECT locked, lease_holder, lease_heartbeat FROM service_accounts WHERE id = ?",
                (account_id,),
            ).fetchone()
        if row is None:
            return None
        heartbeat = row["lease_heartbeat"]
        return LeaseStatus(
            account_id=account_id,
            locked=bool(row["locked"]),
            holder=row["lease_holder"],
            heartbeat=heartbeat,
            age=(self._host.clock() - heartbeat) if heartbeat is not None else None,
        )


class LeaseKeeper:
    """Heartbeats one held lease at a bounded interval.

    ``beat()`` is called at every checkpoint of a run; it only touches the
    database once ``interval`` seconds have passed since the last refresh.
    """

    def __init__(self, lease: LeaseLock, account_id: int, holder_id: str, interval: float, clock):
        self.lease = lease
        self.account_id = account_id
        self.holder_id = holder_id
        self.interval = interval
        self._clock = clock
        self._last_beat = clock()

    def beat(self, force: bool = False) -> None:
        now = self._clock()
        if force or now - self._last_beat >= self.interval:
            self.lease.heartbeat(self.account_id, self.holder_id)
            self._last_beat = now
