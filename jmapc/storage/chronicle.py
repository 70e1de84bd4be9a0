"""Chronicle log for jmapc storage.

Append-only record of committed local mutations. Protocol-facing
consumers use apex() as a fresh sync token and since() to fetch what
changed after a token they stored earlier.

Stamps are integer microseconds, strictly increasing across the whole
database: each append takes max(now, last stamp + 1) while holding the
write lock, so no two records share a stamp and a record committed after
apex() was read always sorts after it.
"""

import base64
import binascii
import logging
import sqlite3
from typing import List, Optional

from jmapc.types import (
    ChronicleDelta,
    ChronicleEntry,
    ChronicleOperation,
    ChronicleRecord,
)

logger = logging.getLogger(__name__)


def encode_token(stamp: int) -> str:
    """Opaque token for a chronicle stamp."""
    return base64.urlsafe_b64encode(str(int(stamp)).encode("ascii")).decode("ascii")


def decode_token(token: Optional[str]) -> int:
    """Stamp carried by ``token``; 0 (from the beginning) for empty or foreign tokens."""
    if not token:
        return 0
    try:
        return max(0, int(base64.urlsafe_b64decode(token.encode("ascii")).decode("ascii")))
    except (binascii.Error, ValueError, UnicodeError):
        logger.debug(f"Unrecognized chronicle token {token!r}, starting from the beginning")
        return 0


class ChronicleLog:
    """Chronicle operations over the host storage's database.

    Args:
        host: The SQLiteStorage instance providing connections and the clock.
    """

    def __init__(self, host):
        self._host = host

    def _next_stamp(self, conn: sqlite3.Connection) -> int:
        now_us = int(self._host.clock() * 1_000_000)
        last = conn.execute("SELECT MAX(stamp) FROM chronicle").fetchone()[0]
        if last is not None and last >= now_us:
            return last + 1
        return now_us

    def _append(
        self,
        conn: sqlite3.Connection,
        account_id: int,
        collection_id: int,
        entity_id: Optional[int],
        entity_uuid: str,
        operation: ChronicleOperation,
    ) -> ChronicleRecord:
        """Append inside a caller's write transaction (must hold the write lock)."""
        operation = ChronicleOperation(operation)
        stamp = self._next_stamp(conn)
        cursor = conn.execute(
            """INSERT INTO chronicle
               (account_id, collection_id, entity_id, entity_uuid, operation, stamp)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (account_id, collection_id, entity_id, entity_uuid, operation.value, stamp),
        )
        return ChronicleRecord(
            id=cursor.lastrowid,
            account_id=account_id,
            collection_id=collection_id,
            entity_id=entity_id,
            entity_uuid=entity_uuid,
            operation=operation,
            stamp=stamp,
        )

    def append(self, record: ChronicleRecord) -> ChronicleRecord:
        """Append a record in its own transaction. Rejects only on storage failure."""
        with self._host._connect(immediate=True) as conn:
            stored = self._append(
                conn,
                account_id=record.account_id,
                collection_id=record.collection_id,
                entity_id=record.entity_id,
                entity_uuid=record.entity_uuid,
                operation=record.operation,
            )
        record.id = stored.id
        record.stamp = stored.stamp
        return record

    def _apex_stamp(self, conn: sqlite3.Connection, collection_id: int) -> int:
        value = conn.execute(
            "SELECT MAX(stamp) FROM chronicle WHERE collection_id = ?", (collection_id,)
        ).fetchone()[0]
        return int(value or 0)

    def apex(self, collection_id: int) -> str:
        """Latest stamp recorded for the collection, as a fresh sync token."""
        with self._host._connect() as conn:
            return encode_token(self._apex_stamp(conn, collection_id))

    def since(
        self, collection_id: int, token: Optional[str] = None, limit: Optional[int] = None
    ) -> ChronicleDelta:
        """Records strictly after ``token``, oldest first, partitioned by operation.

        The returned token is the collection apex, or the stamp of the last
        returned record when ``limit`` cut the result short. Feeding it back
        into since() resumes exactly after what was returned.
        """
        nadir = decode_token(token)
        with self._host._connect() as conn:
            # Apex first: anything committed later carries a larger stamp
            apex = self._apex_stamp(conn, collection_id)
            query = """SELECT entity_id, entity_uuid, operation, stamp
                       FROM chronicle
                       WHERE collection_id = ? AND stamp > ? AND stamp <= ?
                       ORDER BY stamp, id"""
            params: tuple = (collection_id, nadir, apex)
            if limit is not None:
                if limit < 1:
                    raise ValueError("limit must be positive")
                query += " LIMIT ?"
                params = params + (limit + 1,)
            rows = conn.execute(query, params).fetchall()

        truncated = limit is not None and len(rows) > limit
        if truncated:
            rows = rows[:limit]

        delta = ChronicleDelta(truncated=truncated)
        for row in rows:
            entry = ChronicleEntry(
                entity_id=row["entity_id"], entity_uuid=row["entity_uuid"], stamp=row["stamp"]
            )
            operation = ChronicleOperation(row["operation"])
            if operation is ChronicleOperation.CREATE:
                delta.additions.append(entry)
            elif operation is ChronicleOperation.UPDATE:
                delta.modifications.append(entry)
            else:
                delta.deletions.append(entry)

        if truncated:
            delta.token = encode_token(rows[-1]["stamp"])
        else:
            delta.token = encode_token(max(apex, nadir))
        return delta

    def records(self, collection_id: int) -> List[ChronicleRecord]:
        """All records of a collection in commit order."""
        with self._host._connect() as conn:
            rows = conn.execute(
                """SELECT * FROM chronicle WHERE collection_id = ?
                   ORDER BY stamp, id""",
                (collection_id,),
            ).fetchall()
        return [
            ChronicleRecord(
                id=row["id"],
                account_id=row["account_id"],
                collection_id=row["collection_id"],
                entity_id=row["entity_id"],
                entity_uuid=row["entity_uuid"],
                operation=ChronicleOperation(row["operation"]),
                stamp=row["stamp"],
            )
            for row in rows
        ]

    def count(self, collection_id: Optional[int] = None) -> int:
        with self._host._connect() as conn:
            if collection_id is None:
                return conn.execute("SELECT COUNT(*) FROM chronicle").fetchone()[0]
            return conn.execute(
                "SELECT COUNT(*) FROM chronicle WHERE collection_id = ?", (collection_id,)
            ).fetchone()[0]

    def trim(self, older_than_days: int, collection_id: Optional[int] = None) -> int:
        """Retention trimming: drop records older than the cutoff."""
        if older_than_days < 0:
            raise ValueError("older_than_days must not be negative")
        cutoff = int((self._host.clock() - older_than_days * 86400) * 1_000_000)
        with self._host._connect() as conn:
            if collection_id is None:
                cursor = conn.execute("DELETE FROM chronicle WHERE stamp < ?", (cutoff,))
            else:
                cursor = conn.execute(
                    "DELETE FROM chronicle WHERE collection_id = ? AND stamp < ?",
                    (collection_id, cutoff),
                )
            count = cursor.rowcount
        if count:
            logger.info(f"Trimmed {count} chronicle records older than {older_than_days} days")
        return count
