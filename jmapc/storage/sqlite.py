"""SQLite storage backend for jmapc.

The correlation store: persistent mapping of local collections and
entities to their remote identities and last-agreed signatures, plus the
service account rows that carry the harmonization lease.

Every entity mutation that represents a local change commits together
with its chronicle record, or neither commits.
"""

import contextlib
import json
import logging
import sqlite3
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from jmapc.protocols import EntityChanged, StorageFailure
from jmapc.types import (
    ChronicleOperation,
    Classification,
    Collection,
    ConflictPolicy,
    ConflictRecord,
    Entity,
    EntityType,
    RunOutcome,
    RunState,
    ServiceAccount,
    SyncMode,
    parse_datetime,
    utc_now,
)
from jmapc.utils import get_jmapc_home

from .chronicle import ChronicleLog
from .lease import LeaseLock
from .schema import init_db

logger = logging.getLogger(__name__)

# Column prefix per entity type for the mode/policy columns of service_accounts
TYPE_COLUMNS = {
    EntityType.CONTACT: "contacts",
    EntityType.EVENT: "events",
    EntityType.TASK: "tasks",
}


class SQLiteStorage:
    """Correlation store backed by a local SQLite database.

    Connections are opened per operation; the database runs in WAL mode so
    several harmonization workers (threads or processes) can share it.

    Args:
        db_path: Database file. Defaults to ~/.jmapc/jmapc.db.
        clock: Callable returning epoch seconds; used by the lease and
            the chronicle. Tests inject a fake clock here.
    """

    # Seconds SQLite waits on a locked database before failing
    BUSY_TIMEOUT = 5.0

    def __init__(self, db_path: Optional[Path] = None, clock=None):
        import time

        self.db_path = Path(db_path).expanduser().resolve() if db_path else self._default_path()
        self.clock = clock or time.time

        self._collection_locks: Dict[int, threading.Lock] = {}
        self._collection_locks_guard = threading.Lock()

        self.chronicle = ChronicleLog(self)
        self.lease = LeaseLock(self)

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @staticmethod
    def _default_path() -> Path:
        return get_jmapc_home() / "jmapc.db"

    # === Connection Handling ===

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=self.BUSY_TIMEOUT)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute(f"PRAGMA busy_timeout={int(self.BUSY_TIMEOUT * 1000)}")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    @contextlib.contextmanager
    def _connect(self, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        """Context manager that handles the transaction AND closes the connection.

        - Transaction commit on success
        - Transaction rollback on exception
        - sqlite3 errors surface as StorageFailure
        - ``immediate`` takes the write lock up front (BEGIN IMMEDIATE) for
          read-then-write sequences that must not interleave
        """
        try:
            conn = self._get_conn()
        except sqlite3.Error as e:
            raise StorageFailure(f"Cannot open database {self.db_path}: {e}") from e
        try:
            if immediate:
                conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            logger.debug(f"Transaction failed, rolling back: {e}")
            conn.rollback()
            raise StorageFailure(str(e)) from e
        except Exception as e:
            logger.debug(f"Transaction failed, rolling back: {e}")
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self):
        with self._connect() as conn:
            init_db(conn, self.db_path)

    def close(self):
        """Drop the per-collection commit locks. Connections are per-operation."""
        with self._collection_locks_guard:
            self._collection_locks.clear()

    def collection_lock(self, collection_id: int) -> threading.Lock:
        """Per-collection commit lock shared by every reconciler in this process."""
        with self._collection_locks_guard:
            lock = self._collection_locks.get(collection_id)
            if lock is None:
                lock = threading.Lock()
                self._collection_locks[collection_id] = lock
            return lock

    # === Helpers ===

    def _now(self) -> str:
        return utc_now()

    @staticmethod
    def _to_json(data: Any) -> Optional[str]:
        if data is None:
            return None
        return json.dumps(data, sort_keys=True)

    @staticmethod
    def _from_json(s: Optional[str]) -> Any:
        if not s:
            return None
        try:
            return json.loads(s)
        except json.JSONDecodeError:
            return None

    @staticmethod
    def _iso(value: Optional[datetime]) -> Optional[str]:
        if value is None:
            return None
        return value.isoformat() if isinstance(value, datetime) else str(value)

    # === Service Accounts ===

    def _row_to_account(self, row: sqlite3.Row) -> ServiceAccount:
        modes = {}
        policies = {}
        for entity_type, prefix in TYPE_COLUMNS.items():
            try:
                modes[entity_type] = SyncMode(row[f"{prefix}_mode"] or SyncMode.OFF.value)
            except ValueError:
                logger.warning(f"Unknown {prefix}_mode {row[f'{prefix}_mode']!r}, using off")
                modes[entity_type] = SyncMode.OFF
            try:
                policies[entity_type] = ConflictPolicy.parse(
                    row[f"{prefix}_policy"] or ConflictPolicy.LOCAL_WINS.value
                )
            except ValueError:
                logger.warning(f"Unknown {prefix}_policy {row[f'{prefix}_policy']!r}, using local-wins")
                policies[entity_type] = ConflictPolicy.LOCAL_WINS
        return ServiceAccount(
            id=row["id"],
            uuid=row["uuid"],
            user_id=row["user_id"],
            label=row["label"],
            connection=self._from_json(row["connection"]) or {},
            enabled=bool(row["enabled"]),
            connected=bool(row["connected"]),
            modes=modes,
            policies=policies,
            locked=bool(row["locked"]),
            lease_holder=row["lease_holder"],
            lease_heartbeat=row["lease_heartbeat"],
            harmonization_state=RunState(row["harmonization_state"] or RunState.IDLE.value),
            harmonization_start=parse_datetime(row["harmonization_start"]),
            harmonization_end=parse_datetime(row["harmonization_end"]),
            last_outcome=RunOutcome(row["last_outcome"]) if row["last_outcome"] else None,
            last_error=row["last_error"],
            created_at=parse_datetime(row["created_at"]),
        )

    def _account_settings(self, account: ServiceAccount) -> Dict[str, Any]:
        values: Dict[str, Any] = {
            "user_id": account.user_id,
            "label": account.label,
            "connection": self._to_json(account.connection or {}),
            "enabled": int(account.enabled),
            "connected": int(account.connected),
        }
        for entity_type, prefix in TYPE_COLUMNS.items():
            values[f"{prefix}_mode"] = account.mode_for(entity_type).value
            values[f"{prefix}_policy"] = account.policy_for(entity_type).value
        return values

    def create_account(self, account: ServiceAccount) -> ServiceAccount:
        """Insert a new service account and return it with id and uuid set."""
        values = self._account_settings(account)
        values["uuid"] = account.uuid or str(uuid.uuid4())
        values["created_at"] = self._now()
        columns = ", ".join(values)
        placeholders = ", ".join("?" for _ in values)
        with self._connect() as conn:
            cursor = conn.execute(
                f"INSERT INTO service_accounts ({columns}) VALUES ({placeholders})",
                tuple(values.values()),
            )
            account_id = cursor.lastrowid
        logger.info(f"Created service account {account_id} for user {account.user_id}")
        return self.get_account(account_id)

    def get_account(self, account_id: int) -> Optional[ServiceAccount]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM service_accounts WHERE id = ?", (account_id,)
            ).fetchone()
        return self._row_to_account(row) if row else None

    def list_accounts(self, user_id: Optional[str] = None) -> List[ServiceAccount]:
        with self._connect() as conn:
            if user_id is None:
                rows = conn.execute("SELECT * FROM service_accounts ORDER BY id").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM service_accounts WHERE user_id = ? ORDER BY id", (user_id,)
                ).fetchall()
        return [self._row_to_account(row) for row in rows]

    def update_account(self, account: ServiceAccount) -> ServiceAccount:
        """Persist settings of an account. Lease and run columns are left untouched."""
        if account.id is None:
            raise ValueError("Cannot update an account without id")
        values = self._account_settings(account)
        assignments = ", ".join(f"{column} = ?" for column in values)
        with self._connect() as conn:
            conn.execute(
                f"UPDATE service_accounts SET {assignments} WHERE id = ?",
                (*values.values(), account.id),
            )
        return self.get_account(account.id)

    def set_account_connected(self, account_id: int, connected: bool) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE service_accounts SET connected = ? WHERE id = ?",
                (int(connected), account_id),
            )

    def record_run_state(
        self,
        account_id: int,
        state: RunState,
        started: bool = False,
        outcome: Optional[RunOutcome] = None,
        error: Optional[str] = None,
    ) -> None:
        """Record orchestrator state; ``outcome`` also stamps the run end."""
        with self._connect() as conn:
            if started:
                conn.execute(
                    """UPDATE service_accounts
                       SET harmonization_state = ?, harmonization_start = ?
                       WHERE id = ?""",
                    (state.value, self._now(), account_id),
                )
            elif outcome is not None:
                conn.execute(
                    """UPDATE service_accounts
                       SET harmonization_state = ?, harmonization_end = ?,
                           last_outcome = ?, last_error = ?
                       WHERE id = ?""",
                    (state.value, self._now(), outcome.value, error, account_id),
                )
            else:
                conn.execute(
                    "UPDATE service_accounts SET harmonization_state = ? WHERE id = ?",
                    (state.value, account_id),
                )

    def delete_account(self, account_id: int) -> bool:
        """Delete an account with its collections, entities, chronicle and conflicts."""
        with self._connect() as conn:
            conn.execute(
                """DELETE FROM entities WHERE collection_id IN
                   (SELECT id FROM collections WHERE account_id = ?)""",
                (account_id,),
            )
            conn.execute("DELETE FROM chronicle WHERE account_id = ?", (account_id,))
            conn.execute(
                "DELETE FROM harmonization_conflicts WHERE account_id = ?", (account_id,)
            )
            conn.execute("DELETE FROM collections WHERE account_id = ?", (account_id,))
            cursor = conn.execute("DELETE FROM service_accounts WHERE id = ?", (account_id,))
            deleted = cursor.rowcount > 0
        if deleted:
            logger.info(f"Deleted service account {account_id}")
        return deleted

    # === Collections ===

    def _row_to_collection(self, row: sqlite3.Row) -> Collection:
        return Collection(
            id=row["id"],
            account_id=row["account_id"],
            entity_type=EntityType(row["entity_type"]),
            uuid=row["uuid"],
            label=row["label"],
            remote_id=row["remote_id"],
            local_state=row["local_state"],
            remote_state=row["remote_state"],
            enabled=bool(row["enabled"]),
            harmonized_at=parse_datetime(row["harmonized_at"]),
            created_at=parse_datetime(row["created_at"]),
        )

    def create_collection(self, collection: Collection) -> Collection:
        with self._connect() as conn:
            if conn.execute(
                "SELECT 1 FROM service_accounts WHERE id = ?", (collection.account_id,)
            ).fetchone() is None:
                raise ValueError(f"Account {collection.account_id} does not exist")
            cursor = conn.execute(
                """INSERT INTO collections
                   (account_id, entity_type, uuid, label, remote_id, local_state,
                    remote_state, enabled, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    collection.account_id,
                    EntityType(collection.entity_type).value,
                    collection.uuid or str(uuid.uuid4()),
                    collection.label,
                    collection.remote_id,
                    collection.local_state,
                    collection.remote_state,
                    int(collection.enabled),
                    self._now(),
                ),
            )
            collection_id = cursor.lastrowid
        return self.get_collection(collection_id)

    def get_collection(self, collection_id: int) -> Optional[Collection]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM collections WHERE id = ?", (collection_id,)
            ).fetchone()
        return self._row_to_collection(row) if row else None

    def get_collections(
        self, account_id: int, entity_type: Optional[EntityType] = None
    ) -> List[Collection]:
        with self._connect() as conn:
            if entity_type is None:
                rows = conn.execute(
                    "SELECT * FROM collections WHERE account_id = ? ORDER BY id", (account_id,)
                ).fetchall()
            else:
                rows = conn.execute(
                    """SELECT * FROM collections
                       WHERE account_id = ? AND entity_type = ? ORDER BY id""",
                    (account_id, EntityType(entity_type).value),
                ).fetchall()
        return [self._row_to_collection(row) for row in rows]

    def get_collection_by_remote_id(self, account_id: int, remote_id: str) -> Optional[Collection]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM collections WHERE account_id = ? AND remote_id = ?",
                (account_id, remote_id),
            ).fetchone()
        return self._row_to_collection(row) if row else None

    def update_collection_state(
        self,
        collection_id: int,
        remote_state: Optional[str],
        local_state: Optional[str],
    ) -> None:
        """Commit the watermarks reached by a completed harmonization pass."""
        with self._connect() as conn:
            conn.execute(
                """UPDATE collections
                   SET remote_state = ?, local_state = ?, harmonized_at = ?
                   WHERE id = ?""",
                (remote_state, local_state, self._now(), collection_id),
            )

    def set_collection_enabled(self, collection_id: int, enabled: bool) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE collections SET enabled = ? WHERE id = ?", (int(enabled), collection_id)
            )

    def delete_collection(self, collection_id: int) -> bool:
        """Delete a collection with its entities, chronicle and conflicts."""
        with self._connect() as conn:
            conn.execute("DELETE FROM entities WHERE collection_id = ?", (collection_id,))
            conn.execute("DELETE FROM chronicle WHERE collection_id = ?", (collection_id,))
            conn.execute(
                "DELETE FROM harmonization_conflicts WHERE collection_id = ?", (collection_id,)
            )
            cursor = conn.execute("DELETE FROM collections WHERE id = ?", (collection_id,))
            return cursor.rowcount > 0

    # === Entities ===

    def _row_to_entity(self, row: sqlite3.Row) -> Entity:
        return Entity(
            id=row["id"],
            collection_id=row["collection_id"],
            uuid=row["uuid"],
            content=self._from_json(row["content"]) or {},
            signature=row["signature"],
            remote_id=row["remote_id"],
            last_remote_signature=row["last_remote_signature"],
            modified_at=parse_datetime(row["modified_at"]),
            deleted=bool(row["deleted"]),
            pinned=bool(row["pinned"]),
            created_at=parse_datetime(row["created_at"]),
            updated_at=parse_datetime(row["updated_at"]),
        )

    def get_entity(self, entity_id: int) -> Optional[Entity]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM entities WHERE id = ?", (entity_id,)).fetchone()
        return self._row_to_entity(row) if row else None

    def get_entity_by_uuid(self, collection_id: int, entity_uuid: str) -> Optional[Entity]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM entities WHERE collection_id = ? AND uuid = ?",
                (collection_id, entity_uuid),
            ).fetchone()
        return self._row_to_entity(row) if row else None

    def get_entity_by_remote_id(self, collection_id: int, remote_id: str) -> Optional[Entity]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM entities WHERE collection_id = ? AND remote_id = ?",
                (collection_id, remote_id),
            ).fetchone()
        return self._row_to_entity(row) if row else None

    def get_entities(self, collection_id: int, include_deleted: bool = False) -> List[Entity]:
        query = "SELECT * FROM entities WHERE collection_id = ?"
        if not include_deleted:
            query += " AND deleted = 0"
        with self._connect() as conn:
            rows = conn.execute(query + " ORDER BY id", (collection_id,)).fetchall()
        return [self._row_to_entity(row) for row in rows]

    def upsert_entity(
        self,
        entity: Entity,
        operation: Optional[ChronicleOperation] = None,
        expected: Optional[Entity] = None,
    ) -> Entity:
        """Insert or update an entity.

        When ``operation`` is given the mutation is a local change and one
        chronicle record is appended in the same transaction. Correlation-only
        updates (remote id, last remote signature) pass no operation.

        With ``expected`` the update only applies while the stored row still
        has that snapshot's signature and deleted flag; otherwise nothing is
        written and EntityChanged is raised.
        """
        now = self._now()
        with self._connect(immediate=operation is not None) as conn:
            collection = conn.execute(
                "SELECT account_id FROM collections WHERE id = ?", (entity.collection_id,)
            ).fetchone()
            if collection is None:
                raise ValueError(f"Collection {entity.collection_id} does not exist")

            values = (
                self._to_json(entity.content or {}),
                entity.signature,
                entity.remote_id,
                entity.last_remote_signature,
                self._iso(entity.modified_at),
                int(entity.deleted),
                int(entity.pinned),
                now,
            )
            if entity.id is None:
                entity.uuid = entity.uuid or str(uuid.uuid4())
                cursor = conn.execute(
                    """INSERT INTO entities
                       (content, signature, remote_id, last_remote_signature, modified_at,
                        deleted, pinned, updated_at, collection_id, uuid, created_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (*values, entity.collection_id, entity.uuid, now),
                )
                entity.id = cursor.lastrowid
                entity.created_at = parse_datetime(now)
            else:
                query = """UPDATE entities
                       SET content = ?, signature = ?, remote_id = ?,
                           last_remote_signature = ?, modified_at = ?, deleted = ?,
                           pinned = ?, updated_at = ?
                       WHERE id = ?"""
                params = (*values, entity.id)
                if expected is not None:
                    query += " AND signature IS ? AND deleted = ?"
                    params += (expected.signature, int(expected.deleted))
                cursor = conn.execute(query, params)
                if cursor.rowcount == 0:
                    if expected is not None:
                        raise EntityChanged(entity.id)
                    raise ValueError(f"Entity {entity.id} does not exist")
            entity.updated_at = parse_datetime(now)

            if operation is not None:
                self.chronicle._append(
                    conn,
                    account_id=collection["account_id"],
                    collection_id=entity.collection_id,
                    entity_id=entity.id,
                    entity_uuid=entity.uuid,
                    operation=operation,
                )
        return entity

    def delete_entity(
        self, entity_id: int, chronicle: bool = True, expected: Optional[Entity] = None
    ) -> bool:
        """Hard-delete an entity row.

        With ``chronicle`` the deletion is a local change and gets a
        ``delete`` chronicle record in the same transaction. Purging a
        tombstone whose deletion was already chronicled passes False.
        ``expected`` makes the delete conditional, as in upsert_entity().
        """
        with self._connect(immediate=chronicle or expected is not None) as conn:
            row = conn.execute(
                """SELECT e.id, e.uuid, e.collection_id, e.signature, e.deleted, c.account_id
                   FROM entities e JOIN collections c ON c.id = e.collection_id
                   WHERE e.id = ?""",
                (entity_id,),
            ).fetchone()
            if row is None:
                if expected is not None:
                    raise EntityChanged(entity_id)
                return False
            if expected is not None and (
                row["signature"] != expected.signature or bool(row["deleted"]) != expected.deleted
            ):
                raise EntityChanged(entity_id)
            conn.execute("DELETE FROM entities WHERE id = ?", (entity_id,))
            if chronicle:
                self.chronicle._append(
                    conn,
                    account_id=row["account_id"],
                    collection_id=row["collection_id"],
                    entity_id=row["id"],
                    entity_uuid=row["uuid"],
                    operation=ChronicleOperation.DELETE,
                )
        return True

    def link_entity(
        self, entity_id: int, remote_id: Optional[str], last_remote_signature: Optional[str]
    ) -> bool:
        """Update only the correlation columns of an entity; False if it is gone."""
        with self._connect() as conn:
            cursor = conn.execute(
                """UPDATE entities SET remote_id = ?, last_remote_signature = ?, updated_at = ?
                   WHERE id = ?""",
                (remote_id, last_remote_signature, self._now(), entity_id),
            )
        return cursor.rowcount > 0

    def set_entity_pinned(self, entity_id: int, pinned: bool) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE entities SET pinned = ? WHERE id = ?", (int(pinned), entity_id)
            )
        return cursor.rowcount > 0

    def count_entities(self, collection_id: int) -> int:
        with self._connect() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM entities WHERE collection_id = ? AND deleted = 0",
                (collection_id,),
            ).fetchone()[0]

    # === Conflict History ===

    def save_conflict(self, account_id: int, conflict: ConflictRecord) -> int:
        resolved_at = conflict.resolved_at or parse_datetime(self._now())
        with self._connect() as conn:
            cursor = conn.execute(
                """INSERT INTO harmonization_conflicts
                   (account_id, collection_id, entity_id, remote_id, classification,
                    policy, winner, local_signature, remote_signature, resolved_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    account_id,
                    conflict.collection_id,
                    conflict.entity_id,
                    conflict.remote_id,
                    conflict.classification.value,
                    conflict.policy.value,
                    conflict.winner,
                    conflict.local_signature,
                    conflict.remote_signature,
                    self._iso(resolved_at),
                ),
            )
            conflict.id = cursor.lastrowid
            conflict.resolved_at = resolved_at
        return conflict.id

    def get_conflicts(
        self, account_id: Optional[int] = None, limit: int = 100
    ) -> List[ConflictRecord]:
        with self._connect() as conn:
            if account_id is None:
                rows = conn.execute(
                    """SELECT * FROM harmonization_conflicts
                       ORDER BY resolved_at DESC, id DESC LIMIT ?""",
                    (limit,),
                ).fetchall()
            else:
                rows = conn.execute(
                    """SELECT * FROM harmonization_conflicts WHERE account_id = ?
                       ORDER BY resolved_at DESC, id DESC LIMIT ?""",
                    (account_id, limit),
                ).fetchall()
        return [
            ConflictRecord(
                id=row["id"],
                collection_id=row["collection_id"],
                entity_id=row["entity_id"],
                remote_id=row["remote_id"],
                classification=Classification(row["classification"]),
                policy=ConflictPolicy(row["policy"]),
                winner=row["winner"],
                local_signature=row["local_signature"],
                remote_signature=row["remote_signature"],
                resolved_at=parse_datetime(row["resolved_at"]),
            )
            for row in rows
        ]

    def clear_conflicts(self, before: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            if before:
                cursor = conn.execute(
                    "DELETE FROM harmonization_conflicts WHERE resolved_at < ?",
                    (before.isoformat(),),
                )
            else:
                cursor = conn.execute("DELETE FROM harmonization_conflicts")
            return cursor.rowcount
