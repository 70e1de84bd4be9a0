"""Tests for the SQLite correlation store.

Tests:
- Account CRUD, mode/policy round trip, legacy policy codes
- Collections: account ownership, remote id lookup, watermarks
- Entities: upsert/delete with and without chronicle records
- Atomicity of entity writes and their chronicle records
- Cascading deletes
- Conflict history
"""

import pytest

from conftest import REMOTE_BOOK, contact

from jmapc.protocols import EntityChanged, StorageFailure
from jmapc.storage import SCHEMA_VERSION, validate_table_name
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
)


class TestAccounts:
    """Service account rows."""

    def test_create_and_get_round_trip(self, storage, account):
        loaded = storage.get_account(account.id)
        assert loaded.user_id == "alice"
        assert loaded.uuid
        assert loaded.connection["base_url"] == "https://jmap.example.com"
        assert loaded.mode_for(EntityType.CONTACT) is SyncMode.CACHED
        assert loaded.mode_for(EntityType.EVENT) is SyncMode.OFF
        assert loaded.policy_for(EntityType.CONTACT) is ConflictPolicy.LOCAL_WINS
        assert loaded.locked is False
        assert loaded.harmonization_state is RunState.IDLE

    def test_missing_account_returns_none(self, storage):
        assert storage.get_account(999) is None

    def test_list_accounts_by_user(self, storage, account):
        storage.create_account(ServiceAccount(id=None, user_id="bob"))
        assert [a.user_id for a in storage.list_accounts()] == ["alice", "bob"]
        assert [a.user_id for a in storage.list_accounts("bob")] == ["bob"]

    def test_update_account_keeps_lease(self, storage, account, clock):
        storage.lease.acquire(account.id, "h1", 60)
        account.label = "Renamed"
        account.modes[EntityType.EVENT] = SyncMode.LIVE
        updated = storage.update_account(account)
        assert updated.label == "Renamed"
        assert updated.mode_for(EntityType.EVENT) is SyncMode.LIVE
        assert updated.locked is True
        assert updated.lease_holder == "h1"

    def test_legacy_policy_codes_are_read(self, storage, account):
        with storage._connect() as conn:
            conn.execute(
                "UPDATE service_accounts SET contacts_policy = 'R', events_policy = 'N' WHERE id = ?",
                (account.id,),
            )
        loaded = storage.get_account(account.id)
        assert loaded.policy_for(EntityType.CONTACT) is ConflictPolicy.REMOTE_WINS
        assert loaded.policy_for(EntityType.EVENT) is ConflictPolicy.NEWEST_WINS

    def test_record_run_state(self, storage, account):
        storage.record_run_state(account.id, RunState.RUNNING, started=True)
        running = storage.get_account(account.id)
        assert running.harmonization_state is RunState.RUNNING
        assert running.harmonization_start is not None

        storage.record_run_state(
            account.id, RunState.IDLE, outcome=RunOutcome.PARTIAL, error="1 collections failed"
        )
        done = storage.get_account(account.id)
        assert done.harmonization_state is RunState.IDLE
        assert done.last_outcome is RunOutcome.PARTIAL
        assert done.last_error == "1 collections failed"
        assert done.harmonization_end is not None

    def test_delete_account_cascades(self, storage, account, collection, local):
        local.create(collection.id, contact("Ada"))
        assert storage.delete_account(account.id) is True
        assert storage.get_account(account.id) is None
        assert storage.get_collection(collection.id) is None
        assert storage.get_entities(collection.id, include_deleted=True) == []
        assert storage.chronicle.count(collection.id) == 0

    def test_delete_missing_account(self, storage):
        assert storage.delete_account(42) is False


class TestCollections:
    """Collection rows."""

    def test_collection_requires_account(self, storage):
        with pytest.raises(ValueError):
            storage.create_collection(
                Collection(id=None, account_id=12345, entity_type=EntityType.CONTACT)
            )

    def test_lookup_by_remote_id(self, storage, account, collection):
        found = storage.get_collection_by_remote_id(account.id, REMOTE_BOOK)
        assert found.id == collection.id
        assert storage.get_collection_by_remote_id(account.id, "nope") is None

    def test_remote_id_is_unique_per_account(self, storage, account, collection):
        with pytest.raises(StorageFailure):
            storage.create_collection(
                Collection(
                    id=None,
                    account_id=account.id,
                    entity_type=EntityType.CONTACT,
                    remote_id=REMOTE_BOOK,
                )
            )

    def test_filter_by_entity_type(self, storage, account, collection):
        storage.create_collection(
            Collection(id=None, account_id=account.id, entity_type=EntityType.EVENT, remote_id="cal")
        )
        events = storage.get_collections(account.id, EntityType.EVENT)
        assert [c.remote_id for c in events] == ["cal"]
        assert len(storage.get_collections(account.id)) == 2

    def test_close_drops_commit_locks(self, storage, collection):
        lock = storage.collection_lock(collection.id)
        assert storage.collection_lock(collection.id) is lock
        storage.close()
        assert storage.collection_lock(collection.id) is not lock

    def test_update_collection_state(self, storage, collection):
        storage.update_collection_state(collection.id, "s42", "tok")
        loaded = storage.get_collection(collection.id)
        assert loaded.remote_state == "s42"
        assert loaded.local_state == "tok"
        assert loaded.harmonized_at is not None


class TestEntities:
    """Entity rows and their chronicle records."""

    def _entity(self, collection, uuid="e-1", **kwargs):
        return Entity(
            id=None,
            collection_id=collection.id,
            uuid=uuid,
            content={"rev": "A"},
            signature="A",
            **kwargs,
        )

    def test_upsert_without_operation_writes_no_chronicle(self, storage, collection):
        entity = storage.upsert_entity(self._entity(collection, remote_id="r1"))
        assert entity.id is not None
        assert storage.chronicle.count(collection.id) == 0
        assert storage.get_entity_by_remote_id(collection.id, "r1").uuid == "e-1"

    def test_upsert_with_operation_writes_one_record(self, storage, collection):
        entity = storage.upsert_entity(self._entity(collection), operation=ChronicleOperation.CREATE)
        records = storage.chronicle.records(collection.id)
        assert len(records) == 1
        assert records[0].operation is ChronicleOperation.CREATE
        assert records[0].entity_id == entity.id
        assert records[0].entity_uuid == "e-1"

    def test_failed_upsert_leaves_no_chronicle(self, storage, collection):
        storage.upsert_entity(self._entity(collection), operation=ChronicleOperation.CREATE)
        with pytest.raises(StorageFailure):
            # Same uuid in the same collection violates the uniqueness constraint
            storage.upsert_entity(self._entity(collection), operation=ChronicleOperation.CREATE)
        assert storage.chronicle.count(collection.id) == 1

    def test_upsert_into_missing_collection(self, storage, collection):
        entity = self._entity(collection)
        entity.collection_id = 999
        with pytest.raises(ValueError):
            storage.upsert_entity(entity, operation=ChronicleOperation.CREATE)
        assert storage.chronicle.count() == 0

    def test_update_missing_entity(self, storage, collection):
        entity = self._entity(collection)
        entity.id = 999
        with pytest.raises(ValueError):
            storage.upsert_entity(entity)

    def test_delete_with_and_without_chronicle(self, storage, collection):
        first = storage.upsert_entity(self._entity(collection, uuid="a"))
        second = storage.upsert_entity(self._entity(collection, uuid="b"))

        assert storage.delete_entity(first.id) is True
        assert storage.delete_entity(second.id, chronicle=False) is True
        records = storage.chronicle.records(collection.id)
        assert [(r.entity_uuid, r.operation) for r in records] == [("a", ChronicleOperation.DELETE)]
        assert storage.delete_entity(first.id) is False

    def test_tombstones_hidden_by_default(self, storage, collection):
        storage.upsert_entity(self._entity(collection, uuid="live"))
        storage.upsert_entity(self._entity(collection, uuid="gone", deleted=True))
        assert [e.uuid for e in storage.get_entities(collection.id)] == ["live"]
        assert len(storage.get_entities(collection.id, include_deleted=True)) == 2
        assert storage.count_entities(collection.id) == 1

    def test_conditional_update_applies_to_unchanged_row(self, storage, collection):
        stored = storage.upsert_entity(self._entity(collection))
        snapshot = storage.get_entity(stored.id)

        stored.last_remote_signature = "A"
        storage.upsert_entity(stored, expected=snapshot)

        assert storage.get_entity(stored.id).last_remote_signature == "A"

    def test_conditional_update_refuses_changed_row(self, storage, collection):
        stored = storage.upsert_entity(self._entity(collection))
        snapshot = storage.get_entity(stored.id)
        edited = storage.get_entity(stored.id)
        edited.content, edited.signature = {"rev": "B"}, "B"
        storage.upsert_entity(edited, operation=ChronicleOperation.UPDATE)

        stale = storage.get_entity(stored.id)
        stale.content, stale.signature = {"rev": "C"}, "C"
        with pytest.raises(EntityChanged):
            storage.upsert_entity(stale, operation=ChronicleOperation.UPDATE, expected=snapshot)

        assert storage.get_entity(stored.id).signature == "B"
        assert storage.chronicle.count(collection.id) == 1

    def test_conditional_delete(self, storage, collection):
        stored = storage.upsert_entity(self._entity(collection))
        snapshot = storage.get_entity(stored.id)
        snapshot.signature = "old"

        with pytest.raises(EntityChanged):
            storage.delete_entity(stored.id, expected=snapshot)
        assert storage.get_entity(stored.id) is not None
        assert storage.chronicle.count(collection.id) == 0

        assert storage.delete_entity(stored.id, expected=storage.get_entity(stored.id)) is True
        with pytest.raises(EntityChanged):
            storage.delete_entity(stored.id, expected=snapshot)

    def test_link_and_pin_leave_content_alone(self, storage, collection):
        stored = storage.upsert_entity(self._entity(collection))

        assert storage.link_entity(stored.id, "r9", "A") is True
        assert storage.set_entity_pinned(stored.id, True) is True

        loaded = storage.get_entity(stored.id)
        assert (loaded.remote_id, loaded.last_remote_signature, loaded.pinned) == ("r9", "A", True)
        assert loaded.content == {"rev": "A"}
        assert storage.chronicle.count(collection.id) == 0
        assert storage.link_entity(stored.id + 1, "r9", "A") is False
        assert storage.set_entity_pinned(stored.id + 1, True) is False

    def test_content_round_trip(self, storage, collection):
        entity = self._entity(collection)
        entity.content = contact("Ada", emails={"e1": {"address": "ada@example.com"}})
        stored = storage.upsert_entity(entity)
        loaded = storage.get_entity(stored.id)
        assert loaded.content == entity.content
        assert loaded.pinned is False


class TestConflicts:
    """Conflict history rows."""

    def test_save_and_list(self, storage, account, collection):
        storage.save_conflict(
            account.id,
            ConflictRecord(
                id=None,
                collection_id=collection.id,
                entity_id=1,
                remote_id="r1",
                classification=Classification.CONFLICT,
                policy=ConflictPolicy.REMOTE_WINS,
                winner="remote",
                local_signature="A2",
                remote_signature="B",
            ),
        )
        conflicts = storage.get_conflicts(account.id)
        assert len(conflicts) == 1
        assert conflicts[0].winner == "remote"
        assert conflicts[0].resolved_at is not None
        assert storage.get_conflicts(account.id + 1) == []

        assert storage.clear_conflicts() == 1
        assert storage.get_conflicts() == []


class TestSchema:
    def test_table_allowlist(self):
        assert validate_table_name("entities") == "entities"
        with pytest.raises(ValueError):
            validate_table_name("entities; DROP TABLE entities")

    def test_schema_version_recorded(self, storage):
        with storage._connect() as conn:
            version = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()[0]
        assert version == SCHEMA_VERSION
