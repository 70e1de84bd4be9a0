"""Tests for the harmonization orchestrator.

Tests:
- Discovery of remote collections, pull and push end to end
- Run outcomes: success, partial, skipped, aborted
- Lease handling: held elsewhere, lost mid-run, always released
- Cancellation and deadlines
- Deferred entities keep the previous remote state
- run_all across accounts
"""

import threading

import pytest

from conftest import REMOTE_BOOK, contact

from jmapc.config import HarmonizationConfig
from jmapc.harmonize import Orchestrator
from jmapc.protocols import (
    AccountNotFound,
    AlreadyRunning,
    AuthenticationRejected,
    TransportTimeout,
)
from jmapc.testing import InMemoryTransport
from jmapc.types import (
    Collection,
    EntityType,
    RunOutcome,
    RunState,
    ServiceAccount,
    SyncMode,
)


@pytest.fixture
def config():
    return HarmonizationConfig(lease_timeout=60, chronicle_retention_days=30)


@pytest.fixture
def orchestrator(storage, remote, config):
    return Orchestrator(storage, transport_factory=lambda account, timeout: remote, config=config)


class TestDiscoveryAndTransfer:
    def test_discovers_collection_and_pulls(self, storage, account, remote, orchestrator):
        remote.put(REMOTE_BOOK, dict(contact("Ada"), uid="u-ada"))

        report = orchestrator.run(account.id)

        assert report.outcome is RunOutcome.SUCCESS
        assert report.error is None
        collection = storage.get_collection_by_remote_id(account.id, REMOTE_BOOK)
        assert collection.label == "Personal"
        assert collection.remote_state == remote.state
        assert collection.local_state == storage.chronicle.apex(collection.id)
        entity = storage.get_entity_by_uuid(collection.id, "u-ada")
        assert entity.content == contact("Ada")
        assert report.statistics.local_created == 1
        assert report.collections[0].full_resync is True

        stored = storage.get_account(account.id)
        assert stored.harmonization_state is RunState.IDLE
        assert stored.last_outcome is RunOutcome.SUCCESS
        assert stored.locked is False
        assert orchestrator.state(account.id) is RunState.IDLE

    def test_push_then_second_run_is_quiet(self, storage, account, collection, remote, local, orchestrator):
        entity = local.create(collection.id, contact("Grace"))

        first = orchestrator.run(account.id)
        assert first.statistics.remote_created == 1
        remote_id = storage.get_entity(entity.id).remote_id
        assert remote.get(REMOTE_BOOK, remote_id)["uid"] == entity.uuid
        records = storage.chronicle.count(collection.id)

        second = orchestrator.run(account.id)

        assert second.outcome is RunOutcome.SUCCESS
        assert second.statistics.total() == 0
        assert second.collections[0].full_resync is False
        assert storage.chronicle.count(collection.id) == records

    def test_remote_collection_removal_drops_local_collection(
        self, storage, account, collection, remote, local, orchestrator
    ):
        local.create(collection.id, contact("Ada"))
        orchestrator.run(account.id)
        remote.remove_collection(REMOTE_BOOK)

        report = orchestrator.run(account.id)

        assert report.outcome is RunOutcome.SUCCESS
        assert storage.get_collection(collection.id) is None
        assert storage.get_entities(collection.id, include_deleted=True) == []

    def test_invalid_remote_state_resyncs(self, storage, account, collection, remote, orchestrator):
        remote.put(REMOTE_BOOK, contact("Ada"))
        orchestrator.run(account.id)
        remote.invalidate_tokens = True

        report = orchestrator.run(account.id)

        assert report.outcome is RunOutcome.SUCCESS
        assert report.collections[0].full_resync is True
        assert report.statistics.total() == 0

    def test_mode_off_is_not_harmonized(self, storage, account, collection, remote, local, orchestrator):
        account.modes[EntityType.CONTACT] = SyncMode.OFF
        storage.update_account(account)
        local.create(collection.id, contact("Ada"))

        report = orchestrator.run(account.id)

        assert report.outcome is RunOutcome.SUCCESS
        assert report.collections == []
        assert remote.calls == []

    def test_disabled_collection_is_not_harmonized(self, storage, account, collection, remote, orchestrator):
        remote.put(REMOTE_BOOK, contact("Ada"))
        storage.set_collection_enabled(collection.id, False)

        report = orchestrator.run(account.id)

        assert report.outcome is RunOutcome.SUCCESS
        assert report.collections == []
        assert remote.count("fetch") == 0
        assert storage.count_entities(collection.id) == 0

    def test_single_collection_run(self, storage, account, collection, remote, orchestrator):
        remote.put(REMOTE_BOOK, contact("Ada"))

        report = orchestrator.run(account.id, collection_id=collection.id)

        assert [c.collection_id for c in report.collections] == [collection.id]
        assert remote.count("list_collections") == 0

    @pytest.mark.parametrize(
        "change,reason",
        [
            ("disable", "disabled"),
            ("mode", "in live mode"),
            ("unlink", "not linked to a remote collection"),
        ],
    )
    def test_single_ineligible_collection_is_skipped(
        self, storage, account, remote, orchestrator, change, reason
    ):
        target = storage.create_collection(
            Collection(
                id=None,
                account_id=account.id,
                entity_type=EntityType.CONTACT,
                remote_id=None if change == "unlink" else REMOTE_BOOK,
            )
        )
        if change == "disable":
            storage.set_collection_enabled(target.id, False)
        elif change == "mode":
            account.modes[EntityType.CONTACT] = SyncMode.LIVE
            storage.update_account(account)

        report = orchestrator.run(account.id, collection_id=target.id)

        assert report.outcome is RunOutcome.SKIPPED
        assert report.error == f"Collection {target.id} is {reason}"
        assert report.collections == []
        assert remote.calls == []
        assert storage.get_account(account.id).locked is False

    def test_collection_of_another_account(self, storage, account, orchestrator):
        other = storage.create_account(ServiceAccount(id=None, user_id="bob"))
        foreign = storage.create_collection(
            Collection(id=None, account_id=other.id, entity_type=EntityType.CONTACT, remote_id="x")
        )
        with pytest.raises(ValueError):
            orchestrator.run(account.id, collection_id=foreign.id)

    def test_unknown_account(self, orchestrator):
        with pytest.raises(AccountNotFound):
            orchestrator.run(404)


class TestOutcomes:
    def test_disabled_account_is_skipped(self, storage, account, remote, orchestrator):
        account.enabled = False
        storage.update_account(account)

        report = orchestrator.run(account.id)

        assert report.outcome is RunOutcome.SKIPPED
        assert remote.calls == []

    def test_lease_held_elsewhere_is_skipped(self, storage, account, remote, orchestrator):
        storage.lease.acquire(account.id, "other-worker", 60)

        report = orchestrator.run(account.id)

        assert report.outcome is RunOutcome.SKIPPED
        assert "other-worker" in report.error
        assert storage.lease.status(account.id).holder == "other-worker"
        assert remote.calls == []

    def test_authentication_rejected_disconnects_account(self, storage, account, remote, orchestrator):
        remote.fail_on["list_collections"] = AuthenticationRejected("401 Unauthorized")

        report = orchestrator.run(account.id)

        assert report.outcome is RunOutcome.ABORTED
        assert report.error.startswith("Authentication rejected")
        stored = storage.get_account(account.id)
        assert stored.connected is False
        assert stored.locked is False
        assert stored.harmonization_state is RunState.ABORTED
        assert stored.last_outcome is RunOutcome.ABORTED

        assert orchestrator.run(account.id).outcome is RunOutcome.SKIPPED

    def test_collection_failure_is_partial(self, storage, account, collection, remote, orchestrator):
        remote.add_collection("book-2", EntityType.CONTACT, "Work")
        remote.put("book-2", contact("Ada"))

        def stall(remote_collection_id):
            if remote_collection_id == REMOTE_BOOK:
                raise TransportTimeout("timed out")

        remote.before["fetch"] = stall

        report = orchestrator.run(account.id)

        assert report.outcome is RunOutcome.PARTIAL
        assert report.error == "1 collections failed, 0 entities skipped"
        failed = [c for c in report.collections if not c.completed]
        assert [c.collection_id for c in failed] == [collection.id]
        assert "timed out" in failed[0].error
        assert storage.get_collection(collection.id).remote_state is None
        other = storage.get_collection_by_remote_id(account.id, "book-2")
        assert storage.count_entities(other.id) == 1
        assert storage.get_account(account.id).last_outcome is RunOutcome.PARTIAL

    def test_transport_factory_failure_aborts(self, storage, account, config):
        def broken(account, timeout):
            raise ValueError("Account has no server URL")

        report = Orchestrator(storage, transport_factory=broken, config=config).run(account.id)

        assert report.outcome is RunOutcome.ABORTED
        assert storage.get_account(account.id).locked is False


class TestInterruptions:
    def test_cancelled_before_first_collection(self, storage, account, collection, remote, orchestrator):
        remote.put(REMOTE_BOOK, contact("Ada"))
        cancel = threading.Event()
        cancel.set()

        report = orchestrator.run(account.id, cancel_event=cancel)

        assert report.outcome is RunOutcome.ABORTED
        assert "cancelled" in report.error
        assert storage.count_entities(collection.id) == 0
        assert storage.get_account(account.id).locked is False

    def test_deadline_passed(self, storage, account, collection, remote, orchestrator, clock):
        remote.put(REMOTE_BOOK, contact("Ada"))

        report = orchestrator.run(account.id, deadline=clock() - 1)

        assert report.outcome is RunOutcome.ABORTED
        assert "deadline" in report.error

    def test_lease_lost_mid_run(self, storage, account, collection, remote, orchestrator, clock):
        remote.put(REMOTE_BOOK, contact("Ada"))

        def intrude(remote_collection_id):
            clock.advance(61)
            storage.lease.acquire(account.id, "intruder", 60)

        remote.before["fetch"] = intrude

        report = orchestrator.run(account.id)

        assert report.outcome is RunOutcome.ABORTED
        assert storage.lease.status(account.id).holder == "intruder"
        assert storage.count_entities(collection.id) == 0
        assert storage.get_collection(collection.id).remote_state is None

    def test_local_edit_during_run_keeps_previous_remote_state(
        self, storage, account, collection, remote, local, orchestrator
    ):
        entity = local.create(collection.id, contact("Ada"))
        remote.put(REMOTE_BOOK, contact("Grace"))
        edited = []

        def edit(remote_collection_id):
            if not edited:
                edited.append(local.update(collection.id, entity.uuid, contact("Ada Lovelace")))

        remote.before["fetch"] = edit

        report = orchestrator.run(account.id)

        assert report.outcome is RunOutcome.SUCCESS
        assert report.statistics.deferred == 1
        assert report.statistics.local_created == 1
        assert storage.get_collection(collection.id).remote_state is None
        assert storage.get_entity(entity.id).remote_id is None

        report = orchestrator.run(account.id)

        assert report.statistics.remote_created == 1
        assert report.statistics.local_created == 0
        pushed = storage.get_entity(entity.id)
        assert remote.get(REMOTE_BOOK, pushed.remote_id)["name"] == {"full": "Ada Lovelace"}

    def test_concurrent_run_in_same_process(self, storage, account, remote, orchestrator):
        refused = []

        def reenter(remote_collection_id):
            try:
                orchestrator.run(account.id)
            except AlreadyRunning as e:
                refused.append(e)

        remote.before["list_collections"] = reenter

        report = orchestrator.run(account.id)

        assert report.outcome is RunOutcome.SUCCESS
        assert len(refused) == 1


class TestRunAll:
    def test_runs_every_account(self, storage, account, remote, config, clock, local):
        second_remote = InMemoryTransport()
        second_remote.add_collection("cal-1", EntityType.EVENT, "Calendar")
        second_remote.put("cal-1", {"title": "Standup", "start": "2025-06-01T09:00:00"})
        second = storage.create_account(
            ServiceAccount(id=None, user_id="bob", modes={EntityType.EVENT: SyncMode.CACHED})
        )
        remotes = {account.id: remote, second.id: second_remote}
        orchestrator = Orchestrator(
            storage, transport_factory=lambda a, timeout: remotes[a.id], config=config
        )
        remote.put(REMOTE_BOOK, contact("Ada"))

        reports = orchestrator.run_all()

        assert sorted(r.account_id for r in reports) == [account.id, second.id]
        assert all(r.outcome is RunOutcome.SUCCESS for r in reports)
        assert [r.account_id for r in orchestrator.run_all(user_id="bob")] == [second.id]

    def test_trims_old_chronicle_records(self, storage, account, collection, orchestrator, local, clock):
        local.create(collection.id, contact("Ada"))
        clock.advance(31 * 86400)

        orchestrator.run_all()

        # The create record is past retention; pushing adds no new ones
        assert storage.chronicle.count(collection.id) == 0
