"""Harmonization orchestrator.

Drives one full cycle per account:

    Idle -> Leasing -> Running(collection i of n) -> Committing -> Idle
                            |
                            +-> Aborted (lease lost, cancelled, auth rejected,
                                         storage failure)

Each collection runs the delta detector then the reconciler, and only a
collection that completed commits its new remote state token and chronicle
watermark. Lease, transport and storage failures never escape run():
they become a RunReport outcome.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from jmapc.config import HarmonizationConfig
from jmapc.protocols import (
    AccountNotFound,
    AlreadyRunning,
    AuthenticationRejected,
    HarmonizationCancelled,
    LockHeld,
    LockLost,
    RemoteTransport,
    StorageFailure,
    TransportError,
)
from jmapc.remote import JmapTransport
from jmapc.storage.lease import LeaseKeeper
from jmapc.types import (
    Collection,
    CollectionReport,
    EntityType,
    RunOutcome,
    RunReport,
    RunState,
    ServiceAccount,
    SyncMode,
)
from jmapc.utils import new_holder_id

from .detector import DeltaDetector
from .reconciler import Reconciler

logger = logging.getLogger(__name__)

TransportFactory = Callable[[ServiceAccount, float], RemoteTransport]


class Orchestrator:
    """Runs harmonization cycles for service accounts.

    Args:
        storage: The SQLiteStorage correlation store.
        transport_factory: Builds the remote transport of an account from the
            account and the transport timeout. Defaults to JMAP over HTTP.
        config: Lease, heartbeat, timeout and retention settings.
        adapters: Optional mapping of entity type to adapter (defaults to the registry).
    """

    def __init__(
        self,
        storage,
        transport_factory: Optional[TransportFactory] = None,
        config: Optional[HarmonizationConfig] = None,
        adapters=None,
    ):
        self.storage = storage
        self.transport_factory = transport_factory or JmapTransport.from_account
        self.config = config or HarmonizationConfig()
        self.detector = DeltaDetector(storage)
        self.reconciler = Reconciler(storage, adapters)
        self._states: Dict[int, RunState] = {}
        self._states_guard = threading.Lock()

    # === Run State ===

    def state(self, account_id: int) -> RunState:
        """In-process state of an account (IDLE when no run is active here)."""
        with self._states_guard:
            return self._states.get(account_id, RunState.IDLE)

    def _enter(self, account_id: int) -> None:
        with self._states_guard:
            if self._states.get(account_id) in (RunState.LEASING, RunState.RUNNING, RunState.COMMITTING):
                raise AlreadyRunning(account_id)
            self._states[account_id] = RunState.LEASING

    def _set_state(self, account_id: int, state: RunState) -> None:
        with self._states_guard:
            self._states[account_id] = state

    def _leave(self, account_id: int) -> None:
        with self._states_guard:
            self._states.pop(account_id, None)

    # === Runs ===

    def run(
        self,
        account_id: int,
        collection_id: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None,
        deadline: Optional[float] = None,
    ) -> RunReport:
        """Harmonize one account, or a single collection of it.

        ``deadline`` is in epoch seconds of the storage clock. Cancellation
        and the deadline are checked between entities and between collections.

        Raises:
            AccountNotFound: no such account.
            AlreadyRunning: a run for this account is active in this process.
            ValueError: ``collection_id`` does not belong to the account.
        """
        account = self.storage.get_account(account_id)
        if account is None:
            raise AccountNotFound(account_id)
        report = RunReport(account_id=account_id, started_at=datetime.now(timezone.utc))

        if not account.enabled or not account.connected:
            reason = "disabled" if not account.enabled else "disconnected"
            logger.info(f"Skipping harmonization of account {account_id}: {reason}")
            return self._finish(report, RunOutcome.SKIPPED, f"Account is {reason}")

        if collection_id is not None:
            collection = self.storage.get_collection(collection_id)
            if collection is None or collection.account_id != account_id:
                raise ValueError(
                    f"Collection {collection_id} does not belong to account {account_id}"
                )
            reason = self._skip_reason(account, collection)
            if reason is not None:
                logger.info(f"Skipping harmonization of collection {collection_id}: {reason}")
                return self._finish(
                    report, RunOutcome.SKIPPED, f"Collection {collection_id} is {reason}"
                )

        self._enter(account_id)
        try:
            return self._run_leased(account, report, collection_id, cancel_event, deadline)
        finally:
            self._leave(account_id)

    def _run_leased(
        self,
        account: ServiceAccount,
        report: RunReport,
        collection_id: Optional[int],
        cancel_event: Optional[threading.Event],
        deadline: Optional[float],
    ) -> RunReport:
        holder_id = new_holder_id()
        try:
            self.storage.lease.acquire(account.id, holder_id, self.config.lease_timeout)
        except LockHeld as e:
            logger.info(f"Skipping harmonization of account {account.id}: {e}")
            return self._finish(report, RunOutcome.SKIPPED, str(e))

        outcome = RunOutcome.ABORTED
        error: Optional[str] = None
        try:
            self.storage.record_run_state(account.id, RunState.RUNNING, started=True)
            self._set_state(account.id, RunState.RUNNING)
            keeper = LeaseKeeper(
                self.storage.lease,
                account.id,
                holder_id,
                self.config.heartbeat_interval,
                self.storage.clock,
            )

            def checkpoint() -> None:
                if cancel_event is not None and cancel_event.is_set():
                    raise HarmonizationCancelled(f"Harmonization of account {account.id} cancelled")
                if deadline is not None and self.storage.clock() >= deadline:
                    raise HarmonizationCancelled(
                        f"Harmonization of account {account.id} ran past its deadline"
                    )
                keeper.beat()

            try:
                transport = self.transport_factory(account, self.config.transport_timeout)
            except ValueError as e:
                logger.error(f"Cannot build transport for account {account.id}: {e}")
                error = str(e)
                return self._finish(report, RunOutcome.ABORTED, error)

            try:
                if collection_id is not None:
                    collections = [self.storage.get_collection(collection_id)]
                else:
                    self._discover(account, transport)
                    collections = self.storage.get_collections(account.id)

                for collection in collections:
                    reason = self._skip_reason(account, collection)
                    if reason is not None:
                        logger.debug(f"Collection {collection.id} is {reason}, skipping")
                        continue
                    checkpoint()
                    keeper.beat(force=True)
                    collection_report = CollectionReport(
                        collection_id=collection.id, entity_type=collection.entity_type
                    )
                    report.collections.append(collection_report)
                    self._harmonize_collection(
                        account, collection, transport, checkpoint, collection_report
                    )
            finally:
                close = getattr(transport, "close", None)
                if close is not None:
                    close()

            self._set_state(account.id, RunState.COMMITTING)
            for collection_report in report.collections:
                report.statistics.merge(collection_report.statistics)
            if report.collections_failed or report.entities_skipped:
                outcome = RunOutcome.PARTIAL
                error = f"{report.collections_failed} collections failed, {report.entities_skipped} entities skipped"
            else:
                outcome = RunOutcome.SUCCESS
        except AuthenticationRejected as e:
            logger.warning(f"Remote rejected credentials of account {account.id}, marking it disconnected")
            self.storage.set_account_connected(account.id, False)
            error = f"Authentication rejected: {e}"
        except LockLost as e:
            logger.warning(f"Aborting harmonization of account {account.id}: {e}")
            error = str(e)
        except HarmonizationCancelled as e:
            logger.info(str(e))
            error = str(e)
        except StorageFailure as e:
            logger.error(f"Storage failure harmonizing account {account.id}: {e}", exc_info=True)
            error = f"Storage failure: {e}"
        finally:
            self._release(account.id, holder_id, outcome, error)

        if outcome is RunOutcome.ABORTED:
            for collection_report in report.collections:
                report.statistics.merge(collection_report.statistics)
        return self._finish(report, outcome, error)

    def _release(
        self, account_id: int, holder_id: str, outcome: RunOutcome, error: Optional[str]
    ) -> None:
        state = RunState.ABORTED if outcome is RunOutcome.ABORTED else RunState.IDLE
        try:
            self.storage.record_run_state(account_id, state, outcome=outcome, error=error)
        except StorageFailure as e:
            logger.error(f"Cannot record end of run for account {account_id}: {e}")
        try:
            self.storage.lease.release(account_id, holder_id)
        except StorageFailure as e:
            # The lease goes stale and is taken over after lease_timeout
            logger.error(f"Cannot release lease of account {account_id}: {e}")

    @staticmethod
    def _finish(report: RunReport, outcome: RunOutcome, error: Optional[str] = None) -> RunReport:
        report.outcome = outcome
        report.error = error
        report.finished_at = datetime.now(timezone.utc)
        return report

    def _skip_reason(self, account: ServiceAccount, collection: Collection) -> Optional[str]:
        """Why a collection is not harmonized, or None if it is."""
        if not collection.enabled:
            return "disabled"
        mode = account.mode_for(collection.entity_type)
        if mode is not SyncMode.CACHED:
            return f"in {mode.value} mode"
        if collection.remote_id is None:
            return "not linked to a remote collection"
        return None

    def _discover(self, account: ServiceAccount, transport: RemoteTransport) -> None:
        """Link new remote collections and drop local ones removed remotely."""
        for entity_type in EntityType:
            if account.mode_for(entity_type) is not SyncMode.CACHED:
                continue
            try:
                remote_collections = transport.list_collections(entity_type)
            except AuthenticationRejected:
                raise
            except TransportError as e:
                logger.warning(
                    f"Cannot list remote {entity_type.value} collections of account {account.id}: {e}"
                )
                continue

            remote_ids = set()
            for remote in remote_collections:
                remote_ids.add(remote.id)
                if self.storage.get_collection_by_remote_id(account.id, remote.id) is None:
                    created = self.storage.create_collection(
                        Collection(
                            id=None,
                            account_id=account.id,
                            entity_type=entity_type,
                            label=remote.name,
                            remote_id=remote.id,
                        )
                    )
                    logger.info(
                        f"Linked remote {entity_type.value} collection {remote.id} "
                        f"to collection {created.id}"
                    )

            for collection in self.storage.get_collections(account.id, entity_type):
                if collection.remote_id is not None and collection.remote_id not in remote_ids:
                    logger.info(
                        f"Remote collection {collection.remote_id} is gone, "
                        f"deleting collection {collection.id}"
                    )
                    self.storage.delete_collection(collection.id)

    def _harmonize_collection(
        self,
        account: ServiceAccount,
        collection: Collection,
        transport: RemoteTransport,
        checkpoint: Callable[[], None],
        collection_report: CollectionReport,
    ) -> None:
        """Detect and reconcile one collection, committing its watermarks on success."""
        policy = account.policy_for(collection.entity_type)
        try:
            delta = self.detector.detect(collection, transport)
            collection_report.full_resync = delta.full_resync
            self.reconciler.reconcile(
                collection,
                delta,
                transport,
                policy,
                checkpoint=checkpoint,
                statistics=collection_report.statistics,
            )
        except AuthenticationRejected:
            raise
        except TransportError as e:
            logger.warning(f"Aborting collection {collection.id} for this run: {e}")
            collection_report.error = str(e)
            return

        remote_state = delta.remote_state
        if collection_report.statistics.deferred:
            # Keep the old token so remote changes of deferred entities are reported again
            remote_state = collection.remote_state
        self.storage.update_collection_state(
            collection.id, remote_state, self.storage.chronicle.apex(collection.id)
        )
        collection_report.completed = True
        logger.info(
            f"Collection {collection.id} harmonized: {collection_report.statistics.to_dict()}"
        )

    def run_all(self, user_id: Optional[str] = None) -> List[RunReport]:
        """Harmonize every account (of ``user_id``, if given) concurrently.

        Also trims chronicle records past the retention window.
        """
        accounts = self.storage.list_accounts(user_id)
        reports: List[RunReport] = []
        if accounts:
            with ThreadPoolExecutor(max_workers=self.config.max_workers) as pool:
                futures = [(account, pool.submit(self.run, account.id)) for account in accounts]
                for account, future in futures:
                    try:
                        reports.append(future.result())
                    except AlreadyRunning as e:
                        logger.info(str(e))
                    except Exception as e:
                        logger.error(f"Harmonization of account {account.id} failed: {e}", exc_info=True)
                        reports.append(
                            self._finish(RunReport(account_id=account.id), RunOutcome.ABORTED, str(e))
                        )

        self.storage.chronicle.trim(self.config.chronicle_retention_days)
        return reports
