"""Reconciliation of one collection.

classify() and decide() are pure: given what changed on each side, the
configured policy and (for newest-wins) the two last-modified timestamps,
they always pick the same action. Reconciler applies the resulting plan
one entity at a time:

- remote writes happen before the local commit, so a remote failure
  leaves local state untouched and the entity is simply re-evaluated on
  the next run;
- every local mutation commits together with its chronicle record;
- one entity failing remotely never rolls back or blocks the others.
"""

import logging
import uuid as uuid_module
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional

from jmapc.adapters import get_adapter
from jmapc.protocols import (
    EntityChanged,
    RemoteEntity,
    RemoteEntityRejected,
    RemoteNotFound,
    RemoteTransport,
    RemoteWriteResult,
)
from jmapc.types import (
    ChronicleOperation,
    Classification,
    Collection,
    ConflictPolicy,
    ConflictRecord,
    Entity,
    HarmonizationStatistics,
)

from .detector import DeltaResult

logger = logging.getLogger(__name__)

LOCAL = "local"
REMOTE = "remote"

CONFLICTS = frozenset(
    {
        Classification.CONFLICT,
        Classification.CONFLICT_LOCAL_EDIT_REMOTE_DELETE,
        Classification.CONFLICT_LOCAL_DELETE_REMOTE_EDIT,
    }
)


class Action(str, Enum):
    """What the reconciler does for one entity key."""

    SKIP = "skip"
    PUSH_CREATE = "push-create"
    PUSH_UPDATE = "push-update"
    PUSH_DELETE = "push-delete"
    PULL_CREATE = "pull-create"
    PULL_UPDATE = "pull-update"
    LOCAL_DELETE = "local-delete"
    PURGE = "purge"  # Drop a row whose deletion needs no further chronicle record
    UNLINK = "unlink"  # Keep a pinned entity, forget its remote copy
    CONVERGE = "converge"  # Both sides already agree, record the remote signature


@dataclass
class Decision:
    """Planned action for one entity key."""

    classification: Classification
    action: Action
    entity_id: Optional[int] = None
    remote_id: Optional[str] = None
    remote: Optional[RemoteEntity] = None
    winner: Optional[str] = None


def classify(
    local_changed: bool,
    remote_changed: bool,
    remote_deleted: bool,
    local_deleted: bool = False,
) -> Classification:
    """Classify one entity key from what changed on each side."""
    if local_deleted:
        if remote_deleted:
            return Classification.BOTH_DELETED
        if remote_changed:
            return Classification.CONFLICT_LOCAL_DELETE_REMOTE_EDIT
        return Classification.LOCAL_DELETED
    if local_changed:
        if remote_deleted:
            return Classification.CONFLICT_LOCAL_EDIT_REMOTE_DELETE
        if remote_changed:
            return Classification.CONFLICT
        return Classification.LOCAL_ONLY
    if remote_deleted:
        return Classification.REMOTE_DELETED
    if remote_changed:
        return Classification.REMOTE_ONLY
    return Classification.UNCHANGED


def resolve_conflict(
    policy: ConflictPolicy,
    local_modified: Optional[datetime] = None,
    remote_modified: Optional[datetime] = None,
) -> str:
    """Return LOCAL or REMOTE. newest-wins ties and missing timestamps go to LOCAL."""
    policy = ConflictPolicy.parse(policy)
    if policy is ConflictPolicy.LOCAL_WINS:
        return LOCAL
    if policy is ConflictPolicy.REMOTE_WINS:
        return REMOTE
    if local_modified is None or remote_modified is None:
        return LOCAL
    return REMOTE if remote_modified > local_modified else LOCAL


def decide(
    classification: Classification,
    policy: ConflictPolicy,
    entity: Optional[Entity],
    remote: Optional[RemoteEntity],
) -> Decision:
    """Pick the action for a classified entity key."""
    decision = Decision(
        classification=classification,
        action=Action.SKIP,
        entity_id=entity.id if entity else None,
        remote_id=remote.id if remote else (entity.remote_id if entity else None),
        remote=remote,
    )

    if classification is Classification.LOCAL_ONLY:
        decision.action = Action.PUSH_UPDATE if entity.remote_id else Action.PUSH_CREATE
    elif classification is Classification.REMOTE_ONLY:
        decision.action = Action.PULL_UPDATE if entity else Action.PULL_CREATE
    elif classification is Classification.REMOTE_DELETED:
        decision.action = Action.UNLINK if entity.pinned else Action.LOCAL_DELETE
    elif classification is Classification.LOCAL_DELETED:
        decision.action = Action.PUSH_DELETE if entity.remote_id else Action.PURGE
    elif classification is Classification.BOTH_DELETED:
        decision.action = Action.PURGE
    elif classification is Classification.CONFLICT:
        if remote.signature == entity.signature:
            decision.action = Action.CONVERGE
        else:
            decision.winner = resolve_conflict(policy, entity.modified_at, remote.modified_at)
            decision.action = Action.PUSH_UPDATE if decision.winner == LOCAL else Action.PULL_UPDATE
    elif classification is Classification.CONFLICT_LOCAL_EDIT_REMOTE_DELETE:
        if entity.pinned or ConflictPolicy.parse(policy) is ConflictPolicy.LOCAL_WINS:
            decision.winner = LOCAL
            decision.action = Action.PUSH_CREATE  # Recreate remotely
        else:
            decision.winner = REMOTE
            decision.action = Action.LOCAL_DELETE
    elif classification is Classification.CONFLICT_LOCAL_DELETE_REMOTE_EDIT:
        if ConflictPolicy.parse(policy) is ConflictPolicy.LOCAL_WINS:
            decision.winner = LOCAL
            decision.action = Action.PUSH_DELETE
        else:
            decision.winner = REMOTE
            decision.action = Action.PULL_UPDATE  # Restore from remote
    return decision


def plan(delta: DeltaResult, policy: ConflictPolicy) -> List[Decision]:
    """Decisions for every entity key touched by ``delta``, in a stable order."""
    decisions: List[Decision] = []
    linked = set()
    for entity_id in sorted(delta.entities):
        entity = delta.entities[entity_id]
        remote = None
        remote_deleted = False
        if entity.remote_id is not None:
            linked.add(entity.remote_id)
            remote = delta.remote_changed.get(entity.remote_id)
            remote_deleted = entity.remote_id in delta.remote_deleted
        classification = classify(
            local_changed=entity_id in delta.local_changed,
            remote_changed=remote is not None,
            remote_deleted=remote_deleted,
            local_deleted=entity_id in delta.local_deleted,
        )
        if classification is Classification.UNCHANGED:
            continue
        decisions.append(decide(classification, policy, entity, remote))

    for remote_id in sorted(delta.remote_changed):
        if remote_id in linked:
            continue
        decisions.append(
            decide(Classification.REMOTE_ONLY, policy, None, delta.remote_changed[remote_id])
        )
    return decisions


class Reconciler:
    """Applies reconciliation plans against the correlation store and the remote.

    Args:
        storage: The SQLiteStorage correlation store.
        adapters: Optional mapping of entity type to adapter (defaults to the registry).
    """

    def __init__(self, storage, adapters=None):
        self.storage = storage
        self._adapters = adapters

    def _adapter(self, collection: Collection):
        if self._adapters is not None:
            return self._adapters[collection.entity_type]
        return get_adapter(collection.entity_type)

    def reconcile(
        self,
        collection: Collection,
        delta: DeltaResult,
        transport: RemoteTransport,
        policy: ConflictPolicy,
        checkpoint: Optional[Callable[[], None]] = None,
        statistics: Optional[HarmonizationStatistics] = None,
    ) -> HarmonizationStatistics:
        """Apply the plan for ``delta``.

        ``checkpoint`` runs before each entity; it heartbeats the lease and
        raises to stop the pass (lease lost, cancellation). Transport errors
        other than entity-scope rejections propagate and abort the collection.
        Counts accumulate into ``statistics`` so a caller keeps them when a
        later entity aborts the pass.
        """
        if statistics is None:
            statistics = HarmonizationStatistics()
        decisions = plan(delta, policy)
        if not decisions:
            return statistics
        logger.debug(f"Collection {collection.id}: {len(decisions)} planned actions")

        adapter = self._adapter(collection)
        account_id = collection.account_id
        for decision in decisions:
            if checkpoint is not None:
                checkpoint()
            with self.storage.collection_lock(collection.id):
                try:
                    applied = self._apply(collection, adapter, delta, decision, transport, statistics)
                except RemoteEntityRejected as e:
                    statistics.skipped += 1
                    logger.warning(
                        f"Collection {collection.id}: remote rejected {decision.action.value} "
                        f"for entity {decision.entity_id or decision.remote_id}: {e}"
                    )
                    continue
            if applied and decision.classification in CONFLICTS and decision.winner:
                statistics.conflicts += 1
                entity = delta.entities.get(decision.entity_id) if decision.entity_id else None
                self.storage.save_conflict(
                    account_id,
                    ConflictRecord(
                        id=None,
                        collection_id=collection.id,
                        entity_id=decision.entity_id,
                        remote_id=decision.remote_id,
                        classification=decision.classification,
                        policy=ConflictPolicy.parse(policy),
                        winner=decision.winner,
                        local_signature=entity.signature if entity else None,
                        remote_signature=decision.remote.signature if decision.remote else None,
                    ),
                )
        return statistics

    def _fresh(self, delta: DeltaResult, decision: Decision) -> Optional[Entity]:
        """Re-read the entity; None if it changed locally since detection."""
        snapshot = delta.entities[decision.entity_id]
        current = self.storage.get_entity(decision.entity_id)
        if current is None:
            return None
        if current.signature != snapshot.signature or current.deleted != snapshot.deleted:
            return None
        return current

    def _apply(
        self,
        collection: Collection,
        adapter,
        delta: DeltaResult,
        decision: Decision,
        transport: RemoteTransport,
        statistics: HarmonizationStatistics,
    ) -> bool:
        action = decision.action
        if action is Action.SKIP:
            return False

        if action is Action.PULL_CREATE:
            self._pull_create(collection, adapter, decision.remote)
            statistics.local_created += 1
            return True

        entity = self._fresh(delta, decision)
        if entity is None:
            logger.debug(
                f"Entity {decision.entity_id} changed locally during the run, deferring"
            )
            statistics.deferred += 1
            return False

        snapshot = delta.entities[decision.entity_id]
        try:
            return self._apply_to_entity(
                collection, adapter, decision, entity, snapshot, transport, statistics
            )
        except EntityChanged:
            logger.debug(
                f"Entity {decision.entity_id} changed locally before its commit, deferring"
            )
            statistics.deferred += 1
            return False

    def _apply_to_entity(
        self,
        collection: Collection,
        adapter,
        decision: Decision,
        entity: Entity,
        snapshot: Entity,
        transport: RemoteTransport,
        statistics: HarmonizationStatistics,
    ) -> bool:
        # Every local write is conditional on ``snapshot``: a local edit that
        # lands while the remote call is in flight raises EntityChanged.
        action = decision.action
        entity_type = collection.entity_type
        if action in (Action.PUSH_CREATE, Action.PUSH_UPDATE):
            payload = adapter.to_remote_payload(entity.content, entity.uuid)
            created = action is Action.PUSH_CREATE or entity.remote_id is None
            if not created:
                try:
                    result = transport.update(
                        entity_type, collection.remote_id, entity.remote_id, payload
                    )
                except RemoteNotFound:
                    logger.info(
                        f"Remote copy of entity {entity.id} is gone, recreating it"
                    )
                    created = True
            if created:
                result = transport.create(entity_type, collection.remote_id, payload)
            entity.remote_id = result.remote_id
            entity.last_remote_signature = result.signature
            try:
                self.storage.upsert_entity(entity, expected=snapshot)
            except EntityChanged:
                self._keep_link(collection, entity.id, result, created, transport)
                raise
            if created:
                statistics.remote_created += 1
            else:
                statistics.remote_updated += 1
            return True

        if action is Action.PUSH_DELETE:
            try:
                transport.delete(entity_type, collection.remote_id, entity.remote_id)
            except RemoteNotFound:
                pass  # Already gone
            # The tombstone's delete record was chronicled when it was staged
            try:
                self.storage.delete_entity(entity.id, chronicle=False, expected=snapshot)
            except EntityChanged:
                self.storage.link_entity(entity.id, None, None)
                raise
            statistics.remote_deleted += 1
            return True

        if action is Action.PULL_UPDATE:
            remote = decision.remote
            restored = entity.deleted
            entity.content = adapter.apply_remote(None if restored else entity.content, remote.payload)
            entity.signature = adapter.signature(entity.content)
            entity.last_remote_signature = remote.signature
            entity.modified_at = remote.modified_at or adapter.modified_at(entity.content)
            entity.deleted = False
            operation = ChronicleOperation.CREATE if restored else ChronicleOperation.UPDATE
            self.storage.upsert_entity(entity, operation=operation, expected=snapshot)
            if restored:
                statistics.local_created += 1
            else:
                statistics.local_updated += 1
            return True

        if action is Action.LOCAL_DELETE:
            self.storage.delete_entity(entity.id, expected=snapshot)
            statistics.local_deleted += 1
            return True

        if action is Action.PURGE:
            self.storage.delete_entity(entity.id, chronicle=False, expected=snapshot)
            return True

        if action is Action.UNLINK:
            logger.info(f"Entity {entity.id} is pinned, keeping it after remote deletion")
            entity.remote_id = None
            entity.last_remote_signature = None
            self.storage.upsert_entity(entity, expected=snapshot)
            return True

        if action is Action.CONVERGE:
            entity.last_remote_signature = decision.remote.signature
            self.storage.upsert_entity(entity, expected=snapshot)
            return True

        raise ValueError(f"Unhandled action: {action}")

    def _keep_link(
        self,
        collection: Collection,
        entity_id: int,
        result: RemoteWriteResult,
        created: bool,
        transport: RemoteTransport,
    ) -> None:
        """Record a remote write whose local commit lost to a local edit.

        The edited content no longer matches the remote copy, so the next run
        sees it as a local change and pushes it.
        """
        if self.storage.link_entity(entity_id, result.remote_id, result.signature):
            return
        if created:
            # Deleted locally while its first remote copy was being created
            logger.info(f"Entity {entity_id} was deleted during its push, removing remote copy")
            try:
                transport.delete(collection.entity_type, collection.remote_id, result.remote_id)
            except RemoteNotFound:
                pass

    def _pull_create(self, collection: Collection, adapter, remote: RemoteEntity) -> Entity:
        content = adapter.apply_remote(None, remote.payload)
        entity_uuid = remote.payload.get("uid")
        if not isinstance(entity_uuid, str) or not entity_uuid or (
            self.storage.get_entity_by_uuid(collection.id, entity_uuid) is not None
        ):
            entity_uuid = str(uuid_module.uuid4())
        entity = Entity(
            id=None,
            collection_id=collection.id,
            uuid=entity_uuid,
            content=content,
            signature=adapter.signature(content),
            remote_id=remote.id,
            last_remote_signature=remote.signature,
            modified_at=remote.modified_at or adapter.modified_at(content),
        )
        return self.storage.upsert_entity(entity, operation=ChronicleOperation.CREATE)
