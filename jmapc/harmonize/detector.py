"""Delta detection for one collection.

Local changes come from signature comparison against the last agreed
remote signature. Remote changes come from a single delta query keyed by
the collection's stored state token; an unknown or expired token falls
back to a full listing of the remote collection.

Nothing here writes to storage. Transport errors propagate to the caller,
which aborts only the affected collection.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from jmapc.protocols import RemoteEntity, RemoteTransport, TokenInvalid
from jmapc.types import Collection, Entity

logger = logging.getLogger(__name__)


@dataclass
class DeltaResult:
    """Everything the reconciler needs about one collection."""

    collection_id: int
    local_changed: Set[int] = field(default_factory=set)
    local_deleted: Set[int] = field(default_factory=set)
    remote_changed: Dict[str, RemoteEntity] = field(default_factory=dict)
    remote_deleted: Set[str] = field(default_factory=set)
    remote_state: Optional[str] = None
    full_resync: bool = False
    # Snapshot of the entities the decisions were based on
    entities: Dict[int, Entity] = field(default_factory=dict)

    @property
    def empty(self) -> bool:
        return not (
            self.local_changed or self.local_deleted or self.remote_changed or self.remote_deleted
        )


class DeltaDetector:
    """Computes local and remote changes of a collection since the last commit."""

    def __init__(self, storage):
        self.storage = storage

    def detect(self, collection: Collection, transport: RemoteTransport) -> DeltaResult:
        if collection.remote_id is None:
            raise ValueError(f"Collection {collection.id} is not linked to a remote collection")

        result = DeltaResult(collection_id=collection.id)
        entities = self.storage.get_entities(collection.id, include_deleted=True)
        by_remote: Dict[str, Entity] = {}
        for entity in entities:
            result.entities[entity.id] = entity
            if entity.remote_id is not None:
                by_remote[entity.remote_id] = entity
            if entity.deleted:
                result.local_deleted.add(entity.id)
            elif entity.remote_id is None or entity.signature != entity.last_remote_signature:
                result.local_changed.add(entity.id)

        token = collection.remote_state
        if token:
            try:
                delta = transport.delta(collection.entity_type, collection.remote_id, token)
            except TokenInvalid:
                logger.info(
                    f"Remote state for collection {collection.id} is no longer valid, "
                    f"listing the full collection"
                )
                self._full_listing(collection, transport, by_remote, result)
            else:
                self._apply_delta(delta.added + delta.changed, delta.deleted, by_remote, result)
                result.remote_state = delta.new_state or token
        else:
            self._full_listing(collection, transport, by_remote, result)

        logger.debug(
            f"Collection {collection.id}: {len(result.local_changed)} local changes, "
            f"{len(result.local_deleted)} local deletions, "
            f"{len(result.remote_changed)} remote changes, "
            f"{len(result.remote_deleted)} remote deletions"
            + (" (full listing)" if result.full_resync else "")
        )
        return result

    def _is_new(self, remote: RemoteEntity, by_remote: Dict[str, Entity]) -> bool:
        known = by_remote.get(remote.id)
        # A signature we already agreed on is an echo of our own write
        return known is None or known.last_remote_signature != remote.signature

    def _apply_delta(
        self,
        changed: List[RemoteEntity],
        deleted: List[str],
        by_remote: Dict[str, Entity],
        result: DeltaResult,
    ) -> None:
        for remote in changed:
            if self._is_new(remote, by_remote):
                result.remote_changed[remote.id] = remote
        for remote_id in deleted:
            if remote_id in by_remote:
                result.remote_changed.pop(remote_id, None)
                result.remote_deleted.add(remote_id)

    def _full_listing(
        self,
        collection: Collection,
        transport: RemoteTransport,
        by_remote: Dict[str, Entity],
        result: DeltaResult,
    ) -> None:
        listing = transport.fetch(collection.entity_type, collection.remote_id)
        seen = set()
        for remote in listing.entities:
            seen.add(remote.id)
            if self._is_new(remote, by_remote):
                result.remote_changed[remote.id] = remote
        for remote_id in by_remote:
            if remote_id not in seen:
                result.remote_deleted.add(remote_id)
        result.remote_state = listing.state
        result.full_resync = True
