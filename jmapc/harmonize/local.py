"""Local write path for protocol-facing adapters.

DAV-style consumers never write entity rows directly. They go through
LocalChanges so every local mutation is signed by the entity adapter and
chronicled in the same transaction as the row change. The next
harmonization run picks these up as local changes.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from jmapc.adapters import get_adapter
from jmapc.types import ChronicleOperation, Collection, Entity

logger = logging.getLogger(__name__)


class LocalChanges:
    """Create, update and delete entities on behalf of local clients.

    Args:
        storage: The SQLiteStorage correlation store.
        adapters: Optional mapping of entity type to adapter (defaults to the registry).
    """

    def __init__(self, storage, adapters=None):
        self.storage = storage
        self._adapters = adapters

    def _collection(self, collection_id: int) -> Collection:
        collection = self.storage.get_collection(collection_id)
        if collection is None:
            raise ValueError(f"Collection {collection_id} does not exist")
        return collection

    def _adapter(self, collection: Collection):
        if self._adapters is not None:
            return self._adapters[collection.entity_type]
        return get_adapter(collection.entity_type)

    def _stamp(self, adapter, content: Dict[str, Any]) -> datetime:
        return adapter.modified_at(content) or datetime.now(timezone.utc)

    def create(
        self,
        collection_id: int,
        content: Dict[str, Any],
        uuid: Optional[str] = None,
        pinned: bool = False,
    ) -> Entity:
        collection = self._collection(collection_id)
        adapter = self._adapter(collection)
        entity = Entity(
            id=None,
            collection_id=collection.id,
            uuid=uuid,
            content=dict(content),
            signature=adapter.signature(content),
            modified_at=self._stamp(adapter, content),
            pinned=pinned,
        )
        entity = self.storage.upsert_entity(entity, operation=ChronicleOperation.CREATE)
        logger.debug(f"Local create {entity.uuid} in collection {collection_id}")
        return entity

    def update(self, collection_id: int, uuid: str, content: Dict[str, Any]) -> Optional[Entity]:
        """Replace the content of an entity. Returns None if it does not exist."""
        collection = self._collection(collection_id)
        entity = self.storage.get_entity_by_uuid(collection.id, uuid)
        if entity is None or entity.deleted:
            return None
        adapter = self._adapter(collection)
        signature = adapter.signature(content)
        if signature == entity.signature and content == entity.content:
            return entity  # Nothing to record
        entity.content = dict(content)
        entity.signature = signature
        entity.modified_at = self._stamp(adapter, content)
        return self.storage.upsert_entity(entity, operation=ChronicleOperation.UPDATE)

    def delete(self, collection_id: int, uuid: str) -> bool:
        """Delete an entity locally.

        Entities already linked to a remote copy become tombstones until the
        next run pushes the deletion; unlinked ones are removed right away.
        """
        collection = self._collection(collection_id)
        entity = self.storage.get_entity_by_uuid(collection.id, uuid)
        if entity is None or entity.deleted:
            return False
        if entity.remote_id is None:
            return self.storage.delete_entity(entity.id)
        entity.deleted = True
        entity.modified_at = datetime.now(timezone.utc)
        self.storage.upsert_entity(entity, operation=ChronicleOperation.DELETE)
        return True

    def pin(self, collection_id: int, uuid: str, pinned: bool = True) -> bool:
        """Keep an entity locally even if the remote deletes it."""
        entity = self.storage.get_entity_by_uuid(collection_id, uuid)
        if entity is None:
            return False
        return self.storage.set_entity_pinned(entity.id, pinned)
