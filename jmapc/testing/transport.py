"""In-process RemoteTransport.

Keeps remote collections and entities in dictionaries and issues state
tokens from a counter, so harmonization can be exercised end to end
without a server. Failures can be injected per operation.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from jmapc.adapters import payload_signature
from jmapc.protocols import (
    RemoteCollection,
    RemoteDelta,
    RemoteEntity,
    RemoteListing,
    RemoteNotFound,
    RemoteWriteResult,
    TokenInvalid,
)
from jmapc.types import EntityType, parse_datetime

logger = logging.getLogger(__name__)


@dataclass
class _Container:
    id: str
    entity_type: EntityType
    name: Optional[str]
    objects: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    # (state number, remote id, "upsert" | "destroy")
    log: List[Tuple[int, str, str]] = field(default_factory=list)


class InMemoryTransport:
    """Deterministic RemoteTransport for tests and dry runs.

    Args:
        signer: Signs payloads; defaults to the entity adapters.

    Injection hooks:
        before: operation name -> callable(collection id) run at the start of each call.
        fail_on: operation name -> exception instance raised on the next call(s).
        invalidate_tokens: when True, every delta() raises TokenInvalid.
        calls: list of (operation, collection id, remote id or None) in call order.
    """

    def __init__(self, signer: Callable[[EntityType, Dict[str, Any]], str] = payload_signature):
        self.signer = signer
        self.before: Dict[str, Callable[[Optional[str]], None]] = {}
        self.fail_on: Dict[str, BaseException] = {}
        self.invalidate_tokens = False
        self.calls: List[Tuple[str, Optional[str], Optional[str]]] = []
        self._containers: Dict[str, _Container] = {}
        self._state = 0
        self._next_id = 0
        self._lock = threading.Lock()

    # === Server-side helpers (simulate changes made by other clients) ===

    def add_collection(
        self, remote_id: str, entity_type: EntityType, name: Optional[str] = None
    ) -> None:
        self._containers[remote_id] = _Container(remote_id, EntityType(entity_type), name)

    def remove_collection(self, remote_id: str) -> None:
        self._containers.pop(remote_id, None)

    def put(self, remote_collection_id: str, payload: Dict[str, Any], remote_id: Optional[str] = None) -> str:
        """Create or replace an object as if another client wrote it."""
        with self._lock:
            container = self._containers[remote_collection_id]
            remote_id = remote_id or self._new_id()
            container.objects[remote_id] = dict(payload, id=remote_id)
            self._record(container, remote_id, "upsert")
            return remote_id

    def destroy(self, remote_collection_id: str, remote_id: str) -> None:
        """Delete an object as if another client removed it."""
        with self._lock:
            container = self._containers[remote_collection_id]
            container.objects.pop(remote_id, None)
            self._record(container, remote_id, "destroy")

    def get(self, remote_collection_id: str, remote_id: str) -> Optional[Dict[str, Any]]:
        return self._containers[remote_collection_id].objects.get(remote_id)

    def objects(self, remote_collection_id: str) -> Dict[str, Dict[str, Any]]:
        return dict(self._containers[remote_collection_id].objects)

    @property
    def state(self) -> str:
        return str(self._state)

    def _new_id(self) -> str:
        self._next_id += 1
        return f"r{self._next_id}"

    def _record(self, container: _Container, remote_id: str, kind: str) -> None:
        self._state += 1
        container.log.append((self._state, remote_id, kind))

    def _enter(self, operation: str, remote_collection_id: Optional[str], remote_id: Optional[str] = None):
        self.calls.append((operation, remote_collection_id, remote_id))
        hook = self.before.get(operation)
        if hook is not None:
            hook(remote_collection_id)
        error = self.fail_on.get(operation)
        if error is not None:
            raise error

    def _entity(self, container: _Container, remote_id: str) -> RemoteEntity:
        obj = container.objects[remote_id]
        return RemoteEntity(
            id=remote_id,
            signature=self.signer(container.entity_type, obj),
            payload=dict(obj),
            modified_at=parse_datetime(obj.get("updated")),
        )

    def count(self, operation: str) -> int:
        return sum(1 for call in self.calls if call[0] == operation)

    # === RemoteTransport ===

    def list_collections(self, entity_type: EntityType) -> List[RemoteCollection]:
        self._enter("list_collections", None)
        entity_type = EntityType(entity_type)
        return [
            RemoteCollection(id=c.id, entity_type=c.entity_type, name=c.name)
            for c in self._containers.values()
            if c.entity_type is entity_type
        ]

    def fetch(self, entity_type: EntityType, remote_collection_id: str) -> RemoteListing:
        self._enter("fetch", remote_collection_id)
        with self._lock:
            container = self._containers[remote_collection_id]
            return RemoteListing(
                entities=[self._entity(container, rid) for rid in sorted(container.objects)],
                state=self.state,
            )

    def delta(self, entity_type: EntityType, remote_collection_id: str, token: str) -> RemoteDelta:
        self._enter("delta", remote_collection_id)
        if self.invalidate_tokens:
            raise TokenInvalid(f"Unknown state {token}")
        try:
            since = int(token)
        except (TypeError, ValueError):
            raise TokenInvalid(f"Unknown state {token}")
        with self._lock:
            container = self._containers[remote_collection_id]
            last: Dict[str, str] = {}
            for state, remote_id, kind in container.log:
                if state > since:
                    last[remote_id] = kind
            delta = RemoteDelta(new_state=self.state)
            for remote_id, kind in last.items():
                if kind == "destroy" or remote_id not in container.objects:
                    delta.deleted.append(remote_id)
                else:
                    delta.changed.append(self._entity(container, remote_id))
            return delta

    def create(
        self, entity_type: EntityType, remote_collection_id: str, payload: Dict[str, Any]
    ) -> RemoteWriteResult:
        self._enter("create", remote_collection_id)
        remote_id = self.put(remote_collection_id, payload)
        obj = self.get(remote_collection_id, remote_id)
        return RemoteWriteResult(
            remote_id=remote_id,
            signature=self.signer(EntityType(entity_type), obj),
            modified_at=parse_datetime(obj.get("updated")),
        )

    def update(
        self,
        entity_type: EntityType,
        remote_collection_id: str,
        remote_id: str,
        payload: Dict[str, Any],
    ) -> RemoteWriteResult:
        self._enter("update", remote_collection_id, remote_id)
        if self.get(remote_collection_id, remote_id) is None:
            raise RemoteNotFound(f"{remote_id} not found", remote_id=remote_id, kind="notFound")
        self.put(remote_collection_id, payload, remote_id=remote_id)
        obj = self.get(remote_collection_id, remote_id)
        return RemoteWriteResult(
            remote_id=remote_id,
            signature=self.signer(EntityType(entity_type), obj),
            modified_at=parse_datetime(obj.get("updated")),
        )

    def delete(self, entity_type: EntityType, remote_collection_id: str, remote_id: str) -> None:
        self._enter("delete", remote_collection_id, remote_id)
        if self.get(remote_collection_id, remote_id) is None:
            raise RemoteNotFound(f"{remote_id} not found", remote_id=remote_id, kind="notFound")
        self.destroy(remote_collection_id, remote_id)
