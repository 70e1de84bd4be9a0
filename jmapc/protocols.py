"""
jmapc Protocol Definitions
==========================

Interface contracts between the harmonization core and its collaborators.

Collaborators and their roles:
- RemoteTransport: talks to the remote JMAP server for one account.
- EntityAdapter:   knows how one entity type (contact, event, task) is
                   signed, converted to a remote payload and rebuilt from one.

Error handling philosophy:
- Store lookups return None for missing rows; StorageFailure only on I/O errors
- Lease contention raises LockHeld / LockLost and is retried next cycle
- TransportTimeout / TransportRejected abort one collection
- AuthenticationRejected aborts the whole account run
- RemoteEntityRejected is entity scope: logged, skipped, retried next cycle
- EntityChanged means a local edit raced a reconciler write; the entity is deferred
- TokenInvalid is not a failure: the delta detector falls back to a full list
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from jmapc.types import EntityType

# =============================================================================
# ERRORS
# =============================================================================


class JmapcError(Exception):
    """Base for all jmapc errors."""

    pass


class StorageFailure(JmapcError):
    """Raised when the local storage backend fails. Fatal for the current run."""

    pass


class AccountNotFound(JmapcError):
    """Raised when an operation names an account that does not exist."""

    def __init__(self, account_id: int):
        super().__init__(f"Account {account_id} not found")
        self.account_id = account_id


class LockHeld(JmapcError):
    """Raised when another live holder owns the account lease."""

    def __init__(self, account_id: int, holder: Optional[str]):
        super().__init__(f"Lease for account {account_id} is held by {holder}")
        self.account_id = account_id
        self.holder = holder


class LockLost(JmapcError):
    """Raised when a heartbeat finds the lease taken over by another holder."""

    def __init__(self, account_id: int, holder: str):
        super().__init__(f"Lease for account {account_id} is no longer held by {holder}")
        self.account_id = account_id
        self.holder = holder


class AlreadyRunning(JmapcError):
    """Raised when a run is requested for an account that is already leasing/running."""

    def __init__(self, account_id: int):
        super().__init__(f"Harmonization already running for account {account_id}")
        self.account_id = account_id


class HarmonizationCancelled(JmapcError):
    """Raised at a checkpoint when the run was stopped or ran past its deadline."""

    pass


class EntityChanged(JmapcError):
    """Raised when a conditional write finds the entity changed since it was read."""

    def __init__(self, entity_id: int):
        super().__init__(f"Entity {entity_id} changed since it was read")
        self.entity_id = entity_id


class TransportError(JmapcError):
    """Base for failures talking to the remote server."""

    pass


class TransportTimeout(TransportError):
    """The remote did not answer within the caller-supplied timeout."""

    pass


class TransportRejected(TransportError):
    """The remote refused the request (HTTP error, malformed response, method error)."""

    pass


class AuthenticationRejected(TransportRejected):
    """The remote rejected our credentials. Account scope: marks it disconnected."""

    pass


class RemoteEntityRejected(TransportRejected):
    """The remote refused a write for one entity. Entity scope."""

    def __init__(self, message: str, remote_id: Optional[str] = None, kind: Optional[str] = None):
        super().__init__(message)
        self.remote_id = remote_id
        self.kind = kind


class RemoteNotFound(RemoteEntityRejected):
    """The remote entity addressed by an update or delete no longer exists."""

    pass


class TokenInvalid(TransportError):
    """The remote cannot calculate changes from the given state token."""

    pass


# =============================================================================
# REMOTE VALUE TYPES
# =============================================================================


@dataclass
class RemoteCollection:
    """A container on the remote server."""

    id: str
    entity_type: EntityType
    name: Optional[str] = None


@dataclass
class RemoteEntity:
    """An entity as observed on the remote server."""

    id: str
    signature: str
    payload: Dict[str, Any] = field(default_factory=dict)
    modified_at: Optional[datetime] = None


@dataclass
class RemoteListing:
    """Full content of a remote collection plus the state it was read at."""

    entities: List[RemoteEntity] = field(default_factory=list)
    state: Optional[str] = None


@dataclass
class RemoteDelta:
    """Changes of a remote collection since a state token."""

    added: List[RemoteEntity] = field(default_factory=list)
    changed: List[RemoteEntity] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    new_state: Optional[str] = None


@dataclass
class RemoteWriteResult:
    """Outcome of a successful remote create/update."""

    remote_id: str
    signature: str
    modified_at: Optional[datetime] = None


# =============================================================================
# COLLABORATOR PROTOCOLS
# =============================================================================


@runtime_checkable
class RemoteTransport(Protocol):
    """Remote side of one service account.

    Every call may raise TransportTimeout, TransportRejected or
    AuthenticationRejected. delta() raises TokenInvalid when the token is
    unknown or expired. update()/delete() raise RemoteNotFound when the
    remote entity is gone.
    """

    def list_collections(self, entity_type: EntityType) -> List[RemoteCollection]: ...

    def fetch(self, entity_type: EntityType, remote_collection_id: str) -> RemoteListing: ...

    def delta(
        self, entity_type: EntityType, remote_collection_id: str, token: str
    ) -> RemoteDelta: ...

    def create(
        self, entity_type: EntityType, remote_collection_id: str, payload: Dict[str, Any]
    ) -> RemoteWriteResult: ...

    def update(
        self,
        entity_type: EntityType,
        remote_collection_id: str,
        remote_id: str,
        payload: Dict[str, Any],
    ) -> RemoteWriteResult: ...

    def delete(self, entity_type: EntityType, remote_collection_id: str, remote_id: str) -> None: ...


@runtime_checkable
class EntityAdapter(Protocol):
    """Capability set the core needs from one entity type."""

    entity_type: EntityType

    def signature(self, content: Dict[str, Any]) -> str:
        """Deterministic hash of canonical content."""
        ...

    def apply_remote(
        self, current: Optional[Dict[str, Any]], payload: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Build new local content from a remote payload."""
        ...

    def to_remote_payload(self, content: Dict[str, Any], uuid: str) -> Dict[str, Any]:
        """Build the remote payload for local content."""
        ...

    def modified_at(self, content: Dict[str, Any]) -> Optional[datetime]:
        """Last-modified timestamp carried by the content, if any."""
        ...
