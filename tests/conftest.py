"""
Pytest fixtures and test configuration for jmapc tests.
"""

from typing import Any, Dict, Optional

import pytest

from jmapc.harmonize import LocalChanges
from jmapc.storage import SQLiteStorage
from jmapc.testing import InMemoryTransport
from jmapc.types import (
    Collection,
    ConflictPolicy,
    EntityType,
    ServiceAccount,
    SyncMode,
    parse_datetime,
)

REMOTE_BOOK = "book-1"


class FakeClock:
    """Epoch-seconds clock that only moves when told to."""

    def __init__(self, start: float = 1_750_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RevisionAdapter:
    """Adapter whose signature is the ``rev`` field, so tests can speak in "A"/"B"."""

    entity_type = EntityType.CONTACT

    def signature(self, content: Dict[str, Any]) -> str:
        return content["rev"]

    def apply_remote(self, current: Optional[Dict[str, Any]], payload: Dict[str, Any]) -> Dict[str, Any]:
        return {k: v for k, v in payload.items() if k not in ("id", "uid")}

    def to_remote_payload(self, content: Dict[str, Any], uuid: str) -> Dict[str, Any]:
        return dict(content, uid=uuid)

    def modified_at(self, content: Dict[str, Any]):
        return parse_datetime(content.get("updated"))


def revision_signer(entity_type, payload: Dict[str, Any]) -> str:
    return payload["rev"]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def temp_db(tmp_path):
    """Create a temporary database path."""
    return tmp_path / "jmapc.db"


@pytest.fixture
def storage(temp_db, clock):
    """SQLiteStorage on a temporary database with a fake clock."""
    storage = SQLiteStorage(db_path=temp_db, clock=clock)
    yield storage
    storage.close()


@pytest.fixture
def account(storage):
    """Account with contacts cached, everything else off."""
    return storage.create_account(
        ServiceAccount(
            id=None,
            user_id="alice",
            label="Work",
            connection={"base_url": "https://jmap.example.com", "token": "secret-token-value"},
            modes={EntityType.CONTACT: SyncMode.CACHED},
            policies={EntityType.CONTACT: ConflictPolicy.LOCAL_WINS},
        )
    )


@pytest.fixture
def remote():
    """In-memory remote with one address book, signing with the real adapters."""
    transport = InMemoryTransport()
    transport.add_collection(REMOTE_BOOK, EntityType.CONTACT, "Personal")
    return transport


@pytest.fixture
def collection(storage, account):
    """Local collection linked to the remote address book."""
    return storage.create_collection(
        Collection(
            id=None,
            account_id=account.id,
            entity_type=EntityType.CONTACT,
            label="Personal",
            remote_id=REMOTE_BOOK,
        )
    )


@pytest.fixture
def local(storage):
    return LocalChanges(storage)


@pytest.fixture
def rev_adapters():
    return {EntityType.CONTACT: RevisionAdapter()}


@pytest.fixture
def rev_remote():
    """In-memory remote whose signatures are the ``rev`` field."""
    transport = InMemoryTransport(signer=revision_signer)
    transport.add_collection(REMOTE_BOOK, EntityType.CONTACT, "Personal")
    return transport


def contact(name: str, **extra: Any) -> Dict[str, Any]:
    """Minimal JSContact card content."""
    return dict({"kind": "individual", "name": {"full": name}}, **extra)
