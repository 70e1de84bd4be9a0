"""JMAP transport over httpx.

Implements RemoteTransport against a JMAP server (RFC 8620) for the
contacts, calendars and tasks data types. Every entity returned is signed
with the same adapter that signs local content, so remote signatures and
local signatures can be compared directly.

Error mapping:
- HTTP 401/403              -> AuthenticationRejected
- httpx timeouts            -> TransportTimeout
- other HTTP/method errors  -> TransportRejected
- cannotCalculateChanges    -> TokenInvalid
- SetError notFound         -> RemoteNotFound
- any other SetError        -> RemoteEntityRejected
"""

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlparse

import httpx

from jmapc.adapters import get_adapter, payload_signature
from jmapc.protocols import (
    AuthenticationRejected,
    RemoteCollection,
    RemoteDelta,
    RemoteEntity,
    RemoteEntityRejected,
    RemoteListing,
    RemoteNotFound,
    RemoteWriteResult,
    TokenInvalid,
    TransportRejected,
    TransportTimeout,
)
from jmapc.types import EntityType, ServiceAccount, parse_datetime

logger = logging.getLogger(__name__)

CORE_CAPABILITY = "urn:ietf:params:jmap:core"

# Page size for /query and /changes
PAGE_SIZE = 256


@dataclass(frozen=True)
class JmapType:
    """How one entity type maps onto JMAP data types."""

    capability: str
    object_name: str
    container_name: str
    membership: str  # Property naming the container(s) of an object
    query_filter: str  # FilterCondition property selecting one container
    multi: bool  # Membership is an id set (True) or a single id (False)

    def member_of(self, obj: Dict[str, Any], container_id: str) -> bool:
        value = obj.get(self.membership)
        if self.multi:
            return isinstance(value, dict) and bool(value.get(container_id))
        return value == container_id

    def membership_value(self, container_id: str) -> Any:
        return {container_id: True} if self.multi else container_id

    def filter_for(self, container_id: str) -> Dict[str, Any]:
        return {self.query_filter: [container_id] if self.multi else container_id}


JMAP_TYPES = {
    EntityType.CONTACT: JmapType(
        capability="urn:ietf:params:jmap:contacts",
        object_name="ContactCard",
        container_name="AddressBook",
        membership="addressBookIds",
        query_filter="inAddressBook",
        multi=True,
    ),
    EntityType.EVENT: JmapType(
        capability="urn:ietf:params:jmap:calendars",
        object_name="CalendarEvent",
        container_name="Calendar",
        membership="calendarIds",
        query_filter="inCalendars",
        multi=True,
    ),
    EntityType.TASK: JmapType(
        capability="urn:ietf:params:jmap:tasks",
        object_name="Task",
        container_name="TaskList",
        membership="taskListId",
        query_filter="inTaskLists",
        multi=False,
    ),
}


def validate_backend_url(url: str, *, allow_localhost_http: bool = True) -> Optional[str]:
    """Validate a server URL for safe credential transmission.

    Only https is accepted, except plain http to localhost/127.0.0.1 when
    ``allow_localhost_http`` is set. Returns the URL without a trailing
    slash, or None (with a warning logged) if rejected.
    """
    if not url:
        return None
    parsed = urlparse(url)
    if parsed.scheme not in {"https", "http"}:
        logger.warning("Invalid server URL scheme; only http/https allowed.")
        return None
    if not parsed.netloc:
        logger.warning("Invalid server URL; missing host.")
        return None
    if parsed.scheme == "http":
        host = parsed.hostname or ""
        if not allow_localhost_http or host not in {"localhost", "127.0.0.1"}:
            logger.warning("Refusing non-local http server URL for security.")
            return None
    return url.rstrip("/")


class JmapTransport:
    """RemoteTransport for one JMAP account.

    Args:
        base_url: Server URL; the session is discovered at /.well-known/jmap.
        token: Bearer token. Takes precedence over username/password.
        username: Basic auth user name.
        password: Basic auth password.
        timeout: Per-request timeout in seconds.
        client: Optional preconfigured httpx.Client (tests pass one with a MockTransport).
        signer: Signs remote payloads; defaults to the entity adapters.
    """

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        timeout: float = 30.0,
        client: Optional[httpx.Client] = None,
        signer: Callable[[EntityType, Dict[str, Any]], str] = payload_signature,
    ):
        validated = validate_backend_url(base_url)
        if validated is None:
            raise ValueError(f"Refusing server URL: {base_url}")
        self.base_url = validated
        self.timeout = timeout
        self.signer = signer
        self._headers = {"Accept": "application/json"}
        self._auth: Optional[Tuple[str, str]] = None
        if token:
            self._headers["Authorization"] = f"Bearer {token}"
        elif username is not None:
            self._auth = (username, password or "")
        self._client = client or httpx.Client()
        self._session: Optional[Dict[str, Any]] = None
        self._session_lock = threading.Lock()

    @classmethod
    def from_account(cls, account: ServiceAccount, timeout: float = 30.0) -> "JmapTransport":
        """Build a transport from the connection parameters of an account."""
        connection = account.connection or {}
        base_url = connection.get("base_url")
        if not base_url:
            raise ValueError(f"Account {account.id} has no base_url")
        return cls(
            base_url,
            token=connection.get("token"),
            username=connection.get("username"),
            password=connection.get("password"),
            timeout=timeout,
        )

    def close(self) -> None:
        self._client.close()

    # === HTTP ===

    def _send(self, method: str, url: str, body: Optional[Dict[str, Any]] = None) -> Any:
        kwargs: Dict[str, Any] = {"headers": self._headers, "timeout": self.timeout}
        if self._auth is not None:
            kwargs["auth"] = self._auth
        if body is not None:
            kwargs["json"] = body
        try:
            response = self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise TransportTimeout(f"{method} {url} timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            raise TransportRejected(f"{method} {url} failed: {e}") from e

        if response.status_code in (401, 403):
            raise AuthenticationRejected(f"{method} {url} returned HTTP {response.status_code}")
        if response.status_code >= 400:
            raise TransportRejected(f"{method} {url} returned HTTP {response.status_code}")
        try:
            return response.json()
        except ValueError as e:
            raise TransportRejected(f"{method} {url} returned a malformed response") from e

    def session(self) -> Dict[str, Any]:
        """The JMAP session object, fetched once per transport."""
        with self._session_lock:
            if self._session is None:
                data = self._send("GET", f"{self.base_url}/.well-known/jmap")
                if not isinstance(data, dict) or not data.get("apiUrl"):
                    raise TransportRejected("Session resource has no apiUrl")
                self._session = data
            return self._session

    def _api_url(self) -> str:
        return str(httpx.URL(self.base_url + "/").join(self.session()["apiUrl"]))

    def _account_id(self, jmap_type: JmapType) -> str:
        session = self.session()
        account_id = (session.get("primaryAccounts") or {}).get(jmap_type.capability)
        if not account_id:
            raise TransportRejected(f"Server has no account for {jmap_type.capability}")
        return account_id

    def _call(self, jmap_type: JmapType, calls: List[list]) -> Dict[str, list]:
        """Send method calls in one request; returns responses keyed by call id."""
        body = {"using": [CORE_CAPABILITY, jmap_type.capability], "methodCalls": calls}
        data = self._send("POST", self._api_url(), body)
        responses = data.get("methodResponses") if isinstance(data, dict) else None
        if not isinstance(responses, list):
            raise TransportRejected("Response has no methodResponses")
        by_id: Dict[str, list] = {}
        for name, arguments, call_id in responses:
            if name == "error":
                error_type = arguments.get("type")
                if error_type == "cannotCalculateChanges":
                    raise TokenInvalid(f"Server cannot calculate changes: {arguments}")
                raise TransportRejected(f"Method call {call_id} failed: {error_type}")
            by_id[call_id] = arguments
        return by_id

    def _entity(self, entity_type: EntityType, obj: Dict[str, Any]) -> RemoteEntity:
        return RemoteEntity(
            id=obj["id"],
            signature=self.signer(entity_type, obj),
            payload=obj,
            modified_at=parse_datetime(obj.get("updated")),
        )

    # === RemoteTransport ===

    def ping(self) -> List[str]:
        """Fetch the session and return the capabilities the server offers."""
        with self._session_lock:
            self._session = None
        return sorted(self.session().get("capabilities") or {})

    def list_collections(self, entity_type: EntityType) -> List[RemoteCollection]:
        jmap_type = JMAP_TYPES[EntityType(entity_type)]
        account_id = self._account_id(jmap_type)
        responses = self._call(
            jmap_type,
            [[f"{jmap_type.container_name}/get", {"accountId": account_id, "ids": None}, "c"]],
        )
        return [
            RemoteCollection(id=item["id"], entity_type=EntityType(entity_type), name=item.get("name"))
            for item in responses["c"].get("list", [])
        ]

    def fetch(self, entity_type: EntityType, remote_collection_id: str) -> RemoteListing:
        entity_type = EntityType(entity_type)
        jmap_type = JMAP_TYPES[entity_type]
        account_id = self._account_id(jmap_type)
        name = jmap_type.object_name
        listing = RemoteListing()
        position = 0
        while True:
            responses = self._call(
                jmap_type,
                [
                    [
                        f"{name}/query",
                        {
                            "accountId": account_id,
                            "filter": jmap_type.filter_for(remote_collection_id),
                            "position": position,
                            "limit": PAGE_SIZE,
                            "calculateTotal": True,
                        },
                        "q",
                    ],
                    [
                        f"{name}/get",
                        {
                            "accountId": account_id,
                            "#ids": {"resultOf": "q", "name": f"{name}/query", "path": "/ids"},
                        },
                        "g",
                    ],
                ],
            )
            query, got = responses["q"], responses["g"]
            if listing.state is None:
                # Changes after the first page are reported again by the next delta
                listing.state = got.get("state")
            for obj in got.get("list", []):
                if jmap_type.member_of(obj, remote_collection_id):
                    listing.entities.append(self._entity(entity_type, obj))
            ids = query.get("ids", [])
            position += len(ids)
            total = query.get("total")
            if not ids or (total is not None and position >= total) or len(ids) < PAGE_SIZE:
                break
        logger.debug(
            f"Listed {len(listing.entities)} {name} objects in {remote_collection_id}"
        )
        return listing

    def delta(
        self, entity_type: EntityType, remote_collection_id: str, token: str
    ) -> RemoteDelta:
        entity_type = EntityType(entity_type)
        jmap_type = JMAP_TYPES[entity_type]
        account_id = self._account_id(jmap_type)
        name = jmap_type.object_name
        delta = RemoteDelta()
        seen: Dict[str, str] = {}  # remote id -> "added" | "changed" | "deleted"
        objects: Dict[str, RemoteEntity] = {}
        since_state = token
        while True:
            responses = self._call(
                jmap_type,
                [
                    [
                        f"{name}/changes",
                        {"accountId": account_id, "sinceState": since_state, "maxChanges": PAGE_SIZE},
                        "ch",
                    ],
                    [
                        f"{name}/get",
                        {
                            "accountId": account_id,
                            "#ids": {"resultOf": "ch", "name": f"{name}/changes", "path": "/created"},
                        },
                        "cr",
                    ],
                    [
                        f"{name}/get",
                        {
                            "accountId": account_id,
                            "#ids": {"resultOf": "ch", "name": f"{name}/changes", "path": "/updated"},
                        },
                        "up",
                    ],
                ],
            )
            changes = responses["ch"]
            for key, kind in (("cr", "added"), ("up", "changed")):
                for obj in responses[key].get("list", []):
                    if jmap_type.member_of(obj, remote_collection_id):
                        # Created in an earlier page stays an addition
                        seen[obj["id"]] = "added" if seen.get(obj["id"]) == "added" else kind
                        objects[obj["id"]] = self._entity(entity_type, obj)
                    else:
                        # Moved out of this collection
                        seen[obj["id"]] = "deleted"
                        objects.pop(obj["id"], None)
            for remote_id in changes.get("destroyed", []):
                seen[remote_id] = "deleted"
                objects.pop(remote_id, None)

            new_state = changes.get("newState")
            if not new_state:
                raise TransportRejected(f"{name}/changes returned no newState")
            since_state = new_state
            if not changes.get("hasMoreChanges"):
                break

        for remote_id, kind in seen.items():
            if kind == "deleted":
                delta.deleted.append(remote_id)
            elif kind == "added":
                delta.added.append(objects[remote_id])
            else:
                delta.changed.append(objects[remote_id])
        delta.new_state = since_state
        return delta

    def _set(
        self, entity_type: EntityType, arguments: Dict[str, Any]
    ) -> Dict[str, Any]:
        jmap_type = JMAP_TYPES[entity_type]
        arguments = dict(arguments, accountId=self._account_id(jmap_type))
        responses = self._call(jmap_type, [[f"{jmap_type.object_name}/set", arguments, "s"]])
        return responses["s"]

    @staticmethod
    def _reject(kind: str, errors: Dict[str, Any], key: str, remote_id: Optional[str]) -> None:
        error = errors.get(key)
        if error is None:
            return
        error_type = error.get("type") if isinstance(error, dict) else None
        description = error.get("description") if isinstance(error, dict) else None
        message = f"{kind} rejected: {error_type}" + (f" ({description})" if description else "")
        if error_type == "notFound":
            raise RemoteNotFound(message, remote_id=remote_id, kind=error_type)
        raise RemoteEntityRejected(message, remote_id=remote_id, kind=error_type)

    def create(
        self, entity_type: EntityType, remote_collection_id: str, payload: Dict[str, Any]
    ) -> RemoteWriteResult:
        entity_type = EntityType(entity_type)
        jmap_type = JMAP_TYPES[entity_type]
        body = dict(payload)
        body[jmap_type.membership] = jmap_type.membership_value(remote_collection_id)
        result = self._set(entity_type, {"create": {"new": body}})
        self._reject("create", result.get("notCreated") or {}, "new", None)
        created = (result.get("created") or {}).get("new")
        if not created or "id" not in created:
            raise TransportRejected(f"{jmap_type.object_name}/set create returned no id")
        # Server-set properties complete what we sent
        stored = dict(body, **created)
        return RemoteWriteResult(
            remote_id=created["id"],
            signature=self.signer(entity_type, stored),
            modified_at=parse_datetime(stored.get("updated")),
        )

    def update(
        self,
        entity_type: EntityType,
        remote_collection_id: str,
        remote_id: str,
        payload: Dict[str, Any],
    ) -> RemoteWriteResult:
        entity_type = EntityType(entity_type)
        jmap_type = JMAP_TYPES[entity_type]
        patch = dict(payload)
        # Signed properties dropped locally are removed remotely
        for name in get_adapter(entity_type).fields:
            patch.setdefault(name, None)
        patch.pop("uid", None)
        result = self._set(entity_type, {"update": {remote_id: patch}})
        self._reject("update", result.get("notUpdated") or {}, remote_id, remote_id)
        if remote_id not in (result.get("updated") or {}):
            raise TransportRejected(f"{jmap_type.object_name}/set did not confirm update of {remote_id}")
        changed = (result.get("updated") or {}).get(remote_id) or {}
        stored = dict(payload, **changed)
        return RemoteWriteResult(
            remote_id=remote_id,
            signature=self.signer(entity_type, stored),
            modified_at=parse_datetime(stored.get("updated")),
        )

    def delete(self, entity_type: EntityType, remote_collection_id: str, remote_id: str) -> None:
        entity_type = EntityType(entity_type)
        result = self._set(entity_type, {"destroy": [remote_id]})
        self._reject("delete", result.get("notDestroyed") or {}, remote_id, remote_id)
