"""Entity adapters for contacts, events and tasks.

Each adapter declares the set of fields that make up the canonical content
of its entity type. Local content and remote payloads are reduced to that
set before hashing, so an entity pulled from the remote signs identically
on both sides.
"""

import hashlib
import json
import logging
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from jmapc.types import EntityType, parse_datetime

logger = logging.getLogger(__name__)


def compute_signature(content: Dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON form of ``content``."""
    canonical = json.dumps(content, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class FieldMappedAdapter:
    """Adapter whose canonical content is a fixed subset of payload fields.

    Subclasses set ``entity_type``, ``fields`` (the signed field set) and
    ``collection_field`` (the remote membership property, never signed).
    The server-maintained ``updated`` timestamp is carried along but not
    signed, so a server touching it alone is not seen as a content change.
    """

    entity_type: EntityType
    fields: Tuple[str, ...] = ()
    collection_field: str = ""
    modified_field: str = "updated"

    def canonical(self, data: Dict[str, Any]) -> Dict[str, Any]:
        return {name: data[name] for name in self.fields if data.get(name) is not None}

    def signature(self, content: Dict[str, Any]) -> str:
        return compute_signature(self.canonical(content))

    def apply_remote(
        self, current: Optional[Dict[str, Any]], payload: Dict[str, Any]
    ) -> Dict[str, Any]:
        # Remote payload replaces the signed fields; unsigned local extras survive
        content = dict(current or {})
        for name in self.fields:
            content.pop(name, None)
        content.update(self.canonical(payload))
        if payload.get(self.modified_field) is not None:
            content[self.modified_field] = payload[self.modified_field]
        return content

    def to_remote_payload(self, content: Dict[str, Any], uuid: str) -> Dict[str, Any]:
        payload = self.canonical(content)
        payload["uid"] = uuid
        return payload

    def modified_at(self, content: Dict[str, Any]) -> Optional[datetime]:
        return parse_datetime(content.get(self.modified_field))


class ContactAdapter(FieldMappedAdapter):
    """JSContact card."""

    entity_type = EntityType.CONTACT
    collection_field = "addressBookIds"
    fields = (
        "kind",
        "name",
        "nicknames",
        "organizations",
        "titles",
        "emails",
        "phones",
        "addresses",
        "onlineServices",
        "anniversaries",
        "notes",
        "keywords",
        "media",
    )


class EventAdapter(FieldMappedAdapter):
    """JSCalendar event."""

    entity_type = EntityType.EVENT
    collection_field = "calendarIds"
    fields = (
        "title",
        "description",
        "start",
        "duration",
        "timeZone",
        "showWithoutTime",
        "status",
        "freeBusyStatus",
        "privacy",
        "locations",
        "virtualLocations",
        "participants",
        "recurrenceRules",
        "recurrenceOverrides",
        "excludedRecurrenceRules",
        "alerts",
        "keywords",
        "categories",
        "priority",
        "sequence",
    )


class TaskAdapter(FieldMappedAdapter):
    """JSCalendar task."""

    entity_type = EntityType.TASK
    collection_field = "taskListId"
    fields = (
        "title",
        "description",
        "start",
        "due",
        "estimatedDuration",
        "timeZone",
        "progress",
        "percentComplete",
        "priority",
        "recurrenceRules",
        "alerts",
        "keywords",
        "categories",
        "sequence",
    )


ADAPTERS: Dict[EntityType, FieldMappedAdapter] = {
    EntityType.CONTACT: ContactAdapter(),
    EntityType.EVENT: EventAdapter(),
    EntityType.TASK: TaskAdapter(),
}


def get_adapter(entity_type: EntityType) -> FieldMappedAdapter:
    """Return the adapter registered for ``entity_type``."""
    try:
        return ADAPTERS[EntityType(entity_type)]
    except (KeyError, ValueError):
        raise ValueError(f"No adapter for entity type: {entity_type}")


def payload_signature(entity_type: EntityType, payload: Dict[str, Any]) -> str:
    """Sign a remote payload the way its adapter signs local content."""
    return get_adapter(entity_type).signature(payload)
