from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class EventType(str, Enum):
    ADD = "ADD"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


# Kubernetes watch event types mapped onto store event types.
WATCH_EVENT_TYPES: dict[str, EventType] = {
    "ADDED": EventType.ADD,
    "MODIFIED": EventType.UPDATE,
    "DELETED": EventType.DELETE,
}


@dataclass(frozen=True)
class ObjectEvent:
    """An Ingress object was added, updated or deleted."""

    type: EventType
    obj: Any


@dataclass(frozen=True)
class ConfigurationEvent:
    """The controller ConfigMap changed."""

    obj: Any = None


Event = ObjectEvent | ConfigurationEvent
