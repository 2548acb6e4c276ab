"""Tagged-union payloads for queued mutations.

Known ``(target_type, op)`` pairs decode to typed dataclasses. Anything else,
including envelopes written by a newer client with a higher schema version,
decodes to :class:`OpaquePayload` so it still replays unchanged.

A body only becomes typed when the typed form writes back exactly the same
wire body. Bodies with extra or missing keys stay opaque, so nothing that was
enqueued is dropped on the way to the remote.

Stored form::

    {"kind": "node.update", "schema_version": 1, "data": {...}}

Only ``data`` goes over the wire.
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, ClassVar

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

_REGISTRY: dict[str, type["QueuePayload"]] = {}


def payload_kind(target_type: str, op: str) -> str:
    return f"{target_type}.{op}"


class QueuePayload(ABC):
    """Base class for queue payloads."""

    kind: ClassVar[str] = ""
    schema_version: ClassVar[int] = SCHEMA_VERSION

    @abstractmethod
    def to_wire(self) -> Any:
        """Return the JSON-serializable body sent to the remote."""

    @classmethod
    @abstractmethod
    def from_wire(cls, data: Any) -> "QueuePayload":
        """Build from a wire body. Raises KeyError/TypeError on bad shape."""

    def conflict_project_id(self) -> str | None:
        """Project a conflict on this payload is filed under, if known."""
        return None

    def envelope(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "schema_version": self.schema_version,
            "data": self.to_wire(),
        }


def register_payload(cls: type[QueuePayload]) -> type[QueuePayload]:
    """Class decorator adding a payload type to the registry."""
    if not cls.kind:
        raise ValueError(f"{cls.__name__} has no kind")
    _REGISTRY[cls.kind] = cls
    return cls


@register_payload
@dataclass
class NodeCreate(QueuePayload):
    kind: ClassVar[str] = "node.create"

    project_id: str
    node_type: str
    data: dict[str, Any] = field(default_factory=dict)

    def to_wire(self) -> dict[str, Any]:
        return {
            "project_id": self.project_id,
            "node_type": self.node_type,
            "data": self.data,
        }

    @classmethod
    def from_wire(cls, data: Any) -> "NodeCreate":
        return cls(
            project_id=data["project_id"],
            node_type=data["node_type"],
            data=dict(data.get("data", {})),
        )

    def conflict_project_id(self) -> str | None:
        return self.project_id


@register_payload
@dataclass
class NodeUpdate(QueuePayload):
    kind: ClassVar[str] = "node.update"

    project_id: str
    patch: dict[str, Any] = field(default_factory=dict)

    def to_wire(self) -> dict[str, Any]:
        return {"project_id": self.project_id, "patch": self.patch}

    @classmethod
    def from_wire(cls, data: Any) -> "NodeUpdate":
        return cls(project_id=data["project_id"], patch=dict(data["patch"]))

    def conflict_project_id(self) -> str | None:
        return self.project_id


@register_payload
@dataclass
class NodeDelete(QueuePayload):
    kind: ClassVar[str] = "node.delete"

    project_id: str

    def to_wire(self) -> dict[str, Any]:
        return {"project_id": self.project_id}

    @classmethod
    def from_wire(cls, data: Any) -> "NodeDelete":
        return cls(project_id=data["project_id"])

    def conflict_project_id(self) -> str | None:
        return self.project_id


@dataclass
class OpaquePayload(QueuePayload):
    """Fallback for payloads without a known schema."""

    data: Any = None
    opaque_kind: str | None = None
    opaque_version: int = SCHEMA_VERSION

    # kind and version are per instance, taken from the decoded envelope
    def envelope(self) -> dict[str, Any]:
        return {
            "kind": self.opaque_kind,
            "schema_version": self.opaque_version,
            "data": self.data,
        }

    def to_wire(self) -> Any:
        return self.data

    @classmethod
    def from_wire(cls, data: Any) -> "OpaquePayload":
        return cls(data=data)

    def conflict_project_id(self) -> str | None:
        if isinstance(self.data, dict):
            value = self.data.get("project_id") or self.data.get("projectId")
            return str(value) if value is not None else None
        return None


def _decode_typed(cls: type[QueuePayload], data: Any) -> QueuePayload | None:
    """Typed payload for ``data``, or None unless it round-trips unchanged."""
    try:
        payload = cls.from_wire(data)
    except (KeyError, TypeError, AttributeError, ValueError) as e:
        logger.debug(f"Payload for {cls.kind} does not match schema ({e}), keeping opaque")
        return None

    if payload.to_wire() != data:
        logger.debug(f"Payload for {cls.kind} has fields outside its schema, keeping opaque")
        return None
    return payload


def build_payload(target_type: str, op: str, data: Any) -> QueuePayload:
    """Build the typed payload for ``(target_type, op)`` from a wire body.

    Falls back to :class:`OpaquePayload` when the pair is unknown or the
    body does not match the registered schema exactly.
    """
    kind = payload_kind(target_type, op)
    cls = _REGISTRY.get(kind)
    if cls is not None:
        payload = _decode_typed(cls, data)
        if payload is not None:
            return payload
    return OpaquePayload(data=data, opaque_kind=kind)


def encode_payload(payload: QueuePayload) -> str:
    """Serialize a payload to its stored JSON envelope."""
    return json.dumps(payload.envelope())


def decode_payload(text: str) -> QueuePayload:
    """Decode a stored payload.

    Raw JSON without an envelope (written before envelopes existed) and
    envelopes from a newer schema version decode as opaque.
    """
    raw = json.loads(text)
    if not (isinstance(raw, dict) and "kind" in raw and "data" in raw):
        return OpaquePayload(data=raw)

    kind = raw["kind"]
    version = int(raw.get("schema_version", SCHEMA_VERSION))
    cls = _REGISTRY.get(kind) if kind else None
    if cls is not None and version <= cls.schema_version:
        payload = _decode_typed(cls, raw["data"])
        if payload is not None:
            return payload
    return OpaquePayload(data=raw["data"], opaque_kind=kind, opaque_version=version)
