from __future__ import annotations

import base64
import binascii
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class UnexpectedObjectError(TypeError):
    """Raised when a delivered object is not of the expected resource kind."""


class ObjectKeyError(ValueError):
    """Raised when no ``namespace/name`` key can be derived from an object."""


class ControllerState(Enum):
    """Process-wide lifecycle states of the controller."""

    INITIALIZING = "Initializing"
    WAITING_FOR_SYNC = "WaitingForSync"
    RUNNING = "Running"
    SHUTTING_DOWN = "ShuttingDown"
    STOPPED = "Stopped"


@dataclass(frozen=True)
class SecretRecord:
    """Snapshot of a Secret as seen by the controller.

    ``data`` holds decoded payload bytes.  ``resource_version`` belongs to the
    namespace the record was read from and is only ever used for optimistic
    concurrency against that same object.
    """

    namespace: str
    name: str
    type_tag: str
    data: Mapping[str, bytes] = field(default_factory=dict)
    resource_version: str | None = None
    labels: Mapping[str, str] = field(default_factory=dict)
    annotations: Mapping[str, str] = field(default_factory=dict)

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class NamespaceRecord:
    name: str
    phase: str | None = None


@dataclass(frozen=True)
class SyncTarget:
    """A single (secret, target namespace) pairing for one replication pass."""

    secret: SecretRecord
    namespace: str


def split_key(key: str) -> tuple[str, str]:
    """Split a ``namespace/name`` key.  Raises :class:`ObjectKeyError` when malformed."""
    namespace, separator, name = key.partition("/")
    if not separator or not namespace or not name or "/" in name:
        raise ObjectKeyError(f"malformed object key: {key!r}")
    return namespace, name


def meta_namespace_key(obj: Any) -> str:
    """Return ``namespace/name`` for namespaced objects and ``name`` otherwise."""
    metadata = getattr(obj, "metadata", None)
    name = getattr(metadata, "name", None)
    if not isinstance(name, str) or not name:
        raise ObjectKeyError(f"object has no metadata.name: {type(obj).__name__}")
    namespace = getattr(metadata, "namespace", None)
    if namespace:
        return f"{namespace}/{name}"
    return name


def _string_map(raw: Any) -> dict[str, str]:
    if not isinstance(raw, dict):
        return {}
    return {k: ("" if v is None else str(v)) for k, v in raw.items() if isinstance(k, str)}


def decode_secret_data(raw: Any) -> dict[str, bytes]:
    """Decode the base64 ``data`` map returned by the API into raw bytes."""
    if not isinstance(raw, dict):
        return {}
    decoded: dict[str, bytes] = {}
    for key, value in raw.items():
        if not isinstance(key, str):
            continue
        try:
            decoded[key] = base64.b64decode(value or "", validate=True)
        except (binascii.Error, TypeError, ValueError) as exc:
            raise UnexpectedObjectError(f"secret data key {key!r} is not valid base64") from exc
    return decoded


def encode_secret_data(data: Mapping[str, bytes]) -> dict[str, str]:
    return {key: base64.b64encode(value).decode("ascii") for key, value in data.items()}


def secret_from_object(obj: Any) -> SecretRecord:
    """Convert a ``V1Secret``-shaped object into a :class:`SecretRecord`.

    Anything without the ``type`` and ``data`` attributes of a Secret (for
    example a Namespace delivered on the wrong handler) raises
    :class:`UnexpectedObjectError`.
    """
    if obj is None or not hasattr(obj, "type") or not hasattr(obj, "data"):
        raise UnexpectedObjectError(f"expected a Secret, got {type(obj).__name__}")
    metadata = getattr(obj, "metadata", None)
    name = getattr(metadata, "name", None)
    namespace = getattr(metadata, "namespace", None)
    if not name or not namespace:
        raise ObjectKeyError("secret is missing metadata.name or metadata.namespace")

    return SecretRecord(
        namespace=namespace,
        name=name,
        type_tag=obj.type or "",
        data=decode_secret_data(obj.data),
        resource_version=getattr(metadata, "resource_version", None),
        labels=_string_map(getattr(metadata, "labels", None)),
        annotations=_string_map(getattr(metadata, "annotations", None)),
    )


def namespace_from_object(obj: Any) -> NamespaceRecord:
    if obj is None or hasattr(obj, "type") or hasattr(obj, "data"):
        raise UnexpectedObjectError(f"expected a Namespace, got {type(obj).__name__}")
    name = getattr(getattr(obj, "metadata", None), "name", None)
    if not name:
        raise ObjectKeyError("namespace is missing metadata.name")
    phase = getattr(getattr(obj, "status", None), "phase", None)
    return NamespaceRecord(name=name, phase=phase)
