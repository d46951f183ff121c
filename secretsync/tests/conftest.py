from __future__ import annotations

import base64
import copy
import itertools
from collections.abc import Callable
from types import SimpleNamespace
from typing import Any

import pytest
from kubernetes.client import ApiException

from secretsync.src.config import SyncConfig
from secretsync.src.models import NamespaceRecord, SecretRecord


def _encode(data: dict[str, bytes]) -> dict[str, str]:
    return {k: base64.b64encode(v).decode("ascii") for k, v in data.items()}


def build_secret_object(
    namespace: str,
    name: str,
    type_tag: str = "k8s.ziwon.dev/secretsync",
    data: dict[str, bytes] | None = None,
    resource_version: str = "1",
    labels: dict[str, str] | None = None,
    annotations: dict[str, str] | None = None,
) -> SimpleNamespace:
    return SimpleNamespace(
        metadata=SimpleNamespace(
            name=name,
            namespace=namespace,
            resource_version=resource_version,
            labels=labels or {},
            annotations=annotations or {},
        ),
        type=type_tag,
        data=_encode(data if data is not None else {"password": b"hunter2"}),
    )


def build_namespace_object(name: str, phase: str = "Active") -> SimpleNamespace:
    return SimpleNamespace(
        metadata=SimpleNamespace(name=name, namespace=None, resource_version="1"),
        status=SimpleNamespace(phase=phase),
    )


class FakeCoreApi:
    """In-memory stand-in for the Secret endpoints of ``CoreV1Api``.

    Enforces ``resourceVersion`` optimistic concurrency on replace and delete
    the way the API server does.  ``failures`` maps ``(operation, namespace)``
    to a list of HTTP statuses raised, in order, before the call succeeds.
    """

    def __init__(self, namespaces: list[str] | None = None) -> None:
        self.namespaces = list(namespaces or [])
        self.secrets: dict[tuple[str, str], Any] = {}
        self.failures: dict[tuple[str, str], list[int]] = {}
        self.calls: list[tuple[str, str, str]] = []
        self.before_call: Callable[[str, str, str], None] | None = None
        self._versions = itertools.count(1000)

    def _next_version(self) -> str:
        return str(next(self._versions))

    def _enter(self, operation: str, namespace: str, name: str) -> None:
        self.calls.append((operation, namespace, name))
        if self.before_call is not None:
            self.before_call(operation, namespace, name)
        queued = self.failures.get((operation, namespace))
        if queued:
            status = queued.pop(0)
            raise ApiException(status=status, reason="injected")

    def writes(self) -> list[tuple[str, str, str]]:
        return [call for call in self.calls if call[0] in {"create", "replace", "delete"}]

    def seed(self, obj: Any) -> Any:
        stored = copy.deepcopy(obj)
        self.secrets[(obj.metadata.namespace, obj.metadata.name)] = stored
        return stored

    def read_namespaced_secret(self, name: str, namespace: str) -> Any:
        self._enter("read", namespace, name)
        stored = self.secrets.get((namespace, name))
        if stored is None:
            raise ApiException(status=404, reason="Not Found")
        return copy.deepcopy(stored)

    def create_namespaced_secret(self, namespace: str, body: Any) -> Any:
        self._enter("create", namespace, body.metadata.name)
        if namespace not in self.namespaces:
            raise ApiException(status=404, reason="namespace not found")
        if (namespace, body.metadata.name) in self.secrets:
            raise ApiException(status=409, reason="AlreadyExists")
        if body.metadata.resource_version:
            raise ApiException(status=400, reason="resourceVersion must not be set on create")
        stored = copy.deepcopy(body)
        stored.metadata.namespace = namespace
        stored.metadata.resource_version = self._next_version()
        self.secrets[(namespace, body.metadata.name)] = stored
        return copy.deepcopy(stored)

    def replace_namespaced_secret(self, name: str, namespace: str, body: Any) -> Any:
        self._enter("replace", namespace, name)
        stored = self.secrets.get((namespace, name))
        if stored is None:
            raise ApiException(status=404, reason="Not Found")
        if body.metadata.resource_version != stored.metadata.resource_version:
            raise ApiException(status=409, reason="Conflict")
        if body.type != stored.type:
            raise ApiException(status=422, reason="type is immutable")
        replaced = copy.deepcopy(body)
        replaced.metadata.namespace = namespace
        replaced.metadata.resource_version = self._next_version()
        self.secrets[(namespace, name)] = replaced
        return copy.deepcopy(replaced)

    def delete_namespaced_secret(self, name: str, namespace: str, body: Any = None) -> None:
        self._enter("delete", namespace, name)
        stored = self.secrets.get((namespace, name))
        if stored is None:
            raise ApiException(status=404, reason="Not Found")
        preconditions = getattr(body, "preconditions", None)
        expected = getattr(preconditions, "resource_version", None)
        if expected is not None and expected != stored.metadata.resource_version:
            raise ApiException(status=409, reason="Conflict")
        del self.secrets[(namespace, name)]

    def mutate(self, namespace: str, name: str, **data: bytes) -> None:
        """Simulate another writer changing a stored secret."""
        stored = self.secrets[(namespace, name)]
        stored.data = _encode(data)
        stored.metadata.resource_version = self._next_version()

    def decoded(self, namespace: str, name: str) -> dict[str, bytes]:
        stored = self.secrets[(namespace, name)]
        return {k: base64.b64decode(v) for k, v in (stored.data or {}).items()}


class FakeCache:
    """Minimal object cache exposing the reads the replicator and routers use."""

    def __init__(
        self,
        namespaces: list[str] | None = None,
        secrets: list[SecretRecord] | None = None,
        synced: bool = True,
    ) -> None:
        self.namespaces = [NamespaceRecord(name=name, phase="Active") for name in namespaces or []]
        self.secrets = list(secrets or [])
        self.synced = synced

    def list_namespaces(self) -> list[NamespaceRecord]:
        return list(self.namespaces)

    def list_secrets(self, namespace: str) -> list[SecretRecord]:
        return [secret for secret in self.secrets if secret.namespace == namespace]

    def has_synced(self) -> bool:
        return self.synced


@pytest.fixture
def config() -> SyncConfig:
    return SyncConfig(max_concurrent_upserts=4, max_write_attempts=3)


@pytest.fixture
def make_secret() -> Callable[..., SimpleNamespace]:
    return build_secret_object


@pytest.fixture
def make_namespace() -> Callable[..., SimpleNamespace]:
    return build_namespace_object


@pytest.fixture
def make_core_api() -> Callable[..., FakeCoreApi]:
    return FakeCoreApi


@pytest.fixture
def make_cache() -> Callable[..., FakeCache]:
    return FakeCache
