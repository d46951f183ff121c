from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Any

from kubernetes.client import ApiException, CoreV1Api, V1ObjectMeta, V1Secret
from urllib3.exceptions import HTTPError

from secretsync.src.config import SyncConfig
from secretsync.src.kube import delete_secret_if_unchanged, read_secret_or_none
from secretsync.src.metrics import METRICS
from secretsync.src.models import SecretRecord, SyncTarget, encode_secret_data, split_key

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "secretsync"
SOURCE_ANNOTATION = "k8s.ziwon.dev/secretsync-source"
_DROPPED_ANNOTATIONS = frozenset({"kubectl.kubernetes.io/last-applied-configuration"})


@dataclass(frozen=True)
class WriteOutcome:
    """Result of writing (or deleting) a single replica."""

    namespace: str
    action: str
    retryable: bool = False


@dataclass(frozen=True)
class ReplicationResult:
    """Immutable summary of one replication or retraction pass.

    Returned by every pass so callers can decide on a retry without querying
    the Kubernetes API again.
    """

    key: str
    targets: tuple[str, ...]
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    deleted: int = 0
    failed: int = 0
    retryable: int = 0

    @classmethod
    def from_outcomes(
        cls, key: str, targets: Iterable[str], outcomes: Iterable[WriteOutcome]
    ) -> ReplicationResult:
        counts = {"created": 0, "updated": 0, "unchanged": 0, "deleted": 0, "failed": 0}
        retryable = 0
        for outcome in outcomes:
            if outcome.action in counts:
                counts[outcome.action] += 1
            if outcome.action == "failed" and outcome.retryable:
                retryable += 1
        return cls(key=key, targets=tuple(targets), retryable=retryable, **counts)

    @property
    def needs_retry(self) -> bool:
        return self.retryable > 0


def compute_target_namespaces(namespaces: Iterable[str], config: SyncConfig) -> list[str]:
    """Return ``namespaces`` minus the blacklist (which always holds the source), sorted."""
    return sorted({name for name in namespaces if name and not config.is_blacklisted(name)})


def build_replica(secret: SecretRecord, namespace: str) -> V1Secret:
    """Build the desired replica of *secret* in *namespace*.

    Only name, type, payload, labels and annotations are carried over.  The
    source's uid, resourceVersion, ownerReferences and other server-owned
    metadata never leave the source namespace.
    """
    labels = dict(secret.labels)
    labels[MANAGED_BY_LABEL] = MANAGED_BY_VALUE
    annotations = {
        key: value
        for key, value in secret.annotations.items()
        if key not in _DROPPED_ANNOTATIONS
    }
    annotations[SOURCE_ANNOTATION] = secret.key

    return V1Secret(
        api_version="v1",
        kind="Secret",
        metadata=V1ObjectMeta(
            name=secret.name,
            namespace=namespace,
            labels=labels,
            annotations=annotations,
        ),
        type=secret.type_tag,
        data=encode_secret_data(secret.data),
    )


def _metadata_map(obj: Any, attribute: str) -> dict[str, str]:
    value = getattr(getattr(obj, "metadata", None), attribute, None)
    return value if isinstance(value, dict) else {}


def replica_matches(existing: Any, desired: V1Secret) -> bool:
    """True when *existing* already carries the desired type, payload and managed metadata."""
    if getattr(existing, "type", None) != desired.type:
        return False
    if (getattr(existing, "data", None) or {}) != (desired.data or {}):
        return False
    labels = _metadata_map(existing, "labels")
    annotations = _metadata_map(existing, "annotations")
    return all(labels.get(k) == v for k, v in (desired.metadata.labels or {}).items()) and all(
        annotations.get(k) == v for k, v in (desired.metadata.annotations or {}).items()
    )


def is_managed_replica(obj: Any, source_key: str) -> bool:
    return _metadata_map(obj, "annotations").get(SOURCE_ANNOTATION) == source_key


def is_transient(exc: ApiException) -> bool:
    status = exc.status or 0
    return status == 429 or status >= 500


class Replicator:
    """Fans a source secret out to every eligible namespace.

    Each replica is written with an upsert: read the target, create it when
    absent, skip it when already identical, otherwise replace it using the
    *target's* own ``resourceVersion``.  ``409 Conflict`` responses re-fetch
    and retry; ``429``/``5xx`` and network errors retry with jittered
    backoff, up to ``max_write_attempts`` per replica.  A failure in one
    namespace never stops the remaining namespaces.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        cache: Any,
        config: SyncConfig,
        logger: logging.Logger | None = None,
        sleep_fn: Callable[[float], None] = time.sleep,
    ) -> None:
        self.core_api = core_api
        self.cache = cache
        self.config = config
        self.logger = logger or logging.getLogger(__name__)
        self.sleep_fn = sleep_fn

    def _cached_namespace_names(self) -> list[str]:
        # Writes into a terminating namespace are rejected with 403.
        return [
            namespace.name
            for namespace in self.cache.list_namespaces()
            if namespace.phase != "Terminating"
        ]

    def sync_targets(
        self, secret: SecretRecord, namespaces: Iterable[str] | None = None
    ) -> list[SyncTarget]:
        candidates = self._cached_namespace_names() if namespaces is None else namespaces
        return [
            SyncTarget(secret=secret, namespace=namespace)
            for namespace in compute_target_namespaces(candidates, self.config)
        ]

    def _backoff(self, attempt: int) -> None:
        delay = min(2.0, 0.1 * 2 ** (attempt - 1))
        self.sleep_fn(delay * (0.5 + random.random()))  # noqa: S311

    def _fan_out(
        self, namespaces: list[str], write: Callable[[str], WriteOutcome]
    ) -> list[WriteOutcome]:
        """Run *write* for every namespace with bounded concurrency.

        Leaving the executor context waits for every submitted write, so a
        pass is never abandoned halfway through a request.
        """
        if not namespaces:
            return []
        outcomes: list[WriteOutcome] = []
        max_workers = min(self.config.max_concurrent_upserts, len(namespaces))
        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="fanout") as executor:
            futures = {executor.submit(write, namespace): namespace for namespace in namespaces}
            for future in as_completed(futures):
                namespace = futures[future]
                try:
                    outcomes.append(future.result())
                except Exception:
                    self.logger.exception("Unexpected error writing replica in %s", namespace)
                    outcomes.append(WriteOutcome(namespace, "failed", retryable=True))
        for outcome in outcomes:
            METRICS.replica_writes_total.labels(action=outcome.action).inc()
        return sorted(outcomes, key=lambda outcome: outcome.namespace)

    def _upsert(self, target: SyncTarget) -> WriteOutcome:
        namespace = target.namespace
        name = target.secret.name
        attempts = self.config.max_write_attempts

        for attempt in range(1, attempts + 1):
            desired = build_replica(target.secret, namespace)
            try:
                existing = read_secret_or_none(self.core_api, namespace, name)
                if existing is None:
                    self.core_api.create_namespaced_secret(namespace=namespace, body=desired)
                    self.logger.info("Created replica %s/%s from %s", namespace, name, target.secret.key)
                    return WriteOutcome(namespace, "created")

                if replica_matches(existing, desired):
                    self.logger.debug("Replica %s/%s already up to date", namespace, name)
                    return WriteOutcome(namespace, "unchanged")

                if not is_managed_replica(existing, target.secret.key):
                    self.logger.warning(
                        "Secret %s/%s exists but was not created from %s; overwriting it",
                        namespace,
                        name,
                        target.secret.key,
                    )
                desired.metadata.resource_version = existing.metadata.resource_version
                self.core_api.replace_namespaced_secret(name=name, namespace=namespace, body=desired)
                self.logger.info("Updated replica %s/%s from %s", namespace, name, target.secret.key)
                return WriteOutcome(namespace, "updated")
            except ApiException as exc:
                if exc.status == 409:
                    METRICS.write_conflicts_total.inc()
                    self.logger.info(
                        "Conflict writing replica %s/%s (attempt %d/%d); re-fetching",
                        namespace,
                        name,
                        attempt,
                        attempts,
                    )
                elif is_transient(exc):
                    self.logger.warning(
                        "Transient error writing replica %s/%s (status=%s, attempt %d/%d)",
                        namespace,
                        name,
                        exc.status,
                        attempt,
                        attempts,
                    )
                else:
                    self.logger.error(
                        "Failed to write replica %s/%s (status=%s): %s",
                        namespace,
                        name,
                        exc.status,
                        exc.reason,
                    )
                    return WriteOutcome(namespace, "failed")
            except HTTPError:
                self.logger.warning(
                    "Network error writing replica %s/%s (attempt %d/%d)",
                    namespace,
                    name,
                    attempt,
                    attempts,
                    exc_info=True,
                )
            if attempt < attempts:
                self._backoff(attempt)

        self.logger.error(
            "Giving up on replica %s/%s after %d attempts for this pass", namespace, name, attempts
        )
        return WriteOutcome(namespace, "failed", retryable=True)

    def replicate(
        self, secret: SecretRecord, namespaces: Iterable[str] | None = None
    ) -> ReplicationResult:
        """Upsert a sanitized copy of *secret* into every target namespace."""
        started = time.monotonic()
        targets = self.sync_targets(secret, namespaces)
        target_names = [target.namespace for target in targets]
        by_namespace = {target.namespace: target for target in targets}

        outcomes = self._fan_out(target_names, lambda ns: self._upsert(by_namespace[ns]))
        result = ReplicationResult.from_outcomes(secret.key, target_names, outcomes)

        METRICS.fanout_duration_seconds.observe(time.monotonic() - started)
        METRICS.replications_total.labels(
            operation="replicate", result="ok" if result.failed == 0 else "failed"
        ).inc()
        if not target_names:
            self.logger.warning("Secret %s has no target namespaces", secret.key)
        self.logger.info(
            "Replication of %s completed: %d created, %d updated, %d unchanged, %d failed",
            secret.key,
            result.created,
            result.updated,
            result.unchanged,
            result.failed,
        )
        return result

    def _delete_replica(self, source_key: str, namespace: str, name: str) -> WriteOutcome:
        attempts = self.config.max_write_attempts
        for attempt in range(1, attempts + 1):
            try:
                existing = read_secret_or_none(self.core_api, namespace, name)
                if existing is None:
                    return WriteOutcome(namespace, "absent")
                if not is_managed_replica(existing, source_key):
                    self.logger.info(
                        "Leaving %s/%s in place: not a replica of %s", namespace, name, source_key
                    )
                    return WriteOutcome(namespace, "skipped")
                delete_secret_if_unchanged(
                    self.core_api, namespace, name, existing.metadata.resource_version
                )
                self.logger.info("Deleted replica %s/%s of %s", namespace, name, source_key)
                return WriteOutcome(namespace, "deleted")
            except ApiException as exc:
                if exc.status == 404:
                    return WriteOutcome(namespace, "absent")
                if exc.status == 409:
                    METRICS.write_conflicts_total.inc()
                elif not is_transient(exc):
                    self.logger.error(
                        "Failed to delete replica %s/%s (status=%s): %s",
                        namespace,
                        name,
                        exc.status,
                        exc.reason,
                    )
                    return WriteOutcome(namespace, "failed")
                self.logger.warning(
                    "Retrying delete of replica %s/%s (status=%s, attempt %d/%d)",
                    namespace,
                    name,
                    exc.status,
                    attempt,
                    attempts,
                )
            except HTTPError:
                self.logger.warning(
                    "Network error deleting replica %s/%s", namespace, name, exc_info=True
                )
            if attempt < attempts:
                self._backoff(attempt)

        return WriteOutcome(namespace, "failed", retryable=True)

    def retract(self, key: str) -> ReplicationResult:
        """Delete every replica created from the source secret *key*.

        Secrets in target namespaces that do not carry this controller's
        source annotation for *key* are left untouched.
        """
        _, name = split_key(key)
        targets = compute_target_namespaces(self._cached_namespace_names(), self.config)
        outcomes = self._fan_out(targets, lambda ns: self._delete_replica(key, ns, name))
        result = ReplicationResult.from_outcomes(key, targets, outcomes)

        METRICS.replications_total.labels(
            operation="retract", result="ok" if result.failed == 0 else "failed"
        ).inc()
        self.logger.info(
            "Retraction of %s completed: %d deleted, %d failed", key, result.deleted, result.failed
        )
        return result
