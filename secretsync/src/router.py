from __future__ import annotations

import logging
from typing import Any

from secretsync.src.config import SyncConfig
from secretsync.src.events import DeleteState, Known, UnknownFinalState
from secretsync.src.metrics import METRICS
from secretsync.src.models import (
    ObjectKeyError,
    SecretRecord,
    UnexpectedObjectError,
    meta_namespace_key,
    namespace_from_object,
    secret_from_object,
    split_key,
)
from secretsync.src.workqueue import KeyedWorkQueue, RetractSecret, SyncSecret


class SecretEventRouter:
    """Turns raw Secret notifications into keyed work items.

    Runs on the informer thread, so it only converts and enqueues; all remote
    calls happen on the workers.  Objects of the wrong kind or without a
    usable key are logged and dropped.
    """

    def __init__(self, queue: KeyedWorkQueue, logger: logging.Logger | None = None) -> None:
        self.queue = queue
        self.logger = logger or logging.getLogger(__name__)

    def _record(self, obj: Any, event: str) -> SecretRecord | None:
        METRICS.events_total.labels(kind="secret", event=event).inc()
        try:
            return secret_from_object(obj)
        except UnexpectedObjectError as exc:
            self.logger.warning("%s: discarding unexpected object: %s", event, exc)
            METRICS.events_discarded_total.labels(reason="unexpected_object").inc()
        except ObjectKeyError as exc:
            self.logger.warning("%s: discarding object without key: %s", event, exc)
            METRICS.events_discarded_total.labels(reason="missing_key").inc()
        return None

    def on_add(self, obj: Any) -> None:
        secret = self._record(obj, "add")
        if secret is None:
            return
        self.logger.debug("add: %s", secret.key)
        self.queue.add(secret.key, SyncSecret(secret))

    def on_update(self, old: Any, new: Any) -> None:
        secret = self._record(new, "update")
        if secret is None:
            return
        self.logger.debug("update: %s", secret.key)
        self.queue.add(secret.key, SyncSecret(secret))

    def on_delete(self, state: DeleteState) -> None:
        if isinstance(state, Known):
            secret = self._record(state.obj, "delete")
            if secret is None:
                return
            self.logger.debug("delete: %s", secret.key)
            self.queue.add(secret.key, RetractSecret(key=secret.key, last_known=secret))
            return

        if isinstance(state, UnknownFinalState):
            METRICS.events_total.labels(kind="secret", event="tombstone").inc()
            try:
                split_key(state.key)
            except ObjectKeyError:
                self.logger.warning("delete: discarding tombstone with bad key %r", state.key)
                METRICS.events_discarded_total.labels(reason="missing_key").inc()
                return
            last_known: SecretRecord | None = None
            if state.last_known is not None:
                try:
                    last_known = secret_from_object(state.last_known)
                except (UnexpectedObjectError, ObjectKeyError):
                    last_known = None
            self.logger.info("delete: %s (final state unknown)", state.key)
            self.queue.add(state.key, RetractSecret(key=state.key, last_known=last_known))
            return

        self.logger.warning("delete: discarding unknown delete state %r", type(state).__name__)
        METRICS.events_discarded_total.labels(reason="unexpected_object").inc()


class NamespaceEventRouter:
    """Backfills in-scope secrets into namespaces created after startup.

    Namespace additions seen during the initial list are ignored: the initial
    secret list already fans out to every namespace known at that point.
    """

    def __init__(
        self,
        queue: KeyedWorkQueue,
        cache: Any,
        config: SyncConfig,
        logger: logging.Logger | None = None,
    ) -> None:
        self.queue = queue
        self.cache = cache
        self.config = config
        self.logger = logger or logging.getLogger(__name__)

    def on_add(self, obj: Any) -> None:
        METRICS.events_total.labels(kind="namespace", event="add").inc()
        try:
            namespace = namespace_from_object(obj)
        except (UnexpectedObjectError, ObjectKeyError) as exc:
            self.logger.warning("namespace add: discarding unexpected object: %s", exc)
            METRICS.events_discarded_total.labels(reason="unexpected_object").inc()
            return

        if not self.config.backfill_new_namespaces or not self.cache.has_synced():
            return
        if self.config.is_blacklisted(namespace.name):
            self.logger.debug("Skipping backfill for blacklisted namespace %s", namespace.name)
            return

        secrets = self.cache.list_secrets(self.config.source_namespace)
        self.logger.info(
            "Namespace %s created; backfilling %d secret(s) from %s",
            namespace.name,
            len(secrets),
            self.config.source_namespace,
        )
        for secret in secrets:
            self.queue.add(secret.key, SyncSecret(secret))

    def on_update(self, old: Any, new: Any) -> None:
        METRICS.events_total.labels(kind="namespace", event="update").inc()

    def on_delete(self, state: DeleteState) -> None:
        METRICS.events_total.labels(kind="namespace", event="delete").inc()
        if isinstance(state, UnknownFinalState):
            self.logger.debug("namespace delete: %s (final state unknown)", state.key)
            return
        try:
            self.logger.debug("namespace delete: %s", meta_namespace_key(state.obj))
        except ObjectKeyError:
            METRICS.events_discarded_total.labels(reason="missing_key").inc()
