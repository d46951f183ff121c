from __future__ import annotations

import copy
import logging
import math
import random
import threading
import time
from collections.abc import Callable
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, CoreV1Api

from secretsync.src.events import EventHandler, Known, UnknownFinalState
from secretsync.src.metrics import METRICS
from secretsync.src.models import (
    NamespaceRecord,
    ObjectKeyError,
    SecretRecord,
    UnexpectedObjectError,
    meta_namespace_key,
    namespace_from_object,
    secret_from_object,
)

DEFAULT_WATCH_TIMEOUT_SECONDS = 30


def _resource_version(obj: Any) -> str | None:
    return getattr(getattr(obj, "metadata", None), "resource_version", None)


class Informer:
    """List-then-watch mirror of a single resource kind.

    The informer performs an initial list, applies it to its store and only
    then reports :meth:`has_synced`.  It then streams watch events from the
    list's ``resourceVersion`` and forwards every change to the registered
    :class:`~secretsync.src.events.EventHandler` instances, in the order the
    API server delivered them.

    Key internal state:
        ``_store``
            Maps ``namespace/name`` keys to the last observed API object.  Only
            the informer's own loop thread mutates it; readers receive deep
            copies.
        ``_next_resync_at``
            Monotonic deadline of the next periodic resync, or ``None`` when
            resync is disabled.
    """

    def __init__(
        self,
        kind: str,
        list_fn: Callable[..., Any],
        *,
        resync_seconds: int = 600,
        watch_timeout_seconds: int = DEFAULT_WATCH_TIMEOUT_SECONDS,
        logger: logging.Logger | None = None,
    ) -> None:
        self.kind = kind
        self.list_fn = list_fn
        self.resync_seconds = resync_seconds
        self.watch_timeout_seconds = watch_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)

        self._store: dict[str, Any] = {}
        self._store_lock = threading.Lock()
        self._handlers: list[EventHandler] = []
        self._next_resync_at: float | None = None

        self.synced = threading.Event()
        self.failed = threading.Event()
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def add_handler(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    def has_synced(self) -> bool:
        return self.synced.is_set()

    def get(self, key: str) -> Any | None:
        with self._store_lock:
            obj = self._store.get(key)
        return copy.deepcopy(obj)

    def list(self, namespace: str | None = None) -> list[Any]:
        """Return deep copies of cached objects, optionally limited to one namespace."""
        prefix = f"{namespace}/" if namespace is not None else ""
        with self._store_lock:
            items = [obj for key, obj in self._store.items() if key.startswith(prefix)]
        return [copy.deepcopy(obj) for obj in items]

    def __len__(self) -> int:
        with self._store_lock:
            return len(self._store)

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _notify(self, method: str, *args: Any) -> None:
        for handler in self._handlers:
            try:
                getattr(handler, method)(*args)
            except Exception:
                self.logger.exception("%s handler %s failed", self.kind, method)

    def _key_for(self, obj: Any) -> str | None:
        try:
            return meta_namespace_key(obj)
        except ObjectKeyError:
            self.logger.warning("Skipping %s without a usable name", self.kind)
            METRICS.events_discarded_total.labels(reason="missing_key").inc()
            return None

    def _record_size(self) -> None:
        METRICS.cached_objects.labels(kind=self.kind).set(len(self))

    def _replace(self, items: list[Any]) -> None:
        """Swap in a full listing and emit the differences against the old store.

        Objects that disappeared while the watch was disconnected surface as
        :class:`UnknownFinalState` deletes carrying their last cached state.
        """
        fresh: dict[str, Any] = {}
        for obj in items:
            key = self._key_for(obj)
            if key is not None:
                fresh[key] = obj

        with self._store_lock:
            previous = self._store
            self._store = fresh
        self._record_size()

        for key, obj in fresh.items():
            old = previous.get(key)
            if old is None:
                self._notify("on_add", obj)
            elif _resource_version(old) != _resource_version(obj):
                self._notify("on_update", old, obj)

        for key, old in previous.items():
            if key not in fresh:
                self.logger.info("%s %s vanished during re-list", self.kind, key)
                self._notify("on_delete", UnknownFinalState(key=key, last_known=old))

    def _apply_event(self, event_type: str, obj: Any) -> None:
        key = self._key_for(obj)
        if key is None:
            return

        if event_type in {"ADDED", "MODIFIED"}:
            with self._store_lock:
                old = self._store.get(key)
                self._store[key] = obj
            self._record_size()
            if old is None:
                self._notify("on_add", obj)
            else:
                self._notify("on_update", old, obj)
        elif event_type == "DELETED":
            with self._store_lock:
                self._store.pop(key, None)
            self._record_size()
            self._notify("on_delete", Known(obj))
        else:
            self.logger.debug("Ignoring %s watch event of type %s", self.kind, event_type)

    def _resync(self) -> None:
        """Re-deliver every cached object as an update so missed work converges."""
        with self._store_lock:
            items = list(self._store.values())
        self.logger.debug("Resyncing %d cached %s object(s)", len(items), self.kind)
        for obj in items:
            self._notify("on_update", obj, obj)

    def _schedule_resync(self, now_monotonic: float) -> None:
        if self.resync_seconds > 0:
            self._next_resync_at = now_monotonic + self.resync_seconds

    def _resync_if_due(self, now_monotonic: float) -> None:
        if self._next_resync_at is None or now_monotonic < self._next_resync_at:
            return
        self._resync()
        self._schedule_resync(now_monotonic)

    def _next_watch_timeout_seconds(self, now_monotonic: float) -> int:
        """Return the next watch timeout in seconds, shortened for a due resync."""
        if self._next_resync_at is None:
            return self.watch_timeout_seconds

        remaining = max(1.0, self._next_resync_at - now_monotonic)
        return min(self.watch_timeout_seconds, max(1, math.ceil(remaining)))

    def _list(self) -> tuple[list[Any], str | None]:
        result = self.list_fn()
        resource_version = getattr(getattr(result, "metadata", None), "resource_version", None)
        return list(getattr(result, "items", None) or []), resource_version

    def run(self, stop_event: threading.Event | None = None) -> None:
        """List-then-watch loop; returns on stop or on an authorization failure.

        1. Retries the initial list with jittered exponential backoff (1 s to
           30 s) so transient API startup failures do not crash the process.
        2. Applies the list, marks the informer synced and opens a watch from
           the list's ``resourceVersion``.
        3. On ``410 Gone`` re-lists and resumes, emitting tombstones for
           objects deleted while disconnected.  A failed re-list is retried
           with the same backoff; no watch is opened until one succeeds.
        4. On other errors reconnects with jittered backoff.

        ``401`` / ``403`` responses are configuration errors (RBAC/auth); the
        loop sets :attr:`failed` and returns without retrying.
        """
        stop = stop_event or threading.Event()
        self._external_stop.clear()

        resource_version: str | None = None
        startup_backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                items, resource_version = self._list()
                self._replace(items)
                self._schedule_resync(time.monotonic())
                self.synced.set()
                self.logger.info(
                    "Initial %s list applied (%d objects); watching from resourceVersion %s",
                    self.kind,
                    len(items),
                    resource_version,
                )
                break
            except ApiException as exc:
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API access denied during initial %s list (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        self.kind,
                        exc.status,
                    )
                    self.failed.set()
                    return
                self.logger.exception("Initial %s list failed", self.kind)
                METRICS.watch_errors_total.labels(kind=self.kind).inc()
            except Exception:
                self.logger.exception("Unexpected error during initial %s list", self.kind)
                METRICS.watch_errors_total.labels(kind=self.kind).inc()

            jittered = startup_backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            startup_backoff_seconds = min(startup_backoff_seconds * 2, 30)

        backoff_seconds = 1
        watch_stream_count = 0
        needs_list = False

        while not self._should_stop(stop):
            if needs_list:
                # Never resume watching with a store that missed deletes.
                try:
                    items, resource_version = self._list()
                    self._replace(items)
                    needs_list = False
                    backoff_seconds = 1
                except ApiException as exc:
                    if exc.status in {401, 403}:
                        self.logger.error(
                            "Kubernetes API access denied during %s re-list (status=%s). "
                            "Check controller RBAC and service account permissions.",
                            self.kind,
                            exc.status,
                        )
                        self.failed.set()
                        return
                    self.logger.exception("Failed to re-list %s after 410", self.kind)
                    METRICS.watch_errors_total.labels(kind=self.kind).inc()
                except Exception:
                    self.logger.exception("Unexpected error re-listing %s", self.kind)
                    METRICS.watch_errors_total.labels(kind=self.kind).inc()
                if needs_list:
                    jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                    stop.wait(timeout=jittered)
                    backoff_seconds = min(backoff_seconds * 2, 30)
                    continue

            self._resync_if_due(time.monotonic())
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.labels(kind=self.kind).inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    self.list_fn,
                    resource_version=resource_version,
                    timeout_seconds=self._next_watch_timeout_seconds(time.monotonic()),
                )

                for event in stream:
                    if self._should_stop(stop):
                        break

                    obj = event.get("object")
                    if obj is None:
                        continue
                    event_type = str(event.get("type", ""))
                    if event_type in {"ERROR", "BOOKMARK"}:
                        continue

                    observed_version = _resource_version(obj)
                    if observed_version:
                        resource_version = observed_version

                    self._apply_event(event_type, obj)
                    self._resync_if_due(time.monotonic())

                backoff_seconds = 1
            except ApiException as exc:
                # 410 Gone means etcd compacted past our resourceVersion.
                if exc.status == 410:
                    self.logger.warning("%s watch resource version expired, re-listing", self.kind)
                    METRICS.relists_total.labels(kind=self.kind).inc()
                    needs_list = True
                    continue

                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API %s watch denied (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        self.kind,
                        exc.status,
                    )
                    METRICS.watch_errors_total.labels(kind=self.kind).inc()
                    self.failed.set()
                    return

                self.logger.exception("Kubernetes API %s watch error", self.kind)
                METRICS.watch_errors_total.labels(kind=self.kind).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected %s watch error", self.kind)
                METRICS.watch_errors_total.labels(kind=self.kind).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None


class ObjectCache:
    """Read-optimized mirror of cluster Secrets and Namespaces.

    Accessors return freshly built records, so concurrent readers never share
    mutable state with the informer loops.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        resync_seconds: int = 600,
        logger: logging.Logger | None = None,
    ) -> None:
        self.logger = logger or logging.getLogger(__name__)
        self.secrets = Informer(
            "secret",
            core_api.list_secret_for_all_namespaces,
            resync_seconds=resync_seconds,
            logger=self.logger,
        )
        self.namespaces = Informer(
            "namespace",
            core_api.list_namespace,
            resync_seconds=resync_seconds,
            logger=self.logger,
        )
        self._threads: list[threading.Thread] = []

    @property
    def informers(self) -> tuple[Informer, Informer]:
        return self.secrets, self.namespaces

    def add_secret_handler(self, handler: EventHandler) -> None:
        self.secrets.add_handler(handler)

    def add_namespace_handler(self, handler: EventHandler) -> None:
        self.namespaces.add_handler(handler)

    def has_synced(self) -> bool:
        return all(informer.has_synced() for informer in self.informers)

    def failed(self) -> bool:
        """True once any informer has given up (authorization failure)."""
        return any(informer.failed.is_set() for informer in self.informers)

    def start(self, stop_event: threading.Event) -> None:
        for informer in self.informers:
            thread = threading.Thread(
                target=informer.run,
                kwargs={"stop_event": stop_event},
                name=f"informer-{informer.kind}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)

    def stop(self) -> None:
        for informer in self.informers:
            informer.request_stop()

    def join(self, timeout: float | None = None) -> None:
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = [thread for thread in self._threads if thread.is_alive()]

    def wait_for_sync(
        self,
        timeout: float,
        stop_event: threading.Event | None = None,
        poll_interval: float = 0.1,
    ) -> bool:
        """Block until every informer has synced.

        Returns ``False`` when *timeout* elapses, an informer gives up, or
        *stop_event* is set first.
        """
        stop = stop_event or threading.Event()
        deadline = time.monotonic() + timeout
        while True:
            if self.has_synced():
                return True
            if self.failed() or stop.is_set():
                return False
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            stop.wait(timeout=min(poll_interval, remaining))

    def list_namespaces(self) -> list[NamespaceRecord]:
        records: list[NamespaceRecord] = []
        for obj in self.namespaces.list():
            try:
                records.append(namespace_from_object(obj))
            except (UnexpectedObjectError, ObjectKeyError):
                self.logger.warning("Ignoring malformed cached namespace object")
        return records

    def get_secret(self, namespace: str, name: str) -> SecretRecord | None:
        obj = self.secrets.get(f"{namespace}/{name}")
        if obj is None:
            return None
        try:
            return secret_from_object(obj)
        except (UnexpectedObjectError, ObjectKeyError):
            self.logger.warning("Ignoring malformed cached secret %s/%s", namespace, name)
            return None

    def list_secrets(self, namespace: str) -> list[SecretRecord]:
        records: list[SecretRecord] = []
        for obj in self.secrets.list(namespace=namespace):
            try:
                records.append(secret_from_object(obj))
            except (UnexpectedObjectError, ObjectKeyError):
                self.logger.warning("Ignoring malformed cached secret in %s", namespace)
        return records
