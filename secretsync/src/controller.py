from __future__ import annotations

import logging
import threading
import time

from kubernetes.client import CoreV1Api

from secretsync.src.cache import ObjectCache
from secretsync.src.classifier import Classifier
from secretsync.src.config import SyncConfig
from secretsync.src.metrics import METRICS
from secretsync.src.models import ControllerState, ObjectKeyError, split_key
from secretsync.src.replicator import Replicator
from secretsync.src.router import NamespaceEventRouter, SecretEventRouter
from secretsync.src.workqueue import KeyedWorkQueue, RetractSecret, SyncSecret, WorkItem

_TRANSITIONS: dict[ControllerState, frozenset[ControllerState]] = {
    ControllerState.INITIALIZING: frozenset(
        {ControllerState.WAITING_FOR_SYNC, ControllerState.STOPPED}
    ),
    ControllerState.WAITING_FOR_SYNC: frozenset(
        {ControllerState.RUNNING, ControllerState.SHUTTING_DOWN, ControllerState.STOPPED}
    ),
    ControllerState.RUNNING: frozenset({ControllerState.SHUTTING_DOWN}),
    ControllerState.SHUTTING_DOWN: frozenset({ControllerState.STOPPED}),
    ControllerState.STOPPED: frozenset(),
}


class SecretSyncController:
    """Owns the lifecycle of the cache, the work queue and the worker threads.

    State machine::

        Initializing -> WaitingForSync -> Running -> ShuttingDown -> Stopped
                              |
                              +--> Stopped   (sync timeout / informer failure)

    Work items may be queued from the moment the informers start, but they
    are only reconciled while the controller is Running.
    """

    def __init__(
        self,
        cache: ObjectCache,
        queue: KeyedWorkQueue,
        classifier: Classifier,
        replicator: Replicator,
        config: SyncConfig,
        logger: logging.Logger | None = None,
        shutdown_join_timeout_seconds: float = 45.0,
    ) -> None:
        self.cache = cache
        self.queue = queue
        self.classifier = classifier
        self.replicator = replicator
        self.config = config
        self.logger = logger or logging.getLogger(__name__)
        self.shutdown_join_timeout_seconds = shutdown_join_timeout_seconds

        self.ready = threading.Event()
        self._state = ControllerState.INITIALIZING
        self._state_lock = threading.Lock()
        self._workers: list[threading.Thread] = []
        self._cache_stop = threading.Event()
        METRICS.controller_state.labels(state=self._state.value).set(1)

    @property
    def state(self) -> ControllerState:
        with self._state_lock:
            return self._state

    def _transition(self, new_state: ControllerState) -> None:
        with self._state_lock:
            old_state = self._state
            if new_state not in _TRANSITIONS[old_state]:
                raise RuntimeError(
                    f"invalid controller transition {old_state.value} -> {new_state.value}"
                )
            self._state = new_state
        METRICS.controller_state.labels(state=old_state.value).set(0)
        METRICS.controller_state.labels(state=new_state.value).set(1)
        self.logger.info("Controller state %s -> %s", old_state.value, new_state.value)

    def reconcile(self, item: WorkItem) -> bool:
        """Process one work item.  Returns ``True`` when it should be retried."""
        if isinstance(item, SyncSecret):
            secret = item.secret
            if not self.classifier.is_in_scope(secret):
                self.logger.debug("Skipping out-of-scope secret %s", secret.key)
                return False
            return self.replicator.replicate(secret).needs_retry

        if isinstance(item, RetractSecret):
            try:
                namespace, _ = split_key(item.key)
            except ObjectKeyError:
                self.logger.warning("Skipping retraction with malformed key %r", item.key)
                return False
            if namespace != self.config.source_namespace:
                return False
            if item.last_known is not None and not self.classifier.is_in_scope(item.last_known):
                return False
            if not self.config.delete_replicas_on_source_delete:
                self.logger.info("Source secret %s deleted; keeping replicas", item.key)
                return False
            return self.replicator.retract(item.key).needs_retry

        self.logger.warning("Discarding unknown work item %r", type(item).__name__)
        return False

    def _worker_loop(self) -> None:
        while True:
            entry = self.queue.get()
            if entry is None:
                return
            key, item = entry
            retry = False
            try:
                if self.state is ControllerState.RUNNING:
                    retry = self.reconcile(item)
            except Exception:
                self.logger.exception("Unexpected error reconciling %s", key)
                retry = True
            finally:
                self.queue.done(key, item, retry=retry)

    def _start_workers(self) -> None:
        for index in range(self.config.workers):
            worker = threading.Thread(
                target=self._worker_loop, name=f"worker-{index}", daemon=True
            )
            worker.start()
            self._workers.append(worker)

    def _teardown(self) -> None:
        self.ready.clear()
        self._cache_stop.set()
        self.cache.stop()
        self.queue.shut_down()
        # In-flight reconciliations finish their current fan-out before exiting.
        deadline = time.monotonic() + self.shutdown_join_timeout_seconds
        for worker in self._workers:
            worker.join(timeout=max(0.0, deadline - time.monotonic()))
            if worker.is_alive():
                self.logger.error(
                    "Worker %s did not stop within %ss",
                    worker.name,
                    self.shutdown_join_timeout_seconds,
                )
        self.cache.join(timeout=max(0.0, deadline - time.monotonic()))

    def run(self, shutdown_event: threading.Event | None = None, poll_interval: float = 1.0) -> bool:
        """Run the controller until *shutdown_event* is set.

        Returns ``True`` after an ordinary shutdown and ``False`` when startup
        failed (cache sync timed out or an informer gave up) or an informer
        stopped while Running.  A startup failure never reaches Running, so
        no event is processed.
        """
        stop = shutdown_event or threading.Event()

        self.cache.start(self._cache_stop)
        self._transition(ControllerState.WAITING_FOR_SYNC)
        self.logger.info("Waiting for cache sync")

        started = time.monotonic()
        synced = self.cache.wait_for_sync(
            timeout=self.config.cache_sync_timeout_seconds, stop_event=stop
        )
        METRICS.cache_sync_seconds.observe(time.monotonic() - started)

        if not synced:
            if stop.is_set() and not self.cache.failed():
                self.logger.info("Shutdown requested before cache sync completed")
                self._transition(ControllerState.SHUTTING_DOWN)
                self._teardown()
                self._transition(ControllerState.STOPPED)
                return True
            if self.cache.failed():
                self.logger.error("An informer failed during startup; controller will not start")
            else:
                self.logger.error(
                    "Timed out waiting for cache sync after %ss; controller will not start",
                    self.config.cache_sync_timeout_seconds,
                )
            self._teardown()
            self._transition(ControllerState.STOPPED)
            return False

        self.logger.info("Caches are synced")
        self._transition(ControllerState.RUNNING)
        self.ready.set()
        self._start_workers()

        healthy = True
        while not stop.wait(timeout=poll_interval):
            if self.cache.failed():
                self.logger.error("An informer stopped permanently; shutting down controller")
                healthy = False
                break

        self.logger.info("Received stop signal")
        self._transition(ControllerState.SHUTTING_DOWN)
        self._teardown()
        self._transition(ControllerState.STOPPED)
        return healthy


def build_controller(
    core_api: CoreV1Api,
    config: SyncConfig,
    logger: logging.Logger | None = None,
) -> SecretSyncController:
    """Wire cache, routers, queue, classifier and replicator into a controller."""
    cache = ObjectCache(core_api, resync_seconds=config.resync_period_seconds, logger=logger)
    queue = KeyedWorkQueue(logger=logger)
    cache.add_secret_handler(SecretEventRouter(queue, logger=logger))
    cache.add_namespace_handler(NamespaceEventRouter(queue, cache, config, logger=logger))
    return SecretSyncController(
        cache=cache,
        queue=queue,
        classifier=Classifier(config),
        replicator=Replicator(core_api, cache, config, logger=logger),
        config=config,
        logger=logger,
    )
