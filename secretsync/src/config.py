from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field

DEFAULT_SOURCE_NAMESPACE = "secretsync"
DEFAULT_SYNC_TYPE = "k8s.ziwon.dev/secretsync"
DEFAULT_SYSTEM_NAMESPACES: tuple[str, ...] = ("kube-public", "kube-system")


class ConfigError(RuntimeError):
    """Raised when the controller configuration is invalid."""


@dataclass(frozen=True)
class SyncConfig:
    """Immutable replication settings shared by the classifier and replicator.

    Attributes:
        source_namespace: The only namespace whose secrets are replicated.
        sync_type:        Secret ``type`` value marking a secret for replication.
        blacklist:        Namespaces never used as replication targets.  The
                          source namespace is always added, whatever the caller
                          passes in.
        workers:          Number of threads reconciling distinct secrets.
        max_concurrent_upserts: Upper bound on concurrent writes per fan-out.
        cache_sync_timeout_seconds: Startup wait for the initial list.
        resync_period_seconds: Interval at which cached objects are re-delivered.
        max_write_attempts: Attempts per replica write before the pass gives up.
        delete_replicas_on_source_delete: Retract replicas when the source goes.
        backfill_new_namespaces: Copy in-scope secrets into namespaces created
                          after startup.
    """

    source_namespace: str = DEFAULT_SOURCE_NAMESPACE
    sync_type: str = DEFAULT_SYNC_TYPE
    blacklist: frozenset[str] = field(default_factory=lambda: frozenset(DEFAULT_SYSTEM_NAMESPACES))
    workers: int = 2
    max_concurrent_upserts: int = 8
    cache_sync_timeout_seconds: int = 60
    resync_period_seconds: int = 600
    max_write_attempts: int = 5
    delete_replicas_on_source_delete: bool = True
    backfill_new_namespaces: bool = True

    def __post_init__(self) -> None:
        if not self.source_namespace.strip():
            raise ConfigError("source namespace must be a non-empty string")
        if not self.sync_type.strip():
            raise ConfigError("sync type must be a non-empty string")
        if self.workers < 1:
            raise ConfigError(f"workers must be >= 1, got: {self.workers}")
        if self.max_concurrent_upserts < 1:
            raise ConfigError(
                f"max_concurrent_upserts must be >= 1, got: {self.max_concurrent_upserts}"
            )
        if self.max_write_attempts < 1:
            raise ConfigError(f"max_write_attempts must be >= 1, got: {self.max_write_attempts}")
        # Frozen dataclass: widen the blacklist in place so the source namespace
        # can never become a target.
        object.__setattr__(
            self, "blacklist", frozenset(self.blacklist) | {self.source_namespace}
        )

    def is_blacklisted(self, namespace: str) -> bool:
        return namespace in self.blacklist


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {value}")
    return value


def parse_namespace_list(raw: str) -> frozenset[str]:
    """Parse a comma-separated namespace list, ignoring blanks."""
    return frozenset(part.strip() for part in raw.split(",") if part.strip())


def load_config(env: Mapping[str, str] | None = None) -> SyncConfig:
    """Build a :class:`SyncConfig` from environment variables.

    Environment variables (with defaults):
        ``SOURCE_NAMESPACE``    -- namespace holding the source secrets (``secretsync``).
        ``SYNC_TYPE``           -- secret type marking replication (``k8s.ziwon.dev/secretsync``).
        ``NAMESPACE_BLACKLIST`` -- comma-separated excluded namespaces
                                   (``kube-public,kube-system``).
        ``WORKERS``, ``MAX_CONCURRENT_UPSERTS``, ``CACHE_SYNC_TIMEOUT_SECONDS``,
        ``RESYNC_PERIOD_SECONDS``, ``MAX_WRITE_ATTEMPTS`` -- integer tuning knobs.
        ``DELETE_REPLICAS_ON_SOURCE_DELETE``, ``BACKFILL_NEW_NAMESPACES`` -- policy
                                   switches, both ``true`` by default.
    """
    values = env if env is not None else os.environ

    source_namespace = values.get("SOURCE_NAMESPACE", DEFAULT_SOURCE_NAMESPACE)
    if not source_namespace.strip():
        raise ConfigError("SOURCE_NAMESPACE must be a non-empty string")

    sync_type = values.get("SYNC_TYPE", DEFAULT_SYNC_TYPE)
    if not sync_type.strip():
        raise ConfigError("SYNC_TYPE must be a non-empty string")

    raw_blacklist = values.get("NAMESPACE_BLACKLIST")
    blacklist = (
        parse_namespace_list(raw_blacklist)
        if raw_blacklist is not None
        else frozenset(DEFAULT_SYSTEM_NAMESPACES)
    )

    return SyncConfig(
        source_namespace=source_namespace.strip(),
        sync_type=sync_type.strip(),
        blacklist=blacklist,
        workers=env_int("WORKERS", 2, minimum=1, maximum=64, env=values),
        max_concurrent_upserts=env_int(
            "MAX_CONCURRENT_UPSERTS", 8, minimum=1, maximum=256, env=values
        ),
        cache_sync_timeout_seconds=env_int(
            "CACHE_SYNC_TIMEOUT_SECONDS", 60, minimum=1, env=values
        ),
        resync_period_seconds=env_int("RESYNC_PERIOD_SECONDS", 600, minimum=0, env=values),
        max_write_attempts=env_int("MAX_WRITE_ATTEMPTS", 5, minimum=1, env=values),
        delete_replicas_on_source_delete=parse_bool(
            values.get("DELETE_REPLICAS_ON_SOURCE_DELETE"), default=True
        ),
        backfill_new_namespaces=parse_bool(values.get("BACKFILL_NEW_NAMESPACES"), default=True),
    )
