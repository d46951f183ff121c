from __future__ import annotations

import pytest

from secretsync.src.config import (
    ConfigError,
    SyncConfig,
    env_int,
    load_config,
    parse_bool,
    parse_namespace_list,
)

# ---------------------------------------------------------------------------
# SyncConfig
# ---------------------------------------------------------------------------


def test_defaults_blacklist_system_and_source_namespaces() -> None:
    config = SyncConfig()

    assert config.source_namespace == "secretsync"
    assert config.sync_type == "k8s.ziwon.dev/secretsync"
    assert config.blacklist == frozenset({"kube-public", "kube-system", "secretsync"})


def test_source_namespace_is_always_blacklisted() -> None:
    config = SyncConfig(source_namespace="vault", blacklist=frozenset())

    assert config.is_blacklisted("vault")
    assert not config.is_blacklisted("default")


@pytest.mark.parametrize(
    "kwargs",
    [
        {"source_namespace": " "},
        {"sync_type": ""},
        {"workers": 0},
        {"max_concurrent_upserts": 0},
        {"max_write_attempts": 0},
    ],
)
def test_invalid_values_raise(kwargs: dict[str, object]) -> None:
    with pytest.raises(ConfigError):
        SyncConfig(**kwargs)  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# load_config()
# ---------------------------------------------------------------------------


def test_load_config_defaults() -> None:
    config = load_config({})

    assert config == SyncConfig()
    assert config.workers == 2
    assert config.max_concurrent_upserts == 8
    assert config.cache_sync_timeout_seconds == 60
    assert config.resync_period_seconds == 600
    assert config.delete_replicas_on_source_delete is True
    assert config.backfill_new_namespaces is True


def test_load_config_custom_values() -> None:
    config = load_config(
        {
            "SOURCE_NAMESPACE": "vault",
            "SYNC_TYPE": "example.com/copy",
            "NAMESPACE_BLACKLIST": "kube-system, monitoring,,",
            "WORKERS": "4",
            "MAX_CONCURRENT_UPSERTS": "16",
            "CACHE_SYNC_TIMEOUT_SECONDS": "5",
            "RESYNC_PERIOD_SECONDS": "0",
            "MAX_WRITE_ATTEMPTS": "2",
            "DELETE_REPLICAS_ON_SOURCE_DELETE": "false",
            "BACKFILL_NEW_NAMESPACES": "no",
        }
    )

    assert config.source_namespace == "vault"
    assert config.sync_type == "example.com/copy"
    assert config.blacklist == frozenset({"kube-system", "monitoring", "vault"})
    assert config.workers == 4
    assert config.max_concurrent_upserts == 16
    assert config.cache_sync_timeout_seconds == 5
    assert config.resync_period_seconds == 0
    assert config.max_write_attempts == 2
    assert config.delete_replicas_on_source_delete is False
    assert config.backfill_new_namespaces is False


def test_load_config_empty_blacklist_still_excludes_source() -> None:
    config = load_config({"NAMESPACE_BLACKLIST": ""})

    assert config.blacklist == frozenset({"secretsync"})


def test_load_config_rejects_empty_source_namespace() -> None:
    with pytest.raises(ConfigError, match="SOURCE_NAMESPACE must be a non-empty string"):
        load_config({"SOURCE_NAMESPACE": "  "})


def test_load_config_rejects_empty_sync_type() -> None:
    with pytest.raises(ConfigError, match="SYNC_TYPE must be a non-empty string"):
        load_config({"SYNC_TYPE": ""})


def test_load_config_rejects_non_numeric_workers() -> None:
    with pytest.raises(ValueError, match="WORKERS must be an integer"):
        load_config({"WORKERS": "many"})


def test_load_config_reads_process_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SOURCE_NAMESPACE", "from-env")

    assert load_config().source_namespace == "from-env"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def test_env_int_returns_default_when_not_set(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("TEST_ENV_INT", raising=False)
    assert env_int("TEST_ENV_INT", 42) == 42


def test_env_int_parses_valid_integer(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TEST_ENV_INT", "10")
    assert env_int("TEST_ENV_INT", 42) == 10


def test_env_int_raises_on_empty_string(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TEST_ENV_INT", "")
    with pytest.raises(ValueError, match="TEST_ENV_INT must be an integer"):
        env_int("TEST_ENV_INT", 42)


def test_env_int_enforces_minimum() -> None:
    with pytest.raises(ValueError, match="TEST_ENV_INT must be >= 0, got: -1"):
        env_int("TEST_ENV_INT", 42, minimum=0, env={"TEST_ENV_INT": "-1"})


def test_env_int_enforces_maximum() -> None:
    with pytest.raises(ValueError, match="TEST_ENV_INT must be <= 65535, got: 70000"):
        env_int("TEST_ENV_INT", 42, maximum=65535, env={"TEST_ENV_INT": "70000"})


@pytest.mark.parametrize("value", ["true", "True", "1", "yes", "on", "  on  "])
def test_parse_bool_truthy(value: str) -> None:
    assert parse_bool(value) is True


@pytest.mark.parametrize("value", ["false", "0", "no", "off", ""])
def test_parse_bool_falsy(value: str) -> None:
    assert parse_bool(value, default=True) is False


def test_parse_bool_default_when_unset() -> None:
    assert parse_bool(None) is False
    assert parse_bool(None, default=True) is True


def test_parse_namespace_list_ignores_blanks() -> None:
    assert parse_namespace_list(" a, b ,,c ") == frozenset({"a", "b", "c"})
