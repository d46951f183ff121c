from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from typing import Any

from kubernetes import client, config
from kubernetes.client import ApiException, CoreV1Api, V1DeleteOptions, V1Preconditions
from kubernetes.config.config_exception import ConfigException

LOGGER = logging.getLogger(__name__)


def resolve_kubeconfig(flag_value: str | None, env: Mapping[str, str] | None = None) -> str | None:
    """Return the kubeconfig path to use: the flag, else ``KUBECONFIG``, else ``None``."""
    if flag_value:
        return flag_value
    values = env if env is not None else os.environ
    return values.get("KUBECONFIG") or None


def load_kube_configuration(kubeconfig: str | None = None) -> None:
    """Load Kubernetes client configuration.

    An explicit kubeconfig path wins.  Without one, in-cluster config is used
    (running inside a pod), falling back to the default local kubeconfig for
    development.
    """
    if kubeconfig:
        config.load_kube_config(config_file=kubeconfig)
        LOGGER.info("Loaded kubeconfig from %s", kubeconfig)
        return
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_client() -> CoreV1Api:
    """Return a CoreV1 API client using the active kube configuration."""
    return client.CoreV1Api()


def read_secret_or_none(core_api: CoreV1Api, namespace: str, name: str) -> Any | None:
    """Read a Secret, returning ``None`` when it does not exist."""
    try:
        return core_api.read_namespaced_secret(name=name, namespace=namespace)
    except ApiException as exc:
        if exc.status == 404:
            return None
        raise


def delete_secret_if_unchanged(
    core_api: CoreV1Api,
    namespace: str,
    name: str,
    resource_version: str | None,
) -> None:
    """Delete a Secret only if it still has *resource_version*.

    The precondition turns a concurrent modification into a ``409 Conflict``
    instead of silently deleting state the caller has not seen.
    """
    body = V1DeleteOptions(
        preconditions=V1Preconditions(resource_version=resource_version)
        if resource_version
        else None
    )
    core_api.delete_namespaced_secret(name=name, namespace=namespace, body=body)
