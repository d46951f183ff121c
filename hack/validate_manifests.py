#!/usr/bin/env python3
from __future__ import annotations

import argparse
import sys
from collections.abc import Iterable
from pathlib import Path
from typing import Any

import yaml

CONTROLLER_NAME = "secretsync"
# Verbs on core resources the controller needs: the informers list and watch,
# the replicator reads, creates, replaces and deletes replicas.
REQUIRED_VERBS = {
    "secrets": {"get", "list", "watch", "create", "update", "delete"},
    "namespaces": {"list", "watch"},
}
EXPECTED_PROBES = {
    "livenessProbe": "/healthz",
    "readinessProbe": "/readyz",
}


def _parse_args() -> argparse.Namespace:
    repo_root = Path(__file__).resolve().parents[1]
    parser = argparse.ArgumentParser(description="Validate controller deployment manifest invariants")
    parser.add_argument(
        "--manifest",
        type=Path,
        default=repo_root / "deploy" / "controller.yaml",
        help="Multi-document manifest to validate (defaults to deploy/controller.yaml)",
    )
    return parser.parse_args()


def _load_documents(path: Path) -> list[dict[str, Any]]:
    with path.open(encoding="utf-8") as handle:
        return [doc for doc in yaml.safe_load_all(handle) if isinstance(doc, dict)]


def _find(documents: Iterable[dict[str, Any]], kind: str, name: str) -> dict[str, Any] | None:
    for doc in documents:
        if doc.get("kind") == kind and doc.get("metadata", {}).get("name") == name:
            return doc
    return None


def _granted_verbs(role: dict[str, Any]) -> dict[str, set[str]]:
    granted: dict[str, set[str]] = {}
    for rule in role.get("rules") or []:
        if "" not in (rule.get("apiGroups") or []) and "*" not in (rule.get("apiGroups") or []):
            continue
        verbs = set(rule.get("verbs") or [])
        for resource in rule.get("resources") or []:
            granted.setdefault(resource, set()).update(verbs)
    return granted


def _validate_cluster_role(role: dict[str, Any]) -> list[str]:
    granted = _granted_verbs(role)
    wildcard = granted.get("*", set())
    errors: list[str] = []
    for resource, verbs in REQUIRED_VERBS.items():
        have = granted.get(resource, set()) | wildcard
        if "*" in have:
            continue
        missing = sorted(verbs - have)
        if missing:
            errors.append(f"ClusterRole/{CONTROLLER_NAME} is missing verbs on {resource}: {', '.join(missing)}")
    return errors


def _validate_binding(binding: dict[str, Any], service_account: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    role_ref = binding.get("roleRef") or {}
    if role_ref.get("kind") != "ClusterRole" or role_ref.get("name") != CONTROLLER_NAME:
        errors.append(f"ClusterRoleBinding/{CONTROLLER_NAME} must reference ClusterRole/{CONTROLLER_NAME}")

    sa_meta = service_account.get("metadata", {})
    expected_subject = ("ServiceAccount", sa_meta.get("name"), sa_meta.get("namespace"))
    subjects = {
        (subject.get("kind"), subject.get("name"), subject.get("namespace"))
        for subject in binding.get("subjects") or []
    }
    if expected_subject not in subjects:
        errors.append(
            f"ClusterRoleBinding/{CONTROLLER_NAME} does not bind "
            f"ServiceAccount {expected_subject[2]}/{expected_subject[1]}"
        )
    return errors


def _container_env(container: dict[str, Any]) -> dict[str, str]:
    return {item["name"]: str(item.get("value", "")) for item in container.get("env") or [] if "name" in item}


def _validate_deployment(deployment: dict[str, Any], service_account: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    spec = deployment.get("spec") or {}
    if spec.get("replicas", 1) != 1:
        errors.append(f"Deployment/{CONTROLLER_NAME} must run exactly one replica")

    pod_spec = (spec.get("template") or {}).get("spec") or {}
    sa_name = service_account.get("metadata", {}).get("name")
    if pod_spec.get("serviceAccountName") != sa_name:
        errors.append(f"Deployment/{CONTROLLER_NAME} must run as ServiceAccount {sa_name}")

    containers = pod_spec.get("containers") or []
    if not containers:
        return [*errors, f"Deployment/{CONTROLLER_NAME} has no containers"]
    container = containers[0]

    for probe, path in EXPECTED_PROBES.items():
        actual = ((container.get(probe) or {}).get("httpGet") or {}).get("path")
        if actual != path:
            errors.append(f"Deployment/{CONTROLLER_NAME} {probe} must target {path}, got: {actual}")

    env = _container_env(container)
    health_port = env.get("HEALTH_PORT", "8080")
    ports = {str(port.get("containerPort")) for port in container.get("ports") or []}
    if health_port not in ports:
        errors.append(f"Deployment/{CONTROLLER_NAME} does not expose HEALTH_PORT {health_port}")

    blacklist = {ns.strip() for ns in env.get("NAMESPACE_BLACKLIST", "").split(",") if ns.strip()}
    if "kube-system" not in blacklist:
        errors.append(f"Deployment/{CONTROLLER_NAME} NAMESPACE_BLACKLIST must include kube-system")
    return errors


def _validate_manifest(path: Path) -> list[str]:
    documents = _load_documents(path)
    service_account = _find(documents, "ServiceAccount", CONTROLLER_NAME)
    role = _find(documents, "ClusterRole", CONTROLLER_NAME)
    binding = _find(documents, "ClusterRoleBinding", CONTROLLER_NAME)
    deployment = _find(documents, "Deployment", CONTROLLER_NAME)
    if service_account is None or role is None or binding is None or deployment is None:
        found = {
            "ServiceAccount": service_account,
            "ClusterRole": role,
            "ClusterRoleBinding": binding,
            "Deployment": deployment,
        }
        return [f"{path}: missing {kind}/{CONTROLLER_NAME}" for kind, doc in found.items() if doc is None]

    errors = [
        *_validate_cluster_role(role),
        *_validate_binding(binding, service_account),
        *_validate_deployment(deployment, service_account),
    ]
    return [f"{path}: {error}" for error in errors]


def main() -> int:
    args = _parse_args()
    errors = _validate_manifest(args.manifest)
    if errors:
        print("Manifest validation failed:", file=sys.stderr)
        for error in errors:
            print(f"  - {error}", file=sys.stderr)
        return 1

    print("Manifest validation passed")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
