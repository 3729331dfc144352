from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import logging
from typing import Any, Callable, Protocol, TypeVar

import yaml
from kubernetes import client, config
from kubernetes.client import ApiException
from kubernetes.config.config_exception import ConfigException

from .config import (
    BackupError,
    ClusterIdentity,
    ExplicitClusterName,
    NameFilter,
    SecretSelector,
)
from .models import SERVER_ASSIGNED_METADATA_FIELDS, SecretBundle, SecretRecord

LOGGER = logging.getLogger(__name__)
T = TypeVar("T")


class KubernetesAuthenticationError(BackupError):
    """Raised when Kubernetes authentication configuration fails."""


class ResolutionError(BackupError):
    """Raised when the cluster name cannot be determined."""


class RetrievalError(BackupError):
    """Raised when the selected secrets cannot be listed."""


class ClusterApi(Protocol):
    def list_secrets(
        self,
        namespace: str,
        *,
        field_selector: str | None = None,
        label_selector: str | None = None,
    ) -> list[dict[str, Any]]: ...

    def read_config_map(self, namespace: str, name: str) -> dict[str, str]: ...


@dataclass(frozen=True)
class KubernetesClusterApi:
    api_client: client.ApiClient
    core_api: client.CoreV1Api

    def list_secrets(
        self,
        namespace: str,
        *,
        field_selector: str | None = None,
        label_selector: str | None = None,
    ) -> list[dict[str, Any]]:
        kwargs: dict[str, str] = {}
        if field_selector:
            kwargs["field_selector"] = field_selector
        if label_selector:
            kwargs["label_selector"] = label_selector
        response = self.core_api.list_namespaced_secret(namespace=namespace, **kwargs)
        return [self.api_client.sanitize_for_serialization(item) for item in response.items or []]

    def read_config_map(self, namespace: str, name: str) -> dict[str, str]:
        config_map = self.core_api.read_namespaced_config_map(name=name, namespace=namespace)
        return dict(config_map.data or {})


def load_cluster_api(*, kubeconfig_path: str | None = None, context: str | None = None) -> KubernetesClusterApi:
    expanded = _expand_kubeconfig_path(kubeconfig_path)
    in_cluster = False
    try:
        if expanded is None and context is None:
            try:
                config.load_incluster_config()
                in_cluster = True
            except ConfigException:
                in_cluster = False
        if not in_cluster:
            config.load_kube_config(config_file=expanded, context=context)
    except Exception as error:  # pylint: disable=broad-except
        raise KubernetesAuthenticationError(
            _format_authentication_error(kubeconfig_path=expanded, context=context, error=error)
        ) from error

    api_client = client.ApiClient()
    return KubernetesClusterApi(api_client=api_client, core_api=client.CoreV1Api(api_client))


def resolve_cluster_name(
    identity: ClusterIdentity,
    cluster_api: ClusterApi,
    *,
    logger: logging.Logger = LOGGER,
) -> str:
    source = identity.resolve()
    if isinstance(source, ExplicitClusterName):
        logger.info("k8s cluster name: '%s'", source.name)
        return source.name

    logger.info(
        "Cluster name not provided, reading config map '%s' key '%s' in namespace '%s'",
        source.config_map_name,
        source.key,
        source.namespace,
    )
    data = _safe_kubernetes_call(
        error_type=ResolutionError,
        operation=f"read config map '{source.namespace}/{source.config_map_name}'",
        hint="Check the config map exists and RBAC allows get on configmaps in that namespace.",
        func=lambda: cluster_api.read_config_map(source.namespace, source.config_map_name),
    )
    if source.key not in data:
        raise ResolutionError(f"cluster name not found in the '{source.key}' field")

    cluster_name = data[source.key]
    logger.info("k8s cluster name: '%s'", cluster_name)
    return cluster_name


def collect_secrets(
    selector: SecretSelector,
    cluster_api: ClusterApi,
    *,
    logger: logging.Logger = LOGGER,
) -> SecretBundle:
    secret_filter = selector.resolve()
    field_selector: str | None = None
    label_selector: str | None = None
    if isinstance(secret_filter, NameFilter):
        field_selector = f"metadata.name={secret_filter.name}"
        description = f"secret '{secret_filter.name}'"
    else:
        label_selector = secret_filter.selector
        description = f"secrets with label '{label_selector}'"

    namespace = selector.namespace.strip()
    items = _safe_kubernetes_call(
        error_type=RetrievalError,
        operation=f"list {description} in namespace '{namespace}'",
        hint="Check namespace spelling, API reachability, and RBAC verbs for secrets.",
        func=lambda: cluster_api.list_secrets(
            namespace,
            field_selector=field_selector,
            label_selector=label_selector,
        ),
    )

    bundle = SecretBundle(items=tuple(_secret_record(item, default_namespace=namespace) for item in items))
    logger.info("Total Secrets %d, Secret Name(s): %s", len(bundle), ", ".join(bundle.names))
    return bundle


def _secret_record(item: dict[str, Any], *, default_namespace: str) -> SecretRecord:
    metadata = {
        key: value
        for key, value in (item.get("metadata") or {}).items()
        if key not in SERVER_ASSIGNED_METADATA_FIELDS and value is not None
    }
    return SecretRecord(
        name=metadata.get("name") or "",
        namespace=metadata.get("namespace") or default_namespace,
        type=item.get("type"),
        data=dict(item.get("data") or {}),
        metadata=metadata,
        immutable=item.get("immutable"),
    )


def _safe_kubernetes_call(
    *,
    error_type: type[BackupError],
    operation: str,
    hint: str,
    func: Callable[[], T],
) -> T:
    try:
        return func()
    except ApiException as error:
        raise error_type(_format_api_exception_message(operation=operation, hint=hint, error=error)) from error
    except BackupError:
        raise
    except Exception as error:
        reason = str(error).strip() or error.__class__.__name__
        raise error_type(f"Kubernetes request failed while trying to {operation}: {reason}. {hint}") from error


def _format_api_exception_message(*, operation: str, hint: str, error: ApiException) -> str:
    status = error.status if error.status is not None else "unknown"
    reason = error.reason or "no reason provided"
    return f"Kubernetes request failed while trying to {operation}: API status {status} ({reason}). {hint}"


def _expand_kubeconfig_path(kubeconfig_path: str | None) -> str | None:
    if kubeconfig_path is None:
        return None
    stripped = kubeconfig_path.strip()
    if not stripped:
        return None
    return str(Path(stripped).expanduser())


def _format_authentication_error(*, kubeconfig_path: str | None, context: str | None, error: Exception) -> str:
    reason = str(error).strip() or error.__class__.__name__
    kubeconfig_source = kubeconfig_path or "default kubeconfig search path"
    context_message = f" with context '{context}'" if context else ""
    return (
        "Kubernetes authentication setup failed while loading kubeconfig "
        f"from '{kubeconfig_source}'{context_message}: {reason}. "
        "Verify the pod service account mount or the kubeconfig path and context."
    )


def write_bundle(bundle: SecretBundle, path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as file_handle:
        yaml.safe_dump(bundle.to_manifest(), file_handle, sort_keys=False, default_flow_style=False)
    return path
