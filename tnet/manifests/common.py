"""Shared building blocks for generated child manifests."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from kubernetes.client import (
    ApiClient,
    V1ContainerPort,
    V1EnvVar,
    V1EnvVarSource,
    V1HTTPGetAction,
    V1ObjectFieldSelector,
    V1ObjectMeta,
    V1OwnerReference,
    V1PersistentVolumeClaim,
    V1PersistentVolumeClaimSpec,
    V1Probe,
    V1ResourceRequirements,
    V1SecretKeySelector,
    V1TCPSocketAction,
    V1VolumeResourceRequirements,
)

from tnet.state import Owner

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY = "tnet-operator"
OWNER_KIND_LABEL = "tnet.io/owner-kind"
OWNER_NAME_LABEL = "tnet.io/owner-name"
COMPONENT_LABEL = "tnet.io/component"
TIER_LABEL = "tnet.io/tier"

# Kinds the controllers generate and are allowed to prune.
CHILD_KINDS: List[Tuple[str, str]] = [
    ("apps/v1", "StatefulSet"),
    ("batch/v1", "Job"),
    ("v1", "Service"),
    ("v1", "ConfigMap"),
]

_serializer = ApiClient()


@dataclass(frozen=True)
class Manifest:
    """A desired child object, already serialized to its wire form."""

    api_version: str
    kind: str
    namespace: str
    name: str
    body: Dict[str, Any]

    @property
    def identity(self) -> Tuple[str, str, str, str]:
        return (self.api_version, self.kind, self.namespace, self.name)


def owner_labels(owner: Owner) -> Dict[str, str]:
    return {
        MANAGED_BY_LABEL: MANAGED_BY,
        OWNER_KIND_LABEL: owner.kind,
        OWNER_NAME_LABEL: owner.name,
    }


def owner_selector(owner: Owner) -> str:
    """Label selector matching every child of ``owner``."""
    return ",".join(f"{k}={v}" for k, v in sorted(owner_labels(owner).items()))


def owner_reference(owner: Owner) -> V1OwnerReference:
    return V1OwnerReference(
        api_version=owner.api_version,
        kind=owner.kind,
        name=owner.name,
        uid=owner.uid,
        controller=True,
        block_owner_deletion=True,
    )


def object_meta(owner: Owner, name: str, component: str, labels: Optional[Dict[str, str]] = None) -> V1ObjectMeta:
    all_labels = owner_labels(owner)
    all_labels[COMPONENT_LABEL] = component
    all_labels.update(labels or {})
    return V1ObjectMeta(
        name=name,
        namespace=owner.namespace,
        labels=all_labels,
        owner_references=[owner_reference(owner)],
    )


def to_manifest(api_version: str, kind: str, obj: Any) -> Manifest:
    """Serialize a kubernetes model object into a Manifest."""
    obj.api_version = api_version
    obj.kind = kind
    body = _serializer.sanitize_for_serialization(obj)
    meta = body["metadata"]
    return Manifest(
        api_version=api_version,
        kind=kind,
        namespace=meta["namespace"],
        name=meta["name"],
        body=body,
    )


def env(name: str, value: Any) -> V1EnvVar:
    return V1EnvVar(name=name, value=str(value))


def env_from_field(name: str, field_path: str) -> V1EnvVar:
    return V1EnvVar(
        name=name,
        value_from=V1EnvVarSource(field_ref=V1ObjectFieldSelector(field_path=field_path)),
    )


def env_from_secret(name: str, secret: str, key: str) -> V1EnvVar:
    return V1EnvVar(
        name=name,
        value_from=V1EnvVarSource(secret_key_ref=V1SecretKeySelector(name=secret, key=key)),
    )


def port(name: str, number: int) -> V1ContainerPort:
    return V1ContainerPort(name=name, container_port=number, protocol="TCP")


def resources(cpu: str, memory: str, storage: Optional[str] = None) -> V1ResourceRequirements:
    """Requests equal limits so peers land in the Guaranteed QoS class."""
    limits = {"cpu": cpu, "memory": memory}
    if storage:
        limits["ephemeral-storage"] = storage
    return V1ResourceRequirements(requests=dict(limits), limits=dict(limits))


def http_probe(path: str, port_name: str, initial_delay_s: int, period_s: int) -> V1Probe:
    return V1Probe(
        http_get=V1HTTPGetAction(path=path, port=port_name),
        initial_delay_seconds=initial_delay_s,
        period_seconds=period_s,
        timeout_seconds=5,
        failure_threshold=3,
    )


def tcp_probe(port_name: str, initial_delay_s: int, period_s: int) -> V1Probe:
    return V1Probe(
        tcp_socket=V1TCPSocketAction(port=port_name),
        initial_delay_seconds=initial_delay_s,
        period_seconds=period_s,
    )


def volume_claim(name: str, storage_class: str, size: str) -> V1PersistentVolumeClaim:
    return V1PersistentVolumeClaim(
        metadata=V1ObjectMeta(name=name),
        spec=V1PersistentVolumeClaimSpec(
            access_modes=["ReadWriteOnce"],
            storage_class_name=storage_class,
            resources=V1VolumeResourceRequirements(requests={"storage": size}),
        ),
    )
