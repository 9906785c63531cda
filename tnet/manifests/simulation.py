"""Desired child manifests for a Simulation resource."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

import yaml
from kubernetes.client import (
    V1ConfigMap,
    V1ConfigMapVolumeSource,
    V1Container,
    V1Job,
    V1JobSpec,
    V1LabelSelector,
    V1ObjectMeta,
    V1PodSpec,
    V1PodTemplateSpec,
    V1Service,
    V1ServicePort,
    V1ServiceSpec,
    V1StatefulSet,
    V1StatefulSetSpec,
    V1Volume,
    V1VolumeMount,
)

from tnet.config import OperatorConfig
from tnet.manifests.common import (
    OWNER_NAME_LABEL,
    Manifest,
    env,
    http_probe,
    object_meta,
    owner_labels,
    port,
    resources,
    tcp_probe,
    to_manifest,
)
from tnet.state import Owner, PeerAddressTable, SimulationSpec

MANAGER_PORT = 5115
RUNNER_METRICS_PORT = 9464
OTLP_PORT = 4317
OTEL_METRICS_PORT = 8889
RUNNER_HEALTH_PATH = "/health"
PEERS_FILE = "peers.json"
PEERS_MOUNT = "/tnet-peers"

MANAGER_BACKOFF_LIMIT = 4
WORKER_BACKOFF_LIMIT = 4
MANAGER_RESOURCES = ("1", "1Gi")
WORKER_RESOURCES = ("500m", "512Mi")
OTEL_RESOURCES = ("250m", "512Mi")


def manager_name(sim: str) -> str:
    return f"{sim}-manager"


def worker_name(sim: str, index: int) -> str:
    return f"{sim}-worker-{index}"


def otel_name(sim: str) -> str:
    return f"{sim}-otel"


def sim_peers_name(sim: str) -> str:
    return f"{sim}-peers"


def manager_address(owner: Owner) -> str:
    svc = manager_name(owner.name)
    return f"manager.{svc}.{owner.namespace}.svc.cluster.local:{MANAGER_PORT}"


def otlp_endpoint(owner: Owner, config: OperatorConfig) -> str:
    if config.telemetry_mode == "external":
        return config.telemetry_endpoint
    return f"http://{otel_name(owner.name)}:{OTLP_PORT}"


@dataclass
class SimulationManifests:
    telemetry: List[Manifest] = field(default_factory=list)
    manager: List[Manifest] = field(default_factory=list)
    workers: List[Manifest] = field(default_factory=list)

    def all(self) -> List[Manifest]:
        return self.telemetry + self.manager + self.workers


def generate_simulation(
    owner: Owner,
    spec: SimulationSpec,
    nonce: int,
    table: Optional[PeerAddressTable],
    config: OperatorConfig,
    active: bool = True,
) -> SimulationManifests:
    """
    Map a Simulation spec to its telemetry, manager and worker children.

    Pure: no I/O, deterministic for identical inputs.

    Args:
        owner: Parent Simulation identity
        spec: Parsed Simulation spec (users already capped at parse time)
        nonce: Run nonce fixed on the first reconcile pass
        table: Target network's peer address table, copied into the run
        config: Operator config
        active: False renders manager and workers scaled to zero

    Returns:
        SimulationManifests grouped by lifecycle step
    """
    table = table or PeerAddressTable()
    parallelism = 1 if active else 0
    out = SimulationManifests()
    if config.telemetry_mode == "managed":
        out.telemetry.extend(_telemetry(owner, config))

    peers_cm = V1ConfigMap(
        metadata=object_meta(owner, sim_peers_name(owner.name), "peers"),
        data={PEERS_FILE: table.to_json()},
    )
    out.manager.append(to_manifest("v1", "ConfigMap", peers_cm))
    out.manager.append(_manager_service(owner))
    out.manager.append(_manager_job(owner, spec, nonce, config, parallelism))

    peers = table.peers()
    for i in range(spec.users):
        target = peers[i % len(peers)] if peers else None
        out.workers.append(_worker_job(owner, spec, nonce, config, i, target, parallelism))
    return out


def _runner_env(owner: Owner, spec: SimulationSpec, nonce: int, config: OperatorConfig) -> List:
    items = [
        env("RUNNER_OTLP_ENDPOINT", otlp_endpoint(owner, config)),
        env("LOG_LEVEL", "info"),
        env("SIMULATE_SCENARIO", spec.scenario.value),
        env("SIMULATE_NEEDS_ANCHOR", str(spec.scenario.needs_anchor).lower()),
        env("SIMULATE_PEERS_PATH", f"{PEERS_MOUNT}/{PEERS_FILE}"),
        env("SIMULATE_NONCE", nonce),
        env("SIMULATE_RUN_TIME", f"{spec.run_time}m"),
    ]
    if spec.throttle_requests is not None:
        items.append(env("SIMULATE_THROTTLE_REQUESTS", spec.throttle_requests))
    return items


def _runner_pod(
    owner: Owner,
    spec: SimulationSpec,
    config: OperatorConfig,
    role: str,
    env_items: List,
    cpu_mem: tuple,
    hostname: Optional[str] = None,
    subdomain: Optional[str] = None,
) -> V1PodTemplateSpec:
    labels = owner_labels(owner)
    labels["tnet.io/role"] = role
    container = V1Container(
        name=role,
        image=spec.image or config.runner_image,
        image_pull_policy=spec.image_pull_policy or config.image_pull_policy,
        command=["/usr/bin/tnet-runner", "simulate"],
        env=sorted(env_items, key=lambda e: e.name),
        ports=[port("manager", MANAGER_PORT), port("metrics", RUNNER_METRICS_PORT)],
        readiness_probe=http_probe(RUNNER_HEALTH_PATH, "manager", initial_delay_s=10, period_s=5),
        resources=resources(*cpu_mem),
        volume_mounts=[V1VolumeMount(name="tnet-peers", mount_path=PEERS_MOUNT, read_only=True)],
    )
    return V1PodTemplateSpec(
        metadata=V1ObjectMeta(labels=labels),
        spec=V1PodSpec(
            hostname=hostname,
            subdomain=subdomain,
            restart_policy="Never",
            containers=[container],
            volumes=[
                V1Volume(
                    name="tnet-peers",
                    config_map=V1ConfigMapVolumeSource(name=sim_peers_name(owner.name)),
                )
            ],
        ),
    )


def _manager_service(owner: Owner) -> Manifest:
    svc = V1Service(
        metadata=object_meta(owner, manager_name(owner.name), "manager"),
        spec=V1ServiceSpec(
            cluster_ip="None",
            selector={OWNER_NAME_LABEL: owner.name, "tnet.io/role": "manager"},
            ports=[V1ServicePort(name="manager", port=MANAGER_PORT, target_port="manager", protocol="TCP")],
        ),
    )
    return to_manifest("v1", "Service", svc)


def _manager_job(owner: Owner, spec: SimulationSpec, nonce: int, config: OperatorConfig, parallelism: int) -> Manifest:
    env_items = _runner_env(owner, spec, nonce, config) + [
        env("SIMULATE_MANAGER", "true"),
        env("SIMULATE_USERS", spec.users),
        env("SIMULATE_TARGET_PEER", 0),
    ]
    job = V1Job(
        metadata=object_meta(owner, manager_name(owner.name), "manager"),
        spec=V1JobSpec(
            backoff_limit=MANAGER_BACKOFF_LIMIT,
            parallelism=parallelism,
            template=_runner_pod(
                owner,
                spec,
                config,
                "manager",
                env_items,
                MANAGER_RESOURCES,
                hostname="manager",
                subdomain=manager_name(owner.name),
            ),
        ),
    )
    return to_manifest("batch/v1", "Job", job)


def _worker_job(
    owner: Owner,
    spec: SimulationSpec,
    nonce: int,
    config: OperatorConfig,
    index: int,
    target,
    parallelism: int,
) -> Manifest:
    env_items = _runner_env(owner, spec, nonce, config) + [
        env("SIMULATE_MANAGER", "false"),
        env("SIMULATE_MANAGER_ADDR", manager_address(owner)),
        env("SIMULATE_WORKER_INDEX", index),
        env("SIMULATE_TARGET_PEER", target.name if target else ""),
        env("SIMULATE_TARGET_PEER_ADDR", target.api_addr if target else ""),
    ]
    job = V1Job(
        metadata=object_meta(owner, worker_name(owner.name, index), "worker"),
        spec=V1JobSpec(
            backoff_limit=WORKER_BACKOFF_LIMIT,
            parallelism=parallelism,
            template=_runner_pod(owner, spec, config, "worker", env_items, WORKER_RESOURCES),
        ),
    )
    return to_manifest("batch/v1", "Job", job)


def _otel_config() -> str:
    collector = {
        "receivers": {"otlp": {"protocols": {"grpc": {"endpoint": f"0.0.0.0:{OTLP_PORT}"}}}},
        "processors": {"batch": {}},
        "exporters": {"prometheus": {"endpoint": f"0.0.0.0:{OTEL_METRICS_PORT}"}},
        "service": {
            "pipelines": {
                "metrics": {"receivers": ["otlp"], "processors": ["batch"], "exporters": ["prometheus"]},
            },
        },
    }
    return yaml.safe_dump(collector, sort_keys=True)


def _telemetry(owner: Owner, config: OperatorConfig) -> List[Manifest]:
    name = otel_name(owner.name)
    selector = {"app": name}
    pod_labels = dict(selector)
    pod_labels.update(owner_labels(owner))

    cm = V1ConfigMap(
        metadata=object_meta(owner, name, "telemetry"),
        data={"otel-config.yaml": _otel_config()},
    )
    container = V1Container(
        name="otel",
        image=config.otel_image,
        image_pull_policy=config.image_pull_policy,
        args=["--config=/config/otel-config.yaml"],
        ports=[port("otlp", OTLP_PORT), port("metrics", OTEL_METRICS_PORT)],
        readiness_probe=tcp_probe("otlp", initial_delay_s=5, period_s=10),
        resources=resources(*OTEL_RESOURCES),
        volume_mounts=[V1VolumeMount(name="config", mount_path="/config", read_only=True)],
    )
    sts = V1StatefulSet(
        metadata=object_meta(owner, name, "telemetry"),
        spec=V1StatefulSetSpec(
            replicas=1,
            service_name=name,
            selector=V1LabelSelector(match_labels=selector),
            template=V1PodTemplateSpec(
                metadata=V1ObjectMeta(labels=pod_labels),
                spec=V1PodSpec(
                    containers=[container],
                    volumes=[V1Volume(name="config", config_map=V1ConfigMapVolumeSource(name=name))],
                ),
            ),
        ),
    )
    svc = V1Service(
        metadata=object_meta(owner, name, "telemetry"),
        spec=V1ServiceSpec(
            selector=selector,
            ports=[
                V1ServicePort(name="otlp", port=OTLP_PORT, target_port="otlp", protocol="TCP"),
                V1ServicePort(name="metrics", port=OTEL_METRICS_PORT, target_port="metrics", protocol="TCP"),
            ],
        ),
    )
    return [
        to_manifest("v1", "ConfigMap", cm),
        to_manifest("v1", "Service", svc),
        to_manifest("apps/v1", "StatefulSet", sts),
    ]
