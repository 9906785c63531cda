"""Desired child manifests for a Network resource."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from kubernetes.client import (
    V1ConfigMap,
    V1ConfigMapProjection,
    V1ConfigMapVolumeSource,
    V1Container,
    V1LabelSelector,
    V1ObjectMeta,
    V1PodSpec,
    V1PodTemplateSpec,
    V1ProjectedVolumeSource,
    V1RollingUpdateStatefulSetStrategy,
    V1Secret,
    V1Service,
    V1ServicePort,
    V1ServiceSpec,
    V1StatefulSet,
    V1StatefulSetPersistentVolumeClaimRetentionPolicy,
    V1StatefulSetSpec,
    V1StatefulSetUpdateStrategy,
    V1Volume,
    V1VolumeMount,
    V1VolumeProjection,
)

from tnet.config import OperatorConfig
from tnet.manifests.common import (
    OWNER_NAME_LABEL,
    TIER_LABEL,
    Manifest,
    env,
    env_from_field,
    env_from_secret,
    http_probe,
    object_meta,
    owner_labels,
    port,
    resources,
    tcp_probe,
    to_manifest,
    volume_claim,
)
from tnet.state import (
    BOOTSTRAP_TIER,
    GENERAL_TIER,
    NetworkSpec,
    Owner,
    PeerAddressTable,
    PeerRuntimeState,
)

PEER_APP = "tnet-peer"
API_PORT = 7007
RPC_PORT = 5101
SWARM_PORT = 4001
METRICS_PORT = 9464
CAS_PORT = 8081
CHAIN_RPC_PORT = 8545

HEALTHCHECK_PATH = "/api/v0/node/healthcheck"
PEERS_FILE = "peers.json"
PEERS_MOUNT = "/tnet-peers"
PEER_CONFIG_MOUNT = "/peer-config"
DATA_DIR = "/data/peer"
STATE_DIR = "/data/state"
ADMIN_KEY = "private-key"

# Per-component constants; not configurable per Network.
CAS_RESOURCES = ("500m", "1Gi")
CHAIN_RPC_RESOURCES = ("250m", "512Mi")


def tier_name(network: str, tier: str) -> str:
    return f"{network}-{tier}"


def cas_name(network: str) -> str:
    return f"{network}-cas"


def chain_rpc_name(network: str) -> str:
    return f"{network}-chain-rpc"


def peers_config_map_name(network: str) -> str:
    return f"{network}-peers"


def admin_secret_name(network: str) -> str:
    return f"{network}-admin"


def bundle_name(pod_name: str) -> str:
    return f"{pod_name}-config"


def pod_dns(pod: str, service: str, namespace: str) -> str:
    return f"{pod}.{service}.{namespace}.svc.cluster.local"


def peer_runtime(owner: Owner, tier: str, ordinal: int, ready: bool) -> PeerRuntimeState:
    """Addressing for one peer pod of a tier; readiness comes from observation."""
    service = tier_name(owner.name, tier)
    pod = f"{service}-{ordinal}"
    host = pod_dns(pod, service, owner.namespace)
    return PeerRuntimeState(
        name=pod,
        tier=tier,
        ordinal=ordinal,
        ready=ready,
        rpc_addr=f"http://{host}:{RPC_PORT}",
        api_addr=f"http://{host}:{API_PORT}",
    )


@dataclass
class NetworkManifests:
    """Desired children grouped by the provisioning step that applies them."""

    support: List[Manifest] = field(default_factory=list)
    bootstrap: List[Manifest] = field(default_factory=list)
    general: List[Manifest] = field(default_factory=list)
    peers_table: Optional[Manifest] = None

    def all(self) -> List[Manifest]:
        items = self.support + self.bootstrap + self.general
        if self.peers_table is not None:
            items.append(self.peers_table)
        return items


def generate_network(
    owner: Owner,
    spec: NetworkSpec,
    table: Optional[PeerAddressTable],
    config: OperatorConfig,
) -> NetworkManifests:
    """
    Map a Network spec plus the current peer address table to its children.

    Pure: no I/O, deterministic for identical inputs.

    Args:
        owner: Parent Network identity (for names, labels, owner references)
        spec: Parsed Network spec
        table: Peer address table to publish (empty table if None)
        config: Operator config (images, storage constants)

    Returns:
        NetworkManifests grouped into support / bootstrap / general tiers
    """
    out = NetworkManifests()
    if spec.cas:
        out.support.extend(_cas(owner, spec, config))
    if spec.chain_rpc:
        out.support.extend(_chain_rpc(owner, spec, config))

    out.bootstrap.extend(_peer_tier(owner, spec, config, BOOTSTRAP_TIER, spec.bootstrap_count))
    if spec.general_count > 0:
        out.general.extend(_peer_tier(owner, spec, config, GENERAL_TIER, spec.general_count))

    out.peers_table = peers_config_map(owner, table or PeerAddressTable())
    return out


def peers_config_map(owner: Owner, table: PeerAddressTable) -> Manifest:
    cm = V1ConfigMap(
        metadata=object_meta(owner, peers_config_map_name(owner.name), "peers"),
        data={PEERS_FILE: table.to_json()},
    )
    return to_manifest("v1", "ConfigMap", cm)


def admin_secret(owner: Owner, private_key: str) -> dict:
    """Body for the admin key Secret. Created once, never re-applied."""
    secret = V1Secret(
        api_version="v1",
        kind="Secret",
        metadata=object_meta(owner, admin_secret_name(owner.name), "admin"),
        type="Opaque",
        string_data={ADMIN_KEY: private_key},
    )
    return to_manifest("v1", "Secret", secret).body


# ----------------------------------------------------------------------
# Peer tiers
# ----------------------------------------------------------------------
def _peer_env(owner: Owner, spec: NetworkSpec, tier: str) -> List:
    topic = spec.pubsub_topic or f"/tnet/{spec.network_type}-{owner.name}"
    items = [
        env_from_field("POD_NAME", "metadata.name"),
        env("PEER_NETWORK_ID", f"{owner.namespace}/{owner.name}"),
        env("PEER_NETWORK_TYPE", spec.network_type),
        env("PEER_PUBSUB_TOPIC", topic),
        env("PEER_TIER", tier),
        env("PEER_DATA_DIR", DATA_DIR),
        env("PEER_STATE_DIR", STATE_DIR),
        env("PEER_CONFIG_DIR", PEER_CONFIG_MOUNT),
        env("PEERS_PATH", f"{PEERS_MOUNT}/{PEERS_FILE}"),
        env("PEER_DISCOVERY", "private" if spec.private else "open"),
        env("LOG_LEVEL", spec.log_level),
        env("METRICS_ADDR", f"0.0.0.0:{METRICS_PORT}"),
        env_from_secret("PEER_ADMIN_PRIVATE_KEY", admin_secret_name(owner.name), ADMIN_KEY),
    ]
    cas_url = f"http://{cas_name(owner.name)}:{CAS_PORT}" if spec.cas else spec.cas_api_url
    if cas_url:
        items.append(env("CAS_API_URL", cas_url))
    rpc_url = f"http://{chain_rpc_name(owner.name)}:{CHAIN_RPC_PORT}" if spec.chain_rpc else spec.eth_rpc_url
    if rpc_url:
        items.append(env("ETH_RPC_URL", rpc_url))
    # Stable ordering keeps repeated applies byte-identical.
    return sorted(items, key=lambda e: e.name)


def _peer_bundle(owner: Owner, spec: NetworkSpec, tier: str, ordinal: int) -> Manifest:
    pod = f"{tier_name(owner.name, tier)}-{ordinal}"
    lines = [
        f"PEER_NAME={pod}",
        f"PEER_TIER={tier}",
        f"PEER_ORDINAL={ordinal}",
        f"PEER_NETWORK_ID={owner.namespace}/{owner.name}",
        f"PEER_ADMIN_KEY_SECRET={admin_secret_name(owner.name)}",
        f"PEER_DISCOVERY={'private' if spec.private else 'open'}",
        f"LOG_LEVEL={spec.log_level}",
    ]
    cm = V1ConfigMap(
        metadata=object_meta(owner, bundle_name(pod), "peer-config", {TIER_LABEL: tier}),
        data={f"{pod}.env": "\n".join(lines) + "\n"},
    )
    return to_manifest("v1", "ConfigMap", cm)


def _peer_tier(owner: Owner, spec: NetworkSpec, config: OperatorConfig, tier: str, count: int) -> List[Manifest]:
    name = tier_name(owner.name, tier)
    selector = {"app": PEER_APP, TIER_LABEL: tier, OWNER_NAME_LABEL: owner.name}
    pod_labels = dict(selector)
    pod_labels.update(owner_labels(owner))
    limits = spec.resource_limits

    container = V1Container(
        name="peer",
        image=spec.peer_image or config.peer_image,
        image_pull_policy=spec.image_pull_policy or config.image_pull_policy,
        command=["/usr/bin/tnet-peer"],
        args=["daemon", "--config-dir", PEER_CONFIG_MOUNT],
        env=_peer_env(owner, spec, tier),
        ports=[
            port("api", API_PORT),
            port("rpc", RPC_PORT),
            port("swarm", SWARM_PORT),
            port("metrics", METRICS_PORT),
        ],
        readiness_probe=http_probe(HEALTHCHECK_PATH, "api", initial_delay_s=20, period_s=10),
        liveness_probe=http_probe(HEALTHCHECK_PATH, "api", initial_delay_s=30, period_s=15),
        resources=resources(limits.cpu, limits.memory, limits.storage),
        volume_mounts=[
            V1VolumeMount(name="peer-data", mount_path=DATA_DIR),
            V1VolumeMount(name="peer-state", mount_path=STATE_DIR),
            V1VolumeMount(name="peer-config", mount_path=PEER_CONFIG_MOUNT, read_only=True),
            V1VolumeMount(name="tnet-peers", mount_path=PEERS_MOUNT, read_only=True),
        ],
    )

    bundles = [_peer_bundle(owner, spec, tier, i) for i in range(count)]
    volumes = [
        V1Volume(
            name="peer-config",
            projected=V1ProjectedVolumeSource(
                sources=[
                    V1VolumeProjection(config_map=V1ConfigMapProjection(name=b.name, optional=True))
                    for b in bundles
                ]
            ),
        ),
        V1Volume(
            name="tnet-peers",
            config_map=V1ConfigMapVolumeSource(name=peers_config_map_name(owner.name), optional=True),
        ),
    ]

    sts = V1StatefulSet(
        metadata=object_meta(owner, name, "peer", {TIER_LABEL: tier}),
        spec=V1StatefulSetSpec(
            replicas=count,
            service_name=name,
            pod_management_policy="Parallel",
            selector=V1LabelSelector(match_labels=selector),
            template=V1PodTemplateSpec(
                metadata=V1ObjectMeta(
                    labels=pod_labels,
                    annotations={
                        "prometheus.io/scrape": "true",
                        "prometheus.io/port": str(METRICS_PORT),
                        "prometheus.io/path": "/metrics",
                    },
                ),
                spec=V1PodSpec(containers=[container], volumes=volumes),
            ),
            update_strategy=V1StatefulSetUpdateStrategy(
                type="RollingUpdate",
                rolling_update=V1RollingUpdateStatefulSetStrategy(max_unavailable="50%"),
            ),
            persistent_volume_claim_retention_policy=V1StatefulSetPersistentVolumeClaimRetentionPolicy(
                when_deleted="Delete",
                when_scaled="Delete",
            ),
            volume_claim_templates=[
                volume_claim("peer-data", config.storage_class, config.storage_size),
                volume_claim("peer-state", config.storage_class, config.storage_size),
            ],
        ),
    )
    service = _headless_service(
        owner,
        name,
        "peer",
        selector,
        [("api", API_PORT), ("rpc", RPC_PORT), ("swarm", SWARM_PORT), ("metrics", METRICS_PORT)],
        tier,
    )
    return [to_manifest("apps/v1", "StatefulSet", sts), service] + bundles


def _headless_service(
    owner: Owner,
    name: str,
    component: str,
    selector: Dict[str, str],
    ports: List,
    tier: Optional[str] = None,
) -> Manifest:
    svc = V1Service(
        metadata=object_meta(owner, name, component, {TIER_LABEL: tier} if tier else None),
        spec=V1ServiceSpec(
            cluster_ip="None",
            selector=selector,
            ports=[V1ServicePort(name=n, port=p, target_port=n, protocol="TCP") for n, p in ports],
        ),
    )
    return to_manifest("v1", "Service", svc)


# ----------------------------------------------------------------------
# Support services
# ----------------------------------------------------------------------
def _single_replica(
    owner: Owner,
    name: str,
    component: str,
    container: V1Container,
    config: OperatorConfig,
    service_ports: List,
) -> List[Manifest]:
    selector = {"app": name}
    pod_labels = dict(selector)
    pod_labels.update(owner_labels(owner))
    sts = V1StatefulSet(
        metadata=object_meta(owner, name, component),
        spec=V1StatefulSetSpec(
            replicas=1,
            service_name=name,
            selector=V1LabelSelector(match_labels=selector),
            template=V1PodTemplateSpec(
                metadata=V1ObjectMeta(labels=pod_labels),
                spec=V1PodSpec(containers=[container]),
            ),
            volume_claim_templates=[volume_claim("data", config.storage_class, config.storage_size)],
        ),
    )
    svc = V1Service(
        metadata=object_meta(owner, name, component),
        spec=V1ServiceSpec(
            selector=selector,
            ports=[V1ServicePort(name=n, port=p, target_port=n, protocol="TCP") for n, p in service_ports],
        ),
    )
    return [to_manifest("apps/v1", "StatefulSet", sts), to_manifest("v1", "Service", svc)]


def _cas(owner: Owner, spec: NetworkSpec, config: OperatorConfig) -> List[Manifest]:
    name = cas_name(owner.name)
    cas_env = [
        env("ANCHOR_INTERVAL_S", 60),
        env("DATA_DIR", "/data"),
        env("LOG_LEVEL", spec.log_level),
        env("METRICS_PORT", METRICS_PORT),
        env("PORT", CAS_PORT),
    ]
    if spec.chain_rpc:
        cas_env.append(env("ETH_RPC_URL", f"http://{chain_rpc_name(owner.name)}:{CHAIN_RPC_PORT}"))
    container = V1Container(
        name="cas",
        image=spec.cas_image or config.cas_image,
        image_pull_policy=spec.image_pull_policy or config.image_pull_policy,
        env=sorted(cas_env, key=lambda e: e.name),
        ports=[port("api", CAS_PORT), port("metrics", METRICS_PORT)],
        readiness_probe=http_probe("/api/v0/healthcheck", "api", initial_delay_s=10, period_s=10),
        liveness_probe=http_probe("/api/v0/healthcheck", "api", initial_delay_s=30, period_s=15),
        resources=resources(*CAS_RESOURCES),
        volume_mounts=[V1VolumeMount(name="data", mount_path="/data")],
    )
    return _single_replica(owner, name, "cas", container, config, [("api", CAS_PORT), ("metrics", METRICS_PORT)])


def _chain_rpc(owner: Owner, spec: NetworkSpec, config: OperatorConfig) -> List[Manifest]:
    name = chain_rpc_name(owner.name)
    container = V1Container(
        name="chain-rpc",
        image=spec.chain_rpc_image or config.chain_rpc_image,
        image_pull_policy=spec.image_pull_policy or config.image_pull_policy,
        args=[
            "--server.host=0.0.0.0",
            f"--server.port={CHAIN_RPC_PORT}",
            "--database.dbPath=/data",
            "--wallet.deterministic=true",
        ],
        ports=[port("rpc", CHAIN_RPC_PORT), port("metrics", METRICS_PORT)],
        readiness_probe=tcp_probe("rpc", initial_delay_s=5, period_s=10),
        liveness_probe=tcp_probe("rpc", initial_delay_s=20, period_s=15),
        resources=resources(*CHAIN_RPC_RESOURCES),
        volume_mounts=[V1VolumeMount(name="data", mount_path="/data")],
    )
    return _single_replica(
        owner, name, "chain-rpc", container, config, [("rpc", CHAIN_RPC_PORT), ("metrics", METRICS_PORT)]
    )
