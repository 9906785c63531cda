"""Network topology controller: level-triggered provisioning and peering."""

from __future__ import annotations

import base64
import logging
import secrets
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional

from tnet.applier import ResourceApplier, status_changed
from tnet.config import OperatorConfig
from tnet.errors import NotReady, OwnerGone, ReconcileError
from tnet.manifests.common import OWNER_NAME_LABEL
from tnet.manifests.network import (
    ADMIN_KEY,
    PEER_APP,
    PEERS_FILE,
    admin_secret,
    admin_secret_name,
    cas_name,
    chain_rpc_name,
    generate_network,
    peer_runtime,
    peers_config_map,
    peers_config_map_name,
)
from tnet.peering import PeerClient, PeeringCoordinator
from tnet.state import (
    BOOTSTRAP_TIER,
    GENERAL_TIER,
    NetworkSpec,
    NetworkStatus,
    Owner,
    PeerAddressTable,
    PeerRuntimeState,
    ResourceKey,
    TopologyPhase,
    format_time,
    parse_time,
    utcnow,
)

logger = logging.getLogger(__name__)

NETWORK_KIND = "Network"


@dataclass
class NetworkFacts:
    """Everything the phase decision needs, observed fresh each pass."""

    children_exist: bool = False
    support_required: int = 0
    support_ready: int = 0
    peers: List[PeerRuntimeState] = field(default_factory=list)
    table: PeerAddressTable = field(default_factory=PeerAddressTable)

    def tier(self, tier: str) -> List[PeerRuntimeState]:
        return [p for p in self.peers if p.tier == tier]


def decide_network_phase(facts: NetworkFacts) -> TopologyPhase:
    """
    Recompute the phase from observed facts alone; the stored phase is
    never consulted.
    """
    if not facts.children_exist:
        return TopologyPhase.CREATED
    if facts.support_ready < facts.support_required:
        return TopologyPhase.PROVISIONING_SUPPORT_SERVICES
    bootstrap = facts.tier(BOOTSTRAP_TIER)
    if not bootstrap or not all(p.ready for p in bootstrap):
        return TopologyPhase.PROVISIONING_BOOTSTRAP_PEERS
    published = facts.table.names()
    if not all(p.name in published for p in bootstrap):
        return TopologyPhase.PEERING_BOOTSTRAP
    general = facts.tier(GENERAL_TIER)
    if not all(p.ready for p in general):
        return TopologyPhase.PROVISIONING_GENERAL_PEERS
    if {p.name for p in facts.peers} != published:
        return TopologyPhase.PEERING_ALL
    return TopologyPhase.STEADY


def pod_ready(pod: Dict[str, Any]) -> bool:
    if pod.get("metadata", {}).get("deletionTimestamp"):
        return False
    for cond in pod.get("status", {}).get("conditions") or []:
        if cond.get("type") == "Ready":
            return cond.get("status") == "True"
    return False


class TopologyController:
    """
    Reconciles one Network per call.

    Each pass reads the parent, observes children and pods, decides the
    phase, applies the tiers that phase allows, coordinates peering once
    the bootstrap tier is ready, prunes children that are no longer
    desired, and writes status when it changed.
    """

    def __init__(
        self,
        cluster,
        config: OperatorConfig,
        peer_client: Optional[PeerClient] = None,
        coordinator: Optional[PeeringCoordinator] = None,
    ) -> None:
        self.cluster = cluster
        self.config = config
        self.api_version = f"{config.group}/{config.version}"
        self.applier = ResourceApplier(cluster, config.field_manager)
        self.peer_client = peer_client or PeerClient(config)
        self.coordinator = coordinator or PeeringCoordinator(self.peer_client)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------
    def reconcile(self, key: ResourceKey) -> Optional[float]:
        """
        Run one pass for ``key``.

        Returns:
            Seconds until the next pass should run, or None for no requeue

        Raises:
            ReconcileError: after recording it on the Network's status
        """
        obj = self.cluster.get(self.api_version, NETWORK_KIND, key.namespace, key.name)
        if obj is None:
            logger.debug(f"{key} is gone; nothing to do")
            return None
        if obj.get("metadata", {}).get("deletionTimestamp"):
            logger.debug(f"{key} is being deleted; children cascade")
            return None

        owner = Owner.from_object(obj)
        try:
            return self._reconcile(owner, obj)
        except OwnerGone:
            raise
        except ReconcileError as e:
            self._record_error(owner, obj, e)
            raise

    def _record_error(self, owner: Owner, obj: Dict[str, Any], err: ReconcileError) -> None:
        patch: Dict[str, Any] = {"message": err.message}
        if not isinstance(err, NotReady):
            patch["error"] = err.to_status()
        if not status_changed(patch, obj.get("status")):
            return
        try:
            self.cluster.patch_status(self.api_version, NETWORK_KIND, owner.namespace, owner.name, patch)
        except OwnerGone:
            logger.debug(f"{owner.key} vanished before its error could be recorded")

    # ------------------------------------------------------------------
    # One pass
    # ------------------------------------------------------------------
    def _reconcile(self, owner: Owner, obj: Dict[str, Any]) -> Optional[float]:
        live_status = obj.get("status") or {}
        spec = NetworkSpec.from_dict(obj.get("spec"))

        expiration = self._expiration(spec, live_status)
        if expiration is not None and utcnow() >= expiration:
            logger.info(f"{owner.key} expired at {format_time(expiration)}; deleting")
            self.cluster.delete(owner.api_version, owner.kind, owner.namespace, owner.name)
            return None

        self._ensure_admin_secret(owner, spec)

        facts = self._observe(owner, spec)
        logger.debug(f"{owner.key}: observed phase {decide_network_phase(facts).value}")
        desired = generate_network(owner, spec, facts.table, self.config)

        # Each tier is applied only once the tier before it is ready.
        self.applier.converge_all(desired.support, owner)
        pending: Optional[NotReady] = None
        if facts.support_ready >= facts.support_required:
            self.applier.converge_all(desired.bootstrap, owner)
            self.applier.converge(desired.peers_table, owner)

            bootstrap = facts.tier(BOOTSTRAP_TIER)
            if bootstrap and all(p.ready for p in bootstrap):
                try:
                    table = self.coordinator.coordinate(facts.peers)
                except NotReady as e:
                    pending = e
                else:
                    if table != facts.table:
                        logger.info(f"{owner.key}: publishing peer table with {len(table)} peers")
                        self.applier.converge(peers_config_map(owner, table), owner)
                        facts.table = table

            if bootstrap and {p.name for p in bootstrap} <= facts.table.names():
                self.applier.converge_all(desired.general, owner)

        # Prune against everything the Network declares, not only what this pass
        # applied, so gated tiers are never torn down while they wait.
        desired = generate_network(owner, spec, facts.table, self.config)
        pruned = self.applier.prune_unwanted(owner, desired.all())
        if pruned:
            logger.info(f"{owner.key}: pruned {pruned} children")

        facts.children_exist = True
        phase = decide_network_phase(facts)

        status = self._status(owner, obj, spec, facts, phase, expiration, pending)
        self._write_status(owner, obj, status)

        if pending is not None:
            raise pending
        if phase == TopologyPhase.STEADY:
            return self.config.steady_requeue_s
        return self.config.requeue_s

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------
    def _expiration(self, spec: NetworkSpec, live_status: Dict[str, Any]):
        if spec.ttl_seconds is None:
            return None
        recorded = parse_time(live_status.get("expirationTime"))
        if recorded is not None:
            return recorded
        return utcnow() + timedelta(seconds=spec.ttl_seconds)

    def _observe(self, owner: Owner, spec: NetworkSpec) -> NetworkFacts:
        facts = NetworkFacts()
        cm = self.cluster.get("v1", "ConfigMap", owner.namespace, peers_config_map_name(owner.name))
        if cm is not None:
            facts.children_exist = True
            facts.table = PeerAddressTable.from_json((cm.get("data") or {}).get(PEERS_FILE))

        support = []
        if spec.cas:
            support.append(cas_name(owner.name))
        if spec.chain_rpc:
            support.append(chain_rpc_name(owner.name))
        facts.support_required = len(support)
        for name in support:
            sts = self.cluster.get("apps/v1", "StatefulSet", owner.namespace, name)
            if sts is None:
                continue
            facts.children_exist = True
            if int((sts.get("status") or {}).get("readyReplicas") or 0) >= 1:
                facts.support_ready += 1

        selector = f"app={PEER_APP},{OWNER_NAME_LABEL}={owner.name}"
        ready = {p["metadata"]["name"]: pod_ready(p) for p in self.cluster.list("v1", "Pod", owner.namespace, selector)}
        for tier, count in ((BOOTSTRAP_TIER, spec.bootstrap_count), (GENERAL_TIER, spec.general_count)):
            for ordinal in range(count):
                peer = peer_runtime(owner, tier, ordinal, False)
                peer.ready = ready.get(peer.name, False)
                facts.peers.append(peer)
        if ready:
            facts.children_exist = True
        return facts

    # ------------------------------------------------------------------
    # Admin secret
    # ------------------------------------------------------------------
    def _ensure_admin_secret(self, owner: Owner, spec: NetworkSpec) -> None:
        name = admin_secret_name(owner.name)
        if self.cluster.get("v1", "Secret", owner.namespace, name) is not None:
            return
        if spec.private_key_secret:
            source = self.cluster.get("v1", "Secret", owner.namespace, spec.private_key_secret)
            encoded = ((source or {}).get("data") or {}).get(ADMIN_KEY)
            if not encoded:
                raise NotReady(f"secret {spec.private_key_secret} with key {ADMIN_KEY} not found")
            private_key = base64.b64decode(encoded).decode("utf-8")
        else:
            private_key = secrets.token_hex(32)
        self.applier.ensure_owner(owner)
        if self.cluster.create(admin_secret(owner, private_key)) is not None:
            logger.info(f"{owner.key}: created admin secret {name}")

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------
    def _status(
        self,
        owner: Owner,
        obj: Dict[str, Any],
        spec: NetworkSpec,
        facts: NetworkFacts,
        phase: TopologyPhase,
        expiration,
        pending: Optional[NotReady],
    ) -> NetworkStatus:
        by_name = {p.name: p for p in facts.table.peers()}
        peers = []
        for peer in facts.peers:
            info = by_name.get(peer.name)
            entry: Dict[str, Any] = {"name": peer.name, "tier": peer.tier, "ready": peer.ready}
            if info is not None:
                entry["peerId"] = info.peer_id
                entry["addresses"] = sorted(info.addresses)
            peers.append(entry)

        if pending is not None:
            message = pending.message
        elif phase == TopologyPhase.STEADY:
            message = f"{len(facts.table)} peers connected"
        else:
            message = f"waiting in {phase.value}"

        return NetworkStatus(
            phase=phase,
            replicas=spec.replicas,
            ready_replicas=sum(1 for p in facts.peers if p.ready),
            peers=peers,
            expiration_time=format_time(expiration) if expiration is not None else None,
            message=message,
            observed_generation=obj.get("metadata", {}).get("generation"),
            error=None,
        )

    def _write_status(self, owner: Owner, obj: Dict[str, Any], status: NetworkStatus) -> None:
        new = status.to_dict()
        if not status_changed(new, obj.get("status")):
            return
        old_phase = (obj.get("status") or {}).get("phase")
        if old_phase != new["phase"]:
            logger.info(f"{owner.key}: phase {old_phase or '-'} -> {new['phase']}")
        self.cluster.patch_status(self.api_version, NETWORK_KIND, owner.namespace, owner.name, new)
        # Later error recording in this pass compares against what was just written.
        merged = dict(obj.get("status") or {}, **new)
        obj["status"] = {k: v for k, v in merged.items() if v is not None}
