"""Simulation run controller: telemetry, manager, workers, completion."""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from tnet.applier import ResourceApplier, status_changed
from tnet.config import OperatorConfig
from tnet.errors import NotReady, OwnerGone, ReconcileError, SpecInvalid, Unrecoverable
from tnet.manifests.network import PEERS_FILE, peers_config_map_name
from tnet.manifests.simulation import generate_simulation, manager_name, otel_name, sim_peers_name, worker_name
from tnet.state import (
    Owner,
    PeerAddressTable,
    ResourceKey,
    SimulationPhase,
    SimulationSpec,
    SimulationStatus,
    TopologyPhase,
    format_time,
    parse_time,
    utcnow,
)

logger = logging.getLogger(__name__)

SIMULATION_KIND = "Simulation"
NETWORK_KIND = "Network"


@dataclass
class SimulationFacts:
    """Observed readiness of a run's dependencies and children."""

    network_steady: bool = False
    network_message: Optional[str] = None
    telemetry_ready: bool = False
    manager_ready: bool = False
    manager_succeeded: bool = False
    manager_failed: bool = False
    workers_ready: int = 0
    workers_failed: int = 0


def _failed(status: SimulationStatus, err: Unrecoverable, now: datetime) -> SimulationStatus:
    return replace(
        status,
        phase=SimulationPhase.FAILED,
        completed_at=format_time(now),
        message=err.message,
        error=err.to_status(),
    )


def _waited(since: Optional[str], now: datetime) -> float:
    start = parse_time(since) or now
    return (now - start).total_seconds()


def advance_simulation(
    status: SimulationStatus,
    spec: SimulationSpec,
    facts: SimulationFacts,
    now: datetime,
    network_wait_timeout_s: float,
    start_timeout_s: float = 900.0,
) -> SimulationStatus:
    """
    Compute the next status from the current one and observed facts.

    Moves at most one phase per call so every phase is visited in order.
    Terminal phases never change. ``phaseSince`` is stamped whenever the
    phase changes; the start timeout is measured from it.
    """
    if status.phase.terminal:
        return status
    nxt = _advance(status, spec, facts, now, network_wait_timeout_s, start_timeout_s)
    if nxt.phase != status.phase or nxt.phase_since is None:
        nxt = replace(nxt, phase_since=format_time(now))
    return nxt


def _advance(
    status: SimulationStatus,
    spec: SimulationSpec,
    facts: SimulationFacts,
    now: datetime,
    network_wait_timeout_s: float,
    start_timeout_s: float,
) -> SimulationStatus:
    nxt = replace(status, workers=spec.users, ready_workers=facts.workers_ready, error=None)
    phase = status.phase

    if facts.manager_failed:
        return _failed(nxt, Unrecoverable("manager job exceeded its retry budget"), now)
    if facts.workers_failed:
        return _failed(nxt, Unrecoverable(f"{facts.workers_failed} worker job(s) exceeded their retry budget"), now)

    if phase == SimulationPhase.PENDING:
        return replace(nxt, phase=SimulationPhase.PROVISIONING_TELEMETRY, message="provisioning telemetry")

    if phase == SimulationPhase.PROVISIONING_TELEMETRY:
        if not facts.network_steady:
            if _waited(status.pending_since, now) >= network_wait_timeout_s:
                err = Unrecoverable(f"network not steady after {int(network_wait_timeout_s)}s: {facts.network_message}")
                return _failed(nxt, err, now)
            return replace(nxt, message=f"waiting for network: {facts.network_message}")
        if not facts.telemetry_ready:
            return replace(nxt, message="waiting for telemetry")
        return replace(nxt, phase=SimulationPhase.STARTING_MANAGER, message="starting manager")

    if phase == SimulationPhase.STARTING_MANAGER:
        if not facts.manager_ready:
            if _waited(status.phase_since, now) >= start_timeout_s:
                return _failed(nxt, Unrecoverable(f"manager not ready after {int(start_timeout_s)}s"), now)
            return replace(nxt, message="waiting for manager")
        return replace(nxt, phase=SimulationPhase.STARTING_WORKERS, message="starting workers")

    if phase == SimulationPhase.STARTING_WORKERS:
        if facts.workers_ready < spec.users:
            if _waited(status.phase_since, now) >= start_timeout_s:
                err = Unrecoverable(f"only {facts.workers_ready}/{spec.users} workers ready after {int(start_timeout_s)}s")
                return _failed(nxt, err, now)
            return replace(nxt, message=f"{facts.workers_ready}/{spec.users} workers ready")
        return replace(nxt, phase=SimulationPhase.RUNNING, running_since=format_time(now), message="running")

    if phase == SimulationPhase.RUNNING:
        elapsed = _waited(status.running_since, now)
        if facts.manager_succeeded or elapsed >= spec.run_time * 60:
            reason = "manager reported completion" if facts.manager_succeeded else "run time elapsed"
            return replace(nxt, phase=SimulationPhase.COMPLETED, completed_at=format_time(now), message=reason)
        return replace(nxt, message="running")

    return nxt


def _job_state(job: Optional[Dict[str, Any]]) -> Tuple[bool, bool, bool]:
    """(ready, succeeded, failed) for a Job object."""
    if job is None:
        return False, False, False
    status = job.get("status") or {}
    conditions = {c.get("type"): c.get("status") for c in status.get("conditions") or []}
    succeeded = conditions.get("Complete") == "True" or int(status.get("succeeded") or 0) > 0
    failed = conditions.get("Failed") == "True"
    ready = int(status.get("ready") or 0) > 0
    return ready, succeeded, failed


class SimulationController:
    """
    Reconciles one Simulation per call.

    Children are applied cumulatively for the phase reached: telemetry
    from ProvisioningTelemetry, the manager from StartingManager, the
    workers from StartingWorkers. Completed scales manager and workers
    to zero and keeps the Jobs. Failed applies nothing further.
    """

    def __init__(self, cluster, config: OperatorConfig, clock: Callable[[], datetime] = utcnow) -> None:
        self.cluster = cluster
        self.config = config
        self.clock = clock
        self.api_version = f"{config.group}/{config.version}"
        self.applier = ResourceApplier(cluster, config.field_manager)

    def reconcile(self, key: ResourceKey) -> Optional[float]:
        obj = self.cluster.get(self.api_version, SIMULATION_KIND, key.namespace, key.name)
        if obj is None or obj.get("metadata", {}).get("deletionTimestamp"):
            logger.debug(f"{key} is gone or going; nothing to do")
            return None

        owner = Owner.from_object(obj)
        try:
            return self._reconcile(owner, obj)
        except OwnerGone:
            raise
        except ReconcileError as e:
            patch: Dict[str, Any] = {"message": e.message}
            if not isinstance(e, NotReady):
                patch["error"] = e.to_status()
            if status_changed(patch, obj.get("status")):
                try:
                    self.cluster.patch_status(self.api_version, SIMULATION_KIND, owner.namespace, owner.name, patch)
                except OwnerGone:
                    logger.debug(f"{owner.key} vanished before its error could be recorded")
            raise

    def _reconcile(self, owner: Owner, obj: Dict[str, Any]) -> Optional[float]:
        now = self.clock()
        status = SimulationStatus.from_dict(obj.get("status"))
        if status.phase.terminal:
            return None

        spec = SimulationSpec.from_dict(obj.get("spec"), self.config.max_workers)
        if status.nonce is None:
            # Persisted before any child is generated from it.
            status.nonce = random.getrandbits(32)
            status.pending_since = status.pending_since or format_time(now)
            first = {"phase": status.phase.value, "nonce": status.nonce, "pendingSince": status.pending_since}
            self.cluster.patch_status(self.api_version, SIMULATION_KIND, owner.namespace, owner.name, first)
            obj = dict(obj, status=dict(obj.get("status") or {}, **first))

        network = self._resolve_network(owner, spec)
        facts = self._observe(owner, spec, network)
        nxt = advance_simulation(
            status, spec, facts, now, self.config.network_wait_timeout_s, self.config.start_timeout_s
        )
        if nxt.phase != status.phase:
            logger.info(f"{owner.key}: phase {status.phase.value} -> {nxt.phase.value}")

        self._apply(owner, spec, nxt, network)

        new = nxt.to_dict()
        if status_changed(new, obj.get("status")):
            self.cluster.patch_status(self.api_version, SIMULATION_KIND, owner.namespace, owner.name, new)

        if nxt.phase.terminal:
            return None
        if nxt.phase == SimulationPhase.RUNNING:
            started = parse_time(nxt.running_since) or now
            remaining = spec.run_time * 60 - (now - started).total_seconds()
            return max(1.0, min(self.config.requeue_s, remaining))
        return self.config.requeue_s

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------
    def _resolve_network(self, owner: Owner, spec: SimulationSpec) -> Optional[Dict[str, Any]]:
        namespace = spec.network or owner.namespace
        if spec.network_name:
            return self.cluster.get(self.api_version, NETWORK_KIND, namespace, spec.network_name)
        networks = self.cluster.list(self.api_version, NETWORK_KIND, namespace)
        if len(networks) > 1:
            names = ", ".join(sorted(n["metadata"]["name"] for n in networks))
            raise SpecInvalid(f"namespace {namespace} holds several networks ({names}); set networkName")
        return networks[0] if networks else None

    def _observe(self, owner: Owner, spec: SimulationSpec, network: Optional[Dict[str, Any]]) -> SimulationFacts:
        facts = SimulationFacts()
        if network is None:
            facts.network_message = f"no Network found in namespace {spec.network or owner.namespace}"
        else:
            phase = (network.get("status") or {}).get("phase")
            facts.network_steady = phase == TopologyPhase.STEADY.value
            facts.network_message = f"{network['metadata']['name']} is {phase or 'Created'}"

        if self.config.telemetry_mode == "external":
            facts.telemetry_ready = True
        else:
            sts = self.cluster.get("apps/v1", "StatefulSet", owner.namespace, otel_name(owner.name))
            facts.telemetry_ready = sts is not None and int((sts.get("status") or {}).get("readyReplicas") or 0) >= 1

        manager = self.cluster.get("batch/v1", "Job", owner.namespace, manager_name(owner.name))
        facts.manager_ready, facts.manager_succeeded, facts.manager_failed = _job_state(manager)

        for i in range(spec.users):
            worker = self.cluster.get("batch/v1", "Job", owner.namespace, worker_name(owner.name, i))
            w_ready, w_done, w_failed = _job_state(worker)
            if w_failed:
                facts.workers_failed += 1
            elif w_ready or w_done:
                facts.workers_ready += 1
        return facts

    def _peer_table(self, owner: Owner, network: Optional[Dict[str, Any]]) -> PeerAddressTable:
        # Once copied into the run, the table stays fixed for the run's lifetime.
        own = self.cluster.get("v1", "ConfigMap", owner.namespace, sim_peers_name(owner.name))
        if own is not None:
            return PeerAddressTable.from_json((own.get("data") or {}).get(PEERS_FILE))
        if network is None:
            raise NotReady("target network disappeared")
        meta = network["metadata"]
        cm = self.cluster.get("v1", "ConfigMap", meta.get("namespace", owner.namespace), peers_config_map_name(meta["name"]))
        table = PeerAddressTable.from_json(((cm or {}).get("data") or {}).get(PEERS_FILE))
        if len(table) == 0:
            raise NotReady(f"network {meta['name']} has not published any peers")
        return table

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------
    def _apply(self, owner: Owner, spec: SimulationSpec, status: SimulationStatus, network: Optional[Dict[str, Any]]) -> None:
        phase = status.phase
        if phase in (SimulationPhase.PENDING, SimulationPhase.FAILED):
            return
        order: List[SimulationPhase] = [
            SimulationPhase.PROVISIONING_TELEMETRY,
            SimulationPhase.STARTING_MANAGER,
            SimulationPhase.STARTING_WORKERS,
            SimulationPhase.RUNNING,
            SimulationPhase.COMPLETED,
        ]
        reached = order.index(phase)
        table = None
        if reached >= order.index(SimulationPhase.STARTING_MANAGER):
            table = self._peer_table(owner, network)

        active = phase != SimulationPhase.COMPLETED
        desired = generate_simulation(owner, spec, status.nonce, table, self.config, active=active)
        self.applier.converge_all(desired.telemetry, owner)
        if reached >= order.index(SimulationPhase.STARTING_MANAGER):
            self.applier.converge_all(desired.manager, owner)
        if reached >= order.index(SimulationPhase.STARTING_WORKERS):
            self.applier.converge_all(desired.workers, owner)
        if not active:
            logger.info(f"{owner.key}: run complete; manager and {spec.users} workers scaled to zero")
