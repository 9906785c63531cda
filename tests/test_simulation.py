import pytest

import tnet.simulation
from tnet.errors import NotReady, SpecInvalid
from tnet.state import (
    PeerAddressTable,
    PeerInfo,
    ResourceKey,
    Scenario,
    SimulationPhase,
    SimulationSpec,
    SimulationStatus,
    TopologyPhase,
    format_time,
)
from tnet.simulation import SimulationController, SimulationFacts, advance_simulation

from fakes import GROUP_VERSION

NS = "load"
KEY = ResourceKey("Simulation", NS, "sim")


def _publish_network(cluster, name="net", namespace=NS, phase=TopologyPhase.STEADY, peers=2):
    cluster.add_network(name, namespace=namespace, replicas=peers)
    cluster.set_status(GROUP_VERSION, "Network", namespace, name, phase=phase.value)
    table = PeerAddressTable(
        PeerInfo(
            name=f"{name}-bootstrap-{i}",
            tier="bootstrap",
            peer_id=f"peer{i}",
            rpc_addr=f"http://{name}-bootstrap-{i}:5101",
            api_addr=f"http://{name}-bootstrap-{i}:7007",
            addresses=[f"/ip4/10.0.0.{i + 1}/tcp/4001/p2p/peer{i}"],
        )
        for i in range(peers)
    )
    cluster.put({
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {"name": f"{name}-peers", "namespace": namespace},
        "data": {"peers.json": table.to_json()},
    })


def _status(cluster, name="sim"):
    return cluster.find(GROUP_VERSION, "Simulation", NS, name).get("status") or {}


def _phase(cluster, name="sim"):
    return _status(cluster, name).get("phase")


def _env(job):
    container = job["spec"]["template"]["spec"]["containers"][0]
    return {e["name"]: e.get("value") for e in container["env"]}


@pytest.fixture
def controller(cluster, config, clock):
    return SimulationController(cluster, config, clock=clock)


# ----------------------------------------------------------------------
# Phase transitions
# ----------------------------------------------------------------------
@pytest.fixture
def spec():
    return SimulationSpec(scenario=Scenario.LOG_SIMPLE, users=2, run_time=4)


def test_advance_moves_one_phase_per_call(spec, clock):
    facts = SimulationFacts(network_steady=True, telemetry_ready=True, manager_ready=True, workers_ready=2)
    status = SimulationStatus(nonce=1, pending_since=format_time(clock()))
    seen = []
    for _ in range(5):
        status = advance_simulation(status, spec, facts, clock(), 600)
        seen.append(status.phase)
    assert seen == [
        SimulationPhase.PROVISIONING_TELEMETRY,
        SimulationPhase.STARTING_MANAGER,
        SimulationPhase.STARTING_WORKERS,
        SimulationPhase.RUNNING,
        SimulationPhase.RUNNING,
    ]
    clock.advance(minutes=4)
    done = advance_simulation(status, spec, facts, clock(), 600)
    assert done.phase == SimulationPhase.COMPLETED
    assert advance_simulation(done, spec, SimulationFacts(manager_failed=True), clock(), 600) == done


def test_advance_waits_for_all_workers(spec, clock):
    status = SimulationStatus(phase=SimulationPhase.STARTING_WORKERS, nonce=1)
    nxt = advance_simulation(status, spec, SimulationFacts(network_steady=True, workers_ready=1), clock(), 600)
    assert nxt.phase == SimulationPhase.STARTING_WORKERS
    assert nxt.message == "1/2 workers ready"


def test_advance_completes_early_when_manager_succeeds(spec, clock):
    status = SimulationStatus(phase=SimulationPhase.RUNNING, nonce=1, running_since=format_time(clock()))
    clock.advance(seconds=30)
    nxt = advance_simulation(status, spec, SimulationFacts(manager_succeeded=True), clock(), 600)
    assert nxt.phase == SimulationPhase.COMPLETED
    assert nxt.message == "manager reported completion"


# ----------------------------------------------------------------------
# Reconcile passes
# ----------------------------------------------------------------------
def test_full_run_lifecycle(cluster, controller, clock):
    _publish_network(cluster)
    cluster.add_simulation("sim", namespace=NS, scenario="log-simple", users=2, runTime=4)

    controller.reconcile(KEY)
    status = _status(cluster)
    assert status["phase"] == SimulationPhase.PROVISIONING_TELEMETRY.value
    nonce = status["nonce"]
    assert isinstance(nonce, int)
    assert "sim-otel" in cluster.names("StatefulSet", NS)
    assert cluster.names("Job", NS) == []

    controller.reconcile(KEY)
    assert _status(cluster)["message"] == "waiting for telemetry"

    cluster.mark_statefulset_ready(NS, "sim-otel")
    controller.reconcile(KEY)
    assert _phase(cluster) == SimulationPhase.STARTING_MANAGER.value
    assert cluster.names("Job", NS) == ["sim-manager"]
    frozen = PeerAddressTable.from_json(cluster.find("v1", "ConfigMap", NS, "sim-peers")["data"]["peers.json"])
    assert len(frozen) == 2

    cluster.mark_job(NS, "sim-manager", ready=1)
    controller.reconcile(KEY)
    assert _phase(cluster) == SimulationPhase.STARTING_WORKERS.value
    assert cluster.names("Job", NS) == ["sim-manager", "sim-worker-0", "sim-worker-1"]

    for i in range(2):
        cluster.mark_job(NS, f"sim-worker-{i}", ready=1)
    requeue = controller.reconcile(KEY)
    assert _phase(cluster) == SimulationPhase.RUNNING.value
    assert _status(cluster)["readyWorkers"] == 2
    assert requeue == controller.config.requeue_s

    clock.advance(minutes=3, seconds=58)
    assert controller.reconcile(KEY) == 2.0
    assert _phase(cluster) == SimulationPhase.RUNNING.value

    clock.advance(seconds=2)
    assert controller.reconcile(KEY) is None
    status = _status(cluster)
    assert status["phase"] == SimulationPhase.COMPLETED.value
    assert status["nonce"] == nonce
    assert status["completedAt"] == format_time(clock())
    for name in ("sim-manager", "sim-worker-0", "sim-worker-1"):
        job = cluster.find("batch/v1", "Job", NS, name)
        assert job["spec"]["parallelism"] == 0
        assert _env(job)["SIMULATE_NONCE"] == str(nonce)

    writes = len(cluster.writes)
    assert controller.reconcile(KEY) is None
    assert len(cluster.writes) == writes


def test_run_table_is_frozen_once_copied(cluster, controller):
    _publish_network(cluster, peers=2)
    cluster.add_simulation("sim", namespace=NS, scenario="peer-rpc", users=1, runTime=1)
    controller.reconcile(KEY)
    cluster.mark_statefulset_ready(NS, "sim-otel")
    controller.reconcile(KEY)
    before = cluster.find("v1", "ConfigMap", NS, "sim-peers")["data"]

    cluster.delete("v1", "ConfigMap", NS, "net-peers")
    cluster.put({
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {"name": "net-peers", "namespace": NS},
        "data": {"peers.json": "[]"},
    })
    controller.reconcile(KEY)

    assert cluster.find("v1", "ConfigMap", NS, "sim-peers")["data"] == before


def test_network_in_other_namespace(cluster, controller):
    _publish_network(cluster, namespace="peers")
    cluster.add_simulation("sim", namespace=NS, scenario="log-query", users=1, runTime=1, network="peers")
    controller.reconcile(KEY)
    cluster.mark_statefulset_ready(NS, "sim-otel")
    controller.reconcile(KEY)

    assert _phase(cluster) == SimulationPhase.STARTING_MANAGER.value
    env = _env(cluster.find("batch/v1", "Job", NS, "sim-manager"))
    assert env["SIMULATE_SCENARIO"] == "log-query"


def test_waits_for_steady_network(cluster, controller):
    _publish_network(cluster, phase=TopologyPhase.PEERING_ALL)
    cluster.add_simulation("sim", namespace=NS, scenario="log-simple", users=1, runTime=1)
    controller.reconcile(KEY)
    cluster.mark_statefulset_ready(NS, "sim-otel")

    controller.reconcile(KEY)

    status = _status(cluster)
    assert status["phase"] == SimulationPhase.PROVISIONING_TELEMETRY.value
    assert status["message"] == "waiting for network: net is PeeringAll"
    assert cluster.names("Job", NS) == []


def test_network_wait_times_out(cluster, controller, clock):
    cluster.add_simulation("sim", namespace=NS, scenario="log-simple", users=1, runTime=1)
    controller.reconcile(KEY)
    assert _phase(cluster) == SimulationPhase.PROVISIONING_TELEMETRY.value

    clock.advance(seconds=601)
    assert controller.reconcile(KEY) is None

    status = _status(cluster)
    assert status["phase"] == SimulationPhase.FAILED.value
    assert status["error"]["type"] == "Unrecoverable"
    assert "no Network found" in status["message"]


def test_manager_failure_fails_the_run(cluster, controller):
    _publish_network(cluster)
    cluster.add_simulation("sim", namespace=NS, scenario="log-simple", users=2, runTime=4)
    controller.reconcile(KEY)
    cluster.mark_statefulset_ready(NS, "sim-otel")
    controller.reconcile(KEY)
    cluster.mark_job(NS, "sim-manager", failed=True)

    assert controller.reconcile(KEY) is None

    status = _status(cluster)
    assert status["phase"] == SimulationPhase.FAILED.value
    assert status["error"]["type"] == "Unrecoverable"
    assert cluster.names("Job", NS) == ["sim-manager"]

    controller.reconcile(KEY)
    assert cluster.names("Job", NS) == ["sim-manager"]


def _drive_to_starting_workers(cluster, controller, users=2):
    _publish_network(cluster)
    cluster.add_simulation("sim", namespace=NS, scenario="log-simple", users=users, runTime=4)
    controller.reconcile(KEY)
    cluster.mark_statefulset_ready(NS, "sim-otel")
    controller.reconcile(KEY)
    cluster.mark_job(NS, "sim-manager", ready=1)
    controller.reconcile(KEY)
    assert _phase(cluster) == SimulationPhase.STARTING_WORKERS.value


def test_failed_worker_fails_the_run(cluster, controller):
    _drive_to_starting_workers(cluster, controller)
    cluster.mark_job(NS, "sim-worker-0", ready=1)
    cluster.mark_job(NS, "sim-worker-1", failed=True)

    assert controller.reconcile(KEY) is None

    status = _status(cluster)
    assert status["phase"] == SimulationPhase.FAILED.value
    assert status["error"]["type"] == "Unrecoverable"
    assert "1 worker job" in status["message"]


def test_failed_worker_while_running_fails_the_run(cluster, controller):
    _drive_to_starting_workers(cluster, controller)
    for i in range(2):
        cluster.mark_job(NS, f"sim-worker-{i}", ready=1)
    controller.reconcile(KEY)
    assert _phase(cluster) == SimulationPhase.RUNNING.value

    cluster.mark_job(NS, "sim-worker-0", failed=True)
    controller.reconcile(KEY)
    assert _phase(cluster) == SimulationPhase.FAILED.value


def test_manager_that_never_starts_times_out(cluster, controller, clock):
    _publish_network(cluster)
    cluster.add_simulation("sim", namespace=NS, scenario="log-simple", users=1, runTime=1)
    controller.reconcile(KEY)
    cluster.mark_statefulset_ready(NS, "sim-otel")
    controller.reconcile(KEY)
    assert _phase(cluster) == SimulationPhase.STARTING_MANAGER.value
    entered = _status(cluster)["phaseSince"]

    clock.advance(seconds=controller.config.start_timeout_s - 1)
    controller.reconcile(KEY)
    assert _phase(cluster) == SimulationPhase.STARTING_MANAGER.value
    assert _status(cluster)["phaseSince"] == entered

    clock.advance(seconds=1)
    assert controller.reconcile(KEY) is None
    status = _status(cluster)
    assert status["phase"] == SimulationPhase.FAILED.value
    assert status["error"]["type"] == "Unrecoverable"
    assert status["message"].startswith("manager not ready")


def test_workers_that_never_start_time_out(cluster, controller, clock):
    _drive_to_starting_workers(cluster, controller)
    cluster.mark_job(NS, "sim-worker-0", ready=1)

    clock.advance(seconds=controller.config.start_timeout_s)
    controller.reconcile(KEY)

    status = _status(cluster)
    assert status["phase"] == SimulationPhase.FAILED.value
    assert status["message"] == f"only 1/2 workers ready after {int(controller.config.start_timeout_s)}s"


def test_start_timeout_restarts_with_each_phase(spec, clock):
    status = SimulationStatus(phase=SimulationPhase.STARTING_MANAGER, nonce=1, phase_since=format_time(clock()))
    clock.advance(seconds=500)
    status = advance_simulation(status, spec, SimulationFacts(manager_ready=True), clock(), 600, 600)
    assert status.phase == SimulationPhase.STARTING_WORKERS
    assert status.phase_since == format_time(clock())

    clock.advance(seconds=500)
    status = advance_simulation(status, spec, SimulationFacts(workers_ready=1), clock(), 600, 600)
    assert status.phase == SimulationPhase.STARTING_WORKERS


def _drive_to_running(cluster, controller, users):
    controller.reconcile(KEY)
    cluster.mark_statefulset_ready(NS, "sim-otel")
    controller.reconcile(KEY)
    cluster.mark_job(NS, "sim-manager", ready=1)
    controller.reconcile(KEY)
    for i in range(users):
        cluster.mark_job(NS, f"sim-worker-{i}", ready=1)
    controller.reconcile(KEY)
    assert _phase(cluster) == SimulationPhase.RUNNING.value


def test_rerun_after_delete_starts_clean(cluster, controller, clock, monkeypatch):
    nonces = iter([111, 222])
    monkeypatch.setattr(tnet.simulation.random, "getrandbits", lambda bits: next(nonces))
    _publish_network(cluster)

    cluster.add_simulation("sim", namespace=NS, scenario="log-simple", users=3, runTime=1)
    _drive_to_running(cluster, controller, users=3)
    clock.advance(minutes=1)
    controller.reconcile(KEY)
    assert _phase(cluster) == SimulationPhase.COMPLETED.value
    assert cluster.find("batch/v1", "Job", NS, "sim-worker-2")["spec"]["parallelism"] == 0

    cluster.delete(GROUP_VERSION, "Simulation", NS, "sim")
    assert cluster.names("Job", NS) == []
    assert controller.reconcile(KEY) is None

    cluster.add_simulation("sim", namespace=NS, scenario="log-simple", users=1, runTime=1)
    _drive_to_running(cluster, controller, users=1)

    status = _status(cluster)
    assert status["nonce"] == 222
    assert status["workers"] == 1
    assert cluster.names("Job", NS) == ["sim-manager", "sim-worker-0"]
    for name in ("sim-manager", "sim-worker-0"):
        job = cluster.find("batch/v1", "Job", NS, name)
        assert job["spec"]["parallelism"] == 1
        assert _env(job)["SIMULATE_NONCE"] == "222"


def test_rerun_waits_for_previous_children_to_be_collected(cluster, controller, monkeypatch):
    nonces = iter([111, 222])
    monkeypatch.setattr(tnet.simulation.random, "getrandbits", lambda bits: next(nonces))
    _publish_network(cluster)
    cluster.add_simulation("sim", namespace=NS, scenario="log-simple", users=1, runTime=1)
    _drive_to_running(cluster, controller, users=1)

    # Parent gone, children not yet garbage collected.
    cluster.delete(GROUP_VERSION, "Simulation", NS, "sim", cascade=False)
    cluster.add_simulation("sim", namespace=NS, scenario="log-simple", users=1, runTime=1)
    stale = cluster.find("apps/v1", "StatefulSet", NS, "sim-otel")

    with pytest.raises(NotReady):
        controller.reconcile(KEY)

    assert cluster.find("apps/v1", "StatefulSet", NS, "sim-otel") == stale
    assert len(stale["metadata"]["ownerReferences"]) == 1
    assert _status(cluster).get("error") is None

    cluster.collect_garbage()
    assert cluster.names("Job", NS) == []
    controller.reconcile(KEY)
    sts = cluster.find("apps/v1", "StatefulSet", NS, "sim-otel")
    new_uid = cluster.find(GROUP_VERSION, "Simulation", NS, "sim")["metadata"]["uid"]
    assert [ref["uid"] for ref in sts["metadata"]["ownerReferences"]] == [new_uid]


def test_nonce_survives_later_passes(cluster, controller):
    _publish_network(cluster)
    cluster.add_simulation("sim", namespace=NS, scenario="log-simple", users=1, runTime=1)
    controller.reconcile(KEY)
    nonce = _status(cluster)["nonce"]
    for _ in range(3):
        controller.reconcile(KEY)
    assert _status(cluster)["nonce"] == nonce


def test_ambiguous_network_is_rejected(cluster, controller):
    _publish_network(cluster, name="a")
    _publish_network(cluster, name="b")
    cluster.add_simulation("sim", namespace=NS, scenario="log-simple", users=1, runTime=1)

    with pytest.raises(SpecInvalid):
        controller.reconcile(KEY)

    assert _status(cluster)["error"]["type"] == "SpecInvalid"
    assert cluster.names("StatefulSet", NS) == []


def test_named_network_resolves_ambiguity(cluster, controller):
    _publish_network(cluster, name="a")
    _publish_network(cluster, name="b")
    cluster.add_simulation("sim", namespace=NS, scenario="log-simple", users=1, runTime=1, networkName="b")
    controller.reconcile(KEY)
    cluster.mark_statefulset_ready(NS, "sim-otel")
    controller.reconcile(KEY)

    table = PeerAddressTable.from_json(cluster.find("v1", "ConfigMap", NS, "sim-peers")["data"]["peers.json"])
    assert table.names() == {"b-bootstrap-0", "b-bootstrap-1"}


def test_oversized_batch_is_rejected(cluster, controller, config):
    cluster.add_simulation("sim", namespace=NS, scenario="log-simple", users=config.max_workers + 1, runTime=1)
    with pytest.raises(SpecInvalid):
        controller.reconcile(KEY)
    assert cluster.names("Job", NS) == []


def test_empty_peer_table_blocks_manager(cluster, controller):
    cluster.add_network("net", namespace=NS, replicas=1)
    cluster.set_status(GROUP_VERSION, "Network", NS, "net", phase=TopologyPhase.STEADY.value)
    cluster.add_simulation("sim", namespace=NS, scenario="log-simple", users=1, runTime=1)
    controller.reconcile(KEY)
    cluster.mark_statefulset_ready(NS, "sim-otel")

    with pytest.raises(NotReady):
        controller.reconcile(KEY)
    assert cluster.names("Job", NS) == []
