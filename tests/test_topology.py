import base64
from datetime import timedelta

import pytest

from tnet.errors import FieldConflict, NotReady, SpecInvalid
from tnet.manifests.network import PEER_APP, peer_runtime
from tnet.peering import PeeringCoordinator
from tnet.state import (
    PeerAddressTable,
    ResourceKey,
    TopologyPhase,
    format_time,
    utcnow,
)
from tnet.topology import NetworkFacts, TopologyController, decide_network_phase

from fakes import GROUP_VERSION, StubPeerClient

NS = "load"
KEY = ResourceKey("Network", NS, "net")


@pytest.fixture
def controller(cluster, config, peer_client):
    return TopologyController(cluster, config, peer_client=peer_client, coordinator=PeeringCoordinator(peer_client))


def _status(cluster):
    return cluster.find(GROUP_VERSION, "Network", NS, "net").get("status") or {}


def _ready_pods(cluster, tier, count):
    for i in range(count):
        cluster.add_pod(
            f"net-{tier}-{i}",
            NS,
            {"app": PEER_APP, "tnet.io/tier": tier, "tnet.io/owner-name": "net"},
        )


def _support_ready(cluster):
    cluster.mark_statefulset_ready(NS, "net-cas")
    cluster.mark_statefulset_ready(NS, "net-chain-rpc")


def _drive_to_steady(cluster, controller, bootstrap=2, general=2):
    controller.reconcile(KEY)
    _support_ready(cluster)
    controller.reconcile(KEY)
    _ready_pods(cluster, "bootstrap", bootstrap)
    controller.reconcile(KEY)
    _ready_pods(cluster, "general", general)
    return controller.reconcile(KEY)


# ----------------------------------------------------------------------
# Phase decision
# ----------------------------------------------------------------------
def _facts(net_owner, bootstrap_ready, general_ready, published=(), support=(0, 0), exist=True):
    peers = [peer_runtime(net_owner, "bootstrap", i, r) for i, r in enumerate(bootstrap_ready)]
    peers += [peer_runtime(net_owner, "general", i, r) for i, r in enumerate(general_ready)]
    table = PeerAddressTable()
    stub = StubPeerClient()
    for p in peers:
        if p.name in published:
            table.add(stub.identity(p))
    return NetworkFacts(
        children_exist=exist,
        support_required=support[0],
        support_ready=support[1],
        peers=peers,
        table=table,
    )


def test_decide_walks_every_phase(net_owner):
    b = ["net-bootstrap-0"]
    g = ["net-general-0"]
    cases = [
        (_facts(net_owner, [False], [False], exist=False), TopologyPhase.CREATED),
        (_facts(net_owner, [False], [False], support=(2, 1)), TopologyPhase.PROVISIONING_SUPPORT_SERVICES),
        (_facts(net_owner, [False], [False], support=(2, 2)), TopologyPhase.PROVISIONING_BOOTSTRAP_PEERS),
        (_facts(net_owner, [True], [False]), TopologyPhase.PEERING_BOOTSTRAP),
        (_facts(net_owner, [True], [False], published=b), TopologyPhase.PROVISIONING_GENERAL_PEERS),
        (_facts(net_owner, [True], [True], published=b), TopologyPhase.PEERING_ALL),
        (_facts(net_owner, [True], [True], published=b + g), TopologyPhase.STEADY),
    ]
    for facts, expected in cases:
        assert decide_network_phase(facts) == expected


def test_decide_reopens_after_steady(net_owner):
    steady = _facts(net_owner, [True], [True], published=["net-bootstrap-0", "net-general-0"])
    assert decide_network_phase(steady) == TopologyPhase.STEADY
    steady.peers.append(peer_runtime(net_owner, "general", 1, False))
    assert decide_network_phase(steady) == TopologyPhase.PROVISIONING_GENERAL_PEERS


# ----------------------------------------------------------------------
# Reconcile passes
# ----------------------------------------------------------------------
def test_provisioning_sequence(cluster, controller):
    cluster.add_network("net", namespace=NS, replicas=4, bootstrapReplicas=2)

    controller.reconcile(KEY)
    assert _status(cluster)["phase"] == TopologyPhase.PROVISIONING_SUPPORT_SERVICES.value
    assert cluster.names("StatefulSet", NS) == ["net-cas", "net-chain-rpc"]
    assert cluster.find("v1", "Secret", NS, "net-admin") is not None

    _support_ready(cluster)
    controller.reconcile(KEY)
    assert _status(cluster)["phase"] == TopologyPhase.PROVISIONING_BOOTSTRAP_PEERS.value
    assert "net-bootstrap" in cluster.names("StatefulSet", NS)
    assert "net-general" not in cluster.names("StatefulSet", NS)

    _ready_pods(cluster, "bootstrap", 2)
    controller.reconcile(KEY)
    status = _status(cluster)
    assert status["phase"] == TopologyPhase.PROVISIONING_GENERAL_PEERS.value
    assert "net-general" in cluster.names("StatefulSet", NS)
    table = PeerAddressTable.from_json(cluster.find("v1", "ConfigMap", NS, "net-peers")["data"]["peers.json"])
    assert table.names() == {"net-bootstrap-0", "net-bootstrap-1"}

    _ready_pods(cluster, "general", 2)
    requeue = controller.reconcile(KEY)
    status = _status(cluster)
    assert status["phase"] == TopologyPhase.STEADY.value
    assert status["readyReplicas"] == 4
    assert all("peerId" in p for p in status["peers"])
    assert status.get("error") is None
    assert requeue == controller.config.steady_requeue_s


def test_steady_passes_are_idempotent(cluster, controller):
    cluster.add_network("net", namespace=NS, replicas=4, bootstrapReplicas=2)
    _drive_to_steady(cluster, controller)
    before = cluster.snapshot()
    writes = len(cluster.writes)

    for _ in range(3):
        controller.reconcile(KEY)

    assert cluster.snapshot() == before
    assert len(cluster.writes) == writes


def test_foreign_fields_survive_reconcile(cluster, controller):
    cluster.add_network("net", namespace=NS, replicas=2, bootstrapReplicas=2)
    _drive_to_steady(cluster, controller, bootstrap=2, general=0)
    cluster.external_set("apps/v1", "StatefulSet", NS, "net-bootstrap", ("spec", "template", "spec", "nodeSelector"), {"pool": "fast"})

    controller.reconcile(KEY)

    sts = cluster.find("apps/v1", "StatefulSet", NS, "net-bootstrap")
    assert sts["spec"]["template"]["spec"]["nodeSelector"] == {"pool": "fast"}


def test_field_conflict_is_surfaced_not_overwritten(cluster, controller):
    cluster.add_network("net", namespace=NS, replicas=2, bootstrapReplicas=2)
    _drive_to_steady(cluster, controller, bootstrap=2, general=0)
    cluster.external_set("apps/v1", "StatefulSet", NS, "net-bootstrap", ("spec", "replicas"), 5, manager="autoscaler")

    with pytest.raises(FieldConflict):
        controller.reconcile(KEY)

    assert cluster.find("apps/v1", "StatefulSet", NS, "net-bootstrap")["spec"]["replicas"] == 5
    assert _status(cluster)["error"]["type"] == "FieldConflict"


def test_shrink_prunes_only_removed_general_peers(cluster, controller):
    cluster.add_network("net", namespace=NS, replicas=5, bootstrapReplicas=2)
    _drive_to_steady(cluster, controller, bootstrap=2, general=3)
    bundles_before = set(cluster.names("ConfigMap", NS, component="peer-config"))

    cluster.update_spec(GROUP_VERSION, "Network", NS, "net", replicas=3)
    controller.reconcile(KEY)

    bundles_after = set(cluster.names("ConfigMap", NS, component="peer-config"))
    pruned = bundles_before - bundles_after
    assert pruned == {"net-general-1-config", "net-general-2-config"}
    assert not any("bootstrap" in name for name in pruned)
    assert cluster.find("apps/v1", "StatefulSet", NS, "net-general")["spec"]["replicas"] == 1
    assert cluster.find("apps/v1", "StatefulSet", NS, "net-bootstrap")["spec"]["replicas"] == 2


def test_shrink_to_bootstrap_only_removes_general_tier(cluster, controller):
    cluster.add_network("net", namespace=NS, replicas=3, bootstrapReplicas=1)
    _drive_to_steady(cluster, controller, bootstrap=1, general=2)

    cluster.update_spec(GROUP_VERSION, "Network", NS, "net", replicas=1)
    controller.reconcile(KEY)

    assert "net-general" not in cluster.names("StatefulSet", NS)
    assert "net-general" not in cluster.names("Service", NS)
    assert "net-bootstrap" in cluster.names("StatefulSet", NS)


def test_unready_bootstrap_peer_blocks_peering(cluster, controller, peer_client):
    cluster.add_network("net", namespace=NS, replicas=3, bootstrapReplicas=2, cas=False, chainRpc=False)
    controller.reconcile(KEY)
    cluster.add_pod("net-bootstrap-0", NS, {"app": PEER_APP, "tnet.io/owner-name": "net"})
    cluster.add_pod("net-bootstrap-1", NS, {"app": PEER_APP, "tnet.io/owner-name": "net"}, ready=False)
    cluster.add_pod("net-general-0", NS, {"app": PEER_APP, "tnet.io/owner-name": "net"})

    controller.reconcile(KEY)

    assert peer_client.calls == []
    assert "net-general" not in cluster.names("StatefulSet", NS)
    assert _status(cluster)["phase"] == TopologyPhase.PROVISIONING_BOOTSTRAP_PEERS.value


def test_unreachable_bootstrap_peer_raises_not_ready(cluster, config):
    stub = StubPeerClient(down={"net-bootstrap-0"})
    controller = TopologyController(cluster, config, peer_client=stub, coordinator=PeeringCoordinator(stub))
    cluster.add_network("net", namespace=NS, replicas=1, cas=False, chainRpc=False)
    controller.reconcile(KEY)
    _ready_pods(cluster, "bootstrap", 1)

    with pytest.raises(NotReady):
        controller.reconcile(KEY)

    status = _status(cluster)
    assert status["phase"] == TopologyPhase.PEERING_BOOTSTRAP.value
    assert "net-bootstrap-0" in status["message"]
    assert status.get("error") is None


def test_pending_peering_writes_status_once(cluster, config):
    stub = StubPeerClient(down={"net-bootstrap-0"})
    controller = TopologyController(cluster, config, peer_client=stub, coordinator=PeeringCoordinator(stub))
    cluster.add_network("net", namespace=NS, replicas=1, cas=False, chainRpc=False)
    controller.reconcile(KEY)
    _ready_pods(cluster, "bootstrap", 1)
    writes = len(cluster.writes)

    with pytest.raises(NotReady):
        controller.reconcile(KEY)

    status_writes = [w for w in cluster.writes[writes:] if w[0] == "status"]
    assert len(status_writes) == 1

    with pytest.raises(NotReady):
        controller.reconcile(KEY)
    assert [w for w in cluster.writes[writes:] if w[0] == "status"] == status_writes


def test_invalid_spec_creates_nothing(cluster, controller):
    cluster.add_network("net", namespace=NS, replicas=0)

    with pytest.raises(SpecInvalid):
        controller.reconcile(KEY)

    assert cluster.names("StatefulSet", NS) == []
    assert cluster.names("ConfigMap", NS) == []
    assert _status(cluster)["error"]["type"] == "SpecInvalid"


def test_vanished_network_is_a_no_op(cluster, controller):
    assert controller.reconcile(KEY) is None
    assert cluster.writes == []


def test_admin_secret_created_once(cluster, controller):
    cluster.add_network("net", namespace=NS, replicas=1)
    controller.reconcile(KEY)
    first = cluster.find("v1", "Secret", NS, "net-admin")["stringData"]["private-key"]
    controller.reconcile(KEY)
    assert cluster.find("v1", "Secret", NS, "net-admin")["stringData"]["private-key"] == first
    assert len(first) == 64


def test_admin_secret_copied_from_existing_secret(cluster, controller):
    cluster.put({
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": {"name": "my-key", "namespace": NS},
        "data": {"private-key": base64.b64encode(b"deadbeef").decode()},
    })
    cluster.add_network("net", namespace=NS, replicas=1, privateKeySecret="my-key")
    controller.reconcile(KEY)
    assert cluster.find("v1", "Secret", NS, "net-admin")["stringData"]["private-key"] == "deadbeef"


def test_expired_network_is_deleted(cluster, controller):
    cluster.add_network("net", namespace=NS, replicas=1, ttlSeconds=60)
    controller.reconcile(KEY)
    assert _status(cluster)["expirationTime"] is not None
    assert cluster.names("StatefulSet", NS)

    cluster.set_status(GROUP_VERSION, "Network", NS, "net", expirationTime=format_time(utcnow() - timedelta(days=1)))
    assert controller.reconcile(KEY) is None

    assert cluster.find(GROUP_VERSION, "Network", NS, "net") is None
    assert cluster.names("StatefulSet", NS) == []
