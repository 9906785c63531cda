import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

import pytest

from tnet.config import OperatorConfig
from tnet.state import Owner

from fakes import FakeClock, FakeCluster, StubPeerClient


@pytest.fixture
def config():
    return OperatorConfig(requeue_s=5.0, steady_requeue_s=30.0, network_wait_timeout_s=600.0, max_workers=20)


@pytest.fixture
def cluster():
    return FakeCluster()


@pytest.fixture
def peer_client():
    return StubPeerClient()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def net_owner():
    return Owner(api_version="tnet.io/v1alpha1", kind="Network", name="net", namespace="load", uid="uid-net")


@pytest.fixture
def sim_owner():
    return Owner(api_version="tnet.io/v1alpha1", kind="Simulation", name="sim", namespace="load", uid="uid-sim")
