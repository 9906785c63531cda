"""Pure manifest generation for Network and Simulation children."""

from tnet.manifests.common import Manifest
from tnet.manifests.network import NetworkManifests, generate_network
from tnet.manifests.simulation import SimulationManifests, generate_simulation

__all__ = ['Manifest', 'NetworkManifests', 'SimulationManifests', 'generate_network', 'generate_simulation']
