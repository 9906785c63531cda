from __future__ import annotations

import os
import logging
from typing import Optional

from flask import Flask

from tnet.api import create_app
from tnet.cluster import ClusterClient
from tnet.config import OperatorConfig, load_config
from tnet.peering import PeerClient
from tnet.scheduler import ReconcileScheduler
from tnet.simulation import SIMULATION_KIND, SimulationController
from tnet.topology import NETWORK_KIND, TopologyController

logger = logging.getLogger(__name__)


def configure_logging(level: Optional[str] = None) -> None:
	level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
	logging.basicConfig(
		level=getattr(logging, level, logging.INFO),
		format="%(asctime)s %(levelname)s %(name)s [%(threadName)s] %(message)s",
	)
	# The kubernetes client logs every request at DEBUG.
	logging.getLogger("kubernetes").setLevel(logging.WARNING)
	logging.getLogger("urllib3").setLevel(logging.WARNING)


def build_operator(config: OperatorConfig, cluster=None, peer_client: Optional[PeerClient] = None) -> ReconcileScheduler:
	"""Wire the controllers into a scheduler. Nothing is started."""
	cluster = cluster if cluster is not None else ClusterClient(config)
	topology = TopologyController(cluster, config, peer_client=peer_client)
	simulation = SimulationController(cluster, config)
	return ReconcileScheduler(
		cluster,
		config,
		handlers={
			NETWORK_KIND: topology.reconcile,
			SIMULATION_KIND: simulation.reconcile,
		},
	)


def build_app(config: Optional[OperatorConfig] = None, cluster=None) -> Flask:
	"""Build the health API around a fresh (not yet started) scheduler."""
	config = config or load_config()
	scheduler = build_operator(config, cluster=cluster)
	return create_app(scheduler)


def main() -> None:
	configure_logging()
	config = load_config()
	logger.info(
		f"Starting tnet operator: manager={config.field_manager} "
		f"namespace={config.watch_namespace or '*'} workers={config.workers}"
	)
	app = build_app(config)
	scheduler = app.config['scheduler']
	scheduler.start()
	try:
		# Single process: the work queue lives in memory.
		app.run(host="0.0.0.0", port=config.health_port)
	finally:
		scheduler.stop()


if __name__ == "__main__":
	main()
