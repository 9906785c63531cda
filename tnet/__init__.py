"""
Controller for peer-to-peer test networks and load simulations.

Modules:
	state       resource specs, statuses, phases and the peer address table
	errors      reconcile error taxonomy
	config      operator configuration
	cluster     Kubernetes dynamic client wrapper
	applier     server-side apply convergence and pruning
	manifests   pure child manifest generation
	peering     peer identity discovery
	topology    Network controller
	simulation  Simulation controller
	scheduler   work queue, watches and workers
	api         health and status endpoints
"""

__version__ = "0.1.0"
