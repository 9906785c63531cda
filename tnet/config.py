"""Operator configuration: constants with YAML file and environment overrides."""

from __future__ import annotations

import os
import logging
from dataclasses import dataclass, fields, replace
from typing import Any, Dict, Mapping, Optional

import yaml

logger = logging.getLogger(__name__)

ENV_PREFIX = "TNET_"


@dataclass(frozen=True)
class OperatorConfig:
	"""
	Tunables for the controller process.

	Resource requests/limits of generated workloads are not configured
	here; they are per-component constants in tnet.manifests.
	"""

	field_manager: str = "tnet-operator"
	group: str = "tnet.io"
	version: str = "v1alpha1"
	watch_namespace: str = ""  # empty = all namespaces

	# Scheduler
	workers: int = 4
	backoff_base_s: float = 1.0
	backoff_max_s: float = 300.0
	requeue_s: float = 10.0
	steady_requeue_s: float = 60.0
	resync_s: float = 300.0

	# External calls
	api_timeout_s: float = 10.0
	api_attempts: int = 3
	peer_timeout_s: float = 5.0
	peer_attempts: int = 4
	peer_backoff_max_s: float = 4.0

	# Simulation
	network_wait_timeout_s: float = 1800.0
	start_timeout_s: float = 900.0  # StartingManager and StartingWorkers each
	max_workers: int = 100
	telemetry_mode: str = "managed"  # managed | external
	telemetry_endpoint: str = "http://otel-collector.monitoring:4317"  # used when external

	# Images
	peer_image: str = "tnet/peer:latest"
	cas_image: str = "tnet/cas:latest"
	chain_rpc_image: str = "trufflesuite/ganache:v7.9.1"
	runner_image: str = "tnet/runner:latest"
	otel_image: str = "otel/opentelemetry-collector-contrib:0.104.0"
	image_pull_policy: str = "IfNotPresent"

	# Storage
	storage_class: str = "standard"
	storage_size: str = "10Gi"

	# Health API
	health_port: int = 8080

	def __post_init__(self) -> None:
		if self.telemetry_mode not in ("managed", "external"):
			raise ValueError(f"telemetry_mode must be 'managed' or 'external', got {self.telemetry_mode!r}")
		if self.workers < 1:
			raise ValueError("workers must be >= 1")
		if self.max_workers < 1:
			raise ValueError("max_workers must be >= 1")


def _coerce(value: Any, default: Any) -> Any:
	"""Coerce a YAML/env value to the type of the field default."""
	if isinstance(default, bool):
		if isinstance(value, str):
			return value.strip().lower() in ("1", "true", "yes", "on")
		return bool(value)
	if isinstance(default, int):
		return int(value)
	if isinstance(default, float):
		return float(value)
	return str(value)


def load_config(path: Optional[str] = None, env: Optional[Mapping[str, str]] = None) -> OperatorConfig:
	"""
	Build the operator config.

	Precedence (lowest to highest): dataclass defaults, YAML file at
	``path`` (or ``$TNET_CONFIG``), ``TNET_<FIELD>`` environment variables.
	"""
	env = os.environ if env is None else env
	base = OperatorConfig()
	overrides: Dict[str, Any] = {}
	known = {f.name: getattr(base, f.name) for f in fields(OperatorConfig)}

	path = path or env.get(f"{ENV_PREFIX}CONFIG")
	if path:
		with open(path, "r") as f:
			data = yaml.safe_load(f) or {}
		if not isinstance(data, dict):
			raise ValueError(f"config file {path} must contain a mapping")
		for key, value in data.items():
			if key not in known:
				logger.warning(f"Ignoring unknown config key '{key}' in {path}")
				continue
			overrides[key] = _coerce(value, known[key])
		logger.info(f"Loaded operator config from {path}: {len(overrides)} overrides")

	for name, default in known.items():
		raw = env.get(f"{ENV_PREFIX}{name.upper()}")
		if raw is not None:
			overrides[name] = _coerce(raw, default)

	return replace(base, **overrides)
