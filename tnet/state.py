from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from tnet.errors import SpecInvalid

QUANTITY_RE = re.compile(r"^[0-9]+(\.[0-9]+)?(m|k|M|G|T|Ki|Mi|Gi|Ti)?$")


class TopologyPhase(str, Enum):
	CREATED = "Created"
	PROVISIONING_SUPPORT_SERVICES = "ProvisioningSupportServices"
	PROVISIONING_BOOTSTRAP_PEERS = "ProvisioningBootstrapPeers"
	PEERING_BOOTSTRAP = "PeeringBootstrap"
	PROVISIONING_GENERAL_PEERS = "ProvisioningGeneralPeers"
	PEERING_ALL = "PeeringAll"
	STEADY = "Steady"


class SimulationPhase(str, Enum):
	PENDING = "Pending"
	PROVISIONING_TELEMETRY = "ProvisioningTelemetry"
	STARTING_MANAGER = "StartingManager"
	STARTING_WORKERS = "StartingWorkers"
	RUNNING = "Running"
	COMPLETED = "Completed"
	FAILED = "Failed"

	@property
	def terminal(self) -> bool:
		return self in (SimulationPhase.COMPLETED, SimulationPhase.FAILED)


class Scenario(Enum):
	"""Closed set of load scenarios the runner image understands."""

	PEER_RPC = "peer-rpc"
	LOG_SIMPLE = "log-simple"
	LOG_WRITE_ONLY = "log-write-only"
	LOG_NEW_STREAMS = "log-new-streams"
	LOG_QUERY = "log-query"

	@property
	def needs_anchor(self) -> bool:
		# Scenarios that write streams exercise the anchor service.
		return self in (Scenario.LOG_SIMPLE, Scenario.LOG_WRITE_ONLY, Scenario.LOG_NEW_STREAMS)

	@classmethod
	def parse(cls, value: Any) -> "Scenario":
		try:
			return cls(value)
		except ValueError:
			allowed = ", ".join(s.value for s in cls)
			raise SpecInvalid(f"unknown scenario {value!r}; expected one of: {allowed}") from None


# ----------------------------------------------------------------------
# Time helpers (status fields are RFC3339 strings)
# ----------------------------------------------------------------------
def utcnow() -> datetime:
	return datetime.now(timezone.utc)


def format_time(ts: datetime) -> str:
	return ts.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_time(value: Optional[str]) -> Optional[datetime]:
	if not value:
		return None
	return datetime.strptime(value, "%Y-%m-%dT%H:%M:%SZ").replace(tzinfo=timezone.utc)


# ----------------------------------------------------------------------
# Identity
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class ResourceKey:
	"""Work-queue key: one per parent resource."""

	kind: str
	namespace: str
	name: str

	def __str__(self) -> str:
		return f"{self.kind}/{self.namespace}/{self.name}"


@dataclass(frozen=True)
class Owner:
	"""Back-reference data for children of a parent resource."""

	api_version: str
	kind: str
	name: str
	namespace: str
	uid: str

	@classmethod
	def from_object(cls, obj: Dict[str, Any]) -> "Owner":
		meta = obj.get("metadata", {})
		return cls(
			api_version=obj["apiVersion"],
			kind=obj["kind"],
			name=meta["name"],
			namespace=meta.get("namespace", ""),
			uid=meta.get("uid", ""),
		)

	@property
	def key(self) -> ResourceKey:
		return ResourceKey(self.kind, self.namespace, self.name)


# ----------------------------------------------------------------------
# Declared specs
# ----------------------------------------------------------------------
@dataclass
class ResourceLimits:
	cpu: str = "1"
	memory: str = "1Gi"
	storage: str = "2Gi"

	@classmethod
	def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ResourceLimits":
		limits = cls()
		for name in ("cpu", "memory", "storage"):
			if data and data.get(name) is not None:
				value = str(data[name])
				if not QUANTITY_RE.match(value):
					raise SpecInvalid(f"resourceLimits.{name}: invalid quantity {value!r}")
				setattr(limits, name, value)
		return limits


def _positive_int(data: Dict[str, Any], key: str, default: Optional[int] = None) -> int:
	value = data.get(key, default)
	if value is None:
		raise SpecInvalid(f"{key} is required")
	if isinstance(value, bool) or not isinstance(value, int):
		raise SpecInvalid(f"{key} must be an integer, got {value!r}")
	if value < 1:
		raise SpecInvalid(f"{key} must be >= 1, got {value}")
	return value


@dataclass
class NetworkSpec:
	replicas: int
	bootstrap_replicas: int = 1
	resource_limits: ResourceLimits = field(default_factory=ResourceLimits)
	peer_image: Optional[str] = None
	cas_image: Optional[str] = None
	chain_rpc_image: Optional[str] = None
	image_pull_policy: Optional[str] = None
	cas: bool = True
	chain_rpc: bool = True
	private: bool = False
	private_key_secret: Optional[str] = None
	ttl_seconds: Optional[int] = None
	log_level: str = "info"
	network_type: str = "local"
	pubsub_topic: Optional[str] = None
	cas_api_url: Optional[str] = None
	eth_rpc_url: Optional[str] = None

	@property
	def bootstrap_count(self) -> int:
		return min(self.bootstrap_replicas, self.replicas)

	@property
	def general_count(self) -> int:
		return self.replicas - self.bootstrap_count

	@classmethod
	def from_dict(cls, data: Optional[Dict[str, Any]]) -> "NetworkSpec":
		"""Parse a Network ``spec`` block, raising SpecInvalid on bad input."""
		data = data or {}
		ttl = data.get("ttlSeconds")
		if ttl is not None and (isinstance(ttl, bool) or not isinstance(ttl, int) or ttl < 1):
			raise SpecInvalid(f"ttlSeconds must be a positive integer, got {ttl!r}")
		pull = data.get("imagePullPolicy")
		if pull is not None and pull not in ("Always", "IfNotPresent", "Never"):
			raise SpecInvalid(f"imagePullPolicy: invalid value {pull!r}")
		return cls(
			replicas=_positive_int(data, "replicas"),
			bootstrap_replicas=_positive_int(data, "bootstrapReplicas", 1),
			resource_limits=ResourceLimits.from_dict(data.get("resourceLimits")),
			peer_image=data.get("peerImage"),
			cas_image=data.get("casImage"),
			chain_rpc_image=data.get("chainRpcImage"),
			image_pull_policy=pull,
			cas=bool(data.get("cas", True)),
			chain_rpc=bool(data.get("chainRpc", True)),
			private=bool(data.get("private", False)),
			private_key_secret=data.get("privateKeySecret"),
			ttl_seconds=ttl,
			log_level=str(data.get("logLevel", "info")),
			network_type=str(data.get("networkType") or "local"),
			pubsub_topic=data.get("pubsubTopic"),
			cas_api_url=data.get("casApiUrl"),
			eth_rpc_url=data.get("ethRpcUrl"),
		)


@dataclass
class SimulationSpec:
	scenario: Scenario
	users: int
	run_time: int  # minutes
	network: Optional[str] = None  # target namespace
	network_name: Optional[str] = None
	image: Optional[str] = None
	image_pull_policy: Optional[str] = None
	throttle_requests: Optional[int] = None

	@classmethod
	def from_dict(cls, data: Optional[Dict[str, Any]], max_workers: int) -> "SimulationSpec":
		"""Parse a Simulation ``spec`` block; rejects oversized user counts."""
		data = data or {}
		if "scenario" not in data:
			raise SpecInvalid("scenario is required")
		scenario = Scenario.parse(data["scenario"])
		users = _positive_int(data, "users")
		if users > max_workers:
			raise SpecInvalid(f"users={users} exceeds the maximum worker batch of {max_workers}")
		throttle = data.get("throttleRequests")
		if throttle is not None:
			throttle = _positive_int(data, "throttleRequests")
		return cls(
			scenario=scenario,
			users=users,
			run_time=_positive_int(data, "runTime"),
			network=data.get("network"),
			network_name=data.get("networkName"),
			image=data.get("image"),
			image_pull_policy=data.get("imagePullPolicy"),
			throttle_requests=throttle,
		)


# ----------------------------------------------------------------------
# Derived runtime state
# ----------------------------------------------------------------------
BOOTSTRAP_TIER = "bootstrap"
GENERAL_TIER = "general"


@dataclass
class PeerRuntimeState:
	"""Observed state of one peer pod. Recomputed every pass."""

	name: str
	tier: str
	ordinal: int
	ready: bool
	rpc_addr: str
	api_addr: str

	@property
	def bootstrap(self) -> bool:
		return self.tier == BOOTSTRAP_TIER


@dataclass
class PeerInfo:
	name: str
	tier: str
	peer_id: str
	rpc_addr: str
	api_addr: str
	addresses: List[str] = field(default_factory=list)

	def to_dict(self) -> Dict[str, Any]:
		return {
			"name": self.name,
			"tier": self.tier,
			"peerId": self.peer_id,
			"rpcAddr": self.rpc_addr,
			"apiAddr": self.api_addr,
			"addresses": sorted(self.addresses),
		}

	@classmethod
	def from_dict(cls, data: Dict[str, Any]) -> "PeerInfo":
		return cls(
			name=data["name"],
			tier=data["tier"],
			peer_id=data["peerId"],
			rpc_addr=data.get("rpcAddr", ""),
			api_addr=data.get("apiAddr", ""),
			addresses=list(data.get("addresses", [])),
		)


class PeerAddressTable:
	"""Peer identity -> advertised addresses, rebuilt wholesale each coordination pass."""

	def __init__(self, peers: Iterable[PeerInfo] = ()) -> None:
		self._peers: Dict[str, PeerInfo] = {}
		for peer in peers:
			self.add(peer)

	def add(self, peer: PeerInfo) -> None:
		self._peers[peer.peer_id] = peer

	def __len__(self) -> int:
		return len(self._peers)

	def __contains__(self, peer_id: object) -> bool:
		return peer_id in self._peers

	def __eq__(self, other: object) -> bool:
		if not isinstance(other, PeerAddressTable):
			return NotImplemented
		return self.to_json() == other.to_json()

	def peers(self) -> List[PeerInfo]:
		return sorted(self._peers.values(), key=lambda p: p.name)

	def names(self) -> set:
		return {p.name for p in self._peers.values()}

	def to_json(self) -> str:
		# Sorted so an unchanged table always serializes identically.
		return json.dumps([p.to_dict() for p in self.peers()], sort_keys=True, indent=2)

	@classmethod
	def from_json(cls, raw: Optional[str]) -> "PeerAddressTable":
		if not raw:
			return cls()
		return cls(PeerInfo.from_dict(item) for item in json.loads(raw))


# ----------------------------------------------------------------------
# Statuses
# ----------------------------------------------------------------------
@dataclass
class NetworkStatus:
	phase: TopologyPhase = TopologyPhase.CREATED
	replicas: int = 0
	ready_replicas: int = 0
	peers: List[Dict[str, Any]] = field(default_factory=list)
	expiration_time: Optional[str] = None
	message: Optional[str] = None
	observed_generation: Optional[int] = None
	error: Optional[Dict[str, str]] = None

	def to_dict(self) -> Dict[str, Any]:
		return {
			"phase": self.phase.value,
			"replicas": self.replicas,
			"readyReplicas": self.ready_replicas,
			"peers": self.peers,
			"expirationTime": self.expiration_time,
			"message": self.message,
			"observedGeneration": self.observed_generation,
			"error": self.error,
		}


@dataclass
class SimulationStatus:
	phase: SimulationPhase = SimulationPhase.PENDING
	nonce: Optional[int] = None
	pending_since: Optional[str] = None
	phase_since: Optional[str] = None
	running_since: Optional[str] = None
	completed_at: Optional[str] = None
	workers: int = 0
	ready_workers: int = 0
	message: Optional[str] = None
	error: Optional[Dict[str, str]] = None

	def to_dict(self) -> Dict[str, Any]:
		return {
			"phase": self.phase.value,
			"nonce": self.nonce,
			"pendingSince": self.pending_since,
			"phaseSince": self.phase_since,
			"runningSince": self.running_since,
			"completedAt": self.completed_at,
			"workers": self.workers,
			"readyWorkers": self.ready_workers,
			"message": self.message,
			"error": self.error,
		}

	@classmethod
	def from_dict(cls, data: Optional[Dict[str, Any]]) -> "SimulationStatus":
		data = data or {}
		return cls(
			phase=SimulationPhase(data.get("phase") or SimulationPhase.PENDING.value),
			nonce=data.get("nonce"),
			pending_since=data.get("pendingSince"),
			phase_since=data.get("phaseSince"),
			running_since=data.get("runningSince"),
			completed_at=data.get("completedAt"),
			workers=int(data.get("workers") or 0),
			ready_workers=int(data.get("readyWorkers") or 0),
			message=data.get("message"),
			error=data.get("error"),
		)
