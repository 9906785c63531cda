"""Reconcile scheduler: coalescing work queue, backoff, watches and workers."""

from __future__ import annotations

import heapq
import itertools
import logging
import random
import threading
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Set, Tuple

from tnet.config import OperatorConfig
from tnet.errors import NotReady, OwnerGone, ReconcileError, TransientUnavailable
from tnet.manifests.common import CHILD_KINDS, MANAGED_BY, MANAGED_BY_LABEL, OWNER_KIND_LABEL, OWNER_NAME_LABEL
from tnet.state import ResourceKey, format_time, utcnow

logger = logging.getLogger(__name__)

Handler = Callable[[ResourceKey], Optional[float]]


class WorkQueue:
	"""
	Work queue with per-key coalescing.

	A key is queued at most once. A key being processed is never handed
	to a second worker; if it is re-added meanwhile it is queued again
	when the first worker calls done(), so the next pass reads the
	latest state. Delayed adds sit in a heap until due and are promoted
	by whichever worker is waiting in get().
	"""

	def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
		self._clock = clock
		self._cond = threading.Condition()
		self._queue: Deque[ResourceKey] = deque()
		self._dirty: Set[ResourceKey] = set()
		self._processing: Set[ResourceKey] = set()
		self._delayed: List[Tuple[float, int, ResourceKey]] = []
		self._seq = itertools.count()
		self._shutdown = False

	def __len__(self) -> int:
		with self._cond:
			return len(self._queue)

	@property
	def in_flight(self) -> List[ResourceKey]:
		with self._cond:
			return sorted(self._processing, key=str)

	@property
	def waiting(self) -> int:
		with self._cond:
			return len(self._delayed)

	def add(self, key: ResourceKey) -> None:
		with self._cond:
			self._add_locked(key)

	def _add_locked(self, key: ResourceKey) -> None:
		if self._shutdown or key in self._dirty:
			return
		self._dirty.add(key)
		if key in self._processing:
			return
		self._queue.append(key)
		self._cond.notify()

	def add_after(self, key: ResourceKey, delay_s: float) -> None:
		if delay_s <= 0:
			self.add(key)
			return
		with self._cond:
			if self._shutdown:
				return
			heapq.heappush(self._delayed, (self._clock() + delay_s, next(self._seq), key))
			self._cond.notify()

	def _promote_due_locked(self) -> Optional[float]:
		"""Move due delayed keys onto the queue; return seconds until the next one."""
		now = self._clock()
		while self._delayed and self._delayed[0][0] <= now:
			_, _, key = heapq.heappop(self._delayed)
			self._add_locked(key)
		if self._delayed:
			return max(0.0, self._delayed[0][0] - now)
		return None

	def get(self, timeout: Optional[float] = None) -> Optional[ResourceKey]:
		"""
		Block until a key is available.

		Returns:
			The key, now marked in flight, or None on timeout or shutdown
		"""
		deadline = None if timeout is None else self._clock() + timeout
		with self._cond:
			while True:
				next_due = self._promote_due_locked()
				if self._queue:
					key = self._queue.popleft()
					self._processing.add(key)
					self._dirty.discard(key)
					return key
				if self._shutdown:
					return None
				wait = next_due
				if deadline is not None:
					remaining = deadline - self._clock()
					if remaining <= 0:
						return None
					wait = remaining if wait is None else min(wait, remaining)
				self._cond.wait(wait)

	def done(self, key: ResourceKey) -> None:
		with self._cond:
			self._processing.discard(key)
			if key in self._dirty:
				self._queue.append(key)
				self._cond.notify()

	def shutdown(self) -> None:
		with self._cond:
			self._shutdown = True
			self._cond.notify_all()

	def reopen(self) -> None:
		"""Accept work again after shutdown()."""
		with self._cond:
			self._shutdown = False


class BackoffLimiter:
	"""Per-key exponential backoff with full jitter: uniform(0, min(base * 2^n, max))."""

	def __init__(self, base_s: float, max_s: float, rng: Callable[[], float] = random.random) -> None:
		self.base_s = base_s
		self.max_s = max_s
		self._rng = rng
		self._failures: Dict[ResourceKey, int] = {}
		self._lock = threading.Lock()

	def when(self, key: ResourceKey) -> float:
		with self._lock:
			n = self._failures.get(key, 0)
			self._failures[key] = n + 1
		cap = min(self.base_s * (2 ** n), self.max_s)
		return cap * self._rng()

	def failures(self, key: ResourceKey) -> int:
		with self._lock:
			return self._failures.get(key, 0)

	def forget(self, key: ResourceKey) -> None:
		with self._lock:
			self._failures.pop(key, None)


class ReconcileScheduler:
	"""
	Drives reconciles for the parent kinds.

	Watch threads turn parent and child events into parent keys, a
	resync thread periodically enqueues every parent, and a pool of
	worker threads drains the queue. The queue guarantees at most one
	reconcile per key in flight while distinct keys run in parallel.
	"""

	def __init__(
		self,
		cluster,
		config: OperatorConfig,
		handlers: Dict[str, Handler],
		queue: Optional[WorkQueue] = None,
		limiter: Optional[BackoffLimiter] = None,
	) -> None:
		"""
		Args:
			cluster: ClusterClient used for watches and resync lists
			config: Operator config (workers, backoff, resync interval)
			handlers: Parent kind -> reconcile function
			queue: Work queue (a fresh one if None)
			limiter: Backoff limiter (built from config if None)
		"""
		self.cluster = cluster
		self.config = config
		self.handlers = handlers
		self.api_version = f"{config.group}/{config.version}"
		self.namespace = config.watch_namespace or None
		self.queue = queue or WorkQueue()
		self.limiter = limiter or BackoffLimiter(config.backoff_base_s, config.backoff_max_s)

		self._running = False
		self._stop_event = threading.Event()
		self._threads: List[threading.Thread] = []
		self._watches_expected = 0
		self._watches_started: Set[str] = set()
		self._outcomes: Dict[str, Dict[str, Any]] = {}
		self._lock = threading.Lock()

	# ------------------------------------------------------------------
	# Lifecycle
	# ------------------------------------------------------------------
	def start(self) -> None:
		"""Start watch, resync and worker threads."""
		if self._running:
			logger.warning("ReconcileScheduler already running")
			return
		self._running = True
		self._stop_event.clear()
		self.queue.reopen()
		with self._lock:
			self._watches_started.clear()

		watches = [(self.api_version, kind) for kind in self.handlers]
		watches += CHILD_KINDS + [("v1", "Pod")]
		self._watches_expected = len(watches)
		for api_version, kind in watches:
			self._spawn(f"watch-{kind.lower()}", self._watch_loop, api_version, kind)
		self._spawn("resync", self._resync_loop)
		for i in range(self.config.workers):
			self._spawn(f"reconcile-{i}", self._worker_loop)
		logger.info(f"ReconcileScheduler started: {self.config.workers} workers, {len(watches)} watches")

	def stop(self) -> None:
		if not self._running:
			return
		self._running = False
		self._stop_event.set()
		self.queue.shutdown()
		for thread in self._threads:
			thread.join(timeout=5.0)
		self._threads.clear()
		logger.info("ReconcileScheduler stopped")

	def _spawn(self, name: str, target: Callable, *args: Any) -> None:
		thread = threading.Thread(target=target, args=args, name=name, daemon=True)
		thread.start()
		self._threads.append(thread)

	@property
	def ready(self) -> bool:
		with self._lock:
			return self._running and len(self._watches_started) >= self._watches_expected

	def snapshot(self) -> Dict[str, Any]:
		"""Queue and outcome summary for the status endpoint."""
		with self._lock:
			outcomes = {k: dict(v) for k, v in self._outcomes.items()}
		return {
			"running": self._running,
			"queueDepth": len(self.queue),
			"delayed": self.queue.waiting,
			"inFlight": [str(k) for k in self.queue.in_flight],
			"outcomes": outcomes,
		}

	# ------------------------------------------------------------------
	# Event sources
	# ------------------------------------------------------------------
	def enqueue(self, kind: str, namespace: str, name: str) -> None:
		if kind not in self.handlers:
			return
		self.queue.add(ResourceKey(kind, namespace, name))

	def key_for(self, api_version: str, kind: str, obj: Dict[str, Any]) -> Optional[ResourceKey]:
		"""Map a watched object to the parent key it belongs to."""
		meta = obj.get("metadata") or {}
		if api_version == self.api_version and kind in self.handlers:
			return ResourceKey(kind, meta.get("namespace", ""), meta["name"])
		labels = meta.get("labels") or {}
		owner_kind = labels.get(OWNER_KIND_LABEL)
		owner_name = labels.get(OWNER_NAME_LABEL)
		if owner_kind in self.handlers and owner_name:
			return ResourceKey(owner_kind, meta.get("namespace", ""), owner_name)
		return None

	def observe(self, event_type: str, api_version: str, kind: str, obj: Dict[str, Any]) -> None:
		"""Route one watch event to the parent key it concerns."""
		key = self.key_for(api_version, kind, obj)
		if key is None:
			return
		if event_type == "DELETED" and api_version == self.api_version:
			# Children go with the parent; nothing left to reconcile.
			self.forget(key)
			return
		logger.debug(f"{event_type} {kind} -> {key}")
		self.queue.add(key)

	def forget(self, key: ResourceKey) -> None:
		"""Drop backoff and outcome bookkeeping for a parent that no longer exists."""
		self.limiter.forget(key)
		with self._lock:
			self._outcomes.pop(str(key), None)

	def _watch_loop(self, api_version: str, kind: str) -> None:
		selector = None if kind in self.handlers else f"{MANAGED_BY_LABEL}={MANAGED_BY}"
		failures = 0
		while not self._stop_event.is_set():
			try:
				with self._lock:
					self._watches_started.add(f"{api_version}/{kind}")
				for event_type, obj in self.cluster.watch(api_version, kind, self.namespace, selector):
					self.observe(event_type, api_version, kind, obj)
					if self._stop_event.is_set():
						return
				failures = 0
			except Exception as e:
				failures += 1
				delay = min(self.config.backoff_base_s * (2 ** failures), self.config.backoff_max_s)
				logger.warning(f"Watch on {kind} failed ({e}); restarting in {delay:.1f}s")
				self._stop_event.wait(delay)

	def _resync_loop(self) -> None:
		while not self._stop_event.is_set():
			self.resync()
			self._stop_event.wait(self.config.resync_s)

	def resync(self) -> int:
		"""Enqueue every known parent. Returns the number enqueued."""
		count = 0
		for kind in self.handlers:
			try:
				items = self.cluster.list(self.api_version, kind, self.namespace)
			except ReconcileError as e:
				logger.warning(f"Resync list of {kind} failed: {e.message}")
				continue
			seen = set()
			for obj in items:
				meta = obj["metadata"]
				key = ResourceKey(kind, meta.get("namespace", ""), meta["name"])
				seen.add(str(key))
				self.queue.add(key)
				count += 1
			prefix = f"{kind}/"
			with self._lock:
				for stale in [k for k in self._outcomes if k.startswith(prefix) and k not in seen]:
					del self._outcomes[stale]
		logger.debug(f"Resync enqueued {count} resources")
		return count

	# ------------------------------------------------------------------
	# Workers
	# ------------------------------------------------------------------
	def _worker_loop(self) -> None:
		while not self._stop_event.is_set():
			self.process_next(timeout=1.0)

	def process_next(self, timeout: Optional[float] = None) -> bool:
		"""Run one reconcile if a key is available. Returns False on timeout."""
		key = self.queue.get(timeout=timeout)
		if key is None:
			return False
		try:
			self._handle(key)
		finally:
			self.queue.done(key)
		return True

	def _record(self, key: ResourceKey, result: str, error: Optional[str] = None) -> None:
		with self._lock:
			self._outcomes[str(key)] = {"result": result, "error": error, "at": format_time(utcnow())}

	def _handle(self, key: ResourceKey) -> None:
		handler = self.handlers[key.kind]
		try:
			requeue_after = handler(key)
		except NotReady as e:
			delay = e.requeue_after if e.requeue_after is not None else self.limiter.when(key)
			logger.debug(f"{key} not ready: {e.message}; retry in {delay:.1f}s")
			self._record(key, "NotReady", e.message)
			self.queue.add_after(key, delay)
		except TransientUnavailable as e:
			delay = self.limiter.when(key)
			logger.warning(f"{key} transient failure: {e.message}; retry in {delay:.1f}s")
			self._record(key, "TransientUnavailable", e.message)
			self.queue.add_after(key, delay)
		except OwnerGone as e:
			logger.info(f"{key} disappeared mid-reconcile: {e.message}")
			self.forget(key)
		except ReconcileError as e:
			logger.error(f"{key} {e.reason}: {e.message}")
			self._record(key, e.reason, e.message)
			if e.requeue:
				self.queue.add_after(key, self.limiter.when(key))
			else:
				# Waits for the next spec change, child event or resync.
				self.limiter.forget(key)
		except Exception as e:
			logger.exception(f"{key} reconcile crashed: {e}")
			self._record(key, "Error", str(e))
			self.queue.add_after(key, self.limiter.when(key))
		else:
			self.limiter.forget(key)
			self._record(key, "Ok")
			if requeue_after is not None:
				self.queue.add_after(key, requeue_after)
