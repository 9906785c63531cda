"""Peer identity discovery and the shared peer address table."""

from __future__ import annotations

import ipaddress
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Iterable, List, Optional

import requests
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_random_exponential

from tnet.config import OperatorConfig
from tnet.errors import NotReady, TransientUnavailable
from tnet.state import PeerAddressTable, PeerInfo, PeerRuntimeState

logger = logging.getLogger(__name__)

ID_PATH = "/api/v0/id"


def _non_loopback_ip4(addr: str) -> bool:
    parts = addr.split("/")
    for i, proto in enumerate(parts[:-1]):
        if proto == "ip4":
            try:
                return not ipaddress.IPv4Address(parts[i + 1]).is_loopback
            except ValueError:
                return False
    return False


def p2p_addresses(peer_id: str, addresses: Iterable[str]) -> List[str]:
    """Keep non-loopback ip4 multiaddrs and suffix each with the peer id."""
    out = []
    for addr in addresses:
        if not _non_loopback_ip4(addr):
            continue
        if "/p2p/" not in addr:
            addr = f"{addr}/p2p/{peer_id}"
        out.append(addr)
    return sorted(set(out))


class PeerClient:
    """HTTP client for a peer's control endpoint."""

    def __init__(self, config: OperatorConfig, session: Optional[requests.Session] = None) -> None:
        self.config = config
        self.session = session or requests.Session()
        self._retrying = Retrying(
            stop=stop_after_attempt(config.peer_attempts),
            wait=wait_random_exponential(multiplier=0.25, max=config.peer_backoff_max_s),
            retry=retry_if_exception_type(TransientUnavailable),
            reraise=True,
        )

    def _post(self, url: str) -> dict:
        try:
            resp = self.session.post(url, timeout=self.config.peer_timeout_s)
            resp.raise_for_status()
            return resp.json()
        except (requests.RequestException, ValueError) as e:
            raise TransientUnavailable(f"peer endpoint {url} failed: {e}") from e

    def identity(self, peer: PeerRuntimeState) -> PeerInfo:
        """
        Fetch a peer's self-reported identity and swarm addresses.

        Retried with bounded jittered backoff; raises TransientUnavailable
        once the budget is spent.
        """

        def attempt() -> PeerInfo:
            data = self._post(f"{peer.rpc_addr}{ID_PATH}")
            peer_id = data.get("ID")
            if not peer_id:
                raise TransientUnavailable(f"peer {peer.name} returned no ID")
            addrs = p2p_addresses(peer_id, data.get("Addresses") or [])
            if not addrs:
                raise TransientUnavailable(f"peer {peer.name} has no non-loopback addresses")
            return PeerInfo(
                name=peer.name,
                tier=peer.tier,
                peer_id=peer_id,
                rpc_addr=peer.rpc_addr,
                api_addr=peer.api_addr,
                addresses=addrs,
            )

        return self._retrying.copy()(attempt)


class PeeringCoordinator:
    """
    Builds the peer address table from the observed peers.

    Bootstrap peers are required: if any is unready or unreachable the
    pass yields NotReady and no table. General peers are best effort and
    are simply left out until a later pass reaches them.
    """

    def __init__(self, peer_client: PeerClient, max_parallel: int = 8) -> None:
        self.peer_client = peer_client
        self.max_parallel = max_parallel

    def _fetch(self, peer: PeerRuntimeState) -> Optional[PeerInfo]:
        try:
            return self.peer_client.identity(peer)
        except TransientUnavailable as e:
            logger.warning(f"Peer {peer.name} identity unavailable: {e.message}")
            return None

    def coordinate(self, peers: List[PeerRuntimeState]) -> PeerAddressTable:
        """
        Args:
            peers: Observed peers of one network, both tiers

        Returns:
            Table with every bootstrap peer and each reachable ready general peer

        Raises:
            NotReady: a bootstrap peer is unready or did not report
        """
        bootstrap = [p for p in peers if p.bootstrap]
        unready = sorted(p.name for p in bootstrap if not p.ready)
        if not bootstrap:
            raise NotReady("no bootstrap peers observed")
        if unready:
            raise NotReady(f"bootstrap peers not ready: {', '.join(unready)}")

        candidates = [p for p in peers if p.ready]
        workers = max(1, min(self.max_parallel, len(candidates)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="peer-id") as pool:
            results = list(pool.map(self._fetch, candidates))

        missing = sorted(p.name for p, info in zip(candidates, results) if info is None and p.bootstrap)
        if missing:
            raise NotReady(f"bootstrap peers did not report identity: {', '.join(missing)}")

        table = PeerAddressTable(info for info in results if info is not None)
        logger.debug(f"Peer table built: {len(table)} of {len(peers)} peers")
        return table
