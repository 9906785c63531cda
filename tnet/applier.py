"""Field-owned convergence and pruning of child objects."""

from __future__ import annotations

import logging
from collections import Counter
from enum import Enum
from typing import Any, Dict, Iterable, Optional

from tnet.errors import NotReady, OwnerGone
from tnet.manifests.common import CHILD_KINDS, Manifest, owner_selector
from tnet.state import Owner

logger = logging.getLogger(__name__)


class ApplyResult(str, Enum):
    CREATED = "created"
    CONFIGURED = "configured"
    UNCHANGED = "unchanged"


def is_subset(desired: Any, live: Any) -> bool:
    """
    True if every field in ``desired`` is present in ``live`` with the same value.

    Fields the server defaulted or another manager set are ignored, so a
    live object that already carries our desired fields needs no write.
    """
    if isinstance(desired, dict):
        if not isinstance(live, dict):
            return False
        return all(k in live and is_subset(v, live[k]) for k, v in desired.items())
    if isinstance(desired, list):
        if not isinstance(live, list) or len(desired) != len(live):
            return False
        return all(is_subset(d, l) for d, l in zip(desired, live))
    return desired == live


def status_changed(new: Dict[str, Any], live: Optional[Dict[str, Any]]) -> bool:
    """Compare two status blocks, treating absent and null fields alike."""
    live = live or {}
    a = {k: v for k, v in new.items() if v is not None}
    b = {k: v for k, v in live.items() if v is not None and k in new}
    return a != b


def _controller_uid(obj: Dict[str, Any]) -> Optional[str]:
    for ref in obj.get("metadata", {}).get("ownerReferences") or []:
        if ref.get("controller"):
            return ref.get("uid")
    return None


def _owned_by(obj: Dict[str, Any], owner: Owner) -> bool:
    return _controller_uid(obj) == owner.uid


class ResourceApplier:
    """
    Converges desired manifests using server-side apply under one field manager.

    The applier only asserts the fields present in a manifest. Fields set
    by other managers are left alone, and a conflict on a field we must
    set surfaces as FieldConflict from the cluster client.
    """

    def __init__(self, cluster, field_manager: str) -> None:
        """
        Args:
            cluster: ClusterClient (or a compatible fake)
            field_manager: Stable field-owner identity for every write
        """
        self.cluster = cluster
        self.field_manager = field_manager

    def ensure_owner(self, owner: Owner) -> None:
        """Raise OwnerGone unless the parent still exists with the same uid."""
        live = self.cluster.get(owner.api_version, owner.kind, owner.namespace, owner.name)
        if live is None:
            raise OwnerGone(f"{owner.kind}/{owner.namespace}/{owner.name} no longer exists")
        if owner.uid and live.get("metadata", {}).get("uid") != owner.uid:
            raise OwnerGone(f"{owner.kind}/{owner.namespace}/{owner.name} was replaced")
        if live.get("metadata", {}).get("deletionTimestamp"):
            raise OwnerGone(f"{owner.kind}/{owner.namespace}/{owner.name} is being deleted")

    def converge(self, manifest: Manifest, owner: Optional[Owner] = None) -> ApplyResult:
        """
        Bring one child in line with ``manifest``.

        Args:
            manifest: Desired child object
            owner: Parent to re-check for existence before writing

        Returns:
            ApplyResult describing what happened

        Raises:
            FieldConflict: another manager owns a field in the manifest
            OwnerGone: the parent vanished before the write
            NotReady: the child is terminating or still controlled by a
                previous owner awaiting garbage collection
        """
        live = self.cluster.get(manifest.api_version, manifest.kind, manifest.namespace, manifest.name)
        if live is not None and live.get("metadata", {}).get("deletionTimestamp"):
            raise NotReady(f"{manifest.kind} {manifest.namespace}/{manifest.name} is still terminating")
        if live is not None and owner is not None:
            controller = _controller_uid(live)
            if controller is not None and controller != owner.uid:
                # Typically left behind by a deleted parent of the same name.
                raise NotReady(
                    f"{manifest.kind} {manifest.namespace}/{manifest.name} is still controlled by {controller}; "
                    "waiting for it to be collected"
                )
        if live is not None and is_subset(manifest.body, live):
            return ApplyResult.UNCHANGED
        if owner is not None:
            self.ensure_owner(owner)
        self.cluster.apply(manifest.body, self.field_manager)
        if live is None:
            logger.info(f"Created {manifest.kind} {manifest.namespace}/{manifest.name}")
            return ApplyResult.CREATED
        logger.info(f"Configured {manifest.kind} {manifest.namespace}/{manifest.name}")
        return ApplyResult.CONFIGURED

    def converge_all(self, manifests: Iterable[Manifest], owner: Optional[Owner] = None) -> Counter:
        """Converge each manifest in order; returns a Counter of ApplyResults."""
        results: Counter = Counter()
        for manifest in manifests:
            results[self.converge(manifest, owner)] += 1
        return results

    def prune_unwanted(self, owner: Owner, desired: Iterable[Manifest]) -> int:
        """
        Delete children of ``owner`` that are not in ``desired``.

        Only objects carrying both the owner labels and a controller
        reference to this owner's uid are candidates.

        Returns:
            Number of objects deleted
        """
        wanted = {m.identity for m in desired}
        selector = owner_selector(owner)
        deleted = 0
        checked_owner = False
        for api_version, kind in CHILD_KINDS:
            for obj in self.cluster.list(api_version, kind, owner.namespace, selector):
                meta = obj.get("metadata", {})
                identity = (api_version, kind, meta.get("namespace", owner.namespace), meta["name"])
                if identity in wanted or not _owned_by(obj, owner):
                    continue
                if not checked_owner:
                    self.ensure_owner(owner)
                    checked_owner = True
                if self.cluster.delete(api_version, kind, identity[2], identity[3]):
                    logger.info(f"Pruned {kind} {identity[2]}/{identity[3]} (no longer desired by {owner.key})")
                    deleted += 1
        return deleted
