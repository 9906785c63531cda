"""Thin client over the Kubernetes dynamic API used by every controller."""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Iterator, List, Optional, Tuple

import urllib3
from kubernetes import config as kube_config
from kubernetes.client import ApiClient
from kubernetes.client.exceptions import ApiException
from kubernetes.dynamic import DynamicClient
from kubernetes.dynamic.exceptions import DynamicApiError
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_random_exponential

from tnet.config import OperatorConfig
from tnet.errors import FieldConflict, OwnerGone, SpecInvalid, TransientUnavailable

logger = logging.getLogger(__name__)

TRANSIENT_STATUSES = {408, 429, 500, 502, 503, 504}


def load_kube_client() -> DynamicClient:
    """Build a dynamic client from in-cluster config, falling back to kubeconfig."""
    try:
        kube_config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes config")
    except kube_config.ConfigException:
        kube_config.load_kube_config()
        logger.info("Loaded kubeconfig")
    return DynamicClient(ApiClient())


def _status_of(exc: Exception) -> Optional[int]:
    status = getattr(exc, "status", None)
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None


class ClusterClient:
    """
    Cluster API surface for the controllers.

    Every call carries a request timeout; retryable failures are retried
    with jittered exponential backoff and then surface as
    TransientUnavailable. Nothing here caches object state: every get/list
    is a fresh read against the API server.
    """

    def __init__(self, config: OperatorConfig, dynamic_client: Optional[DynamicClient] = None) -> None:
        """
        Args:
            config: Operator config (timeouts, retry budget)
            dynamic_client: Pre-built client; loaded from the environment if None
        """
        self.config = config
        self.dynamic = dynamic_client if dynamic_client is not None else load_kube_client()
        self._resources: Dict[Tuple[str, str], Any] = {}
        self._resources_lock = threading.Lock()
        self._retrying = Retrying(
            stop=stop_after_attempt(config.api_attempts),
            wait=wait_random_exponential(multiplier=0.5, max=5),
            retry=retry_if_exception_type(TransientUnavailable),
            reraise=True,
        )

    def _resource(self, api_version: str, kind: str) -> Any:
        # Discovery results (API paths) are cached; object state never is.
        key = (api_version, kind)
        with self._resources_lock:
            if key not in self._resources:
                self._resources[key] = self.dynamic.resources.get(api_version=api_version, kind=kind)
            return self._resources[key]

    def _call(self, fn, *args, **kwargs) -> Any:
        kwargs.setdefault("_request_timeout", self.config.api_timeout_s)

        def attempt() -> Any:
            try:
                return fn(*args, **kwargs)
            except (DynamicApiError, ApiException) as e:
                if _status_of(e) in TRANSIENT_STATUSES:
                    raise TransientUnavailable(f"cluster API returned {_status_of(e)}: {getattr(e, 'reason', e)}") from e
                raise
            except urllib3.exceptions.HTTPError as e:
                raise TransientUnavailable(f"cluster API unreachable: {e}") from e

        return self._retrying.copy()(attempt)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get(self, api_version: str, kind: str, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        """Fetch one object, or None if it does not exist."""
        resource = self._resource(api_version, kind)
        try:
            obj = self._call(self.dynamic.get, resource, name=name, namespace=namespace)
        except (DynamicApiError, ApiException) as e:
            if _status_of(e) == 404:
                return None
            raise
        return obj.to_dict()

    def list(
        self,
        api_version: str,
        kind: str,
        namespace: Optional[str] = None,
        label_selector: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """List objects; namespace None lists across all namespaces."""
        resource = self._resource(api_version, kind)
        result = self._call(self.dynamic.get, resource, namespace=namespace, label_selector=label_selector)
        return list(result.to_dict().get("items") or [])

    def watch(
        self,
        api_version: str,
        kind: str,
        namespace: Optional[str] = None,
        label_selector: Optional[str] = None,
        timeout_s: int = 60,
    ) -> Iterator[Tuple[str, Dict[str, Any]]]:
        """Yield (event_type, object) pairs until the server closes the watch."""
        resource = self._resource(api_version, kind)
        for event in self.dynamic.watch(
            resource,
            namespace=namespace,
            label_selector=label_selector,
            timeout=timeout_s,
        ):
            yield event["type"], event["raw_object"]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def apply(self, body: Dict[str, Any], field_manager: str) -> Dict[str, Any]:
        """
        Server-side apply ``body`` as ``field_manager`` without forcing.

        Raises:
            FieldConflict: another manager owns a field in ``body``
            SpecInvalid: the API server rejected the manifest as invalid
        """
        resource = self._resource(body["apiVersion"], body["kind"])
        meta = body["metadata"]
        try:
            obj = self._call(
                self.dynamic.server_side_apply,
                resource,
                body=body,
                name=meta["name"],
                namespace=meta.get("namespace"),
                field_manager=field_manager,
                force_conflicts=False,
            )
        except (DynamicApiError, ApiException) as e:
            status = _status_of(e)
            if status == 409:
                raise FieldConflict(f"{body['kind']}/{meta['name']}: field owned by another manager: {e}") from e
            if status == 422:
                raise SpecInvalid(f"{body['kind']}/{meta['name']} rejected by API server: {e}") from e
            raise
        return obj.to_dict()

    def create(self, body: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Create ``body`` if absent. Returns None when it already exists."""
        resource = self._resource(body["apiVersion"], body["kind"])
        try:
            obj = self._call(self.dynamic.create, resource, body=body, namespace=body["metadata"].get("namespace"))
        except (DynamicApiError, ApiException) as e:
            if _status_of(e) == 409:
                return None
            raise
        return obj.to_dict()

    def delete(self, api_version: str, kind: str, namespace: str, name: str) -> bool:
        """Delete one object with background propagation. False if already gone."""
        resource = self._resource(api_version, kind)
        try:
            self._call(
                self.dynamic.delete,
                resource,
                name=name,
                namespace=namespace,
                body={"propagationPolicy": "Background"},
            )
        except (DynamicApiError, ApiException) as e:
            if _status_of(e) == 404:
                return False
            raise
        return True

    def patch_status(self, api_version: str, kind: str, namespace: str, name: str, status: Dict[str, Any]) -> None:
        """Merge-patch the status subresource of a parent resource."""
        resource = self._resource(api_version, kind)
        try:
            self._call(
                self.dynamic.patch,
                resource.subresources["status"],
                body={"status": status},
                name=name,
                namespace=namespace,
                content_type="application/merge-patch+json",
            )
        except (DynamicApiError, ApiException) as e:
            if _status_of(e) == 404:
                raise OwnerGone(f"{kind}/{namespace}/{name} was deleted") from e
            raise
