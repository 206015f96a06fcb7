"""Cluster membership observation (Kubernetes)."""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Tuple

import urllib3
from kubernetes import client, config, watch
from kubernetes.client.exceptions import ApiException
from kubernetes.config.config_exception import ConfigException

from .errors import ProviderError
from .models import CycleContext, PodInfo, ServiceInfo

logger = logging.getLogger(__name__)

TERMINAL_POD_PHASES = {"Succeeded", "Failed"}


def load_kubernetes_config() -> None:
    """Load in-cluster configuration, falling back to the local kubeconfig."""
    try:
        config.load_incluster_config()
        logger.debug("Loaded in-cluster Kubernetes config")
    except ConfigException:
        config.load_kube_config()
        logger.debug("Loaded Kubernetes config from kubeconfig")


class ClusterObserver(ABC):
    """Abstract base class for cluster membership sources."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the observer name for logging."""
        pass

    @abstractmethod
    def list_pods(self, ctx: CycleContext) -> List[PodInfo]:
        """List every pod that currently holds an address."""
        pass

    @abstractmethod
    def list_services(self, ctx: CycleContext) -> List[ServiceInfo]:
        """List every service in the cluster."""
        pass


def pod_addresses(pod: Any) -> Tuple[str, ...]:
    """Addresses a pod should be published under; empty if it has none.

    Pods without an IP and pods in a terminal phase have no addresses.
    """
    status = pod.status
    if status is None or not status.pod_ip or status.phase in TERMINAL_POD_PHASES:
        return ()
    ips = [p.ip for p in (status.pod_i_ps or []) if p.ip] or [status.pod_ip]
    return tuple(ips)


def service_address(svc: Any) -> str:
    return (svc.spec.cluster_ip or "") if svc.spec else ""


class KubernetesClusterObserver(ClusterObserver):
    """Reads pods and services across all namespaces through the CoreV1 API."""

    def __init__(self, api: Optional[Any] = None, timeout_seconds: float = 30.0):
        self._api = api
        self._timeout = timeout_seconds

    @property
    def name(self) -> str:
        return "Kubernetes"

    @property
    def api(self) -> Any:
        """CoreV1 client, created on first use.

        Raises ProviderError if no cluster configuration can be loaded.
        """
        if self._api is None:
            try:
                load_kubernetes_config()
            except ConfigException as e:
                raise ProviderError(f"unable to load Kubernetes configuration: {e}") from e
            self._api = client.CoreV1Api()
        return self._api

    def list_pods(self, ctx: CycleContext) -> List[PodInfo]:
        ctx.check("read")
        try:
            pod_list = self.api.list_pod_for_all_namespaces(
                watch=False, _request_timeout=ctx.timeout(self._timeout)
            )
        except (ApiException, urllib3.exceptions.HTTPError) as e:
            raise ProviderError(f"unable to fetch Pods: {e}") from e

        pods: List[PodInfo] = []
        for pod in pod_list.items:
            ips = pod_addresses(pod)
            if not ips:
                if pod.status is not None and pod.status.phase in TERMINAL_POD_PHASES:
                    logger.debug(
                        f"Skipping pod {pod.metadata.namespace}/{pod.metadata.name} "
                        f"in phase {pod.status.phase}"
                    )
                continue
            pods.append(PodInfo(namespace=pod.metadata.namespace, name=pod.metadata.name, ips=ips))
        return pods

    def list_services(self, ctx: CycleContext) -> List[ServiceInfo]:
        ctx.check("read")
        try:
            svc_list = self.api.list_service_for_all_namespaces(
                watch=False, _request_timeout=ctx.timeout(self._timeout)
            )
        except (ApiException, urllib3.exceptions.HTTPError) as e:
            raise ProviderError(f"unable to fetch Services: {e}") from e

        return [
            ServiceInfo(
                namespace=svc.metadata.namespace,
                name=svc.metadata.name,
                cluster_ip=service_address(svc),
            )
            for svc in svc_list.items
        ]


# =============================================================================
# Change Notifications
# =============================================================================


class ClusterEventWatcher:
    """Calls ``on_change`` when a pod or service address appears, changes or goes away.

    Runs one daemon thread per resource kind. Events that leave the published
    addresses unchanged (status churn, label edits, the ADDED replay of a
    reopened stream) are ignored. A stream that times out is reopened from the
    last seen resource version; a broken stream is logged and reopened after
    ``retry_seconds``.
    """

    KINDS = {
        "pods": ("list_pod_for_all_namespaces", pod_addresses),
        "services": ("list_service_for_all_namespaces", service_address),
    }

    def __init__(
        self,
        observer: KubernetesClusterObserver,
        on_change: Callable[[], None],
        stop_event: threading.Event,
        stream_timeout_seconds: int = 300,
        retry_seconds: float = 5.0,
    ):
        self._observer = observer
        self._on_change = on_change
        self._stop_event = stop_event
        self._stream_timeout = stream_timeout_seconds
        self._retry_seconds = retry_seconds
        self._threads: List[threading.Thread] = []

    def start(self) -> None:
        for kind in self.KINDS:
            thread = threading.Thread(
                target=self._run, args=(kind,), name=f"k53-watch-{kind}", daemon=True
            )
            thread.start()
            self._threads.append(thread)

    def _run(self, kind: str) -> None:
        method, address_of = self.KINDS[kind]
        known: Dict[Tuple[str, str], Any] = {}
        resource_version: Optional[str] = None
        while not self._stop_event.is_set():
            w = watch.Watch()
            kwargs: Dict[str, Any] = {"timeout_seconds": self._stream_timeout}
            if resource_version:
                kwargs["resource_version"] = resource_version
            try:
                list_func = getattr(self._observer.api, method)
                for event in w.stream(list_func, **kwargs):
                    if self._stop_event.is_set():
                        break
                    if self._address_changed(kind, event, address_of, known):
                        self._on_change()
                resource_version = w.resource_version or resource_version
            except ApiException as e:
                if e.status == 410:
                    logger.debug(f"Watch on {kind} expired, restarting from a fresh listing")
                    resource_version = None
                    continue
                logger.warning(f"Watch on {kind} failed, reopening in {self._retry_seconds}s: {e}")
                self._stop_event.wait(self._retry_seconds)
            except (ProviderError, urllib3.exceptions.HTTPError) as e:
                logger.warning(f"Watch on {kind} failed, reopening in {self._retry_seconds}s: {e}")
                self._stop_event.wait(self._retry_seconds)
            finally:
                w.stop()

    @staticmethod
    def _address_changed(
        kind: str,
        event: Dict[str, Any],
        address_of: Callable[[Any], Any],
        known: Dict[Tuple[str, str], Any],
    ) -> bool:
        obj = event.get("object")
        meta = getattr(obj, "metadata", None)
        if meta is None:
            return False
        key = (meta.namespace, meta.name)
        event_type = event.get("type")
        if event_type == "DELETED":
            previous = known.pop(key, None)
            changed = bool(previous)
        elif event_type in ("ADDED", "MODIFIED"):
            address = address_of(obj)
            previous = known.get(key)
            known[key] = address
            changed = address != previous and bool(address or previous)
        else:
            return False
        if changed:
            logger.debug(f"Cluster event {event_type} on {kind} {key[0]}/{key[1]}")
        return changed
