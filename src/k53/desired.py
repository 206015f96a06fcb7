"""Desired state: the records the zone should hold for the current cluster."""

from __future__ import annotations

import logging
from typing import Dict, Iterable, Tuple

from .cluster import ClusterObserver
from .models import CycleContext, DNSRecord, PodInfo, ServiceInfo, fqdn

logger = logging.getLogger(__name__)

DEFAULT_TTL = 60


def record_name_for_pod(ip: str, namespace: str, zone_name: str) -> str:
    """``10.0.0.1`` in ``ns`` -> ``10-0-0-1.ns.pod.<zone>.``"""
    host = ip.strip().replace(".", "-").replace(":", "-")
    return fqdn(f"{host}.{namespace}.pod.{fqdn(zone_name)}")


def record_name_for_service(name: str, namespace: str, zone_name: str) -> str:
    """``web`` in ``ns`` -> ``web.ns.svc.<zone>.``"""
    return fqdn(f"{name}.{namespace}.svc.{fqdn(zone_name)}")


class DesiredStateBuilder:
    """Builds the name -> record mapping for pods and services.

    Pods are processed first, then services, each sorted by namespace and name.
    When two sources produce the same name the first one wins; a later claim
    with different content is logged and dropped.
    """

    def __init__(self, observer: ClusterObserver, zone_name: str, ttl: int = DEFAULT_TTL):
        self.observer = observer
        self.zone_name = fqdn(zone_name)
        self.ttl = ttl

    def build(self, ctx: CycleContext) -> Dict[str, DNSRecord]:
        pods = self.observer.list_pods(ctx)
        services = self.observer.list_services(ctx)
        return self.records_for(pods, services)

    def records_for(
        self, pods: Iterable[PodInfo], services: Iterable[ServiceInfo]
    ) -> Dict[str, DNSRecord]:
        desired: Dict[str, DNSRecord] = {}
        for source, name, addresses in self._candidates(pods, services):
            try:
                record = DNSRecord.for_addresses(name, addresses, self.ttl)
            except ValueError as e:
                logger.warning(f"Skipping {source}: {e}")
                continue

            existing = desired.get(record.name)
            if existing is None:
                desired[record.name] = record
            elif not existing.same_content(record):
                logger.warning(
                    f"Record {record.name} claimed again by {source} with "
                    f"{record.sorted_values()}; keeping {existing.sorted_values()}"
                )
        return desired

    def _candidates(
        self, pods: Iterable[PodInfo], services: Iterable[ServiceInfo]
    ) -> Iterable[Tuple[str, str, Tuple[str, ...]]]:
        for pod in sorted(pods, key=lambda p: (p.namespace, p.name)):
            for ip in pod.ips:
                yield (
                    f"pod {pod.namespace}/{pod.name}",
                    record_name_for_pod(ip, pod.namespace, self.zone_name),
                    (ip,),
                )
        for svc in sorted(services, key=lambda s: (s.namespace, s.name)):
            # Headless services have no cluster address to publish.
            if not svc.cluster_ip or svc.cluster_ip == "None":
                logger.debug(f"Skipping service {svc.namespace}/{svc.name} without cluster IP")
                continue
            yield (
                f"service {svc.namespace}/{svc.name}",
                record_name_for_service(svc.name, svc.namespace, self.zone_name),
                (svc.cluster_ip,),
            )
