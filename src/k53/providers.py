"""DNS authority interface and the Route 53 implementation."""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterator, List, Optional, Sequence

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .errors import ProviderError
from .models import (
    Change,
    CycleContext,
    DNSRecord,
    NetworkScope,
    RecordKind,
    ZoneHandle,
    fqdn,
)

logger = logging.getLogger(__name__)

MANAGED_KINDS = {kind.value for kind in RecordKind}

_OCTAL_ESCAPE_RE = re.compile(r"\\(\d{3})")

# =============================================================================
# Record Set Conversion
# =============================================================================


def decode_record_name(name: str) -> str:
    """Undo Route 53 octal escaping in record names (``\\052`` -> ``*``)."""
    return _OCTAL_ESCAPE_RE.sub(lambda m: chr(int(m.group(1), 8)), name)


def record_to_record_set(record: DNSRecord) -> Dict[str, Any]:
    """Render a DNSRecord as a Route 53 ResourceRecordSet."""
    return {
        "Name": record.name,
        "Type": record.kind.value,
        "TTL": record.ttl,
        "ResourceRecords": [{"Value": value} for value in record.sorted_values()],
    }


def record_from_record_set(record_set: Dict[str, Any]) -> Optional[DNSRecord]:
    """Parse a Route 53 ResourceRecordSet into a DNSRecord.

    Returns None for record sets this controller does not manage: kinds other
    than A/AAAA, alias records, and routing-policy records carrying a
    SetIdentifier (those share a name with their siblings).
    """
    kind = record_set.get("Type")
    if kind not in MANAGED_KINDS:
        return None
    if record_set.get("AliasTarget") or record_set.get("SetIdentifier"):
        return None
    values = [
        r.get("Value", "") for r in record_set.get("ResourceRecords", []) if r.get("Value")
    ]
    if not values:
        return None
    return DNSRecord(
        name=fqdn(decode_record_name(record_set["Name"])),
        kind=RecordKind(kind),
        ttl=int(record_set.get("TTL", 0)),
        values=frozenset(values),
    )


# =============================================================================
# DNS Authority Interface and Implementations
# =============================================================================


class DNSAuthority(ABC):
    """Abstract base class for the service holding the authoritative zone.

    Record listings are returned page by page as Route 53 shaped
    ResourceRecordSet dictionaries (``Name``, ``Type``, ``TTL``,
    ``ResourceRecords``); other authorities are expected to emit the same shape.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the authority name for logging."""
        pass

    @property
    def max_batch_size(self) -> int:
        """Maximum number of changes accepted in a single submission."""
        return 1000

    @abstractmethod
    def find_zone(
        self, zone_name: str, scope: NetworkScope, ctx: CycleContext
    ) -> Optional[ZoneHandle]:
        """Look up the private zone named ``zone_name`` that is bound to ``scope``.

        Returns None if no such zone exists. Zones of the same name associated
        only with other networks are never returned.
        """
        pass

    @abstractmethod
    def create_zone(
        self, zone_name: str, scope: NetworkScope, caller_reference: str, ctx: CycleContext
    ) -> ZoneHandle:
        """Create a private zone bound to ``scope``.

        ``caller_reference`` makes a repeated create request a no-op.
        """
        pass

    @abstractmethod
    def iter_record_pages(
        self, zone: ZoneHandle, ctx: CycleContext
    ) -> Iterator[List[Dict[str, Any]]]:
        """Yield the zone's record sets one page at a time until exhausted."""
        pass

    @abstractmethod
    def submit_changes(
        self, zone: ZoneHandle, changes: Sequence[Change], ctx: CycleContext
    ) -> str:
        """Submit one atomic change batch. Returns the authority's change id."""
        pass


class Route53Authority(DNSAuthority):
    """AWS Route 53 private hosted zones."""

    MAX_CHANGES_PER_BATCH = 1000

    def __init__(
        self,
        client: Any = None,
        *,
        max_batch_size: int = MAX_CHANGES_PER_BATCH,
        connect_timeout: float = 5.0,
        read_timeout: float = 30.0,
    ):
        if client is None:
            client = boto3.client(
                "route53",
                config=Config(
                    connect_timeout=connect_timeout,
                    read_timeout=read_timeout,
                    retries={"max_attempts": 5, "mode": "standard"},
                ),
            )
        self._client = client
        self._max_batch_size = max(1, min(max_batch_size, self.MAX_CHANGES_PER_BATCH))

    @property
    def name(self) -> str:
        return "Route 53"

    @property
    def max_batch_size(self) -> int:
        return self._max_batch_size

    def find_zone(
        self, zone_name: str, scope: NetworkScope, ctx: CycleContext
    ) -> Optional[ZoneHandle]:
        zone_name = fqdn(zone_name)
        request: Dict[str, Any] = {"DNSName": zone_name}
        while True:
            ctx.check("bootstrap", zone_name)
            try:
                response = self._client.list_hosted_zones_by_name(**request)
            except (BotoCoreError, ClientError) as e:
                raise ProviderError(f"unable to list {self.name} hosted zones: {e}") from e

            # Zones come back sorted by name starting at zone_name; stop at the
            # first name that differs.
            for zone in response.get("HostedZones", []):
                if fqdn(zone.get("Name", "")) != zone_name:
                    return None
                if not zone.get("Config", {}).get("PrivateZone", False):
                    logger.debug(f"Ignoring public hosted zone {zone.get('Id')} named {zone_name}")
                    continue
                if scope.scope_id in self._zone_vpc_ids(zone["Id"], ctx):
                    return ZoneHandle(id=zone["Id"], name=zone_name, network_scope_id=scope.scope_id)
                logger.debug(
                    f"Ignoring private hosted zone {zone['Id']} named {zone_name}: "
                    f"not associated with {scope.scope_id}"
                )

            if not response.get("IsTruncated"):
                return None
            request = {
                "DNSName": response["NextDNSName"],
                "HostedZoneId": response["NextHostedZoneId"],
            }

    def _zone_vpc_ids(self, zone_id: str, ctx: CycleContext) -> List[str]:
        ctx.check("bootstrap")
        try:
            response = self._client.get_hosted_zone(Id=zone_id)
        except (BotoCoreError, ClientError) as e:
            raise ProviderError(f"unable to describe hosted zone {zone_id}: {e}") from e
        return [vpc.get("VPCId", "") for vpc in response.get("VPCs") or []]

    def create_zone(
        self, zone_name: str, scope: NetworkScope, caller_reference: str, ctx: CycleContext
    ) -> ZoneHandle:
        zone_name = fqdn(zone_name)
        ctx.check("bootstrap", zone_name)
        try:
            response = self._client.create_hosted_zone(
                Name=zone_name,
                VPC={"VPCRegion": scope.region, "VPCId": scope.scope_id},
                CallerReference=caller_reference,
                HostedZoneConfig={
                    "Comment": "Managed by k53",
                    "PrivateZone": True,
                },
            )
        except (BotoCoreError, ClientError) as e:
            raise ProviderError(
                f"unable to create private hosted zone {zone_name} in {scope.scope_id}: {e}"
            ) from e
        zone = response.get("HostedZone") or {}
        if not zone.get("Id"):
            raise ProviderError(f"create of hosted zone {zone_name} returned no zone id")
        logger.info(f"Created private hosted zone {zone_name} ({zone['Id']}) in {scope.scope_id}")
        return ZoneHandle(id=zone["Id"], name=zone_name, network_scope_id=scope.scope_id)

    def iter_record_pages(
        self, zone: ZoneHandle, ctx: CycleContext
    ) -> Iterator[List[Dict[str, Any]]]:
        paginator = self._client.get_paginator("list_resource_record_sets")
        pages = iter(paginator.paginate(HostedZoneId=zone.id))
        while True:
            ctx.check("read", zone.name)
            try:
                page = next(pages)
            except StopIteration:
                return
            except (BotoCoreError, ClientError) as e:
                raise ProviderError(
                    f"unable to list record sets for hosted zone {zone.name}: {e}"
                ) from e
            yield page.get("ResourceRecordSets", [])

    def submit_changes(
        self, zone: ZoneHandle, changes: Sequence[Change], ctx: CycleContext
    ) -> str:
        ctx.check("apply", zone.name)
        batch = {
            "Comment": f"k53 reconcile: {len(changes)} change(s)",
            "Changes": [
                {"Action": c.action.value, "ResourceRecordSet": record_to_record_set(c.record)}
                for c in changes
            ],
        }
        try:
            response = self._client.change_resource_record_sets(
                HostedZoneId=zone.id, ChangeBatch=batch
            )
        except (BotoCoreError, ClientError) as e:
            raise ProviderError(
                f"unable to update hosted zone {zone.name} with {len(changes)} change(s): {e}"
            ) from e
        return response.get("ChangeInfo", {}).get("Id", "")
