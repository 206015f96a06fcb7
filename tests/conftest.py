"""Shared in-memory fakes for the DNS authority, cluster and network scope."""

from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

import pytest

from k53.cluster import ClusterObserver
from k53.errors import MetadataError, ProviderError
from k53.metadata import NetworkScopeResolver
from k53.models import (
    Change,
    ChangeAction,
    CycleContext,
    DNSRecord,
    NetworkScope,
    PodInfo,
    ServiceInfo,
    ZoneHandle,
)
from k53.providers import DNSAuthority, record_to_record_set

ZONE_NAME = "cluster.local."
VPC_ID = "vpc-0abc"
REGION = "us-west-2"

# =============================================================================
# Fake DNS Authority
# =============================================================================


class FakeAuthority(DNSAuthority):
    """In-memory zone store with Route 53 semantics and call tracking."""

    def __init__(self, page_size: int = 100, batch_size: int = 1000):
        self.page_size = page_size
        self.batch_size = batch_size
        self.zones: List[ZoneHandle] = []
        self.records: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.find_calls: List[str] = []
        self.create_calls: List[Tuple[str, NetworkScope, str]] = []
        self.list_calls = 0
        self.submit_calls: List[List[Change]] = []
        self.fail_find = False
        self.fail_list = False
        self.fail_submit_at: Optional[int] = None

    @property
    def name(self) -> str:
        return "FakeDNS"

    @property
    def max_batch_size(self) -> int:
        return self.batch_size

    def add_zone(
        self,
        zone_name: str = ZONE_NAME,
        zone_id: str = "/hostedzone/Z1",
        scope_id: str = VPC_ID,
    ) -> ZoneHandle:
        zone = ZoneHandle(id=zone_id, name=zone_name, network_scope_id=scope_id)
        self.zones.append(zone)
        self.records[(zone_name, "SOA")] = {
            "Name": zone_name,
            "Type": "SOA",
            "TTL": 900,
            "ResourceRecords": [{"Value": "ns-1.awsdns-1.org. admin. 1 7200 900 1209600 86400"}],
        }
        self.records[(zone_name, "NS")] = {
            "Name": zone_name,
            "Type": "NS",
            "TTL": 172800,
            "ResourceRecords": [{"Value": "ns-1.awsdns-1.org."}],
        }
        return zone

    def put(self, record: DNSRecord) -> None:
        self.records[(record.name, record.kind.value)] = record_to_record_set(record)

    def managed(self) -> Dict[str, List[str]]:
        return {
            name: sorted(r["Value"] for r in rs["ResourceRecords"])
            for (name, kind), rs in self.records.items()
            if kind in ("A", "AAAA")
        }

    def find_zone(
        self, zone_name: str, scope: NetworkScope, ctx: CycleContext
    ) -> Optional[ZoneHandle]:
        self.find_calls.append(zone_name)
        if self.fail_find:
            raise ProviderError("ListHostedZonesByName throttled")
        for zone in self.zones:
            if zone.name == zone_name and zone.network_scope_id == scope.scope_id:
                return zone
        return None

    def create_zone(
        self, zone_name: str, scope: NetworkScope, caller_reference: str, ctx: CycleContext
    ) -> ZoneHandle:
        self.create_calls.append((zone_name, scope, caller_reference))
        return self.add_zone(
            zone_name,
            zone_id=f"/hostedzone/Z{len(self.create_calls) + 1}",
            scope_id=scope.scope_id,
        )

    def iter_record_pages(
        self, zone: ZoneHandle, ctx: CycleContext
    ) -> Iterator[List[Dict[str, Any]]]:
        self.list_calls += 1
        if self.fail_list:
            raise ProviderError("ListResourceRecordSets failed")
        record_sets = [self.records[k] for k in sorted(self.records)]
        for start in range(0, len(record_sets), self.page_size):
            ctx.check("read", zone.name)
            yield record_sets[start : start + self.page_size]

    def submit_changes(self, zone: ZoneHandle, changes: Sequence[Change], ctx: CycleContext) -> str:
        if self.fail_submit_at is not None and len(self.submit_calls) == self.fail_submit_at:
            raise ProviderError("Rate exceeded")
        self.submit_calls.append(list(changes))
        for change in changes:
            key = (change.record.name, change.record.kind.value)
            if change.action is ChangeAction.UPSERT:
                self.records[key] = record_to_record_set(change.record)
            elif self.records.get(key) == record_to_record_set(change.record):
                del self.records[key]
            else:
                raise ProviderError(f"InvalidChangeBatch: {change.record.name} not found")
        return f"/change/C{len(self.submit_calls)}"


# =============================================================================
# Fake Cluster and Network Scope
# =============================================================================


class FakeObserver(ClusterObserver):
    def __init__(
        self,
        pods: Optional[List[PodInfo]] = None,
        services: Optional[List[ServiceInfo]] = None,
    ):
        self.pods = pods or []
        self.services = services or []
        self.fail = False

    @property
    def name(self) -> str:
        return "FakeCluster"

    def list_pods(self, ctx: CycleContext) -> List[PodInfo]:
        if self.fail:
            raise ProviderError("unable to fetch Pods: connection refused")
        return list(self.pods)

    def list_services(self, ctx: CycleContext) -> List[ServiceInfo]:
        if self.fail:
            raise ProviderError("unable to fetch Services: connection refused")
        return list(self.services)


class FakeScopeResolver(NetworkScopeResolver):
    def __init__(self, scope: Optional[NetworkScope] = None):
        self.scope = scope or NetworkScope(scope_id=VPC_ID, region=REGION)
        self.fail = False
        self.calls = 0

    def current_scope(self, ctx: CycleContext) -> NetworkScope:
        self.calls += 1
        if self.fail:
            raise MetadataError("unable to retrieve vpc-id from instance metadata")
        return self.scope


# =============================================================================
# Helpers and Fixtures
# =============================================================================


def a_record(name: str, *values: str, ttl: int = 60) -> DNSRecord:
    return DNSRecord.for_addresses(name, values, ttl)


@pytest.fixture
def ctx() -> CycleContext:
    return CycleContext()


@pytest.fixture
def authority() -> FakeAuthority:
    return FakeAuthority()


@pytest.fixture
def zone(authority: FakeAuthority) -> ZoneHandle:
    return authority.add_zone()


@pytest.fixture
def observer() -> FakeObserver:
    return FakeObserver()


@pytest.fixture
def scope_resolver() -> FakeScopeResolver:
    return FakeScopeResolver()
