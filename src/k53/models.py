"""Value types shared by the reconciler and its adapters."""

from __future__ import annotations

import ipaddress
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet, Iterable, List, Optional, Tuple

from .errors import CycleCancelled

# =============================================================================
# Enums
# =============================================================================


class RecordKind(Enum):
    """Address record kinds managed in the zone."""

    A = "A"
    AAAA = "AAAA"

    @classmethod
    def for_address(cls, address: str) -> "RecordKind":
        """Return the record kind matching the address family of ``address``.

        Raises ValueError if ``address`` is not an IP address.
        """
        ip = ipaddress.ip_address(address)
        return cls.A if ip.version == 4 else cls.AAAA


class ChangeAction(Enum):
    UPSERT = "UPSERT"
    DELETE = "DELETE"


# =============================================================================
# Data Classes
# =============================================================================


def fqdn(name: str) -> str:
    """Return ``name`` in lower-case, fully qualified, trailing-dot form.

    Route 53 stores and lists names in lower case and compares them
    case-insensitively.
    """
    name = name.strip().lower()
    return name if name.endswith(".") else f"{name}."


@dataclass(frozen=True)
class DNSRecord:
    """An address record set: one name, one kind, one TTL, many values."""

    name: str
    kind: RecordKind
    ttl: int
    values: FrozenSet[str]

    @classmethod
    def for_addresses(cls, name: str, addresses: Iterable[str], ttl: int) -> "DNSRecord":
        """Build a record, deriving its kind from the address family.

        Raises ValueError for an empty value set, an invalid address, or a
        value set mixing IPv4 and IPv6 addresses.
        """
        values = frozenset(str(ipaddress.ip_address(a.strip())) for a in addresses)
        if not values:
            raise ValueError(f"record {name} has no values")
        kinds = {RecordKind.for_address(v) for v in values}
        if len(kinds) > 1:
            raise ValueError(f"record {name} mixes IPv4 and IPv6 values: {sorted(values)}")
        return cls(name=fqdn(name), kind=kinds.pop(), ttl=int(ttl), values=values)

    def same_content(self, other: "DNSRecord") -> bool:
        """Record equality used for diffing: kind, TTL and value set.

        Value order is irrelevant.
        """
        return (
            self.kind == other.kind
            and self.ttl == other.ttl
            and frozenset(self.values) == frozenset(other.values)
        )

    def sorted_values(self) -> List[str]:
        return sorted(self.values)

    def __str__(self) -> str:
        return f"{self.name} {self.kind.value} {self.ttl} [{', '.join(self.sorted_values())}]"


@dataclass(frozen=True)
class ZoneHandle:
    """The private hosted zone being reconciled."""

    id: str
    name: str
    network_scope_id: str


@dataclass(frozen=True)
class NetworkScope:
    """The virtual network (VPC) the private zone is bound to."""

    scope_id: str
    region: str


@dataclass(frozen=True)
class Change:
    action: ChangeAction
    record: DNSRecord


@dataclass(frozen=True)
class PodInfo:
    """A pod as reported by the cluster observer."""

    namespace: str
    name: str
    ips: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ServiceInfo:
    """A service as reported by the cluster observer."""

    namespace: str
    name: str
    cluster_ip: str = ""


# =============================================================================
# Cycle Context
# =============================================================================


@dataclass
class CycleContext:
    """Deadline and cancellation signal threaded through every blocking call.

    ``deadline`` is an absolute ``time.monotonic()`` value, or None for no
    deadline.
    """

    deadline: Optional[float] = None
    cancel_event: threading.Event = field(default_factory=threading.Event)

    @classmethod
    def with_timeout(
        cls, seconds: Optional[float], cancel_event: Optional[threading.Event] = None
    ) -> "CycleContext":
        deadline = time.monotonic() + seconds if seconds else None
        return cls(deadline=deadline, cancel_event=cancel_event or threading.Event())

    def cancel(self) -> None:
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, never negative. None if unbounded."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def timeout(self, default: float) -> float:
        """Per-call timeout: ``default`` capped by the time left in the cycle."""
        remaining = self.remaining()
        if remaining is None:
            return default
        return max(0.1, min(default, remaining))

    def check(self, stage: str, zone_name: str = "") -> None:
        """Raise CycleCancelled if the cycle was cancelled or ran out of time."""
        if self.cancelled:
            raise CycleCancelled(stage, zone_name, "cycle cancelled")
        if self.deadline is not None and time.monotonic() >= self.deadline:
            raise CycleCancelled(stage, zone_name, "cycle deadline exceeded")
