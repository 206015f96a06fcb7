"""Reconciliation engine.

One cycle runs bootstrap -> read -> diff -> apply and tells the caller when to
run the next one. All per-cycle data (desired, observed, change list) is
rebuilt from scratch each time; the only state carried between cycles is the
zone handle, which is resolved once and then frozen.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterator, List, Optional, Sequence

from .desired import DesiredStateBuilder
from .errors import (
    ApplyError,
    CycleCancelled,
    CycleError,
    DiffError,
    ProviderError,
    ProvisioningError,
    ReadError,
)
from .metadata import NetworkScopeResolver
from .models import Change, ChangeAction, CycleContext, DNSRecord, ZoneHandle, fqdn
from .providers import DNSAuthority, record_from_record_set

logger = logging.getLogger(__name__)

# =============================================================================
# Zone Bootstrapper
# =============================================================================


class ZoneBootstrapper:
    """Resolves the private zone once per process, creating it if needed."""

    def __init__(
        self,
        authority: DNSAuthority,
        scope_resolver: NetworkScopeResolver,
        zone_name: str,
    ):
        self.authority = authority
        self.scope_resolver = scope_resolver
        self.zone_name = fqdn(zone_name)
        self._lock = threading.Lock()
        self._zone: Optional[ZoneHandle] = None
        self._last_reference = 0

    @property
    def zone(self) -> Optional[ZoneHandle]:
        return self._zone

    def ensure_zone(self, ctx: CycleContext) -> ZoneHandle:
        zone = self._zone
        if zone is not None:
            return zone
        with self._lock:
            if self._zone is None:
                self._zone = self._resolve(ctx)
            return self._zone

    def _caller_reference(self) -> str:
        # Strictly increasing within the process even if the clock stalls.
        self._last_reference = max(time.time_ns(), self._last_reference + 1)
        return f"k53-{self._last_reference}"

    def _resolve(self, ctx: CycleContext) -> ZoneHandle:
        try:
            scope = self.scope_resolver.current_scope(ctx)
            zone = self.authority.find_zone(self.zone_name, scope, ctx)
            if zone is not None:
                logger.info(f"Using existing private hosted zone {zone.name} ({zone.id})")
                return zone
            logger.info(f"Private hosted zone {self.zone_name} not found, creating it in {scope.scope_id}")
            return self.authority.create_zone(
                self.zone_name, scope, self._caller_reference(), ctx
            )
        except ProviderError as e:
            raise ProvisioningError(zone_name=self.zone_name, cause=e) from e


# =============================================================================
# Authoritative State Reader
# =============================================================================


def list_managed_records(
    authority: DNSAuthority, zone: ZoneHandle, ctx: CycleContext
) -> Dict[str, DNSRecord]:
    """Read every A/AAAA record set in ``zone``, following pagination to the end."""
    observed: Dict[str, DNSRecord] = {}
    pages = 0
    skipped = 0
    try:
        for page in authority.iter_record_pages(zone, ctx):
            pages += 1
            for record_set in page:
                record = record_from_record_set(record_set)
                if record is None:
                    skipped += 1
                    continue
                if record.name in observed:
                    logger.warning(
                        f"Zone {zone.name} holds more than one managed record set for "
                        f"{record.name}; ignoring {record.kind.value}"
                    )
                    continue
                observed[record.name] = record
    except ProviderError as e:
        raise ReadError(zone_name=zone.name, cause=e) from e

    logger.debug(
        f"Read {len(observed)} managed record(s) from {zone.name} "
        f"({pages} page(s), {skipped} unmanaged record set(s) left untouched)"
    )
    return observed


# =============================================================================
# Diff Engine
# =============================================================================


def diff_records(
    desired: Dict[str, DNSRecord], observed: Dict[str, DNSRecord]
) -> List[Change]:
    """Compute the changes that turn ``observed`` into ``desired``.

    Upserts come first in name order, then deletes in name order. A record
    whose kind changed is upserted under the new kind and the old record set
    is deleted, since the authority keys record sets by name and kind.
    Neither mapping is modified.
    """
    upserts: List[Change] = []
    deletes: List[Change] = []

    for name in sorted(desired):
        record = desired[name]
        if record.name != name:
            raise DiffError(cause=f"desired key {name} does not match record name {record.name}")
        if not record.values:
            raise DiffError(cause=f"desired record {name} has no values")

        current = observed.get(name)
        if current is not None and current.same_content(record):
            continue
        upserts.append(Change(ChangeAction.UPSERT, record))
        if current is not None and current.kind != record.kind:
            deletes.append(Change(ChangeAction.DELETE, current))

    for name in sorted(set(observed) - set(desired)):
        deletes.append(Change(ChangeAction.DELETE, observed[name]))

    deletes.sort(key=lambda c: c.record.name)
    return upserts + deletes


# =============================================================================
# Change Applier
# =============================================================================


class ChangeApplier:
    """Submits a change list to the authority in action-class batches."""

    def __init__(self, authority: DNSAuthority):
        self.authority = authority

    def batches(self, changes: Sequence[Change]) -> Iterator[List[Change]]:
        """Split ``changes`` into upsert batches then delete batches.

        Each batch holds a single action and at most ``max_batch_size`` changes.
        """
        size = max(1, self.authority.max_batch_size)
        for action in (ChangeAction.UPSERT, ChangeAction.DELETE):
            group = [c for c in changes if c.action is action]
            for start in range(0, len(group), size):
                yield group[start : start + size]

    def apply(self, zone: ZoneHandle, changes: Sequence[Change], ctx: CycleContext) -> int:
        """Submit ``changes``; returns the number of records changed."""
        if not changes:
            return 0

        applied = 0
        for batch in self.batches(changes):
            try:
                change_id = self.authority.submit_changes(zone, batch, ctx)
            except ProviderError as e:
                raise ApplyError(
                    zone_name=zone.name, cause=e, applied=applied, total=len(changes)
                ) from e
            except CycleCancelled as e:
                if not applied:
                    raise
                logger.warning(
                    f"Cycle cancelled after {applied}/{len(changes)} change(s) "
                    f"were committed to {zone.name}"
                )
                raise CycleCancelled(
                    e.stage, zone.name, e.cause, applied=applied, total=len(changes)
                ) from e
            applied += len(batch)
            logger.debug(
                f"Submitted {len(batch)} {batch[0].action.value} change(s) to {zone.name}"
                + (f" ({change_id})" if change_id else "")
            )
        return applied


# =============================================================================
# Reconcile Scheduler
# =============================================================================


class CycleState(Enum):
    IDLE = "idle"
    BOOTSTRAPPING = "bootstrapping"
    READING = "reading"
    DIFFING = "diffing"
    APPLYING = "applying"
    SCHEDULED = "scheduled"


@dataclass(frozen=True)
class SchedulePolicy:
    """Intervals, in seconds, between cycles."""

    period: float = 300.0
    jitter: float = 120.0
    retry_base: float = 10.0
    retry_max: float = 300.0

    def next_success_interval(self, rng: random.Random) -> float:
        """Base period plus a uniform jitter in [0, jitter)."""
        if self.jitter <= 0:
            return self.period
        return self.period + rng.random() * self.jitter

    def next_retry_interval(self, failures: int) -> float:
        """Exponential backoff from retry_base, capped at retry_max."""
        exponent = min(max(0, failures - 1), 32)
        return min(self.retry_max, self.retry_base * (2 ** exponent))


@dataclass(frozen=True)
class CycleReport:
    zone_name: str
    desired: int
    observed: int
    upserts: int
    deletes: int
    changed: int


class ZoneReconciler:
    """Drives one reconciliation cycle at a time for a single zone."""

    def __init__(
        self,
        *,
        bootstrapper: ZoneBootstrapper,
        builder: DesiredStateBuilder,
        authority: DNSAuthority,
        applier: Optional[ChangeApplier] = None,
        policy: Optional[SchedulePolicy] = None,
        rng: Optional[random.Random] = None,
    ):
        self.bootstrapper = bootstrapper
        self.builder = builder
        self.authority = authority
        self.applier = applier or ChangeApplier(authority)
        self.policy = policy or SchedulePolicy()
        self.rng = rng or random.Random()
        self.state = CycleState.IDLE
        self.consecutive_failures = 0
        self.last_report: Optional[CycleReport] = None
        self._cycle_lock = threading.Lock()
        self._rerun_requested = False

    @property
    def zone_name(self) -> str:
        return self.bootstrapper.zone_name

    def _transition(self, state: CycleState) -> None:
        logger.debug(f"Reconciler for {self.zone_name}: {self.state.value} -> {state.value}")
        self.state = state

    def reconcile(self, ctx: Optional[CycleContext] = None) -> float:
        """Run one cycle; returns the number of seconds until the next one.

        Raises CycleError (with ``retry_after`` set) if the cycle failed; any
        other exception from a stage is wrapped in a CycleError naming it. A call
        made while another cycle is in flight does not start a second cycle: it
        asks the running cycle to return 0 so its driver runs again right away,
        and itself returns the regular period.
        """
        ctx = ctx or CycleContext()
        if not self._cycle_lock.acquire(blocking=False):
            self._rerun_requested = True
            logger.debug(f"Cycle already running for {self.zone_name}; trigger coalesced")
            return self.policy.period

        try:
            self._rerun_requested = False
            self._transition(CycleState.IDLE)
            try:
                report = self._run_cycle(ctx)
            except CycleError as e:
                self._record_failure(e)
                raise
            except Exception as e:
                logger.error(
                    f"Unexpected error in {self.state.value} stage for zone {self.zone_name}",
                    exc_info=True,
                )
                error = CycleError(self.state.value, self.zone_name, e)
                self._record_failure(error)
                raise error from e

            self.consecutive_failures = 0
            self.last_report = report
            self._transition(CycleState.SCHEDULED)
            if self._rerun_requested:
                return 0.0
            return self.policy.next_success_interval(self.rng)
        finally:
            self._cycle_lock.release()

    def _record_failure(self, error: CycleError) -> None:
        self.consecutive_failures += 1
        error.retry_after = self.policy.next_retry_interval(self.consecutive_failures)
        self._transition(CycleState.SCHEDULED)

    def _run_cycle(self, ctx: CycleContext) -> CycleReport:
        ctx.check(CycleState.BOOTSTRAPPING.value, self.zone_name)
        self._transition(CycleState.BOOTSTRAPPING)
        zone = self.bootstrapper.ensure_zone(ctx)

        ctx.check(CycleState.READING.value, zone.name)
        self._transition(CycleState.READING)
        try:
            desired = self.builder.build(ctx)
        except ProviderError as e:
            raise ReadError(zone_name=zone.name, cause=e) from e
        observed = list_managed_records(self.authority, zone, ctx)
        logger.debug(f"Desired {len(desired)} record(s), observed {len(observed)} in {zone.name}")

        ctx.check(CycleState.DIFFING.value, zone.name)
        self._transition(CycleState.DIFFING)
        try:
            changes = diff_records(desired, observed)
        except DiffError as e:
            raise DiffError(zone_name=zone.name, cause=e.cause) from e
        upserts = sum(1 for c in changes if c.action is ChangeAction.UPSERT)
        deletes = len(changes) - upserts

        ctx.check(CycleState.APPLYING.value, zone.name)
        self._transition(CycleState.APPLYING)
        changed = self.applier.apply(zone, changes, ctx)

        if changed:
            logger.info(
                f"Zone {zone.name}: upserted {upserts}, deleted {deletes} record(s) "
                f"({len(desired)} desired)"
            )
            for change in changes:
                logger.debug(f"  {change.action.value} {change.record}")
        else:
            logger.info(f"Zone {zone.name} is in sync ({len(desired)} record(s))")

        return CycleReport(
            zone_name=zone.name,
            desired=len(desired),
            observed=len(observed),
            upserts=upserts,
            deletes=deletes,
            changed=changed,
        )


class ReconcileLoop:
    """Runs a ZoneReconciler forever on its own schedule.

    ``trigger()`` wakes the loop early, e.g. on a cluster change notification.
    Triggers arriving while a cycle runs collapse into a single follow-up
    cycle, and cycles never start less than ``min_interval`` seconds apart.
    """

    def __init__(
        self,
        reconciler: ZoneReconciler,
        *,
        cycle_timeout: Optional[float] = 120.0,
        min_interval: float = 5.0,
        failure_alert_threshold: int = 5,
        stop_event: Optional[threading.Event] = None,
    ):
        self.reconciler = reconciler
        self.cycle_timeout = cycle_timeout
        self.min_interval = min_interval
        self.failure_alert_threshold = failure_alert_threshold
        self.stop_event = stop_event or threading.Event()
        self._wake = threading.Event()

    def trigger(self) -> None:
        self._wake.set()

    def stop(self) -> None:
        self.stop_event.set()
        self._wake.set()

    def run_once(self) -> float:
        """Run one cycle and return the delay before the next one.

        Cycle failures are logged, never raised.
        """
        ctx = CycleContext.with_timeout(self.cycle_timeout, self.stop_event)
        try:
            return self.reconciler.reconcile(ctx)
        except CycleCancelled as e:
            logger.warning(f"Reconcile cycle abandoned: {e}")
            return e.retry_after if e.retry_after is not None else self.min_interval
        except CycleError as e:
            failures = self.reconciler.consecutive_failures
            retry_after = e.retry_after if e.retry_after is not None else self.min_interval
            if failures >= self.failure_alert_threshold:
                logger.error(
                    f"Reconcile failed {failures} times in a row: {e}; "
                    f"retrying in {retry_after:.0f}s",
                    exc_info=e.__cause__ is not None,
                )
            else:
                logger.warning(f"Reconcile failed: {e}; retrying in {retry_after:.0f}s")
            return retry_after

    def run_forever(self) -> None:
        while not self.stop_event.is_set():
            self._wake.clear()
            started = time.monotonic()
            interval = self.run_once()
            if self.stop_event.is_set():
                break

            logger.debug(f"Next reconcile of {self.reconciler.zone_name} in {interval:.0f}s")
            if self._wake.wait(timeout=interval) and not self.stop_event.is_set():
                logger.debug("Reconcile triggered by cluster change")

            spacing = self.min_interval - (time.monotonic() - started)
            if spacing > 0:
                self.stop_event.wait(spacing)
        logger.info("Reconcile loop stopped")
