"""Unit tests for ZoneBootstrapper."""

import pytest

from conftest import VPC_ID, FakeAuthority, FakeScopeResolver
from k53.errors import ProvisioningError
from k53.models import CycleContext
from k53.reconciler import ZoneBootstrapper


def test_existing_zone_is_adopted(authority: FakeAuthority, scope_resolver, ctx) -> None:
    existing = authority.add_zone("cluster.local.", zone_id="/hostedzone/ZEXIST")
    bootstrapper = ZoneBootstrapper(authority, scope_resolver, "cluster.local")

    zone = bootstrapper.ensure_zone(ctx)

    assert zone == existing
    assert authority.create_calls == []


def test_missing_zone_is_created_in_network_scope(authority, scope_resolver, ctx) -> None:
    bootstrapper = ZoneBootstrapper(authority, scope_resolver, "cluster.local.")

    zone = bootstrapper.ensure_zone(ctx)

    assert len(authority.create_calls) == 1
    name, scope, reference = authority.create_calls[0]
    assert name == "cluster.local."
    assert scope.scope_id == VPC_ID
    assert reference.startswith("k53-")
    assert zone.name == "cluster.local."
    assert zone.network_scope_id == VPC_ID


def test_zone_is_resolved_only_once(authority, scope_resolver, ctx) -> None:
    bootstrapper = ZoneBootstrapper(authority, scope_resolver, "cluster.local.")

    first = bootstrapper.ensure_zone(ctx)
    second = bootstrapper.ensure_zone(ctx)

    assert first is second
    assert len(authority.find_calls) == 1
    assert len(authority.create_calls) == 1
    assert scope_resolver.calls == 1


def test_missing_network_scope_is_fatal(authority, ctx) -> None:
    resolver = FakeScopeResolver()
    resolver.fail = True
    bootstrapper = ZoneBootstrapper(authority, resolver, "cluster.local.")

    with pytest.raises(ProvisioningError, match="vpc-id"):
        bootstrapper.ensure_zone(ctx)

    assert authority.find_calls == []
    assert bootstrapper.zone is None


def test_lookup_failure_is_provisioning_error(authority, scope_resolver, ctx) -> None:
    authority.fail_find = True
    bootstrapper = ZoneBootstrapper(authority, scope_resolver, "cluster.local.")

    with pytest.raises(ProvisioningError) as exc_info:
        bootstrapper.ensure_zone(ctx)

    assert exc_info.value.stage == "bootstrap"
    assert authority.create_calls == []


def test_failed_bootstrap_is_retried_on_next_call(authority, scope_resolver) -> None:
    authority.fail_find = True
    bootstrapper = ZoneBootstrapper(authority, scope_resolver, "cluster.local.")
    with pytest.raises(ProvisioningError):
        bootstrapper.ensure_zone(CycleContext())

    authority.fail_find = False
    zone = bootstrapper.ensure_zone(CycleContext())

    assert zone.name == "cluster.local."


def test_caller_references_strictly_increase(authority, scope_resolver) -> None:
    bootstrapper = ZoneBootstrapper(authority, scope_resolver, "cluster.local.")

    refs = [int(bootstrapper._caller_reference().split("-")[1]) for _ in range(50)]

    assert refs == sorted(set(refs))


def test_same_name_zone_in_another_vpc_is_not_adopted(authority, scope_resolver, ctx) -> None:
    authority.add_zone("cluster.local.", zone_id="/hostedzone/ZOTHER", scope_id="vpc-other")
    bootstrapper = ZoneBootstrapper(authority, scope_resolver, "cluster.local.")

    zone = bootstrapper.ensure_zone(ctx)

    assert zone.id != "/hostedzone/ZOTHER"
    assert zone.network_scope_id == VPC_ID
    assert len(authority.create_calls) == 1


def test_mixed_case_zone_name_finds_existing_zone(authority, scope_resolver, ctx) -> None:
    existing = authority.add_zone("cluster.local.", zone_id="/hostedzone/ZEXIST")
    bootstrapper = ZoneBootstrapper(authority, scope_resolver, "Cluster.Local")

    assert bootstrapper.ensure_zone(ctx) == existing
    assert authority.create_calls == []
