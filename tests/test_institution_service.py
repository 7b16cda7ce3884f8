# tests/test_institution_service.py
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

from member_alert.domain import Address, AlertSeverity, InstitutionStatus, ListingMatch
from member_alert.results import TENANT_CONTEXT_MISSING, ErrorKind
from member_alert.services.institution_service import InstitutionService
from member_alert.services.retention import purge_stale_matches
from member_alert.stores.memory import build_memory_stores
from member_alert.tenancy import TenantContext, platform_admin_context, tenant_scope

HOME = {"line1": "12 Elm St", "city": "Sacramento", "state_or_province": "ca", "postal_code": "95814"}


def _service():
    stores = build_memory_stores()
    return stores, InstitutionService(institutions=stores.institutions, addresses=stores.addresses)


def test_create_and_add_address_under_tenant_context():
    stores, svc = _service()

    async def run():
        with tenant_scope(TenantContext(tenant_id="t1")):
            created = await svc.create_institution("Credit Union", "America/Los_Angeles", institution_id="i1")
            added = await svc.add_address("i1", HOME, address_id="a1", tags=["member"])
            loaded = await stores.institutions.get("i1")
            listed = await svc.list_institutions()
        return created, added, loaded, listed

    created, added, loaded, listed = asyncio.run(run())
    assert created.ok
    assert created.value.tenant_id == "t1"
    assert added.ok
    assert [a.id for a in loaded.value.addresses] == ["a1"]
    assert listed.value.total == 1


def test_create_for_another_tenant_is_rejected():
    _, svc = _service()

    async def run():
        with tenant_scope(TenantContext(tenant_id="t1")):
            return await svc.create_institution("Elsewhere", "UTC", institution_id="x", tenant_id="t2")

    res = asyncio.run(run())
    assert not res.ok
    assert res.kind == ErrorKind.authorization


def test_create_requires_context_and_valid_time_zone():
    _, svc = _service()

    async def run():
        missing = await svc.create_institution("No Context", "UTC")
        with tenant_scope(TenantContext(tenant_id="t1")):
            bad_zone = await svc.create_institution("Bad Zone", "Mars/Olympus")
        return missing, bad_zone

    missing, bad_zone = asyncio.run(run())
    assert missing.error == TENANT_CONTEXT_MISSING
    assert bad_zone.kind == ErrorKind.validation


def test_invalid_address_and_duplicate_ids_are_validation_failures():
    _, svc = _service()

    async def run():
        with tenant_scope(TenantContext(tenant_id="t1")):
            await svc.create_institution("Credit Union", "UTC", institution_id="i1")
            bad = await svc.add_address("i1", {**HOME, "line1": ""})
            first = await svc.add_address("i1", HOME, address_id="a1")
            dup = await svc.add_address("i1", HOME, address_id="a1")
        return bad, first, dup

    bad, first, dup = asyncio.run(run())
    assert bad.kind == ErrorKind.validation
    assert first.ok
    assert dup.kind == ErrorKind.validation


def test_deactivate_address_and_suspend_institution():
    stores, svc = _service()

    async def run():
        with tenant_scope(TenantContext(tenant_id="t1")):
            await svc.create_institution("Credit Union", "UTC", institution_id="i1")
            await svc.add_address("i1", HOME, address_id="a1")
            deactivated = await svc.deactivate_address("a1")
            suspended = await svc.update_institution("i1", name="Credit Union", status=InstitutionStatus.suspended)
            reloaded = await stores.addresses.get("a1")
        return deactivated, suspended, reloaded

    deactivated, suspended, reloaded = asyncio.run(run())
    assert deactivated.ok
    assert reloaded.value.is_active is False
    assert suspended.value.status == InstitutionStatus.suspended


def test_other_tenant_cannot_see_institution():
    _, svc = _service()

    async def run():
        with tenant_scope(TenantContext(tenant_id="t1")):
            await svc.create_institution("Credit Union", "UTC", institution_id="i1")
        with tenant_scope(TenantContext(tenant_id="t2")):
            return await svc.add_address("i1", HOME)

    res = asyncio.run(run())
    assert res.kind == ErrorKind.not_found


def test_purge_stale_matches_respects_retention_window():
    stores = build_memory_stores()
    now = datetime(2026, 6, 1, tzinfo=timezone.utc)
    addr = Address.from_dict(HOME)

    async def run():
        with tenant_scope(platform_admin_context()):
            for mid, days_old in (("fresh", 3), ("stale", 45)):
                m = ListingMatch.create(
                    mid, f"L-{mid}", addr, 1800, "https://l", AlertSeverity.informational, ["a1"],
                    detected_at_utc=now - timedelta(days=days_old),
                ).value
                m.set_tenancy_details(["t1"], ["i1"])
                await stores.matches.create(m)
            negative = await purge_stale_matches(stores.matches, retention_days=-1, now=now)
            purged = await purge_stale_matches(stores.matches, retention_days=30, now=now)
        return negative, purged

    negative, purged = asyncio.run(run())
    assert negative.kind == ErrorKind.validation
    assert purged.value == 1
    assert sorted(stores.db.matches) == ["fresh"]
