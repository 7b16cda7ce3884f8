# tests/test_tenant_isolation.py
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

from member_alert.domain import Address, Institution, MemberAddress, ScanJob, TenantInstitutionScope
from member_alert.results import TENANT_CONTEXT_MISSING, ErrorKind
from member_alert.stores.memory import build_memory_stores
from member_alert.tenancy import TenantContext, current_tenant, platform_admin_context, tenant_scope


def _institution(tenant_id: str, institution_id: str, *states: str) -> Institution:
    inst = Institution.create(institution_id, tenant_id, f"{institution_id} inst", "UTC").value
    for n, state in enumerate(states, start=1):
        addr = Address(line1=f"{n} Main St", city="Town", state_or_province=state, postal_code="10001")
        inst.add_address(MemberAddress.create(f"{institution_id}-a{n}", tenant_id, institution_id, addr).value)
    return inst


def _seeded():
    stores = build_memory_stores()

    async def seed():
        with tenant_scope(platform_admin_context()):
            for tenant, inst, states in [
                ("t1", "i1", ("CA", "TX")),
                ("t1", "i2", ("CA",)),
                ("t1", "i3", ()),
                ("t2", "i4", ("CA",)),
                ("t2", "i5", ("NY",)),
            ]:
                assert (await stores.institutions.create(_institution(tenant, inst, *states))).ok

    asyncio.run(seed())
    return stores


def test_every_operation_requires_a_tenant_context():
    stores = _seeded()

    async def run():
        assert current_tenant() is None
        results = [
            await stores.institutions.list(),
            await stores.institutions.get("i1"),
            await stores.institutions.get_counts(),
            await stores.addresses.list_by_state("CA"),
            await stores.addresses.get_many(["i1-a1"]),
            await stores.scan_jobs.get_latest(),
            await stores.matches.list_recent(),
        ]
        for res in results:
            assert not res.ok
            assert res.error == TENANT_CONTEXT_MISSING
            assert res.kind == ErrorKind.authorization

    asyncio.run(run())


def test_platform_admin_sees_every_tenant():
    stores = _seeded()

    async def run():
        with tenant_scope(platform_admin_context()):
            page = (await stores.institutions.list(1, 50)).value
            ca = (await stores.addresses.list_by_state("ca")).value
        return page, ca

    page, ca = asyncio.run(run())
    assert page.total == 5
    assert {a.tenant_id for a in ca} == {"t1", "t2"}


def test_tenant_reads_are_filtered_and_totals_use_the_filter():
    stores = _seeded()

    async def run():
        with tenant_scope(TenantContext(tenant_id="T1")):
            first = (await stores.institutions.list(1, 2)).value
            second = (await stores.institutions.list(2, 2)).value
            other = await stores.institutions.get("i4")
            counts = (await stores.institutions.get_counts()).value
            explicit_other = (await stores.addresses.list_by_state("CA", tenant_id="t2")).value
        return first, second, other, counts, explicit_other

    first, second, other, counts, explicit_other = asyncio.run(run())
    assert first.total == 3
    assert len(first.items) == 2 and first.has_more
    assert len(second.items) == 1 and not second.has_more
    assert {i.tenant_id for i in first.items + second.items} == {"t1"}
    assert other.kind == ErrorKind.not_found
    assert counts.total == 3
    assert counts.address_count == 3
    # asking for another tenant explicitly still goes through the context filter
    assert explicit_other == []


def test_institution_scoped_context_narrows_reads():
    stores = _seeded()

    async def run():
        with tenant_scope(TenantContext(tenant_id="t1", institution_id="i1")):
            ca = (await stores.addresses.list_by_state("CA")).value
            sibling = await stores.institutions.get("i2")
            many = (await stores.addresses.get_many(["i1-a1", "i2-a1", "i4-a1"])).value
        return ca, sibling, many

    ca, sibling, many = asyncio.run(run())
    assert [a.id for a in ca] == ["i1-a1"]
    assert sibling.kind == ErrorKind.not_found
    assert [a.id for a in many] == ["i1-a1"]


def test_writes_for_another_tenant_are_rejected():
    stores = _seeded()

    async def run():
        with tenant_scope(TenantContext(tenant_id="t1")):
            created = await stores.institutions.create(_institution("t2", "i9"))

            inst = (await stores.institutions.get("i1")).value
            moved = Institution(
                id=inst.id, tenant_id="t2", name=inst.name, time_zone_id=inst.time_zone_id, addresses=inst.addresses
            )
            updated = await stores.institutions.update(moved)

            foreign = (await stores.addresses.list_by_state("CA", institution_id="i1")).value[0]
            smuggled = MemberAddress(
                id="x1", tenant_id="t2", institution_id="i4", address=foreign.address
            )
            bulk = await stores.addresses.upsert_bulk("i4", [smuggled])
        return created, updated, bulk

    created, updated, bulk = asyncio.run(run())
    assert created.kind == ErrorKind.authorization
    assert created.error == "Cannot create institutions for a different tenant."
    assert updated.kind == ErrorKind.authorization
    assert updated.error == "Not authorized to update this institution."
    assert bulk.kind == ErrorKind.authorization
    assert "x1" not in stores.db.addresses


def test_loaded_aggregates_are_copies():
    stores = _seeded()

    async def run():
        with tenant_scope(TenantContext(tenant_id="t1")):
            a = (await stores.addresses.get("i1-a1")).value
            a.deactivate()
            return (await stores.addresses.get("i1-a1")).value

    assert asyncio.run(run()).is_active


def test_scan_jobs_are_visible_only_to_their_cohort_tenants():
    stores = _seeded()

    async def run():
        with tenant_scope(TenantContext(tenant_id="t1", institution_id="i1")):
            job = ScanJob.create("j1", "CA", [TenantInstitutionScope("t1", "i1")]).value
            assert (await stores.scan_jobs.create(job)).ok
            foreign = ScanJob.create("j2", "CA", [TenantInstitutionScope("t2", "i4")]).value
            denied = await stores.scan_jobs.create(foreign)
        with tenant_scope(TenantContext(tenant_id="t2")):
            hidden = await stores.scan_jobs.get("j1")
            latest = (await stores.scan_jobs.get_latest()).value
        return denied, hidden, latest

    denied, hidden, latest = asyncio.run(run())
    assert denied.kind == ErrorKind.authorization
    assert hidden.kind == ErrorKind.not_found
    assert latest is None


def test_context_does_not_leak_between_tasks():
    seen: dict[str, str] = {}

    async def worker(tenant: str) -> None:
        with tenant_scope(TenantContext(tenant_id=tenant)):
            await asyncio.sleep(0)
            await asyncio.sleep(0)
            seen[tenant] = current_tenant().tenant_id

    async def run():
        await asyncio.gather(worker("t1"), worker("t2"), worker("t3"))
        return current_tenant()

    assert asyncio.run(run()) is None
    assert seen == {"t1": "t1", "t2": "t2", "t3": "t3"}


def _job(job_id: str, minutes: int, *cohorts: tuple[str, str]) -> ScanJob:
    return ScanJob(
        id=job_id,
        state_or_province="CA",
        cohorts=[TenantInstitutionScope(t, i) for t, i in cohorts],
        created_at_utc=datetime(2026, 5, 1, 9, 0, tzinfo=timezone.utc) + timedelta(minutes=minutes),
    )


def test_scan_job_list_recent_pages_only_visible_jobs():
    stores = _seeded()

    async def run():
        with tenant_scope(platform_admin_context()):
            for job in (
                _job("j1", 1, ("t1", "i1")),
                _job("j2", 2, ("t2", "i4")),
                _job("j3", 3, ("t1", "i2")),
                _job("j4", 4, ("t1", "i1"), ("t2", "i4")),
            ):
                assert (await stores.scan_jobs.create(job)).ok
        with tenant_scope(TenantContext(tenant_id="t1")):
            first = (await stores.scan_jobs.list_recent(1, 2)).value
            second = (await stores.scan_jobs.list_recent(2, 2)).value
        with tenant_scope(TenantContext(tenant_id="t1", institution_id="i2")):
            narrowed = (await stores.scan_jobs.list_recent()).value
        return first, second, narrowed

    first, second, narrowed = asyncio.run(run())
    assert [j.id for j in first.items] == ["j4", "j3"]
    assert first.total == 3
    assert first.has_more
    assert [j.id for j in second.items] == ["j1"]
    assert [j.id for j in narrowed.items] == ["j3"]
    assert narrowed.page_size == 20
