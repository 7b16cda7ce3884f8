# tests/test_scan_scheduler.py
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

from member_alert.bootstrap import build_container
from member_alert.domain import (
    Address,
    CronScheduleDefinition,
    Institution,
    InstitutionStatus,
    MemberAddress,
    RentCastListing,
    ScanJob,
    ScanStatus,
)
from member_alert.results import ErrorKind, Result
from member_alert.services.audit import InMemoryAuditLogger
from member_alert.services.scan_scheduler import ScanScheduler
from member_alert.stores.memory import build_memory_stores
from member_alert.tenancy import current_tenant, platform_admin_context, tenant_scope

NOW = datetime(2026, 3, 2, 10, 5, tzinfo=timezone.utc)


class RecordingOrchestrator:
    """Stands in for ScanOrchestrator; records the ambient context of every call."""

    def __init__(self, outcomes=None, pause: bool = False) -> None:
        self.calls = []
        self.outcomes = outcomes or {}
        self.pause = pause

    async def start_scan(self, state_or_province, scopes=None):
        ctx = current_tenant()
        if self.pause:
            await asyncio.sleep(0)
            await asyncio.sleep(0)
        after = current_tenant()
        self.calls.append((state_or_province, ctx, after, list(scopes or [])))

        outcome = self.outcomes.get(ctx.tenant_id, "ok")
        if outcome == "raise":
            raise RuntimeError(f"orchestrator exploded for {ctx.tenant_id}")
        if outcome == "fail":
            return Result.failure("Listings request failed: 503", ErrorKind.upstream)
        return Result.success(ScanJob.create(f"job-{ctx.tenant_id}-{state_or_province}", state_or_province).value)


def _institution(tenant, inst_id, addresses, status=InstitutionStatus.active):
    inst = Institution.create(inst_id, tenant, f"{inst_id} name", "UTC", status=status).value
    for aid, state, active in addresses:
        addr = Address(line1=f"{aid} Oak Ave", city="Town", state_or_province=state, postal_code="95814")
        inst.add_address(MemberAddress.create(aid, tenant, inst_id, addr, is_active=active).value)
    return inst


def _stores(*institutions, last_run=None):
    stores = build_memory_stores()

    async def seed():
        with tenant_scope(platform_admin_context()):
            for inst in institutions:
                assert (await stores.institutions.create(inst)).ok
        if last_run is not None:
            stores.db.schedule = CronScheduleDefinition.create("0 */30 * * * *", "UTC", last_run).value

    asyncio.run(seed())
    return stores


def _scheduler(stores, orchestrator, audit=None, parallel=1, page_size=100):
    return ScanScheduler(
        schedules=stores.schedule,
        institutions=stores.institutions,
        orchestrator=orchestrator,
        audit=audit or InMemoryAuditLogger(),
        page_size=page_size,
        max_parallel_cohorts=parallel,
    )


def test_not_due_tick_has_no_side_effects():
    stores = _stores(
        _institution("t1", "i1", [("a1", "CA", True)]),
        last_run=datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc),
    )
    writes_before = stores.db.writes
    orch = RecordingOrchestrator()
    audit = InMemoryAuditLogger()

    summary = asyncio.run(_scheduler(stores, orch, audit).run(NOW))

    assert not summary.due
    assert orch.calls == []
    assert audit.events == []
    assert stores.db.writes == writes_before
    assert stores.db.schedule.last_run_utc == datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)


def test_two_tenants_get_one_non_admin_call_each():
    stores = _stores(
        _institution("t1", "i1", [("a1", "CA", True)]),
        _institution("t2", "i2", [("b1", "CA", True)]),
    )
    orch = RecordingOrchestrator()

    async def run():
        summary = await _scheduler(stores, orch).run(NOW)
        return summary, current_tenant()

    summary, leftover = asyncio.run(run())

    assert summary.due
    assert summary.succeeded == 2
    assert len(orch.calls) == 2
    seen = {}
    for state, ctx, _, scopes in orch.calls:
        assert state == "CA"
        assert not ctx.is_platform_admin
        seen[ctx.tenant_id] = (ctx.institution_id, [s.institution_id for s in scopes])
    assert seen == {"t1": ("i1", ["i1"]), "t2": ("i2", ["i2"])}
    assert leftover is None
    assert stores.db.schedule.last_run_utc == NOW


def test_institutions_of_one_tenant_collapse_into_one_cohort():
    stores = _stores(
        _institution("t1", "i1", [("a1", "CA", True), ("a2", "TX", True)]),
        _institution("t1", "i2", [("a3", "CA", True)]),
    )
    orch = RecordingOrchestrator()

    asyncio.run(_scheduler(stores, orch).run(NOW))

    by_state = {state: (ctx, scopes) for state, ctx, _, scopes in orch.calls}
    assert sorted(by_state) == ["CA", "TX"]
    ca_ctx, ca_scopes = by_state["CA"]
    assert ca_ctx.tenant_id == "t1"
    assert ca_ctx.institution_id is None
    assert sorted(s.institution_id for s in ca_scopes) == ["i1", "i2"]
    tx_ctx, _ = by_state["TX"]
    assert tx_ctx.institution_id == "i1"


def test_zero_cohorts_still_advances_the_schedule():
    stores = _stores(
        _institution("t1", "i1", [("a1", "CA", False)]),
        _institution("t2", "i2", [("b1", "CA", True)], status=InstitutionStatus.suspended),
        _institution("t3", "i3", []),
    )
    orch = RecordingOrchestrator()

    summary = asyncio.run(_scheduler(stores, orch).run(NOW))

    assert summary.due
    assert summary.cohorts == ()
    assert orch.calls == []
    assert stores.db.schedule.last_run_utc == NOW


def test_cohort_failures_are_isolated():
    stores = _stores(
        _institution("t1", "i1", [("a1", "CA", True)]),
        _institution("t2", "i2", [("b1", "CA", True)]),
        _institution("t3", "i3", [("c1", "CA", True)]),
    )
    orch = RecordingOrchestrator(outcomes={"t1": "raise", "t2": "fail"})
    audit = InMemoryAuditLogger()

    summary = asyncio.run(_scheduler(stores, orch, audit).run(NOW))

    assert len(orch.calls) == 3
    assert summary.succeeded == 1
    assert summary.failed == 2
    assert summary.error is None
    assert stores.db.schedule.last_run_utc == NOW

    names = audit.names()
    assert names.count("ScheduledScanTriggered") == 3
    assert "ScheduledScanException" in names
    assert "ScheduledScanFailed" in names
    assert "ScheduledScanSucceeded" in names

    failed = [e for e in audit.events if e.name == "ScheduledScanFailed"][0]
    assert failed.tenant_id == "t2"
    assert not failed.is_platform_admin
    assert failed.properties["targetTenantId"] == "t2"
    assert failed.properties["stateOrProvince"] == "CA"
    assert "503" in failed.properties["error"]


def test_parallel_cohorts_keep_their_own_context():
    stores = _stores(*[_institution(f"t{n}", f"i{n}", [(f"a{n}", "CA", True)]) for n in range(1, 7)])
    orch = RecordingOrchestrator(pause=True)

    async def run():
        await _scheduler(stores, orch, parallel=3).run(NOW)
        return current_tenant()

    assert asyncio.run(run()) is None
    assert len(orch.calls) == 6
    for _, before, after, scopes in orch.calls:
        assert before is after
        assert [s.tenant_id for s in scopes] == [before.tenant_id]


def test_discovery_pages_through_every_institution():
    stores = _stores(*[_institution(f"t{n}", f"i{n}", [(f"a{n}", "NY", True)]) for n in range(1, 6)])
    orch = RecordingOrchestrator()

    asyncio.run(_scheduler(stores, orch, page_size=2).run(NOW))

    assert sorted(ctx.tenant_id for _, ctx, _, _ in orch.calls) == ["t1", "t2", "t3", "t4", "t5"]


class _Listings:
    async def get_listings(self, state_or_province):
        return Result.success(
            [
                RentCastListing(
                    listing_id="L-CA-1",
                    address=Address(line1="9 Rent Rd", city="Town", state_or_province="CA", postal_code="95814"),
                    monthly_rent=2600,
                    listing_url="https://listings.example/L-CA-1",
                )
            ]
        )


class _Publisher:
    def __init__(self) -> None:
        self.matches = []

    async def publish(self, matches):
        self.matches.extend(matches)
        return Result.success()


def test_end_to_end_tick_with_real_orchestrator():
    publisher = _Publisher()
    c = build_container(in_memory=True, listings=_Listings(), publisher=publisher)

    async def run():
        with tenant_scope(platform_admin_context()):
            for inst in (
                _institution("t1", "i1", [("a1", "CA", True)]),
                _institution("t2", "i2", [("b1", "CA", True)]),
            ):
                assert (await c.stores.institutions.create(inst)).ok
        return await c.scheduler.run(NOW)

    summary = asyncio.run(run())

    assert summary.succeeded == 2
    jobs = list(c.stores.db.scan_jobs.values())
    assert len(jobs) == 2
    assert all(j.status == ScanStatus.completed for j in jobs)
    tenancy = sorted(m.matched_tenant_ids for m in c.stores.db.matches.values())
    assert tenancy == [("t1",), ("t2",)]
    assert c.stores.db.addresses["a1"].last_matched_listing_id == "L-CA-1"
    assert len(publisher.matches) == 2
    assert "ScheduledScanSucceeded" in c.audit.names()

    # a second tick a minute later is not due
    again = asyncio.run(c.scheduler.run(NOW + timedelta(minutes=1)))
    assert not again.due
