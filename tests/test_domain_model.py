# tests/test_domain_model.py
from __future__ import annotations

import pytest

from member_alert.domain import (
    Address,
    AlertSeverity,
    DomainValidationError,
    GeoCoordinate,
    Institution,
    InstitutionStatus,
    ListingMatch,
    MemberAddress,
    ScanJob,
    ScanJobTransitionError,
    ScanStatus,
    TenantInstitutionScope,
    determine_severity,
)
from member_alert.results import ErrorKind


def _addr(state="CA", postal="95814", coord=None) -> Address:
    return Address(line1="1 Main St", city="Sacramento", state_or_province=state, postal_code=postal, coordinate=coord)


def test_address_normalizes_and_validates():
    a = Address(line1="  1 Main St ", city="Sacramento", state_or_province="ca", postal_code="95814", country_code="us")
    assert a.line1 == "1 Main St"
    assert a.country_code == "US"
    assert a.line2 is None

    with pytest.raises(DomainValidationError):
        Address(line1="", city="x", state_or_province="CA", postal_code="95814")
    with pytest.raises(DomainValidationError):
        Address(line1="1 Main", city="x", state_or_province="CA", postal_code="9!")
    with pytest.raises(DomainValidationError):
        Address(line1="1 Main", city="x", state_or_province="CA", postal_code="95814", country_code="U")


def test_geo_coordinate_range_and_distance():
    with pytest.raises(DomainValidationError):
        GeoCoordinate(91, 0)
    with pytest.raises(DomainValidationError):
        GeoCoordinate(0, -181)

    a = GeoCoordinate(38.5763, -121.4995)
    b = GeoCoordinate(38.5853, -121.4995)
    # 0.009 degrees of latitude is about one kilometre
    assert 0.9 < a.distance_to(b) < 1.1
    assert a.distance_to(a) == 0


def test_scope_has_value_equality():
    assert TenantInstitutionScope("t1", "i1") == TenantInstitutionScope(" t1 ", "i1")
    assert len({TenantInstitutionScope("t1", "i1"), TenantInstitutionScope("t1", "i1")}) == 1
    with pytest.raises(DomainValidationError):
        TenantInstitutionScope("", "i1")


def test_institution_factory_rejects_unknown_time_zone():
    res = Institution.create("i1", "t1", "Inst", "Mars/Olympus_Mons")
    assert not res.ok
    assert res.kind == ErrorKind.validation

    for zone_dir in ("America", "Etc"):
        assert Institution.create("i1", "t1", "Inst", zone_dir).kind == ErrorKind.validation

    ok = Institution.create("i1", "t1", "Inst", "America/Chicago")
    assert ok.ok
    assert ok.value.status == InstitutionStatus.active


def test_institution_add_address_rules():
    inst = Institution.create("i1", "t1", "Inst", "UTC").value
    a1 = MemberAddress.create("a1", "t1", "i1", _addr()).value

    assert inst.add_address(a1).ok
    dup = inst.add_address(MemberAddress.create("a1", "t1", "i1", _addr()).value)
    assert not dup.ok

    other_inst = MemberAddress.create("a2", "t1", "i2", _addr()).value
    assert not inst.add_address(other_inst).ok

    other_tenant = MemberAddress.create("a3", "t2", "i1", _addr()).value
    assert not inst.add_address(other_tenant).ok

    assert inst.remove_address("nope").kind == ErrorKind.not_found
    assert inst.remove_address("a1").ok
    assert inst.addresses == ()


def test_active_states_ignore_inactive_addresses():
    inst = Institution.create("i1", "t1", "Inst", "UTC").value
    ca = MemberAddress.create("a1", "t1", "i1", _addr("ca")).value
    tx = MemberAddress.create("a2", "t1", "i1", _addr("TX", "73301")).value
    tx.deactivate()
    inst.add_address(ca)
    inst.add_address(tx)
    assert inst.active_states() == {"CA"}


def test_member_address_mutators_only_touch_mutable_fields():
    a = MemberAddress.create("a1", "t1", "i1", _addr(), tags=["vip", "VIP", " "]).value
    assert a.tags == frozenset({"vip"})

    a.record_match("L-1", a.created_at_utc)
    a.replace_tags(["new"])
    a.deactivate()
    assert a.last_matched_listing_id == "L-1"
    assert a.tags == frozenset({"new"})
    assert not a.is_active
    assert (a.tenant_id, a.institution_id) == ("t1", "i1")
    with pytest.raises(AttributeError):
        a.tenant_id = "t2"


def test_scan_job_lifecycle_stamps_once():
    job = ScanJob.create("j1", "ca").value
    assert job.state_or_province == "CA"
    assert job.status == ScanStatus.pending
    assert job.started_at_utc is None

    job.mark_running()
    started = job.started_at_utc
    assert started is not None

    job.mark_completed()
    assert job.completed_at_utc is not None
    assert job.started_at_utc == started

    for move in (job.mark_running, job.mark_completed, lambda: job.mark_failed("x"), lambda: job.cancel("x")):
        with pytest.raises(ScanJobTransitionError):
            move()
    assert job.status == ScanStatus.completed


def test_scan_job_rejects_long_state_code():
    res = ScanJob.create("j1", "CALIFORNIA")
    assert not res.ok
    assert res.kind == ErrorKind.validation


def test_scan_job_failed_and_cancelled_record_reason():
    failed = ScanJob.create("j1", "CA").value
    failed.mark_running()
    failed.mark_failed("upstream down")
    assert failed.failure_reason == "upstream down"
    assert failed.is_terminal

    cancelled = ScanJob.create("j2", "CA").value
    cancelled.cancel("Manually cancelled")
    assert cancelled.status == ScanStatus.cancelled
    assert cancelled.completed_at_utc is not None
    assert cancelled.started_at_utc is None


def test_severity_thresholds():
    assert determine_severity(5000) == AlertSeverity.critical
    assert determine_severity(4999.99) == AlertSeverity.warning
    assert determine_severity(2500) == AlertSeverity.warning
    assert determine_severity(2499) == AlertSeverity.informational


def test_listing_match_requires_addresses_and_positive_rent():
    no_addr = ListingMatch.create("m1", "L1", _addr(), 1000, "u", AlertSeverity.informational, [])
    assert not no_addr.ok
    zero_rent = ListingMatch.create("m1", "L1", _addr(), 0, "u", AlertSeverity.informational, ["a1"])
    assert not zero_rent.ok

    m = ListingMatch.create("m1", "L1", _addr(), 1234.567, "u", AlertSeverity.informational, ["a1", "A1"]).value
    assert m.monthly_rent == 1234.57
    assert m.matched_address_ids == ("a1",)
    assert m.matched_tenant_ids == ()
    assert m.matched_institution_ids == ()


def test_set_tenancy_details_replaces_both_sets():
    m = ListingMatch.create("m1", "L1", _addr(), 1000, "u", AlertSeverity.informational, ["a1"]).value
    m.set_tenancy_details(["t1", "T1", "t2"], ["i1", "I1"])
    assert m.matched_tenant_ids == ("t1", "t2")
    assert m.matched_institution_ids == ("i1",)

    m.set_tenancy_details(["t3"], ["i9"])
    assert m.matched_tenant_ids == ("t3",)
    assert m.matched_institution_ids == ("i9",)
