# member_alert/models.py
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from .db import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# -----------------------------
# Tenancy: institutions + member addresses
# -----------------------------
class InstitutionRow(Base):
    __tablename__ = "institutions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    time_zone_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="Active")  # Active|Suspended|Disabled
    primary_contact_email: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)


class MemberAddressRow(Base):
    __tablename__ = "member_addresses"
    __table_args__ = (
        Index("ix_member_addresses_state_tenant", "state_or_province", "tenant_id"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    institution_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("institutions.id", ondelete="CASCADE"), index=True, nullable=False
    )

    line1: Mapped[str] = mapped_column(String(200), nullable=False)
    line2: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    city: Mapped[str] = mapped_column(String(120), nullable=False)
    # stored upper-cased so state lookups are a plain equality
    state_or_province: Mapped[str] = mapped_column(String(10), nullable=False)
    postal_code: Mapped[str] = mapped_column(String(15), nullable=False)
    country_code: Mapped[str] = mapped_column(String(3), nullable=False, default="US")
    latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    tags_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_matched_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_matched_listing_id: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)


# -----------------------------
# Scans
# -----------------------------
class ScanJobRow(Base):
    __tablename__ = "scan_jobs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    state_or_province: Mapped[str] = mapped_column(String(10), index=True, nullable=False)
    status: Mapped[str] = mapped_column(String(20), index=True, nullable=False, default="Pending")
    # [{"tenant_id": ..., "institution_id": ...}]
    cohorts_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True, nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)


class ScanJobCohortRow(Base):
    """One row per (tenant, institution) a scan job was started for; drives visibility."""

    __tablename__ = "scan_job_cohorts"

    job_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("scan_jobs.id", ondelete="CASCADE"), primary_key=True
    )
    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True, index=True)
    institution_id: Mapped[str] = mapped_column(String(64), primary_key=True)


class ListingMatchRow(Base):
    __tablename__ = "listing_matches"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    listing_id: Mapped[str] = mapped_column(String(120), index=True, nullable=False)
    listing_address_json: Mapped[str] = mapped_column(Text, nullable=False)
    monthly_rent: Mapped[float] = mapped_column(Float, nullable=False)
    listing_url: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    region: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)

    matched_address_ids_json: Mapped[str] = mapped_column(Text, nullable=False)
    matched_tenant_ids_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    matched_institution_ids_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    detected_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)


# The JSON columns above keep the stored order; these two tables make the
# tenancy queryable.
class ListingMatchTenantRow(Base):
    __tablename__ = "listing_match_tenants"

    match_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("listing_matches.id", ondelete="CASCADE"), primary_key=True
    )
    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True, index=True)


class ListingMatchInstitutionRow(Base):
    __tablename__ = "listing_match_institutions"

    match_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("listing_matches.id", ondelete="CASCADE"), primary_key=True
    )
    institution_id: Mapped[str] = mapped_column(String(64), primary_key=True, index=True)


class ScanScheduleRow(Base):
    __tablename__ = "scan_schedules"

    # single-row table
    id: Mapped[str] = mapped_column(String(40), primary_key=True, default="default")
    expression: Mapped[str] = mapped_column(String(120), nullable=False)
    time_zone_id: Mapped[str] = mapped_column(String(64), nullable=False)
    last_run_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)


# -----------------------------
# Audit
# -----------------------------
class AuditEvent(Base):
    __tablename__ = "audit_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(80), index=True, nullable=False)
    tenant_id: Mapped[Optional[str]] = mapped_column(String(64), index=True, nullable=True)
    institution_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    principal: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    correlation_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    properties_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
