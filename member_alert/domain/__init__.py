# member_alert/domain/__init__.py
from .values import Address, DomainValidationError, GeoCoordinate, TenantInstitutionScope
from .institutions import Institution, InstitutionStatus, MemberAddress
from .scans import ScanJob, ScanJobTransitionError, ScanStatus
from .matches import AlertSeverity, ListingMatch, RentCastListing, determine_severity
from .schedule import CronScheduleDefinition

__all__ = [
    "Address",
    "AlertSeverity",
    "CronScheduleDefinition",
    "DomainValidationError",
    "GeoCoordinate",
    "Institution",
    "InstitutionStatus",
    "ListingMatch",
    "MemberAddress",
    "RentCastListing",
    "ScanJob",
    "ScanJobTransitionError",
    "ScanStatus",
    "TenantInstitutionScope",
    "determine_severity",
]
