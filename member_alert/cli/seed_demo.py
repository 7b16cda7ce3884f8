# member_alert/cli/seed_demo.py
from __future__ import annotations

from dataclasses import dataclass, field

from ..bootstrap import Container
from ..results import ErrorKind
from ..tenancy import TenantContext, tenant_scope


@dataclass(frozen=True)
class SeedResult:
    tenant_ids: list[str]
    institution_ids: list[str]
    address_ids: list[str] = field(default_factory=list)
    skipped: int = 0


# tenant, institution, time zone, addresses
DEMO_TENANTS = [
    (
        "demo-credit-union",
        "demo-cu-sacramento",
        "America/Los_Angeles",
        [
            {"line1": "1500 Capitol Mall", "city": "Sacramento", "state_or_province": "CA",
             "postal_code": "95814", "latitude": 38.5763, "longitude": -121.4995},
            {"line1": "820 J St", "city": "Sacramento", "state_or_province": "CA",
             "postal_code": "95814", "latitude": 38.5806, "longitude": -121.4943},
        ],
    ),
    (
        "demo-community-bank",
        "demo-cb-detroit",
        "America/Detroit",
        [
            {"line1": "1 Woodward Ave", "city": "Detroit", "state_or_province": "MI",
             "postal_code": "48226", "latitude": 42.3292, "longitude": -83.0447},
            {"line1": "2500 Mission St", "city": "San Francisco", "state_or_province": "CA",
             "postal_code": "94110", "latitude": 37.7551, "longitude": -122.4189},
        ],
    ),
]


async def seed_demo(container: Container) -> SeedResult:
    """Idempotent: institutions / addresses that already exist are skipped."""
    tenants: list[str] = []
    institutions: list[str] = []
    addresses: list[str] = []
    skipped = 0

    for tenant_id, institution_id, tz, rows in DEMO_TENANTS:
        with tenant_scope(TenantContext(tenant_id=tenant_id, principal_name="seed-demo")):
            svc = container.institution_service
            created = await svc.create_institution(
                f"{tenant_id} main", tz, institution_id=institution_id
            )
            if not created.ok and created.kind != ErrorKind.validation:
                raise RuntimeError(created.error)
            if not created.ok:
                skipped += 1
            tenants.append(tenant_id)
            institutions.append(institution_id)

            for i, row in enumerate(rows, start=1):
                address_id = f"{institution_id}-addr-{i}"
                added = await svc.add_address(institution_id, row, address_id=address_id, tags=["demo"])
                if added.ok:
                    addresses.append(address_id)
                else:
                    skipped += 1

    return SeedResult(tenant_ids=tenants, institution_ids=institutions, address_ids=addresses, skipped=skipped)
