# member_alert/cli/__main__.py
from __future__ import annotations

import argparse
import asyncio
import json

from ..bootstrap import build_container
from ..db import init_db
from ..logging_config import configure_logging
from ..services.retention import purge_stale_matches
from ..tenancy import TenantContext, platform_admin_context, tenant_scope
from .seed_demo import seed_demo


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, default=str))


def _tenant_ctx(args) -> TenantContext:
    if not args.tenant:
        return platform_admin_context()
    return TenantContext(tenant_id=args.tenant, institution_id=args.institution, principal_name="cli")


async def _run(args) -> dict:
    container = build_container()

    if args.cmd == "seed-demo":
        out = await seed_demo(container)
        return {
            "ok": True,
            "tenant_ids": out.tenant_ids,
            "institution_ids": out.institution_ids,
            "address_ids": out.address_ids,
            "skipped": out.skipped,
        }

    if args.cmd == "tick":
        summary = await container.scheduler.run()
        return {"ok": summary.error is None, **summary.as_dict()}

    if args.cmd == "status":
        with tenant_scope(_tenant_ctx(args)):
            res = await container.orchestrator.get_scan_status()
        if not res.ok:
            return {"ok": False, "error": res.error}
        return {"ok": True, **res.value.as_dict()}

    if args.cmd == "set-schedule":
        res = await container.orchestrator.schedule_scan(args.expression, args.time_zone)
        if not res.ok:
            return {"ok": False, "error": res.error}
        return {"ok": True, **res.value.as_dict()}

    if args.cmd == "purge":
        with tenant_scope(platform_admin_context()):
            res = await purge_stale_matches(container.stores.matches, args.days)
        if not res.ok:
            return {"ok": False, "error": res.error}
        return {"ok": True, "purged": res.value}

    raise SystemExit(f"unknown command {args.cmd}")


def main() -> None:
    p = argparse.ArgumentParser(prog="member-alert")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("init-db")
    sub.add_parser("seed-demo")
    sub.add_parser("tick")

    s = sub.add_parser("status")
    s.add_argument("--tenant", default=None)
    s.add_argument("--institution", default=None)

    sch = sub.add_parser("set-schedule")
    sch.add_argument("expression")
    sch.add_argument("--time-zone", default="UTC")

    pg = sub.add_parser("purge")
    pg.add_argument("--days", type=int, default=None)

    args = p.parse_args()
    configure_logging()

    if args.cmd == "init-db":
        init_db()
        _print({"ok": True})
        return

    _print(asyncio.run(_run(args)))


if __name__ == "__main__":
    main()
