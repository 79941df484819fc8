from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from backoffice.application.container import build_container
from backoffice.config import get_app_paths, load_settings
from backoffice.domain.errors import AppError
from backoffice.logging_config import setup_logging
from backoffice.repositories.unit_of_work import SqliteUnitOfWork

log = logging.getLogger(__name__)


def _parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="backoffice", description="Shop back office ledger and stock tools.")
    p.add_argument("--db", help="Path to the SQLite database (defaults to the app data directory).")
    sub = p.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create or migrate the database schema.")

    t = sub.add_parser("create-tenant", help="Create a tenant and its default chart of accounts.")
    t.add_argument("name")

    c = sub.add_parser("init-chart", help="Create missing default accounts for a tenant.")
    c.add_argument("tenant_id", type=int)

    h = sub.add_parser("health", help="Run integrity and ledger checks.")
    h.add_argument("--tenant", type=int)
    h.add_argument("--export", metavar="DIR", help="Also write a diagnostics zip to DIR.")

    tb = sub.add_parser("trial-balance", help="Print the trial balance for a tenant.")
    tb.add_argument("tenant_id", type=int)

    x = sub.add_parser("export-ledger", help="Export ledger workbook (.xlsx).")
    x.add_argument("tenant_id", type=int)
    x.add_argument("path")

    w = sub.add_parser("wipe-tenant", help="Delete every record of a tenant.")
    w.add_argument("tenant_id", type=int)
    w.add_argument("--yes", action="store_true", help="Confirm the wipe.")
    return p


def run(argv: list[str] | None = None) -> int:
    args = _parser().parse_args(argv)
    settings = load_settings()
    paths = get_app_paths()
    db_path = Path(args.db) if args.db else paths.db_path
    setup_logging(db_path.parent / "logs" if args.db else paths.logs_dir, level=settings.log_level)

    container = build_container(db_path, settings)

    if args.command == "init-db":
        print(f"Schema version {container.repo.schema_version()} at {db_path}")
    elif args.command == "create-tenant":
        with SqliteUnitOfWork(container.repo) as u:
            tenant_id = container.repo.create_tenant(u.cur, args.name)
            container.accounting.initialize_chart_of_accounts(tenant_id, uow=u)
        log.info("tenant_created tenant=%s", tenant_id)
        print(tenant_id)
    elif args.command == "init-chart":
        accounts = container.accounting.initialize_chart_of_accounts(args.tenant_id)
        print(f"{len(accounts)} accounts")
    elif args.command == "health":
        report = container.operations.run_health_check(args.tenant)
        print(f"integrity={report.sqlite_integrity} ok={report.ok}")
        for label, rows in (
            ("unbalanced", report.unbalanced_transactions),
            ("duplicate_returns", report.duplicate_live_returns),
            ("oversold", report.oversold_stock),
            ("cache_drift", report.balance_cache_drift),
        ):
            print(f"{label}={len(rows)}")
        if args.export:
            print(container.operations.export_diagnostics(args.export, args.tenant))
        return 0 if report.ok else 1
    elif args.command == "trial-balance":
        rows = container.accounting.trial_balance(args.tenant_id)
        for r in rows:
            print(f"{r.code:<6} {r.name:<30} {r.debits:>12.2f} {r.credits:>12.2f} {r.balance:>12.2f}")
        print(f"{'':<6} {'Total':<30} {sum(r.debits for r in rows):>12.2f} {sum(r.credits for r in rows):>12.2f}")
    elif args.command == "export-ledger":
        container.reporting.export_ledger_excel(args.tenant_id, args.path)
        print(args.path)
    elif args.command == "wipe-tenant":
        if not args.yes:
            print("Refusing to wipe without --yes.", file=sys.stderr)
            return 2
        counts = container.operations.wipe_tenant_data(args.tenant_id)
        print(f"{sum(counts.values())} rows deleted")
    return 0


def main() -> None:
    try:
        code = run()
    except AppError as e:
        log.warning("command_failed code=%s error=%s", e.code, e)
        print(f"Error: {e}", file=sys.stderr)
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()
