import json
import logging
import sqlite3
import zipfile
from pathlib import Path

import pytest
from conftest import add_customer, make_container, seed_tenant
from openpyxl import load_workbook

from backoffice.config import get_app_paths, load_settings
from backoffice.domain.errors import NotFoundError, ValidationError
from backoffice.domain.models import OrderItem
from backoffice.logging_config import JsonFormatter
from backoffice.main import run
from backoffice.repositories.sqlite_repo import SqliteRepository


def test_migrations_reach_latest_schema(tmp_path: Path):
    repo = SqliteRepository(tmp_path / "m.db")
    repo.init_db()
    repo.init_db()

    assert repo.schema_version() == 3
    conn = repo._conn()
    cols = {r[1] for r in conn.execute("PRAGMA table_info(transactions)").fetchall()}
    indexes = {r[1] for r in conn.execute("PRAGMA index_list(transactions)").fetchall()}
    invoice_cols = {r[1] for r in conn.execute("PRAGMA table_info(purchase_invoices)").fetchall()}
    tables = {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()}
    conn.close()
    assert {"status", "reverses_transaction_id", "superseded_by_id"} <= cols
    assert "ux_transactions_live_return" in indexes
    assert "ux_transactions_order_return" not in indexes
    assert "transaction_id" in invoice_cols
    assert "supplier_advance_usages" in tables


class FailingMigrationRepo(SqliteRepository):
    def _migration_v2_append_only_ledger(self, cur):
        raise sqlite3.OperationalError("boom")


def test_failed_migration_restores_backup(tmp_path: Path):
    db = tmp_path / "legacy.db"
    conn = sqlite3.connect(db)
    conn.execute("CREATE TABLE marker (v TEXT)")
    conn.execute("INSERT INTO marker VALUES ('keep')")
    conn.commit()
    conn.close()

    with pytest.raises(RuntimeError, match="Original database restored from automatic backup"):
        FailingMigrationRepo(db).init_db()

    assert list(tmp_path.glob("legacy.pre_migration_*.bak"))
    conn = sqlite3.connect(db)
    assert conn.execute("SELECT v FROM marker").fetchall() == [("keep",)]
    assert conn.execute("SELECT name FROM sqlite_master WHERE name='accounts'").fetchall() == []
    conn.close()


def test_health_check_is_clean_then_flags_problems(tmp_path: Path):
    c = make_container(tmp_path)
    t = seed_tenant(c)
    pid = c.inventory.add_product(t, "Mug", quantity=5)
    c.orders.create_order(t, None, [OrderItem(quantity=5, product_id=pid)], status="CONFIRMED")

    report = c.operations.run_health_check(t)
    assert report.ok
    assert report.sqlite_integrity == "ok"

    conn = c.repo._conn()
    conn.execute("UPDATE products SET current_quantity=2 WHERE id=?", (pid,))
    conn.execute("UPDATE accounts SET balance=12 WHERE tenant_id=? AND code='1000'", (t,))
    conn.commit()
    conn.close()

    report = c.operations.run_health_check(t)
    assert not report.ok
    assert report.oversold_stock[0]["allocated"] == 5
    assert report.oversold_stock[0]["current"] == 2
    assert report.balance_cache_drift == [("1000", 12.0, 0.0)]
    assert report.unbalanced_transactions == []
    assert report.duplicate_live_returns == []


def test_export_diagnostics_bundles_logs_and_report(tmp_path: Path):
    c = make_container(tmp_path)
    seed_tenant(c)
    logs = tmp_path / "logs"
    logs.mkdir(exist_ok=True)
    (logs / "ledger.log").write_text('{"message": "x"}\n', encoding="utf-8")

    path = c.operations.export_diagnostics(tmp_path / "out")

    with zipfile.ZipFile(path) as zf:
        names = set(zf.namelist())
        report = json.loads(zf.read("health_report.json"))
    assert "logs/ledger.log" in names
    assert report["ok"] is True
    assert report["logs_count"] == 1


def test_wipe_tenant_only_touches_that_tenant(tmp_path: Path):
    c = make_container(tmp_path)
    t1 = seed_tenant(c, "A")
    t2 = seed_tenant(c, "B")
    for t in (t1, t2):
        add_customer(c, t)
        sup = c.suppliers.create_supplier(t, "Acme", opening_balance=10.0)
        inv = c.purchases.create_purchase_invoice(t, "2024-01-10", [{"name": "Shirt", "quantity": 2, "purchase_price": 5.0}], supplier_id=sup)
        c.returns.create_supplier_return(
            t, "2024-01-11", [{"product_name": "Shirt", "quantity": 1, "purchase_price": 5.0}], "REDUCE_AP", purchase_invoice_id=inv
        )

    counts = c.operations.wipe_tenant_data(t1)

    assert counts["returns"] == 1
    assert counts["transactions"] == 3
    assert c.repo.list_products(t1) == []
    assert c.repo.list_accounts(t1) == []
    assert len(c.repo.list_products(t2)) == 1
    assert c.accounting.list_transactions(t2)["pagination"]["total"] == 3

    with pytest.raises(NotFoundError):
        c.operations.wipe_tenant_data(9999)


def test_ledger_workbook_export(tmp_path: Path):
    c = make_container(tmp_path)
    t = seed_tenant(c)
    sup = c.suppliers.create_supplier(t, "Acme")
    c.purchases.create_purchase_invoice(t, "2024-01-10", [{"name": "Shirt", "quantity": 3, "purchase_price": 10.0}], supplier_id=sup)
    out = tmp_path / "ledger.xlsx"

    c.reporting.export_ledger_excel(t, str(out))

    wb = load_workbook(out)
    assert wb.sheetnames == ["Trial Balance", "Transactions", "Supplier Balances"]
    assert wb["Transactions"].max_row == 3
    assert wb["Supplier Balances"]["A2"].value == "Acme"
    assert wb["Supplier Balances"]["E2"].value == 30.0


def test_settings_from_environment(monkeypatch, tmp_path: Path):
    monkeypatch.setenv("BACKOFFICE_HOME", str(tmp_path / "home"))
    monkeypatch.setenv("BACKOFFICE_BALANCE_TOLERANCE", "0.05")
    monkeypatch.setenv("BACKOFFICE_LOG_LEVEL", "debug")

    paths = get_app_paths()
    settings = load_settings()

    assert paths.db_path == tmp_path / "home" / "backoffice.db"
    assert paths.logs_dir.exists()
    assert settings.balance_tolerance == 0.05
    assert settings.log_level == "DEBUG"

    monkeypatch.setenv("BACKOFFICE_BUSY_TIMEOUT", "soon")
    with pytest.raises(ValidationError, match="BACKOFFICE_BUSY_TIMEOUT"):
        load_settings()


def test_json_formatter_emits_one_object_per_record():
    record = logging.LogRecord("backoffice.ledger", logging.ERROR, __file__, 1, "transaction_unbalanced id=%s", (7,), None)
    payload = json.loads(JsonFormatter().format(record))
    assert payload["logger"] == "backoffice.ledger"
    assert payload["level"] == "ERROR"
    assert payload["message"] == "transaction_unbalanced id=7"


def test_cli_commands(monkeypatch, tmp_path: Path, capsys):
    monkeypatch.setenv("BACKOFFICE_HOME", str(tmp_path / "home"))
    db = str(tmp_path / "cli.db")

    assert run(["--db", db, "init-db"]) == 0
    assert run(["--db", db, "create-tenant", "Shop"]) == 0
    tenant_id = capsys.readouterr().out.strip().splitlines()[-1]

    assert run(["--db", db, "trial-balance", tenant_id]) == 0
    assert "Cash" in capsys.readouterr().out
    assert run(["--db", db, "health", "--tenant", tenant_id]) == 0
    assert run(["--db", db, "wipe-tenant", tenant_id]) == 2
    assert run(["--db", db, "wipe-tenant", tenant_id, "--yes"]) == 0
