from __future__ import annotations

import json
import logging
import shutil
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterable, Iterator, Optional

from backoffice.domain.legacy import normalize_legacy_items
from backoffice.domain.models import (
    Account,
    Customer,
    Order,
    OrderItem,
    Payment,
    Product,
    ProductVariant,
    PurchaseInvoice,
    PurchaseItem,
    Return,
    ReturnItem,
    StockMovement,
    Supplier,
    Transaction,
    TransactionLine,
    TransactionMeta,
)

log = logging.getLogger("backoffice.repo")

_NUMBERED = {
    "transactions": "transaction_number",
    "returns": "return_number",
    "payments": "payment_number",
    "purchase_invoices": "invoice_number",
    "orders": "order_number",
}

_TXN_COLUMNS = """
    id, tenant_id, transaction_number, date, description, status,
    order_id, order_return_id, purchase_invoice_id, payment_id,
    reverses_transaction_id, superseded_by_id
"""

_ORDER_COLUMNS = """
    id, tenant_id, customer_id, order_number, status,
    selected_products, product_quantities, product_prices,
    shipping_charges, cod_fee, cod_fee_paid_by, refund_amount, payment_amount
"""

_RETURN_COLUMNS = """
    id, tenant_id, return_number, return_type, status, return_date, total_amount,
    purchase_invoice_id, order_id, return_handling_method, refund_account_id,
    refund_amount, reason, notes
"""

_PAYMENT_COLUMNS = """
    id, tenant_id, payment_number, date, type, amount, payment_method,
    customer_id, supplier_id, order_id, purchase_invoice_id, transaction_id
"""


def _now_iso() -> str:
    return datetime.now().replace(microsecond=0).isoformat(sep=" ")


def _opt_int(v) -> Optional[int]:
    return int(v) if v is not None else None


class SqliteRepository:
    def __init__(self, db_path: Path | str, busy_timeout: float = 10.0):
        self.db_path = str(db_path)
        self.busy_timeout = float(busy_timeout)

    def _conn(self, timeout: float | None = None, autocommit: bool = False) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.db_path,
            timeout=self.busy_timeout if timeout is None else float(timeout),
            isolation_level=None if autocommit else "",
        )
        conn.execute("PRAGMA foreign_keys = ON;")
        return conn

    @contextmanager
    def _reading(self, cur: sqlite3.Cursor | None) -> Iterator[sqlite3.Cursor]:
        if cur is not None:
            yield cur
            return
        conn = self._conn()
        try:
            yield conn.cursor()
        finally:
            conn.close()

    def init_db(self) -> None:
        self.run_migrations()

    def run_migrations(self) -> None:
        conn = self._conn()
        backup_path = self._create_pre_migration_backup()
        try:
            cur = conn.cursor()
            cur.execute("BEGIN")
            cur.execute("CREATE TABLE IF NOT EXISTS schema_migrations (version INTEGER PRIMARY KEY, applied_at TEXT NOT NULL)")
            cur.execute("SELECT COALESCE(MAX(version), 0) FROM schema_migrations")
            current_version = int(cur.fetchone()[0])

            migrations = [
                (1, self._migration_v1_base),
                (2, self._migration_v2_append_only_ledger),
                (3, self._migration_v3_advances_and_invoice_entries),
            ]

            for version, migration in migrations:
                if version <= current_version:
                    continue
                migration(cur)
                cur.execute(
                    "INSERT INTO schema_migrations (version, applied_at) VALUES (?, datetime('now'))",
                    (version,),
                )
                log.info("migration_applied version=%s db=%s", version, self.db_path)
            conn.commit()
        except Exception as exc:
            conn.rollback()
            self._restore_pre_migration_backup(backup_path)
            raise RuntimeError(
                "Database migration failed. Original database restored from automatic backup."
            ) from exc
        finally:
            conn.close()

    def schema_version(self) -> int:
        with self._reading(None) as cur:
            cur.execute("SELECT COALESCE(MAX(version), 0) FROM schema_migrations")
            return int(cur.fetchone()[0])

    def _create_pre_migration_backup(self) -> Path | None:
        db_file = Path(self.db_path)
        if not db_file.exists() or db_file.stat().st_size == 0:
            return None
        backup_file = db_file.with_name(f"{db_file.stem}.pre_migration_{datetime.now().strftime('%Y%m%d%H%M%S')}.bak")
        shutil.copy2(db_file, backup_file)
        return backup_file

    def _restore_pre_migration_backup(self, backup_path: Path | None) -> None:
        if backup_path is None or not backup_path.exists():
            return
        shutil.copy2(backup_path, self.db_path)

    def _migration_v1_base(self, cur: sqlite3.Cursor) -> None:
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS tenants (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                created_at TEXT NOT NULL DEFAULT (datetime('now'))
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS accounts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                tenant_id INTEGER NOT NULL REFERENCES tenants(id),
                code TEXT NOT NULL,
                name TEXT NOT NULL,
                type TEXT NOT NULL CHECK(type IN ('ASSET','LIABILITY','EQUITY','REVENUE','EXPENSE')),
                subtype TEXT,
                balance REAL NOT NULL DEFAULT 0,
                UNIQUE(tenant_id, code)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS transactions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                tenant_id INTEGER NOT NULL REFERENCES tenants(id),
                transaction_number TEXT NOT NULL,
                date TEXT NOT NULL,
                description TEXT NOT NULL,
                order_id INTEGER,
                order_return_id INTEGER,
                purchase_invoice_id INTEGER,
                payment_id INTEGER,
                created_at TEXT NOT NULL DEFAULT (datetime('now')),
                UNIQUE(tenant_id, transaction_number)
            )
            """
        )
        cur.execute(
            "CREATE UNIQUE INDEX IF NOT EXISTS ux_transactions_order_return ON transactions(tenant_id, order_return_id)"
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS transaction_lines (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                transaction_id INTEGER NOT NULL,
                account_id INTEGER NOT NULL,
                debit REAL NOT NULL DEFAULT 0 CHECK(debit >= 0),
                credit REAL NOT NULL DEFAULT 0 CHECK(credit >= 0),
                CHECK(NOT (debit > 0 AND credit > 0)),
                FOREIGN KEY(transaction_id) REFERENCES transactions(id) ON DELETE CASCADE,
                FOREIGN KEY(account_id) REFERENCES accounts(id)
            )
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS ix_lines_account ON transaction_lines(account_id)")
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS products (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                tenant_id INTEGER NOT NULL REFERENCES tenants(id),
                name TEXT NOT NULL,
                sku TEXT,
                current_quantity INTEGER NOT NULL DEFAULT 0 CHECK(current_quantity >= 0),
                last_purchase_price REAL NOT NULL DEFAULT 0,
                retail_price REAL NOT NULL DEFAULT 0,
                is_active INTEGER NOT NULL DEFAULT 1 CHECK(is_active IN (0,1))
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS product_variants (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                product_id INTEGER NOT NULL,
                color TEXT,
                size TEXT,
                sku TEXT,
                current_quantity INTEGER NOT NULL DEFAULT 0 CHECK(current_quantity >= 0),
                is_active INTEGER NOT NULL DEFAULT 1 CHECK(is_active IN (0,1)),
                FOREIGN KEY(product_id) REFERENCES products(id) ON DELETE CASCADE
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS customers (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                tenant_id INTEGER NOT NULL REFERENCES tenants(id),
                name TEXT NOT NULL,
                opening_balance REAL NOT NULL DEFAULT 0,
                advance_balance REAL NOT NULL DEFAULT 0
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS suppliers (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                tenant_id INTEGER NOT NULL REFERENCES tenants(id),
                name TEXT NOT NULL,
                balance REAL NOT NULL DEFAULT 0
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS orders (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                tenant_id INTEGER NOT NULL REFERENCES tenants(id),
                customer_id INTEGER REFERENCES customers(id),
                order_number TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'PENDING'
                    CHECK(status IN ('PENDING','CONFIRMED','DISPATCHED','COMPLETED','CANCELLED')),
                selected_products TEXT,
                product_quantities TEXT,
                product_prices TEXT,
                shipping_charges REAL NOT NULL DEFAULT 0,
                cod_fee REAL NOT NULL DEFAULT 0,
                cod_fee_paid_by TEXT,
                refund_amount REAL NOT NULL DEFAULT 0,
                payment_amount REAL NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL DEFAULT (datetime('now')),
                UNIQUE(tenant_id, order_number)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS order_items (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                order_id INTEGER NOT NULL,
                product_id INTEGER,
                product_variant_id INTEGER,
                product_name TEXT,
                quantity INTEGER NOT NULL CHECK(quantity > 0),
                price REAL NOT NULL DEFAULT 0,
                FOREIGN KEY(order_id) REFERENCES orders(id) ON DELETE CASCADE
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS purchase_invoices (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                tenant_id INTEGER NOT NULL REFERENCES tenants(id),
                supplier_id INTEGER REFERENCES suppliers(id),
                invoice_number TEXT NOT NULL,
                invoice_date TEXT NOT NULL,
                total_amount REAL NOT NULL DEFAULT 0 CHECK(total_amount >= 0),
                payment_amount REAL NOT NULL DEFAULT 0,
                notes TEXT,
                is_deleted INTEGER NOT NULL DEFAULT 0,
                UNIQUE(tenant_id, invoice_number)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS purchase_items (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                purchase_invoice_id INTEGER NOT NULL,
                product_id INTEGER REFERENCES products(id),
                product_variant_id INTEGER REFERENCES product_variants(id),
                name TEXT NOT NULL,
                sku TEXT,
                quantity INTEGER NOT NULL CHECK(quantity > 0),
                purchase_price REAL NOT NULL CHECK(purchase_price >= 0),
                FOREIGN KEY(purchase_invoice_id) REFERENCES purchase_invoices(id) ON DELETE CASCADE
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS returns (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                tenant_id INTEGER NOT NULL REFERENCES tenants(id),
                return_number TEXT NOT NULL,
                return_type TEXT NOT NULL CHECK(return_type IN ('SUPPLIER','CUSTOMER_FULL','CUSTOMER_PARTIAL')),
                status TEXT NOT NULL DEFAULT 'PENDING'
                    CHECK(status IN ('PENDING','APPROVED','REJECTED','PROCESSED')),
                purchase_invoice_id INTEGER REFERENCES purchase_invoices(id),
                order_id INTEGER REFERENCES orders(id),
                return_date TEXT NOT NULL,
                total_amount REAL NOT NULL DEFAULT 0,
                return_handling_method TEXT CHECK(return_handling_method IN ('REDUCE_AP','REFUND')),
                refund_account_id INTEGER REFERENCES accounts(id),
                refund_amount REAL NOT NULL DEFAULT 0,
                reason TEXT,
                notes TEXT,
                is_deleted INTEGER NOT NULL DEFAULT 0,
                UNIQUE(tenant_id, return_number)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS return_items (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                return_id INTEGER NOT NULL,
                product_name TEXT NOT NULL,
                product_variant_id INTEGER,
                sku TEXT,
                quantity INTEGER NOT NULL CHECK(quantity > 0),
                purchase_price REAL NOT NULL CHECK(purchase_price >= 0),
                reason TEXT,
                FOREIGN KEY(return_id) REFERENCES returns(id) ON DELETE CASCADE
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS payments (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                tenant_id INTEGER NOT NULL REFERENCES tenants(id),
                payment_number TEXT NOT NULL,
                date TEXT NOT NULL,
                type TEXT NOT NULL CHECK(type IN ('CUSTOMER_PAYMENT','SUPPLIER_PAYMENT')),
                amount REAL NOT NULL CHECK(amount > 0),
                payment_method TEXT NOT NULL,
                customer_id INTEGER,
                supplier_id INTEGER,
                order_id INTEGER,
                purchase_invoice_id INTEGER,
                transaction_id INTEGER,
                UNIQUE(tenant_id, payment_number)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS stock_movements (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                tenant_id INTEGER NOT NULL REFERENCES tenants(id),
                datetime TEXT NOT NULL,
                product_id INTEGER,
                product_variant_id INTEGER,
                action TEXT NOT NULL CHECK(action IN ('INCREASE','DECREASE')),
                quantity INTEGER NOT NULL,
                old_quantity INTEGER NOT NULL,
                new_quantity INTEGER NOT NULL CHECK(new_quantity >= 0),
                reason TEXT NOT NULL,
                reference TEXT
            )
            """
        )

    def _migration_v2_append_only_ledger(self, cur: sqlite3.Cursor) -> None:
        self._add_column_if_missing(
            cur, "transactions", "status", "TEXT NOT NULL DEFAULT 'POSTED' CHECK(status IN ('POSTED','SUPERSEDED'))"
        )
        self._add_column_if_missing(cur, "transactions", "reverses_transaction_id", "INTEGER REFERENCES transactions(id)")
        self._add_column_if_missing(cur, "transactions", "superseded_by_id", "INTEGER REFERENCES transactions(id)")

        # corrections keep the retired row, so uniqueness only holds for live rows
        cur.execute("DROP INDEX IF EXISTS ux_transactions_order_return")
        cur.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS ux_transactions_live_return
            ON transactions(tenant_id, order_return_id)
            WHERE order_return_id IS NOT NULL AND status = 'POSTED'
            """
        )

    def _migration_v3_advances_and_invoice_entries(self, cur: sqlite3.Cursor) -> None:
        # supplier advance applied by a payment; the advance part has no payments row
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS supplier_advance_usages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                tenant_id INTEGER NOT NULL REFERENCES tenants(id),
                supplier_id INTEGER NOT NULL REFERENCES suppliers(id),
                transaction_id INTEGER NOT NULL REFERENCES transactions(id),
                payment_id INTEGER REFERENCES payments(id),
                amount REAL NOT NULL CHECK(amount > 0),
                date TEXT NOT NULL
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS ix_advance_usages_supplier ON supplier_advance_usages(tenant_id, supplier_id)"
        )
        self._add_column_if_missing(cur, "purchase_invoices", "transaction_id", "INTEGER")
        cur.execute(
            """
            UPDATE purchase_invoices SET transaction_id = (
                SELECT t.id FROM transactions t
                WHERE t.purchase_invoice_id = purchase_invoices.id
                  AND t.status = 'POSTED' AND t.payment_id IS NULL
                  AND t.order_return_id IS NULL AND t.reverses_transaction_id IS NULL
                  AND t.description LIKE 'Purchase invoice %'
                ORDER BY t.id LIMIT 1
            )
            WHERE transaction_id IS NULL
            """
        )

    def _add_column_if_missing(self, cur: sqlite3.Cursor, table: str, column: str, definition: str) -> None:
        cur.execute(f"PRAGMA table_info({table})")
        cols = {str(r[1]) for r in cur.fetchall()}
        if column in cols:
            return
        cur.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")

    # ---------- Numbering ----------
    def next_number(self, cur: sqlite3.Cursor, table: str, tenant_id: int, prefix: str, width: int = 4) -> str:
        column = _NUMBERED[table]
        cur.execute(
            f"SELECT {column} FROM {table} WHERE tenant_id=? AND {column} LIKE ? ORDER BY id DESC",
            (int(tenant_id), f"{prefix}%"),
        )
        highest = 0
        for (value,) in cur.fetchall():
            tail = str(value)[len(prefix):]
            if tail.isdigit():
                highest = max(highest, int(tail))
        return f"{prefix}{highest + 1:0{width}d}"

    # ---------- Tenants ----------
    def create_tenant(self, cur: sqlite3.Cursor, name: str) -> int:
        cur.execute("INSERT INTO tenants (name) VALUES (?)", (name,))
        return int(cur.lastrowid)

    def tenant_exists(self, tenant_id: int, cur: sqlite3.Cursor | None = None) -> bool:
        with self._reading(cur) as c:
            c.execute("SELECT 1 FROM tenants WHERE id=?", (int(tenant_id),))
            return c.fetchone() is not None

    def list_tenant_ids(self, cur: sqlite3.Cursor | None = None) -> list[int]:
        with self._reading(cur) as c:
            c.execute("SELECT id FROM tenants ORDER BY id")
            return [int(r[0]) for r in c.fetchall()]

    # ---------- Accounts ----------
    @staticmethod
    def _account(r) -> Account:
        return Account(
            id=int(r[0]),
            tenant_id=int(r[1]),
            code=str(r[2]),
            name=str(r[3]),
            type=str(r[4]),
            subtype=(str(r[5]) if r[5] is not None else None),
            balance=float(r[6]),
        )

    def get_account(self, tenant_id: int, account_id: int, cur: sqlite3.Cursor | None = None) -> Optional[Account]:
        with self._reading(cur) as c:
            c.execute(
                "SELECT id, tenant_id, code, name, type, subtype, balance FROM accounts WHERE tenant_id=? AND id=?",
                (int(tenant_id), int(account_id)),
            )
            r = c.fetchone()
        return self._account(r) if r else None

    def get_account_by_code(self, tenant_id: int, code: str, cur: sqlite3.Cursor | None = None) -> Optional[Account]:
        with self._reading(cur) as c:
            c.execute(
                "SELECT id, tenant_id, code, name, type, subtype, balance FROM accounts WHERE tenant_id=? AND code=?",
                (int(tenant_id), str(code)),
            )
            r = c.fetchone()
        return self._account(r) if r else None

    def insert_account(
        self, cur: sqlite3.Cursor, tenant_id: int, code: str, name: str, type_: str, subtype: Optional[str]
    ) -> int:
        cur.execute(
            "INSERT INTO accounts (tenant_id, code, name, type, subtype) VALUES (?, ?, ?, ?, ?)",
            (int(tenant_id), str(code), name, type_, subtype),
        )
        return int(cur.lastrowid)

    def list_accounts(
        self,
        tenant_id: int,
        type_: Optional[str] = None,
        subtypes: Iterable[str] | None = None,
        cur: sqlite3.Cursor | None = None,
    ) -> list[Account]:
        sql = "SELECT id, tenant_id, code, name, type, subtype, balance FROM accounts WHERE tenant_id=?"
        params: list = [int(tenant_id)]
        if type_:
            sql += " AND type=?"
            params.append(type_)
        if subtypes is not None:
            subtypes = list(subtypes)
            sql += f" AND subtype IN ({','.join('?' for _ in subtypes)})"
            params.extend(subtypes)
        sql += " ORDER BY code"
        with self._reading(cur) as c:
            c.execute(sql, params)
            return [self._account(r) for r in c.fetchall()]

    def adjust_account_balance(self, cur: sqlite3.Cursor, account_id: int, delta: float) -> None:
        cur.execute("UPDATE accounts SET balance = ROUND(balance + ?, 2) WHERE id=?", (float(delta), int(account_id)))

    def set_account_balance(self, cur: sqlite3.Cursor, account_id: int, balance: float) -> None:
        cur.execute("UPDATE accounts SET balance = ? WHERE id=?", (round(float(balance), 2), int(account_id)))

    def account_line_totals(self, account_id: int, cur: sqlite3.Cursor | None = None) -> tuple[float, float]:
        with self._reading(cur) as c:
            c.execute(
                "SELECT COALESCE(SUM(debit), 0), COALESCE(SUM(credit), 0) FROM transaction_lines WHERE account_id=?",
                (int(account_id),),
            )
            d, cr = c.fetchone()
        return round(float(d), 2), round(float(cr), 2)

    def trial_balance_rows(self, tenant_id: int, cur: sqlite3.Cursor | None = None) -> list[tuple]:
        with self._reading(cur) as c:
            c.execute(
                """
                SELECT a.id, a.code, a.name, a.type, a.subtype,
                       COALESCE(SUM(l.debit), 0), COALESCE(SUM(l.credit), 0)
                FROM accounts a
                LEFT JOIN transaction_lines l ON l.account_id = a.id
                WHERE a.tenant_id=?
                GROUP BY a.id
                ORDER BY a.code
                """,
                (int(tenant_id),),
            )
            return c.fetchall()

    # ---------- Transactions ----------
    def insert_transaction(self, cur: sqlite3.Cursor, number: str, meta: TransactionMeta) -> int:
        cur.execute(
            """
            INSERT INTO transactions (
                tenant_id, transaction_number, date, description, order_id, order_return_id,
                purchase_invoice_id, payment_id, reverses_transaction_id, status
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 'POSTED')
            """,
            (
                int(meta.tenant_id),
                number,
                meta.date,
                meta.description,
                meta.order_id,
                meta.order_return_id,
                meta.purchase_invoice_id,
                meta.payment_id,
                meta.reverses_transaction_id,
            ),
        )
        return int(cur.lastrowid)

    def insert_transaction_line(self, cur: sqlite3.Cursor, transaction_id: int, account_id: int, debit: float, credit: float) -> int:
        cur.execute(
            "INSERT INTO transaction_lines (transaction_id, account_id, debit, credit) VALUES (?, ?, ?, ?)",
            (int(transaction_id), int(account_id), float(debit), float(credit)),
        )
        return int(cur.lastrowid)

    def _transaction(self, c: sqlite3.Cursor, r) -> Transaction:
        c.execute(
            "SELECT id, transaction_id, account_id, debit, credit FROM transaction_lines WHERE transaction_id=? ORDER BY id",
            (int(r[0]),),
        )
        lines = tuple(
            TransactionLine(id=int(l[0]), transaction_id=int(l[1]), account_id=int(l[2]), debit=float(l[3]), credit=float(l[4]))
            for l in c.fetchall()
        )
        return Transaction(
            id=int(r[0]),
            tenant_id=int(r[1]),
            transaction_number=str(r[2]),
            date=str(r[3]),
            description=str(r[4]),
            status=str(r[5]),
            order_id=_opt_int(r[6]),
            order_return_id=_opt_int(r[7]),
            purchase_invoice_id=_opt_int(r[8]),
            payment_id=_opt_int(r[9]),
            reverses_transaction_id=_opt_int(r[10]),
            superseded_by_id=_opt_int(r[11]),
            lines=lines,
        )

    def get_transaction(self, tenant_id: int, transaction_id: int, cur: sqlite3.Cursor | None = None) -> Optional[Transaction]:
        with self._reading(cur) as c:
            c.execute(f"SELECT {_TXN_COLUMNS} FROM transactions WHERE tenant_id=? AND id=?", (int(tenant_id), int(transaction_id)))
            r = c.fetchone()
            return self._transaction(c, r) if r else None

    def get_live_transaction_for_return(self, tenant_id: int, return_id: int, cur: sqlite3.Cursor | None = None) -> Optional[Transaction]:
        with self._reading(cur) as c:
            c.execute(
                f"SELECT {_TXN_COLUMNS} FROM transactions WHERE tenant_id=? AND order_return_id=? AND status='POSTED'",
                (int(tenant_id), int(return_id)),
            )
            r = c.fetchone()
            return self._transaction(c, r) if r else None

    def get_live_transaction_for_payment(self, tenant_id: int, payment_id: int, cur: sqlite3.Cursor | None = None) -> Optional[Transaction]:
        with self._reading(cur) as c:
            c.execute(
                f"""
                SELECT {_TXN_COLUMNS} FROM transactions
                WHERE tenant_id=? AND payment_id=? AND status='POSTED' AND reverses_transaction_id IS NULL
                ORDER BY id DESC LIMIT 1
                """,
                (int(tenant_id), int(payment_id)),
            )
            r = c.fetchone()
            return self._transaction(c, r) if r else None

    def retire_transaction(self, cur: sqlite3.Cursor, transaction_id: int) -> None:
        cur.execute("UPDATE transactions SET status='SUPERSEDED' WHERE id=? AND status='POSTED'", (int(transaction_id),))
        if cur.rowcount != 1:
            raise sqlite3.IntegrityError(f"transaction {transaction_id} is not live")

    def link_replacement(self, cur: sqlite3.Cursor, transaction_id: int, replacement_id: int) -> None:
        cur.execute("UPDATE transactions SET superseded_by_id=? WHERE id=?", (int(replacement_id), int(transaction_id)))

    def set_transaction_payment(self, cur: sqlite3.Cursor, transaction_id: int, payment_id: int) -> None:
        cur.execute("UPDATE transactions SET payment_id=? WHERE id=?", (int(payment_id), int(transaction_id)))

    def list_transactions(
        self,
        tenant_id: int,
        limit: int,
        offset: int,
        from_date: Optional[str] = None,
        to_date: Optional[str] = None,
        order_id: Optional[int] = None,
        account_id: Optional[int] = None,
        include_superseded: bool = True,
        cur: sqlite3.Cursor | None = None,
    ) -> tuple[list[Transaction], int]:
        where = ["t.tenant_id=?"]
        params: list = [int(tenant_id)]
        if from_date:
            where.append("t.date >= ?")
            params.append(from_date)
        if to_date:
            where.append("t.date <= ?")
            params.append(to_date)
        if order_id is not None:
            where.append("t.order_id = ?")
            params.append(int(order_id))
        if account_id is not None:
            where.append("EXISTS (SELECT 1 FROM transaction_lines l WHERE l.transaction_id = t.id AND l.account_id = ?)")
            params.append(int(account_id))
        if not include_superseded:
            where.append("t.status = 'POSTED'")
        clause = " AND ".join(where)

        with self._reading(cur) as c:
            c.execute(f"SELECT COUNT(*) FROM transactions t WHERE {clause}", params)
            total = int(c.fetchone()[0])
            cols = ", ".join(f"t.{col.strip()}" for col in _TXN_COLUMNS.split(","))
            c.execute(
                f"SELECT {cols} FROM transactions t WHERE {clause} ORDER BY t.date DESC, t.id DESC LIMIT ? OFFSET ?",
                params + [int(limit), int(offset)],
            )
            rows = c.fetchall()
            return [self._transaction(c, r) for r in rows], total

    def unbalanced_transactions(self, tenant_id: Optional[int], tolerance: float, cur: sqlite3.Cursor | None = None) -> list[tuple[int, float, float]]:
        sql = """
            SELECT t.id, COALESCE(SUM(l.debit), 0), COALESCE(SUM(l.credit), 0)
            FROM transactions t
            LEFT JOIN transaction_lines l ON l.transaction_id = t.id
        """
        params: list = []
        if tenant_id is not None:
            sql += " WHERE t.tenant_id=?"
            params.append(int(tenant_id))
        sql += " GROUP BY t.id HAVING ABS(COALESCE(SUM(l.debit), 0) - COALESCE(SUM(l.credit), 0)) > ?"
        params.append(float(tolerance))
        with self._reading(cur) as c:
            c.execute(sql, params)
            return [(int(r[0]), float(r[1]), float(r[2])) for r in c.fetchall()]

    def duplicate_live_return_transactions(self, tenant_id: Optional[int], cur: sqlite3.Cursor | None = None) -> list[tuple[int, int]]:
        sql = """
            SELECT order_return_id, COUNT(*) FROM transactions
            WHERE order_return_id IS NOT NULL AND status='POSTED'
        """
        params: list = []
        if tenant_id is not None:
            sql += " AND tenant_id=?"
            params.append(int(tenant_id))
        sql += " GROUP BY tenant_id, order_return_id HAVING COUNT(*) > 1"
        with self._reading(cur) as c:
            c.execute(sql, params)
            return [(int(r[0]), int(r[1])) for r in c.fetchall()]

    def account_cache_drift(self, tenant_id: Optional[int], cur: sqlite3.Cursor | None = None) -> list[tuple[str, float, float]]:
        sql = """
            SELECT a.code, a.balance,
                   CASE WHEN a.type IN ('ASSET','EXPENSE')
                        THEN COALESCE(SUM(l.debit), 0) - COALESCE(SUM(l.credit), 0)
                        ELSE COALESCE(SUM(l.credit), 0) - COALESCE(SUM(l.debit), 0) END AS ledger
            FROM accounts a
            LEFT JOIN transaction_lines l ON l.account_id = a.id
        """
        params: list = []
        if tenant_id is not None:
            sql += " WHERE a.tenant_id=?"
            params.append(int(tenant_id))
        sql += " GROUP BY a.id HAVING ABS(a.balance - ledger) > 0.005"
        with self._reading(cur) as c:
            c.execute(sql, params)
            return [(str(r[0]), round(float(r[1]), 2), round(float(r[2]), 2)) for r in c.fetchall()]

    # ---------- Products ----------
    @staticmethod
    def _product(r) -> Product:
        return Product(
            id=int(r[0]),
            tenant_id=int(r[1]),
            name=str(r[2]),
            sku=(str(r[3]) if r[3] is not None else None),
            current_quantity=int(r[4]),
            last_purchase_price=float(r[5]),
            retail_price=float(r[6]),
            is_active=int(r[7]),
        )

    @staticmethod
    def _variant(r) -> ProductVariant:
        return ProductVariant(
            id=int(r[0]),
            product_id=int(r[1]),
            color=r[2],
            size=r[3],
            sku=r[4],
            current_quantity=int(r[5]),
            is_active=int(r[6]),
        )

    def insert_product(
        self,
        cur: sqlite3.Cursor,
        tenant_id: int,
        name: str,
        sku: Optional[str],
        quantity: int,
        last_purchase_price: float,
        retail_price: float,
    ) -> int:
        cur.execute(
            """
            INSERT INTO products (tenant_id, name, sku, current_quantity, last_purchase_price, retail_price)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (int(tenant_id), name, sku, int(quantity), float(last_purchase_price), float(retail_price)),
        )
        return int(cur.lastrowid)

    def insert_variant(
        self, cur: sqlite3.Cursor, product_id: int, color: Optional[str], size: Optional[str], sku: Optional[str], quantity: int
    ) -> int:
        cur.execute(
            "INSERT INTO product_variants (product_id, color, size, sku, current_quantity) VALUES (?, ?, ?, ?, ?)",
            (int(product_id), color, size, sku, int(quantity)),
        )
        return int(cur.lastrowid)

    def get_product(self, tenant_id: int, product_id: int, cur: sqlite3.Cursor | None = None) -> Optional[Product]:
        with self._reading(cur) as c:
            c.execute(
                """
                SELECT id, tenant_id, name, sku, current_quantity, last_purchase_price, retail_price, is_active
                FROM products WHERE tenant_id=? AND id=? AND is_active=1
                """,
                (int(tenant_id), int(product_id)),
            )
            r = c.fetchone()
        return self._product(r) if r else None

    def find_product_by_name(self, tenant_id: int, name: str, cur: sqlite3.Cursor | None = None) -> Optional[Product]:
        with self._reading(cur) as c:
            c.execute(
                """
                SELECT id, tenant_id, name, sku, current_quantity, last_purchase_price, retail_price, is_active
                FROM products WHERE tenant_id=? AND is_active=1 AND LOWER(name) = LOWER(?)
                ORDER BY id LIMIT 1
                """,
                (int(tenant_id), str(name).strip()),
            )
            r = c.fetchone()
        return self._product(r) if r else None

    def list_products(self, tenant_id: int, cur: sqlite3.Cursor | None = None) -> list[Product]:
        with self._reading(cur) as c:
            c.execute(
                """
                SELECT id, tenant_id, name, sku, current_quantity, last_purchase_price, retail_price, is_active
                FROM products WHERE tenant_id=? AND is_active=1 ORDER BY name
                """,
                (int(tenant_id),),
            )
            return [self._product(r) for r in c.fetchall()]

    def get_variant(self, tenant_id: int, variant_id: int, cur: sqlite3.Cursor | None = None) -> Optional[tuple[ProductVariant, Product]]:
        with self._reading(cur) as c:
            c.execute(
                """
                SELECT v.id, v.product_id, v.color, v.size, v.sku, v.current_quantity, v.is_active,
                       p.id, p.tenant_id, p.name, p.sku, p.current_quantity, p.last_purchase_price, p.retail_price, p.is_active
                FROM product_variants v
                JOIN products p ON p.id = v.product_id
                WHERE v.id=? AND p.tenant_id=? AND v.is_active=1 AND p.is_active=1
                """,
                (int(variant_id), int(tenant_id)),
            )
            r = c.fetchone()
        if not r:
            return None
        return self._variant(r[:7]), self._product(r[7:])

    def set_product_quantity(self, cur: sqlite3.Cursor, product_id: int, quantity: int) -> None:
        cur.execute("UPDATE products SET current_quantity=? WHERE id=?", (int(quantity), int(product_id)))

    def set_variant_quantity(self, cur: sqlite3.Cursor, variant_id: int, quantity: int) -> None:
        cur.execute("UPDATE product_variants SET current_quantity=? WHERE id=?", (int(quantity), int(variant_id)))

    def set_last_purchase_price(self, cur: sqlite3.Cursor, product_id: int, price: float) -> None:
        cur.execute("UPDATE products SET last_purchase_price=? WHERE id=?", (float(price), int(product_id)))

    def insert_stock_movement(
        self,
        cur: sqlite3.Cursor,
        tenant_id: int,
        product_id: Optional[int],
        variant_id: Optional[int],
        action: str,
        quantity: int,
        old_quantity: int,
        new_quantity: int,
        reason: str,
        reference: Optional[str],
    ) -> int:
        cur.execute(
            """
            INSERT INTO stock_movements (
                tenant_id, datetime, product_id, product_variant_id, action, quantity,
                old_quantity, new_quantity, reason, reference
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                int(tenant_id),
                _now_iso(),
                product_id,
                variant_id,
                action,
                int(quantity),
                int(old_quantity),
                int(new_quantity),
                reason,
                reference,
            ),
        )
        return int(cur.lastrowid)

    def list_stock_movements(self, tenant_id: int, product_id: int, cur: sqlite3.Cursor | None = None) -> list[StockMovement]:
        with self._reading(cur) as c:
            c.execute(
                """
                SELECT m.id, m.datetime, m.product_id, m.product_variant_id, m.action, m.quantity,
                       m.old_quantity, m.new_quantity, m.reason, m.reference
                FROM stock_movements m
                LEFT JOIN product_variants v ON v.id = m.product_variant_id
                WHERE m.tenant_id=? AND (m.product_id=? OR v.product_id=?)
                ORDER BY m.id
                """,
                (int(tenant_id), int(product_id), int(product_id)),
            )
            return [
                StockMovement(
                    id=int(r[0]),
                    datetime=str(r[1]),
                    product_id=_opt_int(r[2]),
                    product_variant_id=_opt_int(r[3]),
                    action=str(r[4]),
                    quantity=int(r[5]),
                    old_quantity=int(r[6]),
                    new_quantity=int(r[7]),
                    reason=str(r[8]),
                    reference=r[9],
                )
                for r in c.fetchall()
            ]

    # ---------- Customers / Suppliers ----------
    def insert_customer(self, cur: sqlite3.Cursor, tenant_id: int, name: str, opening_balance: float, advance_balance: float) -> int:
        cur.execute(
            "INSERT INTO customers (tenant_id, name, opening_balance, advance_balance) VALUES (?, ?, ?, ?)",
            (int(tenant_id), name, float(opening_balance), float(advance_balance)),
        )
        return int(cur.lastrowid)

    def get_customer(self, tenant_id: int, customer_id: int, cur: sqlite3.Cursor | None = None) -> Optional[Customer]:
        with self._reading(cur) as c:
            c.execute(
                "SELECT id, tenant_id, name, opening_balance, advance_balance FROM customers WHERE tenant_id=? AND id=?",
                (int(tenant_id), int(customer_id)),
            )
            r = c.fetchone()
        if not r:
            return None
        return Customer(id=int(r[0]), tenant_id=int(r[1]), name=str(r[2]), opening_balance=float(r[3]), advance_balance=float(r[4]))

    def list_customers(self, tenant_id: int, cur: sqlite3.Cursor | None = None) -> list[Customer]:
        with self._reading(cur) as c:
            c.execute(
                "SELECT id, tenant_id, name, opening_balance, advance_balance FROM customers WHERE tenant_id=? ORDER BY name",
                (int(tenant_id),),
            )
            return [
                Customer(id=int(r[0]), tenant_id=int(r[1]), name=str(r[2]), opening_balance=float(r[3]), advance_balance=float(r[4]))
                for r in c.fetchall()
            ]

    def insert_supplier(self, cur: sqlite3.Cursor, tenant_id: int, name: str, balance: float) -> int:
        cur.execute("INSERT INTO suppliers (tenant_id, name, balance) VALUES (?, ?, ?)", (int(tenant_id), name, float(balance)))
        return int(cur.lastrowid)

    def get_supplier(self, tenant_id: int, supplier_id: int, cur: sqlite3.Cursor | None = None) -> Optional[Supplier]:
        with self._reading(cur) as c:
            c.execute("SELECT id, tenant_id, name, balance FROM suppliers WHERE tenant_id=? AND id=?", (int(tenant_id), int(supplier_id)))
            r = c.fetchone()
        return Supplier(id=int(r[0]), tenant_id=int(r[1]), name=str(r[2]), balance=float(r[3])) if r else None

    def list_suppliers(self, tenant_id: int, cur: sqlite3.Cursor | None = None) -> list[Supplier]:
        with self._reading(cur) as c:
            c.execute("SELECT id, tenant_id, name, balance FROM suppliers WHERE tenant_id=? ORDER BY name", (int(tenant_id),))
            return [Supplier(id=int(r[0]), tenant_id=int(r[1]), name=str(r[2]), balance=float(r[3])) for r in c.fetchall()]

    # ---------- Orders ----------
    def _order(self, c: sqlite3.Cursor, r) -> Order:
        c.execute(
            """
            SELECT quantity, price, product_id, product_variant_id, product_name
            FROM order_items WHERE order_id=? ORDER BY id
            """,
            (int(r[0]),),
        )
        items = [
            OrderItem(
                quantity=int(i[0]),
                price=float(i[1]),
                product_id=_opt_int(i[2]),
                product_variant_id=_opt_int(i[3]),
                product_name=i[4],
            )
            for i in c.fetchall()
        ]
        if not items:
            try:
                items = normalize_legacy_items(r[5], r[6], r[7])
            except ValueError:
                log.warning("legacy_order_payload_unreadable order_id=%s", r[0])
                items = []
        return Order(
            id=int(r[0]),
            tenant_id=int(r[1]),
            customer_id=_opt_int(r[2]),
            order_number=str(r[3]),
            status=str(r[4]),
            items=tuple(items),
            shipping_charges=float(r[8]),
            cod_fee=float(r[9]),
            cod_fee_paid_by=r[10],
            refund_amount=float(r[11]),
            payment_amount=float(r[12]),
        )

    def insert_order(
        self,
        cur: sqlite3.Cursor,
        tenant_id: int,
        customer_id: Optional[int],
        order_number: str,
        status: str,
        shipping_charges: float = 0.0,
        cod_fee: float = 0.0,
        cod_fee_paid_by: Optional[str] = None,
        selected_products=None,
        product_quantities=None,
        product_prices=None,
    ) -> int:
        def _blob(v):
            if v is None or isinstance(v, str):
                return v
            return json.dumps(v)

        cur.execute(
            """
            INSERT INTO orders (
                tenant_id, customer_id, order_number, status, shipping_charges, cod_fee, cod_fee_paid_by,
                selected_products, product_quantities, product_prices
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                int(tenant_id),
                customer_id,
                order_number,
                status,
                float(shipping_charges),
                float(cod_fee),
                cod_fee_paid_by,
                _blob(selected_products),
                _blob(product_quantities),
                _blob(product_prices),
            ),
        )
        return int(cur.lastrowid)

    def replace_order_items(self, cur: sqlite3.Cursor, order_id: int, items: Iterable[OrderItem]) -> None:
        cur.execute("DELETE FROM order_items WHERE order_id=?", (int(order_id),))
        for it in items:
            cur.execute(
                """
                INSERT INTO order_items (order_id, product_id, product_variant_id, product_name, quantity, price)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (int(order_id), it.product_id, it.product_variant_id, it.product_name, int(it.quantity), float(it.price)),
            )
        # normalised rows supersede any legacy payload
        cur.execute(
            "UPDATE orders SET selected_products=NULL, product_quantities=NULL, product_prices=NULL WHERE id=?",
            (int(order_id),),
        )

    def get_order(self, tenant_id: int, order_id: int, cur: sqlite3.Cursor | None = None) -> Optional[Order]:
        with self._reading(cur) as c:
            c.execute(f"SELECT {_ORDER_COLUMNS} FROM orders WHERE tenant_id=? AND id=?", (int(tenant_id), int(order_id)))
            r = c.fetchone()
            return self._order(c, r) if r else None

    def list_orders(
        self,
        tenant_id: int,
        statuses: Iterable[str] | None = None,
        customer_id: Optional[int] = None,
        cur: sqlite3.Cursor | None = None,
    ) -> list[Order]:
        sql = f"SELECT {_ORDER_COLUMNS} FROM orders WHERE tenant_id=?"
        params: list = [int(tenant_id)]
        if statuses is not None:
            statuses = list(statuses)
            sql += f" AND status IN ({','.join('?' for _ in statuses)})"
            params.extend(statuses)
        if customer_id is not None:
            sql += " AND customer_id=?"
            params.append(int(customer_id))
        sql += " ORDER BY id"
        with self._reading(cur) as c:
            c.execute(sql, params)
            rows = c.fetchall()
            return [self._order(c, r) for r in rows]

    def set_order_status(self, cur: sqlite3.Cursor, order_id: int, status: str) -> None:
        cur.execute("UPDATE orders SET status=? WHERE id=?", (status, int(order_id)))

    def add_order_payment_amount(self, cur: sqlite3.Cursor, order_id: int, delta: float) -> None:
        cur.execute(
            "UPDATE orders SET payment_amount = ROUND(MAX(payment_amount + ?, 0), 2) WHERE id=?",
            (float(delta), int(order_id)),
        )

    def set_order_refund_amount(self, cur: sqlite3.Cursor, order_id: int, amount: float) -> None:
        cur.execute("UPDATE orders SET refund_amount=? WHERE id=?", (float(amount), int(order_id)))

    # ---------- Purchase invoices ----------
    def insert_purchase_invoice(
        self,
        cur: sqlite3.Cursor,
        tenant_id: int,
        invoice_number: str,
        invoice_date: str,
        total_amount: float,
        supplier_id: Optional[int],
        notes: Optional[str],
    ) -> int:
        cur.execute(
            """
            INSERT INTO purchase_invoices (tenant_id, supplier_id, invoice_number, invoice_date, total_amount, notes)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (int(tenant_id), supplier_id, invoice_number, invoice_date, round(float(total_amount), 2), notes),
        )
        return int(cur.lastrowid)

    def insert_purchase_item(
        self,
        cur: sqlite3.Cursor,
        invoice_id: int,
        name: str,
        quantity: int,
        purchase_price: float,
        sku: Optional[str] = None,
        variant_id: Optional[int] = None,
    ) -> int:
        cur.execute(
            """
            INSERT INTO purchase_items (purchase_invoice_id, name, sku, product_variant_id, quantity, purchase_price)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (int(invoice_id), name, sku, variant_id, int(quantity), float(purchase_price)),
        )
        return int(cur.lastrowid)

    def link_purchase_item(self, cur: sqlite3.Cursor, item_id: int, product_id: int) -> None:
        cur.execute("UPDATE purchase_items SET product_id=? WHERE id=?", (int(product_id), int(item_id)))

    def invoice_number_taken(self, tenant_id: int, invoice_number: str, cur: sqlite3.Cursor | None = None) -> bool:
        with self._reading(cur) as c:
            c.execute(
                "SELECT 1 FROM purchase_invoices WHERE tenant_id=? AND invoice_number=?",
                (int(tenant_id), invoice_number),
            )
            return c.fetchone() is not None

    def _invoice(self, c: sqlite3.Cursor, r) -> PurchaseInvoice:
        c.execute(
            """
            SELECT id, purchase_invoice_id, name, quantity, purchase_price, product_id, product_variant_id, sku
            FROM purchase_items WHERE purchase_invoice_id=? ORDER BY id
            """,
            (int(r[0]),),
        )
        items = tuple(
            PurchaseItem(
                id=int(i[0]),
                purchase_invoice_id=int(i[1]),
                name=str(i[2]),
                quantity=int(i[3]),
                purchase_price=float(i[4]),
                product_id=_opt_int(i[5]),
                product_variant_id=_opt_int(i[6]),
                sku=i[7],
            )
            for i in c.fetchall()
        )
        return PurchaseInvoice(
            id=int(r[0]),
            tenant_id=int(r[1]),
            invoice_number=str(r[2]),
            invoice_date=str(r[3]),
            total_amount=float(r[4]),
            supplier_id=_opt_int(r[5]),
            payment_amount=float(r[6]),
            notes=r[7],
            transaction_id=_opt_int(r[8]),
            items=items,
        )

    def get_purchase_invoice(self, tenant_id: int, invoice_id: int, cur: sqlite3.Cursor | None = None) -> Optional[PurchaseInvoice]:
        with self._reading(cur) as c:
            c.execute(
                """
                SELECT id, tenant_id, invoice_number, invoice_date, total_amount, supplier_id, payment_amount, notes, transaction_id
                FROM purchase_invoices WHERE tenant_id=? AND id=? AND is_deleted=0
                """,
                (int(tenant_id), int(invoice_id)),
            )
            r = c.fetchone()
            return self._invoice(c, r) if r else None

    def list_purchase_invoices(
        self, tenant_id: int, supplier_id: Optional[int] = None, cur: sqlite3.Cursor | None = None
    ) -> list[PurchaseInvoice]:
        sql = """
            SELECT id, tenant_id, invoice_number, invoice_date, total_amount, supplier_id, payment_amount, notes, transaction_id
            FROM purchase_invoices WHERE tenant_id=? AND is_deleted=0
        """
        params: list = [int(tenant_id)]
        if supplier_id is not None:
            sql += " AND supplier_id=?"
            params.append(int(supplier_id))
        sql += " ORDER BY invoice_date, id"
        with self._reading(cur) as c:
            c.execute(sql, params)
            rows = c.fetchall()
            return [self._invoice(c, r) for r in rows]

    def set_invoice_total(self, cur: sqlite3.Cursor, invoice_id: int, total_amount: float) -> None:
        cur.execute("UPDATE purchase_invoices SET total_amount=? WHERE id=?", (round(float(total_amount), 2), int(invoice_id)))

    def add_invoice_payment_amount(self, cur: sqlite3.Cursor, invoice_id: int, delta: float) -> None:
        cur.execute(
            "UPDATE purchase_invoices SET payment_amount = ROUND(MAX(payment_amount + ?, 0), 2) WHERE id=?",
            (float(delta), int(invoice_id)),
        )

    def set_invoice_transaction(self, cur: sqlite3.Cursor, invoice_id: int, transaction_id: Optional[int]) -> None:
        cur.execute("UPDATE purchase_invoices SET transaction_id=? WHERE id=?", (transaction_id, int(invoice_id)))

    def update_purchase_invoice_row(
        self,
        cur: sqlite3.Cursor,
        invoice_id: int,
        invoice_date: str,
        total_amount: float,
        supplier_id: Optional[int],
        notes: Optional[str],
    ) -> None:
        cur.execute(
            "UPDATE purchase_invoices SET invoice_date=?, total_amount=?, supplier_id=?, notes=? WHERE id=?",
            (invoice_date, round(float(total_amount), 2), supplier_id, notes, int(invoice_id)),
        )

    def delete_purchase_items(self, cur: sqlite3.Cursor, invoice_id: int) -> None:
        cur.execute("DELETE FROM purchase_items WHERE purchase_invoice_id=?", (int(invoice_id),))

    def soft_delete_purchase_invoice(self, cur: sqlite3.Cursor, invoice_id: int) -> None:
        cur.execute("UPDATE purchase_invoices SET is_deleted=1, transaction_id=NULL WHERE id=?", (int(invoice_id),))

    # ---------- Supplier advances ----------
    def insert_advance_usage(
        self,
        cur: sqlite3.Cursor,
        tenant_id: int,
        supplier_id: int,
        amount: float,
        date: str,
        transaction_id: int,
        payment_id: Optional[int] = None,
    ) -> int:
        cur.execute(
            """
            INSERT INTO supplier_advance_usages (tenant_id, supplier_id, transaction_id, payment_id, amount, date)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (int(tenant_id), int(supplier_id), int(transaction_id), payment_id, round(float(amount), 2), date),
        )
        return int(cur.lastrowid)

    def supplier_advance_used(self, tenant_id: int, supplier_id: int, cur: sqlite3.Cursor | None = None) -> float:
        with self._reading(cur) as c:
            c.execute(
                "SELECT COALESCE(SUM(amount), 0) FROM supplier_advance_usages WHERE tenant_id=? AND supplier_id=?",
                (int(tenant_id), int(supplier_id)),
            )
            return round(float(c.fetchone()[0]), 2)

    def relink_advance_usage(self, cur: sqlite3.Cursor, old_transaction_id: int, new_transaction_id: int) -> None:
        cur.execute(
            "UPDATE supplier_advance_usages SET transaction_id=? WHERE transaction_id=?",
            (int(new_transaction_id), int(old_transaction_id)),
        )

    # ---------- Returns ----------
    def _return(self, c: sqlite3.Cursor, r) -> Return:
        c.execute(
            """
            SELECT product_name, quantity, purchase_price, product_variant_id, sku, reason
            FROM return_items WHERE return_id=? ORDER BY id
            """,
            (int(r[0]),),
        )
        items = tuple(
            ReturnItem(
                product_name=str(i[0]),
                quantity=int(i[1]),
                purchase_price=float(i[2]),
                product_variant_id=_opt_int(i[3]),
                sku=i[4],
                reason=i[5],
            )
            for i in c.fetchall()
        )
        return Return(
            id=int(r[0]),
            tenant_id=int(r[1]),
            return_number=str(r[2]),
            return_type=str(r[3]),
            status=str(r[4]),
            return_date=str(r[5]),
            total_amount=float(r[6]),
            purchase_invoice_id=_opt_int(r[7]),
            order_id=_opt_int(r[8]),
            return_handling_method=r[9],
            refund_account_id=_opt_int(r[10]),
            refund_amount=float(r[11]),
            reason=r[12],
            notes=r[13],
            items=items,
        )

    def insert_return(
        self,
        cur: sqlite3.Cursor,
        tenant_id: int,
        return_number: str,
        return_type: str,
        status: str,
        return_date: str,
        total_amount: float,
        purchase_invoice_id: Optional[int] = None,
        order_id: Optional[int] = None,
        handling_method: Optional[str] = None,
        refund_account_id: Optional[int] = None,
        refund_amount: float = 0.0,
        reason: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> int:
        cur.execute(
            """
            INSERT INTO returns (
                tenant_id, return_number, return_type, status, return_date, total_amount, purchase_invoice_id,
                order_id, return_handling_method, refund_account_id, refund_amount, reason, notes
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                int(tenant_id),
                return_number,
                return_type,
                status,
                return_date,
                round(float(total_amount), 2),
                purchase_invoice_id,
                order_id,
                handling_method,
                refund_account_id,
                round(float(refund_amount), 2),
                reason,
                notes,
            ),
        )
        return int(cur.lastrowid)

    def replace_return_items(self, cur: sqlite3.Cursor, return_id: int, items: Iterable[ReturnItem]) -> None:
        cur.execute("DELETE FROM return_items WHERE return_id=?", (int(return_id),))
        for it in items:
            cur.execute(
                """
                INSERT INTO return_items (return_id, product_name, product_variant_id, sku, quantity, purchase_price, reason)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (int(return_id), it.product_name, it.product_variant_id, it.sku, int(it.quantity), float(it.purchase_price), it.reason),
            )

    def update_return(
        self,
        cur: sqlite3.Cursor,
        return_id: int,
        return_date: str,
        total_amount: float,
        handling_method: Optional[str],
        refund_account_id: Optional[int],
        refund_amount: float,
        reason: Optional[str],
        notes: Optional[str],
    ) -> None:
        cur.execute(
            """
            UPDATE returns
            SET return_date=?, total_amount=?, return_handling_method=?, refund_account_id=?,
                refund_amount=?, reason=?, notes=?
            WHERE id=?
            """,
            (
                return_date,
                round(float(total_amount), 2),
                handling_method,
                refund_account_id,
                round(float(refund_amount), 2),
                reason,
                notes,
                int(return_id),
            ),
        )

    def set_return_status(self, cur: sqlite3.Cursor, return_id: int, status: str) -> None:
        cur.execute("UPDATE returns SET status=? WHERE id=?", (status, int(return_id)))

    def soft_delete_return(self, cur: sqlite3.Cursor, return_id: int) -> None:
        cur.execute("UPDATE returns SET is_deleted=1 WHERE id=?", (int(return_id),))

    def get_return(self, tenant_id: int, return_id: int, cur: sqlite3.Cursor | None = None) -> Optional[Return]:
        with self._reading(cur) as c:
            c.execute(
                f"SELECT {_RETURN_COLUMNS} FROM returns WHERE tenant_id=? AND id=? AND is_deleted=0",
                (int(tenant_id), int(return_id)),
            )
            r = c.fetchone()
            return self._return(c, r) if r else None

    def list_returns(
        self,
        tenant_id: int,
        return_type: Optional[str] = None,
        purchase_invoice_id: Optional[int] = None,
        order_ids: Iterable[int] | None = None,
        cur: sqlite3.Cursor | None = None,
    ) -> list[Return]:
        sql = f"SELECT {_RETURN_COLUMNS} FROM returns WHERE tenant_id=? AND is_deleted=0"
        params: list = [int(tenant_id)]
        if return_type:
            sql += " AND return_type=?"
            params.append(return_type)
        if purchase_invoice_id is not None:
            sql += " AND purchase_invoice_id=?"
            params.append(int(purchase_invoice_id))
        if order_ids is not None:
            order_ids = [int(o) for o in order_ids]
            if not order_ids:
                return []
            sql += f" AND order_id IN ({','.join('?' for _ in order_ids)})"
            params.extend(order_ids)
        sql += " ORDER BY return_date, id"
        with self._reading(cur) as c:
            c.execute(sql, params)
            rows = c.fetchall()
            return [self._return(c, r) for r in rows]

    def returned_quantities(
        self,
        tenant_id: int,
        invoice_id: int,
        exclude_return_id: Optional[int] = None,
        cur: sqlite3.Cursor | None = None,
    ) -> tuple[dict[int, int], dict[str, int]]:
        """Quantities already returned against an invoice, keyed by variant id and by lower-cased name."""
        sql = """
            SELECT ri.product_variant_id, LOWER(TRIM(ri.product_name)), SUM(ri.quantity)
            FROM return_items ri
            JOIN returns r ON r.id = ri.return_id
            WHERE r.tenant_id=? AND r.purchase_invoice_id=? AND r.return_type='SUPPLIER'
              AND r.is_deleted=0 AND r.status != 'REJECTED'
        """
        params: list = [int(tenant_id), int(invoice_id)]
        if exclude_return_id is not None:
            sql += " AND r.id != ?"
            params.append(int(exclude_return_id))
        sql += " GROUP BY ri.product_variant_id, LOWER(TRIM(ri.product_name))"

        by_variant: dict[int, int] = {}
        by_name: dict[str, int] = {}
        with self._reading(cur) as c:
            c.execute(sql, params)
            for variant_id, name, qty in c.fetchall():
                if variant_id is not None:
                    by_variant[int(variant_id)] = by_variant.get(int(variant_id), 0) + int(qty)
                by_name[str(name)] = by_name.get(str(name), 0) + int(qty)
        return by_variant, by_name

    # ---------- Payments ----------
    @staticmethod
    def _payment(r) -> Payment:
        return Payment(
            id=int(r[0]),
            tenant_id=int(r[1]),
            payment_number=str(r[2]),
            date=str(r[3]),
            type=str(r[4]),
            amount=float(r[5]),
            payment_method=str(r[6]),
            customer_id=_opt_int(r[7]),
            supplier_id=_opt_int(r[8]),
            order_id=_opt_int(r[9]),
            purchase_invoice_id=_opt_int(r[10]),
            transaction_id=_opt_int(r[11]),
        )

    def insert_payment(
        self,
        cur: sqlite3.Cursor,
        tenant_id: int,
        payment_number: str,
        date: str,
        type_: str,
        amount: float,
        payment_method: str,
        customer_id: Optional[int] = None,
        supplier_id: Optional[int] = None,
        order_id: Optional[int] = None,
        purchase_invoice_id: Optional[int] = None,
        transaction_id: Optional[int] = None,
    ) -> int:
        cur.execute(
            """
            INSERT INTO payments (
                tenant_id, payment_number, date, type, amount, payment_method,
                customer_id, supplier_id, order_id, purchase_invoice_id, transaction_id
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                int(tenant_id),
                payment_number,
                date,
                type_,
                round(float(amount), 2),
                payment_method,
                customer_id,
                supplier_id,
                order_id,
                purchase_invoice_id,
                transaction_id,
            ),
        )
        return int(cur.lastrowid)

    def update_payment_row(
        self, cur: sqlite3.Cursor, payment_id: int, amount: float, payment_method: str, date: str, transaction_id: int
    ) -> None:
        cur.execute(
            "UPDATE payments SET amount=?, payment_method=?, date=?, transaction_id=? WHERE id=?",
            (round(float(amount), 2), payment_method, date, int(transaction_id), int(payment_id)),
        )

    def get_payment(self, tenant_id: int, payment_id: int, cur: sqlite3.Cursor | None = None) -> Optional[Payment]:
        with self._reading(cur) as c:
            c.execute(f"SELECT {_PAYMENT_COLUMNS} FROM payments WHERE tenant_id=? AND id=?", (int(tenant_id), int(payment_id)))
            r = c.fetchone()
        return self._payment(r) if r else None

    def list_payments(
        self,
        tenant_id: int,
        type_: Optional[str] = None,
        customer_id: Optional[int] = None,
        supplier_id: Optional[int] = None,
        order_id: Optional[int] = None,
        cur: sqlite3.Cursor | None = None,
    ) -> list[Payment]:
        sql = f"SELECT {_PAYMENT_COLUMNS} FROM payments WHERE tenant_id=?"
        params: list = [int(tenant_id)]
        for column, value in (("type", type_), ("customer_id", customer_id), ("supplier_id", supplier_id), ("order_id", order_id)):
            if value is not None:
                sql += f" AND {column}=?"
                params.append(value)
        sql += " ORDER BY date, id"
        with self._reading(cur) as c:
            c.execute(sql, params)
            return [self._payment(r) for r in c.fetchall()]

    # ---------- Operations ----------
    def integrity_check(self) -> str:
        with self._reading(None) as cur:
            cur.execute("PRAGMA integrity_check")
            row = cur.fetchone()
        return str(row[0]) if row else "unknown"

    def wipe_tenant(self, cur: sqlite3.Cursor, tenant_id: int) -> dict[str, int]:
        tid = int(tenant_id)
        steps = [
            ("supplier_advance_usages", "DELETE FROM supplier_advance_usages WHERE tenant_id=?"),
            ("transaction_lines", "DELETE FROM transaction_lines WHERE transaction_id IN (SELECT id FROM transactions WHERE tenant_id=?)"),
            ("transactions", "DELETE FROM transactions WHERE tenant_id=?"),
            ("payments", "DELETE FROM payments WHERE tenant_id=?"),
            ("return_items", "DELETE FROM return_items WHERE return_id IN (SELECT id FROM returns WHERE tenant_id=?)"),
            ("returns", "DELETE FROM returns WHERE tenant_id=?"),
            ("purchase_items", "DELETE FROM purchase_items WHERE purchase_invoice_id IN (SELECT id FROM purchase_invoices WHERE tenant_id=?)"),
            ("purchase_invoices", "DELETE FROM purchase_invoices WHERE tenant_id=?"),
            ("order_items", "DELETE FROM order_items WHERE order_id IN (SELECT id FROM orders WHERE tenant_id=?)"),
            ("orders", "DELETE FROM orders WHERE tenant_id=?"),
            ("stock_movements", "DELETE FROM stock_movements WHERE tenant_id=?"),
            ("product_variants", "DELETE FROM product_variants WHERE product_id IN (SELECT id FROM products WHERE tenant_id=?)"),
            ("products", "DELETE FROM products WHERE tenant_id=?"),
            ("customers", "DELETE FROM customers WHERE tenant_id=?"),
            ("suppliers", "DELETE FROM suppliers WHERE tenant_id=?"),
            ("accounts", "DELETE FROM accounts WHERE tenant_id=?"),
        ]
        counts: dict[str, int] = {}
        for table, sql in steps:
            cur.execute(sql, (tid,))
            counts[table] = int(cur.rowcount)
        return counts
