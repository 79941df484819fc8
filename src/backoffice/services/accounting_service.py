from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import date as date_cls
from typing import Callable, Iterable, Optional

from backoffice.domain.errors import NotFoundError, UnbalancedTransactionError, ValidationError
from backoffice.domain.models import ACCOUNT_TYPES, Account, Transaction, TransactionLine, TransactionMeta
from backoffice.repositories.unit_of_work import SqliteUnitOfWork, UnitOfWork, joined

log = logging.getLogger("backoffice.ledger")

CASH = "1000"
BANK = "1100"
ACCOUNTS_RECEIVABLE = "1200"
CUSTOMER_ADVANCE = "1210"
SUPPLIER_ADVANCE = "1230"
INVENTORY = "1300"
ACCOUNTS_PAYABLE = "2000"
OPENING_BALANCE = "3001"

DEFAULT_CHART: list[tuple[str, str, str, Optional[str]]] = [
    (CASH, "Cash", "ASSET", "CASH"),
    (BANK, "Bank Account", "ASSET", "BANK"),
    (ACCOUNTS_RECEIVABLE, "Accounts Receivable", "ASSET", "ACCOUNTS_RECEIVABLE"),
    (CUSTOMER_ADVANCE, "Customer Advance Balance", "ASSET", None),
    (SUPPLIER_ADVANCE, "Advance to Suppliers", "ASSET", None),
    (INVENTORY, "Inventory", "ASSET", "INVENTORY"),
    (ACCOUNTS_PAYABLE, "Accounts Payable", "LIABILITY", "ACCOUNTS_PAYABLE"),
    ("2200", "COD Fee Payable", "LIABILITY", None),
    ("3000", "Owner Capital", "EQUITY", None),
    (OPENING_BALANCE, "Opening Balance", "EQUITY", "OPENING_BALANCE"),
    ("3100", "Owner Drawings", "EQUITY", None),
    ("4000", "Sales Revenue", "REVENUE", None),
    ("4100", "Sales Returns", "REVENUE", None),
    ("4200", "Shipping Revenue", "REVENUE", None),
    ("5000", "Cost of Goods Sold", "EXPENSE", None),
    ("5100", "Shipping Expense", "EXPENSE", None),
    ("5200", "COD Fee Expense", "EXPENSE", None),
    ("5800", "Other Expenses", "EXPENSE", None),
]


@dataclass(frozen=True)
class TrialBalanceRow:
    account_id: int
    code: str
    name: str
    type: str
    subtype: Optional[str]
    debits: float
    credits: float
    balance: float


def number_year(value) -> int:
    """Year used in document numbers: the event date's year, today's when the date is unreadable."""
    try:
        return date_cls.fromisoformat(str(value)[:10]).year
    except ValueError:
        return date_cls.today().year


def _signed(account_type: str, debit: float, credit: float) -> float:
    if account_type in ("ASSET", "EXPENSE"):
        return round(debit - credit, 2)
    return round(credit - debit, 2)


def _coerce_line(line) -> TransactionLine:
    if isinstance(line, TransactionLine):
        account_id, debit, credit = line.account_id, line.debit, line.credit
    else:
        account_id, debit, credit = line["account_id"], line.get("debit", 0), line.get("credit", 0)
    try:
        debit = round(float(debit or 0), 2)
        credit = round(float(credit or 0), 2)
    except (TypeError, ValueError) as exc:
        raise ValidationError("Line amounts must be numbers.") from exc
    if any(math.isnan(v) or math.isinf(v) for v in (debit, credit)):
        raise ValidationError("Line amounts must be finite.")
    if debit < 0 or credit < 0:
        raise ValidationError("Line amounts must be >= 0.")
    if (debit > 0) == (credit > 0):
        raise ValidationError("Each line needs exactly one of debit or credit.")
    return TransactionLine(account_id=int(account_id), debit=debit, credit=credit)


class AccountingService:
    def __init__(
        self,
        repo,
        uow_factory: Callable[[], UnitOfWork] | None = None,
        tolerance: float = 0.01,
    ):
        self.repo = repo
        self.uow_factory = uow_factory or (lambda: SqliteUnitOfWork(repo))
        self.tolerance = float(tolerance)

    # ---------- Accounts ----------
    def get_account(self, tenant_id: int, account_id: int) -> Account:
        acc = self.repo.get_account(tenant_id, account_id)
        if not acc:
            raise NotFoundError("Account not found.")
        return acc

    def get_account_by_code(self, tenant_id: int, code: str, uow: UnitOfWork | None = None) -> Optional[Account]:
        return self.repo.get_account_by_code(tenant_id, code, cur=uow.cur if uow else None)

    def get_or_create_account(
        self,
        tenant_id: int,
        code: str,
        name: str,
        type_: str,
        subtype: Optional[str] = None,
        uow: UnitOfWork | None = None,
    ) -> Account:
        code = (code or "").strip()
        name = (name or "").strip()
        if not code or not name:
            raise ValidationError("Account code and name are required.")
        if type_ not in ACCOUNT_TYPES:
            raise ValidationError(f"Unknown account type: {type_}")

        with joined(uow, self.uow_factory) as u:
            existing = self.repo.get_account_by_code(tenant_id, code, cur=u.cur)
            if existing:
                return existing
            if not self.repo.tenant_exists(tenant_id, cur=u.cur):
                raise NotFoundError("Tenant not found.")
            account_id = self.repo.insert_account(u.cur, tenant_id, code, name, type_, subtype)
            log.info("account_created tenant=%s code=%s type=%s", tenant_id, code, type_)
            return self.repo.get_account(tenant_id, account_id, cur=u.cur)

    def require_account(self, tenant_id: int, code: str, uow: UnitOfWork | None = None) -> Account:
        """Chart account by code, created from the default chart when missing."""
        for c, name, type_, subtype in DEFAULT_CHART:
            if c == code:
                return self.get_or_create_account(tenant_id, c, name, type_, subtype, uow=uow)
        acc = self.get_account_by_code(tenant_id, code, uow=uow)
        if not acc:
            raise NotFoundError(f"Account {code} not found.")
        return acc

    def initialize_chart_of_accounts(self, tenant_id: int, uow: UnitOfWork | None = None) -> list[Account]:
        with joined(uow, self.uow_factory) as u:
            return [
                self.get_or_create_account(tenant_id, code, name, type_, subtype, uow=u)
                for code, name, type_, subtype in DEFAULT_CHART
            ]

    def get_payment_accounts(self, tenant_id: int, subtype: Optional[str] = None) -> list[Account]:
        if subtype and subtype not in ("CASH", "BANK"):
            raise ValidationError("Payment account subtype must be CASH or BANK.")
        subtypes = [subtype] if subtype else ["CASH", "BANK"]
        return self.repo.list_accounts(tenant_id, type_="ASSET", subtypes=subtypes)

    # ---------- Transactions ----------
    def create_transaction(
        self,
        meta: TransactionMeta,
        lines: Iterable[TransactionLine | dict],
        uow: UnitOfWork | None = None,
    ) -> Transaction:
        lines = [_coerce_line(l) for l in lines]
        if len(lines) < 2:
            raise ValidationError("A transaction needs at least two lines.")

        debits = round(sum(l.debit for l in lines), 2)
        credits = round(sum(l.credit for l in lines), 2)
        if round(abs(debits - credits), 2) > self.tolerance:
            log.error(
                "transaction_unbalanced tenant=%s description=%r debits=%.2f credits=%.2f",
                meta.tenant_id,
                meta.description,
                debits,
                credits,
            )
            raise UnbalancedTransactionError(debits, credits)

        with joined(uow, self.uow_factory) as u:
            accounts: dict[int, Account] = {}
            for l in lines:
                if l.account_id in accounts:
                    continue
                acc = self.repo.get_account(meta.tenant_id, l.account_id, cur=u.cur)
                if not acc:
                    raise NotFoundError(f"Account {l.account_id} not found for tenant {meta.tenant_id}.")
                accounts[l.account_id] = acc

            number = self.repo.next_number(u.cur, "transactions", meta.tenant_id, f"TXN-{number_year(meta.date)}-", width=6)
            txn_id = self.repo.insert_transaction(u.cur, number, meta)
            for l in lines:
                self.repo.insert_transaction_line(u.cur, txn_id, l.account_id, l.debit, l.credit)
                acc = accounts[l.account_id]
                self.repo.adjust_account_balance(u.cur, acc.id, _signed(acc.type, l.debit, l.credit))

            log.info(
                "transaction_posted id=%s number=%s tenant=%s debits=%.2f credits=%.2f return=%s",
                txn_id,
                number,
                meta.tenant_id,
                debits,
                credits,
                meta.order_return_id,
            )
            return self.repo.get_transaction(meta.tenant_id, txn_id, cur=u.cur)

    def reverse_transaction(
        self,
        tenant_id: int,
        transaction_id: int,
        date: Optional[str] = None,
        description: Optional[str] = None,
        uow: UnitOfWork | None = None,
    ) -> Transaction:
        """Post the exact inversion of a live transaction and retire it.

        The reversal keeps the original date unless told otherwise and never
        carries ``order_return_id``, so the return can be re-posted.
        """
        with joined(uow, self.uow_factory) as u:
            original = self.repo.get_transaction(tenant_id, transaction_id, cur=u.cur)
            if not original:
                raise NotFoundError("Transaction not found.")
            if original.status != "POSTED":
                raise ValidationError(f"Transaction {original.transaction_number} is already superseded.")

            meta = TransactionMeta(
                tenant_id=tenant_id,
                date=date or original.date,
                description=description or f"Reversal of {original.transaction_number}",
                order_id=original.order_id,
                purchase_invoice_id=original.purchase_invoice_id,
                payment_id=original.payment_id,
                reverses_transaction_id=original.id,
            )
            inverted = [TransactionLine(account_id=l.account_id, debit=l.credit, credit=l.debit) for l in original.lines]
            reversal = self.create_transaction(meta, inverted, uow=u)
            self.repo.retire_transaction(u.cur, original.id)
            log.info("transaction_reversed id=%s reversal=%s tenant=%s", original.id, reversal.id, tenant_id)
            return reversal

    def supersede_transaction(
        self,
        tenant_id: int,
        transaction_id: int,
        meta: TransactionMeta,
        lines: Iterable[TransactionLine | dict],
        reversal_description: Optional[str] = None,
        uow: UnitOfWork | None = None,
    ) -> tuple[Transaction, Transaction]:
        """Reverse and retire a transaction, then post its replacement. Returns (reversal, replacement)."""
        with joined(uow, self.uow_factory) as u:
            reversal = self.reverse_transaction(tenant_id, transaction_id, description=reversal_description, uow=u)
            replacement = self.create_transaction(meta, lines, uow=u)
            self.repo.link_replacement(u.cur, transaction_id, replacement.id)
            return reversal, replacement

    def get_transaction(self, tenant_id: int, transaction_id: int) -> Transaction:
        txn = self.repo.get_transaction(tenant_id, transaction_id)
        if not txn:
            raise NotFoundError("Transaction not found.")
        return txn

    def list_transactions(
        self,
        tenant_id: int,
        page: int = 1,
        limit: int = 50,
        from_date: Optional[str] = None,
        to_date: Optional[str] = None,
        order_id: Optional[int] = None,
        account_id: Optional[int] = None,
    ) -> dict:
        page = max(int(page), 1)
        limit = min(max(int(limit), 1), 500)
        rows, total = self.repo.list_transactions(
            tenant_id,
            limit=limit,
            offset=(page - 1) * limit,
            from_date=from_date,
            to_date=to_date,
            order_id=order_id,
            account_id=account_id,
        )
        return {
            "transactions": rows,
            "pagination": {"page": page, "limit": limit, "total": total, "pages": math.ceil(total / limit) if total else 0},
        }

    # ---------- Balances ----------
    def get_balance(self, tenant_id: int, account_id: int, uow: UnitOfWork | None = None) -> float:
        with joined(uow, self.uow_factory) as u:
            acc = self.repo.get_account(tenant_id, account_id, cur=u.cur)
            if not acc:
                raise NotFoundError("Account not found.")
            debits, credits = self.repo.account_line_totals(acc.id, cur=u.cur)
            balance = _signed(acc.type, debits, credits)
            if abs(balance - acc.balance) > 0.005:
                log.warning("balance_cache_corrected account=%s cached=%.2f ledger=%.2f", acc.code, acc.balance, balance)
            self.repo.set_account_balance(u.cur, acc.id, balance)
            return balance

    def get_balance_by_code(self, tenant_id: int, code: str) -> float:
        acc = self.get_account_by_code(tenant_id, code)
        if not acc:
            raise NotFoundError(f"Account {code} not found.")
        return self.get_balance(tenant_id, acc.id)

    def trial_balance(self, tenant_id: int) -> list[TrialBalanceRow]:
        return [
            TrialBalanceRow(
                account_id=int(r[0]),
                code=str(r[1]),
                name=str(r[2]),
                type=str(r[3]),
                subtype=r[4],
                debits=round(float(r[5]), 2),
                credits=round(float(r[6]), 2),
                balance=_signed(str(r[3]), float(r[5]), float(r[6])),
            )
            for r in self.repo.trial_balance_rows(tenant_id)
        ]
