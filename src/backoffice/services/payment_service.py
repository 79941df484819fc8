from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date as date_cls
from typing import Callable, Optional

from backoffice.domain.errors import NotFoundError, ValidationError
from backoffice.domain.models import PAYMENT_TYPES, Payment, Transaction, TransactionLine, TransactionMeta
from backoffice.repositories.unit_of_work import SqliteUnitOfWork, UnitOfWork, joined
from backoffice.services.accounting_service import (
    ACCOUNTS_PAYABLE,
    ACCOUNTS_RECEIVABLE,
    BANK,
    CASH,
    SUPPLIER_ADVANCE,
    number_year,
)

log = logging.getLogger("backoffice.payments")

METHOD_ACCOUNTS = {
    "Cash": CASH,
    "Bank Transfer": BANK,
    "Cheque": BANK,
}


def account_code_for_method(method: Optional[str]) -> str:
    return METHOD_ACCOUNTS.get((method or "").strip(), CASH)


@dataclass(frozen=True)
class PaymentResult:
    payment_id: Optional[int]
    transaction_id: int
    cash_amount: float
    advance_used: float


class PaymentService:
    def __init__(self, repo, accounting, balances, uow_factory: Callable[[], UnitOfWork] | None = None):
        self.repo = repo
        self.accounting = accounting
        self.balances = balances
        self.uow_factory = uow_factory or (lambda: SqliteUnitOfWork(repo))

    def get_payment(self, tenant_id: int, payment_id: int) -> Payment:
        p = self.repo.get_payment(tenant_id, payment_id)
        if not p:
            raise NotFoundError("Payment not found.")
        return p

    def list_payments(self, tenant_id: int, type_: Optional[str] = None, customer_id: Optional[int] = None, supplier_id: Optional[int] = None) -> list[Payment]:
        return self.repo.list_payments(tenant_id, type_=type_, customer_id=customer_id, supplier_id=supplier_id)

    def record_payment(
        self,
        tenant_id: int,
        type_: str,
        amount: float = 0.0,
        payment_method: Optional[str] = "Cash",
        date: Optional[str] = None,
        customer_id: Optional[int] = None,
        supplier_id: Optional[int] = None,
        order_id: Optional[int] = None,
        purchase_invoice_id: Optional[int] = None,
        use_advance_balance: bool = False,
        advance_amount: Optional[float] = None,
        uow: UnitOfWork | None = None,
    ) -> PaymentResult:
        if type_ not in PAYMENT_TYPES:
            raise ValidationError(f"Unknown payment type: {type_}")
        cash = round(float(amount or 0), 2)
        if cash < 0:
            raise ValidationError("Payment amount must be >= 0.")
        date = date or date_cls.today().isoformat()
        method = (payment_method or "Cash").strip() or "Cash"

        with joined(uow, self.uow_factory) as u:
            if type_ == "CUSTOMER_PAYMENT":
                result = self._customer_payment(tenant_id, cash, method, date, customer_id, order_id, u)
            else:
                result = self._supplier_payment(
                    tenant_id, cash, method, date, supplier_id, purchase_invoice_id, use_advance_balance, advance_amount, u
                )

        log.info(
            "payment_recorded tenant=%s type=%s payment_id=%s txn=%s cash=%.2f advance=%.2f",
            tenant_id,
            type_,
            result.payment_id,
            result.transaction_id,
            result.cash_amount,
            result.advance_used,
        )
        return result

    def _customer_payment(
        self, tenant_id: int, cash: float, method: str, date: str, customer_id: Optional[int], order_id: Optional[int], u: UnitOfWork
    ) -> PaymentResult:
        if cash <= 0:
            raise ValidationError("Payment amount must be > 0.")
        if order_id is not None:
            order = self.repo.get_order(tenant_id, order_id, cur=u.cur)
            if not order:
                raise NotFoundError("Order not found.")
            customer_id = customer_id if customer_id is not None else order.customer_id
        if customer_id is not None and not self.repo.get_customer(tenant_id, customer_id, cur=u.cur):
            raise NotFoundError("Customer not found.")

        cash_acc = self.accounting.require_account(tenant_id, account_code_for_method(method), uow=u)
        ar = self.accounting.require_account(tenant_id, ACCOUNTS_RECEIVABLE, uow=u)
        txn = self.accounting.create_transaction(
            TransactionMeta(tenant_id=tenant_id, date=date, description="Customer payment", order_id=order_id),
            [
                TransactionLine(account_id=cash_acc.id, debit=cash),
                TransactionLine(account_id=ar.id, credit=cash),
            ],
            uow=u,
        )
        payment_id = self._store(u, tenant_id, date, "CUSTOMER_PAYMENT", cash, method, txn, customer_id=customer_id, order_id=order_id)
        if order_id is not None:
            self.repo.add_order_payment_amount(u.cur, order_id, cash)
        return PaymentResult(payment_id=payment_id, transaction_id=txn.id, cash_amount=cash, advance_used=0.0)

    def _supplier_payment(
        self,
        tenant_id: int,
        cash: float,
        method: str,
        date: str,
        supplier_id: Optional[int],
        invoice_id: Optional[int],
        use_advance: bool,
        advance_amount: Optional[float],
        u: UnitOfWork,
    ) -> PaymentResult:
        if invoice_id is not None:
            invoice = self.repo.get_purchase_invoice(tenant_id, invoice_id, cur=u.cur)
            if not invoice:
                raise NotFoundError("Purchase invoice not found.")
            supplier_id = supplier_id if supplier_id is not None else invoice.supplier_id
        if supplier_id is not None and not self.repo.get_supplier(tenant_id, supplier_id, cur=u.cur):
            raise NotFoundError("Supplier not found.")

        advance_used = 0.0
        if use_advance and supplier_id is not None:
            available = self.balances.calculate_supplier_balance(tenant_id, supplier_id, uow=u).advance
            if available > 0:
                requested = float(advance_amount) if advance_amount is not None else available
                advance_used = round(max(min(requested, available), 0.0), 2)

        total = round(cash + advance_used, 2)
        if total <= 0:
            raise ValidationError("Either payment amount or advance balance must be provided.")

        ap = self.accounting.require_account(tenant_id, ACCOUNTS_PAYABLE, uow=u)
        lines = [TransactionLine(account_id=ap.id, debit=total)]
        if cash > 0:
            cash_acc = self.accounting.require_account(tenant_id, account_code_for_method(method), uow=u)
            lines.append(TransactionLine(account_id=cash_acc.id, credit=cash))
        if advance_used > 0:
            advance_acc = self.accounting.require_account(tenant_id, SUPPLIER_ADVANCE, uow=u)
            lines.append(TransactionLine(account_id=advance_acc.id, credit=advance_used))

        description = "Supplier payment"
        if cash > 0 and advance_used > 0:
            description += f" (Paid: {cash:.2f}, Advance Used: {advance_used:.2f})"
        elif advance_used > 0:
            description += f" (Advance Used: {advance_used:.2f})"

        txn = self.accounting.create_transaction(
            TransactionMeta(tenant_id=tenant_id, date=date, description=description, purchase_invoice_id=invoice_id),
            lines,
            uow=u,
        )
        payment_id = None
        if cash > 0:
            payment_id = self._store(
                u, tenant_id, date, "SUPPLIER_PAYMENT", cash, method, txn, supplier_id=supplier_id, purchase_invoice_id=invoice_id
            )
            if invoice_id is not None:
                self.repo.add_invoice_payment_amount(u.cur, invoice_id, cash)
        if advance_used > 0:
            self.repo.insert_advance_usage(u.cur, tenant_id, supplier_id, advance_used, date, txn.id, payment_id=payment_id)
        return PaymentResult(payment_id=payment_id, transaction_id=txn.id, cash_amount=cash, advance_used=advance_used)

    def _store(self, u: UnitOfWork, tenant_id: int, date: str, type_: str, cash: float, method: str, txn: Transaction, **links) -> int:
        number = self.repo.next_number(u.cur, "payments", tenant_id, f"PAY-{number_year(date)}-")
        payment_id = self.repo.insert_payment(u.cur, tenant_id, number, date, type_, cash, method, transaction_id=txn.id, **links)
        self.repo.set_transaction_payment(u.cur, txn.id, payment_id)
        return payment_id

    def update_payment(
        self,
        tenant_id: int,
        payment_id: int,
        amount: Optional[float] = None,
        payment_method: Optional[str] = None,
        date: Optional[str] = None,
    ) -> Payment:
        """Re-post a payment: the old entry is reversed and retired, the new one replaces it."""
        with self.uow_factory() as u:
            payment = self.repo.get_payment(tenant_id, payment_id, cur=u.cur)
            if not payment:
                raise NotFoundError("Payment not found.")
            new_amount = round(float(amount), 2) if amount is not None else payment.amount
            if new_amount <= 0:
                raise ValidationError("Payment amount must be > 0.")
            method = (payment_method or payment.payment_method).strip() or "Cash"
            new_date = date or payment.date

            live = self.repo.get_live_transaction_for_payment(tenant_id, payment.id, cur=u.cur)
            if live is None:
                raise NotFoundError("Ledger entry for payment not found.")

            cash_acc = self.accounting.require_account(tenant_id, account_code_for_method(method), uow=u)
            if payment.type == "CUSTOMER_PAYMENT":
                ar = self.accounting.require_account(tenant_id, ACCOUNTS_RECEIVABLE, uow=u)
                lines = [
                    TransactionLine(account_id=cash_acc.id, debit=new_amount),
                    TransactionLine(account_id=ar.id, credit=new_amount),
                ]
            else:
                advance_acc = self.accounting.get_account_by_code(tenant_id, SUPPLIER_ADVANCE, uow=u)
                advance_used = round(
                    sum(l.credit for l in live.lines if advance_acc and l.account_id == advance_acc.id), 2
                )
                ap = self.accounting.require_account(tenant_id, ACCOUNTS_PAYABLE, uow=u)
                lines = [
                    TransactionLine(account_id=ap.id, debit=round(new_amount + advance_used, 2)),
                    TransactionLine(account_id=cash_acc.id, credit=new_amount),
                ]
                if advance_used > 0:
                    lines.append(TransactionLine(account_id=advance_acc.id, credit=advance_used))

            meta = TransactionMeta(
                tenant_id=tenant_id,
                date=new_date,
                description=live.description,
                order_id=payment.order_id,
                purchase_invoice_id=payment.purchase_invoice_id,
                payment_id=payment.id,
            )
            _, replacement = self.accounting.supersede_transaction(
                tenant_id, live.id, meta, lines, reversal_description=f"Reverse: payment {payment.payment_number}", uow=u
            )
            self.repo.update_payment_row(u.cur, payment.id, new_amount, method, new_date, replacement.id)
            self.repo.relink_advance_usage(u.cur, live.id, replacement.id)

            delta = round(new_amount - payment.amount, 2)
            if delta and payment.order_id is not None:
                self.repo.add_order_payment_amount(u.cur, payment.order_id, delta)
            if delta and payment.purchase_invoice_id is not None:
                self.repo.add_invoice_payment_amount(u.cur, payment.purchase_invoice_id, delta)
            updated = self.repo.get_payment(tenant_id, payment.id, cur=u.cur)

        log.info("payment_updated tenant=%s payment_id=%s old=%.2f new=%.2f method=%s", tenant_id, payment_id, payment.amount, new_amount, method)
        return updated
