from __future__ import annotations

import logging
from collections import Counter
from typing import Callable, Iterable, Optional

from backoffice.domain.errors import NotFoundError, ValidationError
from backoffice.domain.models import (
    HANDLING_METHODS,
    RETURN_STATUSES,
    Account,
    PurchaseInvoice,
    Return,
    ReturnItem,
    Transaction,
    TransactionLine,
    TransactionMeta,
)
from backoffice.repositories.unit_of_work import SqliteUnitOfWork, UnitOfWork, joined
from backoffice.services.accounting_service import ACCOUNTS_PAYABLE, INVENTORY, number_year

log = logging.getLogger("backoffice.returns")


def _name_key(name: str) -> str:
    return (name or "").strip().lower()


def _coerce_items(items: Iterable[ReturnItem | dict]) -> list[ReturnItem]:
    out: list[ReturnItem] = []
    for it in items:
        if not isinstance(it, ReturnItem):
            it = ReturnItem(
                product_name=str(it.get("product_name") or "").strip(),
                quantity=int(it.get("quantity") or 0),
                purchase_price=float(it.get("purchase_price") or 0),
                product_variant_id=it.get("product_variant_id"),
                sku=it.get("sku"),
                reason=it.get("reason"),
            )
        if not it.product_name.strip():
            raise ValidationError("Every return item needs a product name.")
        if it.quantity <= 0:
            raise ValidationError("Return quantity must be >= 1.")
        if it.purchase_price < 0:
            raise ValidationError("Purchase price must be >= 0.")
        out.append(it)
    if not out:
        raise ValidationError("Return has no items.")
    return out


class ReturnService:
    """Supplier returns, processed on save.

    Creating a return credits Inventory, lowers stock and shrinks the invoice
    total. Editing or deleting one first unwinds those effects: the live
    ledger entry is reversed and retired, stock is added back, the invoice
    total is restored.
    """

    def __init__(self, repo, accounting, inventory, uow_factory: Callable[[], UnitOfWork] | None = None):
        self.repo = repo
        self.accounting = accounting
        self.inventory = inventory
        self.uow_factory = uow_factory or (lambda: SqliteUnitOfWork(repo))

    # ---------- Queries ----------
    def get_return(self, tenant_id: int, return_id: int) -> Return:
        ret = self.repo.get_return(tenant_id, return_id)
        if not ret:
            raise NotFoundError("Return not found.")
        return ret

    def list_returns(
        self, tenant_id: int, return_type: Optional[str] = None, purchase_invoice_id: Optional[int] = None
    ) -> list[Return]:
        return self.repo.list_returns(tenant_id, return_type=return_type, purchase_invoice_id=purchase_invoice_id)

    # ---------- Validation ----------
    def _refund_account(
        self, tenant_id: int, method: str, refund_account_id: Optional[int], u: UnitOfWork
    ) -> Optional[Account]:
        if method not in HANDLING_METHODS:
            raise ValidationError('Return handling method must be either "REDUCE_AP" or "REFUND".')
        if method != "REFUND":
            return None
        if refund_account_id is None:
            raise ValidationError('Return refund account is required when return handling method is "REFUND".')
        acc = self.repo.get_account(tenant_id, refund_account_id, cur=u.cur)
        if not acc or acc.type != "ASSET" or acc.subtype not in ("CASH", "BANK"):
            raise ValidationError("Invalid return refund account. Account must be a Cash or Bank account.")
        return acc

    def _check_availability(
        self,
        tenant_id: int,
        invoice: PurchaseInvoice,
        items: list[ReturnItem],
        u: UnitOfWork,
        exclude_return_id: Optional[int] = None,
    ) -> None:
        purchased_variant: Counter[int] = Counter()
        purchased_name: Counter[str] = Counter()
        for pi in invoice.items:
            if pi.product_variant_id is not None:
                purchased_variant[pi.product_variant_id] += pi.quantity
            purchased_name[_name_key(pi.name)] += pi.quantity

        returned_variant, returned_name = self.repo.returned_quantities(
            tenant_id, invoice.id, exclude_return_id=exclude_return_id, cur=u.cur
        )

        wanted_variant: Counter[int] = Counter()
        wanted_name: Counter[str] = Counter()
        for it in items:
            if it.product_variant_id is not None:
                wanted_variant[int(it.product_variant_id)] += it.quantity
            else:
                wanted_name[_name_key(it.product_name)] += it.quantity

        display = {_name_key(it.product_name): it.product_name for it in items}
        for vid, qty in wanted_variant.items():
            available = purchased_variant[vid] - returned_variant.get(vid, 0)
            if qty > available:
                name = next(it.product_name for it in items if it.product_variant_id == vid)
                raise ValidationError(f"Return quantity for {name} ({qty}) exceeds available quantity ({available})")
        for key, qty in wanted_name.items():
            available = purchased_name[key] - returned_name.get(key, 0)
            if qty > available:
                raise ValidationError(f"Return quantity for {display[key]} ({qty}) exceeds available quantity ({available})")

    def _invoice(self, tenant_id: int, invoice_id: Optional[int], u: UnitOfWork) -> Optional[PurchaseInvoice]:
        if invoice_id is None:
            return None
        invoice = self.repo.get_purchase_invoice(tenant_id, invoice_id, cur=u.cur)
        if not invoice:
            raise NotFoundError("Purchase invoice not found.")
        return invoice

    # ---------- Ledger ----------
    def _lines(self, tenant_id: int, total: float, method: str, refund_account: Optional[Account], u: UnitOfWork) -> list[TransactionLine]:
        inventory = self.accounting.require_account(tenant_id, INVENTORY, uow=u)
        ap = self.accounting.require_account(tenant_id, ACCOUNTS_PAYABLE, uow=u)
        if method == "REFUND":
            # AP carries twice the return value so the refund leg balances against it
            return [
                TransactionLine(account_id=ap.id, debit=round(total * 2, 2)),
                TransactionLine(account_id=inventory.id, credit=total),
                TransactionLine(account_id=refund_account.id, credit=total),
            ]
        return [
            TransactionLine(account_id=ap.id, debit=total),
            TransactionLine(account_id=inventory.id, credit=total),
        ]

    def _meta(self, tenant_id: int, ret_id: int, number: str, return_date: str, invoice: Optional[PurchaseInvoice]) -> TransactionMeta:
        suffix = f" (Invoice: {invoice.invoice_number})" if invoice else ""
        return TransactionMeta(
            tenant_id=tenant_id,
            date=return_date,
            description=f"Supplier Return: {number}{suffix}",
            order_return_id=ret_id,
            purchase_invoice_id=invoice.id if invoice else None,
        )

    def derive_handling(self, tenant_id: int, txn: Transaction, u: UnitOfWork | None = None) -> tuple[Optional[str], Optional[int]]:
        """Handling method and refund account a posted return entry was built with."""
        cur = u.cur if u else None
        method: Optional[str] = None
        for line in txn.lines:
            acc = self.repo.get_account(tenant_id, line.account_id, cur=cur)
            if acc is None:
                continue
            # a cash/bank leg wins over the AP leg both methods share
            if acc.subtype in ("CASH", "BANK") and line.credit > 0:
                return "REFUND", acc.id
            if acc.code == ACCOUNTS_PAYABLE or acc.subtype == "ACCOUNTS_PAYABLE":
                method = "REDUCE_AP"
        return method, None

    # ---------- Side effects ----------
    def _apply(self, tenant_id: int, number: str, invoice: Optional[PurchaseInvoice], items: list[ReturnItem], total: float, u: UnitOfWork) -> None:
        self.inventory.decrease_inventory_from_return(tenant_id, items, f"Supplier return {number}", uow=u)
        if invoice is not None:
            current = self.repo.get_purchase_invoice(tenant_id, invoice.id, cur=u.cur)
            self.repo.set_invoice_total(u.cur, invoice.id, max(current.total_amount - total, 0.0))

    def _unwind(self, tenant_id: int, ret: Return, u: UnitOfWork) -> None:
        self.inventory.restore_inventory_from_return(tenant_id, ret.items, f"Supplier return {ret.return_number}", uow=u)
        if ret.purchase_invoice_id is not None:
            current = self.repo.get_purchase_invoice(tenant_id, ret.purchase_invoice_id, cur=u.cur)
            if current is not None:
                self.repo.set_invoice_total(u.cur, current.id, current.total_amount + ret.total_amount)

    # ---------- Commands ----------
    def create_supplier_return(
        self,
        tenant_id: int,
        return_date: str,
        items: Iterable[ReturnItem | dict],
        handling_method: str,
        purchase_invoice_id: Optional[int] = None,
        refund_account_id: Optional[int] = None,
        reason: Optional[str] = None,
        notes: Optional[str] = None,
        uow: UnitOfWork | None = None,
    ) -> int:
        items = _coerce_items(items)
        total = round(sum(it.line_total for it in items), 2)
        if total <= 0:
            raise ValidationError("Return total must be > 0.")

        with joined(uow, self.uow_factory) as u:
            refund_account = self._refund_account(tenant_id, handling_method, refund_account_id, u)
            invoice = self._invoice(tenant_id, purchase_invoice_id, u)
            if invoice is not None:
                self._check_availability(tenant_id, invoice, items, u)

            number = self.repo.next_number(u.cur, "returns", tenant_id, f"RET-{number_year(return_date)}-")
            return_id = self.repo.insert_return(
                u.cur,
                tenant_id,
                number,
                "SUPPLIER",
                "PROCESSED",
                return_date,
                total,
                purchase_invoice_id=invoice.id if invoice else None,
                handling_method=handling_method,
                refund_account_id=refund_account.id if refund_account else None,
                refund_amount=total if refund_account else 0.0,
                reason=reason,
                notes=notes,
            )
            self.repo.replace_return_items(u.cur, return_id, items)

            txn = self.accounting.create_transaction(
                self._meta(tenant_id, return_id, number, return_date, invoice),
                self._lines(tenant_id, total, handling_method, refund_account, u),
                uow=u,
            )
            self._apply(tenant_id, number, invoice, items, total, u)

        log.info(
            "supplier_return_created tenant=%s return_id=%s number=%s total=%.2f method=%s txn=%s",
            tenant_id,
            return_id,
            number,
            total,
            handling_method,
            txn.transaction_number,
        )
        return return_id

    def update_supplier_return(
        self,
        tenant_id: int,
        return_id: int,
        return_date: Optional[str] = None,
        items: Iterable[ReturnItem | dict] | None = None,
        handling_method: Optional[str] = None,
        refund_account_id: Optional[int] = None,
        reason: Optional[str] = None,
        notes: Optional[str] = None,
        uow: UnitOfWork | None = None,
    ) -> Return:
        with joined(uow, self.uow_factory) as u:
            ret = self.repo.get_return(tenant_id, return_id, cur=u.cur)
            if not ret:
                raise NotFoundError("Return not found.")
            if ret.return_type != "SUPPLIER":
                raise ValidationError("Only supplier returns can be edited here.")

            new_items = _coerce_items(items) if items is not None else list(ret.items)
            new_total = round(sum(it.line_total for it in new_items), 2)
            if new_total <= 0:
                raise ValidationError("Return total must be > 0.")
            new_date = return_date or ret.return_date

            live = self.repo.get_live_transaction_for_return(tenant_id, ret.id, cur=u.cur)
            if live is not None:
                old_method, old_refund_id = self.derive_handling(tenant_id, live, u)
            else:
                old_method, old_refund_id = ret.return_handling_method, ret.refund_account_id
            method = handling_method or old_method or ret.return_handling_method
            if refund_account_id is None and method == "REFUND":
                refund_account_id = old_refund_id or ret.refund_account_id
            refund_account = self._refund_account(tenant_id, method, refund_account_id, u)

            invoice = self._invoice(tenant_id, ret.purchase_invoice_id, u)
            if invoice is not None:
                self._check_availability(tenant_id, invoice, new_items, u, exclude_return_id=ret.id)

            self._unwind(tenant_id, ret, u)
            self._apply(tenant_id, ret.return_number, invoice, new_items, new_total, u)

            meta = self._meta(tenant_id, ret.id, ret.return_number, new_date, invoice)
            lines = self._lines(tenant_id, new_total, method, refund_account, u)
            if live is not None:
                reversal, replacement = self.accounting.supersede_transaction(
                    tenant_id,
                    live.id,
                    meta,
                    lines,
                    reversal_description=f"Reverse: Supplier Return: {ret.return_number}",
                    uow=u,
                )
                log.info(
                    "supplier_return_reposted return_id=%s old_txn=%s reversal=%s new_txn=%s old_method=%s new_method=%s",
                    ret.id,
                    live.id,
                    reversal.id,
                    replacement.id,
                    old_method,
                    method,
                )
            else:
                self.accounting.create_transaction(meta, lines, uow=u)

            self.repo.update_return(
                u.cur,
                ret.id,
                new_date,
                new_total,
                method,
                refund_account.id if refund_account else None,
                new_total if refund_account else 0.0,
                reason if reason is not None else ret.reason,
                notes if notes is not None else ret.notes,
            )
            self.repo.replace_return_items(u.cur, ret.id, new_items)
            updated = self.repo.get_return(tenant_id, ret.id, cur=u.cur)

        log.info("supplier_return_updated tenant=%s return_id=%s total=%.2f method=%s", tenant_id, return_id, new_total, method)
        return updated

    def delete_supplier_return(self, tenant_id: int, return_id: int, uow: UnitOfWork | None = None) -> None:
        with joined(uow, self.uow_factory) as u:
            ret = self.repo.get_return(tenant_id, return_id, cur=u.cur)
            if not ret:
                raise NotFoundError("Return not found.")
            live = self.repo.get_live_transaction_for_return(tenant_id, ret.id, cur=u.cur)
            if live is not None:
                self.accounting.reverse_transaction(
                    tenant_id, live.id, description=f"Reverse: Supplier Return: {ret.return_number}", uow=u
                )
            self._unwind(tenant_id, ret, u)
            self.repo.soft_delete_return(u.cur, ret.id)
        log.info("supplier_return_deleted tenant=%s return_id=%s", tenant_id, return_id)

    def set_status(self, tenant_id: int, return_id: int, status: str) -> Return:
        """Display-only label; processing already happened on save."""
        if status not in RETURN_STATUSES:
            raise ValidationError(f"Unknown return status: {status}")
        with self.uow_factory() as u:
            ret = self.repo.get_return(tenant_id, return_id, cur=u.cur)
            if not ret:
                raise NotFoundError("Return not found.")
            self.repo.set_return_status(u.cur, ret.id, status)
            return self.repo.get_return(tenant_id, ret.id, cur=u.cur)
