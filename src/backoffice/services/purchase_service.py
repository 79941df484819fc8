from __future__ import annotations

import logging
from collections import Counter
from typing import Callable, Iterable, Optional

from backoffice.domain.errors import NotFoundError, ValidationError
from backoffice.domain.models import PurchaseInvoice, TransactionLine, TransactionMeta
from backoffice.repositories.unit_of_work import SqliteUnitOfWork, UnitOfWork, joined
from backoffice.services.accounting_service import ACCOUNTS_PAYABLE, INVENTORY, number_year

log = logging.getLogger("backoffice.purchases")


def _validated_total(items: list[dict]) -> float:
    if not items:
        raise ValidationError("Purchase invoice has no items.")
    total = 0.0
    for it in items:
        name = str(it.get("name") or "").strip()
        qty = int(it.get("quantity") or 0)
        price = float(it.get("purchase_price") or 0)
        if not name:
            raise ValidationError("Every purchase item needs a name.")
        if qty <= 0:
            raise ValidationError("Quantity must be >= 1.")
        if price < 0:
            raise ValidationError("Purchase price must be >= 0.")
        total += qty * price
    return round(total, 2)


class PurchaseService:
    def __init__(self, repo, inventory, accounting, uow_factory: Callable[[], UnitOfWork] | None = None):
        self.repo = repo
        self.inventory = inventory
        self.accounting = accounting
        self.uow_factory = uow_factory or (lambda: SqliteUnitOfWork(repo))

    def _insert_items(self, u: UnitOfWork, invoice_id: int, items: list[dict]) -> None:
        for it in items:
            self.repo.insert_purchase_item(
                u.cur,
                invoice_id,
                str(it["name"]).strip(),
                int(it["quantity"]),
                float(it["purchase_price"]),
                sku=it.get("sku"),
                variant_id=it.get("product_variant_id"),
            )

    def _entry(
        self, u: UnitOfWork, tenant_id: int, invoice_id: int, number: str, invoice_date: str, gross: float
    ) -> tuple[TransactionMeta, list[TransactionLine]]:
        inventory_acc = self.accounting.require_account(tenant_id, INVENTORY, uow=u)
        ap_acc = self.accounting.require_account(tenant_id, ACCOUNTS_PAYABLE, uow=u)
        return (
            TransactionMeta(
                tenant_id=tenant_id,
                date=invoice_date,
                description=f"Purchase invoice {number}",
                purchase_invoice_id=invoice_id,
            ),
            [
                TransactionLine(account_id=inventory_acc.id, debit=gross),
                TransactionLine(account_id=ap_acc.id, credit=gross),
            ],
        )

    def create_purchase_invoice(
        self,
        tenant_id: int,
        invoice_date: str,
        items: Iterable[dict],
        supplier_id: Optional[int] = None,
        invoice_number: Optional[str] = None,
        notes: Optional[str] = None,
        uow: UnitOfWork | None = None,
    ) -> int:
        """
        items: [{name, quantity, purchase_price, sku?, product_variant_id?}]

        Stores the invoice, raises stock for every line and posts
        Dr Inventory / Cr Accounts Payable for the invoice total.
        """
        items = list(items)
        total = _validated_total(items)

        with joined(uow, self.uow_factory) as u:
            if supplier_id is not None and not self.repo.get_supplier(tenant_id, supplier_id, cur=u.cur):
                raise NotFoundError("Supplier not found.")

            invoice_number = (invoice_number or "").strip() or self.repo.next_number(
                u.cur, "purchase_invoices", tenant_id, f"PINV-{number_year(invoice_date)}-"
            )
            if self.repo.invoice_number_taken(tenant_id, invoice_number, cur=u.cur):
                raise ValidationError(f"Invoice number {invoice_number} already exists.")

            invoice_id = self.repo.insert_purchase_invoice(u.cur, tenant_id, invoice_number, invoice_date, total, supplier_id, notes)
            self._insert_items(u, invoice_id, items)

            invoice = self.repo.get_purchase_invoice(tenant_id, invoice_id, cur=u.cur)
            self.inventory.increase_inventory_from_purchase(tenant_id, invoice.items, invoice_id, invoice_number, uow=u)

            if total > 0:
                meta, lines = self._entry(u, tenant_id, invoice_id, invoice_number, invoice_date, total)
                txn = self.accounting.create_transaction(meta, lines, uow=u)
                self.repo.set_invoice_transaction(u.cur, invoice_id, txn.id)

        log.info("purchase_invoice_created tenant=%s invoice_id=%s number=%s total=%.2f", tenant_id, invoice_id, invoice_number, total)
        return invoice_id

    def _check_returned(self, tenant_id: int, invoice: PurchaseInvoice, items: list[dict], u: UnitOfWork) -> None:
        returned_variant, returned_name = self.repo.returned_quantities(tenant_id, invoice.id, cur=u.cur)
        by_variant: Counter[int] = Counter()
        by_name: Counter[str] = Counter()
        for it in items:
            if it.get("product_variant_id") is not None:
                by_variant[int(it["product_variant_id"])] += int(it["quantity"])
            by_name[str(it["name"]).strip().lower()] += int(it["quantity"])
        for vid, qty in returned_variant.items():
            if by_variant[vid] < qty:
                raise ValidationError(f"Purchased quantity for variant {vid} ({by_variant[vid]}) is below the returned quantity ({qty})")
        for name, qty in returned_name.items():
            if by_name[name] < qty:
                raise ValidationError(f"Purchased quantity for {name} ({by_name[name]}) is below the returned quantity ({qty})")

    def update_purchase_invoice(
        self,
        tenant_id: int,
        invoice_id: int,
        items: Optional[Iterable[dict]] = None,
        invoice_date: Optional[str] = None,
        supplier_id: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> PurchaseInvoice:
        """Re-apply an edited invoice.

        The old lines' stock is taken back and the new lines are added, the
        purchase entry is reversed and re-posted, and the invoice total keeps
        the deduction of returns already made against it.
        """
        with self.uow_factory() as u:
            invoice = self.repo.get_purchase_invoice(tenant_id, invoice_id, cur=u.cur)
            if not invoice:
                raise NotFoundError("Purchase invoice not found.")
            if supplier_id is not None and not self.repo.get_supplier(tenant_id, supplier_id, cur=u.cur):
                raise NotFoundError("Supplier not found.")

            if items is None:
                items = [
                    {
                        "name": pi.name,
                        "quantity": pi.quantity,
                        "purchase_price": pi.purchase_price,
                        "sku": pi.sku,
                        "product_variant_id": pi.product_variant_id,
                    }
                    for pi in invoice.items
                ]
            items = list(items)
            gross = _validated_total(items)
            self._check_returned(tenant_id, invoice, items, u)

            new_date = invoice_date or invoice.invoice_date
            reference = f"Purchase invoice {invoice.invoice_number}"
            # new lines first: returns may already have taken part of the old lines' stock
            self.repo.delete_purchase_items(u.cur, invoice.id)
            self._insert_items(u, invoice.id, items)
            fresh = self.repo.get_purchase_invoice(tenant_id, invoice.id, cur=u.cur)
            self.inventory.increase_inventory_from_purchase(tenant_id, fresh.items, invoice.id, invoice.invoice_number, uow=u)
            self.inventory.reverse_purchase_items(tenant_id, invoice.items, "Purchase invoice edited", reference, uow=u)

            returned_total = sum(r.total_amount for r in self.repo.list_returns(tenant_id, purchase_invoice_id=invoice.id, cur=u.cur))
            self.repo.update_purchase_invoice_row(
                u.cur,
                invoice.id,
                new_date,
                max(round(gross - returned_total, 2), 0.0),
                supplier_id if supplier_id is not None else invoice.supplier_id,
                notes if notes is not None else invoice.notes,
            )

            reversal_description = f"Reverse: purchase invoice {invoice.invoice_number}"
            if gross > 0:
                meta, lines = self._entry(u, tenant_id, invoice.id, invoice.invoice_number, new_date, gross)
                if invoice.transaction_id is not None:
                    _, txn = self.accounting.supersede_transaction(
                        tenant_id, invoice.transaction_id, meta, lines, reversal_description=reversal_description, uow=u
                    )
                else:
                    txn = self.accounting.create_transaction(meta, lines, uow=u)
                self.repo.set_invoice_transaction(u.cur, invoice.id, txn.id)
            elif invoice.transaction_id is not None:
                self.accounting.reverse_transaction(tenant_id, invoice.transaction_id, description=reversal_description, uow=u)
                self.repo.set_invoice_transaction(u.cur, invoice.id, None)

            updated = self.repo.get_purchase_invoice(tenant_id, invoice.id, cur=u.cur)

        log.info(
            "purchase_invoice_updated tenant=%s invoice_id=%s old_total=%.2f new_total=%.2f",
            tenant_id,
            invoice_id,
            invoice.total_amount,
            updated.total_amount,
        )
        return updated

    def delete_purchase_invoice(self, tenant_id: int, invoice_id: int) -> None:
        """Take back the invoice's stock, reverse its purchase entry and soft-delete it."""
        with self.uow_factory() as u:
            invoice = self.repo.get_purchase_invoice(tenant_id, invoice_id, cur=u.cur)
            if not invoice:
                raise NotFoundError("Purchase invoice not found.")
            if self.repo.list_returns(tenant_id, purchase_invoice_id=invoice.id, cur=u.cur):
                raise ValidationError(f"Invoice {invoice.invoice_number} has returns. Delete them first.")
            if invoice.payment_amount > 0:
                raise ValidationError(f"Invoice {invoice.invoice_number} has payments recorded against it.")

            reference = f"Purchase invoice {invoice.invoice_number}"
            self.inventory.reverse_purchase_items(tenant_id, invoice.items, "Purchase invoice deleted", reference, uow=u)
            if invoice.transaction_id is not None:
                self.accounting.reverse_transaction(
                    tenant_id, invoice.transaction_id, description=f"Reverse: purchase invoice {invoice.invoice_number}", uow=u
                )
            self.repo.soft_delete_purchase_invoice(u.cur, invoice.id)

        log.info("purchase_invoice_deleted tenant=%s invoice_id=%s number=%s", tenant_id, invoice_id, invoice.invoice_number)

    def get_invoice(self, tenant_id: int, invoice_id: int) -> PurchaseInvoice:
        inv = self.repo.get_purchase_invoice(tenant_id, invoice_id)
        if not inv:
            raise NotFoundError("Purchase invoice not found.")
        return inv

    def list_invoices(self, tenant_id: int, supplier_id: Optional[int] = None) -> list[PurchaseInvoice]:
        return self.repo.list_purchase_invoices(tenant_id, supplier_id=supplier_id)
