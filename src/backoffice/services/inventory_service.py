from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional

from backoffice.domain.errors import NotFoundError, ValidationError
from backoffice.domain.models import Product, PurchaseItem, ReturnItem, StockMovement
from backoffice.repositories.unit_of_work import SqliteUnitOfWork, UnitOfWork, joined

log = logging.getLogger("backoffice.stock")


@dataclass
class InventoryUpdateResult:
    updated: list[tuple[str, int, int]] = field(default_factory=list)
    not_found: list[str] = field(default_factory=list)


class InventoryService:
    def __init__(self, repo, uow_factory: Callable[[], UnitOfWork] | None = None):
        self.repo = repo
        self.uow_factory = uow_factory or (lambda: SqliteUnitOfWork(repo))

    def list_products(self, tenant_id: int) -> list[Product]:
        return self.repo.list_products(tenant_id)

    def get_product(self, tenant_id: int, product_id: int) -> Product:
        p = self.repo.get_product(tenant_id, product_id)
        if not p:
            raise NotFoundError("Product not found.")
        return p

    def find_product(self, tenant_id: int, product_id: int | None = None, name: str | None = None) -> Optional[Product]:
        if product_id is not None:
            p = self.repo.get_product(tenant_id, product_id)
            if p:
                return p
        if name and name.strip():
            return self.repo.find_product_by_name(tenant_id, name)
        return None

    def add_product(
        self,
        tenant_id: int,
        name: str,
        sku: str | None = None,
        quantity: int = 0,
        last_purchase_price: float = 0.0,
        retail_price: float = 0.0,
        uow: UnitOfWork | None = None,
    ) -> int:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Product name is required.")
        if quantity < 0:
            raise ValidationError("Quantity must be >= 0.")
        if last_purchase_price < 0 or retail_price < 0:
            raise ValidationError("Prices must be >= 0.")
        with joined(uow, self.uow_factory) as u:
            if not self.repo.tenant_exists(tenant_id, cur=u.cur):
                raise NotFoundError("Tenant not found.")
            return self.repo.insert_product(u.cur, tenant_id, name, sku, int(quantity), float(last_purchase_price), float(retail_price))

    def add_variant(
        self,
        tenant_id: int,
        product_id: int,
        color: str | None = None,
        size: str | None = None,
        sku: str | None = None,
        quantity: int = 0,
        uow: UnitOfWork | None = None,
    ) -> int:
        if quantity < 0:
            raise ValidationError("Quantity must be >= 0.")
        with joined(uow, self.uow_factory) as u:
            if not self.repo.get_product(tenant_id, product_id, cur=u.cur):
                raise NotFoundError("Product not found.")
            return self.repo.insert_variant(u.cur, product_id, color, size, sku, int(quantity))

    def product_history(self, tenant_id: int, product_id: int) -> list[StockMovement]:
        return self.repo.list_stock_movements(tenant_id, product_id)

    def _move(
        self,
        u: UnitOfWork,
        tenant_id: int,
        product: Product | None,
        variant_id: int | None,
        old_qty: int,
        delta: int,
        reason: str,
        reference: str | None,
    ) -> int:
        new_qty = max(old_qty + delta, 0)
        if variant_id is not None:
            self.repo.set_variant_quantity(u.cur, variant_id, new_qty)
        else:
            self.repo.set_product_quantity(u.cur, product.id, new_qty)
        self.repo.insert_stock_movement(
            u.cur,
            tenant_id,
            product.id if product and variant_id is None else None,
            variant_id,
            "INCREASE" if delta > 0 else "DECREASE",
            abs(delta),
            old_qty,
            new_qty,
            reason,
            reference,
        )
        return new_qty

    def increase_inventory_from_purchase(
        self,
        tenant_id: int,
        items: Iterable[PurchaseItem],
        purchase_invoice_id: int,
        invoice_number: str,
        uow: UnitOfWork | None = None,
    ) -> InventoryUpdateResult:
        result = InventoryUpdateResult()
        reference = f"Purchase invoice {invoice_number}"
        with joined(uow, self.uow_factory) as u:
            for it in items:
                if it.product_variant_id is not None:
                    found = self.repo.get_variant(tenant_id, it.product_variant_id, cur=u.cur)
                    if not found:
                        raise NotFoundError(f"Variant {it.product_variant_id} not found.")
                    variant, product = found
                    new_qty = self._move(u, tenant_id, product, variant.id, variant.current_quantity, it.quantity, "Purchase", reference)
                    result.updated.append((it.name, variant.current_quantity, new_qty))
                else:
                    product = self.repo.find_product_by_name(tenant_id, it.name, cur=u.cur)
                    if not product:
                        pid = self.repo.insert_product(u.cur, tenant_id, it.name.strip(), it.sku, 0, it.purchase_price, 0.0)
                        product = self.repo.get_product(tenant_id, pid, cur=u.cur)
                        log.info("product_created_from_purchase tenant=%s product_id=%s name=%s", tenant_id, pid, it.name)
                    new_qty = self._move(u, tenant_id, product, None, product.current_quantity, it.quantity, "Purchase", reference)
                    result.updated.append((it.name, product.current_quantity, new_qty))
                self.repo.set_last_purchase_price(u.cur, product.id, it.purchase_price)
                self.repo.link_purchase_item(u.cur, it.id, product.id)

        log.info("inventory_increased tenant=%s invoice_id=%s items=%s", tenant_id, purchase_invoice_id, len(result.updated))
        return result

    def reverse_purchase_items(
        self,
        tenant_id: int,
        items: Iterable[PurchaseItem],
        reason: str,
        reference: str,
        uow: UnitOfWork | None = None,
    ) -> InventoryUpdateResult:
        """Take back the stock a purchase added, floored at 0. Used when an invoice is edited or deleted."""
        result = InventoryUpdateResult()
        with joined(uow, self.uow_factory) as u:
            for it in items:
                if it.product_variant_id is not None:
                    found = self.repo.get_variant(tenant_id, it.product_variant_id, cur=u.cur)
                    if not found:
                        result.not_found.append(it.name)
                        continue
                    variant, product = found
                    new_qty = self._move(u, tenant_id, product, variant.id, variant.current_quantity, -it.quantity, reason, reference)
                    result.updated.append((it.name, variant.current_quantity, new_qty))
                    continue

                product = None
                if it.product_id is not None:
                    product = self.repo.get_product(tenant_id, it.product_id, cur=u.cur)
                if not product:
                    product = self.repo.find_product_by_name(tenant_id, it.name, cur=u.cur)
                if not product:
                    result.not_found.append(it.name)
                    continue
                new_qty = self._move(u, tenant_id, product, None, product.current_quantity, -it.quantity, reason, reference)
                result.updated.append((it.name, product.current_quantity, new_qty))

        if result.not_found:
            log.warning("purchase_items_not_in_inventory tenant=%s reference=%s names=%s", tenant_id, reference, result.not_found)
        return result

    def _apply_return_items(
        self,
        tenant_id: int,
        items: Iterable[ReturnItem],
        sign: int,
        reason: str,
        reference: str,
        uow: UnitOfWork | None,
    ) -> InventoryUpdateResult:
        result = InventoryUpdateResult()
        with joined(uow, self.uow_factory) as u:
            for it in items:
                if it.product_variant_id is not None:
                    found = self.repo.get_variant(tenant_id, it.product_variant_id, cur=u.cur)
                    if not found:
                        result.not_found.append(it.product_name)
                        continue
                    variant, product = found
                    new_qty = self._move(u, tenant_id, product, variant.id, variant.current_quantity, sign * it.quantity, reason, reference)
                    result.updated.append((it.product_name, variant.current_quantity, new_qty))
                    continue

                product = self.repo.find_product_by_name(tenant_id, it.product_name, cur=u.cur)
                if not product:
                    result.not_found.append(it.product_name)
                    continue
                new_qty = self._move(u, tenant_id, product, None, product.current_quantity, sign * it.quantity, reason, reference)
                result.updated.append((it.product_name, product.current_quantity, new_qty))

        if result.not_found:
            log.warning("return_items_not_in_inventory tenant=%s reference=%s names=%s", tenant_id, reference, result.not_found)
        return result

    def decrease_inventory_from_return(
        self, tenant_id: int, items: Iterable[ReturnItem], reference: str, uow: UnitOfWork | None = None
    ) -> InventoryUpdateResult:
        return self._apply_return_items(tenant_id, items, -1, "Supplier return", reference, uow)

    def restore_inventory_from_return(
        self, tenant_id: int, items: Iterable[ReturnItem], reference: str, uow: UnitOfWork | None = None
    ) -> InventoryUpdateResult:
        return self._apply_return_items(tenant_id, items, 1, "Supplier return reversed", reference, uow)
