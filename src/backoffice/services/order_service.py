from __future__ import annotations

import logging
from dataclasses import replace
from datetime import date
from typing import Callable, Iterable, Optional

from backoffice.domain.errors import InsufficientStockError, NotFoundError, ValidationError
from backoffice.domain.models import ALLOCATING_STATUSES, ORDER_STATUSES, Order, OrderItem
from backoffice.repositories.unit_of_work import SqliteUnitOfWork, UnitOfWork, joined

log = logging.getLogger("backoffice.stock")


def _coerce_items(items: Iterable[OrderItem | dict]) -> list[OrderItem]:
    out: list[OrderItem] = []
    for it in items:
        if not isinstance(it, OrderItem):
            it = OrderItem(
                quantity=int(it.get("quantity") or 0),
                price=float(it.get("price") or 0),
                product_id=it.get("product_id"),
                product_variant_id=it.get("product_variant_id"),
                product_name=it.get("product_name"),
            )
        if it.quantity <= 0:
            raise ValidationError("Qty must be >= 1.")
        if it.price < 0:
            raise ValidationError("Price must be >= 0.")
        if it.stock_key is None and not (it.product_name or "").strip():
            raise ValidationError("Every order item needs a product, a variant or a product name.")
        out.append(it)
    if not out:
        raise ValidationError("Order has no items.")
    return out


class OrderService:
    def __init__(self, repo, stock_validation, uow_factory: Callable[[], UnitOfWork] | None = None):
        self.repo = repo
        self.stock = stock_validation
        self.uow_factory = uow_factory or (lambda: SqliteUnitOfWork(repo))

    def get_order(self, tenant_id: int, order_id: int) -> Order:
        order = self.repo.get_order(tenant_id, order_id)
        if not order:
            raise NotFoundError("Order not found.")
        return order

    def list_orders(self, tenant_id: int, statuses: Iterable[str] | None = None, customer_id: Optional[int] = None) -> list[Order]:
        return self.repo.list_orders(tenant_id, statuses=statuses, customer_id=customer_id)

    def _resolve_items(self, tenant_id: int, items: list[OrderItem], u: UnitOfWork) -> list[OrderItem]:
        """Pin name-only items to the product they name so allocation can key them."""
        out = []
        for it in items:
            if it.stock_key is None:
                product = self.repo.find_product_by_name(tenant_id, it.product_name, cur=u.cur)
                if product:
                    it = replace(it, product_id=product.id)
            out.append(it)
        return out

    def _ensure_stock(self, tenant_id: int, items: list[OrderItem], exclude_order_id: Optional[int], u: UnitOfWork) -> None:
        result = self.stock.validate_items(tenant_id, items, exclude_order_id=exclude_order_id, uow=u)
        if not result.is_valid:
            raise InsufficientStockError(
                "; ".join(e.message for e in result.errors) or "Insufficient stock.",
                errors=result.errors,
            )

    def create_order(
        self,
        tenant_id: int,
        customer_id: Optional[int],
        items: Iterable[OrderItem | dict],
        status: str = "PENDING",
        shipping_charges: float = 0.0,
        cod_fee: float = 0.0,
        cod_fee_paid_by: Optional[str] = None,
        uow: UnitOfWork | None = None,
    ) -> int:
        items = _coerce_items(items)
        if status not in ORDER_STATUSES:
            raise ValidationError(f"Unknown order status: {status}")
        if shipping_charges < 0 or cod_fee < 0:
            raise ValidationError("Charges must be >= 0.")

        with joined(uow, self.uow_factory) as u:
            if not self.repo.tenant_exists(tenant_id, cur=u.cur):
                raise NotFoundError("Tenant not found.")
            if customer_id is not None and not self.repo.get_customer(tenant_id, customer_id, cur=u.cur):
                raise NotFoundError("Customer not found.")
            items = self._resolve_items(tenant_id, items, u)
            if status in ALLOCATING_STATUSES:
                self._ensure_stock(tenant_id, items, None, u)

            number = self.repo.next_number(u.cur, "orders", tenant_id, f"ORD-{date.today().year}-")
            order_id = self.repo.insert_order(
                u.cur,
                tenant_id,
                customer_id,
                number,
                status,
                shipping_charges=shipping_charges,
                cod_fee=cod_fee,
                cod_fee_paid_by=cod_fee_paid_by,
            )
            self.repo.replace_order_items(u.cur, order_id, items)

        log.info("order_created tenant=%s order_id=%s number=%s status=%s items=%s", tenant_id, order_id, number, status, len(items))
        return order_id

    def update_order_items(self, tenant_id: int, order_id: int, items: Iterable[OrderItem | dict]) -> Order:
        items = _coerce_items(items)
        with self.uow_factory() as u:
            order = self.repo.get_order(tenant_id, order_id, cur=u.cur)
            if not order:
                raise NotFoundError("Order not found.")
            items = self._resolve_items(tenant_id, items, u)
            if order.holds_allocation:
                self._ensure_stock(tenant_id, items, order.id, u)
            self.repo.replace_order_items(u.cur, order.id, items)
            updated = self.repo.get_order(tenant_id, order.id, cur=u.cur)
        log.info("order_items_updated tenant=%s order_id=%s items=%s", tenant_id, order_id, len(items))
        return updated

    def set_status(self, tenant_id: int, order_id: int, status: str) -> Order:
        """Change an order's status.

        Moving into CONFIRMED/DISPATCHED/COMPLETED from a non-allocating status
        re-checks stock while holding the write lock, so two confirmations
        racing for the last units cannot both succeed.
        """
        if status not in ORDER_STATUSES:
            raise ValidationError(f"Unknown order status: {status}")
        with self.uow_factory() as u:
            order = self.repo.get_order(tenant_id, order_id, cur=u.cur)
            if not order:
                raise NotFoundError("Order not found.")
            if status in ALLOCATING_STATUSES and not order.holds_allocation:
                self._ensure_stock(tenant_id, list(order.items), order.id, u)
            self.repo.set_order_status(u.cur, order.id, status)
            updated = self.repo.get_order(tenant_id, order.id, cur=u.cur)
        log.info("order_status_changed tenant=%s order_id=%s from=%s to=%s", tenant_id, order_id, order.status, status)
        return updated

    def confirm_order(self, tenant_id: int, order_id: int) -> Order:
        return self.set_status(tenant_id, order_id, "CONFIRMED")
