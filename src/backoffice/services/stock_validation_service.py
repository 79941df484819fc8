from __future__ import annotations

import logging
from collections import Counter
from typing import Any, Iterable, Optional

from backoffice.domain.legacy import normalize_legacy_items, parse_json
from backoffice.domain.models import (
    ALLOCATING_STATUSES,
    OrderItem,
    ProductKey,
    StockError,
    StockKey,
    StockValidationResult,
    VariantKey,
)
from backoffice.repositories.unit_of_work import UnitOfWork

log = logging.getLogger("backoffice.stock")


class StockValidationService:
    """Best-effort availability check: current stock minus what allocating orders hold.

    Allocation is recomputed from orders on every call. Callers that must not
    oversell run this inside the unit of work that writes the order.
    """

    def __init__(self, repo):
        self.repo = repo

    def validate_stock_availability(
        self,
        tenant_id: int,
        selected_products: Any,
        product_quantities: Any,
        exclude_order_id: Optional[int] = None,
        uow: UnitOfWork | None = None,
    ) -> StockValidationResult:
        try:
            if parse_json(selected_products) is None or parse_json(product_quantities) is None:
                return StockValidationResult()
            demand = normalize_legacy_items(selected_products, product_quantities)
        except ValueError as exc:
            log.warning("stock_payload_unreadable tenant=%s error=%s", tenant_id, exc)
            result = StockValidationResult()
            result.add(StockError(message="Error validating stock availability"))
            return result
        return self.validate_items(tenant_id, demand, exclude_order_id=exclude_order_id, uow=uow)

    def validate_items(
        self,
        tenant_id: int,
        items: Iterable[OrderItem],
        exclude_order_id: Optional[int] = None,
        uow: UnitOfWork | None = None,
    ) -> StockValidationResult:
        cur = uow.cur if uow else None
        result = StockValidationResult()
        allocated = self.allocated_stock(tenant_id, exclude_order_id=exclude_order_id, uow=uow)

        requested: Counter[StockKey] = Counter()
        stock: dict[StockKey, tuple[int, str, Optional[str], Optional[int], Optional[int]]] = {}

        for it in items:
            name = it.product_name or "Unknown Product"
            if it.product_variant_id is not None:
                found = self.repo.get_variant(tenant_id, it.product_variant_id, cur=cur)
                if not found:
                    result.add(
                        StockError(
                            message=f'Variant not found for product "{name}"',
                            product_id=it.product_id,
                            product_variant_id=it.product_variant_id,
                            product_name=name,
                        )
                    )
                    continue
                variant, product = found
                key: StockKey = VariantKey(variant.id)
                stock[key] = (variant.current_quantity, product.name, variant.label, product.id, variant.id)
            else:
                product = None
                if it.product_id is not None:
                    product = self.repo.get_product(tenant_id, it.product_id, cur=cur)
                if not product and it.product_name:
                    product = self.repo.find_product_by_name(tenant_id, it.product_name, cur=cur)
                if not product:
                    result.add(
                        StockError(
                            message=f'Product "{name}" not found in inventory',
                            product_id=it.product_id,
                            product_name=name,
                        )
                    )
                    continue
                key = ProductKey(product.id)
                stock[key] = (product.current_quantity, product.name, None, product.id, None)
            requested[key] += int(it.quantity)

        for key, qty in requested.items():
            current, product_name, variant_info, product_id, variant_id = stock[key]
            held = int(allocated.get(key, 0))
            available = current - held
            if qty <= available:
                continue
            label = f"{product_name} ({variant_info})" if variant_info else product_name
            result.add(
                StockError(
                    message=f'Insufficient stock for "{label}". Requested: {qty}, Available: {available}',
                    product_id=product_id,
                    product_variant_id=variant_id,
                    product_name=product_name,
                    variant_info=variant_info,
                    requested_quantity=qty,
                    available_stock=available,
                    current_stock=current,
                    allocated_stock=held,
                )
            )

        if not result.is_valid:
            log.info("stock_shortfall tenant=%s errors=%s exclude_order=%s", tenant_id, len(result.errors), exclude_order_id)
        return result

    def allocated_stock(
        self,
        tenant_id: int,
        exclude_order_id: Optional[int] = None,
        uow: UnitOfWork | None = None,
    ) -> Counter[StockKey]:
        """Units held per stock key by CONFIRMED/DISPATCHED/COMPLETED orders, excluding the order under edit."""
        cur = uow.cur if uow else None
        held: Counter[StockKey] = Counter()
        by_name: dict[str, Optional[StockKey]] = {}
        for order in self.repo.list_orders(tenant_id, statuses=ALLOCATING_STATUSES, cur=cur):
            if exclude_order_id is not None and order.id == int(exclude_order_id):
                continue
            for it in order.items:
                key = it.stock_key
                if key is None:
                    # legacy rows that only carry a product name
                    name = (it.product_name or "").strip().lower()
                    if name not in by_name:
                        product = self.repo.find_product_by_name(tenant_id, name, cur=cur) if name else None
                        by_name[name] = ProductKey(product.id) if product else None
                    key = by_name[name]
                if key is None:
                    log.debug("allocation_item_without_product order_id=%s name=%s", order.id, it.product_name)
                    continue
                held[key] += int(it.quantity)
        return held
