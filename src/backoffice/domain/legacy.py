"""Normalisation of the legacy ``selected_products`` / ``product_quantities`` payloads.

Older orders store their lines as two JSON blobs: a list of products (either
bare ids or objects) and an id -> quantity map. Everything past the
repository boundary works with :class:`OrderItem` only.
"""
from __future__ import annotations

import json
from typing import Any

from backoffice.domain.models import OrderItem


def parse_json(data: Any) -> Any:
    """Decode a JSON string, pass structured values through. Raises ValueError on bad JSON."""
    if data is None:
        return None
    if isinstance(data, (bytes, bytearray)):
        data = data.decode("utf-8")
    if isinstance(data, str):
        if not data.strip():
            return None
        return json.loads(data)
    return data


def _as_int(value: Any) -> int | None:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _lookup(mapping: dict, key: Any) -> Any:
    if key is None:
        return None
    if key in mapping:
        return mapping[key]
    return mapping.get(str(key))


def normalize_legacy_items(selected_products: Any, product_quantities: Any, product_prices: Any = None) -> list[OrderItem]:
    products = parse_json(selected_products)
    quantities = parse_json(product_quantities)
    prices = parse_json(product_prices)

    if not products:
        return []
    if isinstance(products, dict):
        products = list(products.values())
    if not isinstance(products, list):
        raise ValueError("selected products must be a list or an object of products")
    if not isinstance(quantities, dict):
        quantities = {}
    if not isinstance(prices, dict):
        prices = {}

    items: list[OrderItem] = []
    for entry in products:
        if isinstance(entry, dict):
            raw_id = entry.get("id", entry.get("product_id", entry.get("productId")))
            variant_id = entry.get("variantId") or entry.get("productVariantId") or entry.get("product_variant_id")
            name = entry.get("name")
            own_qty = entry.get("quantity")
            own_price = entry.get("price") or entry.get("currentRetailPrice")
        else:
            raw_id, variant_id, name, own_qty, own_price = entry, None, None, None, None

        qty = _lookup(quantities, raw_id) or own_qty or 1
        price = _lookup(prices, raw_id) or own_price or 0
        try:
            qty = int(qty)
            price = float(price)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"invalid quantity or price for product {raw_id!r}") from exc

        items.append(
            OrderItem(
                quantity=qty,
                price=price,
                product_id=_as_int(raw_id),
                product_variant_id=_as_int(variant_id),
                product_name=(str(name).strip() or None) if name is not None else None,
            )
        )
    return items
