import json
import threading
from pathlib import Path

import pytest
from conftest import add_customer, insert_legacy_order, make_container, seed_tenant

from backoffice.application.container import build_container
from backoffice.domain.errors import InsufficientStockError
from backoffice.domain.legacy import normalize_legacy_items
from backoffice.domain.models import OrderItem, ProductKey, VariantKey
from backoffice.repositories.unit_of_work import SqliteUnitOfWork


def test_fully_allocated_product_has_zero_available(tmp_path: Path):
    c = make_container(tmp_path)
    t = seed_tenant(c)
    pid = c.inventory.add_product(t, "Mug", quantity=10)
    c.orders.create_order(t, None, [OrderItem(quantity=10, price=5.0, product_id=pid, product_name="Mug")], status="CONFIRMED")

    result = c.stock.validate_items(t, [OrderItem(quantity=1, product_id=pid, product_name="Mug")])

    assert result.is_valid is False
    assert len(result.errors) == 1
    err = result.errors[0]
    assert err.available_stock == 0
    assert err.current_stock == 10
    assert err.allocated_stock == 10
    assert err.requested_quantity == 1
    assert err.message == 'Insufficient stock for "Mug". Requested: 1, Available: 0'


def test_pending_and_cancelled_orders_do_not_allocate(tmp_path: Path):
    c = make_container(tmp_path)
    t = seed_tenant(c)
    pid = c.inventory.add_product(t, "Mug", quantity=4)
    c.orders.create_order(t, None, [OrderItem(quantity=4, product_id=pid)], status="PENDING")
    c.orders.create_order(t, None, [OrderItem(quantity=4, product_id=pid)], status="CANCELLED")

    assert c.stock.allocated_stock(t) == {}
    assert c.stock.validate_items(t, [OrderItem(quantity=4, product_id=pid)]).is_valid


def test_edit_excludes_own_allocation(tmp_path: Path):
    c = make_container(tmp_path)
    t = seed_tenant(c)
    pid = c.inventory.add_product(t, "Lamp", quantity=10)
    c.orders.create_order(t, None, [OrderItem(quantity=5, product_id=pid)], status="CONFIRMED")
    mine = c.orders.create_order(t, None, [OrderItem(quantity=3, product_id=pid)], status="CONFIRMED")

    # others hold 5, so 5 are available to this order
    result = c.stock.validate_items(t, [OrderItem(quantity=5, product_id=pid)], exclude_order_id=mine)
    assert result.is_valid

    too_many = c.stock.validate_items(t, [OrderItem(quantity=6, product_id=pid)], exclude_order_id=mine)
    assert not too_many.is_valid
    assert too_many.errors[0].available_stock == 5

    updated = c.orders.update_order_items(t, mine, [OrderItem(quantity=5, product_id=pid)])
    assert updated.items[0].quantity == 5
    assert c.stock.allocated_stock(t)[ProductKey(pid)] == 10


def test_variants_are_tracked_separately_from_products(tmp_path: Path):
    c = make_container(tmp_path)
    t = seed_tenant(c)
    pid = c.inventory.add_product(t, "Shirt", quantity=10)
    red = c.inventory.add_variant(t, pid, color="Red", size="M", quantity=2)

    c.orders.create_order(
        t, None, [OrderItem(quantity=2, product_id=pid, product_variant_id=red, product_name="Shirt")], status="CONFIRMED"
    )
    held = c.stock.allocated_stock(t)
    assert held[VariantKey(red)] == 2
    assert ProductKey(pid) not in held

    result = c.stock.validate_items(t, [OrderItem(quantity=1, product_id=pid, product_variant_id=red, product_name="Shirt")])
    assert not result.is_valid
    assert result.errors[0].message == 'Insufficient stock for "Shirt (Red, M)". Requested: 1, Available: 0'
    assert c.stock.validate_items(t, [OrderItem(quantity=10, product_id=pid)]).is_valid


def test_demand_is_aggregated_per_key(tmp_path: Path):
    c = make_container(tmp_path)
    t = seed_tenant(c)
    pid = c.inventory.add_product(t, "Pen", quantity=5)

    result = c.stock.validate_items(
        t,
        [OrderItem(quantity=3, product_id=pid), OrderItem(quantity=3, product_name="pen")],
    )
    assert not result.is_valid
    assert len(result.errors) == 1
    assert result.errors[0].requested_quantity == 6


def test_all_errors_are_collected(tmp_path: Path):
    c = make_container(tmp_path)
    t = seed_tenant(c)
    pid = c.inventory.add_product(t, "Pen", quantity=1)

    result = c.stock.validate_items(
        t,
        [
            OrderItem(quantity=2, product_id=pid, product_name="Pen"),
            OrderItem(quantity=1, product_name="Ghost"),
            OrderItem(quantity=1, product_variant_id=9999, product_name="Phantom"),
        ],
    )
    messages = [e.message for e in result.errors]
    assert 'Product "Ghost" not found in inventory' in messages
    assert 'Variant not found for product "Phantom"' in messages
    assert any(m.startswith('Insufficient stock for "Pen"') for m in messages)


def test_legacy_json_payload_is_validated_and_allocates(tmp_path: Path):
    c = make_container(tmp_path)
    t = seed_tenant(c)
    pid = c.inventory.add_product(t, "Cap", quantity=6)
    insert_legacy_order(c, t, "CONFIRMED", json.dumps([{"id": pid, "name": "Cap"}]), json.dumps({str(pid): 4}))

    assert c.stock.allocated_stock(t)[ProductKey(pid)] == 4

    ok = c.stock.validate_stock_availability(t, json.dumps([pid]), json.dumps({str(pid): 2}))
    assert ok.is_valid
    short = c.stock.validate_stock_availability(t, [{"id": pid, "name": "Cap"}], {pid: 3})
    assert not short.is_valid
    assert short.errors[0].available_stock == 2


def test_empty_and_broken_payloads(tmp_path: Path):
    c = make_container(tmp_path)
    t = seed_tenant(c)

    assert c.stock.validate_stock_availability(t, None, None).is_valid
    assert c.stock.validate_stock_availability(t, "", "{}").is_valid

    broken = c.stock.validate_stock_availability(t, "[not json", "{}")
    assert not broken.is_valid
    assert [e.message for e in broken.errors] == ["Error validating stock availability"]


def test_normalize_legacy_items_defaults():
    items = normalize_legacy_items(
        '[{"id": 7, "name": "Hat", "currentRetailPrice": 12.5}, {"id": 8, "variantId": 3}, 9]',
        '{"7": 2}',
    )
    assert items[0] == OrderItem(quantity=2, price=12.5, product_id=7, product_name="Hat")
    assert items[1].stock_key == VariantKey(3)
    assert items[1].quantity == 1
    assert items[2] == OrderItem(quantity=1, price=0.0, product_id=9)

    with pytest.raises(ValueError):
        normalize_legacy_items("[oops", "{}")


def test_confirming_order_rechecks_stock(tmp_path: Path):
    c = make_container(tmp_path)
    t = seed_tenant(c)
    cust = add_customer(c, t)
    pid = c.inventory.add_product(t, "Bag", quantity=3)
    first = c.orders.create_order(t, cust, [OrderItem(quantity=2, product_id=pid)])
    second = c.orders.create_order(t, cust, [OrderItem(quantity=2, product_id=pid)])

    assert c.orders.confirm_order(t, first).status == "CONFIRMED"
    with pytest.raises(InsufficientStockError, match="Available: 1") as exc:
        c.orders.confirm_order(t, second)
    assert exc.value.errors[0].available_stock == 1
    assert c.orders.get_order(t, second).status == "PENDING"


def test_create_confirmed_order_fails_without_stock(tmp_path: Path):
    c = make_container(tmp_path)
    t = seed_tenant(c)
    pid = c.inventory.add_product(t, "Bag", quantity=1)

    with pytest.raises(InsufficientStockError):
        c.orders.create_order(t, None, [OrderItem(quantity=2, product_id=pid)], status="CONFIRMED")
    assert c.orders.list_orders(t) == []


def test_name_only_items_are_pinned_to_product_and_allocate(tmp_path: Path):
    c = make_container(tmp_path)
    t = seed_tenant(c)
    pid = c.inventory.add_product(t, "Widget", quantity=10)

    first = c.orders.create_order(t, None, [OrderItem(quantity=10, product_name="widget")], status="CONFIRMED")

    assert c.orders.get_order(t, first).items[0].product_id == pid
    assert c.stock.allocated_stock(t) == {ProductKey(pid): 10}
    with pytest.raises(InsufficientStockError, match="Available: 0"):
        c.orders.create_order(t, None, [OrderItem(quantity=10, product_name="Widget")], status="CONFIRMED")


def test_confirming_name_only_orders_cannot_oversell(tmp_path: Path):
    c = make_container(tmp_path)
    t = seed_tenant(c)
    c.inventory.add_product(t, "Widget", quantity=10)
    first = c.orders.create_order(t, None, [OrderItem(quantity=10, product_name="Widget")])
    second = c.orders.create_order(t, None, [OrderItem(quantity=10, product_name="Widget")])

    c.orders.confirm_order(t, first)
    with pytest.raises(InsufficientStockError):
        c.orders.confirm_order(t, second)


def test_stored_name_only_rows_still_count_as_allocated(tmp_path: Path):
    c = make_container(tmp_path)
    t = seed_tenant(c)
    pid = c.inventory.add_product(t, "Widget", quantity=5)
    order_id = insert_legacy_order(c, t, "CONFIRMED", None, None)
    with SqliteUnitOfWork(c.repo) as u:
        c.repo.replace_order_items(u.cur, order_id, [OrderItem(quantity=4, product_name="WIDGET")])

    assert c.stock.allocated_stock(t) == {ProductKey(pid): 4}
    assert c.stock.allocated_stock(t, exclude_order_id=order_id) == {}

    conn = c.repo._conn()
    conn.execute("UPDATE products SET current_quantity=3 WHERE id=?", (pid,))
    conn.commit()
    conn.close()
    assert c.operations.run_health_check(t).oversold_stock[0]["allocated"] == 4


def test_concurrent_confirmations_for_last_units(tmp_path: Path):
    c = make_container(tmp_path)
    t = seed_tenant(c)
    pid = c.inventory.add_product(t, "Lamp", quantity=3)
    by_id = c.orders.create_order(t, None, [OrderItem(quantity=2, product_id=pid)])
    by_name = c.orders.create_order(t, None, [OrderItem(quantity=2, product_name="Lamp")])

    # one container per thread, so each confirmation opens its own connection
    containers = {oid: build_container(tmp_path / "t.db") for oid in (by_id, by_name)}
    barrier = threading.Barrier(2)
    outcomes: dict[int, str] = {}

    def confirm(order_id: int) -> None:
        own = containers[order_id]
        barrier.wait()
        try:
            own.orders.confirm_order(t, order_id)
            outcomes[order_id] = "confirmed"
        except InsufficientStockError:
            outcomes[order_id] = "rejected"

    threads = [threading.Thread(target=confirm, args=(oid,)) for oid in (by_id, by_name)]
    for th in threads:
        th.start()
    for th in threads:
        th.join(timeout=30)

    assert sorted(outcomes.values()) == ["confirmed", "rejected"]
    assert c.stock.allocated_stock(t) == {ProductKey(pid): 2}
    statuses = sorted(c.orders.get_order(t, oid).status for oid in (by_id, by_name))
    assert statuses == ["CONFIRMED", "PENDING"]
