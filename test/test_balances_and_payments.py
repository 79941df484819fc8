from pathlib import Path

import pytest
from conftest import add_customer, make_container, seed_tenant

from backoffice.domain.errors import NotFoundError, ValidationError
from backoffice.domain.models import OrderItem


def _confirmed_order(c, t, customer_id):
    pid = c.inventory.add_product(t, "Jacket", quantity=5)
    return c.orders.create_order(
        t,
        customer_id,
        [OrderItem(quantity=1, price=500.0, product_id=pid, product_name="Jacket")],
        status="CONFIRMED",
        shipping_charges=100.0,
    )


def test_pending_payment_is_clamped_at_zero(tmp_path: Path):
    c = make_container(tmp_path)
    t = seed_tenant(c)
    cust = add_customer(c, t)
    order_id = _confirmed_order(c, t, cust)

    c.payments.record_payment(t, "CUSTOMER_PAYMENT", 300.0, order_id=order_id, date="2024-02-01")
    assert c.balances.calculate_pending_payment(t, cust) == 300.0

    c.payments.record_payment(t, "CUSTOMER_PAYMENT", 300.0, order_id=order_id, date="2024-02-02")
    assert c.balances.calculate_pending_payment(t, cust) == 0.0
    assert c.orders.get_order(t, order_id).payment_amount == 600.0


def test_pending_orders_are_not_owed(tmp_path: Path):
    c = make_container(tmp_path)
    t = seed_tenant(c)
    cust = add_customer(c, t)
    pid = c.inventory.add_product(t, "Jacket", quantity=5)
    c.orders.create_order(t, cust, [OrderItem(quantity=1, price=500.0, product_id=pid)])

    assert c.balances.calculate_pending_payment(t, cust) == 0.0


def test_cod_fee_counts_only_when_customer_pays_it(tmp_path: Path):
    c = make_container(tmp_path)
    t = seed_tenant(c)
    cust = add_customer(c, t)
    pid = c.inventory.add_product(t, "Jacket", quantity=5)
    c.orders.create_order(
        t, cust, [OrderItem(quantity=1, price=100.0, product_id=pid)], status="CONFIRMED", cod_fee=20.0, cod_fee_paid_by="CUSTOMER"
    )
    c.orders.create_order(
        t, cust, [OrderItem(quantity=1, price=100.0, product_id=pid)], status="CONFIRMED", cod_fee=20.0, cod_fee_paid_by="BUSINESS"
    )

    assert c.balances.calculate_pending_payment(t, cust) == 220.0


def test_customer_balance_combines_opening_orders_and_advance(tmp_path: Path):
    c = make_container(tmp_path)
    t = seed_tenant(c)
    cust = add_customer(c, t, "Ana", opening_balance=50.0, advance_balance=20.0)
    order_id = _confirmed_order(c, t, cust)
    c.payments.record_payment(t, "CUSTOMER_PAYMENT", 100.0, order_id=order_id)
    c.payments.record_payment(t, "CUSTOMER_PAYMENT", 30.0, customer_id=cust)

    b = c.balances.calculate_customer_balance(t, cust)
    assert b.total_order_value == 600.0
    assert b.total_paid == 100.0
    assert b.total_direct_payments == 30.0
    assert b.total_pending == 520.0
    assert b.net_balance == 500.0
    assert [o.pending for o in b.orders] == [500.0]

    with pytest.raises(NotFoundError):
        c.balances.calculate_customer_balance(t, 9999)


def test_customer_payment_posts_cash_against_receivable(tmp_path: Path):
    c = make_container(tmp_path)
    t = seed_tenant(c)
    cust = add_customer(c, t)
    order_id = _confirmed_order(c, t, cust)

    result = c.payments.record_payment(t, "CUSTOMER_PAYMENT", 250.0, payment_method="Bank Transfer", order_id=order_id)

    txn = c.accounting.get_transaction(t, result.transaction_id)
    bank = c.accounting.get_account_by_code(t, "1100")
    ar = c.accounting.get_account_by_code(t, "1200")
    assert {(l.account_id, l.debit, l.credit) for l in txn.lines} == {(bank.id, 250.0, 0.0), (ar.id, 0.0, 250.0)}
    assert txn.payment_id == result.payment_id
    payment = c.payments.get_payment(t, result.payment_id)
    assert payment.payment_number.startswith("PAY-")
    assert payment.customer_id == cust

    with pytest.raises(ValidationError):
        c.payments.record_payment(t, "CUSTOMER_PAYMENT", 0.0, order_id=order_id)
    with pytest.raises(ValidationError, match="Unknown payment type"):
        c.payments.record_payment(t, "GIFT", 10.0)


def test_supplier_balance_and_payment_against_invoice(tmp_path: Path):
    c = make_container(tmp_path)
    t = seed_tenant(c)
    supplier = c.suppliers.create_supplier(t, "Acme", opening_balance=100.0)
    invoice = c.purchases.create_purchase_invoice(
        t, "2024-01-10", [{"name": "Shirt", "quantity": 4, "purchase_price": 50.0}], supplier_id=supplier
    )

    b = c.balances.calculate_supplier_balance(t, supplier)
    assert b.pending == 300.0
    assert b.status == "PAYABLE"

    c.payments.record_payment(t, "SUPPLIER_PAYMENT", 120.0, purchase_invoice_id=invoice)
    b = c.balances.calculate_supplier_balance(t, supplier)
    assert b.total_paid == 120.0
    assert b.payable == 180.0
    assert c.purchases.get_invoice(t, invoice).payment_amount == 120.0
    assert c.accounting.get_balance_by_code(t, "2000") == 180.0


def test_supplier_advance_is_capped_and_credited(tmp_path: Path):
    c = make_container(tmp_path)
    t = seed_tenant(c)
    supplier = c.suppliers.create_supplier(t, "Acme", opening_balance=-300.0)
    c.purchases.create_purchase_invoice(t, "2024-01-10", [{"name": "Shirt", "quantity": 1, "purchase_price": 200.0}], supplier_id=supplier)

    assert c.balances.calculate_supplier_balance(t, supplier).advance == 100.0

    result = c.payments.record_payment(
        t, "SUPPLIER_PAYMENT", 50.0, supplier_id=supplier, use_advance_balance=True, advance_amount=500.0
    )
    assert result.advance_used == 100.0
    txn = c.accounting.get_transaction(t, result.transaction_id)
    ap = c.accounting.get_account_by_code(t, "2000")
    advance = c.accounting.get_account_by_code(t, "1230")
    lines = {(l.account_id, l.debit, l.credit) for l in txn.lines}
    assert (ap.id, 150.0, 0.0) in lines
    assert (advance.id, 0.0, 100.0) in lines
    assert txn.description == "Supplier payment (Paid: 50.00, Advance Used: 100.00)"


def test_update_payment_supersedes_entry_and_adjusts_caches(tmp_path: Path):
    c = make_container(tmp_path)
    t = seed_tenant(c)
    cust = add_customer(c, t)
    order_id = _confirmed_order(c, t, cust)
    result = c.payments.record_payment(t, "CUSTOMER_PAYMENT", 300.0, order_id=order_id)

    updated = c.payments.update_payment(t, result.payment_id, amount=250.0)

    assert updated.amount == 250.0
    assert updated.transaction_id != result.transaction_id
    assert c.accounting.get_transaction(t, result.transaction_id).status == "SUPERSEDED"
    assert c.accounting.get_balance_by_code(t, "1000") == 250.0
    assert c.orders.get_order(t, order_id).payment_amount == 250.0
    assert c.balances.calculate_pending_payment(t, cust) == 350.0


def test_balance_summary(tmp_path: Path):
    c = make_container(tmp_path)
    t = seed_tenant(c)
    cust = add_customer(c, t)
    order_id = _confirmed_order(c, t, cust)
    c.payments.record_payment(t, "CUSTOMER_PAYMENT", 200.0, order_id=order_id)
    c.suppliers.create_supplier(t, "Acme", opening_balance=75.0)

    s = c.balances.get_balance_summary(t)
    assert s.total_receivables == 400.0
    assert s.total_payables == 75.0
    assert s.cash_position == 200.0
    assert s.net_balance == 325.0
    assert s.customer_count == 1
    assert s.supplier_count == 1


def test_supplier_advance_cannot_be_spent_twice(tmp_path: Path):
    c = make_container(tmp_path)
    t = seed_tenant(c)
    supplier = c.suppliers.create_supplier(t, "Acme", opening_balance=-300.0)
    c.purchases.create_purchase_invoice(t, "2024-01-10", [{"name": "Shirt", "quantity": 1, "purchase_price": 200.0}], supplier_id=supplier)

    first = c.payments.record_payment(t, "SUPPLIER_PAYMENT", 0.0, supplier_id=supplier, use_advance_balance=True)
    assert first.advance_used == 100.0
    assert first.payment_id is None

    b = c.balances.calculate_supplier_balance(t, supplier)
    assert b.advance == 0.0
    assert b.advance_applied == 100.0
    assert b.status == "SETTLED"

    with pytest.raises(ValidationError, match="advance balance"):
        c.payments.record_payment(t, "SUPPLIER_PAYMENT", 0.0, supplier_id=supplier, use_advance_balance=True)
    second = c.payments.record_payment(t, "SUPPLIER_PAYMENT", 10.0, supplier_id=supplier, use_advance_balance=True)
    assert second.advance_used == 0.0
    assert c.accounting.get_balance_by_code(t, "1230") == 200.0


def test_updating_mixed_payment_keeps_advance_usage_linked(tmp_path: Path):
    c = make_container(tmp_path)
    t = seed_tenant(c)
    supplier = c.suppliers.create_supplier(t, "Acme", opening_balance=-300.0)
    c.purchases.create_purchase_invoice(t, "2024-01-10", [{"name": "Shirt", "quantity": 1, "purchase_price": 200.0}], supplier_id=supplier)
    result = c.payments.record_payment(t, "SUPPLIER_PAYMENT", 50.0, supplier_id=supplier, use_advance_balance=True, advance_amount=40.0)

    updated = c.payments.update_payment(t, result.payment_id, amount=60.0)

    b = c.balances.calculate_supplier_balance(t, supplier)
    assert b.advance_applied == 40.0
    assert b.total_paid == 60.0
    conn = c.repo._conn()
    linked = conn.execute("SELECT transaction_id FROM supplier_advance_usages").fetchall()
    conn.close()
    assert linked == [(updated.transaction_id,)]
