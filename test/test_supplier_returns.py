import sqlite3
from pathlib import Path

import pytest
from conftest import make_container, seed_tenant

from backoffice.application.container import build_container
from backoffice.domain.errors import NotFoundError, ValidationError
from backoffice.domain.models import TransactionLine, TransactionMeta
from backoffice.repositories.sqlite_repo import SqliteRepository
from backoffice.services.accounting_service import AccountingService
from backoffice.services.inventory_service import InventoryService
from backoffice.services.return_service import ReturnService


def _setup(c, qty: int = 10, price: float = 100.0):
    t = seed_tenant(c)
    supplier = c.suppliers.create_supplier(t, "Acme")
    invoice = c.purchases.create_purchase_invoice(
        t, "2024-01-10", [{"name": "Shirt", "quantity": qty, "purchase_price": price}], supplier_id=supplier
    )
    return t, supplier, invoice


def _balances(c, t) -> dict[str, float]:
    return {r.code: r.balance for r in c.accounting.trial_balance(t)}


def _shirt_qty(c, t) -> int:
    return c.inventory.find_product(t, name="Shirt").current_quantity


def test_return_quantity_cannot_exceed_purchased(tmp_path: Path):
    c = make_container(tmp_path)
    t, _, invoice = _setup(c)

    c.returns.create_supplier_return(
        t, "2024-01-15", [{"product_name": "Shirt", "quantity": 8, "purchase_price": 100.0}], "REDUCE_AP", purchase_invoice_id=invoice
    )
    with pytest.raises(ValidationError, match=r"Return quantity for shirt \(5\) exceeds available quantity \(2\)"):
        c.returns.create_supplier_return(
            t, "2024-01-16", [{"product_name": "shirt ", "quantity": 5, "purchase_price": 100.0}], "REDUCE_AP", purchase_invoice_id=invoice
        )

    assert len(c.returns.list_returns(t, purchase_invoice_id=invoice)) == 1
    assert _shirt_qty(c, t) == 2


def test_reduce_ap_return_posts_and_applies_side_effects(tmp_path: Path):
    c = make_container(tmp_path)
    t, _, invoice = _setup(c)

    rid = c.returns.create_supplier_return(
        t, "2024-01-15", [{"product_name": "Shirt", "quantity": 3, "purchase_price": 100.0}], "REDUCE_AP", purchase_invoice_id=invoice
    )
    ret = c.returns.get_return(t, rid)
    assert ret.status == "PROCESSED"
    assert ret.total_amount == 300.0
    assert ret.return_number.startswith("RET-")

    txn = c.repo.get_live_transaction_for_return(t, rid)
    assert txn.description == f"Supplier Return: {ret.return_number} (Invoice: {c.purchases.get_invoice(t, invoice).invoice_number})"

    balances = _balances(c, t)
    assert balances["1300"] == 700.0
    assert balances["2000"] == 700.0
    assert _shirt_qty(c, t) == 7
    assert c.purchases.get_invoice(t, invoice).total_amount == 700.0


def test_refund_return_moves_cash_inventory_and_payable(tmp_path: Path):
    c = make_container(tmp_path)
    t, _, invoice = _setup(c)
    cash = c.accounting.get_account_by_code(t, "1000")
    before = _balances(c, t)

    rid = c.returns.create_supplier_return(
        t,
        "2024-01-15",
        [{"product_name": "Shirt", "quantity": 10, "purchase_price": 100.0}],
        "REFUND",
        purchase_invoice_id=invoice,
        refund_account_id=cash.id,
    )
    after = _balances(c, t)
    txn = c.repo.get_live_transaction_for_return(t, rid)

    assert txn.total_debits == txn.total_credits == 2000.0
    assert round(after["1300"] - before["1300"], 2) == -1000.0
    assert round(after["1000"] - before["1000"], 2) == -1000.0
    # AP is debited twice the return value
    assert round(after["2000"] - before["2000"], 2) == -2000.0
    assert c.returns.get_return(t, rid).refund_amount == 1000.0
    assert c.returns.derive_handling(t, txn) == ("REFUND", cash.id)


def test_refund_needs_cash_or_bank_account(tmp_path: Path):
    c = make_container(tmp_path)
    t, _, invoice = _setup(c)
    items = [{"product_name": "Shirt", "quantity": 1, "purchase_price": 100.0}]
    inventory = c.accounting.get_account_by_code(t, "1300")

    with pytest.raises(ValidationError, match="refund account is required"):
        c.returns.create_supplier_return(t, "2024-01-15", items, "REFUND", purchase_invoice_id=invoice)
    with pytest.raises(ValidationError, match="Cash or Bank"):
        c.returns.create_supplier_return(t, "2024-01-15", items, "REFUND", purchase_invoice_id=invoice, refund_account_id=inventory.id)
    with pytest.raises(ValidationError, match="REDUCE_AP"):
        c.returns.create_supplier_return(t, "2024-01-15", items, "SWAP", purchase_invoice_id=invoice)

    assert c.returns.list_returns(t) == []


def test_edit_with_same_values_leaves_balances_unchanged(tmp_path: Path):
    c = make_container(tmp_path)
    t, _, invoice = _setup(c)
    items = [{"product_name": "Shirt", "quantity": 3, "purchase_price": 100.0}]
    rid = c.returns.create_supplier_return(t, "2024-01-15", items, "REDUCE_AP", purchase_invoice_id=invoice)
    old_txn = c.repo.get_live_transaction_for_return(t, rid)
    before = _balances(c, t)

    c.returns.update_supplier_return(t, rid, items=items)

    assert _balances(c, t) == before
    assert _shirt_qty(c, t) == 7
    assert c.purchases.get_invoice(t, invoice).total_amount == 700.0

    retired = c.accounting.get_transaction(t, old_txn.id)
    live = c.repo.get_live_transaction_for_return(t, rid)
    assert retired.status == "SUPERSEDED"
    assert retired.superseded_by_id == live.id
    assert live.id != old_txn.id
    assert c.repo.duplicate_live_return_transactions(t) == []

    reversal = [
        x for x in c.accounting.list_transactions(t, limit=50)["transactions"] if x.reverses_transaction_id == old_txn.id
    ]
    assert len(reversal) == 1
    assert reversal[0].description.startswith("Reverse: Supplier Return: ")


def test_edit_quantity_and_switch_to_refund(tmp_path: Path):
    c = make_container(tmp_path)
    t, _, invoice = _setup(c)
    cash = c.accounting.get_account_by_code(t, "1000")
    rid = c.returns.create_supplier_return(
        t, "2024-01-15", [{"product_name": "Shirt", "quantity": 3, "purchase_price": 100.0}], "REDUCE_AP", purchase_invoice_id=invoice
    )

    # the edited return's own 3 units do not count against it
    updated = c.returns.update_supplier_return(
        t,
        rid,
        items=[{"product_name": "Shirt", "quantity": 10, "purchase_price": 100.0}],
        handling_method="REFUND",
        refund_account_id=cash.id,
    )

    assert updated.total_amount == 1000.0
    assert updated.return_handling_method == "REFUND"
    assert _shirt_qty(c, t) == 0
    assert c.purchases.get_invoice(t, invoice).total_amount == 0.0
    balances = _balances(c, t)
    assert balances["1300"] == 0.0
    assert balances["1000"] == -1000.0

    with pytest.raises(ValidationError, match="exceeds available quantity"):
        c.returns.update_supplier_return(t, rid, items=[{"product_name": "Shirt", "quantity": 11, "purchase_price": 100.0}])


def test_edit_keeps_refund_method_when_not_given(tmp_path: Path):
    c = make_container(tmp_path)
    t, _, invoice = _setup(c)
    bank = c.accounting.get_account_by_code(t, "1100")
    rid = c.returns.create_supplier_return(
        t,
        "2024-01-15",
        [{"product_name": "Shirt", "quantity": 2, "purchase_price": 100.0}],
        "REFUND",
        purchase_invoice_id=invoice,
        refund_account_id=bank.id,
    )

    updated = c.returns.update_supplier_return(t, rid, items=[{"product_name": "Shirt", "quantity": 1, "purchase_price": 100.0}])

    assert updated.return_handling_method == "REFUND"
    assert updated.refund_account_id == bank.id
    assert _balances(c, t)["1100"] == -100.0


def test_delete_restores_everything(tmp_path: Path):
    c = make_container(tmp_path)
    t, _, invoice = _setup(c)
    before = _balances(c, t)
    rid = c.returns.create_supplier_return(
        t, "2024-01-15", [{"product_name": "Shirt", "quantity": 4, "purchase_price": 100.0}], "REDUCE_AP", purchase_invoice_id=invoice
    )

    c.returns.delete_supplier_return(t, rid)

    assert _balances(c, t) == before
    assert _shirt_qty(c, t) == 10
    assert c.purchases.get_invoice(t, invoice).total_amount == 1000.0
    assert c.repo.get_live_transaction_for_return(t, rid) is None
    with pytest.raises(NotFoundError):
        c.returns.get_return(t, rid)

    # the deleted return no longer consumes availability
    c.returns.create_supplier_return(
        t, "2024-01-16", [{"product_name": "Shirt", "quantity": 10, "purchase_price": 100.0}], "REDUCE_AP", purchase_invoice_id=invoice
    )


def test_rejected_return_frees_availability(tmp_path: Path):
    c = make_container(tmp_path)
    t, _, invoice = _setup(c)
    rid = c.returns.create_supplier_return(
        t, "2024-01-15", [{"product_name": "Shirt", "quantity": 6, "purchase_price": 100.0}], "REDUCE_AP", purchase_invoice_id=invoice
    )
    assert c.returns.set_status(t, rid, "REJECTED").status == "REJECTED"

    c.returns.create_supplier_return(
        t, "2024-01-16", [{"product_name": "Shirt", "quantity": 4, "purchase_price": 100.0}], "REDUCE_AP", purchase_invoice_id=invoice
    )
    assert _shirt_qty(c, t) == 0


def test_only_one_live_transaction_per_return(tmp_path: Path):
    c = make_container(tmp_path)
    t, _, invoice = _setup(c)
    rid = c.returns.create_supplier_return(
        t, "2024-01-15", [{"product_name": "Shirt", "quantity": 1, "purchase_price": 100.0}], "REDUCE_AP", purchase_invoice_id=invoice
    )
    cash = c.accounting.get_account_by_code(t, "1000")
    capital = c.accounting.get_account_by_code(t, "3000")

    with pytest.raises(sqlite3.IntegrityError):
        c.accounting.create_transaction(
            TransactionMeta(tenant_id=t, date="2024-01-15", description="dup", order_return_id=rid),
            [TransactionLine(account_id=cash.id, debit=1.0), TransactionLine(account_id=capital.id, credit=1.0)],
        )


class FailingRepo(SqliteRepository):
    def set_invoice_total(self, cur, invoice_id, total_amount):
        raise RuntimeError("boom")


def test_return_rolls_back_when_last_step_fails(tmp_path: Path):
    db = tmp_path / "f.db"
    c = build_container(db)
    t, _, invoice = _setup(c)
    before = _balances(c, t)

    repo = FailingRepo(db)
    returns = ReturnService(repo, AccountingService(repo), InventoryService(repo))
    with pytest.raises(RuntimeError, match="boom"):
        returns.create_supplier_return(
            t, "2024-01-15", [{"product_name": "Shirt", "quantity": 2, "purchase_price": 100.0}], "REDUCE_AP", purchase_invoice_id=invoice
        )

    assert _balances(c, t) == before
    assert _shirt_qty(c, t) == 10
    assert c.returns.list_returns(t) == []
    assert c.accounting.list_transactions(t)["pagination"]["total"] == 1


def test_standalone_return_skips_invoice_checks(tmp_path: Path):
    c = make_container(tmp_path)
    t, _, _ = _setup(c)

    rid = c.returns.create_supplier_return(
        t, "2024-01-20", [{"product_name": "Shirt", "quantity": 2, "purchase_price": 50.0}], "REDUCE_AP"
    )
    txn = c.repo.get_live_transaction_for_return(t, rid)
    assert txn.purchase_invoice_id is None
    assert txn.total_debits == 100.0
    assert _shirt_qty(c, t) == 8
