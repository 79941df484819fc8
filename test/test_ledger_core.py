from pathlib import Path

import pytest
from conftest import make_container, seed_tenant

from backoffice.domain.errors import NotFoundError, UnbalancedTransactionError, ValidationError
from backoffice.domain.models import TransactionLine, TransactionMeta


def _accounts(c, tenant_id):
    cash = c.accounting.get_account_by_code(tenant_id, "1000")
    capital = c.accounting.get_account_by_code(tenant_id, "3000")
    return cash, capital


def test_balanced_transaction_is_numbered_and_updates_balances(tmp_path: Path):
    c = make_container(tmp_path)
    t = seed_tenant(c)
    cash, capital = _accounts(c, t)

    txn = c.accounting.create_transaction(
        TransactionMeta(tenant_id=t, date="2024-03-01", description="Owner investment"),
        [
            TransactionLine(account_id=cash.id, debit=500.0),
            TransactionLine(account_id=capital.id, credit=500.0),
        ],
    )

    assert txn.transaction_number == "TXN-2024-000001"
    assert txn.status == "POSTED"
    assert txn.total_debits == txn.total_credits == 500.0
    assert c.accounting.get_balance(t, cash.id) == 500.0
    assert c.accounting.get_balance(t, capital.id) == 500.0

    second = c.accounting.create_transaction(
        TransactionMeta(tenant_id=t, date="2024-03-02", description="More"),
        [{"account_id": cash.id, "debit": 10}, {"account_id": capital.id, "credit": 10}],
    )
    assert second.transaction_number == "TXN-2024-000002"


def test_unbalanced_transaction_is_rejected_and_nothing_is_written(tmp_path: Path):
    c = make_container(tmp_path)
    t = seed_tenant(c)
    cash, capital = _accounts(c, t)

    with pytest.raises(UnbalancedTransactionError, match="Transaction is not balanced. Debits: 100.00, Credits: 90.00"):
        c.accounting.create_transaction(
            TransactionMeta(tenant_id=t, date="2024-03-01", description="Broken"),
            [
                TransactionLine(account_id=cash.id, debit=100.0),
                TransactionLine(account_id=capital.id, credit=90.0),
            ],
        )

    page = c.accounting.list_transactions(t)
    assert page["pagination"]["total"] == 0
    assert c.repo.get_account(t, cash.id).balance == 0.0


def test_difference_within_tolerance_is_accepted(tmp_path: Path):
    c = make_container(tmp_path)
    t = seed_tenant(c)
    cash, capital = _accounts(c, t)

    txn = c.accounting.create_transaction(
        TransactionMeta(tenant_id=t, date="2024-03-01", description="Rounding"),
        [
            TransactionLine(account_id=cash.id, debit=100.01),
            TransactionLine(account_id=capital.id, credit=100.0),
        ],
    )
    assert txn.id is not None


def test_line_shape_is_validated(tmp_path: Path):
    c = make_container(tmp_path)
    t = seed_tenant(c)
    cash, capital = _accounts(c, t)
    meta = TransactionMeta(tenant_id=t, date="2024-03-01", description="x")

    with pytest.raises(ValidationError, match="at least two lines"):
        c.accounting.create_transaction(meta, [TransactionLine(account_id=cash.id, debit=1.0)])

    with pytest.raises(ValidationError, match=">= 0"):
        c.accounting.create_transaction(
            meta,
            [TransactionLine(account_id=cash.id, debit=-5.0), TransactionLine(account_id=capital.id, credit=-5.0)],
        )

    with pytest.raises(ValidationError, match="exactly one"):
        c.accounting.create_transaction(
            meta,
            [TransactionLine(account_id=cash.id, debit=5.0, credit=5.0), TransactionLine(account_id=capital.id, credit=5.0)],
        )


def test_account_of_another_tenant_is_not_found(tmp_path: Path):
    c = make_container(tmp_path)
    t1 = seed_tenant(c, "A")
    t2 = seed_tenant(c, "B")
    cash_a, _ = _accounts(c, t1)
    _, capital_b = _accounts(c, t2)

    with pytest.raises(NotFoundError):
        c.accounting.create_transaction(
            TransactionMeta(tenant_id=t2, date="2024-03-01", description="cross"),
            [TransactionLine(account_id=cash_a.id, debit=5.0), TransactionLine(account_id=capital_b.id, credit=5.0)],
        )


def test_reversal_inverts_lines_and_retires_original(tmp_path: Path):
    c = make_container(tmp_path)
    t = seed_tenant(c)
    cash, capital = _accounts(c, t)

    original = c.accounting.create_transaction(
        TransactionMeta(tenant_id=t, date="2024-03-01", description="Owner investment"),
        [TransactionLine(account_id=cash.id, debit=200.0), TransactionLine(account_id=capital.id, credit=200.0)],
    )
    reversal = c.accounting.reverse_transaction(t, original.id)

    assert reversal.reverses_transaction_id == original.id
    assert reversal.date == "2024-03-01"
    assert reversal.order_return_id is None
    assert {(l.account_id, l.debit, l.credit) for l in reversal.lines} == {
        (cash.id, 0.0, 200.0),
        (capital.id, 200.0, 0.0),
    }
    assert c.accounting.get_transaction(t, original.id).status == "SUPERSEDED"
    assert c.accounting.get_balance(t, cash.id) == 0.0

    with pytest.raises(ValidationError, match="already superseded"):
        c.accounting.reverse_transaction(t, original.id)


def test_supersede_posts_replacement_and_links_it(tmp_path: Path):
    c = make_container(tmp_path)
    t = seed_tenant(c)
    cash, capital = _accounts(c, t)

    original = c.accounting.create_transaction(
        TransactionMeta(tenant_id=t, date="2024-03-01", description="v1"),
        [TransactionLine(account_id=cash.id, debit=50.0), TransactionLine(account_id=capital.id, credit=50.0)],
    )
    reversal, replacement = c.accounting.supersede_transaction(
        t,
        original.id,
        TransactionMeta(tenant_id=t, date="2024-03-05", description="v2"),
        [TransactionLine(account_id=cash.id, debit=80.0), TransactionLine(account_id=capital.id, credit=80.0)],
    )

    retired = c.accounting.get_transaction(t, original.id)
    assert retired.superseded_by_id == replacement.id
    assert reversal.reverses_transaction_id == original.id
    assert c.accounting.get_balance(t, cash.id) == 80.0

    page = c.accounting.list_transactions(t, limit=10)
    assert page["pagination"]["total"] == 3


def test_balance_cache_is_corrected_from_lines(tmp_path: Path):
    c = make_container(tmp_path)
    t = seed_tenant(c)
    cash, capital = _accounts(c, t)
    c.accounting.create_transaction(
        TransactionMeta(tenant_id=t, date="2024-03-01", description="x"),
        [TransactionLine(account_id=cash.id, debit=70.0), TransactionLine(account_id=capital.id, credit=70.0)],
    )

    conn = c.repo._conn()
    conn.execute("UPDATE accounts SET balance=999 WHERE id=?", (cash.id,))
    conn.commit()
    conn.close()

    assert c.accounting.get_balance(t, cash.id) == 70.0
    assert c.repo.get_account(t, cash.id).balance == 70.0


def test_trial_balance_debits_equal_credits(tmp_path: Path):
    c = make_container(tmp_path)
    t = seed_tenant(c)
    c.purchases.create_purchase_invoice(t, "2024-01-10", [{"name": "Shirt", "quantity": 10, "purchase_price": 100.0}])

    rows = c.accounting.trial_balance(t)
    assert round(sum(r.debits for r in rows), 2) == round(sum(r.credits for r in rows), 2) == 1000.0
    by_code = {r.code: r for r in rows}
    assert by_code["1300"].balance == 1000.0
    assert by_code["2000"].balance == 1000.0
