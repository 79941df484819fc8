from __future__ import annotations

from dataclasses import dataclass, field

from backoffice.domain.errors import NotFoundError
from backoffice.domain.models import ALLOCATING_STATUSES, CUSTOMER_RETURN_TYPES, Order
from backoffice.repositories.unit_of_work import UnitOfWork


@dataclass(frozen=True)
class OrderBalance:
    order_id: int
    order_number: str
    order_total: float
    paid_amount: float
    refund_amount: float
    pending: float


@dataclass(frozen=True)
class CustomerBalance:
    customer_id: int
    customer_name: str
    opening_balance: float
    advance_balance: float
    total_order_value: float
    total_paid: float
    total_direct_payments: float
    total_returns: float
    total_refunds: float
    total_pending: float
    available_advance: float
    net_balance: float
    orders: list[OrderBalance] = field(default_factory=list)


@dataclass(frozen=True)
class SupplierBalance:
    supplier_id: int
    supplier_name: str
    opening_balance: float
    total_invoices: float
    total_paid: float
    pending: float
    advance_applied: float = 0.0

    @property
    def payable(self) -> float:
        return round(max(self.pending, 0.0), 2)

    @property
    def advance(self) -> float:
        return round(max(-self.pending, 0.0), 2)

    @property
    def status(self) -> str:
        if self.pending > 0.005:
            return "PAYABLE"
        if self.pending < -0.005:
            return "ADVANCE"
        return "SETTLED"


@dataclass(frozen=True)
class BalanceSummary:
    total_receivables: float
    total_payables: float
    supplier_advances: float
    cash_position: float
    net_balance: float
    expenses_by_account: dict[str, float]
    customer_count: int
    supplier_count: int


def order_total(order: Order) -> float:
    """Products plus shipping, plus the COD fee when the customer carries it."""
    total = order.products_total + order.shipping_charges
    if order.cod_fee_paid_by == "CUSTOMER" and order.cod_fee > 0:
        total += order.cod_fee
    return round(total, 2)


class BalanceService:
    def __init__(self, repo, accounting):
        self.repo = repo
        self.accounting = accounting

    def _order_balances(self, tenant_id: int, customer_id: int, cur=None) -> list[OrderBalance]:
        paid_by_order: dict[int, float] = {}
        for p in self.repo.list_payments(tenant_id, type_="CUSTOMER_PAYMENT", cur=cur):
            if p.order_id is not None:
                paid_by_order[p.order_id] = paid_by_order.get(p.order_id, 0.0) + p.amount

        out: list[OrderBalance] = []
        for order in self.repo.list_orders(tenant_id, statuses=ALLOCATING_STATUSES, customer_id=customer_id, cur=cur):
            total = order_total(order)
            paid = round(paid_by_order.get(order.id, 0.0), 2)
            pending = round(max(total - paid - order.refund_amount, 0.0), 2)
            out.append(
                OrderBalance(
                    order_id=order.id,
                    order_number=order.order_number,
                    order_total=total,
                    paid_amount=paid,
                    refund_amount=order.refund_amount,
                    pending=pending,
                )
            )
        return out

    def calculate_pending_payment(self, tenant_id: int, customer_id: int) -> float:
        """Sum over confirmed-or-later orders of total - payments - refunds, each clamped at 0."""
        if not self.repo.get_customer(tenant_id, customer_id):
            raise NotFoundError("Customer not found.")
        return round(sum(b.pending for b in self._order_balances(tenant_id, customer_id)), 2)

    def calculate_customer_balance(self, tenant_id: int, customer_id: int) -> CustomerBalance:
        customer = self.repo.get_customer(tenant_id, customer_id)
        if not customer:
            raise NotFoundError("Customer not found.")

        orders = self._order_balances(tenant_id, customer_id)
        total_order_value = round(sum(o.order_total for o in orders), 2)
        total_paid = round(sum(o.paid_amount for o in orders), 2)

        direct = [
            p for p in self.repo.list_payments(tenant_id, type_="CUSTOMER_PAYMENT", customer_id=customer_id) if p.order_id is None
        ]
        total_direct = round(sum(p.amount for p in direct), 2)

        all_order_ids = [o.id for o in self.repo.list_orders(tenant_id, customer_id=customer_id)]
        returns = [
            r for r in self.repo.list_returns(tenant_id, order_ids=all_order_ids) if r.return_type in CUSTOMER_RETURN_TYPES
        ]
        total_returns = round(sum(r.total_amount for r in returns), 2)
        total_refunds = round(sum(r.refund_amount for r in returns), 2)

        net_ar = round(customer.opening_balance + total_order_value - total_paid - total_direct - total_returns, 2)
        net_balance = round(net_ar - customer.advance_balance, 2)

        return CustomerBalance(
            customer_id=customer.id,
            customer_name=customer.name,
            opening_balance=customer.opening_balance,
            advance_balance=customer.advance_balance,
            total_order_value=total_order_value,
            total_paid=total_paid,
            total_direct_payments=total_direct,
            total_returns=total_returns,
            total_refunds=total_refunds,
            total_pending=max(net_ar, 0.0),
            available_advance=max(-net_balance, 0.0),
            net_balance=net_balance,
            orders=[o for o in orders if o.pending > 0],
        )

    def calculate_supplier_balance(self, tenant_id: int, supplier_id: int, uow: UnitOfWork | None = None) -> SupplierBalance:
        """Opening balance + invoice totals - payments + advance already applied.

        Negative pending is an advance held by the supplier. Applying it to a
        payment consumes it, so it cannot be spent twice.
        """
        cur = uow.cur if uow else None
        supplier = self.repo.get_supplier(tenant_id, supplier_id, cur=cur)
        if not supplier:
            raise NotFoundError("Supplier not found.")

        invoices = self.repo.list_purchase_invoices(tenant_id, supplier_id=supplier_id, cur=cur)
        invoice_total = round(sum(inv.total_amount for inv in invoices), 2)
        invoice_ids = {inv.id for inv in invoices}

        paid = 0.0
        linked: dict[int, float] = {}
        for p in self.repo.list_payments(tenant_id, type_="SUPPLIER_PAYMENT", supplier_id=supplier_id, cur=cur):
            if p.purchase_invoice_id is None:
                paid += p.amount
            elif p.purchase_invoice_id in invoice_ids:
                linked[p.purchase_invoice_id] = linked.get(p.purchase_invoice_id, 0.0) + p.amount
        for inv in invoices:
            if inv.id in linked:
                paid += linked[inv.id]
            elif inv.payment_amount > 0:
                paid += inv.payment_amount
        paid = round(paid, 2)
        applied = self.repo.supplier_advance_used(tenant_id, supplier_id, cur=cur)

        return SupplierBalance(
            supplier_id=supplier.id,
            supplier_name=supplier.name,
            opening_balance=supplier.balance,
            total_invoices=invoice_total,
            total_paid=paid,
            pending=round(supplier.balance + invoice_total - paid + applied, 2),
            advance_applied=applied,
        )

    def get_all_customer_balances(self, tenant_id: int) -> list[CustomerBalance]:
        out = []
        for c in self.repo.list_customers(tenant_id):
            balance = self.calculate_customer_balance(tenant_id, c.id)
            if balance.total_pending > 0 or balance.advance_balance > 0:
                out.append(balance)
        return out

    def get_all_supplier_balances(self, tenant_id: int) -> list[SupplierBalance]:
        return [self.calculate_supplier_balance(tenant_id, s.id) for s in self.repo.list_suppliers(tenant_id)]

    def get_balance_summary(self, tenant_id: int) -> BalanceSummary:
        customers = self.get_all_customer_balances(tenant_id)
        suppliers = self.get_all_supplier_balances(tenant_id)
        trial = self.accounting.trial_balance(tenant_id)

        receivables = round(sum(b.total_pending for b in customers), 2)
        payables = round(sum(b.payable for b in suppliers), 2)
        cash = round(sum(r.balance for r in trial if r.type == "ASSET" and r.subtype in ("CASH", "BANK")), 2)
        expenses = {r.name: r.balance for r in trial if r.type == "EXPENSE"}

        return BalanceSummary(
            total_receivables=receivables,
            total_payables=payables,
            supplier_advances=round(sum(b.advance for b in suppliers), 2),
            cash_position=cash,
            net_balance=round(receivables - payables, 2),
            expenses_by_account=expenses,
            customer_count=len(customers),
            supplier_count=len(suppliers),
        )
