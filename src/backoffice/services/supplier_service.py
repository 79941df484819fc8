from __future__ import annotations

import logging
from datetime import date
from typing import Callable, Optional

from backoffice.domain.errors import NotFoundError, ValidationError
from backoffice.domain.models import Supplier, TransactionLine, TransactionMeta
from backoffice.repositories.unit_of_work import SqliteUnitOfWork, UnitOfWork, joined
from backoffice.services.accounting_service import ACCOUNTS_PAYABLE, OPENING_BALANCE, SUPPLIER_ADVANCE

log = logging.getLogger("backoffice.suppliers")


class SupplierService:
    def __init__(self, repo, accounting, uow_factory: Callable[[], UnitOfWork] | None = None):
        self.repo = repo
        self.accounting = accounting
        self.uow_factory = uow_factory or (lambda: SqliteUnitOfWork(repo))

    def create_supplier(
        self,
        tenant_id: int,
        name: str,
        opening_balance: float = 0.0,
        as_of: Optional[str] = None,
        uow: UnitOfWork | None = None,
    ) -> int:
        """Positive opening balance is owed to the supplier, negative is an advance already paid."""
        name = (name or "").strip()
        if not name:
            raise ValidationError("Supplier name is required.")
        opening_balance = round(float(opening_balance or 0), 2)

        with joined(uow, self.uow_factory) as u:
            if not self.repo.tenant_exists(tenant_id, cur=u.cur):
                raise NotFoundError("Tenant not found.")
            supplier_id = self.repo.insert_supplier(u.cur, tenant_id, name, opening_balance)

            if opening_balance != 0:
                amount = abs(opening_balance)
                equity = self.accounting.require_account(tenant_id, OPENING_BALANCE, uow=u)
                if opening_balance > 0:
                    ap = self.accounting.require_account(tenant_id, ACCOUNTS_PAYABLE, uow=u)
                    lines = [
                        TransactionLine(account_id=equity.id, debit=amount),
                        TransactionLine(account_id=ap.id, credit=amount),
                    ]
                else:
                    advance = self.accounting.require_account(tenant_id, SUPPLIER_ADVANCE, uow=u)
                    lines = [
                        TransactionLine(account_id=advance.id, debit=amount),
                        TransactionLine(account_id=equity.id, credit=amount),
                    ]
                self.accounting.create_transaction(
                    TransactionMeta(
                        tenant_id=tenant_id,
                        date=as_of or date.today().isoformat(),
                        description=f"Opening balance for supplier {name}",
                    ),
                    lines,
                    uow=u,
                )

        log.info("supplier_created tenant=%s supplier_id=%s opening=%.2f", tenant_id, supplier_id, opening_balance)
        return supplier_id

    def get_supplier(self, tenant_id: int, supplier_id: int) -> Supplier:
        s = self.repo.get_supplier(tenant_id, supplier_id)
        if not s:
            raise NotFoundError("Supplier not found.")
        return s

    def list_suppliers(self, tenant_id: int) -> list[Supplier]:
        return self.repo.list_suppliers(tenant_id)
