from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from backoffice.config import Settings
from backoffice.repositories.sqlite_repo import SqliteRepository
from backoffice.repositories.unit_of_work import SqliteUnitOfWork
from backoffice.services.accounting_service import AccountingService
from backoffice.services.balance_service import BalanceService
from backoffice.services.inventory_service import InventoryService
from backoffice.services.operations_service import OperationsService
from backoffice.services.order_service import OrderService
from backoffice.services.payment_service import PaymentService
from backoffice.services.purchase_service import PurchaseService
from backoffice.services.reporting_service import ReportingService
from backoffice.services.return_service import ReturnService
from backoffice.services.stock_validation_service import StockValidationService
from backoffice.services.supplier_service import SupplierService


@dataclass(frozen=True)
class AppContainer:
    repo: SqliteRepository
    settings: Settings
    accounting: AccountingService
    stock: StockValidationService
    inventory: InventoryService
    purchases: PurchaseService
    suppliers: SupplierService
    orders: OrderService
    returns: ReturnService
    balances: BalanceService
    payments: PaymentService
    reporting: ReportingService
    operations: OperationsService


def build_container(db_path: Path | str, settings: Optional[Settings] = None) -> AppContainer:
    settings = settings or Settings()
    repo = SqliteRepository(db_path, busy_timeout=settings.busy_timeout_seconds)
    repo.init_db()

    def uow_factory():
        return SqliteUnitOfWork(repo)

    accounting = AccountingService(repo, uow_factory, tolerance=settings.balance_tolerance)
    stock = StockValidationService(repo)
    inventory = InventoryService(repo, uow_factory)
    purchases = PurchaseService(repo, inventory, accounting, uow_factory)
    suppliers = SupplierService(repo, accounting, uow_factory)
    orders = OrderService(repo, stock, uow_factory)
    returns = ReturnService(repo, accounting, inventory, uow_factory)
    balances = BalanceService(repo, accounting)
    payments = PaymentService(repo, accounting, balances, uow_factory)
    reporting = ReportingService(repo, accounting, balances)
    operations = OperationsService(
        repo,
        stock,
        db_path=db_path,
        logs_dir=Path(db_path).parent / "logs",
        tolerance=settings.balance_tolerance,
        bulk_timeout=settings.bulk_timeout_seconds,
    )

    return AppContainer(
        repo=repo,
        settings=settings,
        accounting=accounting,
        stock=stock,
        inventory=inventory,
        purchases=purchases,
        suppliers=suppliers,
        orders=orders,
        returns=returns,
        balances=balances,
        payments=payments,
        reporting=reporting,
        operations=operations,
    )
