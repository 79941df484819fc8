from .accounting_service import AccountingService
from .stock_validation_service import StockValidationService
from .inventory_service import InventoryService
from .purchase_service import PurchaseService
from .supplier_service import SupplierService
from .order_service import OrderService
from .return_service import ReturnService
from .balance_service import BalanceService
from .payment_service import PaymentService
from .reporting_service import ReportingService
from .operations_service import OperationsService

__all__ = [
    "AccountingService",
    "StockValidationService",
    "InventoryService",
    "PurchaseService",
    "SupplierService",
    "OrderService",
    "ReturnService",
    "BalanceService",
    "PaymentService",
    "ReportingService",
    "OperationsService",
]
