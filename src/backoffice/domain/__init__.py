from .models import (
    Account,
    Transaction,
    TransactionLine,
    TransactionMeta,
    Product,
    ProductVariant,
    ProductKey,
    VariantKey,
    OrderItem,
    Order,
    StockError,
    StockValidationResult,
    ReturnItem,
    Return,
    Payment,
)
from .errors import (
    AppError,
    ValidationError,
    NotFoundError,
    InsufficientStockError,
    UnbalancedTransactionError,
)

__all__ = [
    "Account",
    "Transaction",
    "TransactionLine",
    "TransactionMeta",
    "Product",
    "ProductVariant",
    "ProductKey",
    "VariantKey",
    "OrderItem",
    "Order",
    "StockError",
    "StockValidationResult",
    "ReturnItem",
    "Return",
    "Payment",
    "AppError",
    "ValidationError",
    "NotFoundError",
    "InsufficientStockError",
    "UnbalancedTransactionError",
]
