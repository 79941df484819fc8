from __future__ import annotations
from dataclasses import dataclass, field
from typing import Optional, Union


ACCOUNT_TYPES = ("ASSET", "LIABILITY", "EQUITY", "REVENUE", "EXPENSE")
DEBIT_NORMAL_TYPES = ("ASSET", "EXPENSE")

ORDER_STATUSES = ("PENDING", "CONFIRMED", "DISPATCHED", "COMPLETED", "CANCELLED")
ALLOCATING_STATUSES = ("CONFIRMED", "DISPATCHED", "COMPLETED")

RETURN_TYPES = ("SUPPLIER", "CUSTOMER_FULL", "CUSTOMER_PARTIAL")
CUSTOMER_RETURN_TYPES = ("CUSTOMER_FULL", "CUSTOMER_PARTIAL")
RETURN_STATUSES = ("PENDING", "APPROVED", "REJECTED", "PROCESSED")
HANDLING_METHODS = ("REDUCE_AP", "REFUND")

PAYMENT_TYPES = ("CUSTOMER_PAYMENT", "SUPPLIER_PAYMENT")

TXN_POSTED = "POSTED"
TXN_SUPERSEDED = "SUPERSEDED"


@dataclass(frozen=True)
class Tenant:
    id: int
    name: str


@dataclass(frozen=True)
class Account:
    id: int
    tenant_id: int
    code: str
    name: str
    type: str
    subtype: Optional[str]
    balance: float = 0.0

    @property
    def is_debit_normal(self) -> bool:
        return self.type in DEBIT_NORMAL_TYPES


@dataclass(frozen=True)
class TransactionLine:
    account_id: int
    debit: float = 0.0
    credit: float = 0.0
    id: Optional[int] = None
    transaction_id: Optional[int] = None


@dataclass(frozen=True)
class TransactionMeta:
    tenant_id: int
    date: str
    description: str
    order_id: Optional[int] = None
    order_return_id: Optional[int] = None
    purchase_invoice_id: Optional[int] = None
    payment_id: Optional[int] = None
    reverses_transaction_id: Optional[int] = None


@dataclass(frozen=True)
class Transaction:
    id: int
    tenant_id: int
    transaction_number: str
    date: str
    description: str
    status: str
    order_id: Optional[int] = None
    order_return_id: Optional[int] = None
    purchase_invoice_id: Optional[int] = None
    payment_id: Optional[int] = None
    reverses_transaction_id: Optional[int] = None
    superseded_by_id: Optional[int] = None
    lines: tuple[TransactionLine, ...] = ()

    @property
    def total_debits(self) -> float:
        return round(sum(l.debit for l in self.lines), 2)

    @property
    def total_credits(self) -> float:
        return round(sum(l.credit for l in self.lines), 2)


@dataclass(frozen=True)
class Product:
    id: int
    tenant_id: int
    name: str
    sku: Optional[str]
    current_quantity: int
    last_purchase_price: float = 0.0
    retail_price: float = 0.0
    is_active: int = 1


@dataclass(frozen=True)
class ProductVariant:
    id: int
    product_id: int
    color: Optional[str]
    size: Optional[str]
    sku: Optional[str]
    current_quantity: int
    is_active: int = 1

    @property
    def label(self) -> str:
        return f"{self.color or ''}{', ' + self.size if self.size else ''}"


@dataclass(frozen=True)
class ProductKey:
    product_id: int


@dataclass(frozen=True)
class VariantKey:
    variant_id: int


StockKey = Union[ProductKey, VariantKey]


@dataclass(frozen=True)
class OrderItem:
    quantity: int
    price: float = 0.0
    product_id: Optional[int] = None
    product_variant_id: Optional[int] = None
    product_name: Optional[str] = None

    @property
    def stock_key(self) -> Optional[StockKey]:
        if self.product_variant_id is not None:
            return VariantKey(int(self.product_variant_id))
        if self.product_id is not None:
            return ProductKey(int(self.product_id))
        return None


@dataclass(frozen=True)
class Order:
    id: int
    tenant_id: int
    customer_id: Optional[int]
    order_number: str
    status: str
    items: tuple[OrderItem, ...]
    shipping_charges: float = 0.0
    cod_fee: float = 0.0
    cod_fee_paid_by: Optional[str] = None
    refund_amount: float = 0.0
    payment_amount: float = 0.0

    @property
    def holds_allocation(self) -> bool:
        return self.status in ALLOCATING_STATUSES

    @property
    def products_total(self) -> float:
        return round(sum(it.quantity * it.price for it in self.items), 2)


@dataclass(frozen=True)
class StockError:
    message: str
    product_id: Optional[int] = None
    product_variant_id: Optional[int] = None
    product_name: Optional[str] = None
    variant_info: Optional[str] = None
    requested_quantity: Optional[int] = None
    available_stock: Optional[int] = None
    current_stock: Optional[int] = None
    allocated_stock: Optional[int] = None


@dataclass
class StockValidationResult:
    is_valid: bool = True
    errors: list[StockError] = field(default_factory=list)

    def add(self, error: StockError) -> None:
        self.errors.append(error)
        self.is_valid = False


@dataclass(frozen=True)
class Customer:
    id: int
    tenant_id: int
    name: str
    opening_balance: float = 0.0
    advance_balance: float = 0.0


@dataclass(frozen=True)
class Supplier:
    id: int
    tenant_id: int
    name: str
    balance: float = 0.0


@dataclass(frozen=True)
class PurchaseItem:
    id: int
    purchase_invoice_id: int
    name: str
    quantity: int
    purchase_price: float
    product_id: Optional[int] = None
    product_variant_id: Optional[int] = None
    sku: Optional[str] = None


@dataclass(frozen=True)
class PurchaseInvoice:
    id: int
    tenant_id: int
    invoice_number: str
    invoice_date: str
    total_amount: float
    supplier_id: Optional[int] = None
    payment_amount: float = 0.0
    notes: Optional[str] = None
    transaction_id: Optional[int] = None
    items: tuple[PurchaseItem, ...] = ()


@dataclass(frozen=True)
class ReturnItem:
    product_name: str
    quantity: int
    purchase_price: float
    product_variant_id: Optional[int] = None
    sku: Optional[str] = None
    reason: Optional[str] = None

    @property
    def line_total(self) -> float:
        return round(self.quantity * self.purchase_price, 2)


@dataclass(frozen=True)
class Return:
    id: int
    tenant_id: int
    return_number: str
    return_type: str
    status: str
    return_date: str
    total_amount: float
    purchase_invoice_id: Optional[int] = None
    order_id: Optional[int] = None
    return_handling_method: Optional[str] = None
    refund_account_id: Optional[int] = None
    refund_amount: float = 0.0
    reason: Optional[str] = None
    notes: Optional[str] = None
    items: tuple[ReturnItem, ...] = ()


@dataclass(frozen=True)
class Payment:
    id: int
    tenant_id: int
    payment_number: str
    date: str
    type: str
    amount: float
    payment_method: str
    customer_id: Optional[int] = None
    supplier_id: Optional[int] = None
    order_id: Optional[int] = None
    purchase_invoice_id: Optional[int] = None
    transaction_id: Optional[int] = None


@dataclass(frozen=True)
class StockMovement:
    id: int
    datetime: str
    product_id: Optional[int]
    product_variant_id: Optional[int]
    action: str
    quantity: int
    old_quantity: int
    new_quantity: int
    reason: str
    reference: Optional[str]
