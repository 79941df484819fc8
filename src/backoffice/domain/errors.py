class AppError(Exception):
    """Base app error."""

    code: str = "APP_ERROR"


class ValidationError(AppError):
    code = "VALIDATION_ERROR"

    def __init__(self, message: str, errors: list | None = None):
        super().__init__(message)
        self.errors = list(errors or [])


class NotFoundError(AppError):
    code = "NOT_FOUND"


class InsufficientStockError(ValidationError):
    code = "INSUFFICIENT_STOCK"


class UnbalancedTransactionError(AppError):
    """Debits and credits of a transaction differ by more than the tolerance."""

    code = "UNBALANCED_TRANSACTION"

    def __init__(self, debits: float, credits: float):
        self.debits = debits
        self.credits = credits
        super().__init__(f"Transaction is not balanced. Debits: {debits:.2f}, Credits: {credits:.2f}")
