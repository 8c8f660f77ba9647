"""Banking domain exceptions.

Each error kind maps 1:1 to an HTTP response in ``main.py``; the transaction
core raises them and never handles them itself.
"""


class BankingError(Exception):
    """Base class for banking domain errors."""

    code = "BANKING_ERROR"
    retryable = False

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__doc__)
        self.message = message or self.__class__.__doc__


class AccountNotFoundError(BankingError):
    """Account not found"""

    code = "ACCOUNT_NOT_FOUND"

    def __init__(self, account_number: str):
        super().__init__(f"Account not found: {account_number}")
        self.account_number = account_number


class InvalidAmountError(BankingError):
    """Amount must be a positive decimal"""

    code = "INVALID_AMOUNT"


class InsufficientFundsError(BankingError):
    """Insufficient funds"""

    code = "INSUFFICIENT_FUNDS"

    def __init__(self, account_number: str, balance, amount):
        super().__init__("Insufficient funds")
        self.account_number = account_number
        self.balance = balance
        self.amount = amount


class ConflictError(BankingError):
    """Account was modified concurrently"""

    code = "CONFLICT"
    retryable = True


class BusyError(BankingError):
    """Account is busy, try again later"""

    code = "BUSY"
    retryable = True


class StorageFailureError(BankingError):
    """Storage is unavailable"""

    code = "STORAGE_FAILURE"
    retryable = True


class UserAlreadyExistsError(BankingError):
    """Username already exists"""

    code = "USER_ALREADY_EXISTS"


class InvalidCredentialsError(BankingError):
    """Invalid username or password"""

    code = "INVALID_CREDENTIALS"
