"""
Loan Ledger Engine

Loan repayment tracking and bank-account ledger accounting for microfinance
lenders, with integer minor-unit money, append-only transaction logs and
all-or-nothing coordination of disbursements and repayments.
"""

__version__ = "1.0.0"

from .currency import Money, Currency
from .errors import (
    LedgerError, ValidationError, CurrencyMismatchError, DuplicateError,
    InvalidStateError, OverpaymentError, InsufficientFundsError, NotFoundError,
    NegativeResultError, OperationResult
)
from .schedule import LoanStatus
from .loans import Loan, LoanLedger, PaymentMethod, PaymentRecord
from .ledger import BankAccount, BankLedger, Direction, LedgerTransaction, TransactionCategory
from .facade import AccountingFacade

__all__ = [
    "Money", "Currency",
    "LedgerError", "ValidationError", "CurrencyMismatchError", "DuplicateError",
    "InvalidStateError", "OverpaymentError", "InsufficientFundsError", "NotFoundError",
    "NegativeResultError", "OperationResult",
    "LoanStatus", "Loan", "LoanLedger", "PaymentMethod", "PaymentRecord",
    "BankAccount", "BankLedger", "Direction", "LedgerTransaction", "TransactionCategory",
    "AccountingFacade",
]
