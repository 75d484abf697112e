"""
Loan Module

Owns a loan's lifecycle state machine and payment application: creation,
disbursement, and repayment against a flat simple-interest total.
Status is derived from balance and dates, never stored.
"""

from decimal import Decimal, InvalidOperation
from datetime import datetime, date
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from enum import Enum
import uuid

from .currency import Money, Currency, AmountLike
from .clock import Clock, SystemClock
from .config import LedgerConfig, get_config
from .errors import (
    ValidationError, InvalidStateError, OverpaymentError, CurrencyMismatchError
)
from .logging_config import get_logger
from .schedule import (
    LoanStatus, ScheduleEntry, compute_total_repayable, compute_due_date,
    outstanding_balance, progress_percent, next_payment_date, derive_status,
    build_schedule
)


logger = get_logger("loan_ledger.loans")


class PaymentMethod(Enum):
    """How a borrower paid"""
    CASH = "cash"
    BANK_TRANSFER = "bank_transfer"
    MOBILE_MONEY = "mobile_money"


@dataclass
class Loan:
    """
    Loan terms and repayment progress

    paid_amount is mutated only by LoanLedger and never decreases outside
    an uncommitted rollback.
    """
    id: str
    borrower_id: str
    principal: Money
    rate: Decimal                       # Flat percentage, e.g. Decimal('15') for 15%
    term_months: int
    disbursement_date: date             # Planned until disbursed, then actual
    funding_account_id: str
    total_repayable: Money
    paid_amount: Money
    created_at: datetime
    disbursed_at: Optional[datetime] = None
    last_payment_date: Optional[date] = None

    @property
    def currency(self) -> Currency:
        return self.principal.currency

    @property
    def is_disbursed(self) -> bool:
        return self.disbursed_at is not None

    @property
    def due_date(self) -> date:
        return compute_due_date(self.disbursement_date, self.term_months)

    @property
    def outstanding(self) -> Money:
        return outstanding_balance(self.total_repayable, self.paid_amount)

    @property
    def progress(self) -> int:
        return progress_percent(self.paid_amount, self.total_repayable)

    def status_on(self, today: date) -> LoanStatus:
        return derive_status(self.is_disbursed, self.outstanding, self.due_date, today)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'borrower_id': self.borrower_id,
            'principal': self.principal.to_dict(),
            'rate': str(self.rate),
            'term_months': self.term_months,
            'disbursement_date': self.disbursement_date.isoformat(),
            'funding_account_id': self.funding_account_id,
            'total_repayable': self.total_repayable.to_dict(),
            'paid_amount': self.paid_amount.to_dict(),
            'created_at': self.created_at.isoformat(),
            'disbursed_at': self.disbursed_at.isoformat() if self.disbursed_at else None,
            'last_payment_date': self.last_payment_date.isoformat() if self.last_payment_date else None
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        return cls(
            id=data['id'],
            borrower_id=data['borrower_id'],
            principal=Money.from_dict(data['principal']),
            rate=Decimal(data['rate']),
            term_months=int(data['term_months']),
            disbursement_date=date.fromisoformat(data['disbursement_date']),
            funding_account_id=data['funding_account_id'],
            total_repayable=Money.from_dict(data['total_repayable']),
            paid_amount=Money.from_dict(data['paid_amount']),
            created_at=datetime.fromisoformat(data['created_at']),
            disbursed_at=datetime.fromisoformat(data['disbursed_at']) if data.get('disbursed_at') else None,
            last_payment_date=date.fromisoformat(data['last_payment_date']) if data.get('last_payment_date') else None
        )


@dataclass(frozen=True)
class PaymentRecord:
    """Immutable record of one repayment"""
    id: str
    loan_id: str
    amount: Money
    timestamp: datetime
    method: PaymentMethod
    settled_to_account_id: str
    reference: Optional[str] = None
    notes: Optional[str] = None
    transaction_id: Optional[str] = None
    receipt_number: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'loan_id': self.loan_id,
            'amount': self.amount.to_dict(),
            'timestamp': self.timestamp.isoformat(),
            'method': self.method.value,
            'settled_to_account_id': self.settled_to_account_id,
            'reference': self.reference,
            'notes': self.notes,
            'transaction_id': self.transaction_id,
            'receipt_number': self.receipt_number
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PaymentRecord':
        return cls(
            id=data['id'],
            loan_id=data['loan_id'],
            amount=Money.from_dict(data['amount']),
            timestamp=datetime.fromisoformat(data['timestamp']),
            method=PaymentMethod(data['method']),
            settled_to_account_id=data['settled_to_account_id'],
            reference=data.get('reference'),
            notes=data.get('notes'),
            transaction_id=data.get('transaction_id'),
            receipt_number=data.get('receipt_number')
        )


@dataclass(frozen=True)
class DisbursementInstruction:
    """Debit the funding account must absorb for a disbursement to stand"""
    loan_id: str
    funding_account_id: str
    amount: Money
    timestamp: datetime


class LoanLedger:
    """
    Applies lifecycle transitions and payments to one loan at a time
    """

    def __init__(self, clock: Optional[Clock] = None, config: Optional[LedgerConfig] = None):
        self.clock = clock or SystemClock()
        self.config = config or get_config()

    def create_loan(
        self,
        borrower_id: str,
        principal: Money,
        rate: AmountLike,
        term_months: int,
        funding_account_id: str,
        disbursement_date: Optional[date] = None,
        loan_id: Optional[str] = None
    ) -> Loan:
        """
        Build a new pending loan

        Raises:
            ValidationError: If principal, rate or term are out of range
        """
        rate = self._validate_rate(rate)

        if not borrower_id:
            raise ValidationError("Borrower is required")
        if isinstance(term_months, bool) or not isinstance(term_months, int) or term_months < 1:
            raise ValidationError(f"Duration must be at least 1 month, got {term_months}")
        if term_months > self.config.max_term_months:
            raise ValidationError(
                f"Duration must be at most {self.config.max_term_months} months, got {term_months}"
            )

        minimum = Money.of(self.config.min_principal_amount, principal.currency)
        if principal < minimum:
            raise ValidationError(f"Principal must be at least {minimum.to_string()}")

        now = self.clock.now()
        planned_date = disbursement_date or now.date()
        self._checked_due_date(planned_date, term_months)
        total = compute_total_repayable(principal, rate, term_months)

        loan = Loan(
            id=loan_id or str(uuid.uuid4()),
            borrower_id=borrower_id,
            principal=principal,
            rate=rate,
            term_months=term_months,
            disbursement_date=planned_date,
            funding_account_id=funding_account_id,
            total_repayable=total,
            paid_amount=Money.zero(principal.currency),
            created_at=now
        )

        logger.debug("Loan %s created: principal=%s total=%s",
                     loan.id, principal.to_string(), total.to_string())
        return loan

    def disburse(self, loan: Loan, timestamp: Optional[datetime] = None) -> DisbursementInstruction:
        """
        Move a pending loan to active and emit the funding debit

        The due date is recounted from the actual disbursement date.

        Raises:
            InvalidStateError: If the loan is not pending
            ValidationError: If the recounted due date is not a valid calendar date
        """
        if loan.is_disbursed:
            raise InvalidStateError(f"Can only disburse pending loans, loan {loan.id} is already disbursed")

        timestamp = timestamp or self.clock.now()
        self._checked_due_date(timestamp.date(), loan.term_months)
        loan.disbursed_at = timestamp
        loan.disbursement_date = timestamp.date()

        return DisbursementInstruction(
            loan_id=loan.id,
            funding_account_id=loan.funding_account_id,
            amount=loan.principal,
            timestamp=timestamp
        )

    def apply_payment(
        self,
        loan: Loan,
        amount: Money,
        timestamp: Optional[datetime] = None,
        method: PaymentMethod = PaymentMethod.CASH,
        settled_to_account_id: str = "",
        reference: Optional[str] = None,
        notes: Optional[str] = None
    ) -> PaymentRecord:
        """
        Apply a repayment to the loan

        Args:
            loan: Loan to credit
            amount: Positive payment amount in the loan's currency
            timestamp: When the payment was received (defaults to now)
            method: Payment channel
            settled_to_account_id: Bank account receiving the funds

        Returns:
            PaymentRecord for the caller to persist

        Raises:
            ValidationError: If amount is not positive or in the wrong currency
            InvalidStateError: If the loan is pending or completed
            OverpaymentError: If amount exceeds the outstanding balance
        """
        if amount.currency != loan.currency:
            raise CurrencyMismatchError(
                f"Payment in {amount.currency.code} for a {loan.currency.code} loan"
            )
        if not amount.is_positive():
            raise ValidationError("Payment amount must be positive")

        timestamp = timestamp or self.clock.now()
        status = loan.status_on(timestamp.date())

        if status == LoanStatus.PENDING:
            raise InvalidStateError(f"Loan {loan.id} has not been disbursed")
        if status == LoanStatus.COMPLETED:
            raise InvalidStateError(f"Loan {loan.id} is already fully repaid")

        outstanding = loan.outstanding
        if amount > outstanding:
            raise OverpaymentError(
                f"Payment {amount.to_string()} exceeds outstanding balance {outstanding.to_string()}"
            )

        loan.paid_amount = loan.paid_amount + amount
        payment_day = timestamp.date()
        if loan.last_payment_date is None or payment_day > loan.last_payment_date:
            loan.last_payment_date = payment_day

        return PaymentRecord(
            id=str(uuid.uuid4()),
            loan_id=loan.id,
            amount=amount,
            timestamp=timestamp,
            method=method,
            settled_to_account_id=settled_to_account_id,
            reference=reference,
            notes=notes
        )

    def status_of(self, loan: Loan, today: Optional[date] = None) -> LoanStatus:
        return loan.status_on(today or self.clock.today())

    def next_payment_date_of(self, loan: Loan) -> Optional[date]:
        """Next expected payment date; None while pending or once completed"""
        if not loan.is_disbursed or loan.outstanding.is_zero():
            return None
        return next_payment_date(loan.disbursement_date, loan.last_payment_date)

    def schedule_of(self, loan: Loan) -> List[ScheduleEntry]:
        return build_schedule(loan.total_repayable, loan.term_months, loan.disbursement_date)

    def _checked_due_date(self, start: date, term_months: int) -> date:
        try:
            return compute_due_date(start, term_months)
        except (ValueError, OverflowError):
            raise ValidationError(
                f"A {term_months} month term from {start.isoformat()} ends past the last supported date"
            )

    def _validate_rate(self, rate: AmountLike) -> Decimal:
        if isinstance(rate, float):
            raise ValidationError("Interest rate cannot be a float; use str or Decimal")
        try:
            value = rate if isinstance(rate, Decimal) else Decimal(rate)
        except (InvalidOperation, TypeError):
            raise ValidationError(f"Invalid interest rate: {rate}")
        if not value.is_finite() or value <= 0 or value > self.config.max_rate:
            raise ValidationError(
                f"Interest rate must be between 0 and {self.config.max_interest_rate}%"
            )
        return value
