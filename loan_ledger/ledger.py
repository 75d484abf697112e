"""
Bank Ledger Engine

Single-entry cash ledger per bank account. Transactions are append-only and
ordered by insertion sequence; every transaction snapshots the running
balance after it, and replaying the log from the opening balance must
reproduce each snapshot exactly. Corrections are new reversing entries.
"""

from datetime import datetime
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple
from enum import Enum
import uuid

from .currency import Money, Currency
from .clock import Clock, SystemClock
from .errors import (
    ValidationError, InsufficientFundsError, InvalidStateError, NotFoundError,
    CurrencyMismatchError
)
from .logging_config import get_logger


logger = get_logger("loan_ledger.ledger")

REFERENCE_MIN_LENGTH = 3
REFERENCE_MAX_LENGTH = 20
DESCRIPTION_MIN_LENGTH = 3
DESCRIPTION_MAX_LENGTH = 100


class Direction(Enum):
    """Cash movement direction relative to the bank account"""
    CREDIT = "credit"    # Money in
    DEBIT = "debit"      # Money out


class TransactionCategory(Enum):
    """What a ledger transaction represents"""
    DISBURSEMENT = "disbursement"
    REPAYMENT = "repayment"
    EXPENSE = "expense"
    TRANSFER = "transfer"
    ADJUSTMENT = "adjustment"
    REVERSAL = "reversal"


LOAN_CATEGORIES = (TransactionCategory.DISBURSEMENT, TransactionCategory.REPAYMENT)


@dataclass(frozen=True)
class LedgerTransaction:
    """
    Immutable ledger line with the balance snapshot it produced
    """
    id: str
    sequence: int
    direction: Direction
    amount: Money
    running_balance_after: Money
    reference: str
    description: str
    timestamp: datetime
    category: TransactionCategory
    related_loan_id: Optional[str] = None
    reverses: Optional[str] = None

    @property
    def signed_amount(self) -> Money:
        return self.amount if self.direction == Direction.CREDIT else -self.amount

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'sequence': self.sequence,
            'direction': self.direction.value,
            'amount': self.amount.to_dict(),
            'running_balance_after': self.running_balance_after.to_dict(),
            'reference': self.reference,
            'description': self.description,
            'timestamp': self.timestamp.isoformat(),
            'category': self.category.value,
            'related_loan_id': self.related_loan_id,
            'reverses': self.reverses
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LedgerTransaction':
        return cls(
            id=data['id'],
            sequence=int(data['sequence']),
            direction=Direction(data['direction']),
            amount=Money.from_dict(data['amount']),
            running_balance_after=Money.from_dict(data['running_balance_after']),
            reference=data['reference'],
            description=data['description'],
            timestamp=datetime.fromisoformat(data['timestamp']),
            category=TransactionCategory(data['category']),
            related_loan_id=data.get('related_loan_id'),
            reverses=data.get('reverses')
        )


@dataclass
class BankAccount:
    """
    Bank account with its ordered transaction log

    current_balance always equals opening_balance plus the signed sum of
    transactions; BankLedger keeps the two in step.
    """
    id: str
    name: str
    opening_balance: Money
    current_balance: Money
    opened_at: datetime
    bank_name: str = ""
    account_number: str = ""
    transactions: List[LedgerTransaction] = field(default_factory=list)

    @property
    def currency(self) -> Currency:
        return self.opening_balance.currency

    def find_transaction(self, transaction_id: str) -> Optional[LedgerTransaction]:
        for txn in self.transactions:
            if txn.id == transaction_id:
                return txn
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'bank_name': self.bank_name,
            'account_number': self.account_number,
            'opening_balance': self.opening_balance.to_dict(),
            'current_balance': self.current_balance.to_dict(),
            'opened_at': self.opened_at.isoformat(),
            'transactions': [txn.to_dict() for txn in self.transactions]
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BankAccount':
        return cls(
            id=data['id'],
            name=data['name'],
            bank_name=data.get('bank_name', ""),
            account_number=data.get('account_number', ""),
            opening_balance=Money.from_dict(data['opening_balance']),
            current_balance=Money.from_dict(data['current_balance']),
            opened_at=datetime.fromisoformat(data['opened_at']),
            transactions=[LedgerTransaction.from_dict(t) for t in data.get('transactions', [])]
        )


@dataclass(frozen=True)
class IntegrityReport:
    """Outcome of replaying an account's log"""
    account_id: str
    valid: bool
    transaction_count: int
    replayed_balance: Money
    mismatched_sequences: Tuple[int, ...] = ()
    current_balance_mismatch: bool = False


@dataclass(frozen=True)
class TransactionFilter:
    """Optional criteria for listing transactions; all given criteria must match"""
    direction: Optional[Direction] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    text: Optional[str] = None

    def matches(self, txn: LedgerTransaction) -> bool:
        if self.direction and txn.direction != self.direction:
            return False
        if self.start and txn.timestamp < self.start:
            return False
        if self.end and txn.timestamp > self.end:
            return False
        if self.text:
            needle = self.text.lower()
            if needle not in txn.description.lower() and needle not in txn.reference.lower():
                return False
        return True


def validate_reference(reference: str) -> str:
    reference = (reference or "").strip()
    if not REFERENCE_MIN_LENGTH <= len(reference) <= REFERENCE_MAX_LENGTH:
        raise ValidationError(
            f"Reference must be {REFERENCE_MIN_LENGTH}-{REFERENCE_MAX_LENGTH} characters"
        )
    return reference


def validate_description(description: str) -> str:
    description = (description or "").strip()
    if not DESCRIPTION_MIN_LENGTH <= len(description) <= DESCRIPTION_MAX_LENGTH:
        raise ValidationError(
            f"Description must be {DESCRIPTION_MIN_LENGTH}-{DESCRIPTION_MAX_LENGTH} characters"
        )
    return description


class BankLedger:
    """
    Appends transactions to accounts and answers balance queries by replay
    """

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or SystemClock()

    def open_account(
        self,
        account_id: str,
        name: str,
        opening_balance: Money,
        bank_name: str = "",
        account_number: str = ""
    ) -> BankAccount:
        """
        Create an account with an empty log

        Raises:
            ValidationError: If the id or name is empty or the opening balance is negative
        """
        if not account_id:
            raise ValidationError("Account id is required")
        if not name or not name.strip():
            raise ValidationError("Account name is required")
        if opening_balance.is_negative():
            raise ValidationError("Opening balance cannot be negative")

        return BankAccount(
            id=account_id,
            name=name.strip(),
            bank_name=bank_name,
            account_number=account_number,
            opening_balance=opening_balance,
            current_balance=opening_balance,
            opened_at=self.clock.now()
        )

    def append_transaction(
        self,
        account: BankAccount,
        direction: Direction,
        amount: Money,
        reference: str,
        description: str,
        related_loan_id: Optional[str] = None,
        category: Optional[TransactionCategory] = None,
        timestamp: Optional[datetime] = None,
        reverses: Optional[str] = None
    ) -> LedgerTransaction:
        """
        Append a credit or debit and move the balance in the same step

        Args:
            account: Account to post to
            direction: CREDIT adds funds, DEBIT removes them
            amount: Positive amount in the account currency
            reference: 3-20 character reference, need not be unique
            description: 3-100 character description
            related_loan_id: Optional loan back-reference
            category: Transaction category (defaults by direction)
            timestamp: Business time (defaults to now); ordering uses sequence

        Returns:
            The appended LedgerTransaction

        Raises:
            ValidationError: If amount, currency, reference or description are invalid
            InsufficientFundsError: If a debit exceeds the current balance
        """
        if amount.currency != account.currency:
            raise CurrencyMismatchError(
                f"Cannot post {amount.currency.code} to {account.currency.code} account {account.id}"
            )
        if not amount.is_positive():
            raise ValidationError("Transaction amount must be positive")

        reference = validate_reference(reference)
        description = validate_description(description)

        if direction == Direction.DEBIT:
            if amount > account.current_balance:
                raise InsufficientFundsError(
                    f"Insufficient funds in {account.id}: balance {account.current_balance.to_string()}, "
                    f"debit {amount.to_string()}"
                )
            new_balance = account.current_balance - amount
        else:
            new_balance = account.current_balance + amount

        if category is None:
            category = TransactionCategory.EXPENSE if direction == Direction.DEBIT else TransactionCategory.ADJUSTMENT

        txn = LedgerTransaction(
            id=str(uuid.uuid4()),
            sequence=len(account.transactions) + 1,
            direction=direction,
            amount=amount,
            running_balance_after=new_balance,
            reference=reference,
            description=description,
            timestamp=timestamp or self.clock.now(),
            category=category,
            related_loan_id=related_loan_id,
            reverses=reverses
        )

        account.transactions.append(txn)
        account.current_balance = new_balance

        logger.debug("Posted %s %s to %s (seq %d), balance %s",
                     direction.value, amount.to_string(), account.id, txn.sequence,
                     new_balance.to_string())
        return txn

    def reverse_transaction(
        self,
        account: BankAccount,
        transaction_id: str,
        reason: str,
        timestamp: Optional[datetime] = None
    ) -> LedgerTransaction:
        """
        Post the opposite entry for an earlier transaction

        Raises:
            NotFoundError: If the transaction is not in this account
            InvalidStateError: If it is a reversal or was already reversed
            InsufficientFundsError: If reversing a credit would overdraw the account
        """
        original = account.find_transaction(transaction_id)
        if original is None:
            raise NotFoundError(f"Transaction {transaction_id} not found in account {account.id}")
        if original.reverses is not None:
            raise InvalidStateError(f"Transaction {transaction_id} is itself a reversal")
        if any(t.reverses == transaction_id for t in account.transactions):
            raise InvalidStateError(f"Transaction {transaction_id} has already been reversed")

        opposite = Direction.DEBIT if original.direction == Direction.CREDIT else Direction.CREDIT
        description = f"REVERSAL: {reason}"[:DESCRIPTION_MAX_LENGTH]

        return self.append_transaction(
            account=account,
            direction=opposite,
            amount=original.amount,
            reference=f"REV-{original.reference}"[:REFERENCE_MAX_LENGTH],
            description=description,
            related_loan_id=original.related_loan_id,
            category=TransactionCategory.REVERSAL,
            timestamp=timestamp,
            reverses=original.id
        )

    def balance_as_of(self, account: BankAccount, cutoff: datetime) -> Money:
        """
        Running balance after the last transaction stamped at or before cutoff

        A pure fold over the log in sequence order; the opening balance if no
        transaction qualifies.
        """
        balance = account.opening_balance
        result = account.opening_balance
        for txn in account.transactions:
            balance = balance + txn.signed_amount
            if txn.timestamp <= cutoff:
                result = balance
        return result

    def balance_history(self, account: BankAccount, cutoffs: Iterable[datetime]) -> List[Tuple[datetime, Money]]:
        return [(cutoff, self.balance_as_of(account, cutoff)) for cutoff in cutoffs]

    def verify_integrity(self, account: BankAccount) -> IntegrityReport:
        """Replay the log from the opening balance and compare every snapshot"""
        balance = account.opening_balance
        mismatched = []

        for expected_sequence, txn in enumerate(account.transactions, start=1):
            balance = balance + txn.signed_amount
            if txn.running_balance_after != balance or txn.sequence != expected_sequence:
                mismatched.append(txn.sequence)

        balance_mismatch = balance != account.current_balance
        return IntegrityReport(
            account_id=account.id,
            valid=not mismatched and not balance_mismatch,
            transaction_count=len(account.transactions),
            replayed_balance=balance,
            mismatched_sequences=tuple(mismatched),
            current_balance_mismatch=balance_mismatch
        )

    def filter_transactions(
        self,
        account: BankAccount,
        criteria: Optional[TransactionFilter] = None
    ) -> List[LedgerTransaction]:
        """Matching transactions, newest first"""
        criteria = criteria or TransactionFilter()
        matched = [txn for txn in account.transactions if criteria.matches(txn)]
        matched.sort(key=lambda t: t.sequence, reverse=True)
        return matched

    def totals(self, account: BankAccount) -> Tuple[Money, Money]:
        """Total credits and total debits over the whole log"""
        credits = Money.zero(account.currency)
        debits = Money.zero(account.currency)
        for txn in account.transactions:
            if txn.direction == Direction.CREDIT:
                credits = credits + txn.amount
            else:
                debits = debits + txn.amount
        return credits, debits
