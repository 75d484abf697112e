"""
Accounting Facade Module

Entry point for caller events. Coordinates LoanLedger and BankLedger so a
disbursement or repayment lands on both the loan and the bank account, or
on neither. Every operation returns an OperationResult; expected business
failures never escape as exceptions.
"""

from decimal import Decimal, ROUND_HALF_UP
from datetime import date, datetime
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, TypeVar, Union
from contextlib import contextmanager

from .audit import AuditTrail, AuditEventType
from .borrowers import BorrowerDirectory
from .clock import Clock, SystemClock
from .config import LedgerConfig, get_config
from .currency import Money, AmountLike
from .errors import (
    LedgerError, OperationResult, ValidationError, InvalidStateError,
    NotFoundError, CurrencyMismatchError
)
from .events import (
    NewLoan, Disbursement, PaymentReceived, OpenAccount, ManualTransaction,
    Reversal, parse_event
)
from .ledger import (
    BankAccount, BankLedger, Direction, IntegrityReport, LedgerTransaction,
    TransactionCategory, TransactionFilter, LOAN_CATEGORIES,
    REFERENCE_MAX_LENGTH, DESCRIPTION_MAX_LENGTH
)
from .loans import Loan, LoanLedger, PaymentMethod, PaymentRecord
from .logging_config import get_logger, log_action
from .schedule import LoanStatus, ScheduleEntry
from .store import EngineStore


logger = get_logger("loan_ledger.facade")

T = TypeVar("T")
MoneyInput = Union[Money, AmountLike]


@dataclass(frozen=True)
class LoanView:
    """Read snapshot of a loan with every derived figure resolved"""
    loan_id: str
    borrower_id: str
    borrower_name: Optional[str]
    principal: Money
    rate: Decimal
    term_months: int
    total_repayable: Money
    paid_amount: Money
    outstanding: Money
    progress: int
    status: LoanStatus
    disbursement_date: date
    due_date: date
    next_payment_date: Optional[date]
    funding_account_id: str
    disbursed_at: Optional[datetime]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'loan_id': self.loan_id,
            'borrower_id': self.borrower_id,
            'borrower_name': self.borrower_name,
            'principal': self.principal.to_dict(),
            'rate': str(self.rate),
            'term_months': self.term_months,
            'total_repayable': self.total_repayable.to_dict(),
            'paid_amount': self.paid_amount.to_dict(),
            'outstanding': self.outstanding.to_dict(),
            'progress': self.progress,
            'status': self.status.value,
            'disbursement_date': self.disbursement_date.isoformat(),
            'due_date': self.due_date.isoformat(),
            'next_payment_date': self.next_payment_date.isoformat() if self.next_payment_date else None,
            'funding_account_id': self.funding_account_id,
            'disbursed_at': self.disbursed_at.isoformat() if self.disbursed_at else None
        }


@dataclass(frozen=True)
class AccountView:
    """Read snapshot of a bank account with inflow/outflow totals"""
    account_id: str
    name: str
    bank_name: str
    account_number: str
    opening_balance: Money
    current_balance: Money
    transaction_count: int
    total_credits: Money
    total_debits: Money
    last_updated: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            'account_id': self.account_id,
            'name': self.name,
            'bank_name': self.bank_name,
            'account_number': self.account_number,
            'opening_balance': self.opening_balance.to_dict(),
            'current_balance': self.current_balance.to_dict(),
            'transaction_count': self.transaction_count,
            'total_credits': self.total_credits.to_dict(),
            'total_debits': self.total_debits.to_dict(),
            'last_updated': self.last_updated.isoformat()
        }


@dataclass(frozen=True)
class DisbursementResult:
    loan: LoanView
    transaction: LedgerTransaction
    account_balance: Money

    def to_dict(self) -> Dict[str, Any]:
        return {
            'loan': self.loan.to_dict(),
            'transaction': self.transaction.to_dict(),
            'account_balance': self.account_balance.to_dict()
        }


@dataclass(frozen=True)
class PaymentResult:
    loan: LoanView
    payment: PaymentRecord
    transaction: LedgerTransaction
    account_balance: Money

    def to_dict(self) -> Dict[str, Any]:
        return {
            'loan': self.loan.to_dict(),
            'payment': self.payment.to_dict(),
            'transaction': self.transaction.to_dict(),
            'account_balance': self.account_balance.to_dict()
        }


@dataclass(frozen=True)
class PortfolioSummary:
    """Headline portfolio figures in the engine's default currency"""
    total_outstanding: Money
    total_disbursed: Money
    total_collected: Money
    collection_rate: Decimal            # Percent of disbursed repayables collected, 1 dp
    loan_counts: Dict[str, int]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total_outstanding': self.total_outstanding.to_dict(),
            'total_disbursed': self.total_disbursed.to_dict(),
            'total_collected': self.total_collected.to_dict(),
            'collection_rate': str(self.collection_rate),
            'loan_counts': dict(self.loan_counts)
        }


class AccountingFacade:
    """
    Coordinates loan and bank ledgers for caller events
    """

    def __init__(
        self,
        store: Optional[EngineStore] = None,
        clock: Optional[Clock] = None,
        borrowers: Optional[BorrowerDirectory] = None,
        config: Optional[LedgerConfig] = None,
        audit_trail: Optional[AuditTrail] = None
    ):
        self.config = config or get_config()
        self.clock = clock or SystemClock()
        self.store = store or EngineStore(receipt_prefix=self.config.receipt_prefix)
        self.borrowers = borrowers
        self.loan_ledger = LoanLedger(self.clock, self.config)
        self.bank_ledger = BankLedger(self.clock)
        if audit_trail is None:
            audit_trail = AuditTrail(self.clock, enabled=self.config.enable_audit_logging)
        self.audit_trail = audit_trail
        self.currency = self.config.currency

    # Mutating operations

    def open_account(
        self,
        account_id: str,
        name: str,
        opening_balance: MoneyInput,
        bank_name: str = "",
        account_number: str = ""
    ) -> OperationResult[AccountView]:
        """Register a bank account with its opening balance"""
        def operation() -> AccountView:
            event = parse_event(
                OpenAccount, account_id=account_id, name=name,
                bank_name=bank_name, account_number=account_number,
                **self._money_fields(opening_balance)
            )
            account = self.bank_ledger.open_account(
                account_id=event.account_id,
                name=event.name,
                opening_balance=event.to_money(self.currency),
                bank_name=event.bank_name,
                account_number=event.account_number
            )
            self.store.add_account(account)
            self.audit_trail.log_event(
                AuditEventType.ACCOUNT_OPENED, "account", account.id,
                {"opening_balance": account.opening_balance.to_string()}
            )
            return self._account_view(account)

        return self._execute("open_account", account_id, operation)

    def create_loan(
        self,
        borrower_id: str,
        principal: MoneyInput,
        rate: AmountLike,
        term_months: int,
        funding_account_id: str,
        disbursement_date: Optional[date] = None,
        loan_id: Optional[str] = None
    ) -> OperationResult[LoanView]:
        """
        Create a pending loan for an existing borrower

        The funding account must exist and share the principal's currency.
        """
        def operation() -> LoanView:
            event = parse_event(
                NewLoan, borrower_id=borrower_id, rate=rate, term_months=term_months,
                funding_account_id=funding_account_id, disbursement_date=disbursement_date,
                loan_id=loan_id, **self._money_fields(principal)
            )
            if self.borrowers is not None and not self.borrowers.exists(event.borrower_id):
                raise NotFoundError(f"Borrower {event.borrower_id} not found")

            account = self.store.get_account(event.funding_account_id)
            amount = event.to_money(self.currency)
            if amount.currency != account.currency:
                raise CurrencyMismatchError(
                    f"{amount.currency.code} loan cannot be funded from "
                    f"{account.currency.code} account {account.id}"
                )

            loan = self.loan_ledger.create_loan(
                borrower_id=event.borrower_id,
                principal=amount,
                rate=event.rate,
                term_months=event.term_months,
                funding_account_id=account.id,
                disbursement_date=event.disbursement_date,
                loan_id=event.loan_id
            )
            self.store.add_loan(loan)
            self.audit_trail.log_event(
                AuditEventType.LOAN_CREATED, "loan", loan.id,
                {
                    "borrower_id": loan.borrower_id,
                    "principal": loan.principal.to_string(),
                    "rate": str(loan.rate),
                    "term_months": loan.term_months,
                    "total_repayable": loan.total_repayable.to_string()
                }
            )
            with self.store.lock_loan(loan.id):
                return self._loan_view(loan)

        return self._execute("create_loan", loan_id or borrower_id, operation)

    def record_disbursement(
        self,
        loan_id: str,
        funding_account_id: Optional[str] = None
    ) -> OperationResult[DisbursementResult]:
        """
        Disburse a pending loan and debit its principal from the funding account

        All or nothing: if the debit fails the loan stays pending.
        """
        def operation() -> DisbursementResult:
            event = parse_event(Disbursement, loan_id=loan_id, funding_account_id=funding_account_id)
            loan = self.store.get_loan(event.loan_id)
            account_id = event.funding_account_id or loan.funding_account_id

            with self.store.lock_pair(loan.id, account_id):
                account = self.store.get_account(account_id)
                with self._transaction("record_disbursement", [loan.id], [account.id]):
                    loan.funding_account_id = account.id
                    instruction = self.loan_ledger.disburse(loan, self.clock.now())
                    txn = self.bank_ledger.append_transaction(
                        account=account,
                        direction=Direction.DEBIT,
                        amount=instruction.amount,
                        reference=f"DIS-{loan.id}"[:REFERENCE_MAX_LENGTH],
                        description=f"Loan disbursement - {self._borrower_label(loan)}"[:DESCRIPTION_MAX_LENGTH],
                        related_loan_id=loan.id,
                        category=TransactionCategory.DISBURSEMENT,
                        timestamp=instruction.timestamp
                    )
                result = DisbursementResult(
                    loan=self._loan_view(loan),
                    transaction=txn,
                    account_balance=account.current_balance
                )

            self.audit_trail.log_event(
                AuditEventType.LOAN_DISBURSED, "loan", loan.id,
                {"account_id": account_id, "amount": instruction.amount.to_string(),
                 "transaction_id": txn.id}
            )
            self._audit_posting(account_id, txn)
            return result

        return self._execute("record_disbursement", loan_id, operation)

    def record_payment(
        self,
        loan_id: str,
        amount: MoneyInput,
        destination_account_id: str,
        method: Union[PaymentMethod, str],
        reference: Optional[str] = None,
        notes: Optional[str] = None
    ) -> OperationResult[PaymentResult]:
        """
        Apply a repayment to a loan and credit it to the receiving account

        All or nothing: a rejected payment posts nothing, and a failed
        posting reverts the loan's paid amount.
        """
        def operation() -> PaymentResult:
            event = parse_event(
                PaymentReceived, loan_id=loan_id, destination_account_id=destination_account_id,
                method=method, reference=reference, notes=notes, **self._money_fields(amount)
            )
            payment_amount = event.to_money(self.currency)
            loan = self.store.get_loan(event.loan_id)

            with self.store.lock_pair(loan.id, event.destination_account_id):
                account = self.store.get_account(event.destination_account_id)
                now = self.clock.now()
                with self._transaction("record_payment", [loan.id], [account.id]):
                    record = self.loan_ledger.apply_payment(
                        loan, payment_amount, now, event.method, account.id,
                        event.reference, event.notes
                    )
                    txn_reference = event.reference or f"PAY-{record.id[:8]}"
                    txn = self.bank_ledger.append_transaction(
                        account=account,
                        direction=Direction.CREDIT,
                        amount=payment_amount,
                        reference=txn_reference,
                        description=f"Loan repayment - {self._borrower_label(loan)}"[:DESCRIPTION_MAX_LENGTH],
                        related_loan_id=loan.id,
                        category=TransactionCategory.REPAYMENT,
                        timestamp=now
                    )
                    stored = self.store.add_payment(
                        replace(record, reference=txn_reference, transaction_id=txn.id)
                    )
                result = PaymentResult(
                    loan=self._loan_view(loan),
                    payment=stored,
                    transaction=txn,
                    account_balance=account.current_balance
                )

            self.audit_trail.log_event(
                AuditEventType.PAYMENT_RECORDED, "loan", loan.id,
                {"payment_id": stored.id, "amount": payment_amount.to_string(),
                 "receipt_number": stored.receipt_number, "status": result.loan.status.value}
            )
            self._audit_posting(account.id, txn)
            return result

        return self._execute("record_payment", loan_id, operation)

    def record_transaction(
        self,
        account_id: str,
        direction: Union[Direction, str],
        amount: MoneyInput,
        description: str,
        reference: str,
        related_loan_id: Optional[str] = None,
        category: Optional[Union[TransactionCategory, str]] = None
    ) -> OperationResult[LedgerTransaction]:
        """
        Post a manual entry such as an operating expense, bank charge or transfer

        Loan disbursements and repayments go through their own operations so
        the loan side stays in step.
        """
        def operation() -> LedgerTransaction:
            event = parse_event(
                ManualTransaction, account_id=account_id, direction=direction,
                description=description, reference=reference,
                related_loan_id=related_loan_id, category=category,
                **self._money_fields(amount)
            )
            if event.category in LOAN_CATEGORIES or event.category == TransactionCategory.REVERSAL:
                raise ValidationError(
                    f"{event.category.value} entries cannot be posted manually"
                )

            with self.store.lock_account(event.account_id):
                account = self.store.get_account(event.account_id)
                with self._transaction("record_transaction", (), [account.id]):
                    txn = self.bank_ledger.append_transaction(
                        account=account,
                        direction=event.direction,
                        amount=event.to_money(self.currency),
                        reference=event.reference,
                        description=event.description,
                        related_loan_id=event.related_loan_id,
                        category=event.category
                    )

            self._audit_posting(account.id, txn)
            return txn

        return self._execute("record_transaction", account_id, operation)

    def reverse_transaction(
        self,
        account_id: str,
        transaction_id: str,
        reason: str
    ) -> OperationResult[LedgerTransaction]:
        """Correct a manual entry by posting its opposite"""
        def operation() -> LedgerTransaction:
            event = parse_event(
                Reversal, account_id=account_id, transaction_id=transaction_id, reason=reason
            )
            with self.store.lock_account(event.account_id):
                account = self.store.get_account(event.account_id)
                original = account.find_transaction(event.transaction_id)
                if original is None:
                    raise NotFoundError(
                        f"Transaction {event.transaction_id} not found in account {account.id}"
                    )
                if original.category in LOAN_CATEGORIES:
                    raise InvalidStateError(
                        f"Transaction {original.id} belongs to loan {original.related_loan_id} "
                        f"and cannot be reversed on the ledger alone"
                    )
                with self._transaction("reverse_transaction", (), [account.id]):
                    txn = self.bank_ledger.reverse_transaction(
                        account, original.id, event.reason
                    )

            self.audit_trail.log_event(
                AuditEventType.TRANSACTION_REVERSED, "transaction", original.id,
                {"account_id": account.id, "reversal_id": txn.id, "reason": event.reason}
            )
            return txn

        return self._execute("reverse_transaction", transaction_id, operation)

    # Queries

    def get_loan(self, loan_id: str) -> OperationResult[LoanView]:
        def query() -> LoanView:
            loan = self.store.get_loan(loan_id)
            with self.store.lock_loan(loan.id):
                return self._loan_view(loan)

        return self._query(query)

    def get_account(self, account_id: str) -> OperationResult[AccountView]:
        def query() -> AccountView:
            account = self.store.get_account(account_id)
            with self.store.lock_account(account.id):
                return self._account_view(account)

        return self._query(query)

    def list_transactions(
        self,
        account_id: str,
        direction: Optional[Union[Direction, str]] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        text: Optional[str] = None
    ) -> OperationResult[List[LedgerTransaction]]:
        """Transactions matching every given criterion, newest first"""
        def query() -> List[LedgerTransaction]:
            criteria = TransactionFilter(
                direction=self._coerce_enum(Direction, direction),
                start=start,
                end=end,
                text=text or None
            )
            account = self.store.get_account(account_id)
            with self.store.lock_account(account.id):
                return self.bank_ledger.filter_transactions(account, criteria)

        return self._query(query)

    def list_payments(self, loan_id: str) -> OperationResult[List[PaymentRecord]]:
        def query() -> List[PaymentRecord]:
            loan = self.store.get_loan(loan_id)
            with self.store.lock_loan(loan.id):
                return self.store.list_payments(loan.id)

        return self._query(query)

    def list_loans(
        self,
        status: Optional[Union[LoanStatus, str]] = None,
        text: Optional[str] = None
    ) -> OperationResult[List[LoanView]]:
        """Loans filtered by derived status and by loan id or borrower name"""
        def query() -> List[LoanView]:
            wanted = self._coerce_enum(LoanStatus, status)
            needle = text.lower() if text else None
            views = []
            for loan_id in self.store.loan_ids():
                loan = self.store.get_loan(loan_id)
                with self.store.lock_loan(loan_id):
                    view = self._loan_view(loan)
                if wanted and view.status != wanted:
                    continue
                if needle and needle not in view.loan_id.lower() \
                        and needle not in (view.borrower_name or view.borrower_id).lower():
                    continue
                views.append(view)
            return views

        return self._query(query)

    def balance_as_of(self, account_id: str, cutoff: datetime) -> OperationResult[Money]:
        def query() -> Money:
            account = self.store.get_account(account_id)
            with self.store.lock_account(account.id):
                return self.bank_ledger.balance_as_of(account, cutoff)

        return self._query(query)

    def balance_history(
        self,
        account_id: str,
        cutoffs: Iterable[datetime]
    ) -> OperationResult[List[Tuple[datetime, Money]]]:
        def query() -> List[Tuple[datetime, Money]]:
            account = self.store.get_account(account_id)
            with self.store.lock_account(account.id):
                return self.bank_ledger.balance_history(account, cutoffs)

        return self._query(query)

    def verify_account(self, account_id: str) -> OperationResult[IntegrityReport]:
        def query() -> IntegrityReport:
            account = self.store.get_account(account_id)
            with self.store.lock_account(account.id):
                return self.bank_ledger.verify_integrity(account)

        return self._query(query)

    def loan_schedule(self, loan_id: str) -> OperationResult[List[ScheduleEntry]]:
        def query() -> List[ScheduleEntry]:
            loan = self.store.get_loan(loan_id)
            with self.store.lock_loan(loan.id):
                return self.loan_ledger.schedule_of(loan)

        return self._query(query)

    def portfolio_summary(self) -> OperationResult[PortfolioSummary]:
        """
        Outstanding, disbursed and collected totals over loans in the
        default currency, with per-status counts
        """
        def query() -> PortfolioSummary:
            zero = Money.zero(self.currency)
            outstanding = disbursed = collected = repayable = zero
            counts = {status.value: 0 for status in LoanStatus}
            today = self.clock.today()

            for loan_id in self.store.loan_ids():
                loan = self.store.get_loan(loan_id)
                if loan.currency != self.currency:
                    continue
                with self.store.lock_loan(loan_id):
                    status = loan.status_on(today)
                    counts[status.value] += 1
                    if status == LoanStatus.PENDING:
                        continue
                    outstanding = outstanding + loan.outstanding
                    disbursed = disbursed + loan.principal
                    collected = collected + loan.paid_amount
                    repayable = repayable + loan.total_repayable

            rate = Decimal('0.0')
            if repayable.is_positive():
                rate = (Decimal(collected.minor_units) * 100 / Decimal(repayable.minor_units)) \
                    .quantize(Decimal('0.1'), rounding=ROUND_HALF_UP)

            return PortfolioSummary(
                total_outstanding=outstanding,
                total_disbursed=disbursed,
                total_collected=collected,
                collection_rate=rate,
                loan_counts=counts
            )

        return self._query(query)

    # Internals

    def _execute(self, action: str, resource: str, operation: Callable[[], T]) -> OperationResult[T]:
        try:
            value = operation()
        except LedgerError as e:
            log_action(logger, "warning", f"{action} rejected: {e.message}",
                       action=action, resource=resource, extra={"error": e.code})
            return OperationResult.failure(e)
        log_action(logger, "info", f"{action} committed", action=action, resource=resource)
        return OperationResult.success(value)

    def _query(self, query: Callable[[], T]) -> OperationResult[T]:
        try:
            return OperationResult.success(query())
        except LedgerError as e:
            return OperationResult.failure(e)

    @contextmanager
    def _transaction(self, action: str, loan_ids: Iterable[str], account_ids: Iterable[str]):
        loan_ids, account_ids = list(loan_ids), list(account_ids)
        try:
            with self.store.atomic(loan_ids, account_ids):
                yield
        except Exception as e:
            code = e.code if isinstance(e, LedgerError) else type(e).__name__
            log_action(logger, "warning", f"{action} rolled back",
                       action=action, resource=",".join(loan_ids + account_ids),
                       extra={"error": code})
            self.audit_trail.log_event(
                AuditEventType.OPERATION_ROLLED_BACK, "operation", action,
                {"loans": loan_ids, "accounts": account_ids, "error": code}
            )
            raise

    def _audit_posting(self, account_id: str, txn: LedgerTransaction) -> None:
        self.audit_trail.log_event(
            AuditEventType.TRANSACTION_POSTED, "account", account_id,
            {
                "transaction_id": txn.id,
                "sequence": txn.sequence,
                "direction": txn.direction.value,
                "amount": txn.amount.to_string(),
                "running_balance_after": txn.running_balance_after.to_string(),
                "reference": txn.reference
            }
        )

    def _money_fields(self, value: MoneyInput) -> Dict[str, Any]:
        if isinstance(value, Money):
            return {"amount": value.amount, "currency": value.currency.code}
        return {"amount": value}

    @staticmethod
    def _coerce_enum(enum_type, value):
        if value is None or isinstance(value, enum_type):
            return value
        try:
            return enum_type(value)
        except ValueError:
            raise ValidationError(f"Unknown {enum_type.__name__} '{value}'")

    def _borrower_name(self, loan: Loan) -> Optional[str]:
        if self.borrowers is None:
            return None
        return self.borrowers.get_name(loan.borrower_id)

    def _borrower_label(self, loan: Loan) -> str:
        return self._borrower_name(loan) or loan.borrower_id

    def _loan_view(self, loan: Loan) -> LoanView:
        return LoanView(
            loan_id=loan.id,
            borrower_id=loan.borrower_id,
            borrower_name=self._borrower_name(loan),
            principal=loan.principal,
            rate=loan.rate,
            term_months=loan.term_months,
            total_repayable=loan.total_repayable,
            paid_amount=loan.paid_amount,
            outstanding=loan.outstanding,
            progress=loan.progress,
            status=self.loan_ledger.status_of(loan),
            disbursement_date=loan.disbursement_date,
            due_date=loan.due_date,
            next_payment_date=self.loan_ledger.next_payment_date_of(loan),
            funding_account_id=loan.funding_account_id,
            disbursed_at=loan.disbursed_at
        )

    def _account_view(self, account: BankAccount) -> AccountView:
        credits, debits = self.bank_ledger.totals(account)
        last_updated = account.transactions[-1].timestamp if account.transactions else account.opened_at
        return AccountView(
            account_id=account.id,
            name=account.name,
            bank_name=account.bank_name,
            account_number=account.account_number,
            opening_balance=account.opening_balance,
            current_balance=account.current_balance,
            transaction_count=len(account.transactions),
            total_credits=credits,
            total_debits=debits,
            last_updated=last_updated
        )
