"""
Entity Store Module

In-memory arena of loans, payments and bank accounts keyed by id, with
per-entity locks and an atomic scope that restores touched entities when a
composite operation fails part-way.
"""

import copy
import threading
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import replace
from typing import Dict, Iterable, Iterator, List

from .errors import DuplicateError, NotFoundError
from .ledger import BankAccount
from .loans import Loan, PaymentRecord
from .logging_config import get_logger


logger = get_logger("loan_ledger.store")


class KeyedLocks:
    """One re-entrant lock per key, created on first use"""

    def __init__(self):
        self._locks: Dict[str, threading.RLock] = {}
        self._registry_lock = threading.Lock()

    def get(self, key: str) -> threading.RLock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: str):
        lock = self.get(key)
        with lock:
            yield


class EngineStore:
    """
    Arena of engine entities keyed by id

    Callers mutate an entity only while holding its lock. Composite
    operations take the loan lock before the account lock.
    """

    def __init__(self, receipt_prefix: str = "RCP"):
        self.receipt_prefix = receipt_prefix
        self._loans: Dict[str, Loan] = {}
        self._payments: Dict[str, List[PaymentRecord]] = defaultdict(list)
        self._accounts: Dict[str, BankAccount] = {}
        self._receipt_counters: Dict[int, int] = defaultdict(int)

        self._registry_lock = threading.Lock()
        self._receipt_lock = threading.Lock()
        self.loan_locks = KeyedLocks()
        self.account_locks = KeyedLocks()

    # Loans

    def add_loan(self, loan: Loan) -> Loan:
        with self._registry_lock:
            if loan.id in self._loans:
                raise DuplicateError(f"Loan {loan.id} already exists")
            self._loans[loan.id] = loan
        return loan

    def get_loan(self, loan_id: str) -> Loan:
        loan = self._loans.get(loan_id)
        if loan is None:
            raise NotFoundError(f"Loan {loan_id} not found")
        return loan

    def has_loan(self, loan_id: str) -> bool:
        return loan_id in self._loans

    def loan_ids(self) -> List[str]:
        with self._registry_lock:
            return list(self._loans)

    # Payments

    def add_payment(self, record: PaymentRecord) -> PaymentRecord:
        """Persist a committed payment, stamping the next receipt number for its year"""
        year = record.timestamp.year
        with self._receipt_lock:
            self._receipt_counters[year] += 1
            receipt = f"{self.receipt_prefix}-{year}-{self._receipt_counters[year]:03d}"
        stored = replace(record, receipt_number=receipt)
        self._payments[record.loan_id].append(stored)
        return stored

    def list_payments(self, loan_id: str) -> List[PaymentRecord]:
        self.get_loan(loan_id)
        return list(self._payments.get(loan_id, []))

    # Accounts

    def add_account(self, account: BankAccount) -> BankAccount:
        with self._registry_lock:
            if account.id in self._accounts:
                raise DuplicateError(f"Account {account.id} already exists")
            self._accounts[account.id] = account
        return account

    def get_account(self, account_id: str) -> BankAccount:
        account = self._accounts.get(account_id)
        if account is None:
            raise NotFoundError(f"Account {account_id} not found")
        return account

    def has_account(self, account_id: str) -> bool:
        return account_id in self._accounts

    def account_ids(self) -> List[str]:
        with self._registry_lock:
            return list(self._accounts)

    # Locking. Entities are never removed, so locks exist only for known ids.

    @contextmanager
    def lock_loan(self, loan_id: str):
        self.get_loan(loan_id)
        with self.loan_locks.hold(loan_id):
            yield

    @contextmanager
    def lock_account(self, account_id: str):
        self.get_account(account_id)
        with self.account_locks.hold(account_id):
            yield

    @contextmanager
    def lock_pair(self, loan_id: str, account_id: str):
        """Loan first, then account: the global order for composite operations"""
        self.get_loan(loan_id)
        self.get_account(account_id)
        with self.loan_locks.hold(loan_id):
            with self.account_locks.hold(account_id):
                yield

    # Atomic scope

    @contextmanager
    def atomic(self, loan_ids: Iterable[str] = (), account_ids: Iterable[str] = ()) -> Iterator[None]:
        """
        Restore the named loans and accounts if the body raises

        Entities must already be locked by the caller. Loans are restored
        field by field; accounts have uncommitted log entries dropped and
        their balance put back.
        """
        loan_saves = {lid: copy.copy(self.get_loan(lid)) for lid in loan_ids}
        account_saves = {}
        for account_id in account_ids:
            account = self.get_account(account_id)
            account_saves[account_id] = (len(account.transactions), account.current_balance)
        payment_saves = {lid: len(self._payments.get(lid, [])) for lid in loan_saves}

        try:
            yield
        except Exception:
            for loan_id, saved in loan_saves.items():
                self._loans[loan_id].__dict__.update(saved.__dict__)
            for account_id, (length, balance) in account_saves.items():
                restored = self._accounts[account_id]
                del restored.transactions[length:]
                restored.current_balance = balance
            for loan_id, length in payment_saves.items():
                if loan_id in self._payments:
                    del self._payments[loan_id][length:]
            logger.debug("Rolled back loans=%s accounts=%s",
                         list(loan_saves), list(account_saves))
            raise
