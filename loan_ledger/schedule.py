"""
Loan Schedule Module

Pure repayment arithmetic: flat simple-interest totals, outstanding balance,
repayment progress, calendar month stepping and loan status derivation.
Nothing here touches mutable state.
"""

from decimal import Decimal, ROUND_HALF_UP
from datetime import date
from dataclasses import dataclass
from typing import List, Optional
from enum import Enum
import calendar

from .currency import Money, AmountLike
from .errors import ValidationError


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "pending"        # Created, not yet disbursed
    ACTIVE = "active"          # Disbursed, balance outstanding, within term
    OVERDUE = "overdue"        # Disbursed, balance outstanding, past due date
    COMPLETED = "completed"    # Fully repaid (terminal)


@dataclass(frozen=True)
class ScheduleEntry:
    """Single instalment in an informational repayment plan"""
    instalment_number: int
    due_date: date
    amount: Money
    remaining_after: Money


def compute_total_repayable(principal: Money, rate: AmountLike, term_months: int) -> Money:
    """
    Total amount the borrower repays: principal + principal * rate / 100

    Flat simple interest, charged once on the principal. term_months only
    drives the due date and payment cadence, never the interest.
    """
    if term_months < 1:
        raise ValidationError(f"Term must be at least 1 month, got {term_months}")
    return principal + principal.percentage_of(rate)


def outstanding_balance(total_repayable: Money, paid_amount: Money) -> Money:
    """Remaining balance, clamped at zero"""
    remaining = total_repayable - paid_amount
    if remaining.is_negative():
        return Money.zero(total_repayable.currency)
    return remaining


def progress_percent(paid_amount: Money, total_repayable: Money) -> int:
    """Share of the total repaid, as an integer percentage 0..100"""
    if not total_repayable.is_positive():
        return 100
    ratio = Decimal(paid_amount.minor_units) * 100 / Decimal(total_repayable.minor_units)
    percent = int(ratio.quantize(Decimal('1'), rounding=ROUND_HALF_UP))
    return max(0, min(100, percent))


def add_months(day: date, months: int) -> date:
    """Step a date by whole calendar months, clamping to the month's last day"""
    month_index = day.month - 1 + months
    year = day.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day.day, last_day))


def compute_due_date(disbursement_date: date, term_months: int) -> date:
    return add_months(disbursement_date, term_months)


def next_payment_date(
    disbursement_date: date,
    last_payment_date: Optional[date] = None
) -> date:
    """One month after the later of disbursement and the last payment"""
    anchor = disbursement_date
    if last_payment_date and last_payment_date > anchor:
        anchor = last_payment_date
    return add_months(anchor, 1)


def derive_status(
    disbursed: bool,
    outstanding: Money,
    due_date: date,
    today: date
) -> LoanStatus:
    """
    Loan status as a pure function of disbursement, balance and dates

    Status is never stored; every query and every payment recomputes it.
    """
    if not disbursed:
        return LoanStatus.PENDING
    if outstanding.is_zero():
        return LoanStatus.COMPLETED
    if today > due_date:
        return LoanStatus.OVERDUE
    return LoanStatus.ACTIVE


def build_schedule(
    total_repayable: Money,
    term_months: int,
    disbursement_date: date
) -> List[ScheduleEntry]:
    """
    Even monthly instalment plan over the term

    The rounding remainder lands on the final instalment so the plan sums
    to total_repayable exactly. Informational only; status ignores it.
    """
    if term_months < 1:
        raise ValidationError(f"Term must be at least 1 month, got {term_months}")

    currency = total_repayable.currency
    base, remainder = divmod(total_repayable.minor_units, term_months)
    remaining = total_repayable
    entries = []

    for number in range(1, term_months + 1):
        minor = base + remainder if number == term_months else base
        instalment = Money(minor, currency)
        remaining = remaining - instalment
        entries.append(ScheduleEntry(
            instalment_number=number,
            due_date=add_months(disbursement_date, number),
            amount=instalment,
            remaining_after=remaining
        ))

    return entries
