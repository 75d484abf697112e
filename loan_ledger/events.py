"""
Pydantic schemas for caller-submitted events

Every mutating facade operation parses its arguments through one of these
models first, so malformed input is rejected before any state changes.
"""

from decimal import Decimal
from datetime import date
from typing import Optional, Type, TypeVar
from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from .currency import Money, Currency
from .errors import ValidationError
from .ledger import Direction, TransactionCategory
from .loans import PaymentMethod


E = TypeVar("E", bound=BaseModel)


def _reject_float(value):
    if isinstance(value, float):
        raise ValueError("monetary values must be given as str, int or Decimal, not float")
    return value


class MoneyFields(BaseModel):
    amount: Decimal = Field(..., description="Major-unit amount, e.g. '15000.00'")
    currency: Optional[str] = Field(None, description="Currency code; engine default if omitted")

    @field_validator("amount", mode="before")
    @classmethod
    def reject_float_amount(cls, value):
        return _reject_float(value)

    def to_money(self, default: Currency) -> Money:
        currency = Currency[self.currency.upper()] if self.currency else default
        return Money.of(self.amount, currency)

    @field_validator("currency")
    @classmethod
    def known_currency(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and value.upper() not in Currency.__members__:
            raise ValueError(f"unsupported currency {value}")
        return value


class NewLoan(MoneyFields):
    borrower_id: str = Field(..., min_length=1)
    amount: Decimal = Field(..., gt=0, description="Principal")
    rate: Decimal = Field(..., gt=0, description="Flat interest rate in percent")
    term_months: int = Field(..., ge=1)
    funding_account_id: str = Field(..., min_length=1)
    disbursement_date: Optional[date] = None
    loan_id: Optional[str] = None

    @field_validator("rate", mode="before")
    @classmethod
    def reject_float_rate(cls, value):
        return _reject_float(value)


class Disbursement(BaseModel):
    loan_id: str = Field(..., min_length=1)
    funding_account_id: Optional[str] = None


class PaymentReceived(MoneyFields):
    loan_id: str = Field(..., min_length=1)
    amount: Decimal = Field(..., gt=0)
    destination_account_id: str = Field(..., min_length=1)
    method: PaymentMethod
    reference: Optional[str] = Field(None, min_length=3, max_length=20)
    notes: Optional[str] = Field(None, max_length=200)


class OpenAccount(MoneyFields):
    account_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, max_length=100)
    amount: Decimal = Field(..., ge=0, description="Opening balance")
    bank_name: str = ""
    account_number: str = ""


class ManualTransaction(MoneyFields):
    account_id: str = Field(..., min_length=1)
    direction: Direction
    amount: Decimal = Field(..., gt=0)
    description: str = Field(..., min_length=3, max_length=100)
    reference: str = Field(..., min_length=3, max_length=20)
    related_loan_id: Optional[str] = None
    category: Optional[TransactionCategory] = None


class Reversal(BaseModel):
    account_id: str = Field(..., min_length=1)
    transaction_id: str = Field(..., min_length=1)
    reason: str = Field(..., min_length=3, max_length=80)


def parse_event(model: Type[E], **data) -> E:
    """
    Validate raw arguments into an event model

    Raises:
        ValidationError: With every field problem joined into one message
    """
    try:
        return model(**data)
    except PydanticValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in err['loc']) or model.__name__}: {err['msg']}"
            for err in e.errors()
        )
        raise ValidationError(f"Invalid {model.__name__}: {problems}") from e
