import datetime as dt
from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from models import AccountType, TransactionType

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
MAX_AMOUNT_CENTS = 99_999_999_999


def _check_password(value: str) -> str:
    if not any(ch.isalpha() for ch in value):
        raise ValueError("Password must contain at least one letter")
    if not any(ch.isdigit() for ch in value):
        raise ValueError("Password must contain at least one number")
    return value


class RegisterIn(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    email: str = Field(..., max_length=255, pattern=EMAIL_PATTERN)
    password: str = Field(..., min_length=6, max_length=100)

    @field_validator("password")
    @classmethod
    def password_strength(cls, value: str) -> str:
        return _check_password(value)


class LoginIn(BaseModel):
    email: str = Field(..., max_length=255)
    password: str = Field(..., min_length=1)


class RefreshIn(BaseModel):
    refresh_token: str = Field(..., min_length=1)


class ProfilePatch(BaseModel):
    name: Optional[str] = Field(default=None, min_length=2, max_length=100)
    email: Optional[str] = Field(default=None, max_length=255, pattern=EMAIL_PATTERN)


class PasswordChangeIn(BaseModel):
    current_password: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=6, max_length=100)
    confirm_password: str

    @field_validator("new_password")
    @classmethod
    def new_password_strength(cls, value: str) -> str:
        return _check_password(value)

    @model_validator(mode="after")
    def confirmation_matches(self) -> "PasswordChangeIn":
        if self.new_password != self.confirm_password:
            raise ValueError("Password confirmation does not match")
        return self


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: AccountType
    balance_cents: int = 0


class AccountPatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    type: Optional[AccountType] = None


class AccountFilters(BaseModel):
    type: Optional[AccountType] = None
    min_balance_cents: Optional[int] = None
    max_balance_cents: Optional[int] = None


class TransferIn(BaseModel):
    from_account_id: int
    to_account_id: int
    amount_cents: int = Field(..., gt=0, le=MAX_AMOUNT_CENTS)
    description: Optional[str] = Field(default=None, max_length=255)


class CreditCardIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    limit_cents: int = Field(..., gt=0)
    closing_day: int = Field(..., ge=1, le=31)
    due_day: int = Field(..., ge=1, le=31)


class CreditCardPatch(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    limit_cents: Optional[int] = Field(default=None, gt=0)
    closing_day: Optional[int] = Field(default=None, ge=1, le=31)
    due_day: Optional[int] = Field(default=None, ge=1, le=31)


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: TransactionType
    description: Optional[str] = Field(default=None, max_length=255)
    color: Optional[str] = Field(default=None, max_length=7)
    icon: Optional[str] = Field(default=None, max_length=50)


class CategoryPatch(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    type: Optional[TransactionType] = None
    description: Optional[str] = Field(default=None, max_length=255)
    color: Optional[str] = Field(default=None, max_length=7)
    icon: Optional[str] = Field(default=None, max_length=50)
    is_active: Optional[bool] = None


class CategoryFilters(BaseModel):
    type: Optional[TransactionType] = None
    is_active: Optional[bool] = None
    search: Optional[str] = None


class TransactionIn(BaseModel):
    description: str = Field(..., min_length=1, max_length=255)
    amount_cents: int = Field(..., gt=0, le=MAX_AMOUNT_CENTS)
    type: TransactionType
    date: date
    is_paid: bool = False
    category_id: int
    account_id: Optional[int] = None
    credit_card_id: Optional[int] = None
    goal_id: Optional[int] = None


class TransactionPatch(BaseModel):
    """Partial update; only fields present in the request are applied.

    ``account_id``, ``credit_card_id`` and ``goal_id`` may be sent as null to
    unlink them.
    """

    description: Optional[str] = Field(default=None, min_length=1, max_length=255)
    amount_cents: Optional[int] = Field(default=None, gt=0, le=MAX_AMOUNT_CENTS)
    type: Optional[TransactionType] = None
    date: Optional[dt.date] = None
    is_paid: Optional[bool] = None
    category_id: Optional[int] = None
    account_id: Optional[int] = None
    credit_card_id: Optional[int] = None
    goal_id: Optional[int] = None

    @model_validator(mode="after")
    def required_fields_not_null(self) -> "TransactionPatch":
        required = (
            "description",
            "amount_cents",
            "type",
            "date",
            "is_paid",
            "category_id",
        )
        for name in required:
            if name in self.model_fields_set and getattr(self, name) is None:
                raise ValueError(f"{name} cannot be null")
        return self


class TransactionFilters(BaseModel):
    type: Optional[TransactionType] = None
    category_id: Optional[int] = None
    account_id: Optional[int] = None
    credit_card_id: Optional[int] = None
    goal_id: Optional[int] = None
    is_paid: Optional[bool] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    min_amount_cents: Optional[int] = Field(default=None, gt=0)
    max_amount_cents: Optional[int] = Field(default=None, gt=0)
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1, le=100)

    @model_validator(mode="after")
    def ranges_are_ordered(self) -> "TransactionFilters":
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise ValueError("End date must be after start date")
        if (
            self.min_amount_cents is not None
            and self.max_amount_cents is not None
            and self.max_amount_cents < self.min_amount_cents
        ):
            raise ValueError("Maximum amount must be greater than the minimum")
        return self


class BudgetIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    amount_cents: int = Field(..., ge=0)
    month: int = Field(..., ge=1, le=12)
    year: int = Field(..., ge=1970, le=3000)


class BudgetPatch(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    amount_cents: Optional[int] = Field(default=None, ge=0)


class GoalIn(BaseModel):
    title: str = Field(..., min_length=1, max_length=120)
    description: Optional[str] = None
    target_amount_cents: int = Field(..., gt=0)
    target_date: date


class GoalPatch(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=120)
    description: Optional[str] = None
    target_amount_cents: Optional[int] = Field(default=None, gt=0)
    target_date: Optional[date] = None


class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    email: str
    created_at: datetime
    updated_at: datetime


class AccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    type: AccountType
    balance_cents: int
    created_at: datetime
    updated_at: datetime


class CreditCardOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    limit_cents: int
    closing_day: int
    due_day: int
    created_at: datetime
    updated_at: datetime


class CategoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: Optional[str]
    type: TransactionType
    color: Optional[str]
    icon: Optional[str]
    is_active: bool


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    description: str
    amount_cents: int
    type: TransactionType
    date: date
    is_paid: bool
    category_id: int
    account_id: Optional[int]
    credit_card_id: Optional[int]
    goal_id: Optional[int]
    category: Optional[CategoryOut] = None
    created_at: datetime
    updated_at: datetime


class BudgetOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    amount_cents: int
    month: int
    year: int
    spent_cents: int


class GoalOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    description: Optional[str]
    target_amount_cents: int
    current_amount_cents: int
    target_date: date
