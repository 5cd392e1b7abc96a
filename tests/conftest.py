import os

os.environ.setdefault("LEDGER_DATABASE_URL", "sqlite://")
os.environ.setdefault("LEDGER_BCRYPT_ROUNDS", "4")

from datetime import date  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402

from database import Base  # noqa: E402
from models import AccountType, TransactionType, User  # noqa: E402
from schemas import AccountIn, CategoryIn, TransactionIn  # noqa: E402
from security import hash_password  # noqa: E402
from services import AccountService, CategoryService, TransactionService  # noqa: E402


@pytest.fixture
def session():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        yield session
    engine.dispose()


def make_user(session: Session, email: str = "ana@example.com") -> User:
    user = User(name="Ana", email=email, password_hash=hash_password("secret1"))
    session.add(user)
    session.commit()
    return user


@pytest.fixture
def user(session):
    return make_user(session)


@pytest.fixture
def ledger(session, user):
    """An owner with one checking account and an income and expense category."""
    account = AccountService(session, user.id).create(
        AccountIn(name="Checking", type=AccountType.checking, balance_cents=150_000)
    )
    categories = CategoryService(session, user.id)
    salary = categories.create(CategoryIn(name="Salary", type=TransactionType.income))
    food = categories.create(CategoryIn(name="Food", type=TransactionType.expense))
    return {
        "user": user,
        "account": account,
        "income_category": salary,
        "expense_category": food,
    }


def expense(category_id: int, amount_cents: int, **kwargs) -> TransactionIn:
    fields = {
        "description": "Groceries",
        "amount_cents": amount_cents,
        "type": TransactionType.expense,
        "date": date(2025, 3, 10),
        "is_paid": True,
        "category_id": category_id,
    }
    fields.update(kwargs)
    return TransactionIn(**fields)


def income(category_id: int, amount_cents: int, **kwargs) -> TransactionIn:
    fields = {
        "description": "Salary",
        "amount_cents": amount_cents,
        "type": TransactionType.income,
        "date": date(2025, 3, 5),
        "is_paid": True,
        "category_id": category_id,
    }
    fields.update(kwargs)
    return TransactionIn(**fields)


def balance_of(session: Session, user_id: int, account_id: int) -> int:
    account = AccountService(session, user_id).get(account_id)
    session.refresh(account)
    return account.balance_cents


def transaction_count(session: Session, user_id: int) -> int:
    return TransactionService(session, user_id).list()["total"]
