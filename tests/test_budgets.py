from datetime import date

import pytest

from conftest import expense
from errors import Conflict, NotFound, ValidationFailure
from schemas import BudgetIn, BudgetPatch
from services import BudgetService, TransactionService


def test_refresh_spent_sums_paid_expenses_in_month(session, ledger) -> None:
    user_id = ledger["user"].id
    budgets = BudgetService(session, user_id)
    budgets.create(BudgetIn(name="March", amount_cents=80_000, month=3, year=2025))
    service = TransactionService(session, user_id)
    category_id = ledger["expense_category"].id
    account_id = ledger["account"].id
    service.create(
        expense(category_id, 12_000, account_id=account_id, date=date(2025, 3, 1))
    )
    service.create(
        expense(category_id, 8_000, account_id=account_id, date=date(2025, 3, 31))
    )
    service.create(
        expense(
            category_id,
            5_000,
            account_id=account_id,
            date=date(2025, 3, 15),
            is_paid=False,
        )
    )
    service.create(
        expense(category_id, 7_000, account_id=account_id, date=date(2025, 4, 1))
    )

    assert budgets.refresh_spent(3, 2025) == 20_000
    assert budgets.get_for_month(3, 2025).spent_cents == 20_000


def test_refresh_without_a_budget_still_reports_the_sum(session, user) -> None:
    assert BudgetService(session, user.id).refresh_spent(1, 2025) == 0


def test_refresh_rejects_invalid_month(session, user) -> None:
    with pytest.raises(ValidationFailure):
        BudgetService(session, user.id).refresh_spent(13, 2025)


def test_one_budget_per_month(session, user) -> None:
    service = BudgetService(session, user.id)
    service.create(BudgetIn(name="March", amount_cents=1_000, month=3, year=2025))

    with pytest.raises(Conflict):
        service.create(BudgetIn(name="Again", amount_cents=1_000, month=3, year=2025))

    service.create(BudgetIn(name="Next", amount_cents=1_000, month=3, year=2026))
    assert [(b.year, b.month) for b in service.list()] == [(2026, 3), (2025, 3)]


def test_update_and_delete(session, user) -> None:
    service = BudgetService(session, user.id)
    budget = service.create(
        BudgetIn(name="March", amount_cents=1_000, month=3, year=2025)
    )

    updated = service.update(budget.id, BudgetPatch(amount_cents=2_500))
    assert updated.amount_cents == 2_500
    assert updated.name == "March"

    service.delete(budget.id)
    with pytest.raises(NotFound):
        service.get_for_month(3, 2025)
