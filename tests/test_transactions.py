from datetime import date

import pytest

from conftest import balance_of, expense, income, make_user, transaction_count
from errors import NotFound, ReferentialViolation, ValidationFailure
from models import TransactionType
from schemas import CategoryIn, CreditCardIn, TransactionFilters, TransactionPatch
from services import CategoryService, CreditCardService, TransactionService


def test_paid_expense_lifecycle_moves_and_restores_balance(session, ledger) -> None:
    user_id = ledger["user"].id
    account = ledger["account"]
    service = TransactionService(session, user_id)

    txn = service.create(
        expense(ledger["expense_category"].id, 20_000, account_id=account.id)
    )
    assert balance_of(session, user_id, account.id) == 130_000

    service.update(txn.id, TransactionPatch(amount_cents=5_000))
    assert balance_of(session, user_id, account.id) == 145_000

    service.delete(txn.id)
    assert balance_of(session, user_id, account.id) == 150_000
    assert transaction_count(session, user_id) == 0


def test_unpaid_transaction_leaves_balance_until_paid(session, ledger) -> None:
    user_id = ledger["user"].id
    account = ledger["account"]
    service = TransactionService(session, user_id)

    txn = service.create(
        expense(
            ledger["expense_category"].id,
            10_000,
            account_id=account.id,
            is_paid=False,
        )
    )
    assert balance_of(session, user_id, account.id) == 150_000

    service.update(txn.id, TransactionPatch(is_paid=True))
    assert balance_of(session, user_id, account.id) == 140_000

    service.update(txn.id, TransactionPatch(is_paid=False))
    assert balance_of(session, user_id, account.id) == 150_000


def test_credit_card_expense_never_touches_balances(session, ledger) -> None:
    user_id = ledger["user"].id
    card = CreditCardService(session, user_id).create(
        CreditCardIn(name="Visa", limit_cents=500_000, closing_day=5, due_day=15)
    )
    TransactionService(session, user_id).create(
        expense(ledger["expense_category"].id, 30_000, credit_card_id=card.id)
    )
    assert balance_of(session, user_id, ledger["account"].id) == 150_000


def test_moving_between_account_and_card_reverses_prior_effect(session, ledger) -> None:
    user_id = ledger["user"].id
    account = ledger["account"]
    card = CreditCardService(session, user_id).create(
        CreditCardIn(name="Visa", limit_cents=500_000, closing_day=5, due_day=15)
    )
    service = TransactionService(session, user_id)
    txn = service.create(
        expense(ledger["expense_category"].id, 10_000, account_id=account.id)
    )

    service.update(txn.id, TransactionPatch(account_id=None, credit_card_id=card.id))
    assert balance_of(session, user_id, account.id) == 150_000

    service.update(txn.id, TransactionPatch(account_id=account.id, credit_card_id=None))
    assert balance_of(session, user_id, account.id) == 140_000


def test_changing_type_flips_the_effect(session, ledger) -> None:
    user_id = ledger["user"].id
    account = ledger["account"]
    service = TransactionService(session, user_id)
    txn = service.create(
        expense(ledger["expense_category"].id, 10_000, account_id=account.id)
    )

    service.update(
        txn.id,
        TransactionPatch(
            type=TransactionType.income, category_id=ledger["income_category"].id
        ),
    )
    assert balance_of(session, user_id, account.id) == 160_000


def test_account_and_card_together_is_rejected_without_writes(session, ledger) -> None:
    user_id = ledger["user"].id
    account = ledger["account"]
    card = CreditCardService(session, user_id).create(
        CreditCardIn(name="Visa", limit_cents=500_000, closing_day=5, due_day=15)
    )

    with pytest.raises(ReferentialViolation):
        TransactionService(session, user_id).create(
            expense(
                ledger["expense_category"].id,
                10_000,
                account_id=account.id,
                credit_card_id=card.id,
            )
        )

    assert transaction_count(session, user_id) == 0
    assert balance_of(session, user_id, account.id) == 150_000


def test_category_type_must_match(session, ledger) -> None:
    with pytest.raises(ReferentialViolation, match="Category type"):
        TransactionService(session, ledger["user"].id).create(
            income(ledger["expense_category"].id, 1_000, account_id=ledger["account"].id)
        )


def test_changing_only_the_type_checks_the_stored_category(session, ledger) -> None:
    user_id = ledger["user"].id
    service = TransactionService(session, user_id)
    txn = service.create(
        expense(ledger["expense_category"].id, 1_000, account_id=ledger["account"].id)
    )

    with pytest.raises(ReferentialViolation, match="Category type"):
        service.update(txn.id, TransactionPatch(type=TransactionType.income))
    assert balance_of(session, user_id, ledger["account"].id) == 149_000


def test_income_requires_an_account(session, ledger) -> None:
    with pytest.raises(ReferentialViolation, match="require an account"):
        TransactionService(session, ledger["user"].id).create(
            income(ledger["income_category"].id, 1_000)
        )


def test_references_of_other_users_are_rejected(session, ledger) -> None:
    other = make_user(session, "bob@example.com")
    foreign = CategoryService(session, other.id).create(
        CategoryIn(name="Food", type=TransactionType.expense)
    )

    with pytest.raises(ReferentialViolation, match="Category not found"):
        TransactionService(session, ledger["user"].id).create(
            expense(foreign.id, 1_000, account_id=ledger["account"].id)
        )


def test_transactions_of_other_users_are_not_found(session, ledger) -> None:
    txn = TransactionService(session, ledger["user"].id).create(
        expense(ledger["expense_category"].id, 1_000, account_id=ledger["account"].id)
    )
    other = make_user(session, "bob@example.com")

    with pytest.raises(NotFound):
        TransactionService(session, other.id).get(txn.id)
    with pytest.raises(NotFound):
        TransactionService(session, other.id).delete(txn.id)


def test_list_paginates_and_sums_the_whole_filtered_set(session, ledger) -> None:
    user_id = ledger["user"].id
    service = TransactionService(session, user_id)
    category_id = ledger["expense_category"].id
    account_id = ledger["account"].id
    for day in range(1, 6):
        service.create(
            expense(
                category_id,
                1_000 * day,
                account_id=account_id,
                date=date(2025, 3, day),
                is_paid=day % 2 == 1,
            )
        )

    result = service.list(TransactionFilters(page=2, limit=2))

    assert [t.amount_cents for t in result["transactions"]] == [3_000, 2_000]
    assert result["total"] == 5
    assert result["total_amount_cents"] == 15_000
    assert result["total_paid_cents"] == 9_000
    assert result["total_pending_cents"] == 6_000
    assert result["pagination"] == {
        "page": 2,
        "limit": 2,
        "total_pages": 3,
        "has_next_page": True,
        "has_prev_page": True,
    }


def test_list_filters_by_date_and_payment(session, ledger) -> None:
    service = TransactionService(session, ledger["user"].id)
    category_id = ledger["expense_category"].id
    account_id = ledger["account"].id
    service.create(
        expense(category_id, 1_000, account_id=account_id, date=date(2025, 2, 1))
    )
    service.create(
        expense(
            category_id,
            2_000,
            account_id=account_id,
            date=date(2025, 3, 1),
            is_paid=False,
        )
    )

    result = service.list(
        TransactionFilters(start_date=date(2025, 3, 1), is_paid=False)
    )

    assert [t.amount_cents for t in result["transactions"]] == [2_000]


def test_stats_groups_by_category(session, ledger) -> None:
    service = TransactionService(session, ledger["user"].id)
    account_id = ledger["account"].id
    service.create(income(ledger["income_category"].id, 300_000, account_id=account_id))
    service.create(expense(ledger["expense_category"].id, 20_000, account_id=account_id))
    service.create(
        expense(
            ledger["expense_category"].id,
            5_000,
            account_id=account_id,
            is_paid=False,
        )
    )

    stats = service.stats(today=date(2025, 3, 20))

    assert stats["total_incomes_cents"] == 300_000
    assert stats["total_expenses_cents"] == 25_000
    assert stats["total_pending_cents"] == 5_000
    assert stats["current_month_expenses_cents"] == 25_000
    assert stats["balance_cents"] == 275_000
    assert stats["top_categories"][0]["category_name"] == "Salary"
    assert stats["top_categories"][1] == {
        "category_id": ledger["expense_category"].id,
        "category_name": "Food",
        "total_cents": 25_000,
        "count": 2,
    }


def test_paid_income_lifecycle_moves_and_restores_balance(session, ledger) -> None:
    user_id = ledger["user"].id
    account = ledger["account"]
    service = TransactionService(session, user_id)

    txn = service.create(
        income(ledger["income_category"].id, 10_000, account_id=account.id)
    )
    assert balance_of(session, user_id, account.id) == 160_000

    service.delete(txn.id)
    assert balance_of(session, user_id, account.id) == 150_000


def test_blank_description_is_rejected_without_writes(session, ledger) -> None:
    user_id = ledger["user"].id
    account = ledger["account"]
    service = TransactionService(session, user_id)
    txn = service.create(
        expense(ledger["expense_category"].id, 20_000, account_id=account.id)
    )

    with pytest.raises(ValidationFailure, match="Description cannot be empty"):
        service.update(txn.id, TransactionPatch(description="   ", amount_cents=1))

    assert balance_of(session, user_id, account.id) == 130_000
    assert service.get(txn.id).description == "Groceries"
