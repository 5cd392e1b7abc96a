from __future__ import annotations

import logging
import math
from datetime import date, datetime
from typing import Any, Iterable, Optional

from sqlalchemy import case, func, or_, select, update
from sqlalchemy.orm import Session, joinedload

from database import atomic
from errors import (
    Conflict,
    InsufficientFunds,
    NotFound,
    ReferentialViolation,
    Unauthenticated,
    ValidationFailure,
)
from ledger import (
    LEDGER_FIELDS,
    LedgerChange,
    LedgerState,
    average_cents,
    goal_progress,
    percent_change,
    percentage,
)
from models import (
    Account,
    AccountType,
    Budget,
    Category,
    CreditCard,
    Goal,
    Transaction,
    TransactionType,
    User,
)
from periods import Period, current_month, month_period, previous_month, resolve_range
from schemas import (
    AccountFilters,
    AccountIn,
    AccountPatch,
    BudgetIn,
    BudgetPatch,
    CategoryFilters,
    CategoryIn,
    CategoryPatch,
    CreditCardIn,
    CreditCardPatch,
    GoalIn,
    GoalPatch,
    LoginIn,
    PasswordChangeIn,
    ProfilePatch,
    RefreshIn,
    RegisterIn,
    TransactionFilters,
    TransactionIn,
    TransactionPatch,
    TransferIn,
)
from security import (
    REFRESH,
    hash_password,
    issue_token,
    issue_tokens,
    read_token,
    verify_password,
)

logger = logging.getLogger(__name__)

TOP_CATEGORY_LIMIT = 5

DEFAULT_CATEGORIES: list[dict[str, str]] = [
    {"name": "Salary", "type": "income", "color": "#4CAF50", "icon": "Work"},
    {"name": "Freelance", "type": "income", "color": "#2196F3", "icon": "Laptop"},
    {"name": "Investments", "type": "income", "color": "#FF9800", "icon": "TrendingUp"},
    {"name": "Sales", "type": "income", "color": "#9C27B0", "icon": "Store"},
    {"name": "Other", "type": "income", "color": "#607D8B", "icon": "AttachMoney"},
    {"name": "Food", "type": "expense", "color": "#F44336", "icon": "Restaurant"},
    {"name": "Transport", "type": "expense", "color": "#3F51B5", "icon": "DirectionsCar"},
    {"name": "Housing", "type": "expense", "color": "#795548", "icon": "Home"},
    {"name": "Health", "type": "expense", "color": "#E91E63", "icon": "LocalHospital"},
    {"name": "Education", "type": "expense", "color": "#009688", "icon": "School"},
    {"name": "Leisure", "type": "expense", "color": "#FFEB3B", "icon": "SportsEsports"},
    {"name": "Shopping", "type": "expense", "color": "#FF5722", "icon": "ShoppingCart"},
    {"name": "Services", "type": "expense", "color": "#673AB7", "icon": "Build"},
]


def clean_text(value: str, field: str) -> str:
    cleaned = value.strip()
    if not cleaned:
        raise ValidationFailure(f"{field} cannot be empty")
    return cleaned


def apply_balance_effect(
    session: Session, user_id: int, state: LedgerState, sign: int
) -> int:
    """Move the linked account balance by the state's effect.

    ``sign`` is +1 to apply and -1 to reverse. Unpaid and credit-card-only
    states leave every balance untouched.
    """
    delta = state.delta(sign)
    if not delta:
        return 0
    result = session.execute(
        update(Account)
        .where(Account.user_id == user_id, Account.id == state.account_id)
        .values(balance_cents=Account.balance_cents + delta)
    )
    if result.rowcount != 1:
        raise ReferentialViolation("Account not found")
    logger.debug(
        f"balance_effect: user_id={user_id} account_id={state.account_id} "
        f"delta_cents={delta}"
    )
    return delta


def recompute_goal_progress(session: Session, user_id: int, goal_id: int) -> int:
    """Overwrite the goal's progress with the sum of its paid income."""
    session.flush()
    total = int(
        session.execute(
            select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
                Transaction.user_id == user_id,
                Transaction.goal_id == goal_id,
                Transaction.type == TransactionType.income,
                Transaction.is_paid.is_(True),
            )
        ).scalar_one()
        or 0
    )
    session.execute(
        update(Goal)
        .where(Goal.user_id == user_id, Goal.id == goal_id)
        .values(current_amount_cents=total)
    )
    return total


class AuthService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _by_email(self, email: str) -> Optional[User]:
        return self.session.scalar(select(User).where(User.email == email))

    def _user(self, user_id: int) -> User:
        user = self.session.get(User, user_id)
        if not user:
            raise NotFound("User not found")
        return user

    def register(self, data: RegisterIn) -> dict[str, object]:
        email = data.email.strip().lower()
        if self._by_email(email):
            raise Conflict("Email already registered")
        user = User(
            name=clean_text(data.name, "Name"),
            email=email,
            password_hash=hash_password(data.password),
        )
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        logger.info(f"user_registered: user_id={user.id}")
        return {"user": user, **issue_tokens(user.id, user.email)}

    def login(self, data: LoginIn) -> dict[str, object]:
        user = self._by_email(data.email.strip().lower())
        if not user or not verify_password(data.password, user.password_hash):
            raise Unauthenticated("Invalid credentials")
        return {"user": user, **issue_tokens(user.id, user.email)}

    def refresh(self, data: RefreshIn) -> dict[str, str]:
        identity = read_token(data.refresh_token, REFRESH)
        user = self.session.get(User, identity.id)
        if not user:
            raise Unauthenticated("User not found")
        return {"token": issue_token(user.id, user.email)}

    def profile(self, user_id: int) -> User:
        return self._user(user_id)

    def update_profile(self, user_id: int, data: ProfilePatch) -> User:
        user = self._user(user_id)
        if data.email is not None:
            email = data.email.strip().lower()
            if email != user.email:
                if self._by_email(email):
                    raise Conflict("Email already in use")
                user.email = email
        if data.name is not None:
            user.name = clean_text(data.name, "Name")
        self.session.commit()
        self.session.refresh(user)
        return user

    def change_password(self, user_id: int, data: PasswordChangeIn) -> None:
        user = self._user(user_id)
        if not verify_password(data.current_password, user.password_hash):
            raise ValidationFailure("Current password is incorrect")
        if verify_password(data.new_password, user.password_hash):
            raise ValidationFailure("New password must differ from the current one")
        user.password_hash = hash_password(data.new_password)
        self.session.commit()


class AccountService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def get(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id)
        if not account or account.user_id != self.user_id:
            raise NotFound("Account not found")
        return account

    def _name_taken(self, name: str, exclude_id: Optional[int] = None) -> bool:
        stmt = select(Account.id).where(
            Account.user_id == self.user_id,
            func.lower(Account.name) == name.lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(Account.id != exclude_id)
        return self.session.scalar(stmt) is not None

    def list(self, filters: Optional[AccountFilters] = None) -> dict[str, object]:
        filters = filters or AccountFilters()
        stmt = (
            select(Account)
            .where(Account.user_id == self.user_id)
            .order_by(Account.created_at.desc(), Account.id.desc())
        )
        if filters.type:
            stmt = stmt.where(Account.type == filters.type)
        if filters.min_balance_cents is not None:
            stmt = stmt.where(Account.balance_cents >= filters.min_balance_cents)
        if filters.max_balance_cents is not None:
            stmt = stmt.where(Account.balance_cents <= filters.max_balance_cents)
        accounts = self.session.scalars(stmt).all()

        balance_by_type = {t.value: 0 for t in AccountType}
        for account in accounts:
            balance_by_type[account.type.value] += account.balance_cents
        return {
            "accounts": accounts,
            "total_balance_cents": sum(a.balance_cents for a in accounts),
            "balance_by_type": balance_by_type,
        }

    def create(self, data: AccountIn) -> Account:
        name = clean_text(data.name, "Name")
        if self._name_taken(name):
            raise Conflict("An account with this name already exists")
        account = Account(
            user_id=self.user_id,
            name=name,
            type=data.type,
            balance_cents=data.balance_cents,
        )
        self.session.add(account)
        self.session.commit()
        self.session.refresh(account)
        return account

    def update(self, account_id: int, data: AccountPatch) -> Account:
        account = self.get(account_id)
        if data.name is not None:
            name = clean_text(data.name, "Name")
            if name != account.name and self._name_taken(name, exclude_id=account.id):
                raise Conflict("An account with this name already exists")
            account.name = name
        if data.type is not None:
            account.type = data.type
        self.session.commit()
        self.session.refresh(account)
        return account

    def delete(self, account_id: int) -> None:
        account = self.get(account_id)
        in_use = self.session.execute(
            select(func.count(Transaction.id)).where(
                Transaction.account_id == account.id
            )
        ).scalar_one()
        if in_use:
            raise ReferentialViolation("Cannot delete an account that has transactions")
        self.session.delete(account)
        self.session.commit()

    def transfer(self, data: TransferIn) -> dict[str, object]:
        if data.from_account_id == data.to_account_id:
            raise ValidationFailure("Source and destination accounts must differ")
        source = self.get(data.from_account_id)
        destination = self.get(data.to_account_id)
        amount = data.amount_cents
        if source.balance_cents < amount:
            raise InsufficientFunds("Insufficient balance in the source account")

        # TODO: record paired ledger transactions once a transfer category exists.
        with atomic(self.session):
            debited = self.session.execute(
                update(Account)
                .where(
                    Account.user_id == self.user_id,
                    Account.id == source.id,
                    Account.balance_cents >= amount,
                )
                .values(balance_cents=Account.balance_cents - amount)
            )
            if debited.rowcount != 1:
                raise InsufficientFunds("Insufficient balance in the source account")
            self.session.execute(
                update(Account)
                .where(Account.user_id == self.user_id, Account.id == destination.id)
                .values(balance_cents=Account.balance_cents + amount)
            )

        self.session.refresh(source)
        self.session.refresh(destination)
        logger.info(
            f"transfer: user_id={self.user_id} from_account_id={source.id} "
            f"to_account_id={destination.id} amount_cents={amount}"
        )
        return {
            "from_account": source,
            "to_account": destination,
            "amount_cents": amount,
            "description": data.description
            or f"Transfer from {source.name} to {destination.name}",
        }

    def stats(self) -> dict[str, object]:
        rows = self.session.execute(
            select(
                Account.type,
                func.count(Account.id).label("count"),
                func.coalesce(func.sum(Account.balance_cents), 0).label("balance"),
                func.max(Account.balance_cents).label("highest"),
            )
            .where(Account.user_id == self.user_id)
            .group_by(Account.type)
        ).all()

        accounts_by_type = {t.value: 0 for t in AccountType}
        balance_by_type = {t.value: 0 for t in AccountType}
        highest = 0
        for row in rows:
            accounts_by_type[row.type.value] = int(row.count)
            balance_by_type[row.type.value] = int(row.balance)
            highest = max(highest, int(row.highest))

        total_accounts = sum(accounts_by_type.values())
        total_balance = sum(balance_by_type.values())
        return {
            "total_accounts": total_accounts,
            "total_balance_cents": total_balance,
            "accounts_by_type": accounts_by_type,
            "balance_by_type": balance_by_type,
            "highest_balance_cents": highest,
            "average_balance_cents": average_cents(total_balance, total_accounts),
        }


class CreditCardService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def get(self, card_id: int) -> CreditCard:
        card = self.session.get(CreditCard, card_id)
        if not card or card.user_id != self.user_id:
            raise NotFound("Credit card not found")
        return card

    def list(self) -> dict[str, object]:
        cards = self.session.scalars(
            select(CreditCard)
            .where(CreditCard.user_id == self.user_id)
            .order_by(CreditCard.created_at.desc(), CreditCard.id.desc())
        ).all()
        return {"credit_cards": cards, "total": len(cards)}

    def create(self, data: CreditCardIn) -> CreditCard:
        card = CreditCard(
            user_id=self.user_id,
            name=clean_text(data.name, "Name"),
            limit_cents=data.limit_cents,
            closing_day=data.closing_day,
            due_day=data.due_day,
        )
        self.session.add(card)
        self.session.commit()
        self.session.refresh(card)
        return card

    def update(self, card_id: int, data: CreditCardPatch) -> CreditCard:
        card = self.get(card_id)
        patch = data.model_dump(exclude_unset=True)
        for name, value in patch.items():
            if value is None:
                raise ValidationFailure(f"{name} cannot be null")
        if "name" in patch:
            patch["name"] = clean_text(patch["name"], "Name")
        for name, value in patch.items():
            setattr(card, name, value)
        self.session.commit()
        self.session.refresh(card)
        return card

    def delete(self, card_id: int) -> None:
        card = self.get(card_id)
        in_use = self.session.execute(
            select(func.count(Transaction.id)).where(
                Transaction.credit_card_id == card.id
            )
        ).scalar_one()
        if in_use:
            raise ReferentialViolation(
                "Cannot delete a credit card that has transactions"
            )
        self.session.delete(card)
        self.session.commit()

    def stats(self, card_id: int, today: Optional[date] = None) -> dict[str, object]:
        card = self.get(card_id)
        period = current_month(today)
        spent, count = self.session.execute(
            select(
                func.coalesce(func.sum(Transaction.amount_cents), 0),
                func.count(Transaction.id),
            ).where(
                Transaction.user_id == self.user_id,
                Transaction.credit_card_id == card.id,
                Transaction.date.between(period.start, period.end),
            )
        ).one()
        spent = int(spent or 0)
        return {
            "credit_card": card,
            "total_spent_cents": spent,
            "available_limit_cents": card.limit_cents - spent,
            "limit_usage_percentage": percentage(spent, card.limit_cents),
            "transactions_count": int(count or 0),
        }


class CategoryService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise NotFound("Category not found")
        return category

    def _duplicate(
        self, name: str, type: TransactionType, exclude_id: Optional[int] = None
    ) -> bool:
        stmt = select(Category.id).where(
            Category.user_id == self.user_id,
            Category.type == type,
            func.lower(Category.name) == name.lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(Category.id != exclude_id)
        return self.session.scalar(stmt) is not None

    def list(self, filters: Optional[CategoryFilters] = None) -> dict[str, object]:
        filters = filters or CategoryFilters()
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.type, Category.name)
        )
        if filters.type:
            stmt = stmt.where(Category.type == filters.type)
        if filters.is_active is not None:
            stmt = stmt.where(Category.is_active.is_(filters.is_active))
        if filters.search:
            like = f"%{filters.search.strip().lower()}%"
            stmt = stmt.where(
                or_(
                    func.lower(Category.name).like(like),
                    func.lower(func.coalesce(Category.description, "")).like(like),
                )
            )
        categories = self.session.scalars(stmt).all()
        return {"categories": categories, "total": len(categories)}

    def create(self, data: CategoryIn) -> Category:
        name = clean_text(data.name, "Name")
        if self._duplicate(name, data.type):
            raise Conflict("A category with this name already exists for this type")
        category = Category(
            user_id=self.user_id,
            name=name,
            type=data.type,
            description=data.description,
            color=data.color,
            icon=data.icon,
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def update(self, category_id: int, data: CategoryPatch) -> Category:
        category = self.get(category_id)
        patch = data.model_dump(exclude_unset=True)
        if patch.get("name") is not None:
            patch["name"] = clean_text(patch["name"], "Name")
        for required in ("name", "type", "is_active"):
            if required in patch and patch[required] is None:
                raise ValidationFailure(f"{required} cannot be null")

        if "name" in patch or "type" in patch:
            name = patch.get("name", category.name)
            type = patch.get("type", category.type)
            if self._duplicate(name, type, exclude_id=category.id):
                raise Conflict("A category with this name already exists for this type")
        if "type" in patch and patch["type"] != category.type:
            in_use = self.session.execute(
                select(func.count(Transaction.id)).where(
                    Transaction.category_id == category.id
                )
            ).scalar_one()
            if in_use:
                raise ReferentialViolation(
                    "Cannot change the type of a category that has transactions"
                )

        for name, value in patch.items():
            setattr(category, name, value)
        self.session.commit()
        self.session.refresh(category)
        return category

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        in_use = self.session.execute(
            select(func.count(Transaction.id)).where(
                Transaction.category_id == category.id
            )
        ).scalar_one()
        if in_use:
            raise ReferentialViolation(
                "Cannot delete a category that has transactions"
            )
        self.session.delete(category)
        self.session.commit()

    def stats(self) -> dict[str, int]:
        categories = self.session.scalars(
            select(Category).where(Category.user_id == self.user_id)
        ).all()
        active = sum(1 for c in categories if c.is_active)
        return {
            "total_categories": len(categories),
            "income_categories": sum(
                1 for c in categories if c.type == TransactionType.income
            ),
            "expense_categories": sum(
                1 for c in categories if c.type == TransactionType.expense
            ),
            "active_categories": active,
            "inactive_categories": len(categories) - active,
        }

    def create_defaults(self) -> list[Category]:
        created: list[Category] = []
        for entry in DEFAULT_CATEGORIES:
            try:
                created.append(self.create(CategoryIn(**entry)))
            except Conflict:
                logger.info(
                    f"default_category_skipped: user_id={self.user_id} "
                    f"name={entry['name']}"
                )
        return created


class TransactionService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _referenced(self, model, entity_id: int, label: str):
        entity = self.session.get(model, entity_id)
        if not entity or entity.user_id != self.user_id:
            raise ReferentialViolation(f"{label} not found")
        return entity

    def _validate(self, state: LedgerState, changed: Iterable[str]) -> None:
        """Reject a state before anything is written.

        Only references named in ``changed`` are looked up again; the stored
        ones were checked when they were written.
        """
        error = state.shape_error()
        if error:
            raise ReferentialViolation(error)

        changed = set(changed)
        if changed & {"category_id", "type"}:
            category = self._referenced(Category, state.category_id, "Category")
            if category.type != state.type:
                raise ReferentialViolation(
                    "Category type does not match the transaction type"
                )
        if "account_id" in changed and state.account_id is not None:
            self._referenced(Account, state.account_id, "Account")
        if "credit_card_id" in changed and state.credit_card_id is not None:
            self._referenced(CreditCard, state.credit_card_id, "Credit card")
        if "goal_id" in changed and state.goal_id is not None:
            self._referenced(Goal, state.goal_id, "Goal")

    def get(self, transaction_id: int) -> Transaction:
        txn = self.session.scalar(
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(
                Transaction.user_id == self.user_id, Transaction.id == transaction_id
            )
        )
        if not txn:
            raise NotFound("Transaction not found")
        return txn

    def create(self, data: TransactionIn) -> Transaction:
        state = LedgerState(
            type=data.type,
            amount_cents=data.amount_cents,
            is_paid=data.is_paid,
            category_id=data.category_id,
            account_id=data.account_id,
            credit_card_id=data.credit_card_id,
            goal_id=data.goal_id,
        )
        self._validate(state, LEDGER_FIELDS)

        txn = Transaction(
            user_id=self.user_id,
            description=clean_text(data.description, "Description"),
            date=data.date,
            **{name: getattr(state, name) for name in LEDGER_FIELDS},
        )
        with atomic(self.session):
            self.session.add(txn)
            self.session.flush()
            apply_balance_effect(self.session, self.user_id, state, +1)
            if state.counts_toward_goal:
                recompute_goal_progress(self.session, self.user_id, state.goal_id)
        self.session.refresh(txn)
        return txn

    def update(self, transaction_id: int, data: TransactionPatch) -> Transaction:
        txn = self.get(transaction_id)
        patch: dict[str, Any] = data.model_dump(exclude_unset=True)
        if "description" in patch:
            patch["description"] = clean_text(patch["description"], "Description")

        change = LedgerChange(
            before=LedgerState.of(txn), after=LedgerState.of(txn).merged(patch)
        )
        self._validate(change.after, patch.keys())

        with atomic(self.session):
            apply_balance_effect(self.session, self.user_id, change.before, -1)
            for name, value in patch.items():
                setattr(txn, name, value)
            self.session.flush()
            apply_balance_effect(self.session, self.user_id, change.after, +1)
            for goal_id in change.goals_to_recompute():
                recompute_goal_progress(self.session, self.user_id, goal_id)
        self.session.refresh(txn)
        return txn

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        state = LedgerState.of(txn)
        with atomic(self.session):
            apply_balance_effect(self.session, self.user_id, state, -1)
            self.session.delete(txn)
            self.session.flush()
            if state.goal_id is not None:
                recompute_goal_progress(self.session, self.user_id, state.goal_id)

    def _conditions(self, filters: TransactionFilters) -> list:
        conditions = [Transaction.user_id == self.user_id]
        if filters.type:
            conditions.append(Transaction.type == filters.type)
        if filters.category_id:
            conditions.append(Transaction.category_id == filters.category_id)
        if filters.account_id:
            conditions.append(Transaction.account_id == filters.account_id)
        if filters.credit_card_id:
            conditions.append(Transaction.credit_card_id == filters.credit_card_id)
        if filters.goal_id:
            conditions.append(Transaction.goal_id == filters.goal_id)
        if filters.is_paid is not None:
            conditions.append(Transaction.is_paid.is_(filters.is_paid))
        if filters.start_date:
            conditions.append(Transaction.date >= filters.start_date)
        if filters.end_date:
            conditions.append(Transaction.date <= filters.end_date)
        if filters.min_amount_cents is not None:
            conditions.append(Transaction.amount_cents >= filters.min_amount_cents)
        if filters.max_amount_cents is not None:
            conditions.append(Transaction.amount_cents <= filters.max_amount_cents)
        return conditions

    def list(self, filters: Optional[TransactionFilters] = None) -> dict[str, object]:
        filters = filters or TransactionFilters()
        conditions = self._conditions(filters)

        total, total_amount, total_paid = self.session.execute(
            select(
                func.count(Transaction.id),
                func.coalesce(func.sum(Transaction.amount_cents), 0),
                func.coalesce(
                    func.sum(
                        case(
                            (Transaction.is_paid.is_(True), Transaction.amount_cents),
                            else_=0,
                        )
                    ),
                    0,
                ),
            ).where(*conditions)
        ).one()
        total = int(total or 0)
        total_amount = int(total_amount or 0)
        total_paid = int(total_paid or 0)

        offset = (filters.page - 1) * filters.limit
        items = self.session.scalars(
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(*conditions)
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .offset(offset)
            .limit(filters.limit)
        ).all()

        total_pages = math.ceil(total / filters.limit)
        return {
            "transactions": items,
            "total": total,
            "total_amount_cents": total_amount,
            "total_paid_cents": total_paid,
            "total_pending_cents": total_amount - total_paid,
            "pagination": {
                "page": filters.page,
                "limit": filters.limit,
                "total_pages": total_pages,
                "has_next_page": filters.page < total_pages,
                "has_prev_page": filters.page > 1,
            },
        }

    def stats(
        self,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        *,
        today: Optional[date] = None,
    ) -> dict[str, object]:
        period = resolve_range(start_date, end_date)
        month = current_month(today)
        conditions = [Transaction.user_id == self.user_id]
        if period:
            conditions.append(Transaction.date.between(period.start, period.end))

        is_income = Transaction.type == TransactionType.income
        is_expense = Transaction.type == TransactionType.expense
        in_month = Transaction.date.between(month.start, month.end)

        def total_where(condition):
            return func.coalesce(
                func.sum(case((condition, Transaction.amount_cents), else_=0)), 0
            )

        row = self.session.execute(
            select(
                total_where(is_income).label("incomes"),
                total_where(is_expense).label("expenses"),
                total_where(Transaction.is_paid.is_(True)).label("paid"),
                total_where(Transaction.is_paid.is_(False)).label("pending"),
                total_where(is_income & in_month).label("month_incomes"),
                total_where(is_expense & in_month).label("month_expenses"),
            ).where(*conditions)
        ).one()

        category_rows = self.session.execute(
            select(
                Category.id,
                Category.name,
                func.sum(Transaction.amount_cents).label("total"),
                func.count(Transaction.id).label("count"),
            )
            .join(Category, Category.id == Transaction.category_id)
            .where(*conditions)
            .group_by(Category.id, Category.name)
            .order_by(func.sum(Transaction.amount_cents).desc(), Category.name)
        ).all()

        incomes = int(row.incomes or 0)
        expenses = int(row.expenses or 0)
        return {
            "total_incomes_cents": incomes,
            "total_expenses_cents": expenses,
            "total_paid_cents": int(row.paid or 0),
            "total_pending_cents": int(row.pending or 0),
            "current_month_incomes_cents": int(row.month_incomes or 0),
            "current_month_expenses_cents": int(row.month_expenses or 0),
            "balance_cents": incomes - expenses,
            "top_categories": [
                {
                    "category_id": r.id,
                    "category_name": r.name,
                    "total_cents": int(r.total or 0),
                    "count": int(r.count or 0),
                }
                for r in category_rows
            ],
        }


class BudgetService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def get(self, budget_id: int) -> Budget:
        budget = self.session.get(Budget, budget_id)
        if not budget or budget.user_id != self.user_id:
            raise NotFound("Budget not found")
        return budget

    def _for_month(self, month: int, year: int) -> Optional[Budget]:
        return self.session.scalar(
            select(Budget).where(
                Budget.user_id == self.user_id,
                Budget.month == month,
                Budget.year == year,
            )
        )

    def list(self) -> list[Budget]:
        stmt = (
            select(Budget)
            .where(Budget.user_id == self.user_id)
            .order_by(Budget.year.desc(), Budget.month.desc())
        )
        return self.session.scalars(stmt).all()

    def get_for_month(self, month: int, year: int) -> Budget:
        budget = self._for_month(month, year)
        if not budget:
            raise NotFound("Budget not found")
        return budget

    def create(self, data: BudgetIn) -> Budget:
        if self._for_month(data.month, data.year):
            raise Conflict("A budget already exists for this month")
        budget = Budget(
            user_id=self.user_id,
            name=clean_text(data.name, "Name"),
            amount_cents=data.amount_cents,
            month=data.month,
            year=data.year,
            spent_cents=0,
        )
        self.session.add(budget)
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def update(self, budget_id: int, data: BudgetPatch) -> Budget:
        budget = self.get(budget_id)
        if data.name is not None:
            budget.name = clean_text(data.name, "Name")
        if data.amount_cents is not None:
            budget.amount_cents = data.amount_cents
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def delete(self, budget_id: int) -> None:
        budget = self.get(budget_id)
        self.session.delete(budget)
        self.session.commit()

    def refresh_spent(self, month: int, year: int) -> int:
        if not 1 <= month <= 12:
            raise ValidationFailure("Month must be between 1 and 12")
        period = month_period(year, month)
        spent = int(
            self.session.execute(
                select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
                    Transaction.user_id == self.user_id,
                    Transaction.type == TransactionType.expense,
                    Transaction.is_paid.is_(True),
                    Transaction.date.between(period.start, period.end),
                )
            ).scalar_one()
            or 0
        )
        budget = self._for_month(month, year)
        if budget:
            budget.spent_cents = spent
            self.session.commit()
        return spent


class GoalService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def get(self, goal_id: int) -> Goal:
        goal = self.session.get(Goal, goal_id)
        if not goal or goal.user_id != self.user_id:
            raise NotFound("Goal not found")
        return goal

    def list(self) -> list[Goal]:
        stmt = (
            select(Goal)
            .where(Goal.user_id == self.user_id)
            .order_by(Goal.target_date.asc(), Goal.id.asc())
        )
        return self.session.scalars(stmt).all()

    def create(self, data: GoalIn, *, today: Optional[date] = None) -> Goal:
        today = today or date.today()
        if data.target_date <= today:
            raise ValidationFailure("Target date must be in the future")
        goal = Goal(
            user_id=self.user_id,
            title=clean_text(data.title, "Title"),
            description=data.description,
            target_amount_cents=data.target_amount_cents,
            current_amount_cents=0,
            target_date=data.target_date,
        )
        self.session.add(goal)
        self.session.commit()
        self.session.refresh(goal)
        return goal

    def update(
        self, goal_id: int, data: GoalPatch, *, today: Optional[date] = None
    ) -> Goal:
        goal = self.get(goal_id)
        patch = data.model_dump(exclude_unset=True)
        for required in ("title", "target_amount_cents", "target_date"):
            if required in patch and patch[required] is None:
                raise ValidationFailure(f"{required} cannot be null")
        if "title" in patch:
            patch["title"] = clean_text(patch["title"], "Title")
        if "target_date" in patch and patch["target_date"] <= (
            today or date.today()
        ):
            raise ValidationFailure("Target date must be in the future")
        for name, value in patch.items():
            setattr(goal, name, value)
        self.session.commit()
        self.session.refresh(goal)
        return goal

    def delete(self, goal_id: int) -> None:
        goal = self.get(goal_id)
        with atomic(self.session):
            self.session.execute(
                update(Transaction)
                .where(
                    Transaction.user_id == self.user_id,
                    Transaction.goal_id == goal.id,
                )
                .values(goal_id=None)
            )
            self.session.delete(goal)

    def progress(
        self, goal_id: int, *, now: Optional[datetime] = None
    ) -> dict[str, object]:
        return goal_progress(self.get(goal_id), now)


class DashboardService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _month_totals(self, period: Period) -> dict[str, int]:
        income, expense = self.session.execute(
            select(
                func.coalesce(
                    func.sum(
                        case(
                            (
                                Transaction.type == TransactionType.income,
                                Transaction.amount_cents,
                            ),
                            else_=0,
                        )
                    ),
                    0,
                ),
                func.coalesce(
                    func.sum(
                        case(
                            (
                                Transaction.type == TransactionType.expense,
                                Transaction.amount_cents,
                            ),
                            else_=0,
                        )
                    ),
                    0,
                ),
            ).where(
                Transaction.user_id == self.user_id,
                Transaction.date.between(period.start, period.end),
            )
        ).one()
        income = int(income or 0)
        expense = int(expense or 0)
        return {
            "income_cents": income,
            "expense_cents": expense,
            "net_cents": income - expense,
        }

    def top_expense_categories(
        self, period: Period, limit: int = TOP_CATEGORY_LIMIT
    ) -> list[dict[str, object]]:
        total_expr = func.sum(Transaction.amount_cents)
        rows = self.session.execute(
            select(
                Category.id,
                Category.name,
                Category.color,
                total_expr.label("total"),
            )
            .join(Category, Category.id == Transaction.category_id)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.type == TransactionType.expense,
                Transaction.date.between(period.start, period.end),
            )
            .group_by(Category.id, Category.name, Category.color)
            .order_by(total_expr.desc(), Category.name)
            .limit(limit)
        ).all()
        month_total = int(
            self.session.execute(
                select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
                    Transaction.user_id == self.user_id,
                    Transaction.type == TransactionType.expense,
                    Transaction.date.between(period.start, period.end),
                )
            ).scalar_one()
            or 0
        )
        return [
            {
                "category_id": row.id,
                "name": row.name,
                "color": row.color,
                "total_cents": int(row.total or 0),
                "percentage": percentage(int(row.total or 0), month_total),
            }
            for row in rows
        ]

    def summary(self, today: Optional[date] = None) -> dict[str, object]:
        this_month = current_month(today)
        last_month = previous_month(today)
        current = self._month_totals(this_month)
        previous = self._month_totals(last_month)

        total_balance = int(
            self.session.execute(
                select(func.coalesce(func.sum(Account.balance_cents), 0)).where(
                    Account.user_id == self.user_id
                )
            ).scalar_one()
            or 0
        )
        pending = int(
            self.session.execute(
                select(func.count(Transaction.id)).where(
                    Transaction.user_id == self.user_id,
                    Transaction.is_paid.is_(False),
                )
            ).scalar_one()
            or 0
        )
        goals_total, goals_completed = self.session.execute(
            select(
                func.count(Goal.id),
                func.coalesce(
                    func.sum(
                        case(
                            (
                                Goal.current_amount_cents >= Goal.target_amount_cents,
                                1,
                            ),
                            else_=0,
                        )
                    ),
                    0,
                ),
            ).where(Goal.user_id == self.user_id)
        ).one()

        return {
            "total_balance_cents": total_balance,
            "current_month": current,
            "previous_month": previous,
            "income_change_percentage": percent_change(
                current["income_cents"], previous["income_cents"]
            ),
            "expense_change_percentage": percent_change(
                current["expense_cents"], previous["expense_cents"]
            ),
            "pending_transactions": pending,
            "goals": {
                "total": int(goals_total or 0),
                "completed": int(goals_completed or 0),
            },
            "top_expense_categories": self.top_expense_categories(this_month),
        }
