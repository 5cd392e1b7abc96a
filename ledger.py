"""Pure bookkeeping rules shared by the transaction, account and goal services.

Nothing here touches the database. The services turn these values into
owner-scoped SQL statements.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from datetime import date, datetime, time
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Mapping, Optional

from models import Goal, Transaction, TransactionType

# Fields of a transaction that decide where its money lands.
LEDGER_FIELDS = (
    "type",
    "amount_cents",
    "is_paid",
    "category_id",
    "account_id",
    "credit_card_id",
    "goal_id",
)


def balance_delta(type: TransactionType, amount_cents: int, sign: int = 1) -> int:
    signed = amount_cents if type == TransactionType.income else -amount_cents
    return sign * signed


def percentage(part: int | float, whole: int | float) -> float:
    if not whole:
        return 0.0
    return round(part / whole * 100, 2)


def percent_change(current: int, previous: int) -> float:
    if not previous:
        return 0.0
    return round((current - previous) / previous * 100, 2)


def average_cents(total_cents: int, count: int) -> int:
    if not count:
        return 0
    return int(
        (Decimal(total_cents) / Decimal(count)).quantize(
            Decimal("1"), rounding=ROUND_HALF_UP
        )
    )


@dataclass(frozen=True)
class LedgerState:
    """The reconciliation-relevant view of one transaction."""

    type: TransactionType
    amount_cents: int
    is_paid: bool
    category_id: int
    account_id: Optional[int] = None
    credit_card_id: Optional[int] = None
    goal_id: Optional[int] = None

    @classmethod
    def of(cls, txn: Transaction) -> LedgerState:
        return cls(**{name: getattr(txn, name) for name in LEDGER_FIELDS})

    def merged(self, patch: Mapping[str, Any]) -> LedgerState:
        """Overlay the ledger fields present in ``patch`` onto this state."""
        changes = {name: patch[name] for name in LEDGER_FIELDS if name in patch}
        return replace(self, **changes)

    @property
    def moves_balance(self) -> bool:
        return self.is_paid and self.account_id is not None

    @property
    def counts_toward_goal(self) -> bool:
        return (
            self.goal_id is not None
            and self.type == TransactionType.income
            and self.is_paid
        )

    def delta(self, sign: int = 1) -> int:
        if not self.moves_balance:
            return 0
        return balance_delta(self.type, self.amount_cents, sign)

    def shape_error(self) -> Optional[str]:
        """Describe why this state cannot be stored, or return None."""
        if self.account_id is not None and self.credit_card_id is not None:
            return "A transaction cannot use an account and a credit card at once"
        if self.type == TransactionType.income:
            if self.account_id is None:
                return "Income transactions require an account"
        elif self.account_id is None and self.credit_card_id is None:
            return "Expense transactions require an account or a credit card"
        if self.goal_id is not None and self.type != TransactionType.income:
            return "Only income transactions can be linked to a goal"
        return None


@dataclass(frozen=True)
class LedgerChange:
    """Stored state before an update and the effective state after it."""

    before: LedgerState
    after: LedgerState

    def goals_to_recompute(self) -> list[int]:
        goal_ids: list[int] = []
        if self.before.goal_id is not None:
            goal_ids.append(self.before.goal_id)
        if self.after.counts_toward_goal and self.after.goal_id not in goal_ids:
            goal_ids.append(self.after.goal_id)
        return goal_ids


def days_until(target: date, now: datetime) -> int:
    remaining = datetime.combine(target, time.min) - now
    return math.ceil(remaining.total_seconds() / 86400)


def goal_progress(goal: Goal, now: Optional[datetime] = None) -> dict[str, object]:
    now = now or datetime.now()
    target = goal.target_amount_cents
    current = goal.current_amount_cents
    return {
        "id": goal.id,
        "title": goal.title,
        "target_amount_cents": target,
        "current_amount_cents": current,
        "percentage": percentage(current, target),
        "remaining_cents": target - current,
        "is_completed": current >= target,
        "days_remaining": days_until(goal.target_date, now),
    }
