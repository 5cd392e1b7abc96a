import logging
import tomllib
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import get_settings
from database import get_db, init_db
from errors import (
    Conflict,
    InsufficientFunds,
    LedgerError,
    NotFound,
    ReferentialViolation,
    Unauthenticated,
    ValidationFailure,
)
from models import AccountType, TransactionType
from schemas import (
    AccountFilters,
    AccountIn,
    AccountOut,
    AccountPatch,
    BudgetIn,
    BudgetOut,
    BudgetPatch,
    CategoryFilters,
    CategoryIn,
    CategoryOut,
    CategoryPatch,
    CreditCardIn,
    CreditCardOut,
    CreditCardPatch,
    GoalIn,
    GoalOut,
    GoalPatch,
    LoginIn,
    PasswordChangeIn,
    ProfilePatch,
    RefreshIn,
    RegisterIn,
    TransactionFilters,
    TransactionIn,
    TransactionOut,
    TransactionPatch,
    TransferIn,
    UserOut,
)
from security import Identity, identity_from_header
from services import (
    AccountService,
    AuthService,
    BudgetService,
    CategoryService,
    CreditCardService,
    DashboardService,
    GoalService,
    TransactionService,
)

logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Ledger API")

STATUS_BY_ERROR = {
    NotFound: 404,
    ValidationFailure: 400,
    ReferentialViolation: 400,
    InsufficientFunds: 400,
    Conflict: 409,
    Unauthenticated: 401,
}


def _load_app_version() -> str:
    try:
        with open("pyproject.toml", "rb") as f:
            data = tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError):
        return "unknown"
    return str(data.get("project", {}).get("version", "unknown"))


APP_VERSION = _load_app_version()


@app.on_event("startup")
def startup_event():
    init_db()
    logger.info(f"startup: version={APP_VERSION}")


def current_user(authorization: Optional[str] = Header(default=None)) -> Identity:
    return identity_from_header(authorization)


def ok(data: object = None, message: Optional[str] = None, status_code: int = 200):
    body: dict[str, object] = {"success": True}
    if data is not None:
        body["data"] = jsonable_encoder(data)
    if message:
        body["message"] = message
    return JSONResponse(status_code=status_code, content=body)


def fail(status_code: int, error: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code, content={"success": False, "error": error}
    )


def dump(model, obj) -> dict:
    return model.model_validate(obj).model_dump(mode="json")


def dump_all(model, items) -> list[dict]:
    return [dump(model, item) for item in items]


def _status_for(exc: LedgerError) -> int:
    for cls in type(exc).__mro__:
        if cls in STATUS_BY_ERROR:
            return STATUS_BY_ERROR[cls]
    return 400


def _validation_message(errors) -> str:
    messages = []
    for err in errors:
        msg = str(err.get("msg", "Invalid value"))
        msg = msg.removeprefix("Value error, ")
        loc = [
            str(part) for part in err.get("loc", ()) if part not in ("body", "query")
        ]
        messages.append(f"{'.'.join(loc)}: {msg}" if loc else msg)
    return ", ".join(messages) or "Invalid request"


@app.exception_handler(LedgerError)
def ledger_error_handler(request: Request, exc: LedgerError):
    if isinstance(exc, Unauthenticated):
        logger.info(f"auth_rejected: path={request.url.path} reason={exc}")
    return fail(_status_for(exc), str(exc))


@app.exception_handler(RequestValidationError)
def request_validation_handler(request: Request, exc: RequestValidationError):
    return fail(400, _validation_message(exc.errors()))


@app.exception_handler(ValidationError)
def model_validation_handler(request: Request, exc: ValidationError):
    return fail(400, _validation_message(exc.errors()))


@app.exception_handler(IntegrityError)
def integrity_error_handler(request: Request, exc: IntegrityError):
    logger.warning(f"integrity_error: path={request.url.path} detail={exc.orig}")
    if "unique" in str(exc.orig).lower():
        return fail(409, "Record conflicts with existing data")
    return fail(400, "Record violates a data constraint")


@app.exception_handler(StarletteHTTPException)
def http_error_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code == 404:
        return fail(404, f"Route {request.method} {request.url.path} not found")
    return fail(exc.status_code, str(exc.detail))


@app.exception_handler(Exception)
def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception(f"unhandled_error: path={request.url.path}")
    return fail(500, "Internal server error")


@app.get("/status")
def status():
    return ok({"status": "ok", "app_version": APP_VERSION})


# Auth


@app.post("/api/auth/register", status_code=201)
def register(payload: RegisterIn, db: Session = Depends(get_db)):
    result = AuthService(db).register(payload)
    result["user"] = dump(UserOut, result["user"])
    return ok(result, "User registered successfully", 201)


@app.post("/api/auth/login")
def login(payload: LoginIn, db: Session = Depends(get_db)):
    result = AuthService(db).login(payload)
    result["user"] = dump(UserOut, result["user"])
    return ok(result, "Login successful")


@app.post("/api/auth/refresh")
def refresh(payload: RefreshIn, db: Session = Depends(get_db)):
    return ok(AuthService(db).refresh(payload), "Token refreshed")


@app.get("/api/auth/profile")
def profile(
    user: Identity = Depends(current_user), db: Session = Depends(get_db)
):
    return ok(dump(UserOut, AuthService(db).profile(user.id)))


@app.put("/api/auth/profile")
def update_profile(
    payload: ProfilePatch,
    user: Identity = Depends(current_user),
    db: Session = Depends(get_db),
):
    updated = AuthService(db).update_profile(user.id, payload)
    return ok(dump(UserOut, updated), "Profile updated")


@app.put("/api/auth/password")
def change_password(
    payload: PasswordChangeIn,
    user: Identity = Depends(current_user),
    db: Session = Depends(get_db),
):
    AuthService(db).change_password(user.id, payload)
    return ok(message="Password changed")


@app.get("/api/auth/validate")
def validate_token(user: Identity = Depends(current_user)):
    return ok({"valid": True, "user": {"id": user.id, "email": user.email}})


# Accounts


@app.get("/api/accounts")
def list_accounts(
    type: Optional[AccountType] = None,
    min_balance_cents: Optional[int] = None,
    max_balance_cents: Optional[int] = None,
    user: Identity = Depends(current_user),
    db: Session = Depends(get_db),
):
    filters = AccountFilters(
        type=type,
        min_balance_cents=min_balance_cents,
        max_balance_cents=max_balance_cents,
    )
    result = AccountService(db, user.id).list(filters)
    result["accounts"] = dump_all(AccountOut, result["accounts"])
    return ok(result)


@app.post("/api/accounts", status_code=201)
def create_account(
    payload: AccountIn,
    user: Identity = Depends(current_user),
    db: Session = Depends(get_db),
):
    account = AccountService(db, user.id).create(payload)
    return ok(dump(AccountOut, account), "Account created", 201)


@app.get("/api/accounts/stats")
def account_stats(
    user: Identity = Depends(current_user), db: Session = Depends(get_db)
):
    return ok(AccountService(db, user.id).stats())


@app.post("/api/accounts/transfer")
def transfer(
    payload: TransferIn,
    user: Identity = Depends(current_user),
    db: Session = Depends(get_db),
):
    result = AccountService(db, user.id).transfer(payload)
    result["from_account"] = dump(AccountOut, result["from_account"])
    result["to_account"] = dump(AccountOut, result["to_account"])
    return ok(result, "Transfer completed")


@app.get("/api/accounts/{account_id}")
def get_account(
    account_id: int,
    user: Identity = Depends(current_user),
    db: Session = Depends(get_db),
):
    return ok(dump(AccountOut, AccountService(db, user.id).get(account_id)))


@app.put("/api/accounts/{account_id}")
def update_account(
    account_id: int,
    payload: AccountPatch,
    user: Identity = Depends(current_user),
    db: Session = Depends(get_db),
):
    account = AccountService(db, user.id).update(account_id, payload)
    return ok(dump(AccountOut, account), "Account updated")


@app.delete("/api/accounts/{account_id}")
def delete_account(
    account_id: int,
    user: Identity = Depends(current_user),
    db: Session = Depends(get_db),
):
    AccountService(db, user.id).delete(account_id)
    return ok(message="Account deleted")


# Categories


@app.get("/api/categories")
def list_categories(
    type: Optional[TransactionType] = None,
    is_active: Optional[bool] = None,
    search: Optional[str] = None,
    user: Identity = Depends(current_user),
    db: Session = Depends(get_db),
):
    filters = CategoryFilters(type=type, is_active=is_active, search=search)
    result = CategoryService(db, user.id).list(filters)
    result["categories"] = dump_all(CategoryOut, result["categories"])
    return ok(result)


@app.post("/api/categories", status_code=201)
def create_category(
    payload: CategoryIn,
    user: Identity = Depends(current_user),
    db: Session = Depends(get_db),
):
    category = CategoryService(db, user.id).create(payload)
    return ok(dump(CategoryOut, category), "Category created", 201)


@app.get("/api/categories/stats")
def category_stats(
    user: Identity = Depends(current_user), db: Session = Depends(get_db)
):
    return ok(CategoryService(db, user.id).stats())


@app.post("/api/categories/default", status_code=201)
def create_default_categories(
    user: Identity = Depends(current_user), db: Session = Depends(get_db)
):
    created = CategoryService(db, user.id).create_defaults()
    return ok(
        dump_all(CategoryOut, created),
        f"{len(created)} default categories created",
        201,
    )


@app.get("/api/categories/{category_id}")
def get_category(
    category_id: int,
    user: Identity = Depends(current_user),
    db: Session = Depends(get_db),
):
    return ok(dump(CategoryOut, CategoryService(db, user.id).get(category_id)))


@app.put("/api/categories/{category_id}")
def update_category(
    category_id: int,
    payload: CategoryPatch,
    user: Identity = Depends(current_user),
    db: Session = Depends(get_db),
):
    category = CategoryService(db, user.id).update(category_id, payload)
    return ok(dump(CategoryOut, category), "Category updated")


@app.delete("/api/categories/{category_id}")
def delete_category(
    category_id: int,
    user: Identity = Depends(current_user),
    db: Session = Depends(get_db),
):
    CategoryService(db, user.id).delete(category_id)
    return ok(message="Category deleted")


# Credit cards


@app.get("/api/credit-cards")
def list_credit_cards(
    user: Identity = Depends(current_user), db: Session = Depends(get_db)
):
    result = CreditCardService(db, user.id).list()
    result["credit_cards"] = dump_all(CreditCardOut, result["credit_cards"])
    return ok(result)


@app.post("/api/credit-cards", status_code=201)
def create_credit_card(
    payload: CreditCardIn,
    user: Identity = Depends(current_user),
    db: Session = Depends(get_db),
):
    card = CreditCardService(db, user.id).create(payload)
    return ok(dump(CreditCardOut, card), "Credit card created", 201)


@app.get("/api/credit-cards/{card_id}")
def get_credit_card(
    card_id: int,
    user: Identity = Depends(current_user),
    db: Session = Depends(get_db),
):
    return ok(dump(CreditCardOut, CreditCardService(db, user.id).get(card_id)))


@app.put("/api/credit-cards/{card_id}")
def update_credit_card(
    card_id: int,
    payload: CreditCardPatch,
    user: Identity = Depends(current_user),
    db: Session = Depends(get_db),
):
    card = CreditCardService(db, user.id).update(card_id, payload)
    return ok(dump(CreditCardOut, card), "Credit card updated")


@app.delete("/api/credit-cards/{card_id}")
def delete_credit_card(
    card_id: int,
    user: Identity = Depends(current_user),
    db: Session = Depends(get_db),
):
    CreditCardService(db, user.id).delete(card_id)
    return ok(message="Credit card deleted")


@app.get("/api/credit-cards/{card_id}/stats")
def credit_card_stats(
    card_id: int,
    user: Identity = Depends(current_user),
    db: Session = Depends(get_db),
):
    result = CreditCardService(db, user.id).stats(card_id)
    result["credit_card"] = dump(CreditCardOut, result["credit_card"])
    return ok(result)


# Transactions


@app.get("/api/transactions")
def list_transactions(
    type: Optional[TransactionType] = None,
    category_id: Optional[int] = None,
    account_id: Optional[int] = None,
    credit_card_id: Optional[int] = None,
    goal_id: Optional[int] = None,
    is_paid: Optional[bool] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    min_amount_cents: Optional[int] = None,
    max_amount_cents: Optional[int] = None,
    page: int = Query(default=1),
    limit: int = Query(default=20),
    user: Identity = Depends(current_user),
    db: Session = Depends(get_db),
):
    filters = TransactionFilters(
        type=type,
        category_id=category_id,
        account_id=account_id,
        credit_card_id=credit_card_id,
        goal_id=goal_id,
        is_paid=is_paid,
        start_date=start_date,
        end_date=end_date,
        min_amount_cents=min_amount_cents,
        max_amount_cents=max_amount_cents,
        page=page,
        limit=limit,
    )
    result = TransactionService(db, user.id).list(filters)
    result["transactions"] = dump_all(TransactionOut, result["transactions"])
    return ok(result)


@app.post("/api/transactions", status_code=201)
def create_transaction(
    payload: TransactionIn,
    user: Identity = Depends(current_user),
    db: Session = Depends(get_db),
):
    txn = TransactionService(db, user.id).create(payload)
    return ok(dump(TransactionOut, txn), "Transaction created", 201)


@app.get("/api/transactions/stats")
def transaction_stats(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    user: Identity = Depends(current_user),
    db: Session = Depends(get_db),
):
    return ok(TransactionService(db, user.id).stats(start_date, end_date))


@app.get("/api/transactions/{transaction_id}")
def get_transaction(
    transaction_id: int,
    user: Identity = Depends(current_user),
    db: Session = Depends(get_db),
):
    txn = TransactionService(db, user.id).get(transaction_id)
    return ok(dump(TransactionOut, txn))


@app.put("/api/transactions/{transaction_id}")
def update_transaction(
    transaction_id: int,
    payload: TransactionPatch,
    user: Identity = Depends(current_user),
    db: Session = Depends(get_db),
):
    txn = TransactionService(db, user.id).update(transaction_id, payload)
    return ok(dump(TransactionOut, txn), "Transaction updated")


@app.delete("/api/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: int,
    user: Identity = Depends(current_user),
    db: Session = Depends(get_db),
):
    TransactionService(db, user.id).delete(transaction_id)
    return ok(message="Transaction deleted")


# Budgets


@app.get("/api/budgets")
def list_budgets(
    user: Identity = Depends(current_user), db: Session = Depends(get_db)
):
    return ok(dump_all(BudgetOut, BudgetService(db, user.id).list()))


@app.post("/api/budgets", status_code=201)
def create_budget(
    payload: BudgetIn,
    user: Identity = Depends(current_user),
    db: Session = Depends(get_db),
):
    budget = BudgetService(db, user.id).create(payload)
    return ok(dump(BudgetOut, budget), "Budget created", 201)


@app.get("/api/budgets/month/{month}/year/{year}")
def get_budget_for_month(
    month: int,
    year: int,
    user: Identity = Depends(current_user),
    db: Session = Depends(get_db),
):
    budget = BudgetService(db, user.id).get_for_month(month, year)
    return ok(dump(BudgetOut, budget))


@app.put("/api/budgets/month/{month}/year/{year}/update-spent")
def refresh_budget_spent(
    month: int,
    year: int,
    user: Identity = Depends(current_user),
    db: Session = Depends(get_db),
):
    spent = BudgetService(db, user.id).refresh_spent(month, year)
    return ok(
        {"month": month, "year": year, "spent_cents": spent}, "Budget spend updated"
    )


@app.get("/api/budgets/{budget_id}")
def get_budget(
    budget_id: int,
    user: Identity = Depends(current_user),
    db: Session = Depends(get_db),
):
    return ok(dump(BudgetOut, BudgetService(db, user.id).get(budget_id)))


@app.put("/api/budgets/{budget_id}")
def update_budget(
    budget_id: int,
    payload: BudgetPatch,
    user: Identity = Depends(current_user),
    db: Session = Depends(get_db),
):
    budget = BudgetService(db, user.id).update(budget_id, payload)
    return ok(dump(BudgetOut, budget), "Budget updated")


@app.delete("/api/budgets/{budget_id}")
def delete_budget(
    budget_id: int,
    user: Identity = Depends(current_user),
    db: Session = Depends(get_db),
):
    BudgetService(db, user.id).delete(budget_id)
    return ok(message="Budget deleted")


# Goals


@app.get("/api/goals")
def list_goals(user: Identity = Depends(current_user), db: Session = Depends(get_db)):
    return ok(dump_all(GoalOut, GoalService(db, user.id).list()))


@app.post("/api/goals", status_code=201)
def create_goal(
    payload: GoalIn,
    user: Identity = Depends(current_user),
    db: Session = Depends(get_db),
):
    goal = GoalService(db, user.id).create(payload)
    return ok(dump(GoalOut, goal), "Goal created", 201)


@app.get("/api/goals/{goal_id}")
def get_goal(
    goal_id: int,
    user: Identity = Depends(current_user),
    db: Session = Depends(get_db),
):
    return ok(dump(GoalOut, GoalService(db, user.id).get(goal_id)))


@app.put("/api/goals/{goal_id}")
def update_goal(
    goal_id: int,
    payload: GoalPatch,
    user: Identity = Depends(current_user),
    db: Session = Depends(get_db),
):
    goal = GoalService(db, user.id).update(goal_id, payload)
    return ok(dump(GoalOut, goal), "Goal updated")


@app.delete("/api/goals/{goal_id}")
def delete_goal(
    goal_id: int,
    user: Identity = Depends(current_user),
    db: Session = Depends(get_db),
):
    GoalService(db, user.id).delete(goal_id)
    return ok(message="Goal deleted")


@app.get("/api/goals/{goal_id}/progress")
def goal_progress(
    goal_id: int,
    user: Identity = Depends(current_user),
    db: Session = Depends(get_db),
):
    return ok(GoalService(db, user.id).progress(goal_id))


# Dashboard


@app.get("/api/dashboard")
def dashboard(user: Identity = Depends(current_user), db: Session = Depends(get_db)):
    return ok(DashboardService(db, user.id).summary())


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
