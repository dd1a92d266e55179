import logging
import time
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from json import JSONDecodeError
from pathlib import Path
from typing import Any, Iterator, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import get_settings
from database import SessionLocal, dispose_engine, session_scope
from models import Category, Expense, User
from schemas import (
    CategoryIn,
    ExpenseIn,
    ExpenseQuery,
    ExpenseUpdateIn,
    LoginIn,
    MonthlyReportQuery,
    MonthReportQuery,
    RecordIdParams,
    RegisterIn,
)
from security import Identity, decode_token
from services import (
    AuthenticationError,
    CategoryService,
    ConflictError,
    ExpenseFilters,
    ExpenseService,
    InvalidOperationError,
    NotFoundError,
    ReportService,
    UserService,
)
from validation import validate_input

settings = get_settings()
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)
access_logger = logging.getLogger("expenses.access")

app = FastAPI(title="Expense Tracker API")
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials="*" not in settings.cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _load_app_version() -> str:
    import tomllib

    try:
        with open(Path(__file__).with_name("pyproject.toml"), "rb") as f:
            data = tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError):
        return "unknown"
    return str(data.get("project", {}).get("version", "unknown"))


APP_VERSION = _load_app_version()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@app.on_event("startup")
def startup_event():
    logger.info(f"startup: version={APP_VERSION}")


@app.on_event("shutdown")
def shutdown_event():
    dispose_engine()


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started) * 1000
    access_logger.info(
        f"{request.method} {request.url.path} {response.status_code} "
        f"{elapsed_ms:.1f}ms"
    )
    return response


SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
    "Cross-Origin-Resource-Policy": "same-origin",
}


@app.middleware("http")
async def security_headers(request: Request, call_next):
    response = await call_next(request)
    for header, value in SECURITY_HEADERS.items():
        response.headers.setdefault(header, value)
    return response


@app.exception_handler(Exception)
async def unhandled_exception(request: Request, exc: Exception):
    logger.exception(f"unhandled_error: path={request.url.path}")
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


def get_current_user(authorization: Optional[str] = Header(default=None)) -> Identity:
    parts = authorization.split() if authorization else []
    token = parts[1] if len(parts) > 1 else None
    if not token:
        logger.warning("auth_rejected: reason=missing_token")
        raise HTTPException(status_code=401, detail="Access denied. No token provided.")
    identity = decode_token(token)
    if identity is None:
        logger.warning("auth_rejected: reason=invalid_token")
        raise HTTPException(status_code=403, detail="Invalid or expired token.")
    return identity


@contextmanager
def service_errors(action: str) -> Iterator[None]:
    try:
        yield
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except InvalidOperationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except AuthenticationError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    except SQLAlchemyError as exc:
        logger.exception(f"{action}_failed: store error")
        raise HTTPException(status_code=500, detail="Internal server error") from exc


def validated(model: type[BaseModel], raw: Optional[dict[str, Any]]) -> Any:
    value, issues = validate_input(model, raw)
    if issues:
        raise HTTPException(
            status_code=400, detail=[issue.as_dict() for issue in issues]
        )
    return value


def record_id(raw: str) -> int:
    params = validated(RecordIdParams, {"id": raw})
    return params.id


async def read_json(request: Request) -> Any:
    try:
        return await request.json()
    except (JSONDecodeError, UnicodeDecodeError) as exc:
        raise HTTPException(status_code=400, detail="Invalid JSON body") from exc


def _iso(value: datetime) -> str:
    return value.isoformat(timespec="milliseconds") + "Z"


def _money(value: Decimal) -> float:
    return float(value)


def user_json(user: User) -> dict[str, object]:
    return {"id": user.id, "email": user.email, "name": user.name}


def category_json(category: Category) -> dict[str, object]:
    return {
        "id": category.id,
        "name": category.name,
        "userId": category.user_id,
        "createdAt": _iso(category.created_at),
        "updatedAt": _iso(category.updated_at),
    }


def expense_json(expense: Expense) -> dict[str, object]:
    return {
        "id": expense.id,
        "amount": _money(expense.amount),
        "description": expense.description,
        "date": _iso(expense.date),
        "category": expense.category,
        "userId": expense.user_id,
        "createdAt": _iso(expense.created_at),
        "updatedAt": _iso(expense.updated_at),
    }


@app.get("/")
def health():
    logger.info("health_check")
    return {"status": "API is running", "version": APP_VERSION}


@app.get("/db-test")
def db_test():
    try:
        with session_scope() as session:
            count = UserService(session).count()
    except SQLAlchemyError:
        logger.exception("db_test_failed")
        return JSONResponse(
            status_code=500, content={"detail": "Database connection failed"}
        )
    logger.info(f"db_test: users={count}")
    return {"status": "Database connected", "userCount": count}


@app.post("/api/auth/register", status_code=201)
async def register(request: Request, db: Session = Depends(get_db)):
    data = validated(RegisterIn, await read_json(request))
    with service_errors("register"):
        user = UserService(db).register(data)
    return {"message": "User registered successfully", "user": user_json(user)}


@app.post("/api/auth/login")
async def login(request: Request, db: Session = Depends(get_db)):
    data = validated(LoginIn, await read_json(request))
    with service_errors("login"):
        token = UserService(db).login(data)
    return {"message": "Login successful", "token": token}


@app.post("/api/categories", status_code=201)
async def create_category(
    request: Request,
    identity: Identity = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    data = validated(CategoryIn, await read_json(request))
    with service_errors("create_category"):
        category = CategoryService(db, identity.user_id).create(data)
    return category_json(category)


@app.get("/api/categories")
def list_categories(
    identity: Identity = Depends(get_current_user), db: Session = Depends(get_db)
):
    with service_errors("list_categories"):
        categories = CategoryService(db, identity.user_id).list_all()
    return [category_json(c) for c in categories]


@app.put("/api/categories/{category_id}")
async def update_category(
    category_id: str,
    request: Request,
    identity: Identity = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    cid = record_id(category_id)
    data = validated(CategoryIn, await read_json(request))
    with service_errors("update_category"):
        category = CategoryService(db, identity.user_id).rename(cid, data)
    return category_json(category)


@app.delete("/api/categories/{category_id}")
def delete_category(
    category_id: str,
    identity: Identity = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    cid = record_id(category_id)
    with service_errors("delete_category"):
        CategoryService(db, identity.user_id).delete(cid)
    return {"message": "Category deleted successfully"}


@app.post("/api/expenses", status_code=201)
async def create_expense(
    request: Request,
    identity: Identity = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    data = validated(ExpenseIn, await read_json(request))
    with service_errors("create_expense"):
        expense = ExpenseService(db, identity.user_id).create(data)
    return expense_json(expense)


@app.get("/api/expenses")
def list_expenses(
    request: Request,
    identity: Identity = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    query = validated(ExpenseQuery, dict(request.query_params))
    filters = ExpenseFilters(
        start_date=query.start_date,
        end_date=query.end_date,
        min_amount=query.min_amount,
        max_amount=query.max_amount,
        category=query.category,
    )
    with service_errors("list_expenses"):
        page = ExpenseService(db, identity.user_id).list(
            filters, page=query.page, limit=query.limit
        )
    return {
        "data": [expense_json(e) for e in page.items],
        "pagination": {
            "total": page.total,
            "page": page.page,
            "limit": page.limit,
            "totalPages": page.total_pages,
        },
    }


@app.get("/api/expenses/{expense_id}")
def get_expense(
    expense_id: str,
    identity: Identity = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    eid = record_id(expense_id)
    with service_errors("get_expense"):
        expense = ExpenseService(db, identity.user_id).get(eid)
    return expense_json(expense)


@app.put("/api/expenses/{expense_id}")
async def update_expense(
    expense_id: str,
    request: Request,
    identity: Identity = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    eid = record_id(expense_id)
    data = validated(ExpenseUpdateIn, await read_json(request))
    with service_errors("update_expense"):
        expense = ExpenseService(db, identity.user_id).update(eid, data)
    return expense_json(expense)


@app.delete("/api/expenses/{expense_id}")
def delete_expense(
    expense_id: str,
    identity: Identity = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    eid = record_id(expense_id)
    with service_errors("delete_expense"):
        ExpenseService(db, identity.user_id).delete(eid)
    return {"message": "Expense deleted successfully"}


@app.get("/api/reports/monthly")
def monthly_report(
    request: Request,
    identity: Identity = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    query = validated(MonthlyReportQuery, dict(request.query_params))
    with service_errors("monthly_report"):
        report = ReportService(db, identity.user_id).monthly_totals(query.year)
    return {
        "year": report.year,
        "data": [{"month": m.name, "total": _money(m.total)} for m in report.months],
        "totalSpent": _money(report.total_spent),
    }


@app.get("/api/reports/month")
def month_report(
    request: Request,
    identity: Identity = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    query = validated(MonthReportQuery, dict(request.query_params))
    with service_errors("month_report"):
        report = ReportService(db, identity.user_id).month_report(
            query.year, query.month
        )
    return {
        "month": report.name,
        "year": report.year,
        "totalSpent": _money(report.total_spent),
        "expenses": [
            {
                "id": e.id,
                "amount": _money(e.amount),
                "date": _iso(e.date),
                "description": e.description,
                "category": e.category,
            }
            for e in report.expenses
        ],
    }


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
