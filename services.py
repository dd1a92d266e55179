from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional, TypeVar

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models import Category, Expense, User
from periods import Period, month_name, month_period, utc_today, year_period
from schemas import CategoryIn, ExpenseIn, ExpenseUpdateIn, LoginIn, RegisterIn
from security import Identity, hash_password, issue_token, verify_password

logger = logging.getLogger(__name__)

OwnedT = TypeVar("OwnedT", Category, Expense)

CATEGORY_IN_USE = "Cannot delete category because it is used in existing expenses"


class NotFoundError(ValueError):
    pass


class ConflictError(ValueError):
    pass


class InvalidOperationError(ValueError):
    pass


class AuthenticationError(ValueError):
    pass


def get_owned(
    session: Session, model: type[OwnedT], record_id: int, owner_id: int
) -> Optional[OwnedT]:
    """Fetch a record only if it belongs to ``owner_id``.

    Another user's record is indistinguishable from a missing one.
    """
    stmt = select(model).where(model.id == record_id, model.user_id == owner_id)
    return session.scalar(stmt)


@dataclass
class ExpenseFilters:
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None
    category: Optional[str] = None


@dataclass
class ExpensePage:
    items: list[Expense]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit)


@dataclass
class MonthTotal:
    month: int
    name: str
    total: Decimal


@dataclass
class YearReport:
    year: int
    months: list[MonthTotal]

    @property
    def total_spent(self) -> Decimal:
        return sum((m.total for m in self.months), Decimal("0"))


@dataclass
class MonthReport:
    year: int
    month: int
    name: str
    total_spent: Decimal
    expenses: list[Expense]


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def register(self, data: RegisterIn) -> User:
        email = str(data.email)
        existing = self.session.scalar(select(User).where(User.email == email))
        if existing:
            logger.warning(f"register_rejected: email={email} reason=exists")
            raise ConflictError("User already exists")

        user = User(
            email=email,
            password_hash=hash_password(data.password),
            name=data.name,
        )
        self.session.add(user)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise ConflictError("User already exists") from exc
        self.session.refresh(user)
        logger.info(f"user_registered: user_id={user.id}")
        return user

    def authenticate(self, data: LoginIn) -> Identity:
        email = str(data.email)
        user = self.session.scalar(select(User).where(User.email == email))
        if not user:
            logger.warning(f"login_failed: email={email} reason=unknown_email")
            raise AuthenticationError("Invalid credentials")
        if not verify_password(data.password, user.password_hash):
            logger.warning(f"login_failed: email={email} reason=bad_password")
            raise AuthenticationError("Invalid credentials")
        logger.info(f"user_logged_in: user_id={user.id}")
        return Identity(user_id=user.id, email=user.email)

    def login(self, data: LoginIn) -> str:
        return issue_token(self.authenticate(data))

    def count(self) -> int:
        return int(self.session.execute(select(func.count(User.id))).scalar_one())


class CategoryService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _get(self, category_id: int) -> Category:
        category = get_owned(self.session, Category, category_id, self.user_id)
        if not category:
            raise NotFoundError("Category not found")
        return category

    def _name_taken(self, name: str, *, exclude_id: Optional[int] = None) -> bool:
        stmt = select(Category.id).where(
            Category.user_id == self.user_id, Category.name == name
        )
        if exclude_id is not None:
            stmt = stmt.where(Category.id != exclude_id)
        return self.session.scalar(stmt) is not None

    def _relink_expenses(self, category: Category) -> None:
        # category_id mirrors an exact label match against the owner's names
        self.session.execute(
            update(Expense)
            .where(
                Expense.user_id == self.user_id,
                Expense.category_id == category.id,
                Expense.category != category.name,
            )
            .values(category_id=None)
        )
        self.session.execute(
            update(Expense)
            .where(
                Expense.user_id == self.user_id,
                Expense.category_id.is_(None),
                Expense.category == category.name,
            )
            .values(category_id=category.id)
        )

    def list_all(self) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.name.asc(), Category.id.asc())
        )
        return list(self.session.scalars(stmt).all())

    def create(self, data: CategoryIn) -> Category:
        if self._name_taken(data.name):
            raise ConflictError("Category with this name already exists")
        category = Category(user_id=self.user_id, name=data.name)
        self.session.add(category)
        try:
            self.session.flush()
            self._relink_expenses(category)
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise ConflictError("Category with this name already exists") from exc
        self.session.refresh(category)
        logger.info(
            f"category_created: user_id={self.user_id} category_id={category.id}"
        )
        return category

    def rename(self, category_id: int, data: CategoryIn) -> Category:
        category = self._get(category_id)
        if self._name_taken(data.name, exclude_id=category.id):
            raise ConflictError("Category with this name already exists")
        category.name = data.name
        try:
            self.session.flush()
            self._relink_expenses(category)
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise ConflictError("Category with this name already exists") from exc
        self.session.refresh(category)
        logger.info(
            f"category_updated: user_id={self.user_id} category_id={category.id}"
        )
        return category

    def delete(self, category_id: int) -> None:
        category = self._get(category_id)
        self.session.delete(category)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            logger.info(
                f"category_delete_blocked: user_id={self.user_id} "
                f"category_id={category_id}"
            )
            raise InvalidOperationError(CATEGORY_IN_USE) from exc
        logger.info(
            f"category_deleted: user_id={self.user_id} category_id={category_id}"
        )


class ExpenseService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _category_id_for(self, label: Optional[str]) -> Optional[int]:
        if not label:
            return None
        return self.session.scalar(
            select(Category.id).where(
                Category.user_id == self.user_id, Category.name == label
            )
        )

    def create(self, data: ExpenseIn) -> Expense:
        expense = Expense(
            user_id=self.user_id,
            amount=data.amount,
            description=data.description,
            date=data.date,
            category=data.category,
            category_id=self._category_id_for(data.category),
        )
        self.session.add(expense)
        self.session.commit()
        self.session.refresh(expense)
        logger.info(f"expense_created: user_id={self.user_id} expense_id={expense.id}")
        return expense

    def get(self, expense_id: int) -> Expense:
        expense = get_owned(self.session, Expense, expense_id, self.user_id)
        if not expense:
            raise NotFoundError("Expense not found")
        return expense

    def update(self, expense_id: int, data: ExpenseUpdateIn) -> Expense:
        expense = self.get(expense_id)
        changes = data.changes()
        for field, value in changes.items():
            setattr(expense, field, value)
        if "category" in changes:
            expense.category_id = self._category_id_for(expense.category)
        self.session.commit()
        self.session.refresh(expense)
        logger.info(
            f"expense_updated: user_id={self.user_id} expense_id={expense.id} "
            f"fields={sorted(changes)}"
        )
        return expense

    def delete(self, expense_id: int) -> None:
        expense = self.get(expense_id)
        self.session.delete(expense)
        self.session.commit()
        logger.info(f"expense_deleted: user_id={self.user_id} expense_id={expense_id}")

    def _filtered(self, stmt, filters: ExpenseFilters):
        stmt = stmt.where(Expense.user_id == self.user_id)
        if filters.start_date is not None:
            stmt = stmt.where(Expense.date >= filters.start_date)
        if filters.end_date is not None:
            stmt = stmt.where(Expense.date <= filters.end_date)
        if filters.min_amount is not None:
            stmt = stmt.where(Expense.amount >= filters.min_amount)
        if filters.max_amount is not None:
            stmt = stmt.where(Expense.amount <= filters.max_amount)
        if filters.category:
            stmt = stmt.where(Expense.category == filters.category)
        return stmt

    def list(
        self, filters: ExpenseFilters, page: int = 1, limit: int = 10
    ) -> ExpensePage:
        offset = (page - 1) * limit
        items_stmt = (
            self._filtered(select(Expense), filters)
            .order_by(Expense.date.desc(), Expense.id.asc())
            .offset(offset)
            .limit(limit)
        )
        count_stmt = self._filtered(select(func.count(Expense.id)), filters)

        items = list(self.session.scalars(items_stmt).all())
        total = int(self.session.execute(count_stmt).scalar_one() or 0)
        return ExpensePage(items=items, total=total, page=page, limit=limit)

    def between(self, period: Period) -> list[Expense]:
        stmt = (
            select(Expense)
            .where(
                Expense.user_id == self.user_id,
                Expense.date >= period.start,
                Expense.date <= period.end,
            )
            .order_by(Expense.date.asc(), Expense.id.asc())
        )
        return list(self.session.scalars(stmt).all())


class ReportService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id
        self.expenses = ExpenseService(session, user_id)

    def monthly_totals(self, year: Optional[int] = None) -> YearReport:
        year = year or utc_today().year
        period = year_period(year)

        totals = {month: Decimal("0") for month in range(1, 13)}
        for expense in self.expenses.between(period):
            totals[expense.date.month] += Decimal(expense.amount)

        months = [
            MonthTotal(month=month, name=month_name(month), total=totals[month])
            for month in range(1, 13)
        ]
        return YearReport(year=year, months=months)

    def month_report(
        self, year: Optional[int] = None, month: Optional[int] = None
    ) -> MonthReport:
        today = utc_today()
        year = year or today.year
        month = month or today.month
        period = month_period(year, month)

        expenses = self.expenses.between(period)
        total = sum((Decimal(e.amount) for e in expenses), Decimal("0"))
        return MonthReport(
            year=year,
            month=month,
            name=month_name(month),
            total_spent=total,
            expenses=expenses,
        )
