import datetime as dt
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    EmailStr,
    Field,
    ValidationInfo,
    field_validator,
)

DATE_ONLY_LENGTH = len("YYYY-MM-DD")


def _coerce_moment(value: Any, *, end_of_day: bool = False) -> Any:
    """Turn a bare ``YYYY-MM-DD`` into a datetime, leave the rest to pydantic."""
    if isinstance(value, str) and len(value.strip()) == DATE_ONLY_LENGTH:
        try:
            day = dt.date.fromisoformat(value.strip())
        except ValueError:
            return value
        if end_of_day:
            return datetime(day.year, day.month, day.day, 23, 59, 59, 999000)
        return datetime(day.year, day.month, day.day)
    return value


def _as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    try:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    except OverflowError as exc:
        raise ValueError("Date is out of the supported range") from exc


class RegisterIn(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=6)
    name: Optional[str] = Field(default=None, min_length=2, max_length=100)


class LoginIn(BaseModel):
    email: EmailStr
    password: str


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)

    @field_validator("name", mode="before")
    @classmethod
    def _strip_name(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value


class ExpenseIn(BaseModel):
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    description: Optional[str] = None
    date: datetime
    category: Optional[str] = Field(default=None, max_length=100)

    @field_validator("date", mode="before")
    @classmethod
    def _date_only(cls, value: Any) -> Any:
        return _coerce_moment(value)

    @field_validator("date")
    @classmethod
    def _to_utc(cls, value: datetime) -> datetime:
        return _as_naive_utc(value)


class ExpenseUpdateIn(BaseModel):
    """Partial update; only the fields present in the body are applied."""

    amount: Optional[Decimal] = Field(
        default=None, gt=0, max_digits=12, decimal_places=2
    )
    description: Optional[str] = None
    date: Optional[datetime] = None
    category: Optional[str] = Field(default=None, max_length=100)

    @field_validator("date", mode="before")
    @classmethod
    def _date_only(cls, value: Any) -> Any:
        return _coerce_moment(value)

    # validators only run on values present in the body, so None here was sent
    @field_validator("amount")
    @classmethod
    def _amount_not_null(cls, value: Optional[Decimal]) -> Decimal:
        if value is None:
            raise ValueError("Amount cannot be null")
        return value

    @field_validator("date")
    @classmethod
    def _to_utc(cls, value: Optional[datetime]) -> datetime:
        if value is None:
            raise ValueError("Date cannot be null")
        return _as_naive_utc(value)

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class RecordIdParams(BaseModel):
    id: int = Field(..., gt=0)


class ExpenseQuery(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    page: int = Field(default=1, ge=1)
    limit: int = Field(default=10, ge=1, le=100)
    start_date: Optional[datetime] = Field(default=None, alias="startDate")
    end_date: Optional[datetime] = Field(default=None, alias="endDate")
    min_amount: Optional[Decimal] = Field(default=None, alias="minAmount")
    max_amount: Optional[Decimal] = Field(default=None, alias="maxAmount")
    category: Optional[str] = Field(default=None, max_length=100)

    @field_validator("start_date", mode="before")
    @classmethod
    def _start_of_day(cls, value: Any) -> Any:
        return _coerce_moment(value)

    @field_validator("end_date", mode="before")
    @classmethod
    def _end_of_day(cls, value: Any) -> Any:
        return _coerce_moment(value, end_of_day=True)

    @field_validator("start_date")
    @classmethod
    def _start_to_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_naive_utc(value)

    @field_validator("end_date")
    @classmethod
    def _end_after_start(
        cls, value: Optional[datetime], info: ValidationInfo
    ) -> Optional[datetime]:
        value = _as_naive_utc(value)
        start = info.data.get("start_date")
        if value is not None and start is not None and start > value:
            raise ValueError("endDate must not be before startDate")
        return value

    @field_validator("max_amount")
    @classmethod
    def _max_above_min(
        cls, value: Optional[Decimal], info: ValidationInfo
    ) -> Optional[Decimal]:
        low = info.data.get("min_amount")
        if value is not None and low is not None and low > value:
            raise ValueError("maxAmount must not be less than minAmount")
        return value


class MonthlyReportQuery(BaseModel):
    year: Optional[int] = Field(default=None, ge=1900, le=9999)


class MonthReportQuery(BaseModel):
    year: Optional[int] = Field(default=None, ge=1900, le=9999)
    month: Optional[int] = Field(default=None, ge=1, le=12)
