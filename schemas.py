"""
Request schemas for the JSON API.

Payloads use camelCase keys (``clientId``, ``isCompleted``); the models expose
snake_case attributes so ``model_dump()`` maps straight onto the ORM columns.
Unknown keys, including server-managed ones such as ``createdAt`` or
``completedAt``, are dropped.
"""

from datetime import datetime
from decimal import Decimal
from typing import Annotated, ClassVar, Optional, Tuple

from pydantic import AfterValidator, BaseModel, ConfigDict, EmailStr, Field, model_validator
from pydantic.alias_generators import to_camel

from models import PaymentStatus, ProjectStatus, TaskPriority


def _to_local_naive(value: datetime) -> datetime:
    # Stored timestamps are naive server-local time
    if value.tzinfo is not None:
        return value.astimezone().replace(tzinfo=None)
    return value


LocalDateTime = Annotated[datetime, AfterValidator(_to_local_naive)]
Money = Annotated[Decimal, Field(max_digits=10, decimal_places=2)]
NonNegativeMoney = Annotated[Decimal, Field(ge=0, max_digits=10, decimal_places=2)]
Name = Annotated[str, Field(min_length=2)]
# Largest value SQLite can store in an INTEGER column
MAX_ID = 2**63 - 1

ForeignKey = Annotated[int, Field(ge=1, le=MAX_ID)]


class _Schema(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class _PartialSchema(_Schema):
    """Base for update payloads: every field may be omitted, but columns that
    are NOT NULL in the database may not be set to null explicitly."""

    not_null: ClassVar[Tuple[str, ...]] = ()

    @model_validator(mode="before")
    @classmethod
    def _reject_nulls(cls, data):
        if isinstance(data, dict):
            for field in cls.not_null:
                alias = to_camel(field)
                if (alias in data and data[alias] is None) or (field in data and data[field] is None):
                    raise ValueError(f"{alias} cannot be null")
        return data


class ClientInsert(_Schema):
    name: Name
    email: EmailStr
    phone: Optional[str] = None
    company: Optional[str] = None
    notes: Optional[str] = None


class ClientUpdate(_PartialSchema):
    not_null = ("name", "email")

    name: Optional[Name] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    company: Optional[str] = None
    notes: Optional[str] = None


class ProjectInsert(_Schema):
    title: Name
    description: Optional[str] = None
    client_id: ForeignKey
    status: ProjectStatus = ProjectStatus.IN_PROGRESS
    deadline: Optional[LocalDateTime] = None
    amount: Optional[Money] = None
    notes: Optional[str] = None


class ProjectUpdate(_PartialSchema):
    not_null = ("title", "client_id", "status")

    title: Optional[Name] = None
    description: Optional[str] = None
    client_id: Optional[ForeignKey] = None
    status: Optional[ProjectStatus] = None
    deadline: Optional[LocalDateTime] = None
    amount: Optional[Money] = None
    notes: Optional[str] = None


class TaskInsert(_Schema):
    title: Name
    description: Optional[str] = None
    project_id: ForeignKey
    priority: TaskPriority = TaskPriority.MEDIUM
    deadline: Optional[LocalDateTime] = None
    is_completed: bool = False


class TaskUpdate(_PartialSchema):
    not_null = ("title", "project_id", "priority", "is_completed")

    title: Optional[Name] = None
    description: Optional[str] = None
    project_id: Optional[ForeignKey] = None
    priority: Optional[TaskPriority] = None
    deadline: Optional[LocalDateTime] = None
    is_completed: Optional[bool] = None


class PaymentInsert(_Schema):
    invoice_number: Annotated[str, Field(min_length=1)]
    project_id: ForeignKey
    amount: NonNegativeMoney
    payment_method: Optional[str] = None
    status: PaymentStatus = PaymentStatus.PENDING
    due_date: Optional[LocalDateTime] = None
    notes: Optional[str] = None


class PaymentUpdate(_PartialSchema):
    not_null = ("invoice_number", "project_id", "amount", "status")

    invoice_number: Optional[Annotated[str, Field(min_length=1)]] = None
    project_id: Optional[ForeignKey] = None
    amount: Optional[NonNegativeMoney] = None
    payment_method: Optional[str] = None
    status: Optional[PaymentStatus] = None
    due_date: Optional[LocalDateTime] = None
    notes: Optional[str] = None


class UserInsert(_Schema):
    username: Annotated[str, Field(min_length=1)]
    password: Annotated[str, Field(min_length=1)]
