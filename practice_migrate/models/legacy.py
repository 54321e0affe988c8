"""Typed legacy record variants, one per source table.

Raw rows leave the reader as :class:`~practice_migrate.models.record.SourceRow`
maps; the record validator turns each into exactly one of the models below
(or quarantines it). Nothing downstream of the validator sees untyped rows.
"""

import re
from datetime import date, datetime, time
from decimal import Decimal
from typing import Annotated, Any, ClassVar, Dict, Literal, Optional, Set, Type, Union

from dateutil import parser as date_parser
from pydantic import BaseModel, ConfigDict, Field, PositiveInt, StringConstraints, field_validator
from pydantic.functional_validators import BeforeValidator

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _parse_datetime(value: Any) -> Any:
    if value is None or isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime.combine(value, time())
    if isinstance(value, str):
        if not value.strip():
            return None
        try:
            return date_parser.parse(value)
        except (ValueError, OverflowError) as e:
            # dateutil raises OverflowError for huge numeric strings; pydantic only collects ValueError.
            raise ValueError(f"invalid date: {value!r}") from e
    return value


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str) and not value.strip():
        return None
    return value


LegacyDateTime = Annotated[datetime, BeforeValidator(_parse_datetime)]
OptionalDateTime = Annotated[Optional[datetime], BeforeValidator(_parse_datetime)]


def optional_text(max_length: Optional[int] = None) -> Any:
    """Nullable text column; blank strings read as NULL."""
    return Annotated[
        Optional[Annotated[str, StringConstraints(max_length=max_length)]],
        BeforeValidator(_blank_to_none),
    ]


class LegacyRecord(BaseModel):
    """Base for all legacy variants: immutable, tagged with its source table."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    source_table: ClassVar[str] = ""

    id: int = Field(gt=0)

    @property
    def source_id(self) -> int:
        return self.id

    @property
    def ref(self) -> str:
        return f"{self.source_table}:{self.id}"

    @classmethod
    def expected_columns(cls) -> Set[str]:
        """Columns the source table must expose (fields without a default)."""
        return {name for name, info in cls.model_fields.items() if info.is_required()}


class LegacyUser(LegacyRecord):
    source_table: ClassVar[str] = "auth_user"

    username: str = Field(min_length=1, max_length=150)
    first_name: str = Field(default="", max_length=150)
    last_name: str = Field(default="", max_length=150)
    email: optional_text() = None
    is_superuser: bool = False
    is_staff: bool = False
    is_active: bool = True
    last_login: OptionalDateTime = None
    date_joined: LegacyDateTime

    @field_validator("first_name", "last_name", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not EMAIL_PATTERN.match(value):
            raise ValueError(f"invalid email address: {value!r}")
        return value


class LegacyOffice(LegacyRecord):
    source_table: ClassVar[str] = "dispatch_office"

    name: str = Field(min_length=1, max_length=200)
    address: optional_text(500) = None
    apt: optional_text(50) = None
    city: optional_text(100) = None
    state: optional_text(50) = None
    zip: optional_text(20) = None
    phone: optional_text(20) = None
    fax: optional_text(20) = None
    active: bool = True
    timezone: optional_text(50) = None
    created_at: LegacyDateTime
    updated_at: LegacyDateTime


class LegacyPatient(LegacyRecord):
    source_table: ClassVar[str] = "dispatch_patient"

    user_id: int = Field(gt=0)
    doctor_id: Optional[PositiveInt] = None
    birthdate: OptionalDateTime = None
    sex: Optional[Literal["M", "F", "O"]] = None
    status: int = Field(ge=0, le=10)
    archived: bool = False
    phone: optional_text(20) = None
    address: optional_text(500) = None
    emergency_contact: optional_text(200) = None
    insurance_info: optional_text(1000) = None
    medical_notes: optional_text() = None
    created_at: LegacyDateTime
    updated_at: LegacyDateTime

    @field_validator("sex", mode="before")
    @classmethod
    def _normalize_sex(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip().upper()
            return value or None
        return value


class LegacyCourse(LegacyRecord):
    source_table: ClassVar[str] = "dispatch_course"

    name: str = Field(min_length=1, max_length=200)
    description: optional_text() = None
    category: optional_text(100) = None
    base_price: Decimal = Field(default=Decimal("0"), ge=0)
    duration_days: int = Field(default=1, ge=1)
    active: bool = True
    created_at: LegacyDateTime
    updated_at: LegacyDateTime


def _default_priority(value: Any) -> Any:
    if value is None or (isinstance(value, str) and not value.strip()):
        return "normal"
    return value.strip().lower() if isinstance(value, str) else value


class LegacyInstruction(LegacyRecord):
    source_table: ClassVar[str] = "dispatch_instruction"

    patient_id: int = Field(gt=0)
    doctor_id: Optional[PositiveInt] = None
    office_id: Optional[PositiveInt] = None
    course_id: Optional[PositiveInt] = None
    description: optional_text() = None
    notes: optional_text() = None
    price: Optional[Decimal] = None
    status: int = Field(ge=0, le=10)
    priority: Annotated[Literal["low", "normal", "high", "urgent"], BeforeValidator(_default_priority)] = "normal"
    due_date: OptionalDateTime = None
    completed_at: OptionalDateTime = None
    archived: bool = False
    external_id: optional_text(100) = None
    created_at: LegacyDateTime
    updated_at: LegacyDateTime


class LegacyOrder(LegacyRecord):
    source_table: ClassVar[str] = "dispatch_order"

    instruction_id: int = Field(gt=0)
    order_number: str = Field(min_length=1, max_length=50)
    tracking_number: optional_text(100) = None
    shipping_address: optional_text(1000) = None
    billing_address: optional_text(1000) = None
    payment_status: Literal["pending", "paid", "failed", "refunded"] = "pending"
    shipping_status: Literal["pending", "processing", "shipped", "delivered"] = "pending"
    total_amount: Decimal = Field(ge=0)
    tax_amount: Decimal = Field(default=Decimal("0"), ge=0)
    shipping_cost: Decimal = Field(default=Decimal("0"), ge=0)
    created_at: LegacyDateTime
    updated_at: LegacyDateTime

    @field_validator("payment_status", "shipping_status", mode="before")
    @classmethod
    def _default_status(cls, value: Any) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            return "pending"
        return value

    @field_validator("tax_amount", "shipping_cost", mode="before")
    @classmethod
    def _default_amount(cls, value: Any) -> Any:
        return Decimal("0") if value is None else value


class LegacyCommunication(LegacyRecord):
    """A ``dispatch_record`` row: note, message or call attached to any object."""

    source_table: ClassVar[str] = "dispatch_record"

    content_type_id: int = Field(gt=0)
    object_id: int = Field(gt=0)
    user_id: Optional[PositiveInt] = None
    record_type: Literal["note", "message", "call", "email", "sms", "system"]
    subject: optional_text(500) = None
    content: optional_text() = None
    metadata: optional_text() = None
    priority: Annotated[Literal["low", "normal", "high", "urgent"], BeforeValidator(_default_priority)] = "normal"
    status: Literal["draft", "sent", "delivered", "read", "archived"] = "draft"
    parent_id: Optional[PositiveInt] = None
    created_at: LegacyDateTime
    updated_at: LegacyDateTime


class LegacyContentType(LegacyRecord):
    source_table: ClassVar[str] = "django_content_type"

    app_label: str = Field(min_length=1)
    model: str = Field(min_length=1)


class LegacyState(LegacyRecord):
    """A ``dispatch_state`` row: one status change of an instruction."""

    source_table: ClassVar[str] = "dispatch_state"

    instruction_id: int = Field(gt=0)
    status: int = Field(ge=0, le=10)
    on: bool = True
    changed_at: LegacyDateTime
    actor_id: Optional[PositiveInt] = None


LegacyVariant = Union[
    LegacyUser,
    LegacyOffice,
    LegacyPatient,
    LegacyCourse,
    LegacyInstruction,
    LegacyOrder,
    LegacyCommunication,
    LegacyContentType,
    LegacyState,
]

LEGACY_MODELS: Dict[str, Type[LegacyRecord]] = {
    model.source_table: model
    for model in (
        LegacyUser,
        LegacyOffice,
        LegacyPatient,
        LegacyCourse,
        LegacyInstruction,
        LegacyOrder,
        LegacyCommunication,
        LegacyContentType,
        LegacyState,
    )
}


def model_for(table: str) -> Type[LegacyRecord]:
    try:
        return LEGACY_MODELS[table]
    except KeyError:
        raise KeyError(f"Unknown legacy table: {table}") from None
