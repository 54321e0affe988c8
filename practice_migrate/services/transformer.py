"""Transformation engine turning legacy records into target entity drafts."""

import json
import logging
import re
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Dict, Optional, Union

from dateutil import tz

from ..errors import TransformSkip
from ..models.legacy import (
    LegacyCommunication,
    LegacyContentType,
    LegacyCourse,
    LegacyInstruction,
    LegacyOffice,
    LegacyOrder,
    LegacyPatient,
    LegacyRecord,
    LegacyState,
    LegacyUser,
)
from ..models.record import RelatedRecords, Skip, TargetEntityDraft
from ..models.schema import ENTITY_PLANS, CASE_STATES, EntityType

logger = logging.getLogger(__name__)

# Legacy instruction status (0-10) -> case state.
CASE_STATE_BY_STATUS: Dict[int, str] = dict(enumerate(CASE_STATES))

PRIORITY_MAP = {
    "low": "low",
    "normal": "medium",
    "high": "high",
    "urgent": "urgent",
}

GENDER_MAP = {
    "M": "male",
    "F": "female",
    "O": "other",
}

DEFAULT_PRACTICE_TIMEZONE = "America/Chicago"
CENTS = Decimal("0.01")

TransformResult = Union[TargetEntityDraft, Skip]


def natural_key(entity_type: EntityType, source_table: str, source_id: Any) -> str:
    """Deterministic key of a target entity: ``<entity>:<table>:<id>``."""
    return f"{entity_type.value}:{source_table}:{source_id}"


def clean_phone(value: Any) -> Optional[str]:
    """Keep digits and a leading plus sign."""
    if value is None:
        return None
    cleaned = re.sub(r"[^\d+]", "", str(value))
    return cleaned or None


def money(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


def derive_order_status(payment_status: str, shipping_status: str) -> str:
    """Single order status from the legacy payment and shipping columns."""
    if payment_status in ("failed", "refunded"):
        return payment_status
    if shipping_status in ("processing", "shipped", "delivered"):
        return shipping_status
    if payment_status == "paid":
        return "paid"
    return "pending"


class TransformEngine:
    """
    Engine for transforming legacy records to target drafts.

    Each entity type has one transform function. Transforms are pure: the
    output depends only on the :class:`RelatedRecords` passed in and the
    engine's fixed settings (source timezone, currency).

    Supports:
    - Built-in transforms for every target entity
    - Custom transforms registered per entity type
    - Required join checks (missing partner -> Skip)
    - Date, phone, money and enumeration normalization
    """

    def __init__(self, source_timezone: str = "UTC", default_currency: str = "USD"):
        """
        Initialize the transform engine.

        Args:
            source_timezone: Zone naive legacy timestamps are interpreted in
            default_currency: ISO currency code for money fields
        """
        self.source_tz = tz.gettz(source_timezone)
        if self.source_tz is None:
            raise ValueError(f"Unknown timezone: {source_timezone}")
        self.default_currency = default_currency
        self._custom_transforms: Dict[EntityType, Callable[[RelatedRecords], TransformResult]] = {}
        self._builtin_transforms = self._register_builtin_transforms()

    def _register_builtin_transforms(self) -> Dict[EntityType, Callable[[RelatedRecords], TransformResult]]:
        """Register all built-in transformation functions."""
        return {
            EntityType.PRACTICE: self._transform_practice,
            EntityType.PROFILE: self._transform_profile,
            EntityType.PRACTICE_MEMBER: self._transform_practice_member,
            EntityType.PATIENT: self._transform_patient,
            EntityType.ORDER_TYPE: self._transform_order_type,
            EntityType.CASE: self._transform_case,
            EntityType.ORDER: self._transform_order,
            EntityType.CASE_MESSAGE: self._transform_case_message,
            EntityType.CASE_STATE: self._transform_case_state,
        }

    def register_transform(self, entity_type: EntityType, func: Callable[[RelatedRecords], TransformResult]) -> None:
        """Register a custom transformation function, replacing the built-in one."""
        self._custom_transforms[entity_type] = func

    def transform(self, entity_type: EntityType, related: RelatedRecords) -> TransformResult:
        """
        Transform one driving record and its join partners.

        Args:
            entity_type: Target entity type
            related: Driving legacy record with resolved joins

        Returns:
            A draft, or Skip when a mandatory join partner is missing or the
            record cannot be represented in the target schema
        """
        primary_ref = related.primary.ref
        plan = ENTITY_PLANS[entity_type]
        missing = [j.name for j in plan.joins if j.required and related.joined.get(j.name) is None]
        if missing:
            return Skip(
                reason=f"missing required {', '.join(missing)} for {primary_ref}",
                provenance=(primary_ref,),
            )

        func = self._custom_transforms.get(entity_type) or self._builtin_transforms[entity_type]
        try:
            return func(related)
        except TransformSkip as e:
            return Skip(reason=e.message, provenance=(primary_ref,))

    # ------------------------------------------------------------------
    # Normalization helpers
    # ------------------------------------------------------------------

    def to_utc(self, value: Optional[datetime]) -> Optional[str]:
        """ISO-8601 UTC timestamp; naive values are read in the source timezone."""
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=self.source_tz)
        return value.astimezone(tz.UTC).isoformat()

    def to_date(self, value: Optional[datetime]) -> Optional[str]:
        """Calendar date part, taken as recorded (birthdates carry no time)."""
        if value is None:
            return None
        return value.date().isoformat()

    def _aware(self, value: datetime) -> datetime:
        return value if value.tzinfo is not None else value.replace(tzinfo=self.source_tz)

    def _lookup(self, table: Dict[Any, str], value: Any, default: Optional[str] = None) -> Optional[str]:
        """Map value using a lookup table."""
        if value is None:
            return default
        return table.get(value, default)

    def _provenance(self, related: RelatedRecords) -> list:
        refs = [related.primary.ref]
        refs.extend(r.ref for r in related.joined.values() if isinstance(r, LegacyRecord))
        return refs

    # ------------------------------------------------------------------
    # Built-in transforms
    # ------------------------------------------------------------------

    def _transform_practice(self, related: RelatedRecords) -> TransformResult:
        office: LegacyOffice = related.primary
        return TargetEntityDraft(
            entity_type=EntityType.PRACTICE,
            natural_key=natural_key(EntityType.PRACTICE, office.source_table, office.id),
            fields={
                "name": office.name.strip(),
                "address": {
                    "street": office.address,
                    "apt": office.apt,
                    "city": office.city,
                    "state": office.state,
                    "zip_code": office.zip,
                    "country": "US",
                },
                "phone": clean_phone(office.phone),
                "fax": clean_phone(office.fax),
                "timezone": office.timezone or DEFAULT_PRACTICE_TIMEZONE,
                "is_active": office.active,
                "created_at": self.to_utc(office.created_at),
                "updated_at": self.to_utc(office.updated_at),
            },
            provenance=self._provenance(related),
        )

    def _transform_profile(self, related: RelatedRecords) -> TransformResult:
        user: LegacyUser = related.primary
        patient = related.joined.get("patient")

        if user.is_superuser:
            profile_type = "admin"
        elif user.is_staff:
            profile_type = "technician"
        elif patient is not None:
            profile_type = "patient"
        else:
            profile_type = "doctor"

        return TargetEntityDraft(
            entity_type=EntityType.PROFILE,
            natural_key=natural_key(EntityType.PROFILE, user.source_table, user.id),
            fields={
                "profile_type": profile_type,
                "username": user.username,
                "first_name": user.first_name.strip(),
                "last_name": user.last_name.strip(),
                "email": user.email.lower() if user.email else None,
                "is_active": user.is_active,
                "last_login_at": self.to_utc(user.last_login),
                "created_at": self.to_utc(user.date_joined),
            },
            provenance=self._provenance(related),
        )

    def _transform_practice_member(self, related: RelatedRecords) -> TransformResult:
        office: LegacyOffice = related.primary
        instruction: LegacyInstruction = related.joined["instruction"]
        if instruction.doctor_id is None:
            raise TransformSkip(f"no doctor recorded on {instruction.ref} to attach to {office.ref}")

        return TargetEntityDraft(
            entity_type=EntityType.PRACTICE_MEMBER,
            natural_key=natural_key(EntityType.PRACTICE_MEMBER, office.source_table, office.id),
            fields={
                "role": "doctor",
                "is_primary": True,
                "joined_at": self.to_utc(office.created_at),
            },
            references={
                "practice_id": natural_key(EntityType.PRACTICE, office.source_table, office.id),
                "profile_id": natural_key(EntityType.PROFILE, "auth_user", instruction.doctor_id),
            },
            provenance=self._provenance(related),
        )

    def _transform_patient(self, related: RelatedRecords) -> TransformResult:
        patient: LegacyPatient = related.primary
        user: LegacyUser = related.joined["user"]
        instruction: Optional[LegacyInstruction] = related.joined.get("instruction")

        practice_key = None
        if instruction is not None and instruction.office_id:
            practice_key = natural_key(EntityType.PRACTICE, "dispatch_office", instruction.office_id)

        return TargetEntityDraft(
            entity_type=EntityType.PATIENT,
            natural_key=natural_key(EntityType.PATIENT, patient.source_table, patient.id),
            fields={
                "patient_number": f"P{patient.id:06d}",
                "first_name": user.first_name.strip(),
                "last_name": user.last_name.strip(),
                "email": user.email.lower() if user.email else None,
                "date_of_birth": self.to_date(patient.birthdate),
                "gender": self._lookup(GENDER_MAP, patient.sex, "unknown"),
                "phone": clean_phone(patient.phone),
                "address": patient.address,
                "emergency_contact": patient.emergency_contact,
                "insurance_info": patient.insurance_info,
                "medical_notes": patient.medical_notes,
                "status_code": patient.status,
                "is_archived": patient.archived,
                "created_at": self.to_utc(patient.created_at),
                "updated_at": self.to_utc(patient.updated_at),
            },
            references={
                "profile_id": natural_key(EntityType.PROFILE, user.source_table, user.id),
                "practice_id": practice_key,
                "primary_doctor_id": (
                    natural_key(EntityType.PROFILE, "auth_user", patient.doctor_id) if patient.doctor_id else None
                ),
            },
            provenance=self._provenance(related),
        )

    def _transform_order_type(self, related: RelatedRecords) -> TransformResult:
        course: LegacyCourse = related.primary
        return TargetEntityDraft(
            entity_type=EntityType.ORDER_TYPE,
            natural_key=natural_key(EntityType.ORDER_TYPE, course.source_table, course.id),
            fields={
                "name": course.name.strip(),
                "description": course.description,
                "category": course.category,
                "base_price": money(course.base_price),
                "duration_days": course.duration_days,
                "is_active": course.active,
                "created_at": self.to_utc(course.created_at),
            },
            provenance=self._provenance(related),
        )

    def _transform_case(self, related: RelatedRecords) -> TransformResult:
        instruction: LegacyInstruction = related.primary
        case_number = f"C{instruction.id:06d}"
        title = (instruction.description or "").strip().splitlines()[0][:200] if instruction.description else ""

        return TargetEntityDraft(
            entity_type=EntityType.CASE,
            natural_key=natural_key(EntityType.CASE, instruction.source_table, instruction.id),
            fields={
                "case_number": case_number,
                "title": title or f"Case {case_number}",
                "description": instruction.description,
                "notes": instruction.notes,
                "current_state": CASE_STATE_BY_STATUS[instruction.status],
                "priority": self._lookup(PRIORITY_MAP, instruction.priority, "medium"),
                "custom_price": money(instruction.price),
                "due_date": self.to_utc(instruction.due_date),
                "completed_at": self.to_utc(instruction.completed_at),
                "is_archived": instruction.archived,
                "external_id": instruction.external_id,
                "created_at": self.to_utc(instruction.created_at),
                "updated_at": self.to_utc(instruction.updated_at),
            },
            references={
                "patient_id": natural_key(EntityType.PATIENT, "dispatch_patient", instruction.patient_id),
                "practice_id": (
                    natural_key(EntityType.PRACTICE, "dispatch_office", instruction.office_id)
                    if instruction.office_id else None
                ),
                "assigned_practitioner_id": (
                    natural_key(EntityType.PROFILE, "auth_user", instruction.doctor_id)
                    if instruction.doctor_id else None
                ),
            },
            provenance=self._provenance(related),
        )

    def _transform_order(self, related: RelatedRecords) -> TransformResult:
        order: LegacyOrder = related.primary
        instruction: LegacyInstruction = related.joined["instruction"]

        total = money(order.total_amount)
        tax = money(order.tax_amount)
        shipping = money(order.shipping_cost)
        subtotal = max(total - tax - shipping, Decimal("0.00"))

        return TargetEntityDraft(
            entity_type=EntityType.ORDER,
            natural_key=natural_key(EntityType.ORDER, order.source_table, order.id),
            fields={
                "order_number": order.order_number.strip(),
                "status": derive_order_status(order.payment_status, order.shipping_status),
                "payment_status": order.payment_status,
                "shipping_status": order.shipping_status,
                "tracking_number": order.tracking_number,
                "shipping_address": order.shipping_address,
                "billing_address": order.billing_address,
                "subtotal_amount": subtotal,
                "tax_amount": tax,
                "shipping_amount": shipping,
                "total_amount": total,
                "currency": self.default_currency,
                "created_at": self.to_utc(order.created_at),
                "updated_at": self.to_utc(order.updated_at),
            },
            references={
                "case_id": natural_key(EntityType.CASE, instruction.source_table, instruction.id),
                "practice_id": (
                    natural_key(EntityType.PRACTICE, "dispatch_office", instruction.office_id)
                    if instruction.office_id else None
                ),
                "order_type_id": (
                    natural_key(EntityType.ORDER_TYPE, "dispatch_course", instruction.course_id)
                    if instruction.course_id else None
                ),
            },
            provenance=self._provenance(related),
        )

    def _transform_case_message(self, related: RelatedRecords) -> TransformResult:
        record: LegacyCommunication = related.primary
        content_type: LegacyContentType = related.joined["content_type"]
        if content_type.model != "instruction":
            raise TransformSkip(
                f"{record.ref} is attached to {content_type.app_label}.{content_type.model}, not an instruction"
            )

        return TargetEntityDraft(
            entity_type=EntityType.CASE_MESSAGE,
            natural_key=natural_key(EntityType.CASE_MESSAGE, record.source_table, record.id),
            fields={
                "message_type": record.record_type,
                "subject": record.subject,
                "content": record.content,
                "priority": self._lookup(PRIORITY_MAP, record.priority, "medium"),
                "delivery_status": record.status,
                "metadata": self._parse_metadata(record.metadata),
                "parent_key": (
                    natural_key(EntityType.CASE_MESSAGE, record.source_table, record.parent_id)
                    if record.parent_id else None
                ),
                "created_at": self.to_utc(record.created_at),
                "updated_at": self.to_utc(record.updated_at),
            },
            references={
                "case_id": natural_key(EntityType.CASE, "dispatch_instruction", record.object_id),
                "sender_id": natural_key(EntityType.PROFILE, "auth_user", record.user_id) if record.user_id else None,
            },
            provenance=self._provenance(related),
        )

    def _transform_case_state(self, related: RelatedRecords) -> TransformResult:
        state: LegacyState = related.primary

        # The previous status change of the same instruction, by change time then id.
        def position(s: LegacyState):
            return self._aware(s.changed_at), s.id

        earlier = [s for s in related.joined.get("timeline") or [] if position(s) < position(state)]
        previous: Optional[LegacyState] = max(earlier, key=position) if earlier else None

        duration = None
        if previous is not None:
            elapsed = self._aware(state.changed_at) - self._aware(previous.changed_at)
            duration = round(elapsed.total_seconds() / 60)

        return TargetEntityDraft(
            entity_type=EntityType.CASE_STATE,
            natural_key=natural_key(EntityType.CASE_STATE, state.source_table, state.id),
            fields={
                "status_code": state.status,
                "state": CASE_STATE_BY_STATUS[state.status],
                "previous_state": CASE_STATE_BY_STATUS[previous.status] if previous is not None else None,
                "is_active": state.on,
                "changed_at": self.to_utc(state.changed_at),
                "duration_minutes": duration,
            },
            references={
                "case_id": natural_key(EntityType.CASE, "dispatch_instruction", state.instruction_id),
                "changed_by_id": (
                    natural_key(EntityType.PROFILE, "auth_user", state.actor_id) if state.actor_id else None
                ),
            },
            provenance=self._provenance(related),
        )

    def _parse_metadata(self, value: Optional[str]) -> Optional[Any]:
        if value is None:
            return None
        try:
            return json.loads(value)
        except ValueError:
            logger.debug(f"Keeping non-JSON metadata as text: {value[:50]!r}")
            return value
