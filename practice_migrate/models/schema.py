"""Target entity types, their load order and the plans that drive them."""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional
from enum import Enum


class EntityType(str, Enum):
    """Target entity types."""
    PRACTICE = "practice"
    PROFILE = "profile"
    PRACTICE_MEMBER = "practice_member"
    PATIENT = "patient"
    ORDER_TYPE = "order_type"
    CASE = "case"
    ORDER = "order"
    CASE_MESSAGE = "case_message"
    CASE_STATE = "case_state"


# Fixed topological order of entity loads.
LOAD_ORDER: List[EntityType] = [
    EntityType.PRACTICE,
    EntityType.PROFILE,
    EntityType.PRACTICE_MEMBER,
    EntityType.PATIENT,
    EntityType.ORDER_TYPE,
    EntityType.CASE,
    EntityType.ORDER,
    EntityType.CASE_MESSAGE,
    EntityType.CASE_STATE,
]

# Entity types whose drafts carry patient references the deduplicator rewrites.
PATIENT_BEARING = {EntityType.PATIENT, EntityType.CASE}


class FieldType(str, Enum):
    """Supported target field types."""
    STRING = "string"
    INTEGER = "integer"
    DECIMAL = "decimal"
    BOOLEAN = "boolean"
    DATE = "date"
    DATETIME = "datetime"
    ENUM = "enum"
    OBJECT = "object"
    JSON = "json"


@dataclass
class FieldDefinition:
    """Definition of a field in a target entity."""
    name: str
    type: FieldType
    required: bool = False
    max_length: Optional[int] = None
    enum_values: Optional[List[str]] = None
    properties: Optional[Dict[str, "FieldDefinition"]] = None  # For object types

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "name": self.name,
            "type": self.type.value,
            "required": self.required,
        }
        if self.max_length:
            result["max_length"] = self.max_length
        if self.enum_values:
            result["enum"] = self.enum_values
        if self.properties:
            result["properties"] = {k: v.to_dict() for k, v in self.properties.items()}
        return result


@dataclass
class EntitySchema:
    """Schema of one target entity (one target table)."""
    entity_type: EntityType
    table: str
    fields: Dict[str, FieldDefinition] = field(default_factory=dict)

    @classmethod
    def build(cls, entity_type: EntityType, table: str, fields: Iterable[FieldDefinition]) -> "EntitySchema":
        return cls(entity_type=entity_type, table=table, fields={f.name: f for f in fields})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_type": self.entity_type.value,
            "table": self.table,
            "fields": {k: v.to_dict() for k, v in self.fields.items()},
        }


@dataclass(frozen=True)
class JoinSpec:
    """
    A related legacy table resolved for each driving record.

    The join partner is the record of ``table`` whose ``remote_column`` equals
    the driving record's ``local_field``. When several match, the one with the
    lowest primary key wins, unless ``many`` is set: then every match is
    attached, as a list in primary key order.
    """
    name: str
    table: str
    local_field: str
    remote_column: str
    required: bool = True
    many: bool = False


@dataclass(frozen=True)
class ReferenceSpec:
    """A foreign key of a target entity, expressed as a natural key."""
    field: str
    entity_type: EntityType
    required: bool = False


@dataclass(frozen=True)
class EntityPlan:
    """How one target entity type is produced from the legacy store."""
    entity_type: EntityType
    source_table: str
    joins: tuple = ()
    references: tuple = ()

    @property
    def depends_on(self) -> List[EntityType]:
        deps = []
        for ref in self.references:
            if ref.entity_type != self.entity_type and ref.entity_type not in deps:
                deps.append(ref.entity_type)
        return sorted(deps, key=LOAD_ORDER.index)


ENTITY_PLANS: Dict[EntityType, EntityPlan] = {
    EntityType.PRACTICE: EntityPlan(
        entity_type=EntityType.PRACTICE,
        source_table="dispatch_office",
    ),
    EntityType.PROFILE: EntityPlan(
        entity_type=EntityType.PROFILE,
        source_table="auth_user",
        joins=(JoinSpec("patient", "dispatch_patient", "source_id", "user_id", required=False),),
    ),
    EntityType.PRACTICE_MEMBER: EntityPlan(
        entity_type=EntityType.PRACTICE_MEMBER,
        source_table="dispatch_office",
        joins=(JoinSpec("instruction", "dispatch_instruction", "source_id", "office_id"),),
        references=(
            ReferenceSpec("practice_id", EntityType.PRACTICE, required=True),
            ReferenceSpec("profile_id", EntityType.PROFILE, required=True),
        ),
    ),
    EntityType.PATIENT: EntityPlan(
        entity_type=EntityType.PATIENT,
        source_table="dispatch_patient",
        joins=(
            JoinSpec("user", "auth_user", "user_id", "id"),
            JoinSpec("instruction", "dispatch_instruction", "source_id", "patient_id", required=False),
        ),
        references=(
            ReferenceSpec("profile_id", EntityType.PROFILE, required=True),
            ReferenceSpec("practice_id", EntityType.PRACTICE),
            ReferenceSpec("primary_doctor_id", EntityType.PROFILE),
        ),
    ),
    EntityType.ORDER_TYPE: EntityPlan(
        entity_type=EntityType.ORDER_TYPE,
        source_table="dispatch_course",
    ),
    EntityType.CASE: EntityPlan(
        entity_type=EntityType.CASE,
        source_table="dispatch_instruction",
        references=(
            ReferenceSpec("patient_id", EntityType.PATIENT, required=True),
            ReferenceSpec("practice_id", EntityType.PRACTICE),
            ReferenceSpec("assigned_practitioner_id", EntityType.PROFILE),
        ),
    ),
    EntityType.ORDER: EntityPlan(
        entity_type=EntityType.ORDER,
        source_table="dispatch_order",
        joins=(JoinSpec("instruction", "dispatch_instruction", "instruction_id", "id"),),
        references=(
            ReferenceSpec("case_id", EntityType.CASE, required=True),
            ReferenceSpec("practice_id", EntityType.PRACTICE),
            ReferenceSpec("order_type_id", EntityType.ORDER_TYPE),
        ),
    ),
    EntityType.CASE_MESSAGE: EntityPlan(
        entity_type=EntityType.CASE_MESSAGE,
        source_table="dispatch_record",
        joins=(JoinSpec("content_type", "django_content_type", "content_type_id", "id"),),
        references=(
            ReferenceSpec("case_id", EntityType.CASE, required=True),
            ReferenceSpec("sender_id", EntityType.PROFILE),
        ),
    ),
    EntityType.CASE_STATE: EntityPlan(
        entity_type=EntityType.CASE_STATE,
        source_table="dispatch_state",
        joins=(JoinSpec("timeline", "dispatch_state", "instruction_id", "instruction_id", many=True),),
        references=(
            ReferenceSpec("case_id", EntityType.CASE, required=True),
            ReferenceSpec("changed_by_id", EntityType.PROFILE),
        ),
    ),
}


def load_waves(entity_types: Optional[Iterable[EntityType]] = None) -> List[List[EntityType]]:
    """
    Group entity types into dependency waves.

    Every entity type lands in a wave strictly after all the entity types it
    depends on. Types inside one wave have no dependency edge between them
    and may be processed concurrently. Waves keep ``LOAD_ORDER`` order.
    """
    selected = set(entity_types) if entity_types is not None else set(LOAD_ORDER)
    level: Dict[EntityType, int] = {}
    for entity_type in LOAD_ORDER:
        deps = [d for d in ENTITY_PLANS[entity_type].depends_on if d in level]
        level[entity_type] = max((level[d] + 1 for d in deps), default=0)

    waves: Dict[int, List[EntityType]] = {}
    for entity_type in LOAD_ORDER:
        if entity_type in selected:
            waves.setdefault(level[entity_type], []).append(entity_type)
    return [waves[k] for k in sorted(waves)]


def entity_of_key(natural_key: str) -> EntityType:
    """Entity type encoded in a natural key (``patient:dispatch_patient:17``)."""
    return EntityType(natural_key.split(":", 1)[0])


def _f(name: str, type: FieldType, **kwargs: Any) -> FieldDefinition:
    return FieldDefinition(name=name, type=type, **kwargs)


CASE_STATES = [
    "submitted", "under_review", "planning", "approved", "in_production",
    "quality_check", "shipped", "delivered", "completed", "on_hold", "cancelled",
]
PRIORITIES = ["low", "medium", "high", "urgent"]
PROFILE_TYPES = ["admin", "technician", "doctor", "patient"]
GENDERS = ["male", "female", "other", "unknown"]
ORDER_STATUSES = ["pending", "paid", "processing", "shipped", "delivered", "failed", "refunded"]
MESSAGE_TYPES = ["note", "message", "call", "email", "sms", "system"]

_ADDRESS = {
    "street": _f("street", FieldType.STRING, max_length=500),
    "apt": _f("apt", FieldType.STRING, max_length=50),
    "city": _f("city", FieldType.STRING, max_length=100),
    "state": _f("state", FieldType.STRING, max_length=50),
    "zip_code": _f("zip_code", FieldType.STRING, max_length=20),
    "country": _f("country", FieldType.STRING, max_length=2),
}

TARGET_SCHEMAS: Dict[EntityType, EntitySchema] = {
    EntityType.PRACTICE: EntitySchema.build(EntityType.PRACTICE, "practices", [
        _f("name", FieldType.STRING, required=True, max_length=200),
        _f("address", FieldType.OBJECT, properties=_ADDRESS),
        _f("phone", FieldType.STRING, max_length=20),
        _f("fax", FieldType.STRING, max_length=20),
        _f("timezone", FieldType.STRING, required=True, max_length=50),
        _f("is_active", FieldType.BOOLEAN, required=True),
        _f("created_at", FieldType.DATETIME, required=True),
        _f("updated_at", FieldType.DATETIME, required=True),
    ]),
    EntityType.PROFILE: EntitySchema.build(EntityType.PROFILE, "profiles", [
        _f("profile_type", FieldType.ENUM, required=True, enum_values=PROFILE_TYPES),
        _f("username", FieldType.STRING, required=True, max_length=150),
        _f("first_name", FieldType.STRING, required=True, max_length=150),
        _f("last_name", FieldType.STRING, required=True, max_length=150),
        _f("email", FieldType.STRING, max_length=254),
        _f("is_active", FieldType.BOOLEAN, required=True),
        _f("last_login_at", FieldType.DATETIME),
        _f("created_at", FieldType.DATETIME, required=True),
    ]),
    EntityType.PRACTICE_MEMBER: EntitySchema.build(EntityType.PRACTICE_MEMBER, "practice_members", [
        _f("role", FieldType.ENUM, required=True, enum_values=["doctor", "admin", "technician"]),
        _f("is_primary", FieldType.BOOLEAN, required=True),
        _f("joined_at", FieldType.DATETIME, required=True),
    ]),
    EntityType.PATIENT: EntitySchema.build(EntityType.PATIENT, "patients", [
        _f("patient_number", FieldType.STRING, required=True, max_length=20),
        _f("first_name", FieldType.STRING, required=True, max_length=150),
        _f("last_name", FieldType.STRING, required=True, max_length=150),
        _f("email", FieldType.STRING, max_length=254),
        _f("date_of_birth", FieldType.DATE),
        _f("gender", FieldType.ENUM, required=True, enum_values=GENDERS),
        _f("phone", FieldType.STRING, max_length=20),
        _f("address", FieldType.STRING, max_length=500),
        _f("emergency_contact", FieldType.STRING, max_length=200),
        _f("insurance_info", FieldType.STRING, max_length=1000),
        _f("medical_notes", FieldType.STRING),
        _f("status_code", FieldType.INTEGER, required=True),
        _f("is_archived", FieldType.BOOLEAN, required=True),
        _f("created_at", FieldType.DATETIME, required=True),
        _f("updated_at", FieldType.DATETIME, required=True),
    ]),
    EntityType.ORDER_TYPE: EntitySchema.build(EntityType.ORDER_TYPE, "order_types", [
        _f("name", FieldType.STRING, required=True, max_length=200),
        _f("description", FieldType.STRING),
        _f("category", FieldType.STRING, max_length=100),
        _f("base_price", FieldType.DECIMAL, required=True),
        _f("duration_days", FieldType.INTEGER, required=True),
        _f("is_active", FieldType.BOOLEAN, required=True),
        _f("created_at", FieldType.DATETIME, required=True),
    ]),
    EntityType.CASE: EntitySchema.build(EntityType.CASE, "cases", [
        _f("case_number", FieldType.STRING, required=True, max_length=20),
        _f("title", FieldType.STRING, required=True, max_length=200),
        _f("description", FieldType.STRING),
        _f("notes", FieldType.STRING),
        _f("current_state", FieldType.ENUM, required=True, enum_values=CASE_STATES),
        _f("priority", FieldType.ENUM, required=True, enum_values=PRIORITIES),
        _f("custom_price", FieldType.DECIMAL),
        _f("due_date", FieldType.DATETIME),
        _f("completed_at", FieldType.DATETIME),
        _f("is_archived", FieldType.BOOLEAN, required=True),
        _f("external_id", FieldType.STRING, max_length=100),
        _f("created_at", FieldType.DATETIME, required=True),
        _f("updated_at", FieldType.DATETIME, required=True),
    ]),
    EntityType.ORDER: EntitySchema.build(EntityType.ORDER, "orders", [
        _f("order_number", FieldType.STRING, required=True, max_length=50),
        _f("status", FieldType.ENUM, required=True, enum_values=ORDER_STATUSES),
        _f("payment_status", FieldType.STRING, required=True),
        _f("shipping_status", FieldType.STRING, required=True),
        _f("tracking_number", FieldType.STRING, max_length=100),
        _f("shipping_address", FieldType.STRING, max_length=1000),
        _f("billing_address", FieldType.STRING, max_length=1000),
        _f("subtotal_amount", FieldType.DECIMAL, required=True),
        _f("tax_amount", FieldType.DECIMAL, required=True),
        _f("shipping_amount", FieldType.DECIMAL, required=True),
        _f("total_amount", FieldType.DECIMAL, required=True),
        _f("currency", FieldType.STRING, required=True, max_length=3),
        _f("created_at", FieldType.DATETIME, required=True),
        _f("updated_at", FieldType.DATETIME, required=True),
    ]),
    EntityType.CASE_MESSAGE: EntitySchema.build(EntityType.CASE_MESSAGE, "case_messages", [
        _f("message_type", FieldType.ENUM, required=True, enum_values=MESSAGE_TYPES),
        _f("subject", FieldType.STRING, max_length=500),
        _f("content", FieldType.STRING),
        _f("priority", FieldType.ENUM, required=True, enum_values=PRIORITIES),
        _f("delivery_status", FieldType.STRING, required=True),
        _f("metadata", FieldType.JSON),
        _f("parent_key", FieldType.STRING),
        _f("created_at", FieldType.DATETIME, required=True),
        _f("updated_at", FieldType.DATETIME, required=True),
    ]),
    EntityType.CASE_STATE: EntitySchema.build(EntityType.CASE_STATE, "case_state_history", [
        _f("status_code", FieldType.INTEGER, required=True),
        _f("state", FieldType.ENUM, required=True, enum_values=CASE_STATES),
        _f("previous_state", FieldType.ENUM, enum_values=CASE_STATES),
        _f("is_active", FieldType.BOOLEAN, required=True),
        _f("changed_at", FieldType.DATETIME, required=True),
        _f("duration_minutes", FieldType.INTEGER),
    ]),
}
