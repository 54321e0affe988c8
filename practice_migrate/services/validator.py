"""Validation of legacy rows and of target drafts."""

import logging
from concurrent.futures import Executor
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from ..errors import QuarantineThresholdExceeded
from ..models.legacy import LegacyRecord, model_for
from ..models.record import FieldError, Quarantined, SourceRow, TargetEntityDraft
from ..models.schema import TARGET_SCHEMAS, EntitySchema, FieldDefinition, FieldType

logger = logging.getLogger(__name__)


@dataclass
class ValidationOutcome:
    """Valid records and quarantined rows of one page, in source order."""
    valid: List[LegacyRecord] = field(default_factory=list)
    quarantined: List[Quarantined] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.valid) + len(self.quarantined)

    @property
    def quarantine_rate(self) -> float:
        return len(self.quarantined) / self.total if self.total else 0.0


class RecordValidator:
    """
    Schema-checks raw legacy rows against their table's typed model.

    A bad row is quarantined with the reasons pydantic reports; it never
    raises. A whole page is only rejected when so many rows fail that the
    cause is more likely a structural change in the source than dirty data.
    """

    def __init__(self, quarantine_threshold: float = 0.5, min_batch: int = 20):
        """
        Initialize the validator.

        Args:
            quarantine_threshold: Highest tolerated share of quarantined rows per page
            min_batch: Pages smaller than this are never rejected
        """
        self.quarantine_threshold = quarantine_threshold
        self.min_batch = min_batch

    def validate(self, row: SourceRow) -> Union[LegacyRecord, Quarantined]:
        """Validate one row, returning the typed record or a quarantine entry."""
        model = model_for(row.source_table)
        try:
            return model.model_validate(row.data)
        except PydanticValidationError as e:
            reasons = tuple(self._format_error(err) for err in e.errors())
            logger.warning(f"Quarantined {row.ref}: {'; '.join(reasons)}")
            return Quarantined(reference=row.ref, reasons=reasons, row=row)

    def validate_batch(
        self,
        table: str,
        rows: List[SourceRow],
        executor: Optional[Executor] = None
    ) -> ValidationOutcome:
        """
        Validate a page of rows.

        Args:
            table: Legacy table the rows come from
            rows: Raw rows of one page
            executor: Optional pool to validate rows in parallel (order is kept)

        Returns:
            ValidationOutcome with valid records and quarantined rows

        Raises:
            QuarantineThresholdExceeded: If the page looks like schema drift
        """
        results = list(executor.map(self.validate, rows)) if executor else [self.validate(r) for r in rows]

        outcome = ValidationOutcome()
        for result in results:
            if isinstance(result, Quarantined):
                outcome.quarantined.append(result)
            else:
                outcome.valid.append(result)

        if outcome.total >= self.min_batch and outcome.quarantine_rate > self.quarantine_threshold:
            raise QuarantineThresholdExceeded(
                table=table,
                quarantined=len(outcome.quarantined),
                total=outcome.total,
                threshold=self.quarantine_threshold,
            )
        return outcome

    def _format_error(self, error: Dict[str, Any]) -> str:
        location = ".".join(str(part) for part in error.get("loc", ())) or "record"
        return f"{location}: {error.get('msg', 'invalid value')}"


class DraftValidator:
    """
    Validator for target drafts before loading.

    Supports:
    - Required field validation
    - Type validation
    - Max length validation
    - Enum validation
    - Nested object fields
    """

    def __init__(self, schemas: Optional[Dict[Any, EntitySchema]] = None):
        self.schemas = schemas or TARGET_SCHEMAS

    def validate_draft(self, draft: TargetEntityDraft) -> List[FieldError]:
        """
        Validate a draft against its entity schema.

        Args:
            draft: The draft to validate

        Returns:
            List of field errors (empty when valid)
        """
        schema = self.schemas[draft.entity_type]
        errors = []
        for field_name, field_def in schema.fields.items():
            errors.extend(self._validate_field(field_name, draft.fields.get(field_name), field_def))
        return errors

    def check(self, draft: TargetEntityDraft) -> Optional[Quarantined]:
        """Quarantine entry for an invalid draft, ``None`` when it is valid."""
        errors = self.validate_draft(draft)
        if not errors:
            return None
        return Quarantined(reference=draft.natural_key, reasons=tuple(str(e) for e in errors))

    def _validate_field(self, field_name: str, value: Any, field_def: FieldDefinition) -> List[FieldError]:
        """Validate a single field."""
        errors = []

        if field_def.required and value is None:
            errors.append(FieldError(field=field_name, message="Required field is missing", error_type="required"))
            return errors

        if value is None:
            return errors

        type_error = self._validate_type(field_name, value, field_def.type)
        if type_error:
            errors.append(type_error)
            return errors

        if field_def.max_length and isinstance(value, str) and len(value) > field_def.max_length:
            errors.append(FieldError(
                field=field_name,
                message=f"Value exceeds max length of {field_def.max_length}",
                error_type="max_length",
                value=len(value),
            ))

        if field_def.enum_values and value not in field_def.enum_values:
            errors.append(FieldError(
                field=field_name,
                message=f"Invalid enum value. Must be one of: {field_def.enum_values}",
                error_type="enum",
                value=value,
            ))

        if field_def.type == FieldType.OBJECT and field_def.properties:
            for prop_name, prop_def in field_def.properties.items():
                errors.extend(self._validate_field(f"{field_name}.{prop_name}", value.get(prop_name), prop_def))

        return errors

    def _validate_type(self, field_name: str, value: Any, expected_type: FieldType) -> Optional[FieldError]:
        """Validate the type of a value."""
        type_checks = {
            FieldType.STRING: lambda v: isinstance(v, str),
            FieldType.INTEGER: lambda v: isinstance(v, int) and not isinstance(v, bool),
            FieldType.DECIMAL: lambda v: isinstance(v, (int, Decimal)) and not isinstance(v, bool),
            FieldType.BOOLEAN: lambda v: isinstance(v, bool),
            FieldType.DATE: lambda v: isinstance(v, str) and self._is_valid_date(v),
            FieldType.DATETIME: lambda v: isinstance(v, str) and self._is_valid_datetime(v),
            FieldType.ENUM: lambda v: isinstance(v, str),
            FieldType.OBJECT: lambda v: isinstance(v, dict),
            FieldType.JSON: lambda v: isinstance(v, (dict, list, str)),
        }

        check_func = type_checks.get(expected_type)
        if check_func and not check_func(value):
            return FieldError(
                field=field_name,
                message=f"Invalid type. Expected {expected_type.value}, got {type(value).__name__}",
                error_type="type",
                value=value,
            )
        return None

    def _is_valid_date(self, value: str) -> bool:
        try:
            date.fromisoformat(value)
            return True
        except ValueError:
            return False

    def _is_valid_datetime(self, value: str) -> bool:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return False
        return parsed.tzinfo is not None
