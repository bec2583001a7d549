"""Value-type dispatch: one entry per attribute type.

Every raw value crosses this module before it reaches storage. The table
maps a type label to the slot it is stored in, a coercer turning the raw
input into that slot's Python type, and an optional validator run against
the owning definition (select options membership). Adding a type means
adding its label to db.models.VALUE_TYPES and one AttributeKind here.
"""
import logging
import math
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Callable, Optional, Sequence

from dateutil import parser as date_parser

from db.errors import ValidationError
from db.models import SELECT_TYPE, VALUE_TYPES

logger = logging.getLogger(__name__)

SLOTS = ("text_value", "numeric_value", "date_value", "boolean_value")

_TRUE_STRINGS = frozenset({"true", "t", "yes", "y", "on", "1"})
_FALSE_STRINGS = frozenset({"false", "f", "no", "n", "off", "0"})

_NUMERIC_LIMIT = Decimal("1e13")
_NUMERIC_SCALE = Decimal("0.01")


class CoercionError(ValueError):
    """Raw value cannot be represented in the target slot."""


# ---------------------------------------------------------------------------
# Coercers
# ---------------------------------------------------------------------------


def _to_text(raw: Any) -> str:
    if isinstance(raw, (dict, list, tuple, set)):
        raise CoercionError("expected a scalar value")
    return str(raw)


def _to_option(raw: Any) -> str:
    # options are stored stripped
    return _to_text(raw).strip()


def _to_decimal(raw: Any) -> Decimal:
    if isinstance(raw, bool):
        raise CoercionError("expected a number, got a boolean")
    if isinstance(raw, float) and not math.isfinite(raw):
        raise CoercionError("expected a finite number")
    try:
        value = Decimal(str(raw).strip()) if not isinstance(raw, Decimal) else raw
    except (InvalidOperation, ValueError):
        raise CoercionError(f"{raw!r} is not a number")
    if not value.is_finite():
        raise CoercionError("expected a finite number")
    # numeric(15, 2): round the way the column does, then range-check
    if abs(value) >= _NUMERIC_LIMIT:
        raise CoercionError(f"{raw!r} is out of range")
    value = value.quantize(_NUMERIC_SCALE, rounding=ROUND_HALF_UP)
    if abs(value) >= _NUMERIC_LIMIT:
        raise CoercionError(f"{raw!r} is out of range")
    return value


def _to_datetime(raw: Any) -> datetime:
    if isinstance(raw, datetime):
        value = raw
    elif isinstance(raw, date):
        value = datetime.combine(raw, time.min)
    elif isinstance(raw, str):
        try:
            value = date_parser.parse(raw.strip())
        except (ValueError, OverflowError):
            raise CoercionError(f"{raw!r} is not a date")
    else:
        raise CoercionError(f"{raw!r} is not a date")
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def _to_bool(raw: Any) -> bool:
    if isinstance(raw, str):
        lowered = raw.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    return bool(raw)


# ---------------------------------------------------------------------------
# Validators (run after coercion, against the definition)
# ---------------------------------------------------------------------------


def _check_option(value: str, options: Optional[Sequence[str]]) -> None:
    if not options or value not in options:
        raise CoercionError(f"{value!r} is not one of the allowed options")


@dataclass(frozen=True)
class AttributeKind:
    label: str
    slot: str
    coerce: Callable[[Any], Any]
    validate: Optional[Callable[[Any, Optional[Sequence[str]]], None]] = None


KINDS: dict[str, AttributeKind] = {
    kind.label: kind
    for kind in (
        AttributeKind("short-text", "text_value", _to_text),
        AttributeKind("long-text", "text_value", _to_text),
        AttributeKind("url", "text_value", _to_text),
        AttributeKind(SELECT_TYPE, "text_value", _to_option, _check_option),
        AttributeKind("numeric", "numeric_value", _to_decimal),
        AttributeKind("date", "date_value", _to_datetime),
        AttributeKind("boolean", "boolean_value", _to_bool),
    )
}

if set(KINDS) != set(VALUE_TYPES):
    raise RuntimeError("every value type needs a dispatch entry")


@dataclass(frozen=True)
class TypedValue:
    """A coerced value tagged with the type that produced it."""

    value_type: str
    slot: str
    value: Any

    def slots(self) -> dict[str, Any]:
        """All four slot columns, only this value's slot populated."""
        columns = dict.fromkeys(SLOTS)
        columns[self.slot] = self.value
        return columns


def get_kind(value_type: str) -> AttributeKind:
    kind = KINDS.get(value_type)
    if kind is None:
        raise ValidationError(
            f"Unsupported attribute type: {value_type!r}. "
            f"Valid types: {', '.join(VALUE_TYPES)}"
        )
    return kind


def slot_for(value_type: str) -> str:
    return get_kind(value_type).slot


def is_empty(raw: Any) -> bool:
    """True for inputs that mean "clear this field"."""
    return raw is None or (isinstance(raw, str) and not raw.strip())


def coerce(
    value_type: str,
    raw: Any,
    *,
    field_name: str,
    options: Optional[Sequence[str]] = None,
) -> TypedValue:
    """Coerce a raw input for a field of `value_type`.

    Raises ValidationError naming the field when the value does not fit.
    """
    kind = get_kind(value_type)
    if is_empty(raw):
        raise ValidationError(f"Value for field {field_name!r} is empty")
    try:
        value = kind.coerce(raw)
        if kind.validate is not None:
            kind.validate(value, options)
    except CoercionError as exc:
        raise ValidationError(
            f"Invalid {value_type} value for field {field_name!r}: {exc}"
        ) from exc
    return TypedValue(value_type=value_type, slot=kind.slot, value=value)


def extract(value_type: str, row: Any) -> Any:
    """Read the value of a stored row from the slot its type maps to."""
    if row is None:
        return None
    return getattr(row, slot_for(value_type))


def validate_options(value_type: str, options: Any) -> Optional[list[str]]:
    """Check the options invariant and return normalized options.

    single-select-options needs a non-empty list of distinct non-blank
    strings; every other type must not carry options.
    """
    get_kind(value_type)
    if value_type != SELECT_TYPE:
        if options is not None:
            raise ValidationError(f"Attribute type {value_type!r} does not accept options")
        return None

    if not isinstance(options, (list, tuple)) or not options:
        raise ValidationError(
            f"Attribute type {SELECT_TYPE!r} requires a non-empty list of options"
        )
    normalized = []
    for option in options:
        if not isinstance(option, str) or not option.strip():
            raise ValidationError("Options must be non-blank strings")
        normalized.append(option.strip())
    if len(set(normalized)) != len(normalized):
        raise ValidationError("Options must be unique")
    return normalized
