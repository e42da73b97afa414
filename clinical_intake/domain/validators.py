"""Field Validators - Per-value validation and normalisation.

Each validator is a pure function ``value -> Result[NormalizedValue]``. Failures are
values, not exceptions, so the DataQualityScanner can aggregate many of them without
aborting a chunk.

Dispatch goes through ``VALIDATORS``, an explicit mapping from SemanticType to
validator, instead of branching on loosely typed context strings.

Failure types:
    - DataQualityError: recoverable (wrong format, missing unit, unknown unit)
    - EncodingCorruptionError: value holds U+FFFD, the decoder's replacement character
    - AmbiguousDateError: value parses to different dates under different layouts and
      no preferred layout is configured
"""

import functools
import math
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, Tuple

from clinical_intake.domain.models import ConversionRule, SemanticType
from clinical_intake.domain.ports import Result

REPLACEMENT_CHARACTER = "\ufffd"

DATA_QUALITY_ERROR = "DataQualityError"
ENCODING_CORRUPTION_ERROR = "EncodingCorruptionError"
AMBIGUOUS_DATE_ERROR = "AmbiguousDateError"

CRITICAL_ERROR_TYPES = frozenset({ENCODING_CORRUPTION_ERROR, AMBIGUOUS_DATE_ERROR})

IDENTIFIER_PATTERNS: Tuple[Tuple[str, re.Pattern], ...] = (
    ("numeric", re.compile(r"^\d{1,20}$")),
    ("prefixed_alphanumeric", re.compile(r"^[A-Za-z]{1,6}[-_]?\d{2,18}$")),
    ("uuid", re.compile(
        r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
    )),
)

# Tried in order; the first layout wins only when every matching layout agrees
DATE_LAYOUTS: Tuple[str, ...] = (
    "%Y-%m-%d",
    "%Y/%m/%d",
    "%d/%m/%Y",
    "%m/%d/%Y",
    "%d-%m-%Y",
    "%m-%d-%Y",
    "%d.%m.%Y",
    "%Y%m%d",
    "%d-%b-%Y",
    "%d %b %Y",
    "%b %d, %Y",
)

BOOLEAN_VALUES: Dict[str, bool] = {
    "true": True, "t": True, "yes": True, "y": True, "1": True,
    "false": False, "f": False, "no": False, "n": False, "0": False,
}

_NUMBER = r"[-+]?(?:\d+(?:\.\d*)?|\.\d+)"
_COMPARISON_PATTERN = re.compile(
    rf"^(?P<operator>[<>]=?)\s*(?P<magnitude>{_NUMBER})\s*(?P<unit>\S.*)?$"
)
_QUANTITY_PATTERN = re.compile(rf"^(?P<magnitude>{_NUMBER})\s*(?P<unit>[^\d\s.+-].*)?$")
_NUMERIC_PATTERN = re.compile(rf"^{_NUMBER}$")
_GROUPED_NUMERIC_PATTERN = re.compile(r"^[-+]?\d{1,3}(?:,\d{3})+(?:\.\d+)?$")


@dataclass(frozen=True)
class NormalizedValue:
    """Successful validation output.

    Attributes:
        value: Normalised value (str, date, float, bool, Measurement or None for blanks)
        raw: Original raw string
        detail: Which rule produced the value (identifier pattern, date layout, unit)
    """
    value: Any
    raw: str
    detail: Optional[str] = None


@dataclass(frozen=True)
class Measurement:
    """A lab value: magnitude in canonical unit, or a bounded value such as ``<0.5``."""
    magnitude: float
    unit: Optional[str] = None
    operator: Optional[str] = None


@dataclass(frozen=True)
class ValidatorContext:
    """Job-level inputs some validators need."""
    preferred_date_layout: Optional[str] = None
    unit_conversions: Mapping[str, ConversionRule] = field(default_factory=dict)


DEFAULT_CONTEXT = ValidatorContext()


def _failure(message: str, raw: str, error_type: str = DATA_QUALITY_ERROR, **details: Any) -> Result:
    return Result.failure_result(message, error_type=error_type, error_details={"raw_value": raw, **details})


def is_critical(result: Result) -> bool:
    """True if a failed result describes an unrecoverable condition."""
    return result.is_failure() and result.error_type in CRITICAL_ERROR_TYPES


def is_blank(value: Any) -> bool:
    """None, NaN and whitespace-only strings carry no value to validate."""
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    return isinstance(value, str) and not value.strip()


def rejects_corrupted_encoding(validator: Callable[..., Result]) -> Callable[..., Result]:
    """Fail any value the upstream decoder could not repair."""

    @functools.wraps(validator)
    def wrapper(value: Any, *args: Any, **kwargs: Any) -> Result:
        raw = str(value)
        if REPLACEMENT_CHARACTER in raw:
            return _failure(
                "Value contains undecodable bytes",
                raw,
                error_type=ENCODING_CORRUPTION_ERROR,
            )
        return validator(raw, *args, **kwargs)

    return wrapper


@rejects_corrupted_encoding
def validate_identifier(value: str) -> Result:
    """Accept numeric, prefixed alphanumeric (``MRN001``, ``PT-12345``) or UUID identifiers."""
    candidate = value.strip()
    for pattern_name, pattern in IDENTIFIER_PATTERNS:
        if pattern.match(candidate):
            return Result.success_result(NormalizedValue(candidate, value, pattern_name))
    return _failure("Identifier does not match any accepted pattern", value)


@rejects_corrupted_encoding
def validate_date(
    value: str,
    preferred_layout: Optional[str] = None,
    layouts: Sequence[str] = DATE_LAYOUTS,
) -> Result:
    """Parse a calendar date from a list of known layouts.

    A value that parses to different dates under different layouts (``01/02/2023``)
    is ambiguous. It resolves only through ``preferred_layout``; without one the
    failure is an AmbiguousDateError. Locale-based guessing is never applied.
    """
    candidate = value.strip()
    parsed: Dict[str, date] = {}
    for layout in layouts:
        try:
            parsed[layout] = datetime.strptime(candidate, layout).date()
        except ValueError:
            continue

    if preferred_layout and preferred_layout not in parsed:
        try:
            parsed[preferred_layout] = datetime.strptime(candidate, preferred_layout).date()
        except ValueError:
            pass

    if not parsed:
        return _failure("Unrecognised date layout", value)

    if len(set(parsed.values())) == 1:
        layout, parsed_date = next(iter(parsed.items()))
        return Result.success_result(NormalizedValue(parsed_date, value, layout))

    if preferred_layout and preferred_layout in parsed:
        return Result.success_result(NormalizedValue(parsed[preferred_layout], value, preferred_layout))

    return _failure(
        "Date is ambiguous across layouts and no preferred layout is configured",
        value,
        error_type=AMBIGUOUS_DATE_ERROR,
        candidates={layout: parsed_date.isoformat() for layout, parsed_date in parsed.items()},
    )


@rejects_corrupted_encoding
def validate_phone(value: str) -> Result:
    """Normalise a 10-digit phone number to ``(AAA) BBB-CCCC``; no country code guessing."""
    digits = re.sub(r"\D", "", value)
    if len(digits) != 10:
        return _failure(f"Phone number has {len(digits)} digits, expected 10", value)
    return Result.success_result(
        NormalizedValue(f"({digits[:3]}) {digits[3:6]}-{digits[6:]}", value, "us_10_digit")
    )


def lookup_conversion(unit: str, conversions: Mapping[str, ConversionRule]) -> Optional[ConversionRule]:
    """Find the rule for ``unit``; canonical units convert to themselves."""
    if unit in conversions:
        return conversions[unit]
    folded = unit.casefold()
    for source_unit, rule in conversions.items():
        if source_unit.casefold() == folded:
            return rule
    for rule in conversions.values():
        if rule.canonical_unit.casefold() == folded:
            return ConversionRule(canonical_unit=rule.canonical_unit, factor=1.0)
    return None


@rejects_corrupted_encoding
def validate_measurement(value: str, conversions: Optional[Mapping[str, ConversionRule]] = None) -> Result:
    """Parse a lab measurement.

    ``>400`` / ``<0.5`` yield a (magnitude, operator) pair. Otherwise a number with a
    unit suffix is converted to the canonical unit through ``conversions``; a missing
    or unknown unit is a failure, never a guessed conversion.
    """
    conversions = conversions or {}
    candidate = value.strip()

    comparison = _COMPARISON_PATTERN.match(candidate)
    if comparison:
        magnitude = float(comparison.group("magnitude"))
        unit = (comparison.group("unit") or "").strip() or None
        if unit is None:
            return Result.success_result(
                NormalizedValue(Measurement(magnitude, None, comparison.group("operator")), value, "comparison")
            )
        rule = lookup_conversion(unit, conversions)
        if rule is None:
            return _failure(f"Unit '{unit}' not found in conversion table", value, unit=unit)
        return Result.success_result(NormalizedValue(
            Measurement(magnitude * rule.factor, rule.canonical_unit, comparison.group("operator")),
            value,
            unit,
        ))

    quantity = _QUANTITY_PATTERN.match(candidate)
    if not quantity:
        return _failure("Measurement is not a number with a unit", value)

    unit = (quantity.group("unit") or "").strip()
    if not unit:
        return _failure("Measurement is missing a unit", value)

    rule = lookup_conversion(unit, conversions)
    if rule is None:
        return _failure(f"Unit '{unit}' not found in conversion table", value, unit=unit)

    magnitude = float(quantity.group("magnitude")) * rule.factor
    return Result.success_result(
        NormalizedValue(Measurement(magnitude, rule.canonical_unit), value, unit)
    )


@rejects_corrupted_encoding
def validate_boolean(value: str) -> Result:
    normalized = BOOLEAN_VALUES.get(value.strip().lower())
    if normalized is None:
        return _failure("Not a recognised boolean", value)
    return Result.success_result(NormalizedValue(normalized, value, "boolean"))


@rejects_corrupted_encoding
def validate_numeric(value: str) -> Result:
    candidate = value.strip()
    if _GROUPED_NUMERIC_PATTERN.match(candidate):
        return Result.success_result(NormalizedValue(float(candidate.replace(",", "")), value, "grouped"))
    if _NUMERIC_PATTERN.match(candidate):
        return Result.success_result(NormalizedValue(float(candidate), value, "decimal"))
    return _failure("Not a number", value)


@rejects_corrupted_encoding
def validate_text(value: str) -> Result:
    return Result.success_result(NormalizedValue(value.strip(), value, "text"))


ValidatorFn = Callable[[str, ValidatorContext], Result]

VALIDATORS: Dict[SemanticType, ValidatorFn] = {
    SemanticType.IDENTIFIER: lambda value, context: validate_identifier(value),
    SemanticType.DATE: lambda value, context: validate_date(
        value, preferred_layout=context.preferred_date_layout
    ),
    SemanticType.PHONE: lambda value, context: validate_phone(value),
    SemanticType.MEASUREMENT: lambda value, context: validate_measurement(
        value, conversions=context.unit_conversions
    ),
    SemanticType.BOOLEAN: lambda value, context: validate_boolean(value),
    SemanticType.TEXT: lambda value, context: validate_text(value),
    SemanticType.NUMERIC: lambda value, context: validate_numeric(value),
}


def validate_value(
    semantic_type: SemanticType,
    value: Any,
    context: Optional[ValidatorContext] = None,
) -> Result:
    """Validate one raw cell for its semantic type.

    Blank cells succeed with a ``None`` value; they are not violations.
    """
    if is_blank(value):
        return Result.success_result(NormalizedValue(None, "" if value is None else str(value), "blank"))
    return VALIDATORS[SemanticType(semantic_type)](value, context or DEFAULT_CONTEXT)
