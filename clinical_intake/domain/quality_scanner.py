"""Data Quality Scanner - builds ValidationReports for files and chunks.

The scanner reconciles the incoming columns with the expected schema, runs the
FieldValidator for each matched column's semantic type and aggregates the failure
values into a ValidationReport. A single bad value never aborts the scan.

Report ordering follows the expected schema, never the incoming file, so identical
input and schema always produce an identical report.

Whether an identifier column is the wrong type altogether (no value matches any
accepted pattern) is a property of the column, not of one batch. Callers validating a
file in batches decide it once from a leading sample and pass the decision in as
``incompatible_fields``; otherwise each frame is judged on its own values.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, replace
from typing import Any, Collection, Dict, FrozenSet, List, Mapping, Optional, Tuple, Union

import pandas as pd

from clinical_intake.domain.models import (
    MAX_SAMPLE_VIOLATIONS,
    CriticalError,
    CriticalErrorKind,
    DataQualityIssue,
    SchemaIssue,
    SchemaIssueKind,
    SemanticType,
    ValidationReport,
)
from clinical_intake.domain.ports import ConfigurationError
from clinical_intake.domain.schema_reconciler import ReconciliationResult, SchemaReconciler
from clinical_intake.domain.validators import (
    AMBIGUOUS_DATE_ERROR,
    DEFAULT_CONTEXT,
    ENCODING_CORRUPTION_ERROR,
    ValidatorContext,
    is_critical,
    validate_value,
)

logger = logging.getLogger(__name__)

INCOMPATIBLE_TYPE_ERROR = "IncompatibleTypeError"

_CRITICAL_KINDS = {
    ENCODING_CORRUPTION_ERROR: CriticalErrorKind.ENCODING_CORRUPTION,
    AMBIGUOUS_DATE_ERROR: CriticalErrorKind.AMBIGUOUS_DATE,
    INCOMPATIBLE_TYPE_ERROR: CriticalErrorKind.INCOMPATIBLE_TYPE,
}

_CRITICAL_MESSAGES = {
    CriticalErrorKind.ENCODING_CORRUPTION: "Values in column '{column}' contain undecodable bytes",
    CriticalErrorKind.AMBIGUOUS_DATE: (
        "Dates in column '{column}' are ambiguous across layouts and no preferred layout is configured"
    ),
    CriticalErrorKind.INCOMPATIBLE_TYPE: "Values in column '{column}' match no accepted identifier pattern",
}


def coerce_expected_schema(expected_schema: Mapping[str, Union[SemanticType, str]]) -> Dict[str, SemanticType]:
    """Turn a configured ``{field: type}`` mapping into SemanticTypes, keeping field order.

    Raises:
        ConfigurationError: If a type is not one of the recognised semantic types
    """
    schema: Dict[str, SemanticType] = {}
    for field_name, semantic_type in expected_schema.items():
        try:
            schema[field_name] = SemanticType(semantic_type)
        except ValueError:
            raise ConfigurationError(
                f"Unknown semantic type '{semantic_type}' for field '{field_name}'. "
                f"Supported: {[t.value for t in SemanticType]}",
                details={"field": field_name},
            )
    return schema


@dataclass(frozen=True)
class FieldFailure:
    """One failed cell, kept per row so the coordinator can route the record."""
    field: str
    column: str
    error_type: str
    message: str
    raw_value: str
    critical: bool = False

    def as_flag(self) -> Dict[str, Any]:
        return {"field": self.field, "error_type": self.error_type, "raw_value": self.raw_value}


@dataclass(frozen=True)
class FrameValidation:
    """Validation output for a DataFrame: report, cleaned records and per-row failures."""
    report: ValidationReport
    records: List[Dict[str, Any]]
    failures: List[List[FieldFailure]]
    incompatible_fields: FrozenSet[str] = frozenset()

    def row_failures(self, row_index: int) -> List[FieldFailure]:
        return self.failures[row_index]


def _add_sample(samples: List[str], value: str) -> None:
    if len(samples) < MAX_SAMPLE_VIOLATIONS and value not in samples:
        samples.append(value)


class DataQualityScanner:
    """Applies FieldValidators across column data and produces ValidationReports.

    Parameters:
        reconciler: SchemaReconciler used when no precomputed reconciliation is given
        context: Validator inputs (preferred date layout, unit conversion table)
        max_scan_rows: If set, ``scan`` only validates this many leading rows
    """

    def __init__(
        self,
        reconciler: Optional[SchemaReconciler] = None,
        context: Optional[ValidatorContext] = None,
        max_scan_rows: Optional[int] = None,
    ):
        self.reconciler = reconciler or SchemaReconciler()
        self.context = context or DEFAULT_CONTEXT
        self.max_scan_rows = max_scan_rows

    def scan(
        self,
        incoming_data: pd.DataFrame,
        expected_schema: Mapping[str, Union[SemanticType, str]],
        reconciliation: Optional[ReconciliationResult] = None,
    ) -> ValidationReport:
        """Validate incoming data against the expected schema and return a fresh report."""
        frame = incoming_data
        if self.max_scan_rows is not None and len(frame) > self.max_scan_rows:
            frame = frame.head(self.max_scan_rows)
        return self.validate_frame(frame, expected_schema, reconciliation).report

    def validate_record(
        self,
        record: Mapping[str, Any],
        expected_schema: Mapping[str, Union[SemanticType, str]],
        reconciliation: Optional[ReconciliationResult] = None,
        incompatible_fields: Collection[str] = frozenset(),
    ) -> Tuple[Dict[str, Any], List[FieldFailure]]:
        """Clean a single record; returns the normalised record and its field failures.

        One record says nothing about its column's type, so an unmatched identifier is
        a data-quality failure unless its field is listed in ``incompatible_fields``.
        """
        validation = self.validate_frame(
            pd.DataFrame([dict(record)]), expected_schema, reconciliation, incompatible_fields
        )
        return validation.records[0], validation.failures[0]

    def validate_frame(
        self,
        frame: pd.DataFrame,
        expected_schema: Mapping[str, Union[SemanticType, str]],
        reconciliation: Optional[ReconciliationResult] = None,
        incompatible_fields: Optional[Collection[str]] = None,
    ) -> FrameValidation:
        """Validate every row of ``frame``.

        Returns cleaned records keyed by expected field name (failed or blank cells
        become None), the failures of each row, the aggregated report and the identifier
        fields treated as incompatible. With ``incompatible_fields`` left as None that
        decision is taken from this frame's values; otherwise it is taken as given.
        """
        schema = coerce_expected_schema(expected_schema)
        columns = [str(column) for column in frame.columns]
        if reconciliation is None:
            reconciliation = self.reconciler.reconcile(list(schema), columns)

        row_count = len(frame)
        records: List[Dict[str, Any]] = [{} for _ in range(row_count)]
        failures: List[List[FieldFailure]] = [[] for _ in range(row_count)]

        schema_issues: List[SchemaIssue] = []
        quality_issues: List[DataQualityIssue] = []
        critical_errors: List[CriticalError] = []
        incompatible: set = set()

        for field_name, semantic_type in schema.items():
            if field_name in reconciliation.missing:
                schema_issues.append(SchemaIssue(kind=SchemaIssueKind.MISSING, field=field_name))
                continue
            if field_name in reconciliation.ambiguous:
                schema_issues.append(SchemaIssue(
                    kind=SchemaIssueKind.AMBIGUOUS,
                    field=field_name,
                    candidates=tuple(reconciliation.ranked_candidates(field_name)),
                ))
                continue

            column = reconciliation.matched.get(field_name)
            if column is None or column not in frame.columns:
                schema_issues.append(SchemaIssue(kind=SchemaIssueKind.MISSING, field=field_name))
                continue

            decided = None if incompatible_fields is None else field_name in incompatible_fields
            issue, errors, is_incompatible = self._validate_column(
                frame[column], field_name, column, semantic_type, records, failures, decided
            )
            if is_incompatible:
                incompatible.add(field_name)
            if issue is not None:
                quality_issues.append(issue)
            critical_errors.extend(errors)

        report = ValidationReport(
            schema_issues=tuple(schema_issues),
            data_quality_issues=tuple(quality_issues),
            critical_errors=tuple(critical_errors),
            records_scanned=row_count,
        )
        return FrameValidation(
            report=report,
            records=records,
            failures=failures,
            incompatible_fields=frozenset(incompatible),
        )

    def _validate_column(
        self,
        series: pd.Series,
        field_name: str,
        column: str,
        semantic_type: SemanticType,
        records: List[Dict[str, Any]],
        failures: List[List[FieldFailure]],
        incompatible: Optional[bool] = None,
    ) -> Tuple[Optional[DataQualityIssue], List[CriticalError], bool]:
        results = series.map(lambda value: validate_value(semantic_type, value, self.context)).tolist()

        column_failures: List[Tuple[int, FieldFailure]] = []
        non_blank = 0
        accepted = 0

        for row_index, result in enumerate(results):
            if result.is_success():
                records[row_index][field_name] = result.value.value
                if result.value.value is not None:
                    non_blank += 1
                    accepted += 1
                continue

            non_blank += 1
            records[row_index][field_name] = None
            column_failures.append((row_index, FieldFailure(
                field=field_name,
                column=column,
                error_type=result.error_type,
                message=result.error,
                raw_value=str(result.error_details.get("raw_value", "")),
                critical=is_critical(result),
            )))

        # An identifier column where nothing matches is the wrong type, not dirty data
        if semantic_type != SemanticType.IDENTIFIER:
            incompatible = False
        elif incompatible is None:
            incompatible = non_blank > 0 and accepted == 0
        if incompatible:
            column_failures = [
                (row_index, replace(failure, critical=True, error_type=INCOMPATIBLE_TYPE_ERROR))
                if not failure.critical else (row_index, failure)
                for row_index, failure in column_failures
            ]

        violation_count = 0
        samples: List[str] = []
        critical_samples: Dict[CriticalErrorKind, List[str]] = defaultdict(list)
        critical_counts: Dict[CriticalErrorKind, int] = defaultdict(int)

        for row_index, failure in column_failures:
            failures[row_index].append(failure)
            if failure.critical:
                kind = _CRITICAL_KINDS[failure.error_type]
                critical_counts[kind] += 1
                _add_sample(critical_samples[kind], failure.raw_value)
            else:
                violation_count += 1
                _add_sample(samples, failure.raw_value)

        issue = None
        if violation_count:
            issue = DataQualityIssue(
                field=field_name,
                column=column,
                expected_type=semantic_type,
                violation_count=violation_count,
                sample_violations=tuple(samples),
            )

        errors = [
            CriticalError(
                field=field_name,
                column=column,
                kind=kind,
                message=_CRITICAL_MESSAGES[kind].format(column=column),
                count=critical_counts[kind],
                sample_values=tuple(critical_samples[kind]),
            )
            for kind in CriticalErrorKind
            if critical_counts.get(kind)
        ]

        if issue is not None or errors:
            logger.debug(
                f"Column '{column}' ({semantic_type.value}): {violation_count} violations, "
                f"{sum(critical_counts.values())} critical"
            )
        return issue, errors, incompatible
