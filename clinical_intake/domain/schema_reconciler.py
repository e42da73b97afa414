"""Schema Reconciler - fuzzy matching of incoming columns to the expected schema.

Exports from uncoordinated sources name the same field "PatientID", "patient_id" or
"PATIENT_ID". Names are normalised (case, punctuation and separators removed) and
scored with difflib's SequenceMatcher ratio on a 0-100 scale; every column at or
above the similarity threshold is a candidate.

The best-scoring candidate is matched. When two or more candidates tie for the best
score (e.g. "Patient_ID" and "patient id", which normalise identically) the field is
reported as ambiguous and left unmatched: a wrong silent pick would corrupt
downstream typed data.
"""

import logging
from dataclasses import dataclass, field
from difflib import SequenceMatcher
from typing import Dict, FrozenSet, List, Mapping, Sequence, Tuple

logger = logging.getLogger(__name__)

DEFAULT_SIMILARITY_THRESHOLD = 90.0


def normalize_column_name(name: str) -> str:
    """Lower-case a column name and keep only its alphanumeric characters."""
    return "".join(ch for ch in str(name).strip().lower() if ch.isalnum())


@dataclass(frozen=True)
class ReconciliationResult:
    """Outcome of reconciling expected field names with actual columns.

    Attributes:
        matched: expected field -> the single actual column that qualified
        missing: expected fields with no qualifying column
        ambiguous: expected field -> the columns tied for the best score
        scores: expected field -> {actual column: similarity} for all candidates
    """
    matched: Mapping[str, str]
    missing: FrozenSet[str]
    ambiguous: Mapping[str, FrozenSet[str]]
    scores: Mapping[str, Mapping[str, float]] = field(default_factory=dict)

    def ranked_candidates(self, field_name: str) -> List[str]:
        """Candidates for a field, best score first, ties broken by name."""
        candidate_scores = self.scores.get(field_name, {})
        return [name for name, _ in sorted(candidate_scores.items(), key=lambda item: (-item[1], item[0]))]

    @property
    def is_complete(self) -> bool:
        return not self.missing and not self.ambiguous


class SchemaReconciler:
    """Matches expected field names against an incoming file's column names.

    Parameters:
        threshold: Minimum similarity ratio (0-100) on normalised names for a column
                   to become a candidate
    """

    def __init__(self, threshold: float = DEFAULT_SIMILARITY_THRESHOLD):
        if not 0 < threshold <= 100:
            raise ValueError(f"Similarity threshold must be in (0, 100], got {threshold}")
        self.threshold = threshold

    def candidates(self, expected_field: str, actual_columns: Sequence[str]) -> List[Tuple[str, float]]:
        """Score every actual column against one expected field, keeping those above threshold."""
        normalized_field = normalize_column_name(expected_field)
        if not normalized_field:
            return []

        scored = []
        for column in actual_columns:
            normalized_column = normalize_column_name(column)
            if not normalized_column:
                continue
            score = SequenceMatcher(None, normalized_field, normalized_column).ratio() * 100
            if score >= self.threshold:
                scored.append((column, float(score)))
        return sorted(scored, key=lambda item: (-item[1], item[0]))

    def reconcile(
        self,
        expected_field_names: Sequence[str],
        actual_column_names: Sequence[str],
    ) -> ReconciliationResult:
        """Reconcile expected fields with actual columns. Pure function of its inputs."""
        matched: Dict[str, str] = {}
        missing = set()
        ambiguous: Dict[str, FrozenSet[str]] = {}
        scores: Dict[str, Dict[str, float]] = {}

        for expected_field in expected_field_names:
            candidates = self.candidates(expected_field, actual_column_names)
            scores[expected_field] = dict(candidates)

            if not candidates:
                missing.add(expected_field)
                continue

            best_score = candidates[0][1]
            tied = [name for name, score in candidates if score == best_score]
            if len(tied) == 1:
                matched[expected_field] = tied[0]
            else:
                ambiguous[expected_field] = frozenset(tied)

        if missing or ambiguous:
            logger.debug(
                f"Schema reconciliation: {len(matched)} matched, {len(missing)} missing, "
                f"{len(ambiguous)} ambiguous"
            )

        return ReconciliationResult(
            matched=matched,
            missing=frozenset(missing),
            ambiguous=ambiguous,
            scores=scores,
        )


def reconcile(
    expected_field_names: Sequence[str],
    actual_column_names: Sequence[str],
    threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
) -> ReconciliationResult:
    """Convenience wrapper around SchemaReconciler.reconcile."""
    return SchemaReconciler(threshold).reconcile(expected_field_names, actual_column_names)
