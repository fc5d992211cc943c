"""
Segmentation error types.

Validation errors are raised on the authoring path, before criteria are
stored. Evaluation errors are raised per rule and downgraded to warnings by
the segment engine. Repository errors come from the customer and segment
stores and drive the auto-updater's retry policy.
"""

from typing import Any, Optional


class SegmentationError(Exception):
    """Base class for every error raised by the segmentation engine."""


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class RuleValidationError(SegmentationError):
    """A single rule is not legal."""

    code = "invalid_rule"

    def __init__(self, message: str, field: Optional[str] = None, rule_index: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.field = field
        self.rule_index = rule_index

    def at(self, rule_index: int) -> "RuleValidationError":
        """Attach the position of the offending rule inside its criteria."""
        self.rule_index = rule_index
        return self

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "rule_index": self.rule_index,
            "field": self.field,
            "message": self.message,
        }


class UnknownFieldError(RuleValidationError):
    code = "unknown_field"

    def __init__(self, field: str, rule_index: Optional[int] = None):
        super().__init__(f"Unknown customer field '{field}'", field=field, rule_index=rule_index)


class FieldTypeMismatchError(RuleValidationError):
    code = "field_type_mismatch"

    def __init__(self, field: str, data_type: str, expected: str, rule_index: Optional[int] = None):
        super().__init__(
            f"Field '{field}' has data type {expected}, not {data_type}",
            field=field,
            rule_index=rule_index,
        )
        self.data_type = data_type
        self.expected = expected


class IncompatibleOperatorError(RuleValidationError):
    code = "incompatible_operator"

    def __init__(self, field: str, operator: str, data_type: str, rule_index: Optional[int] = None):
        super().__init__(
            f"Operator {operator} cannot be used with {data_type} field '{field}'",
            field=field,
            rule_index=rule_index,
        )
        self.operator = operator
        self.data_type = data_type


class MalformedValueError(RuleValidationError):
    code = "malformed_value"


class EmptyCriteriaError(RuleValidationError):
    code = "empty_criteria"

    def __init__(self):
        super().__init__("Segment criteria must contain at least one rule")


class CriteriaValidationError(SegmentationError):
    """Criteria failed validation; carries every rule-level error found."""

    def __init__(self, errors: list[RuleValidationError]):
        self.errors = list(errors)
        summary = "; ".join(str(e) for e in self.errors) or "invalid criteria"
        super().__init__(summary)

    def to_list(self) -> list[dict[str, Any]]:
        return [e.to_dict() for e in self.errors]


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


class EvaluationError(SegmentationError):
    """A rule could not be evaluated against a customer record."""


class TypeCoercionFailedError(EvaluationError):
    """A stored rule cannot be interpreted under its declared data type."""

    def __init__(self, field: str, reason: str):
        super().__init__(f"Rule on '{field}' cannot be evaluated: {reason}")
        self.field = field
        self.reason = reason


class EvaluationCancelled(SegmentationError):
    """An evaluation pass was abandoned because its epoch went stale."""


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


class RepositoryError(SegmentationError):
    """The customer source or segment store failed.

    Transient errors (lost connections, timeouts) are retried by the
    auto-updater; permanent errors mark the segment's last evaluation as
    failed.
    """

    def __init__(self, message: str, transient: bool = False):
        super().__init__(message)
        self.transient = transient


class SegmentNotFoundError(SegmentationError):
    def __init__(self, segment_id: int):
        super().__init__(f"Segment {segment_id} was not found")
        self.segment_id = segment_id


class DuplicateSegmentError(SegmentationError):
    def __init__(self, name: str):
        super().__init__(f"A segment named '{name}' already exists")
        self.name = name
