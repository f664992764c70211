"""Custom exception types and error handling utilities for codelabel."""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger("codelabel.errors")


class ErrorCode(Enum):
    """Error codes for classification and categorization."""

    # Configuration errors
    CONFIG_INVALID = "config_invalid"
    CONFIG_SOURCE_UNAVAILABLE = "config_source_unavailable"
    CONFIG_VERSION_NOT_FOUND = "config_version_not_found"

    # Evaluation errors
    CONDITION_UNPARSEABLE = "condition_unparseable"
    CONDITION_FIELD_MISSING = "condition_field_missing"

    # Refinement errors
    ACTIVITY_FAILED = "activity_failed"
    ACTIVITY_TIMEOUT = "activity_timeout"
    PROPOSAL_NOT_FOUND = "proposal_not_found"
    PROPOSAL_INVALID_STATE = "proposal_invalid_state"


@dataclass
class CodelabelError(Exception):
    """Base exception for codelabel with structured error information."""

    code: ErrorCode
    message: str
    details: dict[str, Any] = field(default_factory=dict)
    cause: Exception | None = None

    def __str__(self) -> str:
        parts = [f"[{self.code.value}] {self.message}"]
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            parts.append(f" ({details_str})")
        if self.cause:
            parts.append(f" caused by: {self.cause}")
        return "".join(parts)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
            "cause": str(self.cause) if self.cause else None,
        }


class ConfigValidationError(CodelabelError):
    """A heuristics config is malformed or incomplete and was not applied."""

    @property
    def errors(self) -> list[str]:
        """Every validation problem found, in discovery order."""
        return list(self.details.get("errors", []))


class ConfigSourceUnavailable(CodelabelError):
    """The config source could not be read."""

    pass


class ConditionEvaluationWarning(CodelabelError):
    """A single condition could not be evaluated; it counts as false."""

    pass


class RollbackError(CodelabelError):
    """The requested version is not in the retained history."""

    pass


class ActivityFailure(CodelabelError):
    """A refinement activity errored or exceeded its time budget."""

    pass


class ProposalError(CodelabelError):
    """Unknown proposal or an illegal proposal state transition."""

    pass


def clamp_confidence(value: float, source: str = "") -> float:
    """Pin a pattern or inference confidence into [0.0, 1.0].

    Refinement arithmetic can push a target past the bounds the ruleset
    validator enforces; clamping here keeps candidates valid. A warning
    names the pattern or setting the value came from.
    """
    if 0.0 <= value <= 1.0:
        return value
    clamped = min(max(value, 0.0), 1.0)
    logger.warning(
        "Confidence %.4f for %s outside [0, 1], using %.1f",
        value,
        source or "unnamed value",
        clamped,
        extra={"confidence_source": source, "original_confidence": value},
    )
    return clamped


def safe_truncate(text: str, max_length: int, suffix: str = "...") -> str:
    """Shorten a rationale or message for table display."""
    if len(text) <= max_length:
        return text
    keep = max_length - len(suffix)
    return text[:keep] + suffix if keep > 0 else suffix[:max_length]
