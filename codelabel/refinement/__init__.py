"""Agent refinement framework for codelabel."""

from .activities import (
    BUILTIN_ACTIVITIES,
    ActivityContext,
    ProposalDraft,
    confidence_calibration,
    correction_inference,
    default_activities,
)
from .proposals import Proposal, ProposalManager, ProposalState
from .scheduler import RefinementScheduler, parse_schedule

__all__ = [
    "BUILTIN_ACTIVITIES",
    "ActivityContext",
    "Proposal",
    "ProposalDraft",
    "ProposalManager",
    "ProposalState",
    "RefinementScheduler",
    "confidence_calibration",
    "correction_inference",
    "default_activities",
    "parse_schedule",
]
