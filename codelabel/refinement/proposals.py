"""Proposal pipeline: candidate configs wait here for sign-off before commit.

An activity never writes to the store directly. It submits a candidate,
which becomes a ``Proposal``:

    PROPOSED -> APPROVED -> COMMITTED
    PROPOSED -> REJECTED
    PROPOSED -> EXPIRED

An approved proposal whose candidate no longer applies cleanly (it fails
validation, or the active version moved on since it was drafted) ends as
REJECTED with the reason recorded in ``error``.
"""

import json
import logging
import threading
import time
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from .. import db
from ..errors import (
    CodelabelError,
    ConfigValidationError,
    ErrorCode,
    ProposalError,
)
from ..heuristics.ruleset import HeuristicsConfig
from ..heuristics.store import ConfigurationStore

logger = logging.getLogger("codelabel.refinement.proposals")

AUTO_REVIEWER = "auto"


class ProposalState(Enum):
    PROPOSED = "proposed"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMMITTED = "committed"
    EXPIRED = "expired"


@dataclass
class Proposal:
    """A candidate config with its provenance."""

    id: str
    activity_id: str
    base_version: str
    candidate: dict[str, Any]  # raw document, validated again on commit
    rationale: str
    correction_ids: tuple[int, ...] = ()
    state: ProposalState = ProposalState.PROPOSED
    created_at: datetime = field(default_factory=datetime.now)
    expires_at: datetime | None = None
    reviewed_by: str | None = None
    reviewed_at: datetime | None = None
    error: str | None = None

    @property
    def candidate_version(self) -> str | None:
        return self.candidate.get("version") if isinstance(self.candidate, dict) else None

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.expires_at is not None and (now or datetime.now()) >= self.expires_at

    def to_row(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "activity_id": self.activity_id,
            "base_version": self.base_version,
            "candidate_version": self.candidate_version,
            "candidate": json.dumps(self.candidate),
            "rationale": self.rationale,
            "correction_ids": json.dumps(list(self.correction_ids)),
            "state": self.state.value,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "reviewed_by": self.reviewed_by,
            "reviewed_at": self.reviewed_at.isoformat() if self.reviewed_at else None,
            "error": self.error,
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Proposal":
        return cls(
            id=row["id"],
            activity_id=row["activity_id"],
            base_version=row["base_version"],
            candidate=json.loads(row["candidate"]),
            rationale=row["rationale"] or "",
            correction_ids=tuple(json.loads(row["correction_ids"] or "[]")),
            state=ProposalState(row["state"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            expires_at=datetime.fromisoformat(row["expires_at"]) if row["expires_at"] else None,
            reviewed_by=row["reviewed_by"],
            reviewed_at=datetime.fromisoformat(row["reviewed_at"]) if row["reviewed_at"] else None,
            error=row["error"],
        )


class ProposalBudget:
    """How many proposals each activity may still submit.

    Every activity starts with ``burst`` proposals in hand and earns them
    back at ``per_hour``. Balances are keyed by activity id, so one noisy
    activity cannot starve the others.
    """

    def __init__(self, per_hour: float = 4.0, burst: int = 2, clock=time.monotonic):
        self.per_hour = per_hour
        self.burst = burst
        self._clock = clock
        self._balances: dict[str, tuple[float, float]] = {}

    def _balance(self, activity_id: str, now: float) -> float:
        balance, since = self._balances.get(activity_id, (float(self.burst), now))
        return min(float(self.burst), balance + (now - since) * self.per_hour / 3600.0)

    def remaining(self, activity_id: str) -> int:
        return int(self._balance(activity_id, self._clock()))

    def spend(self, activity_id: str) -> bool:
        """Take one proposal from the activity's balance if it has one."""
        now = self._clock()
        balance = self._balance(activity_id, now)
        if balance < 1.0:
            self._balances[activity_id] = (balance, now)
            return False
        self._balances[activity_id] = (balance - 1.0, now)
        return True


class ProposalManager:
    """Holds proposals and commits approved ones through the store."""

    def __init__(
        self,
        store: ConfigurationStore,
        require_approval: bool = True,
        ttl: timedelta = timedelta(hours=72),
        proposals_per_hour: float = 4.0,
        burst: int = 2,
        persist: bool = True,
    ):
        self.store = store
        self.require_approval = require_approval
        self.ttl = ttl
        self.budget = ProposalBudget(per_hour=proposals_per_hour, burst=burst)
        self.persist = persist
        self._proposals: dict[str, Proposal] = {}
        self._lock = threading.RLock()

        if persist:
            db.init_db()
            for row in db.get_proposals():
                proposal = Proposal.from_row(row)
                self._proposals[proposal.id] = proposal

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, proposal_id: str) -> Proposal:
        """Look a proposal up by id or unique id prefix.

        Raises:
            ProposalError: No proposal (or more than one) matches.
        """
        with self._lock:
            if proposal_id in self._proposals:
                return self._proposals[proposal_id]
            matches = [p for pid, p in self._proposals.items() if pid.startswith(proposal_id)]
        if len(matches) == 1:
            return matches[0]
        raise ProposalError(
            code=ErrorCode.PROPOSAL_NOT_FOUND,
            message=f"No unique proposal matches '{proposal_id}'",
            details={"proposal_id": proposal_id, "matches": len(matches)},
        )

    def list_proposals(self, state: ProposalState | None = None) -> list[Proposal]:
        """Proposals newest first, optionally filtered by state."""
        with self._lock:
            proposals = [p for p in self._proposals.values() if state is None or p.state == state]
        return sorted(proposals, key=lambda p: p.created_at, reverse=True)

    def pending(self) -> list[Proposal]:
        return self.list_proposals(ProposalState.PROPOSED)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def submit(
        self,
        activity_id: str,
        candidate: HeuristicsConfig | dict[str, Any],
        rationale: str,
        correction_ids: Sequence[int] = (),
        base_version: str | None = None,
    ) -> Proposal | None:
        """Record a candidate from an activity.

        Returns None when the activity is over its proposal rate. A candidate
        that fails validation is kept as REJECTED so its provenance survives.
        When approval is not required, the proposal is committed at once.
        """
        if not self._acquire(activity_id):
            logger.warning(
                "Proposal rate exceeded for activity %s, discarding candidate",
                activity_id,
                extra={"activity_id": activity_id},
            )
            return None

        document = candidate.to_dict() if isinstance(candidate, HeuristicsConfig) else dict(candidate)
        now = datetime.now()
        proposal = Proposal(
            id=uuid.uuid4().hex,
            activity_id=activity_id,
            base_version=base_version or self.store.current.version,
            candidate=document,
            rationale=rationale,
            correction_ids=tuple(i for i in correction_ids if i is not None),
            created_at=now,
            expires_at=now + self.ttl,
        )

        try:
            HeuristicsConfig.from_dict(document)
        except ConfigValidationError as e:
            proposal.state = ProposalState.REJECTED
            proposal.reviewed_by = AUTO_REVIEWER
            proposal.reviewed_at = now
            proposal.error = "; ".join(e.errors) or e.message
            self._save(proposal)
            logger.warning(
                "Discarded invalid candidate from %s: %s",
                activity_id,
                proposal.error,
                extra={"activity_id": activity_id, "proposal_id": proposal.id, "errors": e.errors},
            )
            return proposal

        self._save(proposal)
        logger.info(
            "Proposal %s from %s: %s -> %s",
            proposal.id[:8],
            activity_id,
            proposal.base_version,
            proposal.candidate_version,
            extra={
                "proposal_id": proposal.id,
                "activity_id": activity_id,
                "base_version": proposal.base_version,
                "candidate_version": proposal.candidate_version,
                "correction_ids": list(proposal.correction_ids),
            },
        )

        if not self.require_approval:
            try:
                self.approve(proposal.id, reviewer=AUTO_REVIEWER)
            except CodelabelError as e:
                logger.warning("Auto-commit of proposal %s failed: %s", proposal.id[:8], e)
        return proposal

    def approve(self, proposal_id: str, reviewer: str) -> Proposal:
        """Approve a pending proposal and commit it through the store.

        Raises:
            ProposalError: Unknown id, not pending, expired, or drafted against
                a version that is no longer active.
            ConfigValidationError: The candidate no longer validates.
            ConfigSourceUnavailable: The store could not persist the candidate.
        """
        with self._lock:
            proposal = self._pending(proposal_id)
            now = datetime.now()

            if proposal.is_expired(now):
                self._transition(proposal, ProposalState.EXPIRED, now=now)
                raise ProposalError(
                    code=ErrorCode.PROPOSAL_INVALID_STATE,
                    message=f"Proposal {proposal.id[:8]} has expired",
                    details={"proposal_id": proposal.id, "expires_at": proposal.expires_at.isoformat()},
                )

            self._transition(proposal, ProposalState.APPROVED, reviewer=reviewer, now=now)

            active = self.store.current.version
            if active != proposal.base_version:
                self._transition(
                    proposal,
                    ProposalState.REJECTED,
                    error=f"drafted against {proposal.base_version}, active is {active}",
                )
                raise ProposalError(
                    code=ErrorCode.PROPOSAL_INVALID_STATE,
                    message="Proposal is stale: the active config changed since it was drafted",
                    details={
                        "proposal_id": proposal.id,
                        "base_version": proposal.base_version,
                        "active_version": active,
                    },
                )

            try:
                self.store.update(proposal.candidate)
            except CodelabelError as e:
                self._transition(proposal, ProposalState.REJECTED, error=e.message)
                raise

            self._transition(proposal, ProposalState.COMMITTED)
            return proposal

    def reject(self, proposal_id: str, reviewer: str, reason: str | None = None) -> Proposal:
        """Reject a pending proposal.

        Raises:
            ProposalError: Unknown id or not pending.
        """
        with self._lock:
            proposal = self._pending(proposal_id)
            self._transition(
                proposal, ProposalState.REJECTED, reviewer=reviewer, error=reason
            )
            return proposal

    def expire_stale(self, now: datetime | None = None) -> list[Proposal]:
        """Move pending proposals past their TTL to EXPIRED."""
        now = now or datetime.now()
        expired = []
        with self._lock:
            for proposal in self._proposals.values():
                if proposal.state == ProposalState.PROPOSED and proposal.is_expired(now):
                    self._transition(proposal, ProposalState.EXPIRED, now=now)
                    expired.append(proposal)
        return expired

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _acquire(self, activity_id: str) -> bool:
        with self._lock:
            return self.budget.spend(activity_id)

    def _pending(self, proposal_id: str) -> Proposal:
        proposal = self.get(proposal_id)
        if proposal.state != ProposalState.PROPOSED:
            raise ProposalError(
                code=ErrorCode.PROPOSAL_INVALID_STATE,
                message=f"Proposal {proposal.id[:8]} is {proposal.state.value}, not proposed",
                details={"proposal_id": proposal.id, "state": proposal.state.value},
            )
        return proposal

    def _transition(
        self,
        proposal: Proposal,
        state: ProposalState,
        reviewer: str | None = None,
        error: str | None = None,
        now: datetime | None = None,
    ) -> None:
        previous = proposal.state
        proposal.state = state
        if reviewer is not None:
            proposal.reviewed_by = reviewer
            proposal.reviewed_at = now or datetime.now()
        if error is not None:
            proposal.error = error
        self._save(proposal)

        logger.info(
            "Proposal %s: %s -> %s",
            proposal.id[:8],
            previous.value,
            state.value,
            extra={
                "proposal_id": proposal.id,
                "activity_id": proposal.activity_id,
                "from_state": previous.value,
                "to_state": state.value,
                "reviewer": proposal.reviewed_by,
                "error": proposal.error,
            },
        )

    def _save(self, proposal: Proposal) -> None:
        with self._lock:
            self._proposals[proposal.id] = proposal
        if self.persist:
            db.save_proposal(proposal.to_row())
