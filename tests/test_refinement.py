"""Tests for the agent refinement framework: schedules, activities and proposals."""

import tempfile
from datetime import datetime, timedelta
from pathlib import Path
from unittest.mock import patch

import pytest

from codelabel import db
from codelabel.config import RefinementConfig
from codelabel.errors import ActivityFailure, ErrorCode, ProposalError
from codelabel.heuristics.engine import ClassificationEngine
from codelabel.heuristics.ruleset import next_version
from codelabel.heuristics.store import ConfigurationStore
from codelabel.heuristics.tracker import PerformanceTracker
from codelabel.models import (
    ActivityDefinition,
    ActivityStatus,
    ClassificationKind,
    ClassificationResult,
    CorrectionSource,
)
from codelabel.refinement.activities import (
    ActivityContext,
    ProposalDraft,
    confidence_calibration,
    correction_inference,
    default_activities,
    name_token,
)
from codelabel.refinement.proposals import ProposalBudget, ProposalManager, ProposalState
from codelabel.refinement.scheduler import (
    CronSchedule,
    IntervalSchedule,
    RefinementScheduler,
    parse_schedule,
)


@pytest.fixture
def temp_db():
    """Create a temporary database for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        with patch("codelabel.db.get_db_path", return_value=db_path):
            db.init_db()
            yield db_path


@pytest.fixture
def store():
    """A store serving the built-in ruleset (version 1.0.0)."""
    return ConfigurationStore()


@pytest.fixture
def tracker(temp_db):
    tracker = PerformanceTracker()
    yield tracker
    tracker.close()


@pytest.fixture
def settings():
    return RefinementConfig(min_samples=5, activity_timeout=5.0)


@pytest.fixture
def proposals(temp_db, store):
    return ProposalManager(store)


def bumped(store):
    """The active config under the next version."""
    config = store.current
    return config.with_version(next_version(config.version))


def purpose_result(pattern, label, name):
    return ClassificationResult(
        kind=ClassificationKind.PURPOSE,
        labels=(label,),
        confidence=0.8,
        matched_pattern=pattern,
        used_fallback=pattern == "fallback",
        config_version="1.0.0",
        matched_patterns=(pattern,),
        context={"name": name.lower(), "func": {"name": name, "type": "function"}},
    )


def record(tracker, pattern, label, classifications, corrections, name="fetchUser"):
    """Log classifications for a pattern and override some of them."""
    result = purpose_result(pattern, label, name)
    for _ in range(classifications):
        tracker.record_classification(result)
    for i in range(corrections):
        tracker.record_correction(result, f"Other {i}")


def context(store, tracker, settings, activity_id="test"):
    return ActivityContext(store=store, tracker=tracker, settings=settings, activity_id=activity_id)


# ============================================================================
# Schedules
# ============================================================================


class TestParseSchedule:
    """Tests for schedule expressions."""

    @pytest.mark.parametrize(
        "expression,seconds",
        [("30s", 30), ("15m", 900), ("6h", 21600), ("1d", 86400)],
    )
    def test_intervals(self, expression, seconds):
        """Test shorthand intervals."""
        assert parse_schedule(expression) == IntervalSchedule(seconds)

    def test_cron(self):
        """Test five-field cron expressions."""
        schedule = parse_schedule("*/15 9-17 * * 1-5")
        assert isinstance(schedule, CronSchedule)
        assert schedule.minutes == frozenset({0, 15, 30, 45})
        assert schedule.hours == frozenset(range(9, 18))
        assert schedule.days is None

    @pytest.mark.parametrize("expression", ["often", "0m", "* * *", "61 * * * *", "*/0 * * * *"])
    def test_invalid(self, expression):
        """Test that unparseable schedules are refused."""
        with pytest.raises(ValueError):
            parse_schedule(expression)


class TestIntervalSchedule:
    """Tests for interval schedules."""

    def test_never_run_is_due(self):
        """Test an activity that has never run is due at once."""
        assert IntervalSchedule(3600).is_due(None, datetime(2026, 10, 16, 10, 0)) is True

    def test_due_after_interval(self):
        """Test the interval is measured from the last run."""
        schedule = IntervalSchedule(1800)
        last = datetime(2026, 10, 16, 10, 0)
        assert schedule.is_due(last, last + timedelta(minutes=10)) is False
        assert schedule.is_due(last, last + timedelta(minutes=30)) is True
        assert schedule.next_run(last, last) == datetime(2026, 10, 16, 10, 30)


class TestCronSchedule:
    """Tests for cron schedules."""

    def test_next_step(self):
        """Test a stepped minute field."""
        schedule = CronSchedule.parse("*/15 * * * *")
        assert schedule.next_after(datetime(2026, 10, 16, 10, 7)) == datetime(2026, 10, 16, 10, 15)

    def test_weekdays_skip_weekend(self):
        """Test a Friday evening rolls over to Monday morning."""
        schedule = CronSchedule.parse("0 9 * * 1-5")
        assert schedule.next_after(datetime(2026, 10, 16, 10, 0)) == datetime(2026, 10, 19, 9, 0)

    def test_seven_is_sunday(self):
        """Test that weekday 7 is accepted as Sunday."""
        schedule = CronSchedule.parse("0 0 * * 7")
        assert schedule.next_after(datetime(2026, 10, 16, 12, 0)) == datetime(2026, 10, 18, 0, 0)

    def test_day_fields_are_ored(self):
        """Test a restricted day-of-month and weekday match either way."""
        schedule = CronSchedule.parse("0 0 1 * 1")
        assert schedule.next_after(datetime(2026, 10, 16, 12, 0)) == datetime(2026, 10, 19, 0, 0)

    def test_is_due(self):
        """Test due-ness against the last run."""
        schedule = CronSchedule.parse("*/15 * * * *")
        last = datetime(2026, 10, 16, 10, 0)
        assert schedule.is_due(last, datetime(2026, 10, 16, 10, 14)) is False
        assert schedule.is_due(last, datetime(2026, 10, 16, 10, 15)) is True


# ============================================================================
# Proposals
# ============================================================================


class TestProposals:
    """Tests for the proposal lifecycle."""

    def test_submit_is_pending(self, proposals, store):
        """Test a valid candidate waits for review."""
        proposal = proposals.submit("calibration", bumped(store), "tune", correction_ids=[3, 4])
        assert proposal.state == ProposalState.PROPOSED
        assert proposal.base_version == "1.0.0"
        assert proposal.candidate_version == "1.0.1"
        assert proposal.correction_ids == (3, 4)
        assert proposal.expires_at > proposal.created_at
        assert store.current.version == "1.0.0"
        assert proposals.pending() == [proposal]

    def test_approve_commits(self, proposals, store):
        """Test approval commits the candidate through the store."""
        proposal = proposals.submit("calibration", bumped(store), "tune")
        proposals.approve(proposal.id, reviewer="alice")

        assert proposal.state == ProposalState.COMMITTED
        assert proposal.reviewed_by == "alice"
        assert store.current.version == "1.0.1"
        assert [e.config.version for e in store.history()] == ["1.0.0"]

    def test_reject(self, proposals, store):
        """Test rejection leaves the store untouched."""
        proposal = proposals.submit("calibration", bumped(store), "tune")
        proposals.reject(proposal.id, reviewer="bob", reason="too aggressive")

        assert proposal.state == ProposalState.REJECTED
        assert proposal.error == "too aggressive"
        assert store.current.version == "1.0.0"

    def test_cannot_approve_twice(self, proposals, store):
        """Test only pending proposals can be approved."""
        proposal = proposals.submit("calibration", bumped(store), "tune")
        proposals.reject(proposal.id, reviewer="bob")
        with pytest.raises(ProposalError) as exc:
            proposals.approve(proposal.id, reviewer="alice")
        assert exc.value.code == ErrorCode.PROPOSAL_INVALID_STATE

    def test_expired_cannot_be_approved(self, temp_db, store):
        """Test a proposal past its TTL expires instead of committing."""
        proposals = ProposalManager(store, ttl=timedelta(0))
        proposal = proposals.submit("calibration", bumped(store), "tune")
        with pytest.raises(ProposalError):
            proposals.approve(proposal.id, reviewer="alice")
        assert proposal.state == ProposalState.EXPIRED
        assert store.current.version == "1.0.0"

    def test_expire_stale(self, proposals, store):
        """Test sweeping pending proposals past their TTL."""
        proposal = proposals.submit("calibration", bumped(store), "tune")
        assert proposals.expire_stale(datetime.now()) == []
        assert proposals.expire_stale(datetime.now() + timedelta(hours=73)) == [proposal]
        assert proposal.state == ProposalState.EXPIRED

    def test_stale_base_version_rejected(self, proposals, store):
        """Test a proposal drafted against a replaced version is not committed."""
        proposal = proposals.submit("calibration", bumped(store), "tune")
        store.update(store.current.with_version("2.0.0"))

        with pytest.raises(ProposalError):
            proposals.approve(proposal.id, reviewer="alice")
        assert proposal.state == ProposalState.REJECTED
        assert "drafted against 1.0.0" in proposal.error
        assert store.current.version == "2.0.0"

    def test_invalid_candidate_recorded_as_rejected(self, proposals, store):
        """Test a candidate failing validation never reaches review."""
        candidate = bumped(store).to_dict()
        candidate["purposeHeuristics"]["fallback"]["confidence"] = 0.99

        proposal = proposals.submit("calibration", candidate, "tune")
        assert proposal.state == ProposalState.REJECTED
        assert "fallback confidence" in proposal.error
        assert proposals.pending() == []

    def test_rate_limited_per_activity(self, proposals, store):
        """Test an activity cannot flood the queue."""
        assert proposals.submit("calibration", bumped(store), "1") is not None
        assert proposals.submit("calibration", bumped(store), "2") is not None
        assert proposals.submit("calibration", bumped(store), "3") is None
        assert proposals.submit("inference", bumped(store), "4") is not None

    def test_auto_commit_without_approval(self, temp_db, store):
        """Test proposals commit immediately when approval is not required."""
        proposals = ProposalManager(store, require_approval=False)
        proposal = proposals.submit("calibration", bumped(store), "tune")
        assert proposal.state == ProposalState.COMMITTED
        assert proposal.reviewed_by == "auto"
        assert store.current.version == "1.0.1"

    def test_lookup_by_prefix(self, proposals, store):
        """Test proposals can be addressed by an id prefix."""
        proposal = proposals.submit("calibration", bumped(store), "tune")
        assert proposals.get(proposal.id[:8]) is proposal

    def test_unknown_proposal(self, proposals):
        """Test unknown ids raise a not-found error."""
        with pytest.raises(ProposalError) as exc:
            proposals.get("nope")
        assert exc.value.code == ErrorCode.PROPOSAL_NOT_FOUND

    def test_proposals_persisted(self, proposals, store):
        """Test a new manager sees proposals recorded by an earlier one."""
        proposal = proposals.submit("calibration", bumped(store), "tune")
        reloaded = ProposalManager(store).get(proposal.id)
        assert reloaded.state == ProposalState.PROPOSED
        assert reloaded.candidate["version"] == "1.0.1"
        assert db.get_stats()["pending_proposals"] == 1


class TestProposalBudget:
    """Tests for the per-activity proposal allowance."""

    def test_burst_then_refill(self):
        """Test an activity spends its burst, then earns proposals back hourly."""
        clock = [0.0]
        budget = ProposalBudget(per_hour=2.0, burst=2, clock=lambda: clock[0])

        assert [budget.spend("calibration") for _ in range(3)] == [True, True, False]
        clock[0] = 1800.0
        assert budget.remaining("calibration") == 1
        assert budget.spend("calibration") is True
        assert budget.spend("calibration") is False

    def test_balance_capped_at_burst(self):
        """Test a long idle period does not bank more than the burst."""
        clock = [0.0]
        budget = ProposalBudget(per_hour=4.0, burst=2, clock=lambda: clock[0])
        budget.spend("inference")
        clock[0] = 86400.0
        assert budget.remaining("inference") == 2

    def test_activities_have_separate_balances(self):
        """Test one activity exhausting its budget leaves others untouched."""
        budget = ProposalBudget(per_hour=0.0, burst=1, clock=lambda: 0.0)
        assert budget.spend("calibration") is True
        assert budget.spend("calibration") is False
        assert budget.remaining("inference") == 1


# ============================================================================
# Activities
# ============================================================================


class TestNameToken:
    """Tests for identifier prefix extraction."""

    @pytest.mark.parametrize(
        "name,token",
        [
            ("fetchUser", "fetch"),
            ("handle_click", "handle"),
            ("HandleClick", "handle"),
            ("on", None),
            ("onClick", None),
            ("_private", "private"),
            ("", None),
        ],
    )
    def test_name_token(self, name, token):
        """Test the leading word of an identifier."""
        assert name_token(name) == token


class TestConfidenceCalibration:
    """Tests for the calibration activity."""

    def test_moves_toward_accuracy(self, store, tracker, settings):
        """Test a frequently overridden pattern loses confidence."""
        record(tracker, "dataRetrieval", "Data retrieval", 10, 5)

        draft = confidence_calibration(context(store, tracker, settings))
        assert isinstance(draft, ProposalDraft)
        assert draft.base_version == "1.0.0"
        assert draft.candidate.version == "1.0.1"
        assert draft.candidate.find_pattern("dataRetrieval").confidence == pytest.approx(0.65)
        assert len(draft.correction_ids) == 5
        assert "dataRetrieval" in draft.rationale

    def test_never_below_fallback(self, store, tracker, settings):
        """Test confidence is clamped above the fallback it must beat."""
        record(tracker, "dataRetrieval", "Data retrieval", 10, 10)

        draft = confidence_calibration(context(store, tracker, settings))
        assert draft.candidate.find_pattern("dataRetrieval").confidence == pytest.approx(0.51)

    def test_bundle_floor(self, store, tracker, settings):
        """Test bundle patterns stay above the strongest bundle fallback."""
        result = ClassificationResult(
            kind=ClassificationKind.BUNDLE,
            labels=("server",),
            confidence=0.85,
            matched_pattern="server",
            used_fallback=False,
            config_version="1.0.0",
            matched_patterns=("server",),
        )
        for _ in range(10):
            tracker.record_classification(result)
        for _ in range(10):
            tracker.record_correction(result, "config")

        draft = confidence_calibration(context(store, tracker, settings))
        assert draft.candidate.find_pattern("server").confidence == pytest.approx(0.61)

    def test_requires_min_samples(self, store, tracker, settings):
        """Test patterns with too little data are left alone."""
        record(tracker, "dataRetrieval", "Data retrieval", 4, 4)
        assert confidence_calibration(context(store, tracker, settings)) is None

    def test_ignores_small_shifts(self, store, tracker, settings):
        """Test that accurate patterns are not churned."""
        record(tracker, "dataRetrieval", "Data retrieval", 20, 3)
        assert confidence_calibration(context(store, tracker, settings)) is None

    def test_candidate_is_valid(self, store, tracker, settings):
        """Test the calibrated config passes store validation."""
        record(tracker, "dataRetrieval", "Data retrieval", 10, 5)
        draft = confidence_calibration(context(store, tracker, settings))
        assert store.update(draft.candidate).version == "1.0.1"

    def test_candidate_skips_archived_versions(self, store, tracker, settings):
        """Test a calibration after a rollback does not reuse a retained version."""
        store.update(bumped(store))
        store.rollback("1.0.0")
        record(tracker, "dataRetrieval", "Data retrieval", 10, 5)

        draft = confidence_calibration(context(store, tracker, settings))
        assert draft.candidate.version == "1.0.2"
        assert store.update(draft.candidate).version == "1.0.2"


class TestCorrectionInference:
    """Tests for the correction inference activity."""

    def correct(self, tracker, names, label, source=CorrectionSource.HUMAN):
        for name in names:
            result = purpose_result("fallback", "Utility function", name)
            tracker.record_correction(result, label, source=source)

    def test_learns_prefix_pattern(self, store, tracker, settings):
        """Test consistent corrections become a leading purpose pattern."""
        self.correct(tracker, ["handleClick", "handleSubmit", "handle_drop"], "Event handler")

        draft = correction_inference(context(store, tracker, settings))
        learned = draft.candidate.purpose_patterns[0]
        assert learned.name == "learned_event_handler_handle"
        assert learned.conditions == ("name.startsWith('handle')",)
        assert learned.result == "Event handler"
        assert learned.confidence == 0.75
        assert len(draft.correction_ids) == 3

        store.update(draft.candidate)
        assert ClassificationEngine(store).classify_purpose("handleResize").label == "Event handler"

    def test_requires_minimum_corrections(self, store, tracker, settings):
        """Test two agreeing corrections are not enough."""
        self.correct(tracker, ["handleClick", "handleSubmit"], "Event handler")
        assert correction_inference(context(store, tracker, settings)) is None

    def test_requires_majority(self, store, tracker, settings):
        """Test an even split between labels learns nothing."""
        self.correct(tracker, ["handleA", "handleB", "handleC"], "Event handler")
        self.correct(tracker, ["handleD", "handleE", "handleF"], "Callback")
        assert correction_inference(context(store, tracker, settings)) is None

    def test_ignores_agent_corrections(self, store, tracker, settings):
        """Test only human corrections are learned from."""
        self.correct(
            tracker, ["handleA", "handleB", "handleC"], "Event handler", CorrectionSource.AGENT
        )
        assert correction_inference(context(store, tracker, settings)) is None

    def test_does_not_relearn(self, store, tracker, settings):
        """Test an already learned pattern is not proposed again."""
        self.correct(tracker, ["handleClick", "handleSubmit", "handleDrop"], "Event handler")
        store.update(correction_inference(context(store, tracker, settings)).candidate)
        assert correction_inference(context(store, tracker, settings)) is None


class TestDefaultActivities:
    """Tests for building activity definitions from settings."""

    def test_one_per_schedule(self):
        """Test each configured schedule becomes an activity."""
        activities = default_activities(RefinementConfig())
        assert {a.id: a.schedule for a in activities} == {
            "confidence-calibration": "6h",
            "correction-inference": "1h",
        }

    def test_unknown_action_skipped(self):
        """Test schedules naming unknown routines are skipped."""
        settings = RefinementConfig(schedules={"mystery": "1h"})
        assert default_activities(settings) == []


# ============================================================================
# Scheduler
# ============================================================================


def noop(ctx):
    return None


def propose(ctx):
    config = ctx.store.current
    return ProposalDraft(
        candidate=config.with_version(next_version(config.version)),
        base_version=config.version,
        rationale="test",
    )


def boom(ctx):
    raise RuntimeError("activity exploded")


def slow(ctx):
    ctx.cancelled.wait(5)
    return None


REGISTRY = {"noop": noop, "propose": propose, "boom": boom, "slow": slow}


@pytest.fixture
def scheduler(store, tracker, proposals):
    settings = RefinementConfig(activity_timeout=0.2)
    scheduler = RefinementScheduler(store, tracker, proposals, settings=settings, registry=REGISTRY)
    yield scheduler
    scheduler.stop()


class TestScheduler:
    """Tests for the refinement scheduler."""

    def test_register_rejects_unknown_action(self, scheduler):
        """Test activities must name a registered routine."""
        with pytest.raises(ValueError):
            scheduler.register(ActivityDefinition(id="x", schedule="1h", action="missing"))

    def test_register_rejects_bad_schedule(self, scheduler):
        """Test activities must carry a parseable schedule."""
        with pytest.raises(ValueError):
            scheduler.register(ActivityDefinition(id="x", schedule="sometimes", action="noop"))

    def test_unknown_activity(self, scheduler):
        """Test running an unregistered activity id."""
        with pytest.raises(ActivityFailure):
            scheduler.run_activity("ghost")

    def test_successful_run(self, scheduler):
        """Test a run updates status, count and last run."""
        activity = scheduler.register(ActivityDefinition(id="n", schedule="1h", action="noop"))
        assert scheduler.run_activity("n") is None
        assert activity.last_outcome == ActivityStatus.SUCCEEDED
        assert activity.status == ActivityStatus.IDLE
        assert activity.run_count == 1
        assert activity.last_run is not None

    def test_draft_becomes_proposal(self, scheduler, proposals, store):
        """Test an activity's draft is routed to the proposal queue."""
        scheduler.register(ActivityDefinition(id="p", schedule="1h", action="propose"))
        proposal = scheduler.run_activity("p")
        assert proposal.state == ProposalState.PROPOSED
        assert proposal.activity_id == "p"
        assert proposals.pending() == [proposal]
        assert store.current.version == "1.0.0"

    def test_failure_recorded(self, scheduler):
        """Test an exception marks the activity failed without propagating."""
        activity = scheduler.register(ActivityDefinition(id="b", schedule="1h", action="boom"))
        assert scheduler.run_activity("b") is None
        assert activity.last_outcome == ActivityStatus.FAILED
        assert activity.status == ActivityStatus.IDLE
        assert "activity_failed" in activity.last_error

    def test_timeout_recorded(self, scheduler):
        """Test an overrunning activity is cancelled and marked failed."""
        activity = scheduler.register(ActivityDefinition(id="s", schedule="1h", action="slow"))
        assert scheduler.run_activity("s") is None
        assert activity.last_outcome == ActivityStatus.FAILED
        assert "activity_timeout" in activity.last_error

    def test_outcome_persisted_as_idle(self, scheduler):
        """Test the stored state after a run is idle with the outcome kept."""
        scheduler.register(ActivityDefinition(id="b", schedule="1h", action="boom"))
        scheduler.run_activity("b")
        saved = db.get_activity("b")
        assert saved.status == ActivityStatus.IDLE
        assert saved.last_outcome == ActivityStatus.FAILED

    def test_failed_activity_fires_again(self, scheduler):
        """Test a failed activity is eligible at its next due time."""
        scheduler.register(ActivityDefinition(id="b", schedule="1h", action="boom"))
        now = datetime.now()
        scheduler.run_activity("b", now=now)
        assert scheduler.due(now + timedelta(hours=1)) != []

    def test_running_activity_skipped(self, scheduler):
        """Test a running activity is not started twice."""
        activity = scheduler.register(ActivityDefinition(id="n", schedule="1h", action="noop"))
        activity.status = ActivityStatus.RUNNING
        assert scheduler.run_activity("n") is None
        assert activity.run_count == 0
        assert scheduler.due() == []

    def test_tick_runs_due_activities(self, scheduler):
        """Test ticks fire activities only when their schedule elapses."""
        first = scheduler.register(ActivityDefinition(id="a", schedule="1h", action="noop"))
        second = scheduler.register(ActivityDefinition(id="b", schedule="1h", action="noop"))
        now = datetime.now()

        scheduler.tick(now)
        assert (first.run_count, second.run_count) == (1, 1)
        scheduler.tick(now + timedelta(minutes=10))
        assert (first.run_count, second.run_count) == (1, 1)
        scheduler.tick(now + timedelta(hours=2))
        assert (first.run_count, second.run_count) == (2, 2)

    def test_tick_expires_proposals(self, scheduler, proposals, store):
        """Test each tick sweeps expired proposals."""
        proposal = proposals.submit("x", bumped(store), "tune")
        scheduler.tick(datetime.now() + timedelta(hours=100))
        assert proposal.state == ProposalState.EXPIRED

    def test_disabled_activity_not_due(self, scheduler):
        """Test disabled activities never come due."""
        scheduler.register(ActivityDefinition(id="n", schedule="1h", action="noop", enabled=False))
        assert scheduler.due() == []

    def test_state_restored_on_register(self, store, tracker, proposals, scheduler):
        """Test run state survives a restart; an in-flight run counts as failed."""
        scheduler.register(ActivityDefinition(id="n", schedule="1h", action="noop"))
        scheduler.run_activity("n")
        db.save_activity(
            ActivityDefinition(id="r", schedule="1h", action="noop", status=ActivityStatus.RUNNING)
        )

        restarted = RefinementScheduler(store, tracker, proposals, registry=REGISTRY)
        try:
            restored = restarted.register(ActivityDefinition(id="n", schedule="1h", action="noop"))
            interrupted = restarted.register(ActivityDefinition(id="r", schedule="1h", action="noop"))
        finally:
            restarted.stop()
        assert restored.run_count == 1
        assert restored.last_outcome == ActivityStatus.SUCCEEDED
        assert interrupted.last_outcome == ActivityStatus.FAILED
        assert interrupted.last_error == "interrupted before finishing"
        assert (restored.status, interrupted.status) == (ActivityStatus.IDLE, ActivityStatus.IDLE)

    def test_builtin_activity_end_to_end(self, store, tracker, proposals):
        """Test corrections flow through inference, review and commit."""
        for name in ["handleClick", "handleSubmit", "handleDrop"]:
            tracker.record_correction(
                purpose_result("fallback", "Utility function", name), "Event handler"
            )
        scheduler = RefinementScheduler(store, tracker, proposals)
        try:
            for activity in default_activities(scheduler.settings):
                scheduler.register(activity)
            proposal = scheduler.run_activity("correction-inference")
        finally:
            scheduler.stop()

        proposals.approve(proposal.id, reviewer="alice")
        assert store.current.version == "1.0.1"
        assert store.current.purpose_patterns[0].name == "learned_event_handler_handle"
