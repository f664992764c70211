"""Refinement scheduler: runs activities when their schedule comes due.

Per activity: idle -> running -> succeeded | failed -> idle. The outcome of
the last run stays on ``last_outcome`` while the activity waits for its next
slot. A running activity is skipped, never queued.
Activities run on a worker pool under a time budget; one that overruns is
marked failed, asked to stop, and its draft (if it ever produces one) is
thrown away.
"""

import logging
import re
import threading
from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta

from .. import db
from ..config import RefinementConfig
from ..errors import ActivityFailure, CodelabelError, ErrorCode
from ..heuristics.store import ConfigurationStore
from ..heuristics.tracker import PerformanceTracker
from ..logging import run_context
from ..models import ActivityDefinition, ActivityStatus
from .activities import BUILTIN_ACTIVITIES, Activity, ActivityContext, ProposalDraft
from .proposals import Proposal, ProposalManager

logger = logging.getLogger("codelabel.refinement.scheduler")


# ============================================================================
# Schedules
# ============================================================================

_INTERVAL_RE = re.compile(r"^\s*(\d+)\s*([smhd])\s*$")
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400}


@dataclass(frozen=True)
class IntervalSchedule:
    """Fires every ``seconds`` after the previous run."""

    seconds: int

    def is_due(self, last_run: datetime | None, now: datetime) -> bool:
        return last_run is None or (now - last_run).total_seconds() >= self.seconds

    def next_run(self, last_run: datetime | None, now: datetime) -> datetime:
        if last_run is None:
            return now
        return last_run + timedelta(seconds=self.seconds)


# (name, low, high) for the five cron fields
_CRON_FIELDS = (
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day", 1, 31),
    ("month", 1, 12),
    ("weekday", 0, 7),
)


def _parse_cron_field(text: str, low: int, high: int) -> frozenset[int] | None:
    """Values a cron field allows, or None for an unrestricted ``*``."""
    if text == "*":
        return None

    values: set[int] = set()
    for part in text.split(","):
        step = 1
        stepped = "/" in part
        if stepped:
            part, step_text = part.split("/", 1)
            step = int(step_text)
            if step < 1:
                raise ValueError(f"step must be positive in {text!r}")
        if part == "*":
            start, end = low, high
        elif "-" in part:
            start_text, end_text = part.split("-", 1)
            start, end = int(start_text), int(end_text)
        else:
            start = end = int(part)
            if stepped:
                end = high
        if start < low or end > high or start > end:
            raise ValueError(f"{text!r} is outside {low}-{high}")
        values.update(range(start, end + 1, step))
    return frozenset(values)


@dataclass(frozen=True)
class CronSchedule:
    """Five-field cron expression: minute hour day month weekday."""

    expression: str
    minutes: frozenset[int] | None
    hours: frozenset[int] | None
    days: frozenset[int] | None
    months: frozenset[int] | None
    weekdays: frozenset[int] | None  # 0 and 7 are Sunday

    @classmethod
    def parse(cls, expression: str) -> "CronSchedule":
        fields = expression.split()
        if len(fields) != 5:
            raise ValueError(f"cron expression needs 5 fields, got {len(fields)}")
        parsed = [_parse_cron_field(f, low, high) for f, (_, low, high) in zip(fields, _CRON_FIELDS)]
        weekdays = parsed[4]
        if weekdays is not None and 7 in weekdays:
            weekdays = (weekdays - {7}) | {0}
        return cls(expression, parsed[0], parsed[1], parsed[2], parsed[3], weekdays)

    def _day_matches(self, day: date) -> bool:
        if self.months is not None and day.month not in self.months:
            return False
        day_ok = self.days is None or day.day in self.days
        weekday_ok = self.weekdays is None or (day.weekday() + 1) % 7 in self.weekdays
        # Classic cron: when both day fields are restricted, either may match
        if self.days is not None and self.weekdays is not None:
            return day_ok or weekday_ok
        return day_ok and weekday_ok

    def next_after(self, moment: datetime) -> datetime | None:
        """First matching minute strictly after ``moment``."""
        start = moment.replace(second=0, microsecond=0) + timedelta(minutes=1)
        hours = sorted(self.hours) if self.hours is not None else range(24)
        minutes = sorted(self.minutes) if self.minutes is not None else range(60)

        day = start.date()
        for _ in range(366 * 5):
            if self._day_matches(day):
                for hour in hours:
                    for minute in minutes:
                        candidate = datetime.combine(day, time(hour, minute))
                        if candidate >= start:
                            return candidate
            day += timedelta(days=1)
        return None

    def is_due(self, last_run: datetime | None, now: datetime) -> bool:
        reference = last_run if last_run is not None else now - timedelta(minutes=1)
        upcoming = self.next_after(reference)
        return upcoming is not None and upcoming <= now

    def next_run(self, last_run: datetime | None, now: datetime) -> datetime | None:
        return self.next_after(last_run if last_run is not None else now - timedelta(minutes=1))


Schedule = IntervalSchedule | CronSchedule


def parse_schedule(expression: str) -> Schedule:
    """Parse ``"30m"``-style intervals or 5-field cron expressions.

    Raises:
        ValueError: If the expression is neither.
    """
    match = _INTERVAL_RE.match(expression)
    if match:
        seconds = int(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        if seconds <= 0:
            raise ValueError(f"interval must be positive: {expression!r}")
        return IntervalSchedule(seconds)
    return CronSchedule.parse(expression)


# ============================================================================
# Scheduler
# ============================================================================


class RefinementScheduler:
    """Fires registered activities and routes their drafts to proposals."""

    def __init__(
        self,
        store: ConfigurationStore,
        tracker: PerformanceTracker,
        proposals: ProposalManager,
        settings: RefinementConfig | None = None,
        registry: Mapping[str, Activity] | None = None,
        persist: bool = True,
    ):
        self.store = store
        self.tracker = tracker
        self.proposals = proposals
        self.settings = settings or RefinementConfig()
        self.registry = dict(registry if registry is not None else BUILTIN_ACTIVITIES)
        self.persist = persist

        self._activities: dict[str, ActivityDefinition] = {}
        self._schedules: dict[str, Schedule] = {}
        self._running: dict[str, ActivityContext] = {}
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="codelabel-activity")
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def activities(self) -> list[ActivityDefinition]:
        return list(self._activities.values())

    def get_activity(self, activity_id: str) -> ActivityDefinition:
        try:
            return self._activities[activity_id]
        except KeyError:
            raise ActivityFailure(
                code=ErrorCode.ACTIVITY_FAILED,
                message=f"Unknown activity '{activity_id}'",
                details={"activity_id": activity_id, "registered": sorted(self._activities)},
            ) from None

    def register(self, activity: ActivityDefinition) -> ActivityDefinition:
        """Add an activity; restores its last run state when persisted.

        Raises:
            ValueError: Unknown action or unparseable schedule.
        """
        if activity.action not in self.registry:
            raise ValueError(f"No refinement routine named {activity.action!r}")
        schedule = parse_schedule(activity.schedule)

        if self.persist:
            saved = db.get_activity(activity.id)
            if saved is not None:
                activity.last_run = saved.last_run
                activity.run_count = saved.run_count
                activity.last_error = saved.last_error
                activity.last_outcome = saved.last_outcome
                # A run that was in flight when the process died did not finish
                if saved.status == ActivityStatus.RUNNING:
                    activity.last_outcome = ActivityStatus.FAILED
                    activity.last_error = "interrupted before finishing"
                activity.status = ActivityStatus.IDLE
            db.save_activity(activity)

        with self._lock:
            self._activities[activity.id] = activity
            self._schedules[activity.id] = schedule
        logger.info(
            "Registered activity %s (%s, %s)",
            activity.id,
            activity.action,
            activity.schedule,
            extra={"activity_id": activity.id, "schedule": activity.schedule},
        )
        return activity

    def due(self, now: datetime | None = None) -> list[ActivityDefinition]:
        """Enabled, not-running activities whose schedule has elapsed."""
        now = now or datetime.now()
        with self._lock:
            return [
                a
                for a in self._activities.values()
                if a.enabled
                and a.status == ActivityStatus.IDLE
                and self._schedules[a.id].is_due(a.last_run, now)
            ]

    def tick(self, now: datetime | None = None) -> list[Proposal]:
        """Expire stale proposals and run every due activity once."""
        now = now or datetime.now()
        self.proposals.expire_stale(now)

        produced = []
        for activity in self.due(now):
            if self._stop.is_set():
                break
            proposal = self.run_activity(activity.id, now=now)
            if proposal is not None:
                produced.append(proposal)
        return produced

    def run_activity(self, activity_id: str, now: datetime | None = None) -> Proposal | None:
        """Run one activity now, regardless of its schedule.

        Returns the proposal it produced, if any. Failures and timeouts are
        recorded on the activity and never raised.
        """
        activity = self.get_activity(activity_id)
        action = self.registry[activity.action]

        with self._lock:
            if activity.status != ActivityStatus.IDLE:
                logger.info("Activity %s already running, skipping", activity.id)
                return None
            activity.status = ActivityStatus.RUNNING
            ctx = ActivityContext(
                store=self.store,
                tracker=self.tracker,
                settings=self.settings,
                activity_id=activity.id,
            )
            self._running[activity.id] = ctx

        with run_context(
            activity.id,
            config_version=self.store.current.version,
            correlation_id=f"{activity.id[:12]}-{activity.run_count + 1}",
        ):
            return self._execute(activity, action, ctx, now)

    def _execute(
        self,
        activity: ActivityDefinition,
        action: Activity,
        ctx: ActivityContext,
        now: datetime | None,
    ) -> Proposal | None:
        logger.info("Activity %s started", activity.id, extra={"activity_id": activity.id})
        self._persist(activity)

        draft: ProposalDraft | None = None
        failure: ActivityFailure | None = None
        try:
            future = self._executor.submit(action, ctx)
            draft = future.result(timeout=self.settings.activity_timeout)
        except FuturesTimeout:
            ctx.cancelled.set()
            future.cancel()
            failure = ActivityFailure(
                code=ErrorCode.ACTIVITY_TIMEOUT,
                message=f"Activity exceeded its {self.settings.activity_timeout:.0f}s budget",
                details={"activity_id": activity.id},
            )
        except Exception as e:
            failure = ActivityFailure(
                code=ErrorCode.ACTIVITY_FAILED,
                message=f"Activity raised {type(e).__name__}",
                details={"activity_id": activity.id},
                cause=e,
            )

        with self._lock:
            self._running.pop(activity.id, None)
            activity.last_run = now or datetime.now()
            activity.run_count += 1
            if failure is not None:
                activity.last_outcome = ActivityStatus.FAILED
                activity.last_error = str(failure)
            else:
                activity.last_outcome = ActivityStatus.SUCCEEDED
                activity.last_error = None
            # Succeeded and Failed settle back to Idle; the outcome is kept
            activity.status = ActivityStatus.IDLE
        self._persist(activity)

        if failure is not None:
            logger.error(
                "Activity %s failed: %s",
                activity.id,
                failure,
                exc_info=failure.cause,
                extra={"activity_id": activity.id, "error": failure.to_dict()},
            )
            return None

        logger.info(
            "Activity %s finished (%s)",
            activity.id,
            "draft produced" if draft else "no changes",
            extra={"activity_id": activity.id, "run_count": activity.run_count},
        )
        if draft is None:
            return None

        try:
            return self.proposals.submit(
                activity.id,
                draft.candidate,
                rationale=draft.rationale,
                correction_ids=draft.correction_ids,
                base_version=draft.base_version,
            )
        except CodelabelError as e:
            logger.error(
                "Proposal from %s could not be recorded: %s",
                activity.id,
                e,
                extra={"activity_id": activity.id, "error": e.to_dict()},
            )
            return None

    def _persist(self, activity: ActivityDefinition) -> None:
        if self.persist:
            db.save_activity(activity)

    # ------------------------------------------------------------------
    # Background loop
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Tick every ``tick_interval`` seconds on a daemon thread."""
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="codelabel-refinement", daemon=True)
        self._thread.start()
        logger.info("Refinement scheduler started (%d activities)", len(self._activities))

    def stop(self) -> None:
        """Cancel running activities and stop ticking."""
        self._stop.set()
        with self._lock:
            for ctx in self._running.values():
                ctx.cancelled.set()
        if self._thread:
            self._thread.join(timeout=self.settings.tick_interval + 1.0)
            self._thread = None
        self._executor.shutdown(wait=False, cancel_futures=True)
        logger.info("Refinement scheduler stopped")

    def _run(self) -> None:
        while not self._stop.wait(self.settings.tick_interval):
            try:
                self.tick()
            except Exception:
                logger.exception("Refinement tick failed")
