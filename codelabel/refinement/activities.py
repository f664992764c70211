"""Built-in refinement activities.

An activity is a plain callable taking an ``ActivityContext`` and returning a
``ProposalDraft`` (or None when it has nothing to suggest). Activities only
read: the scheduler hands their drafts to the proposal pipeline.
"""

import logging
import re
import threading
from collections import Counter, defaultdict
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta

from ..config import RefinementConfig
from ..errors import clamp_confidence
from ..heuristics.conditions import Combinator
from ..heuristics.ruleset import HeuristicsConfig, Pattern
from ..heuristics.store import ConfigurationStore
from ..heuristics.tracker import PerformanceTracker
from ..models import ActivityDefinition, ClassificationKind, CorrectionSource

logger = logging.getLogger("codelabel.refinement.activities")

# Confidences are kept at least this far above the fallback they must beat
FALLBACK_MARGIN = 0.01


@dataclass
class ActivityContext:
    """What an activity may read while it runs."""

    store: ConfigurationStore
    tracker: PerformanceTracker
    settings: RefinementConfig
    activity_id: str
    started_at: datetime = field(default_factory=datetime.now)
    cancelled: threading.Event = field(default_factory=threading.Event)


@dataclass(frozen=True)
class ProposalDraft:
    """A candidate config and why an activity suggests it."""

    candidate: HeuristicsConfig
    base_version: str
    rationale: str
    correction_ids: tuple[int, ...] = ()


Activity = Callable[[ActivityContext], ProposalDraft | None]


def _rewrite(patterns: Iterable[Pattern], confidences: dict[str, float]) -> tuple[Pattern, ...]:
    return tuple(
        replace(
            p,
            confidence=confidences.get(p.name, p.confidence),
            sub_patterns=_rewrite(p.sub_patterns, confidences),
        )
        for p in patterns
    )


def confidence_calibration(ctx: ActivityContext) -> ProposalDraft | None:
    """Move pattern confidences toward their observed accuracy.

    Only patterns with at least ``min_samples`` classifications are touched,
    and shifts smaller than ``min_confidence_shift`` are ignored. A pattern
    never drops to or below the fallback confidence of its section.
    """
    settings = ctx.settings
    config = ctx.store.current
    window = timedelta(days=settings.correction_window_days)
    stats = ctx.tracker.metrics(window)["patterns"]

    floors = {
        "purpose": config.purpose_fallback.confidence,
        "bundle": max((s.confidence for s in config.bundle_fallbacks), default=0.0),
    }

    changes: dict[tuple[ClassificationKind, str], tuple[float, float, float]] = {}
    for kind, patterns in (
        (ClassificationKind.PURPOSE, config.purpose_patterns),
        (ClassificationKind.BUNDLE, config.bundle_patterns),
    ):
        floor = floors[kind.value] + FALLBACK_MARGIN
        for top in patterns:
            for pattern in top.walk():
                if ctx.cancelled.is_set():
                    return None
                observed = stats[kind.value].get(pattern.name)
                if not observed or observed["classifications"] < settings.min_samples:
                    continue
                accuracy = observed["accuracy"]
                if accuracy is None:
                    continue
                target = (1 - settings.calibration_blend) * pattern.confidence + (
                    settings.calibration_blend * accuracy
                )
                if floor > 1.0:
                    continue
                target = round(clamp_confidence(target, pattern.name), 3)
                target = max(target, round(floor, 3))
                if abs(target - pattern.confidence) < settings.min_confidence_shift:
                    continue
                changes[(kind, pattern.name)] = (pattern.confidence, target, accuracy)

    if not changes:
        logger.debug("Calibration found nothing to change", extra={"activity_id": ctx.activity_id})
        return None

    def targets(kind: ClassificationKind) -> dict[str, float]:
        return {name: new for (k, name), (_, new, _) in changes.items() if k is kind}

    candidate = replace(
        config,
        version=ctx.store.unused_version(config.version),
        purpose_patterns=_rewrite(config.purpose_patterns, targets(ClassificationKind.PURPOSE)),
        bundle_patterns=_rewrite(config.bundle_patterns, targets(ClassificationKind.BUNDLE)),
    )

    corrections = ctx.tracker.recent_corrections(window=window, limit=1000)
    correction_ids = tuple(
        c.id for c in corrections if (c.kind, c.pattern_name) in changes and c.id is not None
    )
    rationale = "; ".join(
        f"{name}: {old:.2f} -> {new:.2f} (accuracy {acc:.2f})"
        for (_, name), (old, new, acc) in sorted(changes.items(), key=lambda item: item[0][1])
    )
    return ProposalDraft(
        candidate=candidate,
        base_version=config.version,
        rationale=f"Recalibrated {len(changes)} pattern(s): {rationale}",
        correction_ids=correction_ids,
    )


_TOKEN_SPLIT = re.compile(r"[_\-.$\s]+|(?<=[a-z0-9])(?=[A-Z])")
_TOKEN_OK = re.compile(r"^[a-z][a-z0-9]{2,}$")


def name_token(name: str) -> str | None:
    """Leading word of a camelCase or snake_case identifier.

    Examples:
    - 'fetchUser' -> 'fetch'
    - 'handle_click' -> 'handle'
    - 'on' -> None (too short to be a useful prefix)
    """
    for part in _TOKEN_SPLIT.split(name.strip()):
        if part:
            token = part.lower()
            return token if _TOKEN_OK.match(token) else None
    return None


def _slug(label: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", label.lower()).strip("_") or "label"


def correction_inference(ctx: ActivityContext) -> ProposalDraft | None:
    """Add a name-prefix purpose pattern when human corrections agree.

    Corrections are grouped by the leading word of the corrected function's
    name. When at least ``inference_min_corrections`` of them, and a majority
    of that group, map to the same purpose, a pattern
    ``name.startsWith('<word>')`` for that purpose is added ahead of every
    existing purpose pattern so it wins under first-match.
    """
    settings = ctx.settings
    config = ctx.store.current
    corrections = ctx.tracker.recent_corrections(
        window=timedelta(days=settings.correction_window_days),
        limit=1000,
        kind=ClassificationKind.PURPOSE,
        source=CorrectionSource.HUMAN,
    )

    groups: dict[str, list] = defaultdict(list)
    for correction in corrections:
        if not correction.is_override:
            continue
        snapshot = correction.context_snapshot or {}
        raw_name = (snapshot.get("func") or {}).get("name") or snapshot.get("name") or ""
        token = name_token(str(raw_name))
        if token:
            groups[token].append(correction)

    confidence = clamp_confidence(settings.inference_confidence, "inference_confidence")
    floor = config.purpose_fallback.confidence + FALLBACK_MARGIN
    if confidence < floor:
        confidence = round(min(1.0, floor), 3)

    learned: list[Pattern] = []
    correction_ids: list[int] = []
    for token, group in sorted(groups.items()):
        if ctx.cancelled.is_set():
            return None
        label, count = Counter(c.corrected_label for c in group).most_common(1)[0]
        if count < settings.inference_min_corrections or count * 2 <= len(group):
            continue

        name = f"learned_{_slug(label)}_{token}"
        if config.find_pattern(name) is not None:
            continue

        learned.append(
            Pattern(
                name=name,
                conditions=(f"name.startsWith('{token}')",),
                result=label,
                confidence=confidence,
                combinator=Combinator.OR,
            )
        )
        correction_ids.extend(c.id for c in group if c.corrected_label == label and c.id is not None)

    if not learned:
        logger.debug("No consistent corrections to learn from", extra={"activity_id": ctx.activity_id})
        return None

    candidate = replace(
        config,
        version=ctx.store.unused_version(config.version),
        purpose_patterns=tuple(learned) + config.purpose_patterns,
    )
    rationale = ", ".join(f"{p.name} ({p.conditions[0]} -> {p.result})" for p in learned)
    return ProposalDraft(
        candidate=candidate,
        base_version=config.version,
        rationale=f"Learned {len(learned)} pattern(s) from corrections: {rationale}",
        correction_ids=tuple(correction_ids),
    )


BUILTIN_ACTIVITIES: dict[str, Activity] = {
    "confidence-calibration": confidence_calibration,
    "correction-inference": correction_inference,
}


def default_activities(settings: RefinementConfig) -> list[ActivityDefinition]:
    """One definition per configured schedule whose action is built in."""
    definitions = []
    for action, schedule in settings.schedules.items():
        if action not in BUILTIN_ACTIVITIES:
            logger.warning("Unknown refinement activity %r in schedules, skipping", action)
            continue
        definitions.append(ActivityDefinition(id=action, schedule=schedule, action=action))
    return definitions
