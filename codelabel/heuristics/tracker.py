"""Per-pattern performance tracking from classifications and corrections."""

import logging
import sqlite3
import threading
from collections.abc import Callable
from datetime import datetime, timedelta
from queue import Empty, Full, Queue
from typing import Any

from .. import db
from ..models import (
    ClassificationKind,
    ClassificationResult,
    CorrectionRecord,
    CorrectionSource,
)

logger = logging.getLogger("codelabel.heuristics.tracker")


class BackgroundWriter:
    """Single worker thread that applies queued database writes in order."""

    def __init__(self, max_queue_size: int = 10000) -> None:
        self.queue: Queue[Callable[[], None]] = Queue(maxsize=max_queue_size)
        self.thread: threading.Thread | None = None
        self._stop_event = threading.Event()

    def start(self) -> None:
        if self.thread and self.thread.is_alive():
            return
        self._stop_event.clear()
        self.thread = threading.Thread(target=self._worker, name="codelabel-tracker", daemon=True)
        self.thread.start()

    def stop(self) -> None:
        """Drain pending writes, then stop the worker."""
        self.flush()
        self._stop_event.set()
        if self.thread:
            self.thread.join(timeout=1.0)
            self.thread = None

    def submit(self, task: Callable[[], None]) -> bool:
        """Enqueue a write without blocking; False if the queue is full."""
        if self._stop_event.is_set():
            return False
        self.start()
        try:
            self.queue.put(task, block=False)
            return True
        except Full:
            logger.warning("Tracker write queue full, dropping write")
            return False

    def flush(self) -> None:
        """Block until every queued write has been applied."""
        if self.thread and self.thread.is_alive():
            self.queue.join()

    def _worker(self) -> None:
        while not self._stop_event.is_set():
            try:
                task = self.queue.get(timeout=0.1)
            except Empty:
                continue

            try:
                task()
            except sqlite3.Error:
                logger.exception("Tracker write failed")
            finally:
                self.queue.task_done()


class PerformanceTracker:
    """
    Records what each pattern decided and which of those decisions a human
    later overrode.

    Writes are fire-and-forget: the classification path only enqueues. Reads
    (``accuracy``, ``metrics``) flush the queue first so they see every write
    made before the call.
    """

    def __init__(self, window: timedelta | None = None) -> None:
        db.init_db()
        self.window = window
        self._writer = BackgroundWriter()

    def record_classification(self, result: ClassificationResult) -> None:
        """Attribute a classification to every pattern that contributed to it."""
        timestamp = datetime.now()
        labels = list(result.labels)
        for pattern_name in result.matched_patterns or (result.matched_pattern,):
            self._writer.submit(
                lambda p=pattern_name: db.log_classification(
                    result.kind,
                    p,
                    labels,
                    result.used_fallback,
                    result.config_version,
                    timestamp,
                )
            )

    def record_correction(
        self,
        result: ClassificationResult,
        corrected_label: str,
        source: CorrectionSource = CorrectionSource.HUMAN,
        pattern_name: str | None = None,
    ) -> CorrectionRecord:
        """Append a correction of an earlier classification.

        Args:
            result: The classification being corrected
            corrected_label: The label the classification should have produced
            source: Whether a human or an agent made the correction
            pattern_name: Pattern to blame, for multi-pattern bundle results
                (defaults to the first matched pattern)
        """
        record = CorrectionRecord(
            kind=result.kind,
            pattern_name=pattern_name or result.matched_pattern,
            predicted_label=result.label,
            corrected_label=corrected_label,
            source=source,
            timestamp=datetime.now(),
            context_snapshot=dict(result.context),
            config_version=result.config_version,
        )
        self._writer.submit(lambda: db.log_correction(record))

        logger.info(
            "Correction recorded for %s: %s -> %s",
            record.pattern_name,
            record.predicted_label,
            record.corrected_label,
            extra={
                "pattern": record.pattern_name,
                "predicted": record.predicted_label,
                "corrected": record.corrected_label,
                "source": source.value,
                "config_version": result.config_version,
            },
        )
        return record

    def flush(self) -> None:
        self._writer.flush()

    def close(self) -> None:
        self._writer.stop()

    def _since(self, window: timedelta | None) -> datetime | None:
        window = window if window is not None else self.window
        return datetime.now() - window if window is not None else None

    def accuracy(
        self,
        pattern_name: str,
        window: timedelta | None = None,
        kind: ClassificationKind = ClassificationKind.PURPOSE,
    ) -> float | None:
        """Fraction of a pattern's classifications that were not overridden.

        Returns None for a pattern with no recorded classifications.
        """
        self.flush()
        since = self._since(window)
        key = (kind, pattern_name)
        total = db.count_classifications(since).get(key, 0)
        corrected = db.count_corrections(since).get(key, 0)
        return _ratio(total, corrected)

    def metrics(self, window: timedelta | None = None) -> dict[str, Any]:
        """Per-pattern and overall accuracy with correction counts.

        ``patterns`` is grouped by kind: ``{"purpose": {name: stats}, "bundle": {...}}``.
        """
        self.flush()
        since = self._since(window)
        classifications = db.count_classifications(since)
        corrections = db.count_corrections(since)

        patterns: dict[str, dict[str, Any]] = {k.value: {} for k in ClassificationKind}
        for kind, name in sorted(set(classifications) | set(corrections), key=lambda k: (k[0].value, k[1])):
            total = classifications.get((kind, name), 0)
            corrected = corrections.get((kind, name), 0)
            patterns[kind.value][name] = {
                "classifications": total,
                "corrections": corrected,
                "accuracy": _ratio(total, corrected),
            }

        total = sum(classifications.values())
        corrected = sum(min(c, classifications.get(k, 0)) for k, c in corrections.items())
        return {
            "patterns": patterns,
            "overall": {
                "classifications": total,
                "corrections": corrected,
                "accuracy": _ratio(total, corrected),
            },
            "window_days": _window_days(window or self.window),
        }

    def recent_corrections(
        self,
        window: timedelta | None = None,
        limit: int = 100,
        kind: ClassificationKind | None = None,
        source: CorrectionSource | None = None,
    ) -> list[CorrectionRecord]:
        """Most recent corrections first."""
        self.flush()
        return db.get_corrections(since=self._since(window), limit=limit, kind=kind, source=source)


def _window_days(window: timedelta | None) -> int | None:
    return window.days if window is not None else None


def _ratio(total: int, corrected: int) -> float | None:
    if total == 0:
        return None
    return 1.0 - min(corrected, total) / total


# Global tracker instance with thread-safe initialization
_tracker: PerformanceTracker | None = None
_tracker_lock = threading.Lock()


def get_tracker() -> PerformanceTracker:
    """Get the global performance tracker (thread-safe)."""
    global _tracker
    if _tracker is None:
        with _tracker_lock:
            if _tracker is None:
                _tracker = PerformanceTracker()
    return _tracker


def reset_tracker() -> None:
    """Stop and discard the global tracker (for testing)."""
    global _tracker
    with _tracker_lock:
        if _tracker is not None:
            _tracker.close()
        _tracker = None
