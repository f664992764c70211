"""In-process facade wiring the store, engine, tracker and refinement together.

This is the surface collaborators (a bundler, a dashboard backend, the CLI)
talk to. Transport (HTTP routes, RPC) is left to the caller.
"""

import logging
from collections.abc import Iterable, Mapping
from datetime import timedelta
from typing import Any

from . import db
from .config import Config, StoreConfig
from .errors import CodelabelError, ConfigSourceUnavailable, ConfigValidationError
from .heuristics.engine import ClassificationEngine
from .heuristics.ruleset import HeuristicsConfig, validate_document
from .heuristics.store import (
    ArchivedSnapshot,
    ConfigSource,
    ConfigurationStore,
    FileConfigSource,
    HttpConfigSource,
)
from .heuristics.tracker import PerformanceTracker
from .models import (
    ClassificationResult,
    CorrectionRecord,
    CorrectionSource,
    FileDescriptor,
    FunctionDescriptor,
)
from .refinement.activities import default_activities
from .refinement.proposals import ProposalManager
from .refinement.scheduler import RefinementScheduler

logger = logging.getLogger("codelabel.service")


def build_source(settings: StoreConfig) -> ConfigSource:
    """HTTP source when a URL is configured, otherwise the heuristics file."""
    if settings.source_url:
        return HttpConfigSource(settings.source_url)
    return FileConfigSource(settings.resolved_heuristics_path())


def build_store(settings: StoreConfig, persist_history: bool = True) -> ConfigurationStore:
    return ConfigurationStore(
        source=build_source(settings),
        history_size=settings.history_size,
        persist_history=persist_history,
        persist_updates=settings.persist_updates,
    )


class CodelabelService:
    """Everything a caller needs, built from one ``Config``."""

    def __init__(
        self,
        config: Config | None = None,
        store: ConfigurationStore | None = None,
        tracker: PerformanceTracker | None = None,
    ):
        self.config = config or Config.load()
        db.init_db()

        window = (
            timedelta(days=self.config.accuracy_window_days)
            if self.config.accuracy_window_days
            else None
        )
        self.store = store or build_store(self.config.store)
        self.tracker = tracker or PerformanceTracker(window=window)
        self.engine = ClassificationEngine(self.store, self.tracker)

        settings = self.config.refinement
        self.proposals = ProposalManager(
            self.store,
            require_approval=settings.require_approval,
            ttl=timedelta(hours=settings.proposal_ttl_hours),
            proposals_per_hour=settings.proposals_per_hour,
            burst=settings.proposal_burst,
        )
        self.scheduler = RefinementScheduler(
            self.store, self.tracker, self.proposals, settings=settings
        )
        for activity in default_activities(settings):
            try:
                self.scheduler.register(activity)
            except ValueError as e:
                logger.warning("Skipping activity %s: %s", activity.id, e)

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def get_config(self) -> dict[str, Any]:
        """The active ruleset, serialised."""
        return self.store.current.to_dict()

    def validate_config(self, document: Any) -> list[str]:
        """Validation errors for a candidate document (empty when valid)."""
        return validate_document(document)

    def put_config(self, document: Mapping[str, Any]) -> dict[str, Any]:
        """Submit a candidate ruleset.

        Returns ``{"accepted": True, "version": ...}`` on success, or
        ``{"accepted": False, "errors": [...]}`` with the validation errors
        exactly as reported.
        """
        try:
            applied = self.store.update(document)
        except ConfigValidationError as e:
            return {"accepted": False, "errors": e.errors or [e.message], "error": e.to_dict()}
        except ConfigSourceUnavailable as e:
            return {"accepted": False, "errors": [e.message], "error": e.to_dict()}
        return {"accepted": True, "version": applied.version, "errors": []}

    def rollback(self, version: str) -> HeuristicsConfig:
        """Restore an archived version (raises ``RollbackError`` if absent)."""
        return self.store.rollback(version)

    def history(self) -> list[ArchivedSnapshot]:
        return self.store.history()

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    def classify_purpose(
        self, function: FunctionDescriptor | Mapping[str, Any] | str
    ) -> ClassificationResult:
        return self.engine.classify_purpose(function)

    def classify_batch(
        self, functions: Iterable[FunctionDescriptor | Mapping[str, Any] | str]
    ) -> list[ClassificationResult]:
        return self.engine.classify_batch(functions)

    def suggest_bundles(self, file: FileDescriptor | Mapping[str, Any] | str) -> ClassificationResult:
        return self.engine.suggest_bundles(file)

    def infer_business_domains(
        self, function: FunctionDescriptor | Mapping[str, Any] | str
    ) -> list[str]:
        return self.engine.infer_business_domains(function)

    def infer_technical_patterns(
        self, function: FunctionDescriptor | Mapping[str, Any] | str
    ) -> list[str]:
        return self.engine.infer_technical_patterns(function)

    def semantic_type_mapping(self) -> dict[str, int]:
        return self.engine.semantic_type_mapping()

    # ------------------------------------------------------------------
    # Feedback and metrics
    # ------------------------------------------------------------------

    def record_correction(
        self,
        classification: ClassificationResult,
        corrected_label: str,
        source: CorrectionSource = CorrectionSource.HUMAN,
    ) -> CorrectionRecord:
        """Record that ``classification`` should have been ``corrected_label``."""
        return self.tracker.record_correction(classification, corrected_label, source=source)

    def get_metrics(self, window_days: int | None = None) -> dict[str, Any]:
        """Per-pattern accuracy, overall accuracy and correction counts."""
        window = timedelta(days=window_days) if window_days else None
        metrics = self.tracker.metrics(window)
        metrics["config_version"] = self.store.current.version
        metrics["pending_proposals"] = len(self.proposals.pending())
        return metrics

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Watch the source and run the refinement scheduler in the background."""
        try:
            self.store.watch(
                poll_interval=self.config.store.watch_interval,
                debounce=self.config.store.debounce_seconds,
            )
        except CodelabelError as e:
            logger.warning("Not watching heuristics source: %s", e)
        self.scheduler.start()

    def close(self) -> None:
        self.scheduler.stop()
        self.store.stop_watching()
        self.tracker.close()
