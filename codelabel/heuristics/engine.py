"""Classification engine: answers "what is this?" from the active ruleset."""

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from ..models import (
    ClassificationKind,
    ClassificationResult,
    FileDescriptor,
    FunctionDescriptor,
)
from .ruleset import HeuristicsConfig, Pattern, TagRule
from .store import ConfigurationStore

logger = logging.getLogger("codelabel.heuristics.engine")

PURPOSE_FALLBACK_PATTERN = "fallback"


def _as_function(function: FunctionDescriptor | Mapping[str, Any] | str) -> FunctionDescriptor:
    if isinstance(function, FunctionDescriptor):
        return function
    if isinstance(function, str):
        return FunctionDescriptor(name=function)
    if isinstance(function, Mapping):
        return FunctionDescriptor.from_mapping(function)
    logger.warning("Unsupported function descriptor %r, classifying as anonymous", function)
    return FunctionDescriptor(name="")


def _as_file(file: FileDescriptor | Mapping[str, Any] | str) -> FileDescriptor:
    if isinstance(file, FileDescriptor):
        return file
    if isinstance(file, str):
        return FileDescriptor(file_path=file)
    if isinstance(file, Mapping):
        return FileDescriptor(file_path=str(file.get("filePath") or file.get("file_path") or ""))
    logger.warning("Unsupported file descriptor %r, classifying as empty path", file)
    return FileDescriptor(file_path="")


class ClassificationEngine:
    """
    Classifies functions (purpose, domains, technical patterns) and files
    (bundles).

    Every query reads one snapshot reference from the store up front, so a
    concurrent swap never changes the rules halfway through a query. Nothing
    here raises: when no pattern matches, the fallback chain answers.
    """

    def __init__(self, store: ConfigurationStore, tracker=None):
        self.store = store
        self.tracker = tracker

    # ------------------------------------------------------------------
    # Purpose
    # ------------------------------------------------------------------

    def classify_purpose(
        self, function: FunctionDescriptor | Mapping[str, Any] | str, record: bool = True
    ) -> ClassificationResult:
        """Purpose of a function: first matching pattern in declared order wins.

        Pass ``record=False`` to look a verdict up without counting it, e.g.
        when re-deriving the classification a correction refers to.
        """
        result = self._classify_purpose(self.store.current, _as_function(function))
        if record:
            self._record(result)
        return result

    def classify_batch(
        self, functions: Iterable[FunctionDescriptor | Mapping[str, Any] | str]
    ) -> list[ClassificationResult]:
        """Classify many functions against one snapshot."""
        config = self.store.current
        results = [self._classify_purpose(config, _as_function(f)) for f in functions]
        for result in results:
            self._record(result)
        return results

    def _classify_purpose(
        self, config: HeuristicsConfig, function: FunctionDescriptor
    ) -> ClassificationResult:
        context = function.to_context()

        for pattern in config.purpose_patterns:
            held = pattern.match(context)
            if held is None:
                continue

            # A matching sub-pattern refines its parent's verdict
            winner, evidence = pattern, held
            refined = self._refine(pattern, context)
            if refined is not None:
                winner, sub_evidence = refined
                evidence = held + sub_evidence

            logger.debug(
                "Purpose of %s: %s via %s",
                function.name,
                winner.result,
                winner.name,
                extra={
                    "function": function.name,
                    "pattern": winner.name,
                    "purpose": winner.result,
                    "confidence": winner.confidence,
                    "config_version": config.version,
                },
            )
            return ClassificationResult(
                kind=ClassificationKind.PURPOSE,
                labels=(winner.result,),
                confidence=winner.confidence,
                matched_pattern=winner.name,
                used_fallback=False,
                config_version=config.version,
                matched_patterns=(winner.name,),
                label_confidences={winner.result: winner.confidence},
                evidence=evidence,
                context=context,
            )

        fallback = config.purpose_fallback
        logger.debug(
            "No purpose pattern matched %s, using fallback %s",
            function.name,
            fallback.purpose,
            extra={"function": function.name, "config_version": config.version},
        )
        return ClassificationResult(
            kind=ClassificationKind.PURPOSE,
            labels=(fallback.purpose,),
            confidence=fallback.confidence,
            matched_pattern=PURPOSE_FALLBACK_PATTERN,
            used_fallback=True,
            config_version=config.version,
            matched_patterns=(PURPOSE_FALLBACK_PATTERN,),
            label_confidences={fallback.purpose: fallback.confidence},
            context=context,
        )

    def _refine(
        self, pattern: Pattern, context: Mapping[str, Any]
    ) -> tuple[Pattern, tuple[str, ...]] | None:
        for sub in pattern.sub_patterns:
            held = sub.match(context)
            if held is None:
                continue
            deeper = self._refine(sub, context)
            if deeper is not None:
                return deeper[0], held + deeper[1]
            return sub, held
        return None

    # ------------------------------------------------------------------
    # Bundles
    # ------------------------------------------------------------------

    def suggest_bundles(
        self, file: FileDescriptor | Mapping[str, Any] | str, record: bool = True
    ) -> ClassificationResult:
        """Bundles for a file: every matching pattern contributes (additive).

        Sub-patterns are evaluated only under a matching parent. When nothing
        matches, the first applicable fallback strategy answers. Labels keep
        the order in which they were first contributed; a label contributed
        twice keeps its first confidence.
        """
        config = self.store.current
        descriptor = _as_file(file)
        context = descriptor.to_context()

        labels: dict[str, float] = {}
        matched: list[str] = []
        evidence: list[str] = []

        def collect(pattern: Pattern) -> None:
            held = pattern.match(context)
            if held is None:
                return
            matched.append(pattern.name)
            evidence.extend(held)
            labels.setdefault(pattern.result, pattern.confidence)
            for sub in pattern.sub_patterns:
                collect(sub)

        for pattern in config.bundle_patterns:
            collect(pattern)

        if matched:
            result = ClassificationResult(
                kind=ClassificationKind.BUNDLE,
                labels=tuple(labels),
                confidence=max(labels.values()),
                matched_pattern=matched[0],
                used_fallback=False,
                config_version=config.version,
                matched_patterns=tuple(matched),
                label_confidences=labels,
                evidence=tuple(evidence),
                context=context,
            )
        else:
            result = self._bundle_fallback(config, descriptor, context)

        logger.debug(
            "Bundles for %s: %s",
            descriptor.file_path,
            ", ".join(result.labels),
            extra={
                "file_path": descriptor.file_path,
                "bundles": list(result.labels),
                "patterns": list(result.matched_patterns),
                "used_fallback": result.used_fallback,
                "config_version": config.version,
            },
        )
        if record:
            self._record(result)
        return result

    def _bundle_fallback(
        self,
        config: HeuristicsConfig,
        descriptor: FileDescriptor,
        context: Mapping[str, Any],
    ) -> ClassificationResult:
        for strategy in config.bundle_fallbacks:
            if not strategy.applies(context):
                continue
            labels = dict.fromkeys(strategy.bundles, strategy.confidence)
            return ClassificationResult(
                kind=ClassificationKind.BUNDLE,
                labels=tuple(labels),
                confidence=strategy.confidence,
                matched_pattern=strategy.name,
                used_fallback=True,
                config_version=config.version,
                matched_patterns=(strategy.name,),
                label_confidences=labels,
                evidence=strategy.conditions,
                context=context,
            )

        # Validation requires an unconditional strategy, so this is unreachable
        # for any snapshot the store accepted.
        logger.warning(
            "No bundle fallback applied to %s", descriptor.file_path,
            extra={"config_version": config.version},
        )
        return ClassificationResult(
            kind=ClassificationKind.BUNDLE,
            labels=(),
            confidence=0.0,
            matched_pattern="",
            used_fallback=True,
            config_version=config.version,
            context=context,
        )

    # ------------------------------------------------------------------
    # Domains and technical patterns
    # ------------------------------------------------------------------

    def infer_business_domains(
        self, function: FunctionDescriptor | Mapping[str, Any] | str
    ) -> list[str]:
        """Business domains a function touches (e.g. authentication, testing).

        Every matching domain rule contributes; tags keep first-match order
        and appear once.
        """
        config = self.store.current
        return self._tags(config, config.domain_rules, _as_function(function), "domains")

    def infer_technical_patterns(
        self, function: FunctionDescriptor | Mapping[str, Any] | str
    ) -> list[str]:
        """Technical patterns a function shows (e.g. react-hooks, async-io)."""
        config = self.store.current
        return self._tags(config, config.technical_rules, _as_function(function), "patterns")

    def _tags(
        self,
        config: HeuristicsConfig,
        rules: tuple[TagRule, ...],
        function: FunctionDescriptor,
        what: str,
    ) -> list[str]:
        context = function.to_context()
        tags = [rule.tag for rule in rules if rule.match(context) is not None]
        tags = list(dict.fromkeys(tags))
        logger.debug(
            "Inferred %s for %s: %s",
            what,
            function.name,
            ", ".join(tags) or "none",
            extra={"function": function.name, what: tags, "config_version": config.version},
        )
        return tags

    # ------------------------------------------------------------------
    # Semantic types
    # ------------------------------------------------------------------

    def semantic_type_mapping(self) -> dict[str, int]:
        """Flattened type -> cluster id map of the active snapshot."""
        return self.store.current.type_to_cluster()

    def cluster_for(self, semantic_type: str) -> int | None:
        return self.semantic_type_mapping().get(semantic_type)

    def _record(self, result: ClassificationResult) -> None:
        if self.tracker is not None:
            self.tracker.record_classification(result)
