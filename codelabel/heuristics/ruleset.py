"""Typed, immutable representation of a heuristics ruleset.

A ``HeuristicsConfig`` is a validated snapshot. Patterns are frozen; editing
a ruleset means building a new config (``dataclasses.replace``) with a new
version and submitting it to the store.
"""

import hashlib
import json
import logging
import re
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, replace
from typing import Any

from ..errors import ConditionEvaluationWarning, ConfigValidationError, ErrorCode
from .conditions import Combinator, infer_combinator, matching_conditions, parse_condition

logger = logging.getLogger("codelabel.heuristics.ruleset")

SEMVER_RE = re.compile(r"^(\d+)\.(\d+)\.(\d+)(?:[-+][0-9A-Za-z.-]+)?$")

REQUIRED_SECTIONS = ("purposeHeuristics", "bundleHeuristics", "semanticTypeMapping")

# Optional tag sections: document key -> key naming each rule's tag
TAG_SECTIONS = {"domainHeuristics": "domain", "technicalPatterns": "pattern"}

# Legacy bundle fallback keys, in priority order
LEGACY_FALLBACK_KEYS = ("webFallback", "defaultFallback")


@dataclass(frozen=True)
class Pattern:
    """A named rule: conditions, a result label and a confidence."""

    name: str
    conditions: tuple[str, ...]
    result: str
    confidence: float
    combinator: Combinator = Combinator.OR
    sub_patterns: tuple["Pattern", ...] = ()

    def match(self, context: Mapping[str, Any]) -> tuple[str, ...] | None:
        """Conditions that held, or None if the pattern does not match."""
        return matching_conditions(self.conditions, context, self.combinator)

    def walk(self) -> Iterator["Pattern"]:
        """This pattern followed by every nested sub-pattern, depth first."""
        yield self
        for sub in self.sub_patterns:
            yield from sub.walk()

    def to_dict(self, result_key: str) -> dict[str, Any]:
        data: dict[str, Any] = {
            "conditions": list(self.conditions),
            result_key: self.result,
            "confidence": self.confidence,
            "combinator": self.combinator.value,
        }
        if self.sub_patterns:
            data["subPatterns"] = {p.name: p.to_dict(result_key) for p in self.sub_patterns}
        return data


@dataclass(frozen=True)
class PurposeFallback:
    purpose: str
    confidence: float


@dataclass(frozen=True)
class FallbackStrategy:
    """One tier of the bundle fallback chain.

    A strategy without conditions always applies.
    """

    name: str
    bundles: tuple[str, ...]
    confidence: float
    conditions: tuple[str, ...] = ()
    combinator: Combinator = Combinator.OR

    def applies(self, context: Mapping[str, Any]) -> bool:
        if not self.conditions:
            return True
        return matching_conditions(self.conditions, context, self.combinator) is not None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": self.name,
            "bundles": list(self.bundles),
            "confidence": self.confidence,
        }
        if self.conditions:
            data["conditions"] = list(self.conditions)
            data["combinator"] = self.combinator.value
        return data


@dataclass(frozen=True)
class TagRule:
    """Adds one tag (a business domain or technical pattern) when it matches.

    Unlike patterns, tag rules do not compete: every matching rule
    contributes its tag.
    """

    name: str
    conditions: tuple[str, ...]
    tag: str
    combinator: Combinator = Combinator.OR

    def match(self, context: Mapping[str, Any]) -> tuple[str, ...] | None:
        return matching_conditions(self.conditions, context, self.combinator)

    def to_dict(self, tag_key: str) -> dict[str, Any]:
        return {
            "conditions": list(self.conditions),
            tag_key: self.tag,
            "combinator": self.combinator.value,
        }


@dataclass(frozen=True)
class Cluster:
    name: str
    types: tuple[str, ...]
    cluster_id: int


@dataclass(frozen=True)
class HeuristicsConfig:
    """A complete, validated ruleset snapshot."""

    version: str
    purpose_patterns: tuple[Pattern, ...]
    purpose_fallback: PurposeFallback
    bundle_patterns: tuple[Pattern, ...]
    bundle_fallbacks: tuple[FallbackStrategy, ...]
    clusters: tuple[Cluster, ...] = ()
    domain_rules: tuple[TagRule, ...] = ()
    technical_rules: tuple[TagRule, ...] = ()

    @classmethod
    def from_dict(cls, data: Any) -> "HeuristicsConfig":
        """Validate a raw config document and build a snapshot.

        Raises:
            ConfigValidationError: With every problem found, if any.
        """
        try:
            errors = validate_document(data)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            errors = [f"malformed config: {e}"]
        if errors:
            for error in errors:
                logger.warning("Heuristics config rejected: %s", error)
            version = data.get("version") if isinstance(data, Mapping) else None
            raise ConfigValidationError(
                code=ErrorCode.CONFIG_INVALID,
                message=f"Heuristics config has {len(errors)} validation error(s)",
                details={"errors": errors, "version": version},
            )

        purpose = data["purposeHeuristics"]
        bundle = data["bundleHeuristics"]
        clusters = data["semanticTypeMapping"].get("clusters", {})

        return cls(
            version=data["version"],
            purpose_patterns=tuple(
                _build_pattern(name, raw) for name, raw in purpose["patterns"].items()
            ),
            purpose_fallback=PurposeFallback(
                purpose=purpose["fallback"]["purpose"],
                confidence=float(purpose["fallback"]["confidence"]),
            ),
            bundle_patterns=tuple(
                _build_pattern(name, raw) for name, raw in bundle["patterns"].items()
            ),
            bundle_fallbacks=tuple(
                _build_strategy(name, raw) for name, raw in _fallback_entries(bundle["fallback"])
            ),
            clusters=tuple(
                Cluster(name=name, types=tuple(raw["types"]), cluster_id=raw["clusterId"])
                for name, raw in clusters.items()
            ),
            domain_rules=_build_tag_rules(data, "domainHeuristics"),
            technical_rules=_build_tag_rules(data, "technicalPatterns"),
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialise to the JSON document shape accepted by ``from_dict``."""
        document: dict[str, Any] = {
            "version": self.version,
            "purposeHeuristics": {
                "patterns": {p.name: p.to_dict("purpose") for p in self.purpose_patterns},
                "fallback": {
                    "purpose": self.purpose_fallback.purpose,
                    "confidence": self.purpose_fallback.confidence,
                },
            },
            "bundleHeuristics": {
                "patterns": {p.name: p.to_dict("bundle") for p in self.bundle_patterns},
                "fallback": {"strategies": [s.to_dict() for s in self.bundle_fallbacks]},
            },
            "semanticTypeMapping": {
                "clusters": {
                    c.name: {"types": list(c.types), "clusterId": c.cluster_id}
                    for c in self.clusters
                }
            },
        }
        # Tag sections are optional; empty ones are omitted
        for section, rules in (
            ("domainHeuristics", self.domain_rules),
            ("technicalPatterns", self.technical_rules),
        ):
            if rules:
                tag_key = TAG_SECTIONS[section]
                document[section] = {"rules": {r.name: r.to_dict(tag_key) for r in rules}}
        return document

    @property
    def fingerprint(self) -> str:
        """Stable hash of the serialised document."""
        canonical = json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def type_to_cluster(self) -> dict[str, int]:
        """Flatten the semantic clusters into a type -> cluster id map."""
        return {t: c.cluster_id for c in self.clusters for t in c.types}

    def find_pattern(self, name: str) -> Pattern | None:
        """Look a pattern up by name among purpose and bundle patterns (nested included)."""
        for top in self.purpose_patterns + self.bundle_patterns:
            for pattern in top.walk():
                if pattern.name == name:
                    return pattern
        return None

    def with_version(self, version: str) -> "HeuristicsConfig":
        return replace(self, version=version)


def next_version(version: str) -> str:
    """Bump the patch component of a semantic version."""
    match = SEMVER_RE.match(version)
    if not match:
        return "1.0.0"
    major, minor, patch = (int(g) for g in match.groups())
    return f"{major}.{minor}.{patch + 1}"


def _result_of(raw: Mapping[str, Any]) -> Any:
    for key in ("result", "purpose", "bundle"):
        if key in raw:
            return raw[key]
    return None


def _build_pattern(name: str, raw: Mapping[str, Any]) -> Pattern:
    conditions = tuple(raw["conditions"])
    combinator = raw.get("combinator")
    return Pattern(
        name=name,
        conditions=conditions,
        result=_result_of(raw),
        confidence=float(raw["confidence"]),
        combinator=Combinator(combinator) if combinator else infer_combinator(conditions),
        sub_patterns=tuple(
            _build_pattern(sub_name, sub_raw)
            for sub_name, sub_raw in (raw.get("subPatterns") or {}).items()
        ),
    )


def _build_tag_rules(data: Mapping[str, Any], section: str) -> tuple[TagRule, ...]:
    rules = (data.get(section) or {}).get("rules") or {}
    tag_key = TAG_SECTIONS[section]
    built = []
    for name, raw in rules.items():
        conditions = tuple(raw["conditions"])
        combinator = raw.get("combinator")
        built.append(
            TagRule(
                name=name,
                conditions=conditions,
                tag=raw.get(tag_key, raw.get("tag")),
                combinator=Combinator(combinator) if combinator else infer_combinator(conditions),
            )
        )
    return tuple(built)


def _fallback_entries(fallback: Mapping[str, Any]) -> list[tuple[str, Mapping[str, Any]]]:
    if "strategies" in fallback:
        return [
            ((raw.get("name") if isinstance(raw, Mapping) else None) or f"strategy{i}", raw)
            for i, raw in enumerate(fallback["strategies"])
        ]
    return [(key, fallback[key]) for key in LEGACY_FALLBACK_KEYS if fallback.get(key)]


def _build_strategy(name: str, raw: Mapping[str, Any]) -> FallbackStrategy:
    bundles = raw.get("bundles")
    if bundles is None:
        bundles = [raw["bundle"]]
    conditions = tuple(raw.get("conditions") or ())
    combinator = raw.get("combinator")
    return FallbackStrategy(
        name=name,
        bundles=tuple(bundles),
        confidence=float(raw["confidence"]),
        conditions=conditions,
        combinator=Combinator(combinator) if combinator else infer_combinator(conditions),
    )


# ============================================================================
# Validation
# ============================================================================


def _is_confidence(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and 0.0 <= value <= 1.0


def _check_conditions(conditions: Any, where: str, errors: list[str], required: bool) -> None:
    if conditions is None and not required:
        return
    if not isinstance(conditions, list) or (required and not conditions):
        errors.append(f"{where}: conditions must be a non-empty list")
        return
    for condition in conditions:
        try:
            parse_condition(condition)
        except ConditionEvaluationWarning as e:
            errors.append(f"{where}: {e.message}: {condition!r}")


def _check_combinator(raw: Mapping[str, Any], where: str, errors: list[str]) -> None:
    combinator = raw.get("combinator")
    if combinator is not None and combinator not in ("AND", "OR"):
        errors.append(f"{where}: combinator must be 'AND' or 'OR', got {combinator!r}")


def _check_patterns(
    patterns: Any, where: str, errors: list[str], confidences: list[float]
) -> None:
    if not isinstance(patterns, Mapping):
        errors.append(f"{where}: patterns must be an object")
        return

    for name, raw in patterns.items():
        path = f"{where}.{name}"
        if not isinstance(raw, Mapping):
            errors.append(f"{path}: pattern must be an object")
            continue

        _check_conditions(raw.get("conditions"), path, errors, required=True)
        _check_combinator(raw, path, errors)

        result = _result_of(raw)
        if not isinstance(result, str) or not result.strip():
            errors.append(f"{path}: result must be a non-empty string")

        confidence = raw.get("confidence")
        if not _is_confidence(confidence):
            errors.append(f"{path}: confidence must be a number between 0.0 and 1.0")
        else:
            confidences.append(float(confidence))

        if raw.get("subPatterns") is not None:
            _check_patterns(raw["subPatterns"], f"{path}.subPatterns", errors, confidences)


def _check_fallback_floor(
    confidence: Any, floor: list[float], where: str, errors: list[str]
) -> None:
    if not _is_confidence(confidence):
        errors.append(f"{where}: confidence must be a number between 0.0 and 1.0")
    elif floor and confidence >= min(floor):
        errors.append(
            f"{where}: fallback confidence {confidence} must be below the lowest "
            f"pattern confidence {min(floor)}"
        )


def _check_tag_section(data: Mapping[str, Any], section: str, errors: list[str]) -> None:
    if section not in data:
        return
    raw_section = data[section]
    rules = raw_section.get("rules") if isinstance(raw_section, Mapping) else None
    if not isinstance(rules, Mapping):
        errors.append(f"{section}.rules must be an object")
        return
    tag_key = TAG_SECTIONS[section]
    for name, raw in rules.items():
        where = f"{section}.{name}"
        if not isinstance(raw, Mapping):
            errors.append(f"{where}: rule must be an object")
            continue
        _check_conditions(raw.get("conditions"), where, errors, required=True)
        _check_combinator(raw, where, errors)
        tag = raw.get(tag_key, raw.get("tag"))
        if not isinstance(tag, str) or not tag.strip():
            errors.append(f"{where}: {tag_key} must be a non-empty string")


def validate_document(data: Any) -> list[str]:
    """Check a raw config document; returns every problem found."""
    if not isinstance(data, Mapping):
        return ["config must be a JSON object"]

    errors: list[str] = []

    version = data.get("version")
    if not isinstance(version, str) or not SEMVER_RE.match(version):
        errors.append(f"version must be a semantic version string, got {version!r}")

    for section in REQUIRED_SECTIONS:
        if not isinstance(data.get(section), Mapping):
            errors.append(f"Missing required field: {section}")
    if errors and any(e.startswith("Missing") for e in errors):
        return errors

    # Purpose heuristics
    purpose = data["purposeHeuristics"]
    purpose_confidences: list[float] = []
    _check_patterns(purpose.get("patterns"), "purposeHeuristics", errors, purpose_confidences)
    fallback = purpose.get("fallback")
    if not isinstance(fallback, Mapping):
        errors.append("purposeHeuristics.fallback must be an object")
    else:
        if not isinstance(fallback.get("purpose"), str) or not fallback["purpose"].strip():
            errors.append("purposeHeuristics.fallback: purpose must be a non-empty string")
        _check_fallback_floor(
            fallback.get("confidence"), purpose_confidences, "purposeHeuristics.fallback", errors
        )

    # Bundle heuristics
    bundle = data["bundleHeuristics"]
    bundle_confidences: list[float] = []
    _check_patterns(bundle.get("patterns"), "bundleHeuristics", errors, bundle_confidences)
    fallback = bundle.get("fallback")
    if not isinstance(fallback, Mapping):
        errors.append("bundleHeuristics.fallback must be an object")
    else:
        if "strategies" in fallback and not isinstance(fallback["strategies"], list):
            errors.append("bundleHeuristics.fallback.strategies must be a list")
            entries = []
        else:
            entries = _fallback_entries(fallback)

        unconditional = 0
        for name, raw in entries:
            where = f"bundleHeuristics.fallback.{name}"
            if not isinstance(raw, Mapping):
                errors.append(f"{where}: strategy must be an object")
                continue
            if "name" in raw and not isinstance(raw["name"], str):
                errors.append(f"{where}: name must be a string")
            bundles = raw.get("bundles", [raw.get("bundle")] if "bundle" in raw else None)
            if (
                not isinstance(bundles, list)
                or not bundles
                or not all(isinstance(b, str) and b.strip() for b in bundles)
            ):
                errors.append(f"{where}: bundles must be a non-empty list of names")
            _check_conditions(raw.get("conditions"), where, errors, required=False)
            _check_combinator(raw, where, errors)
            _check_fallback_floor(raw.get("confidence"), bundle_confidences, where, errors)
            if not raw.get("conditions"):
                unconditional += 1

        if unconditional == 0:
            errors.append("bundleHeuristics.fallback: at least one unconditional strategy is required")

    # Semantic type mapping
    clusters = data["semanticTypeMapping"].get("clusters", {})
    if not isinstance(clusters, Mapping):
        errors.append("semanticTypeMapping.clusters must be an object")
    else:
        seen: dict[str, str] = {}
        for name, raw in clusters.items():
            where = f"semanticTypeMapping.{name}"
            if not isinstance(raw, Mapping):
                errors.append(f"{where}: cluster must be an object")
                continue
            if not isinstance(raw.get("clusterId"), int) or isinstance(raw.get("clusterId"), bool):
                errors.append(f"{where}: clusterId must be an integer")
            types = raw.get("types")
            if not isinstance(types, list) or not all(isinstance(t, str) for t in types):
                errors.append(f"{where}: types must be a list of strings")
                continue
            for t in types:
                if t in seen:
                    errors.append(f"{where}: type {t!r} already mapped by cluster {seen[t]!r}")
                seen[t] = name

    for section in TAG_SECTIONS:
        _check_tag_section(data, section, errors)

    return errors
