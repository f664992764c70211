"""Data models for codelabel."""

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class ClassificationKind(Enum):
    """What was classified."""

    PURPOSE = "purpose"
    BUNDLE = "bundle"


class CorrectionSource(Enum):
    """Who overrode a classification."""

    HUMAN = "human"
    AGENT = "agent"


class ActivityStatus(Enum):
    """Lifecycle state of a refinement activity."""

    IDLE = "idle"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class FunctionDescriptor:
    """A function as reported by the parsing layer."""

    name: str
    type: str = "function"  # function, arrow_function, react_component, method, ...
    file_path: str | None = None
    imports: tuple[str, ...] = ()
    code: str = ""
    exported: bool = False

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "FunctionDescriptor":
        """Build a descriptor from a loosely-shaped dict, tolerating gaps."""
        imports = data.get("imports")
        if imports is None:
            imports = (data.get("includes") or {}).get("imports", ())
        return cls(
            name=str(data.get("name") or ""),
            type=str(data.get("type") or "function"),
            file_path=data.get("filePath") or data.get("file_path"),
            imports=tuple(i for i in imports if isinstance(i, str)),
            code=str(data.get("code") or ""),
            exported=bool(data.get("isExported", data.get("exported", False))),
        )

    def to_context(self) -> dict[str, Any]:
        """Facts a purpose, domain or technical-pattern condition may inspect."""
        path_parts = self.file_path.lower().split("/") if self.file_path else []
        return {
            "name": self.name.lower(),
            "func": {
                "name": self.name,
                "type": self.type,
                "code": self.code,
                # Conditions compare strings only
                "isExported": "true" if self.exported else "false",
            },
            "pathParts": path_parts,
            "path": "/".join(path_parts),
            "chunk": {"imports": list(self.imports)},
        }


@dataclass(frozen=True)
class FileDescriptor:
    """A file as reported by the file-watching layer."""

    file_path: str

    @property
    def file_name(self) -> str:
        """Normalised (lowercased) path used for name conditions."""
        return self.file_path.lower()

    @property
    def path_parts(self) -> list[str]:
        return self.file_name.split("/")

    def to_context(self) -> dict[str, Any]:
        """Facts a bundle condition may inspect."""
        return {
            "fileName": self.file_name,
            "filePath": self.file_path,
            "pathParts": self.path_parts,
        }


@dataclass(frozen=True)
class ClassificationResult:
    """Result of classifying a function or a file.

    ``labels`` holds one purpose, or the de-duplicated bundle names in order
    of first insertion. ``evidence`` lists the condition expressions that
    held for the winning pattern(s).
    """

    kind: ClassificationKind
    labels: tuple[str, ...]
    confidence: float
    matched_pattern: str
    used_fallback: bool
    config_version: str
    matched_patterns: tuple[str, ...] = ()
    label_confidences: Mapping[str, float] = field(default_factory=dict)
    evidence: tuple[str, ...] = ()
    context: Mapping[str, Any] = field(default_factory=dict, compare=False)

    @property
    def label(self) -> str:
        """Primary label (the purpose, or the first bundle)."""
        return self.labels[0] if self.labels else ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "labels": list(self.labels),
            "confidence": self.confidence,
            "matchedPattern": self.matched_pattern,
            "matchedPatterns": list(self.matched_patterns),
            "labelConfidences": dict(self.label_confidences),
            "usedFallback": self.used_fallback,
            "configVersion": self.config_version,
            "evidence": list(self.evidence),
        }


@dataclass(frozen=True)
class CorrectionRecord:
    """A human (or agent) override of an earlier classification."""

    kind: ClassificationKind
    pattern_name: str
    predicted_label: str
    corrected_label: str
    source: CorrectionSource
    timestamp: datetime
    context_snapshot: Mapping[str, Any] = field(default_factory=dict)
    config_version: str | None = None
    id: int | None = None

    @property
    def is_override(self) -> bool:
        """True when the corrected label differs from the prediction."""
        return self.predicted_label != self.corrected_label


@dataclass
class ActivityDefinition:
    """A scheduled refinement routine and its run state."""

    id: str
    schedule: str  # "30m", "6h", or a 5-field cron expression
    action: str  # name of a registered refinement routine
    last_run: datetime | None = None
    status: ActivityStatus = ActivityStatus.IDLE
    last_outcome: ActivityStatus | None = None  # SUCCEEDED or FAILED once a run has finished
    last_error: str | None = None
    run_count: int = 0
    enabled: bool = True
