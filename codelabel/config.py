"""Configuration management for codelabel."""

from __future__ import annotations

import json
import logging
import os
import stat
from dataclasses import asdict, dataclass, field
from pathlib import Path
from urllib.parse import urlparse

logger = logging.getLogger("codelabel.config")


def get_config_dir() -> Path:
    """Get the codelabel config directory."""
    config_dir = Path.home() / ".codelabel"
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


def get_config_path() -> Path:
    """Get the path to config.json."""
    return get_config_dir() / "config.json"


def get_db_path() -> Path:
    """Get the path to the SQLite database."""
    return get_config_dir() / "codelabel.db"


def get_heuristics_path() -> Path:
    """Get the default path of the heuristics ruleset."""
    return get_config_dir() / "heuristics-config.json"


def validate_source_url(source_url: str | None) -> str | None:
    """Validate and sanitize a remote heuristics source URL.

    - Requires valid URL format
    - Enforces HTTPS for non-localhost URLs
    - Returns normalized URL or None

    Raises:
        ValueError: If URL is invalid or insecure.
    """
    if source_url is None:
        return None

    source_url = source_url.strip()
    if not source_url:
        return None

    try:
        parsed = urlparse(source_url)
    except ValueError as e:
        raise ValueError(f"Invalid source URL: {e}") from e

    if not parsed.scheme:
        raise ValueError("Source URL must include scheme (http:// or https://)")

    if parsed.scheme not in ("http", "https"):
        raise ValueError(f"Source URL must use http or https, not {parsed.scheme}")

    if not parsed.netloc:
        raise ValueError("Source URL must include a host")

    is_localhost = parsed.hostname in ("localhost", "127.0.0.1", "::1") or (
        parsed.hostname and parsed.hostname.endswith(".local")
    )
    if not is_localhost and parsed.scheme != "https":
        raise ValueError(f"Source URL must use HTTPS for non-localhost hosts. Got: {source_url}")

    return source_url


@dataclass
class StoreConfig:
    """Where the heuristics ruleset lives and how it is kept fresh."""

    heuristics_path: str | None = None  # None = ~/.codelabel/heuristics-config.json
    source_url: str | None = None  # Remote source; takes precedence over the file
    history_size: int = 10
    watch_interval: float = 1.0  # seconds between source polls
    debounce_seconds: float = 0.5  # quiet period before a change is reloaded
    persist_updates: bool = True  # write accepted updates back to the file source

    def __post_init__(self):
        """Validate configuration after initialization."""
        if self.source_url is not None:
            try:
                self.source_url = validate_source_url(self.source_url)
            except ValueError as e:
                logger.warning("Invalid source_url, ignoring: %s", e)
                self.source_url = None
        if self.history_size < 1:
            logger.warning("history_size must be >= 1, got %d; using 1", self.history_size)
            self.history_size = 1

    def resolved_heuristics_path(self) -> Path:
        """Path of the heuristics file, falling back to the config dir default."""
        if self.heuristics_path:
            return Path(self.heuristics_path).expanduser()
        return get_heuristics_path()


@dataclass
class RefinementConfig:
    """Tuning for the agent refinement framework."""

    require_approval: bool = True
    proposal_ttl_hours: float = 72.0
    activity_timeout: float = 30.0  # seconds
    proposals_per_hour: float = 4.0
    proposal_burst: int = 2
    tick_interval: float = 5.0  # seconds between scheduler ticks

    # confidence-calibration
    min_samples: int = 10
    calibration_blend: float = 0.5  # weight given to observed accuracy
    min_confidence_shift: float = 0.05

    # correction-inference
    inference_min_corrections: int = 3
    inference_confidence: float = 0.75
    correction_window_days: int = 30

    schedules: dict[str, str] = field(
        default_factory=lambda: {
            "confidence-calibration": "6h",
            "correction-inference": "1h",
        }
    )


@dataclass
class Config:
    """Main configuration for codelabel."""

    store: StoreConfig = field(default_factory=StoreConfig)
    refinement: RefinementConfig = field(default_factory=RefinementConfig)
    accuracy_window_days: int | None = None  # None = all time

    def save(self) -> None:
        """Save configuration to disk with owner-only permissions."""
        config_path = get_config_path()
        data = self._to_dict()
        with open(config_path, "w") as f:
            json.dump(data, f, indent=2)
        config_path.chmod(stat.S_IRUSR | stat.S_IWUSR)

    def _to_dict(self) -> dict:
        """Convert config to dictionary for JSON serialization."""
        return {
            "store": asdict(self.store),
            "refinement": asdict(self.refinement),
            "accuracy_window_days": self.accuracy_window_days,
        }

    @classmethod
    def load(cls) -> Config:
        """Load configuration from disk."""
        config = cls()
        config_path = get_config_path()

        if config_path.exists():
            with open(config_path) as f:
                data = json.load(f)

            if "store" in data:
                try:
                    config.store = StoreConfig(**data["store"])
                except TypeError as e:
                    logger.warning("Invalid store settings, using defaults: %s", e)

            if "refinement" in data:
                try:
                    config.refinement = RefinementConfig(**data["refinement"])
                except TypeError as e:
                    logger.warning("Invalid refinement settings, using defaults: %s", e)

            config.accuracy_window_days = data.get("accuracy_window_days")

        # Environment overrides the file
        env_path = os.environ.get("CODELABEL_HEURISTICS_PATH")
        if env_path:
            config.store.heuristics_path = env_path

        env_url = os.environ.get("CODELABEL_SOURCE_URL")
        if env_url:
            try:
                config.store.source_url = validate_source_url(env_url)
            except ValueError as e:
                logger.warning("Ignoring CODELABEL_SOURCE_URL: %s", e)

        return config
