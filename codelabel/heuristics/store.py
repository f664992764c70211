"""Configuration store: owns the active heuristics snapshot.

Readers take ``store.current`` without locking; it is a plain reference to
an immutable ``HeuristicsConfig``. Writers (source reloads, API updates,
agent proposals, rollbacks) serialise on a single lock and replace the
reference only after the candidate has fully validated.

States: UNLOADED -> LOADING -> READY <-> RELOADING. A failed attempt passes
through FAILED and settles back on READY with the last good snapshot, or
the built-in default if nothing has ever loaded.
"""

import json
import logging
import os
import tempfile
import threading
import time
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

import requests

from .. import db
from ..errors import (
    CodelabelError,
    ConfigSourceUnavailable,
    ConfigValidationError,
    ErrorCode,
    RollbackError,
)
from .defaults import default_config
from .ruleset import HeuristicsConfig, next_version

logger = logging.getLogger("codelabel.heuristics.store")


class StoreState(Enum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    READY = "ready"
    RELOADING = "reloading"
    FAILED = "failed"


class ConfigSource:
    """Where raw heuristics documents come from."""

    writable = False

    def describe(self) -> str:
        raise NotImplementedError

    def read(self) -> dict[str, Any]:
        """Fetch and parse the raw document.

        Raises:
            ConfigSourceUnavailable: If the source cannot be reached.
            ConfigValidationError: If the payload is not JSON.
        """
        raise NotImplementedError

    def write(self, document: dict[str, Any]) -> None:
        raise NotImplementedError(f"{self.describe()} is read-only")

    def change_marker(self) -> Any:
        """Opaque value that changes when the source changes (None if unknown)."""
        return None


class FileConfigSource(ConfigSource):
    """A JSON file on disk."""

    writable = True

    def __init__(self, path: Path | str):
        self.path = Path(path)

    def describe(self) -> str:
        return str(self.path)

    def read(self) -> dict[str, Any]:
        if not self.path.exists():
            raise ConfigSourceUnavailable(
                code=ErrorCode.CONFIG_SOURCE_UNAVAILABLE,
                message="Heuristics config file not found",
                details={"path": str(self.path)},
            )
        try:
            with open(self.path, encoding="utf-8") as f:
                return json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigValidationError(
                code=ErrorCode.CONFIG_INVALID,
                message="Heuristics config is not valid JSON",
                details={"errors": [f"invalid JSON: {e}"], "path": str(self.path)},
                cause=e,
            ) from e
        except OSError as e:
            raise ConfigSourceUnavailable(
                code=ErrorCode.CONFIG_SOURCE_UNAVAILABLE,
                message="Heuristics config file could not be read",
                details={"path": str(self.path)},
                cause=e,
            ) from e

    def write(self, document: dict[str, Any]) -> None:
        """Replace the file atomically (temp file + rename)."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(document, f, indent=2)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def change_marker(self) -> Any:
        try:
            st = self.path.stat()
        except OSError:
            return None
        return (st.st_mtime_ns, st.st_size)


class HttpConfigSource(ConfigSource):
    """A JSON document served over HTTP(S).

    Connection failures and timeouts are retried with doubling delays; an
    HTTP error status is reported at once since a retry will not change it.
    """

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        session: requests.Session | None = None,
        attempts: int = 3,
        backoff: float = 0.5,
    ):
        self.url = url
        self.timeout = timeout
        self.attempts = max(1, attempts)
        self.backoff = backoff
        self._session = session or requests.Session()

    def describe(self) -> str:
        return self.url

    def _fetch(self) -> requests.Response:
        delay = self.backoff
        for attempt in range(1, self.attempts + 1):
            try:
                response = self._session.get(self.url, timeout=self.timeout)
                response.raise_for_status()
                return response
            except (requests.ConnectionError, requests.Timeout) as e:
                if attempt == self.attempts:
                    raise
                logger.warning(
                    "Fetching %s failed (attempt %d/%d), retrying in %.1fs: %s",
                    self.url,
                    attempt,
                    self.attempts,
                    delay,
                    e,
                    extra={"url": self.url, "attempt": attempt, "error_type": type(e).__name__},
                )
                time.sleep(delay)
                delay *= 2
        raise AssertionError("unreachable")

    def read(self) -> dict[str, Any]:
        try:
            response = self._fetch()
        except requests.RequestException as e:
            raise ConfigSourceUnavailable(
                code=ErrorCode.CONFIG_SOURCE_UNAVAILABLE,
                message="Heuristics config URL could not be fetched",
                details={"url": self.url},
                cause=e,
            ) from e
        try:
            return response.json()
        except ValueError as e:
            raise ConfigValidationError(
                code=ErrorCode.CONFIG_INVALID,
                message="Heuristics config response is not valid JSON",
                details={"errors": [f"invalid JSON: {e}"], "url": self.url},
                cause=e,
            ) from e

    def change_marker(self) -> Any:
        try:
            response = self._session.head(self.url, timeout=self.timeout)
        except requests.RequestException:
            return None
        return response.headers.get("ETag") or response.headers.get("Last-Modified")


@dataclass(frozen=True)
class ArchivedSnapshot:
    """A snapshot that was replaced, kept for rollback."""

    config: HeuristicsConfig
    archived_at: datetime


class ConfigurationStore:
    """Holds the active snapshot and a bounded history of replaced ones."""

    def __init__(
        self,
        source: ConfigSource | None = None,
        history_size: int = 10,
        persist_history: bool = False,
        persist_updates: bool = True,
    ):
        self._source = source
        self._snapshot: HeuristicsConfig | None = None
        self._history: deque[ArchivedSnapshot] = deque(maxlen=max(1, history_size))
        self._write_lock = threading.Lock()
        self._state = StoreState.UNLOADED
        self._listeners: list[Callable[[HeuristicsConfig], None]] = []
        self._watcher: ConfigWatcher | None = None
        self._persist_history = persist_history
        self._persist_updates = persist_updates
        self.last_error: CodelabelError | None = None
        self.last_loaded: datetime | None = None

        if persist_history:
            self._restore_history()

    @property
    def state(self) -> StoreState:
        return self._state

    @property
    def source(self) -> ConfigSource | None:
        return self._source

    @property
    def current(self) -> HeuristicsConfig:
        """The active snapshot; loads on first access."""
        snapshot = self._snapshot
        if snapshot is None:
            return self.load()
        return snapshot

    def add_listener(self, callback: Callable[[HeuristicsConfig], None]) -> None:
        """Call ``callback(new_snapshot)`` after every swap."""
        self._listeners.append(callback)

    # ------------------------------------------------------------------
    # Writers
    # ------------------------------------------------------------------

    def load(self) -> HeuristicsConfig:
        """Read, validate and activate the source document.

        Source and validation failures are logged and leave the last good
        snapshot (or the built-in default) active; they are recorded on
        ``last_error`` rather than raised.
        """
        with self._write_lock:
            self._state = StoreState.LOADING if self._snapshot is None else StoreState.RELOADING
            try:
                if self._source is None:
                    raise ConfigSourceUnavailable(
                        code=ErrorCode.CONFIG_SOURCE_UNAVAILABLE,
                        message="No heuristics source configured",
                    )
                candidate = HeuristicsConfig.from_dict(self._source.read())
            except ConfigSourceUnavailable as e:
                logger.warning(
                    "Heuristics source unavailable, keeping previous snapshot: %s",
                    e,
                    extra={"error": e.to_dict()},
                )
                return self._recover(e)
            except ConfigValidationError as e:
                logger.error(
                    "Heuristics source failed validation, keeping previous snapshot: %s",
                    e.message,
                    extra={"errors": e.errors, "version": e.details.get("version")},
                )
                return self._recover(e)
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                logger.exception("Unexpected error reading heuristics source, keeping previous snapshot")
                return self._recover(
                    ConfigValidationError(
                        code=ErrorCode.CONFIG_INVALID,
                        message="Heuristics source could not be parsed",
                        details={"errors": [str(e)]},
                        cause=e,
                    )
                )

            swapped = self._swap(candidate, reason="load")
            self.last_error = None
            self._state = StoreState.READY
            active = self._snapshot

        if swapped:
            self._notify(active)
        return active

    def update(self, candidate: HeuristicsConfig | Mapping[str, Any]) -> HeuristicsConfig:
        """Validate and activate a candidate config.

        Raises:
            ConfigValidationError: The candidate is invalid; nothing changes.
            ConfigSourceUnavailable: Writing back to the source failed; nothing changes.
        """
        document = candidate.to_dict() if isinstance(candidate, HeuristicsConfig) else candidate
        validated = HeuristicsConfig.from_dict(document)

        if self._snapshot is None:
            self.load()

        with self._write_lock:
            current = self._snapshot
            if current.fingerprint == validated.fingerprint:
                logger.info("Update identical to active config %s, ignoring", current.version)
                return current

            # A version names exactly one document, so rollback stays unambiguous
            if current.version == validated.version:
                problem = f"version {validated.version} is already active"
            elif any(
                e.config.version == validated.version
                and e.config.fingerprint != validated.fingerprint
                for e in self._history
            ):
                problem = f"version {validated.version} is retained in history with different content"
            else:
                problem = None
            if problem:
                raise ConfigValidationError(
                    code=ErrorCode.CONFIG_INVALID,
                    message="Candidate must carry a new version",
                    details={"errors": [problem], "version": validated.version},
                )

            self._write_back(validated)
            self._swap(validated, reason="update")

        self._notify(validated)
        return validated

    def rollback(self, version: str) -> HeuristicsConfig:
        """Restore the most recent archived snapshot with ``version``.

        The replaced snapshot is archived in turn, so a rollback can itself
        be undone.

        Raises:
            RollbackError: ``version`` is not in the retained history.
        """
        if self._snapshot is None:
            self.load()

        with self._write_lock:
            entry = next((e for e in reversed(self._history) if e.config.version == version), None)
            if entry is None:
                raise RollbackError(
                    code=ErrorCode.CONFIG_VERSION_NOT_FOUND,
                    message=f"Version {version} is not in the retained history",
                    details={"version": version, "available": self._versions()},
                )

            target = entry.config
            self._write_back(target)
            self._history.remove(entry)
            current = self._snapshot
            self._history.append(ArchivedSnapshot(config=current, archived_at=datetime.now()))
            self._snapshot = target
            self.last_loaded = datetime.now()
            if self._persist_history:
                self._persist_full_history()

            logger.info(
                "Rolled back heuristics config %s -> %s",
                current.version,
                target.version,
                extra={"from_version": current.version, "to_version": target.version},
            )

        self._notify(target)
        return target

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def history(self) -> list[ArchivedSnapshot]:
        """Archived snapshots, oldest first."""
        return list(self._history)

    def unused_version(self, base: str) -> str:
        """Next patch version after ``base`` not held by any retained snapshot."""
        taken = set(self._versions())
        if self._snapshot is not None:
            taken.add(self._snapshot.version)
        version = next_version(base)
        while version in taken:
            version = next_version(version)
        return version

    def _versions(self) -> list[str]:
        return [e.config.version for e in self._history]

    def _archive(self, snapshot: HeuristicsConfig) -> None:
        entry = ArchivedSnapshot(config=snapshot, archived_at=datetime.now())
        self._history.append(entry)
        if self._persist_history:
            db.archive_config(
                snapshot.version,
                snapshot.fingerprint,
                snapshot.to_dict(),
                keep=self._history.maxlen,
            )

    def _persist_full_history(self) -> None:
        db.replace_config_history(
            [
                {
                    "version": e.config.version,
                    "fingerprint": e.config.fingerprint,
                    "document": e.config.to_dict(),
                    "archived_at": e.archived_at.isoformat(),
                }
                for e in self._history
            ]
        )

    def _restore_history(self) -> None:
        for row in db.get_config_history(limit=self._history.maxlen):
            try:
                config = HeuristicsConfig.from_dict(row["document"])
            except ConfigValidationError as e:
                logger.warning(
                    "Skipping archived config %s: %s", row["version"], e.message
                )
                continue
            self._history.append(
                ArchivedSnapshot(
                    config=config, archived_at=datetime.fromisoformat(row["archived_at"])
                )
            )

    # ------------------------------------------------------------------
    # Internals (callers hold the write lock)
    # ------------------------------------------------------------------

    def _swap(self, candidate: HeuristicsConfig, reason: str) -> bool:
        current = self._snapshot
        if current is not None and current.fingerprint == candidate.fingerprint:
            logger.debug("Heuristics config unchanged (%s)", candidate.version)
            return False

        if current is not None:
            self._archive(current)
        self._snapshot = candidate
        self.last_loaded = datetime.now()

        logger.info(
            "Activated heuristics config %s (%s)",
            candidate.version,
            reason,
            extra={
                "version": candidate.version,
                "previous_version": current.version if current else None,
                "reason": reason,
                "fingerprint": candidate.fingerprint[:12],
            },
        )
        return True

    def _recover(self, error: CodelabelError) -> HeuristicsConfig:
        self._state = StoreState.FAILED
        self.last_error = error
        if self._snapshot is None:
            logger.warning("No heuristics config has loaded yet, using built-in default")
            self._snapshot = default_config()
            self.last_loaded = datetime.now()
        self._state = StoreState.READY
        return self._snapshot

    def _write_back(self, config: HeuristicsConfig) -> None:
        if not (self._persist_updates and self._source is not None and self._source.writable):
            return
        try:
            self._source.write(config.to_dict())
        except OSError as e:
            raise ConfigSourceUnavailable(
                code=ErrorCode.CONFIG_SOURCE_UNAVAILABLE,
                message="Could not persist heuristics config",
                details={"source": self._source.describe(), "version": config.version},
                cause=e,
            ) from e

    def _notify(self, snapshot: HeuristicsConfig) -> None:
        for callback in self._listeners:
            try:
                callback(snapshot)
            except Exception:
                logger.exception("Config listener %r failed", callback)

    # ------------------------------------------------------------------
    # Watching
    # ------------------------------------------------------------------

    def watch(self, poll_interval: float = 1.0, debounce: float = 0.5) -> "ConfigWatcher":
        """Start reloading whenever the source changes."""
        if self._source is None:
            raise ConfigSourceUnavailable(
                code=ErrorCode.CONFIG_SOURCE_UNAVAILABLE,
                message="No heuristics source to watch",
            )
        if self._watcher is None:
            self._watcher = ConfigWatcher(self, poll_interval=poll_interval, debounce=debounce)
            self._watcher.start()
        return self._watcher

    def stop_watching(self) -> None:
        if self._watcher is not None:
            self._watcher.stop()
            self._watcher = None


class ConfigWatcher:
    """Polls a source's change marker and reloads after a quiet period.

    A burst of edits keeps resetting the debounce window, so the store
    reloads once after the last edit settles.
    """

    def __init__(self, store: ConfigurationStore, poll_interval: float = 1.0, debounce: float = 0.5):
        self.store = store
        self.poll_interval = poll_interval
        self.debounce = debounce
        self._last_marker = store.source.change_marker()
        self._pending_since: float | None = None
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="codelabel-config-watch", daemon=True)
        self._thread.start()
        logger.info("Watching %s for changes", self.store.source.describe())

    def stop(self) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=self.poll_interval + 1.0)
            self._thread = None

    def poll_once(self, now: float | None = None) -> bool:
        """Check the source once; returns True if a reload was triggered."""
        now = time.monotonic() if now is None else now
        marker = self.store.source.change_marker()

        if marker != self._last_marker:
            self._last_marker = marker
            self._pending_since = now
            return False

        if self._pending_since is not None and now - self._pending_since >= self.debounce:
            self._pending_since = None
            logger.info("Heuristics source changed, reloading")
            self.store.load()
            return True

        return False

    def _run(self) -> None:
        while not self._stop.wait(self.poll_interval):
            try:
                self.poll_once()
            except Exception:
                logger.exception("Config watcher poll failed")
