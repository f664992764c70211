"""SQLite database management for codelabel."""

import json
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime

from .config import get_db_path
from .models import (
    ActivityDefinition,
    ActivityStatus,
    ClassificationKind,
    CorrectionRecord,
    CorrectionSource,
)

# Pattern names are only unique within a kind
PatternKey = tuple[ClassificationKind, str]


def get_connection() -> sqlite3.Connection:
    """Get a database connection."""
    db_path = get_db_path()
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    return conn


@contextmanager
def get_db() -> Iterator[sqlite3.Connection]:
    """Context manager for database connections."""
    conn = get_connection()
    try:
        yield conn
        conn.commit()
    finally:
        conn.close()


def init_db() -> None:
    """Initialize the database schema."""
    with get_db() as conn:
        conn.executescript("""
            -- Every classification served, attributed to the pattern that decided it
            CREATE TABLE IF NOT EXISTS classifications (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                kind TEXT,
                pattern_name TEXT,
                labels TEXT,
                used_fallback INTEGER DEFAULT 0,
                config_version TEXT,
                timestamp TEXT
            );

            -- Append-only log of overrides
            CREATE TABLE IF NOT EXISTS corrections (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                kind TEXT,
                pattern_name TEXT,
                predicted_label TEXT,
                corrected_label TEXT,
                source TEXT,
                context TEXT,
                config_version TEXT,
                timestamp TEXT
            );

            -- Snapshots replaced by an update, reload or rollback
            CREATE TABLE IF NOT EXISTS config_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                version TEXT,
                fingerprint TEXT,
                document TEXT,
                archived_at TEXT
            );

            -- Refinement activity run state
            CREATE TABLE IF NOT EXISTS activities (
                id TEXT PRIMARY KEY,
                schedule TEXT,
                action TEXT,
                last_run TEXT,
                status TEXT DEFAULT 'idle',
                last_outcome TEXT,
                last_error TEXT,
                run_count INTEGER DEFAULT 0,
                enabled INTEGER DEFAULT 1
            );

            -- Candidate configs awaiting (or past) approval
            CREATE TABLE IF NOT EXISTS proposals (
                id TEXT PRIMARY KEY,
                activity_id TEXT,
                base_version TEXT,
                candidate_version TEXT,
                candidate TEXT,
                rationale TEXT,
                correction_ids TEXT,
                state TEXT,
                created_at TEXT,
                expires_at TEXT,
                reviewed_by TEXT,
                reviewed_at TEXT,
                error TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_classifications_pattern
                ON classifications (pattern_name, timestamp);
            CREATE INDEX IF NOT EXISTS idx_corrections_pattern
                ON corrections (pattern_name, timestamp);
        """)


# ============================================================================
# Classification and correction log
# ============================================================================


def log_classification(
    kind: ClassificationKind,
    pattern_name: str,
    labels: list[str],
    used_fallback: bool,
    config_version: str,
    timestamp: datetime | None = None,
) -> None:
    """Record that a pattern produced a classification."""
    with get_db() as conn:
        conn.execute(
            """
            INSERT INTO classifications (kind, pattern_name, labels, used_fallback, config_version, timestamp)
            VALUES (?, ?, ?, ?, ?, ?)
        """,
            (
                kind.value,
                pattern_name,
                json.dumps(labels),
                int(used_fallback),
                config_version,
                (timestamp or datetime.now()).isoformat(),
            ),
        )


def log_correction(record: CorrectionRecord) -> int | None:
    """Append a correction and return its row id."""
    with get_db() as conn:
        cursor = conn.execute(
            """
            INSERT INTO corrections (kind, pattern_name, predicted_label, corrected_label, source, context, config_version, timestamp)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
            (
                record.kind.value,
                record.pattern_name,
                record.predicted_label,
                record.corrected_label,
                record.source.value,
                json.dumps(dict(record.context_snapshot), default=str),
                record.config_version,
                record.timestamp.isoformat(),
            ),
        )
        return cursor.lastrowid


def _row_to_correction(row: sqlite3.Row) -> CorrectionRecord:
    return CorrectionRecord(
        id=row["id"],
        kind=ClassificationKind(row["kind"]),
        pattern_name=row["pattern_name"],
        predicted_label=row["predicted_label"],
        corrected_label=row["corrected_label"],
        source=CorrectionSource(row["source"]),
        context_snapshot=json.loads(row["context"]) if row["context"] else {},
        config_version=row["config_version"],
        timestamp=datetime.fromisoformat(row["timestamp"]),
    )


def get_corrections(
    since: datetime | None = None,
    limit: int = 100,
    kind: ClassificationKind | None = None,
    source: CorrectionSource | None = None,
) -> list[CorrectionRecord]:
    """Get recent corrections, newest first.

    Args:
        since: Only return corrections recorded at or after this time
        limit: Maximum number of corrections to return
        kind: Filter by purpose or bundle corrections
        source: Filter by human or agent corrections
    """
    with get_db() as conn:
        query = "SELECT * FROM corrections WHERE 1=1"
        params: list = []

        if since is not None:
            query += " AND timestamp >= ?"
            params.append(since.isoformat())

        if kind is not None:
            query += " AND kind = ?"
            params.append(kind.value)

        if source is not None:
            query += " AND source = ?"
            params.append(source.value)

        query += " ORDER BY timestamp DESC, id DESC LIMIT ?"
        params.append(limit)

        rows = conn.execute(query, params).fetchall()
        return [_row_to_correction(row) for row in rows]


def count_classifications(since: datetime | None = None) -> dict[PatternKey, int]:
    """Classification counts per (kind, pattern name)."""
    with get_db() as conn:
        query = "SELECT kind, pattern_name, COUNT(*) as count FROM classifications"
        params: list = []
        if since is not None:
            query += " WHERE timestamp >= ?"
            params.append(since.isoformat())
        query += " GROUP BY kind, pattern_name"

        rows = conn.execute(query, params).fetchall()
        return {(ClassificationKind(row["kind"]), row["pattern_name"]): row["count"] for row in rows}


def count_corrections(since: datetime | None = None) -> dict[PatternKey, int]:
    """Counts per (kind, pattern name) of corrections that actually changed the label."""
    with get_db() as conn:
        query = "SELECT kind, pattern_name, COUNT(*) as count FROM corrections WHERE predicted_label != corrected_label"
        params: list = []
        if since is not None:
            query += " AND timestamp >= ?"
            params.append(since.isoformat())
        query += " GROUP BY kind, pattern_name"

        rows = conn.execute(query, params).fetchall()
        return {(ClassificationKind(row["kind"]), row["pattern_name"]): row["count"] for row in rows}


# ============================================================================
# Configuration history
# ============================================================================


def archive_config(version: str, fingerprint: str, document: dict, keep: int) -> None:
    """Archive a replaced snapshot, keeping only the newest ``keep`` rows."""
    with get_db() as conn:
        conn.execute(
            """
            INSERT INTO config_history (version, fingerprint, document, archived_at)
            VALUES (?, ?, ?, ?)
        """,
            (version, fingerprint, json.dumps(document), datetime.now().isoformat()),
        )
        conn.execute(
            """
            DELETE FROM config_history WHERE id NOT IN (
                SELECT id FROM config_history ORDER BY id DESC LIMIT ?
            )
        """,
            (keep,),
        )


def get_config_history(limit: int = 10) -> list[dict]:
    """Archived snapshots, oldest first."""
    with get_db() as conn:
        rows = conn.execute(
            "SELECT * FROM config_history ORDER BY id DESC LIMIT ?", (limit,)
        ).fetchall()
        history = [
            {
                "version": row["version"],
                "fingerprint": row["fingerprint"],
                "document": json.loads(row["document"]),
                "archived_at": row["archived_at"],
            }
            for row in rows
        ]
        history.reverse()
        return history


def replace_config_history(entries: list[dict]) -> None:
    """Overwrite the archive with ``entries`` (oldest first)."""
    with get_db() as conn:
        conn.execute("DELETE FROM config_history")
        conn.executemany(
            """
            INSERT INTO config_history (version, fingerprint, document, archived_at)
            VALUES (?, ?, ?, ?)
        """,
            [
                (e["version"], e["fingerprint"], json.dumps(e["document"]), e["archived_at"])
                for e in entries
            ],
        )


# ============================================================================
# Refinement activities and proposals
# ============================================================================


def save_activity(activity: ActivityDefinition) -> None:
    """Insert or update an activity's run state."""
    with get_db() as conn:
        conn.execute(
            """
            INSERT INTO activities (id, schedule, action, last_run, status, last_outcome, last_error, run_count, enabled)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                schedule = excluded.schedule,
                action = excluded.action,
                last_run = excluded.last_run,
                status = excluded.status,
                last_outcome = excluded.last_outcome,
                last_error = excluded.last_error,
                run_count = excluded.run_count,
                enabled = excluded.enabled
        """,
            (
                activity.id,
                activity.schedule,
                activity.action,
                activity.last_run.isoformat() if activity.last_run else None,
                activity.status.value,
                activity.last_outcome.value if activity.last_outcome else None,
                activity.last_error,
                activity.run_count,
                int(activity.enabled),
            ),
        )


def get_activity(activity_id: str) -> ActivityDefinition | None:
    """Get persisted state for one activity."""
    with get_db() as conn:
        row = conn.execute("SELECT * FROM activities WHERE id = ?", (activity_id,)).fetchone()
        if not row:
            return None
        return ActivityDefinition(
            id=row["id"],
            schedule=row["schedule"],
            action=row["action"],
            last_run=datetime.fromisoformat(row["last_run"]) if row["last_run"] else None,
            status=ActivityStatus(row["status"]),
            last_outcome=ActivityStatus(row["last_outcome"]) if row["last_outcome"] else None,
            last_error=row["last_error"],
            run_count=row["run_count"],
            enabled=bool(row["enabled"]),
        )


def save_proposal(row: dict) -> None:
    """Insert or update a proposal row (keys match the table columns)."""
    columns = (
        "id",
        "activity_id",
        "base_version",
        "candidate_version",
        "candidate",
        "rationale",
        "correction_ids",
        "state",
        "created_at",
        "expires_at",
        "reviewed_by",
        "reviewed_at",
        "error",
    )
    updates = ", ".join(f"{c} = excluded.{c}" for c in columns if c != "id")
    with get_db() as conn:
        conn.execute(
            f"""
            INSERT INTO proposals ({", ".join(columns)})
            VALUES ({", ".join("?" for _ in columns)})
            ON CONFLICT(id) DO UPDATE SET {updates}
        """,
            tuple(row.get(c) for c in columns),
        )


def get_proposal(proposal_id: str) -> dict | None:
    """Get a proposal row by id."""
    with get_db() as conn:
        row = conn.execute("SELECT * FROM proposals WHERE id = ?", (proposal_id,)).fetchone()
        return dict(row) if row else None


def get_proposals(state: str | None = None) -> list[dict]:
    """Get proposals, newest first, optionally filtered by state."""
    with get_db() as conn:
        if state:
            rows = conn.execute(
                "SELECT * FROM proposals WHERE state = ? ORDER BY created_at DESC", (state,)
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM proposals ORDER BY created_at DESC").fetchall()
        return [dict(row) for row in rows]


def get_stats() -> dict:
    """Get overall statistics."""
    with get_db() as conn:
        classifications = conn.execute(
            "SELECT COUNT(*) as count FROM classifications"
        ).fetchone()
        corrections = conn.execute("SELECT COUNT(*) as count FROM corrections").fetchone()
        overrides = conn.execute(
            "SELECT COUNT(*) as count FROM corrections WHERE predicted_label != corrected_label"
        ).fetchone()
        pending = conn.execute(
            "SELECT COUNT(*) as count FROM proposals WHERE state = 'proposed'"
        ).fetchone()

        return {
            "total_classifications": classifications["count"],
            "total_corrections": corrections["count"],
            "total_overrides": overrides["count"],
            "pending_proposals": pending["count"],
        }


def reset_database() -> None:
    """Clear all logged data (history and proposals included)."""
    with get_db() as conn:
        conn.execute("DELETE FROM classifications")
        conn.execute("DELETE FROM corrections")
        conn.execute("DELETE FROM config_history")
        conn.execute("DELETE FROM activities")
        conn.execute("DELETE FROM proposals")
