"""
SQLite database for persistent job storage.

JobDatabase implements the JobStore protocol. Status changes are written with
a compare-and-set on the previous status, so a job that reached a terminal
state can never be overwritten.
"""

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, List, Optional

from .job_manager import JobRecord
from .models import InputItem, JobEvent, JobMetadata, JobStatus, ResultArtifact, TargetFormat


# Default database path
DEFAULT_DB_PATH = Path("data/converter.db")


def _ensure_db_dir(db_path: Path) -> None:
    """Ensure the database directory exists."""
    db_path.parent.mkdir(parents=True, exist_ok=True)


def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    """Serialize datetime to ISO format string."""
    return dt.isoformat(timespec="microseconds") if dt else None


def _deserialize_datetime(s: Optional[str]) -> Optional[datetime]:
    """Deserialize ISO format string to datetime."""
    if not s:
        return None
    return datetime.fromisoformat(s)


@contextmanager
def connect(db_path: Path) -> Iterator[sqlite3.Connection]:
    """Open a connection with WAL enabled; commit on success, roll back on error."""
    conn = sqlite3.connect(str(db_path), timeout=30.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


class JobDatabase:
    """
    SQLite database for job persistence.

    Thread-safe: every call opens its own connection and SQLite serialises
    writers in WAL mode.
    """

    def __init__(self, db_path: Path = DEFAULT_DB_PATH):
        self.db_path = Path(db_path)
        _ensure_db_dir(self.db_path)
        self._init_db()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS conversion_jobs (
                    id TEXT PRIMARY KEY,
                    owner TEXT NOT NULL,
                    owner_name TEXT NOT NULL,
                    input_items TEXT NOT NULL,
                    target_format TEXT NOT NULL,
                    destination TEXT NOT NULL,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    started_at TEXT,
                    completed_at TEXT,
                    processing_duration_ms INTEGER,
                    result_artifact TEXT,
                    error_detail TEXT,
                    metadata TEXT,
                    events TEXT
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_conversion_jobs_owner_created
                ON conversion_jobs(owner, created_at DESC)
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_conversion_jobs_status
                ON conversion_jobs(status)
            """)

    def create_job(self, record: JobRecord) -> None:
        """
        Insert a new job record.

        Raises:
            sqlite3.IntegrityError: If a job with the same id already exists
        """
        with connect(self.db_path) as conn:
            conn.execute("""
                INSERT INTO conversion_jobs (
                    id, owner, owner_name, input_items, target_format, destination,
                    status, created_at, updated_at, started_at, completed_at,
                    processing_duration_ms, result_artifact, error_detail, metadata, events
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record.id,
                record.owner,
                record.owner_name,
                json.dumps([item.model_dump(mode="json") for item in record.input_items]),
                record.target_format.value,
                record.destination,
                *self._mutable_values(record),
            ))

    def get_job(self, job_id: str) -> Optional[JobRecord]:
        """
        Retrieve a job by ID.

        Returns:
            A freshly built JobRecord, or None if not found
        """
        with connect(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM conversion_jobs WHERE id = ?", (job_id,)
            ).fetchone()

            if not row:
                return None

            return self._row_to_record(row)

    def list_jobs_for_owner(self, owner: Optional[str], limit: int = 50) -> List[JobRecord]:
        """
        List jobs newest first.

        Args:
            owner: Restrict to this owner; None lists every owner's jobs
            limit: Maximum number of records returned
        """
        with connect(self.db_path) as conn:
            if owner is None:
                rows = conn.execute(
                    "SELECT * FROM conversion_jobs ORDER BY created_at DESC LIMIT ?", (limit,)
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM conversion_jobs WHERE owner = ? ORDER BY created_at DESC LIMIT ?",
                    (owner, limit),
                ).fetchall()

            return [self._row_to_record(row) for row in rows]

    def save_transition(self, record: JobRecord, expected_status: JobStatus) -> bool:
        """
        Persist the record's mutable fields if the stored status still matches.

        Args:
            record: The record after an in-memory transition
            expected_status: Status the stored row must have before the update

        Returns:
            True if the row was updated, False if the stored status differed
            (or the job does not exist)
        """
        with connect(self.db_path) as conn:
            cursor = conn.execute("""
                UPDATE conversion_jobs SET
                    status = ?, created_at = ?, updated_at = ?, started_at = ?, completed_at = ?,
                    processing_duration_ms = ?, result_artifact = ?, error_detail = ?,
                    metadata = ?, events = ?
                WHERE id = ? AND status = ?
            """, (*self._mutable_values(record), record.id, expected_status.value))
            return cursor.rowcount > 0

    @staticmethod
    def _mutable_values(record: JobRecord) -> tuple:
        return (
            record.status.value,
            _serialize_datetime(record.created_at),
            _serialize_datetime(record.updated_at),
            _serialize_datetime(record.started_at),
            _serialize_datetime(record.completed_at),
            record.processing_duration_ms,
            json.dumps(record.result_artifact.model_dump(mode="json")) if record.result_artifact else None,
            record.error_detail,
            json.dumps(record.metadata.model_dump(mode="json")),
            json.dumps([event.model_dump(mode="json") for event in record.events]),
        )

    def _row_to_record(self, row: sqlite3.Row) -> JobRecord:
        """Convert a database row to a job record."""
        artifact_raw = json.loads(row["result_artifact"]) if row["result_artifact"] else None
        return JobRecord(
            id=row["id"],
            owner=row["owner"],
            owner_name=row["owner_name"],
            input_items=[InputItem(**item) for item in json.loads(row["input_items"])],
            target_format=TargetFormat(row["target_format"]),
            destination=row["destination"],
            status=JobStatus(row["status"]),
            created_at=_deserialize_datetime(row["created_at"]),
            updated_at=_deserialize_datetime(row["updated_at"]),
            started_at=_deserialize_datetime(row["started_at"]),
            completed_at=_deserialize_datetime(row["completed_at"]),
            processing_duration_ms=row["processing_duration_ms"],
            result_artifact=ResultArtifact(**artifact_raw) if artifact_raw else None,
            error_detail=row["error_detail"],
            metadata=JobMetadata(**json.loads(row["metadata"] or "{}")),
            events=[JobEvent(**event) for event in json.loads(row["events"] or "[]")],
        )
