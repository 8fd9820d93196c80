"""
SQLite storage layer for job persistence.

All access goes through one connection guarded by a lock, so the store can be
used from worker threads (via `asyncio.to_thread`) by several job loops at once.
"""

import json
import sqlite3
import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Optional, List, Dict, Any

from .jobs import Job, JobFile, JobProgress, DOWNLOADING, PAUSED, FILE_DOWNLOADING, FILE_PENDING

SCHEMA = """
CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    playlist_name TEXT NOT NULL,
    format TEXT NOT NULL,
    target_container TEXT,
    parallelism INTEGER NOT NULL DEFAULT 4,
    number_items INTEGER NOT NULL DEFAULT 0,
    destination_dir TEXT NOT NULL,
    status TEXT NOT NULL,
    created_at INTEGER NOT NULL,
    total_items INTEGER NOT NULL DEFAULT 0,
    completed_items INTEGER NOT NULL DEFAULT 0,
    current_file_index INTEGER NOT NULL DEFAULT 0,
    files_json TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_jobs_created_at ON jobs(created_at DESC);
"""

# Jobs needing attention first, then newest first.
LIST_ORDER = """
    ORDER BY
        CASE status
            WHEN 'downloading' THEN 3
            WHEN 'paused' THEN 2
            WHEN 'zipping' THEN 2
            WHEN 'error' THEN 1
            ELSE 0
        END DESC,
        created_at DESC
"""


class JobStore:
    """
    SQLite-based storage for batch jobs.

    Rows mirror the Job entity; the file list is stored as a JSON blob.
    Transient progress fields (speed, size, percent) are never stored.
    """

    def __init__(self, db_path: Path):
        """
        Opens (and if needed creates) the job database.

        Args:
            db_path: Path to the SQLite database file.
        """
        self.db_path = Path(db_path)
        self.logger = logging.getLogger(__name__)
        self._lock = threading.RLock()

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        with self._transaction() as conn:
            conn.executescript(SCHEMA)

    @contextmanager
    def _transaction(self):
        """Serializes access and commits on success, rolls back on error."""
        with self._lock:
            try:
                yield self._conn
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

    def close(self):
        with self._lock:
            self._conn.close()

    # --- CRUD ---

    @staticmethod
    def _job_params(job: Job) -> Dict[str, Any]:
        return {
            'id': job.id,
            'playlist_name': job.playlist_name,
            'format': job.format,
            'target_container': job.target_container,
            'parallelism': job.parallelism,
            'number_items': 1 if job.number_items else 0,
            'destination_dir': job.destination_dir,
            'status': job.status,
            'created_at': job.created_at,
            'total_items': len(job.files),
            'completed_items': job.progress.completed,
            'current_file_index': job.progress.current_file_index,
            'files_json': json.dumps(job.files_json_ready()),
        }

    @staticmethod
    def _row_to_job(row: sqlite3.Row) -> Job:
        job = Job(
            id=row['id'],
            playlist_name=row['playlist_name'],
            format=row['format'],
            destination_dir=row['destination_dir'],
            files=[JobFile.from_dict(f) for f in json.loads(row['files_json'])],
            target_container=row['target_container'],
            parallelism=row['parallelism'],
            number_items=bool(row['number_items']),
            status=row['status'],
            created_at=row['created_at'],
            progress=JobProgress(current_file_index=row['current_file_index']),
        )
        return job

    def insert(self, job: Job):
        """Inserts a new job row."""
        with self._transaction() as conn:
            conn.execute("""
                INSERT INTO jobs (
                    id, playlist_name, format, target_container, parallelism, number_items,
                    destination_dir, status, created_at, total_items, completed_items,
                    current_file_index, files_json
                ) VALUES (
                    :id, :playlist_name, :format, :target_container, :parallelism, :number_items,
                    :destination_dir, :status, :created_at, :total_items, :completed_items,
                    :current_file_index, :files_json
                )
            """, self._job_params(job))

    def update(self, job: Job) -> bool:
        """
        Overwrites the mutable fields of a stored job.

        Returns:
            False if the row no longer exists (e.g. the job was deleted).
        """
        with self._transaction() as conn:
            cursor = conn.execute("""
                UPDATE jobs SET
                    status = :status,
                    total_items = :total_items,
                    completed_items = :completed_items,
                    current_file_index = :current_file_index,
                    files_json = :files_json
                WHERE id = :id
            """, self._job_params(job))
            return cursor.rowcount > 0

    def get(self, job_id: str) -> Optional[Job]:
        """Returns the stored job, or None if the id is unknown."""
        with self._lock:
            row = self._conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        return self._row_to_job(row) if row is not None else None

    def exists(self, job_id: str) -> bool:
        with self._lock:
            row = self._conn.execute("SELECT 1 FROM jobs WHERE id = ?", (job_id,)).fetchone()
        return row is not None

    def delete(self, job_id: str):
        with self._transaction() as conn:
            conn.execute("DELETE FROM jobs WHERE id = ?", (job_id,))

    def list(self, limit: Optional[int] = None) -> List[Job]:
        """
        Lists jobs: downloading, then paused/zipping, then error, then the rest,
        newest first within each group.

        Args:
            limit: Maximum number of jobs to return (None or <= 0 for all).
        """
        query = "SELECT * FROM jobs" + LIST_ORDER
        params: List[Any] = []
        if limit is not None and limit > 0:
            query += " LIMIT ?"
            params.append(limit)
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [self._row_to_job(row) for row in rows]

    def reserved_filenames(self, destination_dir: str, exclude_id: Optional[str] = None) -> List[str]:
        """Filenames already claimed by stored jobs writing into `destination_dir`."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT id, files_json FROM jobs WHERE destination_dir = ?", (destination_dir,)
            ).fetchall()
        names = []
        for row in rows:
            if row['id'] == exclude_id:
                continue
            names.extend(f['filename'] for f in json.loads(row['files_json']))
        return names

    # --- Startup reconciliation ---

    def migrate_legacy(self, legacy_path: Path) -> int:
        """
        Imports a legacy flat-file job list once, then renames it aside.

        Safe to run on every startup: entries already in the store are skipped
        and a missing file is a no-op.

        Returns:
            The number of jobs inserted.
        """
        legacy_path = Path(legacy_path)
        if not legacy_path.exists():
            return 0

        records = json.loads(legacy_path.read_text(encoding='utf-8'))
        inserted = 0
        for record in records if isinstance(records, list) else []:
            try:
                job = Job.from_legacy(record)
            except (KeyError, TypeError, ValueError) as e:
                self.logger.warning(f"Skipping unreadable legacy job record: {e}")
                continue
            if self.exists(job.id):
                continue
            self.insert(job)
            inserted += 1

        backup_path = legacy_path.with_name(legacy_path.name + '.bak')
        legacy_path.replace(backup_path)
        self.logger.info(f"Migrated {inserted} legacy job(s); moved {legacy_path.name} to {backup_path.name}.")
        return inserted

    def reconcile_interrupted(self) -> int:
        """
        Marks jobs left `downloading` by a previous process as `paused`.

        No loop can own such a job after a restart. Files caught mid-download
        go back to `pending`.

        Returns:
            The number of jobs repaired.
        """
        with self._lock:
            rows = self._conn.execute("SELECT * FROM jobs WHERE status = ?", (DOWNLOADING,)).fetchall()
        for row in rows:
            job = self._row_to_job(row)
            job.status = PAUSED
            for job_file in job.files:
                if job_file.status == FILE_DOWNLOADING:
                    job_file.status = FILE_PENDING
            job.recompute_progress()
            self.update(job)
        if rows:
            self.logger.info(f"Recovered {len(rows)} interrupted job(s) as paused.")
        return len(rows)
