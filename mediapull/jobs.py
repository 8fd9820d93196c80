"""
Defines the data classes for a batch job and the files inside it.
"""

import copy
import time
import secrets
from dataclasses import dataclass, field, asdict
from typing import Dict, Any, List, Optional

# Job-level statuses.
IDLE = 'idle'
DOWNLOADING = 'downloading'
PAUSED = 'paused'
COMPLETED = 'completed'
ERROR = 'error'
# Produced only by an archiving step outside the supervisor.
ZIPPING = 'zipping'

JOB_STATUSES = frozenset({IDLE, DOWNLOADING, PAUSED, COMPLETED, ERROR, ZIPPING})

# File-level statuses.
FILE_PENDING = 'pending'
FILE_DOWNLOADING = 'downloading'
FILE_COMPLETED = 'completed'
FILE_ERROR = 'error'

FILE_STATUSES = frozenset({FILE_PENDING, FILE_DOWNLOADING, FILE_COMPLETED, FILE_ERROR})


def new_job_id(now_ms: Optional[int] = None) -> str:
    """Allocates a time-ordered id of the form `<epoch-ms>-<nnn>`."""
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return f"{now_ms}-{secrets.randbelow(1000):03d}"


def created_at_from_id(job_id: str) -> Optional[int]:
    """Recovers the creation timestamp embedded in a job id."""
    head = job_id.split('-', 1)[0]
    return int(head) if head.isdigit() else None


@dataclass
class JobFile:
    """
    One URL within a batch.

    Attributes:
        url: The media URL handed to the engine.
        title: The title supplied with the URL.
        filename: Sanitized, collision-free output filename.
        status: One of pending, downloading, completed, error.
    """
    url: str
    title: str
    filename: str
    status: str = FILE_PENDING

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'JobFile':
        status = data.get('status', FILE_PENDING)
        return cls(
            url=data['url'],
            title=data.get('title') or '',
            filename=data['filename'],
            status=status if status in FILE_STATUSES else FILE_PENDING,
        )


@dataclass
class JobProgress:
    """
    Cached progress view of a job.

    `completed` is always derived from the file statuses. The `current_*`
    fields are best-effort UI hints and are not persisted.
    """
    total: int = 0
    completed: int = 0
    current_file_index: int = 0
    current_speed: str = ''
    current_file_size: str = ''
    current_file_percent: float = 0.0

    def reset_transient(self):
        self.current_speed = ''
        self.current_file_size = ''
        self.current_file_percent = 0.0


@dataclass
class Job:
    """
    One batch submission.

    Attributes:
        id: Time-ordered unique identifier.
        playlist_name: Display label for the batch.
        format: Format selector passed to the engine.
        destination_dir: Directory holding finished files.
        files: Ordered files; the order is fixed at creation.
        target_container: Desired output container, drives transcoding flags.
        parallelism: Fragment concurrency hint for the engine.
        number_items: Whether filenames carry an index prefix.
        status: One of idle, downloading, paused, completed, error (or zipping).
        created_at: Creation time in epoch milliseconds.
        progress: Cached progress view.
    """
    id: str
    playlist_name: str
    format: str
    destination_dir: str
    files: List[JobFile] = field(default_factory=list)
    target_container: Optional[str] = None
    parallelism: int = 4
    number_items: bool = False
    status: str = IDLE
    created_at: int = 0
    progress: JobProgress = field(default_factory=JobProgress)

    def __post_init__(self):
        if not self.created_at:
            self.created_at = created_at_from_id(self.id) or int(time.time() * 1000)
        self.recompute_progress()

    def recompute_progress(self):
        """Re-derives `total` and `completed` from the file list."""
        self.progress.total = len(self.files)
        self.progress.completed = sum(1 for f in self.files if f.status == FILE_COMPLETED)

    def resume_index(self) -> int:
        """Index of the first file that is not completed (0 if all are)."""
        for index, job_file in enumerate(self.files):
            if job_file.status != FILE_COMPLETED:
                return index
        return 0

    def all_completed(self) -> bool:
        return all(f.status == FILE_COMPLETED for f in self.files)

    def snapshot(self) -> 'Job':
        """Returns an independent copy safe to hand to another thread or subscriber."""
        return copy.deepcopy(self)

    def files_json_ready(self) -> List[Dict[str, Any]]:
        return [asdict(f) for f in self.files]

    @classmethod
    def from_legacy(cls, data: Dict[str, Any]) -> 'Job':
        """
        Builds a Job from a record of the old flat-file job list.

        Legacy records use camelCase keys and call the destination `tempDir`.
        """
        progress = data.get('progress') or {}
        job = cls(
            id=str(data['id']),
            playlist_name=data.get('playlistName') or 'batch',
            format=data.get('format') or 'best',
            destination_dir=data.get('tempDir') or data.get('destinationDir') or '',
            files=[JobFile.from_dict(f) for f in data.get('files') or []],
            target_container=data.get('targetContainer'),
            parallelism=int(data.get('concurrentFragments') or 4),
            number_items=bool(data.get('addPrefix') or data.get('numberItems')),
            status=data.get('status') if data.get('status') in JOB_STATUSES else IDLE,
            created_at=int(data.get('createdAt') or 0),
        )
        job.progress.current_file_index = int(progress.get('currentFileIndex') or 0)
        return job
