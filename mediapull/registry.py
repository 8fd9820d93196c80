"""In-memory registry of referenced jobs and their live engine processes."""
import asyncio
import logging
from typing import Dict, List, Optional

from .jobs import Job
from .store import JobStore


class JobRegistry:
    """
    Holds the Job objects currently referenced in memory and the engine process
    running for each job, if any.

    In-memory copies carry fresher transient progress than the store, so they
    take precedence when jobs are listed or queried.
    """

    def __init__(self, store: JobStore):
        self.store = store
        self.logger = logging.getLogger(__name__)
        self.jobs: Dict[str, Job] = {}
        self.processes: Dict[str, asyncio.subprocess.Process] = {}

    def get(self, job_id: str) -> Optional[Job]:
        return self.jobs.get(job_id)

    def put(self, job: Job) -> Job:
        self.jobs[job.id] = job
        return job

    async def get_or_load(self, job_id: str) -> Optional[Job]:
        """
        Returns the cached job, loading it from the store on a miss.

        Concurrent callers always end up with the same Job object.
        """
        job = self.jobs.get(job_id)
        if job is not None:
            return job
        loaded = await asyncio.to_thread(self.store.get, job_id)
        if loaded is None:
            return None
        return self.jobs.setdefault(job_id, loaded)

    def discard(self, job_id: str):
        self.jobs.pop(job_id, None)
        self.processes.pop(job_id, None)

    def overlay(self, stored_jobs: List[Job]) -> List[Job]:
        """Replaces stored copies with live in-memory ones, keeping the order."""
        return [self.jobs.get(job.id, job) for job in stored_jobs]

    # --- Live processes ---

    def set_process(self, job_id: str, process: asyncio.subprocess.Process):
        self.processes[job_id] = process

    def get_process(self, job_id: str) -> Optional[asyncio.subprocess.Process]:
        return self.processes.get(job_id)

    def clear_process(self, job_id: str, process: Optional[asyncio.subprocess.Process] = None):
        """Forgets the job's process, but only if it is still `process` when one is given."""
        if process is None or self.processes.get(job_id) is process:
            self.processes.pop(job_id, None)
