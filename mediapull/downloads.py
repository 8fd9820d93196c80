"""Supervises batch jobs: one engine process at a time, persisted after every step."""
import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Coroutine, Dict, List, Optional, Tuple

import aiofiles.os

from .config import Settings
from .constants import STAGING_DIR_NAME, THUMBNAIL_CONTAINERS, SALVAGE_EXTENSIONS
from .engine import EngineLauncher
from .events import JOB_PROGRESS
from .exceptions import (
    JobNotFoundError, EngineNotFoundError, EngineLaunchError, EnginePreparationError, FileMoveError
)
from .jobs import (
    Job, JobFile, DOWNLOADING, PAUSED, COMPLETED, ERROR,
    FILE_PENDING, FILE_DOWNLOADING, FILE_COMPLETED, FILE_ERROR
)
from .naming import is_audio_format, output_extension
from .progress import parse_progress_line, summarize_engine_error
from .registry import JobRegistry
from .retry import RetryPolicy, retry_async
from .store import JobStore


def find_output_file(staging_dir: Path, expected: Path) -> Optional[Path]:
    """
    Locates the finished output of one item in the staging directory.

    The predicted path wins if it holds data. Otherwise the newest non-empty
    file with the same stem is used, for containers whose final extension
    differs from the prediction. Only media containers qualify, so partial
    downloads, thumbnails and sidecar files left by a failed run never do.
    """
    allowed = SALVAGE_EXTENSIONS | {expected.suffix.lower()}
    try:
        if expected.is_file() and expected.stat().st_size > 0:
            return expected
        candidates = [
            p for p in staging_dir.iterdir()
            if p.is_file() and p.stem == expected.stem
            and p.suffix.lower() in allowed and p.stat().st_size > 0
        ]
    except FileNotFoundError:
        return None
    return max(candidates, key=lambda p: p.stat().st_mtime, default=None)


@dataclass
class JobRun:
    """One execution of a job's file loop."""
    task: Optional[asyncio.Task] = None
    pause_requested: bool = False

    def is_live(self) -> bool:
        return self.task is not None and not self.task.done()


class JobSupervisor:
    """
    Drives jobs through their files, strictly one engine process per job.

    A job is owned by at most one live run at a time. `resume` on a job that
    already has a live run is a no-op; a resume issued while a paused run is
    still unwinding waits for that run to finish before touching any file.
    """

    def __init__(self, event_callback: Callable[[Tuple[str, Any]], Coroutine[Any, Any, None]],
                 store: JobStore, registry: JobRegistry, launcher: EngineLauncher, settings: Settings):
        """
        Initializes the JobSupervisor.

        Args:
            event_callback: The async function to call with job snapshots.
            store: Durable job storage.
            registry: In-memory jobs and live processes.
            launcher: Spawns the engine.
            settings: The application settings.
        """
        self.event_callback = event_callback
        self.store = store
        self.registry = registry
        self.launcher = launcher
        self.settings = settings
        self.logger = logging.getLogger(__name__)
        self._runs: Dict[str, JobRun] = {}

    @property
    def move_policy(self) -> RetryPolicy:
        return RetryPolicy(max_attempts=self.settings.move_attempts, backoff=self.settings.move_backoff)

    def is_active(self, job_id: str) -> bool:
        run = self._runs.get(job_id)
        return run is not None and run.is_live()

    def active_job_ids(self) -> List[str]:
        return [job_id for job_id, run in self._runs.items() if run.is_live()]

    # --- Persistence and broadcast ---

    async def _broadcast(self, job: Job):
        await self.event_callback((JOB_PROGRESS, job.snapshot()))

    async def _save_and_broadcast(self, job: Job):
        """Persists a snapshot of `job`, then announces the same snapshot."""
        snapshot = job.snapshot()
        await asyncio.to_thread(self.store.update, snapshot)
        await self.event_callback((JOB_PROGRESS, snapshot))

    # --- Public operations ---

    async def resume(self, job_id: str) -> str:
        """
        Starts (or restarts) processing a job in the background.

        Returns:
            The job status after the call.

        Raises:
            JobNotFoundError: The id is unknown.
            EngineNotFoundError: The engine binary cannot be resolved.
        """
        job = await self.registry.get_or_load(job_id)
        if job is None:
            raise JobNotFoundError(job_id)

        # No awaits from here until the run is registered.
        previous = self._runs.get(job_id)
        if previous is not None and previous.is_live() and not previous.pause_requested:
            self.logger.debug(f"Job {job_id} is already running; resume ignored.")
            return job.status

        engine = self.launcher.resolve_engine()
        job.status = DOWNLOADING
        run = JobRun()
        self._runs[job_id] = run
        previous_task = previous.task if previous is not None and previous.is_live() else None
        run.task = asyncio.create_task(self._run_job(job, run, engine, previous_task), name=f"job-{job_id}")
        run.task.add_done_callback(self._task_done_callback(job_id, run))
        self.logger.info(f"Resuming job {job_id} ({job.playlist_name}, {len(job.files)} item(s)).")
        return job.status

    async def pause(self, job_id: str) -> str:
        """
        Pauses a job: kills its engine process, if any, and marks it paused.

        Idempotent, and safe between files when no process is running.
        A completed job stays completed.

        Raises:
            JobNotFoundError: The id is unknown.
        """
        job = await self.registry.get_or_load(job_id)
        if job is None:
            raise JobNotFoundError(job_id)

        run = self._runs.get(job_id)
        if run is not None:
            run.pause_requested = True

        process = self.registry.get_process(job_id)
        if process is not None:
            self.logger.info(f"Pausing job {job_id}: terminating engine (PID: {process.pid}).")
            self.launcher.kill_process(process)

        if job.status == COMPLETED:
            return job.status
        job.status = PAUSED
        job.progress.reset_transient()
        await self._save_and_broadcast(job)
        return job.status

    async def wait_for(self, job_id: str):
        """Waits until the job's current run, if any, has finished."""
        run = self._runs.get(job_id)
        if run is not None and run.task is not None:
            await asyncio.gather(run.task, return_exceptions=True)

    def forget(self, job_id: str):
        self._runs.pop(job_id, None)

    async def shutdown(self):
        """Pauses every running job so its state is persisted as resumable."""
        job_ids = self.active_job_ids()
        for job_id in job_ids:
            await self.pause(job_id)
        for job_id in job_ids:
            await self.wait_for(job_id)

    def _task_done_callback(self, job_id: str, run: JobRun) -> Callable:
        """
        Creates a callback that retires a finished run and logs exceptions escaping it.

        The run and the cached job are dropped unless a newer run already took
        over; the store holds the final state.
        """
        def callback(task: asyncio.Task):
            if self._runs.get(job_id) is run:
                del self._runs[job_id]
                self.registry.discard(job_id)
            try:
                task.result()
            except asyncio.CancelledError:
                self.logger.info(f"Run for job {job_id} was cancelled.")
            except Exception:
                self.logger.exception(f"Exception in run for job {job_id}:")
        return callback

    # --- The job loop ---

    async def _run_job(self, job: Job, run: JobRun, engine: Path, previous_task: Optional[asyncio.Task]):
        if previous_task is not None:
            await asyncio.gather(previous_task, return_exceptions=True)
        if run.pause_requested:
            return

        await self._save_and_broadcast(job)
        try:
            await self.launcher.wait_until_ready(engine)
        except EnginePreparationError as e:
            self.logger.error(f"Job {job.id} cannot start: {e}")
            if not run.pause_requested:
                job.status = ERROR
                await self._save_and_broadcast(job)
            return

        ffmpeg = self.launcher.resolve_ffmpeg()
        start_index = job.resume_index()
        job.progress.current_file_index = start_index
        job.progress.reset_transient()
        job.recompute_progress()

        try:
            for index in range(start_index, len(job.files)):
                if run.pause_requested:
                    break
                if job.files[index].status == FILE_COMPLETED:
                    continue
                await self._process_file(job, run, index, engine, ffmpeg)
        except (EngineNotFoundError, EngineLaunchError) as e:
            self.logger.error(f"Job {job.id} stopped: the engine could not be started ({e}).")
        except Exception:
            self.logger.exception(f"Unexpected error while processing job {job.id}")
            stranded_status = FILE_PENDING if run.pause_requested else FILE_ERROR
            for job_file in job.files:
                if job_file.status == FILE_DOWNLOADING:
                    job_file.status = stranded_status
            if run.pause_requested:
                await self._save_and_broadcast(job)

        if run.pause_requested:
            return

        job.status = COMPLETED if job.all_completed() else ERROR
        job.progress.reset_transient()
        job.recompute_progress()
        await self._save_and_broadcast(job)
        self.logger.info(f"Job {job.id} finished: {job.status} ({job.progress.completed}/{job.progress.total}).")

    def build_engine_args(self, job: Job, job_file: JobFile, output_template: Path,
                          ffmpeg_path: Optional[Path] = None) -> List[str]:
        """Builds the engine arguments for one item."""
        audio = is_audio_format(job.format)
        container = output_extension(job.format, job.target_container)
        args = [
            job_file.url,
            '-o', str(output_template),
            '--format', 'bestaudio/best' if audio else job.format,
            '--no-playlist', '--newline', '--no-warnings', '--no-mtime',
            '--concurrent-fragments', str(job.parallelism),
        ]
        args.extend(self.launcher.network_args())
        if ffmpeg_path is not None:
            args.extend(['--ffmpeg-location', str(ffmpeg_path.parent)])

        if audio:
            args.extend(['--extract-audio', '--audio-format', container])
            if container == 'mp3':
                args.extend(['--audio-quality', '192K'])
        elif job.target_container:
            args.extend(['--recode-video', container])

        if self.settings.embed_metadata:
            args.append('--embed-metadata')
        if self.settings.embed_thumbnail:
            if container in THUMBNAIL_CONTAINERS:
                args.append('--embed-thumbnail')
            else:
                self.logger.warning(f"[{job.id}] '{container}' cannot hold a thumbnail; skipping thumbnail embedding.")
        return args

    async def _process_file(self, job: Job, run: JobRun, index: int, engine: Path, ffmpeg: Optional[Path]):
        """Downloads one item and records its terminal status."""
        job_file = job.files[index]
        job_file.status = FILE_DOWNLOADING
        job.progress.current_file_index = index
        job.progress.reset_transient()
        await self._save_and_broadcast(job)

        destination = Path(job.destination_dir)
        staging = destination / STAGING_DIR_NAME
        await aiofiles.os.makedirs(staging, exist_ok=True)
        expected = staging / job_file.filename
        args = self.build_engine_args(job, job_file, staging / f"{expected.stem}.%(ext)s", ffmpeg)
        self.logger.info(f"[{job.id}] Item {index + 1}/{len(job.files)}: {job_file.url}")
        self.logger.debug(f"[{job.id}] Spawning: {engine.name} {' '.join(args)}")

        try:
            process = await self.launcher.spawn_with_retry(engine, args)
        except (EngineNotFoundError, EngineLaunchError):
            job_file.status = FILE_ERROR
            await self._save_and_broadcast(job)
            raise

        self.registry.set_process(job.id, process)
        if run.pause_requested:
            self.launcher.kill_process(process)
        stderr_task = asyncio.create_task(self._collect_stream(process.stderr))
        try:
            await self._follow_progress(job, process)
            return_code = await process.wait()
            stderr_text = await stderr_task
        finally:
            self.registry.clear_process(job.id, process)
            if process.returncode is None:
                self.launcher.kill_process(process)
            if not stderr_task.done():
                stderr_task.cancel()

        if run.pause_requested:
            job_file.status = FILE_PENDING
            job.progress.reset_transient()
            await self._save_and_broadcast(job)
            self.logger.info(f"[{job.id}] Paused during '{job_file.filename}'; partial output stays in staging.")
            return

        found = await asyncio.to_thread(find_output_file, staging, expected)
        if return_code == 0 or found is not None:
            if return_code != 0:
                self.logger.warning(f"[{job.id}] Engine exited with code {return_code} but produced '{found.name}'. Treating as success.")
            job_file.status = FILE_COMPLETED
            if found is not None:
                try:
                    final_path = await self._move_to_destination(job, found, destination)
                    job_file.filename = final_path.name
                except FileMoveError as e:
                    self.logger.error(f"[{job.id}] {e} The file stays in {staging}.")
                    job_file.status = FILE_ERROR
        else:
            self.logger.error(f"[{job.id}] '{job_file.url}' failed (exit code {return_code}): {summarize_engine_error(stderr_text)}")
            job_file.status = FILE_ERROR

        job.recompute_progress()
        await self._save_and_broadcast(job)

    async def _collect_stream(self, stream: Optional[asyncio.StreamReader]) -> str:
        if stream is None:
            return ''
        data = await stream.read()
        return data.decode('utf-8', 'replace')

    async def _follow_progress(self, job: Job, process: asyncio.subprocess.Process):
        """Reads engine stdout line by line, broadcasting each parsed percentage."""
        assert process.stdout is not None
        while True:
            line_bytes = await process.stdout.readline()
            if not line_bytes:
                break
            clean_line = line_bytes.decode('utf-8', 'replace').strip()
            self.logger.debug(f"[{job.id}] {clean_line}")

            update = parse_progress_line(clean_line)
            if update is None:
                continue
            job.progress.current_file_percent = update.percent
            if update.total_size:
                job.progress.current_file_size = update.total_size
            if update.speed:
                job.progress.current_speed = update.speed
            await self._broadcast(job)

    async def _move_to_destination(self, job: Job, staged_file: Path, destination: Path) -> Path:
        """
        Moves a finished file out of staging, retrying while it is locked.

        Raises:
            FileMoveError: Every attempt failed.
        """
        target = destination / staged_file.name

        async def move():
            await aiofiles.os.replace(staged_file, target)

        def on_retry(attempt: int, error: BaseException):
            self.logger.warning(f"[{job.id}] Moving '{staged_file.name}' failed (attempt {attempt}): {error}")

        try:
            await retry_async(move, self.move_policy, retry_on=(OSError,), on_retry=on_retry)
        except OSError as e:
            raise FileMoveError(f"Could not move '{staged_file.name}' to {destination}: {e}.") from e

        staging = staged_file.parent
        try:
            if not await aiofiles.os.listdir(staging):
                await aiofiles.os.rmdir(staging)
        except OSError as e:
            self.logger.debug(f"[{job.id}] Staging directory left in place: {e}")
        return target
