"""
Defines the main AppController class, which exposes the batch operations to a
presentation layer or any other driver.
"""
import asyncio
import logging
import os
import sys
import subprocess
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import aiofiles
import aiofiles.os
from pydantic import ValidationError

from .config import ConfigManager, Settings
from .constants import DB_FILE, LEGACY_JOBS_FILE, SIBLING_EXTENSIONS, STAGING_DIR_NAME
from .downloads import JobSupervisor
from .engine import EngineLauncher
from .events import ProgressChannel
from .exceptions import EngineNotFoundError, InvalidJobError, JobNotFoundError
from .jobs import Job, JobFile, DOWNLOADING, IDLE, FILE_COMPLETED, new_job_id
from .naming import allocate_filenames, destination_for, output_extension
from .registry import JobRegistry
from .store import JobStore


class AppController:
    """The central controller for the application's batch operations."""

    def __init__(self, config_manager: ConfigManager, config: Settings,
                 store: Optional[JobStore] = None, legacy_jobs_file: Path = LEGACY_JOBS_FILE):
        """
        Initializes the AppController.

        Args:
            config_manager: The manager for handling configuration persistence.
            config: The loaded application settings.
            store: Job storage; defaults to the database in the user data dir.
            legacy_jobs_file: Old flat-file job list imported at startup.
        """
        self.config_manager = config_manager
        self.config = config
        self.logger = logging.getLogger(__name__)
        self.legacy_jobs_file = legacy_jobs_file

        self.channel = ProgressChannel()
        self.store = store if store is not None else JobStore(DB_FILE)
        self.registry = JobRegistry(self.store)
        self.launcher = EngineLauncher(self.channel.publish, self.config)
        self.supervisor = JobSupervisor(self.channel.publish, self.store, self.registry, self.launcher, self.config)
        # Serialises filename and id allocation with the insert that reserves them.
        self._create_lock = asyncio.Lock()

    @property
    def downloads_root(self) -> Path:
        return Path(self.config.downloads_root)

    async def run_startup_checks(self):
        """
        Reconciles persisted state before anything else touches the store:
        imports the legacy job list and repairs jobs a crash left 'downloading'.
        """
        try:
            await asyncio.to_thread(self.store.migrate_legacy, self.legacy_jobs_file)
        except (OSError, ValueError) as e:
            self.logger.error(f"Legacy job migration failed: {e}")
        await asyncio.to_thread(self.store.reconcile_interrupted)

        if self.config.check_for_engine_updates:
            task = asyncio.create_task(self.launcher.check_for_engine_update())
            task.add_done_callback(self._handle_task_exception)

    def _handle_task_exception(self, task: asyncio.Task) -> None:
        """Callback to log exceptions from fire-and-forget tasks."""
        try:
            task.result()
        except asyncio.CancelledError:
            pass  # Expected
        except Exception:
            self.logger.exception(f"Exception in background task {task.get_name()}:")

    def subscribe(self, callback):
        """Registers a callback for `(event_type, payload)` events. Returns an unsubscribe function."""
        return self.channel.subscribe(callback)

    # --- Batch operations ---

    async def create_job(self, urls: List[str], titles: Optional[List[str]] = None, format: str = 'best',
                         target_container: Optional[str] = None, destination_hint: Optional[str] = None,
                         number_items: bool = False, parallelism: Optional[int] = None,
                         playlist_name: Optional[str] = None) -> str:
        """
        Creates an idle job for a list of URLs.

        Args:
            urls: Media URLs, in processing order.
            titles: Display titles, one per URL; missing ones become 'Video <n>'.
            format: Engine format selector.
            target_container: Desired output container (e.g. 'mkv', 'm4a').
            destination_hint: Sub-folder of the downloads root; blank for the root itself.
            number_items: Prefix filenames with their position.
            parallelism: Engine fragment concurrency; defaults to the configured value.
            playlist_name: Label of the batch; defaults to the hint or 'batch'.

        Returns:
            The new job id.

        Raises:
            InvalidJobError: No URLs were given.
        """
        urls = [url.strip() for url in urls or [] if url and url.strip()]
        if not urls:
            raise InvalidJobError("At least one URL is required.")
        titles = list(titles or [])
        titles = [titles[i] if i < len(titles) and titles[i] else f"Video {i}" for i in range(len(urls))]
        if parallelism is None:
            parallelism = self.config.default_parallelism
        if parallelism < 1:
            raise InvalidJobError("Parallelism must be at least 1.")

        destination = destination_for(self.downloads_root, destination_hint)
        await aiofiles.os.makedirs(destination, exist_ok=True)

        extension = output_extension(format, target_container)
        async with self._create_lock:
            reserved = await asyncio.to_thread(self.store.reserved_filenames, str(destination))
            filenames = await asyncio.to_thread(allocate_filenames, titles, destination, extension, number_items, reserved)
            job_id = new_job_id()
            while job_id in self.registry.jobs or await asyncio.to_thread(self.store.get, job_id) is not None:
                job_id = new_job_id()
            job = Job(
                id=job_id,
                playlist_name=playlist_name or (destination_hint or '').strip() or 'batch',
                format=format or 'best',
                destination_dir=str(destination),
                files=[JobFile(url=url, title=title, filename=name) for url, title, name in zip(urls, titles, filenames)],
                target_container=target_container.lower().lstrip('.') if target_container else None,
                parallelism=parallelism,
                number_items=number_items,
                status=IDLE,
            )
            await asyncio.to_thread(self.store.insert, job)
        self.registry.put(job)
        self.logger.info(f"Created job {job.id} with {len(job.files)} item(s) in {destination}.")
        return job.id

    async def resume_job(self, job_id: str) -> str:
        """Starts or continues a job in the background. Returns its status."""
        return await self.supervisor.resume(job_id)

    async def pause_job(self, job_id: str) -> str:
        return await self.supervisor.pause(job_id)

    async def get_job_status(self, job_id: str) -> Job:
        """
        Returns a snapshot of a job.

        Raises:
            JobNotFoundError: The id is unknown.
        """
        job = self.registry.get(job_id)
        if job is None:
            job = await asyncio.to_thread(self.store.get, job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job.snapshot()

    async def list_jobs(self, limit: Optional[int] = None) -> List[Job]:
        """Lists job snapshots, jobs needing attention first."""
        stored = await asyncio.to_thread(self.store.list, limit)
        return [job.snapshot() for job in self.registry.overlay(stored)]

    async def wait_for_job(self, job_id: str):
        await self.supervisor.wait_for(job_id)

    async def delete_job(self, job_id: str, also_delete_files: bool = False):
        """
        Deletes a job, pausing it first if it is running.

        With `also_delete_files`, each completed file and its known siblings are
        removed from the job's destination, and the destination itself is removed
        if that leaves it empty (never the shared downloads root).

        Raises:
            JobNotFoundError: The id is unknown.
        """
        job = self.registry.get(job_id) or await asyncio.to_thread(self.store.get, job_id)
        if job is None:
            raise JobNotFoundError(job_id)

        if job.status == DOWNLOADING or self.supervisor.is_active(job_id):
            await self.supervisor.pause(job_id)
            await self.supervisor.wait_for(job_id)

        if also_delete_files:
            removed = await asyncio.to_thread(self._delete_job_files, job)
            self.logger.info(f"Deleted {removed} file(s) of job {job_id}.")

        self.registry.discard(job_id)
        self.supervisor.forget(job_id)
        await asyncio.to_thread(self.store.delete, job_id)
        self.logger.info(f"Deleted job {job_id}.")

    def _delete_job_files(self, job: Job) -> int:
        destination = Path(job.destination_dir).resolve()
        removed = 0
        for job_file in job.files:
            if job_file.status != FILE_COMPLETED:
                continue
            path = destination / job_file.filename
            base = path.stem
            for candidate in [path] + [destination / f"{base}{ext}" for ext in SIBLING_EXTENSIONS]:
                if candidate.resolve().parent != destination:
                    self.logger.warning(f"Refusing to delete '{candidate}' outside {destination}.")
                    continue
                try:
                    if candidate.is_file():
                        candidate.unlink()
                        removed += 1
                except OSError as e:
                    self.logger.error(f"Error deleting file {candidate}: {e}")

        staging = destination / STAGING_DIR_NAME
        for directory in (staging, destination):
            if directory == self.downloads_root.resolve():
                continue
            try:
                if directory.is_dir() and not any(directory.iterdir()):
                    directory.rmdir()
            except OSError as e:
                self.logger.debug(f"Could not remove directory {directory}: {e}")
        return removed

    async def open_job_folder(self, job_id: str):
        job = await self.get_job_status(job_id)
        await self.open_folder(job.destination_dir)

    async def open_root_downloads_folder(self):
        await aiofiles.os.makedirs(self.downloads_root, exist_ok=True)
        await self.open_folder(str(self.downloads_root))

    async def open_folder(self, path_str: str) -> bool:
        """Opens the specified folder in the system's file explorer."""
        path = Path(path_str)
        if not await asyncio.to_thread(path.is_dir):
            self.logger.error(f"Folder does not exist: {path}")
            return False
        try:
            if sys.platform == 'win32':
                await asyncio.to_thread(os.startfile, str(path))
            elif sys.platform == 'darwin':
                await asyncio.to_thread(subprocess.run, ['open', str(path)], check=True)
            else:
                await asyncio.to_thread(subprocess.run, ['xdg-open', str(path)], check=True)
        except (OSError, subprocess.CalledProcessError) as e:
            self.logger.error(f"Failed to open folder {path}: {e}")
            return False
        return True

    # --- Engine and settings ---

    async def fetch_info(self, url: str) -> Dict[str, Any]:
        return await self.launcher.fetch_info(url)

    async def update_engine(self) -> str:
        return await self.launcher.update_engine()

    async def get_engine_versions(self) -> Dict[str, str]:
        try:
            engine = self.launcher.resolve_engine()
        except EngineNotFoundError as e:
            engine = None
            self.logger.warning(f"Engine not available: {e}")
        engine_version, ffmpeg_version = await asyncio.gather(
            self.launcher.get_version(engine),
            self.launcher.get_version(self.launcher.resolve_ffmpeg())
        )
        return {'yt-dlp': engine_version, 'ffmpeg': ffmpeg_version}

    async def save_cookies(self, content: str):
        """Stores the cookie file passed to the engine, or removes it when `content` is blank."""
        cookie_path = Path(self.config.cookie_file)
        if content.strip():
            await aiofiles.os.makedirs(cookie_path.parent, exist_ok=True)
            async with aiofiles.open(cookie_path, 'w', encoding='utf-8') as f:
                await f.write(content)
        elif await aiofiles.os.path.exists(cookie_path):
            await aiofiles.os.remove(cookie_path)

    def save_settings(self, new_settings_data: Dict[str, Any]) -> Tuple[bool, str]:
        """Validates and saves new settings."""
        try:
            new_settings = Settings.model_validate({**self.config.model_dump(), **new_settings_data})
            self.config_manager.save(new_settings)
            self.config.__dict__.update(new_settings.model_dump())
            return True, "Settings have been saved."
        except ValidationError as e:
            error_details = e.errors()[0]
            field, msg = error_details['loc'][0], error_details['msg']
            return False, f"Error in field '{field}': {msg}"

    async def shutdown(self):
        """Pauses running jobs so they can be resumed on the next start."""
        self.logger.info("Application closing.")
        await self.supervisor.shutdown()
        self.config_manager.save(self.config)
        await asyncio.to_thread(self.store.close)
