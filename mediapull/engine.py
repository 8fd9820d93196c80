"""Locates the yt-dlp and FFmpeg binaries and launches them defensively."""
import os
import sys
import json
import errno
import signal
import subprocess
import shutil
import asyncio
import logging
from pathlib import Path
from typing import Any, Callable, Coroutine, Dict, List, Optional, Tuple

import requests
from packaging.version import parse, InvalidVersion

from .config import Settings
from .constants import (
    ENGINE_BINARY_NAMES, FFMPEG_BINARY_NAMES, ENGINE_RELEASES_API_URL, REQUEST_HEADERS,
    REQUEST_TIMEOUTS, SUBPROCESS_CREATION_FLAGS, bin_dir
)
from .events import ENGINE_STATUS, ENGINE_UPDATE_AVAILABLE
from .exceptions import (
    EngineNotFoundError, EnginePreparationError, EngineLaunchError, EngineCommandError
)
from .progress import summarize_engine_error
from .retry import RetryPolicy, retry_async

# errno values that mean "busy right now", typically an installer or virus scanner.
TRANSIENT_ERRNOS = {errno.EBUSY, errno.EACCES, errno.EAGAIN, getattr(errno, 'ETXTBSY', errno.EBUSY)}
# ERROR_ACCESS_DENIED, ERROR_SHARING_VIOLATION, ERROR_LOCK_VIOLATION
TRANSIENT_WINERRORS = {5, 32, 33}


def is_transient_launch_error(error: BaseException) -> bool:
    """Whether a spawn failure is worth retrying (locked or busy binary)."""
    if isinstance(error, FileNotFoundError):
        return False
    if isinstance(error, PermissionError):
        return True
    if getattr(error, 'winerror', None) in TRANSIENT_WINERRORS:
        return True
    return isinstance(error, OSError) and error.errno in TRANSIENT_ERRNOS


class EngineLauncher:
    """
    Resolves engine binaries and spawns them, retrying past transient locks.

    Launch-health notices are pushed through `event_callback` as
    `('engine_status', {...})`. They are advisory only.
    """
    READY_POLL_INTERVAL = 1.0

    def __init__(self, event_callback: Callable[[Tuple[str, Any]], Coroutine[Any, Any, None]], settings: Settings):
        """
        Initializes the EngineLauncher.

        Args:
            event_callback: The async function to call with launcher events.
            settings: The application settings (binary overrides, proxy, cookies, retry tuning).
        """
        self.event_callback = event_callback
        self.settings = settings
        self.logger = logging.getLogger(__name__)

    @property
    def spawn_policy(self) -> RetryPolicy:
        return RetryPolicy(max_attempts=self.settings.spawn_attempts, backoff=self.settings.spawn_backoff, linear=True)

    # --- Path resolution ---

    def _find_executable(self, names: Dict[str, str], override: Optional[Path], label: str) -> Optional[Path]:
        """Finds an executable: explicit override, then the bundled bin dir, then PATH."""
        if override is not None:
            return Path(override)
        name = names.get(sys.platform)
        if name is None:
            return None
        local_path = bin_dir() / name
        if local_path.exists():
            return local_path
        path_in_system = shutil.which(name) or shutil.which(label)
        return Path(path_in_system) if path_in_system else None

    def resolve_engine(self) -> Path:
        """
        Returns the extraction engine's path.

        Raises:
            EngineNotFoundError: The platform is unsupported or no binary exists.
        """
        if sys.platform not in ENGINE_BINARY_NAMES and self.settings.engine_path is None:
            raise EngineNotFoundError(f"No engine binary is known for platform '{sys.platform}'.")
        path = self._find_executable(ENGINE_BINARY_NAMES, self.settings.engine_path, 'yt-dlp')
        if path is None or not path.exists():
            raise EngineNotFoundError(f"yt-dlp executable not found (looked for {path or bin_dir()}).")
        return path

    def resolve_ffmpeg(self) -> Optional[Path]:
        """Returns the transcoding engine's path, or None if it is not installed."""
        path = self._find_executable(FFMPEG_BINARY_NAMES, self.settings.ffmpeg_path, 'ffmpeg')
        if path is None or not path.exists():
            return None
        return path

    def network_args(self) -> List[str]:
        """Proxy and cookie arguments, passed through verbatim when configured."""
        args: List[str] = []
        if self.settings.proxy:
            args.extend(['--proxy', self.settings.proxy])
        cookie_file = self.settings.cookie_file
        if cookie_file and Path(cookie_file).is_file():
            args.extend(['--cookies', str(cookie_file)])
        return args

    # --- Launch health ---

    async def _emit_status(self, status: str, binary: Path, message: str,
                           attempt: Optional[int] = None, max_attempts: Optional[int] = None):
        payload: Dict[str, Any] = {'status': status, 'binary': Path(binary).name, 'message': message}
        if attempt is not None:
            payload['attempt'] = attempt
            payload['max'] = max_attempts
        await self.event_callback((ENGINE_STATUS, payload))

    @staticmethod
    def is_ready(binary: Path) -> bool:
        """
        True if the binary exists and can be opened exclusively.

        On Windows a file held by an installer or scanner cannot be opened for
        writing; elsewhere it only has to be executable.
        """
        if not binary.is_file():
            return False
        if sys.platform == 'win32':
            try:
                with open(binary, 'r+b'):
                    return True
            except OSError:
                return False
        return os.access(binary, os.X_OK)

    async def wait_until_ready(self, binary: Path, timeout: Optional[float] = None):
        """
        Polls until `binary` is usable, announcing 'retrying' about once a second.

        Raises:
            EnginePreparationError: The binary was not ready within `timeout` seconds.
        """
        if timeout is None:
            timeout = self.settings.engine_ready_timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        waited = False

        while True:
            if await asyncio.to_thread(self.is_ready, binary):
                if waited:
                    await self._emit_status('ready', binary, "Engine is ready.")
                return
            remaining = deadline - loop.time()
            if remaining <= 0:
                message = f"{binary.name} did not become ready within {timeout:.0f}s."
                self.logger.error(message)
                await self._emit_status('error', binary, message)
                raise EnginePreparationError(message)
            if not waited:
                self.logger.info(f"Waiting for {binary.name} to become available...")
            waited = True
            await self._emit_status('retrying', binary, "Preparing engine...")
            await asyncio.sleep(min(self.READY_POLL_INTERVAL, remaining))

    # --- Spawning ---

    @staticmethod
    def _process_kwargs() -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {}
        if sys.platform == 'win32':
            kwargs['creationflags'] = SUBPROCESS_CREATION_FLAGS | subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            # Own process group so a kill also reaches FFmpeg children.
            kwargs['preexec_fn'] = os.setsid
        return kwargs

    @staticmethod
    def _check_not_locked(binary: Path):
        """Raises PermissionError if another process holds the binary (Windows only)."""
        if sys.platform != 'win32':
            return
        with open(binary, 'r+b'):
            pass

    async def spawn_with_retry(self, binary: Path, args: List[str],
                               policy: Optional[RetryPolicy] = None) -> asyncio.subprocess.Process:
        """
        Spawns `binary args...` with piped stdout/stderr, retrying busy binaries.

        Raises:
            EngineNotFoundError: The binary does not exist.
            EngineLaunchError: Every attempt failed, or the failure was not transient.
        """
        policy = policy or self.spawn_policy

        async def attempt() -> asyncio.subprocess.Process:
            await asyncio.to_thread(self._check_not_locked, binary)
            return await asyncio.create_subprocess_exec(
                str(binary), *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                **self._process_kwargs()
            )

        async def on_retry(attempt_number: int, error: BaseException):
            self.logger.warning(f"{binary.name} is busy (attempt {attempt_number}/{policy.max_attempts}): {error}")
            await self._emit_status('retrying', binary, f"Engine is busy, retrying... ({error})",
                                    attempt_number, policy.max_attempts)

        try:
            process = await retry_async(attempt, policy, retry_on=(OSError,),
                                        should_retry=is_transient_launch_error, on_retry=on_retry)
        except FileNotFoundError as e:
            self.logger.error(f"Engine executable not found at: {binary}")
            await self._emit_status('error', binary, f"{binary.name} not found.")
            raise EngineNotFoundError(f"{binary} not found.") from e
        except OSError as e:
            message = f"Could not start {binary.name}: {e}"
            self.logger.error(message)
            await self._emit_status('error', binary, message)
            raise EngineLaunchError(message) from e

        await self._emit_status('ready', binary, "Engine started.")
        return process

    @staticmethod
    def kill_process(process: asyncio.subprocess.Process):
        """Forcibly terminates a spawned engine and its process group."""
        if process.returncode is not None:
            return
        try:
            if sys.platform == 'win32':
                process.kill()
            else:
                os.killpg(os.getpgid(process.pid), signal.SIGKILL)
        except (ProcessLookupError, OSError):
            try:
                process.kill()
            except (ProcessLookupError, OSError):
                pass  # Already gone

    # --- One-shot engine commands ---

    async def _run_command(self, command: List[str], timeout: float) -> Tuple[str, str]:
        """
        Runs an engine command to completion and returns (stdout, stderr).

        Raises:
            EngineCommandError: On timeout, OS error, or non-zero exit.
        """
        process = None
        try:
            process = await self.spawn_with_retry(Path(command[0]), command[1:])
            stdout_bytes, stderr_bytes = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            if process:
                self.kill_process(process)
            self.logger.error(f"Engine command timed out: {' '.join(command)}")
            raise EngineCommandError("Engine command timed out.")
        except (EngineNotFoundError, EngineLaunchError) as e:
            raise EngineCommandError(str(e)) from e

        stdout = stdout_bytes.decode('utf-8', 'replace')
        stderr = stderr_bytes.decode('utf-8', 'replace')
        if process.returncode != 0:
            self.logger.error(f"Engine command failed for '{command[-1]}'. Stderr: {stderr.strip()}")
            raise EngineCommandError(summarize_engine_error(stderr))
        return stdout, stderr

    async def fetch_info(self, url: str, timeout: float = 60) -> Dict[str, Any]:
        """Returns the engine's JSON description of a URL (flat for playlists)."""
        engine = self.resolve_engine()
        command = [str(engine), url, '--dump-single-json', '--no-warnings', '--flat-playlist',
                   '--extractor-args', 'youtubetab:skip=authcheck', *self.network_args()]
        stdout, _ = await self._run_command(command, timeout)
        try:
            return json.loads(stdout)
        except json.JSONDecodeError as e:
            raise EngineCommandError("Failed to parse JSON output from the engine.") from e

    async def update_engine(self, timeout: float = 300) -> str:
        """Runs the engine's self-update and returns its output."""
        engine = self.resolve_engine()
        stdout, stderr = await self._run_command([str(engine), '-U'], timeout)
        return (stdout + stderr).strip()

    async def get_version(self, executable_path: Optional[Path]) -> str:
        """Returns the first line of `--version` output, or a short reason it failed."""
        if not executable_path or not executable_path.exists():
            return "Not found"
        flag = '-version' if 'ffmpeg' in executable_path.name.lower() else '--version'
        try:
            stdout, _ = await self._run_command([str(executable_path), flag], timeout=15)
        except EngineCommandError as e:
            return f"Cannot execute ({e})"
        lines = stdout.strip().splitlines()
        return lines[0] if lines else "Unknown"

    async def check_for_engine_update(self) -> Optional[str]:
        """
        Compares the local engine version with the latest published release.

        Publishes `engine_update_available` and returns the newer version, or
        returns None when up to date or when the check fails.
        """
        try:
            current = await self.get_version(self.resolve_engine())
        except EngineNotFoundError:
            return None
        self.logger.info("Checking for engine updates...")
        latest_version_str = ""
        try:
            response = await asyncio.to_thread(
                requests.get, ENGINE_RELEASES_API_URL, headers=REQUEST_HEADERS, timeout=REQUEST_TIMEOUTS
            )
            response.raise_for_status()
            data = response.json()
            latest_version_str = (data.get('tag_name') or '') if isinstance(data, dict) else ''
            if not latest_version_str:
                self.logger.warning("Could not find a version tag in the release API response.")
                return None

            if parse(latest_version_str) > parse(current):
                self.logger.info(f"Engine update available: {current} -> {latest_version_str}")
                await self.event_callback((ENGINE_UPDATE_AVAILABLE, {'current': current, 'latest': latest_version_str}))
                return latest_version_str
            self.logger.info(f"Engine is up to date ({current}).")
            return None
        except requests.exceptions.RequestException as e:
            self.logger.warning(f"Failed to check for engine updates (network error): {e}")
        except (InvalidVersion, ValueError) as e:
            self.logger.warning(f"Could not compare engine versions '{current}' and '{latest_version_str}': {e}")
        return None
