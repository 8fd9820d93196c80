"""
Defines application-wide constants, paths, and engine binary names.

This module centralizes configuration for paths, engine binaries, and subprocess
behavior, adapting to whether the application is running from source or as a
frozen executable.
"""

import sys
import subprocess
from pathlib import Path

# --- Application Path and Build Mode ---
IS_FROZEN: bool = bool(getattr(sys, 'frozen', False))

if IS_FROZEN:
    # PyInstaller sets the app path to the executable's directory.
    APP_PATH = Path(sys.executable).parent
else:
    # In development, the app path is the project root (parent of the package).
    APP_PATH = Path(__file__).resolve().parent.parent

# Use a user-specific directory for state to avoid permission issues.
USER_DATA_DIR: Path = Path.home() / '.mediapull'
CONFIG_FILE: Path = USER_DATA_DIR / 'config.json'
DB_FILE: Path = USER_DATA_DIR / 'jobs.db'
LEGACY_JOBS_FILE: Path = USER_DATA_DIR / 'jobs.json'
COOKIE_FILE: Path = USER_DATA_DIR / 'cookies.txt'
LOG_DIR: Path = USER_DATA_DIR / 'logs'
DEFAULT_DOWNLOADS_ROOT: Path = Path.home() / 'Downloads' / 'MediaPull'

# Centralize subprocess creation flags to avoid console windows on Windows.
SUBPROCESS_CREATION_FLAGS = subprocess.CREATE_NO_WINDOW if sys.platform == 'win32' else 0


def bin_dir() -> Path:
    """
    Directory holding the bundled engine binaries.

    Packaged builds unpack resources under PyInstaller's _MEIPASS; source
    checkouts keep them in `bin/` next to the package.
    """
    if IS_FROZEN:
        base_path = Path(getattr(sys, '_MEIPASS', APP_PATH))
    else:
        base_path = APP_PATH
    return base_path / 'bin'


# --- Engine Binaries ---
ENGINE_BINARY_NAMES = {
    'win32': 'yt-dlp.exe',
    'linux': 'yt-dlp',
    'darwin': 'yt-dlp_macos',
}
FFMPEG_BINARY_NAMES = {
    'win32': 'ffmpeg.exe',
    'linux': 'ffmpeg',
    'darwin': 'ffmpeg',
}
ENGINE_RELEASES_API_URL = 'https://api.github.com/repos/yt-dlp/yt-dlp/releases/latest'
REQUEST_HEADERS = {
    'User-Agent': 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/91.0.4472.124 Safari/537.36'
}
REQUEST_TIMEOUTS = (10, 30)  # (connect_timeout, read_timeout)

# --- Output Layout ---
STAGING_DIR_NAME = '.incomplete'
# Containers the engine can embed a cover thumbnail into.
THUMBNAIL_CONTAINERS = frozenset({'mp3', 'mkv', 'mka', 'ogg', 'opus', 'flac', 'm4a', 'mp4', 'm4v', 'mov'})
# Extensions checked when looking for name collisions in a destination.
COLLISION_EXTENSIONS = ('.mp4', '.mp3', '.mkv', '.webm', '.part', '.ytdl')
# Leftovers removed alongside a completed file when a job is deleted.
SIBLING_EXTENSIONS = ('.mkv', '.webm', '.part', '.ytdl')
# Containers a salvaged output may have when it differs from the predicted one.
SALVAGE_EXTENSIONS = frozenset({'.mkv', '.webm', '.mp4', '.mp3', '.m4a', '.mka', '.opus', '.ogg', '.flac', '.wav', '.aac'})
