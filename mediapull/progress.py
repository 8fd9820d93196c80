"""
Parsers for the engine's unstructured text output.

`parse_progress_line` turns one stdout line into a `ProgressUpdate` (or None),
and `summarize_engine_error` condenses stderr into one readable sentence for logs.
"""
import re
from typing import NamedTuple, Optional

PERCENT_RE = re.compile(r'(\d+(?:\.\d+)?)%')
SIZE_RE = re.compile(r'\bof\s+(~?\s*\d+(?:\.\d+)?\s?(?:KiB|MiB|GiB|TiB|kB|MB|GB|TB|B))\b', re.IGNORECASE)
SPEED_RE = re.compile(r'\bat\s+(\S+)')
PROGRESS_PREFIX = '[download]'

KNOWN_ERRORS = (
    ("Video unavailable", "This video is unavailable (it may have been deleted or terminated)."),
    ("Private video", "This is a private video. Please provide valid cookies for access."),
    ("Join this channel to get access", "This is a members-only video. Please provide cookies with an active membership."),
    ("Incomplete YouTube URL", "The provided URL is incomplete or invalid."),
    ("Sign in to confirm your age", "This content is age-restricted. Please provide cookies to verify your age."),
    ("Sign in to see more", "Authentication required. Please provide cookies to access this content."),
    ("Playlists that require authentication", "This playlist requires authentication/cookies to be extracted."),
)
MAX_ERROR_LENGTH = 200


class ProgressUpdate(NamedTuple):
    """
    Structured progress scraped from one engine line.

    Attributes:
        percent: Percentage of the current file, 0-100.
        total_size: Total size with unit as printed, e.g. '120.50MiB' or '~50.12MiB'.
        speed: Transfer speed token as printed, e.g. '2.31MiB/s'.
    """
    percent: float
    total_size: Optional[str] = None
    speed: Optional[str] = None


def parse_progress_line(line: str) -> Optional[ProgressUpdate]:
    """
    Parses a `[download]` progress line.

    Only lines starting with `[download]` that contain a percentage are
    progress-shaped; everything else (destination notices, extractor chatter,
    post-processor output) returns None.

    Args:
        line: One line of engine stdout.

    Returns:
        A ProgressUpdate, or None for lines that carry no progress.
    """
    stripped = line.strip()
    if not stripped.startswith(PROGRESS_PREFIX):
        return None

    percent_match = PERCENT_RE.search(stripped)
    if not percent_match:
        return None
    try:
        percent = float(percent_match.group(1))
    except ValueError:
        return None

    size_match = SIZE_RE.search(stripped)
    speed_match = SPEED_RE.search(stripped)
    total_size = re.sub(r'\s+', '', size_match.group(1)) if size_match else None
    speed = speed_match.group(1) if speed_match else None
    return ProgressUpdate(min(percent, 100.0), total_size, speed)


def summarize_engine_error(stderr: str) -> str:
    """
    Condenses engine stderr into a concise error message.

    Well-known failures get a friendly sentence; otherwise the first `ERROR:`
    line is used, falling back to the last line of stderr.
    """
    if not stderr or not stderr.strip():
        return "The engine returned an error with no output."

    for needle, message in KNOWN_ERRORS:
        if needle in stderr:
            return message

    for line in stderr.strip().splitlines():
        if line.lower().startswith('error:'):
            error_msg = line[6:].strip()
            return error_msg[:MAX_ERROR_LENGTH] + "..." if len(error_msg) > MAX_ERROR_LENGTH else error_msg

    return stderr.strip().splitlines()[-1]
