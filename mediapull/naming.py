"""Filename rules for batch output: sanitizing, numbering and collision avoidance."""
import re
from pathlib import Path
from typing import Iterable, List, Optional, Set

from .constants import COLLISION_EXTENSIONS

INVALID_FILENAME_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1F]')
MAX_TITLE_LENGTH = 180


def sanitize_title(title: str, index: int) -> str:
    """
    Makes a title safe to use as a filename stem on every supported OS.

    Args:
        title: The raw title.
        index: Position of the item, used for the fallback name.

    Returns:
        The cleaned stem, or `video_<index>` if nothing usable remains.
    """
    cleaned = INVALID_FILENAME_CHARS.sub('_', title or '').strip(' .')
    cleaned = cleaned[:MAX_TITLE_LENGTH].rstrip(' .')
    return cleaned or f"video_{index}"


def is_audio_format(format_selector: str) -> bool:
    return 'audio' in (format_selector or '').lower()


def output_extension(format_selector: str, target_container: Optional[str] = None) -> str:
    """Predicts the extension of the finished file."""
    if target_container:
        return target_container.lower().lstrip('.')
    return 'mp3' if is_audio_format(format_selector) else 'mp4'


def number_prefix(index: int, total: int) -> str:
    width = max(2, len(str(total)))
    return f"{index + 1:0{width}d} - "


def _stem_taken(directory: Path, stem: str, extension: str, reserved: Set[str]) -> bool:
    if stem.lower() in reserved:
        return True
    extensions = set(COLLISION_EXTENSIONS) | {f".{extension}"}
    return any((directory / f"{stem}{ext}").exists() for ext in extensions)


def allocate_filenames(titles: List[str], directory: Path, extension: str,
                       number_items: bool = False, reserved: Iterable[str] = ()) -> List[str]:
    """
    Builds one unique filename per title.

    A name is taken if a file with that stem (and any known media or partial
    extension) exists in `directory`, if another stored job already reserved
    it, or if an earlier title in the same batch got it. Taken names get a
    ` (n)` suffix with the smallest free n.

    Args:
        titles: Raw titles, one per item.
        directory: The destination directory.
        extension: Extension of the finished files, without the dot.
        number_items: Whether to prefix names with a zero-padded index.
        reserved: Filenames already claimed by other jobs in `directory`.

    Returns:
        Filenames in the same order as `titles`.
    """
    taken = {Path(name).stem.lower() for name in reserved}
    filenames = []
    for index, title in enumerate(titles):
        base = sanitize_title(title, index)
        if number_items:
            base = number_prefix(index, len(titles)) + base

        candidate, counter = base, 1
        while _stem_taken(directory, candidate, extension, taken):
            candidate = f"{base} ({counter})"
            counter += 1

        taken.add(candidate.lower())
        filenames.append(f"{candidate}.{extension}")
    return filenames


def destination_for(root: Path, destination_hint: Optional[str]) -> Path:
    """Resolves the destination directory; a blank hint means the shared root."""
    if not destination_hint or not destination_hint.strip():
        return root
    return root / sanitize_title(destination_hint, 0)
