"""MediaPull: durable, resumable batch downloads supervised over yt-dlp."""

from ._version import __version__
