"""
Video URL parsing.
"""
import re
from typing import Optional

from watchtogether.models import VideoSource

YOUTUBE_URL = re.compile(
    r"(?:youtube\.com/watch\?(?:.*&)?v=|youtu\.be/|youtube\.com/embed/)([A-Za-z0-9_-]+)"
)
FILE_EXTENSIONS = (".mp4", ".webm", ".mkv", ".mov", ".m3u8", ".ogg")


def extract_youtube_id(url: str) -> Optional[str]:
    match = YOUTUBE_URL.search(url or "")
    return match.group(1) if match else None


def parse_video_url(url: Optional[str]) -> VideoSource:
    """Classify a video URL and fill in what metadata can be derived from it."""
    if not url:
        return VideoSource(type="url", url="", title="No video selected")

    video_id = extract_youtube_id(url)
    if video_id:
        return VideoSource(
            type="youtube",
            url=f"https://www.youtube.com/watch?v={video_id}",
            title="YouTube Video",
            thumbnail=f"https://img.youtube.com/vi/{video_id}/maxresdefault.jpg",
        )

    path = url.split("?", 1)[0].lower()
    if path.endswith(FILE_EXTENSIONS):
        return VideoSource(type="file", url=url, title=path.rsplit("/", 1)[-1])

    return VideoSource(type="url", url=url, title="Video")
