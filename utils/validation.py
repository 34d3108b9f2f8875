"""Validation utilities for input files and external tools."""

import os
import shutil
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

VIDEO_EXTENSIONS = {".mp4", ".mov", ".m4v", ".mkv", ".avi", ".webm"}


def validate_video_file(video_path: Path) -> Tuple[bool, Dict, List[str]]:
    """
    Check that the input video exists and looks like a video.

    Only a missing path (or a directory) makes the video invalid; an odd
    extension or an empty file is reported as an issue but still accepted,
    since ffmpeg is the final judge of what it can decode.

    Returns:
        Tuple of (is_valid, video_info, list_of_issues)
    """
    info: Dict = {}

    if not video_path.exists():
        return False, info, [f"Video file does not exist: {video_path}"]
    if not video_path.is_file():
        return False, info, [f"Video path is not a file: {video_path}"]

    issues = []
    info["file_size"] = video_path.stat().st_size
    if info["file_size"] == 0:
        issues.append("Video file is empty")

    if video_path.suffix.lower() not in VIDEO_EXTENSIONS:
        issues.append(f"Unexpected video format: {video_path.suffix or '(none)'}")

    return True, info, issues


def resolve_executable(
    name: str,
    env: Optional[Mapping[str, str]] = None,
) -> Optional[str]:
    """
    Resolve an executable name or path to an absolute path.

    Names without a directory component are looked up on the PATH of
    ``env`` (falling back to the current process environment). Explicit
    paths must point at an existing, executable file.

    Returns:
        Absolute path to the executable, or None if it cannot be found
    """
    if not name:
        return None

    search_path = (env or os.environ).get("PATH", os.defpath)
    found = shutil.which(name, path=search_path)
    if found is None:
        return None
    # Symlinks are not followed; the tool may dispatch on argv[0]
    return os.path.abspath(found)


def find_missing_tools(
    tools: Mapping[str, Optional[str]],
    env: Optional[Mapping[str, str]] = None,
) -> List[str]:
    """Return the labels of tools that cannot be resolved to an executable."""
    return [
        label for label, name in tools.items()
        if name is None or resolve_executable(name, env) is None
    ]
