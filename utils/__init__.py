"""Utility functions for splatpipe."""

from .jsonc import strip_comments, loads as load_jsonc_text, load as load_jsonc
from .validation import (
    validate_video_file,
    resolve_executable,
    find_missing_tools,
)

__all__ = [
    "strip_comments",
    "load_jsonc_text",
    "load_jsonc",
    "validate_video_file",
    "resolve_executable",
    "find_missing_tools",
]
