"""JSON-with-comments loading for config and argument files."""

import json
import re
from pathlib import Path
from typing import Any, Union

# String literals are matched first so that comment markers inside them
# ("http://host", "a/*b") are left alone.
_TOKEN_RE = re.compile(
    r'"(?:\\.|[^"\\])*"'      # double-quoted string
    r'|/\*.*?\*/'             # block comment
    r'|//[^\n]*',             # line comment
    re.DOTALL,
)


def strip_comments(text: str) -> str:
    """Remove // and /* */ comments from JSON text, keeping string literals intact."""
    def _replace(match: re.Match) -> str:
        token = match.group(0)
        if token.startswith('"'):
            return token
        # Keep line numbers stable for json error messages
        return "\n" * token.count("\n") if token.startswith("/*") else ""

    return _TOKEN_RE.sub(_replace, text)


def loads(text: str) -> Any:
    """Parse JSON text that may contain comments."""
    return json.loads(strip_comments(text))


def load(path: Union[str, Path]) -> Any:
    """
    Load a JSON-with-comments file.

    Raises:
        FileNotFoundError: If the file does not exist
        json.JSONDecodeError: If the file is not valid JSON after stripping comments
    """
    with open(path, "r", encoding="utf-8") as f:
        return loads(f.read())
