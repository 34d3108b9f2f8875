"""
Command Templates

Expands ``{placeholder}`` command templates against an execution context
and flattens structured argument maps into CLI flags.

Templates are tokenised with POSIX shell rules *before* substitution, so a
substituted path containing spaces always stays a single argv element and
no shell ever sees the result.
"""

import json
import re
import shlex
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

from pydantic import TypeAdapter, ValidationError

from utils.jsonc import load as load_jsonc

from .config import ArgValue, ConfigRef, PipelineConfig, StageSpec, ToolLocations
from .errors import ArgumentFileError, ConfigError
from .workspace import WorkspaceLayout

# Placeholder name -> resolved string value
ExecutionContext = Dict[str, str]

PLACEHOLDER_RE = re.compile(r"\{([A-Za-z_][A-Za-z0-9_]*)\}")

_NEEDS_QUOTING_RE = re.compile(r'[\s"\'\\]')

_ARGS_ADAPTER = TypeAdapter(Dict[str, ArgValue])


def substitute(template: str, context: Mapping[str, str]) -> str:
    """
    Replace ``{name}`` tokens with context values.

    Single pass: substituted values are never rescanned. Unknown
    placeholders are left verbatim.
    """
    def _replace(match: re.Match) -> str:
        name = match.group(1)
        if name in context:
            return str(context[name])
        return match.group(0)

    return PLACEHOLDER_RE.sub(_replace, template)


def unresolved_placeholders(text: str) -> List[str]:
    """Names of placeholders still present in ``text``."""
    return PLACEHOLDER_RE.findall(text)


def expand_command(template: str, context: Mapping[str, str]) -> List[str]:
    """Tokenise a command template and substitute each token."""
    try:
        tokens = shlex.split(template)
    except ValueError as e:
        raise ConfigError(f"Malformed command template {template!r}: {e}") from e
    return [substitute(token, context) for token in tokens]


def format_value(value: Any) -> str:
    """Render a scalar argument value as CLI text."""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def quote_token(token: str) -> str:
    """Double-quote a token that contains whitespace, quotes or backslashes."""
    if token and not _NEEDS_QUOTING_RE.search(token):
        return token
    escaped = token.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def format_command(argv: List[str]) -> str:
    """Printable rendering of an argument vector; shlex.split recovers the argv."""
    return " ".join(quote_token(token) for token in argv)


def iter_flags(args: Mapping[str, Any]) -> Iterator[Tuple[str, Optional[str]]]:
    """
    Yield ``(flag, value)`` pairs in insertion order.

    ``True`` yields a bare flag (value None); ``False``, None and empty
    strings yield nothing.
    """
    for name, value in args.items():
        if value is True:
            yield f"--{name}", None
        elif value is False or value is None or value == "":
            continue
        else:
            yield f"--{name}", format_value(value)


def args_to_argv(args: Mapping[str, Any]) -> List[str]:
    """Flatten an argument map into argv tokens."""
    argv: List[str] = []
    for flag, value in iter_flags(args):
        argv.append(flag)
        if value is not None:
            argv.append(value)
    return argv


def flatten_args(args: Mapping[str, Any]) -> str:
    """
    Flatten an argument map into a CLI flag string.

    Example:
        >>> flatten_args({"fp16": True, "iters": 100, "skip": False, "name": "a b"})
        '--fp16 --iters 100 --name "a b"'
    """
    return format_command(args_to_argv(args))


def load_args_file(args_file: Path) -> Dict[str, ArgValue]:
    """
    Load an external argument file (JSON with comments).

    Raises:
        ArgumentFileError: If the file is missing, unreadable or not an argument map
    """
    args_file = Path(args_file)
    if not args_file.is_file():
        raise ArgumentFileError(f"Argument file not found: {args_file}")

    try:
        data = load_jsonc(args_file)
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ArgumentFileError(f"Could not read argument file {args_file}: {e}") from e

    try:
        return _ARGS_ADAPTER.validate_python(data)
    except ValidationError as e:
        raise ArgumentFileError(
            f"Argument file {args_file} must be an object of flag values: {e.errors()[0]['msg']}"
        ) from e


def merge_args(
    inline: Mapping[str, ArgValue],
    args_file: Optional[Path] = None,
) -> Dict[str, ArgValue]:
    """
    Merge inline args with an optional argument file.

    Returns a new dict; file values override inline values on key collision
    while inline keys keep their position.
    """
    merged = dict(inline)
    if args_file is not None:
        merged.update(load_args_file(args_file))
    return merged


def resolve_args(
    args: Mapping[str, ArgValue],
    context: Mapping[str, str],
    config: PipelineConfig,
) -> Dict[str, Any]:
    """Resolve config references and substitute placeholders in string values."""
    resolved: Dict[str, Any] = {}
    for name, value in args.items():
        if isinstance(value, ConfigRef):
            value = config.lookup(value.source)
        if isinstance(value, str):
            value = substitute(value, context)
        resolved[name] = value
    return resolved


def build_stage_command(
    spec: StageSpec,
    context: Mapping[str, str],
    config: PipelineConfig,
) -> List[str]:
    """
    Build the full argv for a backend stage.

    The command template is expanded, then the (file-merged, resolved)
    argument map is appended as flags.
    """
    argv = expand_command(spec.command, context)

    args_file = Path(substitute(spec.args_file, context)) if spec.args_file else None
    args = merge_args(spec.args, args_file)
    argv.extend(args_to_argv(resolve_args(args, context, config)))
    return argv


def tool_context(tools: ToolLocations) -> ExecutionContext:
    """Tool placeholders; only configured tools get one."""
    context: ExecutionContext = {
        "ffmpeg": tools.ffmpeg,
        "colmap": tools.colmap,
        "ns_process_data": tools.nerfstudio_tool("ns-process-data"),
        "ns_train": tools.nerfstudio_tool("ns-train"),
        "ns_export": tools.nerfstudio_tool("ns-export"),
    }
    if tools.lichtfeld:
        context["lichtfeld"] = tools.lichtfeld
    return context


def build_context(config: PipelineConfig, layout: WorkspaceLayout) -> ExecutionContext:
    """
    Build the execution context shared by every stage of a run.

    All paths are absolute.
    """
    context = tool_context(config.tools)
    context.update({
        "project": config.project.name,
        "seed": str(config.project.seed),
        "video": str(Path(config.project.video).resolve()),
        "image_ext": config.extract.image_ext,
        "fps": format_value(config.extract.fps),
    })

    for name, path in layout.to_dict().items():
        context[name] = str(Path(path).resolve())

    return context


def extend_context(context: Mapping[str, str], **extra: Any) -> ExecutionContext:
    """Return a copy of ``context`` with stage-local placeholders added."""
    extended = dict(context)
    for name, value in extra.items():
        extended[name] = format_value(value)
    return extended
