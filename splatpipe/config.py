"""
Pipeline Configuration

Typed representation of a splatpipe config document (JSON with comments):
project identity, tool locations, backend choice, per-stage settings and
per-backend command templates.
"""

import json
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from rich.console import Console

from utils.jsonc import load as load_jsonc
from utils.validation import validate_video_file

from .errors import ConfigError

console = Console()


class Backend(str, Enum):
    """Training/export tool families."""
    LICHTFELD = "lichtfeld"
    NERFSTUDIO = "nerfstudio"


class ReconstructMode(str, Enum):
    AUTOMATIC = "automatic"
    MANUAL = "manual"


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class ConfigRef(_Frozen):
    """Argument value inherited from another config field, e.g. {"from": "extract.fps"}."""
    source: str = Field(alias="from")

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")


ArgValue = Union[bool, int, float, str, ConfigRef, None]


def _check_command(v: Optional[str]) -> Optional[str]:
    if v is not None and not v.strip():
        raise ValueError("Command template must not be empty")
    return v


class StageSpec(_Frozen):
    """A command template plus its structured arguments."""
    command: str
    args: Dict[str, ArgValue] = Field(default_factory=dict)
    args_file: Optional[str] = None

    @field_validator("command")
    @classmethod
    def validate_command(cls, v):
        return _check_command(v)


class ProjectSettings(_Frozen):
    name: str
    work_dir: Path
    video: Path
    seed: int = 42

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        if not v.strip():
            raise ValueError("Project name must not be empty")
        if "/" in v or "\\" in v:
            raise ValueError(f"Project name must not contain path separators: {v}")
        return v


class ToolLocations(_Frozen):
    ffmpeg: str
    colmap: str
    lichtfeld: Optional[str] = None
    # Directory holding ns-process-data / ns-train / ns-export; None means PATH
    nerfstudio: Optional[str] = None
    cuda_home: Optional[Path] = None

    def nerfstudio_tool(self, name: str) -> str:
        if self.nerfstudio:
            return str(Path(self.nerfstudio) / name)
        return name


class ExtractSettings(_Frozen):
    fps: float = Field(default=2, gt=0)
    long_edge: int = Field(default=1080, ge=0)
    image_ext: str = "png"
    skip_if_exists: bool = True
    transpose: Optional[int] = Field(default=None, ge=0, le=3)
    command: Optional[str] = None

    @field_validator("image_ext")
    @classmethod
    def validate_image_ext(cls, v):
        v = v.lstrip(".")
        if not v:
            raise ValueError("image_ext must not be empty")
        return v

    @field_validator("command")
    @classmethod
    def validate_command(cls, v):
        return _check_command(v)


class ReconstructTemplates(_Frozen):
    automatic_reconstructor: Optional[str] = None
    feature_extractor: Optional[str] = None
    matcher: Optional[str] = None
    mapper: Optional[str] = None
    image_undistorter: Optional[str] = None

    @field_validator(
        "automatic_reconstructor", "feature_extractor", "matcher", "mapper", "image_undistorter"
    )
    @classmethod
    def validate_templates(cls, v):
        return _check_command(v)


class ReconstructSettings(_Frozen):
    mode: ReconstructMode = ReconstructMode.AUTOMATIC
    database: str = "database.db"
    single_camera: bool = True
    sift_threads: int = Field(default=8, ge=1)
    mapper_threads: int = Field(default=8, ge=1)
    dense: bool = False
    matcher: str = "exhaustive"
    templates: ReconstructTemplates = Field(default_factory=ReconstructTemplates)

    @field_validator("matcher")
    @classmethod
    def validate_matcher(cls, v):
        valid = {"exhaustive", "sequential", "vocab_tree", "spatial", "transitive"}
        if v not in valid:
            raise ValueError(f"Invalid matcher: {v}. Must be one of {sorted(valid)}")
        return v


def _lichtfeld_train() -> StageSpec:
    return StageSpec(
        command="{lichtfeld} train --data {undistorted_dir} --output {model_dir}",
        args={"max_iters": 30000, "batch_size": 1, "random_seed": "{seed}"},
    )


def _lichtfeld_export() -> StageSpec:
    return StageSpec(
        command="{lichtfeld} export --model {model_dir} --output {output_path}",
        args={"num_points": 1000000, "format": "ply"},
    )


def _nerfstudio_prepare() -> StageSpec:
    return StageSpec(
        command="{ns_process_data} video --data {video} --output-dir {data_dir}",
        args={
            "fps": ConfigRef(source="extract.fps"),
            "max-frame-processes": 8,
            "keep-extracted-frames": True,
            "auto-orient": True,
        },
    )


def _nerfstudio_train() -> StageSpec:
    return StageSpec(
        command=(
            "{ns_train} splatfacto --data {data_dir} --output-dir {model_dir}"
            " --experiment-name {project} --timestamp latest"
        ),
        args={
            "max-num-iterations": 30000,
            "machine.seed": "{seed}",
            "viewer.quit-on-train-completion": "True",
        },
    )


def _nerfstudio_export() -> StageSpec:
    return StageSpec(
        command=(
            "{ns_export} gaussian-splat"
            " --load-config {model_dir}/{project}/splatfacto/latest/config.yml"
            " --output-dir {output_dir} --output-filename {project}_gaussians.ply"
        ),
    )


class LichtfeldStages(_Frozen):
    work_dirname: str = "lf_train"
    train: StageSpec = Field(default_factory=_lichtfeld_train)
    export: StageSpec = Field(default_factory=_lichtfeld_export)


class NerfstudioStages(_Frozen):
    work_dirname: str = "ns_train"
    prepare: Optional[StageSpec] = Field(default_factory=_nerfstudio_prepare)
    train: StageSpec = Field(default_factory=_nerfstudio_train)
    export: StageSpec = Field(default_factory=_nerfstudio_export)


class BackendStages(_Frozen):
    lichtfeld: LichtfeldStages = Field(default_factory=LichtfeldStages)
    nerfstudio: NerfstudioStages = Field(default_factory=NerfstudioStages)

    def for_backend(self, backend: Backend) -> Union[LichtfeldStages, NerfstudioStages]:
        return getattr(self, backend.value)


class PipelineConfig(_Frozen):
    """Root of a splatpipe configuration document."""
    project: ProjectSettings
    tools: ToolLocations
    backend: Backend
    extract: ExtractSettings
    reconstruct: ReconstructSettings
    backends: BackendStages = Field(default_factory=BackendStages)

    @property
    def stages(self) -> Union[LichtfeldStages, NerfstudioStages]:
        """Stage definitions of the selected backend."""
        return self.backends.for_backend(self.backend)

    def lookup(self, dotted: str) -> Any:
        """
        Resolve a dotted config path such as ``project.seed``.

        Raises:
            ConfigError: If any component of the path does not exist
        """
        node: Any = self.model_dump(mode="json")
        for part in dotted.split("."):
            if not isinstance(node, dict) or part not in node:
                raise ConfigError(f"Config reference not found: {dotted}")
            node = node[part]
        return node


def _format_validation_error(error: ValidationError) -> str:
    """Describe the first validation problem, naming the offending key."""
    first = error.errors()[0]
    loc = ".".join(str(p) for p in first["loc"] if not isinstance(p, int))
    if first["type"] == "missing":
        return f"Missing required config key: {loc}"
    if first["type"] == "enum":
        return f"Invalid value for {loc}: {first.get('input')!r} ({first['msg']})"
    return f"Invalid config value for {loc}: {first['msg']}"


def _resolve_relative(value: Optional[str], base_dir: Path) -> Optional[str]:
    """Anchor explicit relative paths at the config file's directory; bare names stay PATH lookups."""
    if not value:
        return value
    path = Path(value).expanduser()
    if path.is_absolute():
        return str(path)
    if "/" not in value and "\\" not in value:
        return value
    return str((base_dir / path).resolve())


def _resolve_dir(value: Optional[str], base_dir: Path) -> Optional[str]:
    """Anchor any relative directory at the config file's directory."""
    if not value:
        return value
    path = Path(value).expanduser()
    if path.is_absolute():
        return str(path)
    return str((base_dir / path).resolve())


def _anchor_args_files(backends: BackendStages, base_dir: Path) -> BackendStages:
    """Resolve relative args_file paths (without placeholders) against the config directory."""
    updates = {}
    for backend in Backend:
        stages = backends.for_backend(backend)
        stage_updates = {}
        for name in ("prepare", "train", "export"):
            spec = getattr(stages, name, None)
            if spec is None or not spec.args_file or "{" in spec.args_file:
                continue
            path = Path(spec.args_file).expanduser()
            if not path.is_absolute():
                stage_updates[name] = spec.model_copy(update={"args_file": str(base_dir / path)})
        if stage_updates:
            updates[backend.value] = stages.model_copy(update=stage_updates)
    return backends.model_copy(update=updates) if updates else backends


def parse_config(data: Dict, base_dir: Optional[Path] = None, check_paths: bool = True) -> PipelineConfig:
    """
    Validate a raw config mapping into a PipelineConfig.

    Args:
        data: Parsed config document
        base_dir: Directory relative paths are resolved against (default: cwd)
        check_paths: Require the input video to exist

    Returns:
        Validated, frozen PipelineConfig
    """
    if not isinstance(data, dict):
        raise ConfigError("Config document must be a JSON object")

    base_dir = (base_dir or Path.cwd()).resolve()

    try:
        config = PipelineConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(_format_validation_error(e)) from e

    project = config.project
    tools = config.tools
    work_dir = (base_dir / project.work_dir.expanduser()).resolve()
    video = (base_dir / project.video.expanduser()).resolve()

    config = config.model_copy(update={
        "project": project.model_copy(update={"work_dir": work_dir, "video": video}),
        "tools": tools.model_copy(update={
            "ffmpeg": _resolve_relative(tools.ffmpeg, base_dir),
            "colmap": _resolve_relative(tools.colmap, base_dir),
            "lichtfeld": _resolve_relative(tools.lichtfeld, base_dir),
            "nerfstudio": _resolve_dir(tools.nerfstudio, base_dir),
            "cuda_home": (base_dir / tools.cuda_home).resolve() if tools.cuda_home else None,
        }),
        "backends": _anchor_args_files(config.backends, base_dir),
    })

    if check_paths:
        is_valid, _, issues = validate_video_file(video)
        if not is_valid:
            raise ConfigError(issues[0])
        for issue in issues:
            console.print(f"[yellow]Warning: {issue}[/yellow]")

    return config


def load_config(config_path: Path, check_paths: bool = True) -> PipelineConfig:
    """
    Load and validate a config file.

    Args:
        config_path: Path to a JSON (with comments) config document
        check_paths: Require the input video to exist

    Returns:
        Validated PipelineConfig

    Raises:
        ConfigError: Missing file, invalid JSON, missing keys or invalid values
    """
    config_path = Path(config_path)
    if not config_path.is_file():
        raise ConfigError(f"Config not found: {config_path}")

    try:
        data = load_jsonc(config_path)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in {config_path}: {e}") from e
    except UnicodeDecodeError as e:
        raise ConfigError(f"Config is not valid UTF-8: {config_path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"Could not read {config_path}: {e}") from e

    return parse_config(data, base_dir=config_path.parent, check_paths=check_paths)


CONFIG_TEMPLATE = """\
// splatpipe configuration (JSON with // and /* */ comments)
{
  "project": {
    "name": "demo_splat",
    "work_dir": "/data/work/demo_splat",
    "video": "/data/input.mp4",
    "seed": 42
  },

  "tools": {
    "ffmpeg": "ffmpeg",
    "colmap": "colmap",
    "lichtfeld": "/opt/lichtfeld/LichtFeld",   // adjust path
    "nerfstudio": null,                         // dir with ns-* tools; null = PATH
    "cuda_home": null                           // e.g. "/usr/local/cuda-12.8"
  },

  // "lichtfeld" or "nerfstudio"
  "backend": "lichtfeld",

  "extract": {
    "fps": 2,
    "long_edge": 1080,       // 0 disables resizing
    "image_ext": "png",
    "skip_if_exists": true,
    "transpose": null        // 0-3, ffmpeg transpose filter
  },

  "reconstruct": {
    "mode": "automatic",     // "automatic" or "manual"
    "database": "database.db",
    "single_camera": true,
    "sift_threads": 8,
    "mapper_threads": 8,
    "dense": false,
    "matcher": "exhaustive"
  },

  /* Per-backend stages. Each has a "command" template, an "args" map
     (true = bare flag, false/null = omitted, {"from": "extract.fps"} =
     value of another config field) and an optional "args_file". */
  "backends": {
    "lichtfeld": {
      "work_dirname": "lf_train",
      "train": {
        "command": "{lichtfeld} train --data {undistorted_dir} --output {model_dir}",
        "args": {"max_iters": 30000, "batch_size": 1, "random_seed": "{seed}"}
      },
      "export": {
        "command": "{lichtfeld} export --model {model_dir} --output {output_path}",
        "args": {"num_points": 1000000, "format": "ply"}
      }
    }
  }
}
"""


def write_config_template(output_path: Path) -> Path:
    """
    Write a commented config template.

    Raises:
        ConfigError: If the target already exists
    """
    output_path = Path(output_path)
    if output_path.exists():
        raise ConfigError(f"Refusing to overwrite existing file: {output_path}")

    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(CONFIG_TEMPLATE, encoding="utf-8")
    console.print(f"[green]Wrote config template: {output_path}[/green]")
    return output_path
