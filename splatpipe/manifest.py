"""
Result Manifest

Records the outcome of a successful run: resolved paths, the exported
splat and the backend used. Written once, after export, overwriting the
manifest of any previous run.
"""

from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional

from pydantic import BaseModel, Field

from .config import PipelineConfig
from .errors import ManifestError
from .workspace import WorkspaceLayout


class RunResult(BaseModel):
    """Manifest of one successful pipeline run."""
    project: str
    work_dir: str
    video: str
    frames: str
    colmap: str
    model_dir: str
    output: str
    log: str
    pipeline: str
    dry_run: bool = False
    completed_at: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
    )
    stages: Dict[str, float] = Field(default_factory=dict)
    # Seconds per executed command, keyed by command stage name (e.g. "reconstruct:mapper")
    commands: Dict[str, float] = Field(default_factory=dict)


def create_run_result(
    config: PipelineConfig,
    layout: WorkspaceLayout,
    log_path: Path,
    dry_run: bool = False,
    stage_durations: Optional[Dict[str, float]] = None,
    command_durations: Optional[Dict[str, float]] = None,
) -> RunResult:
    return RunResult(
        project=config.project.name,
        work_dir=str(layout.work_dir),
        video=str(config.project.video),
        frames=str(layout.frames_dir),
        colmap=str(layout.colmap_dir),
        model_dir=str(layout.model_dir),
        output=str(layout.output_path),
        log=str(log_path),
        pipeline=config.backend.value,
        dry_run=dry_run,
        stages=dict(stage_durations or {}),
        commands=dict(command_durations or {}),
    )


def write_manifest(result: RunResult, manifest_path: Path) -> Path:
    """
    Write the manifest, replacing any previous one.

    Raises:
        ManifestError: If the file cannot be written
    """
    try:
        manifest_path.write_text(result.model_dump_json(indent=2) + "\n", encoding="utf-8")
    except OSError as e:
        raise ManifestError(f"Could not write manifest {manifest_path}: {e}") from e

    return manifest_path

