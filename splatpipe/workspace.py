"""
Workspace Layout

Derives the on-disk working-directory tree for one pipeline run and creates
it. Creation is idempotent: existing directories and their contents are
left untouched.
"""

from dataclasses import dataclass, fields
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from .config import PipelineConfig
from .errors import PathError

MANIFEST_FILENAME = "result.json"


@dataclass(frozen=True)
class WorkspaceLayout:
    """Absolute paths of every directory and file a run touches."""
    work_dir: Path
    log_dir: Path
    frames_dir: Path
    colmap_dir: Path
    sparse_dir: Path
    undistorted_dir: Path
    database_path: Path
    data_dir: Path
    train_dir: Path
    model_dir: Path
    output_dir: Path
    output_path: Path
    manifest_path: Path

    @property
    def directories(self) -> List[Path]:
        """Directories to create, parents before children."""
        return [
            self.work_dir,
            self.log_dir,
            self.frames_dir,
            self.colmap_dir,
            self.sparse_dir,
            self.undistorted_dir,
            self.data_dir,
            self.train_dir,
            self.model_dir,
            self.output_dir,
        ]

    def to_dict(self) -> Dict[str, str]:
        return {f.name: str(getattr(self, f.name)) for f in fields(self)}


def plan_workspace(config: PipelineConfig) -> WorkspaceLayout:
    """Compute the workspace layout for a config without touching the disk."""
    work_dir = Path(config.project.work_dir).expanduser().resolve()
    colmap_dir = work_dir / "colmap"
    train_dir = work_dir / config.stages.work_dirname
    output_dir = work_dir / "output"

    return WorkspaceLayout(
        work_dir=work_dir,
        log_dir=work_dir / "logs",
        frames_dir=work_dir / "frames",
        colmap_dir=colmap_dir,
        sparse_dir=colmap_dir / "sparse",
        undistorted_dir=colmap_dir / "undistorted",
        database_path=colmap_dir / config.reconstruct.database,
        data_dir=work_dir / "ns_data",
        train_dir=train_dir,
        model_dir=train_dir / "model",
        output_dir=output_dir,
        output_path=output_dir / f"{config.project.name}_gaussians.ply",
        manifest_path=output_dir / MANIFEST_FILENAME,
    )


def create_workspace(layout: WorkspaceLayout) -> WorkspaceLayout:
    """
    Create every workspace directory.

    Raises:
        PathError: If a directory cannot be created
    """
    for directory in layout.directories:
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PathError(f"Could not create directory {directory}: {e}") from e
    return layout


def prepare_workspace(config: PipelineConfig) -> WorkspaceLayout:
    """Plan and create the workspace for a config."""
    return create_workspace(plan_workspace(config))


def new_log_path(layout: WorkspaceLayout, now: Optional[datetime] = None) -> Path:
    """Timestamped log file path for a new run."""
    now = now or datetime.now()
    return layout.log_dir / f"run-{now.strftime('%Y%m%d_%H%M%S')}.log"
