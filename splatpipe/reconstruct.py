"""
COLMAP Reconstruction Pipeline Stage

Runs structure-from-motion on the extracted frames. Both modes end with
image undistortion, so the training stage always finds a sparse model
under ``sparse_dir`` and undistorted images under ``undistorted_dir``.

automatic: automatic_reconstructor -> image_undistorter
manual:    feature_extractor -> <matcher>_matcher -> mapper -> image_undistorter
"""

from typing import Dict, List, Mapping, Tuple

from .config import ReconstructMode, ReconstructSettings
from .runner import CommandResult, StageRunner
from .templates import expand_command, extend_context

STAGE = "reconstruct"

DEFAULT_TEMPLATES: Dict[str, str] = {
    "automatic_reconstructor": (
        "{colmap} automatic_reconstructor"
        " --workspace_path {colmap_dir}"
        " --image_path {frames_dir}"
        " --dense {dense}"
        " --single_camera {single_camera}"
    ),
    "feature_extractor": (
        "{colmap} feature_extractor"
        " --database_path {database_path}"
        " --image_path {frames_dir}"
        " --ImageReader.single_camera {single_camera}"
        " --SiftExtraction.num_threads {sift_threads}"
    ),
    "matcher": "{colmap} {matcher}_matcher --database_path {database_path}",
    "mapper": (
        "{colmap} mapper"
        " --database_path {database_path}"
        " --image_path {frames_dir}"
        " --output_path {sparse_dir}"
        " --Mapper.num_threads {mapper_threads}"
    ),
    "image_undistorter": (
        "{colmap} image_undistorter"
        " --image_path {frames_dir}"
        " --input_path {sparse_dir}/0"
        " --output_path {undistorted_dir}"
        " --output_type COLMAP"
    ),
}

STEPS = {
    ReconstructMode.AUTOMATIC: ["automatic_reconstructor", "image_undistorter"],
    ReconstructMode.MANUAL: ["feature_extractor", "matcher", "mapper", "image_undistorter"],
}


def template_for(settings: ReconstructSettings, step: str) -> str:
    """User override for a sub-step, or the built-in template."""
    return getattr(settings.templates, step) or DEFAULT_TEMPLATES[step]


def plan_reconstruction(
    settings: ReconstructSettings,
    context: Mapping[str, str],
) -> List[Tuple[str, List[str]]]:
    """
    Expand the reconstruction commands for the configured mode.

    Returns:
        List of (step name, argv) in execution order
    """
    stage_context = extend_context(
        context,
        single_camera=int(settings.single_camera),
        dense=int(settings.dense),
        sift_threads=settings.sift_threads,
        mapper_threads=settings.mapper_threads,
        matcher=settings.matcher,
    )
    return [
        (step, expand_command(template_for(settings, step), stage_context))
        for step in STEPS[settings.mode]
    ]


def run_reconstruction(
    settings: ReconstructSettings,
    context: Mapping[str, str],
    runner: StageRunner,
) -> List[CommandResult]:
    """
    Run COLMAP in the configured mode.

    Each sub-step consumes the database/sparse model of the previous one,
    so the first failure stops the stage. Every sub-step's executable is
    resolved before the first one runs.
    """
    plan = plan_reconstruction(settings, context)
    runner.require_tools([(f"{STAGE}:{step}", argv) for step, argv in plan])

    results = []
    for step, argv in plan:
        results.append(runner.run(f"{STAGE}:{step}", argv))
        if step == "automatic_reconstructor":
            runner.announce("[OK] COLMAP automatic reconstruction complete.", style="green")

    runner.announce(
        f"[OK] COLMAP undistortion complete -> {context['undistorted_dir']}", style="green"
    )
    return results
