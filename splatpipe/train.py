"""
Gaussian Splat Training and Export Pipeline Stages

Dispatches on the configured backend. Each backend brings its own stage
definitions (command template + argument map); a backend that needs to
convert the reconstruction first defines a ``prepare`` step that runs
before training.
"""

from pathlib import Path
from typing import Dict, List, Mapping, Tuple

from .config import Backend, PipelineConfig, StageSpec
from .runner import CommandResult, StageRunner
from .templates import build_stage_command

TRAIN_STEPS: Dict[Backend, Tuple[str, ...]] = {
    Backend.LICHTFELD: ("train",),
    Backend.NERFSTUDIO: ("prepare", "train"),
}

EXPORT_STEPS: Dict[Backend, Tuple[str, ...]] = {
    Backend.LICHTFELD: ("export",),
    Backend.NERFSTUDIO: ("export",),
}

BACKEND_LABELS: Dict[Backend, str] = {
    Backend.LICHTFELD: "LichtFeld",
    Backend.NERFSTUDIO: "Nerfstudio",
}


def backend_specs(config: PipelineConfig, steps: Tuple[str, ...]) -> List[Tuple[str, StageSpec]]:
    """Stage specs of the selected backend for ``steps``, skipping undefined ones."""
    stages = config.stages
    specs = []
    for step in steps:
        spec = getattr(stages, step, None)
        if spec is not None:
            specs.append((step, spec))
    return specs


def _run_steps(
    config: PipelineConfig,
    steps: Tuple[str, ...],
    context: Mapping[str, str],
    runner: StageRunner,
) -> List[CommandResult]:
    # Built at dispatch time so the seed and config references resolve per run
    commands = [
        (f"{config.backend.value}:{step}", build_stage_command(spec, context, config))
        for step, spec in backend_specs(config, steps)
    ]
    runner.require_tools(commands)
    return [runner.run(stage, argv) for stage, argv in commands]


def train(
    config: PipelineConfig,
    context: Mapping[str, str],
    runner: StageRunner,
) -> List[CommandResult]:
    """Run the (optional) data preparation and training commands."""
    results = _run_steps(config, TRAIN_STEPS[config.backend], context, runner)
    label = BACKEND_LABELS[config.backend]
    runner.announce(
        f"[OK] Training completed ({label}). Model -> {context['model_dir']}", style="green"
    )
    return results


def export_splat(
    config: PipelineConfig,
    context: Mapping[str, str],
    runner: StageRunner,
) -> Path:
    """
    Export the trained model to the final splat file.

    Returns:
        Path to the exported .ply
    """
    _run_steps(config, EXPORT_STEPS[config.backend], context, runner)

    output_path = Path(context["output_path"])
    if not runner.dry_run and not output_path.exists():
        runner.announce(
            f"Warning: export finished but {output_path} was not found", style="yellow"
        )
    else:
        runner.announce(f"[OK] Exported Gaussian splat -> {output_path}", style="green")
    return output_path
