"""
Main Processing Pipeline Orchestrator

Turns a video into a Gaussian splat by running four external stages in
order, each consuming the previous stage's files:

1. Extract - ffmpeg frames from the video
2. Reconstruct - COLMAP sparse model + undistorted images
3. Train - LichtFeld or Nerfstudio
4. Export - final <project>_gaussians.ply

A failure stops the run at that stage; the workspace and log are kept so a
re-run can resume via the skip-if-exists policy.
"""

import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel

from utils.validation import find_missing_tools

from .config import PipelineConfig, load_config, write_config_template
from .errors import PipelineError, ToolMissingError
from .extract_frames import extract_frames
from .manifest import RunResult, create_run_result, write_manifest
from .reconstruct import run_reconstruction
from .runner import RunLog, StageRunner, build_environment, merge_environment
from .templates import build_context, expand_command, tool_context
from .train import export_splat, train
from .workspace import new_log_path, prepare_workspace

console = Console()
app = typer.Typer(help="Video to Gaussian splat pipeline (ffmpeg -> COLMAP -> train -> export)")

STAGES = [
    ("Extract", "Extract frames with ffmpeg"),
    ("Reconstruct", "COLMAP reconstruction and undistortion"),
    ("Train", "Train Gaussian splat (LichtFeld or Nerfstudio)"),
    ("Export", "Export Gaussian splat .ply and write result manifest"),
]


@dataclass
class PipelineStats:
    """Statistics collected during pipeline execution."""
    start_time: float = 0
    end_time: float = 0
    stages: Dict[str, float] = field(default_factory=dict)

    def start(self):
        self.start_time = time.time()

    def stop(self):
        self.end_time = time.time()

    def record_stage(self, name: str, duration: float):
        self.stages[name] = round(duration, 3)

    @property
    def total_duration(self) -> float:
        return self.end_time - self.start_time


def _print_summary(config: PipelineConfig, context: Mapping[str, str], runner: StageRunner):
    runner.announce("=== Config summary ===", style="bold")
    rows = [
        ("Project", config.project.name),
        ("WorkDir", context["work_dir"]),
        ("Video", context["video"]),
        ("FramesDir", context["frames_dir"]),
        ("ColmapDir", context["colmap_dir"]),
        ("ModelDir", context["model_dir"]),
        ("Output", context["output_path"]),
        ("Pipeline", config.backend.value),
    ]
    if runner.dry_run:
        rows.append(("Mode", "dry-run"))
    for label, value in rows:
        runner.announce(f"{label:<10}: {value}")


def run_pipeline(
    config: PipelineConfig,
    dry_run: bool = False,
    force: bool = False,
    verbose: bool = False,
    base_env: Optional[Mapping[str, str]] = None,
) -> RunResult:
    """
    Run the complete pipeline for a validated config.

    Args:
        config: Validated pipeline configuration
        dry_run: Print and log every command without executing it
        force: Ignore skip-if-exists policies
        verbose: Stream subprocess output to the console
        base_env: Ambient environment (default: os.environ)

    Returns:
        The RunResult written to the manifest
    """
    stats = PipelineStats()
    stats.start()

    layout = prepare_workspace(config)
    log = RunLog(new_log_path(layout))
    env = merge_environment(build_environment(config.tools, base_env), base_env)
    context = build_context(config, layout)
    runner = StageRunner(log=log, env=env, cwd=layout.work_dir, dry_run=dry_run, verbose=verbose)

    console.print(Panel.fit(
        "[bold blue]Gaussian Splat Pipeline[/bold blue]\n"
        f"Project: {escape(config.project.name)} ({config.backend.value})\n"
        f"Log: {escape(str(log.path))}",
        border_style="blue"
    ))
    _print_summary(config, context, runner)

    steps = [
        ("extract", lambda: extract_frames(config.extract, context, runner, force=force)),
        ("reconstruct", lambda: run_reconstruction(config.reconstruct, context, runner)),
        ("train", lambda: train(config, context, runner)),
        ("export", lambda: export_splat(config, context, runner)),
    ]

    try:
        for index, (name, step) in enumerate(steps, start=1):
            title = STAGES[index - 1][1]
            if name == "reconstruct":
                title = f"{title} ({config.reconstruct.mode.value})"
            runner.announce("")
            runner.announce(f"=== Step {index}/{len(steps)}: {title} ===", style="bold")
            stage_start = time.time()
            step()
            stats.record_stage(name, time.time() - stage_start)

        result = create_run_result(
            config, layout, log.path,
            dry_run=dry_run,
            stage_durations=stats.stages,
            command_durations={r.stage: round(r.duration, 3) for r in runner.history},
        )
        write_manifest(result, layout.manifest_path)
        runner.announce(f"[OK] Result manifest: {layout.manifest_path}", style="green")
    except PipelineError as e:
        log.write(f"[ERR] {type(e).__name__}: {e}")
        raise
    except Exception as e:
        log.write(f"[ERR] Unexpected {type(e).__name__}: {e}")
        raise

    stats.stop()
    console.print(Panel.fit(
        f"[bold green]Pipeline Complete![/bold green]\n\n"
        f"Project: {escape(config.project.name)}\n"
        f"Total time: {stats.total_duration:.1f}s\n"
        f"Output: {escape(result.output)}",
        border_style="green"
    ))
    return result


def required_tools(config: PipelineConfig) -> Dict[str, Optional[str]]:
    """Executables the selected backend will invoke, keyed by label."""
    context = tool_context(config.tools)
    tools: Dict[str, Optional[str]] = {"ffmpeg": config.tools.ffmpeg, "colmap": config.tools.colmap}
    stages = config.stages
    for step in ("prepare", "train", "export"):
        spec = getattr(stages, step, None)
        if spec is None:
            continue
        executable = expand_command(spec.command, context)[0]
        tools[f"{config.backend.value}:{step}"] = None if "{" in executable else executable
    return tools


@app.command()
def run(
    config_path: Path = typer.Argument(..., help="Path to the JSON (with comments) config"),
    dry_run: bool = typer.Option(False, "--dry-run", "-n", help="Print commands without executing"),
    force: bool = typer.Option(False, "--force", help="Ignore skip-if-exists policies"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Stream tool output live"),
):
    """
    Run the pipeline for one video.

    Every command and its full output is appended to a timestamped log in
    <work_dir>/logs; the result manifest is written to <work_dir>/output/result.json.
    """
    try:
        config = load_config(config_path)
        run_pipeline(config, dry_run=dry_run, force=force, verbose=verbose)
    except PipelineError as e:
        console.print(f"[bold red][ERR] Pipeline failed:[/bold red] {escape(str(e))}")
        raise typer.Exit(e.exit_code)
    except Exception as e:
        console.print(f"[bold red]Pipeline failed:[/bold red] {escape(str(e))}")
        raise typer.Exit(1)


@app.command("init")
def init_config(
    output_path: Path = typer.Argument(..., help="Where to write the config template"),
):
    """Write a commented config template (never overwrites)."""
    try:
        write_config_template(output_path)
    except PipelineError as e:
        console.print(f"[bold red][ERR][/bold red] {escape(str(e))}")
        raise typer.Exit(e.exit_code)


@app.command("check")
def check_config(
    config_path: Path = typer.Argument(..., help="Path to the JSON (with comments) config"),
):
    """Validate a config and report which tools of the selected backend resolve."""
    try:
        config = load_config(config_path)
    except PipelineError as e:
        console.print(f"[bold red][ERR][/bold red] {escape(str(e))}")
        raise typer.Exit(e.exit_code)

    env = merge_environment(build_environment(config.tools))
    tools = required_tools(config)
    missing = find_missing_tools(tools, env)

    console.print(f"[bold]Config OK:[/bold] {escape(config.project.name)} ({config.backend.value})")
    for label, name in tools.items():
        status = "[red]missing[/red]" if label in missing else "[green]found[/green]"
        console.print(f"  {label:<20} {escape(name or '(not configured)')} {status}")

    if missing:
        raise typer.Exit(ToolMissingError.exit_code)


@app.command("stages")
def list_stages():
    """List all pipeline stages."""
    console.print("[bold]Pipeline Stages:[/bold]\n")
    for index, (name, desc) in enumerate(STAGES, start=1):
        console.print(f"  [blue]{index}. {name}[/blue]: {desc}")


if __name__ == "__main__":
    app()
