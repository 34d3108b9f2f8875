"""
Frame Extraction Pipeline Stage

Extracts still frames from the input video with ffmpeg, rate-limited to the
configured frames per second and optionally resized and rotated.
"""

from pathlib import Path
from typing import List, Mapping, Optional

from .config import ExtractSettings
from .runner import CommandResult, StageRunner
from .templates import expand_command, extend_context, format_value

STAGE = "extract"

DEFAULT_COMMAND = "{ffmpeg} -y -i {video} -vf {filter} {frames_dir}/frame_%05d.{image_ext}"


def build_filter(settings: ExtractSettings) -> str:
    """
    Build the ffmpeg ``-vf`` filter chain.

    ``fps=N``, then a long-edge bounded resize that preserves aspect ratio
    (``-2`` keeps the other side even), then an optional transpose.
    """
    vf = f"fps={format_value(settings.fps)}"
    if settings.long_edge > 0:
        edge = settings.long_edge
        vf += f",scale=if(gt(iw,ih),{edge},-2):if(gt(ih,iw),{edge},-2)"
    if settings.transpose is not None:
        vf += f",transpose={settings.transpose}"
    return vf


def existing_frames(frames_dir: Path, image_ext: str) -> List[Path]:
    """Frames already present in the extraction directory."""
    if not frames_dir.is_dir():
        return []
    return sorted(frames_dir.glob(f"*.{image_ext}"))


def should_skip(settings: ExtractSettings, frames_dir: Path, force: bool = False) -> bool:
    """
    Decide whether extraction can be skipped.

    Only the presence of matching files is checked, not the fps or size
    they were produced with.
    """
    if force or not settings.skip_if_exists:
        return False
    return len(existing_frames(frames_dir, settings.image_ext)) > 0


def extract_frames(
    settings: ExtractSettings,
    context: Mapping[str, str],
    runner: StageRunner,
    force: bool = False,
) -> Optional[CommandResult]:
    """
    Run the extraction stage.

    Args:
        settings: Extraction settings
        context: Execution context for the run
        runner: Stage runner
        force: Ignore the skip-if-exists policy

    Returns:
        CommandResult of the ffmpeg call, or None if the stage was skipped
    """
    frames_dir = Path(context["frames_dir"])

    if should_skip(settings, frames_dir, force=force):
        count = len(existing_frames(frames_dir, settings.image_ext))
        runner.announce(
            f"[OK] Skipping extraction (frames already exist: {count} *.{settings.image_ext})",
            style="yellow",
        )
        return None

    stage_context = extend_context(context, filter=build_filter(settings))
    argv = expand_command(settings.command or DEFAULT_COMMAND, stage_context)
    result = runner.run(STAGE, argv)
    runner.announce(f"[OK] Extracted frames -> {frames_dir}", style="green")
    return result
