"""
Stage Runner

Executes external commands for pipeline stages: resolves the executable,
prints and logs the command, spawns it (unless dry-run), drains stdout and
stderr concurrently, appends everything to the run log and turns a nonzero
exit status into a ProcessError.
"""

import os
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, IO, List, Mapping, Optional, Sequence, Tuple

from rich.console import Console
from rich.markup import escape

from utils.validation import resolve_executable

from .config import ToolLocations
from .errors import ConfigError, ProcessError, ToolMissingError
from .templates import format_command, unresolved_placeholders

console = Console()

# Keep subprocess text I/O independent of the caller's locale
ENCODING_ENV = {
    "PYTHONIOENCODING": "utf-8",
    "PYTHONUTF8": "1",
}

PASSTHROUGH_ENV = ("CUDA_VISIBLE_DEVICES",)


def build_environment(
    tools: ToolLocations,
    base: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    """
    Environment overlay applied to every subprocess.

    CUDA variables are only set when ``tools.cuda_home`` is configured.
    """
    base = os.environ if base is None else base
    overlay: Dict[str, str] = dict(ENCODING_ENV)

    for name in PASSTHROUGH_ENV:
        if name in base:
            overlay[name] = base[name]

    if tools.cuda_home:
        cuda_home = str(tools.cuda_home)
        cuda_bin = str(Path(cuda_home) / "bin")
        cuda_lib = str(Path(cuda_home) / "lib64")
        overlay["CUDA_HOME"] = cuda_home
        path = base.get("PATH", "")
        overlay["PATH"] = os.pathsep.join(p for p in (cuda_bin, path) if p)
        ld_path = base.get("LD_LIBRARY_PATH", "")
        overlay["LD_LIBRARY_PATH"] = os.pathsep.join(p for p in (ld_path, cuda_lib) if p)

    return overlay


def merge_environment(
    overlay: Mapping[str, str],
    base: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    """Ambient environment with the overlay applied on top."""
    env = dict(os.environ if base is None else base)
    env.update(overlay)
    return env


class RunLog:
    """Append-only, human-readable log file for one run."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def write(self, text: str) -> None:
        if not text.endswith("\n"):
            text += "\n"
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(text)

    def read(self) -> str:
        if not self.path.exists():
            return ""
        return self.path.read_text(encoding="utf-8")


@dataclass
class CommandResult:
    """Outcome of one external command."""
    stage: str
    argv: List[str]
    returncode: int = 0
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0
    dry_run: bool = False

    @property
    def command(self) -> str:
        return format_command(self.argv)


@dataclass
class StageRunner:
    """
    Runs pipeline commands with shared logging, environment and dry-run policy.

    Args:
        log: Run log every command and its output is appended to
        env: Full environment for subprocesses (ambient + overlay)
        cwd: Default working directory for commands
        dry_run: Print and log commands without spawning anything
        verbose: Stream subprocess output to the console as it arrives
    """
    log: RunLog
    env: Dict[str, str]
    cwd: Optional[Path] = None
    dry_run: bool = False
    verbose: bool = False
    history: List[CommandResult] = field(default_factory=list)

    def announce(self, message: str, style: Optional[str] = None) -> None:
        """Print a status line to the console and append it to the log."""
        console.print(escape(message), style=style, highlight=False)
        self.log.write(message)

    def resolve(self, stage: str, executable: str) -> str:
        """
        Resolve a command's executable against the subprocess PATH.

        Raises:
            ToolMissingError: If the executable cannot be found
        """
        if unresolved_placeholders(executable):
            raise ToolMissingError(stage, f"{executable} (tool not configured)")
        resolved = resolve_executable(executable, self.env)
        if resolved is None:
            raise ToolMissingError(stage, executable)
        return resolved

    def require_tools(self, commands: Sequence[Tuple[str, List[str]]]) -> None:
        """
        Resolve the executables of every command a stage will run.

        Called before the first command of a multi-command stage so a
        missing tool is reported before any of the stage's work starts.

        Raises:
            ConfigError: If a command is empty
            ToolMissingError: If any executable cannot be found
        """
        for stage, argv in commands:
            if not argv:
                raise ConfigError(f"[{stage}] empty command")
            self.resolve(stage, argv[0])

    def run(self, stage: str, argv: List[str], cwd: Optional[Path] = None) -> CommandResult:
        """
        Run one command for a stage.

        Returns:
            CommandResult with captured output

        Raises:
            ToolMissingError: If the executable cannot be resolved
            ProcessError: If the command exits nonzero
        """
        if not argv:
            raise ConfigError(f"[{stage}] empty command")

        executable = self.resolve(stage, argv[0])
        result = CommandResult(stage=stage, argv=list(argv), dry_run=self.dry_run)

        self.announce(f"[*] {result.command}", style="dim")
        if self.dry_run:
            self.history.append(result)
            return result

        start = time.time()
        returncode, stdout, stderr = self._execute(
            stage, [executable] + list(argv[1:]), cwd or self.cwd
        )
        result.returncode = returncode
        result.stdout = stdout
        result.stderr = stderr
        result.duration = time.time() - start
        self.history.append(result)

        self._log_output(result)

        if returncode != 0:
            self.announce(f"[ERR] {stage} ExitCode={returncode}", style="bold red")
            raise ProcessError(stage, returncode, result.argv)

        return result

    def _execute(self, stage: str, argv: List[str], cwd: Optional[Path]):
        try:
            process = subprocess.Popen(
                argv,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                cwd=str(cwd) if cwd else None,
                env=self.env,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except OSError as e:
            raise ToolMissingError(stage, f"{argv[0]} ({e.strerror or e})") from e

        stdout_lines: List[str] = []
        stderr_lines: List[str] = []
        readers = [
            threading.Thread(
                target=self._drain, args=(process.stdout, stdout_lines, None), daemon=True
            ),
            threading.Thread(
                target=self._drain, args=(process.stderr, stderr_lines, "yellow"), daemon=True
            ),
        ]
        for reader in readers:
            reader.start()

        try:
            returncode = process.wait()
        except KeyboardInterrupt:
            process.terminate()
            process.wait()
            raise
        finally:
            for reader in readers:
                reader.join()
            process.stdout.close()
            process.stderr.close()

        return returncode, "".join(stdout_lines), "".join(stderr_lines)

    def _drain(self, stream: IO[str], sink: List[str], style: Optional[str]) -> None:
        for line in iter(stream.readline, ""):
            sink.append(line)
            if self.verbose:
                console.print(escape(line.rstrip("\n")), style=style, highlight=False)

    def _log_output(self, result: CommandResult) -> None:
        if result.stdout:
            self.log.write("--- stdout ---\n" + result.stdout)
        if result.stderr:
            self.log.write("--- stderr ---\n" + result.stderr)
