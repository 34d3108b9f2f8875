"""
Pipeline Errors

Every failure in a run is fatal. Each error kind carries the process exit
code the CLI terminates with.
"""

from typing import List, Optional


class PipelineError(Exception):
    """Base class for all pipeline failures."""
    exit_code = 1


class ConfigError(PipelineError):
    """Malformed or missing configuration."""
    exit_code = 2


class PathError(PipelineError):
    """Required path missing or workspace directory could not be created."""
    exit_code = 3


class ToolMissingError(PipelineError):
    """An external executable needed by a stage cannot be located."""
    exit_code = 4

    def __init__(self, stage: str, tool: str):
        self.stage = stage
        self.tool = tool
        super().__init__(f"[{stage}] executable not found or not executable: {tool}")


class ProcessError(PipelineError):
    """An external command exited with a nonzero status."""
    exit_code = 5

    def __init__(self, stage: str, returncode: int, command: Optional[List[str]] = None):
        self.stage = stage
        self.returncode = returncode
        self.command = command or []
        super().__init__(f"[{stage}] command failed with exit code {returncode}")


class PipelineIOError(PipelineError, OSError):
    """Reading or writing a pipeline file failed."""
    exit_code = 6


class ArgumentFileError(PipelineIOError):
    """External argument file missing or unreadable."""
    pass


class ManifestError(PipelineIOError):
    """Result manifest could not be written."""
    pass
