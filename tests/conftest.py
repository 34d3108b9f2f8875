"""Shared fixtures: fake tool executables, config documents and a recording Popen."""

import io
import json
from pathlib import Path
from typing import Dict, List, Tuple

import pytest

TOOL_NAMES = ["ffmpeg", "colmap", "LichtFeld", "ns-process-data", "ns-train", "ns-export"]


def make_tool(bin_dir: Path, name: str) -> Path:
    """Create an executable stub that exits 0."""
    path = bin_dir / name
    path.write_text("#!/bin/sh\nexit 0\n")
    path.chmod(0o755)
    return path


def write_config(path: Path, data: Dict) -> Path:
    """Write a config document with a leading comment, as users do."""
    path.write_text("// test config\n" + json.dumps(data, indent=2))
    return path


@pytest.fixture
def tool_dir(tmp_path) -> Path:
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    for name in TOOL_NAMES:
        make_tool(bin_dir, name)
    return bin_dir


@pytest.fixture
def video(tmp_path) -> Path:
    path = tmp_path / "input.mp4"
    path.write_bytes(b"\x00" * 2048)
    return path


@pytest.fixture
def config_data(tmp_path, tool_dir, video) -> Dict:
    """Minimal valid config using the stub tools."""
    return {
        "project": {
            "name": "demo",
            "work_dir": str(tmp_path / "work"),
            "video": str(video),
            "seed": 42,
        },
        "tools": {
            "ffmpeg": str(tool_dir / "ffmpeg"),
            "colmap": str(tool_dir / "colmap"),
            "lichtfeld": str(tool_dir / "LichtFeld"),
            "nerfstudio": str(tool_dir),
            "cuda_home": None,
        },
        "backend": "lichtfeld",
        "extract": {"fps": 2, "long_edge": 1080, "image_ext": "png", "skip_if_exists": True},
        "reconstruct": {"mode": "automatic"},
    }


class PopenRecorder:
    """Stands in for subprocess.Popen and records every spawned argv."""

    def __init__(self):
        self.calls: List[List[str]] = []
        self.kwargs: List[Dict] = []
        self._failures: List[Tuple[str, int, str, str]] = []

    def fail_on(self, token: str, returncode: int, stdout: str = "", stderr: str = ""):
        """Make any command containing ``token`` exit with ``returncode``."""
        self._failures.append((token, returncode, stdout, stderr))

    def outcome(self, argv: List[str]) -> Tuple[int, str, str]:
        for token, returncode, stdout, stderr in self._failures:
            if token in argv:
                return returncode, stdout, stderr
        return 0, f"ran {Path(argv[0]).name}\n", ""

    def __call__(self, argv, **kwargs):
        self.calls.append(list(argv))
        self.kwargs.append(kwargs)
        return _FakeProcess(*self.outcome(argv))

    def subcommands(self) -> List[str]:
        """Tool name plus first argument of each call, e.g. 'colmap mapper'."""
        return [" ".join([Path(c[0]).name] + c[1:2]) for c in self.calls]


class _FakeProcess:
    def __init__(self, returncode: int, stdout: str, stderr: str):
        self.returncode = returncode
        self.stdout = io.StringIO(stdout)
        self.stderr = io.StringIO(stderr)

    def wait(self):
        return self.returncode

    def terminate(self):
        pass


@pytest.fixture
def fake_popen(monkeypatch) -> PopenRecorder:
    recorder = PopenRecorder()
    monkeypatch.setattr("splatpipe.runner.subprocess.Popen", recorder)
    return recorder


@pytest.fixture
def config_file(tmp_path, config_data):
    """Factory writing ``config_data`` (or a given document) to disk."""
    def _write(data: Dict = None, name: str = "config.jsonc") -> Path:
        return write_config(tmp_path / name, config_data if data is None else data)
    return _write
