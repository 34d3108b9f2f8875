"""Tests for config loading, workspace planning and the result manifest."""

import json
from pathlib import Path

import pytest

from splatpipe.config import (
    Backend,
    ConfigRef,
    ReconstructMode,
    load_config,
    parse_config,
    write_config_template,
)
from splatpipe.errors import ConfigError, ManifestError, PathError


class TestConfigLoading:
    """Tests for config validation."""

    def test_load_valid_config(self, config_file):
        """A valid config loads with defaults filled in."""
        config = load_config(config_file())

        assert config.project.name == "demo"
        assert config.backend is Backend.LICHTFELD
        assert config.reconstruct.mode is ReconstructMode.AUTOMATIC
        assert config.reconstruct.database == "database.db"
        assert config.stages.work_dirname == "lf_train"
        assert config.project.work_dir.is_absolute()

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="Config not found"):
            load_config(tmp_path / "nope.jsonc")

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "bad.jsonc"
        path.write_text('{"project": ')
        with pytest.raises(ConfigError, match="Invalid JSON"):
            load_config(path)

    @pytest.mark.parametrize("section", ["project", "tools", "backend", "extract", "reconstruct"])
    def test_missing_top_level_key(self, config_data, config_file, section):
        """Each required section is named when missing."""
        del config_data[section]
        with pytest.raises(ConfigError, match=f"Missing required config key: {section}"):
            load_config(config_file())

    @pytest.mark.parametrize("key", ["name", "work_dir", "video"])
    def test_missing_project_key(self, config_data, config_file, key):
        del config_data["project"][key]
        with pytest.raises(ConfigError, match=f"project.{key}"):
            load_config(config_file())

    def test_missing_tool_key(self, config_data, config_file):
        del config_data["tools"]["colmap"]
        with pytest.raises(ConfigError, match="tools.colmap"):
            load_config(config_file())

    def test_optional_tools_may_be_absent(self, config_data, config_file):
        """Backend tools and cuda_home are optional."""
        for key in ("lichtfeld", "nerfstudio", "cuda_home"):
            config_data["tools"].pop(key)
        config = load_config(config_file())
        assert config.tools.lichtfeld is None
        assert config.tools.nerfstudio_tool("ns-train") == "ns-train"

    def test_invalid_backend_named(self, config_data, config_file):
        """An unknown backend fails at load time, naming the value."""
        config_data["backend"] = "gsplat"
        with pytest.raises(ConfigError, match="gsplat"):
            load_config(config_file())

    def test_invalid_reconstruct_mode(self, config_data, config_file):
        config_data["reconstruct"]["mode"] = "dense"
        with pytest.raises(ConfigError, match="reconstruct.mode"):
            load_config(config_file())

    def test_video_must_exist(self, config_data, config_file, tmp_path):
        config_data["project"]["video"] = str(tmp_path / "missing.mp4")
        with pytest.raises(ConfigError, match="does not exist"):
            load_config(config_file())

    def test_relative_paths_resolved_against_config_dir(self, config_data, tmp_path):
        """Relative work_dir, video and tool paths anchor at the config file."""
        sub = tmp_path / "configs"
        sub.mkdir()
        config_data["project"]["work_dir"] = "../work"
        config_data["project"]["video"] = "../input.mp4"
        config_data["tools"]["colmap"] = "../bin/colmap"
        config_data["tools"]["ffmpeg"] = "ffmpeg"
        path = sub / "config.jsonc"
        path.write_text(json.dumps(config_data))

        config = load_config(path)

        assert config.project.work_dir == (tmp_path / "work").resolve()
        assert config.project.video == (tmp_path / "input.mp4").resolve()
        assert config.tools.colmap == str((tmp_path / "bin" / "colmap").resolve())
        assert config.tools.ffmpeg == "ffmpeg"

    def test_nerfstudio_dir_anchored_at_config_dir(self, config_data, config_file, tmp_path):
        """A bare relative nerfstudio directory is not a PATH lookup."""
        config_data["tools"]["nerfstudio"] = "bin"
        config = load_config(config_file())
        assert config.tools.nerfstudio == str((tmp_path / "bin").resolve())
        assert config.tools.nerfstudio_tool("ns-train") == str((tmp_path / "bin" / "ns-train").resolve())

    def test_config_not_utf8(self, tmp_path):
        path = tmp_path / "latin1.jsonc"
        path.write_bytes(b'{"project": "\xff\xfe"}')
        with pytest.raises(ConfigError, match="UTF-8"):
            load_config(path)

    @pytest.mark.parametrize("command", ["", "   "])
    def test_blank_stage_command_rejected(self, config_data, config_file, command):
        """Blank command templates fail at load time, naming the key."""
        config_data["backends"] = {"lichtfeld": {"train": {"command": command}}}
        with pytest.raises(ConfigError, match="backends.lichtfeld.train.command"):
            load_config(config_file())

    def test_blank_extract_command_rejected(self, config_data, config_file):
        config_data["extract"]["command"] = " "
        with pytest.raises(ConfigError, match="extract.command"):
            load_config(config_file())

    def test_blank_reconstruct_template_rejected(self, config_data, config_file):
        config_data["reconstruct"]["templates"] = {"mapper": ""}
        with pytest.raises(ConfigError, match="reconstruct.templates.mapper"):
            load_config(config_file())

    def test_config_is_frozen(self, config_file):
        from pydantic import ValidationError

        config = load_config(config_file())
        with pytest.raises(ValidationError):
            config.project.seed = 1

    def test_lookup_and_config_refs(self, config_data):
        """Dotted lookups resolve config fields used by {"from": ...} args."""
        config = parse_config(config_data, check_paths=False)
        assert config.lookup("extract.fps") == 2
        assert config.lookup("project.seed") == 42
        prepare = config.backends.nerfstudio.prepare
        assert prepare.args["fps"] == ConfigRef(source="extract.fps")
        with pytest.raises(ConfigError, match="not found"):
            config.lookup("extract.nope")


class TestConfigTemplate:
    """Tests for the config template writer."""

    def test_template_parses(self, tmp_path):
        """The written template is valid once its paths are filled in."""
        from utils.jsonc import load

        path = write_config_template(tmp_path / "splat.jsonc")
        data = load(path)

        config = parse_config(data, check_paths=False)
        assert config.backend is Backend.LICHTFELD
        assert config.backends.lichtfeld.train.args["max_iters"] == 30000

    def test_template_never_overwrites(self, tmp_path):
        path = tmp_path / "splat.jsonc"
        path.write_text("keep me")
        with pytest.raises(ConfigError, match="overwrite"):
            write_config_template(path)
        assert path.read_text() == "keep me"


class TestWorkspace:
    """Tests for workspace planning and creation."""

    def test_layout_paths(self, config_file):
        from splatpipe.workspace import plan_workspace

        config = load_config(config_file())
        layout = plan_workspace(config)

        work_dir = Path(config.project.work_dir)
        assert layout.sparse_dir == work_dir / "colmap" / "sparse"
        assert layout.undistorted_dir == work_dir / "colmap" / "undistorted"
        assert layout.database_path == work_dir / "colmap" / "database.db"
        assert layout.model_dir == work_dir / "lf_train" / "model"
        assert layout.output_path == work_dir / "output" / "demo_gaussians.ply"
        assert layout.manifest_path == work_dir / "output" / "result.json"
        assert all(p.is_absolute() for p in layout.directories)
        assert not work_dir.exists()

    def test_creation_is_idempotent(self, config_file):
        """Re-running keeps existing contents."""
        from splatpipe.workspace import prepare_workspace

        config = load_config(config_file())
        layout = prepare_workspace(config)
        marker = layout.frames_dir / "frame_00001.png"
        marker.write_bytes(b"png")

        again = prepare_workspace(config)

        assert again == layout
        assert marker.read_bytes() == b"png"
        assert all(d.is_dir() for d in layout.directories)

    def test_creation_failure_raises_path_error(self, config_data, config_file, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        config_data["project"]["work_dir"] = str(blocker)

        from splatpipe.workspace import prepare_workspace

        with pytest.raises(PathError):
            prepare_workspace(load_config(config_file()))

    def test_log_path_is_timestamped(self, config_file):
        from datetime import datetime
        from splatpipe.workspace import new_log_path, plan_workspace

        layout = plan_workspace(load_config(config_file()))
        path = new_log_path(layout, now=datetime(2026, 3, 1, 14, 30, 5))
        assert path == layout.log_dir / "run-20260301_143005.log"


class TestManifest:
    """Tests for the result manifest."""

    def test_write(self, config_file):
        from splatpipe.manifest import RunResult, create_run_result, write_manifest
        from splatpipe.workspace import prepare_workspace

        config = load_config(config_file())
        layout = prepare_workspace(config)
        result = create_run_result(
            config, layout, layout.log_dir / "run.log",
            command_durations={"reconstruct:mapper": 1.5},
        )

        write_manifest(result, layout.manifest_path)
        data = json.loads(layout.manifest_path.read_text())

        assert RunResult.model_validate(data) == result
        assert data["commands"] == {"reconstruct:mapper": 1.5}
        assert data["frames"] == str(layout.frames_dir)
        assert data["model_dir"] == str(layout.model_dir)
        assert data["pipeline"] == "lichtfeld"

    def test_write_failure(self, tmp_path, config_file):
        from splatpipe.manifest import create_run_result, write_manifest
        from splatpipe.workspace import plan_workspace

        config = load_config(config_file())
        layout = plan_workspace(config)
        result = create_run_result(config, layout, layout.log_dir / "run.log")

        with pytest.raises(ManifestError):
            write_manifest(result, tmp_path / "missing_dir" / "result.json")
