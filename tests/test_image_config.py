"""Tests for image/config.py module."""

from pathlib import Path

import pytest

from spacejar.errors import ValidationError
from spacejar.image.config import (
    DEFAULT_PATH_ENV,
    ImageConfig,
    app_layer_config,
    deps_layer_config,
    venv_layer_config,
)


def _write_pyproject(project: Path, content: str) -> None:
    project.joinpath("pyproject.toml").write_text(content)


class TestFromProject:
    """Tests for ImageConfig.from_project."""

    def test_no_pyproject(self, tmp_path):
        """A project without pyproject.toml gets the defaults."""
        config = ImageConfig.from_project(tmp_path)

        assert config.env == [DEFAULT_PATH_ENV, "PYTHONUNBUFFERED=1"]
        assert config.cmd == ["python", "main.py"]
        assert config.working_dir == "/app"
        assert config.entrypoint == []

    def test_no_tool_section(self, tmp_path):
        """A pyproject.toml without [tool.spacejar] gets the defaults."""
        _write_pyproject(tmp_path, '[project]\nname = "demo"\n')
        assert ImageConfig.from_project(tmp_path) == ImageConfig.default_config()

    def test_tool_section(self, tmp_path):
        """Keys from [tool.spacejar] are applied; env is appended."""
        _write_pyproject(
            tmp_path,
            """
[tool.spacejar]
env = ["APP_ENV=prod"]
cmd = ["python", "server.py"]
working_dir = "/srv"
entrypoint = ["server.py"]
ports = ["8080/tcp"]
volumes = ["/data"]
labels = { team = "platform" }
exclude = ["docs", "*.md"]
""",
        )

        config = ImageConfig.from_project(tmp_path)

        assert config.env == [DEFAULT_PATH_ENV, "PYTHONUNBUFFERED=1", "APP_ENV=prod"]
        assert config.cmd == ["python", "server.py"]
        assert config.working_dir == "/srv"
        assert config.entrypoint == ["server.py"]
        assert config.exposed_ports == ["8080/tcp"]
        assert config.volumes == ["/data"]
        assert config.labels == {"team": "platform"}
        assert config.exclude == ["docs", "*.md"]

    def test_invalid_toml(self, tmp_path):
        """Malformed TOML is a validation error."""
        _write_pyproject(tmp_path, "[tool.spacejar\n")

        with pytest.raises(ValidationError) as exc_info:
            ImageConfig.from_project(tmp_path)
        assert exc_info.value.code == "invalid_project_config"

    def test_wrong_type(self, tmp_path):
        """Keys with the wrong type are rejected."""
        _write_pyproject(tmp_path, '[tool.spacejar]\ncmd = "python main.py"\n')

        with pytest.raises(ValidationError):
            ImageConfig.from_project(tmp_path)


class TestLayerConfigs:
    """Tests for per-layer configs."""

    def test_empty_default(self):
        """A bare ImageConfig has no opinions."""
        config = ImageConfig()
        assert config.env == []
        assert config.cmd == []
        assert config.working_dir == ""

    def test_venv(self):
        assert venv_layer_config().env == ["VIRTUAL_ENV=/venv", "PATH=/venv/bin:$PATH"]

    def test_deps(self):
        assert deps_layer_config().env == ["PYTHONPATH=/app/deps:$PYTHONPATH"]

    def test_app(self):
        """The app layer carries the project's env, cmd and metadata."""
        project = ImageConfig(
            env=["A=1"],
            cmd=["python", "x.py"],
            working_dir="/elsewhere",
            labels={"k": "v"},
            exclude=["docs"],
        )
        config = app_layer_config(project)

        assert config.env == ["A=1"]
        assert config.cmd == ["python", "x.py"]
        assert config.working_dir == "/app"
        assert config.labels == {"k": "v"}
        assert config.exclude == []
