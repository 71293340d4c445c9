"""Tests for builds/service.py module.

The orchestrator runs end to end against a temporary project with the
virtualenv and pip steps replaced by fakes that write plain files, and a
fake registry that hands out a fixed base layer.
"""

import asyncio
import json
from pathlib import Path
from unittest.mock import patch

import pytest

from spacejar.builds.runner import has_requirements
from spacejar.builds.service import STAGE_ORDER, BuildOrchestrator
from spacejar.cache.store import ContentAddressedCache
from spacejar.config import Settings
from spacejar.errors import (
    BuildError,
    NetworkError,
    ProcessExecutionError,
    ValidationError,
)
from spacejar.image.config import ImageConfig
from spacejar.image.layout import blob_path, verify_layout
from spacejar.layers.layer import Layer
from spacejar.types import ANNOTATION_BASE_NAME, ANNOTATION_TITLE, BuildStage


class FakeRegistry:
    """Registry stand-in that counts pulls."""

    def __init__(self, error: Exception | None = None) -> None:
        self.pulls: list[str] = []
        self.error = error

    async def pull(self, reference: str) -> tuple[Layer, ImageConfig]:
        self.pulls.append(reference)
        if self.error is not None:
            raise self.error
        layer = Layer.from_tar(
            b"base image rootfs" * 32, annotations={ANNOTATION_BASE_NAME: reference}
        )
        return layer, ImageConfig(env=["LANG=C.UTF-8"])


async def fake_create_virtualenv(
    venv_dir, python="python", upgrade_pip=True, timeout=None
):
    (venv_dir / "bin").mkdir(parents=True)
    (venv_dir / "bin" / "activate").write_text("# activate\n")
    (venv_dir / "pyvenv.cfg").write_text("include-system-site-packages = true\n")
    return venv_dir


async def fake_install_dependencies(
    requirements, target, python="python", timeout=None
):
    target.mkdir(parents=True, exist_ok=True)
    if has_requirements(requirements):
        (target / "rich").mkdir()
        (target / "rich" / "__init__.py").write_text("")
    return target


@pytest.fixture
def project(tmp_path: Path) -> Path:
    """Create a small application project."""
    root = tmp_path / "project"
    root.mkdir()
    (root / "main.py").write_text("print('hello')\n")
    (root / "requirements.txt").write_text("rich\n")
    (root / "pyproject.toml").write_text(
        '[tool.spacejar]\nenv = ["APP_ENV=test"]\nports = ["8000/tcp"]\n'
    )
    return root


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings with cache and work directories under tmp_path."""
    (tmp_path / "work").mkdir()
    return Settings(cache_dir=tmp_path / "cache", tmp_dir=tmp_path / "work")


@pytest.fixture
def fake_tools():
    """Replace virtualenv creation and pip with file-writing fakes."""
    with (
        patch(
            "spacejar.builds.service.create_virtualenv",
            side_effect=fake_create_virtualenv,
        ) as venv_mock,
        patch(
            "spacejar.builds.service.install_dependencies",
            side_effect=fake_install_dependencies,
        ) as deps_mock,
    ):
        yield venv_mock, deps_mock


def _orchestrator(project, output, settings, registry, cache=None):
    return BuildOrchestrator(
        project,
        output,
        settings=settings,
        base_image="python:3.12-slim",
        cache=cache,
        registry=registry,
        architecture="amd64",
    )


class TestBuild:
    """End-to-end builds with fake tools."""

    def test_writes_valid_layout(self, tmp_path, project, settings, fake_tools):
        """A build produces a layout whose blobs verify."""
        registry = FakeRegistry()
        output = tmp_path / "image"

        report = asyncio.run(_orchestrator(project, output, settings, registry).build())

        manifest = verify_layout(output)
        assert report.output_path == output.resolve()
        assert report.manifest_digest.startswith("sha256:")
        assert report.layer_digests == [d.digest for d in manifest.layers]
        assert report.stages == list(STAGE_ORDER)
        assert registry.pulls == ["python:3.12-slim"]

        titles = [(d.annotations or {}).get(ANNOTATION_TITLE) for d in manifest.layers]
        assert titles == [None, "venv", "app/deps", "app"]
        base = manifest.layers[0].annotations or {}
        assert base[ANNOTATION_BASE_NAME] == "python:3.12-slim"

    def test_image_config(self, tmp_path, project, settings, fake_tools):
        """The config merges base, layer and project settings."""
        output = tmp_path / "image"
        report = asyncio.run(
            _orchestrator(project, output, settings, FakeRegistry()).build()
        )

        config = json.loads(blob_path(output, report.config_digest).read_bytes())
        runtime = config["config"]
        assert config["architecture"] == "amd64"
        assert config["os"] == "linux"
        assert len(config["rootfs"]["diff_ids"]) == 4
        assert runtime["Env"][0] == "LANG=C.UTF-8"
        assert "VIRTUAL_ENV=/venv" in runtime["Env"]
        assert "APP_ENV=test" in runtime["Env"]
        assert runtime["Env"][-1] == "PYTHONPATH=/app/deps:/app"
        assert runtime["Entrypoint"][-1].endswith("python /app/main.py")
        assert runtime["WorkingDir"] == "/app"
        assert runtime["ExposedPorts"] == {"8000/tcp": {}}

    def test_second_build_uses_cache(self, tmp_path, project, settings, fake_tools):
        """The base image and dependency layer come from the cache."""
        registry = FakeRegistry()
        cache = ContentAddressedCache(settings.cache_dir)
        first = asyncio.run(
            _orchestrator(project, tmp_path / "one", settings, registry, cache).build()
        )
        second = asyncio.run(
            _orchestrator(project, tmp_path / "two", settings, registry, cache).build()
        )

        _, deps_mock = fake_tools
        assert registry.pulls == ["python:3.12-slim"]
        assert deps_mock.call_count == 1
        assert first.base_cache_hit is False
        assert second.base_cache_hit is True
        assert second.deps_cache_hit is True
        assert second.layer_digests[:3] == first.layer_digests[:3]

    def test_no_requirements(self, tmp_path, project, settings, fake_tools):
        """Without requirements the dependency layer is empty and uncached."""
        (project / "requirements.txt").unlink()
        report = asyncio.run(
            _orchestrator(project, tmp_path / "image", settings, FakeRegistry()).build()
        )

        assert report.deps_cache_hit is False
        cache = ContentAddressedCache(settings.cache_dir)
        assert cache.index.dependencies == {}

    def test_work_dir_removed(self, tmp_path, project, settings, fake_tools):
        """The temporary build directory is removed after the build."""
        asyncio.run(
            _orchestrator(project, tmp_path / "image", settings, FakeRegistry()).build()
        )
        assert list(settings.tmp_dir.iterdir()) == []


class TestBuildFailures:
    """Failures are wrapped in BuildError with the stage being attempted."""

    def test_registry_failure(self, tmp_path, project, settings, fake_tools):
        """A pull failure fails base resolution."""
        registry = FakeRegistry(NetworkError("connection refused"))
        orchestrator = _orchestrator(project, tmp_path / "image", settings, registry)

        with pytest.raises(BuildError) as exc_info:
            asyncio.run(orchestrator.build())

        error = exc_info.value
        assert error.stage == "base_resolved"
        assert isinstance(error.cause, NetworkError)
        assert error.exit_code == NetworkError.exit_code
        assert orchestrator.stage == BuildStage.FAILED
        assert orchestrator.stages[-1] == BuildStage.FAILED
        assert not (tmp_path / "image").exists()

    def test_venv_failure(self, tmp_path, project, settings, fake_tools):
        """A failing virtualenv step fails layer building and cleans up."""
        venv_mock, _ = fake_tools
        venv_mock.side_effect = ProcessExecutionError(
            "venv failed", command=["python"], exit_code=1, code="command_failed"
        )
        orchestrator = _orchestrator(
            project, tmp_path / "image", settings, FakeRegistry()
        )

        with pytest.raises(BuildError) as exc_info:
            asyncio.run(orchestrator.build())

        assert exc_info.value.stage == "layers_built"
        assert isinstance(exc_info.value.cause, ProcessExecutionError)
        assert list(settings.tmp_dir.iterdir()) == []

    def test_orchestrator_reusable(self, tmp_path, project, settings, fake_tools):
        """Each build starts from a fresh state, whatever the last one did."""
        registry = FakeRegistry(NetworkError("down"))
        orchestrator = _orchestrator(project, tmp_path / "image", settings, registry)

        for _ in range(2):
            with pytest.raises(BuildError) as exc_info:
                asyncio.run(orchestrator.build())
            assert exc_info.value.stage == "base_resolved"
            assert orchestrator.stages == [BuildStage.INIT, BuildStage.FAILED]

        registry.error = None
        report = asyncio.run(orchestrator.build())
        assert report.stages == list(STAGE_ORDER)

        registry.error = NetworkError("down again")
        orchestrator.cache = ContentAddressedCache(tmp_path / "fresh-cache")
        with pytest.raises(BuildError) as exc_info:
            asyncio.run(orchestrator.build())
        assert isinstance(exc_info.value.cause, NetworkError)


class TestOrchestratorValidation:
    """Constructor checks."""

    def test_missing_project(self, tmp_path, settings):
        with pytest.raises(ValidationError) as exc_info:
            BuildOrchestrator(tmp_path / "missing", tmp_path / "out", settings=settings)
        assert exc_info.value.code == "invalid_project"

    def test_project_is_file(self, tmp_path, settings):
        path = tmp_path / "main.py"
        path.write_text("")
        with pytest.raises(ValidationError) as exc_info:
            BuildOrchestrator(path, tmp_path / "out", settings=settings)
        assert exc_info.value.code == "invalid_project"

    def test_missing_output_parent(self, tmp_path, project, settings):
        with pytest.raises(ValidationError) as exc_info:
            BuildOrchestrator(project, tmp_path / "a" / "b" / "out", settings=settings)
        assert exc_info.value.code == "invalid_output"
