"""Per-layer image configuration.

Each layer of an image (base, venv, deps, app) contributes an
``ImageConfig``; the assembler merges them into the final OCI config.
The project's own settings come from ``[tool.spacejar]`` in its
``pyproject.toml``.
"""

from __future__ import annotations

import logging
import tomllib
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from spacejar.errors import ValidationError

logger = logging.getLogger(__name__)

DEFAULT_PATH_ENV = "PATH=/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"
DEFAULT_ENV = (DEFAULT_PATH_ENV, "PYTHONUNBUFFERED=1")
DEFAULT_CMD = ("python", "main.py")
APP_DIR = "/app"
VENV_DIR = "/venv"
DEPS_DIR = "/app/deps"

PYPROJECT_FILE = "pyproject.toml"
TOOL_SECTION = "spacejar"


class ImageConfig(BaseModel):
    """Configuration contributed by one layer.

    Empty fields mean "no opinion" and are skipped when merging.
    ``exclude`` only applies to application staging and is never written
    to the OCI config.
    """

    model_config = ConfigDict(extra="forbid")

    env: list[str] = Field(default_factory=list)
    cmd: list[str] = Field(default_factory=list)
    working_dir: str = ""
    entrypoint: list[str] = Field(default_factory=list)
    labels: dict[str, str] = Field(default_factory=dict)
    exposed_ports: list[str] = Field(default_factory=list)
    volumes: list[str] = Field(default_factory=list)
    exclude: list[str] = Field(default_factory=list)

    @classmethod
    def default_config(cls) -> ImageConfig:
        """Return the configuration used when a project declares nothing."""
        return cls(
            env=list(DEFAULT_ENV),
            cmd=list(DEFAULT_CMD),
            working_dir=APP_DIR,
        )

    @classmethod
    def from_project(cls, project_dir: Path) -> ImageConfig:
        """Load configuration from ``<project_dir>/pyproject.toml``.

        Missing file or missing ``[tool.spacejar]`` section yields
        :meth:`default_config`. ``env`` entries are appended to the
        defaults; other keys replace them.

        Raises:
            ValidationError: If the file is not valid TOML or a key has
                the wrong type.
        """
        pyproject = project_dir / PYPROJECT_FILE
        if not pyproject.is_file():
            logger.debug("No %s in %s, using defaults", PYPROJECT_FILE, project_dir)
            return cls.default_config()

        try:
            with pyproject.open("rb") as f:
                data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ValidationError(
                f"Invalid {PYPROJECT_FILE}: {e}", code="invalid_project_config"
            ) from e

        tool = data.get("tool", {}).get(TOOL_SECTION)
        if tool is None:
            return cls.default_config()
        return cls.from_tool_section(tool)

    @classmethod
    def from_tool_section(cls, tool: dict[str, Any]) -> ImageConfig:
        """Build a config from a parsed ``[tool.spacejar]`` table."""
        config = cls.default_config()
        values: dict[str, Any] = {
            "env": config.env + list(tool.get("env", [])),
            "cmd": tool.get("cmd", config.cmd),
            "working_dir": tool.get("working_dir", config.working_dir),
            "entrypoint": tool.get("entrypoint", []),
            "labels": tool.get("labels", {}),
            "exposed_ports": tool.get("ports", []),
            "volumes": tool.get("volumes", []),
            "exclude": tool.get("exclude", []),
        }
        try:
            return cls.model_validate(values)
        except PydanticValidationError as e:
            raise ValidationError(
                f"Invalid [tool.{TOOL_SECTION}] configuration: {e}",
                code="invalid_project_config",
            ) from e


def venv_layer_config() -> ImageConfig:
    """Configuration contributed by the virtualenv layer."""
    return ImageConfig(env=[f"VIRTUAL_ENV={VENV_DIR}", f"PATH={VENV_DIR}/bin:$PATH"])


def deps_layer_config() -> ImageConfig:
    """Configuration contributed by the dependency layer."""
    return ImageConfig(env=[f"PYTHONPATH={DEPS_DIR}:$PYTHONPATH"])


def app_layer_config(project: ImageConfig) -> ImageConfig:
    """Configuration contributed by the application layer."""
    return ImageConfig(
        env=list(project.env),
        cmd=list(project.cmd),
        working_dir=APP_DIR,
        labels=dict(project.labels),
        exposed_ports=list(project.exposed_ports),
        volumes=list(project.volumes),
    )


__all__ = [
    "APP_DIR",
    "DEFAULT_CMD",
    "DEFAULT_ENV",
    "DEFAULT_PATH_ENV",
    "DEPS_DIR",
    "ImageConfig",
    "VENV_DIR",
    "app_layer_config",
    "deps_layer_config",
    "venv_layer_config",
]
