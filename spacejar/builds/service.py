"""Build orchestration service.

This module ties the pipeline together:
- Resolve the base image layer (cache first, then registry)
- Build the venv, dependency and application layers concurrently
- Verify all layers, assemble config and manifest
- Write the OCI layout

A build moves through init -> base_resolved -> layers_built -> verified
-> assembled -> written -> done. Any failure moves it to failed and is
raised as BuildError naming the stage that was being attempted.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

from spacejar.builds.runner import (
    REQUIREMENTS_FILE,
    create_virtualenv,
    has_requirements,
    install_dependencies,
)
from spacejar.builds.staging import stage_application
from spacejar.cache.models import LayerMetadata
from spacejar.cache.store import ContentAddressedCache
from spacejar.concurrency import gather_first_error
from spacejar.config import Settings, get_settings
from spacejar.errors import BuildError, ValidationError
from spacejar.image.config import (
    ImageConfig,
    app_layer_config,
    deps_layer_config,
    venv_layer_config,
)
from spacejar.image.layout import write_layout
from spacejar.image.manifest import AssembledImage, assemble_image, script_for
from spacejar.layers.layer import DirectoryLayerSource, Layer
from spacejar.layers.verify import verify_layers
from spacejar.registry.client import RegistryClient
from spacejar.registry.platform import host_architecture
from spacejar.types import ANNOTATION_TITLE, BuildStage, LayerKind

logger = logging.getLogger(__name__)

STAGE_ORDER = (
    BuildStage.INIT,
    BuildStage.BASE_RESOLVED,
    BuildStage.LAYERS_BUILT,
    BuildStage.VERIFIED,
    BuildStage.ASSEMBLED,
    BuildStage.WRITTEN,
    BuildStage.DONE,
)


@dataclass
class BuildReport:
    """Outcome of a successful build."""

    output_path: Path
    manifest_digest: str
    config_digest: str
    layer_digests: list[str]
    base_cache_hit: bool = False
    deps_cache_hit: bool = False
    stages: list[BuildStage] = field(default_factory=list)


class BuildOrchestrator:
    """Builds one image for one project.

    Args:
        project_dir: Python project to package.
        output_dir: Where the OCI layout is written.
        settings: Settings; loaded from the environment if omitted.
        base_image: Base image reference; defaults to ``settings.base_image``.
        cache: Layer cache; defaults to one at ``settings.cache_dir``.
        registry: Registry client to reuse; a new one is opened per build
            if omitted.
        architecture: Target architecture; defaults to the host's.

    Raises:
        ValidationError: If the project directory does not exist or the
            output's parent directory is missing.
    """

    def __init__(
        self,
        project_dir: Path,
        output_dir: Path,
        settings: Settings | None = None,
        base_image: str | None = None,
        cache: ContentAddressedCache | None = None,
        registry: RegistryClient | None = None,
        architecture: str | None = None,
    ) -> None:
        if not project_dir.exists():
            raise ValidationError(
                f"Project path does not exist: {project_dir}", code="invalid_project"
            )
        if not project_dir.is_dir():
            raise ValidationError(
                f"Project path is not a directory: {project_dir}",
                code="invalid_project",
            )
        if not output_dir.parent.is_dir():
            raise ValidationError(
                f"Output parent directory does not exist: {output_dir.parent}",
                code="invalid_output",
            )

        self.project_dir = project_dir.resolve()
        self.output_dir = output_dir.resolve()
        self.settings = settings or get_settings()
        self.base_image = base_image or self.settings.base_image
        self.cache = cache or ContentAddressedCache(self.settings.cache_dir)
        self.registry = registry
        self.architecture = architecture or host_architecture()
        self.project_config = ImageConfig.from_project(self.project_dir)

        self._reset()

    def _reset(self) -> None:
        self.stage = BuildStage.INIT
        self.stages: list[BuildStage] = [BuildStage.INIT]
        self.failure: str | None = None
        self.base_cache_hit = False
        self.deps_cache_hit = False

    def _advance(self, stage: BuildStage) -> None:
        self.stage = stage
        self.stages.append(stage)
        logger.info("Build stage: %s", stage.value)

    def _next_stage(self) -> BuildStage:
        return STAGE_ORDER[STAGE_ORDER.index(self.stage) + 1]

    async def build(self) -> BuildReport:
        """Run the whole pipeline.

        Raises:
            BuildError: Wrapping the first failure, with the typed error
                kept as its cause.
        """
        logger.info(
            "Building %s on %s into %s",
            self.project_dir,
            self.base_image,
            self.output_dir,
        )
        self._reset()
        work_dir = Path(tempfile.mkdtemp(prefix="spacejar-", dir=self.settings.tmp_dir))
        try:
            return await self._run(work_dir)
        except Exception as e:
            attempted = self._next_stage()
            self.failure = str(e)
            self.stage = BuildStage.FAILED
            self.stages.append(BuildStage.FAILED)
            logger.error("Build failed at stage %s: %s", attempted.value, e)
            raise BuildError(attempted.value, e) from e
        finally:
            self._remove_work_dir(work_dir)

    async def _run(self, work_dir: Path) -> BuildReport:
        base_layer, base_config = await self.resolve_base()
        self._advance(BuildStage.BASE_RESOLVED)

        venv_layer, deps_layer, app_layer = await gather_first_error(
            self.build_venv_layer(work_dir),
            self.build_deps_layer(work_dir),
            self.build_app_layer(work_dir),
        )
        layers = [base_layer, venv_layer, deps_layer, app_layer]
        self._advance(BuildStage.LAYERS_BUILT)

        await verify_layers(layers)
        self._advance(BuildStage.VERIFIED)

        configs = [
            base_config,
            venv_layer_config(),
            deps_layer_config(),
            app_layer_config(self.project_config),
        ]
        image = assemble_image(
            configs, layers, self.architecture, script_for(self.project_config)
        )
        self._advance(BuildStage.ASSEMBLED)

        await asyncio.to_thread(write_layout, self.output_dir, image)
        self._advance(BuildStage.WRITTEN)

        self._advance(BuildStage.DONE)
        return self._report(image)

    def _report(self, image: AssembledImage) -> BuildReport:
        return BuildReport(
            output_path=self.output_dir,
            manifest_digest=image.manifest_digest,
            config_digest=image.config_digest,
            layer_digests=[layer.digest for layer in image.layers],
            base_cache_hit=self.base_cache_hit,
            deps_cache_hit=self.deps_cache_hit,
            stages=list(self.stages),
        )

    async def _pull(self) -> tuple[Layer, ImageConfig]:
        if self.registry is not None:
            return await self.registry.pull(self.base_image)
        async with RegistryClient(self.settings) as client:
            return await client.pull(self.base_image)

    async def resolve_base(self) -> tuple[Layer, ImageConfig]:
        """Return the base image layer and config, pulling on a cache miss."""
        key = self.base_image
        layer = await asyncio.to_thread(self.cache.get_layer, key)
        if layer is not None:
            logger.info("Using cached base image %s", key)
            config = await asyncio.to_thread(self.cache.get_config, key)
            self.base_cache_hit = True
            return layer, config or ImageConfig()

        layer, config = await self._pull()
        metadata = LayerMetadata(
            layer_kind=LayerKind.APPLICATION, source_hash=layer.digest
        )
        await asyncio.to_thread(self.cache.store_layer, key, layer, metadata)
        await asyncio.to_thread(self.cache.store_config, key, config)
        return layer, config

    def _layer_source(self, path: Path, prefix: str) -> DirectoryLayerSource:
        return DirectoryLayerSource(
            path=path,
            prefix=prefix,
            annotations={ANNOTATION_TITLE: prefix},
            compression_level=self.settings.compression_level,
        )

    async def build_venv_layer(self, work_dir: Path) -> Layer:
        """Create a virtualenv and pack it under ``/venv``."""
        venv_dir = await create_virtualenv(
            work_dir / "venv",
            python=self.settings.python_executable,
            upgrade_pip=self.settings.upgrade_pip,
            timeout=self.settings.build_timeout,
        )
        return await self._layer_source(venv_dir, "venv").build()

    async def build_deps_layer(self, work_dir: Path) -> Layer:
        """Install requirements and pack them under ``/app/deps``.

        The layer is looked up and stored by requirements file hash.
        """
        requirements = self.project_dir / REQUIREMENTS_FILE
        cacheable = has_requirements(requirements)
        if cacheable:
            cached = await asyncio.to_thread(
                self.cache.get_dependency_layer, requirements
            )
            if cached is not None:
                logger.info("Using cached dependency layer for %s", requirements)
                self.deps_cache_hit = True
                return cached

        deps_dir = await install_dependencies(
            requirements,
            work_dir / "deps",
            python=self.settings.python_executable,
            timeout=self.settings.build_timeout,
        )
        layer = await self._layer_source(deps_dir, "app/deps").build()
        if cacheable:
            await asyncio.to_thread(
                self.cache.store_dependency_layer, requirements, layer
            )
        return layer

    async def build_app_layer(self, work_dir: Path) -> Layer:
        """Stage the project sources and pack them under ``/app``."""
        app_dir = await asyncio.to_thread(
            stage_application,
            self.project_dir,
            work_dir / "app",
            self.project_config.exclude,
            [self.output_dir],
        )
        return await self._layer_source(app_dir, "app").build()

    @staticmethod
    def _remove_work_dir(work_dir: Path) -> None:
        try:
            shutil.rmtree(work_dir)
        except OSError as e:
            logger.warning("Failed to remove build directory %s: %s", work_dir, e)


async def build_image(
    project_dir: Path,
    output_dir: Path,
    settings: Settings | None = None,
    base_image: str | None = None,
) -> BuildReport:
    """Build an image for *project_dir* and write it to *output_dir*."""
    orchestrator = BuildOrchestrator(
        project_dir, output_dir, settings=settings, base_image=base_image
    )
    return await orchestrator.build()


__all__ = ["BuildOrchestrator", "BuildReport", "build_image"]
