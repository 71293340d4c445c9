"""Tests for image/manifest.py and image/models.py."""

import json

from spacejar.image.config import ImageConfig
from spacejar.image.manifest import (
    FIXED_ENV,
    assemble_image,
    build_image_config,
    build_manifest,
    entrypoint_for,
    merge_configs,
    script_for,
    serialize_config,
)
from spacejar.image.models import Manifest
from spacejar.layers.layer import Layer, sha256_digest
from spacejar.types import ANNOTATION_BASE_NAME, OCI_IMAGE_CONFIG, OCI_IMAGE_MANIFEST


def _layers() -> list[Layer]:
    return [
        Layer.from_tar(b"base", annotations={ANNOTATION_BASE_NAME: "py"}),
        Layer.from_tar(b"venv"),
        Layer.from_tar(b"deps"),
        Layer.from_tar(b"app"),
    ]


class TestMergeConfigs:
    """Tests for merge_configs."""

    def test_env_order_and_fixed_vars(self):
        """Env lists are concatenated in order, then the fixed vars follow."""
        configs = [
            ImageConfig(env=["BASE=1"]),
            ImageConfig(env=["VENV=1"]),
            ImageConfig(),
            ImageConfig(env=["APP=1"]),
        ]
        merged = merge_configs(configs)

        assert merged.env == ["BASE=1", "VENV=1", "APP=1", *FIXED_ENV]
        assert merged.env[-3:] == [
            "PYTHONUNBUFFERED=1",
            "PYTHONDONTWRITEBYTECODE=1",
            "PYTHONPATH=/app/deps:/app",
        ]

    def test_last_non_empty_wins(self):
        """working_dir and cmd come from the last config that sets them."""
        configs = [
            ImageConfig(cmd=["bash"], working_dir="/"),
            ImageConfig(cmd=["python", "main.py"], working_dir="/app"),
            ImageConfig(),
        ]
        merged = merge_configs(configs)

        assert merged.cmd == ["python", "main.py"]
        assert merged.working_dir == "/app"

    def test_entrypoint_forced(self):
        """Per-layer entrypoints are ignored."""
        merged = merge_configs([ImageConfig(entrypoint=["/bin/false"])], "server.py")
        assert merged.entrypoint == [
            "/bin/sh",
            "-c",
            ". /venv/bin/activate && python /app/server.py",
        ]

    def test_union_of_metadata(self):
        """Labels, ports and volumes are unioned."""
        merged = merge_configs(
            [
                ImageConfig(labels={"a": "1"}, exposed_ports=["80/tcp"]),
                ImageConfig(
                    labels={"b": "2"}, exposed_ports=["443/tcp"], volumes=["/d"]
                ),
            ]
        )
        assert merged.labels == {"a": "1", "b": "2"}
        assert merged.exposed_ports == {"80/tcp": {}, "443/tcp": {}}
        assert merged.volumes == {"/d": {}}

    def test_script_for(self):
        """The entrypoint script defaults to main.py."""
        assert script_for(ImageConfig()) == "main.py"
        serve = ImageConfig(entrypoint=["app.py", "--serve"])
        assert script_for(serve) == "app.py --serve"
        assert entrypoint_for("main.py")[-1].endswith("python /app/main.py")


class TestImageConfigBlob:
    """Tests for the serialized config blob."""

    def test_oci_spelling(self):
        """The blob uses OCI field names and lists diff_ids in layer order."""
        layers = _layers()
        config = build_image_config(merge_configs([ImageConfig()]), layers, "amd64")
        data = json.loads(serialize_config(config))

        assert data["architecture"] == "amd64"
        assert data["os"] == "linux"
        assert data["rootfs"]["type"] == "layers"
        assert data["rootfs"]["diff_ids"] == [layer.diff_id for layer in layers]
        assert "Env" in data["config"]
        assert "Entrypoint" in data["config"]
        assert "Cmd" not in data["config"]

    def test_canonical(self):
        """Serialization is stable and compact."""
        config = build_image_config(merge_configs([ImageConfig()]), _layers(), "arm64")
        blob = serialize_config(config)

        assert blob == serialize_config(config)
        canonical = json.dumps(json.loads(blob), sort_keys=True, separators=(",", ":"))
        assert blob == canonical.encode()


class TestBuildManifest:
    """Tests for build_manifest and assemble_image."""

    def test_manifest_structure(self):
        """The manifest references the config blob and every layer in order."""
        layers = _layers()
        config_blob = b'{"architecture":"amd64"}'
        manifest = build_manifest(config_blob, layers)
        data = manifest.to_oci_dict()

        assert data["schemaVersion"] == 2
        assert data["mediaType"] == OCI_IMAGE_MANIFEST
        assert data["config"]["mediaType"] == OCI_IMAGE_CONFIG
        assert data["config"]["digest"] == sha256_digest(config_blob)
        assert data["config"]["size"] == len(config_blob)
        assert [d["digest"] for d in data["layers"]] == [x.digest for x in layers]
        sizes = [d["size"] for d in data["layers"]]
        assert sizes == [layer.compressed_size for layer in layers]

    def test_annotations_only_when_present(self):
        """Layers without annotations have no annotations key."""
        data = build_manifest(b"{}", _layers()).to_oci_dict()

        assert data["layers"][0]["annotations"] == {
            "org.opencontainers.image.base.name": "py"
        }
        assert "annotations" not in data["layers"][1]

    def test_assemble_image(self):
        """assemble_image hashes exactly the config bytes it returns."""
        layers = _layers()
        image = assemble_image([ImageConfig.default_config()], layers, "amd64")

        assert image.config_digest == sha256_digest(image.config_blob)
        assert image.manifest_digest == sha256_digest(image.manifest_blob)
        assert len(image.manifest.layers) == 4
        assert image.layers == tuple(layers)

    def test_manifest_round_trip(self):
        """A serialized manifest parses back to the same model."""
        image = assemble_image([ImageConfig()], _layers(), "amd64")
        assert Manifest.model_validate_json(image.manifest_blob) == image.manifest
