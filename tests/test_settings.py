"""Tests for batch_prep.settings."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from batch_prep.exceptions import ConfigError
from batch_prep.settings import (
    CPU_BASE_CONTAINER_IMAGE,
    GPU_BASE_CONTAINER_IMAGE,
    PrepSettings,
    load_settings,
)

MISSING = Path("/nonexistent/batch-prep.toml")


class TestPrepSettings:
    def test_defaults(self) -> None:
        settings = PrepSettings()
        assert settings.resource_group == "batch-pool-verify"
        assert settings.location == "swedencentral"
        assert settings.os_version == "22.04"
        assert settings.vm_size == "Standard_D2s_v3"
        assert settings.os_profile.node_agent_sku == "batch.node.ubuntu 22.04"
        assert settings.container_image == CPU_BASE_CONTAINER_IMAGE

    def test_gpu_selects_gpu_size(self) -> None:
        settings = PrepSettings(enable_gpu=True)
        assert settings.vm_size == "Standard_NC4as_T4_v3"
        assert settings.container_image == GPU_BASE_CONTAINER_IMAGE

    def test_explicit_vm_size_wins(self) -> None:
        assert PrepSettings(enable_gpu=True, vm_size="Standard_NC6s_v3").vm_size == (
            "Standard_NC6s_v3"
        )

    def test_almalinux_default_version(self) -> None:
        settings = PrepSettings(base_os="almalinux")
        assert settings.os_version == "8"
        assert settings.os_profile.package_manager == "dnf"

    def test_unknown_os_version(self) -> None:
        with pytest.raises(ValidationError, match="unsupported ubuntu version"):
            PrepSettings(os_version="18.04")

    def test_node_count_must_be_positive(self) -> None:
        with pytest.raises(ValidationError):
            PrepSettings(node_count=0)

    def test_frozen(self) -> None:
        settings = PrepSettings()
        with pytest.raises(ValidationError):
            settings.pool_id = "other"  # type: ignore[misc]

    def test_derived_names_are_stable(self) -> None:
        a = PrepSettings(resource_group="rg1")
        b = PrepSettings(resource_group="rg1")
        c = PrepSettings(resource_group="rg2")
        assert a.batch_account_name == b.batch_account_name
        assert a.batch_account_name != c.batch_account_name
        assert a.batch_account_name.startswith("batch")
        assert len(a.batch_account_name) <= 24
        assert a.batch_account_name.isalnum() and a.batch_account_name.islower()

    def test_registry_image(self) -> None:
        settings = PrepSettings(
            enable_gpu=True,
            create_registry=True,
            build_container_image=True,
            registry_name="myreg",
        )
        assert settings.container_image == "myreg.azurecr.io/batch-gpu-pytorch:latest"

    def test_image_version_id(self) -> None:
        image_id = PrepSettings().image_version_id("sub-1")
        assert image_id == (
            "/subscriptions/sub-1/resourceGroups/batch-pool-verify/providers/Microsoft.Compute"
            "/galleries/batchImageGallery/images/batchCustomImage/versions/1.0.0"
        )

    def test_resolve_path(self, tmp_path: Path) -> None:
        settings = PrepSettings(work_dir=tmp_path)
        assert settings.resolve_path(Path("a.json")) == tmp_path / "a.json"
        assert settings.resolve_path(Path("/abs/a.json")) == Path("/abs/a.json")


class TestLoadSettings:
    def test_defaults(self) -> None:
        assert load_settings(config_path=MISSING).pool_id == "myBatchPool"

    def test_env_overrides_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("BATCHPREP_POOL_ID", "env-pool")
        monkeypatch.setenv("BATCHPREP_ENABLE_GPU", "true")
        settings = load_settings(config_path=MISSING)
        assert settings.pool_id == "env-pool"
        assert settings.enable_gpu is True

    def test_overrides_beat_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("BATCHPREP_POOL_ID", "env-pool")
        settings = load_settings({"pool_id": "flag-pool", "vm_size": None}, config_path=MISSING)
        assert settings.pool_id == "flag-pool"
        assert settings.vm_size == "Standard_D2s_v3"

    def test_toml_profile(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        cfg = tmp_path / "batch-prep.toml"
        cfg.write_text(
            '[default]\npool_id = "toml-pool"\nnode_count = 2\n\n'
            '[gpu]\nenable_gpu = true\npool_id = "gpu-pool"\n',
            encoding="utf-8",
        )
        assert load_settings(config_path=cfg).pool_id == "toml-pool"
        assert load_settings(config_path=cfg).node_count == 2

        gpu = load_settings(config_path=cfg, profile="gpu")
        assert gpu.pool_id == "gpu-pool"
        assert gpu.vm_size == "Standard_NC4as_T4_v3"

        monkeypatch.setenv("BATCHPREP_PROFILE", "gpu")
        assert load_settings(config_path=cfg).enable_gpu is True

    def test_env_beats_toml(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        cfg = tmp_path / "batch-prep.toml"
        cfg.write_text('[default]\npool_id = "toml-pool"\n', encoding="utf-8")
        monkeypatch.setenv("BATCHPREP_POOL_ID", "env-pool")
        assert load_settings(config_path=cfg).pool_id == "env-pool"

    def test_default_config_file_in_cwd(self, tmp_path: Path) -> None:
        (tmp_path / "batch-prep.toml").write_text(
            '[default]\nlocation = "westeurope"\n', encoding="utf-8"
        )
        assert load_settings().location == "westeurope"

    def test_malformed_toml(self, tmp_path: Path) -> None:
        cfg = tmp_path / "bad.toml"
        cfg.write_text("[default\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="Failed to parse"):
            load_settings(config_path=cfg)

    def test_invalid_value_is_config_error(self) -> None:
        with pytest.raises(ConfigError, match="node_count"):
            load_settings({"node_count": 0}, config_path=MISSING)

    def test_unknown_key_is_config_error(self, tmp_path: Path) -> None:
        cfg = tmp_path / "batch-prep.toml"
        cfg.write_text('[default]\nno_such_option = 1\n', encoding="utf-8")
        with pytest.raises(ConfigError, match="no_such_option"):
            load_settings(config_path=cfg)
