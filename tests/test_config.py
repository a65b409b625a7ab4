"""Tests for berth config loading."""

from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from berth.config import BerthConfig, load_config
from berth.sandbox.config import (
    DockerRuntimeConfig,
    SandboxConfig,
    SandboxMode,
    SandboxPruneConfig,
    SandboxScope,
    WorkspaceAccess,
)


@pytest.fixture(autouse=True)
def _clear_env(monkeypatch):
    for var in ("BERTH_STATE_DIR", "BERTH_LOG_LEVEL", "BERTH_SANDBOX_IMAGE"):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    config = {
        "state_dir": str(tmp_path / "state"),
        "log_level": "debug",
        "sandbox": {
            "mode": "selected",
            "scope": "shared",
            "workspace_access": "ro",
            "workspace_root": str(tmp_path / "sandboxes"),
            "docker": {
                "image": "test-image",
                "container_prefix": "prefix-",
                "env": {"LANG": "C.UTF-8", "TZ": "UTC"},
                "env_file": str(tmp_path / "sandbox.env"),
                "secret_env_vars": ["INTERNAL_CODE"],
            },
            "prune": {"max_age_hours": 12, "max_containers": 4},
        },
    }
    path = tmp_path / "config.yaml"
    path.write_text(yaml.dump(config))
    return path


class TestDefaults:
    def test_sandbox_defaults(self):
        cfg = SandboxConfig()
        assert cfg.mode == SandboxMode.ALL
        assert cfg.scope == SandboxScope.PER_SESSION
        assert cfg.workspace_access == WorkspaceAccess.RW
        assert cfg.enabled is True
        assert cfg.docker.env == {"LANG": "C.UTF-8"}
        assert cfg.docker.cap_drop == ["ALL"]
        assert cfg.docker.network == "none"

    def test_default_env_not_shared_between_instances(self):
        a, b = DockerRuntimeConfig(), DockerRuntimeConfig()
        a.env["X"] = "1"
        assert "X" not in b.env

    def test_mode_none_disables(self):
        assert SandboxConfig(mode="none").enabled is False

    def test_registry_path(self):
        assert BerthConfig(state_dir="/var/lib/berth").registry_path == Path(
            "/var/lib/berth/containers.db"
        )


class TestValidation:
    def test_workspace_root_must_be_absolute(self):
        with pytest.raises(ValidationError, match="absolute"):
            SandboxConfig(workspace_root="relative/dir")

    def test_command_timeout_must_be_positive(self):
        with pytest.raises(ValidationError):
            DockerRuntimeConfig(command_timeout=0)

    def test_prune_thresholds_non_negative(self):
        with pytest.raises(ValidationError):
            SandboxPruneConfig(idle_hours=-1)

    def test_unknown_scope_rejected(self):
        with pytest.raises(ValidationError):
            SandboxConfig(scope="per-user")

    def test_unknown_log_level_falls_back_to_info(self):
        assert BerthConfig(log_level="loud").log_level == "info"


class TestLoadConfig:
    def test_loads_yaml(self, config_file: Path, tmp_path: Path):
        config = load_config(config_file)

        assert config.state_dir == str(tmp_path / "state")
        assert config.log_level == "debug"
        sandbox = config.sandbox
        assert sandbox.mode == SandboxMode.SELECTED
        assert sandbox.scope == SandboxScope.SHARED
        assert sandbox.workspace_access == WorkspaceAccess.RO
        assert sandbox.docker.image == "test-image"
        assert sandbox.docker.env == {"LANG": "C.UTF-8", "TZ": "UTC"}
        assert sandbox.docker.secret_env_vars == ["INTERNAL_CODE"]
        assert sandbox.prune.max_age_hours == 12
        assert sandbox.prune.max_containers == 4
        # Unset fields keep their defaults
        assert sandbox.prune.idle_hours == 24

    def test_empty_file_gives_defaults(self, tmp_path: Path):
        path = tmp_path / "config.yaml"
        path.write_text("")
        assert load_config(path) == BerthConfig()

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.yaml")

    def test_invalid_values_raise(self, tmp_path: Path):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.dump({"sandbox": {"workspace_root": "not/absolute"}}))
        with pytest.raises(ValidationError):
            load_config(path)

    def test_env_overrides(self, config_file: Path, monkeypatch):
        monkeypatch.setenv("BERTH_STATE_DIR", "/srv/berth")
        monkeypatch.setenv("BERTH_LOG_LEVEL", "warn")
        monkeypatch.setenv("BERTH_SANDBOX_IMAGE", "override:1")

        config = load_config(config_file)

        assert config.state_dir == "/srv/berth"
        assert config.log_level == "warn"
        assert config.sandbox.docker.image == "override:1"

    def test_bad_log_level_override_keeps_file_value(self, config_file: Path, monkeypatch):
        monkeypatch.setenv("BERTH_LOG_LEVEL", "verbose")
        assert load_config(config_file).log_level == "debug"
