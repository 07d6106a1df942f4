import yaml
import pytest

from cloddo import config as config_module
from cloddo.config import Config

ENV_VARS = [
    "CLODDO_API_KEY",
    "ANTHROPIC_API_KEY",
    "CLODDO_BASE_URL",
    "CLODDO_ENDPOINT",
    "CLODDO_MODEL",
    "CLODDO_MAX_TOKENS",
    "CLODDO_DEBUG",
]


@pytest.fixture
def isolated(tmp_path, monkeypatch):
    """Point the global config at tmp_path and run from an empty project dir."""
    home = tmp_path / "home"
    project = tmp_path / "project"
    project.mkdir()
    monkeypatch.setattr(config_module, "CONFIG_DIR", home)
    monkeypatch.setattr(config_module, "CONFIG_FILE", home / "config.yaml")
    monkeypatch.chdir(project)
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return home, project


def write_yaml(path, data):
    with open(path, "w") as f:
        yaml.dump(data, f)


def test_first_run_writes_template(isolated):
    """Test that a template global config is created and loads cleanly."""
    home, _ = isolated

    config = Config.load()

    assert (home / "config.yaml").exists()
    assert config.api_key == ""
    assert config.base_url == "https://api.anthropic.com/v1"
    assert config.max_tokens == 4096
    assert config.stream is True


def test_load_config_from_yaml(isolated):
    """Test loading configuration from a local YAML file."""
    _, project = isolated
    write_yaml(project / ".cloddo.yaml", {
        "api_key": "test-key-from-yaml",
        "model": "model-from-yaml",
        "debug": True,
        "unknown_option": "ignored",
    })

    config = Config.load()

    assert config.api_key == "test-key-from-yaml"
    assert config.model == "model-from-yaml"
    assert config.debug is True


def test_local_overrides_global(isolated):
    home, project = isolated
    home.mkdir()
    write_yaml(home / "config.yaml", {"model": "global-model", "max_tokens": 100})
    write_yaml(project / ".cloddo.yaml", {"model": "local-model"})

    config = Config.load()

    assert config.model == "local-model"
    assert config.max_tokens == 100


def test_endpoint_is_an_alias_for_base_url(isolated):
    _, project = isolated
    write_yaml(project / ".cloddo.yaml", {"endpoint": "http://localhost:8080/v1"})

    assert Config.load().base_url == "http://localhost:8080/v1"


def test_broken_yaml_is_ignored(isolated):
    _, project = isolated
    (project / ".cloddo.yaml").write_text("model: [unclosed")

    assert Config.load().model == "claude-3-5-sonnet-20241022"


def test_env_override_yaml(isolated, monkeypatch):
    """Test that environment variables override YAML config."""
    _, project = isolated
    write_yaml(project / ".cloddo.yaml", {"model": "model-from-yaml", "api_key": "yaml-key"})
    monkeypatch.setenv("CLODDO_MODEL", "model-from-env")
    monkeypatch.setenv("ANTHROPIC_API_KEY", "env-key")
    monkeypatch.setenv("CLODDO_MAX_TOKENS", "256")
    monkeypatch.setenv("CLODDO_DEBUG", "true")

    config = Config.load()

    assert config.model == "model-from-env"
    assert config.api_key == "env-key"
    assert config.max_tokens == 256
    assert config.debug is True


def test_cloddo_key_wins_over_anthropic_key(isolated, monkeypatch):
    monkeypatch.setenv("CLODDO_API_KEY", "cloddo-key")
    monkeypatch.setenv("ANTHROPIC_API_KEY", "anthropic-key")

    assert Config.load().api_key == "cloddo-key"


def test_validate():
    assert Config(api_key="k").validate() == []

    errors = Config(api_key="", max_tokens=0, request_timeout=0).validate()
    assert len(errors) == 3
    assert "API key" in errors[0]
