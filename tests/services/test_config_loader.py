import pytest

from shipwright.errors import PipelineError
from shipwright.services.config_loader import ConfigLoader


def test_config_loader_loads_yaml_mapping(tmp_path):
    config_file = tmp_path / ".shipwright.yml"
    config_file.write_text(
        "account_id: '205930632952'\nregion: eu-west-1\nhealth_attempts: 5\n"
        "destroy_targets:\n  - kubernetes_deployment.web\n",
        encoding="utf-8",
    )

    loader = ConfigLoader()
    loaded = loader.load(str(config_file))

    assert loaded["account_id"] == "205930632952"
    assert loaded["region"] == "eu-west-1"
    assert loaded["health_attempts"] == 5
    assert loaded["destroy_targets"] == ["kubernetes_deployment.web"]


def test_config_loader_returns_empty_without_path():
    assert ConfigLoader().load(None) == {}


def test_config_loader_rejects_unknown_keys(tmp_path):
    config_file = tmp_path / ".shipwright.yml"
    config_file.write_text("unknown_key: true\n", encoding="utf-8")

    loader = ConfigLoader()

    with pytest.raises(PipelineError, match="Unknown configuration keys"):
        loader.load(str(config_file))


def test_config_loader_rejects_non_mapping_root(tmp_path):
    config_file = tmp_path / ".shipwright.yml"
    config_file.write_text("- a\n- b\n", encoding="utf-8")

    with pytest.raises(PipelineError, match="YAML mapping"):
        ConfigLoader().load(str(config_file))


def test_config_loader_rejects_scalar_destroy_targets(tmp_path):
    config_file = tmp_path / ".shipwright.yml"
    config_file.write_text("destroy_targets: kubernetes_deployment.web\n", encoding="utf-8")

    with pytest.raises(PipelineError, match="destroy_targets"):
        ConfigLoader().load(str(config_file))


def test_config_loader_missing_file(tmp_path):
    with pytest.raises(PipelineError, match="Config file not found"):
        ConfigLoader().load(str(tmp_path / "missing.yml"))
