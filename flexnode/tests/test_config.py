import json
from pathlib import Path

import pytest
import yaml

from flexnode.config import _apply_env_overrides, config_from_dict, default_runtime_dir, load_config
from flexnode.errors import ConfigurationError

from conftest import CLUSTER_ID, SUBSCRIPTION_ID


def test_derives_target_cluster_fields(config_data):
    config = config_from_dict(config_data)

    assert config.target_cluster_name == "aks-one"
    assert config.target_cluster_resource_group == "rg-aks"
    assert config.target_cluster_subscription_id == SUBSCRIPTION_ID
    assert config.azure.target_cluster.node_resource_group == "MC_rg-aks_aks-one_eastus"


def test_arc_fallbacks(config_data):
    config_data["azure"]["arc"] = {}
    config = config_from_dict(config_data)

    assert config.arc_resource_group == "rg-aks"
    assert config.arc_location == "eastus"
    assert config.arc_machine_name


def test_defaults_applied(config_data):
    config = config_from_dict(config_data)

    assert config.agent.status_interval == 60
    assert config.agent.bootstrap_check_interval == 120
    assert config.agent.spec_refresh_interval == 1800
    assert config.kubernetes.version == "1.32.7"
    assert config.node.max_pods == 110
    assert config.is_sp_configured is False


def test_service_principal_requires_all_fields(config_data):
    config_data["azure"]["servicePrincipal"] = {"tenantId": "t", "clientId": "c", "clientSecret": "s"}
    assert config_from_dict(config_data).is_sp_configured is True

    config_data["azure"]["servicePrincipal"]["clientSecret"] = ""
    assert config_from_dict(config_data).is_sp_configured is False


@pytest.mark.parametrize("mutate,fragment", [
    (lambda d: d["azure"].pop("tenantId"), "tenantId"),
    (lambda d: d["azure"]["targetCluster"].pop("location"), "location"),
    (lambda d: d["azure"]["targetCluster"].update(resourceId="/subscriptions/bad"), "resource ID"),
    (lambda d: d["azure"].update(cloud="AzureMoonCloud"), "azure.cloud"),
    (lambda d: d["agent"].update(logLevel="verbose"), "logLevel"),
])
def test_invalid_config_rejected(config_data, mutate, fragment):
    mutate(config_data)

    with pytest.raises(ConfigurationError) as exc_info:
        config_from_dict(config_data)
    assert fragment in str(exc_info.value)


def test_load_yaml_and_json_files(config_data, tmp_path):
    yaml_path = tmp_path / "config.yaml"
    yaml_path.write_text(yaml.safe_dump(config_data))
    json_path = tmp_path / "config.json"
    json_path.write_text(json.dumps(config_data))

    assert load_config(yaml_path).target_cluster_id == CLUSTER_ID
    assert load_config(json_path).target_cluster_id == CLUSTER_ID


def test_load_config_requires_path():
    with pytest.raises(ConfigurationError):
        load_config("")


def test_load_config_missing_file(tmp_path):
    with pytest.raises(ConfigurationError) as exc_info:
        load_config(tmp_path / "nope.json")
    assert "failed to read config file" in str(exc_info.value)


def test_load_config_rejects_non_mapping(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("- just\n- a list\n")

    with pytest.raises(ConfigurationError):
        load_config(path)


def test_environment_overrides_file_values(config_data, tmp_path, monkeypatch):
    path = tmp_path / "config.json"
    path.write_text(json.dumps(config_data))
    monkeypatch.setenv("FLEXNODE_AGENT__LOG_LEVEL", "debug")
    monkeypatch.setenv("FLEXNODE_AZURE__ARC__MACHINE_NAME", "from-env")

    config = load_config(path)

    assert config.agent.log_level == "debug"
    assert config.arc_machine_name == "from-env"


def test_env_override_creates_missing_sections():
    data = _apply_env_overrides({}, environ={"FLEXNODE_KUBERNETES__VERSION": "1.31.2", "OTHER": "x"})

    assert data == {"kubernetes": {"version": "1.31.2"}}


def test_status_dir_override(config_data, tmp_path):
    config_data["paths"] = {"statusDir": str(tmp_path)}

    assert config_from_dict(config_data).status_dir == Path(tmp_path)


def test_default_runtime_dir_for_regular_user(monkeypatch):
    monkeypatch.setattr("flexnode.config.getpass.getuser", lambda: "alice")
    assert default_runtime_dir() == Path("/tmp/flexnode")

    monkeypatch.setattr("flexnode.config.getpass.getuser", lambda: "flexnode")
    assert default_runtime_dir() == Path("/run/flexnode")
