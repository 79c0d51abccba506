"""Configuration management for the flexnode agent.

Configuration is loaded once at process start from a JSON or YAML file and
then passed explicitly to every component. Sources, highest precedence first:

1. Environment variables (``FLEXNODE_<SECTION>__<FIELD>``, also read from ``.env``)
2. The configuration file
3. Default values
"""
import getpass
import logging
import os
import re
import socket
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from dotenv import load_dotenv
from jsonschema import ValidationError, validate
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as ModelValidationError
from pydantic.alias_generators import to_camel

from .errors import ConfigurationError
from .logging import LOG_LEVELS

logger = logging.getLogger(__name__)

DEFAULT_LOG_DIR = "/var/log/flexnode"
DEFAULT_AZURE_CLOUD = "AzurePublicCloud"
SERVICE_USER = "flexnode"
ENV_PREFIX = "FLEXNODE_"
ENV_NESTED_DELIMITER = "__"

VALID_AZURE_CLOUDS = ("AzurePublicCloud",)

# /subscriptions/{sub}/resourceGroups/{rg}/providers/Microsoft.ContainerService/managedClusters/{name}
AKS_CLUSTER_RESOURCE_ID_PATTERN = re.compile(
    r"^/subscriptions/([0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12})"
    r"/resourceGroups/([a-zA-Z0-9_\-\.]+)"
    r"/providers/Microsoft\.ContainerService/managedClusters/([a-zA-Z0-9_\-\.]+)$"
)

CONFIG_SCHEMA = {
    "type": "object",
    "properties": {
        "azure": {
            "type": "object",
            "properties": {
                "subscriptionId": {"type": "string", "minLength": 1},
                "tenantId": {"type": "string", "minLength": 1},
                "cloud": {"type": "string"},
                "servicePrincipal": {
                    "type": ["object", "null"],
                    "properties": {
                        "tenantId": {"type": "string"},
                        "clientId": {"type": "string"},
                        "clientSecret": {"type": "string"},
                    },
                },
                "arc": {
                    "type": ["object", "null"],
                    "properties": {
                        "machineName": {"type": "string"},
                        "resourceGroup": {"type": "string"},
                        "location": {"type": "string"},
                        "tags": {"type": "object", "additionalProperties": {"type": "string"}},
                    },
                },
                "targetCluster": {
                    "type": "object",
                    "properties": {
                        "resourceId": {"type": "string", "minLength": 1},
                        "location": {"type": "string", "minLength": 1},
                    },
                    "required": ["resourceId", "location"],
                },
            },
            "required": ["subscriptionId", "tenantId", "targetCluster"],
        },
        "agent": {"type": "object"},
        "containerd": {"type": "object"},
        "kubernetes": {"type": "object"},
        "cni": {"type": "object"},
        "runc": {"type": "object"},
        "node": {"type": "object"},
        "paths": {"type": "object"},
    },
    "required": ["azure"],
}


class _Model(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class ServicePrincipalConfig(_Model):
    """Optional service principal credentials; used instead of the Azure CLI when complete."""
    tenant_id: str = ""
    client_id: str = ""
    client_secret: str = ""


class ArcConfig(_Model):
    machine_name: str = ""
    resource_group: str = ""
    location: str = ""
    tags: Dict[str, str] = Field(default_factory=dict)


class TargetClusterConfig(_Model):
    resource_id: str
    location: str
    # Populated from resource_id by load_config
    name: str = ""
    resource_group: str = ""
    subscription_id: str = ""
    node_resource_group: str = ""


class AzureConfig(_Model):
    subscription_id: str
    tenant_id: str
    cloud: str = DEFAULT_AZURE_CLOUD
    service_principal: Optional[ServicePrincipalConfig] = None
    arc: ArcConfig = Field(default_factory=ArcConfig)
    target_cluster: TargetClusterConfig


class AgentConfig(_Model):
    log_level: str = "info"
    log_dir: str = DEFAULT_LOG_DIR
    # Daemon timers, in seconds
    status_interval: float = 60
    bootstrap_check_interval: float = 120
    spec_refresh_interval: float = 1800
    status_stale_after: float = 300
    api_timeout: float = 30


class KubernetesConfig(_Model):
    version: str = "1.32.7"
    url_template: str = "https://acs-mirror.azureedge.net/kubernetes/v{version}/binaries/kubernetes-node-linux-{arch}.tar.gz"


class RuntimeConfig(_Model):
    version: str = "1.1.12"
    url: str = "https://github.com/opencontainers/runc/releases/download/v1.1.12/runc.amd64"


class ContainerdConfig(_Model):
    version: str = "1.7.20"
    pause_image: str = "mcr.microsoft.com/oss/kubernetes/pause:3.6"
    metrics_address: str = "0.0.0.0:10257"


class CNIConfig(_Model):
    version: str = "1.5.1"


class KubeletConfig(_Model):
    kube_reserved: Dict[str, str] = Field(default_factory=dict)
    eviction_hard: Dict[str, str] = Field(default_factory=dict)
    image_gc_high_threshold: int = 85
    image_gc_low_threshold: int = 80


class NodeConfig(_Model):
    max_pods: int = 110
    labels: Dict[str, str] = Field(default_factory=dict)
    kubelet: KubeletConfig = Field(default_factory=KubeletConfig)


class KubernetesPathsConfig(_Model):
    config_dir: str = "/etc/kubernetes"
    certs_dir: str = "/etc/kubernetes/certs"
    manifests_dir: str = "/etc/kubernetes/manifests"
    volume_plugin_dir: str = "/etc/kubernetes/volumeplugins"
    kubelet_dir: str = "/var/lib/kubelet"


class PathsConfig(_Model):
    kubernetes: KubernetesPathsConfig = Field(default_factory=KubernetesPathsConfig)
    # Empty means: /run/flexnode for the service user, /tmp/flexnode otherwise
    status_dir: str = ""
    spec_dir: str = ""


class Config(_Model):
    """Complete agent configuration. Treated as immutable after load_config."""
    azure: AzureConfig
    agent: AgentConfig = Field(default_factory=AgentConfig)
    containerd: ContainerdConfig = Field(default_factory=ContainerdConfig)
    kubernetes: KubernetesConfig = Field(default_factory=KubernetesConfig)
    cni: CNIConfig = Field(default_factory=CNIConfig)
    runc: RuntimeConfig = Field(default_factory=RuntimeConfig)
    node: NodeConfig = Field(default_factory=NodeConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)

    @property
    def subscription_id(self) -> str:
        return self.azure.subscription_id

    @property
    def tenant_id(self) -> str:
        return self.azure.tenant_id

    @property
    def is_sp_configured(self) -> bool:
        sp = self.azure.service_principal
        return bool(sp and sp.client_id and sp.client_secret and sp.tenant_id)

    @property
    def arc_machine_name(self) -> str:
        if self.azure.arc.machine_name:
            return self.azure.arc.machine_name
        return socket.gethostname()

    @property
    def arc_resource_group(self) -> str:
        return self.azure.arc.resource_group or self.azure.target_cluster.resource_group

    @property
    def arc_location(self) -> str:
        return self.azure.arc.location or self.azure.target_cluster.location

    @property
    def arc_tags(self) -> Dict[str, str]:
        return dict(self.azure.arc.tags)

    @property
    def target_cluster_id(self) -> str:
        return self.azure.target_cluster.resource_id

    @property
    def target_cluster_name(self) -> str:
        return self.azure.target_cluster.name

    @property
    def target_cluster_resource_group(self) -> str:
        return self.azure.target_cluster.resource_group

    @property
    def target_cluster_subscription_id(self) -> str:
        return self.azure.target_cluster.subscription_id or self.azure.subscription_id

    @property
    def status_dir(self) -> Path:
        return Path(self.paths.status_dir) if self.paths.status_dir else default_runtime_dir()

    @property
    def spec_dir(self) -> Path:
        return Path(self.paths.spec_dir) if self.paths.spec_dir else default_runtime_dir()


def default_runtime_dir() -> Path:
    """Runtime directory for status artifacts.

    Uses /run/flexnode when running as the flexnode service user (systemd) and
    /tmp/flexnode for direct execution during testing and development.
    """
    try:
        if getpass.getuser() == SERVICE_USER:
            return Path("/run/flexnode")
    except (KeyError, OSError):
        pass
    return Path("/tmp/flexnode")


def _apply_env_overrides(data: Dict[str, Any], environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """Overlay FLEXNODE_<SECTION>__<FIELD> variables onto the raw config dict.

    Field names in the variable are snake_case and are mapped to the camelCase
    keys used by the file format, e.g. FLEXNODE_AZURE__TARGET_CLUSTER__LOCATION.
    """
    environ = os.environ if environ is None else environ
    for key, value in environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        parts = [p for p in key[len(ENV_PREFIX):].lower().split(ENV_NESTED_DELIMITER) if p]
        if not parts:
            continue
        node = data
        for part in parts[:-1]:
            child = node.get(to_camel(part))
            if not isinstance(child, dict):
                child = {}
                node[to_camel(part)] = child
            node = child
        node[to_camel(parts[-1])] = value
        logger.debug(f"Applied configuration override from {key}")
    return data


def parse_cluster_resource_id(resource_id: str):
    """Split an AKS cluster resource ID into (subscription, resource group, name).

    Raises:
        ConfigurationError: If the ID does not look like a managed cluster resource ID
    """
    match = AKS_CLUSTER_RESOURCE_ID_PATTERN.match(resource_id or "")
    if not match:
        raise ConfigurationError(
            "invalid AKS cluster resource ID format. Expected format: "
            "/subscriptions/{subscription-id}/resourceGroups/{resource-group}"
            "/providers/Microsoft.ContainerService/managedClusters/{cluster-name}"
        )
    return match.group(1), match.group(2), match.group(3)


def config_from_dict(data: Dict[str, Any]) -> Config:
    """Validate a raw configuration mapping and build a Config from it.

    Raises:
        ConfigurationError: If the mapping is structurally or semantically invalid
    """
    try:
        validate(instance=data, schema=CONFIG_SCHEMA)
    except ValidationError as ve:
        location = ".".join(str(p) for p in ve.absolute_path) or "<root>"
        raise ConfigurationError(f"config validation failed at {location}: {ve.message}") from ve

    try:
        config = Config.model_validate(data)
    except ModelValidationError as e:
        raise ConfigurationError(f"config validation failed: {e}") from e

    if config.azure.cloud not in VALID_AZURE_CLOUDS:
        raise ConfigurationError(
            f"invalid azure.cloud: {config.azure.cloud}. Valid values are: {', '.join(VALID_AZURE_CLOUDS)}"
        )
    if config.agent.log_level.lower() not in LOG_LEVELS:
        raise ConfigurationError(
            f"invalid agent.logLevel: {config.agent.log_level}. Valid values are: debug, info, warning, error"
        )

    target = config.azure.target_cluster
    subscription_id, resource_group, name = parse_cluster_resource_id(target.resource_id)
    target.subscription_id = subscription_id
    target.resource_group = resource_group
    target.name = name
    # AKS node resource group follows MC_{cluster-resource-group}_{cluster-name}_{location}
    target.node_resource_group = f"MC_{resource_group}_{name}_{target.location}"
    return config


def load_config(config_path: Optional[Union[str, Path]]) -> Config:
    """Load configuration from a JSON/YAML file and environment variables.

    Args:
        config_path: Path to the configuration file (required)

    Returns:
        The validated configuration

    Raises:
        ConfigurationError: If the file is missing, unreadable or invalid
    """
    if not config_path:
        raise ConfigurationError("config file path is required")

    load_dotenv()

    path = Path(config_path).expanduser()
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    except OSError as e:
        raise ConfigurationError(f"failed to read config file at {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"failed to parse config file at {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"invalid config format in {path}: expected a mapping, got {type(data).__name__}")

    _apply_env_overrides(data)
    config = config_from_dict(data)
    logger.debug(f"Loaded configuration from {path}")
    return config
