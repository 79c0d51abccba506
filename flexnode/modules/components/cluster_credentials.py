"""Download the target cluster's user kubeconfig."""
import base64
import logging
import os
from typing import Optional

from ...config import Config
from ...errors import FlexNodeError
from ...utils import CancelToken
from ...utils.system import file_exists, write_system_file
from ..azure import ArmClient, AuthProvider, ManagedClustersClient
from ..bootstrapper.executor import ValidatingStep

logger = logging.getLogger(__name__)

ADMIN_KUBECONFIG_NAME = "admin.conf"


def admin_kubeconfig_path(config: Config) -> str:
    return os.path.join(config.paths.kubernetes.config_dir, ADMIN_KUBECONFIG_NAME)


def decode_kubeconfig(response: dict) -> bytes:
    """Pull the first kubeconfig out of a listClusterUserCredential response.

    Raises:
        FlexNodeError: If the response holds no usable kubeconfig
    """
    kubeconfigs = response.get("kubeconfigs") or []
    if not kubeconfigs:
        raise FlexNodeError("no kubeconfig found in cluster credentials response")
    value = kubeconfigs[0].get("value")
    if not value:
        raise FlexNodeError("kubeconfig value is empty")
    logger.debug(f"Found {len(kubeconfigs)} kubeconfig(s), using {kubeconfigs[0].get('name')}")
    return base64.b64decode(value)


class ClusterCredentialsInstaller(ValidatingStep):

    def __init__(self, config: Config, clusters: Optional[ManagedClustersClient] = None,
                 auth_provider: Optional[AuthProvider] = None):
        self.config = config
        self.clusters = clusters
        self.auth_provider = auth_provider or AuthProvider(timeout=config.agent.api_timeout)

    @property
    def name(self) -> str:
        return "ClusterCredentialsDownloaded"

    def validate(self, token: CancelToken) -> None:
        if not self.config.target_cluster_name or not self.config.target_cluster_resource_group:
            raise FlexNodeError("target cluster name and resource group are required")

    def is_completed(self, token: CancelToken) -> bool:
        return file_exists(admin_kubeconfig_path(self.config))

    def execute(self, token: CancelToken) -> None:
        if self.clusters is None:
            credential = self.auth_provider.user_credential(self.config)
            arm = ArmClient(credential, timeout=self.config.agent.api_timeout)
            self.clusters = ManagedClustersClient(arm, self.config.target_cluster_subscription_id)

        name = self.config.target_cluster_name
        resource_group = self.config.target_cluster_resource_group
        logger.info(f"Fetching cluster credentials for {name} in resource group {resource_group}")
        kubeconfig = decode_kubeconfig(self.clusters.list_cluster_user_credential(resource_group, name))
        logger.info(f"Successfully retrieved cluster credentials ({len(kubeconfig)} bytes)")

        write_system_file(admin_kubeconfig_path(self.config), kubeconfig, mode=0o600)
        logger.info("Kubeconfig file saved successfully")
