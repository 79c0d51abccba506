"""Kernel parameters and DNS resolver setup required by the kubelet."""
import logging
import os

from ...config import Config
from ...errors import FlexNodeError
from ...utils import CancelToken
from ...utils.system import command_exists, file_exists, remove_path, run_command, write_system_file
from ..bootstrapper.executor import Step, ValidatingStep

logger = logging.getLogger(__name__)

SYSCTL_CONFIG_PATH = "/etc/sysctl.d/999-sysctl-aks.conf"
RESOLV_CONF_PATH = "/etc/resolv.conf"
RESOLV_CONF_SOURCE = "/run/systemd/resolve/resolv.conf"

SYSCTL_SETTINGS = """# Kubernetes node settings managed by flexnode
net.bridge.bridge-nf-call-iptables = 1
net.bridge.bridge-nf-call-ip6tables = 1
net.ipv4.ip_forward = 1
vm.overcommit_memory = 1
kernel.panic = 10
kernel.panic_on_oops = 1
vm.swappiness = 0
"""


def _resolv_conf_linked() -> bool:
    return os.path.islink(RESOLV_CONF_PATH) and os.readlink(RESOLV_CONF_PATH) == RESOLV_CONF_SOURCE


class SystemConfigurationInstaller(ValidatingStep):

    def __init__(self, config: Config):
        self.config = config

    @property
    def name(self) -> str:
        return "SystemConfigured"

    def validate(self, token: CancelToken) -> None:
        if not command_exists("sysctl"):
            raise FlexNodeError("sysctl not found on PATH - install procps to configure kernel parameters")

    def is_completed(self, token: CancelToken) -> bool:
        if not file_exists(SYSCTL_CONFIG_PATH):
            return False
        if file_exists(RESOLV_CONF_SOURCE) and not _resolv_conf_linked():
            return False
        return True

    def execute(self, token: CancelToken) -> None:
        logger.info("Configuring kernel parameters")
        run_command(["modprobe", "br_netfilter"], check=False)
        write_system_file(SYSCTL_CONFIG_PATH, SYSCTL_SETTINGS)
        run_command(["sysctl", "--system"], timeout=60, token=token)

        if file_exists(RESOLV_CONF_SOURCE):
            logger.info(f"Linking {RESOLV_CONF_PATH} to {RESOLV_CONF_SOURCE}")
            run_command(["ln", "-sf", RESOLV_CONF_SOURCE, RESOLV_CONF_PATH])
        else:
            logger.warning(f"{RESOLV_CONF_SOURCE} not found, leaving {RESOLV_CONF_PATH} unchanged")


class SystemConfigurationUninstaller(Step):

    def __init__(self, config: Config):
        self.config = config

    @property
    def name(self) -> str:
        return "SystemConfigurationCleanup"

    def is_completed(self, token: CancelToken) -> bool:
        return not file_exists(SYSCTL_CONFIG_PATH)

    def execute(self, token: CancelToken) -> None:
        remove_path(SYSCTL_CONFIG_PATH)
        # Only undo the resolv.conf link we created
        if _resolv_conf_linked():
            remove_path(RESOLV_CONF_PATH)
            run_command(["cp", RESOLV_CONF_SOURCE, RESOLV_CONF_PATH])
        run_command(["sysctl", "--system"], timeout=60, check=False)
