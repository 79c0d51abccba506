"""CNI plugin binaries and the node's bridge network configuration."""
import json
import logging
import os
import tempfile

from ...config import Config
from ...utils import CancelToken
from ...utils.system import (
    download_file,
    extract_tarball,
    file_exists,
    machine_arch,
    remove_path,
    run_command,
    write_system_file,
)
from ..bootstrapper.executor import Step, ValidatingStep

logger = logging.getLogger(__name__)

CNI_BIN_DIR = "/opt/cni/bin"
CNI_CONF_DIR = "/etc/cni/net.d"
BRIDGE_CONFIG_FILE = "10-bridge.conf"
CNI_SPEC_VERSION = "0.3.1"
CNI_DOWNLOAD_URL = (
    "https://github.com/containernetworking/plugins/releases/download/"
    "v{version}/cni-plugins-linux-{arch}-v{version}.tgz"
)
REQUIRED_PLUGINS = ("bridge", "host-local", "loopback", "portmap")


def bridge_config() -> str:
    config = {
        "cniVersion": CNI_SPEC_VERSION,
        "name": "bridge",
        "type": "bridge",
        "bridge": "cni0",
        "isGateway": True,
        "ipMasq": True,
        "ipam": {
            "type": "host-local",
            "ranges": [[{"subnet": "10.244.0.0/16", "gateway": "10.244.0.1"}]],
            "routes": [{"dst": "0.0.0.0/0"}],
        },
    }
    return json.dumps(config, indent=4) + "\n"


class CNIInstaller(ValidatingStep):

    def __init__(self, config: Config):
        self.config = config

    @property
    def name(self) -> str:
        return "CNISetup"

    def validate(self, token: CancelToken) -> None:
        if not self.config.cni.version:
            raise ValueError("CNI plugins version is not configured")

    def is_completed(self, token: CancelToken) -> bool:
        for plugin in REQUIRED_PLUGINS:
            if not file_exists(os.path.join(CNI_BIN_DIR, plugin)):
                logger.debug(f"CNI plugin not found: {plugin}")
                return False
        return file_exists(os.path.join(CNI_CONF_DIR, BRIDGE_CONFIG_FILE))

    def execute(self, token: CancelToken) -> None:
        version = self.config.cni.version
        url = CNI_DOWNLOAD_URL.format(version=version, arch=machine_arch())
        logger.info(f"Installing CNI plugins {version}")
        with tempfile.TemporaryDirectory(prefix="flexnode-cni-") as tmp:
            archive = os.path.join(tmp, "cni-plugins.tgz")
            download_file(url, archive)
            extract_tarball(archive, CNI_BIN_DIR, token=token)

        run_command(["modprobe", "br_netfilter"], check=False)
        run_command(["mkdir", "-p", CNI_CONF_DIR])
        write_system_file(os.path.join(CNI_CONF_DIR, BRIDGE_CONFIG_FILE), bridge_config())
        logger.info("Bridge CNI configuration created")


class CNIUninstaller(Step):

    def __init__(self, config: Config):
        self.config = config

    @property
    def name(self) -> str:
        return "CNICleanup"

    def is_completed(self, token: CancelToken) -> bool:
        return not file_exists(CNI_CONF_DIR) and not file_exists(CNI_BIN_DIR)

    def execute(self, token: CancelToken) -> None:
        remove_path(CNI_CONF_DIR, recursive=True)
        remove_path(CNI_BIN_DIR, recursive=True)
