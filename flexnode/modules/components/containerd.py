"""containerd container runtime installation and configuration."""
import logging
import os
import tempfile

from ...config import Config
from ...errors import CommandError
from ...utils import CancelToken
from ...utils.system import (
    download_file,
    extract_tarball,
    file_exists,
    is_service_active,
    machine_arch,
    remove_path,
    run_command,
    stop_service,
    write_system_file,
)
from ..bootstrapper.executor import Step, ValidatingStep
from .cni import CNI_BIN_DIR, CNI_CONF_DIR

logger = logging.getLogger(__name__)

CONTAINERD_BINARY_PATH = "/usr/bin/containerd"
CONTAINERD_CONFIG_DIR = "/etc/containerd"
CONTAINERD_CONFIG_PATH = "/etc/containerd/config.toml"
CONTAINERD_SERVICE_PATH = "/etc/systemd/system/containerd.service"
CONTAINERD_DOWNLOAD_URL = (
    "https://github.com/containerd/containerd/releases/download/v{version}/containerd-{version}-linux-{arch}.tar.gz"
)

# Union of the binaries shipped by the 1.x and 2.x releases
CONTAINERD_BINARIES = (
    "ctr",
    "containerd",
    "containerd-shim",
    "containerd-shim-runc-v1",
    "containerd-shim-runc-v2",
    "containerd-stress",
)

CONTAINERD_SERVICE = """[Unit]
Description=containerd container runtime
Documentation=https://containerd.io
After=network.target local-fs.target
[Service]
ExecStartPre=-/sbin/modprobe overlay
ExecStart=/usr/bin/containerd
Type=notify
Delegate=yes
KillMode=process
Restart=always
RestartSec=5
LimitNPROC=infinity
LimitCORE=infinity
LimitNOFILE=infinity
TasksMax=infinity
OOMScoreAdjust=-999
[Install]
WantedBy=multi-user.target
"""

CONTAINERD_CONFIG = """version = 2
oom_score = 0
[plugins."io.containerd.grpc.v1.cri"]
  sandbox_image = "{pause_image}"
  [plugins."io.containerd.grpc.v1.cri".containerd]
    default_runtime_name = "runc"
    [plugins."io.containerd.grpc.v1.cri".containerd.runtimes.runc]
      runtime_type = "io.containerd.runc.v2"
    [plugins."io.containerd.grpc.v1.cri".containerd.runtimes.runc.options]
      BinaryName = "/usr/bin/runc"
      SystemdCgroup = true
  [plugins."io.containerd.grpc.v1.cri".cni]
    bin_dir = "{cni_bin_dir}"
    conf_dir = "{cni_conf_dir}"
  [plugins."io.containerd.grpc.v1.cri".registry]
    config_path = "/etc/containerd/certs.d"
  [plugins."io.containerd.grpc.v1.cri".registry.headers]
    X-Meta-Source-Client = ["azure/aks"]
[metrics]
  address = "{metrics_address}"
"""


def installed_containerd_version() -> str:
    """Parse ``containerd --version`` ("containerd github.com/containerd/containerd v1.7.20 <sha>")."""
    try:
        output = run_command([CONTAINERD_BINARY_PATH, "--version"], sudo=False).stdout or ""
    except CommandError:
        return "unknown"
    parts = output.split()
    if len(parts) >= 3:
        return parts[2].lstrip("v")
    return "unknown"


def render_containerd_config(config: Config) -> str:
    return CONTAINERD_CONFIG.format(
        pause_image=config.containerd.pause_image,
        cni_bin_dir=CNI_BIN_DIR,
        cni_conf_dir=CNI_CONF_DIR,
        metrics_address=config.containerd.metrics_address,
    )


class ContainerdInstaller(ValidatingStep):

    def __init__(self, config: Config):
        self.config = config

    @property
    def name(self) -> str:
        return "ContainerdInstaller"

    def validate(self, token: CancelToken) -> None:
        if not self.config.containerd.version:
            raise ValueError("containerd version is not configured")

    def is_completed(self, token: CancelToken) -> bool:
        if installed_containerd_version() != self.config.containerd.version:
            return False
        return file_exists(CONTAINERD_CONFIG_PATH) and file_exists(CONTAINERD_SERVICE_PATH)

    def execute(self, token: CancelToken) -> None:
        version = self.config.containerd.version
        url = CONTAINERD_DOWNLOAD_URL.format(version=version, arch=machine_arch())
        logger.info(f"Installing containerd {version}")

        with tempfile.TemporaryDirectory(prefix="flexnode-containerd-") as tmp:
            archive = os.path.join(tmp, "containerd.tar.gz")
            download_file(url, archive)
            # The release tarball holds bin/<binaries>
            extract_tarball(archive, "/usr", token=token)

        write_system_file(CONTAINERD_CONFIG_PATH, render_containerd_config(self.config))
        write_system_file(CONTAINERD_SERVICE_PATH, CONTAINERD_SERVICE)
        logger.info("containerd installed and configured")


class ContainerdUninstaller(Step):

    def __init__(self, config: Config):
        self.config = config

    @property
    def name(self) -> str:
        return "ContainerdUninstaller"

    def is_completed(self, token: CancelToken) -> bool:
        return not file_exists(CONTAINERD_BINARY_PATH) and not file_exists(CONTAINERD_SERVICE_PATH)

    def execute(self, token: CancelToken) -> None:
        if is_service_active("containerd"):
            stop_service("containerd", token)
        for binary in CONTAINERD_BINARIES:
            remove_path(os.path.join("/usr/bin", binary))
        remove_path(CONTAINERD_CONFIG_DIR, recursive=True)
        remove_path(CONTAINERD_SERVICE_PATH)
