"""Kubernetes node binaries (kubelet, kubectl, kubeadm)."""
import logging
import os
import tempfile

from ...config import Config
from ...errors import CommandError
from ...utils import CancelToken
from ...utils.system import download_file, extract_tarball, file_exists, machine_arch, remove_path, run_command
from ..bootstrapper.executor import Step, ValidatingStep

logger = logging.getLogger(__name__)

BIN_DIR = "/usr/local/bin"
KUBE_BINARIES = ("kubelet", "kubectl", "kubeadm")
KUBELET_PATH = os.path.join(BIN_DIR, "kubelet")
# Path of the binaries inside the node tarball
TARBALL_BIN_PATH = "kubernetes/node/bin/"


def installed_kubelet_version() -> str:
    """Parse ``kubelet --version`` ("Kubernetes v1.32.7") or return "unknown"."""
    try:
        output = run_command([KUBELET_PATH, "--version"], sudo=False).stdout or ""
    except CommandError:
        return "unknown"
    parts = output.split()
    if len(parts) >= 2:
        return parts[1].lstrip("v")
    return "unknown"


def download_url(config: Config) -> str:
    return config.kubernetes.url_template.format(version=config.kubernetes.version, arch=machine_arch())


class KubeBinariesInstaller(ValidatingStep):

    def __init__(self, config: Config):
        self.config = config

    @property
    def name(self) -> str:
        return "KubeBinariesInstaller"

    def validate(self, token: CancelToken) -> None:
        if not self.config.kubernetes.version:
            raise ValueError("kubernetes version is not configured")

    def is_completed(self, token: CancelToken) -> bool:
        if not all(file_exists(os.path.join(BIN_DIR, b)) for b in KUBE_BINARIES):
            return False
        return installed_kubelet_version() == self.config.kubernetes.version

    def execute(self, token: CancelToken) -> None:
        url = download_url(self.config)
        logger.info(f"Installing Kubernetes {self.config.kubernetes.version} node binaries")
        with tempfile.TemporaryDirectory(prefix="flexnode-kube-") as tmp:
            archive = os.path.join(tmp, "kubernetes-node.tar.gz")
            download_file(url, archive)
            extract_tarball(
                archive,
                BIN_DIR,
                members=[f"{TARBALL_BIN_PATH}{b}" for b in KUBE_BINARIES],
                strip_components=TARBALL_BIN_PATH.count("/"),
                token=token,
            )
        for binary in KUBE_BINARIES:
            run_command(["chmod", "0755", os.path.join(BIN_DIR, binary)])
        logger.info(f"Kubernetes binaries installed to {BIN_DIR}")


class KubeBinariesUninstaller(Step):

    def __init__(self, config: Config):
        self.config = config

    @property
    def name(self) -> str:
        return "KubeBinariesUninstaller"

    def is_completed(self, token: CancelToken) -> bool:
        return not any(file_exists(os.path.join(BIN_DIR, b)) for b in KUBE_BINARIES)

    def execute(self, token: CancelToken) -> None:
        for binary in KUBE_BINARIES:
            remove_path(os.path.join(BIN_DIR, binary))
