"""Node component installers and uninstallers."""
from .cluster_credentials import ClusterCredentialsInstaller
from .cni import CNIInstaller, CNIUninstaller
from .containerd import ContainerdInstaller, ContainerdUninstaller
from .kube_binaries import KubeBinariesInstaller, KubeBinariesUninstaller
from .kubelet import KubeletInstaller, KubeletUninstaller
from .runc import RuncInstaller, RuncUninstaller
from .services import KubeletStopper, ServicesInstaller, ServicesUninstaller
from .system_configuration import SystemConfigurationInstaller, SystemConfigurationUninstaller

__all__ = [
    'CNIInstaller',
    'CNIUninstaller',
    'ClusterCredentialsInstaller',
    'ContainerdInstaller',
    'ContainerdUninstaller',
    'KubeBinariesInstaller',
    'KubeBinariesUninstaller',
    'KubeletInstaller',
    'KubeletStopper',
    'KubeletUninstaller',
    'RuncInstaller',
    'RuncUninstaller',
    'ServicesInstaller',
    'ServicesUninstaller',
    'SystemConfigurationInstaller',
    'SystemConfigurationUninstaller',
]
