"""Ordered build-up and tear-down sequences for a flex node."""
import logging
from typing import List, Optional

from ...config import Config
from ...utils import CancelToken
from ..arc import ArcInstaller, ArcUninstaller
from ..components import (
    ClusterCredentialsInstaller,
    CNIInstaller,
    CNIUninstaller,
    ContainerdInstaller,
    ContainerdUninstaller,
    KubeBinariesInstaller,
    KubeBinariesUninstaller,
    KubeletInstaller,
    KubeletStopper,
    KubeletUninstaller,
    RuncInstaller,
    RuncUninstaller,
    ServicesInstaller,
    ServicesUninstaller,
    SystemConfigurationInstaller,
    SystemConfigurationUninstaller,
)
from .executor import Step, StepExecutor
from .models import ExecutionResult, Mode

logger = logging.getLogger(__name__)


class Bootstrapper:
    """Builds the step lists and hands them to the executor.

    Step objects are created fresh for every run so no state leaks between
    the initial bootstrap and later self-healing runs.
    """

    def __init__(self, config: Config, token: Optional[CancelToken] = None):
        self.config = config
        self.token = token or CancelToken()
        self.executor = StepExecutor(self.token)

    def bootstrap_steps(self) -> List[Step]:
        config = self.config
        return [
            ArcInstaller(config),
            KubeletStopper(config),
            SystemConfigurationInstaller(config),
            RuncInstaller(config),
            ContainerdInstaller(config),
            KubeBinariesInstaller(config),
            CNIInstaller(config),
            ClusterCredentialsInstaller(config),
            KubeletInstaller(config),
            ServicesInstaller(config),
        ]

    def unbootstrap_steps(self) -> List[Step]:
        config = self.config
        return [
            ServicesUninstaller(config),
            KubeletUninstaller(config),
            CNIUninstaller(config),
            KubeBinariesUninstaller(config),
            ContainerdUninstaller(config),
            RuncUninstaller(config),
            SystemConfigurationUninstaller(config),
            ArcUninstaller(config),
        ]

    def bootstrap(self) -> ExecutionResult:
        """Run the build-up sequence.

        Raises:
            BootstrapError: At the first failing step
            OperationCancelled: If the cancel token fires
        """
        return self.executor.run_steps(self.bootstrap_steps(), Mode.BUILD_UP)

    def unbootstrap(self) -> ExecutionResult:
        """Run the tear-down sequence; step failures are reported in the result."""
        return self.executor.run_steps(self.unbootstrap_steps(), Mode.TEAR_DOWN)
