"""systemd lifecycle of the node services (containerd and kubelet)."""
import logging
import time

from ...config import Config
from ...errors import FlexNodeError
from ...utils import CancelToken
from ...utils.system import (
    disable_service,
    enable_and_start_service,
    is_service_active,
    reload_systemd,
    service_exists,
    stop_service,
)
from ..bootstrapper.executor import Step, ValidatingStep

logger = logging.getLogger(__name__)

CONTAINERD_SERVICE = "containerd"
KUBELET_SERVICE = "kubelet"
# Start order; stop order is the reverse
NODE_SERVICES = (CONTAINERD_SERVICE, KUBELET_SERVICE)
SERVICE_STARTUP_TIMEOUT = 30
SERVICE_POLL_INTERVAL = 2


def wait_for_service(service: str, token: CancelToken, timeout: float = SERVICE_STARTUP_TIMEOUT) -> None:
    """Block until ``service`` is active.

    Raises:
        FlexNodeError: If the service is not active after ``timeout`` seconds
    """
    deadline = time.monotonic() + timeout
    while not is_service_active(service):
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise FlexNodeError(f"service {service} did not become active within {timeout:.0f}s")
        token.wait(min(SERVICE_POLL_INTERVAL, remaining))
    logger.info(f"✅ {service} is active")


class KubeletStopper(Step):
    """Stops a running kubelet so the following steps can rewrite its files."""

    def __init__(self, config: Config):
        self.config = config

    @property
    def name(self) -> str:
        return "StopKubelet"

    def is_completed(self, token: CancelToken) -> bool:
        return not is_service_active(KUBELET_SERVICE)

    def execute(self, token: CancelToken) -> None:
        logger.info("Stopping kubelet before reconfiguring the node")
        stop_service(KUBELET_SERVICE, token)


class ServicesInstaller(ValidatingStep):

    def __init__(self, config: Config):
        self.config = config

    @property
    def name(self) -> str:
        return "StartServices"

    def validate(self, token: CancelToken) -> None:
        reload_systemd()
        missing = [s for s in NODE_SERVICES if not service_exists(s)]
        if missing:
            raise FlexNodeError(f"systemd units not found: {', '.join(missing)}")

    def is_completed(self, token: CancelToken) -> bool:
        return all(is_service_active(s) for s in NODE_SERVICES)

    def execute(self, token: CancelToken) -> None:
        reload_systemd()
        for service in NODE_SERVICES:
            logger.info(f"Enabling and starting {service}")
            enable_and_start_service(service, token)
            wait_for_service(service, token)


class ServicesUninstaller(Step):

    def __init__(self, config: Config):
        self.config = config

    @property
    def name(self) -> str:
        return "StopServices"

    def is_completed(self, token: CancelToken) -> bool:
        return not any(service_exists(s) for s in NODE_SERVICES)

    def execute(self, token: CancelToken) -> None:
        errors = []
        for service in reversed(NODE_SERVICES):
            if not service_exists(service):
                continue
            try:
                if is_service_active(service):
                    stop_service(service, token)
                disable_service(service)
            except FlexNodeError as e:
                logger.warning(f"Failed to stop {service}: {e}")
                errors.append(f"{service}: {e}")
        if errors:
            raise FlexNodeError(f"failed to stop services: {'; '.join(errors)}")
