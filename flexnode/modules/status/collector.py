"""Node status collection and the self-healing decision."""
import logging
import os
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, Optional, Union

from kubernetes import client, config as k8s_config
from kubernetes.client.rest import ApiException
from pydantic import ValidationError

from ...config import Config
from ...errors import CommandError
from ...utils.system import hostname, is_service_active, write_file_atomic
from ..arc import agent
from ..arc.consts import HEARTBEAT_FORMAT, SHOW_TIMEOUT
from ..components.containerd import installed_containerd_version
from ..components.kube_binaries import installed_kubelet_version
from ..components.kubelet import KUBELET_KUBECONFIG_PATH
from ..components.runc import installed_runc_version
from .models import (
    KUBELET_NOT_READY,
    KUBELET_READY,
    KUBELET_UNKNOWN,
    UNKNOWN_VERSION,
    ArcStatus,
    NodeStatus,
    utc_now,
)

logger = logging.getLogger(__name__)

STATUS_FILE_NAME = "status.json"
# Versions that must be known for the node to count as healthy
TRACKED_VERSIONS = ("kubelet_version", "runc_version", "containerd_version")

PathLike = Union[str, Path]


def get_status_file_path(config: Config) -> Path:
    return config.status_dir / STATUS_FILE_NAME


def write_status(status: NodeStatus, path: PathLike) -> None:
    """Persist ``status`` with an atomic replace so readers never see a partial file."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    write_file_atomic(path, status.to_json() + "\n")


def load_status(path: PathLike) -> NodeStatus:
    """Read a status file.

    Raises:
        OSError: If the file cannot be read
        pydantic.ValidationError: If the content is not a valid status document
    """
    with open(path, "r") as f:
        return NodeStatus.from_json(f.read())


def remove_status_file(path: PathLike) -> None:
    try:
        os.remove(path)
        logger.debug(f"Removed status file {path}")
    except FileNotFoundError:
        pass


def arc_status_from_fields(fields: Dict[str, str]) -> ArcStatus:
    """Build an ArcStatus from parsed ``azcmagent show`` output."""
    connected = agent.is_connected(fields)
    heartbeat = None
    raw_heartbeat = fields.get("Agent Last Heartbeat", "")
    if raw_heartbeat:
        try:
            heartbeat = datetime.strptime(raw_heartbeat, HEARTBEAT_FORMAT).replace(tzinfo=timezone.utc)
        except ValueError:
            logger.debug(f"Could not parse Arc heartbeat '{raw_heartbeat}'")
    return ArcStatus(
        # A connected agent implies a registered machine
        registered=connected,
        connected=connected,
        machine_name=fields.get("Resource Name", ""),
        resource_id=fields.get("Resource Id", ""),
        location=fields.get("Location", ""),
        resource_group=fields.get("Resource Group Name", ""),
        last_heartbeat=heartbeat,
        agent_version=fields.get("Agent Version", ""),
    )


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class StatusCollector:
    """Samples the local node into a NodeStatus."""

    def __init__(self, config: Config, agent_version: str, kubeconfig_path: str = KUBELET_KUBECONFIG_PATH):
        self.config = config
        self.agent_version = agent_version
        self.kubeconfig_path = kubeconfig_path

    def collect_status(self) -> NodeStatus:
        """Take a fresh snapshot. Individual check failures degrade to defaults."""
        kubelet_version = installed_kubelet_version()
        if kubelet_version == UNKNOWN_VERSION:
            logger.warning("Failed to get kubelet version")
        runc_version = installed_runc_version()
        if runc_version == UNKNOWN_VERSION:
            logger.warning("Failed to get runc version")

        return NodeStatus(
            kubelet_version=kubelet_version,
            runc_version=runc_version,
            containerd_version=installed_containerd_version(),
            kubelet_running=is_service_active("kubelet"),
            kubelet_ready=self.kubelet_readiness(),
            containerd_running=is_service_active("containerd"),
            arc_status=self.collect_arc_status(),
            last_updated=utc_now(),
            agent_version=self.agent_version,
        )

    def collect_arc_status(self) -> ArcStatus:
        try:
            fields = agent.show(timeout=SHOW_TIMEOUT)
        except CommandError as e:
            logger.debug(f"azcmagent show failed: {e} - marking Arc as disconnected")
            return ArcStatus()
        return arc_status_from_fields(fields)

    def kubelet_readiness(self) -> str:
        """Map the Ready condition of this node to Ready, NotReady or Unknown."""
        node_name = hostname()
        if not node_name:
            logger.warning("Hostname is empty")
            return KUBELET_UNKNOWN
        if not os.path.exists(self.kubeconfig_path):
            logger.debug(f"Kubelet kubeconfig {self.kubeconfig_path} not found")
            return KUBELET_UNKNOWN

        try:
            k8s_config.load_kube_config(config_file=self.kubeconfig_path)
            node = client.CoreV1Api().read_node(node_name, _request_timeout=SHOW_TIMEOUT)
        except ApiException as e:
            logger.warning(f"Failed to read node {node_name}: {e.status} {e.reason}")
            return KUBELET_UNKNOWN
        except Exception as e:
            logger.warning(f"Failed to query node readiness: {e}")
            return KUBELET_UNKNOWN

        conditions = (node.status.conditions if node.status else None) or []
        for condition in conditions:
            if condition.type == "Ready":
                if condition.status == "True":
                    return KUBELET_READY
                if condition.status == "False":
                    return KUBELET_NOT_READY
        return KUBELET_UNKNOWN

    def needs_bootstrap(self, path: Optional[PathLike] = None, now: Optional[datetime] = None) -> bool:
        """Decide from the last status snapshot whether the node must be re-bootstrapped."""
        path = Path(path) if path else get_status_file_path(self.config)
        now = now or utc_now()

        try:
            status = load_status(path)
        except FileNotFoundError:
            logger.info("Status file not found - bootstrap needed")
            return True
        except (OSError, ValueError, ValidationError) as e:
            logger.info(f"Could not parse status file - bootstrap needed: {e}")
            return True

        if not status.kubelet_running:
            logger.info("Status file indicates kubelet not running - bootstrap needed")
            return True

        if not status.arc_status.connected:
            logger.info("Status file indicates Arc agent not connected - bootstrap needed")
            return True

        max_age = timedelta(seconds=self.config.agent.status_stale_after)
        if now - _as_utc(status.last_updated) > max_age:
            logger.info(f"Status file is stale (older than {max_age}) - bootstrap needed")
            return True

        for field in TRACKED_VERSIONS:
            value = getattr(status, field)
            if not value or value == UNKNOWN_VERSION:
                logger.info(f"Status file indicates {field.replace('_', ' ')} unknown - bootstrap needed")
                return True

        logger.debug("Status file indicates healthy state - no bootstrap needed")
        return False
