"""
Node status snapshot persisted by the daemon.
"""
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

KUBELET_READY = "Ready"
KUBELET_NOT_READY = "NotReady"
KUBELET_UNKNOWN = "Unknown"

UNKNOWN_VERSION = "unknown"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class _StatusModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class ArcStatus(_StatusModel):
    """Azure Arc registration and connection state as reported by ``azcmagent show``."""
    registered: bool = False
    connected: bool = False
    machine_name: str = ""
    resource_id: str = ""
    location: str = ""
    resource_group: str = ""
    last_heartbeat: Optional[datetime] = None
    agent_version: str = ""


class NodeStatus(_StatusModel):
    """Health and version snapshot of the node."""
    kubelet_version: str = ""
    runc_version: str = ""
    containerd_version: str = ""

    kubelet_running: bool = False
    kubelet_ready: str = KUBELET_UNKNOWN
    containerd_running: bool = False

    arc_status: ArcStatus = Field(default_factory=ArcStatus)

    last_updated: datetime = Field(default_factory=utc_now)
    agent_version: str = ""

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2)

    @classmethod
    def from_json(cls, data: str) -> "NodeStatus":
        return cls.model_validate_json(data)
