"""Shared pieces of the Arc installer and uninstaller."""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ...config import Config
from ..azure import (
    ArmClient,
    AuthProvider,
    MachinesClient,
    ManagedClustersClient,
    RoleAssignmentsClient,
    ensure_authentication,
)
from .consts import ROLE_DEFINITION_IDS

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ManagedIdentity:
    """System-assigned identity of the Arc machine resource."""
    principal_id: str
    resource_id: str
    tags: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_machine(cls, machine: Optional[Dict[str, Any]]) -> Optional["ManagedIdentity"]:
        """Build the handle from a machine resource, or None if it has no principal yet."""
        if not machine:
            return None
        principal_id = (machine.get("identity") or {}).get("principalId")
        if not principal_id:
            return None
        return cls(
            principal_id=principal_id,
            resource_id=machine.get("id", ""),
            tags=dict(machine.get("tags") or {}),
        )


@dataclass(frozen=True)
class RoleAssignmentRequirement:
    role_name: str
    role_definition_id: str
    scope: str


def full_role_definition_id(subscription_id: str, role_definition_id: str) -> str:
    return f"/subscriptions/{subscription_id}/providers/Microsoft.Authorization/roleDefinitions/{role_definition_id}"


def required_role_assignments(config: Config) -> List[RoleAssignmentRequirement]:
    """Roles the Arc identity needs so the kubelet can join the target cluster."""
    cluster_id = config.target_cluster_id
    return [
        RoleAssignmentRequirement("Reader (Target Cluster)", ROLE_DEFINITION_IDS["Reader"], cluster_id),
        RoleAssignmentRequirement(
            "Azure Kubernetes Service RBAC Cluster Admin",
            ROLE_DEFINITION_IDS["Azure Kubernetes Service RBAC Cluster Admin"],
            cluster_id,
        ),
        RoleAssignmentRequirement(
            "Azure Kubernetes Service Cluster Admin Role",
            ROLE_DEFINITION_IDS["Azure Kubernetes Service Cluster Admin Role"],
            cluster_id,
        ),
    ]


class ArcBase:
    """Azure clients and lookups used by both Arc steps.

    Clients may be injected; otherwise they are built on first use from the
    user credential (service principal or Azure CLI).
    """

    def __init__(
        self,
        config: Config,
        auth_provider: Optional[AuthProvider] = None,
        machines: Optional[MachinesClient] = None,
        clusters: Optional[ManagedClustersClient] = None,
        role_assignments: Optional[RoleAssignmentsClient] = None,
    ):
        self.config = config
        self.auth_provider = auth_provider or AuthProvider(timeout=config.agent.api_timeout)
        self.machines = machines
        self.clusters = clusters
        self.role_assignments = role_assignments

    def ensure_authentication(self) -> None:
        ensure_authentication(self.config, self.auth_provider)

    def set_up_clients(self) -> None:
        if self.machines and self.clusters and self.role_assignments:
            return
        self.ensure_authentication()
        credential = self.auth_provider.user_credential(self.config)
        arm = ArmClient(credential, timeout=self.config.agent.api_timeout)
        self.machines = self.machines or MachinesClient(arm, self.config.subscription_id)
        self.clusters = self.clusters or ManagedClustersClient(arm, self.config.target_cluster_subscription_id)
        self.role_assignments = self.role_assignments or RoleAssignmentsClient(arm)

    def get_arc_machine(self) -> Dict[str, Any]:
        """Fetch this node's Arc machine resource.

        Raises:
            ArmError: If the machine does not exist or cannot be read
        """
        name = self.config.arc_machine_name
        resource_group = self.config.arc_resource_group
        logger.info(f"Getting Arc machine info for: {name} in resource group: {resource_group}")
        machine = self.machines.get(resource_group, name)
        logger.info(f"Successfully retrieved Arc machine info: {machine.get('name')} (ID: {machine.get('id')})")
        return machine

    def get_aks_cluster(self) -> Dict[str, Any]:
        name = self.config.target_cluster_name
        resource_group = self.config.target_cluster_resource_group
        logger.info(f"Getting AKS cluster info for: {name} in resource group: {resource_group}")
        cluster = self.clusters.get(resource_group, name)
        logger.info(f"Successfully retrieved AKS cluster info: {cluster.get('name')} (ID: {cluster.get('id')})")
        return cluster

    def role_definition_id(self, requirement: RoleAssignmentRequirement) -> str:
        return full_role_definition_id(self.config.target_cluster_subscription_id, requirement.role_definition_id)

    def find_role_assignments(self, principal_id: str, requirement: RoleAssignmentRequirement) -> List[Dict[str, Any]]:
        """List assignments at the requirement's scope granting its role to ``principal_id``."""
        wanted = self.role_definition_id(requirement).lower()
        matches = []
        for assignment in self.role_assignments.list_for_scope(requirement.scope):
            props = assignment.get("properties") or {}
            if props.get("principalId") == principal_id and (props.get("roleDefinitionId") or "").lower() == wanted:
                matches.append(assignment)
        return matches

    def check_required_permissions(self, principal_id: str) -> bool:
        """Return True when every required role is visible for ``principal_id``."""
        for requirement in required_role_assignments(self.config):
            if not self.find_role_assignments(principal_id, requirement):
                logger.info(f"❌ Missing role assignment: {requirement.role_name} on {requirement.scope}")
                return False
            logger.info(f"✅ Found role assignment: {requirement.role_name} on {requirement.scope}")
        return True
