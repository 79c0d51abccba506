"""Arc cleanup for tear-down."""
import logging
from typing import List, Optional

from ...config import Config
from ...errors import CommandError, FlexNodeError
from ...utils import CancelToken
from ..azure import ArmError, AuthProvider, MachinesClient, ManagedClustersClient, RoleAssignmentsClient
from ..bootstrapper.executor import Step
from . import agent
from .base import ArcBase, ManagedIdentity, RoleAssignmentRequirement, required_role_assignments

logger = logging.getLogger(__name__)


class ArcUninstaller(Step):
    """Removes the RBAC assignments and the Arc machine, then disconnects the local agent.

    Remote cleanup happens before the local disconnect because the Azure side
    deletions still need the machine's registration. Individual failures are
    logged and the step still succeeds so the rest of tear-down can run.
    """

    def __init__(
        self,
        config: Config,
        auth_provider: Optional[AuthProvider] = None,
        machines: Optional[MachinesClient] = None,
        clusters: Optional[ManagedClustersClient] = None,
        role_assignments: Optional[RoleAssignmentsClient] = None,
    ):
        self.base = ArcBase(config, auth_provider, machines, clusters, role_assignments)
        self.config = config

    @property
    def name(self) -> str:
        return "ArcUnbootstrap"

    def is_completed(self, token: CancelToken) -> bool:
        logger.debug("Checking Arc cleanup completion status")
        try:
            self.base.set_up_clients()
            self.base.get_arc_machine()
        except ArmError as e:
            if e.is_not_found:
                logger.debug("Arc machine is no longer registered with Azure")
                return True
            logger.debug(f"Could not determine Arc machine state: {e}")
            return False
        except FlexNodeError as e:
            logger.debug(f"Could not determine Arc machine state: {e}")
            return False
        logger.debug("Arc machine is still registered with Azure")
        return False

    def execute(self, token: CancelToken) -> None:
        logger.info("Starting Arc cleanup for unbootstrap process")
        self.base.set_up_clients()
        failed_operations: List[str] = []

        machine = None
        try:
            machine = self.base.get_arc_machine()
        except ArmError as e:
            logger.info(f"Arc machine not found or already unregistered: {e}")

        token.raise_if_cancelled()
        logger.info("Removing RBAC role assignments")
        try:
            self.remove_rbac_roles(ManagedIdentity.from_machine(machine))
            logger.info("Successfully removed RBAC role assignments")
        except FlexNodeError as e:
            logger.warning(f"Failed to remove RBAC roles (continuing cleanup): {e}")
            failed_operations.append("RBAC role removal")

        token.raise_if_cancelled()
        logger.info("Unregistering Arc machine from Azure")
        try:
            self.unregister_arc_machine()
        except FlexNodeError as e:
            logger.warning(f"Failed to unregister Arc machine (continuing cleanup): {e}")
            failed_operations.append("Arc machine unregistration")

        token.raise_if_cancelled()
        logger.info("Disconnecting Arc machine locally (preserving Arc agent)")
        try:
            output = agent.disconnect(token)
            logger.info(f"Arc machine disconnected: {output}")
        except CommandError as e:
            logger.warning(f"Failed to disconnect Arc machine (continuing cleanup): {e}")
            failed_operations.append("Arc machine disconnection")

        if failed_operations:
            logger.warning(f"Arc cleanup completed with {len(failed_operations)} failed operations: "
                           f"{', '.join(failed_operations)}")
            return
        logger.info("Arc cleanup for unbootstrap completed successfully")

    def unregister_arc_machine(self) -> None:
        name = self.config.arc_machine_name
        resource_group = self.config.arc_resource_group
        logger.info(f"Deleting Arc machine resource: {name} in resource group: {resource_group}")
        try:
            self.base.machines.delete(resource_group, name)
        except ArmError as e:
            if e.is_not_found:
                logger.info("Arc machine resource not found (already deleted)")
                return
            raise
        logger.info("Arc machine successfully unregistered from Azure")

    def remove_rbac_roles(self, identity: Optional[ManagedIdentity]) -> None:
        if identity is None:
            logger.info("No managed identity found for Arc machine")
            return

        logger.info(f"Removing role assignments for managed identity: {identity.principal_id}")
        errors: List[str] = []
        for requirement in required_role_assignments(self.config):
            try:
                self.remove_role_assignments(identity.principal_id, requirement)
            except ArmError as e:
                logger.warning(f"Failed to remove role assignment {requirement.role_name} "
                               f"on scope {requirement.scope}: {e}")
                errors.append(f"{requirement.role_name}: {e}")

        if errors:
            raise FlexNodeError(f"failed to remove some role assignments: {'; '.join(errors)}")

    def remove_role_assignments(self, principal_id: str, requirement: RoleAssignmentRequirement) -> None:
        assignments = self.base.find_role_assignments(principal_id, requirement)
        if not assignments:
            logger.debug(f"No role assignments found for role {requirement.role_name} on scope {requirement.scope}")
            return

        for assignment in assignments:
            assignment_name = assignment.get("name")
            if not assignment_name:
                continue
            logger.debug(f"Deleting role assignment: {assignment_name}")
            try:
                self.base.role_assignments.delete(requirement.scope, assignment_name)
            except ArmError as e:
                if e.is_not_found:
                    logger.debug(f"Role assignment {assignment_name} not found (already deleted)")
                    continue
                raise
        logger.info(f"Removed role assignment: {requirement.role_name} on scope {requirement.scope}")
