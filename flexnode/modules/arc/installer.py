"""Arc registration and RBAC setup for build-up.

Execution runs four phases, stopping at the first failure:

1. Register the machine with Azure Arc (or reuse an existing registration)
   and wait until its managed identity has a principal ID.
2. Check that the target AKS cluster uses Azure RBAC.
3. Assign the required roles to the machine identity.
4. Poll until the role assignments are visible to Azure authorization.
"""
import logging
import uuid
from typing import List, Optional

from ...config import Config
from ...errors import AuthorizationError, ConfigurationError, FlexNodeError
from ...utils import CancelToken, RetryError, RetryPolicy, poll_until, retry_with_backoff
from ..azure import ArmError, AuthProvider, MachinesClient, ManagedClustersClient, RoleAssignmentsClient
from ..bootstrapper.executor import ValidatingStep
from . import agent
from .base import ArcBase, ManagedIdentity, RoleAssignmentRequirement, required_role_assignments
from .consts import (
    ARC_AGENT_INSTALL_HINT,
    ASSIGNMENT_BASE_DELAY,
    ASSIGNMENT_MAX_ATTEMPTS,
    ASSIGNMENT_MAX_DELAY,
    PERMISSION_POLL_INTERVAL,
    PERMISSION_POLL_TIMEOUT,
    REGISTRATION_BASE_DELAY,
    REGISTRATION_MAX_ATTEMPTS,
    REGISTRATION_MAX_DELAY,
)

logger = logging.getLogger(__name__)

# Outcomes of a failed role assignment request
ASSIGNMENT_EXISTS = "exists"
ASSIGNMENT_RETRYABLE = "retryable"
ASSIGNMENT_FORBIDDEN = "forbidden"
ASSIGNMENT_FATAL = "fatal"

AUTH_FAILURE_STATUSES = (401, 403)

INSUFFICIENT_PRIVILEGE_MESSAGE = (
    "insufficient permissions to assign roles - ensure the user/service principal has "
    "Owner or User Access Administrator role on the target cluster"
)


def classify_role_assignment_error(error: Exception) -> str:
    """Decide how to treat a failed role assignment create.

    The ARM ``error.code`` decides when present. Message matching is only a
    fallback for responses that carry no code.
    """
    if not isinstance(error, ArmError):
        return ASSIGNMENT_FATAL

    if error.code:
        if error.code == "RoleAssignmentExists":
            return ASSIGNMENT_EXISTS
        if error.code == "PrincipalNotFound":
            return ASSIGNMENT_RETRYABLE
        if error.code == "AuthorizationFailed" or error.status_code in AUTH_FAILURE_STATUSES:
            return ASSIGNMENT_FORBIDDEN
        return ASSIGNMENT_FATAL

    if error.status_code in AUTH_FAILURE_STATUSES:
        return ASSIGNMENT_FORBIDDEN
    message = error.message or ""
    if "RoleAssignmentExists" in message:
        return ASSIGNMENT_EXISTS
    if "PrincipalNotFound" in message:
        return ASSIGNMENT_RETRYABLE
    if "AuthorizationFailed" in message:
        return ASSIGNMENT_FORBIDDEN
    return ASSIGNMENT_FATAL


class MachineNotReady(FlexNodeError):
    """The Arc machine exists but has no identity principal yet."""


def registration_retryable(error: Exception) -> bool:
    """Machine lookups are retried until the principal appears, except on auth failures."""
    if isinstance(error, ArmError):
        return error.status_code not in AUTH_FAILURE_STATUSES
    return isinstance(error, MachineNotReady)


class ArcInstaller(ValidatingStep):
    """Registers the node with Azure Arc and grants its identity cluster access."""

    def __init__(
        self,
        config: Config,
        auth_provider: Optional[AuthProvider] = None,
        machines: Optional[MachinesClient] = None,
        clusters: Optional[ManagedClustersClient] = None,
        role_assignments: Optional[RoleAssignmentsClient] = None,
        registration_policy: Optional[RetryPolicy] = None,
        assignment_policy: Optional[RetryPolicy] = None,
        permission_poll_interval: float = PERMISSION_POLL_INTERVAL,
        permission_timeout: float = PERMISSION_POLL_TIMEOUT,
    ):
        self.base = ArcBase(config, auth_provider, machines, clusters, role_assignments)
        self.config = config
        self.registration_policy = registration_policy or RetryPolicy(
            base_delay=REGISTRATION_BASE_DELAY,
            max_delay=REGISTRATION_MAX_DELAY,
            max_attempts=REGISTRATION_MAX_ATTEMPTS,
        )
        self.assignment_policy = assignment_policy or RetryPolicy(
            base_delay=ASSIGNMENT_BASE_DELAY,
            max_delay=ASSIGNMENT_MAX_DELAY,
            max_attempts=ASSIGNMENT_MAX_ATTEMPTS,
        )
        self.permission_poll_interval = permission_poll_interval
        self.permission_timeout = permission_timeout

    @property
    def name(self) -> str:
        return "ArcInstall"

    def validate(self, token: CancelToken) -> None:
        try:
            self.base.ensure_authentication()
        except FlexNodeError as e:
            logger.error(f"Authentication setup failed: {e}")
            raise FlexNodeError(f"arc bootstrap setup failed at authentication: {e}") from e
        if not agent.is_arc_agent_installed():
            logger.info("Azure Arc agent not found")
            raise FlexNodeError(ARC_AGENT_INSTALL_HINT)

    def is_completed(self, token: CancelToken) -> bool:
        logger.debug("Checking Arc setup completion status")
        if not agent.are_arc_services_running():
            logger.debug("Arc services are not running")
            return False
        return agent.agent_reports_connected()

    def execute(self, token: CancelToken) -> None:
        logger.info("Starting Arc setup for bootstrap process")
        self.base.set_up_clients()

        logger.info("Registering Arc machine with Azure")
        identity = self.register_arc_machine(token)
        logger.info(f"Arc machine registered with principal {identity.principal_id}")

        logger.info("Validating Managed Cluster requirements")
        self.validate_managed_cluster()

        logger.info("Assigning RBAC roles to managed identity")
        self.assign_rbac_roles(identity, token)

        logger.info(f"⏳ Starting permission polling for arc identity with ID: {identity.principal_id} "
                    "(this may take a few minutes)...")
        self.wait_for_permissions(identity.principal_id, token)
        logger.info("🎉 Arc setup for bootstrap completed successfully")

    def register_arc_machine(self, token: CancelToken) -> ManagedIdentity:
        """Return the machine identity, connecting the Arc agent first if needed."""
        try:
            identity = ManagedIdentity.from_machine(self.base.get_arc_machine())
        except ArmError as e:
            logger.info(f"Arc machine not found, registering it: {e}")
            identity = None

        if identity:
            logger.info("Machine already registered as Arc machine")
            return identity

        self.run_arc_agent_connect(token)
        return self.wait_for_arc_registration(token)

    def run_arc_agent_connect(self, token: Optional[CancelToken] = None) -> None:
        logger.info("Connecting machine to Azure Arc using azcmagent")
        credential = self.base.auth_provider.user_credential(self.config)
        access_token = self.base.auth_provider.get_access_token(credential)
        agent.connect(
            resource_group=self.config.arc_resource_group,
            tenant_id=self.config.tenant_id,
            location=self.config.arc_location,
            subscription_id=self.config.subscription_id,
            resource_name=self.config.arc_machine_name,
            access_token=access_token,
            tags=self.config.arc_tags,
            token=token,
        )
        logger.info("Arc agent connect completed")

    def wait_for_arc_registration(self, token: CancelToken) -> ManagedIdentity:
        """Poll until the new machine resource exposes an identity principal."""
        def lookup() -> ManagedIdentity:
            identity = ManagedIdentity.from_machine(self.base.get_arc_machine())
            if identity is None:
                raise MachineNotReady("Arc machine has no managed identity yet")
            return identity

        try:
            return retry_with_backoff(
                lookup,
                self.registration_policy,
                token=token,
                retryable=registration_retryable,
                description="Arc machine registration",
            )
        except ArmError as e:
            if e.status_code in AUTH_FAILURE_STATUSES:
                raise AuthorizationError(f"not allowed to read the Arc machine resource: {e}") from e
            raise
        except RetryError as e:
            raise FlexNodeError(
                f"arc registration timed out after {self.registration_policy.max_attempts} attempts: {e}"
            ) from e

    def validate_managed_cluster(self) -> None:
        """Require Azure RBAC on the target cluster; the node authenticates through it."""
        cluster = self.base.get_aks_cluster()
        aad_profile = (cluster.get("properties") or {}).get("aadProfile") or {}
        if aad_profile.get("enableAzureRBAC") is not True:
            raise ConfigurationError(
                f"target AKS cluster '{cluster.get('name', self.config.target_cluster_name)}' "
                "must have Azure RBAC enabled for node authentication"
            )
        logger.info(f"Target AKS cluster '{cluster.get('name')}' has Azure RBAC enabled")

    def assign_rbac_roles(self, identity: ManagedIdentity, token: CancelToken) -> None:
        """Assign every required role, collecting failures instead of stopping at the first.

        Raises:
            AuthorizationError: If any role failed because the caller lacks privilege
            FlexNodeError: If any other role assignment failed
        """
        requirements = required_role_assignments(self.config)
        errors: List[str] = []
        forbidden = False

        for index, requirement in enumerate(requirements, start=1):
            logger.info(f"📋 [{index}/{len(requirements)}] Assigning role '{requirement.role_name}' "
                        f"on scope: {requirement.scope}")
            try:
                self.assign_role(identity.principal_id, requirement, token)
            except AuthorizationError as e:
                forbidden = True
                logger.error(f"❌ Failed to assign role '{requirement.role_name}': {e}")
                errors.append(f"role '{requirement.role_name}': {e}")
            except (FlexNodeError, RetryError) as e:
                logger.error(f"❌ Failed to assign role '{requirement.role_name}': {e}")
                errors.append(f"role '{requirement.role_name}': {e}")
            else:
                logger.info(f"✅ Successfully assigned role '{requirement.role_name}'")

        if errors:
            logger.error(f"⚠️ RBAC role assignment completed with {len(errors)} failures")
            for error in errors:
                logger.error(f"   - {error}")
            message = f"failed to assign {len(errors)} out of {len(requirements)} RBAC roles: {'; '.join(errors)}"
            if forbidden:
                raise AuthorizationError(message)
            raise FlexNodeError(message)

    def assign_role(self, principal_id: str, requirement: RoleAssignmentRequirement, token: CancelToken) -> None:
        """Create one role assignment, retrying while Azure AD has not replicated the principal."""
        role_definition_id = self.base.role_definition_id(requirement)

        def create() -> None:
            assignment_name = str(uuid.uuid4())
            logger.debug(f"Creating role assignment {assignment_name} for role {requirement.role_name}")
            try:
                self.base.role_assignments.create(
                    requirement.scope, assignment_name, principal_id, role_definition_id
                )
            except ArmError as e:
                outcome = classify_role_assignment_error(e)
                if outcome == ASSIGNMENT_EXISTS:
                    logger.info("ℹ️ Role assignment already exists")
                    return
                if outcome == ASSIGNMENT_RETRYABLE:
                    logger.warning("⚠️ Principal not found (Azure AD replication delay) - will retry...")
                    raise
                if outcome == ASSIGNMENT_FORBIDDEN:
                    raise AuthorizationError(f"{INSUFFICIENT_PRIVILEGE_MESSAGE}: {e}") from e
                logger.error(
                    f"❌ Role assignment creation failed: principal={principal_id} "
                    f"role={requirement.role_name} roleDefinitionId={role_definition_id} "
                    f"scope={requirement.scope} name={assignment_name}: {e}"
                )
                raise FlexNodeError(f"failed to create role assignment: {e}") from e

        try:
            retry_with_backoff(
                create,
                self.assignment_policy,
                token=token,
                retryable=lambda e: classify_role_assignment_error(e) == ASSIGNMENT_RETRYABLE,
                description=f"role assignment '{requirement.role_name}'",
            )
        except RetryError as e:
            raise FlexNodeError(
                f"failed to assign role after {self.assignment_policy.max_attempts} attempts due to "
                f"Azure AD replication delay - arc managed identity not found: {e.__cause__}"
            ) from e

    def wait_for_permissions(self, principal_id: str, token: CancelToken) -> None:
        """Poll the role assignment listings until every requirement is visible.

        Raises:
            RetryError: If the permissions do not show up before the deadline
        """
        def has_permissions() -> bool:
            try:
                if self.base.check_required_permissions(principal_id):
                    logger.info("✅ All required RBAC permissions are now available!")
                    return True
            except FlexNodeError as e:
                logger.warning(f"Error while checking permissions: {e}")
            logger.info(f"⏳ Some permissions are still missing, will check again in "
                        f"{self.permission_poll_interval:.0f} seconds...")
            return False

        poll_until(
            has_permissions,
            interval=self.permission_poll_interval,
            timeout=self.permission_timeout,
            token=token,
            description="RBAC permissions to be assigned",
        )
