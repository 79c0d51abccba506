"""Azure Arc machine registration and RBAC propagation."""
from .base import ManagedIdentity, RoleAssignmentRequirement, required_role_assignments
from .installer import ArcInstaller, classify_role_assignment_error
from .uninstaller import ArcUninstaller

__all__ = [
    'ArcInstaller',
    'ArcUninstaller',
    'ManagedIdentity',
    'RoleAssignmentRequirement',
    'classify_role_assignment_error',
    'required_role_assignments',
]
