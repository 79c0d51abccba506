"""Azure authentication and Resource Manager clients."""
from .arm import ArmClient, ArmError, MachinesClient, ManagedClustersClient, RoleAssignmentsClient
from .auth import ARM_SCOPE, AuthProvider, AzureCLICredential, ServicePrincipalCredential, ensure_authentication

__all__ = [
    'ARM_SCOPE',
    'ArmClient',
    'ArmError',
    'AuthProvider',
    'AzureCLICredential',
    'MachinesClient',
    'ManagedClustersClient',
    'RoleAssignmentsClient',
    'ServicePrincipalCredential',
    'ensure_authentication',
]
