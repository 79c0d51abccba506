"""Constants for Azure Arc registration."""

# Built-in Azure role definition IDs
ROLE_DEFINITION_IDS = {
    "Reader": "acdd72a7-3385-48ef-bd42-f606fba81ae7",
    "Azure Kubernetes Service RBAC Cluster Admin": "b1ff04bb-8a4e-4dc4-8eb5-8693973ce19b",
    "Azure Kubernetes Service Cluster Admin Role": "0ab0b1a8-8aac-4efd-b8c2-3ee1fb270be8",
}

ARC_SERVICES = ("himdsd", "gcarcservice", "extd")

ARC_AGENT_BINARY = "azcmagent"
ARC_AGENT_INSTALL_HINT = (
    "azure Arc agent not found - please run the installation script first:\n"
    "curl -fsSL https://raw.githubusercontent.com/Azure/AKSFlexNode/main/scripts/install.sh | bash"
)

SHOW_TIMEOUT = 10
CONNECT_TIMEOUT = 600
DISCONNECT_TIMEOUT = 120

# Registration polling: wait for the machine identity to appear
REGISTRATION_BASE_DELAY = 5.0
REGISTRATION_MAX_DELAY = 30.0
REGISTRATION_MAX_ATTEMPTS = 10

# Role assignment creation: absorbs Azure AD replication lag
ASSIGNMENT_BASE_DELAY = 5.0
ASSIGNMENT_MAX_DELAY = 30.0
ASSIGNMENT_MAX_ATTEMPTS = 5

# Permission propagation polling
PERMISSION_POLL_INTERVAL = 10.0
PERMISSION_POLL_TIMEOUT = 600.0

HEARTBEAT_FORMAT = "%Y-%m-%dT%H:%M:%SZ"
