"""Thin Azure Resource Manager REST clients.

Only the handful of operations the agent needs are implemented: hybrid
compute machines, managed clusters and role assignments.
"""
import logging
from typing import Any, Dict, Iterator, Optional

import requests

from ...errors import FlexNodeError

logger = logging.getLogger(__name__)

ARM_ENDPOINT = "https://management.azure.com"

HYBRID_COMPUTE_API_VERSION = "2022-12-27"
CONTAINER_SERVICE_API_VERSION = "2024-02-01"
AUTHORIZATION_API_VERSION = "2022-04-01"


class ArmError(FlexNodeError):
    """Error response from Azure Resource Manager.

    Attributes:
        status_code: HTTP status, or 0 when the request never got a response
        code: The structured ``error.code`` from the body, if any
        message: The ``error.message`` from the body, or the raw text
    """

    def __init__(self, status_code: int, code: Optional[str] = None, message: str = ""):
        self.status_code = status_code
        self.code = code
        self.message = message
        label = f"{status_code} {code}" if code else str(status_code)
        super().__init__(f"ARM request failed ({label}): {message}")

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404 or self.code in ("ResourceNotFound", "RoleAssignmentNotFound", "NotFound")

    @classmethod
    def from_response(cls, response: requests.Response) -> "ArmError":
        code = None
        message = response.text or response.reason or ""
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and isinstance(body.get("error"), dict):
            code = body["error"].get("code")
            message = body["error"].get("message") or message
        return cls(response.status_code, code, message)


class ArmClient:
    """Authenticated JSON requests against the ARM endpoint."""

    def __init__(self, credential, timeout: float = 30, endpoint: str = ARM_ENDPOINT,
                 session: Optional[requests.Session] = None):
        self.credential = credential
        self.timeout = timeout
        self.endpoint = endpoint.rstrip("/")
        self.session = session or requests.Session()

    def request(self, method: str, path: str, api_version: Optional[str] = None,
                body: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        """Send a request and return the decoded JSON body (None when empty).

        ``path`` is either a resource path starting with ``/`` or an absolute
        ``nextLink`` URL.

        Raises:
            ArmError: On a non-2xx response or a transport failure
        """
        url = path if path.startswith("http") else f"{self.endpoint}{path}"
        params = {"api-version": api_version} if api_version else None
        headers = {"Authorization": f"Bearer {self.credential.get_token()}"}

        logger.debug(f"{method} {url}")
        try:
            response = self.session.request(
                method, url, params=params, json=body, headers=headers, timeout=self.timeout
            )
        except requests.RequestException as e:
            raise ArmError(0, None, str(e)) from e

        if response.status_code >= 400:
            raise ArmError.from_response(response)
        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return None

    def list(self, path: str, api_version: str) -> Iterator[Dict[str, Any]]:
        """Iterate every item of a paged list, following ``nextLink``."""
        page = self.request("GET", path, api_version)
        while page:
            for item in page.get("value", []):
                yield item
            next_link = page.get("nextLink")
            if not next_link:
                break
            page = self.request("GET", next_link)


class MachinesClient:
    """Microsoft.HybridCompute/machines (Arc-enabled servers)."""

    def __init__(self, arm: ArmClient, subscription_id: str):
        self.arm = arm
        self.subscription_id = subscription_id

    def _path(self, resource_group: str, name: str) -> str:
        return (f"/subscriptions/{self.subscription_id}/resourceGroups/{resource_group}"
                f"/providers/Microsoft.HybridCompute/machines/{name}")

    def get(self, resource_group: str, name: str) -> Dict[str, Any]:
        return self.arm.request("GET", self._path(resource_group, name), HYBRID_COMPUTE_API_VERSION) or {}

    def delete(self, resource_group: str, name: str) -> None:
        self.arm.request("DELETE", self._path(resource_group, name), HYBRID_COMPUTE_API_VERSION)


class ManagedClustersClient:
    """Microsoft.ContainerService/managedClusters (AKS)."""

    def __init__(self, arm: ArmClient, subscription_id: str):
        self.arm = arm
        self.subscription_id = subscription_id

    def _path(self, resource_group: str, name: str) -> str:
        return (f"/subscriptions/{self.subscription_id}/resourceGroups/{resource_group}"
                f"/providers/Microsoft.ContainerService/managedClusters/{name}")

    def get(self, resource_group: str, name: str) -> Dict[str, Any]:
        return self.arm.request("GET", self._path(resource_group, name), CONTAINER_SERVICE_API_VERSION) or {}

    def list_cluster_user_credential(self, resource_group: str, name: str) -> Dict[str, Any]:
        path = f"{self._path(resource_group, name)}/listClusterUserCredential"
        return self.arm.request("POST", path, CONTAINER_SERVICE_API_VERSION) or {}


class RoleAssignmentsClient:
    """Microsoft.Authorization/roleAssignments at an arbitrary scope."""

    def __init__(self, arm: ArmClient):
        self.arm = arm

    @staticmethod
    def _path(scope: str, name: str = "") -> str:
        path = f"{scope.rstrip('/')}/providers/Microsoft.Authorization/roleAssignments"
        return f"{path}/{name}" if name else path

    def create(self, scope: str, name: str, principal_id: str, role_definition_id: str,
               principal_type: str = "ServicePrincipal") -> Dict[str, Any]:
        body = {
            "properties": {
                "principalId": principal_id,
                "roleDefinitionId": role_definition_id,
                "principalType": principal_type,
            }
        }
        return self.arm.request("PUT", self._path(scope, name), AUTHORIZATION_API_VERSION, body) or {}

    def list_for_scope(self, scope: str) -> Iterator[Dict[str, Any]]:
        return self.arm.list(self._path(scope), AUTHORIZATION_API_VERSION)

    def delete(self, scope: str, name: str) -> None:
        self.arm.request("DELETE", self._path(scope, name), AUTHORIZATION_API_VERSION)
