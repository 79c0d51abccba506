import copy
from typing import Any, Dict, Iterator, List, Optional

import pytest

from flexnode.config import config_from_dict
from flexnode.modules.azure import ArmError
from flexnode.modules.bootstrapper import Step, ValidatingStep
from flexnode.utils import CancelToken, RetryPolicy

SUBSCRIPTION_ID = "11111111-2222-3333-4444-555555555555"
TENANT_ID = "aaaaaaaa-bbbb-cccc-dddd-eeeeeeeeeeee"
CLUSTER_ID = (
    f"/subscriptions/{SUBSCRIPTION_ID}/resourceGroups/rg-aks"
    "/providers/Microsoft.ContainerService/managedClusters/aks-one"
)
PRINCIPAL_ID = "99999999-8888-7777-6666-555555555555"

BASE_CONFIG = {
    "azure": {
        "subscriptionId": SUBSCRIPTION_ID,
        "tenantId": TENANT_ID,
        "arc": {"machineName": "edge-01", "tags": {"env": "test"}},
        "targetCluster": {"resourceId": CLUSTER_ID, "location": "eastus"},
    },
    "agent": {"logLevel": "info", "logDir": ""},
}


@pytest.fixture
def config_data() -> Dict[str, Any]:
    return copy.deepcopy(BASE_CONFIG)


@pytest.fixture
def config(config_data, tmp_path):
    config_data["paths"] = {"statusDir": str(tmp_path / "status"), "specDir": str(tmp_path / "spec")}
    return config_from_dict(config_data)


@pytest.fixture
def token():
    return CancelToken()


@pytest.fixture
def no_wait_policy():
    return RetryPolicy(base_delay=0, max_delay=0, max_attempts=5)


class RecordingStep(Step):
    """Step whose behaviour is scripted by the test."""

    def __init__(self, name: str, log: List[str], fail: Optional[Exception] = None, completed: bool = False):
        self._name = name
        self.log = log
        self.fail = fail
        self.completed = completed
        self.executions = 0

    @property
    def name(self) -> str:
        return self._name

    def is_completed(self, token: CancelToken) -> bool:
        return self.completed

    def execute(self, token: CancelToken) -> None:
        self.executions += 1
        self.log.append(self._name)
        if self.fail:
            raise self.fail


class RecordingValidatingStep(RecordingStep, ValidatingStep):

    def __init__(self, name: str, log: List[str], validation_error: Optional[Exception] = None, **kwargs):
        super().__init__(name, log, **kwargs)
        self.validation_error = validation_error
        self.validations = 0

    def validate(self, token: CancelToken) -> None:
        self.validations += 1
        if self.validation_error:
            raise self.validation_error


class FakeMachines:

    def __init__(self, machine: Optional[Dict[str, Any]] = None):
        self.machine = machine
        self.deleted: List[str] = []

    def get(self, resource_group: str, name: str) -> Dict[str, Any]:
        if self.machine is None:
            raise ArmError(404, "ResourceNotFound", f"machine {name} not found")
        return self.machine

    def delete(self, resource_group: str, name: str) -> None:
        if self.machine is None:
            raise ArmError(404, "ResourceNotFound", f"machine {name} not found")
        self.deleted.append(name)
        self.machine = None


class LaggingMachines(FakeMachines):
    """Machine whose identity principal only shows up on the GET after ``lag`` GETs."""

    def __init__(self, machine: Dict[str, Any], lag: int, error: Optional[ArmError] = None):
        super().__init__(machine)
        self.lag = lag
        self.error = error
        self.gets = 0

    def get(self, resource_group: str, name: str) -> Dict[str, Any]:
        self.gets += 1
        if self.error:
            raise self.error
        machine = super().get(resource_group, name)
        if self.gets <= self.lag:
            return {k: v for k, v in machine.items() if k != "identity"}
        return machine


class FakeClusters:

    def __init__(self, cluster: Dict[str, Any]):
        self.cluster = cluster

    def get(self, resource_group: str, name: str) -> Dict[str, Any]:
        return self.cluster


class FakeRoleAssignments:
    """In-memory role assignments; ``errors`` are raised by create() in order before it succeeds."""

    def __init__(self, errors: Optional[Dict[str, List[Exception]]] = None,
                 delete_errors: Optional[Dict[str, Exception]] = None):
        self.errors = errors or {}
        self.delete_errors = delete_errors or {}
        self.assignments: Dict[str, List[Dict[str, Any]]] = {}
        self.create_calls: List[str] = []
        self.deleted: List[str] = []

    def create(self, scope: str, name: str, principal_id: str, role_definition_id: str,
               principal_type: str = "ServicePrincipal") -> Dict[str, Any]:
        self.create_calls.append(role_definition_id)
        pending = self.errors.get(role_definition_id.rsplit("/", 1)[-1])
        if pending:
            raise pending.pop(0)
        assignment = {
            "name": name,
            "properties": {
                "principalId": principal_id,
                "roleDefinitionId": role_definition_id,
                "principalType": principal_type,
                "scope": scope,
            },
        }
        self.assignments.setdefault(scope, []).append(assignment)
        return assignment

    def list_for_scope(self, scope: str) -> Iterator[Dict[str, Any]]:
        return iter(list(self.assignments.get(scope, [])))

    def delete(self, scope: str, name: str) -> None:
        if name in self.delete_errors:
            raise self.delete_errors[name]
        self.deleted.append(name)
        self.assignments[scope] = [a for a in self.assignments.get(scope, []) if a["name"] != name]


def arc_machine(principal_id: Optional[str] = PRINCIPAL_ID) -> Dict[str, Any]:
    machine: Dict[str, Any] = {
        "id": f"/subscriptions/{SUBSCRIPTION_ID}/resourceGroups/rg-aks/providers/Microsoft.HybridCompute/machines/edge-01",
        "name": "edge-01",
        "tags": {"env": "test"},
    }
    if principal_id:
        machine["identity"] = {"type": "SystemAssigned", "principalId": principal_id}
    return machine


def managed_cluster(rbac: bool = True) -> Dict[str, Any]:
    return {
        "id": CLUSTER_ID,
        "name": "aks-one",
        "properties": {
            "kubernetesVersion": "1.32",
            "currentKubernetesVersion": "1.32.7",
            "fqdn": "aks-one-dns-abc123.hcp.eastus.azmk8s.io",
            "aadProfile": {"managed": True, "enableAzureRBAC": rbac},
        },
    }


class LaggingRoleAssignments(FakeRoleAssignments):
    """Role assignments that stay invisible to listings for the first ``lag`` listings."""

    def __init__(self, lag: int):
        super().__init__()
        self.lag = lag
        self.listings = 0

    def list_for_scope(self, scope: str) -> Iterator[Dict[str, Any]]:
        self.listings += 1
        if self.listings <= self.lag:
            return iter([])
        return super().list_for_scope(scope)
