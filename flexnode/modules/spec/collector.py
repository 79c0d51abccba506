"""Collects the target managed cluster's spec and caches it on disk."""
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from ...config import Config
from ...errors import FlexNodeError
from ...utils.system import write_file_atomic
from ..azure import ArmClient, AuthProvider, ManagedClustersClient
from .models import MANAGED_CLUSTER_SPEC_SCHEMA_VERSION, SPEC_FILE_NAME, ManagedClusterSpec

logger = logging.getLogger(__name__)

# An enricher fills spec fields from the managed cluster resource, raising to abort collection
Enricher = Callable[[ManagedClusterSpec, Dict[str, Any]], None]


def get_spec_file_path(config: Config) -> Path:
    return config.spec_dir / SPEC_FILE_NAME


def _properties(cluster: Dict[str, Any]) -> Dict[str, Any]:
    return cluster.get("properties") or {}


def enrich_kubernetes_version_required(spec: ManagedClusterSpec, cluster: Dict[str, Any]) -> None:
    properties = _properties(cluster)
    kubernetes_version = properties.get("kubernetesVersion") or ""
    if not kubernetes_version:
        raise FlexNodeError("managed cluster kubernetesVersion is empty")
    current_version = properties.get("currentKubernetesVersion") or ""
    if not current_version:
        raise FlexNodeError("managed cluster currentKubernetesVersion is empty")
    spec.kubernetes_version = kubernetes_version
    spec.current_kubernetes_version = current_version


def enrich_fqdn_required(spec: ManagedClusterSpec, cluster: Dict[str, Any]) -> None:
    fqdn = _properties(cluster).get("fqdn") or ""
    if not fqdn:
        raise FlexNodeError("managed cluster FQDN is empty")
    spec.fqdn = fqdn


class ManagedClusterSpecCollector:
    """Fetches the managed cluster and writes a ManagedClusterSpec snapshot.

    The ARM client is built lazily on the first collect() unless one is injected.
    """

    def __init__(self, config: Config, client: Optional[ManagedClustersClient] = None,
                 output_path: Optional[Union[str, Path]] = None,
                 auth_provider: Optional[AuthProvider] = None):
        self.config = config
        self.client = client
        self.output_path = Path(output_path) if output_path else get_spec_file_path(config)
        self.auth_provider = auth_provider or AuthProvider(timeout=config.agent.api_timeout)
        self.enrichers: List[Enricher] = [enrich_kubernetes_version_required, enrich_fqdn_required]

    def add_enricher(self, enricher: Optional[Enricher]) -> None:
        if enricher is not None:
            self.enrichers.append(enricher)

    def _ensure_client(self) -> ManagedClustersClient:
        if self.client is None:
            subscription_id = self.config.target_cluster_subscription_id
            if not subscription_id:
                raise FlexNodeError("subscription ID missing")
            credential = self.auth_provider.user_credential(self.config)
            arm = ArmClient(credential, timeout=self.config.agent.api_timeout)
            self.client = ManagedClustersClient(arm, subscription_id)
        return self.client

    def collect(self) -> ManagedClusterSpec:
        """Query the cluster, build the spec and write it atomically.

        Raises:
            FlexNodeError: If the target is not configured, the cluster cannot be
                fetched, or an enricher rejects the response
        """
        name = self.config.target_cluster_name
        resource_group = self.config.target_cluster_resource_group
        if not name or not resource_group:
            raise FlexNodeError(
                f"target cluster name/resourceGroup missing (name='{name}', resourceGroup='{resource_group}')"
            )

        client = self._ensure_client()
        logger.info(f"Collecting managed cluster spec for {resource_group}/{name}")
        cluster = client.get(resource_group, name)

        spec = ManagedClusterSpec(
            schema_version=MANAGED_CLUSTER_SPEC_SCHEMA_VERSION,
            cluster_resource_id=self.config.target_cluster_id,
            cluster_name=name,
            resource_group=resource_group,
            collected_at=datetime.now(timezone.utc),
        )
        for enricher in self.enrichers:
            enricher(spec, cluster)

        data = spec.model_dump(mode="json", by_alias=True)
        self.output_path.parent.mkdir(parents=True, exist_ok=True)
        write_file_atomic(self.output_path, json.dumps(data, indent=2) + "\n")
        logger.debug(f"Managed cluster spec written to {self.output_path}")
        return spec


def load_spec(path: Union[str, Path]) -> ManagedClusterSpec:
    """Read a cached spec, ignoring fields this version does not know."""
    with open(path, "r") as f:
        return ManagedClusterSpec.model_validate_json(f.read())
