"""Managed cluster spec snapshot."""
from .collector import ManagedClusterSpecCollector, get_spec_file_path, load_spec
from .models import MANAGED_CLUSTER_SPEC_SCHEMA_VERSION, ManagedClusterSpec

__all__ = [
    'MANAGED_CLUSTER_SPEC_SCHEMA_VERSION',
    'ManagedClusterSpec',
    'ManagedClusterSpecCollector',
    'get_spec_file_path',
    'load_spec',
]
