"""Node status sampling and persistence."""
from .collector import (
    StatusCollector,
    get_status_file_path,
    load_status,
    remove_status_file,
    write_status,
)
from .models import ArcStatus, NodeStatus

__all__ = [
    'ArcStatus',
    'NodeStatus',
    'StatusCollector',
    'get_status_file_path',
    'load_status',
    'remove_status_file',
    'write_status',
]
