"""flexnode - turn a Linux VM into a managed Kubernetes worker node and keep it there."""

__version__ = "0.1.0"
# Overwritten by the release build
__git_commit__ = "unknown"
__build_time__ = "unknown"
