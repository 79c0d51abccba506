"""Wrappers around the ``azcmagent`` command line."""
import logging
from typing import Dict, List, Optional

from ...errors import CommandError
from ...utils import CancelToken
from ...utils.system import command_exists, is_service_active, run_command
from .consts import ARC_AGENT_BINARY, ARC_SERVICES, CONNECT_TIMEOUT, DISCONNECT_TIMEOUT, SHOW_TIMEOUT

logger = logging.getLogger(__name__)


def is_arc_agent_installed() -> bool:
    return command_exists(ARC_AGENT_BINARY)


def are_arc_services_running() -> bool:
    for service in ARC_SERVICES:
        if not is_service_active(service):
            logger.debug(f"Arc service {service} is not active")
            return False
    return True


def parse_show_output(output: str) -> Dict[str, str]:
    """Parse the ``Key : Value`` lines printed by ``azcmagent show``.

    Lines without a colon are ignored. Values keep any further colons
    (timestamps, resource IDs).
    """
    fields: Dict[str, str] = {}
    for line in (output or "").strip().splitlines():
        line = line.strip()
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        key = key.strip()
        if key and key not in fields:
            fields[key] = value.strip()
    return fields


def is_connected(fields: Dict[str, str]) -> bool:
    return fields.get("Agent Status", "").lower() == "connected"


def show(timeout: float = SHOW_TIMEOUT) -> Dict[str, str]:
    """Run ``azcmagent show`` and return its parsed fields.

    Raises:
        CommandError: If the agent is missing, fails or hangs past ``timeout``
    """
    result = run_command([ARC_AGENT_BINARY, "show"], timeout=timeout, sudo=False)
    return parse_show_output(result.stdout or "")


def agent_reports_connected(timeout: float = SHOW_TIMEOUT) -> bool:
    try:
        fields = show(timeout)
    except CommandError as e:
        logger.debug(f"azcmagent show failed: {e} - Arc not ready")
        return False
    if "Agent Status" not in fields:
        logger.debug("Could not find Agent Status in azcmagent show output - Arc not ready")
        return False
    connected = is_connected(fields)
    if not connected:
        logger.debug(f"Arc agent status is '{fields['Agent Status']}' - not ready")
    return connected


def connect(resource_group: str, tenant_id: str, location: str, subscription_id: str,
            resource_name: str, access_token: str, tags: Optional[Dict[str, str]] = None,
            token: Optional[CancelToken] = None) -> None:
    """Register this machine with Azure Arc."""
    args: List[str] = [
        ARC_AGENT_BINARY, "connect",
        "--resource-group", resource_group,
        "--tenant-id", tenant_id,
        "--location", location,
        "--subscription-id", subscription_id,
        "--resource-name", resource_name,
    ]
    for key, value in sorted((tags or {}).items()):
        args.extend(["--tags", f"{key}={value}"])
    args.extend(["--access-token", access_token])
    run_command(args, timeout=CONNECT_TIMEOUT, capture=False, token=token)


def disconnect(token: Optional[CancelToken] = None) -> str:
    """Remove the local Arc agent state without touching the Azure resource."""
    result = run_command(
        [ARC_AGENT_BINARY, "disconnect", "--force-local-only"], timeout=DISCONNECT_TIMEOUT, token=token
    )
    return (result.stdout or "").strip()
