"""Azure credential resolution.

Two credential sources are supported: a configured service principal
(OAuth2 client credentials against Azure AD) and the local Azure CLI session.
"""
import json
import logging
import subprocess
import time
from typing import Dict, Optional, Tuple

import requests

from ...config import Config
from ...errors import AuthenticationError, CommandError
from ...utils.system import run_command

logger = logging.getLogger(__name__)

ARM_SCOPE = "https://management.azure.com/.default"
AAD_AUTHORITY = "https://login.microsoftonline.com"

# Refresh cached tokens this many seconds before they expire
TOKEN_REFRESH_MARGIN = 300


def scope_to_resource(scope: str) -> str:
    """Convert a v2 ``.default`` scope into the v1 resource the Azure CLI expects."""
    if scope.endswith("/.default"):
        return scope[: -len("/.default")]
    return scope


class ServicePrincipalCredential:
    """Client secret credential for a service principal."""

    def __init__(self, tenant_id: str, client_id: str, client_secret: str, timeout: float = 30):
        self.tenant_id = tenant_id
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout = timeout
        self._cache: Dict[str, Tuple[str, float]] = {}

    def get_token(self, scope: str = ARM_SCOPE) -> str:
        cached = self._cache.get(scope)
        if cached and cached[1] - TOKEN_REFRESH_MARGIN > time.time():
            return cached[0]

        url = f"{AAD_AUTHORITY}/{self.tenant_id}/oauth2/v2.0/token"
        try:
            response = requests.post(
                url,
                data={
                    "grant_type": "client_credentials",
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "scope": scope,
                },
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise AuthenticationError(f"failed to reach Azure AD token endpoint: {e}") from e

        if response.status_code != 200:
            detail = response.text
            try:
                body = response.json()
                detail = body.get("error_description") or body.get("error") or detail
            except ValueError:
                pass
            raise AuthenticationError(
                f"service principal token request failed with status {response.status_code}: {detail}"
            )

        body = response.json()
        token = body["access_token"]
        self._cache[scope] = (token, time.time() + float(body.get("expires_in", 3600)))
        return token


class AzureCLICredential:
    """Credential backed by the current ``az login`` session."""

    def __init__(self, timeout: float = 30):
        self.timeout = timeout

    def get_token(self, scope: str = ARM_SCOPE) -> str:
        try:
            output = run_command(
                ["az", "account", "get-access-token", "--resource", scope_to_resource(scope), "--output", "json"],
                timeout=self.timeout,
                sudo=False,
            ).stdout
            return json.loads(output)["accessToken"]
        except CommandError as e:
            raise AuthenticationError(f"failed to get access token from Azure CLI: {e}") from e
        except (ValueError, KeyError) as e:
            raise AuthenticationError(f"unexpected output from 'az account get-access-token': {e}") from e


class AuthProvider:
    """Factory for Azure credentials."""

    def __init__(self, timeout: float = 30):
        self.timeout = timeout

    def user_credential(self, config: Config):
        """Return the service principal credential when configured, else the Azure CLI one."""
        if config.is_sp_configured:
            sp = config.azure.service_principal
            return ServicePrincipalCredential(sp.tenant_id, sp.client_id, sp.client_secret, timeout=self.timeout)
        return AzureCLICredential(timeout=self.timeout)

    def get_access_token(self, credential, scope: str = ARM_SCOPE) -> str:
        return credential.get_token(scope)

    def check_cli_auth_status(self) -> None:
        """Verify the Azure CLI is logged in and its token has not expired.

        Raises:
            AuthenticationError: If either check fails
        """
        try:
            run_command(["az", "account", "show", "--output", "json"], timeout=self.timeout, sudo=False)
        except CommandError as e:
            raise AuthenticationError(f"azure CLI authentication check failed: {e}") from e
        try:
            run_command(["az", "account", "get-access-token", "--output", "json"], timeout=self.timeout, sudo=False)
        except CommandError as e:
            raise AuthenticationError(f"azure CLI token validation failed: {e}") from e

    def interactive_login(self, tenant_id: str) -> None:
        """Run ``az login`` attached to the terminal so the user can complete the prompt."""
        logger.info(f"🔑 Starting interactive Azure CLI login for tenant {tenant_id}")
        try:
            subprocess.run(["az", "login", "--tenant", tenant_id], check=True)
        except (subprocess.CalledProcessError, FileNotFoundError) as e:
            raise AuthenticationError(f"interactive Azure CLI login failed: {e}") from e

    def ensure_authenticated(self, tenant_id: str) -> None:
        try:
            self.check_cli_auth_status()
            return
        except AuthenticationError as e:
            logger.info(f"Azure CLI session not usable ({e}), prompting for login")
        self.interactive_login(tenant_id)


def ensure_authentication(config: Config, provider: Optional[AuthProvider] = None) -> None:
    """Make sure a usable credential exists before talking to Azure.

    A configured service principal needs no preparation. Otherwise the Azure
    CLI session is checked and an interactive login is started when needed.

    Raises:
        AuthenticationError: If no usable credential can be established
    """
    if config.is_sp_configured:
        logger.info("🔐 Using service principal authentication")
        return

    provider = provider or AuthProvider()
    logger.info("🔐 Checking Azure CLI authentication status...")
    provider.ensure_authenticated(config.tenant_id)
    logger.info("✅ Azure CLI authentication verified")
