import json
import subprocess
from unittest import mock

import pytest

from flexnode.config import config_from_dict
from flexnode.errors import AuthenticationError, CommandError
from flexnode.modules.azure import auth
from flexnode.modules.azure.auth import (
    AuthProvider,
    AzureCLICredential,
    ServicePrincipalCredential,
    ensure_authentication,
    scope_to_resource,
)


def token_response(status_code=200, body=None):
    response = mock.Mock(status_code=status_code, text=json.dumps(body or {}))
    response.json.return_value = body or {}
    return response


def test_scope_to_resource():
    assert scope_to_resource("https://management.azure.com/.default") == "https://management.azure.com"
    assert scope_to_resource("6dae42f8-4368-4678-94ff-3960e28e3630") == "6dae42f8-4368-4678-94ff-3960e28e3630"


def test_user_credential_prefers_service_principal(config_data):
    config_data["azure"]["servicePrincipal"] = {"tenantId": "t", "clientId": "c", "clientSecret": "s"}

    credential = AuthProvider().user_credential(config_from_dict(config_data))

    assert isinstance(credential, ServicePrincipalCredential)
    assert credential.client_id == "c"


def test_user_credential_falls_back_to_cli(config):
    assert isinstance(AuthProvider().user_credential(config), AzureCLICredential)


def test_service_principal_token_is_cached(monkeypatch):
    post = mock.Mock(return_value=token_response(body={"access_token": "abc", "expires_in": 3600}))
    monkeypatch.setattr(auth.requests, "post", post)
    credential = ServicePrincipalCredential("tenant", "client", "secret")

    assert credential.get_token() == "abc"
    assert credential.get_token() == "abc"
    post.assert_called_once()
    assert post.call_args[0][0] == "https://login.microsoftonline.com/tenant/oauth2/v2.0/token"
    assert post.call_args[1]["data"]["grant_type"] == "client_credentials"


def test_service_principal_error_uses_aad_description(monkeypatch):
    body = {"error": "invalid_client", "error_description": "AADSTS7000215: Invalid client secret"}
    monkeypatch.setattr(auth.requests, "post", mock.Mock(return_value=token_response(401, body)))

    with pytest.raises(AuthenticationError) as exc_info:
        ServicePrincipalCredential("tenant", "client", "bad").get_token()
    assert "AADSTS7000215" in str(exc_info.value)
    assert "401" in str(exc_info.value)


def test_cli_credential_reads_access_token(monkeypatch):
    run = mock.Mock(return_value=mock.Mock(stdout='{"accessToken": "cli-token"}'))
    monkeypatch.setattr(auth, "run_command", run)

    assert AzureCLICredential().get_token() == "cli-token"
    assert "https://management.azure.com" in run.call_args[0][0]


def test_cli_credential_failure_is_authentication_error(monkeypatch):
    monkeypatch.setattr(auth, "run_command", mock.Mock(side_effect=CommandError(["az"], 1, stderr="Please run 'az login'")))

    with pytest.raises(AuthenticationError):
        AzureCLICredential().get_token()


def test_ensure_authenticated_skips_login_when_session_valid(monkeypatch):
    monkeypatch.setattr(auth, "run_command", mock.Mock())
    login = mock.Mock()
    monkeypatch.setattr(auth.subprocess, "run", login)

    AuthProvider().ensure_authenticated("tenant")

    login.assert_not_called()


def test_ensure_authenticated_logs_in_when_token_expired(monkeypatch):
    def fake_run(cmd, **kwargs):
        if "get-access-token" in cmd:
            raise CommandError(cmd, 1, stderr="AADSTS700082: The refresh token has expired")
        return mock.Mock(stdout="{}")

    monkeypatch.setattr(auth, "run_command", fake_run)
    login = mock.Mock()
    monkeypatch.setattr(auth.subprocess, "run", login)

    AuthProvider().ensure_authenticated("tenant")

    login.assert_called_once_with(["az", "login", "--tenant", "tenant"], check=True)


def test_failed_interactive_login(monkeypatch):
    monkeypatch.setattr(auth, "run_command", mock.Mock(side_effect=CommandError(["az"], 1)))
    monkeypatch.setattr(auth.subprocess, "run", mock.Mock(side_effect=subprocess.CalledProcessError(1, "az")))

    with pytest.raises(AuthenticationError):
        AuthProvider().ensure_authenticated("tenant")


def test_ensure_authentication_with_service_principal_needs_no_cli(config_data):
    config_data["azure"]["servicePrincipal"] = {"tenantId": "t", "clientId": "c", "clientSecret": "s"}
    provider = mock.Mock(spec=AuthProvider)

    ensure_authentication(config_from_dict(config_data), provider)

    provider.ensure_authenticated.assert_not_called()


def test_ensure_authentication_checks_cli_session(config):
    provider = mock.Mock(spec=AuthProvider)

    ensure_authentication(config, provider)

    provider.ensure_authenticated.assert_called_once_with(config.tenant_id)
