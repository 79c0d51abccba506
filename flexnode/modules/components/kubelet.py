"""Kubelet service configuration.

The kubelet authenticates to the API server with an exec credential plugin
that fetches an AAD token for the Arc machine identity from the local HIMDS
endpoint, so no long-lived client certificate is written to the node.
"""
import logging
import os
from typing import Dict, Tuple

import yaml

from ...config import Config
from ...errors import FlexNodeError
from ...utils import CancelToken
from ...utils.system import (
    file_exists,
    is_service_active,
    read_system_file,
    remove_path,
    run_command,
    stop_service,
    write_system_file,
)
from ..bootstrapper.executor import Step, ValidatingStep
from .cluster_credentials import admin_kubeconfig_path

logger = logging.getLogger(__name__)

KUBELET_DEFAULTS_PATH = "/etc/default/kubelet"
KUBELET_SERVICE_PATH = "/etc/systemd/system/kubelet.service"
KUBELET_SERVICE_DIR = "/etc/systemd/system/kubelet.service.d"
KUBELET_CONTAINERD_DROPIN = os.path.join(KUBELET_SERVICE_DIR, "10-containerd.conf")
KUBELET_TLS_BOOTSTRAP_DROPIN = os.path.join(KUBELET_SERVICE_DIR, "10-tlsbootstrap.conf")
KUBELET_KUBECONFIG_PATH = "/var/lib/kubelet/kubeconfig"
KUBELET_TOKEN_SCRIPT_PATH = "/var/lib/kubelet/token.sh"

# Application ID of the AKS AAD server app; tokens for the API server target it
AKS_SERVICE_RESOURCE_ID = "6dae42f8-4368-4678-94ff-3960e28e3630"
ARC_TOKEN_URL = (
    "http://127.0.0.1:40342/metadata/identity/oauth2/token?api-version=2019-11-01&resource={resource}"
)

TLS_CIPHER_SUITES = ",".join([
    "TLS_ECDHE_ECDSA_WITH_AES_128_GCM_SHA256",
    "TLS_ECDHE_RSA_WITH_AES_128_GCM_SHA256",
    "TLS_ECDHE_ECDSA_WITH_CHACHA20_POLY1305",
    "TLS_ECDHE_RSA_WITH_AES_256_GCM_SHA384",
    "TLS_ECDHE_RSA_WITH_CHACHA20_POLY1305",
    "TLS_ECDHE_ECDSA_WITH_AES_256_GCM_SHA384",
    "TLS_RSA_WITH_AES_256_GCM_SHA384",
    "TLS_RSA_WITH_AES_128_GCM_SHA256",
])

CONTAINERD_DROPIN = """[Service]
Environment=KUBELET_CONTAINERD_FLAGS="--runtime-request-timeout=15m --container-runtime-endpoint=unix:///run/containerd/containerd.sock"
"""

TLS_BOOTSTRAP_DROPIN = f"""[Service]
Environment=KUBELET_TLS_BOOTSTRAP_FLAGS="--kubeconfig {KUBELET_KUBECONFIG_PATH}"
"""

KUBELET_SERVICE = """[Unit]
Description=Kubelet
ConditionPathExists=/usr/local/bin/kubelet
[Service]
Restart=always
EnvironmentFile=/etc/default/kubelet
SuccessExitStatus=143
ExecStartPre=/bin/bash -c "if [ $(mount | grep \\"{kubelet_dir}\\" | wc -l) -le 0 ] ; then /bin/mount --bind {kubelet_dir} {kubelet_dir} ; fi"
ExecStartPre=/bin/mount --make-shared {kubelet_dir}
ExecStartPre=-/sbin/ebtables -t nat --list
ExecStartPre=-/sbin/iptables -t nat --numeric --list
ExecStart=/usr/local/bin/kubelet \\
        --enable-server \\
        --node-labels="${{KUBELET_NODE_LABELS}}" \\
        --v=2 \\
        --volume-plugin-dir={volume_plugin_dir} \\
        --pod-manifest-path={manifests_dir}/ \\
        $KUBELET_TLS_BOOTSTRAP_FLAGS \\
        $KUBELET_CONFIG_FILE_FLAGS \\
        $KUBELET_CONTAINERD_FLAGS \\
        $KUBELET_FLAGS
[Install]
WantedBy=multi-user.target
"""

TOKEN_SCRIPT = """#!/bin/bash

# Fetch an AAD token from Azure Arc HIMDS and print it as an ExecCredential

TOKEN_URL="{token_url}"
EXECCREDENTIAL='
{{
  "kind": "ExecCredential",
  "apiVersion": "client.authentication.k8s.io/v1beta1",
  "spec": {{
    "interactive": false
  }},
  "status": {{
    "expirationTimestamp": .expires_on | tonumber | todate,
    "token": .access_token
  }}
}}
'

# HIMDS answers the first request with a challenge file only root can read
CHALLENGE_TOKEN_PATH=$(curl -s -D - -H Metadata:true $TOKEN_URL | grep Www-Authenticate | cut -d "=" -f 2 | tr -d "[:cntrl:]")
CHALLENGE_TOKEN=$(cat $CHALLENGE_TOKEN_PATH)
if [ $? -ne 0 ]; then
    echo "Could not retrieve challenge token, double check that this command is run with root privileges."
    exit 255
fi

curl -s -H Metadata:true -H "Authorization: Basic $CHALLENGE_TOKEN" $TOKEN_URL | jq "$EXECCREDENTIAL"
"""

MANAGED_FILES = (
    KUBELET_DEFAULTS_PATH,
    KUBELET_SERVICE_PATH,
    KUBELET_CONTAINERD_DROPIN,
    KUBELET_TLS_BOOTSTRAP_DROPIN,
    KUBELET_KUBECONFIG_PATH,
    KUBELET_TOKEN_SCRIPT_PATH,
)


def _join_pairs(values: Dict[str, str], separator: str = "=") -> str:
    return ",".join(f"{k}{separator}{v}" for k, v in sorted(values.items()))


def render_kubelet_defaults(config: Config) -> str:
    node = config.node
    flags = [
        "--address=0.0.0.0",
        "--anonymous-auth=false",
        "--authentication-token-webhook=true",
        "--authorization-mode=Webhook",
        "--cgroup-driver=systemd",
        "--cgroups-per-qos=true",
        "--enforce-node-allocatable=pods",
        "--event-qps=0",
        f"--image-gc-high-threshold={node.kubelet.image_gc_high_threshold}",
        f"--image-gc-low-threshold={node.kubelet.image_gc_low_threshold}",
        f"--max-pods={node.max_pods}",
        "--node-status-update-frequency=10s",
        f"--pod-infra-container-image={config.containerd.pause_image}",
        "--pod-max-pids=-1",
        "--protect-kernel-defaults=true",
        "--read-only-port=0",
        "--resolv-conf=/run/systemd/resolve/resolv.conf",
        "--streaming-connection-idle-timeout=4h",
        f"--tls-cipher-suites={TLS_CIPHER_SUITES}",
    ]
    if node.kubelet.eviction_hard:
        flags.append(f"--eviction-hard={_join_pairs(node.kubelet.eviction_hard, '<')}")
    if node.kubelet.kube_reserved:
        flags.append(f"--kube-reserved={_join_pairs(node.kubelet.kube_reserved)}")

    lines = [
        f'KUBELET_NODE_LABELS="{_join_pairs(node.labels)}"',
        'KUBELET_CONFIG_FILE_FLAGS=""',
        'KUBELET_FLAGS="' + " ".join(flags) + '"',
    ]
    return "\n".join(lines) + "\n"


def render_kubelet_service(config: Config) -> str:
    paths = config.paths.kubernetes
    return KUBELET_SERVICE.format(
        kubelet_dir=paths.kubelet_dir,
        volume_plugin_dir=paths.volume_plugin_dir,
        manifests_dir=paths.manifests_dir.rstrip("/"),
    )


def render_token_script() -> str:
    return TOKEN_SCRIPT.format(token_url=ARC_TOKEN_URL.format(resource=AKS_SERVICE_RESOURCE_ID))


def extract_cluster_info(kubeconfig_text: str) -> Tuple[str, str]:
    """Return (server URL, base64 CA data) of the first cluster in a kubeconfig.

    Raises:
        FlexNodeError: If the kubeconfig cannot be parsed or has no server
    """
    try:
        kubeconfig = yaml.safe_load(kubeconfig_text) or {}
    except yaml.YAMLError as e:
        raise FlexNodeError(f"failed to parse kubeconfig YAML: {e}") from e

    clusters = kubeconfig.get("clusters") or []
    if not clusters:
        raise FlexNodeError("no clusters found in kubeconfig")
    cluster = clusters[0].get("cluster") or {}
    server = (cluster.get("server") or "").strip()
    if not server:
        raise FlexNodeError("cluster server URL is empty")
    return server, (cluster.get("certificate-authority-data") or "").strip()


def render_kubelet_kubeconfig(cluster_name: str, server: str, ca_data: str) -> str:
    cluster: Dict[str, object] = {"server": server}
    if ca_data:
        cluster["certificate-authority-data"] = ca_data
    else:
        cluster["insecure-skip-tls-verify"] = True

    kubeconfig = {
        "apiVersion": "v1",
        "kind": "Config",
        "clusters": [{"name": cluster_name, "cluster": cluster}],
        "contexts": [{"name": "arc-context", "context": {"cluster": cluster_name, "user": "arc-user"}}],
        "current-context": "arc-context",
        "users": [{
            "name": "arc-user",
            "user": {
                "exec": {
                    "apiVersion": "client.authentication.k8s.io/v1beta1",
                    "command": KUBELET_TOKEN_SCRIPT_PATH,
                    "env": None,
                    "provideClusterInfo": False,
                },
            },
        }],
    }
    return yaml.safe_dump(kubeconfig, default_flow_style=False, sort_keys=False)


class KubeletInstaller(ValidatingStep):

    def __init__(self, config: Config):
        self.config = config

    @property
    def name(self) -> str:
        return "KubeletInstaller"

    def validate(self, token: CancelToken) -> None:
        if not file_exists(admin_kubeconfig_path(self.config)):
            raise FlexNodeError(f"cluster kubeconfig {admin_kubeconfig_path(self.config)} not found")

    def is_completed(self, token: CancelToken) -> bool:
        if not all(file_exists(path) for path in MANAGED_FILES):
            return False
        try:
            defaults = read_system_file(KUBELET_DEFAULTS_PATH)
            service = read_system_file(KUBELET_SERVICE_PATH)
        except (OSError, FlexNodeError):
            return False
        return defaults == render_kubelet_defaults(self.config) and service == render_kubelet_service(self.config)

    def execute(self, token: CancelToken) -> None:
        logger.info("Configuring kubelet")
        write_system_file(KUBELET_DEFAULTS_PATH, render_kubelet_defaults(self.config))
        write_system_file(KUBELET_TOKEN_SCRIPT_PATH, render_token_script(), mode=0o755)

        server, ca_data = extract_cluster_info(read_system_file(admin_kubeconfig_path(self.config)))
        kubeconfig = render_kubelet_kubeconfig(self.config.target_cluster_name, server, ca_data)
        write_system_file(KUBELET_KUBECONFIG_PATH, kubeconfig, mode=0o600)

        run_command(["mkdir", "-p", KUBELET_SERVICE_DIR])
        write_system_file(KUBELET_CONTAINERD_DROPIN, CONTAINERD_DROPIN)
        write_system_file(KUBELET_TLS_BOOTSTRAP_DROPIN, TLS_BOOTSTRAP_DROPIN)
        write_system_file(KUBELET_SERVICE_PATH, render_kubelet_service(self.config))
        logger.info("Kubelet installed and configured successfully")


class KubeletUninstaller(Step):

    def __init__(self, config: Config):
        self.config = config

    @property
    def name(self) -> str:
        return "KubeletUninstaller"

    def is_completed(self, token: CancelToken) -> bool:
        return not any(file_exists(path) for path in MANAGED_FILES)

    def execute(self, token: CancelToken) -> None:
        if is_service_active("kubelet"):
            stop_service("kubelet", token)
        for path in MANAGED_FILES:
            remove_path(path)
        remove_path(KUBELET_SERVICE_DIR, recursive=True)
