"""
Kubeconfig generation.

Turns the identity held in a browser session into the credential handed
to the user: a kubeconfig using kubectl's ``oidc`` auth provider, and the
equivalent ``kubectl config`` commands.
"""

import base64
import shlex
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import yaml

from gangway.config import Settings


@dataclass(frozen=True)
class ClusterInfo:
    """Static cluster and client facts, loaded once at startup."""
    name: str
    server: str
    client_id: str
    client_secret: str
    ca_pem: Optional[str] = None

    @property
    def ca_data(self) -> Optional[str]:
        if not self.ca_pem:
            return None
        return base64.b64encode(self.ca_pem.encode("utf-8")).decode("ascii")


@dataclass(frozen=True)
class UserCredential:
    """Per-user values taken from the session's ID token."""
    username: str
    email: Optional[str]
    issuer: Optional[str]
    id_token: str
    refresh_token: Optional[str] = None


def load_cluster_info(settings: Settings) -> ClusterInfo:
    """
    Build ClusterInfo from Settings, reading CLUSTER_CA_PATH if set.

    Raises:
        OSError: If the cluster CA file cannot be read
    """
    ca_pem = None
    if settings.CLUSTER_CA_PATH:
        with open(settings.CLUSTER_CA_PATH, "r", encoding="utf-8") as fh:
            ca_pem = fh.read()

    return ClusterInfo(
        name=settings.CLUSTER_NAME,
        server=settings.API_SERVER_URL,
        client_id=settings.CLIENT_ID,
        client_secret=settings.CLIENT_SECRET,
        ca_pem=ca_pem,
    )


def _auth_provider_config(cluster: ClusterInfo, user: UserCredential) -> Dict[str, str]:
    config = {
        "client-id": cluster.client_id,
        "client-secret": cluster.client_secret,
        "id-token": user.id_token,
    }
    if user.issuer:
        config["idp-issuer-url"] = user.issuer
    if user.refresh_token:
        config["refresh-token"] = user.refresh_token
    return config


def build_kubeconfig(cluster: ClusterInfo, user: UserCredential) -> Dict[str, Any]:
    """Build the kubeconfig document as a plain dictionary."""
    cluster_entry: Dict[str, Any] = {"server": cluster.server}
    if cluster.ca_data:
        cluster_entry["certificate-authority-data"] = cluster.ca_data

    return {
        "apiVersion": "v1",
        "kind": "Config",
        "clusters": [{"name": cluster.name, "cluster": cluster_entry}],
        "users": [{
            "name": user.username,
            "user": {
                "auth-provider": {
                    "name": "oidc",
                    "config": _auth_provider_config(cluster, user),
                },
            },
        }],
        "contexts": [{
            "name": cluster.name,
            "context": {"cluster": cluster.name, "user": user.username},
        }],
        "current-context": cluster.name,
        "preferences": {},
    }


def render_kubeconfig(cluster: ClusterInfo, user: UserCredential) -> str:
    return yaml.safe_dump(build_kubeconfig(cluster, user), sort_keys=False, default_flow_style=False)


def kubectl_commands(cluster: ClusterInfo, user: UserCredential) -> List[str]:
    """
    The ``kubectl config`` commands that produce the same kubeconfig.

    When a cluster CA is configured the first command writes it to
    ``ca-<cluster>.pem`` so ``set-cluster`` can embed it.
    """
    q = shlex.quote
    commands = []

    set_cluster = f"kubectl config set-cluster {q(cluster.name)} --server={q(cluster.server)}"
    if cluster.ca_pem:
        ca_file = f"ca-{cluster.name}.pem"
        commands.append(f"echo {q(cluster.ca_data)} | base64 --decode > {q(ca_file)}")
        set_cluster += f" --certificate-authority={q(ca_file)} --embed-certs"
    commands.append(set_cluster)

    credentials = [f"kubectl config set-credentials {q(user.username)}", "--auth-provider=oidc"]
    for key, value in _auth_provider_config(cluster, user).items():
        credentials.append(f"--auth-provider-arg={q(f'{key}={value}')}")
    commands.append(" \\\n    ".join(credentials))

    commands.append(
        f"kubectl config set-context {q(cluster.name)} --cluster={q(cluster.name)} --user={q(user.username)}"
    )
    commands.append(f"kubectl config use-context {q(cluster.name)}")
    return commands
