import datetime as dt

import yaml
from cryptography.x509.oid import ExtendedKeyUsageOID

from .. import addresses, pki
from ..config import settings
from ..template import default_loader
from ..utils import b64decode, b64encode
from .certificates import SecretContentResource, fetch_ca


ADMIN_KUBECONFIG_SUFFIX = "admin-kubeconfig"
ADMIN_USER_NAME = "kubernetes-admin"
ADMIN_GROUP = "system:masters"


def internal_server(tcp):
    """
    Returns the host:port of the API server from inside the management cluster.
    """
    return addresses.join_host_port(
        f"{tcp.metadata.name}.{tcp.metadata.namespace}.svc",
        tcp.spec.network_profile.port
    )


def parse_kubeconfig(data):
    """
    Returns a tuple of (server, CA certificate, client certificate, client key) from
    a kubeconfig with a single cluster and user.
    """
    kubeconfig = yaml.safe_load(data) or {}
    cluster = (kubeconfig.get("clusters") or [{}])[0].get("cluster", {})
    user = (kubeconfig.get("users") or [{}])[0].get("user", {})
    return (
        cluster.get("server"),
        b64decode(cluster.get("certificate-authority-data")),
        b64decode(user.get("client-certificate-data")),
        b64decode(user.get("client-key-data")),
    )


class AdminKubeconfigResource(SecretContentResource):
    """
    Manages the admin kubeconfig for the tenant cluster.

    The kubeconfig is used by the controller manager and scheduler and by the operator
    to reach the tenant cluster, so it points at the service inside the management
    cluster.
    """

    name = "admin-kubeconfig"
    suffix = ADMIN_KUBECONFIG_SUFFIX

    def content_status(self, tcp):
        return tcp.status.kubeconfig

    async def validate(self, tcp, data):
        key = settings.control_plane.admin_kubeconfig_key
        if not data.get(key):
            return ["kubeconfig has not been generated"]
        try:
            server, ca_data, certificate, private_key = parse_kubeconfig(data[key])
        except (yaml.YAMLError, ValueError, AttributeError) as exc:
            return [f"kubeconfig is not valid: {exc}"]
        ca = await fetch_ca(self.client, tcp)
        problems = []
        if server != f"https://{internal_server(tcp)}":
            problems.append("kubeconfig server is out of date")
        if ca_data != ca.certificate:
            problems.append("kubeconfig CA is out of date")
        problems.extend(
            pki.validate_certificate(
                certificate,
                private_key,
                dt.timedelta(seconds = settings.cert_expiration_threshold),
                ca_certificate_pem = ca.certificate,
                usage = ExtendedKeyUsageOID.CLIENT_AUTH
            )
        )
        return problems

    async def generate(self, tcp, data):
        ca = await fetch_ca(self.client, tcp)
        client = pki.generate_leaf(
            ca,
            ADMIN_USER_NAME,
            organization = ADMIN_GROUP,
            client = True
        )
        kubeconfig = default_loader.load(
            "admin-kubeconfig.yaml",
            cluster_name = tcp.metadata.name,
            server = internal_server(tcp),
            ca_data = b64encode(ca.certificate),
            user_name = ADMIN_USER_NAME,
            certificate_data = b64encode(client.certificate),
            key_data = b64encode(client.private_key)
        )
        return {
            settings.control_plane.admin_kubeconfig_key: yaml.safe_dump(kubeconfig).encode(),
        }
