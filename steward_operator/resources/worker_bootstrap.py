import datetime as dt
import logging

from .. import addresses, checksum, pki, sans
from ..config import settings
from ..errors import CertificateError, ServiceNotReadyError
from ..models.v1alpha1 import (
    ServiceType,
    WorkerBootstrapCredentialsStatus,
    WorkerBootstrapProvider,
    WorkerBootstrapRouteStatus,
    WorkerBootstrapServiceStatus,
)
from ..upsert import OperationResult, create_or_update, fetch_or_none
from ..utils import b64encode, secret_data, tenant_prefixed_name
from .base import ManagedObjectResource, fetch_control_plane_service

logger = logging.getLogger(__name__)


TRUSTD_CREDENTIALS_SUFFIX = "trustd-creds"
TRUSTD_PORT_NAME = "trustd"
TRUSTD_ROUTE_SUFFIX = "trustd"
#: The Traefik entrypoint that accepts trustd connections
TRUSTD_ENTRYPOINT = "trustd"

CA_CERTIFICATE_KEY = "os-ca.crt"
CA_PRIVATE_KEY_KEY = "os-ca.key"
SERVER_CERTIFICATE_KEY = "server.crt"
SERVER_PRIVATE_KEY_KEY = "server.key"
TOKEN_KEY = "token"


def is_enabled(tcp):
    """
    Returns true if the worker bootstrap addon is enabled with a usable provider.
    """
    worker_bootstrap = tcp.spec.addons.worker_bootstrap
    return worker_bootstrap is not None and worker_bootstrap.talos is not None


class WorkerBootstrapCredentialsResource(ManagedObjectResource):
    """
    Manages the credentials for the trustd service that worker nodes use to join.

    The secret holds an Ed25519 CA, a server certificate chain issued by it and the
    bootstrap token. The CA and token are generated once. The server certificate is
    reissued from the existing CA whenever its SANs differ from those required by the
    current topology, so that nodes which already trust the CA keep working.
    """

    name = "worker-bootstrap-credentials"
    api_version = "v1"
    plural_name = "secrets"

    def __init__(self, client, resolver = sans.resolve_host):
        super().__init__(client)
        self.resolver = resolver

    def get_object_name(self, tcp):
        return tenant_prefixed_name(tcp, TRUSTD_CREDENTIALS_SUFFIX)

    def enabled(self, tcp):
        return is_enabled(tcp)

    def should_cleanup(self, tcp):
        return not self.enabled(tcp) and bool(
            tcp.status.addons.worker_bootstrap.credentials.secret_name
        )

    def _server_problems(self, data, ip_addresses, dns_names):
        try:
            if not pki.sans_equal(data.get(SERVER_CERTIFICATE_KEY), ip_addresses, dns_names):
                return ["server certificate SANs do not match"]
        except CertificateError as exc:
            return [str(exc)]
        return pki.validate_certificate(
            data.get(SERVER_CERTIFICATE_KEY),
            data.get(SERVER_PRIVATE_KEY_KEY),
            dt.timedelta(seconds = settings.cert_expiration_threshold),
            ca_certificate_pem = data.get(CA_CERTIFICATE_KEY)
        )

    async def mutate(self, tcp, obj):
        self.set_metadata(tcp, obj)
        service = await fetch_control_plane_service(self.client, tcp)
        required = await sans.trust_bootstrap_sans(tcp, service, self.resolver)
        existing = secret_data(obj)
        rotating = checksum.is_rotation_requested(obj)
        if rotating or not existing.get(CA_CERTIFICATE_KEY):
            credentials = pki.generate_trust_bootstrap_credentials(
                tcp.metadata.name,
                settings.worker_bootstrap.token_prefix,
                ip_addresses = required.ip_addresses,
                dns_names = required.dns_names
            )
            data = {
                CA_CERTIFICATE_KEY: credentials.ca_certificate,
                CA_PRIVATE_KEY_KEY: credentials.ca_private_key,
                SERVER_CERTIFICATE_KEY: credentials.server_chain,
                SERVER_PRIVATE_KEY_KEY: credentials.server_private_key,
                # Tokens already handed to nodes stay valid across rotations
                TOKEN_KEY: existing.get(TOKEN_KEY) or credentials.token.encode(),
            }
        else:
            data = dict(existing)
            problems = self._server_problems(
                existing,
                required.ip_addresses,
                required.dns_names
            )
            if problems:
                logger.info(
                    "[%s] reissuing server certificate in %s - %s",
                    self.name,
                    self.object_name,
                    "; ".join(problems)
                )
                # Raises if the CA itself is unusable, since it is never replaced
                # without an explicit rotation
                chain, private_key = pki.regenerate_trust_bootstrap_server(
                    existing[CA_CERTIFICATE_KEY],
                    existing.get(CA_PRIVATE_KEY_KEY),
                    ip_addresses = required.ip_addresses,
                    dns_names = required.dns_names
                )
                data[SERVER_CERTIFICATE_KEY] = chain
                data[SERVER_PRIVATE_KEY_KEY] = private_key
            if not data.get(TOKEN_KEY):
                data[TOKEN_KEY] = pki.generate_token(
                    settings.worker_bootstrap.token_prefix
                ).encode()
        obj["type"] = "Opaque"
        obj["data"] = { key: b64encode(value) for key, value in data.items() }
        if rotating:
            logger.info("[%s] rotated %s", self.name, self.object_name)
            checksum.set_last_rotation_timestamp(obj)
        checksum.set_object_checksum(obj, data)

    def _credentials_status(self, tcp):
        if not self.enabled(tcp):
            return WorkerBootstrapCredentialsStatus()
        return WorkerBootstrapCredentialsStatus(
            secret_name = self.object_name,
            checksum = checksum.get_object_checksum(self.object)
        )

    def _endpoint(self, tcp):
        return addresses.worker_bootstrap_endpoint(tcp) if self.enabled(tcp) else None

    def should_status_be_updated(self, tcp):
        status = tcp.status.addons.worker_bootstrap
        return (
            status.enabled != self.enabled(tcp) or
            status.credentials != self._credentials_status(tcp) or
            status.endpoint != self._endpoint(tcp)
        )

    async def update_status(self, tcp):
        status = tcp.status.addons.worker_bootstrap
        status.enabled = self.enabled(tcp)
        status.provider = (
            WorkerBootstrapProvider(tcp.spec.addons.worker_bootstrap.provider).value
            if self.enabled(tcp)
            else None
        )
        status.credentials = self._credentials_status(tcp)
        status.endpoint = self._endpoint(tcp)


class WorkerBootstrapServiceResource(ManagedObjectResource):
    """
    Manages the trustd port on the control plane service.

    The service itself is owned by the service resource, so this resource only ever
    adds or removes its own port.
    """

    name = "worker-bootstrap-service"
    api_version = "v1"
    plural_name = "services"

    def enabled(self, tcp):
        return is_enabled(tcp)

    def should_cleanup(self, tcp):
        return not self.enabled(tcp) and bool(
            tcp.status.addons.worker_bootstrap.service.name
        )

    def _apply_port(self, tcp, obj):
        port = addresses.trustd_port(tcp.spec.addons.worker_bootstrap.talos)
        spec = obj.setdefault("spec", {})
        ports = [p for p in spec.get("ports") or [] if p.get("name") != TRUSTD_PORT_NAME]
        existing = next(
            (p for p in spec.get("ports") or [] if p.get("name") == TRUSTD_PORT_NAME),
            {}
        )
        desired = {
            **existing,
            "name": TRUSTD_PORT_NAME,
            "protocol": "TCP",
            "port": port,
            "targetPort": port,
        }
        if spec.get("type") == ServiceType.NODE_PORT.value:
            desired["nodePort"] = port
        elif spec.get("type") == ServiceType.CLUSTER_IP.value:
            desired.pop("nodePort", None)
        spec["ports"] = ports + [desired]

    def _remove_port(self, obj):
        spec = obj.setdefault("spec", {})
        spec["ports"] = [
            p for p in spec.get("ports") or [] if p.get("name") != TRUSTD_PORT_NAME
        ]

    async def _update_existing(self, mutate):
        # The service is never created here, only patched
        existing = await fetch_or_none(
            self.ekresource,
            self.object_name,
            namespace = self.namespace
        )
        if existing is None:
            raise ServiceNotReadyError("control plane service does not exist yet")
        result, self.object = await create_or_update(
            self.ekresource,
            self.object_name,
            mutate,
            namespace = self.namespace
        )
        return result

    async def mutate(self, tcp, obj):
        self._apply_port(tcp, obj)

    async def create_or_update(self, tcp):
        if not self.ekresource or not self.enabled(tcp):
            return OperationResult.NONE
        return await self._update_existing(lambda obj: self._apply_port(tcp, obj))

    async def cleanup(self, tcp):
        if not self.ekresource:
            return False
        try:
            result = await self._update_existing(self._remove_port)
        except ServiceNotReadyError:
            return False
        return result == OperationResult.UPDATED

    def _service_status(self, tcp):
        if not self.enabled(tcp):
            return WorkerBootstrapServiceStatus()
        return WorkerBootstrapServiceStatus(
            name = self.object_name,
            namespace = self.namespace,
            port = addresses.trustd_port(tcp.spec.addons.worker_bootstrap.talos)
        )

    def should_status_be_updated(self, tcp):
        return tcp.status.addons.worker_bootstrap.service != self._service_status(tcp)

    async def update_status(self, tcp):
        tcp.status.addons.worker_bootstrap.service = self._service_status(tcp)


class WorkerBootstrapTraefikRouteResource(ManagedObjectResource):
    """
    Manages a Traefik IngressRouteTCP that routes trustd connections for the control
    plane hostname to the trustd port on the control plane service.

    Only used when the control plane is exposed using Traefik, since the trustd
    endpoint advertised to workers then uses the ingress hostname.
    """

    name = "worker-bootstrap-traefik-ingressroutetcp"
    api_version = "traefik.io/v1alpha1"
    plural_name = "ingressroutetcps"

    def get_object_name(self, tcp):
        return tenant_prefixed_name(tcp, TRUSTD_ROUTE_SUFFIX)

    def enabled(self, tcp):
        ingress = tcp.spec.control_plane.ingress
        return is_enabled(tcp) and ingress is not None and ingress.is_traefik

    def should_cleanup(self, tcp):
        return not self.enabled(tcp) and bool(
            tcp.status.addons.worker_bootstrap.route.name
        )

    async def mutate(self, tcp, obj):
        ingress_spec = tcp.spec.control_plane.ingress
        service = tcp.status.addons.worker_bootstrap.service
        if not service.name or not service.port:
            raise ServiceNotReadyError("trustd port is not exposed on the service yet")
        host, _ = addresses.split_hostname(
            ingress_spec.hostname,
            addresses.PASSTHROUGH_PORT
        )

        self.set_metadata(tcp, obj)
        metadata = obj["metadata"]
        metadata["labels"].update(ingress_spec.additional_metadata.labels)
        if ingress_spec.additional_metadata.annotations:
            metadata["annotations"] = {
                **(metadata.get("annotations") or {}),
                **ingress_spec.additional_metadata.annotations,
            }

        obj["spec"] = {
            "entryPoints": [TRUSTD_ENTRYPOINT],
            "routes": [
                {
                    "match": f"HostSNI(`{host}`)",
                    "services": [
                        {
                            "name": service.name,
                            "port": service.port,
                        },
                    ],
                },
            ],
            "tls": {
                "passthrough": True,
            },
        }

    def _route_status(self, tcp):
        if not self.enabled(tcp):
            return WorkerBootstrapRouteStatus()
        return WorkerBootstrapRouteStatus(
            name = self.object_name,
            namespace = self.namespace
        )

    def should_status_be_updated(self, tcp):
        return tcp.status.addons.worker_bootstrap.route != self._route_status(tcp)

    async def update_status(self, tcp):
        tcp.status.addons.worker_bootstrap.route = self._route_status(tcp)
