import asyncio
import dataclasses
import ipaddress
import logging
import socket

from . import addresses
from .config import settings
from .errors import ConfigurationIncompleteError

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class SANs:
    """
    A set of IP and DNS subject alternative names.
    """

    ip_addresses: set[str] = dataclasses.field(default_factory=set)
    dns_names: set[str] = dataclasses.field(default_factory=set)

    def add(self, value):
        """
        Adds the value as an IP SAN if it is an IP address and a DNS SAN otherwise.
        """
        if not value:
            return
        try:
            self.ip_addresses.add(str(ipaddress.ip_address(value)))
        except ValueError:
            self.dns_names.add(value)

    def update(self, values):
        for value in values:
            self.add(value)


async def resolve_host(host):
    """
    Returns the IP addresses that the host resolves to.

    Resolution is best-effort, so failures result in an empty list.
    """
    loop = asyncio.get_running_loop()
    try:
        results = await loop.getaddrinfo(host, None, type=socket.SOCK_STREAM)
    except OSError as exc:
        logger.debug("unable to resolve %s: %s", host, exc)
        return []
    return sorted({result[4][0] for result in results})


def _load_balancer_ingresses(service):
    if not service:
        return []
    return service.get("status", {}).get("loadBalancer", {}).get("ingress") or []


async def _add_passthrough_hostname(sans, tcp, resolver):
    # Clients of a TLS passthrough proxy may validate the certificate against the
    # proxy IP, so the resolved addresses are included as well as the hostname
    hostname = addresses.passthrough_hostname(tcp)
    if not hostname:
        return
    host, _ = addresses.split_hostname(hostname, 0)
    sans.add(host)
    if not addresses.is_ip(host):
        sans.update(await resolver(host))


async def topology_sans(tcp, service, resolver = resolve_host):
    """
    Returns the SANs that are required by the current network topology.

    This is the union of the load balancer ingress addresses, the static address, the
    ingress or gateway hostname with the addresses it resolves to and the declared
    address, when one is available.
    """
    sans = SANs()
    for ingress in _load_balancer_ingresses(service):
        sans.add(ingress.get("ip"))
        sans.add(ingress.get("hostname"))
    sans.add(tcp.spec.network_profile.address)
    await _add_passthrough_hostname(sans, tcp, resolver)
    try:
        sans.add(addresses.declared_address(tcp, service))
    except ConfigurationIncompleteError:
        pass
    return sans


def _first_service_ip(service_cidr):
    network = ipaddress.ip_network(service_cidr, strict=False)
    return str(next(network.hosts()))


async def apiserver_sans(tcp, service, resolver = resolve_host):
    """
    Returns the SANs that the API server certificate must carry.
    """
    sans = await topology_sans(tcp, service, resolver)
    network_profile = tcp.spec.network_profile
    name = tcp.metadata.name
    namespace = tcp.metadata.namespace
    sans.update(
        [
            "localhost",
            "127.0.0.1",
            "kubernetes",
            "kubernetes.default",
            "kubernetes.default.svc",
            f"kubernetes.default.svc.{network_profile.cluster_domain}",
            _first_service_ip(network_profile.service_cidr),
            name,
            f"{name}.{namespace}",
            f"{name}.{namespace}.svc",
            f"{name}.{namespace}.svc.cluster.local",
        ]
    )
    sans.update(network_profile.cert_sans)
    sans.update(settings.extra_cert_sans)
    return sans


async def trust_bootstrap_sans(tcp, service, resolver = resolve_host):
    """
    Returns the SANs that the trust bootstrap server certificate must carry.
    """
    sans = await topology_sans(tcp, service, resolver)
    worker_bootstrap = tcp.spec.addons.worker_bootstrap
    if worker_bootstrap and worker_bootstrap.talos:
        sans.update(worker_bootstrap.talos.cert_sans)
    return sans


def konnectivity_sans(tcp, service):
    """
    Returns the SANs that the Konnectivity server certificate must carry.
    """
    sans = SANs()
    hostname = addresses.passthrough_hostname(tcp)
    if hostname:
        host, _ = addresses.split_hostname(hostname, 0)
        sans.add(addresses.konnectivity_hostname(host))
    else:
        sans.add(addresses.declared_address(tcp, service))
    name = tcp.metadata.name
    namespace = tcp.metadata.namespace
    sans.update([f"{name}.{namespace}.svc", f"{name}.{namespace}.svc.cluster.local"])
    return sans
