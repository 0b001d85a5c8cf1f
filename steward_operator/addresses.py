import ipaddress

from .config import settings
from .errors import (
    LoadBalancerHostnameError,
    MissingValidIPError,
    NonExposedLoadBalancerError,
    ServiceNotReadyError,
)
from .models.v1alpha1 import ServiceType


#: The port that ingress and gateway controllers expose the control plane on
PASSTHROUGH_PORT = 443


def is_ip(value):
    """
    Returns true if the value is an IP address, false otherwise.
    """
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return False
    else:
        return True


def split_hostname(hostname, default_port):
    """
    Splits a hostname that may carry a port suffix into a (host, port) tuple.
    """
    host, sep, port = hostname.rpartition(":")
    if sep and port.isdigit() and not is_ip(hostname):
        return host.strip("[]"), int(port)
    return hostname, default_port


def join_host_port(host, port):
    """
    Returns host:port, with IPv6 addresses enclosed in brackets.
    """
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def declared_address(tcp, service):
    """
    Returns the IP address that the control plane advertises internally.

    The static address from the network profile wins when it is set. Otherwise the
    address comes from the service: the cluster IP for ClusterIP and NodePort services
    and the first ingress IP for LoadBalancer services.
    """
    if tcp.spec.network_profile.address:
        return tcp.spec.network_profile.address
    if not service:
        raise ServiceNotReadyError("control plane service does not exist yet")
    service_type = service.get("spec", {}).get("type", ServiceType.CLUSTER_IP.value)
    if service_type in {ServiceType.CLUSTER_IP.value, ServiceType.NODE_PORT.value}:
        cluster_ip = service["spec"].get("clusterIP")
        if not cluster_ip or not is_ip(cluster_ip):
            raise MissingValidIPError("service has no cluster IP")
        return cluster_ip
    if service_type == ServiceType.LOAD_BALANCER.value:
        ingresses = (
            service
                .get("status", {})
                .get("loadBalancer", {})
                .get("ingress") or []
        )
        if not ingresses:
            raise NonExposedLoadBalancerError()
        for ingress in ingresses:
            if ingress.get("ip"):
                return ingress["ip"]
        hostname = next((i["hostname"] for i in ingresses if i.get("hostname")), None)
        if hostname:
            raise LoadBalancerHostnameError(hostname)
    raise MissingValidIPError(f"unsupported service type {service_type}")


def passthrough_hostname(tcp):
    """
    Returns the hostname of the ingress or gateway exposing the control plane, or
    None when the control plane is exposed directly by the service.
    """
    control_plane = tcp.spec.control_plane
    if control_plane.ingress and control_plane.ingress.hostname:
        return control_plane.ingress.hostname
    if control_plane.gateway and control_plane.gateway.hostname:
        return control_plane.gateway.hostname
    return None


def external_address(tcp, service):
    """
    Returns a (host, port) tuple for the address that clients use to reach the
    control plane.

    An ingress hostname takes precedence, then a gateway hostname, both served on
    port 443 regardless of any port in the hostname. Otherwise the declared address
    and the API server port are used.
    """
    hostname = passthrough_hostname(tcp)
    if hostname:
        host, _ = split_hostname(hostname, PASSTHROUGH_PORT)
        return host, PASSTHROUGH_PORT
    return declared_address(tcp, service), tcp.spec.network_profile.port


def control_plane_endpoint(tcp, service):
    """
    Returns the host:port of the control plane endpoint.
    """
    return join_host_port(*external_address(tcp, service))


def konnectivity_hostname(hostname):
    """
    Returns the hostname that the Konnectivity server is exposed on for the given
    control plane hostname.
    """
    return hostname.replace(".k8s.", ".konnectivity.", 1)


def trustd_port(talos):
    """
    Returns the port that the trustd service of the worker bootstrap addon listens on.
    """
    return talos.port or settings.worker_bootstrap.default_port


def worker_bootstrap_endpoint(tcp):
    """
    Returns the host:port that worker nodes use to reach the trust bootstrap service,
    or None if it is not known yet.
    """
    worker_bootstrap = tcp.spec.addons.worker_bootstrap
    if not worker_bootstrap or not worker_bootstrap.talos:
        return None
    port = trustd_port(worker_bootstrap.talos)
    hostname = passthrough_hostname(tcp)
    if hostname:
        host, _ = split_hostname(hostname, 0)
        return join_host_port(host, port)
    for ingress in tcp.status.kubernetes.service.load_balancer:
        if ingress.ip:
            return join_host_port(ingress.ip, port)
        if ingress.hostname:
            return join_host_port(ingress.hostname, port)
    if tcp.spec.network_profile.address:
        return join_host_port(tcp.spec.network_profile.address, port)
    return None
