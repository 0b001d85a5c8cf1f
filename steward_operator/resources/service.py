from .. import addresses
from ..models.v1alpha1 import LoadBalancerIngress, ServiceStatus, ServiceType
from ..utils import selector_labels
from .base import ManagedObjectResource


#: The names of the ports that this resource manages on the service
APISERVER_PORT_NAME = "kube-apiserver"
KONNECTIVITY_PORT_NAME = "konnectivity-server"


def _load_balancer_ingresses(service):
    return [
        LoadBalancerIngress(ip = ingress.get("ip"), hostname = ingress.get("hostname"))
        for ingress in (
            service
                .get("status", {})
                .get("loadBalancer", {})
                .get("ingress") or []
        )
    ]


class ServiceResource(ManagedObjectResource):
    """
    Manages the service that exposes the API server of the tenant control plane.
    """

    name = "service"
    api_version = "v1"
    plural_name = "services"

    def _port(self, existing, name, port, service_type):
        desired = {
            "name": name,
            "protocol": "TCP",
            "port": port,
            "targetPort": port,
        }
        if service_type == ServiceType.NODE_PORT:
            desired["nodePort"] = port
        merged = { **existing, **desired }
        if service_type == ServiceType.CLUSTER_IP:
            # ClusterIP services cannot have a node port, but the node port that the
            # server allocated for a LoadBalancer service is kept
            merged.pop("nodePort", None)
        return merged

    async def mutate(self, tcp, obj):
        service_spec = tcp.spec.control_plane.service
        network_profile = tcp.spec.network_profile
        konnectivity = tcp.spec.addons.konnectivity

        self.set_metadata(tcp, obj)
        metadata = obj["metadata"]
        metadata["labels"].update(service_spec.additional_metadata.labels)
        if service_spec.additional_metadata.annotations:
            metadata["annotations"] = {
                **(metadata.get("annotations") or {}),
                **service_spec.additional_metadata.annotations,
            }

        spec = obj.setdefault("spec", {})
        service_type = ServiceType(service_spec.service_type)
        spec["type"] = service_type.value
        spec["selector"] = selector_labels(tcp.metadata.name)

        existing_ports = { port.get("name"): port for port in spec.get("ports") or [] }
        ports = [
            self._port(
                existing_ports.get(APISERVER_PORT_NAME, {}),
                APISERVER_PORT_NAME,
                network_profile.port,
                service_type
            ),
        ]
        if konnectivity:
            ports.append(
                self._port(
                    existing_ports.get(KONNECTIVITY_PORT_NAME, {}),
                    KONNECTIVITY_PORT_NAME,
                    konnectivity.port,
                    service_type
                )
            )
        # Ports added by other resources, e.g. trustd, are preserved
        for name, port in existing_ports.items():
            if name not in {APISERVER_PORT_NAME, KONNECTIVITY_PORT_NAME}:
                if service_type == ServiceType.CLUSTER_IP:
                    port = { k: v for k, v in port.items() if k != "nodePort" }
                ports.append(port)
        spec["ports"] = ports

        if service_type == ServiceType.LOAD_BALANCER:
            if network_profile.load_balancer_class:
                spec["loadBalancerClass"] = network_profile.load_balancer_class
            if network_profile.load_balancer_source_ranges:
                spec["loadBalancerSourceRanges"] = list(
                    network_profile.load_balancer_source_ranges
                )
            else:
                spec.pop("loadBalancerSourceRanges", None)
        else:
            spec.pop("loadBalancerClass", None)
            spec.pop("loadBalancerSourceRanges", None)

        if network_profile.address and network_profile.allow_address_as_external_ip:
            spec["externalIPs"] = [network_profile.address]
        else:
            spec.pop("externalIPs", None)

    def _service_status(self, tcp):
        return ServiceStatus(
            name = self.object_name,
            namespace = self.namespace,
            port = tcp.spec.network_profile.port,
            load_balancer = _load_balancer_ingresses(self.object)
        )

    def should_status_be_updated(self, tcp):
        return (
            tcp.status.kubernetes.service != self._service_status(tcp) or
            tcp.status.control_plane_endpoint != addresses.control_plane_endpoint(
                tcp,
                self.object
            )
        )

    async def update_status(self, tcp):
        tcp.status.kubernetes.service = self._service_status(tcp)
        # Raises when the service has no usable address yet, which aborts the run
        # until the load balancer has been provisioned
        tcp.status.control_plane_endpoint = addresses.control_plane_endpoint(
            tcp,
            self.object
        )
