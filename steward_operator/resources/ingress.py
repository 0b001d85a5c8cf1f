from .. import addresses
from ..errors import ServiceNotReadyError
from ..models.v1alpha1 import IngressStatus, LoadBalancerIngress
from .base import ManagedObjectResource


#: Annotations that enable TLS passthrough for the supported ingress controllers
PASSTHROUGH_ANNOTATIONS = {
    "nginx.ingress.kubernetes.io/ssl-passthrough": "true",
    "nginx.ingress.kubernetes.io/backend-protocol": "HTTPS",
    "haproxy.org/ssl-passthrough": "true",
}


def _status_ingresses(obj):
    return [
        LoadBalancerIngress(ip = ingress.get("ip"), hostname = ingress.get("hostname"))
        for ingress in (
            (obj or {})
                .get("status", {})
                .get("loadBalancer", {})
                .get("ingress") or []
        )
    ]


class ExposureResource(ManagedObjectResource):
    """
    Base class for resources that expose the control plane service through an
    ingress controller using TLS passthrough.
    """

    #: The kind recorded in the status for objects managed by the resource
    kind = None

    def is_recorded(self, tcp):
        ingress = tcp.status.kubernetes.ingress
        return ingress is not None and ingress.kind == self.kind

    def should_cleanup(self, tcp):
        return not self.enabled(tcp) and self.is_recorded(tcp)

    def service_backend(self, tcp):
        """
        Returns a tuple of (name, port) for the control plane service.
        """
        service = tcp.status.kubernetes.service
        if not service.name or not service.port:
            raise ServiceNotReadyError("control plane service is not ready")
        return service.name, service.port

    def hostname(self, tcp):
        host, _ = addresses.split_hostname(
            tcp.spec.control_plane.ingress.hostname,
            addresses.PASSTHROUGH_PORT
        )
        return host

    def _ingress_status(self, tcp):
        if not self.enabled(tcp):
            return None
        return IngressStatus(
            kind = self.kind,
            name = self.object_name,
            namespace = self.namespace,
            load_balancer = _status_ingresses(self.object)
        )

    def should_status_be_updated(self, tcp):
        if not self.enabled(tcp) and not self.is_recorded(tcp):
            return False
        return tcp.status.kubernetes.ingress != self._ingress_status(tcp)

    async def update_status(self, tcp):
        if self.enabled(tcp) or self.is_recorded(tcp):
            tcp.status.kubernetes.ingress = self._ingress_status(tcp)


class IngressResource(ExposureResource):
    """
    Manages a networking.k8s.io Ingress that routes the control plane hostname to the
    control plane service.
    """

    name = "ingress"
    api_version = "networking.k8s.io/v1"
    plural_name = "ingresses"
    kind = "Ingress"

    def enabled(self, tcp):
        ingress = tcp.spec.control_plane.ingress
        return ingress is not None and not ingress.is_traefik

    async def mutate(self, tcp, obj):
        ingress_spec = tcp.spec.control_plane.ingress
        service_name, service_port = self.service_backend(tcp)

        self.set_metadata(tcp, obj)
        metadata = obj["metadata"]
        metadata["labels"].update(ingress_spec.additional_metadata.labels)
        metadata["annotations"] = {
            **(metadata.get("annotations") or {}),
            **PASSTHROUGH_ANNOTATIONS,
            **ingress_spec.additional_metadata.annotations,
        }

        spec = obj.setdefault("spec", {})
        if ingress_spec.ingress_class_name:
            spec["ingressClassName"] = ingress_spec.ingress_class_name
        else:
            spec.pop("ingressClassName", None)
        spec["rules"] = [
            {
                "host": self.hostname(tcp),
                "http": {
                    "paths": [
                        {
                            "path": "/",
                            "pathType": "Prefix",
                            "backend": {
                                "service": {
                                    "name": service_name,
                                    "port": { "number": service_port },
                                },
                            },
                        },
                    ],
                },
            },
        ]
        # TLS is terminated by the API server
        spec.pop("tls", None)


class TraefikIngressRouteTCPResource(ExposureResource):
    """
    Manages a Traefik IngressRouteTCP that routes connections for the control plane
    hostname to the control plane service using SNI.
    """

    name = "traefik-ingressroutetcp"
    api_version = "traefik.io/v1alpha1"
    plural_name = "ingressroutetcps"
    kind = "IngressRouteTCP"

    def enabled(self, tcp):
        ingress = tcp.spec.control_plane.ingress
        return ingress is not None and ingress.is_traefik

    async def mutate(self, tcp, obj):
        ingress_spec = tcp.spec.control_plane.ingress
        service_name, service_port = self.service_backend(tcp)

        self.set_metadata(tcp, obj)
        metadata = obj["metadata"]
        metadata["labels"].update(ingress_spec.additional_metadata.labels)
        if ingress_spec.additional_metadata.annotations:
            metadata["annotations"] = {
                **(metadata.get("annotations") or {}),
                **ingress_spec.additional_metadata.annotations,
            }

        obj["spec"] = {
            "entryPoints": ["websecure"],
            "routes": [
                {
                    "match": f"HostSNI(`{self.hostname(tcp)}`)",
                    "services": [
                        {
                            "name": service_name,
                            "port": service_port,
                        },
                    ],
                },
            ],
            "tls": {
                "passthrough": True,
            },
        }
