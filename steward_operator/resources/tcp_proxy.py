import datetime as dt

from ..config import settings
from ..models.v1alpha1 import ExternalObjectStatus
from ..template import default_loader
from ..utils import merge_managed
from .base import TenantObjectResource, require


class TCPProxyObjectResource(TenantObjectResource):
    """
    Base class for the objects that make up the TCP proxy agent in the tenant cluster.

    The agent keeps the default kubernetes service in the tenant cluster pointing at
    an endpoint that pods can reach, by proxying to the external control plane
    endpoint.
    """

    #: The field of the TCP proxy status that records the object
    status_field = None
    namespaced = True

    def enabled(self, tcp):
        return tcp.spec.addons.tcp_proxy is not None

    def get_object_name(self, tcp):
        return settings.tcp_proxy.name

    def get_namespace(self, tcp):
        return settings.tcp_proxy.namespace if self.namespaced else None

    def recorded(self, tcp):
        return getattr(tcp.status.addons.tcp_proxy, self.status_field)

    def should_cleanup(self, tcp):
        return not self.enabled(tcp) and bool(self.recorded(tcp).name)

    def _expected(self, tcp):
        if not self.enabled(tcp):
            return None, None
        return self.object_name, self.namespace

    def is_status_outdated(self, tcp):
        recorded = self.recorded(tcp)
        return (
            tcp.status.addons.tcp_proxy.enabled != self.enabled(tcp) or
            (recorded.name, recorded.namespace) != self._expected(tcp)
        )

    async def update_status(self, tcp):
        name, namespace = self._expected(tcp)
        setattr(
            tcp.status.addons.tcp_proxy,
            self.status_field,
            ExternalObjectStatus(
                name = name,
                namespace = namespace,
                last_update = dt.datetime.now(dt.timezone.utc) if name else None
            )
        )
        tcp.status.addons.tcp_proxy.enabled = self.enabled(tcp)


class TCPProxyServiceAccountResource(TCPProxyObjectResource):
    name = "tcp-proxy-serviceaccount"
    api_version = "v1"
    plural_name = "serviceaccounts"
    status_field = "service_account"

    async def mutate(self, tcp, obj):
        self.set_metadata(tcp, obj)


class TCPProxyClusterRoleResource(TCPProxyObjectResource):
    name = "tcp-proxy-clusterrole"
    api_version = "rbac.authorization.k8s.io/v1"
    plural_name = "clusterroles"
    status_field = "cluster_role"
    namespaced = False

    def get_object_name(self, tcp):
        return settings.tcp_proxy.cluster_role_name

    async def mutate(self, tcp, obj):
        self.set_metadata(tcp, obj)
        obj["rules"] = [
            {
                "apiGroups": [""],
                "resources": ["services", "endpoints"],
                "verbs": ["get", "list", "watch"],
            },
            {
                "apiGroups": ["discovery.k8s.io"],
                "resources": ["endpointslices"],
                "verbs": ["get", "list", "watch", "create", "update", "patch", "delete"],
            },
            {
                "apiGroups": ["coordination.k8s.io"],
                "resources": ["leases"],
                "verbs": ["get", "create", "update"],
            },
        ]


class TCPProxyClusterRoleBindingResource(TCPProxyObjectResource):
    name = "tcp-proxy-clusterrolebinding"
    api_version = "rbac.authorization.k8s.io/v1"
    plural_name = "clusterrolebindings"
    status_field = "cluster_role_binding"
    namespaced = False

    def get_object_name(self, tcp):
        return settings.tcp_proxy.cluster_role_name

    async def mutate(self, tcp, obj):
        self.set_metadata(tcp, obj)
        obj["roleRef"] = {
            "apiGroup": "rbac.authorization.k8s.io",
            "kind": "ClusterRole",
            "name": settings.tcp_proxy.cluster_role_name,
        }
        obj["subjects"] = [
            {
                "kind": "ServiceAccount",
                "name": settings.tcp_proxy.name,
                "namespace": settings.tcp_proxy.namespace,
            },
        ]


class TCPProxyServiceResource(TCPProxyObjectResource):
    name = "tcp-proxy-service"
    api_version = "v1"
    plural_name = "services"
    status_field = "service"

    async def mutate(self, tcp, obj):
        self.set_metadata(tcp, obj)
        port = settings.tcp_proxy.listen_port
        obj["spec"] = merge_managed(
            obj.get("spec") or {},
            {
                "type": "ClusterIP",
                "selector": { "app": settings.tcp_proxy.name },
                "ports": [
                    {
                        "name": "proxy",
                        "protocol": "TCP",
                        "port": port,
                        "targetPort": port,
                    },
                ],
            }
        )


class TCPProxyDeploymentResource(TCPProxyObjectResource):
    name = "tcp-proxy-deployment"
    api_version = "apps/v1"
    plural_name = "deployments"
    status_field = "deployment"

    async def mutate(self, tcp, obj):
        endpoint = require(
            tcp.status.control_plane_endpoint,
            "control plane endpoint is not known yet"
        )
        desired = default_loader.load(
            "tcp-proxy-deployment.yaml",
            image = tcp.spec.addons.tcp_proxy.image or settings.tcp_proxy.image,
            external_endpoint = endpoint
        )
        self.set_metadata(tcp, obj)
        obj["spec"] = merge_managed(obj.get("spec") or {}, desired["spec"])
