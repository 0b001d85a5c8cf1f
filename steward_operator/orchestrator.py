import dataclasses
import logging
import time

from . import sans
from .resources import (
    certificates,
    deployment,
    ingress,
    kubeadm,
    kubeconfig,
    service,
    tcp_proxy,
    worker_bootstrap,
)
from .upsert import OperationResult

logger = logging.getLogger(__name__)


#: The result recorded for a resource that was removed
RESULT_DELETED = "deleted"
#: The result recorded for a resource that raised an error
RESULT_ERROR = "error"


@dataclasses.dataclass
class RunResult:
    """
    The outcome of running the resources for a tenant control plane.
    """

    #: The result for each resource that was run, in order
    results: dict[str, str] = dataclasses.field(default_factory=dict)
    #: Indicates whether the status of the tenant control plane was changed
    status_changed: bool = False


def default_resources(client, tenant_clients, resolver = sans.resolve_host):
    """
    Returns the resources for a tenant control plane in the order they must be run.

    Each resource only depends on the status recorded by resources earlier in the list.
    """
    return [
        service.ServiceResource(client),
        ingress.IngressResource(client),
        ingress.TraefikIngressRouteTCPResource(client),
        certificates.CACertificateResource(client),
        certificates.FrontProxyCACertificateResource(client),
        certificates.ServiceAccountKeyResource(client),
        certificates.APIServerCertificateResource(client, resolver),
        kubeconfig.AdminKubeconfigResource(client),
        kubeadm.KubeadmConfigResource(client),
        certificates.KonnectivityCertificateResource(client, resolver),
        worker_bootstrap.WorkerBootstrapCredentialsResource(client, resolver),
        worker_bootstrap.WorkerBootstrapServiceResource(client),
        worker_bootstrap.WorkerBootstrapTraefikRouteResource(client),
        deployment.DeploymentResource(client),
        tcp_proxy.TCPProxyServiceAccountResource(client, tenant_clients),
        tcp_proxy.TCPProxyClusterRoleResource(client, tenant_clients),
        tcp_proxy.TCPProxyClusterRoleBindingResource(client, tenant_clients),
        tcp_proxy.TCPProxyServiceResource(client, tenant_clients),
        tcp_proxy.TCPProxyDeploymentResource(client, tenant_clients),
    ]


class ResourceOrchestrator:
    """
    Runs an ordered list of resources against a tenant control plane.

    The status of the tenant control plane is updated in place as each resource is
    run. The first error aborts the run, leaving the status recorded by the resources
    that completed, and is raised to the caller.
    """

    def __init__(self, resources, metrics = None):
        self.resources = resources
        self.metrics = metrics

    async def handle(self, resource, tcp, run):
        """
        Runs a single resource and returns its result.
        """
        await resource.define(tcp)
        if resource.should_cleanup(tcp):
            cleaned = await resource.cleanup(tcp)
            if cleaned or resource.should_status_be_updated(tcp):
                run.status_changed = True
                await resource.update_status(tcp)
            return RESULT_DELETED if cleaned else OperationResult.NONE.value
        result = await resource.create_or_update(tcp)
        if result != OperationResult.NONE or resource.should_status_be_updated(tcp):
            run.status_changed = True
            await resource.update_status(tcp)
        return result.value

    async def run(self, tcp):
        """
        Runs the resources in order against the tenant control plane.
        """
        run = RunResult()
        for resource in self.resources:
            start = time.monotonic()
            result = RESULT_ERROR
            try:
                result = await self.handle(resource, tcp, run)
            except Exception:
                logger.info(
                    "[%s] failed for %s/%s - aborting run",
                    resource.name,
                    tcp.metadata.namespace,
                    tcp.metadata.name
                )
                raise
            finally:
                run.results[resource.name] = result
                if self.metrics is not None:
                    self.metrics.observe_resource(
                        resource.name,
                        time.monotonic() - start,
                        result
                    )
        return run
