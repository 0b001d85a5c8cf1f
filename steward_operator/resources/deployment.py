import datetime as dt

from .. import addresses, readiness
from ..config import settings
from ..models.v1alpha1 import DeploymentStatus
from ..template import default_loader
from ..utils import merge_managed, selector_labels, tenant_prefixed_name
from .base import ManagedObjectResource, fetch_control_plane_service
from .certificates import (
    APISERVER_SUFFIX,
    CA_SUFFIX,
    FRONT_PROXY_CA_SUFFIX,
    KONNECTIVITY_SUFFIX,
    SERVICE_ACCOUNT_SUFFIX,
)
from .kubeconfig import ADMIN_KUBECONFIG_SUFFIX
from .worker_bootstrap import TRUSTD_CREDENTIALS_SUFFIX


class DeploymentResource(ManagedObjectResource):
    """
    Manages the deployment that runs the control plane components.

    The pod template carries the checksums of the credentials it mounts, so that a
    change to any of them rolls the control plane.
    """

    name = "deployment"
    api_version = "apps/v1"
    plural_name = "deployments"

    def _checksums(self, tcp):
        status = tcp.status
        checksums = {
            "ca": status.certificates.ca.checksum,
            "front-proxy-ca": status.certificates.front_proxy_ca.checksum,
            "apiserver": status.certificates.apiserver.checksum,
            "service-account": status.certificates.service_account.checksum,
            "kubeconfig": status.kubeconfig.checksum,
            "kubeadmconfig": status.kubeadm_config.checksum,
        }
        if tcp.spec.addons.konnectivity:
            checksums["konnectivity"] = status.addons.konnectivity.certificate.checksum
        if tcp.spec.addons.worker_bootstrap:
            checksums["worker-bootstrap"] = (
                status.addons.worker_bootstrap.credentials.checksum
            )
        return {
            f"{settings.annotation_prefix}/checksum-{key}": value
            for key, value in checksums.items()
            if value
        }

    async def mutate(self, tcp, obj):
        service = await fetch_control_plane_service(self.client, tcp)
        additional_metadata = tcp.spec.control_plane.deployment.additional_metadata
        worker_bootstrap = tcp.spec.addons.worker_bootstrap
        talos = worker_bootstrap.talos if worker_bootstrap else None
        desired = default_loader.load(
            "controlplane-deployment.yaml",
            tcp = tcp,
            replicas = readiness.desired_replicas(tcp),
            selector = selector_labels(tcp.metadata.name),
            pod_labels = { **additional_metadata.labels, **self.labels(tcp) },
            pod_annotations = { **additional_metadata.annotations, **self._checksums(tcp) },
            advertise_address = addresses.declared_address(tcp, service),
            trustd_port = addresses.trustd_port(talos) if talos else None,
            secrets = {
                "ca": tenant_prefixed_name(tcp, CA_SUFFIX),
                "front_proxy_ca": tenant_prefixed_name(tcp, FRONT_PROXY_CA_SUFFIX),
                "apiserver": tenant_prefixed_name(tcp, APISERVER_SUFFIX),
                "service_account": tenant_prefixed_name(tcp, SERVICE_ACCOUNT_SUFFIX),
                "kubeconfig": tenant_prefixed_name(tcp, ADMIN_KUBECONFIG_SUFFIX),
                "konnectivity": tenant_prefixed_name(tcp, KONNECTIVITY_SUFFIX),
                "worker_bootstrap": tenant_prefixed_name(tcp, TRUSTD_CREDENTIALS_SUFFIX),
            }
        )
        self.set_metadata(tcp, obj)
        metadata = obj["metadata"]
        metadata["labels"].update(additional_metadata.labels)
        if additional_metadata.annotations:
            metadata["annotations"] = {
                **(metadata.get("annotations") or {}),
                **additional_metadata.annotations,
            }
        spec = merge_managed(obj.get("spec") or {}, desired["spec"])
        # The pod metadata is replaced so that removed checksums and labels are dropped
        template_metadata = spec["template"].setdefault("metadata", {})
        template_metadata["labels"] = desired["spec"]["template"]["metadata"]["labels"]
        template_metadata["annotations"] = (
            desired["spec"]["template"]["metadata"]["annotations"]
        )
        obj["spec"] = spec

    def _deployment_status(self):
        status = self.object.get("status") or {}
        selector = (
            self.object
                .get("spec", {})
                .get("selector", {})
                .get("matchLabels") or {}
        )
        return DeploymentStatus(
            name = self.object_name,
            namespace = self.namespace,
            selector = ",".join(f"{k}={v}" for k, v in sorted(selector.items())),
            observed_generation = status.get("observedGeneration", 0),
            replicas = status.get("replicas", 0),
            ready_replicas = status.get("readyReplicas", 0),
            updated_replicas = status.get("updatedReplicas", 0),
            available_replicas = status.get("availableReplicas", 0),
            unavailable_replicas = status.get("unavailableReplicas", 0)
        )

    def should_status_be_updated(self, tcp):
        recorded = tcp.status.kubernetes
        current = self._deployment_status()
        state = readiness.compute_version_status(tcp, self.object)
        return (
            recorded.deployment.model_dump(exclude = {"last_update"}) !=
                current.model_dump(exclude = {"last_update"}) or
            recorded.version.status != state or
            recorded.version.version != readiness.next_recorded_version(tcp, state)
        )

    async def update_status(self, tcp):
        deployment = self._deployment_status()
        deployment.last_update = dt.datetime.now(dt.timezone.utc)
        state = readiness.compute_version_status(tcp, self.object)
        tcp.status.kubernetes.deployment = deployment
        tcp.status.kubernetes.version.version = readiness.next_recorded_version(tcp, state)
        tcp.status.kubernetes.version.status = state
