import datetime as dt

import yaml

from .. import addresses, checksum
from ..template import default_loader
from ..utils import tenant_prefixed_name
from .base import ManagedObjectResource, fetch_control_plane_service


KUBEADM_CONFIG_SUFFIX = "kubeadmconfig"
KUBEADM_CONFIG_KEY = "kubeadm-config.yaml"


class KubeadmConfigResource(ManagedObjectResource):
    """
    Manages the config map holding the kubeadm configuration for the tenant cluster.

    Worker nodes that join using kubeadm read the control plane endpoint and the
    networking configuration from it.
    """

    name = "kubeadmconfig"
    api_version = "v1"
    plural_name = "configmaps"

    def get_object_name(self, tcp):
        return tenant_prefixed_name(tcp, KUBEADM_CONFIG_SUFFIX)

    async def mutate(self, tcp, obj):
        service = await fetch_control_plane_service(self.client, tcp)
        documents = default_loader.load_all(
            "kubeadm-config.yaml",
            tcp = tcp,
            advertise_address = addresses.declared_address(tcp, service),
            control_plane_endpoint = addresses.control_plane_endpoint(tcp, service)
        )
        data = { KUBEADM_CONFIG_KEY: yaml.safe_dump_all(documents) }
        self.set_metadata(tcp, obj)
        obj["data"] = data
        checksum.set_object_checksum(obj, data)

    def should_status_be_updated(self, tcp):
        status = tcp.status.kubeadm_config
        return (
            status.configmap_name != self.object_name or
            status.checksum != checksum.get_object_checksum(self.object)
        )

    async def update_status(self, tcp):
        status = tcp.status.kubeadm_config
        status.configmap_name = self.object_name
        status.checksum = checksum.get_object_checksum(self.object)
        status.last_update = dt.datetime.now(dt.timezone.utc)
