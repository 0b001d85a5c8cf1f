import logging

from easykube import Configuration
from pydantic.json import pydantic_encoder

from .config import settings
from .errors import ConfigurationIncompleteError
from .resources.kubeconfig import ADMIN_KUBECONFIG_SUFFIX
from .upsert import fetch_or_none
from .utils import secret_data, tenant_prefixed_name

logger = logging.getLogger(__name__)


class TenantClientFactory:
    """
    Produces easykube clients for tenant clusters from their admin kubeconfigs.

    Clients are cached by tenant control plane and by kubeconfig, so that a new client
    is made when the kubeconfig is regenerated. Clients must be released with aclose.
    """

    def __init__(self, client):
        self.client = client
        self._clients = {}

    async def fetch_kubeconfig(self, tcp):
        """
        Returns the admin kubeconfig for the tenant cluster as bytes.
        """
        eksecrets = await self.client.api("v1").resource("secrets")
        secret = await fetch_or_none(
            eksecrets,
            tenant_prefixed_name(tcp, ADMIN_KUBECONFIG_SUFFIX),
            namespace = tcp.metadata.namespace
        )
        kubeconfig = secret_data(secret or {}).get(settings.control_plane.admin_kubeconfig_key)
        if not kubeconfig:
            raise ConfigurationIncompleteError(
                "admin kubeconfig for tenant cluster is not available yet"
            )
        return kubeconfig

    def make_client(self, kubeconfig):
        return (
            Configuration
                .from_kubeconfig_data(kubeconfig, json_encoder = pydantic_encoder)
                .async_client(default_field_manager = settings.easykube_field_manager)
        )

    async def client_for(self, tcp):
        """
        Returns a client for the tenant cluster of the given tenant control plane.
        """
        key = (tcp.metadata.namespace, tcp.metadata.name)
        kubeconfig = await self.fetch_kubeconfig(tcp)
        cached = self._clients.get(key)
        if cached and cached[0] == kubeconfig:
            return cached[1]
        if cached:
            logger.info("admin kubeconfig for %s/%s changed - recreating client", *key)
            await cached[1].aclose()
        client = self.make_client(kubeconfig)
        self._clients[key] = (kubeconfig, client)
        return client

    async def aclose(self):
        """
        Closes all the clients produced by the factory.
        """
        while self._clients:
            _, (_, client) = self._clients.popitem()
            await client.aclose()
