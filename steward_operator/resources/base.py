import abc
import logging

import kopf

from ..errors import ConfigurationIncompleteError
from ..models.v1alpha1 import KubernetesVersionStatus
from ..upsert import OperationResult, create_or_update, delete_if_managed, fetch_or_none
from ..utils import steward_labels

logger = logging.getLogger(__name__)


class Resource(abc.ABC):
    """
    A child of a tenant control plane that is reconciled by the orchestrator.

    For each reconcile, the orchestrator calls define first, then either cleanup or
    create_or_update depending on should_cleanup, then update_status if the status
    needs updating.
    """

    #: The name of the resource, used in logs and metrics
    name = None

    @abc.abstractmethod
    async def define(self, tcp):
        """
        Binds the identity of the child object for the given tenant control plane.
        """

    @abc.abstractmethod
    def should_cleanup(self, tcp) -> bool:
        """
        Returns true if the child object should be removed.
        """

    @abc.abstractmethod
    async def cleanup(self, tcp) -> bool:
        """
        Removes the child object and returns true if anything was removed.
        """

    @abc.abstractmethod
    async def create_or_update(self, tcp) -> OperationResult:
        """
        Creates or updates the child object to match the tenant control plane.
        """

    @abc.abstractmethod
    def should_status_be_updated(self, tcp) -> bool:
        """
        Returns true if the status of the tenant control plane is out of date with
        respect to the child object.
        """

    @abc.abstractmethod
    async def update_status(self, tcp):
        """
        Projects the state of the child object into the tenant control plane status.
        """


def owner_body(tcp):
    """
    Returns the body to use when adding an owner reference to the tenant control plane.
    """
    return {
        "apiVersion": tcp.api_version,
        "kind": tcp.kind,
        "metadata": {
            "name": tcp.metadata.name,
            "namespace": tcp.metadata.namespace,
            "uid": tcp.metadata.uid,
        },
    }


async def fetch_control_plane_service(client, tcp):
    """
    Returns the control plane service for the tenant control plane, or None.
    """
    ekservices = await client.api("v1").resource("services")
    return await fetch_or_none(
        ekservices,
        tcp.metadata.name,
        namespace = tcp.metadata.namespace
    )


def require(value, message):
    """
    Returns the value if it is set, otherwise raises ConfigurationIncompleteError.
    """
    if not value:
        raise ConfigurationIncompleteError(message)
    return value


class ManagedObjectResource(Resource):
    """
    Base class for resources that manage a single object in the management cluster.

    The object is owned by the tenant control plane, so it is garbage collected when
    the tenant control plane is deleted.
    """

    #: The API version and plural name of the managed object
    api_version = None
    plural_name = None

    def __init__(self, client):
        self.client = client
        self.object_name = None
        self.namespace = None
        self.ekresource = None
        #: The object as last seen by this resource during the current reconcile
        self.object = None

    def get_object_name(self, tcp):
        """
        Returns the name of the managed object.
        """
        return tcp.metadata.name

    def get_namespace(self, tcp):
        return tcp.metadata.namespace

    def enabled(self, tcp):
        """
        Returns true if the feature that governs the object is enabled.
        """
        return True

    def labels(self, tcp):
        return steward_labels(tcp.metadata.name, self.name)

    async def get_client(self, tcp):
        return self.client

    def has_work(self, tcp):
        """
        Returns true if the object needs to be created, updated or removed.
        """
        return self.enabled(tcp) or self.should_cleanup(tcp)

    async def define(self, tcp):
        self.object_name = self.get_object_name(tcp)
        self.namespace = self.get_namespace(tcp)
        self.ekresource = None
        self.object = {
            "metadata": {
                "name": self.object_name,
                **({ "namespace": self.namespace } if self.namespace else {}),
            },
        }
        # Discovery only happens when needed, so that the APIs for optional features
        # are not required to be installed
        if self.has_work(tcp):
            client = await self.get_client(tcp)
            self.ekresource = await client.api(self.api_version).resource(self.plural_name)

    def should_cleanup(self, tcp):
        return False

    async def cleanup(self, tcp):
        if not self.ekresource:
            return False
        deleted = await delete_if_managed(
            self.ekresource,
            self.object_name,
            namespace = self.namespace,
            owner_uid = tcp.metadata.uid
        )
        if deleted:
            logger.info("[%s] deleted %s", self.name, self.object_name)
        return deleted

    def set_metadata(self, tcp, obj):
        """
        Applies the labels and owner reference to the object.
        """
        metadata = obj.setdefault("metadata", {})
        metadata["labels"] = { **(metadata.get("labels") or {}), **self.labels(tcp) }
        kopf.append_owner_reference(obj, owner = owner_body(tcp))

    @abc.abstractmethod
    async def mutate(self, tcp, obj):
        """
        Re-derives the managed fields of the object from the tenant control plane.

        Applying the mutation twice for the same tenant control plane must produce the
        same object.
        """

    async def create_or_update(self, tcp):
        if not self.ekresource or not self.enabled(tcp):
            return OperationResult.NONE
        async def mutate(obj):
            await self.mutate(tcp, obj)
        result, self.object = await create_or_update(
            self.ekresource,
            self.object_name,
            mutate,
            namespace = self.namespace
        )
        if result != OperationResult.NONE:
            logger.info("[%s] %s %s", self.name, result.value, self.object_name)
        return result


class TenantObjectResource(ManagedObjectResource):
    """
    Base class for resources that manage a single object inside the tenant cluster.

    Objects in the tenant cluster cannot be owned by the tenant control plane, so
    ownership is tracked using the project labels only. Nothing is done until the
    API server of the tenant cluster is ready.
    """

    def __init__(self, client, tenant_clients):
        super().__init__(client)
        self.tenant_clients = tenant_clients

    def is_tenant_available(self, tcp):
        """
        Returns true if the API server of the tenant cluster can accept writes.
        """
        return tcp.status.kubernetes.version.status == KubernetesVersionStatus.READY

    async def get_client(self, tcp):
        return await self.tenant_clients.client_for(tcp)

    def has_work(self, tcp):
        return self.is_tenant_available(tcp) and super().has_work(tcp)

    def should_status_be_updated(self, tcp):
        return self.is_tenant_available(tcp) and self.is_status_outdated(tcp)

    @abc.abstractmethod
    def is_status_outdated(self, tcp):
        """
        Returns true if the recorded status for the object is out of date.
        """

    def set_metadata(self, tcp, obj):
        metadata = obj.setdefault("metadata", {})
        metadata["labels"] = { **(metadata.get("labels") or {}), **self.labels(tcp) }

    async def cleanup(self, tcp):
        if not self.ekresource:
            return False
        deleted = await delete_if_managed(
            self.ekresource,
            self.object_name,
            namespace = self.namespace
        )
        if deleted:
            logger.info("[%s] deleted %s from tenant cluster", self.name, self.object_name)
        return deleted
