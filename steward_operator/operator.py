import asyncio
import functools
import logging
import ssl
import sys

import kopf
import pydantic

from easykube import Configuration, ApiError
from kube_custom_resource import CustomResourceRegistry

from . import csr, models, validation
from .config import settings
from .errors import (
    CertificateError,
    ConfigurationIncompleteError,
    LoadBalancerHostnameError,
    PausedReconciliationError,
)
from .metrics import MetricsRegistry, metrics_server
from .models import v1alpha1 as api
from .orchestrator import ResourceOrchestrator, default_resources
from .tenant import TenantClientFactory
from .trigger import TriggerRegistry

logger = logging.getLogger(__name__)


#: Annotation that pauses reconciliation of a tenant control plane
PAUSED_ANNOTATION = f"{settings.annotation_prefix}/paused"


# Create an easykube client from the environment
from pydantic.json import pydantic_encoder
ekclient = (
    Configuration
        .from_environment(json_encoder = pydantic_encoder)
        .async_client(default_field_manager = settings.easykube_field_manager)
)


# Create a registry of custom resources and populate it from the models module
registry = CustomResourceRegistry(settings.api_group, settings.crd_categories)
registry.discover_models(models)


# The metrics for the operator and the channels used to notify the CSR approvers
metrics_registry = MetricsRegistry()
triggers = TriggerRegistry()

# The background tasks started by the operator
background_tasks = set()


@kopf.on.startup()
async def apply_settings(**kwargs):
    """
    Apply kopf settings.
    """
    kopf_settings = kwargs["settings"]
    kopf_settings.persistence.finalizer = f"{settings.annotation_prefix}/finalizer"
    kopf_settings.persistence.progress_storage = kopf.AnnotationsProgressStorage(
        prefix = settings.annotation_prefix
    )
    kopf_settings.persistence.diffbase_storage = kopf.AnnotationsDiffBaseStorage(
        prefix = settings.annotation_prefix,
        key = "last-handled-configuration",
    )
    kopf_settings.admission.server = kopf.WebhookServer(
        addr = "0.0.0.0",
        port = settings.webhook.port,
        host = settings.webhook.host,
        certfile = settings.webhook.certfile,
        pkeyfile = settings.webhook.keyfile
    )
    kopf_settings.watching.client_timeout = settings.watch_timeout
    if settings.webhook.managed:
        kopf_settings.admission.managed = f"webhook.{settings.api_group}"
    # Apply the CRDs
    for crd in registry:
        try:
            await ekclient.apply_object(crd.kubernetes_resource(), force = True)
        except Exception:
            logger.exception("error applying CRD %s.%s - exiting", crd.plural_name, crd.api_group)
            sys.exit(1)
    # Give Kubernetes a chance to create the APIs for the CRDs
    await asyncio.sleep(0.5)
    # Check to see if the APIs for the CRDs are up
    # If they are not, the kopf watches will not start properly so we exit and get restarted
    for crd in registry:
        preferred_version = next(k for k, v in crd.versions.items() if v.storage)
        api_version = f"{crd.api_group}/{preferred_version}"
        try:
            _ = await ekclient.get(f"/apis/{api_version}/{crd.plural_name}")
        except Exception:
            logger.exception(
                "api for %s.%s not available - exiting",
                crd.plural_name,
                crd.api_group
            )
            sys.exit(1)
    # Start the metrics server
    if settings.metrics.enabled:
        task = asyncio.create_task(metrics_server(metrics_registry))
        background_tasks.add(task)
        task.add_done_callback(background_tasks.discard)


@kopf.on.cleanup()
async def on_cleanup(**kwargs):
    """
    Runs on operator shutdown.
    """
    for task in list(background_tasks):
        task.cancel()
    await asyncio.gather(*background_tasks, return_exceptions = True)
    await ekclient.aclose()


async def ekresource_for_model(model, subresource = None):
    """
    Returns an easykube resource for the given model.
    """
    api = ekclient.api(f"{settings.api_group}/{model._meta.version}")
    resource = model._meta.plural_name
    if subresource:
        resource = f"{resource}/{subresource}"
    return await api.resource(resource)


async def save_instance_status(instance):
    """
    Save the status of the given tenant control plane.
    """
    ekresource = await ekresource_for_model(api.TenantControlPlane, "status")
    data = await ekresource.replace(
        instance.metadata.name,
        {
            # Include the resource version for optimistic concurrency
            "metadata": { "resourceVersion": instance.metadata.resource_version },
            "status": instance.status.model_dump(exclude_defaults = True),
        },
        namespace = instance.metadata.namespace
    )
    # Store the new resource version
    instance.metadata.resource_version = data["metadata"]["resourceVersion"]


def model_handler(model, register_fn, /, include_instance = True, **kwargs):
    """
    Decorator that registers a handler with kopf for the specified model.
    """
    api_version = f"{settings.api_group}/{model._meta.version}"
    def decorator(func):
        @functools.wraps(func)
        async def handler(**handler_kwargs):
            if include_instance and "instance" not in handler_kwargs:
                handler_kwargs["instance"] = model.model_validate(handler_kwargs["body"])
            try:
                return await func(**handler_kwargs)
            except ApiError as exc:
                if exc.status_code == 409:
                    # When a handler fails with a 409, we want to retry quickly
                    raise kopf.TemporaryError(str(exc), delay = 5)
                else:
                    raise
        return register_fn(api_version, model._meta.plural_name, **kwargs)(handler)
    return decorator


async def fetch_model_instance(model, name, namespace = None):
    """
    Fetches and parses the specified model instance, or None if the instance does not exist.
    """
    ekresource = await ekresource_for_model(model)
    try:
        data = await ekresource.fetch(name, namespace = namespace)
    except ApiError as exc:
        if exc.status_code == 404:
            return None
        else:
            raise
    else:
        return model.model_validate(data)


def is_paused(instance):
    """
    Returns true if reconciliation of the tenant control plane is paused.
    """
    return PAUSED_ANNOTATION in (instance.metadata.annotations or {})


@model_handler(
    api.TenantControlPlane,
    kopf.on.validate,
    # We want to validate the instance ourselves
    include_instance = False,
    id = "validate-tenant-control-plane"
)
async def validate_tenant_control_plane(name, namespace, spec, operation, **kwargs):
    """
    Validates tenant control plane objects.
    """
    if operation not in {"CREATE", "UPDATE"}:
        return
    try:
        spec = api.TenantControlPlaneSpec.model_validate(spec)
    except pydantic.ValidationError as exc:
        raise kopf.AdmissionError(str(exc), code = 400)
    current = None
    if operation == "UPDATE":
        current = await fetch_model_instance(
            api.TenantControlPlane,
            name,
            namespace = namespace
        )
    problems = validation.validate(spec, current)
    if problems:
        raise kopf.AdmissionError("; ".join(problems), code = 400)


@model_handler(api.TenantControlPlane, kopf.on.create)
@model_handler(api.TenantControlPlane, kopf.on.update, field = "spec")
@model_handler(api.TenantControlPlane, kopf.on.resume)
@model_handler(
    api.TenantControlPlane,
    kopf.on.timer,
    interval = settings.timer_interval,
    idle = settings.timer_interval
)
async def reconcile_tenant_control_plane(instance, logger, **kwargs):
    """
    Reconciles a tenant control plane when it is created or updated, when the operator
    is resumed or periodically.
    """
    if is_paused(instance):
        logger.info("reconciliation is paused")
        return
    previous_status = instance.status.model_dump()
    tenant_clients = TenantClientFactory(ekclient)
    orchestrator = ResourceOrchestrator(
        default_resources(ekclient, tenant_clients),
        metrics_registry
    )
    try:
        await orchestrator.run(instance)
    except ConfigurationIncompleteError as exc:
        # These resolve once the earlier resources have converged
        raise kopf.TemporaryError(str(exc), delay = 10)
    except (LoadBalancerHostnameError, CertificateError) as exc:
        # These need intervention, so retry slowly
        raise kopf.TemporaryError(str(exc), delay = settings.timer_interval)
    except ssl.SSLError as exc:
        raise kopf.TemporaryError(str(exc))
    finally:
        await tenant_clients.aclose()
        # Save whatever status was recorded, even if the run was aborted
        if instance.status.model_dump() != previous_status:
            await save_instance_status(instance)
        metrics_registry.observe_version_status(instance)
    # Let the CSR approver know that the tenant control plane has changed
    await triggers.notify(instance.metadata.namespace, instance.metadata.name)


@model_handler(api.TenantControlPlane, kopf.on.delete)
async def delete_tenant_control_plane(instance, **kwargs):
    """
    Handles the deletion of a tenant control plane.

    The objects in the management cluster are garbage collected using their owner
    references, so there is nothing to do except forget the notification channel
    and the metrics for the tenant control plane.
    """
    triggers.discard(instance.metadata.namespace, instance.metadata.name)
    metrics_registry.forget(instance.metadata.namespace, instance.metadata.name)


async def retrieve_tenant_control_plane(name, namespace):
    """
    Returns the current state of the tenant control plane.

    Raises PausedReconciliationError if reconciliation of the tenant control plane is
    paused, or kopf.PermanentError if it no longer exists.
    """
    instance = await fetch_model_instance(
        api.TenantControlPlane,
        name,
        namespace = namespace
    )
    if instance is None:
        raise kopf.PermanentError("tenant control plane no longer exists")
    if is_paused(instance):
        raise PausedReconciliationError("reconciliation is paused")
    return instance


async def watch_csrs(client, worker_bootstrap):
    """
    Approves the valid kubelet serving CSRs in the tenant cluster as they appear.
    """
    ekapi = client.api(csr.CSR_API_VERSION)
    ekcsrs = await ekapi.resource("certificatesigningrequests")
    ekapprovals = await ekapi.resource("certificatesigningrequests/approval")
    initial, events = await ekcsrs.watch_list()
    for request in initial:
        await csr.approve_if_valid(ekapprovals, request, worker_bootstrap)
    async for event in events:
        if event["type"] in {"ADDED", "MODIFIED"} and event.get("object"):
            await csr.approve_if_valid(ekapprovals, event["object"], worker_bootstrap)


def is_csr_approval_enabled(instance):
    worker_bootstrap = instance.spec.addons.worker_bootstrap
    return (
        worker_bootstrap is not None and
        worker_bootstrap.csr_approval.auto_approve and
        instance.status.kubernetes.version.status in {
            api.KubernetesVersionStatus.READY,
            api.KubernetesVersionStatus.UPGRADING,
            api.KubernetesVersionStatus.WRITE_LIMITED,
        }
    )


@model_handler(
    api.TenantControlPlane,
    kopf.daemon,
    include_instance = False,
    cancellation_timeout = 1
)
async def approve_kubelet_serving_csrs(name, namespace, **kwargs):
    """
    Daemon that approves kubelet serving CSRs in the tenant cluster.

    The watch is restarted with the latest state of the tenant control plane whenever
    it is reconciled.
    """
    channel = triggers.channel(namespace, name)
    tenant_clients = TenantClientFactory(ekclient)
    tasks = set()
    try:
        while True:
            try:
                instance = await retrieve_tenant_control_plane(name, namespace)
            except PausedReconciliationError:
                instance = None
            trigger = asyncio.create_task(channel.receive())
            tasks.add(trigger)
            if instance is not None and is_csr_approval_enabled(instance):
                client = await tenant_clients.client_for(instance)
                watch = asyncio.create_task(
                    watch_csrs(client, instance.spec.addons.worker_bootstrap)
                )
                tasks.add(watch)
            done, pending = await asyncio.wait(tasks, return_when = asyncio.FIRST_COMPLETED)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions = True)
            tasks.clear()
            # Propagate any errors from the watch
            for task in done:
                task.result()
    except (ApiError, ssl.SSLError, ConfigurationIncompleteError) as exc:
        # These are expected, recoverable errors that we can retry
        raise kopf.TemporaryError(str(exc))
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions = True)
        await tenant_clients.aclose()
