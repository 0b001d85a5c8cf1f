import asyncio
import collections
import functools

from aiohttp import web

from .config import settings
from .models.v1alpha1 import KubernetesVersionStatus


class Metric:
    # The name of the metric
    name = None
    # The type of the metric - counter or gauge
    type = "gauge"
    # The description of the metric
    description = None

    def __init__(self):
        self._values = collections.defaultdict(float)

    def _key(self, labels):
        return tuple(sorted(labels.items()))

    def records(self):
        """Returns the records for the metric, i.e. a list of (labels, value) tuples."""
        for key, value in sorted(self._values.items()):
            yield dict(key), value


class Counter(Metric):
    type = "counter"

    def inc(self, amount = 1, **labels):
        self._values[self._key(labels)] += amount


class Gauge(Metric):
    def set(self, value, **labels):
        self._values[self._key(labels)] = value

    def remove(self, **labels):
        """
        Removes the records whose labels include the given labels.
        """
        match = set(labels.items())
        for key in [key for key in self._values if match.issubset(key)]:
            del self._values[key]


class ResourceReconcileDuration(Counter):
    name = "steward_resource_reconcile_seconds"
    description = "Total time spent reconciling each resource"


class ResourceReconcileCount(Counter):
    name = "steward_resource_reconcile"
    description = "The number of reconciles for each resource, by result"


class ResourceLastReconcileDuration(Gauge):
    name = "steward_resource_last_reconcile_seconds"
    description = "The duration of the last reconcile for each resource"


class TenantControlPlaneState(Gauge):
    name = "steward_tenant_control_plane_version_status"
    description = "The state of the Kubernetes version for each tenant control plane"


class MetricsRegistry:
    """
    Holds the metrics for the operator.

    A registry is created when the operator starts and passed to the components that
    record metrics.
    """

    def __init__(self):
        self.reconcile_duration = ResourceReconcileDuration()
        self.reconcile_count = ResourceReconcileCount()
        self.last_reconcile_duration = ResourceLastReconcileDuration()
        self.version_status = TenantControlPlaneState()

    def __iter__(self):
        yield self.reconcile_duration
        yield self.reconcile_count
        yield self.last_reconcile_duration
        yield self.version_status

    def observe_resource(self, resource, duration, result):
        """
        Records the outcome of reconciling a resource.
        """
        self.reconcile_duration.inc(duration, resource = resource)
        self.reconcile_count.inc(resource = resource, result = result)
        self.last_reconcile_duration.set(duration, resource = resource)

    def observe_version_status(self, tcp):
        """
        Records the version state of the tenant control plane.
        """
        current = tcp.status.kubernetes.version.status
        for state in KubernetesVersionStatus:
            self.version_status.set(
                1 if state == current else 0,
                namespace = tcp.metadata.namespace,
                name = tcp.metadata.name,
                status = state.value
            )

    def forget(self, namespace, name):
        """
        Removes the records for a tenant control plane that no longer exists.
        """
        self.version_status.remove(namespace = namespace, name = name)


def escape(content):
    """Escape the given content for use in metric output."""
    return content.replace("\\", r"\\").replace("\n", r"\n").replace('"', r"\"")


def format_value(value):
    """Formats a value for output, e.g. using Go formatting."""
    formatted = repr(value)
    dot = formatted.find(".")
    if value > 0 and dot > 6:
        mantissa = f"{formatted[0]}.{formatted[1:dot]}{formatted[dot + 1:]}".rstrip(
            "0."
        )
        return f"{mantissa}e+0{dot - 1}"
    else:
        return formatted


def render_openmetrics(*metrics):
    """Renders the metrics using OpenMetrics text format."""
    output = []
    for metric in metrics:
        if metric.description:
            output.append(f"# HELP {metric.name} {escape(metric.description)}\n")
        output.append(f"# TYPE {metric.name} {metric.type}\n")

        # OpenMetrics requires counter samples to carry the _total suffix
        suffix = "_total" if metric.type == "counter" else ""
        for labels, value in metric.records():
            if labels:
                labelstr = "{{{0}}}".format(
                    ",".join([f'{k}="{escape(v)}"' for k, v in sorted(labels.items())])
                )
            else:
                labelstr = ""
            output.append(f"{metric.name}{suffix}{labelstr} {format_value(value)}\n")
    output.append("# EOF\n")

    return (
        "application/openmetrics-text; version=1.0.0; charset=utf-8",
        "".join(output).encode("utf-8"),
    )


async def metrics_handler(registry, request):
    """Produce metrics for the operator."""
    content_type, content = render_openmetrics(*registry)
    return web.Response(headers={"Content-Type": content_type}, body=content)


async def metrics_server(registry):
    """Launch a lightweight HTTP server to serve the metrics endpoint."""
    app = web.Application()
    app.add_routes([web.get("/metrics", functools.partial(metrics_handler, registry))])

    runner = web.AppRunner(app, handle_signals=False)
    await runner.setup()

    site = web.TCPSite(runner, "0.0.0.0", settings.metrics.port, shutdown_timeout=1.0)
    await site.start()

    # Sleep until we need to clean up
    try:
        await asyncio.Event().wait()
    finally:
        await asyncio.shield(runner.cleanup())
