import unittest
from unittest import mock

from steward_operator import orchestrator
from steward_operator.errors import ConfigurationIncompleteError, NonExposedLoadBalancerError
from steward_operator.metrics import MetricsRegistry
from steward_operator.models.v1alpha1 import KubernetesVersionStatus
from steward_operator.resources import certificates, service
from steward_operator.tests import fakes
from steward_operator.upsert import OperationResult


class RecordingResource:
    """
    Resource that records the calls made to it.
    """

    def __init__(
        self,
        name,
        calls,
        result = OperationResult.NONE,
        cleanup = False,
        outdated = False,
        error = None
    ):
        self.name = name
        self.calls = calls
        self.result = result
        self.cleanup_requested = cleanup
        self.outdated = outdated
        self.error = error

    async def define(self, tcp):
        self.calls.append((self.name, "define"))

    def should_cleanup(self, tcp):
        return self.cleanup_requested

    async def cleanup(self, tcp):
        self.calls.append((self.name, "cleanup"))
        return True

    async def create_or_update(self, tcp):
        self.calls.append((self.name, "create_or_update"))
        if self.error:
            raise self.error
        return self.result

    def should_status_be_updated(self, tcp):
        return self.outdated

    async def update_status(self, tcp):
        self.calls.append((self.name, "update_status"))


class TestResourceOrchestrator(unittest.IsolatedAsyncioTestCase):
    maxDiff = None

    async def test_resources_run_in_order(self):
        calls = []
        resources = [
            RecordingResource("first", calls, OperationResult.CREATED),
            RecordingResource("second", calls),
            RecordingResource("third", calls, outdated = True),
        ]

        run = await orchestrator.ResourceOrchestrator(resources).run(fakes.make_tcp())

        self.assertEqual(
            calls,
            [
                ("first", "define"),
                ("first", "create_or_update"),
                ("first", "update_status"),
                ("second", "define"),
                ("second", "create_or_update"),
                ("third", "define"),
                ("third", "create_or_update"),
                ("third", "update_status"),
            ]
        )
        self.assertEqual(
            run.results,
            {"first": "created", "second": "unchanged", "third": "unchanged"}
        )
        self.assertTrue(run.status_changed)

    async def test_unchanged_run(self):
        calls = []
        resources = [RecordingResource("only", calls)]

        run = await orchestrator.ResourceOrchestrator(resources).run(fakes.make_tcp())

        self.assertFalse(run.status_changed)

    async def test_cleanup(self):
        calls = []
        resources = [RecordingResource("removed", calls, cleanup = True)]

        run = await orchestrator.ResourceOrchestrator(resources).run(fakes.make_tcp())

        self.assertEqual(
            calls,
            [("removed", "define"), ("removed", "cleanup"), ("removed", "update_status")]
        )
        self.assertEqual(run.results, {"removed": orchestrator.RESULT_DELETED})
        self.assertTrue(run.status_changed)

    async def test_first_error_aborts_run(self):
        calls = []
        resources = [
            RecordingResource("first", calls, OperationResult.UPDATED),
            RecordingResource("broken", calls, error = ConfigurationIncompleteError("not yet")),
            RecordingResource("never", calls),
        ]
        metrics = MetricsRegistry()

        with self.assertRaises(ConfigurationIncompleteError):
            await orchestrator.ResourceOrchestrator(resources, metrics).run(fakes.make_tcp())

        self.assertNotIn(("never", "define"), calls)
        records = dict(
            (labels["resource"], labels["result"])
            for labels, _ in metrics.reconcile_count.records()
        )
        self.assertEqual(records, {"first": "updated", "broken": orchestrator.RESULT_ERROR})

    async def test_unassigned_load_balancer_leaves_partial_status(self):
        client = fakes.FakeClient()
        tcp = fakes.make_tcp()
        resources = [
            service.ServiceResource(client),
            certificates.CACertificateResource(client),
        ]

        with self.assertRaises(NonExposedLoadBalancerError):
            await orchestrator.ResourceOrchestrator(resources).run(tcp)

        self.assertEqual(tcp.status.kubernetes.service.name, "tcp1")
        self.assertEqual(tcp.status.kubernetes.service.port, 6443)
        self.assertIsNone(tcp.status.control_plane_endpoint)
        self.assertIsNone(tcp.status.certificates.ca.secret_name)
        self.assertIsNotNone(client.store.get("services", "tcp1", "tenant1"))
        self.assertIsNone(client.store.get("secrets", "tcp1-ca", "tenant1"))

    async def test_assigned_load_balancer_records_endpoint(self):
        client = fakes.FakeClient()
        tcp = fakes.make_tcp()
        client.store.put("services", fakes.load_balancer_service(tcp, [{"ip": "198.51.100.7"}]))

        run = await orchestrator.ResourceOrchestrator([service.ServiceResource(client)]).run(tcp)

        self.assertEqual(run.results, {"service": "updated"})
        self.assertEqual(tcp.status.control_plane_endpoint, "198.51.100.7:6443")
        self.assertEqual(tcp.status.kubernetes.service.load_balancer[0].ip, "198.51.100.7")


class TestDefaultResources(unittest.TestCase):
    def test_order(self):
        client = fakes.FakeClient()
        resources = orchestrator.default_resources(
            client,
            fakes.FakeTenantClients(client),
            fakes.no_resolve
        )

        self.assertEqual(
            [resource.name for resource in resources],
            [
                "service",
                "ingress",
                "traefik-ingressroutetcp",
                "ca",
                "front-proxy-ca",
                "sa-certificate",
                "api-server-certificate",
                "admin-kubeconfig",
                "kubeadmconfig",
                "konnectivity-certificate",
                "worker-bootstrap-credentials",
                "worker-bootstrap-service",
                "worker-bootstrap-traefik-ingressroutetcp",
                "deployment",
                "tcp-proxy-serviceaccount",
                "tcp-proxy-clusterrole",
                "tcp-proxy-clusterrolebinding",
                "tcp-proxy-service",
                "tcp-proxy-deployment",
            ]
        )


class TestTenantResources(unittest.IsolatedAsyncioTestCase):
    async def test_tenant_resources_wait_for_ready(self):
        client = fakes.FakeClient()
        tenant_clients = mock.Mock(wraps = fakes.FakeTenantClients(client))
        tcp = fakes.make_tcp({"addons": {"tcpProxy": {}}})
        resources = orchestrator.default_resources(client, tenant_clients, fakes.no_resolve)

        run = await orchestrator.ResourceOrchestrator(resources[14:]).run(tcp)

        self.assertFalse(run.status_changed)
        tenant_clients.client_for.assert_not_called()

    async def test_tenant_resources_run_when_ready(self):
        client = fakes.FakeClient()
        tenant = fakes.FakeClient()
        tcp = fakes.make_tcp(
            {"addons": {"tcpProxy": {}}},
            {
                "kubernetes": {"version": {"status": KubernetesVersionStatus.READY.value}},
                "controlPlaneEndpoint": "198.51.100.7:6443",
            }
        )
        resources = orchestrator.default_resources(
            client,
            fakes.FakeTenantClients(tenant),
            fakes.no_resolve
        )

        run = await orchestrator.ResourceOrchestrator(resources[14:]).run(tcp)

        self.assertEqual(set(run.results.values()), {"created"})
        self.assertTrue(tcp.status.addons.tcp_proxy.enabled)
        self.assertEqual(tcp.status.addons.tcp_proxy.deployment.name, "steward-tcp-proxy")
        self.assertIsNotNone(
            tenant.store.get("deployments", "steward-tcp-proxy", "kube-system")
        )
        self.assertEqual(client.store.objects, {})
