import unittest

import yaml

from steward_operator import checksum
from steward_operator.errors import ServiceNotReadyError
from steward_operator.models.v1alpha1 import KubernetesVersionStatus
from steward_operator.orchestrator import ResourceOrchestrator
from steward_operator.resources import deployment, ingress, kubeadm, service, worker_bootstrap
from steward_operator.upsert import OperationResult
from steward_operator.tests import fakes


SERVICE_STATUS = {"kubernetes": {"service": {"name": "tcp1", "namespace": "tenant1", "port": 6443}}}


class ResourceTestCase(unittest.IsolatedAsyncioTestCase):
    maxDiff = None

    async def asyncSetUp(self):
        self.client = fakes.FakeClient()
        self.store = self.client.store

    async def reconcile(self, tcp, *resources):
        return await ResourceOrchestrator(list(resources)).run(tcp)


class TestExposure(ResourceTestCase):
    def resources(self):
        return [
            ingress.IngressResource(self.client),
            ingress.TraefikIngressRouteTCPResource(self.client),
        ]

    async def test_ingress_routes_to_service(self):
        tcp = fakes.make_tcp(
            {
                "controlPlane": {
                    "ingress": {
                        "hostname": "tcp1.k8s.example.com:443",
                        "ingressClassName": "nginx",
                    },
                },
            },
            SERVICE_STATUS
        )

        run = await self.reconcile(tcp, *self.resources())

        self.assertEqual(run.results, {"ingress": "created", "traefik-ingressroutetcp": "unchanged"})
        obj = self.store.get("ingresses", "tcp1", "tenant1")
        self.assertEqual(
            obj["metadata"]["annotations"]["nginx.ingress.kubernetes.io/ssl-passthrough"],
            "true"
        )
        self.assertEqual(obj["spec"]["ingressClassName"], "nginx")
        rule = obj["spec"]["rules"][0]
        self.assertEqual(rule["host"], "tcp1.k8s.example.com")
        self.assertEqual(
            rule["http"]["paths"][0]["backend"]["service"],
            {"name": "tcp1", "port": {"number": 6443}}
        )
        self.assertEqual(tcp.status.kubernetes.ingress.kind, "Ingress")

    async def test_ingress_needs_service(self):
        tcp = fakes.make_tcp({"controlPlane": {"ingress": {"hostname": "tcp1.k8s.example.com"}}})

        with self.assertRaises(ServiceNotReadyError):
            await self.reconcile(tcp, *self.resources())

    async def test_switch_to_traefik(self):
        spec = {"controlPlane": {"ingress": {"hostname": "tcp1.k8s.example.com"}}}
        tcp = fakes.make_tcp(spec, SERVICE_STATUS)
        await self.reconcile(tcp, *self.resources())
        tcp.spec.control_plane.ingress.controller_type = "Traefik"

        run = await self.reconcile(tcp, *self.resources())

        self.assertEqual(
            run.results,
            {"ingress": "deleted", "traefik-ingressroutetcp": "created"}
        )
        self.assertIsNone(self.store.get("ingresses", "tcp1", "tenant1"))
        route = self.store.get("ingressroutetcps", "tcp1", "tenant1")
        self.assertEqual(route["spec"]["routes"][0]["match"], "HostSNI(`tcp1.k8s.example.com`)")
        self.assertTrue(route["spec"]["tls"]["passthrough"])
        self.assertEqual(tcp.status.kubernetes.ingress.kind, "IngressRouteTCP")

    async def test_removing_ingress_clears_status(self):
        tcp = fakes.make_tcp(
            {"controlPlane": {"ingress": {"hostname": "tcp1.k8s.example.com"}}},
            SERVICE_STATUS
        )
        await self.reconcile(tcp, *self.resources())
        tcp.spec.control_plane.ingress = None

        run = await self.reconcile(tcp, *self.resources())

        self.assertEqual(run.results["ingress"], "deleted")
        self.assertIsNone(tcp.status.kubernetes.ingress)

    async def test_optional_api_not_discovered(self):
        tcp = fakes.make_tcp(status = SERVICE_STATUS)
        resource = ingress.TraefikIngressRouteTCPResource(self.client)

        await resource.define(tcp)

        self.assertIsNone(resource.ekresource)


class TestService(ResourceTestCase):
    async def test_node_port_service(self):
        tcp = fakes.make_tcp(
            {
                "networkProfile": {"address": "192.0.2.10"},
                "controlPlane": {"service": {"serviceType": "NodePort"}},
                "addons": {"konnectivity": {}},
            }
        )

        await self.reconcile(tcp, service.ServiceResource(self.client))

        obj = self.store.get("services", "tcp1", "tenant1")
        self.assertEqual(obj["spec"]["type"], "NodePort")
        self.assertEqual(
            [(p["name"], p["port"], p.get("nodePort")) for p in obj["spec"]["ports"]],
            [("kube-apiserver", 6443, 6443), ("konnectivity-server", 8132, 8132)]
        )
        self.assertEqual(obj["spec"]["selector"]["steward.butlerlabs.dev/name"], "tcp1")
        self.assertEqual(tcp.status.control_plane_endpoint, "192.0.2.10:6443")

    async def test_load_balancer_keeps_allocated_node_port(self):
        tcp = fakes.make_tcp({"addons": {"konnectivity": {}}})
        resource = service.ServiceResource(self.client)
        await resource.define(tcp)
        self.assertEqual(await resource.create_or_update(tcp), OperationResult.CREATED)
        # The server allocates a node port for each port of a LoadBalancer service
        key = self.store.key("services", "tenant1", "tcp1")
        for index, port in enumerate(self.store.objects[key]["spec"]["ports"]):
            port["nodePort"] = 31000 + index

        for _ in range(2):
            await resource.define(tcp)
            self.assertEqual(await resource.create_or_update(tcp), OperationResult.NONE)

        obj = self.store.get("services", "tcp1", "tenant1")
        self.assertEqual([p["nodePort"] for p in obj["spec"]["ports"]], [31000, 31001])
        self.assertEqual(obj["spec"]["type"], "LoadBalancer")

    async def test_cluster_ip_drops_node_port(self):
        tcp = fakes.make_tcp(
            {
                "networkProfile": {"address": "192.0.2.10"},
                "controlPlane": {"service": {"serviceType": "NodePort"}},
            }
        )
        await self.reconcile(tcp, service.ServiceResource(self.client))
        tcp.spec.control_plane.service.service_type = "ClusterIP"

        run = await self.reconcile(tcp, service.ServiceResource(self.client))

        self.assertEqual(run.results, {"service": "updated"})
        obj = self.store.get("services", "tcp1", "tenant1")
        self.assertNotIn("nodePort", obj["spec"]["ports"][0])

    async def test_external_ip(self):
        tcp = fakes.make_tcp(
            {
                "networkProfile": {
                    "address": "192.0.2.10",
                    "allowAddressAsExternalIP": True,
                },
            }
        )

        await self.reconcile(tcp, service.ServiceResource(self.client))

        obj = self.store.get("services", "tcp1", "tenant1")
        self.assertEqual(obj["spec"]["externalIPs"], ["192.0.2.10"])


class TestWorkerBootstrapService(ResourceTestCase):
    def make_tcp(self, enabled = True, status = None):
        spec = {"networkProfile": {"address": "192.0.2.10"}}
        if enabled:
            spec["addons"] = {"workerBootstrap": {"provider": "talos", "talos": {}}}
        return fakes.make_tcp(spec, status)

    async def test_requires_service(self):
        tcp = self.make_tcp()

        with self.assertRaises(ServiceNotReadyError):
            await self.reconcile(tcp, worker_bootstrap.WorkerBootstrapServiceResource(self.client))

        self.assertIsNone(self.store.get("services", "tcp1", "tenant1"))

    async def test_adds_and_removes_port(self):
        tcp = self.make_tcp()
        resources = [
            service.ServiceResource(self.client),
            worker_bootstrap.WorkerBootstrapServiceResource(self.client),
        ]
        await self.reconcile(tcp, *resources)
        obj = self.store.get("services", "tcp1", "tenant1")
        self.assertEqual(
            [p["name"] for p in obj["spec"]["ports"]],
            ["kube-apiserver", "trustd"]
        )
        self.assertEqual(tcp.status.addons.worker_bootstrap.service.port, 50001)

        # The trustd port survives the service being reconciled again
        run = await self.reconcile(tcp, *resources)
        self.assertEqual(set(run.results.values()), {"unchanged"})

        disabled = self.make_tcp(enabled = False, status = tcp.status.model_dump(by_alias = True))
        run = await self.reconcile(
            disabled,
            service.ServiceResource(self.client),
            worker_bootstrap.WorkerBootstrapServiceResource(self.client)
        )

        self.assertEqual(run.results["worker-bootstrap-service"], "deleted")
        obj = self.store.get("services", "tcp1", "tenant1")
        self.assertEqual([p["name"] for p in obj["spec"]["ports"]], ["kube-apiserver"])
        self.assertIsNone(disabled.status.addons.worker_bootstrap.service.name)


class TestWorkerBootstrapTraefikRoute(ResourceTestCase):
    def make_tcp(self, controller_type = "traefik", status = None):
        return fakes.make_tcp(
            {
                "controlPlane": {
                    "ingress": {
                        "hostname": "tcp1.k8s.example.com",
                        "controllerType": controller_type,
                    },
                },
                "addons": {"workerBootstrap": {"provider": "talos", "talos": {}}},
            },
            status
        )

    def resources(self):
        return [
            service.ServiceResource(self.client),
            worker_bootstrap.WorkerBootstrapServiceResource(self.client),
            worker_bootstrap.WorkerBootstrapTraefikRouteResource(self.client),
        ]

    async def test_routes_trustd_entrypoint(self):
        tcp = self.make_tcp()

        await self.reconcile(tcp, *self.resources())

        obj = self.store.get("ingressroutetcps", "tcp1-trustd", "tenant1")
        self.assertEqual(obj["spec"]["entryPoints"], ["trustd"])
        self.assertEqual(
            obj["spec"]["routes"],
            [
                {
                    "match": "HostSNI(`tcp1.k8s.example.com`)",
                    "services": [{"name": "tcp1", "port": 50001}],
                },
            ]
        )
        self.assertTrue(obj["spec"]["tls"]["passthrough"])
        self.assertEqual(obj["metadata"]["ownerReferences"][0]["uid"], tcp.metadata.uid)
        self.assertEqual(tcp.status.addons.worker_bootstrap.route.name, "tcp1-trustd")

        run = await self.reconcile(tcp, *self.resources())
        self.assertEqual(set(run.results.values()), {"unchanged"})
        self.assertFalse(run.status_changed)

    async def test_requires_trustd_port(self):
        tcp = self.make_tcp()

        with self.assertRaises(ServiceNotReadyError):
            await self.reconcile(
                tcp,
                worker_bootstrap.WorkerBootstrapTraefikRouteResource(self.client)
            )

    async def test_not_used_without_traefik(self):
        tcp = self.make_tcp(controller_type = "nginx")

        run = await self.reconcile(tcp, *self.resources())

        self.assertEqual(run.results["worker-bootstrap-traefik-ingressroutetcp"], "unchanged")
        self.assertIsNone(self.store.get("ingressroutetcps", "tcp1-trustd", "tenant1"))
        self.assertIsNone(tcp.status.addons.worker_bootstrap.route.name)

    async def test_removed_when_ingress_changes(self):
        tcp = self.make_tcp()
        await self.reconcile(tcp, *self.resources())
        changed = self.make_tcp(
            controller_type = "nginx",
            status = tcp.status.model_dump(by_alias = True)
        )

        run = await self.reconcile(changed, *self.resources())

        self.assertEqual(run.results["worker-bootstrap-traefik-ingressroutetcp"], "deleted")
        self.assertIsNone(self.store.get("ingressroutetcps", "tcp1-trustd", "tenant1"))
        self.assertIsNone(changed.status.addons.worker_bootstrap.route.name)


class TestKubeadmConfig(ResourceTestCase):
    async def test_config_map(self):
        tcp = fakes.make_tcp(
            {
                "networkProfile": {"address": "192.0.2.10"},
                "controlPlane": {"ingress": {"hostname": "tcp1.k8s.example.com"}},
            }
        )

        await self.reconcile(tcp, kubeadm.KubeadmConfigResource(self.client))

        obj = self.store.get("configmaps", "tcp1-kubeadmconfig", "tenant1")
        init, cluster = yaml.safe_load_all(obj["data"]["kubeadm-config.yaml"])
        self.assertEqual(init["localAPIEndpoint"]["advertiseAddress"], "192.0.2.10")
        self.assertEqual(cluster["controlPlaneEndpoint"], "tcp1.k8s.example.com:443")
        self.assertEqual(cluster["kubernetesVersion"], "v1.30.2")
        self.assertEqual(tcp.status.kubeadm_config.configmap_name, "tcp1-kubeadmconfig")
        self.assertEqual(tcp.status.kubeadm_config.checksum, checksum.get_object_checksum(obj))


class TestDeployment(ResourceTestCase):
    def make_tcp(self, **status):
        return fakes.make_tcp(
            {
                "networkProfile": {"address": "192.0.2.10"},
                "controlPlane": {"deployment": {"replicas": 1}},
            },
            status
        )

    def set_deployment_status(self, **status):
        key = self.store.key("deployments", "tenant1", "tcp1")
        obj = self.store.objects[key]
        obj["status"] = {"observedGeneration": obj["metadata"]["generation"], **status}

    async def test_pod_template_carries_checksums(self):
        tcp = self.make_tcp(certificates = {"ca": {"checksum": "abc"}})

        await self.reconcile(tcp, deployment.DeploymentResource(self.client))

        obj = self.store.get("deployments", "tcp1", "tenant1")
        self.assertEqual(obj["spec"]["replicas"], 1)
        annotations = obj["spec"]["template"]["metadata"]["annotations"]
        self.assertEqual(annotations, {"steward.butlerlabs.dev/checksum-ca": "abc"})
        self.assertEqual(tcp.status.kubernetes.version.status, KubernetesVersionStatus.NOT_READY)
        self.assertIsNone(tcp.status.kubernetes.version.version)

    async def test_checksum_change_rolls_pods(self):
        tcp = self.make_tcp(certificates = {"ca": {"checksum": "abc"}})
        await self.reconcile(tcp, deployment.DeploymentResource(self.client))
        tcp.status.certificates.ca.checksum = "def"

        run = await self.reconcile(tcp, deployment.DeploymentResource(self.client))

        self.assertEqual(run.results, {"deployment": "updated"})
        obj = self.store.get("deployments", "tcp1", "tenant1")
        self.assertEqual(obj["metadata"]["generation"], 2)

    async def test_removed_checksums_are_dropped(self):
        tcp = fakes.make_tcp(
            {
                "networkProfile": {"address": "192.0.2.10"},
                "controlPlane": {
                    "deployment": {
                        "replicas": 1,
                        "additionalMetadata": {"labels": {"team": "a"}},
                    },
                },
                "addons": {"konnectivity": {}},
            },
            {
                "certificates": {"ca": {"checksum": "abc"}},
                "addons": {"konnectivity": {"certificate": {"checksum": "def"}}},
            }
        )
        await self.reconcile(tcp, deployment.DeploymentResource(self.client))
        tcp.spec.addons.konnectivity = None
        tcp.spec.control_plane.deployment.additional_metadata.labels = {}

        await self.reconcile(tcp, deployment.DeploymentResource(self.client))

        obj = self.store.get("deployments", "tcp1", "tenant1")
        metadata = obj["spec"]["template"]["metadata"]
        self.assertEqual(metadata["annotations"], {"steward.butlerlabs.dev/checksum-ca": "abc"})
        self.assertNotIn("team", metadata["labels"])

    async def test_front_proxy_ca_is_mounted(self):
        tcp = self.make_tcp(certificates = {"frontProxyCa": {"checksum": "fp"}})

        await self.reconcile(tcp, deployment.DeploymentResource(self.client))

        obj = self.store.get("deployments", "tcp1", "tenant1")
        pod = obj["spec"]["template"]
        apiserver = next(c for c in pod["spec"]["containers"] if c["name"] == "kube-apiserver")
        self.assertIn(
            "--requestheader-client-ca-file=/etc/kubernetes/pki/front-proxy-ca.crt",
            apiserver["command"]
        )
        pki_volume = next(v for v in pod["spec"]["volumes"] if v["name"] == "pki")
        self.assertIn(
            "tcp1-front-proxy-ca",
            [source["secret"]["name"] for source in pki_volume["projected"]["sources"]]
        )
        self.assertEqual(
            pod["metadata"]["annotations"]["steward.butlerlabs.dev/checksum-front-proxy-ca"],
            "fp"
        )

    async def test_trustd_uses_default_port(self):
        tcp = fakes.make_tcp(
            {
                "networkProfile": {"address": "192.0.2.10"},
                "addons": {"workerBootstrap": {"provider": "talos", "talos": {}}},
            }
        )

        await self.reconcile(tcp, deployment.DeploymentResource(self.client))

        obj = self.store.get("deployments", "tcp1", "tenant1")
        containers = obj["spec"]["template"]["spec"]["containers"]
        trustd = next(c for c in containers if c["name"] == "steward-trustd")
        self.assertEqual(trustd["ports"][0]["containerPort"], 50001)
        self.assertIn({"name": "TRUSTD_PORT", "value": "50001"}, trustd["env"])

    async def test_ready_records_version(self):
        tcp = self.make_tcp()
        await self.reconcile(tcp, deployment.DeploymentResource(self.client))
        self.set_deployment_status(replicas = 1, readyReplicas = 1, updatedReplicas = 1)

        run = await self.reconcile(tcp, deployment.DeploymentResource(self.client))

        self.assertTrue(run.status_changed)
        self.assertEqual(tcp.status.kubernetes.version.status, KubernetesVersionStatus.READY)
        self.assertEqual(tcp.status.kubernetes.version.version, "v1.30.2")
        self.assertEqual(tcp.status.kubernetes.deployment.ready_replicas, 1)
