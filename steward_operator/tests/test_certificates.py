import unittest

from steward_operator import checksum, pki
from steward_operator.errors import CertificateError, ConfigurationIncompleteError
from steward_operator.orchestrator import ResourceOrchestrator
from steward_operator.resources import certificates, kubeconfig, worker_bootstrap
from steward_operator.tests import fakes
from steward_operator.utils import b64encode, secret_data


STATIC_SPEC = {"networkProfile": {"address": "192.0.2.10"}}


class CertificateTestCase(unittest.IsolatedAsyncioTestCase):
    maxDiff = None

    async def asyncSetUp(self):
        self.client = fakes.FakeClient()
        self.store = self.client.store

    async def reconcile(self, tcp, *resources):
        return await ResourceOrchestrator(list(resources)).run(tcp)

    def secret(self, tcp, name):
        return self.store.get("secrets", name, tcp.metadata.namespace)

    def request_rotation(self, tcp, name):
        key = self.store.key("secrets", tcp.metadata.namespace, name)
        annotations = self.store.objects[key]["metadata"].setdefault("annotations", {})
        annotations[checksum.ROTATE_ANNOTATION] = ""


class TestCACertificate(CertificateTestCase):
    async def test_generates_ca(self):
        tcp = fakes.make_tcp(STATIC_SPEC)

        run = await self.reconcile(tcp, certificates.CACertificateResource(self.client))

        self.assertTrue(run.status_changed)
        self.assertEqual(run.results, {"ca": "created"})
        secret = self.secret(tcp, "tcp1-ca")
        data = secret_data(secret)
        self.assertEqual(tcp.status.certificates.ca.secret_name, "tcp1-ca")
        self.assertEqual(tcp.status.certificates.ca.checksum, checksum.calculate_checksum(data))
        self.assertEqual(secret["metadata"]["ownerReferences"][0]["uid"], tcp.metadata.uid)
        self.assertTrue(
            pki.check_key_pair(
                pki.load_certificate(data["ca.crt"]),
                pki.load_private_key(data["ca.key"])
            )
        )

    async def test_second_run_is_noop(self):
        tcp = fakes.make_tcp(STATIC_SPEC)
        await self.reconcile(tcp, certificates.CACertificateResource(self.client))
        before = self.secret(tcp, "tcp1-ca")

        run = await self.reconcile(tcp, certificates.CACertificateResource(self.client))

        self.assertFalse(run.status_changed)
        self.assertEqual(run.results, {"ca": "unchanged"})
        self.assertEqual(self.secret(tcp, "tcp1-ca"), before)

    async def test_rotation_regenerates_ca(self):
        tcp = fakes.make_tcp(STATIC_SPEC)
        await self.reconcile(tcp, certificates.CACertificateResource(self.client))
        previous = tcp.status.certificates.ca.checksum
        self.request_rotation(tcp, "tcp1-ca")

        run = await self.reconcile(tcp, certificates.CACertificateResource(self.client))

        self.assertEqual(run.results, {"ca": "updated"})
        secret = self.secret(tcp, "tcp1-ca")
        annotations = secret["metadata"]["annotations"]
        self.assertNotIn(checksum.ROTATE_ANNOTATION, annotations)
        self.assertIn(checksum.LAST_ROTATION_ANNOTATION, annotations)
        self.assertNotEqual(tcp.status.certificates.ca.checksum, previous)
        self.assertEqual(
            tcp.status.certificates.ca.checksum,
            annotations[checksum.CHECKSUM_ANNOTATION]
        )

    async def test_malformed_ca_is_not_replaced(self):
        tcp = fakes.make_tcp(STATIC_SPEC)
        self.store.put(
            "secrets",
            {
                "metadata": {"name": "tcp1-ca", "namespace": "tenant1"},
                "data": {
                    "ca.crt": b64encode("not a certificate"),
                    "ca.key": b64encode("not a key"),
                },
            }
        )

        with self.assertRaises(CertificateError):
            await self.reconcile(tcp, certificates.CACertificateResource(self.client))

        data = secret_data(self.secret(tcp, "tcp1-ca"))
        self.assertEqual(data["ca.crt"], b"not a certificate")


class TestFrontProxyCACertificate(CertificateTestCase):
    async def test_generates_separate_ca(self):
        tcp = fakes.make_tcp(STATIC_SPEC)

        run = await self.reconcile(
            tcp,
            certificates.CACertificateResource(self.client),
            certificates.FrontProxyCACertificateResource(self.client)
        )

        self.assertEqual(run.results, {"ca": "created", "front-proxy-ca": "created"})
        data = secret_data(self.secret(tcp, "tcp1-front-proxy-ca"))
        self.assertEqual(set(data), {"front-proxy-ca.crt", "front-proxy-ca.key"})
        certificate = pki.load_certificate(data["front-proxy-ca.crt"])
        self.assertTrue(
            pki.check_key_pair(certificate, pki.load_private_key(data["front-proxy-ca.key"]))
        )
        self.assertEqual(
            certificate.subject.rfc4514_string(),
            "CN=front-proxy-ca"
        )
        ca = secret_data(self.secret(tcp, "tcp1-ca"))
        self.assertNotEqual(ca["ca.crt"], data["front-proxy-ca.crt"])
        self.assertEqual(
            tcp.status.certificates.front_proxy_ca.secret_name,
            "tcp1-front-proxy-ca"
        )
        self.assertEqual(
            tcp.status.certificates.front_proxy_ca.checksum,
            checksum.calculate_checksum(data)
        )

    async def test_second_run_is_noop(self):
        tcp = fakes.make_tcp(STATIC_SPEC)
        await self.reconcile(tcp, certificates.FrontProxyCACertificateResource(self.client))

        run = await self.reconcile(
            tcp,
            certificates.FrontProxyCACertificateResource(self.client)
        )

        self.assertFalse(run.status_changed)
        self.assertEqual(run.results, {"front-proxy-ca": "unchanged"})


class TestServiceAccountKey(CertificateTestCase):
    async def test_generates_matching_key_pair(self):
        tcp = fakes.make_tcp(STATIC_SPEC)

        await self.reconcile(tcp, certificates.ServiceAccountKeyResource(self.client))

        data = secret_data(self.secret(tcp, "tcp1-sa-certificate"))
        self.assertEqual(pki.validate_service_account_key(data["sa.key"], data["sa.pub"]), [])
        self.assertEqual(
            tcp.status.certificates.service_account.secret_name,
            "tcp1-sa-certificate"
        )

    async def test_mismatched_key_pair_is_regenerated(self):
        tcp = fakes.make_tcp(STATIC_SPEC)
        await self.reconcile(tcp, certificates.ServiceAccountKeyResource(self.client))
        _, other_public = pki.generate_service_account_key()
        key = self.store.key("secrets", "tenant1", "tcp1-sa-certificate")
        self.store.objects[key]["data"]["sa.pub"] = b64encode(other_public)

        run = await self.reconcile(tcp, certificates.ServiceAccountKeyResource(self.client))

        self.assertEqual(run.results, {"sa-certificate": "updated"})
        data = secret_data(self.secret(tcp, "tcp1-sa-certificate"))
        self.assertEqual(pki.validate_service_account_key(data["sa.key"], data["sa.pub"]), [])


class TestAPIServerCertificate(CertificateTestCase):
    def resources(self):
        return [
            certificates.CACertificateResource(self.client),
            certificates.APIServerCertificateResource(self.client, fakes.no_resolve),
        ]

    async def test_requires_ca(self):
        tcp = fakes.make_tcp(STATIC_SPEC)

        with self.assertRaises(ConfigurationIncompleteError):
            await self.reconcile(
                tcp,
                certificates.APIServerCertificateResource(self.client, fakes.no_resolve)
            )

    async def test_certificate_carries_required_sans(self):
        tcp = fakes.make_tcp(
            {"networkProfile": {"address": "192.0.2.10", "certSans": ["api.example.com"]}}
        )

        await self.reconcile(tcp, *self.resources())

        data = secret_data(self.secret(tcp, "tcp1-api-server-certificate"))
        ips, dns_names = pki.certificate_sans(data["apiserver.crt"])
        self.assertTrue({"192.0.2.10", "127.0.0.1", "10.96.0.1"} <= ips)
        self.assertTrue(
            {
                "api.example.com",
                "kubernetes.default.svc.cluster.local",
                "tcp1.tenant1.svc",
            } <= dns_names
        )

    async def test_new_san_reissues_certificate(self):
        tcp = fakes.make_tcp(STATIC_SPEC)
        await self.reconcile(tcp, *self.resources())
        previous = tcp.status.certificates.apiserver.checksum
        tcp.spec.network_profile.cert_sans = ["api.example.com"]

        run = await self.reconcile(tcp, *self.resources())

        self.assertEqual(run.results["api-server-certificate"], "updated")
        self.assertNotEqual(tcp.status.certificates.apiserver.checksum, previous)
        data = secret_data(self.secret(tcp, "tcp1-api-server-certificate"))
        _, dns_names = pki.certificate_sans(data["apiserver.crt"])
        self.assertIn("api.example.com", dns_names)

    async def test_extra_sans_are_tolerated(self):
        tcp = fakes.make_tcp(
            {"networkProfile": {"address": "192.0.2.10", "certSans": ["api.example.com"]}}
        )
        await self.reconcile(tcp, *self.resources())
        previous = tcp.status.certificates.apiserver.checksum
        tcp.spec.network_profile.cert_sans = []

        run = await self.reconcile(tcp, *self.resources())

        self.assertEqual(run.results["api-server-certificate"], "unchanged")
        self.assertEqual(tcp.status.certificates.apiserver.checksum, previous)

    async def test_ca_rotation_reissues_certificate(self):
        tcp = fakes.make_tcp(STATIC_SPEC)
        await self.reconcile(tcp, *self.resources())
        self.request_rotation(tcp, "tcp1-ca")

        run = await self.reconcile(tcp, *self.resources())

        self.assertEqual(run.results, {"ca": "updated", "api-server-certificate": "updated"})
        ca = secret_data(self.secret(tcp, "tcp1-ca"))
        data = secret_data(self.secret(tcp, "tcp1-api-server-certificate"))
        self.assertTrue(
            pki.is_signed_by(
                pki.load_certificate(data["apiserver.crt"]),
                pki.load_certificate(ca["ca.crt"])
            )
        )


class TestAdminKubeconfig(CertificateTestCase):
    async def test_kubeconfig_points_at_service(self):
        tcp = fakes.make_tcp(STATIC_SPEC)

        await self.reconcile(
            tcp,
            certificates.CACertificateResource(self.client),
            kubeconfig.AdminKubeconfigResource(self.client)
        )

        data = secret_data(self.secret(tcp, "tcp1-admin-kubeconfig"))
        server, ca_data, certificate, _ = kubeconfig.parse_kubeconfig(data["admin.conf"])
        ca = secret_data(self.secret(tcp, "tcp1-ca"))
        self.assertEqual(server, "https://tcp1.tenant1.svc:6443")
        self.assertEqual(ca_data, ca["ca.crt"])
        self.assertEqual(pki.certificate_sans(certificate), (set(), set()))
        self.assertEqual(tcp.status.kubeconfig.secret_name, "tcp1-admin-kubeconfig")


class TestWorkerBootstrapCredentials(CertificateTestCase):
    def make_tcp(self, cert_sans = None):
        return fakes.make_tcp(
            {
                **STATIC_SPEC,
                "addons": {
                    "workerBootstrap": {
                        "provider": "talos",
                        "talos": {"certSans": cert_sans or []},
                    },
                },
            }
        )

    async def reconcile_credentials(self, tcp):
        return await self.reconcile(
            tcp,
            worker_bootstrap.WorkerBootstrapCredentialsResource(self.client, fakes.no_resolve)
        )

    def credentials(self, tcp):
        return secret_data(self.secret(tcp, "tcp1-trustd-creds"))

    async def test_generates_credentials(self):
        tcp = self.make_tcp()

        await self.reconcile_credentials(tcp)

        data = self.credentials(tcp)
        self.assertTrue(data["token"].startswith(b"butler."))
        ips, _ = pki.certificate_sans(data["server.crt"])
        self.assertEqual(ips, {"192.0.2.10"})
        status = tcp.status.addons.worker_bootstrap
        self.assertTrue(status.enabled)
        self.assertEqual(status.provider, "talos")
        self.assertEqual(status.credentials.secret_name, "tcp1-trustd-creds")
        self.assertEqual(status.endpoint, "192.0.2.10:50001")

    async def test_san_change_preserves_ca(self):
        tcp = self.make_tcp()
        await self.reconcile_credentials(tcp)
        before = self.credentials(tcp)

        tcp = self.make_tcp(["trustd.example.com"])
        run = await self.reconcile_credentials(tcp)

        after = self.credentials(tcp)
        self.assertEqual(run.results, {"worker-bootstrap-credentials": "updated"})
        self.assertEqual(pki.fingerprint(after["os-ca.crt"]), pki.fingerprint(before["os-ca.crt"]))
        self.assertEqual(after["token"], before["token"])
        self.assertNotEqual(after["server.crt"], before["server.crt"])
        _, dns_names = pki.certificate_sans(after["server.crt"])
        self.assertEqual(dns_names, {"trustd.example.com"})

    async def test_rotation_keeps_token(self):
        tcp = self.make_tcp()
        await self.reconcile_credentials(tcp)
        before = self.credentials(tcp)
        self.request_rotation(tcp, "tcp1-trustd-creds")

        await self.reconcile_credentials(tcp)

        after = self.credentials(tcp)
        self.assertNotEqual(pki.fingerprint(after["os-ca.crt"]), pki.fingerprint(before["os-ca.crt"]))
        self.assertEqual(after["token"], before["token"])
        annotations = self.secret(tcp, "tcp1-trustd-creds")["metadata"]["annotations"]
        self.assertIn(checksum.LAST_ROTATION_ANNOTATION, annotations)
