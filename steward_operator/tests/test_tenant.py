import unittest
from unittest import mock

from steward_operator.errors import ConfigurationIncompleteError
from steward_operator.tenant import TenantClientFactory
from steward_operator.tests import fakes
from steward_operator.utils import b64encode


class TestTenantClientFactory(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.client = fakes.FakeClient()
        self.factory = TenantClientFactory(self.client)
        self.factory.make_client = mock.Mock(side_effect = lambda _: mock.AsyncMock())
        self.tcp = fakes.make_tcp()

    def store_kubeconfig(self, content):
        self.client.store.put(
            "secrets",
            {
                "metadata": {"name": "tcp1-admin-kubeconfig", "namespace": "tenant1"},
                "data": {"admin.conf": b64encode(content)},
            }
        )

    async def test_missing_kubeconfig(self):
        with self.assertRaises(ConfigurationIncompleteError):
            await self.factory.client_for(self.tcp)

    async def test_client_is_cached(self):
        self.store_kubeconfig("kubeconfig-1")

        first = await self.factory.client_for(self.tcp)
        second = await self.factory.client_for(self.tcp)

        self.assertIs(first, second)
        self.factory.make_client.assert_called_once_with(b"kubeconfig-1")

    async def test_client_is_recreated_when_kubeconfig_changes(self):
        self.store_kubeconfig("kubeconfig-1")
        first = await self.factory.client_for(self.tcp)
        self.store_kubeconfig("kubeconfig-2")

        second = await self.factory.client_for(self.tcp)

        self.assertIsNot(first, second)
        first.aclose.assert_awaited_once()

    async def test_aclose(self):
        self.store_kubeconfig("kubeconfig-1")
        tenant_client = await self.factory.client_for(self.tcp)

        await self.factory.aclose()

        tenant_client.aclose.assert_awaited_once()
