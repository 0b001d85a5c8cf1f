import datetime as dt
import logging

from cryptography.x509.oid import ExtendedKeyUsageOID

from .. import checksum, pki, sans
from ..config import settings
from ..errors import CertificateError, ConfigurationIncompleteError
from ..upsert import fetch_or_none
from ..utils import b64encode, secret_data, tenant_prefixed_name
from .base import ManagedObjectResource, fetch_control_plane_service

logger = logging.getLogger(__name__)


#: Suffixes for the names of the secrets managed by this module
CA_SUFFIX = "ca"
FRONT_PROXY_CA_SUFFIX = "front-proxy-ca"
SERVICE_ACCOUNT_SUFFIX = "sa-certificate"
APISERVER_SUFFIX = "api-server-certificate"
KONNECTIVITY_SUFFIX = "konnectivity-certificate"

CA_CERTIFICATE_KEY = "ca.crt"
CA_PRIVATE_KEY_KEY = "ca.key"
FRONT_PROXY_CA_CERTIFICATE_KEY = "front-proxy-ca.crt"
FRONT_PROXY_CA_PRIVATE_KEY_KEY = "front-proxy-ca.key"


async def fetch_ca(client, tcp):
    """
    Returns the CA for the tenant control plane as a CertificatePrivateKeyPair.

    Raises ConfigurationIncompleteError if the CA has not been generated yet.
    """
    eksecrets = await client.api("v1").resource("secrets")
    secret = await fetch_or_none(
        eksecrets,
        tenant_prefixed_name(tcp, CA_SUFFIX),
        namespace = tcp.metadata.namespace
    )
    data = secret_data(secret or {})
    if not data.get(CA_CERTIFICATE_KEY) or not data.get(CA_PRIVATE_KEY_KEY):
        raise ConfigurationIncompleteError("CA has not been generated yet")
    return pki.CertificatePrivateKeyPair(
        certificate = data[CA_CERTIFICATE_KEY],
        private_key = data[CA_PRIVATE_KEY_KEY]
    )


class SecretContentResource(ManagedObjectResource):
    """
    Base class for resources that manage a secret of generated credentials.

    Existing content is reused while it passes validation. It is regenerated when
    validation fails, when the secret is missing or when a rotation is requested
    using the rotate annotation.
    """

    api_version = "v1"
    plural_name = "secrets"

    #: The suffix for the name of the secret
    suffix = None

    def get_object_name(self, tcp):
        return tenant_prefixed_name(tcp, self.suffix)

    def content_status(self, tcp):
        """
        Returns the status object that records the secret name and checksum.
        """
        raise NotImplementedError

    async def validate(self, tcp, data):
        """
        Returns a list of problems with the existing content of the secret.
        """
        raise NotImplementedError

    async def generate(self, tcp, data):
        """
        Returns new content for the secret as a dictionary of bytes.
        """
        raise NotImplementedError

    async def mutate(self, tcp, obj):
        self.set_metadata(tcp, obj)
        status = self.content_status(tcp)
        if checksum.should_revalidate(obj, status.checksum):
            problems = await self.validate(tcp, secret_data(obj))
            if not problems:
                return
            logger.info(
                "[%s] regenerating %s - %s",
                self.name,
                self.object_name,
                "; ".join(problems)
            )
        rotating = checksum.is_rotation_requested(obj)
        data = await self.generate(tcp, secret_data(obj))
        obj["type"] = "Opaque"
        obj["data"] = { key: b64encode(value) for key, value in data.items() }
        if rotating:
            logger.info("[%s] rotated %s", self.name, self.object_name)
            checksum.set_last_rotation_timestamp(obj)
        checksum.set_object_checksum(obj, data)

    def is_recorded(self, tcp):
        return bool(self.content_status(tcp).secret_name)

    def should_cleanup(self, tcp):
        return not self.enabled(tcp) and self.is_recorded(tcp)

    def should_status_be_updated(self, tcp):
        if not self.enabled(tcp):
            return self.is_recorded(tcp)
        status = self.content_status(tcp)
        return (
            status.secret_name != self.object_name or
            status.checksum != checksum.get_object_checksum(self.object)
        )

    async def update_status(self, tcp):
        status = self.content_status(tcp)
        if self.enabled(tcp):
            status.secret_name = self.object_name
            status.checksum = checksum.get_object_checksum(self.object)
            status.last_update = dt.datetime.now(dt.timezone.utc)
        else:
            status.secret_name = None
            status.checksum = None
            status.last_update = None


class CACertificateResource(SecretContentResource):
    """
    Manages the CA for the tenant control plane.

    The CA is never regenerated implicitly, since that would invalidate every
    credential issued by it. A CA that is close to expiry is reported and must be
    rotated explicitly.
    """

    name = "ca"
    suffix = CA_SUFFIX

    #: The keys in the secret for the certificate and private key
    certificate_key = CA_CERTIFICATE_KEY
    private_key_key = CA_PRIVATE_KEY_KEY
    #: The common name for the CA certificate
    common_name = "kubernetes"

    def content_status(self, tcp):
        return tcp.status.certificates.ca

    async def validate(self, tcp, data):
        if not data.get(self.certificate_key) and not data.get(self.private_key_key):
            return ["CA has not been generated"]
        try:
            certificate = pki.load_certificate(data.get(self.certificate_key))
            private_key = pki.load_private_key(data.get(self.private_key_key))
        except CertificateError as exc:
            raise CertificateError(
                f"CA in {self.object_name} is not usable: {exc}"
            ) from exc
        if not pki.check_key_pair(certificate, private_key):
            raise CertificateError(
                f"CA in {self.object_name} is not usable: "
                "private key does not match certificate"
            )
        threshold = dt.timedelta(seconds = settings.cert_expiration_threshold)
        if pki.is_expiring(certificate, threshold):
            logger.warning(
                "[%s] CA in %s is expiring - set the %s annotation to rotate it",
                self.name,
                self.object_name,
                checksum.ROTATE_ANNOTATION
            )
        return []

    async def generate(self, tcp, data):
        ca = pki.generate_ca(self.common_name)
        return {
            self.certificate_key: ca.certificate,
            self.private_key_key: ca.private_key,
        }


class FrontProxyCACertificateResource(CACertificateResource):
    """
    Manages the CA that the API server trusts for requests forwarded by the
    aggregation layer.
    """

    name = "front-proxy-ca"
    suffix = FRONT_PROXY_CA_SUFFIX
    certificate_key = FRONT_PROXY_CA_CERTIFICATE_KEY
    private_key_key = FRONT_PROXY_CA_PRIVATE_KEY_KEY
    common_name = "front-proxy-ca"

    def content_status(self, tcp):
        return tcp.status.certificates.front_proxy_ca


class ServiceAccountKeyResource(SecretContentResource):
    """
    Manages the key pair that signs service account tokens in the tenant cluster.
    """

    name = "sa-certificate"
    suffix = SERVICE_ACCOUNT_SUFFIX

    PRIVATE_KEY_KEY = "sa.key"
    PUBLIC_KEY_KEY = "sa.pub"

    def content_status(self, tcp):
        return tcp.status.certificates.service_account

    async def validate(self, tcp, data):
        return pki.validate_service_account_key(
            data.get(self.PRIVATE_KEY_KEY),
            data.get(self.PUBLIC_KEY_KEY)
        )

    async def generate(self, tcp, data):
        private_key, public_key = pki.generate_service_account_key()
        return {
            self.PRIVATE_KEY_KEY: private_key,
            self.PUBLIC_KEY_KEY: public_key,
        }


class LeafCertificateResource(SecretContentResource):
    """
    Base class for server certificates that are issued by the tenant control plane CA.
    """

    #: The keys in the secret for the certificate and private key
    certificate_key = "tls.crt"
    private_key_key = "tls.key"
    #: The common name for the certificate
    common_name = None

    def __init__(self, client, resolver = sans.resolve_host):
        super().__init__(client)
        self.resolver = resolver

    async def required_sans(self, tcp, service):
        """
        Returns the SANs that the certificate must carry.
        """
        raise NotImplementedError

    async def validate(self, tcp, data):
        ca = await fetch_ca(self.client, tcp)
        service = await fetch_control_plane_service(self.client, tcp)
        required = await self.required_sans(tcp, service)
        return pki.validate_certificate(
            data.get(self.certificate_key),
            data.get(self.private_key_key),
            dt.timedelta(seconds = settings.cert_expiration_threshold),
            ca_certificate_pem = ca.certificate,
            ip_addresses = required.ip_addresses,
            dns_names = required.dns_names,
            usage = ExtendedKeyUsageOID.SERVER_AUTH
        )

    async def generate(self, tcp, data):
        ca = await fetch_ca(self.client, tcp)
        service = await fetch_control_plane_service(self.client, tcp)
        required = await self.required_sans(tcp, service)
        leaf = pki.generate_leaf(
            ca,
            self.common_name,
            ip_addresses = required.ip_addresses,
            dns_names = required.dns_names
        )
        return {
            self.certificate_key: leaf.certificate,
            self.private_key_key: leaf.private_key,
        }


class APIServerCertificateResource(LeafCertificateResource):
    """
    Manages the serving certificate for the API server.
    """

    name = "api-server-certificate"
    suffix = APISERVER_SUFFIX
    certificate_key = "apiserver.crt"
    private_key_key = "apiserver.key"
    common_name = "kube-apiserver"

    def content_status(self, tcp):
        return tcp.status.certificates.apiserver

    async def required_sans(self, tcp, service):
        return await sans.apiserver_sans(tcp, service, self.resolver)


class KonnectivityCertificateResource(LeafCertificateResource):
    """
    Manages the serving certificate for the Konnectivity server, when the addon is
    enabled.
    """

    name = "konnectivity-certificate"
    suffix = KONNECTIVITY_SUFFIX
    common_name = "konnectivity-server"

    def enabled(self, tcp):
        return tcp.spec.addons.konnectivity is not None

    def content_status(self, tcp):
        return tcp.status.addons.konnectivity.certificate

    def should_status_be_updated(self, tcp):
        return (
            tcp.status.addons.konnectivity.enabled != self.enabled(tcp) or
            super().should_status_be_updated(tcp)
        )

    async def required_sans(self, tcp, service):
        return sans.konnectivity_sans(tcp, service)

    async def update_status(self, tcp):
        await super().update_status(tcp)
        tcp.status.addons.konnectivity.enabled = self.enabled(tcp)
