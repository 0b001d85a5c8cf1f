import dataclasses
import datetime as dt
import ipaddress
import secrets

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ed25519, rsa
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    PublicFormat,
    load_pem_private_key,
)
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from .errors import CertificateError


#: Allowance for clock skew between the operator and the consumers of certificates
CLOCK_SKEW = dt.timedelta(hours=1)
CA_VALIDITY = dt.timedelta(days=365 * 10)
LEAF_VALIDITY = dt.timedelta(days=365)

KEY_TYPE_RSA = "rsa"
KEY_TYPE_ED25519 = "ed25519"


@dataclasses.dataclass(frozen=True)
class CertificatePrivateKeyPair:
    """
    A PEM-encoded certificate and private key, with an optional chain.
    """

    certificate: bytes
    private_key: bytes
    #: The certificate followed by its issuer, for servers that present a chain
    chain: bytes | None = None


@dataclasses.dataclass(frozen=True)
class TrustBootstrapCredentials:
    """
    Credentials for the service that worker nodes use to bootstrap trust.
    """

    ca_certificate: bytes
    ca_private_key: bytes
    server_chain: bytes
    server_private_key: bytes
    token: str


def _now():
    return dt.datetime.now(dt.timezone.utc)


def _generate_private_key(key_type):
    if key_type == KEY_TYPE_ED25519:
        return ed25519.Ed25519PrivateKey.generate()
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def _signature_hash(private_key):
    # Ed25519 keys have a built-in hash and must be given None
    if isinstance(private_key, ed25519.Ed25519PrivateKey):
        return None
    return hashes.SHA256()


def _encode_key(private_key):
    return private_key.private_bytes(Encoding.PEM, PrivateFormat.PKCS8, NoEncryption())


def _name(common_name, organization = None):
    attributes = []
    if organization:
        attributes.append(x509.NameAttribute(NameOID.ORGANIZATION_NAME, organization))
    attributes.append(x509.NameAttribute(NameOID.COMMON_NAME, common_name))
    return x509.Name(attributes)


def load_certificate(pem):
    """
    Loads a PEM-encoded certificate, raising CertificateError if it is malformed.

    When given a chain, the first certificate in the chain is returned.
    """
    if not pem:
        raise CertificateError("certificate is empty")
    try:
        return x509.load_pem_x509_certificates(pem)[0]
    except ValueError as exc:
        raise CertificateError(f"certificate is not valid PEM: {exc}") from exc


def load_private_key(pem):
    """
    Loads a PEM-encoded private key, raising CertificateError if it is malformed.
    """
    if not pem:
        raise CertificateError("private key is empty")
    try:
        return load_pem_private_key(pem, password=None)
    except (ValueError, TypeError) as exc:
        raise CertificateError(f"private key is not valid PEM: {exc}") from exc


def generate_ca(common_name, organization = None, key_type = KEY_TYPE_RSA):
    """
    Generates a self-signed CA certificate and private key.
    """
    private_key = _generate_private_key(key_type)
    subject = _name(common_name, organization)
    now = _now()
    certificate = (
        x509.CertificateBuilder()
            .subject_name(subject)
            .issuer_name(subject)
            .public_key(private_key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - CLOCK_SKEW)
            .not_valid_after(now + CA_VALIDITY)
            .add_extension(x509.BasicConstraints(ca=True, path_length=1), critical=True)
            .add_extension(
                x509.KeyUsage(
                    digital_signature=False,
                    content_commitment=False,
                    key_encipherment=False,
                    data_encipherment=False,
                    key_agreement=False,
                    key_cert_sign=True,
                    crl_sign=True,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
            .add_extension(
                x509.SubjectKeyIdentifier.from_public_key(private_key.public_key()),
                critical=False,
            )
            .sign(private_key, _signature_hash(private_key))
    )
    return CertificatePrivateKeyPair(
        certificate=certificate.public_bytes(Encoding.PEM),
        private_key=_encode_key(private_key),
    )


def generate_leaf(
    ca,
    common_name,
    organization = None,
    ip_addresses = (),
    dns_names = (),
    client = False,
    key_type = None,
    include_chain = False,
):
    """
    Generates a certificate and private key signed by the given CA.

    Server certificates carry the given IP and DNS SANs. Client certificates carry no
    SANs. The key type defaults to the type of the CA key.
    """
    ca_certificate = load_certificate(ca.certificate)
    ca_key = load_private_key(ca.private_key)
    if key_type is None:
        key_type = (
            KEY_TYPE_ED25519
            if isinstance(ca_key, ed25519.Ed25519PrivateKey)
            else KEY_TYPE_RSA
        )
    private_key = _generate_private_key(key_type)
    now = _now()
    builder = (
        x509.CertificateBuilder()
            .subject_name(_name(common_name, organization))
            .issuer_name(ca_certificate.subject)
            .public_key(private_key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - CLOCK_SKEW)
            .not_valid_after(now + LEAF_VALIDITY)
            .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    content_commitment=False,
                    key_encipherment=key_type == KEY_TYPE_RSA,
                    data_encipherment=False,
                    key_agreement=False,
                    key_cert_sign=False,
                    crl_sign=False,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
            .add_extension(
                x509.ExtendedKeyUsage(
                    [
                        ExtendedKeyUsageOID.CLIENT_AUTH
                        if client
                        else ExtendedKeyUsageOID.SERVER_AUTH
                    ]
                ),
                critical=False,
            )
            .add_extension(
                x509.AuthorityKeyIdentifier.from_issuer_public_key(ca_key.public_key()),
                critical=False,
            )
    )
    if not client:
        names = [x509.DNSName(name) for name in sorted(set(dns_names))]
        names.extend(
            x509.IPAddress(ip)
            for ip in sorted(
                {ipaddress.ip_address(ip) for ip in ip_addresses},
                key=lambda ip: (ip.version, int(ip))
            )
        )
        if names:
            builder = builder.add_extension(
                x509.SubjectAlternativeName(names),
                critical=False,
            )
    certificate = builder.sign(ca_key, _signature_hash(ca_key)).public_bytes(Encoding.PEM)
    return CertificatePrivateKeyPair(
        certificate=certificate,
        private_key=_encode_key(private_key),
        chain=certificate + ca.certificate if include_chain else None,
    )


def fingerprint(pem):
    """
    Returns the SHA256 fingerprint of a PEM-encoded certificate as a hex string.
    """
    return load_certificate(pem).fingerprint(hashes.SHA256()).hex()


def certificate_sans(pem):
    """
    Returns a tuple of (IP addresses, DNS names) from the SANs of the certificate.

    IP addresses are returned in their canonical string form.
    """
    certificate = load_certificate(pem)
    try:
        extension = certificate.extensions.get_extension_for_class(
            x509.SubjectAlternativeName
        )
    except x509.ExtensionNotFound:
        return set(), set()
    return (
        {str(ip) for ip in extension.value.get_values_for_type(x509.IPAddress)},
        set(extension.value.get_values_for_type(x509.DNSName)),
    )


def normalise_ips(ip_addresses):
    """
    Returns the canonical string form of the given IP addresses as a set.
    """
    return {str(ipaddress.ip_address(ip)) for ip in ip_addresses}


def check_key_pair(certificate, private_key):
    """
    Returns true if the private key belongs to the certificate.
    """
    def public_bytes(key):
        return key.public_bytes(Encoding.DER, PublicFormat.SubjectPublicKeyInfo)
    return public_bytes(certificate.public_key()) == public_bytes(private_key.public_key())


def is_signed_by(certificate, ca_certificate):
    """
    Returns true if the certificate was issued by the given CA certificate.
    """
    try:
        certificate.verify_directly_issued_by(ca_certificate)
    except (ValueError, TypeError, InvalidSignature):
        return False
    else:
        return True


def is_expiring(certificate, threshold):
    """
    Returns true if the certificate expires within the given timedelta.
    """
    return certificate.not_valid_after_utc - _now() <= threshold


def has_extended_usage(certificate, usage):
    """
    Returns true if the certificate permits the given extended key usage.
    """
    try:
        extension = certificate.extensions.get_extension_for_class(x509.ExtendedKeyUsage)
    except x509.ExtensionNotFound:
        return False
    return usage in extension.value


def validate_certificate(
    certificate_pem,
    private_key_pem,
    threshold,
    ca_certificate_pem = None,
    ip_addresses = (),
    dns_names = (),
    usage = None,
):
    """
    Checks a certificate and private key and returns a list of problems with them.

    An empty list means that the pair is valid. The pair is checked for a matching
    key, that it was issued by the CA (when given), that it is not about to expire,
    that it permits the extended usage (when given) and that its SANs are a superset
    of the required SANs.
    """
    try:
        certificate = load_certificate(certificate_pem)
        private_key = load_private_key(private_key_pem)
    except CertificateError as exc:
        return [str(exc)]
    problems = []
    if not check_key_pair(certificate, private_key):
        problems.append("private key does not match certificate")
    if ca_certificate_pem is not None:
        try:
            ca_certificate = load_certificate(ca_certificate_pem)
        except CertificateError as exc:
            problems.append(f"CA {exc}")
        else:
            if not is_signed_by(certificate, ca_certificate):
                problems.append("certificate is not signed by the CA")
    if is_expiring(certificate, threshold):
        problems.append("certificate is expiring")
    if usage is not None and not has_extended_usage(certificate, usage):
        problems.append("certificate does not permit the required usage")
    current_ips, current_dns = certificate_sans(certificate_pem)
    missing = (normalise_ips(ip_addresses) - current_ips) | (set(dns_names) - current_dns)
    if missing:
        problems.append(f"certificate is missing SANs: {', '.join(sorted(missing))}")
    return problems


def generate_service_account_key():
    """
    Generates a key pair for signing service account tokens.

    Returns a tuple of (private key, public key), both PEM-encoded.
    """
    private_key = _generate_private_key(KEY_TYPE_RSA)
    public_key = private_key.public_key().public_bytes(
        Encoding.PEM,
        PublicFormat.SubjectPublicKeyInfo
    )
    return _encode_key(private_key), public_key


def validate_service_account_key(private_key_pem, public_key_pem):
    """
    Returns a list of problems with a service account key pair.
    """
    try:
        private_key = load_private_key(private_key_pem)
    except CertificateError as exc:
        return [str(exc)]
    expected = private_key.public_key().public_bytes(
        Encoding.PEM,
        PublicFormat.SubjectPublicKeyInfo
    )
    if expected != public_key_pem:
        return ["public key does not match private key"]
    return []


def generate_token(prefix):
    """
    Returns a new bearer token of the form <prefix>.<32 hex characters>.
    """
    return f"{prefix}.{secrets.token_hex(16)}"


def generate_trust_bootstrap_credentials(
    cluster_name,
    token_prefix,
    ip_addresses = (),
    dns_names = (),
):
    """
    Generates a new trust bootstrap CA, server certificate and token.
    """
    ca = generate_ca(
        f"{cluster_name} OS CA",
        organization="steward",
        key_type=KEY_TYPE_ED25519,
    )
    server = _generate_trust_bootstrap_server(ca, ip_addresses, dns_names)
    return TrustBootstrapCredentials(
        ca_certificate=ca.certificate,
        ca_private_key=ca.private_key,
        server_chain=server.chain,
        server_private_key=server.private_key,
        token=generate_token(token_prefix),
    )


def _generate_trust_bootstrap_server(ca, ip_addresses, dns_names):
    return generate_leaf(
        ca,
        "steward-trustd",
        organization="steward",
        ip_addresses=ip_addresses,
        dns_names=dns_names,
        key_type=KEY_TYPE_ED25519,
        include_chain=True,
    )


def regenerate_trust_bootstrap_server(
    ca_certificate,
    ca_private_key,
    ip_addresses = (),
    dns_names = (),
):
    """
    Issues a new trust bootstrap server certificate from the existing CA.

    Returns a tuple of (chain, private key).
    """
    ca = CertificatePrivateKeyPair(certificate=ca_certificate, private_key=ca_private_key)
    if not isinstance(load_private_key(ca_private_key), ed25519.Ed25519PrivateKey):
        raise CertificateError("trust bootstrap CA key is not an Ed25519 key")
    server = _generate_trust_bootstrap_server(ca, ip_addresses, dns_names)
    return server.chain, server.private_key


def sans_equal(certificate_pem, ip_addresses, dns_names):
    """
    Returns true if the SANs of the certificate are exactly the given SANs.
    """
    current_ips, current_dns = certificate_sans(certificate_pem)
    return current_ips == normalise_ips(ip_addresses) and current_dns == set(dns_names)


def csr_ip_addresses(csr_pem):
    """
    Returns the IP address SANs requested by a PEM-encoded certificate signing request.
    """
    try:
        request = x509.load_pem_x509_csr(csr_pem)
    except ValueError as exc:
        raise CertificateError(f"certificate request is not valid PEM: {exc}") from exc
    try:
        extension = request.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    except x509.ExtensionNotFound:
        return []
    return extension.value.get_values_for_type(x509.IPAddress)
