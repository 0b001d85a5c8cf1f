import datetime
import os
import tempfile

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID


def _write_test_kubeconfig():
    """
    steward_operator.operator builds an easykube client from the environment at
    import time, so point it at a throwaway kubeconfig when none is configured.
    """
    directory = tempfile.mkdtemp(prefix = "steward-operator-tests-")
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "test")])
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now)
            .not_valid_after(now + datetime.timedelta(days = 1))
            .sign(key, hashes.SHA256())
    )
    cert_path = os.path.join(directory, "client.crt")
    key_path = os.path.join(directory, "client.key")
    with open(cert_path, "wb") as fh:
        fh.write(cert.public_bytes(serialization.Encoding.PEM))
    with open(key_path, "wb") as fh:
        fh.write(
            key.private_bytes(
                serialization.Encoding.PEM,
                serialization.PrivateFormat.PKCS8,
                serialization.NoEncryption(),
            )
        )
    kubeconfig_path = os.path.join(directory, "config")
    with open(kubeconfig_path, "w") as fh:
        fh.write(
            "apiVersion: v1\n"
            "kind: Config\n"
            "clusters:\n"
            "- name: test\n"
            "  cluster:\n"
            "    server: https://127.0.0.1:6443\n"
            "    insecure-skip-tls-verify: true\n"
            "users:\n"
            "- name: test\n"
            "  user:\n"
            f"    client-certificate: {cert_path}\n"
            f"    client-key: {key_path}\n"
            "contexts:\n"
            "- name: test\n"
            "  context:\n"
            "    cluster: test\n"
            "    user: test\n"
            "current-context: test\n"
        )
    return kubeconfig_path


if "KUBECONFIG" not in os.environ:
    os.environ["KUBECONFIG"] = _write_test_kubeconfig()
