import os
from datetime import datetime, timedelta, timezone

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

NOW = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def _name(common_name):
    return x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])


def _pem(cert):
    return cert.public_bytes(serialization.Encoding.PEM)


def make_certificate(domain, not_after, issuer=None, serial=None):
    """Return ``(cert, key)``; signed by ``issuer=(cert, key)`` or self-signed."""
    key = ec.generate_private_key(ec.SECP256R1())
    issuer_cert, issuer_key = issuer if issuer else (None, key)
    builder = (
        x509.CertificateBuilder()
        .subject_name(_name(domain))
        .issuer_name(issuer_cert.subject if issuer_cert else _name(domain))
        .public_key(key.public_key())
        .serial_number(serial or x509.random_serial_number())
        .not_valid_before(NOW - timedelta(days=60))
        .not_valid_after(not_after)
    )
    if issuer is None:
        builder = builder.add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
    return builder.sign(issuer_key, hashes.SHA256()), key


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def ca():
    return make_certificate("Test Intermediate", NOW + timedelta(days=3650))


@pytest.fixture
def letsencrypt_dir(tmp_path):
    path = tmp_path / "letsencrypt"
    path.mkdir()
    return str(path)


@pytest.fixture
def install_certificate(letsencrypt_dir, ca):
    """Write a certbot-style live/<domain> directory expiring ``days`` after NOW."""

    def install(domain, days=60, hours=1):
        cert, key = make_certificate(domain, NOW + timedelta(days=days, hours=hours), issuer=ca)
        live = os.path.join(letsencrypt_dir, "live", domain)
        os.makedirs(live, exist_ok=True)
        key_pem = key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
        files = {
            "cert.pem": _pem(cert),
            "privkey.pem": key_pem,
            "fullchain.pem": _pem(cert) + _pem(ca[0]),
        }
        for filename, content in files.items():
            with open(os.path.join(live, filename), "wb") as f:
                f.write(content)
        return cert

    return install


class InMemoryObjectStore:
    """ObjectStore stand-in keeping objects in a dict, in write order."""

    def __init__(self, bucket="certs-bucket"):
        self.bucket = bucket
        self.objects = {}
        self.writes = []

    def put(self, key, body, metadata=None, content_type=None):
        self.objects[key] = (body, dict(metadata or {}))
        self.writes.append(key)

    def get(self, key):
        return self.objects.get(key)

    def get_text(self, key):
        found = self.get(key)
        return None if found is None else found[0].decode("utf-8")

    def exists(self, key):
        return key in self.objects


@pytest.fixture
def object_store():
    return InMemoryObjectStore()
