import datetime

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import ExtensionOID, NameOID


def make_name(cn):
    return x509.Name([
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "ksbuilder tests"),
        x509.NameAttribute(NameOID.COMMON_NAME, cn),
    ])


def make_cert(subject_cn, issuer_cn=None, *, ca, key=None, signing_key=None):
    """Mint a certificate. ``issuer_cn`` defaults to the subject (self-issued)."""
    key = key or ec.generate_private_key(ec.SECP256R1())
    signing_key = signing_key or key
    now = datetime.datetime.now(datetime.timezone.utc)
    builder = (
        x509.CertificateBuilder()
        .subject_name(make_name(subject_cn))
        .issuer_name(make_name(issuer_cn or subject_cn))
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=30))
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
    )
    if ca is not None:
        builder = builder.add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
    return builder.sign(signing_key, hashes.SHA256())


def cert_pem(cert):
    return cert.public_bytes(serialization.Encoding.PEM)


def key_pem(key, fmt=serialization.PrivateFormat.PKCS8):
    return key.private_bytes(serialization.Encoding.PEM, fmt, serialization.NoEncryption())


@pytest.fixture(scope="session")
def root_key():
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture(scope="session")
def root_cert(root_key):
    return make_cert("Test Root CA", ca=True, key=root_key)


@pytest.fixture(scope="session")
def intermediate_key():
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture(scope="session")
def intermediate_cert(intermediate_key, root_key):
    return make_cert("Test Intermediate CA", "Test Root CA", ca=True,
                     key=intermediate_key, signing_key=root_key)


@pytest.fixture(scope="session")
def leaf_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def leaf_cert(leaf_key, intermediate_key):
    return make_cert("leaf.example.test", "Test Intermediate CA", ca=False,
                     key=leaf_key, signing_key=intermediate_key)


@pytest.fixture(scope="session")
def other_leaf_cert(intermediate_key):
    return make_cert("other.example.test", "Test Intermediate CA", ca=False,
                     signing_key=intermediate_key)


@pytest.fixture
def cert_dir(tmp_path, root_cert, intermediate_cert, leaf_key, leaf_cert):
    """Directory with a root, an intermediate, a PKCS#8 key and its leaf certificate."""
    d = tmp_path / "certs"
    d.mkdir()
    (d / "a.crt").write_bytes(cert_pem(root_cert))
    (d / "b.pem").write_bytes(cert_pem(intermediate_cert))
    (d / "c.key").write_bytes(key_pem(leaf_key))
    (d / "d.crt").write_bytes(cert_pem(leaf_cert))
    return d


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in ("KSBUILDER_OUT", "KSBUILDER_PASSWORD", "KSBUILDER_DIR",
                "KSBUILDER_FILE", "KSBUILDER_RECURSIVE"):
        monkeypatch.delenv(var, raising=False)


def make_broken_ca(key):
    """Self-issued certificate whose BasicConstraints value is not a SEQUENCE."""
    now = datetime.datetime.now(datetime.timezone.utc)
    return (
        x509.CertificateBuilder()
        .subject_name(make_name("Broken CA"))
        .issuer_name(make_name("Broken CA"))
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + datetime.timedelta(days=1))
        .add_extension(x509.UnrecognizedExtension(ExtensionOID.BASIC_CONSTRAINTS, b"\x04\x01\xff"),
                       critical=True)
        .sign(key, hashes.SHA256())
    )
