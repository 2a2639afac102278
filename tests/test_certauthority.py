import ipaddress
import os

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import padding
from cryptography.x509.oid import NameOID

from locketdb.certauthority import CertAuthority


def load_cert(path):
    with open(path, "rb") as handle:
        data = handle.read()
    assert data.startswith(b"-----BEGIN CERTIFICATE-----")
    return x509.load_pem_x509_certificate(data)


def load_key(path):
    with open(path, "rb") as handle:
        return serialization.load_pem_private_key(handle.read(), password=None)


def common_name(cert):
    return cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value


def verify_signed_by(cert, issuer):
    issuer.public_key().verify(
        cert.signature,
        cert.tbs_certificate_bytes,
        padding.PKCS1v15(),
        cert.signature_hash_algorithm,
    )


@pytest.fixture(scope="module")
def depot(tmp_path_factory):
    return tmp_path_factory.mktemp("depot")


@pytest.fixture(scope="module")
def authority(depot):
    return CertAuthority(str(depot), "some-name")


def test_creates_ca_cert_and_key_files(authority, depot):
    key_path, cert_path = authority.ca_and_key()
    assert os.path.isfile(key_path)
    assert os.path.isfile(cert_path)
    assert key_path == os.path.join(str(depot), "some-name.key")
    assert cert_path == os.path.join(str(depot), "some-name.crt")


def test_ca_certificate_has_common_name(authority):
    _, cert_path = authority.ca_and_key()
    cert = load_cert(cert_path)
    assert common_name(cert) == "some-name"
    constraints = cert.extensions.get_extension_for_class(x509.BasicConstraints).value
    assert constraints.ca is True


def test_ca_key_matches_ca_certificate(authority):
    key_path, cert_path = authority.ca_and_key()
    key = load_key(key_path)
    cert = load_cert(cert_path)
    assert key.public_key().public_numbers() == cert.public_key().public_numbers()


def test_generates_signed_host_certificate(authority, depot):
    key_path, cert_path = authority.generate_self_signed_cert_and_key(
        "some-component", ["some-component"], False
    )
    assert os.path.isfile(key_path)
    assert os.path.isfile(cert_path)
    assert os.path.dirname(cert_path) == str(depot)
    assert os.path.basename(key_path).startswith("some-component")

    cert = load_cert(cert_path)
    assert common_name(cert) == "some-component"
    assert load_key(key_path).public_key().public_numbers() == cert.public_key().public_numbers()

    sans = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    assert sans.get_values_for_type(x509.DNSName) == ["some-component"]
    assert sans.get_values_for_type(x509.IPAddress) == [ipaddress.ip_address("127.0.0.1")]

    constraints = cert.extensions.get_extension_for_class(x509.BasicConstraints).value
    assert constraints.ca is False

    ca_cert = load_cert(authority.ca_and_key()[1])
    assert cert.issuer == ca_cert.subject
    verify_signed_by(cert, ca_cert)


def test_generates_intermediate_certificate_authority(authority):
    key_path, cert_path = authority.generate_self_signed_cert_and_key(
        "some-intermediate", ["some-intermediate"], True
    )
    assert os.path.isfile(key_path)
    cert = load_cert(cert_path)
    assert common_name(cert) == "some-intermediate"
    constraints = cert.extensions.get_extension_for_class(x509.BasicConstraints).value
    assert constraints.ca is True
    verify_signed_by(cert, load_cert(authority.ca_and_key()[1]))


def test_generated_files_are_distinct(authority):
    first = authority.generate_self_signed_cert_and_key("some-component", ["some-component"], False)
    assert first[0] != first[1]
    assert load_cert(first[1]).serial_number != load_cert(authority.ca_and_key()[1]).serial_number


def test_invalid_depot_dir_fails(tmp_path):
    missing = tmp_path / "random"
    with pytest.raises(FileNotFoundError, match="No such file or directory"):
        CertAuthority(str(missing), "some-name")