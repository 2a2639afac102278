"""A throwaway certificate authority that writes keys and certificates to a depot."""

from __future__ import annotations

import ipaddress
import os
import tempfile
from datetime import datetime, timezone
from typing import Iterable

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

KEY_SIZE = 4096
_LOOPBACK = ipaddress.ip_address("127.0.0.1")


def _new_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=KEY_SIZE)


def _name(common_name: str) -> x509.Name:
    return x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])


def _one_year_later(moment: datetime) -> datetime:
    try:
        return moment.replace(year=moment.year + 1)
    except ValueError:
        return moment.replace(year=moment.year + 1, day=28)


def _key_usage(*, cert_sign: bool) -> x509.KeyUsage:
    return x509.KeyUsage(
        digital_signature=True,
        content_commitment=False,
        key_encipherment=not cert_sign,
        data_encipherment=False,
        key_agreement=False,
        key_cert_sign=cert_sign,
        crl_sign=cert_sign,
        encipher_only=False,
        decipher_only=False,
    )


def _builder(
    subject: x509.Name, issuer: x509.Name, key: rsa.RSAPrivateKey, issuer_key: rsa.RSAPrivateKey
) -> x509.CertificateBuilder:
    now = datetime.now(timezone.utc)
    return (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(_one_year_later(now))
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(issuer_key.public_key()),
            critical=False,
        )
    )


def _as_ca(builder: x509.CertificateBuilder) -> x509.CertificateBuilder:
    return builder.add_extension(
        x509.BasicConstraints(ca=True, path_length=None), critical=True
    ).add_extension(_key_usage(cert_sign=True), critical=True)


def _key_pem(key: rsa.RSAPrivateKey) -> bytes:
    return key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.TraditionalOpenSSL,
        serialization.NoEncryption(),
    )


def _cert_pem(cert: x509.Certificate) -> bytes:
    return cert.public_bytes(serialization.Encoding.PEM)


def _write_temp(directory: str, prefix: str, data: bytes) -> str:
    fd, path = tempfile.mkstemp(prefix=prefix, dir=directory)
    with os.fdopen(fd, "wb") as handle:
        handle.write(data)
    return path


class CertAuthority:
    """A CA whose key and certificate live in ``depot_dir``."""

    def __init__(self, depot_dir: str, common_name: str) -> None:
        self.depot_dir = depot_dir
        self._ca_key_path, self._ca_cert_path = self._generate_ca_and_key(
            depot_dir, common_name
        )

    @staticmethod
    def _generate_ca_and_key(depot_dir: str, common_name: str) -> tuple[str, str]:
        root_key = _new_key()
        root = _as_ca(_builder(_name(common_name), _name(common_name), root_key, root_key)).sign(
            root_key, hashes.SHA256()
        )

        signing_key = _new_key()
        intermediate = _as_ca(
            _builder(_name(common_name), root.subject, signing_key, root_key)
        ).sign(root_key, hashes.SHA256())

        key_path = os.path.join(depot_dir, common_name + ".key")
        with open(key_path, "wb") as handle:
            handle.write(_key_pem(signing_key))
        cert_path = os.path.join(depot_dir, common_name + ".crt")
        with open(cert_path, "wb") as handle:
            handle.write(_cert_pem(intermediate))
        return key_path, cert_path

    def ca_and_key(self) -> tuple[str, str]:
        """Return the paths of the CA key and the CA certificate."""
        return self._ca_key_path, self._ca_cert_path

    def generate_self_signed_cert_and_key(
        self, common_name: str, sans: Iterable[str], intermediate_ca: bool = False
    ) -> tuple[str, str]:
        """Issue a certificate signed by this CA; return (key path, cert path)."""
        key = _new_key()

        with open(self._ca_cert_path, "rb") as handle:
            ca_cert = x509.load_pem_x509_certificate(handle.read())
        with open(self._ca_key_path, "rb") as handle:
            ca_key = serialization.load_pem_private_key(handle.read(), password=None)

        builder = _builder(_name(common_name), ca_cert.subject, key, ca_key)
        if intermediate_ca:
            builder = _as_ca(builder)
        else:
            alt_names: list[x509.GeneralName] = [x509.DNSName(name) for name in sans]
            alt_names.append(x509.IPAddress(_LOOPBACK))
            builder = (
                builder.add_extension(
                    x509.BasicConstraints(ca=False, path_length=None), critical=True
                )
                .add_extension(_key_usage(cert_sign=False), critical=True)
                .add_extension(
                    x509.ExtendedKeyUsage(
                        [ExtendedKeyUsageOID.SERVER_AUTH, ExtendedKeyUsageOID.CLIENT_AUTH]
                    ),
                    critical=False,
                )
                .add_extension(x509.SubjectAlternativeName(alt_names), critical=False)
            )
        cert = builder.sign(ca_key, hashes.SHA256())

        key_path = _write_temp(self.depot_dir, common_name, _key_pem(key))
        cert_path = _write_temp(self.depot_dir, common_name, _cert_pem(cert))
        return key_path, cert_path