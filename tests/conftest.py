"""
Shared fixtures for CertMon tests.
"""

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Tuple

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from certmon.config import Config


def generate_certificate(
    common_name: str,
    not_after: datetime,
    issuer: Optional[Tuple[x509.Certificate, ec.EllipticCurvePrivateKey]] = None,
    is_ca: bool = False,
    san: Optional[list] = None,
) -> Tuple[x509.Certificate, ec.EllipticCurvePrivateKey]:
    """Generate a test X.509 certificate, self-signed unless an issuer is given."""
    private_key = ec.generate_private_key(ec.SECP256R1())
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])

    if issuer is None:
        issuer_name, signing_key = subject, private_key
    else:
        issuer_name, signing_key = issuer[0].subject, issuer[1]

    not_before = min(datetime.now(timezone.utc), not_after) - timedelta(days=1)
    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer_name)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .add_extension(x509.BasicConstraints(ca=is_ca, path_length=None), critical=True)
    )
    if san:
        builder = builder.add_extension(
            x509.SubjectAlternativeName([x509.DNSName(name) for name in san]),
            critical=False,
        )

    cert = builder.sign(signing_key, hashes.SHA256())
    return cert, private_key


def to_der(cert: x509.Certificate) -> bytes:
    return cert.public_bytes(serialization.Encoding.DER)


def to_pem(cert: x509.Certificate) -> bytes:
    return cert.public_bytes(serialization.Encoding.PEM)


def key_to_pem(key: ec.EllipticCurvePrivateKey) -> bytes:
    return key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )


@pytest.fixture
def cert_factory() -> Callable[..., Tuple[x509.Certificate, ec.EllipticCurvePrivateKey]]:
    """Factory producing test certificates."""
    return generate_certificate


@pytest.fixture
def fast_config() -> Config:
    """Configuration with tiny intervals for loop tests."""
    return Config(
        domains=["a.example", "b.example", "c.example"],
        probe_interval="20ms",
        probe_jitter="0ms",
        probe_timeout="1s",
        workers=4,
    )
