"""Key material for federation members: self-signed TLS identities and hex helpers."""

from __future__ import annotations

import datetime
import re

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

_HEX = re.compile(r"(?:[0-9a-fA-F]{2})*")

_NOT_BEFORE = datetime.datetime(1975, 1, 1, tzinfo=datetime.timezone.utc)
_NOT_AFTER = datetime.datetime(4096, 1, 1, tzinfo=datetime.timezone.utc)


def gen_cert_and_key(name: str) -> tuple[bytes, bytes]:
    """Create a self-signed ECDSA P-256 certificate for the DNS name `name`.

    Returns the DER-encoded certificate and the DER-encoded PKCS#8 private key.
    """
    private_key = ec.generate_private_key(ec.SECP256R1())
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, name)])
    certificate = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(_NOT_BEFORE)
        .not_valid_after(_NOT_AFTER)
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(name)]), critical=False)
        .sign(private_key, hashes.SHA256())
    )
    cert_der = certificate.public_bytes(serialization.Encoding.DER)
    key_der = private_key.private_bytes(
        serialization.Encoding.DER,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )
    return cert_der, key_der


def encode_hex(data: bytes) -> str:
    """Encode bytes as lower-case hex, the form certificates and keys are stored in."""
    return bytes(data).hex()


def decode_hex(text: str) -> bytes:
    """Decode hex written by `encode_hex`; raises ValueError on anything else."""
    if not isinstance(text, str) or not _HEX.fullmatch(text):
        raise ValueError("Invalid hex")
    return bytes.fromhex(text)