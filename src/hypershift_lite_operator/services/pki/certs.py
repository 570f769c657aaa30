"""X.509 certificate and key primitives built on the cryptography library."""

from __future__ import annotations

import ipaddress
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

VALIDITY_ONE_YEAR = timedelta(days=365)
VALIDITY_TEN_YEARS = timedelta(days=365 * 10)

RSA_KEY_SIZE = 2048

# Key usage names accepted in CertConfig.key_usages
KEY_USAGE_DIGITAL_SIGNATURE = "digital_signature"
KEY_USAGE_KEY_ENCIPHERMENT = "key_encipherment"
KEY_USAGE_CERT_SIGN = "key_cert_sign"

EXT_KEY_USAGE_SERVER_AUTH = ExtendedKeyUsageOID.SERVER_AUTH
EXT_KEY_USAGE_CLIENT_AUTH = ExtendedKeyUsageOID.CLIENT_AUTH

# Backdate notBefore to tolerate clock skew between hosts
_CLOCK_SKEW = timedelta(minutes=5)


@dataclass(frozen=True)
class CertConfig:
    """Parameters of a certificate to issue."""

    common_name: str
    organization: tuple[str, ...] = ()
    key_usages: frozenset[str] = frozenset({KEY_USAGE_DIGITAL_SIGNATURE, KEY_USAGE_KEY_ENCIPHERMENT})
    ext_key_usages: tuple[x509.ObjectIdentifier, ...] = ()
    validity: timedelta = VALIDITY_ONE_YEAR
    dns_names: tuple[str, ...] = ()
    ip_addresses: tuple[str, ...] = ()
    is_ca: bool = False


@dataclass(frozen=True)
class KeyPair:
    """PEM-encoded certificate and private key."""

    cert_pem: bytes
    key_pem: bytes
    issuer_pem: bytes = field(default=b"")


def generate_private_key() -> rsa.RSAPrivateKey:
    """Generate an RSA private key."""
    return rsa.generate_private_key(public_exponent=65537, key_size=RSA_KEY_SIZE)


def private_key_to_pem(key: rsa.RSAPrivateKey) -> bytes:
    """Serialize a private key to PKCS#1 PEM."""
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )


def public_key_to_pem(key: rsa.RSAPrivateKey) -> bytes:
    """Serialize the public half of a key pair to PKIX PEM."""
    return key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def _build_name(cfg: CertConfig) -> x509.Name:
    attrs = [x509.NameAttribute(NameOID.COMMON_NAME, cfg.common_name)]
    for org in cfg.organization:
        attrs.append(x509.NameAttribute(NameOID.ORGANIZATION_NAME, org))
    return x509.Name(attrs)


def _key_usage(cfg: CertConfig) -> x509.KeyUsage:
    return x509.KeyUsage(
        digital_signature=KEY_USAGE_DIGITAL_SIGNATURE in cfg.key_usages,
        content_commitment=False,
        key_encipherment=KEY_USAGE_KEY_ENCIPHERMENT in cfg.key_usages,
        data_encipherment=False,
        key_agreement=False,
        key_cert_sign=KEY_USAGE_CERT_SIGN in cfg.key_usages or cfg.is_ca,
        crl_sign=False,
        encipher_only=False,
        decipher_only=False,
    )


def _builder(cfg: CertConfig, issuer: x509.Name, key: rsa.RSAPrivateKey) -> x509.CertificateBuilder:
    now = datetime.now(timezone.utc)
    builder = (
        x509.CertificateBuilder()
        .serial_number(secrets.randbits(63) or 1)
        .issuer_name(issuer)
        .subject_name(_build_name(cfg))
        .public_key(key.public_key())
        .not_valid_before(now - _CLOCK_SKEW)
        .not_valid_after(now + cfg.validity)
        .add_extension(x509.BasicConstraints(ca=cfg.is_ca, path_length=None), critical=True)
        .add_extension(_key_usage(cfg), critical=True)
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
    )
    if cfg.ext_key_usages:
        builder = builder.add_extension(x509.ExtendedKeyUsage(list(cfg.ext_key_usages)), critical=False)
    sans: list[x509.GeneralName] = [x509.DNSName(name) for name in cfg.dns_names]
    sans.extend(x509.IPAddress(ipaddress.ip_address(ip)) for ip in cfg.ip_addresses)
    if sans:
        builder = builder.add_extension(x509.SubjectAlternativeName(sans), critical=False)
    return builder


def self_signed_certificate(cfg: CertConfig) -> KeyPair:
    """Generate a self-signed certificate, typically a root CA.

    Args:
        cfg: Certificate parameters

    Returns:
        The certificate and its new private key
    """
    key = generate_private_key()
    builder = _builder(cfg, _build_name(cfg), key)
    cert = builder.sign(private_key=key, algorithm=hashes.SHA256())
    return KeyPair(
        cert_pem=cert.public_bytes(serialization.Encoding.PEM),
        key_pem=private_key_to_pem(key),
    )


def sign_certificate(cfg: CertConfig, ca_cert_pem: bytes, ca_key_pem: bytes) -> KeyPair:
    """Issue a certificate for a new key pair, signed by the given CA.

    Args:
        cfg: Certificate parameters
        ca_cert_pem: PEM of the issuing CA certificate
        ca_key_pem: PEM of the issuing CA private key

    Returns:
        The certificate, its private key, and the issuer certificate PEM
    """
    ca_cert = x509.load_pem_x509_certificate(ca_cert_pem)
    ca_key = serialization.load_pem_private_key(ca_key_pem, password=None)
    key = generate_private_key()
    builder = _builder(cfg, ca_cert.subject, key).add_extension(
        x509.AuthorityKeyIdentifier.from_issuer_public_key(ca_key.public_key()),  # type: ignore[arg-type]
        critical=False,
    )
    cert = builder.sign(private_key=ca_key, algorithm=hashes.SHA256())  # type: ignore[arg-type]
    return KeyPair(
        cert_pem=cert.public_bytes(serialization.Encoding.PEM),
        key_pem=private_key_to_pem(key),
        issuer_pem=ca_cert_pem,
    )


def is_valid_ca(cert_pem: bytes, key_pem: bytes) -> bool:
    """Check that a certificate/key pair is a usable, matching CA.

    The certificate must parse, carry CA basic constraints, still be within its
    validity window, be self-consistent with the private key, and verify its
    own signature when self-issued.
    """
    try:
        cert = x509.load_pem_x509_certificate(cert_pem)
        key = serialization.load_pem_private_key(key_pem, password=None)
    except ValueError:
        return False

    try:
        constraints = cert.extensions.get_extension_for_class(x509.BasicConstraints).value
    except x509.ExtensionNotFound:
        return False
    if not constraints.ca:
        return False

    now = datetime.now(timezone.utc)
    if not (cert.not_valid_before_utc <= now <= cert.not_valid_after_utc):
        return False

    public_key = cert.public_key()
    if not isinstance(public_key, rsa.RSAPublicKey) or not isinstance(key, rsa.RSAPrivateKey):
        return False
    if public_key.public_numbers() != key.public_key().public_numbers():
        return False

    if cert.issuer == cert.subject:
        try:
            public_key.verify(
                cert.signature,
                cert.tbs_certificate_bytes,
                padding.PKCS1v15(),
                cert.signature_hash_algorithm,  # type: ignore[arg-type]
            )
        except InvalidSignature:
            return False
    return True
