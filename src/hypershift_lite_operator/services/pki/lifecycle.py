"""Idempotent reconciliation of certificate and key material stored in Secrets.

Every function here takes a Secret dict and brings it to its desired state in
place, so it can be used as the mutate callback of ``create_or_update``. Key
material is only regenerated when an artifact is missing, incomplete, or was
issued by a different root CA than the current one.
"""

from __future__ import annotations

import base64
import hashlib
import logging
from dataclasses import dataclass
from typing import Any, Callable

import yaml

from ... import metrics
from ...constants import ANNOTATION_CA_CHECKSUM
from ...utils.errors import InvalidRootCAError
from ...utils.secrets import get_secret_bytes, has_exact_keys, secret_keys, set_secret_bytes
from .certs import (
    EXT_KEY_USAGE_CLIENT_AUTH,
    KEY_USAGE_CERT_SIGN,
    KEY_USAGE_DIGITAL_SIGNATURE,
    KEY_USAGE_KEY_ENCIPHERMENT,
    VALIDITY_TEN_YEARS,
    CertConfig,
    generate_private_key,
    is_valid_ca,
    private_key_to_pem,
    public_key_to_pem,
    self_signed_certificate,
    sign_certificate,
)

logger = logging.getLogger(__name__)

SECRET_TYPE_OPAQUE = "Opaque"
SECRET_TYPE_TLS = "kubernetes.io/tls"

CA_CERT_KEY = "ca.crt"
CA_KEY_KEY = "ca.key"
TLS_CERT_KEY = "tls.crt"
TLS_KEY_KEY = "tls.key"
KUBECONFIG_KEY = "kubeconfig"

ROOT_CA_CONFIG = CertConfig(
    common_name="root-ca",
    organization=("openshift",),
    key_usages=frozenset({KEY_USAGE_DIGITAL_SIGNATURE, KEY_USAGE_KEY_ENCIPHERMENT, KEY_USAGE_CERT_SIGN}),
    validity=VALIDITY_TEN_YEARS,
    is_ca=True,
)

SYSTEM_ADMIN_CONFIG = CertConfig(
    common_name="system:admin",
    organization=("system:masters",),
    ext_key_usages=(EXT_KEY_USAGE_CLIENT_AUTH,),
)

# Called with the secret name whenever new key material is written
IssueCallback = Callable[[str], None]


@dataclass(frozen=True)
class SignedSecretKeys:
    """Names of the data keys a CA-signed artifact is stored under."""

    cert: str = TLS_CERT_KEY
    key: str = TLS_KEY_KEY
    ca: str | None = None

    @property
    def expected(self) -> tuple[str, ...]:
        keys = (self.cert, self.key)
        return keys + (self.ca,) if self.ca else keys


TLS_KEYS = SignedSecretKeys()
SIGNER_KEYS = SignedSecretKeys(cert=CA_CERT_KEY, key=CA_KEY_KEY)


def secret_type_for(keys: SignedSecretKeys) -> str:
    """Secret type for a key layout: kubernetes.io/tls requires exactly tls.crt and tls.key."""
    return SECRET_TYPE_TLS if keys.expected == TLS_KEYS.expected else SECRET_TYPE_OPAQUE


def ca_checksum(ca_cert_pem: bytes) -> str:
    """Return the SHA-256 hex digest linking artifacts to a root CA."""
    return hashlib.sha256(ca_cert_pem).hexdigest()


def valid_ca(ca_secret: dict[str, Any] | None) -> bool:
    """Check that a CA secret holds a usable CA certificate and matching key."""
    if ca_secret is None or not has_exact_keys(ca_secret, (CA_CERT_KEY, CA_KEY_KEY)):
        return False
    return is_valid_ca(get_secret_bytes(ca_secret, CA_CERT_KEY) or b"", get_secret_bytes(ca_secret, CA_KEY_KEY) or b"")


def _require_valid_ca(ca_secret: dict[str, Any] | None) -> dict[str, Any]:
    if ca_secret is None:
        raise InvalidRootCAError("CA signer secret root-ca does not exist")
    if not valid_ca(ca_secret):
        raise InvalidRootCAError(f"Invalid CA signer secret {_secret_name(ca_secret) or 'root-ca'}")
    return ca_secret


def _ca_material(ca_secret: dict[str, Any]) -> tuple[bytes, bytes]:
    return get_secret_bytes(ca_secret, CA_CERT_KEY) or b"", get_secret_bytes(ca_secret, CA_KEY_KEY) or b""


def annotate_with_ca(secret: dict[str, Any], ca_secret: dict[str, Any]) -> None:
    """Stamp the checksum of the issuing CA onto a secret."""
    annotations = secret.setdefault("metadata", {}).setdefault("annotations", {})
    annotations[ANNOTATION_CA_CHECKSUM] = ca_checksum(get_secret_bytes(ca_secret, CA_CERT_KEY) or b"")


def secret_up_to_date(secret: dict[str, Any], expected_keys: tuple[str, ...] | list[str]) -> bool:
    """Check that a secret holds exactly the expected non-empty keys."""
    return has_exact_keys(secret, expected_keys)


def signed_secret_up_to_date(
    secret: dict[str, Any],
    ca_secret: dict[str, Any],
    expected_keys: tuple[str, ...] | list[str],
) -> bool:
    """Check that a secret has its expected keys and was issued by the current CA."""
    if not secret_up_to_date(secret, expected_keys):
        return False
    annotations = secret.get("metadata", {}).get("annotations") or {}
    expected = ca_checksum(get_secret_bytes(ca_secret, CA_CERT_KEY) or b"")
    return annotations.get(ANNOTATION_CA_CHECKSUM) == expected


def _secret_name(secret: dict[str, Any]) -> str:
    return secret.get("metadata", {}).get("name", "")


def _issued(secret: dict[str, Any], artifact: str, on_issued: IssueCallback | None) -> None:
    name = _secret_name(secret)
    metrics.certificate_issued_total.labels(artifact=artifact).inc()
    logger.info(f"Issued {artifact} for secret {name}")
    if on_issued is not None:
        on_issued(name)


def reconcile_root_ca(secret: dict[str, Any], on_issued: IssueCallback | None = None) -> None:
    """Create the self-signed root CA on first use and validate it afterwards.

    A secret without data is populated with a new root CA. A secret holding
    anything else must be a valid CA; it is never regenerated automatically.

    Raises:
        InvalidRootCAError: If the existing root CA is unusable
    """
    secret["type"] = SECRET_TYPE_OPAQUE
    if not secret_keys(secret):
        pair = self_signed_certificate(ROOT_CA_CONFIG)
        set_secret_bytes(secret, CA_CERT_KEY, pair.cert_pem)
        set_secret_bytes(secret, CA_KEY_KEY, pair.key_pem)
        _issued(secret, "root-ca", on_issued)
        return
    _require_valid_ca(secret)


def reconcile_signed_secret(
    secret: dict[str, Any],
    ca_secret: dict[str, Any] | None,
    cfg: CertConfig,
    keys: SignedSecretKeys = TLS_KEYS,
    on_issued: IssueCallback | None = None,
) -> None:
    """Ensure a secret holds a certificate for ``cfg`` signed by the root CA.

    Args:
        secret: Secret to reconcile, modified in place
        ca_secret: Root CA secret
        cfg: Parameters of the certificate to issue when out of date
        keys: Data keys for the certificate, private key and optional CA copy; the
            secret is kubernetes.io/tls only for the tls.crt/tls.key layout
        on_issued: Invoked with the secret name when new material is written

    Raises:
        InvalidRootCAError: If the root CA is absent or invalid
    """
    ca_secret = _require_valid_ca(ca_secret)
    ca_cert_pem, ca_key_pem = _ca_material(ca_secret)
    secret["type"] = secret_type_for(keys)
    if signed_secret_up_to_date(secret, ca_secret, keys.expected):
        return

    pair = sign_certificate(cfg, ca_cert_pem, ca_key_pem)
    secret["data"] = {}
    set_secret_bytes(secret, keys.cert, pair.cert_pem)
    set_secret_bytes(secret, keys.key, pair.key_pem)
    if keys.ca:
        set_secret_bytes(secret, keys.ca, pair.issuer_pem)
    annotate_with_ca(secret, ca_secret)
    _issued(secret, cfg.common_name, on_issued)


def generate_kubeconfig(server_url: str, cert_pem: bytes, key_pem: bytes, ca_pem: bytes) -> bytes:
    """Serialize an admin kubeconfig with embedded credentials."""
    def b64(value: bytes) -> str:
        return base64.b64encode(value).decode("utf-8")

    config = {
        "apiVersion": "v1",
        "kind": "Config",
        "clusters": [
            {
                "name": "cluster",
                "cluster": {"server": server_url, "certificate-authority-data": b64(ca_pem)},
            }
        ],
        "users": [
            {
                "name": "admin",
                "user": {"client-certificate-data": b64(cert_pem), "client-key-data": b64(key_pem)},
            }
        ],
        "contexts": [
            {
                "name": "admin",
                "context": {"cluster": "cluster", "user": "admin", "namespace": "default"},
            }
        ],
        "current-context": "admin",
        "preferences": {},
    }
    return yaml.safe_dump(config, default_flow_style=False).encode("utf-8")


def reconcile_kubeconfig_secret(
    secret: dict[str, Any],
    ca_secret: dict[str, Any] | None,
    server_url: str,
    on_issued: IssueCallback | None = None,
) -> None:
    """Ensure a secret holds a system:admin kubeconfig for ``server_url``.

    Raises:
        InvalidRootCAError: If the root CA is absent or invalid
    """
    ca_secret = _require_valid_ca(ca_secret)
    ca_cert_pem, ca_key_pem = _ca_material(ca_secret)
    secret["type"] = SECRET_TYPE_OPAQUE
    if signed_secret_up_to_date(secret, ca_secret, (KUBECONFIG_KEY,)):
        return

    pair = sign_certificate(SYSTEM_ADMIN_CONFIG, ca_cert_pem, ca_key_pem)
    secret["data"] = {}
    set_secret_bytes(
        secret,
        KUBECONFIG_KEY,
        generate_kubeconfig(server_url, pair.cert_pem, pair.key_pem, pair.issuer_pem),
    )
    annotate_with_ca(secret, ca_secret)
    _issued(secret, "kubeconfig", on_issued)


def reconcile_keypair_secret(
    secret: dict[str, Any],
    private_key_key: str,
    public_key_key: str,
    on_issued: IssueCallback | None = None,
) -> None:
    """Ensure a secret holds a freestanding RSA key pair.

    Only presence of exactly the two keys is checked; the pair is not linked
    to the root CA.
    """
    secret["type"] = SECRET_TYPE_OPAQUE
    if secret_up_to_date(secret, (private_key_key, public_key_key)):
        return

    key = generate_private_key()
    secret["data"] = {}
    set_secret_bytes(secret, private_key_key, private_key_to_pem(key))
    set_secret_bytes(secret, public_key_key, public_key_to_pem(key))
    _issued(secret, "keypair", on_issued)
