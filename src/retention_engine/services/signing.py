"""Tenant signing of disposal certificates.

Each tenant has an ECDSA P-384 key stored as ``<key_directory>/<tenant_id>.pem``.
The signature covers the certificate hash (ASCII hex), so it is verifiable
with nothing but the certificate and the tenant's public key.

Signing is optional. A failure to sign never blocks a disposal; the caller
issues the certificate without a signature and reports a compliance gap.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import (
    BestAvailableEncryption,
    Encoding,
    NoEncryption,
    PrivateFormat,
    PublicFormat,
    load_pem_private_key,
)

from retention_engine.services.errors import RetentionEngineError

if TYPE_CHECKING:
    from retention_engine.core.config import SigningSettings

logger = logging.getLogger(__name__)

_TENANT_KEY_NAME = re.compile(r"^[A-Za-z0-9_.-]+$")


class SigningError(RetentionEngineError):
    """Raised when a certificate cannot be signed or a key cannot be used."""

    pass


class SigningKeyNotFoundError(SigningError):
    """Raised when a tenant has no signing key and generation is disabled."""

    def __init__(self, tenant_id: str) -> None:
        super().__init__(f"No signing key for tenant {tenant_id!r}")
        self.tenant_id = tenant_id


@dataclass(frozen=True, slots=True)
class SignatureResult:
    """A detached signature over a certificate hash.

    Attributes:
        signature: Base64-encoded DER ECDSA signature.
        key_id: ``<tenant_id>:<first 16 hex of the public key fingerprint>``.
    """

    signature: str
    key_id: str


def public_key_fingerprint(private_key: ec.EllipticCurvePrivateKey) -> str:
    """SHA-256 fingerprint of the DER SubjectPublicKeyInfo."""
    der = private_key.public_key().public_bytes(Encoding.DER, PublicFormat.SubjectPublicKeyInfo)
    return hashlib.sha256(der).hexdigest()


class CertificateSigner:
    """Signs certificate hashes with per-tenant ECDSA P-384 keys.

    Example:
        signer = CertificateSigner(Path("/keys"))
        result = signer.sign("tenant-a", certificate.certificate_hash)
        assert signer.verify("tenant-a", certificate.certificate_hash, result.signature)
    """

    def __init__(
        self,
        key_directory: Path,
        *,
        key_password: bytes | None = None,
        generate_missing_keys: bool = False,
    ) -> None:
        self._key_directory = key_directory
        self._key_password = key_password
        self._generate_missing_keys = generate_missing_keys
        self._keys: dict[str, ec.EllipticCurvePrivateKey] = {}

    @classmethod
    def from_settings(cls, settings: SigningSettings) -> CertificateSigner:
        """Create a signer from SigningSettings."""
        password = settings.key_password.get_secret_value().encode() if settings.key_password else None
        return cls(
            Path(settings.key_directory),
            key_password=password,
            generate_missing_keys=settings.generate_missing_keys,
        )

    def sign(self, tenant_id: str, certificate_hash: str) -> SignatureResult:
        """Sign a certificate hash with the tenant's key.

        Raises:
            SigningKeyNotFoundError: If the tenant has no key.
            SigningError: If the key cannot be loaded or used.
        """
        private_key = self._get_key(tenant_id)
        try:
            signature = private_key.sign(certificate_hash.encode("ascii"), ec.ECDSA(hashes.SHA384()))
        except (ValueError, TypeError) as e:
            msg = f"Signing failed for tenant {tenant_id!r}: {e}"
            raise SigningError(msg) from e

        return SignatureResult(
            signature=base64.b64encode(signature).decode("ascii"),
            key_id=f"{tenant_id}:{public_key_fingerprint(private_key)[:16]}",
        )

    def verify(self, tenant_id: str, certificate_hash: str, signature: str) -> bool:
        """Check a signature against the tenant's current public key."""
        try:
            public_key = self._get_key(tenant_id).public_key()
            public_key.verify(
                base64.b64decode(signature),
                certificate_hash.encode("ascii"),
                ec.ECDSA(hashes.SHA384()),
            )
        except InvalidSignature:
            return False
        except (SigningError, ValueError) as e:
            logger.warning("Cannot verify signature for tenant %s: %s", tenant_id, e)
            return False
        return True

    def _key_file(self, tenant_id: str) -> Path:
        if not _TENANT_KEY_NAME.match(tenant_id):
            msg = f"Tenant id {tenant_id!r} cannot be used as a key file name"
            raise SigningError(msg)
        return self._key_directory / f"{tenant_id}.pem"

    def _get_key(self, tenant_id: str) -> ec.EllipticCurvePrivateKey:
        if tenant_id in self._keys:
            return self._keys[tenant_id]

        key_file = self._key_file(tenant_id)
        if key_file.exists():
            private_key = self._load_key(key_file)
        elif self._generate_missing_keys:
            private_key = self._generate_key(tenant_id, key_file)
        else:
            raise SigningKeyNotFoundError(tenant_id)

        self._keys[tenant_id] = private_key
        return private_key

    def _load_key(self, key_file: Path) -> ec.EllipticCurvePrivateKey:
        try:
            private_key = load_pem_private_key(key_file.read_bytes(), password=self._key_password)
        except (OSError, ValueError, TypeError) as e:
            msg = f"Cannot load signing key {key_file}: {e}"
            raise SigningError(msg) from e

        if not isinstance(private_key, ec.EllipticCurvePrivateKey) or not isinstance(
            private_key.curve, ec.SECP384R1
        ):
            msg = f"Signing key {key_file} is not an ECDSA P-384 key"
            raise SigningError(msg)
        return private_key

    def _generate_key(self, tenant_id: str, key_file: Path) -> ec.EllipticCurvePrivateKey:
        private_key = ec.generate_private_key(ec.SECP384R1())

        if self._key_password:
            encryption = BestAvailableEncryption(self._key_password)
        else:
            encryption = NoEncryption()

        key_pem = private_key.private_bytes(
            encoding=Encoding.PEM,
            format=PrivateFormat.PKCS8,
            encryption_algorithm=encryption,
        )
        try:
            self._key_directory.mkdir(parents=True, exist_ok=True)
            key_file.write_bytes(key_pem)
            key_file.chmod(0o600)
        except OSError as e:
            msg = f"Cannot store signing key for tenant {tenant_id!r}: {e}"
            raise SigningError(msg) from e

        logger.info("Generated signing key for tenant %s", tenant_id)
        return private_key
