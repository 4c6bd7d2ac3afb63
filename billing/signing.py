"""Signing boundary and PKCS#12 certificate handling.

The XAdES-BES signature itself is produced by an injected signer; this module
resolves and validates the certificate material it needs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional, Protocol

from cryptography import x509
from cryptography.hazmat.primitives.asymmetric.types import PrivateKeyTypes
from cryptography.hazmat.primitives.serialization import pkcs12

from backend.core.config import settings
from billing.errors import SigningError

logger = logging.getLogger(__name__)


class SigningGateway(Protocol):
    async def sign(self, xml: str) -> str: ...


@dataclass(frozen=True)
class SigningMaterial:
    private_key: PrivateKeyTypes
    certificate: x509.Certificate

    @property
    def not_valid_after(self) -> datetime:
        return self.certificate.not_valid_after_utc


XadesSigner = Callable[[str, SigningMaterial], str]


def resolve_certificate_path(configured: str, secrets_dir: str) -> Path:
    """Return the configured path, or the same file name in the secrets dir."""

    if not configured:
        raise SigningError("SRI_SIGNATURE_PATH is not configured")
    path = Path(configured)
    if path.is_file():
        return path
    fallback = Path(secrets_dir) / path.name
    if fallback.is_file():
        logger.info(
            "certificate resolved from secrets directory",
            extra={"operation": "sign", "path": str(fallback)},
        )
        return fallback
    raise SigningError(f"certificate not found at {configured} or {fallback}")


def load_material(path: Path, password: str, *, now: Optional[datetime] = None) -> SigningMaterial:
    data = path.read_bytes()
    if not data:
        raise SigningError(f"certificate file {path} is empty")
    try:
        private_key, certificate, _additional = pkcs12.load_key_and_certificates(
            data, password.encode("utf-8") if password else None
        )
    except ValueError as exc:
        raise SigningError(f"could not open certificate {path.name}: wrong password or corrupt file") from exc
    if private_key is None or certificate is None:
        raise SigningError(f"certificate {path.name} holds no private key or certificate")

    material = SigningMaterial(private_key=private_key, certificate=certificate)
    current = now or datetime.now(timezone.utc)
    if material.not_valid_after < current:
        raise SigningError(f"certificate expired on {material.not_valid_after:%Y-%m-%d}")
    return material


class Pkcs12SigningGateway:
    """Loads the PKCS#12 bundle once and hands it to the XAdES signer."""

    def __init__(
        self,
        signer: XadesSigner,
        *,
        path: Optional[str] = None,
        password: Optional[str] = None,
        secrets_dir: Optional[str] = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._signer = signer
        self._path = settings.SRI_SIGNATURE_PATH if path is None else path
        self._password = settings.SRI_SIGNATURE_PASSWORD if password is None else password
        self._secrets_dir = settings.SRI_SECRETS_DIR if secrets_dir is None else secrets_dir
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._material: Optional[SigningMaterial] = None

    def material(self) -> SigningMaterial:
        now = self._clock()
        if self._material is None or self._material.not_valid_after < now:
            path = resolve_certificate_path(self._path, self._secrets_dir)
            self._material = load_material(path, self._password, now=now)
        return self._material

    async def sign(self, xml: str) -> str:
        material = self.material()
        try:
            return self._signer(xml, material)
        except SigningError:
            raise
        except Exception as exc:
            raise SigningError(f"signer failed: {exc}") from exc
