"""Issuer profile lookup."""

from __future__ import annotations

from typing import Optional

from backend.core.config import Settings, settings
from billing.dto import IssuerProfile
from billing.errors import ValidationError


def profile_from_settings(config: Settings) -> IssuerProfile:
    ruc = config.ISSUER_RUC.strip()
    if len(ruc) != 13 or not ruc.isdigit():
        raise ValidationError("ISSUER_RUC must be 13 digits")
    if not config.ISSUER_BUSINESS_NAME.strip():
        raise ValidationError("ISSUER_BUSINESS_NAME is required")
    return IssuerProfile(
        business_name=config.ISSUER_BUSINESS_NAME,
        commercial_name=config.ISSUER_COMMERCIAL_NAME,
        ruc=ruc,
        matrix_address=config.ISSUER_MATRIX_ADDRESS,
        establishment_address=config.ISSUER_ESTABLISHMENT_ADDRESS or config.ISSUER_MATRIX_ADDRESS,
        establishment=config.ISSUER_ESTABLISHMENT_CODE.zfill(3),
        emission_point=config.ISSUER_EMISSION_POINT.zfill(3),
        keeps_accounting=config.ISSUER_KEEPS_ACCOUNTING,
        special_taxpayer=config.ISSUER_SPECIAL_TAXPAYER,
        environment="2" if config.SRI_ENV.lower() in ("production", "prod", "2") else "1",
        email=config.ISSUER_EMAIL,
    )


class IssuerConfigRepository:
    """Holds the active issuer profile; falls back to environment settings."""

    def __init__(self, profile: Optional[IssuerProfile] = None, *, config: Optional[Settings] = None) -> None:
        self._profile = profile
        self._config = config or settings

    def register(self, profile: IssuerProfile) -> None:
        self._profile = profile

    def get(self) -> IssuerProfile:
        if self._profile is None:
            self._profile = profile_from_settings(self._config)
        return self._profile
