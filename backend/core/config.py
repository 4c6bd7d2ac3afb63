"""Core configuration with Pydantic v2 Settings."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    app_env: str = "development"
    database_url: str = "sqlite:///./billing.db"
    log_level: str = "INFO"
    enable_metrics: bool = True

    # Authority environment: 'test' (celcer) or 'production' (cel)
    SRI_ENV: str = "test"
    SRI_RECEPTION_URL_TEST: str = (
        "https://celcer.sri.gob.ec/comprobantes-electronicos-ws/RecepcionComprobantesOffline"
    )
    SRI_AUTHORIZATION_URL_TEST: str = (
        "https://celcer.sri.gob.ec/comprobantes-electronicos-ws/AutorizacionComprobantesOffline"
    )
    SRI_RECEPTION_URL_PROD: str = (
        "https://cel.sri.gob.ec/comprobantes-electronicos-ws/RecepcionComprobantesOffline"
    )
    SRI_AUTHORIZATION_URL_PROD: str = (
        "https://cel.sri.gob.ec/comprobantes-electronicos-ws/AutorizacionComprobantesOffline"
    )
    SRI_TIMEOUT_MS: int = 30000

    # Authorization polling
    SRI_POLL_MAX_ATTEMPTS: int = 5
    SRI_POLL_DELAY_MS: int = 3000

    # Emission dates are compared against this zone's calendar day
    SRI_LOCAL_TIMEZONE: str = "America/Guayaquil"

    # Percent, applied when a line does not carry its own rate
    DEFAULT_TAX_RATE: int = 15
    DEFAULT_PAYMENT_METHOD: str = "01"
    FINAL_CONSUMER_ID: str = "9999999999999"

    # Credit notes are accepted until this day of the month after the original
    CREDIT_NOTE_DEADLINE_DAY: int = 7

    # PKCS#12 certificate
    SRI_SIGNATURE_PATH: str = ""
    SRI_SIGNATURE_PASSWORD: str = ""
    SRI_SECRETS_DIR: str = "/etc/secrets"
    # Dotted path "module:callable" of the XAdES-BES signer
    SRI_XADES_SIGNER: str = ""

    # Issuer profile
    ISSUER_BUSINESS_NAME: str = ""
    ISSUER_COMMERCIAL_NAME: str = ""
    ISSUER_RUC: str = ""
    ISSUER_MATRIX_ADDRESS: str = ""
    ISSUER_ESTABLISHMENT_ADDRESS: str = ""
    ISSUER_ESTABLISHMENT_CODE: str = "001"
    ISSUER_EMISSION_POINT: str = "001"
    ISSUER_KEEPS_ACCOUNTING: bool = False
    ISSUER_SPECIAL_TAXPAYER: str = ""
    ISSUER_EMAIL: str = ""


# Global settings instance
settings = Settings()
