from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    # Application
    APP_NAME: str = "E-Invoice Submission Service"
    DEBUG: bool = False
    ENV: str = "production"

    # Database
    DATABASE_URL: str = "postgresql+asyncpg://einvoice_user:change_me@db:5432/einvoice_db"
    DATABASE_URL_SYNC: str = "postgresql://einvoice_user:change_me@db:5432/einvoice_db"

    # CORS
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS_ORIGINS string into a list of origins."""
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]

    # MyInvois integration
    MYINVOIS_ENVIRONMENT: str = "sandbox"  # sandbox or production
    MYINVOIS_SANDBOX_URL: str = "https://preprod-api.myinvois.hasil.gov.my"
    MYINVOIS_PRODUCTION_URL: str = "https://api.myinvois.hasil.gov.my"
    MYINVOIS_CLIENT_ID: Optional[str] = None
    MYINVOIS_CLIENT_SECRET: Optional[str] = None
    MYINVOIS_TIN: Optional[str] = None  # Taxpayer on whose behalf documents are filed
    MYINVOIS_TIMEOUT_SECONDS: float = 30.0
    MYINVOIS_MAX_RETRIES: Optional[int] = None  # None keeps retrying 429 responses

    @property
    def myinvois_base_url(self) -> str:
        """Base URL for the configured environment."""
        if self.MYINVOIS_ENVIRONMENT.lower() == "production":
            return self.MYINVOIS_PRODUCTION_URL.rstrip("/")
        return self.MYINVOIS_SANDBOX_URL.rstrip("/")

    @property
    def myinvois_api_url(self) -> str:
        return f"{self.myinvois_base_url}/api/v1.0"

    # Document format
    SCHEMA_VERSION: str = "1.0"  # "1.1" requires a digital signature

    # Signing material (PEM key + certificate, or a PKCS#12 bundle)
    SIGNING_PRIVATE_KEY_PATH: Optional[str] = None
    SIGNING_CERTIFICATE_PATH: Optional[str] = None
    SIGNING_KEY_PASSPHRASE: Optional[str] = None  # Literal or $ENV_VAR reference
    X509_SUBJECT_NAME: Optional[str] = None
    X509_ISSUER_NAME: Optional[str] = None
    X509_SERIAL_NUMBER: Optional[str] = None

    @property
    def signing_configured(self) -> bool:
        """Check if signing material is configured."""
        return bool(self.SIGNING_CERTIFICATE_PATH and self.SIGNING_CERTIFICATE_PATH.strip())

    # Submission lifecycle
    POLL_INITIAL_DELAY_SECONDS: float = 5.0
    COMPLETION_THRESHOLD_HOURS: int = 72
    COMPLETION_SWEEP_INTERVAL_SECONDS: float = 3600.0
    PREVALIDATE_BUYER_TIN: bool = True
    ENFORCE_SUPPLIER_TIN_MATCH: bool = False

    class Config:
        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
