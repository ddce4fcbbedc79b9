"""
Runtime configuration for the Vault billing API.

Values come from the environment (or a local .env file).
"""
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Document store
    DATABASE_URL: str = "mongodb://localhost:27017"
    DATABASE_NAME: str = "invoice"
    STORE_TIMEOUT_MS: int = Field(5000, description="Client-side bound on every store round-trip")
    SUMMARY_RETRIES: int = Field(3, ge=1, description="Attempts for idempotent summary writes")

    # Auth
    JWT_SECRET: str = "devsecret"
    JWT_ALG: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24 * 7
    BCRYPT_ROUNDS: int = 12

    # Mail
    SMTP_HOST: str = "smtp.gmail.com"
    SMTP_PORT: int = 587
    SMTP_USER: str = ""
    SMTP_PASS: str = ""
    EMAIL_FROM: str = "Vault System <noreply@vault.local>"
    NOTIFIER_TIMEOUT_S: float = 10.0
    NOTIFIER_WORKERS: int = 2

    # Billing defaults
    FRONTEND_URL: str = "http://localhost:3000"
    ADMIN_EMAIL: Optional[str] = None
    DEFAULT_CURRENCY: str = "USD"
    PAYMENT_LINK: str = ""

    LOG_LEVEL: str = "INFO"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
