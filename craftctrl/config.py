"""
CraftCtrl - Configuration Management

Centralized configuration using Pydantic Settings.
All secrets and connection strings are loaded from environment variables.

Token lifetimes are NOT configurable; see craftctrl.auth.tokens.
"""

from typing import List

from pydantic import Field, validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Attributes:
        SECRET_KEY: JWT signing key (at least 32 characters)
        BCRYPT_ROUNDS: bcrypt work factor for new password hashes
        DATABASE_URL: SQLAlchemy URL of the credential store
        API_URL: Public base URL of this API (embedded in reset links)
        FRONTEND_URL: Base URL of the dashboard serving /change/<token>
        SENDER_EMAIL: From address for password reset mail
        MAILERSEND_API_KEY: API key for the mail provider
        RESET_COOLDOWN_MINUTES: Minimum gap between reset mails per user
    """

    ENVIRONMENT: str = "development"

    # Security
    SECRET_KEY: str = Field(
        default="your-super-secure-jwt-secret-change-in-production",
        min_length=32,
    )
    JWT_ALGORITHM: str = "HS256"
    BCRYPT_ROUNDS: int = Field(default=12, ge=4, le=31)

    # Database (SQLite by default, PostgreSQL in production)
    DATABASE_URL: str = "sqlite:///./data/craftctrl.db"

    # Bootstrap administrator (created once if absent)
    DEFAULT_ADMIN_USERNAME: str = "admin"
    DEFAULT_ADMIN_EMAIL: str = "admin@email.com"
    DEFAULT_ADMIN_PASSWORD: str = "admin123"

    # Public URLs
    API_URL: str = "http://localhost:5575"
    FRONTEND_URL: str = "http://localhost:3000"

    # Password reset mail
    SENDER_EMAIL: str = ""
    MAILERSEND_API_KEY: str = ""
    RESET_COOLDOWN_MINUTES: int = Field(default=5, ge=0)

    # CORS
    ALLOWED_ORIGINS: List[str] = ["http://localhost:3000"]

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    @validator("ENVIRONMENT")
    def known_environment(cls, v):
        if v not in {"development", "production", "test"}:
            raise ValueError("ENVIRONMENT must be development, production or test")
        return v

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


settings = Settings()
