"""
Application configuration
"""

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """EMR Connect settings"""

    # Application
    APP_NAME: str = "EMR Connect"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # HTTP
    HTTP_TIMEOUT_SECONDS: float = 30.0

    # Token lifecycle
    TOKEN_REFRESH_BUFFER_SECONDS: int = 60  # Refresh this long before expiry
    AUTH_STATE_TTL_SECONDS: int = 600  # Only enforced by backends with TTL support

    # Search defaults
    DEFAULT_DATE_FILTER_YEARS: int = 2
    MAX_SEARCH_PAGES: int = 10

    # Storage
    TOKEN_STORE_PREFIX: str = "emr_connect:tokens:"
    AUTH_STATE_PREFIX: str = "emr_connect:auth:"
    TOKEN_ENCRYPTION_KEY: Optional[str] = None  # Fernet key, enables encryption at rest
    REDIS_URL: Optional[str] = None

    # Provider credentials (used by initialize_providers_from_settings)
    REDIRECT_URI: str = ""
    EPIC_CLIENT_ID: Optional[str] = None
    CERNER_CLIENT_ID: Optional[str] = None
    CERNER_TENANT_ID: str = "ec2458f2-1e24-41c8-b71b-0e701af7583d"
    ALLSCRIPTS_CLIENT_ID: Optional[str] = None
    ATHENA_CLIENT_ID: Optional[str] = None
    NEXTGEN_CLIENT_ID: Optional[str] = None
    MEDITECH_CLIENT_ID: Optional[str] = None
    ECLINICALWORKS_CLIENT_ID: Optional[str] = None

    model_config = SettingsConfigDict(
        env_prefix="EMR_",
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )


settings = Settings()
