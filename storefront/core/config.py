from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class Settings(BaseSettings):
    """
    Settings class to retrieve environment variables.
    """

    DATABASE_URL: str = "sqlite+aiosqlite:///./storefront.db"
    SQL_ECHO: bool = False
    JWT_SECRET: str
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRY: int = 3600     # seconds
    LOG_LEVEL: str = "INFO"

    # Cart pricing
    CART_EXPIRY_DAYS: int = 30
    DEFAULT_TAX_RATE: float = 5.0

    # Catalog service; the product_variants table is read directly when unset
    VARIANT_SERVICE_URL: Optional[str] = None
    VARIANT_SERVICE_TIMEOUT: float = 2.0

    model_config = SettingsConfigDict(
        env_file='.env',
        extra='ignore',
    )


Config = Settings()
