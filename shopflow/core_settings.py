from decimal import Decimal
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    POSTGRES_HOST: str = "postgres"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "shopflow"
    POSTGRES_USER: str = "shopflow"
    POSTGRES_PASSWORD: str = "shopflow"
    # Full SQLAlchemy URL, takes precedence over the POSTGRES_* parts
    DATABASE_URL: Optional[str] = None

    SERVICE_NAME: str = "shopflow"
    SERVICE_VERSION: str = "1.0.0"
    LOG_LEVEL: str = "INFO"

    CURRENCY_CODE: str = "GBP"
    CURRENCY_SYMBOL: str = "£"

    TAX_RATE: Decimal = Decimal("0.0")
    TAX_INCLUDED_IN_PRICES: bool = False

    PAYMENT_GATEWAYS: list[str] = ["stripe", "paypal"]
    DEFAULT_GATEWAY: str = "stripe"
    REDIRECT_GATEWAY: str = "paypal"
    PAYMENT_HTTP_TIMEOUT: float = 10.0

    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_API_BASE: str = "https://api.stripe.com"

    PAYPAL_CLIENT_ID: Optional[str] = None
    PAYPAL_SECRET: Optional[str] = None
    PAYPAL_MODE: str = "sandbox"
    BRAND_NAME: str = "Shopflow"

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+psycopg2://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    @property
    def paypal_api_base(self) -> str:
        if self.PAYPAL_MODE == "live":
            return "https://api-m.paypal.com"
        return "https://api-m.sandbox.paypal.com"


@lru_cache
def get_settings() -> Settings:
    return Settings()
