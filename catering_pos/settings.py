from __future__ import annotations
import os
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    DATABASE_URL: str = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
    DATABASE_NAME: str = os.getenv("DATABASE_NAME", "catering_pos")

    JWT_SECRET: str = "change-me"
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24 * 7

    # External WhatsApp-compatible provider
    WHATSAPP_API_URL: str = "http://localhost:3000"
    WHATSAPP_API_KEY: Optional[str] = None
    WHATSAPP_SESSION_ID: str = "catering-session"
    WHATSAPP_TIMEOUT: Optional[float] = None

    # Printed on every bill
    BUSINESS_NAME: str = "Catering POS"
    BUSINESS_ADDRESS: str = "Your Restaurant Address"
    BUSINESS_PHONE: str = "+00-000-0000000"
    BUSINESS_EMAIL: str = "info@restaurant.com"
    CURRENCY_SYMBOL: str = "£"

    AUTO_SEND_BILL_DELAY: float = 2.0

    CORS_ORIGINS: str = "*"
    LOG_LEVEL: str = "INFO"
    PORT: int = 8000

    @property
    def cors_origins(self) -> list[str]:
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

settings = Settings()

def get_settings() -> Settings:
    return settings
