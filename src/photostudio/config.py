from typing import Literal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    DATABASE_URL: str = "postgresql+asyncpg://app:devpassword@db:5432/photostudio"
    REDIS_URL: str = "redis://redis:6379/0"

    RAZORPAY_KEY_ID: str = ""
    RAZORPAY_KEY_SECRET: str = ""
    RAZORPAY_WEBHOOK_SECRET: str = ""
    RAZORPAY_PUBLIC_KEY_ID: str = ""
    PAYMENT_STAGE: Literal["sandbox", "production"] = "sandbox"
    GATEWAY_TIMEOUT_SECONDS: float = 15.0

    # Pricing: 100 credits = $1
    CREDITS_PER_DOLLAR: int = 100
    MIN_PURCHASE_USD: float = 1
    MAX_PURCHASE_USD: float = 9999
    USD_TO_INR_RATE: float = 83
    SETTLEMENT_CURRENCY: str = "INR"
    ORDER_EXPIRY_HOURS: int = 24

    DEFAULT_CREDITS: int = 100
    CREDITS_PER_GENERATION: int = 5

    RATE_LIMIT_BACKEND: Literal["memory", "redis"] = "memory"

    SUPABASE_JWT_SECRET: str = ""
    SUPABASE_JWT_AUDIENCE: str = "authenticated"

    GEMINI_API_KEY: str = ""
    GEMINI_IMAGE_MODEL: str = "gemini-2.5-flash-image"
    MEDIA_DIR: str = "media"
    MEDIA_URL_PREFIX: str = "/media"
    MAX_UPLOAD_BYTES: int = 10 * 1024 * 1024

    APP_ENV: str = "development"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def public_key_id(self) -> str:
        return self.RAZORPAY_PUBLIC_KEY_ID or self.RAZORPAY_KEY_ID


settings = Settings()
