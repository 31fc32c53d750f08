from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class Settings(BaseSettings):
    # App
    APP_ENV: str = "development"
    DEBUG: bool = True

    # MongoDB
    MONGO_URL: str = "mongodb://localhost:27017"
    DB_NAME: str = "HaulOps"
    MONGO_TRANSACTIONS: bool = True    # requires a replica set (Atlas, rs0 in docker)

    # JWT (tokens are issued by the auth service, only verified here)
    JWT_SECRET: str = "changeme_minimum_32_chars_here_please"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 120

    # PayMongo
    PAYMONGO_BASE_URL:       str = "https://api.paymongo.com/v1"
    PAYMONGO_SECRET_KEY:     Optional[str] = None
    PAYMONGO_PUBLIC_KEY:     Optional[str] = None
    PAYMONGO_WEBHOOK_SECRET: Optional[str] = None  # Paymongo-Signature header
    PAYMONGO_TIMEOUT:        float = 15.0

    # Firebase Cloud Messaging (push to clients)
    FIREBASE_CREDENTIALS: str = "firebase-service-account.json"

    # Billing
    CURRENCY:              str   = "PHP"
    PAYMENT_DUE_DAYS:      int   = 30
    DEFAULT_DELIVERY_RATE: float = 98.0    # PHP, when a delivery has no rate
    CARD_FEE_RATE:         float = 0.035   # 3.5 %
    EWALLET_FEE_RATE:      float = 0.025   # 2.5 % gcash / grab_pay / paymaya
    DEFAULT_FEE_RATE:      float = 0.035

    # Background sweep marking overdue payments
    OVERDUE_SWEEP_MINUTES: int = 60

    model_config = SettingsConfigDict(
        env_file=[".env", "../.env"],  # backend/ first, then the repo root
        case_sensitive=True,
        extra="ignore",
    )


settings = Settings()
