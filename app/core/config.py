"""
Configuration management using Pydantic settings.
"""
from typing import List, Union
import os
from pydantic import AnyHttpUrl, validator
from pydantic_settings import BaseSettings
from dotenv import load_dotenv
load_dotenv()



class Settings(BaseSettings):
    """Application settings."""

    # API Configuration
    API_V1_PREFIX: str = "/api/v1"
    PROJECT_NAME: str = "Assessment Booking Service"
    ENV: str = os.getenv("ENV", "development")
    DEBUG: bool = True

    # Database Configuration
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./assessment_booking.db")
    APPLICATION_URL: str = os.getenv("APPLICATION_URL", "http://localhost:8000")

    # JWT Configuration
    SECRET_KEY: str = os.getenv("SECRET_KEY", "change-me")
    ALGORITHM: str = os.getenv("ALGORITHM", "HS256")
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    # Payment gateway (Razorpay) Configuration
    RAZORPAY_KEY_ID: str = os.getenv("RAZORPAY_KEY_ID", "")
    RAZORPAY_KEY_SECRET: str = os.getenv("RAZORPAY_KEY_SECRET", "")
    RAZORPAY_WEBHOOK_SECRET: str = os.getenv("RAZORPAY_WEBHOOK_SECRET", "")
    RAZORPAY_API_BASE: str = os.getenv("RAZORPAY_API_BASE", "https://api.razorpay.com/v1")
    GATEWAY_TIMEOUT_SECONDS: float = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", 10))
    PAYMENT_CURRENCY: str = os.getenv("PAYMENT_CURRENCY", "INR")

    # When false, confirmation events are only matched by correlation token
    # or by (test, user); coarser matches are rejected as unmatchable.
    PAYMENT_MATCH_COARSE_FALLBACK: bool = (
        os.getenv("PAYMENT_MATCH_COARSE_FALLBACK", "true").lower() == "true"
    )

    # Exam Configuration
    TIMEZONE: str = os.getenv("TIMEZONE", "Asia/Kolkata")
    SUBMISSION_DEDUPE_SECONDS: int = int(os.getenv("SUBMISSION_DEDUPE_SECONDS", 60))
    START_TIME_ESTIMATE_CAP_MINUTES: int = int(os.getenv("START_TIME_ESTIMATE_CAP_MINUTES", 10))

    # CORS Configuration
    BACKEND_CORS_ORIGINS: Union[List[AnyHttpUrl], str] = "*"

    @validator("BACKEND_CORS_ORIGINS", pre=True)
    def assemble_cors_origins(cls, v):
        if v == "*" or v == ["*"]:
            return "*"
        if isinstance(v, str):
            return [i.strip() for i in v.split(",")]
        return v

    @property
    def callback_url(self) -> str:
        """URL the checkout posts back to after payment."""
        return f"{self.APPLICATION_URL.rstrip('/')}{self.API_V1_PREFIX}/payments/callback"

    class Config:
        """Pydantic config."""

        env_file = ".env"
        case_sensitive = True


settings = Settings()
