"""
Configuration management for the application.
Loads settings from environment variables using Pydantic Settings.
"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Database Configuration
    DATABASE_URL: str

    @property
    def database_url_asyncpg(self) -> str:
        """
        Transform DATABASE_URL to use the appropriate async driver.
        - PostgreSQL: postgresql+asyncpg://...
        - SQLite: sqlite+aiosqlite:///...
        """
        if self.DATABASE_URL.startswith("postgresql://"):
            return self.DATABASE_URL.replace("postgresql://", "postgresql+asyncpg://", 1)
        elif self.DATABASE_URL.startswith("postgres://"):
            return self.DATABASE_URL.replace("postgres://", "postgresql+asyncpg://", 1)
        elif self.DATABASE_URL.startswith("sqlite://"):
            return self.DATABASE_URL.replace("sqlite://", "sqlite+aiosqlite://", 1)
        return self.DATABASE_URL

    # Security
    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 480

    # Application
    APP_NAME: str = "GymDesk API"
    DEBUG: bool = False
    CORS_ORIGINS: str = "http://localhost:5173,http://localhost:3000"
    DEFAULT_TIMEZONE: str = "Asia/Kolkata"

    # Front-end facing environment (served to the SPA at startup)
    BACKEND_URL: str = "http://localhost:8000"
    PUBLIC_API_KEY: str = ""
    GATEWAY_PUBLISHABLE_KEY: str = ""

    # Razorpay Payment Configuration
    # Platform-wide default pair, used when a gym has not connected its own account
    RAZORPAY_KEY_ID: str = ""
    RAZORPAY_KEY_SECRET: str = ""
    # 64 hex chars (AES-256) used to encrypt per-gym key secrets at rest
    RAZORPAY_ENCRYPTION_KEY: str = ""
    RAZORPAY_BASE_URL: str = "https://api.razorpay.com/v1"
    RAZORPAY_CHECKOUT_URL: str = "https://checkout.razorpay.com/v1/checkout.js"
    PAYMENT_CURRENCY: str = "INR"

    # Purchase limits (rupees)
    MAX_ORDER_AMOUNT: float = 1_000_000
    MAX_TRAINER_FEE: float = 500_000

    # Network timeouts (seconds)
    DEFAULT_TIMEOUT_SECONDS: float = 15.0
    AUTH_TIMEOUT_SECONDS: float = 12.0
    SHORT_TIMEOUT_SECONDS: float = 8.0
    GATEWAY_TIMEOUT_SECONDS: float = 30.0
    AUTH_RETRY_ATTEMPTS: int = 2

    # Client cache
    CACHE_TTL_SECONDS: int = 300

    class Config:
        env_file = ".env"
        case_sensitive = True


# Singleton instance - import this in other modules
settings = Settings()
