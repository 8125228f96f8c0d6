# settings.py
from typing import List

from pydantic_settings import BaseSettings

# Placeholder shipped in .env.example; treated the same as "no secret".
WEBHOOK_SECRET_PLACEHOLDER = "whsec_your_webhook_secret_here"


class Settings(BaseSettings):
    # Project
    PROJECT_NAME: str = "MapMarked Storefront"
    APP_ENV: str = "development"  # development | preview | production
    PUBLIC_BASE_URL: str = "https://mapmarked.com"
    ALLOWED_RETURN_HOSTS: str = "mapmarked.com,www.mapmarked.com,localhost"
    # Where already-hosted renders may live; subdomains match too
    HOSTED_IMAGE_HOSTS: str = "public.blob.vercel-storage.com"

    # Stripe
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""

    # Printful
    PRINTFUL_API_KEY: str = ""
    PRINTFUL_API_URL: str = "https://api.printful.com"
    PRINTFUL_TIMEOUT: int = 60

    # Render server (headless map capture)
    RENDER_SERVER_URL: str = ""
    RENDER_SECRET: str = ""
    RENDER_TIMEOUT: int = 30

    # Public map tiles token (safe to hand to the browser)
    MAPBOX_TOKEN: str = ""

    # Cloudinary (optional, keeps mockups alive past Printful's temp URLs)
    CLOUDINARY_CLOUD_NAME: str = ""
    CLOUDINARY_API_KEY: str = ""
    CLOUDINARY_API_SECRET: str = ""

    # Order storage
    ORDER_STORE_BACKEND: str = "memory"  # memory | sql
    DATABASE_URL: str = "sqlite+aiosqlite:///./mapmarked.db"
    PENDING_ORDER_TTL_SECONDS: int = 60 * 60
    COMPLETED_ORDER_TTL_SECONDS: int = 60 * 60 * 24
    STORE_SWEEP_INTERVAL_SECONDS: int = 10 * 60
    PAYMENT_CACHE_TTL_SECONDS: int = 60 * 60 * 24

    # Polling budgets
    MOCKUP_POLL_INTERVAL_SECONDS: float = 1.0
    MOCKUP_MAX_ATTEMPTS: int = 30
    STANDALONE_MOCKUP_MAX_ATTEMPTS: int = 60
    FILE_READY_MAX_ATTEMPTS: int = 30
    RENDER_POLL_INTERVAL_SECONDS: float = 2.0
    RENDER_MAX_ATTEMPTS: int = 45

    # Frontend URL (CORS)
    FRONTEND_URL: str = "http://localhost:3000"
    CORS_ORIGINS: str = ""

    class Config:
        env_file = ".env"
        case_sensitive = True

    @property
    def is_production(self) -> bool:
        return self.APP_ENV.strip().lower() == "production"

    @property
    def webhook_secret_configured(self) -> bool:
        secret = self.STRIPE_WEBHOOK_SECRET.strip()
        return bool(secret) and secret != WEBHOOK_SECRET_PLACEHOLDER

    @property
    def cloudinary_configured(self) -> bool:
        return all([self.CLOUDINARY_CLOUD_NAME, self.CLOUDINARY_API_KEY, self.CLOUDINARY_API_SECRET])

    @property
    def allowed_return_hosts(self) -> List[str]:
        return [h.strip().lower() for h in self.ALLOWED_RETURN_HOSTS.split(",") if h.strip()]

    @property
    def hosted_image_hosts(self) -> List[str]:
        return [h.strip().lower() for h in self.HOSTED_IMAGE_HOSTS.split(",") if h.strip()]

    @property
    def cors_origins(self) -> List[str]:
        origins = [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]
        return origins or [self.FRONTEND_URL]


# Instantiate settings globally
settings = Settings()
