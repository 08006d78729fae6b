import os
from pydantic_settings import BaseSettings
from typing import Dict, List, Optional


class Settings(BaseSettings):
    DATABASE_URL: Optional[str] = os.getenv("DATABASE_URL")

    SESSION_SECRET: Optional[str] = os.getenv("SESSION_SECRET")
    SESSION_COOKIE_NAME: str = "vitalis-token"

    # OAuth state tokens. The first secret signs, previous secrets only verify.
    OAUTH_STATE_SECRET: Optional[str] = os.getenv("OAUTH_STATE_SECRET")
    OAUTH_STATE_PREVIOUS_SECRETS: str = os.getenv("OAUTH_STATE_PREVIOUS_SECRETS", "")
    OAUTH_STATE_TTL_SECONDS: int = int(os.getenv("OAUTH_STATE_TTL_SECONDS", "600"))

    OAUTH_REDIRECT_BASE_URL: str = os.getenv("OAUTH_REDIRECT_BASE_URL", "http://localhost:8000")
    APP_URL: str = os.getenv("APP_URL", "http://localhost:3000")

    FITBIT_CLIENT_ID: Optional[str] = os.getenv("FITBIT_CLIENT_ID")
    FITBIT_CLIENT_SECRET: Optional[str] = os.getenv("FITBIT_CLIENT_SECRET")
    SAMSUNG_CLIENT_ID: Optional[str] = os.getenv("SAMSUNG_CLIENT_ID")
    SAMSUNG_CLIENT_SECRET: Optional[str] = os.getenv("SAMSUNG_CLIENT_SECRET")
    OURA_CLIENT_ID: Optional[str] = os.getenv("OURA_CLIENT_ID")
    OURA_CLIENT_SECRET: Optional[str] = os.getenv("OURA_CLIENT_SECRET")
    APPLE_HEALTH_CLIENT_ID: Optional[str] = os.getenv("APPLE_HEALTH_CLIENT_ID")
    APPLE_HEALTH_CLIENT_SECRET: Optional[str] = os.getenv("APPLE_HEALTH_CLIENT_SECRET")
    APPLE_HEALTH_RELAY_URL: str = os.getenv("APPLE_HEALTH_RELAY_URL", "https://healthkit-relay.vitalis.health/v1")
    XIAOMI_CLIENT_ID: Optional[str] = os.getenv("XIAOMI_CLIENT_ID")
    XIAOMI_CLIENT_SECRET: Optional[str] = os.getenv("XIAOMI_CLIENT_SECRET")
    FIRE_BOLTT_CLIENT_ID: Optional[str] = os.getenv("FIRE_BOLTT_CLIENT_ID")
    FIRE_BOLTT_CLIENT_SECRET: Optional[str] = os.getenv("FIRE_BOLTT_CLIENT_SECRET")
    FIRE_BOLTT_API_URL: str = os.getenv("FIRE_BOLTT_API_URL", "https://api.fireboltt.com/v1")

    HTTP_TIMEOUT_SECONDS: float = float(os.getenv("HTTP_TIMEOUT_SECONDS", "30"))
    RATE_LIMIT_MAX_RETRIES: int = int(os.getenv("RATE_LIMIT_MAX_RETRIES", "3"))
    TOKEN_REFRESH_MARGIN_SECONDS: int = int(os.getenv("TOKEN_REFRESH_MARGIN_SECONDS", "300"))

    SYNC_PROVIDER_TIMEOUT_SECONDS: float = float(os.getenv("SYNC_PROVIDER_TIMEOUT_SECONDS", "60"))
    SYNC_TOTAL_TIMEOUT_SECONDS: float = float(os.getenv("SYNC_TOTAL_TIMEOUT_SECONDS", "180"))
    SYNC_DEFAULT_WINDOW_DAYS: int = int(os.getenv("SYNC_DEFAULT_WINDOW_DAYS", "7"))

    SYNC_WORKER_ENABLED: bool = os.getenv("SYNC_WORKER_ENABLED", "false").lower() == "true"
    SYNC_WORKER_INTERVAL_MINUTES: int = int(os.getenv("SYNC_WORKER_INTERVAL_MINUTES", "60"))

    DEMO_MODE: bool = os.getenv("DEMO_MODE", "false").lower() == "true"

    CORS_ORIGINS: list = ["http://localhost:3000", "http://127.0.0.1:3000"]

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    ENVIRONMENT: str = os.getenv("NODE_ENV", "development")

    def validate_database_url(self):
        if not self.DATABASE_URL:
            raise ValueError(
                "DATABASE_URL environment variable is required for database operations. "
                "Please set it to your PostgreSQL connection string."
            )

    def provider_client_credentials(self, env_prefix: str) -> Dict[str, str]:
        """Client id/secret for a provider, keyed by its env prefix (e.g. ``FITBIT``)."""
        return {
            "client_id": getattr(self, f"{env_prefix}_CLIENT_ID", None) or "",
            "client_secret": getattr(self, f"{env_prefix}_CLIENT_SECRET", None) or "",
        }

    def state_signing_secrets(self) -> List[str]:
        """Active secret first, then rotated-out secrets still accepted for verification."""
        secrets = []
        if self.OAUTH_STATE_SECRET:
            secrets.append(self.OAUTH_STATE_SECRET)
        for secret in self.OAUTH_STATE_PREVIOUS_SECRETS.split(","):
            secret = secret.strip()
            if secret and secret not in secrets:
                secrets.append(secret)
        return secrets

    class Config:
        env_file = ".env"
        extra = "ignore"


settings = Settings()
