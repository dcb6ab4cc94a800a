from pydantic_settings import BaseSettings
from typing import List


class Settings(BaseSettings):
    env: str = "dev"
    log_level: str = "INFO"
    secret_key: str = "change_me_super_secret"
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 60 * 12
    database_url: str = "sqlite:///./counter_registry.db"
    backend_cors_origins: str = "http://localhost:5173"

    # Counter registry business defaults
    default_product_name: str = "Pub Crawl"
    walk_in_channel_name: str = "walk-in"
    after_cutoff_channels: str = "ecwid,walk-in"
    cash_tolerance: float = 0.01

    @property
    def cors_origins(self) -> List[str]:
        """Parse CORS origins from comma-separated string"""
        origins = self.backend_cors_origins
        return [origin.strip() for origin in origins.split(",") if origin.strip()]

    @property
    def after_cutoff_channel_names(self) -> set:
        """Lower-cased channel names allowed to record after cut-off bookings"""
        return {
            name.strip().lower()
            for name in self.after_cutoff_channels.split(",")
            if name.strip()
        }

    class Config:
        env_file = ".env"
        case_sensitive = False


settings = Settings()
