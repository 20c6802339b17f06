"""Application configuration."""
from collections import Counter
from functools import lru_cache
import math
from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""
    
    # App
    app_name: str = "Nudgely"
    debug: bool = False
    log_level: str = "INFO"
    app_url: str = "http://localhost:3000"
    
    # Database
    database_url: str = "sqlite+aiosqlite:///./data/nudgely.db"
    
    # Cron trigger
    cron_secret: str
    
    # Email
    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_from_email: str = "noreply@nudgely.app"
    
    # Scheduler
    tick_tolerance_minutes: int = 15
    scan_concurrency: int = 4
    per_nudge_timeout_seconds: float = 30.0
    pass_deadline_seconds: float = 240.0
    max_dispatch_attempts: int = 3
    follow_up_interval_hours: float = 18.0
    
    # Paths
    base_dir: Path = Path(__file__).parent
    templates_dir: Path = base_dir / "configs" / "templates"
    
    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @field_validator("cron_secret")
    @classmethod
    def validate_cron_secret(cls, value: str) -> str:
        """Fail closed if CRON_SECRET is weak or placeholder quality."""
        if not value:
            raise ValueError("CRON_SECRET must be set.")

        if len(value) < 32:
            raise ValueError("CRON_SECRET must be at least 32 characters.")

        weak_values = {"changeme", "changeme-in-production", "secret", "password", "test"}
        lowered = value.lower()
        if lowered in weak_values or "changeme" in lowered:
            raise ValueError("CRON_SECRET must not be a placeholder value.")

        counts = Counter(value)
        entropy_per_char = -sum((count / len(value)) * math.log2(count / len(value)) for count in counts.values())
        estimated_entropy_bits = entropy_per_char * len(value)
        if estimated_entropy_bits < 100:
            raise ValueError("CRON_SECRET entropy is too low; use a cryptographically random value.")

        return value

    @field_validator("tick_tolerance_minutes", "scan_concurrency", "max_dispatch_attempts")
    @classmethod
    def validate_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
