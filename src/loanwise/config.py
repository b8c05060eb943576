"""Configuration settings for the application."""

from urllib.parse import quote

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database configuration
    postgres_user: str = "postgres"
    postgres_password: str = "postgres"
    postgres_db: str = "loanwise"
    postgres_host: str = "localhost"
    postgres_port: int = 5432

    # Connection pool
    db_pool_size: int = 5
    db_max_overflow: int = 10
    db_pool_recycle: int = 3600

    # Application settings
    debug: bool = False

    # Loan admission retries on deadlock / serialization failure
    loan_max_attempts: int = 3

    # slowapi default limit applied to every route
    rate_limit_default: str = "120/minute"

    @property
    def database_url(self) -> str:
        """Construct the database URL for async PostgreSQL connection."""
        base_url = (
            f"postgresql+asyncpg://{quote(self.postgres_user, safe='')}:{quote(self.postgres_password, safe='')}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )
        # Add SSL for Azure PostgreSQL
        if "azure" in self.postgres_host.lower() or "postgres.database" in self.postgres_host.lower():
            return f"{base_url}?ssl=require"
        return base_url


# Global settings instance
settings = Settings()
