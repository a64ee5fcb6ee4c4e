from pydantic_settings import BaseSettings
from pydantic import field_validator
from decimal import Decimal
from typing import Optional, List


class Settings(BaseSettings):
    # Database Configuration
    database_url: Optional[str] = None
    db_username: Optional[str] = None
    db_password: Optional[str] = None
    db_host: str = "localhost"
    db_port: str = "5432"
    db_name: Optional[str] = None

    # Authentication (tokens are issued by the session layer, we only verify them)
    secret_key: str = "your-secret-key-here"
    algorithm: str = "HS256"
    access_token_expire_minutes: Optional[int] = 30

    # Quotes
    default_tax_rate: Decimal = Decimal("0")
    quote_validity_days: int = 60
    quote_number_prefix: str = "QT"

    # Work orders
    wo_number_prefix: str = "WO"

    # Logging
    log_level: str = "INFO"

    cors_origins: List[str] = ["http://localhost:4200", "http://127.0.0.1:4200", "http://localhost:3000"]

    @field_validator('algorithm', mode='before')
    @classmethod
    def parse_algorithm(cls, v):
        if v is None or v == '':
            return "HS256"
        return v

    @field_validator('access_token_expire_minutes', mode='before')
    @classmethod
    def parse_token_expire(cls, v):
        if v is None or v == '':
            return 30
        return int(v)

    @field_validator('default_tax_rate', mode='before')
    @classmethod
    def parse_tax_rate(cls, v):
        if v is None or v == '':
            return Decimal("0")
        return Decimal(str(v))

    @field_validator('log_level', mode='before')
    @classmethod
    def parse_log_level(cls, v):
        if v is None or v == '':
            return "INFO"
        return str(v).upper()

    @property
    def database_connection_url(self) -> str:
        """Build database URL from individual components or use direct URL"""
        # Prioritize PostgreSQL if individual components are available
        if all([self.db_username, self.db_password, self.db_host, self.db_port, self.db_name]):
            return f"postgresql://{self.db_username}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"
        elif self.database_url:
            return self.database_url
        else:
            return "sqlite:///./app.db"  # Fallback to SQLite

    class Config:
        env_file = ".env"


settings = Settings()
