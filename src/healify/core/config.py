from pydantic_settings import BaseSettings
from pydantic import Field, field_validator
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    # Service Configuration
    APP_PORT: int = Field(default=5000, description="Port for FastAPI service")
    API_PREFIX: str = Field(default="/api/v1", description="Prefix for versioned API routes")
    ADMIN_API_KEY: str = Field(default="", description="Key required to register projects; empty disables registration")

    # Logging Configuration
    LOG_LEVEL: str = Field(default="INFO", description="Root log level")
    LOG_DIR: str = Field(default="logs", description="Directory for rotating log files")
    STRUCTURED_LOGGING: bool = Field(default=False, description="Write JSON log files in addition to console output")

    # Storage Configuration
    DATABASE_URL: str = Field(default="memory", description="'memory' or a path to a SQLite database file")
    SNAPSHOT_DIR: str = Field(default="", description="Directory for stored DOM snapshots; empty keeps them in memory")

    # Healing Configuration
    HEALING_CONFIG_PATH: str = Field(default="config/healing.yaml", description="YAML file with healing thresholds and weights")
    MAX_SNAPSHOT_BYTES: int = Field(default=2 * 1024 * 1024, description="Largest accepted DOM snapshot in bytes")
    HISTORY_LOOKBACK: int = Field(default=20, description="Past healing events consulted per test")

    @field_validator('LOG_LEVEL')
    @classmethod
    def validate_log_level(cls, v):
        """Validate that LOG_LEVEL is a standard logging level."""
        if v.upper() not in ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']:
            raise ValueError(f"LOG_LEVEL must be a standard logging level, got '{v}'")
        return v.upper()

    @field_validator('MAX_SNAPSHOT_BYTES')
    @classmethod
    def validate_max_snapshot_bytes(cls, v):
        """Validate that MAX_SNAPSHOT_BYTES is positive."""
        if v <= 0:
            raise ValueError(f"MAX_SNAPSHOT_BYTES must be positive, got {v}")
        return v

    @field_validator('HISTORY_LOOKBACK')
    @classmethod
    def validate_history_lookback(cls, v):
        """Validate that HISTORY_LOOKBACK is between 1 and 500."""
        if v < 1 or v > 500:
            raise ValueError(f"HISTORY_LOOKBACK must be between 1 and 500, got {v}")
        return v

    class Config:
        env_file = ".env"
        env_file_encoding = 'utf-8'
        extra = 'allow'


settings = Settings()
