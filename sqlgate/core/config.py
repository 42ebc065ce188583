from typing import Dict, List, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from sqlgate.core.exceptions import ConfigurationException

# Retention below this is rejected no matter what the environment says
COMPLIANCE_FLOOR_DAYS = 90


class ApiKeyEntry(BaseModel):
    """One hashed API key as it appears in the API_KEYS json map."""

    key_hash: str
    user_id: str
    display_name: Optional[str] = None
    roles: List[str] = Field(default_factory=list)


class Settings(BaseSettings):
    # Target SQL Server; may come from the secret store instead
    DATABASE_URL: Optional[str] = None
    # Audit store (asyncpg in production, aiosqlite in tests)
    AUDIT_DATABASE_URL: str

    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30
    API_KEYS: Dict[str, ApiKeyEntry] = Field(default_factory=dict)

    # Executor
    COMMAND_TIMEOUT_SECONDS: int = 30
    MAX_RETRY_ATTEMPTS: int = 3
    RETRY_BASE_DELAY_MS: int = 1000
    RETRY_MAX_DELAY_MS: int = 30000
    CIRCUIT_BREAKER_THRESHOLD: int = 5
    CIRCUIT_BREAKER_COOLDOWN_SECONDS: int = 30

    # Audit
    AUDIT_BUFFER_SIZE: int = 1000
    AUDIT_FLUSH_INTERVAL_SECONDS: float = 5.0
    AUDIT_COMPLIANCE_RETENTION_DAYS: int = 2555
    AUDIT_ROUTINE_RETENTION_DAYS: int = 90
    AUDIT_ELEVATED_ROLES: List[str] = Field(default_factory=lambda: ["auditor", "admin"])

    LOG_LEVEL: str = "INFO"
    RUN_MIGRATIONS: bool = True

    # This tells Pydantic to read from the .env file
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    def validate_ranges(self) -> None:
        """
        Reject settings combinations the gateway cannot run with.

        Raises:
            ConfigurationException: naming the first offending key.
        """
        if not 1 <= self.COMMAND_TIMEOUT_SECONDS <= 300:
            raise ConfigurationException(
                "COMMAND_TIMEOUT_SECONDS",
                f"COMMAND_TIMEOUT_SECONDS must be between 1 and 300, got {self.COMMAND_TIMEOUT_SECONDS}",
            )
        if self.MAX_RETRY_ATTEMPTS < 0:
            raise ConfigurationException(
                "MAX_RETRY_ATTEMPTS", "MAX_RETRY_ATTEMPTS cannot be negative"
            )
        if self.RETRY_BASE_DELAY_MS <= 0 or self.RETRY_MAX_DELAY_MS < self.RETRY_BASE_DELAY_MS:
            raise ConfigurationException(
                "RETRY_BASE_DELAY_MS",
                "RETRY_BASE_DELAY_MS must be positive and not above RETRY_MAX_DELAY_MS",
            )
        if self.CIRCUIT_BREAKER_THRESHOLD < 1 or self.CIRCUIT_BREAKER_COOLDOWN_SECONDS <= 0:
            raise ConfigurationException(
                "CIRCUIT_BREAKER_THRESHOLD",
                "Circuit breaker threshold and cooldown must be positive",
            )
        if not 1 <= self.AUDIT_BUFFER_SIZE <= 100000:
            raise ConfigurationException(
                "AUDIT_BUFFER_SIZE",
                f"AUDIT_BUFFER_SIZE must be between 1 and 100000, got {self.AUDIT_BUFFER_SIZE}",
            )
        if self.AUDIT_FLUSH_INTERVAL_SECONDS <= 0:
            raise ConfigurationException(
                "AUDIT_FLUSH_INTERVAL_SECONDS", "AUDIT_FLUSH_INTERVAL_SECONDS must be positive"
            )
        for key in ("AUDIT_COMPLIANCE_RETENTION_DAYS", "AUDIT_ROUTINE_RETENTION_DAYS"):
            if getattr(self, key) < COMPLIANCE_FLOOR_DAYS:
                raise ConfigurationException(
                    key, f"{key} must be at least {COMPLIANCE_FLOOR_DAYS} days"
                )
        if self.AUDIT_ROUTINE_RETENTION_DAYS > self.AUDIT_COMPLIANCE_RETENTION_DAYS:
            raise ConfigurationException(
                "AUDIT_ROUTINE_RETENTION_DAYS",
                "Routine retention cannot exceed compliance retention",
            )


# Create a single instance of the settings to use everywhere
settings = Settings()
