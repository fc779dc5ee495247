import socket
from pathlib import Path
from typing import List, Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
    )

    # Security (admin API)
    MASTER_KEY: Optional[str] = Field(
        None, min_length=32, description="Secret used to sign API tokens (min 32 chars)"
    )
    ADMIN: str = "admin"
    ADMIN_PASSWORD: Optional[str] = Field(None, description="Admin password (plaintext or bcrypt hash)")

    # JWT
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = 1440
    JWT_ALGORITHM: str = "HS256"

    # Filesystem layout
    CA_DIR: Path = Path("/etc/mongoCA")
    SSL_DIR: Path = Path("/etc/ssl/mongodb")
    CLIENT_DIR: Path = Path("/etc/mongoCA/clients")
    FAILSAFE_DIR: Path = Path("/var/lib/trustguard/failsafe")

    # CA subject and issuance defaults
    CA_COUNTRY: str = Field("US", min_length=2, max_length=2)
    CA_STATE: str = "Unknown"
    CA_CITY: str = "Unknown"
    CA_ORG: str = "HMS-MongoDB-CA"
    CA_EMAIL: str = "admin@localhost"
    CA_COMMON_NAME: str = "MongoDB CA"
    DEFAULT_KEY_SIZE: int = Field(2048, ge=2048)
    CA_VALIDITY_DAYS: int = Field(3650, ge=1)
    SERVER_VALIDITY_DAYS: int = Field(365, ge=1)
    CLIENT_VALIDITY_DAYS: int = Field(90, ge=1)

    # CRL
    CRL_VALIDITY_DAYS: int = Field(30, ge=1)

    # Managed database service
    SERVICE_NAME: str = "mongod"
    SERVICE_CERT_NAME: str = "mongodb"
    SERVICE_USER: Optional[str] = "mongodb"
    SERVICE_GROUP: Optional[str] = "mongodb"
    SERVICE_CONFIG_PATH: Path = Path("/etc/mongod.conf")
    SERVICE_VALIDATE_COMMAND: Optional[str] = "mongod --config {config} --configtest"
    SERVICE_PING_COMMAND: Optional[str] = None
    SERVICE_VERSION_COMMAND: str = "mongod --version"
    SERVER_HOSTNAME: Optional[str] = None
    SERVER_ALT_NAMES: List[str] = []
    CLIENT_ROLES: List[str] = ["root", "admin", "app", "backup"]

    # Reload / restart / rollback
    GRACEFUL_RELOAD_MIN_VERSION: str = "4.4"
    COMMAND_TIMEOUT_SECONDS: float = Field(60.0, gt=0)
    VALIDATION_ATTEMPTS: int = Field(15, ge=1)
    VALIDATION_INTERVAL_SECONDS: float = Field(2.0, ge=0)

    # Rotation
    RENEW_BEFORE_DAYS: int = Field(30, ge=0)
    EXPIRY_WARNING_DAYS: int = Field(30, ge=0)
    ROTATION_LOCK_TTL_SECONDS: int = Field(3600, ge=1)
    SUPERSEDED_POLICY: Literal["retain", "revoke"] = "retain"

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    DEBUG: bool = False
    LOG_LEVEL: str = "info"

    @property
    def lkg_dir(self) -> Path:
        return self.FAILSAFE_DIR / "lkg"

    @property
    def rotation_lock_path(self) -> Path:
        return self.FAILSAFE_DIR / "rotation.lock"

    @property
    def server_hostname(self) -> str:
        return self.SERVER_HOSTNAME or socket.getfqdn()

    @property
    def subject_defaults(self) -> dict:
        return {
            "C": self.CA_COUNTRY,
            "ST": self.CA_STATE,
            "L": self.CA_CITY,
            "O": self.CA_ORG,
        }


settings = Settings()
