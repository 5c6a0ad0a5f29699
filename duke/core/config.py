"""
Configuration loading with schema validation.
Reads config/settings.yaml, substitutes ${VAR:default} from the environment
(.env included) and validates the result with pydantic.
"""

import os
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

from ..utils.exceptions import ConfigError
from ..utils.logger import get_logger

logger = get_logger(__name__)

# Load environment variables
load_dotenv()

CONFIG_DIR = Path("config")
SETTINGS_FILE = CONFIG_DIR / "settings.yaml"

APP_NAME = "Senior Duke"
AUTH_COOKIE = "Auth"


class SmtpSettings(BaseModel):
    host: str = "localhost"
    port: int = 587
    user: str = ""
    password: str = ""
    sender: str = "noreply@localhost"
    starttls: bool = True
    timeout_seconds: float = 30.0


class LoggingSettings(BaseModel):
    level: str = "INFO"
    format: str = "json"
    file_path: Optional[str] = None
    max_bytes: int = 10485760
    backup_count: int = 5


class ServerSettings(BaseModel):
    host: str = "localhost"
    http_bind: str = "127.0.0.1:8080"
    https_bind: Optional[str] = None
    tls_key: Optional[str] = None
    tls_cert: Optional[str] = None
    secure_cookies: bool = False

    def bind_address(self) -> tuple:
        """(host, port) to listen on; HTTPS when both TLS files are set."""
        bind = self.https_bind if self.tls_enabled and self.https_bind else self.http_bind
        host, _, port = bind.rpartition(":")
        return host or "127.0.0.1", int(port)

    @property
    def tls_enabled(self) -> bool:
        return bool(self.tls_key and self.tls_cert)


class AuthSettings(BaseModel):
    session_ttl_seconds: int = 15 * 60
    link_ttl_seconds: int = 5 * 24 * 60 * 60
    bcrypt_rounds: int = Field(default=12, ge=4, le=31)
    secret_key: str = ""
    owner_email: Optional[str] = None
    owner_password: Optional[str] = None


class NotificationSettings(BaseModel):
    enabled: bool = True
    sleep_seconds: int = 500
    interval_seconds: int = 24 * 60 * 60


class Settings(BaseModel):
    fs_root: Path = Path("data")
    catalogue_path: Path = CONFIG_DIR / "awards.yaml"
    server: ServerSettings = Field(default_factory=ServerSettings)
    smtp: SmtpSettings = Field(default_factory=SmtpSettings)
    auth: AuthSettings = Field(default_factory=AuthSettings)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @property
    def db_root(self) -> Path:
        return self.fs_root / "db"

    @property
    def sections_root(self) -> Path:
        return self.fs_root / "sections"


def _substitute_env_vars(value: Any) -> Any:
    """Recursively substitute environment variables"""
    if isinstance(value, str):
        if value.startswith("${") and value.endswith("}"):
            var_expr = value[2:-1]
            if ":" in var_expr:
                var_name, default = var_expr.split(":", 1)
                return os.getenv(var_name.strip(), default.strip())
            else:
                return os.getenv(var_expr, value)
    elif isinstance(value, dict):
        return {k: _substitute_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [_substitute_env_vars(item) for item in value]
    return value


def load_settings(path: Optional[Path] = None) -> Settings:
    """Load and validate settings.yaml"""
    settings_path = Path(path or os.getenv("DUKE_SETTINGS", SETTINGS_FILE))
    if not settings_path.exists():
        raise ConfigError(f"Settings file not found: {settings_path}")

    try:
        with open(settings_path, "r", encoding="utf-8") as f:
            raw_data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse {settings_path}: {e}")

    processed_data = _substitute_env_vars(raw_data)
    try:
        settings = Settings(**processed_data)
    except ValidationError as e:
        raise ConfigError(f"Invalid settings in {settings_path}: {e}")

    logger.debug("Settings loaded", path=str(settings_path), fs_root=str(settings.fs_root))
    return settings
