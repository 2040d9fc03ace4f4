"""
Configuration management for dbforge.

Loads config.yaml from the dbforge home directory ($DBFORGE_HOME, default
~/.config/dbforge). The file holds the shared database credentials and the
knobs of the build (template database, restore command, timeouts, logging).

An optional env_file is loaded with python-dotenv before the config is
resolved, so secrets can stay out of config.yaml; DBFORGE_DB_PASSWORD
overrides the password from the file.
"""

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv

from dbforge.scripts import NOTICE_TEMPLATES

PASSWORD_ENV_VAR = "DBFORGE_DB_PASSWORD"

REQUIRED_KEYS = ("hostname", "port", "username")


class ConfigError(Exception):
    """Configuration validation error."""
    pass


def get_dbforge_home() -> Path:
    """Directory holding config.yaml and .env."""
    home = os.environ.get("DBFORGE_HOME")
    if home:
        return Path(home).expanduser()
    return Path("~/.config/dbforge").expanduser()


@dataclass(frozen=True)
class Credentials:
    """
    Connection settings for one database.

    Frozen: every build takes its own copy through for_database() instead of
    changing a shared object, so concurrent builds never see each other's
    database name.
    """
    hostname: str
    port: int
    username: str
    password: Optional[str] = field(default=None, repr=False)
    database: Optional[str] = None

    def for_database(self, database: str) -> "Credentials":
        return replace(self, database=database)

    def connect_kwargs(self) -> dict[str, Any]:
        """Keyword arguments for asyncpg.connect()."""
        return {
            "host": self.hostname,
            "port": self.port,
            "user": self.username,
            "password": self.password,
            "database": self.database,
        }


@dataclass
class DbforgeConfig:
    """Complete dbforge configuration."""
    hostname: str
    port: int
    username: str
    password: Optional[str] = None
    maintenance_database: str = "postgres"
    template: str = "template1"
    restore_command: str = "pg_restore"
    restore_timeout: Optional[float] = 1800
    command_timeout: Optional[float] = None
    notice_language: str = "plpgsql"
    orm_installer: Optional[str] = None
    log_file: Optional[str] = None
    log_level: str = "INFO"
    log_format: str = "structured"
    env_file: Optional[str] = None

    @property
    def credentials(self) -> Credentials:
        return Credentials(
            hostname=self.hostname,
            port=self.port,
            username=self.username,
            password=self.password,
        )

    def get_log_file_path(self) -> Optional[Path]:
        if not self.log_file:
            return None
        return Path(self.log_file).expanduser()

    def validate(self) -> None:
        """Validate value ranges and enumerations."""
        if not isinstance(self.port, int) or not 0 < self.port < 65536:
            raise ConfigError(f"Invalid port: {self.port}")
        if self.notice_language not in NOTICE_TEMPLATES:
            raise ConfigError(
                f"Invalid notice_language '{self.notice_language}'. "
                f"Expected one of: {', '.join(sorted(NOTICE_TEMPLATES))}"
            )
        if self.log_format not in ("structured", "pretty"):
            raise ConfigError(f"Invalid log_format '{self.log_format}'")
        for name in ("restore_timeout", "command_timeout"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise ConfigError(f"{name} must be positive, got {value}")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DbforgeConfig":
        missing = [k for k in REQUIRED_KEYS if k not in data]
        if missing:
            raise ConfigError(f"Missing required config keys: {', '.join(missing)}")

        known = set(cls.__dataclass_fields__)
        unknown = sorted(k for k in data if k not in known)
        if unknown:
            raise ConfigError(f"Unknown config keys: {', '.join(unknown)}")

        try:
            port = int(data["port"])
        except (TypeError, ValueError):
            raise ConfigError(f"Invalid port: {data['port']!r}")

        config = cls(**{**data, "port": port})
        config.validate()
        return config


def default_config_dict(home: Path) -> dict[str, Any]:
    """Values written by `dbforge init`."""
    return {
        "hostname": "localhost",
        "port": 5432,
        "username": "admin",
        "password": None,
        "maintenance_database": "postgres",
        "template": "template1",
        "restore_command": "pg_restore",
        "restore_timeout": 1800,
        "command_timeout": None,
        "notice_language": "plpgsql",
        "orm_installer": None,
        "log_file": str(home / "logs" / "build.log"),
        "log_level": "INFO",
        "log_format": "structured",
        "env_file": str(home / ".env"),
    }


def load_config(config_path: Optional[Path] = None) -> DbforgeConfig:
    """
    Load dbforge configuration from YAML file.

    Args:
        config_path: Path to config file. Defaults to <dbforge home>/config.yaml

    Returns:
        DbforgeConfig instance

    Raises:
        FileNotFoundError: If the config file doesn't exist
        ConfigError: If config is invalid
    """
    if config_path is None:
        config_path = get_dbforge_home() / "config.yaml"

    if not config_path.exists():
        raise FileNotFoundError(
            f"dbforge config.yaml not found at {config_path}. Run `dbforge init` first."
        )

    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML syntax: {e}")

    if not data:
        raise ConfigError("Configuration file is empty")
    if not isinstance(data, dict):
        raise ConfigError("Configuration file must contain a mapping")

    env_file = data.get("env_file")
    if env_file:
        env_path = Path(env_file).expanduser()
        if env_path.exists():
            load_dotenv(env_path, override=False)

    password = os.environ.get(PASSWORD_ENV_VAR)
    if password:
        data = {**data, "password": password}

    return DbforgeConfig.from_dict(data)
