"""
Configuration for pgrename runs.

Sources, lowest priority first:
- Built-in defaults (MigrationConfig field defaults)
- YAML config file (--config, $PGRENAME_CONFIG, or ./pgrename.yaml)
- Environment variables (DATABASE_URL, PGRENAME_EXPECTED_DATABASE)
- CLI flags (applied by the CLI through MigrationConfig.with_overrides)
"""

import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .errors import ConfigError

DEFAULT_CONFIG_FILE = Path("pgrename.yaml")
DEFAULT_BASE_PATH = Path.home() / ".pgrename"

ENV_CONFIG = "PGRENAME_CONFIG"
ENV_DATABASE_URL = "DATABASE_URL"
ENV_EXPECTED_DATABASE = "PGRENAME_EXPECTED_DATABASE"


@dataclass
class MigrationConfig:
    """Settings shared by every component of a migration run."""
    database_url: Optional[str] = None
    expected_database: str = "personalAI"
    schema: str = "public"
    audit_table: str = "AuditLog"
    lock_name: str = "table_rename"
    backup_dir: Path = field(default_factory=lambda: DEFAULT_BASE_PATH / "backups")
    log_dir: Path = field(default_factory=lambda: DEFAULT_BASE_PATH / "logs")
    pg_dump_path: str = "pg_dump"
    backup_timeout: float = 600.0
    lock_timeout: float = 10.0
    statement_timeout: float = 60.0
    timeout_per_million_rows: float = 30.0
    # Optional overrides of the static mapping table (see migrations.registry)
    tables: Optional[List[Dict[str, Any]]] = None
    constraints: Optional[List[Dict[str, Any]]] = None
    columns: Optional[List[Dict[str, Any]]] = None

    def __post_init__(self):
        self.backup_dir = Path(self.backup_dir).expanduser()
        self.log_dir = Path(self.log_dir).expanduser()
        for name in ("backup_timeout", "lock_timeout", "statement_timeout",
                     "timeout_per_million_rows"):
            value = getattr(self, name)
            try:
                value = float(value)
            except (TypeError, ValueError):
                raise ConfigError(f"{name} must be a number, got {value!r}")
            if value < 0:
                raise ConfigError(f"{name} must be >= 0, got {value}")
            setattr(self, name, value)
        if not self.schema:
            raise ConfigError("schema must not be empty")
        if not self.expected_database:
            raise ConfigError("expected_database must not be empty")

    def require_database_url(self) -> str:
        """Return the connection string or raise ConfigError."""
        if not self.database_url:
            raise ConfigError(
                f"No database connection string: set {ENV_DATABASE_URL} "
                "or pass --database-url"
            )
        return self.database_url

    def transaction_timeout(self, largest_rows: int = 0) -> float:
        """Statement timeout in seconds scaled by the largest table involved."""
        scaled = self.timeout_per_million_rows * (max(largest_rows, 0) / 1_000_000)
        return self.statement_timeout + scaled

    def with_overrides(self, **overrides: Any) -> "MigrationConfig":
        """Return a copy with non-None overrides applied."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging, with the password masked."""
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data["backup_dir"] = str(self.backup_dir)
        data["log_dir"] = str(self.log_dir)
        data["database_url"] = mask_url(self.database_url)
        return data


def mask_url(url: Optional[str]) -> Optional[str]:
    """Hide the password part of a connection URL."""
    if not url or "@" not in url or "://" not in url:
        return url
    scheme, rest = url.split("://", 1)
    credentials, host = rest.rsplit("@", 1)
    if ":" in credentials:
        user = credentials.split(":", 1)[0]
        return f"{scheme}://{user}:***@{host}"
    return url


def find_config_file(explicit: Optional[Path] = None) -> Optional[Path]:
    """Locate the YAML config file.

    Priority: explicit path > $PGRENAME_CONFIG > ./pgrename.yaml.
    """
    if explicit:
        path = Path(explicit)
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")
        return path
    env_path = os.getenv(ENV_CONFIG)
    if env_path:
        path = Path(env_path)
        if not path.exists():
            raise ConfigError(f"Config file from ${ENV_CONFIG} not found: {path}")
        return path
    if DEFAULT_CONFIG_FILE.exists():
        return DEFAULT_CONFIG_FILE
    return None


def load_config(config_path: Optional[Path] = None) -> MigrationConfig:
    """Build a MigrationConfig from file and environment.

    Raises:
        ConfigError: If the file is unreadable, not a mapping, or has
                     unknown keys or invalid values.
    """
    data: Dict[str, Any] = {}
    path = find_config_file(config_path)
    if path is not None:
        try:
            data = yaml.safe_load(path.read_text()) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Failed to read config {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"Config {path} must contain a mapping")

    known = {f.name for f in fields(MigrationConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigError(f"Unknown config keys: {', '.join(unknown)}")

    env_url = os.getenv(ENV_DATABASE_URL)
    if env_url:
        data["database_url"] = env_url
    env_expected = os.getenv(ENV_EXPECTED_DATABASE)
    if env_expected:
        data["expected_database"] = env_expected

    return MigrationConfig(**data)
