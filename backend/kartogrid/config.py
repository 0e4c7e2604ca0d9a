import json
import logging
import os
from pathlib import Path
from typing import Any, Dict

from dotenv import load_dotenv

from .exceptions import ConfigError

load_dotenv()

DATABASE_URL = os.getenv("KARTOGRID_DATABASE_URL", "sqlite:///./kartogrid.db")
DEFAULT_PROJ = os.getenv("KARTOGRID_DEFAULT_PROJ", "google")
DEFAULT_THREADS = int(os.getenv("KARTOGRID_THREADS", "4"))
LOG_LEVEL = os.getenv("KARTOGRID_LOG_LEVEL", "INFO")
CORS_ORIGINS = [
    o.strip()
    for o in os.getenv("KARTOGRID_CORS_ORIGINS", "http://localhost:3000").split(",")
    if o.strip()
]

# JDBC-style driver names from older config files -> SQLAlchemy dialects
DRIVER_DIALECTS = {
    "postgresql": "postgresql+psycopg2",
    "postgres": "postgresql+psycopg2",
    "sqlite": "sqlite",
}


def configure_logging(level: str = LOG_LEVEL) -> None:
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def database_url_from_config(section: Dict[str, Any]) -> str:
    """
    Build a SQLAlchemy URL from a "database" config section:
        {"driver": "PostgreSQL", "host": "localhost:5432", "name": "grid",
         "username": "...", "password": "...", "maxConnections": 10}
    """
    driver = str(section.get("driver") or "").lower()
    dialect = DRIVER_DIALECTS.get(driver)
    if dialect is None:
        raise ConfigError(f"Unsupported database driver: {section.get('driver')!r}")

    if dialect == "sqlite":
        name = section.get("name")
        if not name:
            raise ConfigError("database.name is required for sqlite")
        return f"sqlite:///{name}"

    for key in ("host", "name", "username"):
        if not section.get(key):
            raise ConfigError(f"database.{key} is required")

    host = section["host"]
    if section.get("port") and ":" not in str(host):
        host = f"{host}:{section['port']}"

    password = section.get("password") or ""
    auth = section["username"] if not password else f"{section['username']}:{password}"
    return f"{dialect}://{auth}@{host}/{section['name']}"


def load_config_file(path) -> Dict[str, Any]:
    """
    Read a JSON config file. Returns {"database_url": ..., "pool_size": ...}.
    """
    p = Path(path)
    if not p.exists():
        raise ConfigError(
            f"Could not find config file {p}. Use --config to specify a path to a config"
        )
    try:
        config = json.loads(p.read_text())
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in {p}: {e}") from e

    section = config.get("database")
    if not isinstance(section, dict):
        raise ConfigError(f"{p} has no 'database' section")

    return {
        "database_url": database_url_from_config(section),
        "pool_size": section.get("maxConnections"),
    }
