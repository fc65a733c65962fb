import logging
import os
from typing import Mapping, Optional, Protocol

from pydantic import BaseModel, Field

from .tables import SystemConfigRow

logger = logging.getLogger(__name__)

USER_REFUND_FLAG = "user_refund"


class Settings(BaseModel):
    database_url: str = "sqlite:///./merchant_ledger.db"
    db_lock_timeout: float = Field(default=30.0, gt=0)
    plugin_timeout_seconds: float = Field(default=10.0, gt=0)
    notify_timeout_seconds: float = Field(default=5.0, gt=0)
    admin_notify_url: Optional[str] = None
    admin_notify_key: Optional[str] = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        values = {
            "database_url": os.getenv("DATABASE_URL"),
            "db_lock_timeout": os.getenv("DB_LOCK_TIMEOUT"),
            "plugin_timeout_seconds": os.getenv("PLUGIN_TIMEOUT_SECONDS"),
            "notify_timeout_seconds": os.getenv("NOTIFY_TIMEOUT_SECONDS"),
            "admin_notify_url": os.getenv("ADMIN_NOTIFY_URL"),
            "admin_notify_key": os.getenv("ADMIN_NOTIFY_KEY"),
            "log_level": os.getenv("LOG_LEVEL"),
        }
        return cls(**{k: v for k, v in values.items() if v})


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


class ConfigProvider(Protocol):
    def get_config(self, key: str, default: Optional[str] = None) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...


class StaticConfigProvider:
    def __init__(self, values: Optional[Mapping[str, str]] = None):
        self._values = dict(values or {})

    def get_config(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self._values.get(key, default)

    def set(self, key: str, value: str) -> None:
        self._values[key] = value


class DatabaseConfigProvider:
    """Feature flags stored in the ``system_config`` table. Never cached."""

    def __init__(self, database):
        self.database = database

    def get_config(self, key: str, default: Optional[str] = None) -> Optional[str]:
        with self.database.session() as session:
            row = session.get(SystemConfigRow, key)
            if row is None or row.config_value is None:
                return default
            return row.config_value

    def set(self, key: str, value: str) -> None:
        with self.database.atomic() as session:
            row = session.get(SystemConfigRow, key)
            if row is None:
                session.add(SystemConfigRow(config_key=key, config_value=value))
            else:
                row.config_value = value
        logger.info(f"System config {key} set to {value!r}")
