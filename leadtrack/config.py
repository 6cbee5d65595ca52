import os
import logging
from dataclasses import dataclass, field
from typing import Optional
from zoneinfo import ZoneInfo

from dotenv import load_dotenv

from leadtrack.database.session import DEFAULT_DATABASE_URL, build_engine, build_session_factory, normalize_database_url

logger = logging.getLogger(__name__)

REQUIRED_TABLES = ("profiles", "leads", "notes", "activity_logs")
OPTIONAL_TABLES = ("points_history", "payout_requests", "agent_targets", "personal_tasks")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    database_url: str = DEFAULT_DATABASE_URL
    db_echo: bool = False
    auto_create_schema: bool = True
    redis_url: str = "redis://localhost:6379/0"
    timezone: Optional[str] = None
    reconcile_fast_delay: float = 0.6
    reconcile_slow_delay: float = 5.0
    gateway_timeout: float = 10.0
    activity_log_limit: int = 100
    points_per_dollar: int = 10
    workspace_max_age: float = 30.0  # seconds before a cached workspace is re-read
    workspace_idle_timeout: float = 3600.0
    notice_limit: int = 50

    @property
    def tz(self):
        return ZoneInfo(self.timezone) if self.timezone else None


def load_settings(env_file: str = None) -> Settings:
    """Reads settings from the environment, loading .env.dev (or .env) first."""
    if env_file:
        load_dotenv(env_file)
    elif os.path.exists(".env.dev"):
        load_dotenv(".env.dev")
    else:
        load_dotenv()

    return Settings(
        database_url=normalize_database_url(os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL)),
        db_echo=_env_bool("DB_ECHO", False),
        auto_create_schema=_env_bool("AUTO_CREATE_SCHEMA", True),
        redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
        timezone=os.getenv("LEADTRACK_TIMEZONE") or None,
        reconcile_fast_delay=float(os.getenv("RECONCILE_FAST_DELAY", "0.6")),
        reconcile_slow_delay=float(os.getenv("RECONCILE_SLOW_DELAY", "5.0")),
        gateway_timeout=float(os.getenv("GATEWAY_TIMEOUT", "10.0")),
        activity_log_limit=int(os.getenv("ACTIVITY_LOG_LIMIT", "100")),
        points_per_dollar=int(os.getenv("POINTS_PER_DOLLAR", "10")),
        workspace_max_age=float(os.getenv("WORKSPACE_MAX_AGE", "30.0")),
        workspace_idle_timeout=float(os.getenv("WORKSPACE_IDLE_TIMEOUT", "3600.0")),
        notice_limit=int(os.getenv("NOTICE_LIMIT", "50")),
    )


@dataclass
class Capabilities:
    """Result of the startup schema probe."""
    tables: dict = field(default_factory=dict)

    @property
    def schema_ready(self) -> bool:
        return all(self.tables.get(name) for name in REQUIRED_TABLES)

    @property
    def missing_tables(self) -> list:
        return [name for name in REQUIRED_TABLES + OPTIONAL_TABLES if not self.tables.get(name)]

    def has(self, table: str) -> bool:
        return bool(self.tables.get(table))


@dataclass
class AppContext:
    """Everything a running process needs, built once at startup and passed explicitly."""
    settings: Settings
    engine: object
    session_factory: object
    capabilities: Capabilities = field(default_factory=Capabilities)


def build_context(settings: Settings = None, engine=None) -> AppContext:
    settings = settings or load_settings()
    engine = engine or build_engine(settings.database_url, echo=settings.db_echo)
    return AppContext(
        settings=settings,
        engine=engine,
        session_factory=build_session_factory(engine),
    )
