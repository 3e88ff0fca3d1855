"""
Engine configuration.

Settings come from environment variables, the same way the deployment
supplies DATABASE_URL:

    RESULT_ENGINE_STORE                  memory | postgres        (default memory)
    RESULT_ENGINE_RULES_SOURCE           json | postgres          (default json)
    DATABASE_URL                         required for any postgres backend
    RESULT_ENGINE_RULES_PATH             JSON ruleset             (default bundled v1.0)
    RESULT_ENGINE_MAX_RETRIES            conflict retries         (default 3)
    RESULT_ENGINE_NOTIFICATIONS_ENABLED  true | false             (default true)
    RESULT_ENGINE_LOG_LEVEL              logging level name       (default INFO)
"""

import logging
import os
from typing import Mapping, Optional

import psycopg2
from pydantic import BaseModel, field_validator

from result_engine.clock import Clock
from result_engine.notifications.dispatcher import (
    LoggingNotificationDispatcher,
    NullNotificationDispatcher,
)
from result_engine.rules.repository import (
    DEFAULT_RULES_PATH,
    CachedRuleRepository,
    JsonRuleRepository,
    PostgresRuleRepository,
)
from result_engine.service import DEFAULT_MAX_RETRIES, ResultEngine
from result_engine.store.memory import InMemoryDocumentStore
from result_engine.store.postgres import PostgresDocumentStore

logger = logging.getLogger("result_engine.config")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_TRUE_VALUES = ("1", "true", "yes", "on")


class EngineSettings(BaseModel):
    store: str = "memory"
    rules_source: str = "json"
    database_url: Optional[str] = None
    rules_path: str = str(DEFAULT_RULES_PATH)
    max_retries: int = DEFAULT_MAX_RETRIES
    notifications_enabled: bool = True
    log_level: str = "INFO"

    @field_validator("store", "rules_source")
    @classmethod
    def _check_backend(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in ("memory", "json", "postgres"):
            raise ValueError(f"unsupported backend '{value}'")
        return value

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.strip().upper()

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "EngineSettings":
        env = os.environ if environ is None else environ
        return cls(
            store=env.get("RESULT_ENGINE_STORE", "memory"),
            rules_source=env.get("RESULT_ENGINE_RULES_SOURCE", "json"),
            database_url=env.get("DATABASE_URL") or None,
            rules_path=env.get("RESULT_ENGINE_RULES_PATH") or str(DEFAULT_RULES_PATH),
            max_retries=int(env.get("RESULT_ENGINE_MAX_RETRIES", DEFAULT_MAX_RETRIES)),
            notifications_enabled=env.get("RESULT_ENGINE_NOTIFICATIONS_ENABLED", "true").strip().lower() in _TRUE_VALUES,
            log_level=env.get("RESULT_ENGINE_LOG_LEVEL", "INFO"),
        )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


def build_engine(settings: Optional[EngineSettings] = None, clock: Optional[Clock] = None) -> ResultEngine:
    """Wire repository, store and dispatcher from settings."""
    settings = settings or EngineSettings.from_env()

    needs_db = settings.store == "postgres" or settings.rules_source == "postgres"
    if needs_db and not settings.database_url:
        raise ValueError("DATABASE_URL is required for the postgres backend")

    if settings.rules_source == "postgres":
        inner = PostgresRuleRepository(lambda: psycopg2.connect(settings.database_url))
    else:
        inner = JsonRuleRepository(settings.rules_path)
    repository = CachedRuleRepository(inner)

    if settings.store == "postgres":
        store = PostgresDocumentStore(settings.database_url)
    else:
        store = InMemoryDocumentStore()

    dispatcher = LoggingNotificationDispatcher() if settings.notifications_enabled else NullNotificationDispatcher()

    logger.info(
        f"Result engine configured: store={settings.store} rules={settings.rules_source} "
        f"max_retries={settings.max_retries} notifications={settings.notifications_enabled}"
    )
    return ResultEngine(
        repository,
        store=store,
        dispatcher=dispatcher,
        clock=clock,
        max_retries=settings.max_retries,
    )
