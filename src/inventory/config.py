"""
Configuration du service.

Les réglages sont décrits par un modèle pydantic-settings et lus une
seule fois au démarrage. Sources, de la plus forte à la plus faible :

1. les valeurs passées explicitement (tests, `Settings.from_mapping`) ;
2. les variables d'environnement, puis le fichier `.env` ;
3. un fichier JSON optionnel désigné par INVENTORY_CONFIG_FILE ;
4. les valeurs par défaut ci-dessous.

Chaque réglage a une clé de configuration (`topic.inventory-created`,
`engine.retry.maxAttempts`...) ; la variable d'environnement correspondante
est la clé en majuscules, `.` et `-` remplacés par `_`.
"""

from __future__ import annotations

import json
import os
import re
from functools import lru_cache
from typing import Annotated, Any, Mapping

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import (
    BaseSettings,
    InitSettingsSource,
    NoDecode,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

LOCATION_PATTERN = re.compile(r"^[A-Z]-\d+-\d+$")

CONFIG_FILE_VARIABLE = "INVENTORY_CONFIG_FILE"


class ConfigError(Exception):
    """Levée quand une valeur de configuration est invalide."""
    pass


def env_name(key: str) -> str:
    """`topic.inventory-created` -> `TOPIC_INVENTORY_CREATED`."""
    return re.sub(r"[.\-]", "_", key).upper()


def setting(key: str, default: Any, **constraints: Any) -> Any:
    return Field(default, validation_alias=env_name(key), **constraints)


class Settings(BaseSettings):
    topic_inventory_created: str = setting("topic.inventory-created", "inventory-created")
    topic_inventory_low_stock: str = setting("topic.inventory-low-stock", "inventory-low-stock")
    topic_inventory_restocked: str = setting("topic.inventory-restocked", "inventory-restocked")
    topic_inventory_reserved: str = setting("topic.inventory-reserved", "inventory-reserved")
    topic_stock_decreased: str = setting("topic.stock-decreased", "stock-decreased")
    topic_stock_restored: str = setting("topic.stock-restored", "stock-restored")
    topic_product_created: str = setting("topic.product-created", "product-created")
    topic_product_deleted: str = setting("topic.product-deleted", "product-deleted")

    consumer_group_id: str = setting("consumer.groupId", "inventory-service")
    available_hubs: Annotated[tuple[str, ...], NoDecode] = setting(
        "available-hubs", ("HUB-SEOUL", "HUB-BUSAN", "HUB-INCHEON", "HUB-DAEGU")
    )
    default_safety_floor: int = setting("default.safetyFloor", 10, ge=0)
    default_location: str = setting("default.location", "A-1-1")

    retry_max_attempts: int = setting("engine.retry.maxAttempts", 3, ge=1)
    retry_backoff_seconds: float = setting("engine.retry.backoffSeconds", 0.05, ge=0)
    commit_timeout_seconds: float = setting("engine.commit.timeoutSeconds", 5, gt=0)

    database_uri: str = setting("database.uri", "sqlite:///inventory.db")
    redis_host: str = setting("redis.host", "localhost")
    redis_port: int = setting("redis.port", 6379, ge=1)

    publisher_batch_size: int = setting("publisher.batchSize", 100, ge=1)
    publisher_backoff_base: float = setting("publisher.backoff.baseSeconds", 0.5, ge=0)
    publisher_backoff_max: float = setting("publisher.backoff.maxSeconds", 60, ge=0)
    publisher_workers: int = setting("publisher.workers", 4, ge=1)
    publisher_partitions: int = setting("publisher.partitions", 1, ge=1)

    guard_max_entries: int = setting("guard.maxEntries", 10_000, ge=1)
    guard_ttl_seconds: float = setting("guard.ttlSeconds", 600, ge=0)
    api_port: int = setting("api.port", 5005, ge=1)

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", frozen=True)

    @field_validator("available_hubs", mode="before")
    @classmethod
    def split_hubs(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.split(",")
        return tuple(h.strip() for h in value if h and h.strip())

    @field_validator("default_location")
    @classmethod
    def check_location(cls, value: str) -> str:
        if not LOCATION_PATTERN.match(value):
            raise ValueError(f"emplacement invalide (ex. A-1-3) : {value!r}")
        return value

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        sources = [init_settings, env_settings, dotenv_settings]
        path = os.environ.get(CONFIG_FILE_VARIABLE)
        if path:
            sources.append(InitSettingsSource(settings_cls, init_kwargs=read_config_file(path)))
        return tuple(sources)

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> Settings:
        """Settings à partir de clés de configuration (`engine.retry.maxAttempts`...)."""
        return cls(**{env_name(key): value for key, value in values.items()})

    def topic(self, name: str) -> str:
        """Nom effectif du topic `name` (nom par défaut -> nom configuré)."""
        return getattr(self, "topic_" + name.replace("-", "_"), name)


def read_config_file(path: str) -> dict[str, Any]:
    """Fichier JSON à plat, indexé par clés de configuration."""
    try:
        with open(path, encoding="utf-8") as f:
            values = json.load(f)
    except (OSError, ValueError) as e:
        raise ConfigError(f"Fichier de configuration illisible {path} : {e}") from e
    if not isinstance(values, dict):
        raise ConfigError(f"Fichier de configuration {path} : objet JSON attendu")
    return {env_name(key): value for key, value in values.items()}


@lru_cache
def load_settings() -> Settings:
    """Point d'entrée unique des réglages, lus une fois par processus."""
    try:
        return Settings()
    except ValidationError as e:
        raise ConfigError(f"Configuration invalide : {e}") from e


def get_redis_host_and_port(settings: Settings) -> dict[str, Any]:
    return dict(host=settings.redis_host, port=settings.redis_port)


def get_engine_options(settings: Settings) -> dict[str, Any]:
    """Options passées à create_engine selon le dialecte."""
    timeout = settings.commit_timeout_seconds
    if settings.database_uri.startswith("postgresql"):
        return dict(
            pool_pre_ping=True,
            pool_timeout=timeout,
            connect_args={"options": f"-c statement_timeout={int(timeout * 1000)}"},
        )
    if settings.database_uri.startswith("sqlite"):
        return dict(connect_args={"timeout": timeout, "check_same_thread": False})
    return dict(pool_pre_ping=True, pool_timeout=timeout)
