import logging
import os
from datetime import datetime
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from changecrawler.domain.exceptions import ConfigError
from changecrawler.domain.models import CrawlerEntity, EntityKind, Provider, as_utc

logger = logging.getLogger(__name__)

DEFAULT_HOSTS = {
    Provider.GITHUB: "github.com",
    Provider.GITLAB: "gitlab.com",
}


class CrawlerConfig(BaseModel):
    """
    One configured provider instance and the entities crawled through it.
    """
    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str
    provider: Provider
    url: Optional[str] = Field(default=None, description="API base URL, defaults to the public service")
    token_env: Optional[str] = Field(default=None, description="Environment variable holding the API token")
    login: Optional[str] = Field(default=None, description="Login for providers using HTTP basic auth")
    update_since: datetime
    crawl_interval: int = Field(default=600, gt=0)
    changes: List[str] = Field(default_factory=list)
    issues: List[str] = Field(default_factory=list)

    @field_validator("update_since", mode="before")
    @classmethod
    def normalize_update_since(cls, value: Any) -> Any:
        return as_utc(value)

    @model_validator(mode="after")
    def check_url(self) -> "CrawlerConfig":
        if self.url is None and self.provider not in DEFAULT_HOSTS:
            raise ValueError(f"crawler '{self.name}': url is required for {self.provider.value}")
        return self

    @property
    def host(self) -> str:
        if self.url:
            return urlparse(self.url).netloc or self.url
        return DEFAULT_HOSTS[self.provider]

    @property
    def token(self) -> Optional[str]:
        return os.getenv(self.token_env) if self.token_env else None


class IdentConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    ident: str = Field(..., description="Canonical identity (muid)")
    aliases: List[str] = Field(default_factory=list, description="'<host>/<login>' entries")
    groups: List[str] = Field(default_factory=list)


class WorkspaceConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str
    crawlers: List[CrawlerConfig] = Field(default_factory=list)
    idents: List[IdentConfig] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_unique_crawlers(self) -> "WorkspaceConfig":
        names = [crawler.name for crawler in self.crawlers]
        duplicates = {name for name in names if names.count(name) > 1}
        if duplicates:
            raise ValueError(f"workspace '{self.name}': duplicate crawler names {sorted(duplicates)}")
        return self

    def entities(self) -> List[CrawlerEntity]:
        entities = []
        for crawler in self.crawlers:
            for kind, names in ((EntityKind.CHANGE, crawler.changes), (EntityKind.ISSUE, crawler.issues)):
                for name in names:
                    entities.append(CrawlerEntity(
                        workspace=self.name,
                        crawler=crawler.name,
                        provider=crawler.provider,
                        host=crawler.host,
                        kind=kind,
                        name=name,
                        crawl_interval=crawler.crawl_interval,
                        update_since=crawler.update_since,
                    ))
        return entities

    def crawler(self, name: str) -> CrawlerConfig:
        for crawler in self.crawlers:
            if crawler.name == name:
                return crawler
        raise ConfigError(f"Unknown crawler '{name}' in workspace '{self.name}'.")


class Config(BaseModel):
    """Read-only snapshot of every workspace, reloaded at pool startup."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    workspaces: List[WorkspaceConfig] = Field(default_factory=list)

    def entities(self) -> List[CrawlerEntity]:
        return [entity for workspace in self.workspaces for entity in workspace.entities()]

    def workspace(self, name: str) -> WorkspaceConfig:
        for workspace in self.workspaces:
            if workspace.name == name:
                return workspace
        raise ConfigError(f"Unknown workspace '{name}'.")


def parse_config(raw: Dict[str, Any]) -> Config:
    try:
        return Config.model_validate(raw or {})
    except ValidationError as e:
        raise ConfigError(f"Invalid crawler configuration: {e}") from e


def load_config(path: str) -> Config:
    """
    Loads and validates the YAML workspace configuration.

    Raises:
        ConfigError: If the file is missing, is not valid YAML or fails validation.
    """
    try:
        with open(path, "r") as f:
            raw = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"Cannot read configuration file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Configuration file {path} is not valid YAML: {e}") from e

    config = parse_config(raw)
    logger.info(f"Loaded {len(config.workspaces)} workspace(s) and {len(config.entities())} crawler entities from {path}.")
    return config


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    try:
        return int(raw) if raw else default
    except ValueError as e:
        raise ConfigError(f"{name} must be an integer, got {raw!r}.") from e


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    try:
        return float(raw) if raw else default
    except ValueError as e:
        raise ConfigError(f"{name} must be a number, got {raw!r}.") from e


class Settings(BaseModel):
    """Process-wide tunables, read from the environment (and .env)."""
    model_config = ConfigDict(frozen=True)

    database_url: str
    config_path: str = "config.yaml"
    concurrency: int = Field(default=4, gt=0)
    poll_interval: float = Field(default=60.0, gt=0)
    overlap_seconds: float = Field(default=3600.0, ge=0)
    max_attempts: int = Field(default=5, gt=0)
    backoff_base: float = Field(default=1.0, gt=0)
    max_backoff: float = Field(default=120.0, gt=0)
    fetch_timeout: float = Field(default=60.0, gt=0)
    write_timeout: float = Field(default=30.0, gt=0)
    batch_size: int = Field(default=500, gt=0)
    max_consecutive_failures: int = Field(default=5, gt=0)
    lease_timeout: float = Field(default=300.0, gt=0)
    max_in_flight_per_host: int = Field(default=2, gt=0)
    min_request_interval: float = Field(default=1.0, ge=0)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        database_url = os.getenv("DATABASE_URL")
        if not database_url:
            raise ConfigError("DATABASE_URL is not set in the environment.")
        try:
            return cls(
                database_url=database_url,
                config_path=os.getenv("CRAWLER_CONFIG", "config.yaml"),
                concurrency=_env_int("CRAWLER_CONCURRENCY", 4),
                poll_interval=_env_float("CRAWLER_POLL_INTERVAL", 60.0),
                overlap_seconds=_env_float("CRAWLER_OVERLAP_SECONDS", 3600.0),
                max_attempts=_env_int("CRAWLER_MAX_ATTEMPTS", 5),
                backoff_base=_env_float("CRAWLER_BACKOFF_BASE", 1.0),
                max_backoff=_env_float("CRAWLER_MAX_BACKOFF", 120.0),
                fetch_timeout=_env_float("CRAWLER_FETCH_TIMEOUT", 60.0),
                write_timeout=_env_float("CRAWLER_WRITE_TIMEOUT", 30.0),
                batch_size=_env_int("CRAWLER_BATCH_SIZE", 500),
                max_consecutive_failures=_env_int("CRAWLER_MAX_FAILURES", 5),
                lease_timeout=_env_float("CRAWLER_LEASE_TIMEOUT", 300.0),
                max_in_flight_per_host=_env_int("CRAWLER_MAX_IN_FLIGHT_PER_HOST", 2),
                min_request_interval=_env_float("CRAWLER_MIN_REQUEST_INTERVAL", 1.0),
                log_level=os.getenv("LOG_LEVEL", "INFO"),
            )
        except ValidationError as e:
            raise ConfigError(f"Invalid crawler settings: {e}") from e
